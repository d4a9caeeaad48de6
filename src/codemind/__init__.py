"""
Code-Mind - a note engine for source-code annotations.
This package maintains a single structured markdown file holding a forest of
atomic, addressable notes attached to source locations, with bidirectional
linking, search and incremental editing.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("codemind")
except PackageNotFoundError:
    __version__ = "0.3.0"
