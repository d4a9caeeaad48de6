"""Storage layer for the Code-Mind note engine."""

from codemind.storage.link_graph import BacklinkManager
from codemind.storage.note_parser import NoteParser
from codemind.storage.note_writer import NoteWriter, WriteOptions

__all__ = [
    "BacklinkManager",
    "NoteParser",
    "NoteWriter",
    "WriteOptions",
]
