"""Service layer for the Code-Mind note engine."""

from codemind.services.note_store import NoteStore

__all__ = ["NoteStore"]
