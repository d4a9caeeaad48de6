"""Note store: the single entry point for reading and changing a notes file."""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from codemind.config import CodemindConfig
from codemind.config import config as default_config
from codemind.exceptions import (
    CircularReferenceError,
    ErrorCode,
    NoteAlreadyExistsError,
    NoteFileNotFoundError,
    NoteNotFoundError,
    ParentNotFoundError,
    StorageError,
    ValidationError,
)
from codemind.ids import IdGenerator
from codemind.models.schema import (
    INDENT_UNIT,
    LinkDirection,
    LinkGraph,
    Note,
    NoteAuthor,
    NoteFormat,
    NoteLine,
    NoteProperties,
    NoteType,
    ParseError,
    ParseResult,
    ParseWarning,
    ProjectRoot,
    RelatedNote,
    SearchMatch,
    SearchResult,
    validate_note_id,
)
from codemind.observability import configure_logging, is_logging_configured, traced
from codemind.storage.link_graph import BacklinkManager
from codemind.storage.note_parser import HEADER_PROPERTIES, NoteParser, parse_property
from codemind.storage.note_writer import NoteWriter, WriteOptions

logger = logging.getLogger(__name__)


def content_to_lines(content: str) -> List[NoteLine]:
    """Split raw text into content lines.

    Each leading group of two spaces becomes one indent level. Blank lines
    at either end are dropped.

    Raises:
        ValidationError: If the first line would be read back as a note
            property such as ``type::`` or ``parent::``.
    """
    content = content.replace("\r\n", "\n").strip("\n")
    if not content.strip():
        return []
    lines = []
    for raw in content.split("\n"):
        stripped = raw.lstrip(" ")
        level = (len(raw) - len(stripped)) // len(INDENT_UNIT)
        lines.append(NoteLine(indent=level, content=stripped.rstrip()))

    first = lines[0]
    prop = parse_property(first.content) if first.indent == 0 else None
    if prop is not None and prop[0] in HEADER_PROPERTIES:
        raise ValidationError(
            f"Content cannot start with a '{prop[0]}::' property line",
            field="content",
            value=first.content,
        )
    return lines


def _line_key(note: Note):
    return (note.properties.line is None, note.properties.line or 0)


class NoteStore:
    """In-memory model of one notes file.

    Holds a flat ID to note map whose ``children`` lists are kept in
    lockstep with each note's ``parent`` property, plus the link graph.
    Reads never touch the disk. Mutations update the model and the graph
    together, refresh the cached backlink counts of every affected note,
    and then save if ``auto_save`` is on.

    Not thread-safe: callers must serialize access.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[CodemindConfig] = None,
        id_generator: Optional[IdGenerator] = None,
        auto_save: Optional[bool] = None,
        must_exist: bool = False,
    ):
        """Open a notes file.

        Args:
            path: Notes file location. Defaults to the configured notes path.
            config: Settings to use instead of the global configuration.
            id_generator: Generator for new note IDs.
            auto_save: Override the configured ``auto_save`` flag.
            must_exist: Raise instead of starting empty when the file is
                missing.

        Raises:
            NoteFileNotFoundError: If ``must_exist`` and there is no file.
            StorageError: If the file exists but cannot be read.
        """
        self.config = config or default_config
        if self.config.log_dir is not None and not is_logging_configured():
            configure_logging(
                self.config.get_absolute_path(self.config.log_dir),
                self.config.log_level,
                console=False,
            )
        self.path = Path(path) if path is not None else self.config.get_notes_path()
        self.auto_save = self.config.auto_save if auto_save is None else auto_save
        self._ids = id_generator or IdGenerator(
            self.config.id_length, self.config.id_alphabet
        )
        self._parser = NoteParser(summary_length=self.config.summary_length)
        self._writer = NoteWriter(
            WriteOptions(
                sort_notes=self.config.sort_notes,
                include_map=self.config.include_map,
                summary_length=self.config.summary_length,
            )
        )
        self._links = BacklinkManager()
        self._notes: Dict[str, Note] = {}
        self._project_root: Optional[ProjectRoot] = None
        self._errors: List[ParseError] = []
        self._warnings: List[ParseWarning] = []
        self._format = NoteFormat.CURRENT
        self._loaded_mtime: Optional[float] = None
        self._dirty = False
        self._last_affected: List[str] = []

        if self.path.exists():
            self._load()
        elif must_exist:
            raise NoteFileNotFoundError(str(self.path))
        else:
            project_name = self.path.resolve().parent.name or "Unnamed"
            self._project_root = ProjectRoot(name=project_name)
            logger.info(f"No notes file at {self.path}; starting empty project '{project_name}'")

    # ------------------------------------------------------------------
    # Loading and saving
    # ------------------------------------------------------------------

    def _load(self) -> None:
        try:
            text = self.path.read_text(encoding="utf-8")
            mtime = self.path.stat().st_mtime
        except FileNotFoundError as e:
            raise NoteFileNotFoundError(str(self.path)) from e
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                "Failed to read notes file",
                operation="load",
                path=str(self.path),
                code=ErrorCode.FILE_READ_FAILED,
                original_error=e,
            ) from e

        result = self._parser.parse(text)
        self._notes = dict(result.notes)
        self._project_root = result.project_root
        self._errors = list(result.errors)
        self._warnings = list(result.warnings)
        self._format = result.format
        self._links.rebuild_all(self._notes.values())
        self._refresh_backlinks(self._notes)
        self._loaded_mtime = mtime
        self._dirty = False
        self._last_affected = []

        logger.info(
            f"Loaded {len(self._notes)} notes from {self.path.name} "
            f"({result.format.value} format)"
        )
        if result.format == NoteFormat.LEGACY:
            logger.info(f"{self.path.name} uses the legacy format; it will be rewritten on save")
        for error in self._errors:
            logger.warning(f"Parse error on line {error.line}: {error.message}")

    @traced("save")
    def save(self) -> None:
        """Write the model to disk atomically.

        Raises:
            StorageError: With ``FILE_WRITE_FAILED`` if the write fails.
        """
        text = self._writer.write(self._project_root, self._notes.values())
        if self._loaded_mtime is not None:
            try:
                if self.path.stat().st_mtime != self._loaded_mtime:
                    logger.warning(
                        f"{self.path.name} changed on disk since it was loaded; "
                        "overwriting it with the in-memory model"
                    )
            except OSError:
                logger.warning(f"{self.path.name} disappeared since it was loaded")

        temp_file = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(temp_file, self.path)
            self._loaded_mtime = self.path.stat().st_mtime
        except OSError as e:
            raise StorageError(
                "Failed to write notes file",
                operation="save",
                path=str(self.path),
                code=ErrorCode.FILE_WRITE_FAILED,
                original_error=e,
            ) from e

        self._dirty = False
        self._format = NoteFormat.CURRENT
        logger.debug(f"Saved {len(self._notes)} notes to {self.path.name}")

    @traced("reload")
    def reload(self) -> None:
        """Discard the in-memory model, unsaved changes included, and re-parse.

        Raises:
            NoteFileNotFoundError: If the file no longer exists.
        """
        if not self.path.exists():
            raise NoteFileNotFoundError(str(self.path))
        if self._dirty:
            logger.warning(f"Discarding unsaved changes to {self.path.name}")
        self._load()

    @property
    def is_dirty(self) -> bool:
        """Whether the model has changes not yet written to disk."""
        return self._dirty

    @property
    def last_affected_ids(self) -> List[str]:
        """IDs whose backlinks changed during the last content update."""
        return list(self._last_affected)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_note(self, note_id: str) -> Optional[Note]:
        """Retrieve a note by ID."""
        return self._notes.get(note_id)

    def get_note_by_path(self, display_path: str) -> Optional[Note]:
        """Retrieve a note by its display path."""
        parts = self._ids.parse_display_path(display_path)
        if parts is not None:
            note = self._notes.get(parts.id)
            if note is not None and note.display_path == display_path:
                return note
        # IDs that do not match the generator's length are not parseable
        for note in self._notes.values():
            if note.display_path == display_path:
                return note
        return None

    def get_all_notes(self) -> List[Note]:
        return list(self._notes.values())

    def get_notes_in_file(self, file: str) -> List[Note]:
        """All notes of a file, nested ones included, ordered by line."""
        notes = [n for n in self._notes.values() if n.properties.file == file]
        return sorted(notes, key=_line_key)

    def get_children(self, note_id: str) -> List[Note]:
        return list(self._require(note_id).children)

    def get_backlinks(self, note_id: str) -> List[Note]:
        """Notes that reference ``note_id``."""
        return [
            self._notes[source]
            for source in self._links.get_backward_links(note_id)
            if source in self._notes
        ]

    def get_orphans(self) -> List[Note]:
        """Notes nothing references and that have no parent."""
        return [
            note
            for note in self._notes.values()
            if note.properties.parent is None
            and self._links.get_backlink_count(note.id) == 0
        ]

    def get_popular(self, limit: Optional[int] = None) -> List[Note]:
        """Most referenced notes first; unreferenced notes are left out."""
        limit = self.config.popular_limit if limit is None else limit
        linked = [
            note for note in self._notes.values() if self._links.get_backlink_count(note.id) > 0
        ]
        linked.sort(key=lambda note: self._links.get_backlink_count(note.id), reverse=True)
        return linked[:limit]

    @traced("get_related")
    def get_related(self, note_id: str, depth: Optional[int] = None) -> List[RelatedNote]:
        """Notes within ``depth`` link hops of ``note_id``, in either direction.

        Breadth-first, so each note is reported once at its shortest
        distance, tagged with the direction of the edge that reached it.
        References to unknown notes are not followed.

        Raises:
            NoteNotFoundError: If ``note_id`` does not exist.
            ValidationError: If ``depth`` is negative.
        """
        depth = self.config.related_depth if depth is None else depth
        if depth < 0:
            raise ValidationError("Depth cannot be negative", field="depth", value=depth)
        self._require(note_id)

        visited = {note_id}
        frontier = [note_id]
        related: List[RelatedNote] = []
        for level in range(1, depth + 1):
            next_frontier = []
            for current in frontier:
                edges = (
                    (LinkDirection.OUTGOING, self._links.get_forward_links(current)),
                    (LinkDirection.INCOMING, self._links.get_backward_links(current)),
                )
                for direction, neighbours in edges:
                    for neighbour in neighbours:
                        if neighbour in visited:
                            continue
                        visited.add(neighbour)
                        note = self._notes.get(neighbour)
                        if note is None:
                            continue
                        related.append(RelatedNote(note=note, direction=direction, depth=level))
                        next_frontier.append(neighbour)
            if not next_frontier:
                break
            frontier = next_frontier
        return related

    @traced("search")
    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """Case-insensitive keyword search over note content.

        Scoring: 1 per term found in a content line, 2 more when a line
        equals the whole query, 0.5 per term found in the file or display
        path, plus 0.1 per backlink for any note that matched at all.
        """
        limit = self.config.search_limit if limit is None else limit
        terms = [term.lower() for term in query.split()]
        if not terms:
            return []
        whole_query = " ".join(terms)

        results: List[SearchResult] = []
        for note in self._notes.values():
            score = 0.0
            matches: List[SearchMatch] = []
            for index, line in enumerate(note.content):
                lowered = line.content.lower()
                for term in terms:
                    position = lowered.find(term)
                    if position >= 0:
                        score += 1
                        matches.append(
                            SearchMatch(
                                line=index,
                                content=line.content,
                                highlight=(position, position + len(term)),
                            )
                        )
                if " ".join(lowered.split()) == whole_query:
                    score += 2

            file = (note.properties.file or "").lower()
            display_path = note.display_path.lower()
            for term in terms:
                if term in file or term in display_path:
                    score += 0.5

            if score > 0:
                score += 0.1 * self._links.get_backlink_count(note.id)
                results.append(SearchResult(note=note, matches=matches, score=score))

        results.sort(key=lambda result: result.score, reverse=True)
        return results[:limit]

    def get_project_root(self) -> Optional[ProjectRoot]:
        return self._project_root

    def get_parse_result(self) -> ParseResult:
        """Snapshot of the current model with the diagnostics of the last load."""
        return ParseResult(
            project_root=self._project_root,
            notes=dict(self._notes),
            forward_links=self._links.forward_map(),
            backward_links=self._links.backward_map(),
            errors=list(self._errors),
            warnings=list(self._warnings),
            format=self._format,
        )

    def get_link_graph(self) -> LinkGraph:
        return self._links.get_link_graph()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @traced("add_note")
    def add_note(
        self,
        file: str,
        content: str,
        parent_id: Optional[str] = None,
        note_id: Optional[str] = None,
        *,
        line: Optional[int] = None,
        author: NoteAuthor = NoteAuthor.HUMAN,
        note_type: Optional[NoteType] = None,
        related: Optional[List[str]] = None,
    ) -> Note:
        """Create a note.

        Args:
            file: Source file the note annotates. A child may pass an empty
                string to take its parent's file.
            content: Note text; two leading spaces per indent level.
            parent_id: Existing note to nest under.
            note_id: Explicit ID; generated when omitted.
            line: Source line the note annotates.
            author: Who wrote the note.
            note_type: Optional note kind.
            related: IDs listed in the ``related`` property.

        Returns:
            The new note.

        Raises:
            ParentNotFoundError: If ``parent_id`` does not exist.
            NoteAlreadyExistsError: If ``note_id`` is already used.
            ValidationError: If an argument is malformed or ``file``
                differs from the parent's file.
        """
        parent: Optional[Note] = None
        if parent_id is not None:
            parent = self._notes.get(parent_id)
            if parent is None:
                raise ParentNotFoundError(parent_id, note_id)
            if file and file != parent.properties.file:
                raise ValidationError(
                    f"A child note must live in its parent's file ({parent.properties.file})",
                    field="file",
                    value=file,
                )
            file = parent.properties.file or file
        if not file:
            raise ValidationError("File is required", field="file")

        if note_id is not None:
            try:
                validate_note_id(note_id)
            except ValueError as e:
                raise ValidationError(str(e), field="note_id", value=note_id) from e
            if note_id in self._notes:
                raise NoteAlreadyExistsError(note_id)
        else:
            note_id = self._ids.generate_unique_id(self._notes)

        try:
            properties = NoteProperties(
                id=note_id,
                type=note_type,
                file=file,
                line=line,
                author=author,
                parent=parent_id,
                related=list(related or []),
            )
            note = Note(properties=properties, content=content_to_lines(content))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid note: {e.errors()[0]['msg']}",
                code=ErrorCode.NOTE_VALIDATION_FAILED,
            ) from e

        self._notes[note_id] = note
        if parent is not None:
            parent.children.append(note)

        affected = self._links.update_for_note(note, "", note.content_text())
        self._refresh_backlinks([note_id] + affected)
        logger.debug(f"Added note {note_id} at {note.display_path}")
        self._after_mutation()
        return note

    @traced("update_note")
    def update_note(self, note_id: str, content: str) -> Note:
        """Replace a note's content.

        The IDs whose backlinks changed are available from
        ``last_affected_ids`` afterwards.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ValidationError: If the content starts with a property line.
        """
        note, _ = self._update_content(note_id, content)
        return note

    @traced("update_note_with_affected")
    def update_note_with_affected(self, note_id: str, content: str) -> Tuple[Note, List[str]]:
        """Replace a note's content, returning the note and the affected IDs."""
        return self._update_content(note_id, content)

    def _update_content(self, note_id: str, content: str) -> Tuple[Note, List[str]]:
        note = self._require(note_id)
        old_content = note.content_text()
        note.content = content_to_lines(content)
        affected = self._links.update_for_note(note, old_content, note.content_text())
        self._refresh_backlinks(affected)
        self._last_affected = list(affected)
        if affected:
            logger.debug(f"Updated note {note_id}; backlinks changed for {affected}")
        self._after_mutation()
        return note, list(affected)

    @traced("delete_note")
    def delete_note(self, note_id: str) -> List[str]:
        """Delete a note and everything nested inside it.

        References to the deleted notes stay in the remaining notes' text
        and are reported as orphan references on the next load.

        Returns:
            The deleted IDs, the requested note first.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        note = self._require(note_id)
        deleted = [item.id for item in note.walk()]

        parent = self._notes.get(note.properties.parent) if note.properties.parent else None
        if parent is not None:
            parent.children[:] = [child for child in parent.children if child is not note]

        affected: List[str] = []
        for item_id in deleted:
            affected.extend(self._links.remove_note(item_id))
            del self._notes[item_id]
        self._refresh_backlinks(affected)

        logger.debug(f"Deleted {len(deleted)} note(s) starting at {note_id}")
        self._after_mutation()
        return deleted

    @traced("move_note")
    def move_note(
        self,
        note_id: str,
        new_file: str,
        new_line: Optional[int] = None,
        new_parent_id: Optional[str] = None,
    ) -> Note:
        """Move a note, and its descendants, to another file, line or parent.

        A nested note moved to another file without a new parent becomes a
        top-level note there. The link graph is not affected.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ParentNotFoundError: If ``new_parent_id`` does not exist.
            CircularReferenceError: If the new parent is the note itself or
                one of its descendants.
            ValidationError: If the new parent lives in another file.
        """
        note = self._require(note_id)
        if not new_file:
            raise ValidationError("File is required", field="new_file")

        target_parent_id = note.properties.parent
        new_parent: Optional[Note] = None
        if new_parent_id is not None:
            new_parent = self._notes.get(new_parent_id)
            if new_parent is None:
                raise ParentNotFoundError(new_parent_id, note_id)
            if any(item.id == new_parent_id for item in note.walk()):
                raise CircularReferenceError(note_id, new_parent_id)
            if new_parent.properties.file != new_file:
                raise ValidationError(
                    f"New parent {new_parent_id} is in {new_parent.properties.file}",
                    field="new_file",
                    value=new_file,
                )
            target_parent_id = new_parent_id
        elif target_parent_id is not None and new_file != note.properties.file:
            target_parent_id = None

        if target_parent_id != note.properties.parent:
            old_parent = (
                self._notes.get(note.properties.parent) if note.properties.parent else None
            )
            if old_parent is not None:
                old_parent.children[:] = [c for c in old_parent.children if c is not note]
            note.properties.parent = target_parent_id
            if new_parent is not None:
                new_parent.children.append(note)

        for item in note.walk():
            item.properties.file = new_file
        if new_line is not None:
            note.properties.line = new_line

        logger.debug(f"Moved note {note_id} to {note.display_path}")
        self._after_mutation()
        return note

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, note_id: str) -> Note:
        note = self._notes.get(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    def _refresh_backlinks(self, note_ids) -> None:
        """Copy backlink data from the graph into the affected notes."""
        for note_id in note_ids:
            note = self._notes.get(note_id)
            if note is None:
                continue
            note.properties.backlinks = self._links.get_backward_links(note_id)
            note.properties.backlink_count = self._links.get_backlink_count(note_id)

    def _after_mutation(self) -> None:
        self._dirty = True
        if self.auto_save:
            self.save()
