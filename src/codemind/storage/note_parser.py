"""Parsing of project notes files into the note model.

Two dialects are understood:

* **current** - bullet + indent blocks, written by ``NoteWriter``. Each note
  starts with a ``- [[cm.xxx]] summary`` title line followed by its
  ``author · date · line N`` metadata line; children are deeper blocks.
* **legacy** - flat Logseq-style blocks with ``key:: value`` property
  lines. Read-only; files in this dialect are migrated on their next save.

Problems in the text never raise. They are collected as errors (the note is
left out of the model) or warnings (the note is kept) on the ParseResult.
"""
import datetime
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from codemind.ids import REF_PATTERN, REF_TOKEN
from codemind.models.schema import (
    Note,
    NoteAuthor,
    NoteFormat,
    NoteLine,
    NoteProperties,
    NoteType,
    ParseError,
    ParseErrorType,
    ParseResult,
    ParseWarning,
    ParseWarningType,
    ProjectRoot,
    utc_today,
    validate_note_id,
)
from codemind.storage.link_graph import BacklinkManager
from codemind.storage.note_writer import UNKNOWN_FILE, build_map_section

logger = logging.getLogger(__name__)

INDENT_WIDTH = 2

# Current format
PROJECT_TITLE = re.compile(r"^#\s+Code-Mind\s+Notes\s*$")
PROJECT_NAME = re.compile(r"^-\s*Project:\s*(.+)$")
PROJECT_CREATED = re.compile(r"^-\s*Created:\s*(.+)$")
PROJECT_NOTES = re.compile(r"^-\s*Project Notes\s*$")
MAP_SECTION = re.compile(r"^-\s*Map\s*$")
FILE_SECTION = re.compile(r"^-\s*##\s+(.+?)\s*$")
NOTE_START = re.compile(rf"^(?:-\s+)?{REF_TOKEN}(?:\s|$)")
NOTE_META = re.compile(
    r"^(\w+)\s*·\s*(\d{4}-\d{2}-\d{2})(?:\s*·\s*line\s*(\d+))?\s*$"
)
# Property lines allowed directly after the metadata line
HEADER_PROPERTIES = ("type", "title", "tags", "related", "parent")

# Both formats
PROPERTY = re.compile(r"^([a-z_]+)::\s*(.*)$")

# Legacy format
LEGACY_NOTE_START = re.compile(rf"^-\s*{REF_TOKEN}\s*$")
LEGACY_MARKER = re.compile(r"^\s*id::\s*(?:cm\.[a-z0-9]|project-root)", re.MULTILINE)


@dataclass(frozen=True)
class ParsedLine:
    """One physical line split into indentation, bullet flag and content."""

    line_number: int
    indent: int
    is_bullet: bool
    content: str
    raw: str

    @property
    def blank(self) -> bool:
        return not self.raw.strip()


@dataclass
class FormatParseOutput:
    """What a dialect parser produced before the model is assembled."""

    project_root: Optional[ProjectRoot] = None
    # Top-level notes, children attached
    notes: List[Note] = field(default_factory=list)
    # Every note with its 1-based start line, in document pre-order
    located: List[Tuple[Note, int]] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)


def detect_format(text: str) -> NoteFormat:
    """Classify text as the current or legacy dialect.

    Any ``id:: cm.xxx`` or ``id:: project-root`` property line marks the
    legacy dialect; everything else (including empty text) is current.
    """
    if LEGACY_MARKER.search(text):
        return NoteFormat.LEGACY
    return NoteFormat.CURRENT


def parse_line(line: str, line_number: int = 0) -> ParsedLine:
    """Tokenize a physical line.

    Indentation counts two spaces (or one tab) per level. A bullet is a
    line whose first non-blank characters are ``- `` (or a lone ``-``);
    its content excludes the marker.
    """
    raw = line.rstrip("\r\n")
    stripped = raw.lstrip(" \t")
    leading = raw[: len(raw) - len(stripped)]
    level = leading.count("\t") + leading.count(" ") // INDENT_WIDTH
    stripped = stripped.rstrip()

    if stripped == "-" or stripped.startswith("- "):
        return ParsedLine(line_number, level, True, stripped[2:], raw)
    return ParsedLine(line_number, level, False, stripped, raw)


def parse_property(text: str) -> Optional[Tuple[str, str]]:
    """Extract ``(key, value)`` from a ``key:: value`` line, else None."""
    match = PROPERTY.match(text.strip())
    if not match:
        return None
    return match.group(1), match.group(2).strip()


def is_note_block_start(text: str) -> Optional[str]:
    """Return the note ID when ``text`` opens with a reference token.

    Works on raw bullet text (``- [[cm.abc123]] ...``) and on content
    already stripped of its marker (``[[cm.abc123]] ...``).
    """
    match = NOTE_START.match(text.strip())
    return match.group(1) if match else None


def extract_references(text: str) -> List[str]:
    """All note IDs referenced in ``text``, in order, duplicates kept."""
    return [match.group(1) for match in REF_PATTERN.finditer(text)]


def _parse_date(value: str) -> Optional[datetime.date]:
    try:
        return datetime.date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _parse_author(value: str, note_id: str) -> NoteAuthor:
    try:
        return NoteAuthor(value.strip().lower())
    except ValueError:
        logger.warning(f"Unknown author '{value}' in note {note_id}, defaulting to human")
        return NoteAuthor.HUMAN


def _parse_id_list(value: str, note_id: str) -> List[str]:
    """Read IDs from ``[[cm.x]], [[cm.y]]`` or ``cm.x, cm.y``."""
    refs = extract_references(value)
    if not refs:
        refs = [item.strip() for item in value.split(",") if item.strip()]
    valid = []
    for ref in refs:
        try:
            valid.append(validate_note_id(ref))
        except ValueError:
            logger.warning(f"Ignoring malformed ID '{ref}' in note {note_id}")
    return valid


def _apply_property(props: Dict[str, object], key: str, value: str, note_id: str) -> None:
    """Convert one textual property into its model value."""
    if key == "type":
        try:
            props["type"] = NoteType(value.strip().lower())
        except ValueError:
            logger.warning(f"Unknown note type '{value}' in note {note_id}, ignoring")
    elif key == "title":
        props["title"] = value or None
    elif key == "tags":
        props["tags"] = [tag.strip() for tag in value.split(",") if tag.strip()]
    elif key == "related":
        props["related"] = _parse_id_list(value, note_id)
    elif key == "parent":
        ids = _parse_id_list(value, note_id)
        if ids:
            props["parent"] = ids[0]
    elif key == "file":
        props["file"] = value or None
    elif key == "line":
        try:
            line = int(value)
        except ValueError:
            logger.warning(f"Ignoring non-numeric line '{value}' in note {note_id}")
            return
        if line < 0:
            logger.warning(f"Ignoring negative line {line} in note {note_id}")
            return
        props["line"] = line
    elif key == "author":
        props["author"] = _parse_author(value, note_id)


def _build_properties(
    props: Dict[str, object], note_id: str, line_number: int, output: "FormatParseOutput"
) -> Optional[NoteProperties]:
    """Validate collected properties, reporting a failure as a parse error."""
    try:
        return NoteProperties(**props)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        output.errors.append(
            ParseError(
                type=ParseErrorType.INVALID_FORMAT,
                line=line_number,
                message=f"Note {note_id} has invalid properties ({problems})",
            )
        )
        return None


def _next_nonblank(lines: List[ParsedLine], start: int, end: int) -> int:
    while start < end and lines[start].blank:
        start += 1
    return start


def _block_end(lines: List[ParsedLine], start: int, end: int) -> int:
    """Index of the first non-blank line after ``start`` not indented past it."""
    base = lines[start].indent
    i = start + 1
    while i < end:
        if not lines[i].blank and lines[i].indent <= base:
            break
        i += 1
    return i


class NoteParser:
    """Parses project notes files in either dialect."""

    detect_format = staticmethod(detect_format)
    parse_line = staticmethod(parse_line)
    parse_property = staticmethod(parse_property)
    is_note_block_start = staticmethod(is_note_block_start)
    extract_references = staticmethod(extract_references)

    def __init__(self, summary_length: int = 50):
        self.summary_length = summary_length

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def parse(self, text: str) -> ParseResult:
        """Parse a whole file into a ParseResult.

        The dialect is chosen before any line is parsed. Duplicate IDs keep
        their first occurrence; later ones are reported and left out along
        with everything nested inside them.
        """
        note_format = detect_format(text)
        lines = text.splitlines()
        if note_format == NoteFormat.LEGACY:
            output = self.parse_legacy_format(lines)
        else:
            output = self.parse_current_format(lines)

        errors = list(output.errors)
        warnings = list(output.warnings)

        notes: Dict[str, Note] = {}
        start_lines: Dict[str, int] = {}
        excluded: Set[int] = set()
        for note, line in output.located:
            if id(note) in excluded:
                continue
            if note.id in notes:
                subtree = list(note.walk())
                excluded.update(id(item) for item in subtree)
                message = (
                    f"Duplicate note ID: {note.id} "
                    f"(first defined on line {start_lines[note.id]})"
                )
                if len(subtree) > 1:
                    message += f"; {len(subtree) - 1} nested note(s) dropped with it"
                errors.append(
                    ParseError(type=ParseErrorType.DUPLICATE_ID, line=line, message=message)
                )
                continue
            notes[note.id] = note
            start_lines[note.id] = line

        if excluded:
            for note in notes.values():
                if any(id(child) in excluded for child in note.children):
                    note.children = [c for c in note.children if id(c) not in excluded]

        links = BacklinkManager()
        links.rebuild_all(notes.values())
        forward_links = links.forward_map()
        backward_links = links.backward_map()

        for source, targets in forward_links.items():
            for target in targets:
                if target not in notes:
                    warnings.append(
                        ParseWarning(
                            type=ParseWarningType.ORPHAN_REFERENCE,
                            line=start_lines.get(source, 0),
                            message=f"Note {source} references non-existent note {target}",
                        )
                    )

        project_root = output.project_root
        if project_root is not None:
            project_root.map = build_map_section(
                notes.values(),
                {note_id: len(sources) for note_id, sources in backward_links.items()},
                self.summary_length,
            )

        for note_id, note in notes.items():
            sources = backward_links.get(note_id, [])
            note.properties.backlinks = list(sources)
            note.properties.backlink_count = len(sources)

        if errors or warnings:
            logger.info(
                f"Parsed {len(notes)} notes ({note_format.value} format) with "
                f"{len(errors)} errors and {len(warnings)} warnings"
            )

        return ParseResult(
            project_root=project_root,
            notes=notes,
            forward_links=forward_links,
            backward_links=backward_links,
            errors=errors,
            warnings=warnings,
            format=note_format,
        )

    # ------------------------------------------------------------------
    # Current format
    # ------------------------------------------------------------------

    def parse_current_format(self, lines: List[str]) -> FormatParseOutput:
        """Parse bullet + indent text."""
        parsed = [parse_line(line, number) for number, line in enumerate(lines, start=1)]
        output = FormatParseOutput()
        end = len(parsed)

        project_name: Optional[str] = None
        project_created: Optional[datetime.date] = None
        project_notes: List[NoteLine] = []
        saw_project = False
        current_file: Optional[str] = None

        i = 0
        while i < end:
            line = parsed[i]
            if line.blank:
                i += 1
                continue

            if line.indent == 0:
                stripped = line.raw.strip()
                if PROJECT_TITLE.match(stripped):
                    i += 1
                    continue
                name_match = PROJECT_NAME.match(stripped)
                if name_match:
                    project_name = name_match.group(1).strip()
                    saw_project = True
                    i += 1
                    continue
                created_match = PROJECT_CREATED.match(stripped)
                if created_match:
                    project_created = _parse_date(created_match.group(1))
                    if project_created is None:
                        output.errors.append(
                            ParseError(
                                type=ParseErrorType.INVALID_FORMAT,
                                line=line.line_number,
                                message=f"Invalid project creation date: {created_match.group(1)}",
                            )
                        )
                    saw_project = True
                    i += 1
                    continue
                if PROJECT_NOTES.match(stripped):
                    block_end = _block_end(parsed, i, end)
                    for item in parsed[i + 1:block_end]:
                        if not item.blank:
                            project_notes.append(
                                NoteLine(indent=max(0, item.indent - 1), content=item.content)
                            )
                    saw_project = True
                    i = block_end
                    continue
                if MAP_SECTION.match(stripped):
                    # Derived index; rebuilt from the notes
                    i = _block_end(parsed, i, end)
                    continue
                file_match = FILE_SECTION.match(stripped)
                if file_match:
                    current_file = file_match.group(1)
                    i += 1
                    continue

            note_id = is_note_block_start(line.content) if line.is_bullet else None
            if note_id is None:
                output.errors.append(
                    ParseError(
                        type=ParseErrorType.INVALID_FORMAT,
                        line=line.line_number,
                        message=f"Unexpected line outside any note: {line.raw.strip()[:60]}",
                    )
                )
                i = _block_end(parsed, i, end) if line.indent == 0 else i + 1
                continue

            block_end = _block_end(parsed, i, end)
            if current_file is None or line.indent == 0:
                output.errors.append(
                    ParseError(
                        type=ParseErrorType.INVALID_FORMAT,
                        line=line.line_number,
                        message=f"Note {note_id} is not inside a '- ## file' section",
                    )
                )
                i = block_end
                continue
            if line.indent != 1:
                output.warnings.append(
                    ParseWarning(
                        type=ParseWarningType.NESTING_MISMATCH,
                        line=line.line_number,
                        message=f"Note {note_id} is indented {line.indent} levels; expected 1",
                    )
                )
            note = self._parse_block(parsed, i, block_end, current_file, None, output)
            if note is not None:
                output.notes.append(note)
            i = block_end

        if saw_project:
            output.project_root = ProjectRoot(
                name=project_name or "Unnamed",
                created=project_created or utc_today(),
                project_notes=project_notes,
            )
        return output

    def parse_note_block(
        self,
        lines: List[str],
        start_line: int = 0,
        file: str = "",
        parent_id: Optional[str] = None,
    ) -> Optional[Note]:
        """Parse a single current-format note block.

        Args:
            lines: The block's physical lines, title line first.
            start_line: Line number of the first line in its file, used to
                number diagnostics.
            file: Source file the note belongs to.
            parent_id: ID of the enclosing note, if any.

        Returns:
            The note with its children, or None if the block is malformed.
        """
        parsed = [
            parse_line(line, start_line + offset) for offset, line in enumerate(lines)
        ]
        first = _next_nonblank(parsed, 0, len(parsed))
        if first >= len(parsed) or not parsed[first].is_bullet:
            return None
        if is_note_block_start(parsed[first].content) is None:
            return None
        end = _block_end(parsed, first, len(parsed))
        output = FormatParseOutput()
        note = self._parse_block(parsed, first, end, file or None, parent_id, output)
        for error in output.errors:
            logger.debug(f"parse_note_block: {error.message}")
        return note

    def _is_child_start(self, lines: List[ParsedLine], index: int, end: int) -> bool:
        """A title line counts as a child block only if metadata follows it."""
        line = lines[index]
        if not line.is_bullet or is_note_block_start(line.content) is None:
            return False
        nxt = _next_nonblank(lines, index + 1, end)
        if nxt >= end:
            return False
        meta_line = lines[nxt]
        return (
            meta_line.is_bullet
            and meta_line.indent > line.indent
            and NOTE_META.match(meta_line.content) is not None
        )

    def _parse_block(
        self,
        lines: List[ParsedLine],
        start: int,
        end: int,
        file: Optional[str],
        parent_id: Optional[str],
        output: FormatParseOutput,
    ) -> Optional[Note]:
        title = lines[start]
        note_id = is_note_block_start(title.content)
        base = title.indent

        meta_index = _next_nonblank(lines, start + 1, end)
        meta_match = None
        if meta_index < end and lines[meta_index].is_bullet:
            meta_match = NOTE_META.match(lines[meta_index].content)
        created = _parse_date(meta_match.group(2)) if meta_match else None
        if meta_match is None or created is None:
            output.errors.append(
                ParseError(
                    type=ParseErrorType.MISSING_REQUIRED,
                    line=title.line_number,
                    message=f"Note {note_id} has no valid 'author · date' metadata line",
                )
            )
            return None

        props: Dict[str, object] = {
            "id": note_id,
            "file": file,
            "author": _parse_author(meta_match.group(1), note_id),
            "created": created,
        }
        if meta_match.group(3):
            props["line"] = int(meta_match.group(3))

        j = meta_index + 1
        seen_keys: Set[str] = set()
        while j < end:
            line = lines[j]
            if line.blank:
                j += 1
                continue
            if line.indent != base + 1 or not line.is_bullet:
                break
            prop = parse_property(line.content)
            if prop is None or prop[0] not in HEADER_PROPERTIES or prop[0] in seen_keys:
                break
            seen_keys.add(prop[0])
            _apply_property(props, prop[0], prop[1], note_id)
            j += 1

        declared_parent = props.pop("parent", None)
        if parent_id is not None:
            if declared_parent is not None and declared_parent != parent_id:
                output.warnings.append(
                    ParseWarning(
                        type=ParseWarningType.NESTING_MISMATCH,
                        line=title.line_number,
                        message=(
                            f"Note {note_id} declares parent {declared_parent} "
                            f"but is nested under {parent_id}"
                        ),
                    )
                )
            props["parent"] = parent_id
        elif declared_parent is not None:
            props["parent"] = declared_parent

        properties = _build_properties(props, note_id, title.line_number, output)
        if properties is None:
            return None
        note = Note(properties=properties)
        output.located.append((note, title.line_number))

        while j < end:
            line = lines[j]
            if line.blank:
                j += 1
                continue
            if line.indent > base and self._is_child_start(lines, j, end):
                child_end = _block_end(lines, j, end)
                if line.indent != base + 1:
                    output.warnings.append(
                        ParseWarning(
                            type=ParseWarningType.NESTING_MISMATCH,
                            line=line.line_number,
                            message=(
                                f"Child note {is_note_block_start(line.content)} is "
                                f"{line.indent - base} levels below {note_id}; expected 1"
                            ),
                        )
                    )
                child = self._parse_block(lines, j, child_end, file, note_id, output)
                if child is not None:
                    note.children.append(child)
                j = child_end
                continue
            note.content.append(
                NoteLine(indent=max(0, line.indent - base - 1), content=line.content)
            )
            j += 1

        return note

    # ------------------------------------------------------------------
    # Legacy format
    # ------------------------------------------------------------------

    def parse_legacy_format(self, lines: List[str]) -> FormatParseOutput:
        """Parse Logseq-style property blocks.

        Each top-level bullet opens a block; its ``key:: value`` lines come
        first, then bullet content. Nesting comes from ``parent::``.
        """
        parsed = [parse_line(line, number) for number, line in enumerate(lines, start=1)]
        output = FormatParseOutput()
        end = len(parsed)
        first_by_id: Dict[str, Note] = {}

        i = 0
        while i < end:
            line = parsed[i]
            if line.blank or line.indent != 0 or not line.is_bullet:
                i += 1
                continue
            block_end = _block_end(parsed, i, end)
            body = parsed[i + 1:block_end]

            raw_props: Dict[str, str] = {}
            content_start = len(body)
            for offset, item in enumerate(body):
                if item.blank:
                    continue
                if item.is_bullet:
                    content_start = offset
                    break
                prop = parse_property(item.content)
                if prop is not None:
                    raw_props.setdefault(prop[0], prop[1])

            if raw_props.get("id") == "project-root":
                output.project_root = ProjectRoot(
                    name=raw_props.get("name") or "Unnamed",
                    created=_parse_date(raw_props.get("created", "")) or utc_today(),
                    project_notes=[
                        NoteLine(indent=max(0, item.indent - 1), content=item.content)
                        for item in body[content_start:]
                        if item.is_bullet
                    ],
                )
                i = block_end
                continue

            start_match = LEGACY_NOTE_START.match(line.raw.strip())
            if start_match is None:
                i = block_end
                continue
            note_id = start_match.group(1)
            note = self._build_legacy_note(
                note_id, raw_props, body[content_start:], line.line_number, output
            )
            if note is not None:
                output.located.append((note, line.line_number))
                first_by_id.setdefault(note.id, note)
            i = block_end

        self._attach_legacy_children(output, first_by_id)
        return output

    def _build_legacy_note(
        self,
        note_id: str,
        raw_props: Dict[str, str],
        content: List[ParsedLine],
        line_number: int,
        output: FormatParseOutput,
    ) -> Optional[Note]:
        declared_id = raw_props.get("id")
        if declared_id and declared_id != note_id:
            logger.warning(
                f"Block {note_id} declares id:: {declared_id}; using the block title"
            )
        created = _parse_date(raw_props.get("created", ""))
        if created is None:
            output.errors.append(
                ParseError(
                    type=ParseErrorType.MISSING_REQUIRED,
                    line=line_number,
                    message=f"Note {note_id} is missing a valid 'created::' property",
                )
            )
            return None

        props: Dict[str, object] = {"id": note_id, "created": created}
        for key in ("file", "line", "author", "parent", "related", "type", "title", "tags"):
            if key in raw_props:
                _apply_property(props, key, raw_props[key], note_id)
        if props.get("parent") == note_id:
            props.pop("parent")

        properties = _build_properties(props, note_id, line_number, output)
        if properties is None:
            return None
        note = Note(properties=properties)
        for item in content:
            if item.is_bullet and item.indent >= 1:
                note.content.append(NoteLine(indent=item.indent - 1, content=item.content))
        return note

    def _attach_legacy_children(
        self, output: FormatParseOutput, first_by_id: Dict[str, Note]
    ) -> None:
        """Build the tree from ``parent`` properties, refusing cycles."""
        for note, line_number in output.located:
            parent_id = note.properties.parent
            if parent_id is None:
                output.notes.append(note)
                continue
            parent = first_by_id.get(parent_id)
            if parent is None:
                output.warnings.append(
                    ParseWarning(
                        type=ParseWarningType.NESTING_MISMATCH,
                        line=line_number,
                        message=f"Note {note.id} declares unknown parent {parent_id}",
                    )
                )
                output.notes.append(note)
                continue
            if self._creates_cycle(note, parent, first_by_id):
                output.warnings.append(
                    ParseWarning(
                        type=ParseWarningType.NESTING_MISMATCH,
                        line=line_number,
                        message=f"Parent {parent_id} of {note.id} would form a cycle; ignored",
                    )
                )
                note.properties.parent = None
                output.notes.append(note)
                continue
            if (
                note.properties.file is not None
                and parent.properties.file != note.properties.file
            ):
                output.warnings.append(
                    ParseWarning(
                        type=ParseWarningType.NESTING_MISMATCH,
                        line=line_number,
                        message=(
                            f"Note {note.id} is in {note.properties.file} but its parent "
                            f"{parent_id} is in {parent.properties.file}"
                        ),
                    )
                )
                note.properties.file = parent.properties.file
            parent.children.append(note)

        # Children inherit the file of a re-filed parent
        for note in output.notes:
            if note.properties.file is None:
                logger.warning(
                    f"Legacy note {note.id} has no file:: property; "
                    f"filing it under '{UNKNOWN_FILE}'"
                )
                note.properties.file = UNKNOWN_FILE
            for descendant in note.walk():
                for child in descendant.children:
                    child.properties.file = descendant.properties.file

    @staticmethod
    def _creates_cycle(note: Note, parent: Note, first_by_id: Dict[str, Note]) -> bool:
        seen = {note.id}
        current: Optional[Note] = parent
        while current is not None:
            if current.id in seen:
                return True
            seen.add(current.id)
            ancestor_id = current.properties.parent
            current = first_by_id.get(ancestor_id) if ancestor_id else None
        return False


# Convenience functions bound to a default parser
_default_parser = NoteParser()

parse = _default_parser.parse
parse_note_block = _default_parser.parse_note_block
parse_current_format = _default_parser.parse_current_format
parse_legacy_format = _default_parser.parse_legacy_format
