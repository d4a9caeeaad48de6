"""Serialization of the note model to the current on-disk format.

The writer is the inverse of the current-format parser. The legacy property
dialect is never written; a file loaded in that dialect is migrated on its
next save. Nesting is rebuilt from each note's ``parent`` property, so the
``children`` lists of the input notes are not consulted.

Layout::

    # Code-Mind Notes
    - Project: demo
    - Created: 2024-12-01

    - ## src/main.ts
      - [[cm.abc123]] First line of the note
        - human · 2024-12-01 · line 15
        - First line of the note
        - [[cm.def456]] A child note
          - ai · 2024-12-02
          - A child note
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from codemind.models.schema import (
    INDENT_UNIT,
    FileMapEntry,
    MapSection,
    Note,
    NoteLine,
    NoteMapEntry,
    NoteProperties,
    ProjectRoot,
)

logger = logging.getLogger(__name__)

FILE_TITLE = "# Code-Mind Notes"
UNKNOWN_FILE = "unknown"
METADATA_SEPARATOR = " · "


@dataclass
class WriteOptions:
    """Options controlling serialization."""

    sort_notes: bool = True
    include_map: bool = False
    summary_length: int = 50


def indent(level: int) -> str:
    return INDENT_UNIT * level


def group_notes_by_file(notes: Iterable[Note]) -> Dict[str, List[Note]]:
    """Group notes by source file, keeping input order within each file."""
    grouped: Dict[str, List[Note]] = {}
    for note in notes:
        grouped.setdefault(note.properties.file or UNKNOWN_FILE, []).append(note)
    return grouped


def get_summary(note: Note, max_length: int = 50) -> str:
    """First content line, truncated with ``...`` to ``max_length``."""
    if not note.content:
        return ""
    first_line = note.content[0].content.strip()
    if len(first_line) <= max_length:
        return first_line
    return first_line[: max_length - 3] + "..."


def format_metadata(props: NoteProperties) -> str:
    """Render ``author · date`` with an optional `` · line N``."""
    parts = [props.author.value, props.created.isoformat()]
    if props.line is not None:
        parts.append(f"line {props.line}")
    return METADATA_SEPARATOR.join(parts)


def format_header_properties(props: NoteProperties, explicit_parent: bool = False) -> List[str]:
    """Optional ``key:: value`` lines written right after the metadata line."""
    lines = []
    if props.type is not None:
        lines.append(f"type:: {props.type.value}")
    if props.title:
        lines.append(f"title:: {props.title}")
    if props.tags:
        lines.append(f"tags:: {', '.join(props.tags)}")
    if props.related:
        lines.append("related:: " + ", ".join(f"[[{ref}]]" for ref in props.related))
    if explicit_parent and props.parent:
        lines.append(f"parent:: {props.parent}")
    return lines


def serialize_content(content: Iterable[NoteLine], base_indent: int) -> List[str]:
    """Render content lines as bullets below ``base_indent``."""
    return [f"{indent(base_indent + line.indent)}- {line.content}" for line in content]


def serialize_note(
    note: Note,
    base_indent: int = 1,
    children_of: Optional[Mapping[str, List[Note]]] = None,
    summary_length: int = 50,
    nested: bool = False,
) -> str:
    """Render one note block and, recursively, its children.

    Args:
        note: The note to render.
        base_indent: Indent level of the note's title line.
        children_of: Parent ID to children mapping. Defaults to each
            note's own ``children`` list.
        summary_length: Maximum title summary length.
        nested: Whether the note is rendered inside its parent. A top-level
            note that still names a parent keeps it as a ``parent::`` line.
    """
    return "\n".join(
        _serialize_note_lines(note, base_indent, children_of, summary_length, nested, set())
    )


def _serialize_note_lines(
    note: Note,
    base_indent: int,
    children_of: Optional[Mapping[str, List[Note]]],
    summary_length: int,
    nested: bool,
    seen: set,
) -> List[str]:
    seen.add(note.id)
    summary = get_summary(note, summary_length)
    title_suffix = f" {summary}" if summary else ""
    lines = [f"{indent(base_indent)}- [[{note.id}]]{title_suffix}"]
    lines.append(f"{indent(base_indent + 1)}- {format_metadata(note.properties)}")
    for prop in format_header_properties(note.properties, explicit_parent=not nested):
        lines.append(f"{indent(base_indent + 1)}- {prop}")
    lines.extend(serialize_content(note.content, base_indent + 1))

    children = children_of.get(note.id, []) if children_of is not None else note.children
    for child in children:
        if child.id in seen:
            logger.warning(f"Skipping {child.id}: already written (parent cycle)")
            continue
        lines.extend(
            _serialize_note_lines(child, base_indent + 1, children_of, summary_length, True, seen)
        )
    return lines


def serialize_project_header(project_root: Optional[ProjectRoot]) -> str:
    """Render the file title, project name, creation date and project notes."""
    if project_root is None:
        return FILE_TITLE
    lines = [
        FILE_TITLE,
        f"- Project: {project_root.name}",
        f"- Created: {project_root.created.isoformat()}",
    ]
    if project_root.project_notes:
        lines.append("")
        lines.append("- Project Notes")
        lines.extend(serialize_content(project_root.project_notes, 1))
    return "\n".join(lines)


def build_hierarchy(notes: Iterable[Note]) -> Tuple[List[Note], Dict[str, List[Note]]]:
    """Split a flat note collection into top-level notes and a children index.

    A note whose parent is missing from the collection, or whose parent
    chain loops, is treated as top-level.
    """
    notes = list(notes)
    by_id = {note.id: note for note in notes}
    children_of: Dict[str, List[Note]] = defaultdict(list)
    top_level: List[Note] = []

    for note in notes:
        parent = note.properties.parent
        if parent and parent in by_id and parent != note.id:
            children_of[parent].append(note)
        else:
            if parent:
                logger.warning(
                    f"Parent {parent} of {note.id} is not in the note set; "
                    "writing it at top level"
                )
            top_level.append(note)

    reachable = set()
    stack = list(top_level)
    while stack:
        current = stack.pop()
        if current.id in reachable:
            continue
        reachable.add(current.id)
        stack.extend(children_of.get(current.id, []))
    for note in notes:
        if note.id not in reachable:
            logger.warning(f"Note {note.id} sits in a parent cycle; writing it at top level")
            top_level.append(note)
            reachable.update(n.id for n in _descendants(note, children_of))

    return top_level, dict(children_of)


def _descendants(note: Note, children_of: Mapping[str, List[Note]]) -> List[Note]:
    found: List[Note] = []
    stack = [note]
    seen = set()
    while stack:
        current = stack.pop()
        if current.id in seen:
            continue
        seen.add(current.id)
        found.append(current)
        stack.extend(children_of.get(current.id, []))
    return found


def _sort_key(note: Note) -> str:
    return note.id


def build_map_section(
    notes: Iterable[Note],
    backlink_counts: Optional[Mapping[str, int]] = None,
    summary_length: int = 50,
) -> MapSection:
    """Derive the navigable file → note index from the notes."""
    top_level, children_of = build_hierarchy(notes)

    def entry(note: Note, seen: set) -> NoteMapEntry:
        seen.add(note.id)
        count = (
            backlink_counts.get(note.id, 0)
            if backlink_counts is not None
            else note.properties.backlink_count
        )
        return NoteMapEntry(
            id=note.id,
            display_path=note.display_path,
            summary=get_summary(note, summary_length),
            backlink_count=count,
            children=[
                entry(child, seen)
                for child in children_of.get(note.id, [])
                if child.id not in seen
            ],
        )

    grouped = group_notes_by_file(top_level)
    seen: set = set()
    files = [
        FileMapEntry(
            file=file,
            notes=[entry(note, seen) for note in sorted(grouped[file], key=_sort_key)],
        )
        for file in sorted(grouped)
    ]
    return MapSection(collapsed=True, files=files)


def generate_map(
    notes: Iterable[Note],
    backlink_counts: Optional[Mapping[str, int]] = None,
    summary_length: int = 50,
) -> str:
    """Render the map block. The parser skips it when reading."""
    section = build_map_section(notes, backlink_counts, summary_length)
    lines = ["- Map"]

    def render(entry: NoteMapEntry, level: int) -> None:
        text = f"{indent(level)}- [[{entry.id}]] {entry.display_path}"
        if entry.summary:
            text += f": {entry.summary}"
        if entry.backlink_count:
            text += f" ({entry.backlink_count} backlinks)"
        lines.append(text)
        for child in entry.children:
            render(child, level + 1)

    for file_entry in section.files:
        lines.append(f"{indent(1)}- {file_entry.file}")
        for note_entry in file_entry.notes:
            render(note_entry, 2)
    return "\n".join(lines)


class NoteWriter:
    """Writes a project root and its notes in the current format."""

    def __init__(self, options: Optional[WriteOptions] = None):
        self.options = options or WriteOptions()

    def write(
        self,
        project_root: Optional[ProjectRoot],
        notes: Iterable[Note],
        options: Optional[WriteOptions] = None,
    ) -> str:
        """Serialize the whole model.

        Args:
            project_root: Project metadata, or None for a bare file title.
            notes: Flat collection of every note; nesting comes from the
                ``parent`` property.
            options: Overrides the writer's default options.

        Returns:
            The file text, ending with a single newline.
        """
        opts = options or self.options
        notes = list(notes)
        top_level, children_of = build_hierarchy(notes)

        grouped = group_notes_by_file(top_level)
        if opts.sort_notes:
            grouped = {file: sorted(items, key=_sort_key) for file, items in grouped.items()}

        lines = [serialize_project_header(project_root)]
        for file in sorted(grouped):
            lines.append("")
            lines.append(f"- ## {file}")
            for note in grouped[file]:
                lines.append(
                    serialize_note(note, 1, children_of, opts.summary_length, nested=False)
                )

        if opts.include_map and notes:
            lines.append("")
            lines.append(generate_map(notes, summary_length=opts.summary_length))

        return "\n".join(lines).strip() + "\n"

    def serialize_note(self, note: Note, base_indent: int = 1) -> str:
        return serialize_note(note, base_indent, summary_length=self.options.summary_length)

    def generate_map(
        self, notes: Iterable[Note], backlink_counts: Optional[Mapping[str, int]] = None
    ) -> str:
        return generate_map(notes, backlink_counts, self.options.summary_length)
