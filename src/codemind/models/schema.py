"""Data models for the Code-Mind note engine."""

import datetime
from datetime import timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from codemind.ids import NOTE_ID_PATTERN, REF_PATTERN, generate_display_path

# Indentation unit used by the current on-disk format
INDENT_UNIT = "  "


def utc_today() -> datetime.date:
    """Get the current UTC date."""
    return datetime.datetime.now(timezone.utc).date()


def validate_note_id(value: str, field_name: str = "Note ID") -> str:
    """Validate that a value has the ``cm.<suffix>`` form.

    Raises:
        ValueError: If the value is empty or malformed.
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if not NOTE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} '{value}' is malformed; expected 'cm.' followed by "
            "lowercase letters and digits"
        )
    return value


class NoteAuthor(str, Enum):
    """Who wrote a note."""

    HUMAN = "human"
    AI = "ai"


class NoteType(str, Enum):
    """Kinds of notes."""

    NOTE = "note"
    MEMORY = "memory"  # Long-lived project memory, may carry title and tags


class NoteFormat(str, Enum):
    """On-disk dialects understood by the parser."""

    CURRENT = "current"  # Bullet + indent blocks
    LEGACY = "legacy"  # Flat ``key:: value`` property blocks, read-only


class NoteLine(BaseModel):
    """One logical content line of a note."""

    indent: int = Field(default=0, ge=0, description="Depth relative to the note")
    content: str = Field(default="", description="Raw line text")

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @property
    def references(self) -> List[str]:
        """Note IDs referenced in this line, re-extracted from the text."""
        return [m.group(1) for m in REF_PATTERN.finditer(self.content)]


class NoteProperties(BaseModel):
    """Metadata attached to a note."""

    id: str = Field(..., description="Immutable note ID")
    type: Optional[NoteType] = Field(default=None, description="Kind of note")
    file: Optional[str] = Field(default=None, description="Source file")
    line: Optional[int] = Field(default=None, ge=0, description="Source line")
    author: NoteAuthor = Field(default=NoteAuthor.HUMAN)
    created: datetime.date = Field(default_factory=utc_today)
    parent: Optional[str] = Field(default=None, description="Parent note ID")
    related: List[str] = Field(default_factory=list)
    title: Optional[str] = Field(default=None, description="Memory notes only")
    tags: List[str] = Field(default_factory=list, description="Memory notes only")
    # Derived cache, refreshed from the link graph
    backlinks: List[str] = Field(default_factory=list)
    backlink_count: int = Field(default=0, ge=0)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_note_id(v)

    @field_validator("parent")
    @classmethod
    def validate_parent(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return validate_note_id(v, "Parent ID")

    @field_validator("related")
    @classmethod
    def validate_related(cls, v: List[str]) -> List[str]:
        return [validate_note_id(item, "Related ID") for item in v]

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return [tag.strip() for tag in v if tag and tag.strip()]


class Note(BaseModel):
    """A note: properties, ordered content lines and nested child notes.

    ``children`` holds the very same objects that the flat ID map holds;
    the parent property is the source of truth for nesting.
    """

    properties: NoteProperties
    content: List[NoteLine] = Field(default_factory=list)
    children: List["Note"] = Field(default_factory=list)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @property
    def id(self) -> str:
        return self.properties.id

    @property
    def display_path(self) -> str:
        """Display path computed from file, ID and immediate parent."""
        return generate_display_path(
            self.properties.file or "unknown", self.properties.id, self.properties.parent
        )

    @property
    def references(self) -> List[str]:
        """All references in content order, duplicates included."""
        refs: List[str] = []
        for line in self.content:
            refs.extend(line.references)
        return refs

    def content_text(self) -> str:
        """Render content lines as text, two spaces per indent level."""
        return "\n".join(INDENT_UNIT * line.indent + line.content for line in self.content)

    def walk(self) -> Iterator["Note"]:
        """Yield this note and all its descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


class NoteMapEntry(BaseModel):
    """One note in the project map."""

    id: str
    display_path: str
    summary: str = ""
    backlink_count: int = 0
    children: List["NoteMapEntry"] = Field(default_factory=list)


class FileMapEntry(BaseModel):
    """All top-level notes of one file in the project map."""

    file: str
    notes: List[NoteMapEntry] = Field(default_factory=list)


class MapSection(BaseModel):
    """Navigable index of files to note summaries; derived from the notes."""

    collapsed: bool = True
    files: List[FileMapEntry] = Field(default_factory=list)


class ProjectRoot(BaseModel):
    """Project-level metadata, one per notes file."""

    name: str = Field(default="Unnamed")
    created: datetime.date = Field(default_factory=utc_today)
    project_notes: List[NoteLine] = Field(default_factory=list)
    map: MapSection = Field(default_factory=MapSection)

    model_config = {"validate_assignment": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Project name cannot be empty")
        return v.strip()


class ParseErrorType(str, Enum):
    DUPLICATE_ID = "duplicate_id"
    INVALID_FORMAT = "invalid_format"
    MISSING_REQUIRED = "missing_required"


class ParseWarningType(str, Enum):
    ORPHAN_REFERENCE = "orphan_reference"
    NESTING_MISMATCH = "nesting_mismatch"


class ParseError(BaseModel):
    """A parse problem that excluded a note from the model."""

    type: ParseErrorType
    line: int = Field(default=0, description="1-based line number, 0 if unknown")
    message: str

    model_config = {"frozen": True}


class ParseWarning(BaseModel):
    """An informational parse problem; the note stays in the model."""

    type: ParseWarningType
    line: int = 0
    message: str

    model_config = {"frozen": True}


class ParseResult(BaseModel):
    """Everything the parser produced from one file."""

    project_root: Optional[ProjectRoot] = None
    notes: Dict[str, Note] = Field(default_factory=dict)
    forward_links: Dict[str, List[str]] = Field(default_factory=dict)
    backward_links: Dict[str, List[str]] = Field(default_factory=dict)
    errors: List[ParseError] = Field(default_factory=list)
    warnings: List[ParseWarning] = Field(default_factory=list)
    format: NoteFormat = NoteFormat.CURRENT

    @property
    def ok(self) -> bool:
        return not self.errors


class LinkDirection(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class RelatedNote(BaseModel):
    """A note reached from another by following links."""

    note: Note
    direction: LinkDirection
    depth: int


class SearchMatch(BaseModel):
    """A term hit inside one content line."""

    line: int = Field(..., description="Index into the note's content lines")
    content: str
    highlight: Tuple[int, int]


class SearchResult(BaseModel):
    """A scored search hit."""

    note: Note
    matches: List[SearchMatch] = Field(default_factory=list)
    score: float = 0.0


class LinkEdge(BaseModel):
    """A directed reference from one note to another."""

    source: str
    target: str
    context: Optional[str] = Field(
        default=None, description="Content line where the reference appears"
    )

    model_config = {"frozen": True}


class LinkGraph(BaseModel):
    """Immutable snapshot of the link graph."""

    nodes: Tuple[str, ...] = ()
    edges: Tuple[LinkEdge, ...] = ()

    model_config = {"frozen": True}


Note.model_rebuild()
NoteMapEntry.model_rebuild()
