"""Forward/backward link graph derived from note content.

References are ``[[cm.xxx]]`` tokens in a note's content lines plus the IDs
listed in its ``related`` property. An edge (source, target) exists at most
once, however often the source mentions the target, so a repeated mention
counts once toward the target's backlink count. Backward links are kept as
the exact transpose of forward links at all times.
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from codemind.ids import REF_PATTERN
from codemind.models.schema import LinkEdge, LinkGraph, Note

logger = logging.getLogger(__name__)


def _references_with_context(text: str) -> List[Tuple[str, Optional[str]]]:
    """Ordered (target, line) pairs for every reference in ``text``."""
    found: List[Tuple[str, Optional[str]]] = []
    for line in text.split("\n"):
        for match in REF_PATTERN.finditer(line):
            found.append((match.group(1), line.strip()))
    return found


def _dedupe(pairs: Iterable[Tuple[str, Optional[str]]]) -> Dict[str, Optional[str]]:
    """Keep the first occurrence of each target, preserving order."""
    unique: Dict[str, Optional[str]] = {}
    for target, context in pairs:
        if target not in unique:
            unique[target] = context
    return unique


def _merge_targets(
    related: Iterable[str], content_pairs: List[Tuple[str, Optional[str]]]
) -> Dict[str, Optional[str]]:
    """Ordered targets, ``related`` first, each with its first content line."""
    first_context = _dedupe(content_pairs)
    ordered = _dedupe([(ref, None) for ref in related] + content_pairs)
    return {ref: first_context.get(ref) for ref in ordered}


def collect_references(note: Note) -> Dict[str, Optional[str]]:
    """All targets of a note, ``related`` first, then content order.

    Returns:
        Ordered mapping of target ID to the content line that first
        mentions it (None for targets only listed in ``related``).
    """
    content_pairs: List[Tuple[str, Optional[str]]] = [
        (ref, line.content.strip()) for line in note.content for ref in line.references
    ]
    return _merge_targets(note.properties.related, content_pairs)


class BacklinkManager:
    """Maintains forward and backward adjacency for the note forest.

    All reads are dictionary lookups against the maintained maps; nothing
    rescans note content except ``rebuild_all`` and ``update_for_note``.
    """

    def __init__(self):
        # note ID -> targets it references, in first-mention order
        self._forward: Dict[str, List[str]] = {}
        # note ID -> sources referencing it, in insertion order
        self._backward: Dict[str, List[str]] = {}
        self._contexts: Dict[Tuple[str, str], Optional[str]] = {}
        # Known notes, insertion ordered
        self._nodes: Dict[str, None] = {}

    # ------------------------------------------------------------------
    # Edge primitives
    # ------------------------------------------------------------------

    def _add_edge(self, source: str, target: str, context: Optional[str]) -> bool:
        targets = self._forward.setdefault(source, [])
        if target in targets:
            return False
        targets.append(target)
        self._backward.setdefault(target, []).append(source)
        self._contexts[(source, target)] = context
        return True

    def _remove_edge(self, source: str, target: str) -> bool:
        targets = self._forward.get(source)
        if not targets or target not in targets:
            return False
        targets.remove(target)
        if not targets:
            del self._forward[source]
        sources = self._backward.get(target, [])
        if source in sources:
            sources.remove(source)
        if not sources:
            self._backward.pop(target, None)
        self._contexts.pop((source, target), None)
        return True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def rebuild_all(self, notes: Iterable[Note]) -> None:
        """Recompute the whole graph from scratch.

        Accepts a flat collection, a list of top-level notes, or both;
        children are walked and every note is processed once.
        """
        self._forward.clear()
        self._backward.clear()
        self._contexts.clear()
        self._nodes.clear()

        ordered: List[Note] = []
        for note in notes:
            for item in note.walk():
                if item.id not in self._nodes:
                    self._nodes[item.id] = None
                    ordered.append(item)

        for note in ordered:
            for target, context in collect_references(note).items():
                self._add_edge(note.id, target, context)

        logger.debug(
            f"Rebuilt link graph: {len(self._nodes)} notes, "
            f"{sum(len(t) for t in self._forward.values())} edges"
        )

    def update_for_note(self, note: Note, old_content: str, new_content: str) -> List[str]:
        """Apply the link delta caused by a content change.

        Targets mentioned in ``old_content`` (or currently linked) that are
        neither in ``new_content`` nor in the note's ``related`` list lose
        their edge; new targets gain one.

        Returns:
            IDs whose backward-link set changed, in first-seen order.
        """
        note_id = note.id
        self._nodes.setdefault(note_id, None)

        new_refs = _merge_targets(
            note.properties.related, _references_with_context(new_content)
        )
        stale = _dedupe(
            _references_with_context(old_content)
            + [(ref, None) for ref in self._forward.get(note_id, [])]
        )

        affected: Dict[str, None] = {}
        for target in stale:
            if target not in new_refs and self._remove_edge(note_id, target):
                affected[target] = None
        for target, context in new_refs.items():
            if self._add_edge(note_id, target, context):
                affected[target] = None
            else:
                self._contexts[(note_id, target)] = context
        if new_refs:
            self._forward[note_id] = list(new_refs)

        return list(affected)

    def remove_note(self, note_id: str) -> List[str]:
        """Remove a note as both source and target.

        Returns:
            IDs of notes that lost an incoming edge from ``note_id``.
        """
        affected: List[str] = []
        for target in list(self._forward.get(note_id, [])):
            self._remove_edge(note_id, target)
            if target != note_id:
                affected.append(target)
        for source in list(self._backward.get(note_id, [])):
            self._remove_edge(source, note_id)
        self._nodes.pop(note_id, None)
        return affected

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_link_graph(self) -> LinkGraph:
        """Immutable snapshot of nodes and edges."""
        edges = tuple(
            LinkEdge(source=source, target=target, context=self._contexts.get((source, target)))
            for source, targets in self._forward.items()
            for target in targets
        )
        return LinkGraph(nodes=tuple(self._nodes), edges=edges)

    def get_forward_links(self, note_id: str) -> List[str]:
        return list(self._forward.get(note_id, ()))

    def get_backward_links(self, note_id: str) -> List[str]:
        return list(self._backward.get(note_id, ()))

    def get_backlink_count(self, note_id: str) -> int:
        return len(self._backward.get(note_id, ()))

    def has_node(self, note_id: str) -> bool:
        return note_id in self._nodes

    def forward_map(self) -> Dict[str, List[str]]:
        """Copy of all non-empty forward entries."""
        return {k: list(v) for k, v in self._forward.items() if v}

    def backward_map(self) -> Dict[str, List[str]]:
        """Copy of all non-empty backward entries."""
        return {k: list(v) for k, v in self._backward.items() if v}
