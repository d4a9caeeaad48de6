"""Tests for the NoteStore facade."""
import os

import pytest

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
from codemind.models.schema import LinkDirection, NoteAuthor, NoteFormat
from codemind.services.note_store import NoteStore, content_to_lines
from codemind.storage.note_parser import detect_format


def graph_state(store: NoteStore):
    result = store.get_parse_result()
    return sorted(result.notes), result.forward_links, result.backward_links


def assert_consistent(store: NoteStore):
    """Links are symmetric and every cached backlink count matches the graph."""
    result = store.get_parse_result()
    for source, targets in result.forward_links.items():
        for target in targets:
            assert source in result.backward_links[target]
    for target, sources in result.backward_links.items():
        for source in sources:
            assert target in result.forward_links[source]
    for note in store.get_all_notes():
        assert note.properties.backlink_count == len(result.backward_links.get(note.id, []))
        for child in note.children:
            assert child.properties.parent == note.id
            assert store.get_note(child.id) is child


class TestContentLines:
    """Tests for splitting note text into lines."""

    def test_indent_from_leading_spaces(self):
        lines = content_to_lines("top\n  nested\n    deeper\n")
        assert [(line.indent, line.content) for line in lines] == [
            (0, "top"),
            (1, "nested"),
            (2, "deeper"),
        ]

    def test_empty_content(self):
        assert content_to_lines("") == []
        assert content_to_lines("\n\n") == []

    @pytest.mark.parametrize("key", ["title", "type", "tags", "related", "parent"])
    def test_leading_property_line_rejected(self, key):
        with pytest.raises(ValidationError) as exc_info:
            content_to_lines(f"{key}:: not really a property\nmore")
        assert exc_info.value.field == "content"

    def test_property_like_lines_elsewhere_allowed(self):
        lines = content_to_lines("Intro\ntype:: fine here\n  parent:: nested")
        assert [line.content for line in lines] == ["Intro", "type:: fine here", "parent:: nested"]
        assert content_to_lines("  title:: indented")[0].indent == 1
        assert content_to_lines("file:: not a header key")[0].content == "file:: not a header key"


class TestLoading:
    """Tests for opening, saving and reloading."""

    def test_load_sample(self, store):
        assert len(store.get_all_notes()) == 3
        assert store.get_project_root().name == "demo"
        assert store.get_note("cm.def456").properties.backlink_count == 1
        assert not store.is_dirty

    def test_missing_file_starts_empty(self, empty_store):
        assert empty_store.get_all_notes() == []
        assert empty_store.get_project_root().name == "demo"
        assert not empty_store.path.exists()

    def test_missing_file_with_must_exist(self, project_dir):
        with pytest.raises(NoteFileNotFoundError) as exc_info:
            NoteStore(project_dir / "codemind.md", must_exist=True)
        assert exc_info.value.code == ErrorCode.FILE_NOT_FOUND

    def test_save_and_reopen(self, empty_store, id_generator):
        note = empty_store.add_note("src/app.py", "Remember the retry budget", line=12)
        assert empty_store.is_dirty
        empty_store.save()
        assert not empty_store.is_dirty

        reopened = NoteStore(empty_store.path, id_generator=id_generator, auto_save=False)
        loaded = reopened.get_note(note.id)
        assert loaded.properties.file == "src/app.py"
        assert loaded.properties.line == 12
        assert loaded.content_text() == "Remember the retry budget"
        assert not empty_store.path.with_name("codemind.md.tmp").exists()

    def test_auto_save(self, notes_path, id_generator):
        store = NoteStore(notes_path, id_generator=id_generator, auto_save=True)
        note = store.add_note("src/app.py", "Saved straight away")
        assert note.id in notes_path.read_text(encoding="utf-8")
        assert not store.is_dirty

    def test_without_auto_save_nothing_is_written(self, store, notes_path):
        before = notes_path.read_text(encoding="utf-8")
        store.add_note("src/app.py", "Only in memory")
        assert notes_path.read_text(encoding="utf-8") == before

    def test_save_failure_raises_storage_error(self, store, monkeypatch):
        def fail(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail)
        store.add_note("src/app.py", "Cannot be written")
        with pytest.raises(StorageError) as exc_info:
            store.save()
        assert exc_info.value.code == ErrorCode.FILE_WRITE_FAILED
        assert exc_info.value.operation == "save"
        assert store.is_dirty

    def test_reload_discards_unsaved_changes(self, store):
        note = store.add_note("src/app.py", "Transient")
        store.reload()
        assert store.get_note(note.id) is None
        assert len(store.get_all_notes()) == 3
        assert not store.is_dirty

    def test_reload_missing_file(self, empty_store):
        with pytest.raises(NoteFileNotFoundError):
            empty_store.reload()

    def test_legacy_file_migrates_on_save(self, project_dir, legacy_text, id_generator):
        path = project_dir / "codemind.md"
        path.write_text(legacy_text, encoding="utf-8")
        store = NoteStore(path, id_generator=id_generator, auto_save=False)
        assert store.get_parse_result().format == NoteFormat.LEGACY
        store.save()
        assert detect_format(path.read_text(encoding="utf-8")) == NoteFormat.CURRENT
        store.reload()
        assert store.get_note("cm.bbb222").properties.parent == "cm.aaa111"


class TestReads:
    """Tests for lookups and queries."""

    def test_get_note_by_path(self, store):
        assert store.get_note_by_path("src/main.ts/abc123/ghi789").id == "cm.ghi789"
        assert store.get_note_by_path("src/parser.ts/def456").id == "cm.def456"
        assert store.get_note_by_path("src/main.ts/def456") is None

    def test_get_notes_in_file(self, store):
        ids = [note.id for note in store.get_notes_in_file("src/main.ts")]
        assert ids == ["cm.abc123", "cm.ghi789"]

    def test_get_children(self, store):
        assert [n.id for n in store.get_children("cm.abc123")] == ["cm.ghi789"]
        with pytest.raises(NoteNotFoundError):
            store.get_children("cm.zzz999")

    def test_get_backlinks(self, store):
        assert [n.id for n in store.get_backlinks("cm.def456")] == ["cm.abc123"]
        assert store.get_backlinks("cm.abc123") == []

    def test_orphans(self, store):
        """Orphans have no backlinks and no parent."""
        assert [n.id for n in store.get_orphans()] == ["cm.abc123"]
        note = store.add_note("src/app.py", "Nobody points here")
        assert {n.id for n in store.get_orphans()} == {"cm.abc123", note.id}

    def test_popular(self, store):
        store.add_note("src/app.py", "Also uses [[cm.def456]] and [[cm.ghi789]]")
        popular = store.get_popular()
        assert [n.id for n in popular] == ["cm.def456", "cm.ghi789"]
        assert [n.id for n in store.get_popular(limit=1)] == ["cm.def456"]

    def test_link_graph(self, store):
        graph = store.get_link_graph()
        assert set(graph.nodes) == {"cm.abc123", "cm.def456", "cm.ghi789"}
        assert [(e.source, e.target) for e in graph.edges] == [("cm.abc123", "cm.def456")]


class TestRelated:
    """Tests for link traversal."""

    @pytest.fixture
    def chain(self, empty_store):
        """a -> b -> c -> d -> a"""
        empty_store.add_note("x.ts", "[[cm.bbb222]]", note_id="cm.aaa111")
        empty_store.add_note("x.ts", "[[cm.ccc333]]", note_id="cm.bbb222")
        empty_store.add_note("x.ts", "[[cm.ddd444]]", note_id="cm.ccc333")
        empty_store.add_note("x.ts", "[[cm.aaa111]]", note_id="cm.ddd444")
        return empty_store

    def test_depth_one(self, chain):
        related = chain.get_related("cm.aaa111", depth=1)
        assert [(r.note.id, r.direction, r.depth) for r in related] == [
            ("cm.bbb222", LinkDirection.OUTGOING, 1),
            ("cm.ddd444", LinkDirection.INCOMING, 1),
        ]

    def test_depth_two_visits_each_note_once(self, chain):
        related = chain.get_related("cm.aaa111", depth=2)
        assert [(r.note.id, r.depth) for r in related] == [
            ("cm.bbb222", 1),
            ("cm.ddd444", 1),
            ("cm.ccc333", 2),
        ]

    def test_depth_bound(self, chain):
        for depth in range(4):
            assert all(r.depth <= depth for r in chain.get_related("cm.aaa111", depth=depth))

    def test_depth_zero(self, chain):
        assert chain.get_related("cm.aaa111", depth=0) == []

    def test_unknown_targets_skipped(self, empty_store):
        empty_store.add_note("x.ts", "[[cm.zzz999]]", note_id="cm.aaa111")
        assert empty_store.get_related("cm.aaa111", depth=2) == []

    def test_invalid_arguments(self, chain):
        with pytest.raises(ValidationError):
            chain.get_related("cm.aaa111", depth=-1)
        with pytest.raises(NoteNotFoundError):
            chain.get_related("cm.zzz999")


class TestSearch:
    """Tests for keyword search."""

    def test_ranking(self, store):
        results = store.search("parser")
        assert [r.note.id for r in results] == ["cm.def456", "cm.abc123"]
        assert results[0].score == pytest.approx(1.6)
        assert results[1].score == pytest.approx(1.0)
        assert results[0].matches[0].highlight == (0, 6)
        assert results[1].matches[0].content == "See [[cm.def456]] for the parser"

    def test_whole_line_bonus(self, store):
        results = store.search("nested DETAIL")
        assert results[0].note.id == "cm.ghi789"
        assert results[0].score == pytest.approx(4.0)

    def test_limit_and_empty_query(self, store):
        assert len(store.search("parser", limit=1)) == 1
        assert store.search("   ") == []
        assert store.search("nonexistent") == []


class TestAddNote:
    """Tests for creating notes."""

    def test_add_top_level(self, empty_store):
        note = empty_store.add_note(
            "src/app.py", "Hello\n  details", line=3, author=NoteAuthor.AI
        )
        assert empty_store.get_note(note.id) is note
        assert note.properties.author == NoteAuthor.AI
        assert note.display_path == f"src/app.py/{note.id[3:]}"
        assert [(l.indent, l.content) for l in note.content] == [(0, "Hello"), (1, "details")]

    def test_add_with_missing_parent_leaves_model_unchanged(self, store):
        before = graph_state(store)
        with pytest.raises(ParentNotFoundError) as exc_info:
            store.add_note("src.ts", "hello", parent_id="cm.zzz999")
        assert exc_info.value.code == ErrorCode.NOTE_PARENT_NOT_FOUND
        assert graph_state(store) == before
        assert not store.is_dirty

    def test_child_inherits_parent_file(self, store):
        child = store.add_note("", "Child", parent_id="cm.abc123")
        assert child.properties.file == "src/main.ts"
        assert child.properties.parent == "cm.abc123"
        assert store.get_children("cm.abc123")[-1] is child
        assert child.display_path == f"src/main.ts/abc123/{child.id[3:]}"
        assert_consistent(store)

    def test_child_in_other_file_rejected(self, store):
        with pytest.raises(ValidationError):
            store.add_note("src/other.ts", "Child", parent_id="cm.abc123")

    def test_explicit_ids(self, store):
        with pytest.raises(NoteAlreadyExistsError):
            store.add_note("src/app.py", "Dup", note_id="cm.abc123")
        with pytest.raises(ValidationError):
            store.add_note("src/app.py", "Bad", note_id="not-an-id")
        note = store.add_note("src/app.py", "Chosen", note_id="cm.chosen1")
        assert note.id == "cm.chosen1"

    def test_add_updates_backlinks(self, store):
        store.add_note("src/app.py", "Also see [[cm.def456]]", related=["cm.abc123"])
        assert store.get_note("cm.def456").properties.backlink_count == 2
        assert store.get_note("cm.abc123").properties.backlink_count == 1
        assert_consistent(store)

    def test_file_required(self, store):
        with pytest.raises(ValidationError):
            store.add_note("", "No file")

    def test_property_line_content_rejected(self, store):
        before = graph_state(store)
        with pytest.raises(ValidationError):
            store.add_note("src/app.py", "title:: lost on reload")
        assert graph_state(store) == before
        assert not store.is_dirty

    def test_property_like_content_survives_reload(self, store):
        content = "Header notes\ntitle:: kept as text\n  tags:: also text"
        note = store.add_note("src/app.py", content)
        store.save()
        store.reload()
        assert store.get_note(note.id).content_text() == content


class TestUpdateNote:
    """Tests for content updates."""

    def test_removing_only_reference(self, store):
        note, affected = store.update_note_with_affected("cm.abc123", "Entry point wiring")
        assert affected == ["cm.def456"]
        assert store.get_note("cm.def456").properties.backlink_count == 0
        assert store.last_affected_ids == ["cm.def456"]
        assert note.content_text() == "Entry point wiring"
        assert_consistent(store)

    def test_update_note_returns_note(self, store):
        note = store.update_note("cm.def456", "Parser notes\nsee [[cm.ghi789]]")
        assert note.id == "cm.def456"
        assert store.last_affected_ids == ["cm.ghi789"]
        assert store.get_note("cm.ghi789").properties.backlinks == ["cm.def456"]
        assert store.is_dirty

    def test_update_missing_note(self, store):
        with pytest.raises(NoteNotFoundError):
            store.update_note("cm.zzz999", "text")

    def test_update_with_property_line_rejected(self, store):
        with pytest.raises(ValidationError):
            store.update_note("cm.def456", "parent:: cm.abc123")
        assert store.get_note("cm.def456").content_text() == "Parser notes"
        assert store.get_note("cm.def456").properties.parent is None
        assert not store.is_dirty


class TestDeleteNote:
    """Tests for deletion."""

    def test_delete_with_descendants(self, store):
        deleted = store.delete_note("cm.abc123")
        assert deleted == ["cm.abc123", "cm.ghi789"]
        assert store.get_note("cm.abc123") is None
        assert store.get_note("cm.ghi789") is None
        assert store.get_note("cm.def456").properties.backlink_count == 0

        result = store.get_parse_result()
        for note_id in deleted:
            assert note_id not in result.forward_links
            assert note_id not in result.backward_links
            for links in list(result.forward_links.values()) + list(
                result.backward_links.values()
            ):
                assert note_id not in links
        assert_consistent(store)

    def test_delete_referenced_note_keeps_text(self, store):
        store.delete_note("cm.def456")
        source = store.get_note("cm.abc123")
        assert "[[cm.def456]]" in source.content_text()
        assert store.get_parse_result().forward_links == {}

    def test_delete_child_updates_parent(self, store):
        store.delete_note("cm.ghi789")
        assert store.get_children("cm.abc123") == []

    def test_delete_missing_note(self, store):
        with pytest.raises(NoteNotFoundError):
            store.delete_note("cm.zzz999")


class TestMoveNote:
    """Tests for moving and reparenting."""

    def test_move_changes_file_and_line(self, store):
        before = graph_state(store)
        note = store.move_note("cm.def456", "src/other.ts", new_line=9)
        assert note.properties.file == "src/other.ts"
        assert note.properties.line == 9
        assert note.display_path == "src/other.ts/def456"
        assert graph_state(store) == before

    def test_move_carries_descendants(self, store):
        store.move_note("cm.abc123", "src/new.ts")
        assert store.get_note("cm.ghi789").properties.file == "src/new.ts"
        assert store.get_note("cm.ghi789").display_path == "src/new.ts/abc123/ghi789"

    def test_nested_note_to_other_file_is_detached(self, store):
        note = store.move_note("cm.ghi789", "src/b.ts")
        assert note.properties.parent is None
        assert store.get_children("cm.abc123") == []
        assert_consistent(store)

    def test_reparent(self, store):
        store.move_note("cm.def456", "src/main.ts", new_parent_id="cm.abc123")
        assert store.get_note("cm.def456").properties.parent == "cm.abc123"
        assert [n.id for n in store.get_children("cm.abc123")] == ["cm.ghi789", "cm.def456"]
        assert_consistent(store)

    def test_reparent_under_descendant_rejected(self, store):
        with pytest.raises(CircularReferenceError):
            store.move_note("cm.abc123", "src/main.ts", new_parent_id="cm.ghi789")
        with pytest.raises(CircularReferenceError):
            store.move_note("cm.abc123", "src/main.ts", new_parent_id="cm.abc123")
        assert store.get_note("cm.abc123").properties.parent is None

    def test_reparent_errors(self, store):
        with pytest.raises(ParentNotFoundError):
            store.move_note("cm.def456", "src/main.ts", new_parent_id="cm.zzz999")
        with pytest.raises(ValidationError):
            store.move_note("cm.def456", "src/other.ts", new_parent_id="cm.abc123")

    def test_moved_note_survives_save(self, store):
        store.move_note("cm.def456", "src/main.ts", new_parent_id="cm.abc123")
        store.save()
        store.reload()
        assert store.get_note("cm.def456").properties.parent == "cm.abc123"
        assert_consistent(store)
