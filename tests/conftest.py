"""Common test fixtures for the Code-Mind note engine."""

import random
from pathlib import Path

import pytest

from codemind.ids import IdGenerator
from codemind.services.note_store import NoteStore

SAMPLE_NOTES = """\
# Code-Mind Notes
- Project: demo
- Created: 2024-12-01

- ## src/main.ts
  - [[cm.abc123]] Entry point wiring
    - human · 2024-12-01 · line 15
    - Entry point wiring
    - See [[cm.def456]] for the parser
    - [[cm.ghi789]] Nested detail
      - ai · 2024-12-02
      - Nested detail

- ## src/parser.ts
  - [[cm.def456]] Parser notes
    - ai · 2024-12-02 · line 3
    - Parser notes
"""

LEGACY_NOTES = """\
- Project root
  id:: project-root
  name:: legacy-demo
  created:: 2024-10-01
- [[cm.aaa111]]
  id:: cm.aaa111
  file:: src/a.ts
  line:: 4
  author:: ai
  created:: 2024-11-01
  - Legacy content referencing [[cm.bbb222]]
- [[cm.bbb222]]
  id:: cm.bbb222
  file:: src/a.ts
  parent:: cm.aaa111
  created:: 2024-11-02
  - Child content
"""


@pytest.fixture
def id_generator():
    """Deterministic ID generator."""
    return IdGenerator(rng=random.Random(42))


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """Empty project directory named 'demo'."""
    path = tmp_path / "demo"
    path.mkdir()
    return path


@pytest.fixture
def notes_path(project_dir) -> Path:
    """Notes file pre-filled with the sample notes."""
    path = project_dir / "codemind.md"
    path.write_text(SAMPLE_NOTES, encoding="utf-8")
    return path


@pytest.fixture
def store(notes_path, id_generator):
    """Store over the sample notes, saving only on request."""
    yield NoteStore(notes_path, id_generator=id_generator, auto_save=False)


@pytest.fixture
def empty_store(project_dir, id_generator):
    """Store over a notes file that does not exist yet."""
    yield NoteStore(
        project_dir / "codemind.md", id_generator=id_generator, auto_save=False
    )


@pytest.fixture
def sample_text() -> str:
    return SAMPLE_NOTES


@pytest.fixture
def legacy_text() -> str:
    return LEGACY_NOTES
