"""Note identifier generation and display-path handling.

A note ID is ``cm.`` followed by a short random suffix (six characters from
``[a-z0-9]`` by default). A display path is the human-readable locator
``{file}/{suffix}`` or ``{file}/{parentSuffix}/{suffix}``; only the
immediate parent ever appears in it, however deeply a note is nested.
"""
import re
import secrets
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from codemind.exceptions import IdGenerationError

ID_PREFIX = "cm."

DEFAULT_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
DEFAULT_ID_LENGTH = 6
DEFAULT_MAX_ATTEMPTS = 1000

# Reference token grammar: [[cm.xxx]] or [[cm.xxx|display text]]
REF_TOKEN = r"\[\[(cm\.[a-z0-9]+)(?:\|([^\]]+))?\]\]"
REF_PATTERN = re.compile(REF_TOKEN)
_SINGLE_REF_PATTERN = re.compile(rf"^\s*{REF_TOKEN}\s*$")

# Loose form accepted by the data model regardless of generator settings
NOTE_ID_PATTERN = re.compile(r"^cm\.[a-z0-9]+$")

_ALPHABET_PATTERN = re.compile(r"^[a-z0-9]+$")


@dataclass(frozen=True)
class DisplayPathParts:
    """Components recovered from a display path."""

    file: str
    id: str
    parent_id: Optional[str] = None


def id_suffix(note_id: str) -> str:
    """Strip the ``cm.`` prefix from a note ID."""
    if note_id.startswith(ID_PREFIX):
        return note_id[len(ID_PREFIX):]
    return note_id


class IdGenerator:
    """Produces collision-free note IDs and display paths.

    All methods are pure functions of their inputs apart from the random
    source, which can be injected (any object with a ``choice`` method,
    such as a seeded ``random.Random``) for deterministic tests.
    """

    def __init__(
        self,
        id_length: int = DEFAULT_ID_LENGTH,
        alphabet: str = DEFAULT_ALPHABET,
        rng: Optional[Any] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if id_length < 1:
            raise ValueError("id_length must be >= 1")
        if not _ALPHABET_PATTERN.match(alphabet):
            # IDs must stay expressible inside a reference token
            raise ValueError("alphabet may only contain lowercase letters and digits")
        self.id_length = id_length
        self.alphabet = alphabet
        self.max_attempts = max_attempts
        self._rng = rng if rng is not None else secrets.SystemRandom()
        self._valid_pattern = re.compile(
            rf"^cm\.[{re.escape(alphabet)}]{{{id_length}}}$"
        )
        self._suffix_pattern = re.compile(
            rf"^[{re.escape(alphabet)}]{{{id_length}}}$"
        )

    def generate_id(self) -> str:
        """Generate a fresh note ID."""
        suffix = "".join(self._rng.choice(self.alphabet) for _ in range(self.id_length))
        return f"{ID_PREFIX}{suffix}"

    def generate_unique_id(self, existing_ids: Iterable[str]) -> str:
        """Generate an ID that is not in ``existing_ids``.

        Retries with fresh randomness until there is no collision.

        Raises:
            IdGenerationError: If ``max_attempts`` draws all collided.
        """
        if not isinstance(existing_ids, (set, frozenset, dict)):
            existing_ids = set(existing_ids)
        for _ in range(self.max_attempts):
            candidate = self.generate_id()
            if candidate not in existing_ids:
                return candidate
        raise IdGenerationError(self.max_attempts)

    def is_valid_id(self, value: str) -> bool:
        """Check whether ``value`` is a well-formed ID for this generator."""
        return isinstance(value, str) and bool(self._valid_pattern.match(value))

    def generate_display_path(
        self, file: str, note_id: str, parent_id: Optional[str] = None
    ) -> str:
        """Build ``file/suffix`` or ``file/parentSuffix/suffix``."""
        if parent_id:
            return f"{file}/{id_suffix(parent_id)}/{id_suffix(note_id)}"
        return f"{file}/{id_suffix(note_id)}"

    @staticmethod
    def extract_id_from_ref(ref: str) -> Optional[str]:
        """Extract the ID from a single reference token.

        Accepts ``[[cm.xxx]]`` and ``[[cm.xxx|display]]``; returns None for
        anything else.
        """
        match = _SINGLE_REF_PATTERN.match(ref)
        return match.group(1) if match else None

    def parse_display_path(self, display_path: str) -> Optional[DisplayPathParts]:
        """Split a display path into file, ID and optional parent ID.

        The last segment must be a valid suffix. The one before it is read
        as a parent suffix only when it is valid too and a file segment
        still remains in front of it.
        """
        if not display_path:
            return None
        parts = display_path.split("/")
        if len(parts) < 2 or not self._suffix_pattern.match(parts[-1]):
            return None
        note_id = f"{ID_PREFIX}{parts[-1]}"

        if len(parts) >= 3 and self._suffix_pattern.match(parts[-2]):
            file = "/".join(parts[:-2])
            if file:
                return DisplayPathParts(
                    file=file, id=note_id, parent_id=f"{ID_PREFIX}{parts[-2]}"
                )

        file = "/".join(parts[:-1])
        if not file:
            return None
        return DisplayPathParts(file=file, id=note_id)


# Convenience functions bound to a default generator
_default_generator = IdGenerator()

generate_id = _default_generator.generate_id
generate_unique_id = _default_generator.generate_unique_id
is_valid_id = _default_generator.is_valid_id
generate_display_path = _default_generator.generate_display_path
extract_id_from_ref = _default_generator.extract_id_from_ref
parse_display_path = _default_generator.parse_display_path
