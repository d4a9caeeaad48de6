"""Configuration module for the Code-Mind note engine."""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config
_USER_ENV = Path.home() / ".codemind" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Reference tokens only admit these characters in an ID suffix
_ALLOWED_ALPHABET = re.compile(r"^[a-z0-9]+$")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class CodemindConfig(BaseModel):
    """Configuration for the note engine."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("CODEMIND_BASE_DIR", "."))
    )
    # Name of the project notes file
    notes_file: Path = Field(
        default_factory=lambda: Path(os.getenv("CODEMIND_NOTES_FILE", "codemind.md"))
    )
    # Identifier generation
    id_length: int = Field(
        default_factory=lambda: int(os.getenv("CODEMIND_ID_LENGTH", "6"))
    )
    id_alphabet: str = Field(
        default_factory=lambda: os.getenv(
            "CODEMIND_ID_ALPHABET", "abcdefghijklmnopqrstuvwxyz0123456789"
        )
    )
    # Persist after every mutation; when False only save() writes
    auto_save: bool = Field(
        default_factory=lambda: _env_bool("CODEMIND_AUTO_SAVE", "true")
    )
    # Writer options
    sort_notes: bool = Field(
        default_factory=lambda: _env_bool("CODEMIND_SORT_NOTES", "true")
    )
    include_map: bool = Field(
        default_factory=lambda: _env_bool("CODEMIND_INCLUDE_MAP", "false")
    )
    summary_length: int = Field(
        default_factory=lambda: int(os.getenv("CODEMIND_SUMMARY_LENGTH", "50"))
    )
    # Query defaults
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("CODEMIND_SEARCH_LIMIT", "20"))
    )
    popular_limit: int = Field(
        default_factory=lambda: int(os.getenv("CODEMIND_POPULAR_LIMIT", "10"))
    )
    related_depth: int = Field(
        default_factory=lambda: int(os.getenv("CODEMIND_RELATED_DEPTH", "1"))
    )
    # Logging; file logging is only set up when log_dir is given
    log_level: str = Field(
        default_factory=lambda: os.getenv("CODEMIND_LOG_LEVEL", "INFO")
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.environ["CODEMIND_LOG_DIR"]) if os.getenv("CODEMIND_LOG_DIR") else None
        )
    )

    @model_validator(mode="after")
    def _validate_id_settings(self) -> "CodemindConfig":
        """Validate identifier and formatting settings."""
        if self.id_length < 1:
            raise ValueError("id_length must be >= 1")
        if not _ALLOWED_ALPHABET.match(self.id_alphabet):
            raise ValueError(
                "id_alphabet may only contain lowercase letters and digits"
            )
        if len(set(self.id_alphabet)) < 2:
            raise ValueError("id_alphabet must contain at least 2 distinct characters")
        if self.summary_length < 4:
            raise ValueError("summary_length must be >= 4")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(
                f"log_level must be a logging level name, got '{self.log_level}'"
            )
        if len(self.id_alphabet) ** self.id_length < 10_000:
            logger.warning(
                "ID space of %d is small (alphabet=%d, length=%d); "
                "generation may exhaust its retry budget.",
                len(self.id_alphabet) ** self.id_length,
                len(self.id_alphabet),
                self.id_length,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_notes_path(self) -> Path:
        """Get the absolute path to the project notes file."""
        return self.get_absolute_path(self.notes_file)


# Create a global config instance
config = CodemindConfig()
