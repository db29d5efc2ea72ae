"""
Utility functions for file system operations and string handling.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem and storage usage
- Ensuring directory creation with proper error handling
- Natural (numeric-aware) ordering of page filenames
- Content checksums for staged page files
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Iterable, Tuple

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# Folder names declared in metadata documents end up in storage keys
SAFE_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 ._()\[\]-]{0,199}$")

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

_DIGIT_RUN = re.compile(r"(\d+)")

CHUNK_SIZE = 1024 * 1024


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("Chapter 01!", "chapter")
        "chapter-01"
        >>> sanitize_label("@#$", "chapter")
        "chapter"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def slugify(text: str) -> str:
    """
    Build a catalog slug (lowercase words joined by single hyphens).

    Example:
        >>> slugify("Tower of God: Part 2")
        "tower-of-god-part-2"
    """
    return "-".join(re.findall(r"[a-z0-9]+", text.lower()))


def is_safe_token(value: str) -> bool:
    """Check that a folder name can be used verbatim as a storage path segment."""
    return bool(SAFE_TOKEN_PATTERN.match(value)) and ".." not in value


def is_valid_slug(value: str) -> bool:
    return bool(SLUG_PATTERN.match(value))


def natural_sort_key(name: str) -> Tuple[Tuple[int, object], ...]:
    """
    Sort key that orders embedded numbers by value ("page2" before "page10").

    Numeric runs compare by integer value, so "1.jpg" and "01.jpg" produce the
    same key. Callers rely on that to detect ambiguous page ordering.
    """
    parts = _DIGIT_RUN.split(name.lower())
    return tuple((0, int(part)) if part.isdigit() else (1, part) for part in parts if part)


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercase extension components.

    Example:
        >>> split_extension("pages/001.JPG")
        ("001", ".jpg")
    """
    path = Path(filename)
    return path.stem, path.suffix.lower()


def normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    """Lowercase extensions and make sure each one starts with a dot."""
    return frozenset(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions)


def compute_sha256(path: Path) -> str:
    """Compute the SHA256 hex digest of a file without loading it whole."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while chunk := handle.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()
