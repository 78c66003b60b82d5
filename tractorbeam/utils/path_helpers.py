"""Path interpolation, translation and validation between local and remote namespaces."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

# Directory-browsing metadata written by desktop file managers.
METADATA_ARTIFACTS = frozenset({".DS_Store", "Thumbs.db", "desktop.ini"})

# Prefix of macOS resource-fork / AppleDouble shadow files.
SHADOW_FILE_PREFIX = "._"


def interpolate_remote(username: str, address: str, path: str) -> str:
    """Build the remote-qualified location ``username@address:path``.

    The format is passed unmodified to rsync and ssh, so it must not change.

        >>> interpolate_remote("u", "h.example.com", "results/out.txt")
        'u@h.example.com:results/out.txt'
    """
    return f"{username}@{address}:{path}"


def split_remote(location: str) -> tuple[str, str]:
    """Split ``user@host:path`` into ``("user@host", "path")``.

    Raises:
        ValueError: If *location* is not remote-qualified.
    """
    host, sep, path = location.partition(":")
    if not sep or "@" not in host or not path:
        raise ValueError(f"Not a remote-qualified location: {location!r}")
    return host, path


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Used for remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def to_posix_relative(path: Path, root: Path) -> str:
    """Return *path* relative to *root* with forward slashes."""
    return path.relative_to(root).as_posix()


def is_excluded(name: str) -> bool:
    """Return True if the file *name* is desktop metadata or a shadow file."""
    base = posixpath.basename(name.replace(os.sep, "/"))
    return base in METADATA_ARTIFACTS or base.startswith(SHADOW_FILE_PREFIX)


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to hand to the remote host.

    Rejects empty paths and paths that contain null bytes or path-traversal
    sequences (``..``).
    """
    if not path:
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()


def shell_quote(value: str) -> str:
    """Single-quote *value* for a POSIX shell, escaping embedded quotes."""
    return "'" + value.replace("'", "'\\''") + "'"
