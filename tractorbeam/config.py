"""Run configuration for TractorBeam.

A configuration source is either a flat JSON document or a Pkl module that
the external ``pkl`` tool evaluates to JSON.  :func:`parse_config` validates
the flat mapping once and returns a frozen :class:`RunConfig`; nothing else
in the package reads the raw document.  Passwords are never read from the
document — they are delegated to ``keyring`` (see ``connection.py``).
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Mapping

from tractorbeam.connection import ConnectionDescriptor
from tractorbeam.errors import ConfigurationError

logger = logging.getLogger(__name__)

REQUIRED_KEYS = (
    "address",
    "username",
    "remote_working_dir",
    "inputs_to_transfer",
    "local_results_dir",
    "command",
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "port": 22,
    "key_path": None,
    "auth_type": "key",
    "ssh_timeout": 15,
    "workers": None,
    "remote_results_dir": None,
    "command_timeout": None,
}

_AUTH_TYPES = ("key", "password")


# ---------------------------------------------------------------------------
# RunConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    """Everything one run needs, validated."""

    connection: ConnectionDescriptor
    inputs_to_transfer: Path
    local_results_dir: Path
    remote_results_dir: str
    command: str
    workers: int | None = None
    command_timeout: float | None = None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def generate_config(pkl_path: Path, pkl_binary: str = "pkl") -> dict[str, Any]:
    """Evaluate a Pkl module to a flat mapping with ``pkl eval --format json``.

    Raises:
        ConfigurationError: If ``pkl`` is missing or the module fails to evaluate.
    """
    cmd = [pkl_binary, "eval", "--format", "json", str(pkl_path)]
    logger.debug("Evaluating %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"{pkl_binary} not found on PATH; cannot evaluate {pkl_path}") from exc
    if result.returncode != 0:
        raise ConfigurationError(f"Failed to evaluate {pkl_path}: {result.stderr.strip()}")
    return _decode(result.stdout, pkl_path)


def _decode(raw: str, source: Path) -> dict[str, Any]:
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Corrupt configuration in {source}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Configuration root in {source} must be an object")
    return loaded


def load_config_document(path: str | Path) -> dict[str, Any]:
    """Load the flat configuration mapping from *path* (``.json`` or ``.pkl``).

    Raises:
        ConfigurationError: If the file is missing, unreadable or malformed.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigurationError(f"Configuration file not found: {path}")

    if path.suffix == ".pkl":
        return generate_config(path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Could not read {path}: {exc}") from exc
    return _decode(raw, path)


def load_config(path: str | Path, overrides: Mapping[str, Any] | None = None) -> RunConfig:
    """Load, merge *overrides* (ignoring ``None`` values) and validate."""
    document = load_config_document(path)
    if overrides:
        document.update({k: v for k, v in overrides.items() if v is not None})
    return parse_config(document)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _require_str(document: Mapping[str, Any], key: str) -> str:
    value = document.get(key)
    if value is None:
        raise ConfigurationError(f"Missing required configuration key: {key!r}")
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Configuration key {key!r} must be a non-empty string, got {value!r}")
    return value


def _optional_number(document: Mapping[str, Any], key: str, kind: type) -> Any:
    value = document.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or (kind is int and not isinstance(value, int)):
        raise ConfigurationError(f"Configuration key {key!r} must be a {kind.__name__}, got {value!r}")
    if value <= 0:
        raise ConfigurationError(f"Configuration key {key!r} must be positive, got {value!r}")
    return kind(value)


def parse_config(document: Mapping[str, Any]) -> RunConfig:
    """Validate a flat configuration mapping and build a :class:`RunConfig`.

    Raises:
        ConfigurationError: On a missing required key or a mistyped value.
    """
    merged = dict(DEFAULT_CONFIG)
    merged.update(document)

    values = {key: _require_str(merged, key) for key in REQUIRED_KEYS}

    auth_type = merged["auth_type"]
    if auth_type not in _AUTH_TYPES:
        raise ConfigurationError(f"auth_type must be one of {_AUTH_TYPES}, got {auth_type!r}")
    if auth_type == "password":
        logger.warning("Password auth covers remote sessions only; rsync needs a key or an ssh agent")

    if values["remote_working_dir"].startswith("~"):
        raise ConfigurationError(
            f"remote_working_dir must be an absolute path, not {values['remote_working_dir']!r}"
        )

    key_path = merged["key_path"]
    if key_path is not None and not isinstance(key_path, str):
        raise ConfigurationError(f"key_path must be a string, got {key_path!r}")

    connection = ConnectionDescriptor(
        address=values["address"],
        username=values["username"],
        remote_root=values["remote_working_dir"],
        port=_optional_number(merged, "port", int) or 22,
        key_path=str(Path(key_path).expanduser()) if key_path else None,
        auth_type=auth_type,
        timeout=_optional_number(merged, "ssh_timeout", float) or 15.0,
    )

    local_results_dir = Path(values["local_results_dir"]).expanduser()
    remote_results_dir = merged["remote_results_dir"]
    if remote_results_dir is None:
        remote_results_dir = local_results_dir.resolve().name
    elif not isinstance(remote_results_dir, str) or not remote_results_dir.strip():
        raise ConfigurationError(f"remote_results_dir must be a non-empty string, got {remote_results_dir!r}")
    if (
        not remote_results_dir
        or remote_results_dir.startswith("~")
        or ".." in PurePosixPath(remote_results_dir).parts
    ):
        raise ConfigurationError(f"Invalid remote results directory: {remote_results_dir!r}")

    config = RunConfig(
        connection=connection,
        inputs_to_transfer=Path(values["inputs_to_transfer"]).expanduser(),
        local_results_dir=local_results_dir,
        remote_results_dir=remote_results_dir,
        command=values["command"],
        workers=_optional_number(merged, "workers", int),
        command_timeout=_optional_number(merged, "command_timeout", float),
    )
    logger.debug("Parsed configuration for %s", connection.profile_key)
    return config
