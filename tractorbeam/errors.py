"""Exception hierarchy for TractorBeam.

Per-record failures derive from :class:`TransferError` and are caught at the
handler boundary; they never abort a batch.  Phase-level failures derive from
:class:`RemoteSessionError` (or are :class:`ConfigurationError`) and terminate
the run.
"""

from __future__ import annotations


class TractorBeamError(Exception):
    """Base class for every error raised by TractorBeam."""


class ConfigurationError(TractorBeamError):
    """Missing/invalid configuration document or missing local input root."""


# ---------------------------------------------------------------------------
# Per-record errors
# ---------------------------------------------------------------------------


class TransferError(TractorBeamError):
    """A single file could not be transferred; fatal to that record only."""


class MissingSourceError(TransferError):
    """The cataloged source file vanished before it could be transferred."""


class SyncToolError(TransferError):
    """rsync exited with a non-zero status."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class IntegrityMismatchError(TransferError):
    """The post-transfer hash differs from the pre-transfer hash."""

    def __init__(self, message: str, origin_hash: str = "", destination_hash: str = "") -> None:
        super().__init__(message)
        self.origin_hash = origin_hash
        self.destination_hash = destination_hash


# ---------------------------------------------------------------------------
# Phase-level errors
# ---------------------------------------------------------------------------


class RemoteSessionError(TractorBeamError):
    """A remote session failed to open or returned a non-zero status."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteListingError(RemoteSessionError):
    """The remote results directory could not be listed."""


class RemoteCommandError(RemoteSessionError):
    """The configured remote command could not be run or exited non-zero."""


class TransferCancelledError(TractorBeamError):
    """A batch or remote call was aborted through its cancel event."""
