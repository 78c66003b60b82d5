"""Transfer engine for TractorBeam.

Holds the data model for a batch of files in flight and the dispatcher that
moves them:

- One :class:`TransferRecord` per file, owned by a single worker
- A :class:`TransferBatch` whose progress counter is guarded by a lock
- A thread pool sized to the machine, one rsync call per record
- MD5 verification of both ends after every copy
- Cancellation via ``threading.Event``
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable

from tractorbeam.connection import ConnectionDescriptor
from tractorbeam.errors import (
    IntegrityMismatchError,
    MissingSourceError,
    SyncToolError,
    TransferCancelledError,
    TransferError,
)
from tractorbeam.transport import Transport
from tractorbeam.utils.path_helpers import interpolate_remote, split_remote, validate_remote_path

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024

ProgressCallback = Callable[[int, float], None]

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    """Direction of a batch."""

    OUTBOUND = auto()  # local → remote
    INBOUND = auto()   # remote → local


class TransferStatus(Enum):
    """Lifecycle state of a TransferRecord."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    FAILED = auto()
    CANCELLED = auto()


# ---------------------------------------------------------------------------
# TransferRecord
# ---------------------------------------------------------------------------


@dataclass
class TransferRecord:
    """One file's source/destination and the hashes taken on either side.

    For outbound records ``source_path`` is a local path and ``dest_path`` a
    remote path; for inbound records ``source_path`` is remote-qualified
    (``user@host:path``) and ``dest_path`` is local.
    """

    source_path: str
    dest_path: str
    origin_hash: str = ""
    destination_hash: str = ""
    status: TransferStatus = TransferStatus.PENDING
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def verified(self) -> bool:
        """True once both hashes are known and equal."""
        return bool(self.origin_hash) and self.origin_hash == self.destination_hash


# ---------------------------------------------------------------------------
# TransferBatch
# ---------------------------------------------------------------------------


@dataclass
class TransferBatch:
    """Ordered records plus aggregate progress counters.

    ``total`` is fixed at creation.  ``remaining`` is only changed through
    :meth:`complete_one`, which holds ``_lock`` for the read-modify-write;
    ``progress`` is derived from ``remaining`` so the two never disagree.
    """

    records: list[TransferRecord]
    total: int = field(init=False)
    _remaining: int = field(init=False, repr=False)
    _lock: threading.Lock = field(init=False, repr=False, compare=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        self.records = list(self.records)
        self.total = len(self.records)
        self._remaining = self.total

    def __len__(self) -> int:
        return self.total

    def __iter__(self):
        return iter(self.records)

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def progress(self) -> float:
        """Fraction of records settled (1.0 for an empty batch)."""
        return self.snapshot()[1]

    def _progress_locked(self) -> float:
        if self.total == 0:
            return 1.0
        return (self.total - self._remaining) / self.total

    def snapshot(self) -> tuple[int, float]:
        """Return a consistent ``(remaining, progress)`` pair."""
        with self._lock:
            return self._remaining, self._progress_locked()

    def complete_one(self) -> tuple[int, float]:
        """Mark one record settled and return the new ``(remaining, progress)``.

        Raises:
            RuntimeError: If every record was already settled.
        """
        with self._lock:
            if self._remaining <= 0:
                raise RuntimeError("complete_one() called on a fully settled batch")
            self._remaining -= 1
            return self._remaining, self._progress_locked()

    def failed_records(self) -> list[TransferRecord]:
        """Records that were attempted and failed."""
        return [r for r in self.records if r.status == TransferStatus.FAILED]


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def file_digest(path: str | os.PathLike[str]) -> str:
    """Return the MD5 hex digest of a local file."""
    md5 = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            md5.update(chunk)
    return md5.hexdigest()


# ---------------------------------------------------------------------------
# TransferDispatcher
# ---------------------------------------------------------------------------


class TransferDispatcher:
    """Executes every record of a batch on a bounded worker pool.

    The dispatching thread collects completions with ``as_completed`` and is
    the only caller of :meth:`TransferBatch.complete_one`.
    """

    def __init__(
        self,
        transport: Transport,
        max_workers: int | None = None,
        on_progress: ProgressCallback | None = None,
        on_record_complete: Callable[[TransferRecord], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialise the dispatcher.

        Args:
            transport: Performs the copies and remote hashing.
            max_workers: Pool size; defaults to ``os.cpu_count()``, minimum 1.
            on_progress: Called with ``(remaining, progress)`` after every record.
            on_record_complete: Called with each record once it settles.
            cancel_event: When set, records not yet started are cancelled.
        """
        self._transport = transport
        self.max_workers = max(1, max_workers or os.cpu_count() or 1)
        self.on_progress = on_progress
        self.on_record_complete = on_record_complete
        self.cancel_event = cancel_event or threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def dispatch(
        self,
        batch: TransferBatch,
        connection: ConnectionDescriptor,
        direction: TransferDirection,
    ) -> list[TransferRecord]:
        """Transfer every record in *batch* and return the failed ones.

        Returns once every record has been attempted.

        Raises:
            TransferCancelledError: If the cancel event was set during the batch.
        """
        logger.info(
            "Dispatching %d %s transfer(s) on %d worker(s)",
            batch.total,
            direction.name.lower(),
            self.max_workers,
        )
        if batch.total == 0:
            self._emit_progress(*batch.snapshot())
            return []

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="transfer") as executor:
            futures = {
                executor.submit(self._process_record, record, connection, direction): record
                for record in batch.records
            }
            try:
                for future in as_completed(futures):
                    record = futures[future]
                    # _process_record never raises; result() only surfaces bugs
                    future.result()
                    remaining, progress = batch.complete_one()
                    self._emit_record_complete(record)
                    self._emit_progress(remaining, progress)
            except KeyboardInterrupt:
                # Executor shutdown waits on every queued record; make them no-ops
                self.cancel_event.set()
                raise

        failed = batch.failed_records()
        self._log_summary(batch, direction, failed)

        if self.cancel_event.is_set():
            raise TransferCancelledError(
                f"{direction.name.lower()} batch cancelled with "
                f"{sum(r.status == TransferStatus.CANCELLED for r in batch.records)} record(s) unsent"
            )
        return failed

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _process_record(
        self,
        record: TransferRecord,
        connection: ConnectionDescriptor,
        direction: TransferDirection,
    ) -> None:
        """Route the record to its handler and catch per-record errors."""
        if self.cancel_event.is_set():
            record.status = TransferStatus.CANCELLED
            return

        record.status = TransferStatus.IN_PROGRESS
        record.start_time = time.monotonic()
        try:
            if direction == TransferDirection.OUTBOUND:
                self._transfer_outbound(record, connection)
            else:
                self._transfer_inbound(record, connection)
            record.status = TransferStatus.COMPLETE
        except TransferCancelledError as exc:
            record.status = TransferStatus.CANCELLED
            record.error = str(exc)
        except IntegrityMismatchError as exc:
            record.status = TransferStatus.FAILED
            record.error = str(exc)
            logger.warning("Integrity check failed: %s", exc)
        except TransferError as exc:
            record.status = TransferStatus.FAILED
            record.error = str(exc)
            logger.error("Transfer failed for %r: %s", record.source_path, exc)
        except Exception as exc:
            record.status = TransferStatus.FAILED
            record.error = str(exc)
            logger.exception("Unexpected error transferring %r", record.source_path)
        finally:
            record.end_time = time.monotonic()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _transfer_outbound(self, record: TransferRecord, connection: ConnectionDescriptor) -> None:
        """Send one local file to the remote host and verify it arrived intact."""
        source = record.source_path
        if not Path(source).is_file():
            raise MissingSourceError(f"Source file does not exist: {source}")
        if not validate_remote_path(record.dest_path):
            raise TransferError(f"Invalid remote destination path: {record.dest_path!r}")

        destination = interpolate_remote(connection.username, connection.address, record.dest_path)
        logger.info("Now transferring %s → %s", source, destination)

        record.origin_hash = file_digest(source)
        exit_code = self._transport.copy(source, destination, connection, self.cancel_event)
        if exit_code != 0:
            raise SyncToolError(f"rsync exited {exit_code} sending {source}", exit_code=exit_code)

        record.destination_hash = self._transport.remote_digest(connection, record.dest_path) or ""
        self._verify(record, destination)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _transfer_inbound(self, record: TransferRecord, connection: ConnectionDescriptor) -> None:
        """Fetch one remote file into the local results tree and verify it."""
        _, remote_path = split_remote(record.source_path)
        dest = Path(record.dest_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Now transferring %s → %s", record.source_path, dest)

        origin_hash = self._transport.remote_digest(connection, remote_path)
        if not origin_hash:
            raise MissingSourceError(f"Remote file could not be read: {record.source_path}")
        record.origin_hash = origin_hash

        exit_code = self._transport.copy(record.source_path, str(dest), connection, self.cancel_event)
        if exit_code != 0:
            raise SyncToolError(f"rsync exited {exit_code} fetching {record.source_path}", exit_code=exit_code)

        record.destination_hash = file_digest(dest) if dest.is_file() else ""
        self._verify(record, str(dest))

    def _verify(self, record: TransferRecord, destination: str) -> None:
        if record.verified:
            logger.debug("Verified %s (md5 %s)", destination, record.origin_hash)
            return
        raise IntegrityMismatchError(
            f"{destination} failed to transfer successfully and may be corrupted or absent "
            f"(origin {record.origin_hash or '-'}, destination {record.destination_hash or '-'})",
            origin_hash=record.origin_hash,
            destination_hash=record.destination_hash,
        )

    # ------------------------------------------------------------------
    # Callback helpers
    # ------------------------------------------------------------------

    def _emit_progress(self, remaining: int, progress: float) -> None:
        if self.on_progress:
            try:
                self.on_progress(remaining, progress)
            except Exception:
                logger.exception("Exception in on_progress callback")

    def _emit_record_complete(self, record: TransferRecord) -> None:
        if self.on_record_complete:
            try:
                self.on_record_complete(record)
            except Exception:
                logger.exception("Exception in on_record_complete callback")

    def _log_summary(
        self,
        batch: TransferBatch,
        direction: TransferDirection,
        failed: list[TransferRecord],
    ) -> None:
        if not failed:
            logger.info("All %d %s transfer(s) verified", batch.total, direction.name.lower())
            return
        logger.warning(
            "%d of %d %s transfer(s) failed:",
            len(failed),
            batch.total,
            direction.name.lower(),
        )
        for record in failed:
            logger.warning("  %s: %s", record.source_path, record.error)
