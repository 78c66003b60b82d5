"""TractorBeam — send inputs to a remote host, run a command there, bring the results home."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from tractorbeam.catalog import catalog_local_files, catalog_remote_files
from tractorbeam.command import run_remote_command
from tractorbeam.config import RunConfig
from tractorbeam.transfer import (
    ProgressCallback,
    TransferBatch,
    TransferDirection,
    TransferDispatcher,
    TransferRecord,
)
from tractorbeam.transport import RsyncTransport, Transport

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Outcome of one run: both batches and what failed in each."""

    outbound: TransferBatch | None = None
    inbound: TransferBatch | None = None
    outbound_failures: list[TransferRecord] = field(default_factory=list)
    inbound_failures: list[TransferRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.outbound_failures and not self.inbound_failures


class TractorBeam:
    """Runs the five phases in order; each one settles before the next starts.

    Usage::

        beam = TractorBeam(load_config("tractorbeam.pkl"))
        summary = beam.run()
    """

    def __init__(
        self,
        config: RunConfig,
        transport: Transport | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self._transport = transport or RsyncTransport()
        self.cancel_event = cancel_event or threading.Event()
        self._dispatcher = TransferDispatcher(
            self._transport,
            max_workers=config.workers,
            on_progress=on_progress,
            cancel_event=self.cancel_event,
        )

    def cancel(self) -> None:
        """Abort the run at the next opportunity."""
        logger.info("Cancel requested")
        self.cancel_event.set()

    def run(self) -> RunSummary:
        """Execute the whole run.

        Per-record failures are collected in the summary.  Phase-level errors
        (configuration, listing, remote command, cancellation) propagate.
        """
        config = self.config
        connection = config.connection
        summary = RunSummary()

        try:
            summary.outbound = catalog_local_files(config.inputs_to_transfer, connection.remote_root)
            summary.outbound_failures = self._dispatcher.dispatch(
                summary.outbound, connection, TransferDirection.OUTBOUND
            )

            run_remote_command(
                config.command,
                connection,
                self._transport,
                timeout=config.command_timeout,
                cancel_event=self.cancel_event,
            )

            summary.inbound = catalog_remote_files(
                connection,
                self._transport,
                config.remote_results_dir,
                config.local_results_dir,
                cancel_event=self.cancel_event,
            )
            summary.inbound_failures = self._dispatcher.dispatch(
                summary.inbound, connection, TransferDirection.INBOUND
            )
        finally:
            self._transport.close()

        logger.info(
            "Run finished: %d file(s) sent, %d file(s) retrieved, %d failure(s)",
            summary.outbound.total - len(summary.outbound_failures),
            summary.inbound.total - len(summary.inbound_failures),
            len(summary.outbound_failures) + len(summary.inbound_failures),
        )
        return summary


__all__ = ["RunSummary", "TractorBeam", "__version__"]
