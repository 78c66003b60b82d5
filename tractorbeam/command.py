"""Runs the configured command on the remote host between the two transfer phases."""

from __future__ import annotations

import logging
import threading

from tractorbeam.connection import ConnectionDescriptor
from tractorbeam.errors import RemoteCommandError, TransferCancelledError
from tractorbeam.transport import Transport
from tractorbeam.utils.path_helpers import shell_quote

logger = logging.getLogger(__name__)


def build_remote_command(command: str, remote_root: str) -> str:
    """Prefix *command* with a change into *remote_root* in the same shell."""
    return f"cd {shell_quote(remote_root)} && {command}"


def run_remote_command(
    command: str,
    connection: ConnectionDescriptor,
    transport: Transport,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> str:
    """Run *command* inside the remote working directory and wait for it.

    The output is returned as-is and never inspected.

    Raises:
        RemoteCommandError: If the session fails, times out or the command
            exits non-zero.
        TransferCancelledError: If *cancel_event* is set while it runs.
    """
    full_command = build_remote_command(command, connection.remote_root)
    logger.info("Running remote command on %s: %s", connection.address, command)

    try:
        stdout, stderr, exit_code = transport.run_remote(
            connection, full_command, timeout=timeout, cancel_event=cancel_event
        )
    except TransferCancelledError:
        raise
    except Exception as exc:
        raise RemoteCommandError(f"Could not run {command!r} on {connection.address}: {exc}") from exc

    if exit_code != 0:
        raise RemoteCommandError(
            f"{command!r} exited {exit_code} on {connection.address}: {stderr.strip()}",
            exit_code=exit_code,
            stderr=stderr,
        )

    logger.debug("Remote command output:\n%s", stdout)
    logger.info("Remote command finished")
    return stdout
