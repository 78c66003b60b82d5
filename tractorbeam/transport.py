"""Transport capability: the narrow seam between TractorBeam and the outside world.

Catalogers, the dispatcher and the command runner only ever talk to a
:class:`Transport`.  :class:`RsyncTransport` is the production implementation:
byte copies go through ``rsync`` and remote listing, hashing and command
execution go through a paramiko :class:`~tractorbeam.connection.SSHSession`.
Tests substitute a fake that records calls and returns scripted results.
"""

from __future__ import annotations

import logging
import subprocess
import threading

from tractorbeam.connection import ConnectionDescriptor, SSHSession
from tractorbeam.errors import SyncToolError, TransferCancelledError
from tractorbeam.utils.path_helpers import shell_quote

logger = logging.getLogger(__name__)

RSYNC_FLAGS = ("-a", "-z", "--mkpath")
_POLL_INTERVAL = 0.2  # seconds between cancel checks while rsync runs
# OpenSSH refuses channels beyond MaxSessions (default 10) on one connection.
MAX_DIGEST_CHANNELS = 8
# rsync runs ssh non-interactively; workers must never block on a password prompt.
SSH_OPTIONS = ("-o", "BatchMode=yes")


class Transport:
    """Interface every transport implements.

    ``list_remote`` and ``run_remote`` return ``(stdout, stderr, exit_code)``
    and raise on a session that cannot be established.
    """

    def copy(
        self,
        source: str,
        dest: str,
        connection: ConnectionDescriptor | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        """Copy *source* to *dest* (either may be remote-qualified); return the exit code."""
        raise NotImplementedError

    def list_remote(
        self,
        connection: ConnectionDescriptor,
        directory: str,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, str, int]:
        """List every regular file under *directory*, relative to it, one per line."""
        raise NotImplementedError

    def run_remote(
        self,
        connection: ConnectionDescriptor,
        command: str,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, str, int]:
        """Run *command* in one remote session and block until it exits."""
        raise NotImplementedError

    def remote_digest(self, connection: ConnectionDescriptor, path: str) -> str | None:
        """Return the MD5 hex digest of remote *path*, or None if it cannot be read."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any sessions held by the transport."""


class RsyncTransport(Transport):
    """Copies with ``rsync``; talks to the remote host over paramiko."""

    def __init__(self, rsync_binary: str = "rsync") -> None:
        self.rsync_binary = rsync_binary
        self._digest_slots = threading.BoundedSemaphore(MAX_DIGEST_CHANNELS)
        self._digest_sessions: dict[ConnectionDescriptor, SSHSession] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Copy
    # ------------------------------------------------------------------

    def build_rsync_command(
        self, source: str, dest: str, connection: ConnectionDescriptor | None = None
    ) -> list[str]:
        """Return the argv for copying *source* to *dest*."""
        cmd = [self.rsync_binary, *RSYNC_FLAGS]
        ssh = ["ssh", *SSH_OPTIONS]
        if connection is not None:
            if connection.port != 22:
                ssh.extend(["-p", str(connection.port)])
            if connection.key_path:
                ssh.extend(["-i", shell_quote(connection.key_path)])
        cmd.extend(["-e", " ".join(ssh)])
        cmd.extend([source, dest])
        return cmd

    def copy(
        self,
        source: str,
        dest: str,
        connection: ConnectionDescriptor | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        """Run rsync and block until it exits.

        Raises:
            SyncToolError: If rsync is not installed.
            TransferCancelledError: If *cancel_event* is set while rsync runs.
        """
        cmd = self.build_rsync_command(source, dest, connection)
        logger.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise SyncToolError(f"{self.rsync_binary} not found on PATH") from exc

        while True:
            try:
                _, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    proc.terminate()
                    proc.communicate()
                    raise TransferCancelledError(f"Cancelled copy of {source}")

        if proc.returncode != 0:
            logger.warning(
                "rsync exited %d for %s → %s: %s",
                proc.returncode,
                source,
                dest,
                (stderr or "").strip(),
            )
        return proc.returncode

    # ------------------------------------------------------------------
    # Remote sessions
    # ------------------------------------------------------------------

    def list_remote(
        self,
        connection: ConnectionDescriptor,
        directory: str,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, str, int]:
        command = f"cd {shell_quote(directory)} && find . -type f"
        with SSHSession(connection) as session:
            return session.execute_command(command, cancel_event=cancel_event)

    def run_remote(
        self,
        connection: ConnectionDescriptor,
        command: str,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, str, int]:
        with SSHSession(connection) as session:
            return session.execute_command(command, timeout=timeout, cancel_event=cancel_event)

    def remote_digest(self, connection: ConnectionDescriptor, path: str) -> str | None:
        """Hash *path* with ``md5sum`` over a session shared by all workers."""
        session = self._digest_session(connection)
        with self._digest_slots:
            stdout, stderr, exit_code = session.execute_command(f"md5sum -- {shell_quote(path)}")
        if exit_code != 0:
            logger.debug("md5sum %s exited %d: %s", path, exit_code, stderr.strip())
            return None
        fields = stdout.split()
        return fields[0].lstrip("\\") if fields else None

    def _digest_session(self, connection: ConnectionDescriptor) -> SSHSession:
        with self._lock:
            session = self._digest_sessions.get(connection)
            if session is None or not session.is_connected:
                session = SSHSession(connection)
                session.connect()
                self._digest_sessions[connection] = session
            return session

    def close(self) -> None:
        with self._lock:
            sessions = list(self._digest_sessions.values())
            self._digest_sessions.clear()
        for session in sessions:
            session.close()
