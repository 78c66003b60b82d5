"""Remote host identity and SSH session handling for TractorBeam.

:class:`ConnectionDescriptor` is the immutable description of the remote host
shared by every worker.  :class:`SSHSession` opens one paramiko session to
that host and runs commands over it; it is safe to share between threads
because each command gets its own channel.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import keyring
import paramiko

from tractorbeam.errors import RemoteSessionError, TransferCancelledError

logger = logging.getLogger(__name__)

_KEYRING_SERVICE = "TractorBeam"
_POLL_INTERVAL = 0.1  # seconds between exit-status checks
_READ_SIZE = 32768


# ---------------------------------------------------------------------------
# ConnectionDescriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Remote address, username and working directory of one run."""

    address: str
    username: str
    remote_root: str
    port: int = 22
    key_path: str | None = None
    auth_type: str = "key"
    timeout: float = 15.0

    @property
    def profile_key(self) -> str:
        """Keyring account key for this connection (user@host)."""
        return f"{self.username}@{self.address}"


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(RemoteSessionError):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint so the caller can tell the user which key to
    verify before adding it with ``ssh-keyscan`` or a manual ``ssh`` login.
    """

    def __init__(self, message: str, hostname: str = "", key_type: str = "", fingerprint: str = "") -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        fingerprint = ":".join(f"{b:02x}" for b in key.get_fingerprint())
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising — suppresses WinError 10038 on Windows."""
    try:
        client.close()
    except Exception:
        pass  # Socket already gone


# ---------------------------------------------------------------------------
# SSHSession
# ---------------------------------------------------------------------------


class SSHSession:
    """One SSH session to the host named by a :class:`ConnectionDescriptor`.

    Usage::

        with SSHSession(descriptor) as session:
            stdout, stderr, code = session.execute_command("ls")
    """

    def __init__(self, descriptor: ConnectionDescriptor) -> None:
        """Store the descriptor (does NOT connect yet)."""
        self.descriptor = descriptor
        self._client: paramiko.SSHClient | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> SSHSession:
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_connected(self) -> bool:
        """True while the underlying transport is alive."""
        with self._lock:
            if self._client is None:
                return False
            transport = self._client.get_transport()
            return transport is not None and transport.is_active()

    def connect(self) -> None:
        """Open the SSH session.

        Raises:
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            paramiko.AuthenticationException: Wrong credentials.
            socket.timeout: Connection timed out.
            OSError: Network-level failure.
        """
        with self._lock:
            if self._client is not None:
                logger.debug("connect() called but session already open")
                return

        d = self.descriptor
        logger.info("Connecting to %s@%s:%d", d.username, d.address, d.port)

        client = paramiko.SSHClient()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))
        client.set_missing_host_key_policy(_CapturingPolicy())

        connect_kwargs: dict = {
            "hostname": d.address,
            "port": d.port,
            "username": d.username,
            "timeout": d.timeout,
            "allow_agent": True,
            "look_for_keys": d.auth_type == "key",
        }

        if d.auth_type == "password":
            password = keyring.get_password(_KEYRING_SERVICE, d.profile_key)
            if password:
                connect_kwargs["password"] = password
            else:
                logger.warning("No password stored in keyring for %s", d.profile_key)
        elif d.key_path:
            connect_kwargs["key_filename"] = d.key_path

        try:
            client.connect(**connect_kwargs)
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {d.address} — check ~/.ssh/known_hosts",
                hostname=d.address,
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError):
            _close_client_safely(client)
            raise

        with self._lock:
            self._client = client
        logger.info("Connected to %s", d.address)

    def close(self) -> None:
        """Close the session if it is open."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            _close_client_safely(client)
            logger.debug("Disconnected from %s", self.descriptor.address)

    def execute_command(
        self,
        command: str,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, str, int]:
        """Execute *command* on the remote host and return (stdout, stderr, exit_code).

        Blocks until the command exits.  With *timeout* (seconds) or
        *cancel_event*, the channel is closed early and an error is raised.

        Raises:
            RemoteSessionError: If not connected or the timeout expired.
            TransferCancelledError: If *cancel_event* was set while waiting.
            paramiko.SSHException: On protocol errors.
        """
        with self._lock:
            if self._client is None:
                raise RemoteSessionError(f"Not connected to {self.descriptor.address}")
            client = self._client

        logger.debug("exec on %s: %s", self.descriptor.address, command)
        _, stdout, stderr = client.exec_command(command)
        channel = stdout.channel
        out_chunks: list[bytes] = []
        err_chunks: list[bytes] = []

        if timeout is not None or cancel_event is not None:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not channel.exit_status_ready():
                # Drain while waiting so a chatty command never fills the window.
                drained = False
                if channel.recv_ready():
                    out_chunks.append(channel.recv(_READ_SIZE))
                    drained = True
                if channel.recv_stderr_ready():
                    err_chunks.append(channel.recv_stderr(_READ_SIZE))
                    drained = True
                if cancel_event is not None and cancel_event.is_set():
                    channel.close()
                    raise TransferCancelledError(f"Cancelled while running {command!r}")
                if deadline is not None and time.monotonic() >= deadline:
                    channel.close()
                    raise RemoteSessionError(f"Timed out after {timeout}s running {command!r}")
                if not drained:
                    time.sleep(_POLL_INTERVAL)

        out = b"".join(out_chunks) + stdout.read()
        err = b"".join(err_chunks) + stderr.read()
        exit_code = channel.recv_exit_status()
        return (
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
            exit_code,
        )
