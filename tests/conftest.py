"""Shared fixtures: a fake Transport that never touches the network."""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path

import pytest

from tractorbeam.connection import ConnectionDescriptor
from tractorbeam.transport import Transport
from tractorbeam.utils.path_helpers import split_remote


class FakeTransport(Transport):
    """Records every call and simulates a remote filesystem in memory.

    ``remote_files`` maps remote paths to their bytes.  Outbound copies read
    the local file into it; inbound copies write from it to the local path.
    """

    def __init__(self) -> None:
        self.remote_files: dict[str, bytes] = {}
        self.copy_calls: list[tuple[str, str]] = []
        self.list_calls: list[str] = []
        self.run_calls: list[str] = []
        self.copy_exit_codes: dict[str, int] = {}
        self.corrupt: set[str] = set()
        self.listing: tuple[str, str, int] = ("", "", 0)
        self.run_result: tuple[str, str, int] = ("", "", 0)
        self.list_error: Exception | None = None
        self.run_error: Exception | None = None
        self.closed = False
        self._lock = threading.Lock()

    def copy(self, source, dest, connection=None, cancel_event=None) -> int:
        with self._lock:
            self.copy_calls.append((source, dest))
        code = self.copy_exit_codes.get(source, 0)
        if code != 0:
            return code
        if "@" in dest and ":" in dest:
            _, remote_path = split_remote(dest)
            data = Path(source).read_bytes()
            if remote_path in self.corrupt:
                data += b"!"
            with self._lock:
                self.remote_files[remote_path] = data
        else:
            _, remote_path = split_remote(source)
            data = self.remote_files[remote_path]
            if remote_path in self.corrupt:
                data += b"!"
            Path(dest).write_bytes(data)
        return 0

    def list_remote(self, connection, directory, cancel_event=None):
        self.list_calls.append(directory)
        if self.list_error is not None:
            raise self.list_error
        return self.listing

    def run_remote(self, connection, command, timeout=None, cancel_event=None):
        self.run_calls.append(command)
        if self.run_error is not None:
            raise self.run_error
        return self.run_result

    def remote_digest(self, connection, path):
        with self._lock:
            data = self.remote_files.get(path)
        if data is None:
            return None
        return hashlib.md5(data).hexdigest()

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def connection() -> ConnectionDescriptor:
    return ConnectionDescriptor(address="h.example.com", username="u", remote_root="/scratch/u/job")
