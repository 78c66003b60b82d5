"""Tests for tractorbeam/command.py — the remote command runner."""

from __future__ import annotations

import socket

import pytest

from tractorbeam.command import build_remote_command, run_remote_command
from tractorbeam.errors import RemoteCommandError, TransferCancelledError


class TestRemoteCommand:
    def test_command_runs_inside_remote_root(self, fake_transport, connection) -> None:
        run_remote_command("sbatch job.sh", connection, fake_transport)
        assert fake_transport.run_calls == ["cd '/scratch/u/job' && sbatch job.sh"]

    def test_output_returned_unparsed(self, fake_transport, connection) -> None:
        fake_transport.run_result = ("line 1\nline 2\n", "", 0)
        assert run_remote_command("make", connection, fake_transport) == "line 1\nline 2\n"

    def test_non_zero_exit_raises(self, fake_transport, connection) -> None:
        fake_transport.run_result = ("", "make: *** [all] Error 2", 2)
        with pytest.raises(RemoteCommandError) as exc_info:
            run_remote_command("make", connection, fake_transport)
        assert exc_info.value.exit_code == 2
        assert "Error 2" in str(exc_info.value)

    def test_session_failure_raises(self, fake_transport, connection) -> None:
        fake_transport.run_error = socket.timeout("timed out")
        with pytest.raises(RemoteCommandError, match="timed out"):
            run_remote_command("make", connection, fake_transport)

    def test_cancellation_propagates_unwrapped(self, fake_transport, connection) -> None:
        fake_transport.run_error = TransferCancelledError("stop")
        with pytest.raises(TransferCancelledError):
            run_remote_command("make", connection, fake_transport)

    def test_root_with_quote_is_escaped(self) -> None:
        assert build_remote_command("ls", "/home/o'neil") == "cd '/home/o'\\''neil' && ls"
