"""Tests for tractorbeam/utils/path_helpers.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from tractorbeam.utils.path_helpers import (
    interpolate_remote,
    is_excluded,
    posix_join,
    shell_quote,
    split_remote,
    to_posix_relative,
    validate_remote_path,
)


class TestInterpolation:
    def test_interpolate_remote_exact_format(self) -> None:
        assert interpolate_remote("u", "h.example.com", "results/out.txt") == "u@h.example.com:results/out.txt"

    def test_split_remote_inverts_interpolation(self) -> None:
        location = interpolate_remote("deck", "10.0.0.5", "/scratch/run/a.txt")
        assert split_remote(location) == ("deck@10.0.0.5", "/scratch/run/a.txt")

    def test_split_remote_rejects_local_path(self) -> None:
        with pytest.raises(ValueError, match="Not a remote-qualified"):
            split_remote("/tmp/local.txt")

    def test_posix_join_absolute_part_wins(self) -> None:
        assert posix_join("/scratch", "results") == "/scratch/results"
        assert posix_join("/scratch", "/abs/results") == "/abs/results"

    def test_to_posix_relative(self, tmp_path: Path) -> None:
        assert to_posix_relative(tmp_path / "a" / "b.txt", tmp_path) == "a/b.txt"


class TestExclusions:
    @pytest.mark.parametrize("name", [".DS_Store", "a/.DS_Store", "._c.txt", "x/y/._z", "Thumbs.db"])
    def test_metadata_and_shadow_files_excluded(self, name: str) -> None:
        assert is_excluded(name) is True

    @pytest.mark.parametrize("name", ["b.txt", "a/b.txt", ".hidden", "under_score._x"])
    def test_regular_files_kept(self, name: str) -> None:
        assert is_excluded(name) is False


class TestValidation:
    def test_traversal_rejected(self) -> None:
        assert validate_remote_path("/scratch/../etc/passwd") is False

    def test_null_byte_rejected(self) -> None:
        assert validate_remote_path("/scratch/a\x00b") is False

    def test_empty_rejected(self) -> None:
        assert validate_remote_path("") is False

    def test_normal_path_accepted(self) -> None:
        assert validate_remote_path("/scratch/u/job/a/b.txt") is True

    def test_shell_quote_escapes_single_quotes(self) -> None:
        assert shell_quote("it's") == "'it'\\''s'"
