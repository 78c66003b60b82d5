"""Tests for tractorbeam/config.py — loading and validating the run configuration."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from tractorbeam.config import DEFAULT_CONFIG, REQUIRED_KEYS, load_config, load_config_document, parse_config
from tractorbeam.errors import ConfigurationError


@pytest.fixture()
def document() -> dict:
    """A complete, valid flat configuration mapping."""
    return {
        "address": "hpc.example.org",
        "username": "deck",
        "remote_working_dir": "/scratch/deck/run1",
        "inputs_to_transfer": "input",
        "local_results_dir": "/tmp/results",
        "command": "sbatch --wait job.sh",
    }


class TestParseConfig:
    def test_valid_document(self, document: dict) -> None:
        config = parse_config(document)
        assert config.connection.address == "hpc.example.org"
        assert config.connection.username == "deck"
        assert config.connection.remote_root == "/scratch/deck/run1"
        assert config.inputs_to_transfer == Path("input")
        assert config.local_results_dir == Path("/tmp/results")
        assert config.command == "sbatch --wait job.sh"

    def test_defaults_applied(self, document: dict) -> None:
        config = parse_config(document)
        assert config.connection.port == DEFAULT_CONFIG["port"]
        assert config.connection.auth_type == "key"
        assert config.workers is None
        assert config.command_timeout is None

    def test_remote_results_dir_defaults_to_local_basename(self, document: dict) -> None:
        assert parse_config(document).remote_results_dir == "results"

    def test_explicit_remote_results_dir(self, document: dict) -> None:
        document["remote_results_dir"] = "out/final"
        assert parse_config(document).remote_results_dir == "out/final"

    @pytest.mark.parametrize("key", REQUIRED_KEYS)
    def test_missing_required_key(self, document: dict, key: str) -> None:
        del document[key]
        with pytest.raises(ConfigurationError, match=key):
            parse_config(document)

    def test_mistyped_required_key(self, document: dict) -> None:
        document["address"] = 42
        with pytest.raises(ConfigurationError, match="non-empty string"):
            parse_config(document)

    @pytest.mark.parametrize("value", ["22", 0, -1, True, 2.5])
    def test_invalid_port(self, document: dict, value) -> None:
        document["port"] = value
        with pytest.raises(ConfigurationError, match="port"):
            parse_config(document)

    def test_invalid_auth_type(self, document: dict) -> None:
        document["auth_type"] = "kerberos"
        with pytest.raises(ConfigurationError, match="auth_type"):
            parse_config(document)

    def test_traversal_in_remote_results_dir(self, document: dict) -> None:
        document["remote_results_dir"] = "../elsewhere"
        with pytest.raises(ConfigurationError, match="Invalid remote results"):
            parse_config(document)

    @pytest.mark.parametrize("value", ["~", "~/run1", "~deck/run1"])
    def test_tilde_remote_working_dir_rejected(self, document: dict, value: str) -> None:
        document["remote_working_dir"] = value
        with pytest.raises(ConfigurationError, match="remote_working_dir"):
            parse_config(document)

    def test_tilde_remote_results_dir_rejected(self, document: dict) -> None:
        document["remote_results_dir"] = "~/results"
        with pytest.raises(ConfigurationError, match="Invalid remote results"):
            parse_config(document)

    def test_password_auth_warns_about_rsync(self, document: dict, caplog) -> None:
        document["auth_type"] = "password"
        with caplog.at_level("WARNING", logger="tractorbeam.config"):
            config = parse_config(document)
        assert config.connection.auth_type == "password"
        assert "rsync needs a key" in caplog.text

    def test_descriptor_is_immutable(self, document: dict) -> None:
        config = parse_config(document)
        with pytest.raises(AttributeError):
            config.connection.address = "other"  # type: ignore[misc]


class TestLoadConfig:
    def test_json_document(self, tmp_path: Path, document: dict) -> None:
        path = tmp_path / "tractorbeam.json"
        path.write_text(json.dumps(document), encoding="utf-8")
        assert load_config(path).connection.address == "hpc.example.org"

    def test_overrides_replace_values_but_ignore_none(self, tmp_path: Path, document: dict) -> None:
        path = tmp_path / "tractorbeam.json"
        path.write_text(json.dumps(document), encoding="utf-8")
        config = load_config(path, overrides={"inputs_to_transfer": "other", "local_results_dir": None})
        assert config.inputs_to_transfer == Path("other")
        assert config.local_results_dir == Path("/tmp/results")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config_document(tmp_path / "absent.json")

    def test_corrupt_json(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{ this is not valid json !!!", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Corrupt"):
            load_config_document(path)

    def test_non_dict_root(self, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must be an object"):
            load_config_document(path)

    def test_pkl_evaluated_with_pkl_tool(self, tmp_path: Path, document: dict) -> None:
        path = tmp_path / "tractorbeam.pkl"
        path.write_text('address = "hpc.example.org"', encoding="utf-8")
        completed = MagicMock(returncode=0, stdout=json.dumps(document), stderr="")
        with patch("tractorbeam.config.subprocess.run", return_value=completed) as mock_run:
            loaded = load_config_document(path)
        assert loaded == document
        assert mock_run.call_args.args[0] == ["pkl", "eval", "--format", "json", str(path)]

    def test_pkl_failure(self, tmp_path: Path) -> None:
        path = tmp_path / "tractorbeam.pkl"
        path.write_text("broken", encoding="utf-8")
        completed = MagicMock(returncode=1, stdout="", stderr="Pkl Error: syntax")
        with patch("tractorbeam.config.subprocess.run", return_value=completed):
            with pytest.raises(ConfigurationError, match="Pkl Error"):
                load_config_document(path)

    def test_pkl_tool_missing(self, tmp_path: Path) -> None:
        path = tmp_path / "tractorbeam.pkl"
        path.write_text("x = 1", encoding="utf-8")
        with patch("tractorbeam.config.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(ConfigurationError, match="not found on PATH"):
                load_config_document(path)
