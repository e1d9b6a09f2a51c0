"""Unit tests for the command-line entry point."""
import os
from pathlib import Path

import pytest

from keeper import __version__
from keeper.__main__ import find_config_file, main, parse_args


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])

        assert args.command is None
        assert args.config is None
        assert args.log_level is None

    def test_status_command(self):
        args = parse_args(["--log-level", "DEBUG", "status", "0xabc"])

        assert args.command == "status"
        assert args.market == "0xabc"
        assert args.log_level == "DEBUG"

    def test_config_path(self):
        args = parse_args(["--config", "keeper.toml", "run"])

        assert args.config == Path("keeper.toml")

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestMain:
    def test_version_command(self, capsys):
        assert main(["version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_run_without_config_fails_cleanly(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for key in [k for k in os.environ if k.startswith("KEEPER_")]:
            monkeypatch.delenv(key)

        assert main(["--config", str(tmp_path / "absent.toml"), "run"]) == 1


class TestFindConfigFile:
    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.toml"
        path.write_text("")

        assert find_config_file(path) == path

    def test_falls_back_to_search_paths(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "keeper.toml").write_text("")

        assert find_config_file(tmp_path / "missing.toml") == Path("keeper.toml")
