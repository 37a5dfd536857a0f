"""Tests for the provider-router command line."""

import json
from datetime import date

import pytest

from provider_router.cli import build_parser, main


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "router.yaml"
    path.write_text(
        "router:\n"
        "  default_strategy: thompson\n"
        f"  database_url: sqlite+aiosqlite:///{tmp_path}/router.db\n"
        "  log_level: WARNING\n"
    )
    return path


class TestParser:
    def test_aggregate_date(self):
        args = build_parser().parse_args(["aggregate", "--date", "2025-06-14"])
        assert args.date == date(2025, 6, 14)
        assert args.config is None

    def test_invalid_date(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["aggregate", "--date", "14/06/2025"])


class TestMain:
    def test_no_command(self, capsys):
        assert main([]) == 1
        assert "aggregate" in capsys.readouterr().out

    def test_show_config(self, config_file, capsys):
        assert main(["show-config", "--config", str(config_file)]) == 0

        shown = json.loads(capsys.readouterr().out)
        assert shown["default_strategy"] == "thompson"
        assert shown["database_url"].endswith("router.db")

    def test_bad_config(self, tmp_path, capsys):
        path = tmp_path / "router.yaml"
        path.write_text("router:\n  default_strategy: round_robin\n")

        assert main(["show-config", "--config", str(path)]) == 2
        assert "Configuration error" in capsys.readouterr().err

    def test_aggregate_empty_database(self, config_file, capsys):
        assert main(["aggregate", "--config", str(config_file), "--date", "2025-06-14"]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["target_date"] == "2025-06-14"
        assert report["cost_rows"] == 0
        assert report["errors"] == []
