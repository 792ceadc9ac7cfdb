"""
tests/test_cli.py
main.py argument handling and exit codes (no network access).
Run: pytest tests/test_cli.py -v
"""

import sys
import os
import json
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
import main as cli


def _run(tmp_path, *args):
    argv = ["--no-logo", "--quiet", "--config", str(tmp_path / "none.yaml"),
            "--db-path", str(tmp_path / "cli.db"), *args]
    with pytest.raises(SystemExit) as ei:
        cli.main(argv)
    return ei.value.code


class TestCli:

    def test_parser_defaults(self):
        args = cli.build_cli().parse_args(["--entries"])
        assert args.entries == 50
        assert args.sort == "ip"
        assert args.scan_type is None

    def test_invalid_range_exit_code(self, tmp_path, capsys):
        assert _run(tmp_path, "--scan", "10.0.0.9-1") == cli.EXIT_INVALID
        assert "after range end" in capsys.readouterr().out

    def test_range_too_large_prints_hint(self, tmp_path, capsys):
        assert _run(tmp_path, "--scan", "192.168.1.0/16") == cli.EXIT_INVALID
        assert "192.168.1.0/24" in capsys.readouterr().out

    def test_empty_entries(self, tmp_path, capsys):
        assert _run(tmp_path, "--entries", "10") == cli.EXIT_OK
        assert "No hosts recorded" in capsys.readouterr().out

    def test_priority_round_trip(self, tmp_path, capsys):
        assert _run(tmp_path, "--set-priority",
                    '{"priority": ["scanner", "unifi", "freebox"]}') == cli.EXIT_OK
        capsys.readouterr()
        assert _run(tmp_path, "--priority") == cli.EXIT_OK
        shown = json.loads(capsys.readouterr().out)
        assert shown["hostnamePriority"] == ["scanner", "unifi", "freebox"]

    def test_invalid_priority(self, tmp_path):
        assert _run(tmp_path, "--set-priority", '{"priority": ["scanner"]}') == cli.EXIT_INVALID
        assert _run(tmp_path, "--set-priority", "not json") == cli.EXIT_INVALID

    def test_db_stats_json(self, tmp_path, capsys):
        assert _run(tmp_path, "--db-stats") == cli.EXIT_OK
        assert json.loads(capsys.readouterr().out)["entries"] == 0

    def test_scheduler_status_json(self, tmp_path, capsys):
        assert _run(tmp_path, "--scheduler-status") == cli.EXIT_OK
        status = json.loads(capsys.readouterr().out)
        assert status["scheduler"]["enabled"] is False
        assert status["retention"]["purgeSchedule"] == "0 2 * * *"

    def test_delete_unknown_host(self, tmp_path):
        assert _run(tmp_path, "--delete", "10.0.0.1") == cli.EXIT_FAILED

    def test_clear_db_cancelled(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr("builtins.input", lambda _: "no")
        assert _run(tmp_path, "--clear-db") == cli.EXIT_OK
        assert "Cancelled" in capsys.readouterr().out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
