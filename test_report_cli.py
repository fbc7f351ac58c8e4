"""
Tests for report_cli.py — end-to-end runs against a data directory.

Run: python -m pytest test_report_cli.py -v
"""

import json
import sys

import pytest

import report_cli

EXPORT_CSV = """asset_id,previous_state,new_state,timestamp,duration_seconds,stop_reason
Filler 1,RUNNING,STOPPED,2026-03-02 06:10:00,,Conveyor jam
Filler 1,STOPPED,RUNNING,2026-03-02 06:15:00,300,
"""


def _run(monkeypatch, capsys, data_dir, *args):
    monkeypatch.setattr(sys, "argv", ["report_cli.py", "--data-dir", str(data_dir), *args])
    report_cli.main()
    return json.loads(capsys.readouterr().out)


class TestCli:
    def test_shift_lifecycle(self, monkeypatch, capsys, tmp_path):
        data_dir = tmp_path / "data"
        export = tmp_path / "export.csv"
        export.write_text(EXPORT_CSV)

        shift = _run(monkeypatch, capsys, data_dir, "--command", "open-shift", "--name", "Day",
                     "--start", "2026-03-02T06:00:00Z")
        assert shift["status"] == "active"

        ingested = _run(monkeypatch, capsys, data_dir, "--command", "ingest", "--file", str(export))
        assert ingested["appended"] == 2

        closed = _run(monkeypatch, capsys, data_dir, "--command", "close-shift",
                      "--end", "2026-03-02T07:00:00Z")
        assert closed["shift"]["status"] == "completed"

        report = _run(monkeypatch, capsys, data_dir, "--command", "report",
                      "--shift-id", str(shift["id"]))
        asset = report["per_asset_metrics"][0]
        assert asset["asset_id"] == "Filler 1"
        assert asset["downtime_seconds"] == 300
        assert report["shift_metrics"]["is_final"] is True

        history = _run(monkeypatch, capsys, data_dir, "--command", "history")
        assert history["total_shifts"] == 1

    def test_aggregate_window(self, monkeypatch, capsys, tmp_path):
        export = tmp_path / "export.csv"
        export.write_text(EXPORT_CSV)
        _run(monkeypatch, capsys, tmp_path, "--command", "ingest", "--file", str(export))

        result = _run(monkeypatch, capsys, tmp_path, "--command", "aggregate", "--asset", "Filler 1",
                      "--start", "2026-03-02T06:00:00Z", "--end", "2026-03-02T06:30:00Z")

        assert result[0]["stop_count"] == 1
        assert result[0]["runtime_seconds"] == 1500

    def test_report_requires_shift_id(self, monkeypatch, tmp_path):
        monkeypatch.setattr(sys, "argv", ["report_cli.py", "--data-dir", str(tmp_path),
                                          "--command", "report"])
        with pytest.raises(SystemExit):
            report_cli.main()
