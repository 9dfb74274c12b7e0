import json

import pandas as pd

from python_backend import cli


def _write_snapshot(tmp_path, snapshot):
    reservations, events = snapshot
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps({"reservations": reservations, "attendance": events}, ensure_ascii=False), encoding="utf-8")
    return str(path)


def test_reconcile_command(tmp_path, snapshot, capsys):
    path = _write_snapshot(tmp_path, snapshot)
    assert cli.main(["reconcile", "--snapshot", path, "--now", "2025-03-10 23:00"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["ok"] is True
    statuses = {r["reservationId"]: r["status"] for r in payload["records"]}
    assert statuses == {"r1": "Attended", "r2": "In-Progress", "r3": "Attended", "r4": "No-Show"}


def test_reconcile_command_slot_filter(tmp_path, snapshot, capsys):
    path = _write_snapshot(tmp_path, snapshot)
    assert cli.main(["reconcile", "--snapshot", path, "--now", "2025-03-10 23:00", "--slot", "dinner"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert [r["reservationId"] for r in payload["records"]] == ["r3"]


def test_summary_command(tmp_path, snapshot, capsys):
    path = _write_snapshot(tmp_path, snapshot)
    assert cli.main(["summary", "--snapshot", path, "--now", "2025-03-10 23:00", "--query", "김민수"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["summaries"] == [{
        "studentId": "10101", "name": "김민수", "totalMileage": 3,
        "attendedCount": 2, "noShowCount": 0, "totalStudyMinutes": 30,
    }]


def test_missing_snapshot_reports_error(tmp_path, capsys):
    assert cli.main(["summary", "--snapshot", str(tmp_path / "missing.json")]) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["ok"] is False


def test_reconcile_reads_clock_once(tmp_path, snapshot, capsys, monkeypatch):
    path = _write_snapshot(tmp_path, snapshot)
    calls = []

    def fake_now(args):
        calls.append(args)
        return pd.Timestamp("2025-03-10 23:00")

    monkeypatch.setattr(cli, "_now", fake_now)
    assert cli.main(["reconcile", "--snapshot", path, "--slot", "lunch"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert [r["reservationId"] for r in payload["records"]] == ["r1"]
    assert len(calls) == 1
