import json

import httpx
import pandas as pd
import pytest

from studyroom.sheets import SheetsClient, SheetsError, SnapshotCache

URL = "https://script.example.test/exec"


def _client(handler):
    return SheetsClient(URL, timeout=5.0, transport=httpx.MockTransport(handler))


def test_fetch_all_reads_both_lists():
    def handler(request):
        assert request.url.params["action"] == "getFullData"
        return httpx.Response(200, json={"reservations": [{"reservationId": "r1"}], "attendance": [{"studentId": "10101"}]})

    reservations, events = _client(handler).fetch_all()
    assert reservations == [{"reservationId": "r1"}]
    assert events == [{"studentId": "10101"}]


def test_fetch_all_accepts_wrapped_payload():
    def handler(request):
        return httpx.Response(200, json={"success": True, "data": {"reservations": [], "attendance": [{"a": 1}]}})

    assert _client(handler).fetch_all() == ([], [{"a": 1}])


@pytest.mark.parametrize("response", [
    httpx.Response(500, text="boom"),
    httpx.Response(200, text="<html>login</html>"),
    httpx.Response(200, json={"success": False, "error": "quota"}),
    httpx.Response(200, json=[1, 2]),
])
def test_fetch_all_failures_raise(response):
    with pytest.raises(SheetsError):
        _client(lambda request: response).fetch_all()


def test_transport_error_raises_sheets_error():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(SheetsError):
        _client(handler).fetch_all()


def test_missing_url_raises():
    with pytest.raises(SheetsError):
        SheetsClient("").fetch_all()


def test_append_posts_row():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"success": True})

    row = ["2025-03-10", "10101", "김민수", "체크인", "12:05:00", "자기주도학습실"]
    assert _client(handler).append_attendance_event(row) is True
    assert seen == {"action": "saveAttendance", "data": row}


class FakeClient:
    def __init__(self, snapshots):
        self.snapshots = list(snapshots)
        self.calls = 0

    def fetch_all(self):
        self.calls += 1
        item = self.snapshots.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_cache_reuses_fresh_snapshot():
    fake = FakeClient([([{"id": 1}], []), ([{"id": 2}], [])])
    cache = SnapshotCache(fake, refresh_seconds=30)
    t0 = pd.Timestamp("2025-03-10 12:00:00")
    assert cache.get(t0) == (([{"id": 1}], []), None)
    assert cache.get(t0 + pd.Timedelta(seconds=10))[0] == ([{"id": 1}], [])
    assert fake.calls == 1
    assert cache.get(t0 + pd.Timedelta(seconds=30))[0] == ([{"id": 2}], [])
    assert fake.calls == 2


def test_cache_keeps_previous_snapshot_on_failure():
    fake = FakeClient([([{"id": 1}], [{"e": 1}]), SheetsError("offline")])
    cache = SnapshotCache(fake, refresh_seconds=30)
    t0 = pd.Timestamp("2025-03-10 12:00:00")
    cache.get(t0)
    snapshot, notice = cache.get(t0 + pd.Timedelta(minutes=1))
    assert snapshot == ([{"id": 1}], [{"e": 1}])
    assert notice
    assert cache.fetched_at == t0


def test_cache_invalidate_forces_refetch():
    fake = FakeClient([([], []), ([{"id": 2}], [])])
    cache = SnapshotCache(fake, refresh_seconds=30)
    t0 = pd.Timestamp("2025-03-10 12:00:00")
    cache.get(t0)
    cache.invalidate()
    assert cache.get(t0)[0] == ([{"id": 2}], [])


def test_invalidate_keeps_snapshot_when_refetch_fails():
    fake = FakeClient([([{"id": 1}], []), SheetsError("offline")])
    cache = SnapshotCache(fake, refresh_seconds=30)
    t0 = pd.Timestamp("2025-03-10 12:00:00")
    cache.get(t0)
    cache.invalidate()
    snapshot, notice = cache.get(t0 + pd.Timedelta(seconds=5))
    assert fake.calls == 2
    assert snapshot == ([{"id": 1}], [])
    assert notice
    assert cache.has_snapshot
