"""Spreadsheet collaborator client: bulk snapshot read and attendance append."""
import logging
import threading
from typing import Any

import httpx
import pandas as pd

logger = logging.getLogger(__name__)


class SheetsError(RuntimeError):
    """The spreadsheet service could not be reached or answered with an error."""


class SheetsClient:
    """Apps Script web-app client. The script serialises writes on its side."""

    def __init__(self, script_url: str, timeout: float = 20.0, transport: httpx.BaseTransport | None = None) -> None:
        self._url = (script_url or "").strip()
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        # Apps Script answers with a redirect to googleusercontent
        return httpx.Client(timeout=self._timeout, follow_redirects=True, transport=self._transport)

    def _decode(self, r: httpx.Response) -> dict[str, Any]:
        if not r.is_success:
            raise SheetsError(f"Sheets API error: {r.status_code}")
        try:
            body = r.json() if r.content else {}
        except ValueError as e:
            raise SheetsError(f"Sheets API returned non-JSON body: {r.text[:200]!r}") from e
        if not isinstance(body, dict):
            raise SheetsError("Sheets API returned an unexpected payload")
        if body.get("success") is False:
            raise SheetsError(str(body.get("error") or body.get("message") or "Sheets API reported failure"))
        return body

    def fetch_all(self) -> tuple[list[dict], list[dict]]:
        """Return (reservations, attendance events)."""
        if not self._url:
            raise SheetsError("Sheets script URL not configured. Set STUDYROOM_SCRIPT_URL in .env.")
        try:
            with self._client() as c:
                r = c.get(self._url, params={"action": "getFullData"})
        except httpx.HTTPError as e:
            raise SheetsError(str(e)) from e
        body = self._decode(r)
        data = body.get("data", body)
        return list(data.get("reservations") or []), list(data.get("attendance") or [])

    def append_attendance_event(self, row: list[str]) -> bool:
        if not self._url:
            raise SheetsError("Sheets script URL not configured. Set STUDYROOM_SCRIPT_URL in .env.")
        try:
            with self._client() as c:
                r = c.post(self._url, json={"action": "saveAttendance", "data": row})
        except httpx.HTTPError as e:
            raise SheetsError(str(e)) from e
        self._decode(r)
        return True


class SnapshotCache:
    """Holds the last good (reservations, events) pair.

    A failed refresh keeps serving the previous snapshot and reports the
    failure as a notice instead of raising.
    """

    def __init__(self, client: SheetsClient, refresh_seconds: float = 30.0) -> None:
        self._client = client
        self._refresh = pd.Timedelta(seconds=refresh_seconds)
        self._lock = threading.Lock()
        self._snapshot: tuple[list[dict], list[dict]] = ([], [])
        self._fetched_at: pd.Timestamp | None = None
        self._stale = False

    @property
    def client(self) -> SheetsClient:
        return self._client

    @property
    def fetched_at(self) -> pd.Timestamp | None:
        return self._fetched_at

    @property
    def has_snapshot(self) -> bool:
        return self._fetched_at is not None

    def invalidate(self) -> None:
        """Force the next get() to refetch; the held snapshot stays available."""
        with self._lock:
            self._stale = True

    def get(self, now: pd.Timestamp, force: bool = False) -> tuple[tuple[list[dict], list[dict]], str | None]:
        with self._lock:
            fresh = self._fetched_at is not None and not self._stale and now - self._fetched_at < self._refresh
            if fresh and not force:
                return self._snapshot, None
            try:
                snapshot = self._client.fetch_all()
            except SheetsError as e:
                logger.warning("Snapshot refresh failed, keeping previous data: %s", e)
                return self._snapshot, "데이터를 불러오는 데 실패했습니다."
            self._snapshot = snapshot
            self._fetched_at = now
            self._stale = False
            logger.info("Snapshot refreshed: %s reservations, %s attendance events", len(snapshot[0]), len(snapshot[1]))
            return self._snapshot, None
