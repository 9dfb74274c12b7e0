import logging
from typing import Optional

import pandas as pd
from fastapi import Depends, FastAPI, Form, Header
from fastapi.responses import JSONResponse, Response
from mangum import Mangum

from . import logic
from .settings import Settings, settings
from .sheets import SheetsClient, SheetsError, SnapshotCache

logger = logging.getLogger(__name__)

app = FastAPI()

_cache = SnapshotCache(SheetsClient(settings.script_url, settings.http_timeout), settings.refresh_seconds)


def get_settings() -> Settings:
    return settings


def get_cache() -> SnapshotCache:
    return _cache


def get_now(cfg: Settings = Depends(get_settings)) -> pd.Timestamp:
    return pd.Timestamp.now(tz=cfg.timezone).tz_localize(None)


def _unauthorized():
    return JSONResponse(status_code=401, content={"error": "비밀번호가 올바르지 않습니다."})


def _is_admin(password: Optional[str], cfg: Settings) -> bool:
    return bool(password) and password == cfg.admin_password


def _is_checkin(password: Optional[str], cfg: Settings) -> bool:
    return bool(password) and password == cfg.checkin_password


def _reconciled(cache: SnapshotCache, cfg: Settings, now: pd.Timestamp):
    (reservations, events), notice = cache.get(now)
    records = logic.reconcile(reservations, events, now, logic.TIME_SLOTS, cfg.grace_minutes, cfg.timezone)
    return records, events, notice


@app.get("/api/health")
def health():
    return {"ok": True}


@app.post("/api/login")
def login(role: str = Form(...), password: str = Form(...), cfg: Settings = Depends(get_settings)):
    expected = {"admin": cfg.admin_password, "checkin": cfg.checkin_password}.get(role)
    if expected is None:
        return JSONResponse(status_code=400, content={"error": f"Unsupported role: {role}"})
    if password != expected:
        return _unauthorized()
    return {"ok": True, "role": role}


@app.get("/api/slots")
def slots(now: pd.Timestamp = Depends(get_now)):
    return logic.available_slots(now)


@app.get("/api/records")
def records(
    q: str = "",
    slot: str = "all",
    x_admin_password: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
    cache: SnapshotCache = Depends(get_cache),
    now: pd.Timestamp = Depends(get_now),
):
    if not _is_admin(x_admin_password, cfg):
        return _unauthorized()
    recs, _, notice = _reconciled(cache, cfg, now)
    return {"records": logic.filter_records(recs, q, slot, today=now), "notice": notice}


@app.get("/api/mileage")
def mileage(
    q: str = "",
    x_admin_password: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
    cache: SnapshotCache = Depends(get_cache),
    now: pd.Timestamp = Depends(get_now),
):
    if not _is_admin(x_admin_password, cfg):
        return _unauthorized()
    recs, _, notice = _reconciled(cache, cfg, now)
    summaries = logic.summarize(recs, cfg.timezone)
    return {"summaries": logic.filter_summaries(summaries, q), "notice": notice}


@app.get("/api/dashboard")
def dashboard(
    x_admin_password: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
    cache: SnapshotCache = Depends(get_cache),
    now: pd.Timestamp = Depends(get_now),
):
    if not _is_admin(x_admin_password, cfg):
        return _unauthorized()
    recs, events, notice = _reconciled(cache, cfg, now)
    return {**logic.dashboard_stats(recs, events, today=now), "notice": notice}


@app.get("/api/occupancy")
def occupancy(
    location: str,
    slot: str,
    date: Optional[str] = None,
    x_admin_password: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
    cache: SnapshotCache = Depends(get_cache),
    now: pd.Timestamp = Depends(get_now),
):
    if not _is_admin(x_admin_password, cfg):
        return _unauthorized()
    try:
        day = pd.Timestamp(date) if date else now
    except ValueError:
        return JSONResponse(status_code=400, content={"error": f"Invalid date: {date}"})
    recs, _, notice = _reconciled(cache, cfg, now)
    try:
        seats = logic.seat_occupancy(recs, day, location, slot, logic.TIME_SLOTS)
    except logic.SlotLookupError:
        return JSONResponse(status_code=400, content={"error": f"Unknown slot: {slot}"})
    return {**seats, "notice": notice}


@app.post("/api/attendance")
def attendance(
    student_id: str = Form(""),
    name: str = Form(""),
    action: str = Form(...),
    x_checkin_password: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
    cache: SnapshotCache = Depends(get_cache),
    now: pd.Timestamp = Depends(get_now),
):
    if not _is_checkin(x_checkin_password, cfg):
        return _unauthorized()
    (reservations, _), notice = cache.get(now)
    if notice and logic.normalize_action(action) == logic.CHECKIN and not cache.has_snapshot:
        return JSONResponse(status_code=502, content={"error": "예약 정보를 불러오는 데 실패했습니다."})
    try:
        act = logic.validate_checkin(student_id, name, action, reservations, now, logic.TIME_SLOTS, cfg.grace_minutes)
    except logic.CheckinRejected as e:
        return JSONResponse(status_code=400, content={"error": e.message})

    row = logic.build_attendance_row(student_id, name, act, now, cfg.attendance_location)
    try:
        cache.client.append_attendance_event(row)
    except SheetsError:
        logger.exception("Failed to append attendance event for %s", student_id.strip())
        return JSONResponse(status_code=502, content={"error": "처리 중 오류가 발생했습니다."})
    cache.invalidate()
    label = "체크인" if act == logic.CHECKIN else "체크아웃"
    return {
        "ok": True,
        "message": f"{label}이(가) 완료되었습니다!",
        "details": {"studentId": student_id.strip(), "name": name.strip(), "action": act, "time": now.strftime("%H:%M:%S")},
    }


@app.get("/api/export")
def export(
    x_admin_password: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
    cache: SnapshotCache = Depends(get_cache),
    now: pd.Timestamp = Depends(get_now),
):
    if not _is_admin(x_admin_password, cfg):
        return _unauthorized()
    recs, _, notice = _reconciled(cache, cfg, now)
    out_bytes = logic.export_workbook(recs, logic.summarize(recs, cfg.timezone), now)
    headers = {"Content-Disposition": f"attachment; filename=studyroom_{now.strftime('%Y%m%d')}.xlsx"}
    if notice:
        headers["X-Studyroom-Notice"] = "stale"
    return Response(
        content=out_bytes,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )


handler = Mangum(app)
