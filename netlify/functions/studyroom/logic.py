import io, re, math, logging
from bisect import bisect_left, bisect_right
from typing import List, Tuple, Dict, Optional, Any, Iterable
import pandas as pd

logger = logging.getLogger(__name__)

ATTENDED = "Attended"
NO_SHOW = "No-Show"
RESERVED = "Reserved"
IN_PROGRESS = "In-Progress"

CHECKIN = "checkin"
CHECKOUT = "checkout"

GRACE_MINUTES_DEFAULT = 30
DEFAULT_TZ = "Asia/Seoul"

TIME_SLOTS: List[Dict[str, str]] = [
    {"id": "lunch",   "label": "점심",          "time": "12:30-13:30"},
    {"id": "period8", "label": "8교시",         "time": "16:30-17:20"},
    {"id": "dinner",  "label": "석식",          "time": "18:00-18:30"},
    {"id": "study1",  "label": "자기주도학습1", "time": "19:00-21:00"},
    {"id": "study2",  "label": "자기주도학습2", "time": "21:00-22:30"},
]

# booking cutoffs, minutes after midnight
TIME_SLOT_LIMITS: Dict[str, int] = {
    "lunch": 12 * 60 + 30,
    "period8": 16 * 60 + 30,
    "dinner": 18 * 60,
    "study1": 19 * 60,
    "study2": 21 * 60,
}

MEAL_SLOTS = ("lunch", "dinner")
SELF_STUDY_SLOTS = ("study1", "study2")

SEAT_COUNTS = {
    "스터디룸": 0,
    "영글터 집중학습실": 8,
    "영글터 자율학습실": 25,
    "채움터": 9,
}

_ACTION_ALIASES = {
    "checkin": CHECKIN, "check-in": CHECKIN, "check_in": CHECKIN, "체크인": CHECKIN,
    "checkout": CHECKOUT, "check-out": CHECKOUT, "check_out": CHECKOUT, "체크아웃": CHECKOUT,
}

_TIME_RANGE_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")
_STUDENT_ID_RE = re.compile(r"^\d{5}$")


class SlotLookupError(KeyError):
    """Raised when a slot label is not in the catalog."""


class CheckinRejected(ValueError):
    """A check-in/out attempt refused before anything was written."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

# -------------------- time helpers --------------------

def _parse_dt(s, tz: Optional[str] = DEFAULT_TZ) -> Optional[pd.Timestamp]:
    if s is None: return None
    try:
        if pd.isna(s): return None
    except (TypeError, ValueError):
        pass
    try: ts = pd.to_datetime(s)
    except (TypeError, ValueError): return None
    if pd.isna(ts): return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(tz or DEFAULT_TZ).tz_localize(None)
    return ts

def _parse_date(s, tz: Optional[str] = DEFAULT_TZ) -> Optional[pd.Timestamp]:
    if isinstance(s, str) and re.match(r"^\d{4}-\d{2}-\d{2}", s.strip()):
        s = s.strip()[:10]
    ts = _parse_dt(s, tz)
    return ts.normalize() if ts is not None else None

def _ts_to_str(ts: Optional[pd.Timestamp]) -> Optional[str]:
    if ts is None: return None
    return ts.strftime("%Y-%m-%d %H:%M:%S")

def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))

def parse_time_range(time_str: str, date) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Bind an "HH:MM-HH:MM" range to the given calendar date."""
    m = _TIME_RANGE_RE.match(time_str or "")
    if not m:
        raise ValueError(f"Malformed time range: {time_str!r}")
    sh, sm, eh, em = (int(g) for g in m.groups())
    day = pd.Timestamp(date).normalize()
    return day + pd.Timedelta(hours=sh, minutes=sm), day + pd.Timedelta(hours=eh, minutes=em)

# -------------------- slot catalog --------------------

def find_slot(catalog: Iterable[Dict[str, str]], label: Optional[str] = None, slot_id: Optional[str] = None) -> Optional[Dict[str, str]]:
    for slot in catalog:
        if label is not None and slot.get("label") == label: return slot
        if slot_id is not None and slot.get("id") == slot_id: return slot
    return None

def resolve_window(label: str, date, catalog: Iterable[Dict[str, str]] = TIME_SLOTS) -> Tuple[pd.Timestamp, pd.Timestamp]:
    slot = find_slot(catalog, label=label)
    if slot is None:
        raise SlotLookupError(label)
    return parse_time_range(slot["time"], date)

def _slot_start_key(label: str, catalog: Iterable[Dict[str, str]]) -> str:
    slot = find_slot(catalog, label=label)
    return slot["time"].split("-")[0].strip().zfill(5) if slot else "99:99"

# -------------------- mileage --------------------

def calculate_mileage(slot_id: Optional[str], duration_minutes: float) -> int:
    if duration_minutes is None or duration_minutes < 0: return 0
    if slot_id in MEAL_SLOTS:
        return 1 if duration_minutes >= 20 else 0
    if slot_id in SELF_STUDY_SLOTS:
        return 2 if duration_minutes > 0 else 0
    return 0

# -------------------- event index --------------------

def normalize_action(action) -> Optional[str]:
    if not isinstance(action, str): return None
    return _ACTION_ALIASES.get(action.strip().lower())

def _event_timestamp(ev: Dict[str, Any], tz: Optional[str]) -> Optional[pd.Timestamp]:
    ts = _parse_dt(ev.get("timestamp"), tz)
    if ts is None and ev.get("date") and ev.get("time"):
        ts = _parse_dt(f"{str(ev['date'])[:10]} {ev['time']}", tz)
    return ts

def index_events(events: Iterable[Dict[str, Any]], tz: Optional[str] = DEFAULT_TZ) -> Dict[str, Tuple[List[pd.Timestamp], List[str]]]:
    """Group events per student, sorted by time.

    Returns studentId -> (timestamps, actions) as parallel lists so the
    reconciler can bisect on the timestamps.
    """
    grouped: Dict[str, List[Tuple[pd.Timestamp, str]]] = {}
    skipped = 0
    for ev in events or []:
        sid = str(ev.get("studentId") or "").strip()
        action = normalize_action(ev.get("action"))
        ts = _event_timestamp(ev, tz)
        if not sid or action is None or ts is None:
            skipped += 1; continue
        grouped.setdefault(sid, []).append((ts, action))
    if skipped:
        logger.warning("Skipped %s attendance events with missing student, action or timestamp", skipped)
    index = {}
    for sid, items in grouped.items():
        items.sort(key=lambda x: x[0])
        index[sid] = ([t for t, _ in items], [a for _, a in items])
    return index

def _first_action(times: List[pd.Timestamp], actions: List[str], start: int, action: str, until: Optional[pd.Timestamp] = None) -> Optional[int]:
    for i in range(start, len(times)):
        if until is not None and times[i] > until: return None
        if actions[i] == action: return i
    return None

# -------------------- reconciliation --------------------

def _reserved(res: Dict[str, Any], status: str = RESERVED) -> Dict[str, Any]:
    return {**res, "status": status, "mileagePoints": 0}

def reconcile_one(res: Dict[str, Any], index: Dict[str, Tuple[List[pd.Timestamp], List[str]]], now: pd.Timestamp, catalog: Iterable[Dict[str, str]] = TIME_SLOTS, grace_minutes: int = GRACE_MINUTES_DEFAULT, tz: Optional[str] = DEFAULT_TZ) -> Dict[str, Any]:
    slot = find_slot(catalog, label=res.get("timeSlot"))
    day = _parse_date(res.get("date"), tz)
    if slot is None or day is None:
        logger.debug("Reservation %s left as Reserved (slot=%r date=%r)", res.get("reservationId"), res.get("timeSlot"), res.get("date"))
        return _reserved(res)
    try:
        start, end = parse_time_range(slot["time"], day)
    except ValueError:
        logger.warning("Slot %s has a malformed time range %r", slot.get("id"), slot.get("time"))
        return _reserved(res)

    times, actions = index.get(str(res.get("studentId") or "").strip(), ([], []))
    grace_start = start - pd.Timedelta(minutes=grace_minutes)
    ci = _first_action(times, actions, bisect_left(times, grace_start), CHECKIN, until=end)
    if ci is None:
        return _reserved(res, NO_SHOW if end < now else RESERVED)

    checkin_ts = times[ci]
    co = _first_action(times, actions, bisect_right(times, checkin_ts), CHECKOUT)
    if co is None:
        points = 2 if slot["id"] in SELF_STUDY_SLOTS else 0
        return {**res, "status": IN_PROGRESS, "checkinTime": _ts_to_str(checkin_ts), "mileagePoints": points}

    checkout_ts = times[co]
    eff_start = max(checkin_ts, start); eff_end = min(checkout_ts, end)
    minutes = _round_half_up((eff_end - eff_start).total_seconds() / 60.0) if eff_end > eff_start else 0
    minutes = max(0, minutes)
    return {
        **res, "status": ATTENDED,
        "checkinTime": _ts_to_str(checkin_ts),
        "checkoutTime": _ts_to_str(checkout_ts),
        "studyDurationMinutes": minutes,
        "mileagePoints": calculate_mileage(slot["id"], minutes),
    }

def reconcile(reservations: Iterable[Dict[str, Any]], events: Iterable[Dict[str, Any]], now, catalog: Iterable[Dict[str, str]] = TIME_SLOTS, grace_minutes: int = GRACE_MINUTES_DEFAULT, tz: Optional[str] = DEFAULT_TZ) -> List[Dict[str, Any]]:
    """Project reservations + attendance events into study records.

    Events are indexed by student once per pass. Each reservation then costs a
    bisect into that student's history plus a forward scan to the first
    matching check-in and check-out.
    """
    now_ts = _parse_dt(now, tz)
    if now_ts is None:
        raise ValueError(f"Unparsable evaluation time: {now!r}")
    catalog = list(catalog)
    index = index_events(events, tz)
    return [reconcile_one(res, index, now_ts, catalog, grace_minutes, tz) for res in reservations or []]

# -------------------- aggregation --------------------

def _record_order_key(rec: Dict[str, Any], tz: Optional[str]) -> Tuple:
    day = _parse_date(rec.get("date"), tz)
    stamp = _parse_dt(rec.get("timestamp"), tz)
    return (day if day is not None else pd.Timestamp.min, stamp if stamp is not None else pd.Timestamp.min)

def summarize(records: Iterable[Dict[str, Any]], tz: Optional[str] = DEFAULT_TZ) -> List[Dict[str, Any]]:
    """Mileage leaderboard, highest total first.

    Students are keyed strictly by studentId. The display name comes from the
    student's most recent reservation (date, then booking timestamp); ties go
    to the later record in input order.
    """
    summaries: Dict[str, Dict[str, Any]] = {}
    latest: Dict[str, Tuple] = {}
    for rec in records or []:
        sid = str(rec.get("studentId") or "").strip()
        s = summaries.get(sid)
        if s is None:
            s = summaries[sid] = dict(studentId=sid, name=rec.get("name", ""), totalMileage=0, attendedCount=0, noShowCount=0, totalStudyMinutes=0)
        key = _record_order_key(rec, tz)
        if sid not in latest or key >= latest[sid]:
            latest[sid] = key; s["name"] = rec.get("name", "")
        s["totalMileage"] += int(rec.get("mileagePoints") or 0)
        s["totalStudyMinutes"] += int(rec.get("studyDurationMinutes") or 0)
        status = rec.get("status")
        if status in (ATTENDED, IN_PROGRESS): s["attendedCount"] += 1
        elif status == NO_SHOW: s["noShowCount"] += 1
    return sorted(summaries.values(), key=lambda s: s["totalMileage"], reverse=True)

def _matches(query: str, name, student_id) -> bool:
    q = (query or "").strip().lower()
    if not q: return True
    return q in str(name or "").lower() or q in str(student_id or "")

def filter_summaries(summaries: List[Dict[str, Any]], query: str) -> List[Dict[str, Any]]:
    if not (query or "").strip(): return list(summaries)
    return [s for s in summaries if _matches(query, s.get("name"), s.get("studentId"))]

def filter_records(records: List[Dict[str, Any]], query: str = "", slot_id: str = "all", today=None, catalog: Iterable[Dict[str, str]] = TIME_SLOTS) -> List[Dict[str, Any]]:
    catalog = list(catalog)
    if (query or "").strip():
        out = [r for r in records if _matches(query, r.get("name"), r.get("studentId"))]
    else:
        today_str = pd.Timestamp(today if today is not None else pd.Timestamp.now()).strftime("%Y-%m-%d")
        out = [r for r in records if str(r.get("date", ""))[:10] == today_str]
    if slot_id and slot_id != "all":
        slot = find_slot(catalog, slot_id=slot_id)
        if slot is not None:
            out = [r for r in out if r.get("timeSlot") == slot["label"]]
    # date descending, then slot start ascending
    out.sort(key=lambda r: _slot_start_key(r.get("timeSlot"), catalog))
    out.sort(key=lambda r: str(r.get("date", ""))[:10], reverse=True)
    return out

def dashboard_stats(records: List[Dict[str, Any]], events: List[Dict[str, Any]], today=None) -> Dict[str, int]:
    today_str = pd.Timestamp(today if today is not None else pd.Timestamp.now()).strftime("%Y-%m-%d")
    todays = [r for r in records if str(r.get("date", ""))[:10] == today_str]
    return {
        "todayReservations": len(todays),
        "inProgress": sum(1 for r in todays if r.get("status") == IN_PROGRESS),
        "todayNoShows": sum(1 for r in todays if r.get("status") == NO_SHOW),
        "attendanceEvents": len(events or []),
    }

# -------------------- booking helpers --------------------

def get_seat_count(location: str) -> int:
    return SEAT_COUNTS.get(location, 0)

def _seat_key(seat) -> Tuple[int, str]:
    s = str(seat).strip()
    return (int(s), s) if s.isdigit() else (10 ** 6, s)

def seat_occupancy(reservations: Iterable[Dict[str, Any]], date, location: str, slot_id: str, catalog: Iterable[Dict[str, str]] = TIME_SLOTS) -> Dict[str, Any]:
    """Seats taken in one room for a date and slot.

    Accepts plain reservations or reconciled records; a record's status is
    carried onto its seat.
    """
    slot = find_slot(catalog, slot_id=slot_id)
    if slot is None:
        raise SlotLookupError(slot_id)
    day = pd.Timestamp(date).strftime("%Y-%m-%d")
    taken: Dict[str, Dict[str, Any]] = {}
    for r in reservations or []:
        if str(r.get("date", ""))[:10] != day or r.get("location") != location or r.get("timeSlot") != slot["label"]:
            continue
        seat = str(r.get("seat", "")).strip()
        if seat in taken:
            logger.warning("Seat %s in %s double-booked for %s %s", seat, location, day, slot_id)
            continue
        taken[seat] = {"seat": seat, "studentId": r.get("studentId"), "name": r.get("name"),
                       "reservationId": r.get("reservationId"), "status": r.get("status")}
    total = get_seat_count(location)
    free = [str(n) for n in range(1, total + 1) if str(n) not in taken]
    return {
        "date": day, "location": location, "slot": slot["id"], "label": slot["label"],
        "totalSeats": total,
        "taken": sorted(taken.values(), key=lambda t: _seat_key(t["seat"])),
        "freeSeats": free,
        "freeCount": len(free),
    }

def is_time_slot_booking_allowed(slot_id: str, now, limits: Dict[str, int] = TIME_SLOT_LIMITS) -> bool:
    ts = pd.Timestamp(now)
    return ts.hour * 60 + ts.minute <= limits.get(slot_id, 9999)

def available_slots(now, catalog: Iterable[Dict[str, str]] = TIME_SLOTS, limits: Dict[str, int] = TIME_SLOT_LIMITS) -> List[Dict[str, Any]]:
    return [{**slot, "bookable": is_time_slot_booking_allowed(slot["id"], now, limits)} for slot in catalog]

# -------------------- check-in validation --------------------

def validate_student_id(student_id: str) -> Tuple[bool, str]:
    sid = (student_id or "").strip()
    if not _STUDENT_ID_RE.match(sid):
        return False, "학번은 5자리 숫자여야 합니다."
    if not 10101 <= int(sid) <= 31027:
        return False, "학번은 10101부터 31027까지 유효합니다."
    return True, ""

def validate_checkin(student_id: str, name: str, action: str, reservations: Iterable[Dict[str, Any]], now, catalog: Iterable[Dict[str, str]] = TIME_SLOTS, grace_minutes: int = GRACE_MINUTES_DEFAULT) -> str:
    """Check a check-in/out attempt; returns the normalised action or raises CheckinRejected."""
    sid = (student_id or "").strip(); nm = (name or "").strip()
    if not sid or not nm:
        raise CheckinRejected("학번과 이름을 모두 입력해주세요.")
    if not validate_student_id(sid)[0]:
        raise CheckinRejected("학번이 유효하지 않습니다 (5자리 숫자).")
    act = normalize_action(action)
    if act is None:
        raise CheckinRejected("알 수 없는 요청입니다.")
    if act == CHECKOUT:
        return act

    now_ts = pd.Timestamp(now)
    today_str = now_ts.strftime("%Y-%m-%d")
    mine = [r for r in reservations or []
            if str(r.get("date", ""))[:10] == today_str and str(r.get("studentId", "")).strip() == sid and str(r.get("name", "")).strip() == nm]
    if not mine:
        raise CheckinRejected("오늘 예약된 정보가 없습니다. 먼저 예약을 진행해주세요.")
    for r in mine:
        try:
            start, end = resolve_window(r.get("timeSlot"), now_ts, catalog)
        except (SlotLookupError, ValueError):
            continue
        if start - pd.Timedelta(minutes=grace_minutes) <= now_ts <= end:
            return act
    raise CheckinRejected("체크인 가능한 예약 시간이 아닙니다. 예약 시간을 확인해주세요.")

def build_attendance_row(student_id: str, name: str, action: str, now, location: str = "자기주도학습실") -> List[str]:
    ts = pd.Timestamp(now)
    label = "체크인" if normalize_action(action) == CHECKIN else "체크아웃"
    return [ts.strftime("%Y-%m-%d"), student_id.strip(), name.strip(), label, ts.strftime("%H:%M:%S"), location]

# -------------------- export --------------------

RECORD_COLUMNS = ["date", "studentId", "name", "location", "seat", "timeSlot", "reservationId", "status",
                  "checkinTime", "checkoutTime", "studyDurationMinutes", "mileagePoints", "teamMembersString"]
SUMMARY_COLUMNS = ["studentId", "name", "totalMileage", "totalStudyMinutes", "attendedCount", "noShowCount"]

def _team_string(rec: Dict[str, Any]) -> str:
    if rec.get("teamMembersString"): return str(rec["teamMembersString"])
    members = rec.get("teamMembers") or []
    return ", ".join(f"{m.get('name', '')}({m.get('studentId', '')})" for m in members if isinstance(m, dict))

def records_frame(records: List[Dict[str, Any]]) -> pd.DataFrame:
    rows = [{**{c: r.get(c) for c in RECORD_COLUMNS}, "teamMembersString": _team_string(r)} for r in records]
    return pd.DataFrame(rows, columns=RECORD_COLUMNS)

def summaries_frame(summaries: List[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(summaries, columns=SUMMARY_COLUMNS)
    df.insert(0, "rank", range(1, len(df) + 1))
    return df

def export_workbook(records: List[Dict[str, Any]], summaries: List[Dict[str, Any]], now=None) -> bytes:
    meta_df = pd.DataFrame([
        ["Generated at", _ts_to_str(pd.Timestamp(now)) if now is not None else ""],
        ["Records", len(records)],
        ["Students", len(summaries)],
        ["Grace minutes", GRACE_MINUTES_DEFAULT],
    ], columns=["Metric", "Value"])
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as w:
        records_frame(records).to_excel(w, index=False, sheet_name="Records")
        summaries_frame(summaries).to_excel(w, index=False, sheet_name="Mileage")
        meta_df.to_excel(w, index=False, sheet_name="Meta")
    return buf.getvalue()
