import pandas as pd
import pytest


def make_reservation(rid, student_id, name, slot, date="2025-03-10", seat="1", location="채움터", timestamp=None):
    return {
        "date": date, "studentId": student_id, "name": name, "location": location, "seat": seat,
        "timeSlot": slot, "reservationId": rid, "timestamp": timestamp or f"{date} 08:00:00", "teamMembers": [],
    }


def make_event(student_id, action, timestamp, name="학생", location="자기주도학습실"):
    return {"studentId": student_id, "name": name, "action": action, "timestamp": timestamp, "location": location}


@pytest.fixture
def now():
    return pd.Timestamp("2025-03-10 23:00:00")


@pytest.fixture
def snapshot():
    reservations = [
        make_reservation("r1", "10101", "김민수", "점심"),
        make_reservation("r2", "10101", "김민수", "자기주도학습1"),
        make_reservation("r3", "20202", "이서연", "석식"),
        make_reservation("r4", "30303", "박지훈", "점심", date="2025-03-09"),
    ]
    events = [
        make_event("10101", "checkin", "2025-03-10 12:05:00", "김민수"),
        make_event("10101", "checkout", "2025-03-10 13:00:00", "김민수"),
        make_event("10101", "checkin", "2025-03-10 19:10:00", "김민수"),
        make_event("20202", "checkin", "2025-03-10 18:00:00", "이서연"),
        make_event("20202", "checkout", "2025-03-10 18:15:00", "이서연"),
    ]
    return reservations, events
