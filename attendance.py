# attendance.py
import logging
from collections import namedtuple
from datetime import date as _date, timedelta

from db import find_student, get_session, row_to_dict, rows_to_dicts, transaction, utcnow_iso
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STATUSES = ("present", "absent", "late")
ATTENDED_STATUSES = ("present", "late")

RecordResult = namedtuple("RecordResult", "session_id recorded skipped")


# ---- Student resolver ----
def resolve_student(conn, roll_number: str, section: str, name: str | None = None) -> int:
    """Return the id of the student with this roll in this section, creating it if needed.

    An existing row is returned untouched; the name only matters on insert.
    """
    cur = conn.execute("""
        INSERT INTO students (name, roll_number, section, created_at)
        VALUES (?,?,?,?)
        ON CONFLICT(roll_number, section) DO NOTHING
    """, ((name or "").strip() or roll_number, roll_number, section, utcnow_iso()))
    if cur.rowcount:
        logger.info("Created student roll=%s section=%s", roll_number, section)
        return cur.lastrowid
    row = conn.execute(
        "SELECT id FROM students WHERE roll_number = ? AND section = ?",
        (roll_number, section),
    ).fetchone()
    return row["id"]


# ---- Session recorder ----
def _required(value, field: str) -> str:
    value = (str(value) if value is not None else "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


def _valid_date(value: str) -> str:
    try:
        return _date.fromisoformat(value).isoformat()
    except ValueError:
        raise ValidationError("date must be YYYY-MM-DD")


def _clean_entry(entry):
    if not isinstance(entry, dict):
        return None
    roll = entry.get("rollNumber")
    status = entry.get("status")
    if roll is None or status is None:
        return None
    roll = str(roll).strip()
    status = str(status).strip().lower()
    if not roll or status not in STATUSES:
        return None
    return roll, status, entry.get("name")


def record_session(conn, teacher_name, subject, section, date, entries,
                   teacher_user_id: int, now: str | None = None) -> RecordResult:
    teacher_name = _required(teacher_name, "teacherName")
    subject = _required(subject, "subject")
    section = _required(section, "section")
    date = _valid_date(_required(date, "date"))
    if not isinstance(entries, list):
        raise ValidationError("students must be a list")

    valid, skipped = [], []
    for index, entry in enumerate(entries):
        cleaned = _clean_entry(entry)
        if cleaned is None:
            skipped.append(index)
        else:
            valid.append(cleaned)

    now = now or utcnow_iso()
    with transaction(conn):
        cur = conn.execute("""
            INSERT INTO sessions (teacher_name, subject, section, date, created_at, teacher_user_id)
            VALUES (?,?,?,?,?,?)
        """, (teacher_name, subject, section, date, now, teacher_user_id))
        session_id = cur.lastrowid
        for roll, status, name in valid:
            student_id = resolve_student(conn, roll, section, name)
            conn.execute("""
                INSERT INTO attendance (session_id, student_id, status, marked_at)
                VALUES (?,?,?,?)
                ON CONFLICT(session_id, student_id) DO UPDATE SET
                  status = excluded.status,
                  marked_at = excluded.marked_at
            """, (session_id, student_id, status, now))

    if skipped:
        logger.warning("Session %s: skipped %d malformed entries %s", session_id, len(skipped), skipped)
    logger.info("Recorded session %s (%s/%s on %s) with %d marks",
                session_id, subject, section, date, len(valid))
    return RecordResult(session_id, len(valid), skipped)


# ---- Queries ----
def list_sessions_for_teacher(conn, teacher_user_id: int):
    cur = conn.execute("""
        SELECT s.id, s.teacher_name, s.subject, s.section, s.date, s.created_at,
               s.teacher_user_id, COUNT(a.id) AS record_count
        FROM sessions s
        LEFT JOIN attendance a ON a.session_id = s.id
        WHERE s.teacher_user_id = ?
        GROUP BY s.id
        ORDER BY s.created_at DESC, s.id DESC
    """, (teacher_user_id,))
    return rows_to_dicts(cur.fetchall())


def get_session_detail(conn, session_id: int) -> dict:
    session = get_session(conn, session_id)
    if session is None:
        raise NotFoundError("Session not found")
    cur = conn.execute("""
        SELECT st.id AS student_id, st.name, st.roll_number, a.status, a.marked_at
        FROM attendance a
        JOIN students st ON st.id = a.student_id
        WHERE a.session_id = ?
        ORDER BY CAST(st.roll_number AS INTEGER), st.roll_number
    """, (session_id,))
    return {"session": row_to_dict(session), "records": rows_to_dicts(cur.fetchall())}


def _student_or_404(conn, roll_number: str, section: str | None):
    student = find_student(conn, roll_number, section)
    if student is None:
        raise NotFoundError("Student not found")
    return student


def get_student_history(conn, roll_number: str, section: str | None = None) -> dict:
    student = _student_or_404(conn, roll_number, section)
    cur = conn.execute("""
        SELECT s.id AS session_id, s.subject, s.section, s.date, s.teacher_name,
               a.status, a.marked_at
        FROM attendance a
        JOIN sessions s ON s.id = a.session_id
        WHERE a.student_id = ?
        ORDER BY s.date ASC, s.created_at ASC, s.id ASC
    """, (student["id"],))
    return {"student": row_to_dict(student), "history": rows_to_dicts(cur.fetchall())}


def percentage(attended: int, total: int) -> float:
    if not total:
        return 0
    return attended / total * 100


def _trend_comment(recent, score, threshold) -> str:
    if not recent:
        return "No sessions in the last 7 days"
    return "Trending stable" if score >= threshold else "Action required"


def get_attendance_metrics(conn, roll_number: str, section: str | None = None,
                           today: _date | None = None, threshold: float = 75) -> dict:
    student = _student_or_404(conn, roll_number, section)
    today = today or _date.today()
    week_start = (today - timedelta(days=6)).isoformat()

    rows = conn.execute("""
        SELECT s.subject, s.date, a.status
        FROM attendance a
        JOIN sessions s ON s.id = a.session_id
        WHERE a.student_id = ?
    """, (student["id"],)).fetchall()

    total = len(rows)
    attended = sum(1 for r in rows if r["status"] in ATTENDED_STATUSES)
    recent = [r for r in rows if week_start <= r["date"] <= today.isoformat()]
    recent_attended = sum(1 for r in recent if r["status"] in ATTENDED_STATUSES)

    by_subject = {}
    for r in rows:
        counts = by_subject.setdefault(r["subject"], [0, 0])
        counts[1] += 1
        if r["status"] in ATTENDED_STATUSES:
            counts[0] += 1
    risky = sorted(subj for subj, (a, t) in by_subject.items() if percentage(a, t) < threshold)

    overall = percentage(attended, total)
    last_7 = percentage(recent_attended, len(recent))
    return {
        "overall_percentage": overall,
        "total_sessions": total,
        "attended_sessions": attended,
        "last_7_days_score": last_7,
        "last_7_days_comment": _trend_comment(recent, last_7, threshold),
        "risk_subject_count": len(risky),
        "risk_subjects": risky,
        "risk_summary": "Low attendance detected" if risky else "All clear",
    }
