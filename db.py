# db.py
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("smarttrack.db")

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Users (login identities)
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  email TEXT NOT NULL UNIQUE,
  password_hash TEXT NOT NULL,
  role TEXT NOT NULL CHECK(role IN ('teacher','student')),
  roll_number TEXT,
  created_at TEXT NOT NULL
);

-- Teacher profile (one per teacher user)
CREATE TABLE IF NOT EXISTS teachers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL UNIQUE,
  name TEXT NOT NULL,
  subject TEXT NOT NULL,
  section TEXT NOT NULL,
  default_date TEXT NOT NULL,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

-- Students (roll number is unique only within a section)
CREATE TABLE IF NOT EXISTS students (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  roll_number TEXT NOT NULL,
  section TEXT NOT NULL,
  email TEXT,
  photo_url TEXT,
  face_token TEXT,
  usn TEXT,
  semester TEXT,
  created_at TEXT
);

-- Sessions (one roll-call event)
CREATE TABLE IF NOT EXISTS sessions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  teacher_name TEXT NOT NULL,
  subject TEXT NOT NULL,
  section TEXT NOT NULL,
  date TEXT NOT NULL,  -- YYYY-MM-DD
  created_at TEXT NOT NULL,
  teacher_user_id INTEGER
);

-- Attendance (one row per student in a session)
CREATE TABLE IF NOT EXISTS attendance (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id INTEGER NOT NULL,
  student_id INTEGER NOT NULL,
  status TEXT NOT NULL CHECK(status IN ('present','absent','late')),
  marked_at TEXT NOT NULL,
  FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
  FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE
);
"""

# Indexes are applied after column migrations so older files have the columns.
INDEX_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS ux_students_roll_section ON students (roll_number, section);
CREATE INDEX IF NOT EXISTS idx_students_face_token ON students (face_token);
CREATE INDEX IF NOT EXISTS idx_sessions_teacher ON sessions (teacher_user_id, created_at);
CREATE UNIQUE INDEX IF NOT EXISTS ux_attendance_session_student ON attendance (session_id, student_id);
CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance (student_id);
"""

# Columns added to the schema after the first release.
COLUMN_MIGRATIONS = [
    ("students", "email", "TEXT"),
    ("students", "photo_url", "TEXT"),
    ("students", "face_token", "TEXT"),
    ("students", "usn", "TEXT"),
    ("students", "semester", "TEXT"),
    ("students", "created_at", "TEXT"),
    ("sessions", "teacher_user_id", "INTEGER"),
]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def connect(db_path=None, timeout: float = 5.0) -> sqlite3.Connection:
    # autocommit; multi-statement writes go through transaction()
    conn = sqlite3.connect(db_path or DEFAULT_DB_PATH, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection):
    """Run a block under BEGIN IMMEDIATE; commit on success, roll back on any error.

    IMMEDIATE takes the write lock up front, so two recorders never interleave
    and readers only ever see committed sessions with all their rows.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


ATTENDANCE_REBUILD_SQL = """
CREATE TABLE attendance_rebuilt (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id INTEGER NOT NULL,
  student_id INTEGER NOT NULL,
  status TEXT NOT NULL CHECK(status IN ('present','absent','late')),
  marked_at TEXT NOT NULL,
  FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
  FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE
)
"""


def _attendance_cascades(conn) -> bool:
    keys = conn.execute("PRAGMA foreign_key_list(attendance)").fetchall()
    return bool(keys) and all(k["on_delete"].upper() == "CASCADE" for k in keys)


def rebuild_attendance(conn: sqlite3.Connection) -> int:
    """Recreate attendance with cascading foreign keys, keeping rows that still resolve.

    Older files declared the keys without ON DELETE CASCADE, and SQLite cannot
    alter a constraint in place.
    """
    conn.execute("PRAGMA foreign_keys = OFF")
    try:
        with transaction(conn):
            before = conn.execute("SELECT COUNT(*) FROM attendance").fetchone()[0]
            conn.execute(ATTENDANCE_REBUILD_SQL)
            conn.execute("""
                INSERT INTO attendance_rebuilt (id, session_id, student_id, status, marked_at)
                SELECT a.id, a.session_id, a.student_id, LOWER(a.status), a.marked_at
                FROM attendance a
                WHERE a.session_id IN (SELECT id FROM sessions)
                  AND a.student_id IN (SELECT id FROM students)
                  AND LOWER(a.status) IN ('present','absent','late')
            """)
            kept = conn.execute("SELECT COUNT(*) FROM attendance_rebuilt").fetchone()[0]
            conn.execute("DROP TABLE attendance")
            conn.execute("ALTER TABLE attendance_rebuilt RENAME TO attendance")
    finally:
        conn.execute("PRAGMA foreign_keys = ON")
    if before != kept:
        logger.warning("Dropped %d orphaned or invalid attendance rows", before - kept)
    logger.info("Rebuilt attendance table with cascading foreign keys")
    return kept


def merge_duplicates(conn: sqlite3.Connection) -> tuple[int, int]:
    """Fold students sharing (roll_number, section) into the lowest id, then keep
    only the newest attendance row per (session, student)."""
    with transaction(conn):
        groups = conn.execute("""
            SELECT roll_number, section, MIN(id) AS keep_id, COUNT(*) AS n
            FROM students
            GROUP BY roll_number, section
            HAVING COUNT(*) > 1
        """).fetchall()
        merged = 0
        for g in groups:
            extra = "SELECT id FROM students WHERE roll_number = ? AND section = ? AND id != ?"
            params = (g["roll_number"], g["section"], g["keep_id"])
            conn.execute(f"UPDATE attendance SET student_id = ? WHERE student_id IN ({extra})",
                         (g["keep_id"], *params))
            conn.execute(f"DELETE FROM students WHERE id IN ({extra})", params)
            merged += g["n"] - 1
            logger.warning("Merged %d duplicate students roll=%s section=%s into id %s",
                           g["n"] - 1, g["roll_number"], g["section"], g["keep_id"])

        cur = conn.execute("""
            DELETE FROM attendance
            WHERE id NOT IN (SELECT MAX(id) FROM attendance GROUP BY session_id, student_id)
        """)
        dropped = cur.rowcount
    if dropped:
        logger.warning("Dropped %d duplicate attendance rows", dropped)
    return merged, dropped


def migrate(conn: sqlite3.Connection) -> list[str]:
    added = []
    for table, column, decl in COLUMN_MIGRATIONS:
        existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
        if column not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
            logger.info("Added column %s.%s", table, column)
            added.append(f"{table}.{column}")

    if not _attendance_cascades(conn):
        rebuild_attendance(conn)
        added.append("attendance.cascade")

    merged, dropped = merge_duplicates(conn)
    if merged:
        added.append(f"students.merged:{merged}")
    if dropped:
        added.append(f"attendance.deduplicated:{dropped}")
    return added


def bootstrap(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    migrate(conn)
    conn.executescript(INDEX_SQL)


def row_to_dict(row):
    return dict(row) if row is not None else None


def rows_to_dicts(rows):
    return [dict(r) for r in rows]


# ---- Users ----
def get_user_by_email(conn, email: str):
    cur = conn.execute("""
        SELECT id, email, password_hash, role, roll_number
        FROM users
        WHERE email = ?
        LIMIT 1
    """, (email,))
    return cur.fetchone()

def insert_user(conn, email: str, password_hash: str, role: str,
                roll_number: str | None = None) -> int | None:
    try:
        cur = conn.execute("""
            INSERT INTO users (email, password_hash, role, roll_number, created_at)
            VALUES (?,?,?,?,?)
        """, (email.strip().lower(), password_hash, role, roll_number, utcnow_iso()))
        return cur.lastrowid
    except sqlite3.IntegrityError:
        return None

def ensure_demo_users(conn, make_hash, teacher_password: str = "password123",
                      student_password: str = "student123") -> bool:
    if get_user_by_email(conn, "teacher@college.edu"):
        return False
    with transaction(conn):
        insert_user(conn, "teacher@college.edu", make_hash(teacher_password), "teacher")
        insert_user(conn, "student20@college.edu", make_hash(student_password), "student", "20")
    logger.info("Seeded demo users teacher@college.edu and student20@college.edu")
    return True


# ---- Teacher profile ----
def get_teacher_profile(conn, user_id: int):
    cur = conn.execute("""
        SELECT id, user_id, name, subject, section, default_date
        FROM teachers WHERE user_id = ?
    """, (user_id,))
    return cur.fetchone()

def upsert_teacher_profile(conn, user_id: int, name: str, subject: str,
                           section: str, default_date: str) -> None:
    conn.execute("""
        INSERT INTO teachers (user_id, name, subject, section, default_date)
        VALUES (?,?,?,?,?)
        ON CONFLICT(user_id) DO UPDATE SET
          name = excluded.name,
          subject = excluded.subject,
          section = excluded.section,
          default_date = excluded.default_date
    """, (user_id, name.strip(), subject.strip(), section.strip(), default_date))


# ---- Students ----
STUDENT_COLUMNS = "id, name, roll_number, section, email, photo_url, usn, semester"

def list_students(conn, section: str | None = None):
    if section:
        cur = conn.execute(f"""
            SELECT {STUDENT_COLUMNS} FROM students
            WHERE section = ?
            ORDER BY CAST(roll_number AS INTEGER), roll_number
        """, (section,))
    else:
        cur = conn.execute(f"""
            SELECT {STUDENT_COLUMNS} FROM students
            ORDER BY section, CAST(roll_number AS INTEGER), roll_number
        """)
    return cur.fetchall()

def get_student(conn, student_id: int):
    cur = conn.execute(f"SELECT {STUDENT_COLUMNS} FROM students WHERE id = ?", (student_id,))
    return cur.fetchone()

def find_student(conn, roll_number: str, section: str | None = None):
    # Roll numbers repeat across sections; without a section the oldest row wins.
    if section:
        cur = conn.execute(f"""
            SELECT {STUDENT_COLUMNS} FROM students
            WHERE roll_number = ? AND section = ?
        """, (roll_number, section))
    else:
        cur = conn.execute(f"""
            SELECT {STUDENT_COLUMNS} FROM students
            WHERE roll_number = ?
            ORDER BY id LIMIT 1
        """, (roll_number,))
    return cur.fetchone()

def find_student_by_face_token(conn, face_token: str):
    cur = conn.execute(f"""
        SELECT {STUDENT_COLUMNS} FROM students
        WHERE face_token = ?
        ORDER BY id LIMIT 1
    """, (face_token,))
    return cur.fetchone()

def add_student(conn, name: str, roll_number: str, section: str,
                email: str | None = None, usn: str | None = None,
                semester: str | None = None, password_hash: str | None = None) -> int:
    email = (email or "").strip().lower() or None
    try:
        with transaction(conn):
            cur = conn.execute("""
                INSERT INTO students (name, roll_number, section, email, usn, semester, created_at)
                VALUES (?,?,?,?,?,?,?)
            """, (name.strip(), roll_number, section, email, usn or None, semester or None, utcnow_iso()))
            student_id = cur.lastrowid
            if email and password_hash:
                conn.execute("""
                    INSERT OR IGNORE INTO users (email, password_hash, role, roll_number, created_at)
                    VALUES (?, ?, 'student', ?, ?)
                """, (email, password_hash, roll_number, utcnow_iso()))
    except sqlite3.IntegrityError:
        raise ConflictError(f"Roll number {roll_number} already exists in section {section}")
    return student_id

def update_student(conn, student_id: int, name: str, roll_number: str, section: str,
                   email: str | None, usn: str | None, semester: str | None) -> None:
    email = (email or "").strip().lower() or None
    with transaction(conn):
        old = conn.execute("SELECT email FROM students WHERE id = ?", (student_id,)).fetchone()
        if old is None:
            raise NotFoundError("Student not found")
        try:
            conn.execute("""
                UPDATE students
                SET name = ?, roll_number = ?, section = ?, email = ?, usn = ?, semester = ?
                WHERE id = ?
            """, (name.strip(), roll_number, section, email, usn or None, semester or None, student_id))
        except sqlite3.IntegrityError:
            raise ConflictError(f"Roll number {roll_number} already exists in section {section}")
        # the student's login follows its roll number and email
        if old["email"]:
            try:
                conn.execute("""
                    UPDATE users SET email = COALESCE(?, email), roll_number = ?
                    WHERE email = ? AND role = 'student'
                """, (email, roll_number, old["email"]))
            except sqlite3.IntegrityError:
                raise ConflictError(f"Email {email} is already used by another login")

def delete_student(conn, student_id: int) -> None:
    with transaction(conn):
        row = conn.execute("SELECT email FROM students WHERE id = ?", (student_id,)).fetchone()
        if row is None:
            raise NotFoundError("Student not found")
        if row["email"]:
            conn.execute("DELETE FROM users WHERE email = ? AND role = 'student'", (row["email"],))
        conn.execute("DELETE FROM students WHERE id = ?", (student_id,))

def update_student_profile(conn, student_id: int, usn: str | None, semester: str | None) -> None:
    conn.execute("UPDATE students SET usn = ?, semester = ? WHERE id = ?",
                 (usn or None, semester or None, student_id))

def set_student_photo(conn, student_id: int, photo_url: str | None) -> None:
    conn.execute("UPDATE students SET photo_url = ? WHERE id = ?", (photo_url, student_id))

def set_face_token(conn, student_id: int, face_token: str) -> None:
    conn.execute("UPDATE students SET face_token = ? WHERE id = ?", (face_token, student_id))


# ---- Sessions ----
def get_session(conn, session_id: int):
    cur = conn.execute("""
        SELECT id, teacher_name, subject, section, date, created_at, teacher_user_id
        FROM sessions WHERE id = ?
    """, (session_id,))
    return cur.fetchone()

def delete_session(conn, session_id: int) -> None:
    cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    if cur.rowcount == 0:
        raise NotFoundError("Session not found")
