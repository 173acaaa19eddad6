import pytest
from werkzeug.security import generate_password_hash

import db as store
from app import create_app

FAST_HASH = "pbkdf2:sha256:1000"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "smarttrack-test.db"


@pytest.fixture
def conn(db_path):
    c = store.connect(db_path)
    store.bootstrap(c)
    yield c
    c.close()


@pytest.fixture
def app(db_path):
    return create_app({
        "TESTING": True,
        "DATABASE": str(db_path),
        "SECRET_KEY": "test-secret",
        "SEED_DEMO_USERS": False,
        "LOG_LEVEL": "WARNING",
    })


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(conn, email, password="secret", role="teacher", roll=None):
    return store.insert_user(conn, email, generate_password_hash(password, method=FAST_HASH), role, roll)


def login_as(client, user_id, role, roll=None, email=None):
    with client.session_transaction() as sess:
        sess["user"] = {"id": user_id, "role": role, "roll_number": roll, "email": email}


@pytest.fixture
def teacher_id(conn):
    return make_user(conn, "teacher@college.edu")


@pytest.fixture
def teacher_client(client, teacher_id):
    login_as(client, teacher_id, "teacher", email="teacher@college.edu")
    return client


def install_store_fault(conn, status="late"):
    # aborts any attendance insert with the given status, like a failing disk write
    conn.execute(f"""
        CREATE TRIGGER fail_attendance_insert BEFORE INSERT ON attendance
        WHEN NEW.status = '{status}'
        BEGIN
            SELECT RAISE(ABORT, 'simulated store fault');
        END
    """)


def count(conn, table):
    return conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]
