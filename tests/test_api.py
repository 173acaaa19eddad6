import attendance
import db as store
from conftest import count, install_store_fault, login_as, make_user


def post_attendance(client, students, section="AIML-C", date="2024-01-01", subject="Maths"):
    return client.post("/api/attendance", json={
        "teacherName": "Ms. Rao", "subject": subject, "section": section,
        "date": date, "students": students,
    })


# ---------- pages & health ----------

def test_health_and_pages(client):
    assert client.get("/health").get_json()["status"] == "ok"
    for path in ("/", "/login", "/teacher.html", "/student?roll=7"):
        assert client.get(path).status_code == 200


# ---------- auth ----------

def test_api_requires_login(client):
    res = client.get("/api/sessions")
    assert res.status_code == 401
    assert res.get_json() == {"ok": False, "error": "Not authenticated"}


def test_login_sets_session(client, conn):
    make_user(conn, "student7@college.edu", "pw", role="student", roll="7")
    res = client.post("/auth/login", json={"email": "Student7@College.edu", "password": "pw"})
    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    assert body["redirect"] == "/student?roll=7"

    me = client.get("/auth/me").get_json()
    assert me == {"ok": True, "role": "student", "roll": "7"}

    client.post("/auth/logout")
    assert client.get("/auth/me").status_code == 401


def test_login_rejects_bad_password_and_missing_fields(client, conn):
    make_user(conn, "teacher@college.edu", "right")
    assert client.post("/auth/login", json={"email": "teacher@college.edu", "password": "wrong"}).status_code == 401
    assert client.post("/auth/login", json={"email": "teacher@college.edu"}).status_code == 400


def test_face_login_signs_in_enrolled_student(client, conn, teacher_client):
    teacher_client.post("/api/students", json={
        "name": "Asha", "rollNumber": "7", "section": "AIML-C", "email": "asha@college.edu"})
    teacher_client.post("/api/students/7/face-enroll", json={"face_token": "tok-7"})
    client.post("/auth/logout")

    assert client.post("/auth/face-login", json={"face_token": "nope"}).status_code == 401
    res = client.post("/auth/face-login", json={"face_token": "tok-7"})
    assert res.status_code == 200
    assert res.get_json()["roll"] == "7"
    assert client.get("/auth/me").get_json()["role"] == "student"


# ---------- attendance recording ----------

def test_teacher_records_session(teacher_client, conn):
    res = post_attendance(teacher_client, [
        {"rollNumber": "1", "status": "present", "name": "Asha"},
        {"rollNumber": "2"},
    ])
    assert res.status_code == 201
    body = res.get_json()
    assert body["ok"] is True
    assert body["recorded"] == 1
    assert body["skipped"] == [1]
    assert store.get_session(conn, body["sessionId"]) is not None


def test_recording_validation_error(teacher_client, conn):
    res = teacher_client.post("/api/attendance", json={"subject": "Maths", "students": []})
    assert res.status_code == 400
    assert res.get_json()["ok"] is False
    assert count(conn, "sessions") == 0


def test_student_cannot_record(client):
    login_as(client, 5, "student", roll="7")
    assert post_attendance(client, []).status_code == 403


def test_store_failure_returns_500_and_persists_nothing(teacher_client, conn):
    install_store_fault(conn, status="late")
    res = post_attendance(teacher_client, [
        {"rollNumber": "1", "status": "present"},
        {"rollNumber": "2", "status": "late"},
    ])
    assert res.status_code == 500
    assert res.get_json() == {"ok": False, "error": "Server error"}
    assert count(conn, "sessions") == 0
    assert count(conn, "attendance") == 0


# ---------- sessions ----------

def test_teacher_sees_only_own_sessions(client, conn):
    other = make_user(conn, "other@college.edu")
    login_as(client, other, "teacher")
    foreign_id = post_attendance(client, [{"rollNumber": "1", "status": "present"}]).get_json()["sessionId"]

    me = make_user(conn, "me@college.edu")
    login_as(client, me, "teacher")
    mine_id = post_attendance(client, [{"rollNumber": "1", "status": "absent"}]).get_json()["sessionId"]

    listed = client.get("/api/sessions").get_json()
    assert [s["id"] for s in listed] == [mine_id]

    detail = client.get(f"/api/sessions/{mine_id}").get_json()
    assert detail["session"]["id"] == mine_id
    assert detail["records"][0]["status"] == "absent"

    assert client.get(f"/api/sessions/{foreign_id}").status_code == 403
    assert client.delete(f"/api/sessions/{foreign_id}").status_code == 403
    assert client.get("/api/sessions/999").status_code == 404


def test_delete_session_cascades(teacher_client, conn):
    sid = post_attendance(teacher_client, [{"rollNumber": "7", "status": "present"}]).get_json()["sessionId"]
    assert teacher_client.delete(f"/api/sessions/{sid}").status_code == 200
    assert count(conn, "attendance") == 0
    history = teacher_client.get("/api/students/7/history").get_json()
    assert history["history"] == []


# ---------- history & metrics ----------

def test_student_cannot_read_another_students_history(client, teacher_client):
    post_attendance(teacher_client, [{"rollNumber": "9", "status": "present"}])
    login_as(client, 50, "student", roll="7")
    res = client.get("/api/students/9/history")
    assert res.status_code == 403
    assert "history" not in res.get_json()


def test_student_reads_own_history_in_date_order(client, teacher_client):
    post_attendance(teacher_client, [{"rollNumber": "7", "status": "absent"}], date="2024-01-03")
    post_attendance(teacher_client, [{"rollNumber": "7", "status": "present"}], date="2024-01-01")
    login_as(client, 50, "student", roll="7")
    body = client.get("/api/students/7/history").get_json()
    assert [h["date"] for h in body["history"]] == ["2024-01-01", "2024-01-03"]


def test_metrics_endpoint(client, teacher_client):
    for i, status in enumerate(["present", "present", "present", "absent"]):
        post_attendance(teacher_client, [{"rollNumber": "7", "status": status}], date=f"2024-01-0{i + 1}")

    res = teacher_client.get("/api/student/attendance/metrics?roll=7")
    assert res.status_code == 200
    assert res.get_json()["metrics"]["overall_percentage"] == 75

    login_as(client, 50, "student", roll="7")
    assert client.get("/api/student/attendance/metrics").get_json()["ok"] is True
    assert client.get("/api/student/attendance/metrics?roll=9").status_code == 403


def test_metrics_unknown_student_is_404(teacher_client):
    assert teacher_client.get("/api/student/attendance/metrics?roll=404").status_code == 404
    assert teacher_client.get("/api/student/attendance/metrics").status_code == 400


# ---------- roster ----------

def test_student_roster_crud(teacher_client, conn):
    res = teacher_client.post("/api/students", json={
        "name": "Asha", "rollNumber": "7", "section": "AIML-C", "email": "Asha@College.edu"})
    assert res.status_code == 201
    student_id = res.get_json()["id"]
    assert store.get_user_by_email(conn, "asha@college.edu")["role"] == "student"

    dup = teacher_client.post("/api/students", json={"name": "Dup", "rollNumber": "7", "section": "AIML-C"})
    assert dup.status_code == 409

    res = teacher_client.put(f"/api/students/{student_id}", json={
        "name": "Asha K", "roll_number": "7", "section": "AIML-C",
        "email": "asha@college.edu", "usn": "1AB22", "semester": "5"})
    assert res.status_code == 200
    listed = teacher_client.get("/api/students?section=AIML-C").get_json()
    assert listed[0]["name"] == "Asha K"
    assert listed[0]["usn"] == "1AB22"

    post_attendance(teacher_client, [{"rollNumber": "7", "status": "present"}])
    assert teacher_client.delete(f"/api/students/{student_id}").status_code == 200
    assert count(conn, "attendance") == 0
    assert store.get_user_by_email(conn, "asha@college.edu") is None
    assert teacher_client.delete(f"/api/students/{student_id}").status_code == 404


def test_student_updates_own_profile_and_photo(client, teacher_client, conn):
    teacher_client.post("/api/students", json={"name": "Asha", "rollNumber": "7", "section": "AIML-C"})
    login_as(client, 50, "student", roll="7")

    assert client.put("/api/student/profile", json={"usn": "1AB22", "semester": "5"}).status_code == 200
    assert client.post("/api/student/photo?roll=7", json={"photo_url": "/img/7.png"}).status_code == 200
    student = client.get("/api/student/profile?roll=7").get_json()["student"]
    assert (student["usn"], student["semester"], student["photo_url"]) == ("1AB22", "5", "/img/7.png")
    assert client.get("/api/student/profile?roll=8").status_code == 403


# ---------- teacher profile ----------

def test_teacher_profile_defaults_then_upsert(teacher_client):
    default = teacher_client.get("/api/teachers/me").get_json()
    assert default["section"] == "AIML-C"

    assert teacher_client.put("/api/teachers/me", json={"name": "Ms. Rao"}).status_code == 400
    profile = {"name": "Ms. Rao", "subject": "Maths", "section": "CSE-A", "default_date": "2024-06-01"}
    assert teacher_client.put("/api/teachers/me", json=profile).status_code == 200
    assert teacher_client.put("/api/teachers/me", json={**profile, "subject": "Physics"}).status_code == 200
    stored = teacher_client.get("/api/teachers/me").get_json()
    assert stored["subject"] == "Physics"
    assert stored["section"] == "CSE-A"


# ---------- unexpected failures ----------

def test_unexpected_error_returns_json_on_api(teacher_client, monkeypatch):
    def broken(conn, teacher_user_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(attendance, "list_sessions_for_teacher", broken)
    res = teacher_client.get("/api/sessions")
    assert res.status_code == 500
    assert res.get_json() == {"ok": False, "error": "Server error"}
