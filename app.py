from datetime import date as _date
from functools import wraps
import logging
import sqlite3

from flask import Flask, g, current_app, jsonify, render_template, request, session, url_for
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

import attendance
import db
from access import Identity, Role, ensure_can_view_student, ensure_owns_session, require_identity, require_role
from config import Config
from errors import AuthError, NotFoundError, ValidationError


# ---------- Store handle ----------
def get_db():
    if "db" not in g:
        g.db = db.connect(current_app.config["DATABASE"], timeout=current_app.config["SQLITE_TIMEOUT"])
    return g.db

def close_db(_exc=None):
    conn = g.pop("db", None)
    if conn is not None:
        conn.close()


# ---------- Auth helpers ----------
def current_identity():
    return Identity.from_session(session.get("user"))

def login_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        require_identity(current_identity())
        return f(*args, **kwargs)
    return wrapper

def role_required(role):
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            require_role(current_identity(), role)
            return f(*args, **kwargs)
        return wrapper
    return decorator

def sign_in(identity: Identity):
    session.clear()
    session.permanent = True
    session["user"] = identity.to_session()

def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def is_api_request():
    return request.path.startswith(("/api/", "/auth/"))


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))
    app.teardown_appcontext(close_db)

    conn = db.connect(app.config["DATABASE"], timeout=app.config["SQLITE_TIMEOUT"])
    try:
        db.bootstrap(conn)
        if app.config["SEED_DEMO_USERS"]:
            db.ensure_demo_users(conn, generate_password_hash,
                                 student_password=app.config["STUDENT_COMMON_PASSWORD"])
    finally:
        conn.close()

    register_routes(app)
    register_error_handlers(app)
    return app


def register_error_handlers(app):
    @app.errorhandler(HTTPException)
    def http_error(e):
        if is_api_request():
            return jsonify({"ok": False, "error": e.description}), e.code
        return render_template("error.html", code=e.code, message=e.description), e.code

    @app.errorhandler(sqlite3.Error)
    def store_error(e):
        app.logger.exception("Store failure on %s %s", request.method, request.path)
        return jsonify({"ok": False, "error": "Server error"}), 500

    @app.errorhandler(Exception)
    def unexpected_error(e):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        if is_api_request():
            return jsonify({"ok": False, "error": "Server error"}), 500
        return render_template("error.html", code=500, message="Internal server error"), 500


def register_routes(app):

    @app.context_processor
    def inject_globals():
        return dict(
            APP_NAME=app.config["APP_NAME"],
            APP_VERSION=app.config["APP_VERSION"],
            current_user=current_identity(),
        )

    # ---------- Health & pages ----------
    @app.route("/health")
    def health():
        return {"status": "ok", "app": app.config["APP_NAME"], "version": app.config["APP_VERSION"]}

    @app.route("/")
    def index():
        return render_template("index.html")

    @app.route("/login.html")
    @app.route("/login")
    def login_page():
        return render_template("login.html")

    @app.route("/teacher.html")
    @app.route("/teacher")
    def teacher_page():
        return render_template("teacher.html")

    @app.route("/student.html")
    @app.route("/student")
    def student_page():
        return render_template("student.html", roll=request.args.get("roll"))

    # ---------- Auth ----------
    @app.route("/auth/login", methods=["POST"])
    def auth_login():
        data = json_body()
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        if not email or not password:
            raise ValidationError("Email and password required")

        user = db.get_user_by_email(get_db(), email)
        if not user or not check_password_hash(user["password_hash"], password):
            app.logger.info("Failed login for %s", email)
            raise AuthError("Invalid credentials")

        role = Role(user["role"])
        if role is Role.STUDENT and not user["roll_number"]:
            app.logger.error("Student user %s has no linked roll_number", email)
            return jsonify({"success": False, "message": "Student user has no linked roll_number"}), 500

        sign_in(Identity(user["id"], role, user["roll_number"], user["email"]))
        if role is Role.TEACHER:
            redirect_to = url_for("teacher_page")
        else:
            redirect_to = url_for("student_page", roll=user["roll_number"])
        return jsonify({"success": True, "role": role.value, "roll": user["roll_number"],
                        "redirect": redirect_to})

    @app.route("/auth/face-login", methods=["POST"])
    def auth_face_login():
        face_token = (json_body().get("face_token") or "").strip()
        if not face_token:
            raise ValidationError("face_token is required")

        conn = get_db()
        student = db.find_student_by_face_token(conn, face_token)
        if student is None:
            raise AuthError("Face token not recognized")
        if not student["email"]:
            raise AuthError("Student has no linked email")

        user = db.get_user_by_email(conn, student["email"])
        if user is None:
            db.insert_user(conn, student["email"],
                           generate_password_hash(app.config["STUDENT_COMMON_PASSWORD"]),
                           Role.STUDENT.value, student["roll_number"])
            user = db.get_user_by_email(conn, student["email"])
        if user["role"] != Role.STUDENT.value:
            raise AuthError("Face token not recognized")

        sign_in(Identity(user["id"], Role.STUDENT, user["roll_number"] or student["roll_number"], user["email"]))
        return jsonify({"ok": True, "roll": student["roll_number"],
                        "redirect": url_for("student_page", roll=student["roll_number"])})

    @app.route("/auth/logout", methods=["POST"])
    def auth_logout():
        session.clear()
        return jsonify({"success": True})

    @app.route("/auth/me")
    @login_required
    def auth_me():
        identity = current_identity()
        return jsonify({"ok": True, "role": identity.role.value, "roll": identity.roll_number})

    # ---------- Teacher profile ----------
    @app.route("/api/teachers/me", methods=["GET"])
    @role_required(Role.TEACHER)
    def teacher_profile_get():
        row = db.get_teacher_profile(get_db(), current_identity().user_id)
        if row:
            return jsonify(dict(row))
        return jsonify({"name": "Teacher", "subject": "Class", "section": "AIML-C",
                        "default_date": _date.today().isoformat()})

    @app.route("/api/teachers/me", methods=["PUT"])
    @role_required(Role.TEACHER)
    def teacher_profile_put():
        data = json_body()
        fields = [(data.get(k) or "").strip() for k in ("name", "subject", "section", "default_date")]
        if not all(fields):
            raise ValidationError("Missing fields")
        db.upsert_teacher_profile(get_db(), current_identity().user_id, *fields)
        return jsonify({"ok": True})

    # ---------- Student self-service ----------
    def _roll_param(identity):
        roll = (request.args.get("roll") or "").strip()
        if not roll and identity.is_student:
            roll = identity.roll_number or ""
        if not roll:
            raise ValidationError("Missing roll parameter")
        return roll

    @app.route("/api/student/profile", methods=["GET"])
    @login_required
    def student_profile_get():
        identity = current_identity()
        roll = _roll_param(identity)
        ensure_can_view_student(identity, roll)
        student = db.find_student(get_db(), roll, request.args.get("section"))
        if student is None:
            raise NotFoundError("Student not found")
        return jsonify({"ok": True, "student": dict(student)})

    @app.route("/api/student/profile", methods=["PUT"])
    @role_required(Role.STUDENT)
    def student_profile_put():
        identity = current_identity()
        conn = get_db()
        student = db.find_student(conn, identity.roll_number)
        if student is None:
            raise NotFoundError("Student not found")
        data = json_body()
        db.update_student_profile(conn, student["id"], data.get("usn"), data.get("semester"))
        return jsonify({"ok": True})

    @app.route("/api/student/attendance/metrics")
    @login_required
    def student_metrics():
        identity = current_identity()
        roll = _roll_param(identity)
        ensure_can_view_student(identity, roll)
        metrics = attendance.get_attendance_metrics(
            get_db(), roll, request.args.get("section"),
            threshold=app.config["ATTENDANCE_THRESHOLD"],
        )
        return jsonify({"ok": True, "metrics": metrics})

    @app.route("/api/student/photo", methods=["POST"])
    @login_required
    def student_photo():
        identity = current_identity()
        roll = _roll_param(identity)
        ensure_can_view_student(identity, roll)
        conn = get_db()
        student = db.find_student(conn, roll, request.args.get("section"))
        if student is None:
            raise NotFoundError("Student not found")
        db.set_student_photo(conn, student["id"], json_body().get("photo_url"))
        return jsonify({"ok": True})

    # ---------- Attendance sessions ----------
    @app.route("/api/attendance", methods=["POST"])
    @role_required(Role.TEACHER)
    def attendance_record():
        data = json_body()
        result = attendance.record_session(
            get_db(),
            data.get("teacherName"), data.get("subject"), data.get("section"), data.get("date"),
            data.get("students", []),
            teacher_user_id=current_identity().user_id,
        )
        return jsonify({"ok": True, "sessionId": result.session_id,
                        "recorded": result.recorded, "skipped": result.skipped}), 201

    @app.route("/api/sessions")
    @role_required(Role.TEACHER)
    def sessions_list():
        return jsonify(attendance.list_sessions_for_teacher(get_db(), current_identity().user_id))

    @app.route("/api/sessions/<int:session_id>", methods=["GET"])
    @role_required(Role.TEACHER)
    def session_detail(session_id):
        detail = attendance.get_session_detail(get_db(), session_id)
        ensure_owns_session(current_identity(), detail["session"])
        return jsonify(detail)

    @app.route("/api/sessions/<int:session_id>", methods=["DELETE"])
    @role_required(Role.TEACHER)
    def session_delete(session_id):
        conn = get_db()
        row = db.get_session(conn, session_id)
        if row is None:
            raise NotFoundError("Session not found")
        ensure_owns_session(current_identity(), row)
        db.delete_session(conn, session_id)
        app.logger.info("Deleted session %s", session_id)
        return jsonify({"ok": True})

    # ---------- Students (teacher roster) ----------
    @app.route("/api/students", methods=["GET"])
    @role_required(Role.TEACHER)
    def students_list():
        rows = db.list_students(get_db(), (request.args.get("section") or "").strip() or None)
        return jsonify(db.rows_to_dicts(rows))

    @app.route("/api/students", methods=["POST"])
    @role_required(Role.TEACHER)
    def students_add():
        data = json_body()
        name = (data.get("name") or "").strip()
        roll = str(data.get("rollNumber") or "").strip()
        section = (data.get("section") or "").strip()
        if not (name and roll and section):
            raise ValidationError("name, rollNumber and section are required")
        student_id = db.add_student(
            get_db(), name, roll, section,
            email=data.get("email"), usn=data.get("usn"), semester=data.get("semester"),
            password_hash=generate_password_hash(app.config["STUDENT_COMMON_PASSWORD"]),
        )
        app.logger.info("Added student %s (roll %s, section %s)", student_id, roll, section)
        return jsonify({"id": student_id, "name": name, "roll_number": roll}), 201

    @app.route("/api/students/<int:student_id>", methods=["PUT"])
    @role_required(Role.TEACHER)
    def students_update(student_id):
        data = json_body()
        name = (data.get("name") or "").strip()
        roll = str(data.get("roll_number") or "").strip()
        section = (data.get("section") or "").strip()
        if not (name and roll and section):
            raise ValidationError("name, roll_number and section are required")
        db.update_student(get_db(), student_id, name, roll, section,
                          data.get("email"), data.get("usn"), data.get("semester"))
        return jsonify({"ok": True})

    @app.route("/api/students/<int:student_id>", methods=["DELETE"])
    @role_required(Role.TEACHER)
    def students_delete(student_id):
        db.delete_student(get_db(), student_id)
        app.logger.info("Deleted student %s", student_id)
        return jsonify({"ok": True})

    @app.route("/api/students/<roll>/history")
    @login_required
    def student_history(roll):
        ensure_can_view_student(current_identity(), roll)
        return jsonify(attendance.get_student_history(get_db(), roll, request.args.get("section")))

    @app.route("/api/students/<roll>/face-enroll", methods=["POST"])
    @login_required
    def student_face_enroll(roll):
        ensure_can_view_student(current_identity(), roll)
        face_token = (json_body().get("face_token") or "").strip()
        if not face_token:
            raise ValidationError("face_token is required")
        conn = get_db()
        student = db.find_student(conn, roll, request.args.get("section"))
        if student is None:
            raise NotFoundError("Student not found")
        db.set_face_token(conn, student["id"], face_token)
        return jsonify({"ok": True})


if __name__ == "__main__":
    create_app().run(debug=True)
