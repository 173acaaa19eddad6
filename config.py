import os
from datetime import timedelta


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    APP_NAME = "SmartTrack Attendance"
    APP_VERSION = "v1.2.0"

    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev-secret-change-me")
    DATABASE = os.getenv("SMARTTRACK_DB", "smarttrack.db")
    SQLITE_TIMEOUT = float(os.getenv("SQLITE_TIMEOUT", "5"))

    STUDENT_COMMON_PASSWORD = os.getenv("STUDENT_COMMON_PASSWORD", "student123")
    SEED_DEMO_USERS = _flag("SEED_DEMO_USERS", "1")
    ATTENDANCE_THRESHOLD = float(os.getenv("ATTENDANCE_THRESHOLD", "75"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # signed cookie session, mirrors the old 2h JWT lifetime
    SESSION_COOKIE_NAME = "smarttrack_session"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("FLASK_ENV") == "production"
    PERMANENT_SESSION_LIFETIME = timedelta(hours=2)

    TEMPLATES_AUTO_RELOAD = True
