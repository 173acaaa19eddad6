# seed_users.py
import argparse
import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

from db import DEFAULT_DB_PATH, bootstrap, connect, ensure_demo_users, get_user_by_email, insert_user


def build_parser():
    p = argparse.ArgumentParser(
        description="Create a login in the SmartTrack SQLite DB",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--db", default=os.getenv("SMARTTRACK_DB", str(DEFAULT_DB_PATH)),
                   help="Path to the SQLite database")
    p.add_argument("--email", help="Login email (e.g., teacher@college.edu)")
    p.add_argument("--password", help="Plain password (will be hashed)")
    p.add_argument("--role", default="teacher", choices=["teacher", "student"])
    p.add_argument("--roll", help="Roll number linked to a student login")
    p.add_argument("--demo", action="store_true",
                   help="Create the demo teacher and student instead")
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    print(f"→ Using database: {Path(args.db).resolve()}")
    conn = connect(args.db)
    try:
        bootstrap(conn)

        if args.demo:
            created = ensure_demo_users(conn, generate_password_hash)
            print("✔ Demo users created" if created else "⚠ Demo users already exist")
            return 0

        if not (args.email and args.password):
            print("✖ --email and --password are required (or use --demo)")
            return 2
        if args.role == "student" and not args.roll:
            print("✖ Student logins need --roll")
            return 2

        email = args.email.strip().lower()
        existing = get_user_by_email(conn, email)
        if existing:
            print(f"⚠ User already exists: {existing['email']} (role={existing['role']})")
            return 0

        user_id = insert_user(conn, email, generate_password_hash(args.password), args.role, args.roll)
        if user_id is None:
            print("⚠ Could not insert user (maybe duplicate).")
            return 1
        print(f"✔ Created user: {email} (role={args.role}, id={user_id})")
        return 0
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
