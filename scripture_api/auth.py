import os
import re
import uuid

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from psycopg2.extras import RealDictCursor


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_MIN_LEN = 6
PASSWORD_MAX_LEN = 128
NAME_MAX_LEN = 100
AUTH_PEPPER = os.getenv("AUTH_PEPPER", "")
ARGON2_TIME_COST = int(os.getenv("ARGON2_TIME_COST", "2"))
ARGON2_MEMORY_COST = int(os.getenv("ARGON2_MEMORY_COST", "102400"))
ARGON2_PARALLELISM = int(os.getenv("ARGON2_PARALLELISM", "8"))

PASSWORD_HASHER = PasswordHasher(
    time_cost=ARGON2_TIME_COST,
    memory_cost=ARGON2_MEMORY_COST,
    parallelism=ARGON2_PARALLELISM,
)

USER_COLUMNS = """
    user_id, email, password_hash, name, auth_provider, entitlement,
    billing_customer_ref, billing_subscription_ref, entitlement_period_end,
    usage_count, usage_window_date, usage_lifetime_count, is_active,
    created_at, last_login
"""


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> bool:
    if not email:
        return False
    return bool(EMAIL_PATTERN.match(email))


def password_problem(password: str) -> str | None:
    if len(password or "") < PASSWORD_MIN_LEN:
        return f"Password must be at least {PASSWORD_MIN_LEN} characters."
    if len(password) > PASSWORD_MAX_LEN:
        return f"Password cannot exceed {PASSWORD_MAX_LEN} characters."
    return None


def _pepper_password(password: str) -> str:
    if not AUTH_PEPPER:
        return password
    return f"{password}{AUTH_PEPPER}"


def hash_password(password: str) -> str:
    return PASSWORD_HASHER.hash(_pepper_password(password))


def verify_password(password: str, stored: str | None) -> bool:
    if not stored:
        return False
    try:
        return PASSWORD_HASHER.verify(stored, _pepper_password(password))
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def needs_password_upgrade(stored: str) -> bool:
    return PASSWORD_HASHER.check_needs_rehash(stored)


def default_name(email: str) -> str:
    return email.split("@", 1)[0][:NAME_MAX_LEN]


def create_user(conn, email: str, password: str | None, name: str | None = None, auth_provider: str = "local") -> dict:
    user_id = uuid.uuid4().hex
    password_hash = hash_password(password) if password else None
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            INSERT INTO app_user (user_id, email, password_hash, name, auth_provider, entitlement)
            VALUES (%s, %s, %s, %s, %s, 'free')
            RETURNING {USER_COLUMNS}
            """,
            (user_id, email, password_hash, name or default_name(email), auth_provider),
        )
        return cur.fetchone()


def get_user_by_email(conn, email: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {USER_COLUMNS}
            FROM app_user
            WHERE email = %s
            """,
            (normalize_email(email),),
        )
        return cur.fetchone()


def get_user_by_id(conn, user_id: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {USER_COLUMNS}
            FROM app_user
            WHERE user_id = %s
            """,
            (user_id,),
        )
        return cur.fetchone()


def update_last_login(conn, user_id: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE app_user
            SET last_login = now()
            WHERE user_id = %s
            """,
            (user_id,),
        )


def update_password_hash(conn, user_id: str, new_hash: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE app_user
            SET password_hash = %s, updated_at = now()
            WHERE user_id = %s
            """,
            (new_hash, user_id),
        )


def update_profile_name(conn, user_id: str, name: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE app_user
            SET name = %s, updated_at = now()
            WHERE user_id = %s
            """,
            (name, user_id),
        )


def deactivate_user(conn, user_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE app_user
            SET is_active = FALSE, updated_at = now()
            WHERE user_id = %s AND is_active
            """,
            (user_id,),
        )
        return cur.rowcount > 0
