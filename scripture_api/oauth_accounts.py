from psycopg2.extras import RealDictCursor


def get_oauth_account(conn, provider: str, provider_user_id: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT provider, provider_user_id, user_id, email
            FROM oauth_account
            WHERE provider = %s AND provider_user_id = %s
            """,
            (provider, provider_user_id),
        )
        return cur.fetchone()


def link_oauth_account(
    conn,
    provider: str,
    provider_user_id: str,
    user_id: str,
    email: str,
    profile_name: str | None,
) -> None:
    """Attach the provider identity to ``user_id``; repeat sign-ins refresh the profile."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO oauth_account (provider, provider_user_id, user_id, email, profile_name)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (provider, provider_user_id)
            DO UPDATE SET
              user_id = EXCLUDED.user_id,
              email = EXCLUDED.email,
              profile_name = EXCLUDED.profile_name,
              last_login = now()
            """,
            (provider, provider_user_id, user_id, email, profile_name),
        )
