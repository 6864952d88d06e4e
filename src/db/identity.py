# local identity backend: accounts, sessions and sign-in/sign-out events
from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from core.errors import AuthError
from db import models
from db.database import connect
from utils.logger import get_logger

_logger = get_logger(__name__)

_CURRENT_SESSION_KEY = "session_token"
_PBKDF2_ROUNDS = 120_000


SessionListener = Callable[[models.SessionEvent], Awaitable[None]]


def _hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode(), salt.encode(), _PBKDF2_ROUNDS
    )
    return digest.hex()


class LocalIdentityBackend:
    """
    Identity backend on top of the local sqlite database.

    The token of the current session is persisted in client_state so a
    restarted client can restore it with get_session(). Listeners registered
    with on_session_change() are awaited in registration order on every
    sign-in and sign-out.
    """

    def __init__(self, session_ttl: timedelta = timedelta(days=7)):
        self.session_ttl = session_ttl
        self._listeners: List[SessionListener] = []

    # ---------------------------
    # Events
    # ---------------------------

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: models.SessionEvent) -> None:
        for listener in list(self._listeners):
            await listener(event)

    # ---------------------------
    # Accounts
    # ---------------------------

    async def email_available(self, email: str) -> bool:
        async with connect() as conn:
            cur = await conn.execute(
                "SELECT 1 FROM users WHERE email = ? LIMIT 1;", (email.lower(),)
            )
            row = await cur.fetchone()
            await cur.close()
        return row is None

    async def sign_up(
        self, email: str, password: str, display_name: str
    ) -> models.Session:
        """
        Create an account and sign it in.

        The users table trigger creates the buyer profile of the new account.
        """
        email = email.strip().lower()
        if not email or not password:
            raise AuthError("Email and password are required.")
        if not await self.email_available(email):
            raise AuthError("Email already taken.")

        user_id = uuid.uuid4().hex
        salt = secrets.token_hex(16)
        async with connect() as conn:
            await conn.execute(
                "INSERT INTO users(id, email, pwd_hash, salt, display_name) "
                "VALUES (?, ?, ?, ?, ?);",
                (user_id, email, _hash_password(password, salt), salt, display_name),
            )
            await conn.commit()
        _logger.info(f"Registered {email} as {user_id}")
        return await self.sign_in(email, password)

    async def sign_in(self, email: str, password: str) -> models.Session:
        email = email.strip().lower()
        async with connect() as conn:
            cur = await conn.execute(
                "SELECT id, pwd_hash, salt FROM users WHERE email = ?;", (email,)
            )
            row = await cur.fetchone()
            await cur.close()
        if not row or not hmac.compare_digest(
            row["pwd_hash"], _hash_password(password, row["salt"])
        ):
            raise AuthError("Invalid email or password.")

        now = datetime.now()
        session = models.Session(
            token=secrets.token_urlsafe(32),
            identity_id=row["id"],
            email=email,
            expires_at=now + self.session_ttl,
        )
        async with connect() as conn:
            await conn.execute(
                "INSERT INTO sessions(token, user_id, created_at, expires_at) "
                "VALUES (?, ?, ?, ?);",
                (
                    session.token,
                    session.identity_id,
                    now.isoformat(" "),
                    session.expires_at.isoformat(" "),
                ),
            )
            await conn.execute(
                "INSERT INTO client_state(key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
                (_CURRENT_SESSION_KEY, session.token),
            )
            await conn.commit()

        _logger.info(f"{email} signed in")
        await self._emit(
            models.SessionEvent(models.SessionEventKind.SIGNED_IN, session)
        )
        return session

    # ---------------------------
    # Sessions
    # ---------------------------

    async def get_session(self) -> Optional[models.Session]:
        """The persisted current session, or None if absent, revoked or expired."""
        async with connect() as conn:
            cur = await conn.execute(
                """
                SELECT s.token, s.user_id, u.email, s.expires_at
                FROM client_state c
                JOIN sessions s ON s.token = c.value
                JOIN users u ON u.id = s.user_id
                WHERE c.key = ? AND s.revoked = 0;
                """,
                (_CURRENT_SESSION_KEY,),
            )
            row = await cur.fetchone()
            await cur.close()
        if not row:
            return None
        expires_at = datetime.fromisoformat(row["expires_at"])
        if expires_at <= datetime.now():
            _logger.info("Persisted session expired")
            return None
        return models.Session(
            token=row["token"],
            identity_id=row["user_id"],
            email=row["email"],
            expires_at=expires_at,
        )

    async def sign_out(self) -> None:
        """Revoke the current session (if any) and emit SIGNED_OUT."""
        async with connect() as conn:
            await conn.execute(
                """
                UPDATE sessions SET revoked = 1
                WHERE token = (SELECT value FROM client_state WHERE key = ?);
                """,
                (_CURRENT_SESSION_KEY,),
            )
            await conn.execute(
                "DELETE FROM client_state WHERE key = ?;", (_CURRENT_SESSION_KEY,)
            )
            await conn.commit()
        await self._emit(models.SessionEvent(models.SessionEventKind.SIGNED_OUT))
