"""
Identity provider: accounts, sessions, and identity-lifecycle events.

One ``IdentityProvider`` instance plays the role of a client-side auth SDK:
it holds at most one current session (optionally restored from an access
token) and notifies registered listeners with ``(event, session)`` on every
lifecycle transition. Accounts, sessions and recovery tokens live in SQLite
so several provider instances can share them.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

SUPPORTED_OAUTH_PROVIDERS = ("google",)
MIN_PASSWORD_LENGTH = 6
_PBKDF2_ROUNDS = 120_000


class AuthError(Exception):
    """Raised for rejected credentials, missing sessions, or bad auth input."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class AuthEvent(Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass
class Identity:
    """An authenticated account as issued by the provider."""
    id: str
    email: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "user_metadata": self.metadata}


@dataclass
class Session:
    access_token: str
    identity: Identity
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "expires_at": self.expires_at.isoformat(),
            "user": self.identity.to_dict(),
        }


AuthListener = Callable[[AuthEvent, Optional[Session]], None]


class Subscription:
    """Handle returned by ``on_auth_state_change``."""

    def __init__(self, listeners: List[AuthListener], callback: AuthListener):
        self._listeners = listeners
        self._callback = callback

    def unsubscribe(self) -> None:
        if self._callback in self._listeners:
            self._listeners.remove(self._callback)


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return hmac.compare_digest(hash_password(password, salt), stored)


class IdentityProvider:
    """SQLite-backed identity provider with a client-side session."""

    def __init__(
        self,
        db_path: str,
        access_token: Optional[str] = None,
        session_ttl_hours: int = 24 * 7,
        site_url: str = "http://localhost:3000",
    ):
        self.db_path = db_path
        self.session_ttl = timedelta(hours=session_ttl_hours)
        self.site_url = site_url.rstrip("/")
        self._access_token = access_token
        self._listeners: List[AuthListener] = []
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auth_users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auth_sessions (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES auth_users(id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auth_recovery (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES auth_users(id) ON DELETE CASCADE
                )
            """)
            conn.commit()

    # ── Listeners ────────────────────────────────────────────────────────

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        """Register a lifecycle listener."""
        self._listeners.append(callback)
        return Subscription(self._listeners, callback)

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, session)
            except Exception as e:
                logger.error(f"Error in {event.value} listener: {e}")

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> Identity:
        metadata = {}
        if row["metadata"]:
            try:
                metadata = json.loads(row["metadata"])
            except (json.JSONDecodeError, TypeError):
                metadata = {}
        return Identity(id=row["id"], email=row["email"], metadata=metadata)

    def _issue_session(self, conn: sqlite3.Connection, identity: Identity) -> Session:
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + self.session_ttl
        conn.execute(
            "INSERT INTO auth_sessions (token, user_id, expires_at) VALUES (?, ?, ?)",
            (token, identity.id, expires_at.isoformat()),
        )
        conn.commit()
        return Session(access_token=token, identity=identity, expires_at=expires_at)

    def _lookup(self, token: str) -> Optional[Session]:
        with _connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT s.token, s.expires_at, u.id, u.email, u.metadata
                FROM auth_sessions s JOIN auth_users u ON u.id = s.user_id
                WHERE s.token = ?
                """,
                (token,),
            ).fetchone()
        if not row:
            return None
        expires_at = datetime.fromisoformat(row["expires_at"])
        if expires_at <= datetime.now(timezone.utc):
            return None
        return Session(access_token=row["token"], identity=self._row_to_identity(row), expires_at=expires_at)

    def _create_account(self, identity: Identity, password: str) -> Session:
        with _connect(self.db_path) as conn:
            try:
                conn.execute(
                    "INSERT INTO auth_users (id, email, password_hash, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
                    (
                        identity.id,
                        identity.email,
                        hash_password(password),
                        json.dumps(identity.metadata),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
            except sqlite3.IntegrityError:
                raise AuthError("User already registered", status=422)
            return self._issue_session(conn, identity)

    def _check_credentials(self, email: str, password: str) -> Session:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM auth_users WHERE email = ?", (email,)).fetchone()
            if not row or not row["password_hash"] or not verify_password(password, row["password_hash"]):
                raise AuthError("Invalid login credentials", status=400)
            return self._issue_session(conn, self._row_to_identity(row))

    def _revoke(self, token: str) -> None:
        with _connect(self.db_path) as conn:
            conn.execute("DELETE FROM auth_sessions WHERE token = ?", (token,))
            conn.commit()

    def _store_password(self, identity_id: str, new_password: str) -> None:
        with _connect(self.db_path) as conn:
            conn.execute(
                "UPDATE auth_users SET password_hash = ? WHERE id = ?",
                (hash_password(new_password), identity_id),
            )
            conn.commit()

    def _issue_recovery(self, email: str) -> Optional[str]:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT id FROM auth_users WHERE email = ?", (email,)).fetchone()
            if not row:
                return None
            token = secrets.token_urlsafe(24)
            expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
            conn.execute(
                "INSERT INTO auth_recovery (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, row["id"], expires_at.isoformat()),
            )
            conn.commit()
        return token

    def _redeem_recovery(self, token: str) -> Session:
        with _connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT r.expires_at, u.* FROM auth_recovery r
                JOIN auth_users u ON u.id = r.user_id
                WHERE r.token = ?
                """,
                (token,),
            ).fetchone()
            if not row or datetime.fromisoformat(row["expires_at"]) <= datetime.now(timezone.utc):
                raise AuthError("Recovery link is invalid or has expired", status=401)
            conn.execute("DELETE FROM auth_recovery WHERE token = ?", (token,))
            return self._issue_session(conn, self._row_to_identity(row))

    # ── Public API ───────────────────────────────────────────────────────
    # Blocking sqlite and PBKDF2 work runs in a worker thread; listeners are
    # always called back on the event loop.

    async def get_session(self) -> Optional[Session]:
        """Return the current session, or None when signed out or expired."""
        if not self._access_token:
            return None
        return await asyncio.to_thread(self._lookup, self._access_token)

    async def get_user(self, access_token: str) -> Identity:
        session = await asyncio.to_thread(self._lookup, access_token)
        if session is None:
            raise AuthError("Invalid or expired session", status=401)
        return session.identity

    async def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> Session:
        """Create an account and sign it in."""
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise AuthError("A valid email address is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")

        identity = Identity(id=str(uuid.uuid4()), email=email, metadata=dict(metadata or {}))
        session = await asyncio.to_thread(self._create_account, identity, password)
        self._access_token = session.access_token

        logger.info(f"Registered identity {identity.id} ({email})")
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        email = (email or "").strip().lower()
        session = await asyncio.to_thread(self._check_credentials, email, password or "")
        self._access_token = session.access_token
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_in_with_oauth(self, provider: str, redirect_to: str) -> Dict[str, str]:
        """Start an OAuth redirect flow; returns the URL to send the browser to."""
        if provider not in SUPPORTED_OAUTH_PROVIDERS:
            raise AuthError(f"Unsupported provider: {provider}")
        query = urlencode({"provider": provider, "redirect_to": redirect_to})
        return {"provider": provider, "url": f"{self.site_url}/auth/v1/authorize?{query}"}

    async def sign_out(self) -> None:
        token = self._access_token
        if token:
            await asyncio.to_thread(self._revoke, token)
        self._access_token = None
        self._emit(AuthEvent.SIGNED_OUT, None)

    async def update_password(self, new_password: str) -> Identity:
        session = await self.get_session()
        if session is None:
            raise AuthError("Auth session missing!", status=401)
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")
        await asyncio.to_thread(self._store_password, session.identity.id, new_password)
        self._emit(AuthEvent.USER_UPDATED, session)
        return session.identity

    async def reset_password_for_email(self, email: str, redirect_to: str = "") -> Optional[str]:
        """Issue a recovery token for ``email``.

        The token would normally be mailed; it is returned so the caller can
        hand it to its delivery channel. Unknown emails return None without
        revealing that the account does not exist.
        """
        email = (email or "").strip().lower()
        token = await asyncio.to_thread(self._issue_recovery, email)
        if token is None:
            logger.info(f"Password recovery requested for unknown email {email}")
            return None
        logger.info(f"Password recovery issued for {email} (redirect {redirect_to or '-'})")
        return token

    async def verify_recovery(self, token: str) -> Session:
        """Exchange a recovery token for a session and emit PASSWORD_RECOVERY."""
        session = await asyncio.to_thread(self._redeem_recovery, token)
        self._access_token = session.access_token
        self._emit(AuthEvent.PASSWORD_RECOVERY, session)
        return session
