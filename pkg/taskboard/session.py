"""
Session store.

Tracks the current identity and access token for one client and reacts to
identity-lifecycle events from the ``IdentityProvider``. It is the only
writer of that state; views and mutation handlers receive a read-only
``SessionContext`` snapshot instead of reaching for a global.

On SIGNED_IN the profile synchronizer runs as a background task. It is not
awaited by the event, and its failures stay inside the task.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from .gateway import DataGateway, GatewayError
from .identity import AuthError, AuthEvent, Identity, IdentityProvider, Session
from .notifications import Notifier
from .profiles import ProfileSynchronizer, update_profile
from .schema import Profile, ValidationError

logger = logging.getLogger(__name__)

DASHBOARD_PATH = "/dashboard"
LOGIN_PATH = "/login"
RESET_PASSWORD_PATH = "/reset-password"


@dataclass(frozen=True)
class SessionContext:
    """Identity/token snapshot handed to every data-fetching call."""
    identity_id: str
    token: str


class Navigator:
    """Records where the client has been sent."""

    def __init__(self, start: str = "/"):
        self.history: List[str] = [start]

    @property
    def current(self) -> str:
        return self.history[-1]

    def navigate(self, path: str) -> None:
        logger.debug(f"navigate -> {path}")
        self.history.append(path)


def split_display_name(display_name: str):
    """'Ada King Lovelace' -> ('Ada', 'King Lovelace')."""
    parts = (display_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class SessionStore:
    """Current identity + token, kept in step with the identity provider."""

    def __init__(
        self,
        provider: IdentityProvider,
        gateway: DataGateway,
        notifier: Notifier,
        navigator: Optional[Navigator] = None,
        synchronizer: Optional[ProfileSynchronizer] = None,
    ):
        self.provider = provider
        self.gateway = gateway
        self.notifier = notifier
        self.navigator = navigator or Navigator()
        self.synchronizer = synchronizer or ProfileSynchronizer(gateway)

        self.identity: Optional[Identity] = None
        self.token: Optional[str] = None
        self.loading = True

        self._initialized = False
        self._subscription = None
        self._background: Set[asyncio.Task] = set()

    # ── State ────────────────────────────────────────────────────────────

    def _apply(self, session: Optional[Session]) -> None:
        self.identity = session.identity if session else None
        self.token = session.access_token if session else None
        self.loading = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.id if self.identity else None,
            "loading": self.loading,
        }

    def context(self) -> SessionContext:
        if self.identity is None or self.token is None:
            raise AuthError("Not signed in", status=401)
        return SessionContext(identity_id=self.identity.id, token=self.token)

    async def initialize(self) -> None:
        """Subscribe to lifecycle events and load any existing session. Idempotent."""
        if self._initialized:
            return
        self._initialized = True
        self._subscription = self.provider.on_auth_state_change(self._on_auth_event)
        session = await self.provider.get_session()
        self._apply(session)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._initialized = False

    # ── Lifecycle events ─────────────────────────────────────────────────

    def _on_auth_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        if event == AuthEvent.PASSWORD_RECOVERY:
            self.navigator.navigate(RESET_PASSWORD_PATH)
            return

        self._apply(session)
        if event == AuthEvent.SIGNED_IN:
            self.notifier.success("Successfully signed in!")
            if session is not None:
                self._spawn_profile_sync(session.identity)
        elif event == AuthEvent.SIGNED_OUT:
            self.notifier.success("Successfully signed out!")

    def _spawn_profile_sync(self, identity: Identity) -> None:
        task = asyncio.get_running_loop().create_task(self._sync_profile(identity))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _sync_profile(self, identity: Identity) -> Optional[Profile]:
        try:
            return await self.synchronizer.ensure_profile(identity)
        except Exception:
            logger.exception(f"Profile sync failed for {identity.id}")
            return None

    async def wait_background(self) -> None:
        """Wait for background profile syncs spawned so far."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Operations ───────────────────────────────────────────────────────

    async def register(self, email: str, password: str, display_name: str) -> Session:
        await self.initialize()
        first_name, last_name = split_display_name(display_name)
        try:
            session = await self.provider.sign_up(
                email, password, {"first_name": first_name, "last_name": last_name}
            )
        except AuthError as e:
            self.notifier.error(e.message or "An error occurred during sign up")
            raise
        self.notifier.success("Account created successfully!")
        return session

    async def authenticate(self, email: str, password: str) -> Session:
        await self.initialize()
        try:
            session = await self.provider.sign_in_with_password(email, password)
        except AuthError as e:
            self.notifier.error(e.message or "Invalid login credentials")
            raise
        self.navigator.navigate(DASHBOARD_PATH)
        return session

    async def authenticate_with_provider(self, provider: str = "google") -> Dict[str, str]:
        await self.initialize()
        try:
            return await self.provider.sign_in_with_oauth(
                provider, f"{self.provider.site_url}{DASHBOARD_PATH}"
            )
        except AuthError as e:
            self.notifier.error(e.message or f"Error signing in with {provider}")
            raise

    async def end_session(self) -> None:
        await self.initialize()
        try:
            await self.provider.sign_out()
        except AuthError as e:
            self.notifier.error(e.message or "Error signing out")
            raise
        self._apply(None)
        self.navigator.navigate(LOGIN_PATH)

    async def update_preferences(self, changes: Dict[str, Any]) -> Optional[Profile]:
        """Partial profile update for the current identity; no-op when signed out."""
        if self.identity is None:
            return None
        try:
            profile = await update_profile(self.gateway, self.identity.id, changes)
        except (ValidationError, GatewayError) as e:
            self.notifier.error(str(e) or "Error updating profile")
            raise
        self.notifier.success("Profile updated successfully!")
        return profile

    async def change_password(self, new_password: str, confirm: str) -> None:
        if new_password != confirm:
            self.notifier.error("New passwords don't match.")
            raise ValidationError("New passwords don't match.")
        try:
            await self.provider.update_password(new_password)
        except AuthError as e:
            self.notifier.error(e.message or "Error changing password")
            raise
        self.notifier.success("Password changed successfully!")

    async def request_password_reset(self, email: str) -> Optional[str]:
        token = await self.provider.reset_password_for_email(
            email, f"{self.provider.site_url}{RESET_PASSWORD_PATH}"
        )
        self.notifier.success("Check your email for a password reset link.")
        return token
