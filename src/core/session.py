"""
Session & profile resolution.

Turns the sessions issued by the identity backend into a role-aware identity.

    UNAUTHENTICATED -> AUTHENTICATING -> RESOLVING -> RESOLVED
                                                   -> DEGRADED
                                                   -> SIGNED_OUT (forced)

Every resolution attempt takes a new generation number. Whatever an attempt
finds out is applied only while its generation is still the current one, so a
slow lookup can never overwrite the outcome of a newer sign-in, a sign-out, or
the fallback that already replaced it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Protocol

from core.errors import (
    AuthError,
    BackendError,
    IdentityResolutionError,
    ProfileRepairError,
    RoleActivationError,
)
from db.models import Profile, Role, Session, SessionEvent, SessionEventKind
from utils.config import get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)


class IdentityBackend(Protocol):
    async def get_session(self) -> Optional[Session]: ...

    def on_session_change(self, listener) -> Callable[[], None]: ...

    async def sign_in(self, email: str, password: str) -> Session: ...

    async def sign_up(
        self, email: str, password: str, display_name: str
    ) -> Session: ...

    async def sign_out(self) -> None: ...


class ProfileBackend(Protocol):
    async def find_profile(self, identity_id: str) -> Optional[Profile]: ...

    async def insert_profile(self, profile: Profile) -> None: ...

    async def update_profile_roles(self, identity_id: str, **flags) -> bool: ...

    async def insert_vendor_profile(
        self, identity_id: str, kind: str, store_name: str
    ) -> None: ...


class ResolutionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    DEGRADED = "degraded"
    SIGNED_OUT = "signed_out"  # forced, after a failed profile repair


@dataclass(frozen=True)
class ResolvedIdentity:
    state: ResolutionState = ResolutionState.UNAUTHENTICATED
    session: Optional[Session] = None
    profile: Optional[Profile] = None
    active_role: Role = Role.BUYER
    error: Optional[Exception] = None

    @property
    def is_authenticated(self) -> bool:
        return self.state in (ResolutionState.RESOLVED, ResolutionState.DEGRADED)

    @property
    def is_degraded(self) -> bool:
        return self.state == ResolutionState.DEGRADED

    @property
    def needs_onboarding(self) -> bool:
        """True when the active role is not enabled on the profile."""
        return self.profile is not None and not self.profile.has_role(self.active_role)


def _default_display_name(session: Session) -> str:
    return session.email.split("@")[0] if session.email else session.identity_id


def fallback_profile(session: Session) -> Profile:
    """Local stand-in used when the backend is too slow. Never persisted."""
    return Profile(
        identity_id=session.identity_id,
        display_name=_default_display_name(session),
        is_buyer=True,
        is_seller=True,
        is_supplier=True,
    )


IdentityListener = Callable[[ResolvedIdentity], None]


class SessionResolver:
    """
    Owns the mapping from the current session to a resolved profile.

    Create one per client, call start() once, close() at teardown.
    """

    def __init__(
        self,
        identity: IdentityBackend,
        persistence: ProfileBackend,
        timeout: Optional[float] = None,
    ):
        self._identity = identity
        self._persistence = persistence
        self.timeout = get_settings().profile_timeout if timeout is None else timeout

        self._current = ResolvedIdentity()
        self._generation = 0
        self._listeners: List[IdentityListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ---------------------------
    # State access
    # ---------------------------

    @property
    def current(self) -> ResolvedIdentity:
        return self._current

    @property
    def state(self) -> ResolutionState:
        return self._current.state

    @property
    def session(self) -> Optional[Session]:
        return self._current.session

    @property
    def profile(self) -> Optional[Profile]:
        return self._current.profile

    @property
    def active_role(self) -> Role:
        return self._current.active_role

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Call listener with the new identity after every state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, identity: ResolvedIdentity) -> ResolvedIdentity:
        self._current = identity
        _logger.debug(f"identity -> {identity.state.value} (gen {self._generation})")
        for listener in list(self._listeners):
            listener(identity)
        return identity

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # ---------------------------
    # Lifecycle
    # ---------------------------

    async def start(self) -> ResolvedIdentity:
        """Listen to identity events and restore the persisted session, if any."""
        if self._unsubscribe is None:
            self._unsubscribe = self._identity.on_session_change(self.handle_event)

        generation = self._generation
        try:
            session = await self._identity.get_session()
        except BackendError as e:
            _logger.error(f"Could not restore session: {e}")
            session = None

        if not self._is_current(generation):
            # an event arrived while restoring; it owns the state now
            return self._current
        if session is None:
            return self._publish(ResolvedIdentity(ResolutionState.UNAUTHENTICATED))
        return await self._resolve(session)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._next_generation()
        self._listeners.clear()

    async def handle_event(self, event: SessionEvent) -> None:
        if event.kind == SessionEventKind.SIGNED_IN:
            await self._resolve(event.session)
        elif event.kind == SessionEventKind.SIGNED_OUT:
            self._clear()

    # ---------------------------
    # Resolution
    # ---------------------------

    async def _resolve(self, session: Optional[Session]) -> ResolvedIdentity:
        if session is None or not session.identity_id:
            _logger.error("Authenticated event without an identity")
            raise IdentityResolutionError("session carries no identity id")

        generation = self._next_generation()
        identity_id = session.identity_id
        deadline = asyncio.get_running_loop().time() + self.timeout
        self._publish(ResolvedIdentity(ResolutionState.RESOLVING, session=session))

        lookup = asyncio.ensure_future(self._persistence.find_profile(identity_id))
        done, _ = await asyncio.wait({lookup}, timeout=self.timeout)

        if not done:
            lookup.add_done_callback(partial(self._late_lookup, generation))
            if not self._is_current(generation):
                return self._current
            _logger.warning(
                f"Profile lookup for {identity_id} took longer than "
                f"{self.timeout}s, continuing with the fallback profile"
            )
            return self._settle(
                generation,
                ResolutionState.DEGRADED,
                session,
                fallback_profile(session),
            )

        if not self._is_current(generation):
            _logger.debug(f"Discarding stale profile lookup (gen {generation})")
            return self._current

        try:
            profile = lookup.result()
        except BackendError as e:
            _logger.warning(
                f"Profile lookup for {identity_id} failed ({e}), "
                "continuing with the fallback profile"
            )
            return self._settle(
                generation,
                ResolutionState.DEGRADED,
                session,
                fallback_profile(session),
            )

        if profile is None:
            profile = await self._repair(session, generation, deadline)
            if profile is None:
                return self._current

        return self._settle(generation, ResolutionState.RESOLVED, session, profile)

    async def _recreate_profile(self, session: Session) -> Optional[Profile]:
        await self._persistence.insert_profile(
            Profile(
                identity_id=session.identity_id,
                display_name=_default_display_name(session),
                is_buyer=True,
                is_seller=False,
                is_supplier=False,
            )
        )
        return await self._persistence.find_profile(session.identity_id)

    async def _repair(
        self, session: Session, generation: int, deadline: float
    ) -> Optional[Profile]:
        """
        Recreate a missing profile row once, then read it back.

        The repair shares the lookup's deadline; running out of time settles
        on the fallback profile like a slow lookup does. Returns None if the
        attempt went stale or fell back. Raises ProfileRepairError after
        forcing a sign-out when the row cannot be recreated.
        """
        identity_id = session.identity_id
        _logger.warning(f"No profile for {identity_id}, creating a buyer profile")
        error: Optional[ProfileRepairError] = None
        cause: Optional[BackendError] = None
        profile: Optional[Profile] = None
        timed_out = False
        remaining = max(deadline - asyncio.get_running_loop().time(), 0)
        try:
            profile = await asyncio.wait_for(
                self._recreate_profile(session), timeout=remaining
            )
        except asyncio.TimeoutError:
            timed_out = True
        except BackendError as e:
            _logger.error(f"Profile repair for {identity_id} failed: {e}")
            error = ProfileRepairError("Your profile could not be created.")
            cause = e

        if not self._is_current(generation):
            _logger.debug(f"Discarding stale profile repair (gen {generation})")
            return None

        if timed_out:
            _logger.warning(
                f"Profile repair for {identity_id} did not finish within "
                f"{self.timeout}s, continuing with the fallback profile"
            )
            self._settle(
                generation,
                ResolutionState.DEGRADED,
                session,
                fallback_profile(session),
            )
            return None

        if error is None and profile is None:
            _logger.error(f"Profile for {identity_id} still missing after repair")
            error = ProfileRepairError("Your profile could not be created.")

        if error is not None:
            await self._force_sign_out(error)
            raise error from cause
        return profile

    def _settle(
        self,
        generation: int,
        state: ResolutionState,
        session: Session,
        profile: Profile,
    ) -> ResolvedIdentity:
        if not self._is_current(generation):
            _logger.debug(f"Discarding stale resolution (gen {generation})")
            return self._current
        _logger.info(f"{session.email or session.identity_id} -> {state.value}")
        return self._publish(
            ResolvedIdentity(
                state=state,
                session=session,
                profile=profile,
                active_role=profile.default_role(),
            )
        )

    def _late_lookup(self, generation: int, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            _logger.warning(f"Late profile lookup (gen {generation}) failed: {error}")
        else:
            _logger.debug(f"Late profile lookup (gen {generation}) ignored")

    # ---------------------------
    # Sign-in / sign-out
    # ---------------------------

    def _clear(
        self,
        state: ResolutionState = ResolutionState.UNAUTHENTICATED,
        error: Optional[Exception] = None,
    ) -> ResolvedIdentity:
        self._next_generation()
        cleared = ResolvedIdentity(state, error=error)
        if self._current == cleared:
            return self._current
        return self._publish(cleared)

    async def _force_sign_out(self, error: Exception) -> None:
        try:
            await self._identity.sign_out()
        except BackendError as e:
            _logger.error(f"Forced sign-out could not reach the backend: {e}")
        self._clear(ResolutionState.SIGNED_OUT, error)

    async def sign_in(self, email: str, password: str) -> ResolvedIdentity:
        self._next_generation()
        self._publish(ResolvedIdentity(ResolutionState.AUTHENTICATING))
        try:
            await self._identity.sign_in(email, password)
        except (AuthError, BackendError, IdentityResolutionError) as e:
            _logger.info(f"Sign-in failed for {email}: {e}")
            if self.state == ResolutionState.AUTHENTICATING:
                self._clear(error=e)
            raise
        return self._current

    async def sign_up(
        self,
        email: str,
        password: str,
        display_name: str,
        role: Role = Role.BUYER,
        store_name: Optional[str] = None,
    ) -> ResolvedIdentity:
        """
        Create an account, sign it in, and enable the chosen role.

        Choosing seller or supplier replaces the buyer role the account starts with.
        """
        role = Role(role)
        self._next_generation()
        self._publish(ResolvedIdentity(ResolutionState.AUTHENTICATING))
        try:
            await self._identity.sign_up(email, password, display_name)
        except (AuthError, BackendError, IdentityResolutionError) as e:
            _logger.info(f"Sign-up failed for {email}: {e}")
            if self.state == ResolutionState.AUTHENTICATING:
                self._clear(error=e)
            raise
        if role != Role.BUYER:
            await self.activate_role(role, store_name or display_name, exclusive=True)
        return self._current

    async def sign_out(self) -> None:
        """Idempotent; the local state is cleared even if the backend call fails."""
        try:
            await self._identity.sign_out()
        except BackendError as e:
            _logger.error(f"Sign-out could not reach the backend: {e}")
        self._clear()

    # ---------------------------
    # Roles
    # ---------------------------

    def set_active_role(self, role: Role) -> ResolvedIdentity:
        """Select a role. It may be one the profile does not enable yet."""
        return self._publish(replace(self._current, active_role=Role(role)))

    async def activate_role(
        self, role: Role, store_name: str = "", exclusive: bool = False
    ) -> ResolvedIdentity:
        """
        Enable a role on the stored profile and make it the active one.

        Seller and supplier roles need a store/company name. With exclusive=True
        the buyer flag is cleared. Not available on the degraded fallback
        profile, which is never written back.
        """
        role = Role(role)
        current = self._current
        if current.state == ResolutionState.DEGRADED:
            _logger.warning("Role activation refused on the fallback profile")
            raise RoleActivationError(
                "Your profile is not available right now, try again later."
            )
        if current.state != ResolutionState.RESOLVED or current.session is None:
            raise RoleActivationError("Sign in first.")

        flags = {f"is_{role.value}": True}
        if role != Role.BUYER:
            store_name = (store_name or "").strip()
            if not store_name:
                raise RoleActivationError("A store or company name is required.")
            if exclusive:
                flags["is_buyer"] = False

        identity_id = current.session.identity_id
        generation = self._generation
        try:
            updated = await self._persistence.update_profile_roles(identity_id, **flags)
            if role != Role.BUYER:
                await self._persistence.insert_vendor_profile(
                    identity_id, role.value, store_name
                )
            profile = await self._persistence.find_profile(identity_id)
        except BackendError as e:
            _logger.error(f"Activating {role.value} for {identity_id} failed: {e}")
            raise RoleActivationError(f"Could not enable {role.value}.") from e

        if not updated or profile is None:
            raise RoleActivationError(f"Could not enable {role.value}.")
        if not self._is_current(generation):
            return self._current
        _logger.info(f"{identity_id} activated {role.value}")
        return self._publish(replace(self._current, profile=profile, active_role=role))
