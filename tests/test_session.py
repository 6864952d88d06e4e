import asyncio
import os
import sys
import unittest
from dataclasses import replace

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from core.errors import (  # noqa: E402
    AuthError,
    BackendError,
    BackendUnavailableError,
    IdentityResolutionError,
    ProfileRepairError,
    RoleActivationError,
)
from core.session import ResolutionState, SessionResolver  # noqa: E402
from db.models import (  # noqa: E402
    Profile,
    Role,
    Session,
    SessionEvent,
    SessionEventKind,
)


def make_session(uid="u1", email="u1@example.com") -> Session:
    return Session(token=f"tok-{uid}", identity_id=uid, email=email)


class FakeIdentity:
    """In-memory identity backend; passwords are stored in clear."""

    def __init__(self, profiles: "FakeProfiles" = None):
        self.accounts = {}
        self.current = None
        self.listeners = []
        self.sign_out_calls = 0
        self.get_session_error = None
        self.profiles = profiles

    def on_session_change(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    async def _emit(self, event):
        for listener in list(self.listeners):
            await listener(event)

    async def get_session(self):
        if self.get_session_error:
            raise self.get_session_error
        return self.current

    async def sign_up(self, email, password, display_name):
        if email in self.accounts:
            raise AuthError("Email already taken.")
        uid = f"id-{len(self.accounts) + 1}"
        self.accounts[email] = (uid, password)
        if self.profiles is not None:
            # the storage trigger creates a buyer profile
            self.profiles.rows[uid] = Profile(uid, display_name)
        return await self.sign_in(email, password)

    async def sign_in(self, email, password):
        account = self.accounts.get(email)
        if account is None or account[1] != password:
            raise AuthError("Invalid email or password.")
        self.current = make_session(account[0], email)
        await self._emit(SessionEvent(SessionEventKind.SIGNED_IN, self.current))
        return self.current

    async def sign_out(self):
        self.sign_out_calls += 1
        self.current = None
        await self._emit(SessionEvent(SessionEventKind.SIGNED_OUT))


class FakeProfiles:
    """In-memory profile storage with per-identity lookup delays."""

    def __init__(self):
        self.rows = {}
        self.vendors = {}
        self.delays = {}
        self.find_calls = 0
        self.insert_calls = 0
        self.find_error = None
        self.insert_error = None
        self.insert_is_noop = False
        self.insert_delay = 0

    async def find_profile(self, identity_id):
        self.find_calls += 1
        delay = self.delays.get(identity_id, 0)
        if delay:
            await asyncio.sleep(delay)
        if self.find_error:
            raise self.find_error
        return self.rows.get(identity_id)

    async def insert_profile(self, profile):
        self.insert_calls += 1
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        if self.insert_error:
            raise self.insert_error
        if not self.insert_is_noop:
            self.rows.setdefault(profile.identity_id, profile)

    async def update_profile_roles(
        self, identity_id, is_buyer=None, is_seller=None, is_supplier=None
    ):
        row = self.rows.get(identity_id)
        if row is None:
            return False
        flags = {
            k: v
            for k, v in dict(
                is_buyer=is_buyer, is_seller=is_seller, is_supplier=is_supplier
            ).items()
            if v is not None
        }
        self.rows[identity_id] = replace(row, **flags)
        return True

    async def insert_vendor_profile(self, identity_id, kind, store_name):
        self.vendors[(identity_id, kind)] = store_name


class SessionResolverTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.profiles = FakeProfiles()
        self.identity = FakeIdentity(self.profiles)
        self.resolver = SessionResolver(self.identity, self.profiles, timeout=1.0)
        self.published = []
        self.resolver.subscribe(self.published.append)

    async def asyncSetUp(self):
        await self.resolver.start()

    def tearDown(self):
        self.resolver.close()

    # ---------- start / restore ----------

    async def test_start_without_session_is_unauthenticated(self):
        self.assertEqual(self.resolver.state, ResolutionState.UNAUTHENTICATED)
        self.assertFalse(self.resolver.current.is_authenticated)
        self.assertIsNone(self.resolver.profile)

    async def test_start_restores_persisted_session(self):
        self.profiles.rows["u1"] = Profile("u1", "User One")
        self.identity.current = make_session("u1")
        resolver = SessionResolver(self.identity, self.profiles, timeout=1.0)
        identity = await resolver.start()
        self.assertEqual(identity.state, ResolutionState.RESOLVED)
        self.assertEqual(identity.profile.display_name, "User One")
        resolver.close()

    async def test_start_treats_session_backend_error_as_signed_out(self):
        self.identity.get_session_error = BackendUnavailableError("down")
        resolver = SessionResolver(self.identity, self.profiles, timeout=1.0)
        identity = await resolver.start()
        self.assertEqual(identity.state, ResolutionState.UNAUTHENTICATED)
        resolver.close()

    # ---------- lookup vs. timeout ----------

    async def test_slow_lookup_within_timeout_resolves(self):
        self.profiles.rows["u1"] = Profile("u1", "User One", is_seller=True)
        self.profiles.delays["u1"] = 0.1
        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )

        current = self.resolver.current
        self.assertEqual(current.state, ResolutionState.RESOLVED)
        self.assertFalse(current.is_degraded)
        self.assertEqual(current.profile, self.profiles.rows["u1"])
        self.assertEqual(current.active_role, Role.SELLER)
        self.assertEqual(
            [i.state for i in self.published[-2:]],
            [ResolutionState.RESOLVING, ResolutionState.RESOLVED],
        )

    async def test_timeout_falls_back_and_late_result_is_ignored(self):
        self.profiles.rows["u1"] = Profile("u1", "User One")
        self.profiles.delays["u1"] = 0.3
        self.resolver.timeout = 0.05

        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )
        current = self.resolver.current
        self.assertEqual(current.state, ResolutionState.DEGRADED)
        self.assertTrue(current.is_authenticated)
        self.assertTrue(current.profile.is_buyer)
        self.assertTrue(current.profile.is_seller)
        self.assertTrue(current.profile.is_supplier)

        # let the slow lookup finish; it must not replace the fallback
        await asyncio.sleep(0.4)
        self.assertIs(self.resolver.current, current)
        self.assertEqual(self.profiles.insert_calls, 0)

    async def test_lookup_backend_error_degrades(self):
        self.profiles.find_error = BackendUnavailableError("db locked")
        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )
        self.assertEqual(self.resolver.state, ResolutionState.DEGRADED)
        self.assertTrue(self.resolver.profile.is_seller)

    async def test_event_without_identity_raises(self):
        with self.assertRaises(IdentityResolutionError):
            await self.resolver.handle_event(
                SessionEvent(SessionEventKind.SIGNED_IN, Session("tok", "", "x@y"))
            )
        with self.assertRaises(IdentityResolutionError):
            await self.resolver.handle_event(
                SessionEvent(SessionEventKind.SIGNED_IN, None)
            )

    # ---------- self-repair ----------

    async def test_missing_profile_is_repaired_once(self):
        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )
        current = self.resolver.current
        self.assertEqual(current.state, ResolutionState.RESOLVED)
        self.assertEqual(self.profiles.insert_calls, 1)
        self.assertTrue(current.profile.is_buyer)
        self.assertFalse(current.profile.is_seller)
        self.assertFalse(current.profile.is_supplier)
        self.assertEqual(current.profile.display_name, "u1")
        self.assertEqual(current.active_role, Role.BUYER)

    async def test_failed_repair_forces_sign_out(self):
        self.profiles.insert_error = BackendError("insert rejected")
        self.identity.accounts["a@example.com"] = ("u1", "pw")

        with self.assertRaises(ProfileRepairError) as ctx:
            await self.resolver.sign_in("a@example.com", "pw")

        self.assertIsInstance(ctx.exception.__cause__, BackendError)
        self.assertEqual(self.profiles.insert_calls, 1)
        self.assertEqual(self.identity.sign_out_calls, 1)
        self.assertEqual(self.resolver.state, ResolutionState.SIGNED_OUT)
        self.assertIsNone(self.resolver.session)
        self.assertIs(self.resolver.current.error, ctx.exception)

    async def test_repair_that_leaves_no_row_is_not_retried(self):
        self.profiles.insert_is_noop = True
        with self.assertRaises(ProfileRepairError):
            await self.resolver.handle_event(
                SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
            )
        self.assertEqual(self.profiles.insert_calls, 1)
        self.assertEqual(self.profiles.find_calls, 2)
        self.assertEqual(self.resolver.state, ResolutionState.SIGNED_OUT)

    async def test_hung_repair_falls_back_within_timeout(self):
        self.profiles.insert_delay = 3600
        self.resolver.timeout = 0.1

        await asyncio.wait_for(
            self.resolver.handle_event(
                SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
            ),
            timeout=1.0,
        )
        current = self.resolver.current
        self.assertEqual(current.state, ResolutionState.DEGRADED)
        self.assertTrue(current.profile.is_seller)
        self.assertEqual(self.profiles.insert_calls, 1)
        self.assertEqual(self.identity.sign_out_calls, 0)
        self.assertNotIn("u1", self.profiles.rows)

    async def test_slow_repair_shares_the_lookup_deadline(self):
        self.profiles.delays["u1"] = 0.15
        self.profiles.insert_delay = 0.15
        self.resolver.timeout = 0.25

        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )
        self.assertEqual(self.resolver.state, ResolutionState.DEGRADED)

    # ---------- staleness ----------

    async def test_stale_lookup_does_not_overwrite_newer_sign_in(self):
        self.profiles.rows["a"] = Profile("a", "Slow A")
        self.profiles.rows["b"] = Profile("b", "Fast B")
        self.profiles.delays["a"] = 0.2

        slow = asyncio.create_task(
            self.resolver.handle_event(
                SessionEvent(SessionEventKind.SIGNED_IN, make_session("a"))
            )
        )
        await asyncio.sleep(0.02)
        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("b"))
        )
        await slow

        self.assertEqual(self.resolver.state, ResolutionState.RESOLVED)
        self.assertEqual(self.resolver.session.identity_id, "b")
        self.assertEqual(self.resolver.profile.display_name, "Fast B")

    async def test_sign_out_during_lookup_wins(self):
        self.profiles.rows["a"] = Profile("a", "Slow A")
        self.profiles.delays["a"] = 0.2

        slow = asyncio.create_task(
            self.resolver.handle_event(
                SessionEvent(SessionEventKind.SIGNED_IN, make_session("a"))
            )
        )
        await asyncio.sleep(0.02)
        await self.resolver.sign_out()
        await slow

        self.assertEqual(self.resolver.state, ResolutionState.UNAUTHENTICATED)
        self.assertIsNone(self.resolver.profile)

    # ---------- sign-in / sign-out ----------

    async def test_sign_in_resolves_profile(self):
        self.identity.accounts["a@example.com"] = ("u1", "pw")
        self.profiles.rows["u1"] = Profile("u1", "Alice")

        identity = await self.resolver.sign_in("a@example.com", "pw")
        self.assertEqual(identity.state, ResolutionState.RESOLVED)
        self.assertEqual(identity.session.email, "a@example.com")
        self.assertIn(
            ResolutionState.AUTHENTICATING, [i.state for i in self.published]
        )

    async def test_sign_in_with_bad_credentials(self):
        self.identity.accounts["a@example.com"] = ("u1", "pw")
        with self.assertRaises(AuthError):
            await self.resolver.sign_in("a@example.com", "nope")
        self.assertEqual(self.resolver.state, ResolutionState.UNAUTHENTICATED)
        self.assertIsInstance(self.resolver.current.error, AuthError)

    async def test_sign_in_without_identity_id_clears_state(self):
        self.identity.accounts["a@example.com"] = ("", "pw")
        with self.assertRaises(IdentityResolutionError):
            await self.resolver.sign_in("a@example.com", "pw")
        self.assertEqual(self.resolver.state, ResolutionState.UNAUTHENTICATED)
        self.assertIsInstance(
            self.resolver.current.error, IdentityResolutionError
        )

    async def test_sign_out_is_idempotent(self):
        self.identity.accounts["a@example.com"] = ("u1", "pw")
        self.profiles.rows["u1"] = Profile("u1", "Alice")
        await self.resolver.sign_in("a@example.com", "pw")

        await self.resolver.sign_out()
        published = len(self.published)
        await self.resolver.sign_out()

        self.assertEqual(self.resolver.state, ResolutionState.UNAUTHENTICATED)
        self.assertIsNone(self.resolver.session)
        self.assertEqual(len(self.published), published)

    # ---------- roles ----------

    async def test_default_role_precedence(self):
        cases = [
            (Profile("x", "x", is_buyer=True, is_seller=True), Role.SELLER),
            (Profile("x", "x", is_buyer=True, is_supplier=True), Role.SUPPLIER),
            (
                Profile("x", "x", is_buyer=True, is_seller=True, is_supplier=True),
                Role.SELLER,
            ),
            (Profile("x", "x", is_buyer=True), Role.BUYER),
            (Profile("x", "x", is_buyer=False), Role.BUYER),
        ]
        for profile, expected in cases:
            self.assertEqual(profile.default_role(), expected, msg=profile)

    async def test_selecting_a_role_not_enabled_needs_onboarding(self):
        self.profiles.rows["u1"] = Profile("u1", "Alice")
        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )
        identity = self.resolver.set_active_role(Role.SUPPLIER)
        self.assertEqual(identity.active_role, Role.SUPPLIER)
        self.assertTrue(identity.needs_onboarding)

    async def test_activate_role_updates_profile(self):
        self.profiles.rows["u1"] = Profile("u1", "Alice")
        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )

        with self.assertRaises(RoleActivationError):
            await self.resolver.activate_role(Role.SELLER, "  ")

        identity = await self.resolver.activate_role(Role.SELLER, "Alice's Greens")
        self.assertEqual(identity.active_role, Role.SELLER)
        self.assertTrue(identity.profile.is_seller)
        self.assertTrue(identity.profile.is_buyer)
        self.assertFalse(identity.needs_onboarding)
        self.assertEqual(self.profiles.vendors[("u1", "seller")], "Alice's Greens")

    async def test_activate_role_refused_on_fallback_profile(self):
        self.profiles.find_error = BackendUnavailableError("down")
        await self.resolver.handle_event(
            SessionEvent(SessionEventKind.SIGNED_IN, make_session("u1"))
        )
        with self.assertRaises(RoleActivationError):
            await self.resolver.activate_role(Role.SUPPLIER, "Bulk Co")
        self.assertEqual(self.profiles.vendors, {})

    async def test_activate_role_requires_sign_in(self):
        with self.assertRaises(RoleActivationError):
            await self.resolver.activate_role(Role.BUYER)

    async def test_sign_up_as_supplier_replaces_buyer(self):
        identity = await self.resolver.sign_up(
            "bulk@example.com", "pw", "Bulk", role=Role.SUPPLIER, store_name="Bulk Co"
        )
        self.assertEqual(identity.state, ResolutionState.RESOLVED)
        self.assertEqual(identity.active_role, Role.SUPPLIER)
        self.assertTrue(identity.profile.is_supplier)
        self.assertFalse(identity.profile.is_buyer)

    async def test_sign_up_duplicate_email(self):
        await self.resolver.sign_up("a@example.com", "pw", "A")
        await self.resolver.sign_out()
        with self.assertRaises(AuthError):
            await self.resolver.sign_up("a@example.com", "pw", "A")
        self.assertEqual(self.resolver.state, ResolutionState.UNAUTHENTICATED)


if __name__ == "__main__":
    unittest.main()
