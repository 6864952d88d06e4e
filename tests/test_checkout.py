import asyncio
import os
import sys
import tempfile
import unittest
from decimal import Decimal

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from core.cart import CartStorage, CartStore  # noqa: E402
from core.checkout import (  # noqa: E402
    CheckoutIntentLog,
    CheckoutOrchestrator,
    CheckoutStatus,
    partition_by_vendor,
)
from core.errors import (  # noqa: E402
    BackendError,
    BackendUnavailableError,
    CheckoutError,
    CheckoutValidationError,
    MissingVendorError,
)
from core.session import ResolutionState, ResolvedIdentity  # noqa: E402
from db.models import OrderStatus, Product, Profile, Session  # noqa: E402


def make_product(pid, price, vendor, unit="unit") -> Product:
    return Product(
        id=pid,
        vendor_id=vendor,
        name=pid,
        category="misc",
        unit_price=Decimal(price),
        unit_type=unit,
        stock_quantity=100,
    )


class FakeResolver:
    def __init__(self, identity: ResolvedIdentity):
        self.current = identity


def signed_in(uid="buyer-1") -> ResolvedIdentity:
    return ResolvedIdentity(
        state=ResolutionState.RESOLVED,
        session=Session("tok", uid, f"{uid}@example.com"),
        profile=Profile(uid, uid),
    )


class FakeOrders:
    """Order backend honouring idempotency keys like the sqlite one."""

    def __init__(self):
        self.orders = {}
        self.by_key = {}
        self.lines = {}
        self.calls = []
        self.fail_vendor = None
        self.failures_left = None  # None: fail every time
        self.fail_error = BackendError
        self.delay = 0
        self.fail_lines_vendor = None
        self.on_create_order = None

    async def create_order(self, fields, idempotency_key=None):
        self.calls.append(("create_order", fields["vendor_id"], idempotency_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_create_order:
            self.on_create_order(fields)
        if fields["vendor_id"] == self.fail_vendor and self.failures_left != 0:
            if self.failures_left is not None:
                self.failures_left -= 1
            raise self.fail_error(f"cannot create order for {fields['vendor_id']}")
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        order_id = f"o{len(self.orders) + 1}"
        self.orders[order_id] = dict(fields)
        if idempotency_key:
            self.by_key[idempotency_key] = order_id
        return order_id

    async def create_line_items(self, order_id, items):
        self.calls.append(("create_line_items", order_id, None))
        vendor_id = self.orders[order_id]["vendor_id"]
        if vendor_id == self.fail_lines_vendor:
            raise BackendError(f"cannot store line items for {vendor_id}")
        lines = self.lines.setdefault(order_id, {})
        for item in items:
            lines.setdefault(item.product_id, item)

    def calls_for(self, vendor_id):
        return [c for c in self.calls if c[0] == "create_order" and c[1] == vendor_id]


class CheckoutTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.intent_path = os.path.join(self.temp_dir.name, "intent.json")
        self.cart = CartStore(
            CartStorage(os.path.join(self.temp_dir.name, "cart.json"))
        )
        self.backend = FakeOrders()
        self.resolver = FakeResolver(signed_in())
        self.checkout = CheckoutOrchestrator(
            self.backend,
            self.cart,
            self.resolver,
            intent_log=CheckoutIntentLog(self.intent_path),
            call_timeout=1.0,
            retry_attempts=3,
            retry_wait_max=0,
        )

    def tearDown(self):
        self.temp_dir.cleanup()

    def fill_two_vendor_cart(self):
        self.cart.add(make_product("apple", "10.00", "v1"), 1)
        self.cart.add(make_product("bread", "7.50", "v2"), 1)

    # ---------- success ----------

    async def test_one_order_per_vendor(self):
        self.fill_two_vendor_cart()

        result = await self.checkout.checkout("1 Main St")

        self.assertEqual([o.vendor_id for o in result.orders], ["v1", "v2"])
        self.assertEqual(len(self.backend.orders), 2)
        totals = {f["vendor_id"]: f["total_price"] for f in self.backend.orders.values()}
        self.assertEqual(totals, {"v1": Decimal("10.00"), "v2": Decimal("7.50")})
        for order_id, fields in self.backend.orders.items():
            self.assertEqual(fields["customer_id"], "buyer-1")
            self.assertEqual(fields["status"], OrderStatus.PENDING)
            self.assertEqual(fields["shipping_address"], "1 Main St")
            lines = self.backend.lines[order_id].values()
            self.assertEqual(
                sum(i.price_at_purchase * i.quantity for i in lines),
                fields["total_price"],
            )
        self.assertEqual(result.total, Decimal("17.50"))
        self.assertTrue(self.cart.is_empty)
        self.assertFalse(os.path.exists(self.intent_path))
        self.assertEqual(self.checkout.last_attempt.status, CheckoutStatus.SUCCEEDED)

    async def test_groups_keep_cart_order_and_merge_vendor_items(self):
        self.cart.add(make_product("b1", "1.00", "vb"), 2)
        self.cart.add(make_product("a1", "3.00", "va"), 1)
        self.cart.add(make_product("b2", "0.50", "vb"), 4)

        groups = partition_by_vendor(self.cart.items)
        self.assertEqual([g.vendor_id for g in groups], ["vb", "va"])
        self.assertEqual([i.product.id for i in groups[0].items], ["b1", "b2"])
        self.assertEqual(groups[0].total, Decimal("4.00"))

        result = await self.checkout.checkout("addr")
        self.assertEqual(len(result.orders), 2)
        self.assertEqual(result.orders[0].line_count, 2)

    async def test_line_items_use_price_captured_in_cart(self):
        self.cart.add(make_product("tomato", "4.50", "v1", unit="kg"), "1.5")
        await self.checkout.checkout("addr")

        (order_id,) = self.backend.orders
        line = self.backend.lines[order_id]["tomato"]
        self.assertEqual(line.price_at_purchase, Decimal("4.50"))
        self.assertEqual(line.quantity, Decimal("1.5"))
        self.assertEqual(self.backend.orders[order_id]["total_price"], Decimal("6.75"))

    # ---------- validation ----------

    async def test_validation_happens_before_any_backend_call(self):
        with self.assertRaises(CheckoutValidationError):
            await self.checkout.checkout("addr")

        self.fill_two_vendor_cart()
        with self.assertRaises(CheckoutValidationError):
            await self.checkout.checkout("   ")

        self.resolver.current = ResolvedIdentity()
        with self.assertRaises(CheckoutValidationError):
            await self.checkout.checkout("addr")

        self.assertEqual(self.backend.calls, [])
        self.assertEqual(len(self.cart), 2)
        self.assertEqual(self.checkout.last_attempt.status, CheckoutStatus.FAILED)
        self.assertFalse(os.path.exists(self.intent_path))

    async def test_item_without_vendor_rejects_checkout(self):
        self.cart.add(make_product("apple", "10.00", "v1"), 1)
        self.cart.add(make_product("mystery", "1.00", None), 1)

        with self.assertRaises(MissingVendorError) as ctx:
            await self.checkout.checkout("addr")

        self.assertEqual(ctx.exception.product_ids, ["mystery"])
        self.assertEqual(self.backend.calls, [])
        self.assertEqual(len(self.cart), 2)

    async def test_checkout_on_fallback_identity_is_allowed(self):
        identity = signed_in()
        self.resolver.current = ResolvedIdentity(
            state=ResolutionState.DEGRADED, session=identity.session
        )
        self.fill_two_vendor_cart()
        result = await self.checkout.checkout("addr")
        self.assertEqual(len(result.orders), 2)

    async def test_items_added_during_checkout_stay_in_cart(self):
        self.fill_two_vendor_cart()
        apple = make_product("apple", "10.00", "v1")

        def add_more(fields):
            if fields["vendor_id"] == "v1":
                self.cart.add(apple, 2)

        self.backend.on_create_order = add_more
        await self.checkout.checkout("addr")

        self.assertEqual(len(self.cart), 1)
        self.assertEqual(self.cart.get("apple").quantity, Decimal(2))
        self.assertFalse(os.path.exists(self.intent_path))

    # ---------- partial failure & resume ----------

    async def test_failure_keeps_committed_orders_and_cart(self):
        self.fill_two_vendor_cart()
        self.backend.fail_vendor = "v2"

        with self.assertRaises(CheckoutError) as ctx:
            await self.checkout.checkout("1 Main St")

        attempt = ctx.exception.attempt
        self.assertEqual(attempt.status, CheckoutStatus.FAILED)
        self.assertEqual(attempt.committed_vendor_ids, ["v1"])
        self.assertEqual(attempt.failed_vendor_id, "v2")
        self.assertIsInstance(ctx.exception.__cause__, BackendError)
        self.assertEqual(len(self.backend.orders), 1)
        # BackendError is not transient, so no retry
        self.assertEqual(len(self.backend.calls_for("v2")), 1)
        self.assertEqual(len(self.cart), 2)
        self.assertTrue(os.path.exists(self.intent_path))

    async def test_retry_after_failure_resumes_intent(self):
        self.fill_two_vendor_cart()
        self.backend.fail_vendor = "v2"
        with self.assertRaises(CheckoutError) as ctx:
            await self.checkout.checkout("1 Main St")
        first = ctx.exception.attempt

        self.backend.fail_vendor = None
        result = await self.checkout.checkout("1 Main St")

        attempt = self.checkout.last_attempt
        self.assertTrue(attempt.resumed)
        self.assertEqual(attempt.intent_key, first.intent_key)
        self.assertEqual(len(self.backend.calls_for("v1")), 1)
        self.assertEqual(
            [c[2] for c in self.backend.calls_for("v2")],
            [f"{first.intent_key}:v2"] * 2,
        )
        self.assertEqual(len(self.backend.orders), 2)
        self.assertEqual(result.orders[0].order_id, first.order_ids["v1"])
        self.assertTrue(self.cart.is_empty)
        self.assertFalse(os.path.exists(self.intent_path))

    async def test_line_item_failure_reuses_the_created_order(self):
        self.fill_two_vendor_cart()
        self.backend.fail_lines_vendor = "v2"

        with self.assertRaises(CheckoutError) as ctx:
            await self.checkout.checkout("1 Main St")

        attempt = ctx.exception.attempt
        self.assertEqual(attempt.committed_vendor_ids, ["v1"])
        self.assertEqual(attempt.failed_vendor_id, "v2")
        self.assertEqual(len(self.cart), 2)
        intent = CheckoutIntentLog(self.intent_path).load()
        self.assertIn("v1", intent.committed)
        self.assertNotIn("v2", intent.committed)
        # the v2 order row exists, its lines do not
        v2_order = self.backend.by_key[f"{attempt.intent_key}:v2"]
        self.assertNotIn(v2_order, self.backend.lines)

        self.backend.fail_lines_vendor = None
        result = await self.checkout.checkout("1 Main St")

        self.assertEqual(result.orders[1].order_id, v2_order)
        self.assertEqual(len(self.backend.orders), 2)
        self.assertEqual(list(self.backend.lines[v2_order]), ["bread"])
        self.assertTrue(self.cart.is_empty)

    async def test_changed_cart_starts_a_new_intent(self):
        self.fill_two_vendor_cart()
        self.backend.fail_vendor = "v2"
        with self.assertRaises(CheckoutError) as ctx:
            await self.checkout.checkout("1 Main St")
        first_key = ctx.exception.attempt.intent_key

        self.backend.fail_vendor = None
        self.cart.add(make_product("bread", "7.50", "v2"), 1)
        await self.checkout.checkout("1 Main St")

        self.assertNotEqual(self.checkout.last_attempt.intent_key, first_key)
        self.assertFalse(self.checkout.last_attempt.resumed)

    # ---------- transient failures ----------

    async def test_transient_failure_is_retried(self):
        self.fill_two_vendor_cart()
        self.backend.fail_vendor = "v1"
        self.backend.fail_error = BackendUnavailableError
        self.backend.failures_left = 2

        result = await self.checkout.checkout("addr")

        self.assertEqual(len(result.orders), 2)
        self.assertEqual(len(self.backend.calls_for("v1")), 3)

    async def test_transient_failure_gives_up_after_attempts(self):
        self.fill_two_vendor_cart()
        self.backend.fail_vendor = "v1"
        self.backend.fail_error = BackendUnavailableError

        with self.assertRaises(CheckoutError) as ctx:
            await self.checkout.checkout("addr")

        self.assertEqual(len(self.backend.calls_for("v1")), 3)
        self.assertEqual(ctx.exception.attempt.committed_vendor_ids, [])
        self.assertEqual(self.backend.orders, {})

    async def test_slow_call_times_out(self):
        self.fill_two_vendor_cart()
        self.backend.delay = 0.2
        self.checkout.call_timeout = 0.05
        self.checkout.retry_attempts = 1

        with self.assertRaises(CheckoutError) as ctx:
            await self.checkout.checkout("addr")

        self.assertIsInstance(ctx.exception.__cause__, asyncio.TimeoutError)
        self.assertEqual(ctx.exception.attempt.failed_vendor_id, "v1")
        self.assertEqual(len(self.cart), 2)


if __name__ == "__main__":
    unittest.main()
