"""
Multi-vendor checkout.

One cart becomes one order per vendor. Vendor groups are committed strictly
one after the other; a failure stops the loop and leaves the orders of the
groups before it in place. Each logical checkout carries an intent key that is
persisted locally before the first backend call, and every order is created
with the key "<intent>:<vendor>", so retrying the same cart resumes the intent:
groups that already have an order are skipped, the rest are attempted again.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.cart import CartStore
from core.errors import (
    BackendError,
    BackendUnavailableError,
    CheckoutError,
    CheckoutValidationError,
    MissingVendorError,
)
from core.session import SessionResolver
from db.models import (
    CartItem,
    CheckoutIntent,
    OrderLineItem,
    OrderStatus,
    to_money,
)
from utils.config import get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)


class OrderBackend(Protocol):
    async def create_order(
        self, fields: Dict, idempotency_key: Optional[str] = None
    ) -> str: ...

    async def create_line_items(
        self, order_id: str, items: List[OrderLineItem]
    ) -> None: ...


class CheckoutStatus(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class VendorGroup:
    vendor_id: str
    items: List[CartItem] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return to_money(sum((item.subtotal for item in self.items), Decimal(0)))


@dataclass
class CheckoutAttempt:
    """
    Bookkeeping of one checkout call.

    committed_vendor_ids lists the vendors whose order (with its line items)
    exists, in commit order, whether committed now or by an earlier attempt of
    the same intent.
    """

    status: CheckoutStatus = CheckoutStatus.IDLE
    intent_key: Optional[str] = None
    resumed: bool = False
    group_index: int = -1
    vendor_ids: List[str] = field(default_factory=list)
    committed_vendor_ids: List[str] = field(default_factory=list)
    order_ids: Dict[str, str] = field(default_factory=dict)
    failed_vendor_id: Optional[str] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class CommittedOrder:
    vendor_id: str
    order_id: str
    total_price: Decimal
    line_count: int


@dataclass(frozen=True)
class CheckoutResult:
    intent_key: str
    orders: List[CommittedOrder]

    @property
    def total(self) -> Decimal:
        return to_money(sum((o.total_price for o in self.orders), Decimal(0)))


def partition_by_vendor(items: Sequence[CartItem]) -> List[VendorGroup]:
    """
    Group items by vendor, groups in order of first occurrence.

    Raises MissingVendorError if any item has no vendor reference.
    """
    missing = [item.product.id for item in items if not item.product.vendor_id]
    if missing:
        raise MissingVendorError(missing)

    groups: Dict[str, VendorGroup] = {}
    for item in items:
        vendor_id = item.product.vendor_id
        if vendor_id not in groups:
            groups[vendor_id] = VendorGroup(vendor_id)
        groups[vendor_id].items.append(item)
    return list(groups.values())


def cart_fingerprint(items: Sequence[CartItem]) -> str:
    payload = [
        [i.product.id, i.product.vendor_id, str(i.product.unit_price), str(i.quantity)]
        for i in items
    ]
    return hashlib.sha256(json.dumps(payload).encode()).hexdigest()


class CheckoutIntentLog:
    """Pending checkout intent, kept as a json file until the checkout succeeds."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[CheckoutIntent]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return CheckoutIntent(
                key=data["key"],
                customer_id=data["customer_id"],
                shipping_address=data["shipping_address"],
                fingerprint=data["fingerprint"],
                committed=dict(data.get("committed", {})),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            _logger.warning(f"Ignoring unreadable checkout intent {self.path}: {e}")
            return None

    def save(self, intent: CheckoutIntent) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "key": intent.key,
                    "customer_id": intent.customer_id,
                    "shipping_address": intent.shipping_address,
                    "fingerprint": intent.fingerprint,
                    "committed": intent.committed,
                },
                f,
                indent=2,
            )
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)


class CheckoutOrchestrator:
    def __init__(
        self,
        persistence: OrderBackend,
        cart: CartStore,
        resolver: SessionResolver,
        intent_log: Optional[CheckoutIntentLog] = None,
        call_timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_wait_max: Optional[float] = None,
    ):
        settings = get_settings()
        self._persistence = persistence
        self._cart = cart
        self._resolver = resolver
        self._intent_log = intent_log
        self.call_timeout = (
            settings.call_timeout if call_timeout is None else call_timeout
        )
        self.retry_attempts = max(
            1, settings.retry_attempts if retry_attempts is None else retry_attempts
        )
        self.retry_wait_max = (
            settings.retry_wait_max if retry_wait_max is None else retry_wait_max
        )
        self.last_attempt = CheckoutAttempt()

    # ---------------------------
    # Validation & intent
    # ---------------------------

    def _invalid(
        self, attempt: CheckoutAttempt, error: CheckoutValidationError
    ) -> CheckoutValidationError:
        attempt.status = CheckoutStatus.FAILED
        attempt.error = error
        return error

    def _open_intent(
        self, customer_id: str, address: str, items: Sequence[CartItem]
    ) -> CheckoutIntent:
        fingerprint = cart_fingerprint(items)
        existing = self._intent_log.load() if self._intent_log else None
        if existing is not None:
            if (
                existing.customer_id == customer_id
                and existing.shipping_address == address
                and existing.fingerprint == fingerprint
            ):
                _logger.info(
                    f"Resuming checkout {existing.key}, "
                    f"{len(existing.committed)} vendor order(s) already placed"
                )
                return existing
            _logger.warning(
                f"Abandoning checkout {existing.key} for a different cart; "
                f"orders already placed for: {sorted(existing.committed) or 'none'}"
            )

        intent = CheckoutIntent(
            key=uuid.uuid4().hex,
            customer_id=customer_id,
            shipping_address=address,
            fingerprint=fingerprint,
        )
        if self._intent_log is not None:
            try:
                self._intent_log.save(intent)
            except OSError as e:
                _logger.error(f"Could not persist checkout intent {intent.key}: {e}")
        return intent

    def _record_commit(self, intent: CheckoutIntent, vendor_id: str, order_id: str):
        intent.committed[vendor_id] = order_id
        if self._intent_log is None:
            return
        try:
            self._intent_log.save(intent)
        except OSError as e:
            # the order exists either way; only resuming this intent is affected
            _logger.error(f"Could not record order {order_id} in the intent log: {e}")

    # ---------------------------
    # Backend calls
    # ---------------------------

    async def _call(self, fn, *args):
        """Run one backend call with a timeout, retrying transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=self.retry_wait_max),
            retry=retry_if_exception_type(
                (BackendUnavailableError, asyncio.TimeoutError)
            ),
            before_sleep=before_sleep_log(_logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await asyncio.wait_for(fn(*args), timeout=self.call_timeout)

    async def _commit_group(
        self, group: VendorGroup, customer_id: str, address: str, intent_key: str
    ) -> str:
        order_id = await self._call(
            self._persistence.create_order,
            {
                "customer_id": customer_id,
                "vendor_id": group.vendor_id,
                "total_price": group.total,
                "status": OrderStatus.PENDING,
                "shipping_address": address,
            },
            f"{intent_key}:{group.vendor_id}",
        )
        # price_at_purchase is the price captured in the cart, not the live one
        line_items = [
            OrderLineItem(
                order_id=order_id,
                product_id=item.product.id,
                quantity=item.quantity,
                price_at_purchase=item.product.unit_price,
            )
            for item in group.items
        ]
        await self._call(self._persistence.create_line_items, order_id, line_items)
        return order_id

    # ---------------------------
    # Checkout
    # ---------------------------

    async def checkout(self, shipping_address: str) -> CheckoutResult:
        """
        Place one order per vendor in the cart.

        Raises CheckoutValidationError (nothing was sent to the backend) or
        CheckoutError (see error.attempt for the vendors already committed).
        The cart is cleared only when every vendor order was placed.
        """
        attempt = CheckoutAttempt(status=CheckoutStatus.VALIDATING)
        self.last_attempt = attempt

        items = self._cart.items
        address = (shipping_address or "").strip()
        identity = self._resolver.current

        if not items:
            raise self._invalid(attempt, CheckoutValidationError("Cart is empty."))
        if not address:
            raise self._invalid(
                attempt, CheckoutValidationError("Shipping address is required.")
            )
        if not identity.is_authenticated or identity.session is None:
            raise self._invalid(
                attempt, CheckoutValidationError("Sign in to place orders.")
            )
        try:
            groups = partition_by_vendor(items)
        except MissingVendorError as e:
            _logger.warning(f"Checkout rejected, items without vendor: {e.product_ids}")
            raise self._invalid(attempt, e)

        customer_id = identity.session.identity_id
        intent = self._open_intent(customer_id, address, items)
        attempt.intent_key = intent.key
        attempt.resumed = bool(intent.committed)
        attempt.vendor_ids = [g.vendor_id for g in groups]
        _logger.info(
            f"Checkout {intent.key}: {len(items)} item(s) across "
            f"{len(groups)} vendor(s)"
        )

        orders: List[CommittedOrder] = []
        for index, group in enumerate(groups):
            attempt.status = CheckoutStatus.COMMITTING
            attempt.group_index = index

            order_id = intent.committed.get(group.vendor_id)
            if order_id is not None:
                _logger.info(f"Vendor {group.vendor_id} already has order {order_id}")
            else:
                try:
                    order_id = await self._commit_group(
                        group, customer_id, address, intent.key
                    )
                except (BackendError, asyncio.TimeoutError) as e:
                    attempt.status = CheckoutStatus.FAILED
                    attempt.failed_vendor_id = group.vendor_id
                    attempt.error = e
                    _logger.error(
                        f"Checkout {intent.key} stopped at vendor {group.vendor_id} "
                        f"({index + 1}/{len(groups)}): {e!r}; orders placed for "
                        f"{attempt.committed_vendor_ids or 'no vendor'}"
                    )
                    raise CheckoutError(
                        "Your order could not be completed. Please try again.",
                        attempt,
                    ) from e
                self._record_commit(intent, group.vendor_id, order_id)

            attempt.committed_vendor_ids.append(group.vendor_id)
            attempt.order_ids[group.vendor_id] = order_id
            orders.append(
                CommittedOrder(
                    vendor_id=group.vendor_id,
                    order_id=order_id,
                    total_price=group.total,
                    line_count=len(group.items),
                )
            )

        attempt.status = CheckoutStatus.SUCCEEDED
        self._finish(items)
        _logger.info(f"Checkout {intent.key} placed {len(orders)} order(s)")
        return CheckoutResult(intent_key=intent.key, orders=orders)

    def _finish(self, items: Sequence[CartItem]) -> None:
        if self._cart.items == tuple(items):
            self._cart.clear()
        else:
            # cart changed while the orders were being placed; keep what was
            # added on top of the ordered quantities
            for item in items:
                current = self._cart.get(item.product.id)
                if current is not None:
                    self._cart.set_quantity(
                        item.product.id, current.quantity - item.quantity
                    )
        if self._intent_log is not None:
            self._intent_log.clear()
