"""
Cart aggregation.

Single-writer, network-free. Every mutation is written through to local
storage before it becomes visible, so the stored cart and the in-memory cart
never diverge.
"""

from __future__ import annotations

import json
import os
import tempfile
from decimal import Decimal, InvalidOperation
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from core.errors import InvalidQuantityError
from db.models import CartItem, Product, ProductSnapshot, to_money
from utils.logger import get_logger

_logger = get_logger(__name__)

_STORAGE_VERSION = 1


def _to_quantity(value) -> Decimal:
    if isinstance(value, bool):
        raise InvalidQuantityError(f"Invalid quantity: {value!r}")
    try:
        qty = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidQuantityError(f"Invalid quantity: {value!r}") from None
    if not qty.is_finite():
        raise InvalidQuantityError(f"Invalid quantity: {value!r}")
    return qty


def _check_granularity(product: ProductSnapshot, qty: Decimal) -> None:
    if not product.allows_fractions and qty != qty.to_integral_value():
        raise InvalidQuantityError(
            f"{product.name} is sold per {product.unit_type}; use a whole number."
        )


class CartStorage:
    """Durable local copy of the cart, kept as a json file."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> List[CartItem]:
        """Stored items; an unreadable file yields an empty cart."""
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return [
                CartItem(
                    product=ProductSnapshot(
                        id=entry["product"]["id"],
                        name=entry["product"]["name"],
                        vendor_id=entry["product"].get("vendor_id"),
                        unit_price=Decimal(entry["product"]["unit_price"]),
                        unit_type=entry["product"].get("unit_type", "unit"),
                    ),
                    quantity=Decimal(entry["quantity"]),
                )
                for entry in data["items"]
            ]
        except (OSError, ValueError, KeyError, TypeError, InvalidOperation) as e:
            _logger.warning(f"Ignoring unreadable cart file {self.path}: {e}")
            return []

    def save(self, items: Sequence[CartItem]) -> None:
        payload = {
            "version": _STORAGE_VERSION,
            "items": [
                {
                    "product": {
                        "id": item.product.id,
                        "name": item.product.name,
                        "vendor_id": item.product.vendor_id,
                        "unit_price": str(item.product.unit_price),
                        "unit_type": item.product.unit_type,
                    },
                    "quantity": str(item.quantity),
                }
                for item in items
            ],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


class CartStore:
    """
    Ordered cart with at most one entry per product.

    item_count and total are computed from the entries on every read.
    """

    def __init__(self, storage: Optional[CartStorage] = None):
        self._storage = storage
        restored = storage.load() if storage is not None else []
        self._items: Tuple[CartItem, ...] = self._merge_duplicates(restored)
        if restored:
            _logger.info(f"Restored cart with {len(self._items)} item(s)")

    @staticmethod
    def _merge_duplicates(items: Sequence[CartItem]) -> Tuple[CartItem, ...]:
        merged: dict = {}
        for item in items:
            if item.quantity <= 0:
                continue
            if item.product.id in merged:
                prev = merged[item.product.id]
                merged[item.product.id] = CartItem(
                    prev.product, prev.quantity + item.quantity
                )
            else:
                merged[item.product.id] = item
        return tuple(merged.values())

    def _commit(self, items: Sequence[CartItem]) -> None:
        items = tuple(items)
        if self._storage is not None:
            self._storage.save(items)
        self._items = items

    # ---------------------------
    # Reads
    # ---------------------------

    @property
    def items(self) -> Tuple[CartItem, ...]:
        return self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[CartItem]:
        return iter(self._items)

    def __contains__(self, product_id: str) -> bool:
        return self.get(product_id) is not None

    def get(self, product_id: str) -> Optional[CartItem]:
        for item in self._items:
            if item.product.id == product_id:
                return item
        return None

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def item_count(self) -> Decimal:
        return sum((item.quantity for item in self._items), Decimal(0))

    @property
    def total(self) -> Decimal:
        return to_money(sum((item.subtotal for item in self._items), Decimal(0)))

    # ---------------------------
    # Mutations
    # ---------------------------

    def add(self, product: Union[Product, ProductSnapshot], qty=1) -> CartItem:
        """Add qty of product, summing with an existing entry for the same product."""
        snapshot = product.snapshot() if isinstance(product, Product) else product
        qty = _to_quantity(qty)
        if qty <= 0:
            raise InvalidQuantityError("Quantity must be positive.")
        _check_granularity(snapshot, qty)

        items = list(self._items)
        for i, item in enumerate(items):
            if item.product.id == snapshot.id:
                items[i] = CartItem(item.product, item.quantity + qty)
                self._commit(items)
                return items[i]

        added = CartItem(snapshot, qty)
        items.append(added)
        self._commit(items)
        return added

    def remove(self, product_id: str) -> None:
        items = [item for item in self._items if item.product.id != product_id]
        if len(items) != len(self._items):
            self._commit(items)

    def set_quantity(self, product_id: str, qty) -> None:
        """Replace the quantity of an entry; qty <= 0 removes it."""
        qty = _to_quantity(qty)
        if qty <= 0:
            self.remove(product_id)
            return
        items = list(self._items)
        for i, item in enumerate(items):
            if item.product.id == product_id:
                _check_granularity(item.product, qty)
                items[i] = CartItem(item.product, qty)
                self._commit(items)
                return

    def clear(self) -> None:
        self._commit(())
