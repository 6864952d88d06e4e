# src/db/crud.py
# persistence backend: the module itself is handed to the core as the backend
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from db import models
from db.database import connect
from utils.logger import get_logger

_logger = get_logger(__name__)


def _row_to_profile(row) -> models.Profile:
    return models.Profile(
        identity_id=row["id"],
        display_name=row["display_name"],
        is_buyer=bool(row["is_buyer"]),
        is_seller=bool(row["is_seller"]),
        is_supplier=bool(row["is_supplier"]),
    )


def _row_to_product(row) -> models.Product:
    return models.Product(
        id=row["id"],
        vendor_id=row["vendor_id"],
        name=row["name"],
        category=row["category"],
        unit_price=Decimal(row["unit_price"]),
        unit_type=row["unit_type"],
        stock_quantity=int(row["stock_quantity"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_order(row) -> models.Order:
    return models.Order(
        id=row["id"],
        customer_id=row["customer_id"],
        vendor_id=row["vendor_id"],
        total_price=Decimal(row["total_price"]),
        status=models.OrderStatus(row["status"]),
        shipping_address=row["shipping_address"],
        idempotency_key=row["idempotency_key"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


# ---------------------------
# Profiles
# ---------------------------


async def find_profile(identity_id: str) -> Optional[models.Profile]:
    """Point read of the profile row for an identity; None if absent."""
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT id, display_name, is_buyer, is_seller, is_supplier "
            "FROM profiles WHERE id = ?;",
            (identity_id,),
        )
        row = await cur.fetchone()
        await cur.close()
    if not row:
        return None
    return _row_to_profile(row)


async def insert_profile(profile: models.Profile) -> None:
    """Insert a profile row. Fails if the identity is unknown or already has one."""
    async with connect() as conn:
        await conn.execute(
            "INSERT INTO profiles(id, display_name, is_buyer, is_seller, is_supplier) "
            "VALUES (?, ?, ?, ?, ?);",
            (
                profile.identity_id,
                profile.display_name,
                int(profile.is_buyer),
                int(profile.is_seller),
                int(profile.is_supplier),
            ),
        )
        await conn.commit()


async def update_profile_roles(
    identity_id: str,
    is_buyer: Optional[bool] = None,
    is_seller: Optional[bool] = None,
    is_supplier: Optional[bool] = None,
) -> bool:
    """
    Update only the provided role flags. Return True if a row was updated.
    """
    updates = {
        "is_buyer": is_buyer,
        "is_seller": is_seller,
        "is_supplier": is_supplier,
    }
    updates = {k: int(v) for k, v in updates.items() if v is not None}
    if not updates:
        return False
    assignments = ", ".join(f"{col} = ?" for col in updates)
    async with connect() as conn:
        res = await conn.execute(
            f"UPDATE profiles SET {assignments} WHERE id = ?;",
            (*updates.values(), identity_id),
        )
        await conn.commit()
        return res.rowcount > 0


async def insert_vendor_profile(identity_id: str, kind: str, store_name: str) -> None:
    """Create (or rename) the seller/supplier storefront of an identity."""
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO vendor_profiles(user_id, kind, store_name) VALUES (?, ?, ?)
            ON CONFLICT(user_id, kind) DO UPDATE SET store_name = excluded.store_name;
            """,
            (identity_id, kind, store_name),
        )
        await conn.commit()


async def get_store_names(vendor_ids: Iterable[str]) -> Dict[str, str]:
    """Map vendor id -> store name (falls back to the profile display name)."""
    ids = list(dict.fromkeys(vendor_ids))
    if not ids:
        return {}
    marks = ", ".join("?" * len(ids))
    async with connect() as conn:
        cur = await conn.execute(
            f"""
            SELECT p.id, COALESCE(MIN(v.store_name), p.display_name)
            FROM profiles p LEFT JOIN vendor_profiles v ON v.user_id = p.id
            WHERE p.id IN ({marks})
            GROUP BY p.id;
            """,
            tuple(ids),
        )
        rows = await cur.fetchall()
        await cur.close()
    return {row[0]: row[1] for row in rows}


# ---------------------------
# Products
# ---------------------------


async def list_products(active_only: bool = True) -> List[models.Product]:
    """Products ordered by category then name."""
    where = "WHERE is_active = 1" if active_only else ""
    async with connect() as conn:
        cur = await conn.execute(
            f"""
            SELECT id, vendor_id, name, category, unit_price, unit_type,
                   stock_quantity, is_active
            FROM products
            {where}
            ORDER BY category, name;
            """
        )
        rows = await cur.fetchall()
        await cur.close()
    return [_row_to_product(row) for row in rows]


async def get_product(product_id: str) -> Optional[models.Product]:
    """Fetch a product by id."""
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT id, vendor_id, name, category, unit_price, unit_type, "
            "stock_quantity, is_active FROM products WHERE id = ?;",
            (product_id,),
        )
        row = await cur.fetchone()
        await cur.close()
    if not row:
        return None
    return _row_to_product(row)


async def insert_product(product: models.Product) -> None:
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO products(id, vendor_id, name, category, unit_price,
                                 unit_type, stock_quantity, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                product.id,
                product.vendor_id,
                product.name,
                product.category,
                str(product.unit_price),
                product.unit_type,
                product.stock_quantity,
                int(product.is_active),
            ),
        )
        await conn.commit()


# ---------------------------
# Orders
# ---------------------------


async def create_order(fields: Dict, idempotency_key: Optional[str] = None) -> str:
    """
    Insert an order and return its id.

    fields: customer_id, vendor_id, total_price, status, shipping_address.
    With an idempotency key, a repeated call returns the id of the order the
    first call created instead of inserting a second one.
    """
    order_id = uuid.uuid4().hex
    status = models.OrderStatus(fields.get("status", models.OrderStatus.PENDING))
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO orders(id, customer_id, vendor_id, total_price, status,
                               shipping_address, idempotency_key, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(idempotency_key) DO NOTHING;
            """,
            (
                order_id,
                fields["customer_id"],
                fields["vendor_id"],
                str(models.to_money(fields["total_price"])),
                status.value,
                fields["shipping_address"],
                idempotency_key,
                datetime.now().isoformat(" "),
            ),
        )
        await conn.commit()
        if idempotency_key is None:
            return order_id
        cur = await conn.execute(
            "SELECT id FROM orders WHERE idempotency_key = ?;", (idempotency_key,)
        )
        row = await cur.fetchone()
        await cur.close()
    if row[0] != order_id:
        _logger.info(f"Order for key {idempotency_key} already exists: {row[0]}")
    return row[0]


async def create_line_items(
    order_id: str, items: List[models.OrderLineItem]
) -> None:
    """Insert the line items of an order. Items already stored for the order are kept."""
    async with connect() as conn:
        await conn.executemany(
            """
            INSERT INTO order_items(order_id, product_id, quantity, price_at_purchase)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(order_id, product_id) DO NOTHING;
            """,
            [
                (order_id, i.product_id, str(i.quantity), str(i.price_at_purchase))
                for i in items
            ],
        )
        await conn.commit()


async def list_orders(customer_id: str) -> List[models.Order]:
    """A customer's orders, newest first."""
    async with connect() as conn:
        cur = await conn.execute(
            """
            SELECT id, customer_id, vendor_id, total_price, status,
                   shipping_address, idempotency_key, created_at
            FROM orders
            WHERE customer_id = ?
            ORDER BY created_at DESC;
            """,
            (customer_id,),
        )
        rows = await cur.fetchall()
        await cur.close()
    return [_row_to_order(row) for row in rows]


async def get_order_detail(
    order_id: str,
) -> Tuple[Optional[models.Order], List[models.OrderLineItem]]:
    """
    Return (order, lines) for a specific order, (None, []) if it does not exist.
    """
    async with connect() as conn:
        cur = await conn.execute(
            """
            SELECT id, customer_id, vendor_id, total_price, status,
                   shipping_address, idempotency_key, created_at
            FROM orders WHERE id = ?;
            """,
            (order_id,),
        )
        order_row = await cur.fetchone()
        await cur.close()
        if not order_row:
            return None, []
        cur = await conn.execute(
            "SELECT order_id, product_id, quantity, price_at_purchase "
            "FROM order_items WHERE order_id = ? ORDER BY id;",
            (order_id,),
        )
        line_rows = await cur.fetchall()
        await cur.close()
    lines = [
        models.OrderLineItem(
            order_id=row[0],
            product_id=row[1],
            quantity=Decimal(row[2]),
            price_at_purchase=Decimal(row[3]),
        )
        for row in line_rows
    ]
    return _row_to_order(order_row), lines
