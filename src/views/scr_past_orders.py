import asyncio
from typing import Dict, List, Optional

from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import Button, DataTable, MarkdownViewer

import db.crud
from core.errors import BackendError
from db.models import Order, OrderLineItem, Product
from utils.messages import NewOrderMessage
from utils.pure import format_money, format_quantity, generate_markdown_table
from views.base_screen import BaseScreen


class PastOrdersScreen(BaseScreen):
    """
    The signed-in buyer's orders, newest first, one row per store order.

    Layout:
    - Markdown detail view at the top, showing the highlighted order.
    - Orders table below.
    """

    BINDINGS = [
        Binding("ctrl+r", "reload", "Reload", show=True),
    ]

    def __init__(self) -> None:
        super().__init__()
        self._orders: List[Order] = []
        self._stores: Dict[str, str] = {}

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical():
            yield MarkdownViewer(id="md-order-detail", show_table_of_contents=False)
            yield DataTable(id="table-orders")
        with Horizontal(id="hort-table-control"):
            yield Button("Refresh", id="btn-refresh")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.cursor_type = "row"
        table.zebra_stripes = True
        table.add_columns("Date", "Store", "Status", "Ship To", "Total")

    def action_reload(self) -> None:
        self._load_orders()

    @on(Button.Pressed, "#btn-refresh")
    @on(NewOrderMessage)
    def handle_refresh(self) -> None:
        self._load_orders()

    def on_screen_resume(self) -> None:
        self._load_orders()

    @on(DataTable.RowHighlighted, "#table-orders")
    def handle_row_highlight(self, event: DataTable.RowHighlighted) -> None:
        if event.row_key is not None and event.row_key.value:
            self._load_and_render_detail(event.row_key.value)

    @work(exclusive=True, group="orders")
    async def _load_orders(self) -> None:
        session = self.app.ctx.resolver.session
        if session is None:
            return
        try:
            orders = await db.crud.list_orders(session.identity_id)
            self._stores = await db.crud.get_store_names(o.vendor_id for o in orders)
        except BackendError as e:
            self.notify(f"Could not load orders: {e}", severity="error")
            return

        table = self.query_one(DataTable)
        table.clear()
        for o in orders:
            table.add_row(
                o.created_at.strftime("%Y-%m-%d %H:%M") if o.created_at else "-",
                self._stores.get(o.vendor_id, o.vendor_id),
                o.status.value,
                o.shipping_address,
                format_money(o.total_price),
                key=o.id,
            )
        self._orders = orders
        if not orders:
            self._render_detail(None, [], {})

    @work(exclusive=True, group="detail")
    async def _load_and_render_detail(self, order_id: str) -> None:
        try:
            order, lines = await db.crud.get_order_detail(order_id)
            prods = await asyncio.gather(
                *(db.crud.get_product(line.product_id) for line in lines)
            )
        except BackendError as e:
            self.notify(f"Could not load order: {e}", severity="error")
            return
        products = {p.id: p for p in prods if p is not None}
        self._render_detail(order, lines, products)

    def _render_detail(
        self,
        order: Optional[Order],
        lines: List[OrderLineItem],
        products: Dict[str, Product],
    ) -> None:
        viewer = self.query_one("#md-order-detail", MarkdownViewer)
        if not order:
            viewer.document.update("### No orders yet.")
            return

        header = (
            f"### Order from {self._stores.get(order.vendor_id, order.vendor_id)}\n"
            f"Status: {order.status.value}  \n"
            f"Ship To: {order.shipping_address}\n\n"
        )
        rows = []
        for line in lines:
            prod = products.get(line.product_id)
            rows.append(
                [
                    prod.name if prod else line.product_id,
                    format_quantity(line.quantity),
                    line.price_at_purchase,
                    line.price_at_purchase * line.quantity,
                ]
            )
        table = generate_markdown_table(
            ["Product", "Qty", "Unit Price", "Line Total"], rows, ["l", "r", "r", "r"]
        )
        footer = f"\n\n**Order Total:** {format_money(order.total_price)}"
        viewer.document.update(header + table + footer)
