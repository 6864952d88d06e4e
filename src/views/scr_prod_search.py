from typing import Dict, List

from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable

import db.crud
from core.errors import BackendError
from db.models import Product
from utils.messages import CartChangedMessage
from utils.pure import format_money
from views.base_screen import BaseScreen
from views.modal_prod_detail import ProdDetailModal


class ProdSearchScreen(BaseScreen):
    """
    Catalog of active products, for buyers
    """

    # enter is only here to be displayed in footer
    BINDINGS = [
        Binding("enter", "noop", "View Product", show=True, key_display="⏎"),
        Binding("ctrl+r", "reload", "Reload", show=True),
    ]

    def __init__(self):
        super().__init__()
        self._products: List[Product] = []
        self._stores: Dict[str, str] = {}

    def compose(self) -> ComposeResult:
        yield from super().compose()
        yield DataTable(id="table-search-result")

    def on_mount(self):
        table = self.query_one(DataTable)
        table.cursor_type = "row"
        table.zebra_stripes = True
        table.add_columns("Product", "Category", "Store", "Price", "Per", "Stock")

        table.focus()
        self.load_products()

    def action_noop(self) -> None:
        pass

    def action_reload(self) -> None:
        self.load_products()

    @work(exclusive=True)
    async def load_products(self) -> None:
        try:
            self._products = await db.crud.list_products()
            self._stores = await db.crud.get_store_names(
                p.vendor_id for p in self._products if p.vendor_id
            )
        except BackendError as e:
            self.notify(f"Could not load products: {e}", severity="error")
            return

        table = self.query_one(DataTable)
        table.clear()
        for p in self._products:
            table.add_row(
                p.name,
                p.category,
                self._stores.get(p.vendor_id, "-"),
                format_money(p.unit_price),
                p.unit_type,
                str(p.stock_quantity),
                key=p.id,
            )

    @on(DataTable.RowSelected, "#table-search-result")
    @work()
    async def handle_row_selected(self, event: DataTable.RowSelected) -> None:
        product = next((p for p in self._products if p.id == event.row_key.value), None)
        if product is None:
            return
        if await self.app.push_screen_wait(
            ProdDetailModal(product, self._stores.get(product.vendor_id, ""))
        ):
            self.app.post_message(CartChangedMessage())
