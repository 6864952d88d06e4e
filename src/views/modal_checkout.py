from typing import Dict

from textual import events, on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, MarkdownViewer

from core.checkout import partition_by_vendor
from core.errors import BackendError, CheckoutError, CheckoutValidationError
from db.crud import get_store_names
from utils.messages import NewOrderMessage
from utils.pure import format_money, format_quantity, generate_markdown_table
from views.modal_dialog import DialogModal, SimpleDialogModal


class CheckoutModal(ModalScreen[bool]):
    """
    Order summary split per store, plus the shipping address.
    Returns True once every store's order is placed.
    """

    def __init__(self):
        super().__init__()
        self._stores: Dict[str, str] = {}

    def compose(self) -> ComposeResult:
        with Vertical():
            yield MarkdownViewer("", show_table_of_contents=False)
            yield Label("Shipping Address")
            yield Input(
                placeholder="123 Main St, Anytown, ST 00000",
                id="input-address-line",
            )
            with Horizontal():
                yield Button("Go Back", id="btn-quit")
                yield Button("Place Order", id="btn-submit", variant="primary")

    async def on_mount(self):
        await self.query_one(MarkdownViewer).document.update(await self._summary())
        self.query_one("#input-address-line").focus()

    def _store(self, vendor_id: str) -> str:
        return self._stores.get(vendor_id, vendor_id)

    async def _summary(self) -> str:
        cart = self.app.ctx.cart
        try:
            groups = partition_by_vendor(cart.items)
        except CheckoutValidationError as e:
            return f"### Order Summary\n\n{e}"

        try:
            self._stores = await get_store_names(g.vendor_id for g in groups)
        except BackendError:
            self._stores = {}

        md = "### Order Summary\n\n"
        if len(groups) > 1:
            md += f"Your cart will be placed as {len(groups)} separate orders.\n\n"
        for group in groups:
            rows = [
                [
                    item.product.name,
                    item.product.unit_price,
                    f"{format_quantity(item.quantity)} {item.product.unit_type}",
                    item.subtotal,
                ]
                for item in group.items
            ]
            md += f"#### {self._store(group.vendor_id)}\n\n"
            md += generate_markdown_table(
                ["Product", "Unit Price", "Quantity", "Subtotal"],
                rows,
                ["l", "r", "c", "r"],
            )
            md += f"\n\n**Order total:** {format_money(group.total)}\n\n"
        md += f"**Total:** {format_money(cart.total)}"
        return md

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.dismiss(False)

    @on(Input.Submitted, "#input-address-line")
    @on(Button.Pressed, "#btn-submit")
    @work(exclusive=True)
    async def handle_submit(self):
        input_address = self.query_one("#input-address-line", Input)
        address_line = input_address.value.strip()
        if not address_line:
            input_address.focus()
            input_address.add_class("-invalid")
            self.notify("Address line is required.", severity="error")
            return

        if not await self.app.push_screen_wait(
            DialogModal(
                "Place order? This cannot be undone.",
                primary_text="Yes",
                secondary_text="No",
                tone="positive",
            )
        ):
            return

        submit = self.query_one("#btn-submit", Button)
        submit.disabled = True
        try:
            result = await self.app.ctx.checkout.checkout(address_line)
        except CheckoutValidationError as e:
            self.notify(str(e), severity="error")
            return
        except CheckoutError as e:
            placed = [self._store(v) for v in e.attempt.committed_vendor_ids]
            caption = str(e)
            if placed:
                caption += (
                    f"\n\nOrders already placed with: {', '.join(placed)}. "
                    "Placing the order again will not duplicate them."
                )
            await self.app.push_screen_wait(SimpleDialogModal(caption, tone="error"))
            return
        finally:
            submit.disabled = False

        self.app.post_message(
            NewOrderMessage([order.order_id for order in result.orders])
        )
        self.notify(
            f"{len(result.orders)} order(s) placed, total {format_money(result.total)}."
        )
        self.dismiss(True)

    @on(Button.Pressed, "#btn-quit")
    def handle_quit(self):
        self.dismiss(False)
