from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from textual import events, on
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.reactive import reactive
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, MarkdownViewer

from core.errors import InvalidQuantityError
from db.models import CartItem, Product, ProductSnapshot
from utils.messages import CartChangedMessage
from utils.pure import format_money, format_quantity, generate_markdown_table


class ProdDetailModal(ModalScreen[bool]):
    """
    Product detail plus quantity entry.
    Returns True if the cart changed, False if not.
    """

    CSS = """
    #input-order-qty {
        width: 12;
    }
    #btn-sub-qty {
        min-width: 4
    }
    #btn-add-qty {
        min-width: 4
    }
    """

    order_qty = reactive(Decimal(1))

    def __init__(
        self, product: Union[Product, ProductSnapshot], store_name: str = ""
    ) -> None:
        super().__init__()

        self._prod = product
        self._store_name = store_name
        self._existing_cart_item: Optional[CartItem] = None

    def compose(self) -> ComposeResult:
        with Horizontal(id="hort-prod-detail"):
            yield MarkdownViewer("", show_table_of_contents=False)
            with Vertical():
                yield Label(f"Quantity ({self._prod.unit_type})")
                with Horizontal():
                    yield Button("-", id="btn-sub-qty")
                    yield Input(value="1", id="input-order-qty")
                    yield Button("+", id="btn-add-qty")
                with Horizontal():
                    yield Button("Go Back", id="btn-quit")
                    yield Button("Add to Cart", id="btn-addcart", variant="primary")

    async def on_mount(self):
        price = f"{format_money(self._prod.unit_price)} / {self._prod.unit_type}"
        table_rows = [["Name", self._prod.name], ["Price", price]]
        if isinstance(self._prod, Product):
            table_rows.append(["Category", self._prod.category])
            table_rows.append(["In stock", self._prod.stock_quantity])
        if self._store_name:
            table_rows.append(["Store", self._store_name])
        md_table_str = generate_markdown_table(
            ["Attribute", "Value"], table_rows, ["l", "l"]
        )
        header_md = f"### {self._prod.name}\n\n"
        await self.query_one(MarkdownViewer).document.update(header_md + md_table_str)

        if isinstance(self._prod, Product) and self._prod.stock_quantity < 1:
            order_btn = self.query_one("#btn-addcart", Button)
            order_btn.label = "Out of Stock"
            order_btn.disabled = True
            order_btn.variant = "warning"

        self._existing_cart_item = self.app.ctx.cart.get(self._prod.id)
        if self._existing_cart_item:
            self.order_qty = self._existing_cart_item.quantity
            self.query_one("#btn-addcart", Button).label = "Update Cart"

        self.query_one("#input-order-qty").focus()

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.dismiss(False)

    def _parse_qty(self) -> Optional[Decimal]:
        text = self.query_one("#input-order-qty", Input).value.strip()
        try:
            return Decimal(text)
        except InvalidOperation:
            return None

    async def on_input_changed(self, message: Input.Changed) -> None:
        if message.input.id != "input-order-qty" or self.focused != message.input:
            return
        qty = self._parse_qty()
        if qty is not None and qty.is_finite() and qty > 0:
            message.input.remove_class("-invalid")
            self.order_qty = qty
        else:
            message.input.add_class("-invalid")

    async def watch_order_qty(self, qty: Decimal):
        self.query_one("#btn-sub-qty").disabled = qty <= 1

        input_order_qty = self.query_one("#input-order-qty", Input)
        if self._parse_qty() != qty:
            input_order_qty.value = format_quantity(qty)

    @on(Button.Pressed, "#btn-add-qty")
    def handle_add_qty(self):
        self.order_qty += 1

    @on(Button.Pressed, "#btn-sub-qty")
    def handle_sub_qty(self):
        if self.order_qty > 1:
            self.order_qty -= 1

    @on(Button.Pressed, "#btn-quit")
    def handle_quit(self):
        self.dismiss(False)

    @on(Input.Submitted, "#input-order-qty")
    @on(Button.Pressed, "#btn-addcart")
    def handle_addcart(self):
        if self.query_one("#btn-addcart", Button).disabled:
            return
        cart = self.app.ctx.cart
        qty = self._parse_qty()
        try:
            if qty is None:
                raise InvalidQuantityError("Enter a valid quantity.")
            if not self._existing_cart_item:
                cart.add(self._prod, qty)
                self.app.notify("Item added to cart.")
            else:
                cart.set_quantity(self._prod.id, qty)
                self.app.notify("Updated cart item quantity.")
        except InvalidQuantityError as e:
            self.query_one("#input-order-qty", Input).add_class("-invalid")
            self.notify(str(e), severity="error")
            return
        except OSError as e:
            self.notify(f"Could not save the cart: {e}", severity="error")
            return

        self.app.post_message(CartChangedMessage())
        self.dismiss(True)
