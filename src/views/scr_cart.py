from textual import on, work
from textual.app import ComposeResult
from textual.containers import Container, Horizontal, HorizontalGroup, VerticalScroll
from textual.message import Message
from textual.widgets import Button, Label, Rule

from db.models import CartItem
from utils.messages import CartChangedMessage, NewOrderMessage
from utils.pure import format_money, format_quantity
from views.base_screen import BaseScreen
from views.modal_checkout import CheckoutModal
from views.modal_dialog import DialogModal
from views.modal_prod_detail import ProdDetailModal


class CartItemActionEditMessage(Message):
    bubble = True


class CartItemActionRemoveMessage(Message):
    bubble = True


class CartItemActionLabel(Label):
    def action_edit(self):
        self.post_message(CartItemActionEditMessage())

    def action_remove(self):
        self.post_message(CartItemActionRemoveMessage())


class CartItemWidget(HorizontalGroup):
    def __init__(self, item: CartItem):
        super().__init__()
        self.item = item

    def compose(self):
        product = self.item.product
        with Container(id="div-cart-item-group"):
            with Container(id="div-item"):
                yield Label(product.name, id="label-item-name")
                yield Label(
                    f"{format_quantity(self.item.quantity)} {product.unit_type}",
                    id="label-item-qty",
                )
                yield Label(
                    f"@ {format_money(product.unit_price)}", id="label-item-price"
                )
                yield Label(format_money(self.item.subtotal), id="label-item-subtotal")
            with Container(id="div-actions"):
                yield CartItemActionLabel(
                    "[@click=edit()]Edit[/]", id="link-item-edit"
                )
                yield CartItemActionLabel(
                    "[@click=remove()]Remove[/]", id="link-item-remove"
                )

    @on(CartItemActionEditMessage)
    @work()
    async def handle_edit_item(self):
        if await self.app.push_screen_wait(ProdDetailModal(self.item.product)):
            self.post_message(CartChangedMessage())

    @on(CartItemActionRemoveMessage)
    @work()
    async def handle_remove_item(self):
        remove_confirmed = await self.app.push_screen_wait(
            DialogModal(
                f"Remove {self.item.product.name} from cart?",
                primary_text="Yes",
                secondary_text="No",
                tone="warning",
            )
        )

        if remove_confirmed:
            self.app.ctx.cart.remove(self.item.product.id)
            self.post_message(CartChangedMessage())
            self.notify("Item removed from cart.", severity="information")


class CartScreen(BaseScreen):
    """
    Cart contents, edits, and the way into checkout
    """

    def compose(self) -> ComposeResult:
        yield from super().compose()
        yield VerticalScroll(id="vertscroll-content")
        yield Label("Total: $0.00", id="label-cart-total")
        yield Rule(line_style="dashed")
        with Horizontal(id="hort-buttons"):
            yield Button("Clear Cart", id="btn-clear-cart")
            yield Button("Checkout", id="btn-checkout", variant="primary")

    async def on_mount(self):
        self.handle_cart_change()

    def on_screen_resume(self) -> None:
        # the sidebar is refreshed by BaseScreen's handler
        self.handle_cart_change()

    @on(CartChangedMessage)
    @on(NewOrderMessage)
    @work(exclusive=True)  # must be exclusive, remounting twice duplicates entries
    async def handle_cart_change(self):
        cart = self.app.ctx.cart

        content = self.query_one("#vertscroll-content")
        if [c.item for c in content.children] != list(cart.items):
            await content.remove_children()
            await content.mount_all([CartItemWidget(item) for item in cart.items])

        content.set_class(cart.is_empty, "no-items")
        self.query_one("#label-cart-total", Label).update(
            f"Items: {format_quantity(cart.item_count)}   "
            f"Total: {format_money(cart.total)}"
        )

    @on(Button.Pressed, "#btn-clear-cart")
    @work()
    async def handle_clear_cart(self) -> None:
        if self.app.ctx.cart.is_empty:
            self.app.notify("Cart is empty.", severity="warning")
            return

        remove_confirmed = await self.app.push_screen_wait(
            DialogModal(
                "Do you really want to remove all items from cart?",
                primary_text="Yes",
                secondary_text="No",
                tone="error",
            )
        )
        if remove_confirmed:
            self.app.ctx.cart.clear()
            self.post_message(CartChangedMessage())

    @on(Button.Pressed, "#btn-checkout")
    @work()
    async def handle_checkout(self) -> None:
        if self.app.ctx.cart.is_empty:
            self.app.notify("Cart is empty.", severity="warning")
            return

        await self.app.push_screen_wait(CheckoutModal())
        self.post_message(CartChangedMessage())
