from typing import Optional

from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import LoadingIndicator

from core.errors import BackendError, ProfileRepairError
from core.session import ResolutionState, ResolvedIdentity
from utils.logger import get_logger
from utils.messages import (
    IdentityChangedMessage,
    QuitRequestedMessage,
    UserLogoutMessage,
)
from utils.state import AppContext
from views.base_screen import BaseScreen
from views.scr_cart import CartScreen
from views.scr_login import LoginScreen
from views.scr_past_orders import PastOrdersScreen
from views.scr_prod_search import ProdSearchScreen

_logger = get_logger(__name__)


class MarketApp(App):
    BINDINGS = [
        Binding("ctrl+t", "switch_light", "Toggle Theme", show=True),
    ]

    MODES = {
        "prod_search": ProdSearchScreen,
        "cart": CartScreen,
        "past_orders": PastOrdersScreen,
    }

    MENU_MODES = {
        "prod_search": "Browse Products",
        "cart": "Cart",
        "past_orders": "My Orders",
    }

    CSS = """
    Sidebar {
        dock: left;
        width: 32;
        padding: 0 1;
        border-right: vkey $primary;
    }
    #label-degraded {
        color: $warning;
        padding: 1 0;
    }
    #div-dialog {
        width: 60;
        height: auto;
        padding: 1 2;
        border: thick $primary;
        background: $surface;
    }
    #dialog {
        height: auto;
        align-horizontal: right;
    }
    ModalScreen {
        align: center middle;
    }
    .no-items {
        border: dashed $secondary;
    }
    """

    ctx: AppContext

    def __init__(self, ctx: Optional[AppContext] = None):
        super().__init__()
        self.ctx = ctx or AppContext.build()
        self._unsubscribe = None

    def compose(self) -> ComposeResult:
        yield LoadingIndicator()

    async def on_mount(self) -> None:
        # resolver listeners are plain callables, route changes through the queue
        self._unsubscribe = self.ctx.resolver.subscribe(
            lambda identity: self.post_message(IdentityChangedMessage(identity))
        )
        self.main_flow(restore=True)

    def on_unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self.ctx.close()

    def action_switch_light(self):
        if self.theme == "textual-dark":
            self.theme = "solarized-light"
        else:
            self.theme = "textual-dark"
        self.notify(f"Theme changed to {self.theme}")

    @on(IdentityChangedMessage)
    async def handle_identity_changed(self, message: IdentityChangedMessage):
        identity: ResolvedIdentity = message.identity
        if isinstance(self.screen, BaseScreen):
            await self.screen.show_identity(identity)

        if identity.state == ResolutionState.SIGNED_OUT:
            self.notify(
                str(identity.error or "You have been signed out."), severity="error"
            )
            self.main_flow()

    @on(UserLogoutMessage)
    @work
    async def handle_user_logout(self):
        await self.ctx.resolver.sign_out()
        self.notify("Logout successful.")
        self.main_flow()

    @on(QuitRequestedMessage)
    def handle_quit(self):
        self.exit()

    @work(exclusive=True, group="main-flow")
    async def main_flow(self, restore: bool = False):
        if isinstance(self.screen, LoginScreen):
            return

        if restore:
            try:
                await self.ctx.start()
            except ProfileRepairError as e:
                # the resolver already signed out
                _logger.error(f"Could not restore session: {e}")
            except BackendError as e:
                _logger.error(f"Could not restore session: {e}")
                self.notify(str(e), severity="error")

        if not self.ctx.resolver.current.is_authenticated:
            await self.push_screen_wait(LoginScreen())
        await self.switch_mode("prod_search")


def run() -> None:
    MarketApp().run()


if __name__ == "__main__":
    run()
