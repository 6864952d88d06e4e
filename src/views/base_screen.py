from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.screen import Screen
from textual.widgets import (
    Button,
    Footer,
    Header,
    Label,
    ListItem,
    ListView,
    Markdown,
    Select,
)

from core.errors import RoleActivationError
from core.session import ResolvedIdentity
from db.models import ROLE_PRECEDENCE, Role
from utils.messages import UserLogoutMessage
from utils.pure import generate_markdown_table
from views.modal_dialog import DialogModal, PromptModal, QuitDialogModal

ROLE_LABELS = {
    Role.BUYER: "Buyer",
    Role.SELLER: "Seller",
    Role.SUPPLIER: "Supplier",
}


class Sidebar(Container):
    init_mode = ""

    def compose(self) -> ComposeResult:
        yield Label("Account", id="label-info-1")
        yield Markdown("", id="md-userinfo")
        yield Label(
            "Offline profile: some actions are unavailable", id="label-degraded"
        )
        yield Label("Acting as", id="label-info-role")
        yield Select(
            [(ROLE_LABELS[r], r.value) for r in ROLE_PRECEDENCE],
            allow_blank=False,
            value=Role.BUYER.value,
            id="select-role",
        )
        yield Button("Log out", id="btn-logout", variant="error")
        yield Label("Menu", id="label-info-2")
        yield ListView(id="list-menu")

    async def on_mount(self):
        self.init_mode = self.app.current_mode

        list_menu: ListView = self.query_one("#list-menu")
        await list_menu.clear()
        await list_menu.extend(
            [
                ListItem(Label(v), id="list-menu-item-" + k)
                for k, v in self.app.MENU_MODES.items()
            ]
        )
        self.highlight_item(self.init_mode)

        await self.show_identity(self.app.ctx.resolver.current)

    async def show_identity(self, identity: ResolvedIdentity) -> None:
        """Render the account table and sync the role selector."""
        rows = []
        if identity.session is not None:
            rows.append(["Email", identity.session.email])
        if identity.profile is not None:
            roles = [
                ROLE_LABELS[r] for r in ROLE_PRECEDENCE if identity.profile.has_role(r)
            ]
            rows.append(["Name", identity.profile.display_name])
            rows.append(["Roles", ", ".join(roles) or "-"])
        if not rows:
            rows.append(["Status", "Signed out"])

        md_table_str = generate_markdown_table(None, rows, ["l", "l"])
        await self.query_one(Markdown).update(md_table_str)

        self.query_one("#label-degraded").display = identity.is_degraded

        select_role = self.query_one("#select-role", Select)
        if select_role.value != identity.active_role.value:
            select_role.value = identity.active_role.value

    async def on_list_view_selected(self, event: ListView.Selected):
        selected_mode = event.item.id.removeprefix("list-menu-item-")
        self.highlight_item(self.init_mode)
        if self.app.current_mode != selected_mode:
            await self.app.switch_mode(selected_mode)

    @on(Select.Changed, "#select-role")
    @work(exclusive=True)
    async def handle_role_change(self, event: Select.Changed):
        resolver = self.app.ctx.resolver
        if not resolver.current.is_authenticated:
            return
        role = Role(event.value)
        if role == resolver.active_role:
            return

        identity = resolver.set_active_role(role)
        if not identity.needs_onboarding:
            self.notify(f"Now acting as {ROLE_LABELS[role].lower()}.")
            return

        # the profile does not have this role yet
        fallback_role = identity.profile.default_role()
        if role == Role.BUYER:
            store_name = ""
            confirmed = await self.app.push_screen_wait(
                DialogModal(
                    "Enable buying on this account?",
                    primary_text="Enable",
                    secondary_text="Cancel",
                    tone="positive",
                )
            )
        else:
            store_name = await self.app.push_screen_wait(
                PromptModal(
                    f"Set up your {ROLE_LABELS[role].lower()} account",
                    placeholder="Store or company name",
                    primary_text="Create",
                )
            )
            confirmed = store_name is not None

        if not confirmed:
            resolver.set_active_role(fallback_role)
            return

        try:
            await resolver.activate_role(role, store_name)
        except RoleActivationError as e:
            self.notify(str(e), severity="error")
            resolver.set_active_role(fallback_role)
            return
        self.notify(f"{ROLE_LABELS[role]} account ready.")

    @on(Button.Pressed, "#btn-logout")
    @work()
    async def handle_logout(self):
        if not await self.app.push_screen_wait(
            DialogModal(
                "Are you sure you want to log out?",
                primary_text="Yes",
                secondary_text="No",
                tone="warning",
            )
        ):
            return

        self.post_message(UserLogoutMessage())

    def highlight_item(self, mode_str: str):
        list_menu = self.query_one("#list-menu")
        for item in list_menu.children:
            item.highlighted = item.id == "list-menu-item-" + mode_str


class BaseScreen(Screen):
    """
    Inherited by all screens, contains common elements like
    headers, footers, sidebar, and keybindings.
    """

    BINDINGS = [
        Binding("ctrl+z", "quit", "Quit App", show=True),
    ]

    def __init__(self):
        super().__init__()

        self.configure()

    def configure(
        self,
        header_sub_title: str = "",
        show_sidebar: bool = True,
    ) -> None:
        """
        configure behavior of the base screen
        """
        self.app.title = "Market"
        self.sub_title = header_sub_title
        for k, v in self.app.MODES.items():
            if isinstance(self, v) and k in self.app.MENU_MODES:
                self.sub_title = self.app.MENU_MODES[k]

        self._show_sidebar = show_sidebar

    def compose(self) -> ComposeResult:
        if self._show_sidebar:
            yield Sidebar()
        yield Header()
        yield Footer(show_command_palette=False)

    async def show_identity(self, identity: ResolvedIdentity) -> None:
        for sidebar in self.query(Sidebar):
            if sidebar.is_mounted:
                await sidebar.show_identity(identity)

    async def on_screen_resume(self) -> None:
        await self.show_identity(self.app.ctx.resolver.current)

    @work()
    async def action_quit(self):
        await self.app.push_screen_wait(QuitDialogModal())
