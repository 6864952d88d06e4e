from textual import on, work
from textual.app import ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.widgets import Button, Input, Label, Select, TabbedContent, TabPane

from core.errors import AuthError, BackendError, ProfileRepairError, RoleActivationError
from db.models import ROLE_PRECEDENCE, Role
from views.base_screen import ROLE_LABELS, BaseScreen
from views.modal_dialog import QuitDialogModal


class LoginScreen(BaseScreen):
    """
    Sign in or create an account. Dismissed once the session resolves.
    """

    def __init__(self):
        super().__init__()
        self.configure(header_sub_title="Sign in", show_sidebar=False)

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with TabbedContent(id="super-tab-loginscr"):
            with TabPane("Sign in", id="tab-login"):
                with Vertical(id="div-login"):
                    yield Label("Email")
                    yield Input(placeholder="user@example.com", id="input-login-email")
                    yield Label("Password")
                    yield Input(
                        placeholder="*********", password=True, id="input-login-pwd"
                    )
                    with Horizontal(id="div-login-btns"):
                        yield Button("Quit", id="btn-quit")
                        yield Button("Sign in", id="btn-login", variant="primary")

            with TabPane("Sign up", id="tab-signup"):
                with Vertical(id="div-reg"):
                    yield Label("Name")
                    yield Input(placeholder="Jane Doe", id="input-reg-name")
                    yield Label("Email")
                    yield Input(placeholder="user@example.com", id="input-reg-email")
                    yield Label("Password")
                    yield Input(
                        placeholder="*********", password=True, id="input-reg-pwd"
                    )
                    yield Label("I want to")
                    yield Select(
                        [
                            ("Buy products", Role.BUYER.value),
                            ("Sell products", Role.SELLER.value),
                            ("Supply wholesale", Role.SUPPLIER.value),
                        ],
                        allow_blank=False,
                        value=Role.BUYER.value,
                        id="select-reg-role",
                    )
                    yield Label("Store / company name", id="label-reg-store")
                    yield Input(placeholder="Green Farm", id="input-reg-store")
                    with Container(id="div-reg-btns"):
                        yield Button("Register", id="btn-reg", variant="primary")

    def on_mount(self):
        self.query_one("#input-login-email").focus()
        self._toggle_store_name(Role.BUYER)

    def _toggle_store_name(self, role: Role) -> None:
        needs_store = role != Role.BUYER
        self.query_one("#label-reg-store").display = needs_store
        self.query_one("#input-reg-store").display = needs_store

    @on(Select.Changed, "#select-reg-role")
    def handle_role_selected(self, event: Select.Changed) -> None:
        self._toggle_store_name(Role(event.value))

    @on(Input.Submitted, "#input-login-pwd")
    @on(Button.Pressed, "#btn-login")
    @work(exclusive=True)
    async def handle_login_submit(self) -> None:
        email = self.query_one("#input-login-email", Input).value.strip()
        pwd = self.query_one("#input-login-pwd", Input).value

        if not email or not pwd:
            self.notify("Email or password cannot be empty!", severity="error")
            return

        try:
            identity = await self.app.ctx.resolver.sign_in(email, pwd)
        except AuthError as e:
            self.notify(str(e), severity="error")
            input_login_pwd = self.query_one("#input-login-pwd", Input)
            input_login_pwd.value = ""
            input_login_pwd.focus()
            input_login_pwd.add_class("-invalid")
            return
        except (BackendError, ProfileRepairError) as e:
            self.notify(str(e), severity="error")
            return

        self._finish(identity)

    @on(Input.Submitted, "#input-reg-pwd")
    @on(Button.Pressed, "#btn-reg")
    @work(exclusive=True)
    async def handle_registration_submit(self) -> None:
        name = self.query_one("#input-reg-name", Input).value.strip()
        email = self.query_one("#input-reg-email", Input).value.strip()
        pwd = self.query_one("#input-reg-pwd", Input).value
        role = Role(self.query_one("#select-reg-role", Select).value)
        store_name = self.query_one("#input-reg-store", Input).value.strip()

        if not name or not email or not pwd:
            self.notify("Make sure all inputs are filled.", severity="error")
            return
        if role != Role.BUYER and not store_name:
            self.query_one("#input-reg-store", Input).add_class("-invalid")
            self.notify("A store or company name is required.", severity="error")
            return

        try:
            identity = await self.app.ctx.resolver.sign_up(
                email, pwd, name, role=role, store_name=store_name
            )
        except (AuthError, BackendError, ProfileRepairError) as e:
            self.notify(str(e), severity="error")
            return
        except RoleActivationError as e:
            # the account exists and is signed in, only the role is missing
            self.notify(
                f"Account created, but {e} You can retry from the sidebar.",
                severity="warning",
            )
            identity = self.app.ctx.resolver.current

        self._finish(identity)

    def _finish(self, identity) -> None:
        if not identity.is_authenticated:
            # superseded by a newer event, or forcibly signed out
            if identity.error is not None:
                self.notify(str(identity.error), severity="error")
            return

        name = identity.profile.display_name if identity.profile else ""
        if identity.is_degraded:
            self.notify(
                "Your profile could not be loaded in time. "
                "Continuing with limited account features.",
                severity="warning",
            )
        roles = [
            ROLE_LABELS[r] for r in ROLE_PRECEDENCE if identity.profile.has_role(r)
        ]
        self.notify(f"Hello {name}! ({', '.join(roles)})")
        self.dismiss()

    @on(Button.Pressed, "#btn-quit")
    def handle_quit_(self) -> None:
        self.app.push_screen(QuitDialogModal())
