from textual.message import Message

from core.session import ResolvedIdentity


class QuitRequestedMessage(Message):
    """
    broadcasted when the app is about to quit
    """

    bubble = True


class UserLogoutMessage(Message):
    """
    broadcasted when the user asks to log out
    """

    bubble = True


class IdentityChangedMessage(Message):
    """
    Posted at app level whenever the session resolver changes state.
    Carries the new identity so screens do not need to query the resolver.
    """

    bubble = True

    def __init__(self, identity: ResolvedIdentity) -> None:
        super().__init__()
        self.identity = identity


class CartChangedMessage(Message):
    """
    Fired after any cart mutation (catalog add, cart edit, checkout).
    Will trigger a refresh of cart screen

    If posted from outside CartScreen, make sure to post at App level
    """

    bubble = True


class NewOrderMessage(Message):
    """
    Fired when a checkout placed its orders.
    """

    bubble = True

    def __init__(self, order_ids: list[str]) -> None:
        super().__init__()
        self.order_ids = order_ids
