from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import db.crud as crud
from core.cart import CartStorage, CartStore
from core.checkout import CheckoutIntentLog, CheckoutOrchestrator
from core.session import ResolvedIdentity, SessionResolver
from db import database
from db.identity import LocalIdentityBackend
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)


@dataclass
class AppContext:
    """
    Client state shared by screens, passed around explicitly.

    Fields:
      - identity: identity backend the resolver listens to
      - resolver: current session/profile and active role
      - cart: the local cart
      - checkout: places the cart's orders
    Lifecycle: build() -> start() at launch, close() at exit.
    """

    settings: Settings
    identity: LocalIdentityBackend
    resolver: SessionResolver
    cart: CartStore
    checkout: CheckoutOrchestrator

    @classmethod
    def build(cls, settings: Optional[Settings] = None) -> "AppContext":
        settings = settings or get_settings()
        database.use_database(settings.db_path)
        identity = LocalIdentityBackend(
            session_ttl=timedelta(hours=settings.session_ttl_hours)
        )
        resolver = SessionResolver(identity, crud, timeout=settings.profile_timeout)
        cart = CartStore(CartStorage(settings.cart_path))
        checkout = CheckoutOrchestrator(
            crud,
            cart,
            resolver,
            intent_log=CheckoutIntentLog(settings.intent_path),
            call_timeout=settings.call_timeout,
            retry_attempts=settings.retry_attempts,
            retry_wait_max=settings.retry_wait_max,
        )
        return cls(settings, identity, resolver, cart, checkout)

    async def start(self) -> ResolvedIdentity:
        identity = await self.resolver.start()
        _logger.info(f"Client started, session state: {identity.state.value}")
        return identity

    def close(self) -> None:
        self.resolver.close()
        _logger.info("Client closed")
