# exception hierarchy shared by the core and the local backends

from __future__ import annotations

from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from core.checkout import CheckoutAttempt


class MarketError(Exception):
    """Base class of every error raised by the storefront client."""


# ---------------------------
# Backend
# ---------------------------


class BackendError(MarketError):
    """A persistence or identity backend call failed."""


class BackendUnavailableError(BackendError):
    """Transient backend failure (unreachable, locked, timed out). Safe to retry."""


# ---------------------------
# Validation
# ---------------------------


class ValidationError(MarketError, ValueError):
    """Rejected input. Raised before any side effect."""


class InvalidQuantityError(ValidationError):
    pass


class CheckoutValidationError(ValidationError):
    pass


class MissingVendorError(CheckoutValidationError):
    """Cart holds products without a vendor reference."""

    def __init__(self, product_ids: List[str]):
        self.product_ids = list(product_ids)
        super().__init__(
            "Some items have no vendor and cannot be ordered: "
            + ", ".join(self.product_ids)
        )


# ---------------------------
# Session & identity
# ---------------------------


class AuthError(MarketError):
    """Bad credentials, duplicate email, or no active session."""


class IdentityResolutionError(MarketError):
    """An authenticated event carried no usable identity."""


class ProfileRepairError(MarketError):
    """The missing profile row could not be recreated. The session is closed."""


class RoleActivationError(MarketError):
    pass


# ---------------------------
# Checkout
# ---------------------------


class CheckoutError(MarketError):
    """
    Aggregate failure of a checkout attempt.

    Orders already committed for earlier vendor groups are listed on
    ``attempt.committed_vendor_ids``; they are not rolled back.
    """

    def __init__(self, message: str, attempt: "CheckoutAttempt"):
        super().__init__(message)
        self.attempt = attempt
