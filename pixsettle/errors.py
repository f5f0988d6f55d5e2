"""Error taxonomy for the payment engine.

Resolution failures (`NoMatchFound`, raised by the strategy chain) and
duplicate deliveries (`AlreadySettled`) never reach the webhook caller as
errors: the settlement engine turns them into outcomes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class PaymentError(Exception):
    """Base class for every error raised by the payment engine."""


class InvalidAmount(PaymentError):
    def __init__(self, amount_minor: object, reason: str = "amount must be positive") -> None:
        super().__init__(f"invalid amount {amount_minor!r}: {reason}")
        self.amount_minor = amount_minor
        self.reason = reason


class PayloadError(PaymentError):
    """A BR Code payload is malformed or its checksum does not verify."""


class MalformedNotification(PaymentError):
    """An inbound notification could not be normalised."""


class NoMatchFound(PaymentError):
    """No strategy may credit the notification; it goes to the unreconciled queue."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AlreadySettled(PaymentError):
    def __init__(self, expectation_id: str) -> None:
        super().__init__(f"expectation {expectation_id} already settled")
        self.expectation_id = expectation_id


class UserNotFound(PaymentError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"user {user_id} not found")
        self.user_id = user_id


class InsufficientBalance(PaymentError):
    def __init__(self, requested: int, available: int) -> None:
        super().__init__(f"insufficient token balance: requested {requested}, available {available}")
        self.requested = requested
        self.available = available


class WindowClosed(PaymentError):
    def __init__(self, next_window: datetime) -> None:
        super().__init__(f"withdrawal window closed; next window opens {next_window.isoformat()}")
        self.next_window = next_window


class InsufficientEntitlement(PaymentError):
    def __init__(self, shortfall: int, available: Optional[int] = None) -> None:
        super().__init__(f"payout exceeds entitlement by {shortfall}")
        self.shortfall = shortfall
        self.available = available


class BelowMinimum(PaymentError):
    def __init__(self, minimum: int) -> None:
        super().__init__(f"payout below minimum of {minimum}")
        self.minimum = minimum
