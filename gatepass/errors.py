"""Error taxonomy for settlement, webhooks, payouts and admin actions.

Messages are user-safe: they never carry fee rates or ledger rows.
HTTP status mapping lives in server.py.
"""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    VERIFICATION_ERROR = "VERIFICATION_ERROR"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    NO_RESERVATIONS_FOUND = "NO_RESERVATIONS_FOUND"
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    RESERVATION_UNAVAILABLE = "RESERVATION_UNAVAILABLE"
    INVENTORY_EXCEEDED = "INVENTORY_EXCEEDED"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    PAYOUT_CONFLICT = "PAYOUT_CONFLICT"
    PAYOUT_NOT_FOUND = "PAYOUT_NOT_FOUND"
    INVALID_PAYOUT_TRANSITION = "INVALID_PAYOUT_TRANSITION"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"


class GatePassError(Exception):
    """Base error with code, user-safe message and retry hint."""

    code: ErrorCode = ErrorCode.PERSISTENCE_ERROR
    retryable: bool = False

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class VerificationError(GatePassError):
    """Gateway unreachable, timed out or answered ambiguously."""

    code = ErrorCode.VERIFICATION_ERROR
    retryable = True

    def __init__(self, reference: str, detail: str = "") -> None:
        super().__init__("Could not reach the payment provider")
        self.reference = reference
        self.detail = detail


class VerificationFailed(GatePassError):
    """Gateway confirms the charge did not succeed."""

    code = ErrorCode.VERIFICATION_FAILED

    def __init__(self, reference: str, status: str) -> None:
        super().__init__("Payment was not successful")
        self.reference = reference
        self.status = status


class NoReservationsFound(GatePassError):
    code = ErrorCode.NO_RESERVATIONS_FOUND

    def __init__(self, reference: str) -> None:
        super().__init__("No reservations found for this payment")
        self.reference = reference


class ReservationNotFound(GatePassError):
    code = ErrorCode.RESERVATION_NOT_FOUND

    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation not found")
        self.reservation_id = reservation_id


class ReservationUnavailable(GatePassError):
    """Reservation is cancelled or otherwise not payable."""

    code = ErrorCode.RESERVATION_UNAVAILABLE

    def __init__(self, reservation_id: str, status: str) -> None:
        super().__init__("Reservation can no longer be fulfilled")
        self.reservation_id = reservation_id
        self.status = status


class InventoryExceeded(GatePassError):
    code = ErrorCode.INVENTORY_EXCEEDED

    def __init__(self, reservation_id: str, tier_id: str) -> None:
        super().__init__("Not enough tickets left for this tier")
        self.reservation_id = reservation_id
        self.tier_id = tier_id


class AlreadySettled(GatePassError):
    """Not a failure: the winner of a settlement race already ran."""

    code = ErrorCode.ALREADY_SETTLED

    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation already settled")
        self.reservation_id = reservation_id


class SignatureMismatch(GatePassError):
    code = ErrorCode.SIGNATURE_MISMATCH

    def __init__(self) -> None:
        super().__init__("Invalid signature")


class PersistenceError(GatePassError):
    code = ErrorCode.PERSISTENCE_ERROR
    retryable = True

    def __init__(self, detail: str = "") -> None:
        super().__init__("Temporary storage failure, please retry")
        self.detail = detail


class PayoutConflict(GatePassError):
    code = ErrorCode.PAYOUT_CONFLICT

    def __init__(self, event_id: str) -> None:
        super().__init__(
            "A payout request is already pending for this event"
        )
        self.event_id = event_id


class PayoutNotFound(GatePassError):
    code = ErrorCode.PAYOUT_NOT_FOUND

    def __init__(self, payout_id: str) -> None:
        super().__init__("Payout not found")
        self.payout_id = payout_id


class InvalidPayoutTransition(GatePassError):
    code = ErrorCode.INVALID_PAYOUT_TRANSITION

    def __init__(self, payout_id: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move payout from {current} to {target}")
        self.payout_id = payout_id
        self.current = current
        self.target = target


class InsufficientBalance(GatePassError):
    code = ErrorCode.INSUFFICIENT_BALANCE

    def __init__(self, event_id: str) -> None:
        super().__init__("Requested amount exceeds the available balance")
        self.event_id = event_id


class Forbidden(GatePassError):
    code = ErrorCode.FORBIDDEN

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class NotFound(GatePassError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, what: str) -> None:
        super().__init__(f"{what} not found")
