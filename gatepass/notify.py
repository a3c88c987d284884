"""
Side channels of settlement: ticket handoff and error reporting.

Neither may fail the primary operation. Tickets already exist by the
time a handoff runs; a failed delivery is reported and can be re-run
from the admin "resend" action.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import os

import httpx
import structlog

from .helpers import is_valid_email
from .model.ledger import ReservationBundle, TicketRecord

NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

log = structlog.get_logger(__name__, component="notify")


# ----------------------------
# Error reporting
# ----------------------------
class ErrorReporter:
    """Structured sink for non-fatal failures. Never raises."""

    def report(
        self, kind: str, error: Optional[BaseException] = None, **context: Any
    ) -> None:
        log.error(
            kind,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
            **context,
        )


# ----------------------------
# Ticket handoff
# ----------------------------
@dataclass
class TicketHandoff:
    reference: str
    reservation: ReservationBundle
    tickets: List[TicketRecord]

    @property
    def recipient(self) -> Optional[str]:
        email = self.reservation.guest_email
        return email.strip() if is_valid_email(email) else None

    def as_payload(self) -> Dict[str, Any]:
        r = self.reservation
        return {
            "reference": self.reference,
            "recipient": self.recipient,
            "reservation": {
                "id": r.id,
                "quantity": r.quantity,
                "user_id": r.user_id,
                "guest_name": r.guest_name,
            },
            "event": {"id": r.event.id, "title": r.event.title},
            "tier": {
                "id": r.tier.id,
                "name": r.tier.name,
                "currency": r.tier.currency,
            },
            "tickets": [
                {"id": t.id, "qr_code_hash": t.qr_code_hash}
                for t in self.tickets
            ],
        }


class Notifier(ABC):
    @abstractmethod
    async def deliver(self, handoff: TicketHandoff) -> None: ...

    async def aclose(self) -> None:
        return None


class LogNotifier(Notifier):
    async def deliver(self, handoff: TicketHandoff) -> None:
        if handoff.recipient is None:
            log.warning("handoff_no_recipient",
                        reservation_id=handoff.reservation.id)
        log.info(
            "ticket_handoff",
            reference=handoff.reference,
            reservation_id=handoff.reservation.id,
            tickets=len(handoff.tickets),
        )


class WebhookNotifier(Notifier):
    """POSTs the handoff to the email/PDF/wallet-pass generator."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = NOTIFY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def deliver(self, handoff: TicketHandoff) -> None:
        r = await self._http.post(self.url, json=handoff.as_payload())
        r.raise_for_status()

    async def aclose(self) -> None:
        await self._http.aclose()


def new_notifier() -> Notifier:
    if NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(NOTIFY_WEBHOOK_URL)
    return LogNotifier()


async def hand_off(
    notifier: Notifier, reporter: ErrorReporter, handoff: TicketHandoff
) -> bool:
    try:
        await notifier.deliver(handoff)
    except Exception as e:
        reporter.report(
            "notification_failed", e,
            reference=handoff.reference,
            reservation_id=handoff.reservation.id,
        )
        return False
    return True
