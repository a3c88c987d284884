"""
Settlement engine.

Turns a confirmed gateway charge into tickets plus ledger rows, once.

    RECEIVED -> VERIFIED -> LOCKED -> ALREADY_SETTLED
                                   -> INVENTORY_EXCEEDED
                                   -> SETTLING -> SETTLED

The client verify endpoint, the gateway webhook and the legacy webhook
all end up in `SettlementEngine.settle`, possibly at the same time and
possibly more than once for the same reference. Correctness under that
comes from two database-level mechanisms in model/ledger.py: the
conditional reservation claim and the conditional inventory update.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional
import json

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    AlreadySettled, ErrorCode, GatePassError, InventoryExceeded,
    NoReservationsFound, PersistenceError, ReservationNotFound,
    ReservationUnavailable, VerificationFailed,
)
from .fees import FeeBreakdown, FeeRates, compute_fees, resolve_rates
from .fees import ticket_subtotal
from .gateway import PaymentGateway, TransactionResult
from .infra.timings import timeit
from .model.ledger import (
    AddonLine, Gated, ReservationBundle, SettlementStore, TicketRecord,
    normalize_addon_selection,
)
from .notify import ErrorReporter, LogNotifier, Notifier, TicketHandoff
from .notify import hand_off

log = structlog.get_logger(__name__, component="settlement")

# metadata keys that may carry reservation ids, in priority order
RESERVATION_ID_KEYS = (
    "reservation_ids", "reservationIds", "reservation_id", "reservationId",
)
CUSTOM_FIELD_NAMES = {"reservation_id", "reservation_ids", "reservationId"}


class SettlementState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    LOCKED = "locked"
    ALREADY_SETTLED = "already_settled"
    INVENTORY_EXCEEDED = "inventory_exceeded"
    SETTLING = "settling"
    SETTLED = "settled"


@dataclass(frozen=True)
class ReservationFailure:
    reservation_id: str
    code: ErrorCode
    message: str
    retryable: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "code": self.code.value,
            "message": self.message,
        }


@dataclass
class SettlementResult:
    reference: str
    success: bool
    tickets: List[TicketRecord] = field(default_factory=list)
    failures: List[ReservationFailure] = field(default_factory=list)
    already_settled: bool = False
    error: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return any(f.retryable for f in self.failures)

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "reference": self.reference,
            "success": self.success,
            "tickets": [t.as_dict() for t in self.tickets],
        }
        if self.failures:
            out["failures"] = [f.as_dict() for f in self.failures]
        if self.error:
            out["error"] = self.error
        return out


# ------------------------------------------------------------------------------
# Reservation id resolution
# ------------------------------------------------------------------------------

def _split_ids(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        out: List[str] = []
        for item in value:
            out.extend(_split_ids(item))
        return out
    if isinstance(value, (int, str)):
        return [p.strip() for p in str(value).split(",") if p.strip()]
    return []


def _from_custom_fields(fields: Any) -> List[str]:
    if isinstance(fields, str):
        stripped = fields.strip()
        if stripped.startswith("["):
            try:
                return _from_custom_fields(json.loads(stripped))
            except json.JSONDecodeError:
                pass
        return _split_ids(fields)
    if not isinstance(fields, list):
        return []
    out: List[str] = []
    for entry in fields:
        if isinstance(entry, dict):
            if entry.get("variable_name") in CUSTOM_FIELD_NAMES:
                out.extend(_split_ids(entry.get("value")))
        else:
            out.extend(_split_ids(entry))
    return out


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


def resolve_reservation_ids(
    explicit: Any, transaction: Optional[TransactionResult]
) -> List[str]:
    """
    Explicit ids win. Otherwise look at the transaction: top-level
    `reservation_ids`, then metadata keys, then metadata.custom_fields.
    Lists and comma-joined strings are both accepted.
    """
    ids = _split_ids(explicit)
    if ids:
        return _dedupe(ids)
    if transaction is None:
        return []
    ids = _split_ids(transaction.raw.get("reservation_ids"))
    if ids:
        return _dedupe(ids)
    meta = transaction.metadata
    for key in RESERVATION_ID_KEYS:
        ids = _split_ids(meta.get(key))
        if ids:
            return _dedupe(ids)
    return _dedupe(_from_custom_fields(meta.get("custom_fields")))


def fees_for(
    bundle: ReservationBundle,
    global_rates: FeeRates,
    addon_lines: List[AddonLine],
) -> FeeBreakdown:
    rates = resolve_rates(
        global_rates,
        bundle.event.platform_fee_percent,
        bundle.event.organizer_fee_percent,
    )
    d = bundle.discount
    subtotal = ticket_subtotal(
        bundle.tier.price,
        bundle.quantity,
        d.type if d else None,
        d.value if d else None,
    )
    return compute_fees(
        subtotal,
        rates.platform,
        rates.processor,
        bundle.event.fee_bearer,
        addon_subtotal=sum(line.total for line in addon_lines),
    )


# ------------------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------------------

@dataclass
class _Settled:
    bundle: ReservationBundle
    tickets: List[TicketRecord]
    fees: FeeBreakdown
    fresh: bool


class SettlementEngine:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        gated: Gated,
        *,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[Notifier] = None,
        reporter: Optional[ErrorReporter] = None,
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated
        self.gateway = gateway
        self.notifier = notifier or LogNotifier()
        self.reporter = reporter or ErrorReporter()

    async def _transaction(
        self,
        reference: str,
        transaction: TransactionResult | Mapping[str, Any] | None,
    ) -> TransactionResult:
        if isinstance(transaction, TransactionResult):
            return transaction
        if transaction is not None:
            return TransactionResult.from_payload(transaction, reference)
        if self.gateway is None:
            raise RuntimeError("no transaction payload and no gateway")
        async with timeit("settle.verify"):
            return await self.gateway.verify(reference)

    async def settle(
        self,
        reference: str,
        reservation_ids: Any = None,
        transaction: TransactionResult | Mapping[str, Any] | None = None,
        addons: Any = None,
    ) -> SettlementResult:
        """
        Raises VerificationError (retryable), VerificationFailed,
        NoReservationsFound and PersistenceError (retryable). Per
        reservation problems are reported in the result instead.
        """
        if not reference:
            raise ValueError("reference is required")
        blog = log.bind(reference=reference)
        blog.info("settlement", state=SettlementState.RECEIVED.value)

        tx = await self._transaction(reference, transaction)
        if not tx.succeeded:
            blog.info("settlement_rejected", gateway_status=tx.status)
            raise VerificationFailed(reference, tx.status)
        blog.debug("settlement", state=SettlementState.VERIFIED.value)

        ids = resolve_reservation_ids(reservation_ids, tx)

        async with self.session_factory() as db:
            store = SettlementStore(db=db, gated=self.gated)
            try:
                async with timeit("settle.gate"):
                    existing = await store.tickets_for_reference(reference)
                    retry_ids = (
                        await store.unfulfilled_reservations(reference)
                        if existing else []
                    )
            except SQLAlchemyError as e:
                raise PersistenceError(str(e)) from e

            if existing:
                # a used reference only retries its own unfulfilled rows
                settled_ids = {t.reservation_id for t in existing}
                unlinked = [i for i in ids
                            if i not in retry_ids and i not in settled_ids]
                if unlinked:
                    blog.warning("reference_reuse_ignored",
                                 reservation_ids=unlinked)
                ids = [i for i in (ids or retry_ids) if i in retry_ids]
                if not ids:
                    blog.info("settlement",
                              state=SettlementState.ALREADY_SETTLED.value,
                              tickets=len(existing))
                    return SettlementResult(
                        reference=reference, success=True,
                        tickets=existing, already_settled=True,
                    )
            elif not ids:
                blog.warning("settlement_no_reservations")
                raise NoReservationsFound(reference)

            try:
                global_rates = await store.global_fee_rates()
            except SQLAlchemyError as e:
                raise PersistenceError(str(e)) from e

            requested_addons = normalize_addon_selection(addons)
            settled: List[_Settled] = []
            failures: List[ReservationFailure] = []
            for index, rid in enumerate(ids):
                try:
                    outcome = await self._settle_one(
                        store, rid, reference, tx, global_rates,
                        requested_addons if index == 0 else {},
                    )
                except GatePassError as e:
                    blog.warning("reservation_failed", reservation_id=rid,
                                 code=e.code.value)
                    failures.append(ReservationFailure(
                        rid, e.code, e.message, e.retryable
                    ))
                    continue
                except SQLAlchemyError as e:
                    self.reporter.report(
                        "settlement_persistence_error", e,
                        reference=reference, reservation_id=rid,
                    )
                    err = PersistenceError(str(e))
                    failures.append(ReservationFailure(
                        rid, err.code, err.message, True
                    ))
                    continue
                settled.append(outcome)

        self._audit_amount(blog, tx, settled)

        tickets = list(existing)
        for s in settled:
            tickets.extend(s.tickets)

        for s in settled:
            if s.fresh:
                await hand_off(self.notifier, self.reporter, TicketHandoff(
                    reference=reference, reservation=s.bundle,
                    tickets=s.tickets,
                ))

        success = bool(tickets)
        result = SettlementResult(
            reference=reference,
            success=success,
            tickets=tickets,
            failures=failures,
            already_settled=bool(settled) and not any(
                s.fresh for s in settled
            ) and not failures,
            error=None if success else (
                failures[0].message if failures else "Nothing settled"
            ),
        )
        if not success:
            terminal = "failed"
        elif failures:
            terminal = "partial"
        else:
            terminal = SettlementState.SETTLED.value
        blog.info(
            "settlement_done",
            state=terminal,
            tickets=len(tickets),
            failures=[f.as_dict() for f in failures],
        )
        return result

    async def _settle_one(
        self,
        store: SettlementStore,
        reservation_id: str,
        reference: str,
        tx: TransactionResult,
        global_rates: FeeRates,
        requested_addons: Dict[str, int],
    ) -> _Settled:
        rlog = log.bind(reference=reference, reservation_id=reservation_id)
        bundle = await store.load_reservation(reservation_id)
        if bundle is None:
            raise ReservationNotFound(reservation_id)
        if bundle.status == "cancelled":
            raise ReservationUnavailable(reservation_id, bundle.status)
        rlog.debug("settlement", state=SettlementState.LOCKED.value)

        lines = await self._addon_lines(
            store, bundle, bundle.addons or requested_addons
        )
        fees = fees_for(bundle, global_rates, lines)

        try:
            async with timeit("settle.reservation"):
                rlog.debug("settlement", state=SettlementState.SETTLING.value)
                tickets = await store.settle_reservation(
                    bundle,
                    reference=reference,
                    fees=fees,
                    addon_lines=lines,
                    gateway_amount=tx.amount,
                    channel=tx.channel,
                    paid_at=tx.paid_at,
                    payload=tx.raw,
                )
        except AlreadySettled:
            # lost the race, or confirmed earlier: hand back what exists
            tickets = await store.tickets_for_reservation(reservation_id)
            if not tickets:
                raise ReservationUnavailable(reservation_id, bundle.status)
            others = {t.order_reference for t in tickets} - {reference}
            if others:
                self.reporter.report(
                    "duplicate_payment",
                    reference=reference,
                    reservation_id=reservation_id,
                    settled_reference=sorted(others)[0],
                )
            rlog.info("settlement",
                      state=SettlementState.ALREADY_SETTLED.value)
            return _Settled(bundle, tickets, fees, fresh=False)
        except InventoryExceeded:
            rlog.warning("settlement",
                         state=SettlementState.INVENTORY_EXCEEDED.value)
            try:
                await store.record_unfulfilled(
                    bundle,
                    reference=reference,
                    fees=fees,
                    gateway_amount=tx.amount,
                    channel=tx.channel,
                    paid_at=tx.paid_at,
                    payload=tx.raw,
                )
            except SQLAlchemyError as e:
                self.reporter.report(
                    "unfulfilled_record_failed", e,
                    reference=reference, reservation_id=reservation_id,
                )
            self.reporter.report(
                "paid_unfulfilled",
                reference=reference,
                reservation_id=reservation_id,
                tier_id=bundle.tier.id,
            )
            raise

        rlog.info("settlement", state=SettlementState.SETTLED.value,
                  tickets=len(tickets))
        return _Settled(bundle, tickets, fees, fresh=True)

    async def _addon_lines(
        self,
        store: SettlementStore,
        bundle: ReservationBundle,
        selection: Dict[str, int],
    ) -> List[AddonLine]:
        if not selection:
            return []
        found = await store.load_addons(bundle.event.id, list(selection))
        lines = []
        for addon_id, qty in selection.items():
            addon = found.get(addon_id)
            if addon is None:
                log.warning("addon_ignored", addon_id=addon_id,
                            reservation_id=bundle.id)
                continue
            lines.append(AddonLine(addon=addon, quantity=qty))
        return lines

    def _audit_amount(self, blog, tx: TransactionResult,
                      settled: List[_Settled]) -> None:
        if tx.amount is None or not settled:
            return
        if not all(s.fresh for s in settled):
            return
        expected = sum(s.fees.total_charge for s in settled)
        if expected != tx.amount:
            blog.warning("amount_mismatch", expected=expected,
                         charged=tx.amount)

    async def resend(self, reservation_id: str) -> int:
        """Re-run the ticket handoff for a settled reservation."""
        async with self.session_factory() as db:
            store = SettlementStore(db=db, gated=self.gated)
            bundle = await store.load_reservation(reservation_id)
            if bundle is None:
                raise ReservationNotFound(reservation_id)
            tickets = await store.tickets_for_reservation(reservation_id)
        if not tickets:
            raise ReservationUnavailable(reservation_id, bundle.status)
        await self.notifier.deliver(TicketHandoff(
            reference=tickets[0].order_reference,
            reservation=bundle,
            tickets=tickets,
        ))
        return len(tickets)
