"""
Payout requests and their approval state machine.

    pending -> processing -> paid
                          -> failed
    pending -> paid | failed

At most one open (pending/processing) payout per event: pre-checked here
and enforced by the partial unique index `uq_payouts_open_per_event`.
"""
from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import text, bindparam
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    Forbidden, InsufficientBalance, InvalidPayoutTransition, NotFound,
    PayoutConflict, PayoutNotFound,
)
from .helpers import now_ts, to_iso
from .model.ledger import Gated

log = structlog.get_logger(__name__, component="payouts")

OPEN_STATUSES = ("pending", "processing")

# target -> states it may be entered from
TRANSITIONS = {
    "processing": ("pending",),
    "paid": ("pending", "processing"),
    "failed": ("pending", "processing"),
}

# admin route action -> target state
ACTIONS = {"process": "processing", "approve": "paid", "reject": "failed"}

SQL_SELECT_PAYOUTS = """
    SELECT id, event_id, organizer_id, amount, currency, status, reference,
           notes, requested_by, processed_by, created_at, paid_at
    FROM payouts
"""

SQL_EVENT_OWNER = text("""
    SELECT e.id, e.organizer_id, o.user_id AS owner_id
    FROM events AS e
    JOIN organizers AS o ON o.id = e.organizer_id
    WHERE e.id = :id
""")

SQL_IS_MEMBER = text("""
    SELECT 1 FROM organization_team
    WHERE organization_id = :org AND user_id = :uid
""")

SQL_OPEN_PAYOUT = text("""
    SELECT id FROM payouts
    WHERE event_id = :event_id AND status IN :statuses
""").bindparams(bindparam("statuses", expanding=True))

# organizer share of settled sales minus everything paid or in flight
SQL_AVAILABLE_BALANCE = text("""
    SELECT
      COALESCE((SELECT SUM(organizer_net) FROM transactions
                WHERE event_id = :event_id AND status = 'success'), 0)
      - COALESCE((SELECT SUM(amount) FROM payouts
                  WHERE event_id = :event_id
                    AND status IN ('paid', 'pending', 'processing')), 0)
""")

SQL_EVENT_CURRENCY = text("""
    SELECT currency FROM ticket_tiers WHERE event_id = :event_id
    ORDER BY id LIMIT 1
""")

SQL_INSERT_PAYOUT = text("""
    INSERT INTO payouts(id, event_id, organizer_id, amount, currency, status,
                        requested_by, created_at)
    VALUES (:id, :event_id, :organizer_id, :amount, :currency, 'pending',
            :requested_by, :created_at)
""")

SQL_TRANSITION = text("""
    UPDATE payouts
    SET status = :target,
        processed_by = :actor,
        reference = COALESCE(:reference, reference),
        notes = COALESCE(:notes, notes),
        paid_at = COALESCE(:paid_at, paid_at)
    WHERE id = :id AND status IN :sources
    RETURNING id
""").bindparams(bindparam("sources", expanding=True))


def _payout(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "event_id": row["event_id"],
        "organizer_id": row["organizer_id"],
        "amount": int(row["amount"]),
        "currency": row["currency"],
        "status": row["status"],
        "reference": row["reference"],
        "notes": row["notes"],
        "requested_by": row["requested_by"],
        "processed_by": row["processed_by"],
        "created_at": to_iso(row["created_at"]),
        "paid_at": to_iso(row["paid_at"]),
    }


class PayoutService:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def _can_request(self, organizer_id: str, owner_id: str,
                           user_id: str) -> bool:
        if owner_id == user_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    SQL_IS_MEMBER, {"org": organizer_id, "uid": user_id}
                )).first()
        return row is not None

    async def available_balance(self, event_id: str) -> int:
        async with self.gated():
            async with self.db.begin():
                value = (await self.db.execute(
                    SQL_AVAILABLE_BALANCE, {"event_id": event_id}
                )).scalar_one()
        return int(value or 0)

    async def request_payout(
        self,
        event_id: str,
        user_id: Optional[str],
        amount: Any,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not user_id:
            raise Forbidden("Sign in to request a payout")
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise ValueError("amount must be an integer in minor units")
        if amount <= 0:
            raise ValueError("amount must be positive")

        async with self.gated():
            async with self.db.begin():
                event = (await self.db.execute(
                    SQL_EVENT_OWNER, {"id": event_id}
                )).mappings().first()
        if event is None:
            raise NotFound("Event")
        if not await self._can_request(
            event["organizer_id"], event["owner_id"], user_id
        ):
            raise Forbidden("Not a member of this organization")

        payout_id = str(uuid.uuid4())
        created = now_ts()
        try:
            async with self.gated():
                async with self.db.begin():
                    open_row = (await self.db.execute(SQL_OPEN_PAYOUT, {
                        "event_id": event_id,
                        "statuses": list(OPEN_STATUSES),
                    })).first()
                    if open_row is not None:
                        raise PayoutConflict(event_id)

                    balance = int((await self.db.execute(
                        SQL_AVAILABLE_BALANCE, {"event_id": event_id}
                    )).scalar_one() or 0)
                    if amount > balance:
                        raise InsufficientBalance(event_id)

                    if currency is None:
                        currency = (await self.db.execute(
                            SQL_EVENT_CURRENCY, {"event_id": event_id}
                        )).scalar() or "GHS"

                    await self.db.execute(SQL_INSERT_PAYOUT, {
                        "id": payout_id,
                        "event_id": event_id,
                        "organizer_id": event["organizer_id"],
                        "amount": amount,
                        "currency": currency,
                        "requested_by": user_id,
                        "created_at": created,
                    })
        except IntegrityError as e:
            # lost a race with another open request
            log.info("payout_conflict", event_id=event_id)
            raise PayoutConflict(event_id) from e

        log.info("payout_requested", payout_id=payout_id, event_id=event_id,
                 amount=amount)
        return await self.get(payout_id)

    async def get(self, payout_id: str) -> Dict[str, Any]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text(SQL_SELECT_PAYOUTS + " WHERE id = :id"),
                    {"id": payout_id},
                )).mappings().first()
        if row is None:
            raise PayoutNotFound(payout_id)
        return _payout(row)

    async def transition(
        self,
        payout_id: str,
        target: str,
        actor: str,
        *,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        sources = TRANSITIONS.get(target)
        if sources is None:
            raise ValueError(f"unknown payout status: {target}")
        if target == "paid" and not (reference or "").strip():
            raise ValueError("a transfer reference is required")

        async with self.gated():
            async with self.db.begin():
                moved = (await self.db.execute(SQL_TRANSITION, {
                    "id": payout_id,
                    "target": target,
                    "actor": actor,
                    "reference": reference,
                    "notes": notes,
                    "paid_at": now_ts() if target == "paid" else None,
                    "sources": list(sources),
                })).first()

        if moved is None:
            current = await self.get(payout_id)  # raises PayoutNotFound
            raise InvalidPayoutTransition(
                payout_id, current["status"], target
            )
        log.info("payout_transition", payout_id=payout_id, target=target,
                 actor=actor)
        return await self.get(payout_id)

    async def list_payouts(
        self,
        *,
        status: Optional[str] = None,
        event_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        where = []
        params: Dict[str, Any] = {"lim": max(1, min(int(limit), 1000))}
        if status:
            where.append("status = :status")
            params["status"] = status
        if event_id:
            where.append("event_id = :event_id")
            params["event_id"] = event_id
        sql = SQL_SELECT_PAYOUTS
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC LIMIT :lim"
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text(sql), params
                )).mappings().all()
        return [_payout(r) for r in rows]
