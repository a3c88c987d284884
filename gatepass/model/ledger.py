# gatepass/model/ledger.py
"""
Settlement data access.

Every read returns a fixed shape (dataclasses below); joined rows never
leak into business logic as "list or object depending on cardinality".

Concurrency rules (no application-level read-then-write):
- a reservation is claimed with a conditional UPDATE on its status
- inventory is taken with a conditional UPDATE on quantity_sold
Both run inside the same DB transaction as the ticket/ledger inserts, so
a failure anywhere leaves the reservation untouched.
"""

from __future__ import annotations
import json
import secrets
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, AsyncContextManager, Dict, List, Optional

from sqlalchemy import text, bindparam, JSON, Numeric
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadySettled, InventoryExceeded
from ..fees import FeeBreakdown, FeeRates, as_rate, DEFAULT_RATES
from ..helpers import now_ts

Gated = Callable[[], AsyncContextManager[None]]

# reservations in these states may still be turned into tickets
SETTLEABLE_STATUSES = ("pending", "expired")

QR_TOKEN_BYTES = 32


# ------------------------------------------------------------------------------
# Normalized shapes
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class TierRecord:
    id: str
    name: str
    price: int
    currency: str
    total_quantity: int
    quantity_sold: int


@dataclass(frozen=True)
class EventRecord:
    id: str
    organizer_id: str
    title: str
    fee_bearer: str
    platform_fee_percent: Any
    organizer_fee_percent: Any


@dataclass(frozen=True)
class DiscountRecord:
    id: str
    type: str
    value: Any


@dataclass(frozen=True)
class AddonRecord:
    id: str
    name: str
    price: int
    currency: str


@dataclass(frozen=True)
class AddonLine:
    addon: AddonRecord
    quantity: int

    @property
    def total(self) -> int:
        return self.addon.price * self.quantity


@dataclass
class ReservationBundle:
    id: str
    status: str
    quantity: int
    user_id: Optional[str]
    guest_email: Optional[str]
    guest_name: Optional[str]
    tier: TierRecord
    event: EventRecord
    discount: Optional[DiscountRecord] = None
    addons: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class TicketRecord:
    id: str
    event_id: str
    tier_id: str
    reservation_id: str
    qr_code_hash: str
    status: str
    order_reference: str
    created_at: float

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_qr_token() -> str:
    # 256 bits from the OS CSPRNG
    return secrets.token_urlsafe(QR_TOKEN_BYTES)


def normalize_addon_selection(raw: Any) -> Dict[str, int]:
    """
    Accepts {addon_id: qty}, a JSON string of that, or a list of
    {"addon_id"|"id": ..., "quantity"|"qty": ...}. Drops non-positive
    quantities.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    out: Dict[str, int] = {}
    if isinstance(raw, dict):
        items = raw.items()
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            aid = entry.get("addon_id") or entry.get("id")
            qty = entry.get("quantity", entry.get("qty", 1))
            items.append((aid, qty))
    else:
        return {}
    for aid, qty in items:
        if not aid:
            continue
        try:
            n = int(qty)
        except (TypeError, ValueError):
            continue
        if n > 0:
            out[str(aid)] = out.get(str(aid), 0) + n
    return out


def _ticket(row) -> TicketRecord:
    return TicketRecord(
        id=row["id"],
        event_id=row["event_id"],
        tier_id=row["tier_id"],
        reservation_id=row["reservation_id"],
        qr_code_hash=row["qr_code_hash"],
        status=row["status"],
        order_reference=row["order_reference"],
        created_at=float(row["created_at"]),
    )


SQL_SELECT_TICKETS = """
    SELECT id, event_id, tier_id, reservation_id, qr_code_hash, status,
           order_reference, created_at
    FROM tickets
"""

SQL_SELECT_BUNDLE = text("""
    SELECT r.id, r.status, r.quantity, r.user_id, r.guest_email,
           r.guest_name, r.addons,
           t.id AS tier_id, t.name AS tier_name, t.price, t.currency,
           t.total_quantity, t.quantity_sold,
           e.id AS event_id, e.organizer_id, e.title, e.fee_bearer,
           e.platform_fee_percent AS event_fee_percent,
           o.platform_fee_percent AS organizer_fee_percent,
           d.id AS discount_id, d.type AS discount_type,
           d.value AS discount_value
    FROM reservations AS r
    JOIN ticket_tiers AS t ON t.id = r.tier_id
    JOIN events AS e ON e.id = r.event_id
    JOIN organizers AS o ON o.id = e.organizer_id
    LEFT JOIN discounts AS d ON d.id = r.discount_id
    WHERE r.id = :id
""")

SQL_CLAIM_RESERVATION = text("""
    UPDATE reservations
    SET status = 'confirmed'
    WHERE id = :id AND status IN :statuses
    RETURNING id
""").bindparams(bindparam("statuses", expanding=True))

SQL_TAKE_INVENTORY = text("""
    UPDATE ticket_tiers
    SET quantity_sold = quantity_sold + :n
    WHERE id = :tier_id AND quantity_sold + :n <= total_quantity
    RETURNING quantity_sold
""")

SQL_INSERT_TICKET = text("""
    INSERT INTO tickets(id, event_id, tier_id, reservation_id, user_id,
                        qr_code_hash, status, order_reference, created_at)
    VALUES (:id, :event_id, :tier_id, :reservation_id, :user_id,
            :qr_code_hash, 'valid', :order_reference, :created_at)
""")

SQL_BUMP_DISCOUNT = text("""
    UPDATE discounts SET used_count = used_count + 1 WHERE id = :id
""")

SQL_INSERT_RESERVATION_ADDON = text("""
    INSERT INTO reservation_addons(id, reservation_id, addon_id, quantity,
                                   unit_price, currency)
    VALUES (:id, :reservation_id, :addon_id, :quantity, :unit_price,
            :currency)
    ON CONFLICT (reservation_id, addon_id) DO NOTHING
""")

_TX_COLUMNS = """
    INSERT INTO transactions(
        id, reference, reservation_id, event_id, amount, gateway_amount,
        currency, channel, status, subtotal, platform_fee, processor_fee,
        organizer_net, platform_fee_rate, processor_fee_rate, fee_bearer,
        paid_at, metadata, created_at
    ) VALUES (
        :id, :reference, :reservation_id, :event_id, :amount,
        :gateway_amount, :currency, :channel, :status, :subtotal,
        :platform_fee, :processor_fee, :organizer_net, :platform_fee_rate,
        :processor_fee_rate, :fee_bearer, :paid_at, :metadata, :created_at
    )
"""

_TX_BINDS = (
    bindparam("metadata", type_=JSON),
    bindparam("platform_fee_rate", type_=Numeric(10, 6)),
    bindparam("processor_fee_rate", type_=Numeric(10, 6)),
)

# unfulfilled -> success upgrade when a retry finally gets inventory
SQL_UPSERT_SUCCESS_TX = text(_TX_COLUMNS + """
    ON CONFLICT (reference, reservation_id) DO UPDATE SET
        status = 'success',
        amount = excluded.amount,
        gateway_amount = excluded.gateway_amount,
        subtotal = excluded.subtotal,
        platform_fee = excluded.platform_fee,
        processor_fee = excluded.processor_fee,
        organizer_net = excluded.organizer_net,
        platform_fee_rate = excluded.platform_fee_rate,
        processor_fee_rate = excluded.processor_fee_rate,
        fee_bearer = excluded.fee_bearer,
        paid_at = excluded.paid_at,
        metadata = excluded.metadata
""").bindparams(*_TX_BINDS)

SQL_INSERT_UNFULFILLED_TX = text(_TX_COLUMNS + """
    ON CONFLICT (reference, reservation_id) DO NOTHING
""").bindparams(*_TX_BINDS)


class SettlementStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # --------------------------------------------------------------------------
    # Reads
    # --------------------------------------------------------------------------

    async def tickets_for_reference(self, reference: str) -> List[TicketRecord]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text(SQL_SELECT_TICKETS + """
                        WHERE order_reference = :ref
                        ORDER BY reservation_id, created_at, id
                    """),
                    {"ref": reference},
                )).mappings().all()
        return [_ticket(r) for r in rows]

    async def tickets_for_reservation(
        self, reservation_id: str
    ) -> List[TicketRecord]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text(SQL_SELECT_TICKETS + """
                        WHERE reservation_id = :rid
                        ORDER BY created_at, id
                    """),
                    {"rid": reservation_id},
                )).mappings().all()
        return [_ticket(r) for r in rows]

    async def unfulfilled_reservations(self, reference: str) -> List[str]:
        """Reservations paid under `reference` that never got inventory."""
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT reservation_id FROM transactions
                    WHERE reference = :ref AND status = 'unfulfilled'
                    ORDER BY created_at, reservation_id
                """), {"ref": reference})).all()
        return [r[0] for r in rows]

    async def load_reservation(
        self, reservation_id: str
    ) -> Optional[ReservationBundle]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    SQL_SELECT_BUNDLE, {"id": reservation_id}
                )).mappings().first()
        if row is None:
            return None
        discount = None
        if row["discount_id"] is not None:
            discount = DiscountRecord(
                id=row["discount_id"],
                type=row["discount_type"],
                value=row["discount_value"],
            )
        return ReservationBundle(
            id=row["id"],
            status=row["status"],
            quantity=int(row["quantity"]),
            user_id=row["user_id"],
            guest_email=row["guest_email"],
            guest_name=row["guest_name"],
            tier=TierRecord(
                id=row["tier_id"],
                name=row["tier_name"],
                price=int(row["price"]),
                currency=row["currency"],
                total_quantity=int(row["total_quantity"]),
                quantity_sold=int(row["quantity_sold"]),
            ),
            event=EventRecord(
                id=row["event_id"],
                organizer_id=row["organizer_id"],
                title=row["title"],
                fee_bearer=row["fee_bearer"] or "customer",
                platform_fee_percent=row["event_fee_percent"],
                organizer_fee_percent=row["organizer_fee_percent"],
            ),
            discount=discount,
            addons=normalize_addon_selection(row["addons"]),
        )

    async def load_addons(
        self, event_id: str, addon_ids: List[str]
    ) -> Dict[str, AddonRecord]:
        if not addon_ids:
            return {}
        stmt = text("""
            SELECT id, name, price, currency FROM event_addons
            WHERE event_id = :event_id AND is_active AND id IN :ids
        """).bindparams(bindparam("ids", expanding=True))
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    stmt, {"event_id": event_id, "ids": list(addon_ids)}
                )).mappings().all()
        return {
            r["id"]: AddonRecord(
                id=r["id"], name=r["name"], price=int(r["price"]),
                currency=r["currency"],
            )
            for r in rows
        }

    async def global_fee_rates(self) -> FeeRates:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT value FROM system_settings WHERE key = 'fees'")
                )).first()
        return fee_rates_from_setting(row[0] if row else None)

    # --------------------------------------------------------------------------
    # Writes
    # --------------------------------------------------------------------------

    async def settle_reservation(
        self,
        bundle: ReservationBundle,
        *,
        reference: str,
        fees: FeeBreakdown,
        addon_lines: List[AddonLine],
        gateway_amount: Optional[int],
        channel: Optional[str],
        paid_at: Optional[str],
        payload: Optional[Dict[str, Any]],
    ) -> List[TicketRecord]:
        """
        One atomic unit: claim, inventory, tickets, discount, add-ons,
        ledger row. Raises AlreadySettled or InventoryExceeded; both roll
        the unit back.
        """
        created = now_ts()
        tickets = [
            TicketRecord(
                id=str(uuid.uuid4()),
                event_id=bundle.event.id,
                tier_id=bundle.tier.id,
                reservation_id=bundle.id,
                qr_code_hash=new_qr_token(),
                status="valid",
                order_reference=reference,
                created_at=created,
            )
            for _ in range(bundle.quantity)
        ]

        async with self.gated():
            async with self.db.begin():
                claimed = (await self.db.execute(
                    SQL_CLAIM_RESERVATION,
                    {"id": bundle.id, "statuses": list(SETTLEABLE_STATUSES)},
                )).first()
                if claimed is None:
                    raise AlreadySettled(bundle.id)

                taken = (await self.db.execute(
                    SQL_TAKE_INVENTORY,
                    {"n": bundle.quantity, "tier_id": bundle.tier.id},
                )).first()
                if taken is None:
                    raise InventoryExceeded(bundle.id, bundle.tier.id)

                await self.db.execute(SQL_INSERT_TICKET, [
                    {
                        "id": t.id,
                        "event_id": t.event_id,
                        "tier_id": t.tier_id,
                        "reservation_id": t.reservation_id,
                        "user_id": bundle.user_id,
                        "qr_code_hash": t.qr_code_hash,
                        "order_reference": t.order_reference,
                        "created_at": t.created_at,
                    }
                    for t in tickets
                ])

                if bundle.discount is not None:
                    await self.db.execute(
                        SQL_BUMP_DISCOUNT, {"id": bundle.discount.id}
                    )

                if addon_lines:
                    await self.db.execute(SQL_INSERT_RESERVATION_ADDON, [
                        {
                            "id": str(uuid.uuid4()),
                            "reservation_id": bundle.id,
                            "addon_id": line.addon.id,
                            "quantity": line.quantity,
                            "unit_price": line.addon.price,
                            "currency": line.addon.currency,
                        }
                        for line in addon_lines
                    ])

                await self.db.execute(SQL_UPSERT_SUCCESS_TX, _tx_params(
                    bundle, "success", reference=reference, fees=fees,
                    gateway_amount=gateway_amount, channel=channel,
                    paid_at=paid_at, payload=payload, created=created,
                ))
        return tickets

    async def record_unfulfilled(
        self,
        bundle: ReservationBundle,
        *,
        reference: str,
        fees: FeeBreakdown,
        gateway_amount: Optional[int],
        channel: Optional[str],
        paid_at: Optional[str],
        payload: Optional[Dict[str, Any]],
    ) -> None:
        """Paid but no inventory: keep a ledger row so it can be refunded."""
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(SQL_INSERT_UNFULFILLED_TX, _tx_params(
                    bundle, "unfulfilled", reference=reference, fees=fees,
                    gateway_amount=gateway_amount, channel=channel,
                    paid_at=paid_at, payload=payload, created=now_ts(),
                ))


def _tx_params(
    bundle: ReservationBundle,
    status: str,
    *,
    reference: str,
    fees: FeeBreakdown,
    gateway_amount: Optional[int],
    channel: Optional[str],
    paid_at: Optional[str],
    payload: Optional[Dict[str, Any]],
    created: float,
) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "reference": reference,
        "reservation_id": bundle.id,
        "event_id": bundle.event.id,
        "amount": fees.total_charge,
        "gateway_amount": gateway_amount,
        "currency": bundle.tier.currency,
        "channel": channel,
        "status": status,
        "subtotal": fees.subtotal,
        "platform_fee": fees.platform_fee,
        "processor_fee": fees.processor_fee,
        "organizer_net": fees.organizer_net,
        "platform_fee_rate": fees.rates.platform,
        "processor_fee_rate": fees.rates.processor,
        "fee_bearer": fees.fee_bearer,
        "paid_at": paid_at,
        "metadata": payload,
        "created_at": created,
    }


def fee_rates_from_setting(value: Any) -> FeeRates:
    """`system_settings['fees']` -> FeeRates, defaults for bad/missing keys."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            value = None
    if not isinstance(value, dict):
        return DEFAULT_RATES
    platform = as_rate(value.get("platform_fee_percent"))
    processor = as_rate(value.get("processor_fee_percent"))
    return FeeRates(
        platform=DEFAULT_RATES.platform if platform is None else platform,
        processor=DEFAULT_RATES.processor if processor is None else processor,
    )
