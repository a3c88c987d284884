import uuid
from decimal import Decimal

from sqlalchemy import select, text

from gatepass.helpers import now_ts
from gatepass.model.db import (
    Discount, Event, EventAddon, Organizer, OrganizationMember, Reservation,
    TicketTier, Transaction, UserRole,
)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


async def create_event(
    session_factory,
    *,
    price=10000,
    total=10,
    sold=0,
    fee_bearer="customer",
    event_fee=None,
    organizer_fee=None,
    owner="user_owner",
) -> dict:
    ids = {
        "organizer_id": new_id("org"),
        "event_id": new_id("evt"),
        "tier_id": new_id("tier"),
        "owner": owner,
    }
    async with session_factory() as db:
        async with db.begin():
            db.add(Organizer(
                id=ids["organizer_id"], user_id=owner, name="Org",
                platform_fee_percent=(
                    None if organizer_fee is None else Decimal(organizer_fee)
                ),
            ))
            # no relationship() between the tables: flush parents first
            await db.flush()
            db.add(Event(
                id=ids["event_id"], organizer_id=ids["organizer_id"],
                title="Show", fee_bearer=fee_bearer,
                platform_fee_percent=(
                    None if event_fee is None else Decimal(event_fee)
                ),
                created_at=now_ts(),
            ))
            await db.flush()
            db.add(TicketTier(
                id=ids["tier_id"], event_id=ids["event_id"], name="GA",
                price=price, currency="GHS", total_quantity=total,
                quantity_sold=sold,
            ))
    return ids


async def add_tier(session_factory, event_id, *, price=10000, total=10,
                   sold=0) -> str:
    tier_id = new_id("tier")
    async with session_factory() as db:
        async with db.begin():
            db.add(TicketTier(
                id=tier_id, event_id=event_id, name="VIP", price=price,
                currency="GHS", total_quantity=total, quantity_sold=sold,
            ))
    return tier_id


async def create_reservation(
    session_factory,
    ids: dict,
    *,
    tier_id=None,
    quantity=1,
    status="pending",
    discount_id=None,
    addons=None,
    email="guest@example.com",
) -> str:
    rid = new_id("res")
    async with session_factory() as db:
        async with db.begin():
            db.add(Reservation(
                id=rid, event_id=ids["event_id"],
                tier_id=tier_id or ids["tier_id"], quantity=quantity,
                status=status, discount_id=discount_id, addons=addons,
                guest_email=email, guest_name="Guest",
                created_at=now_ts(),
            ))
    return rid


async def create_discount(session_factory, ids, *, type="fixed",
                          value="1000") -> str:
    did = new_id("disc")
    async with session_factory() as db:
        async with db.begin():
            db.add(Discount(
                id=did, event_id=ids["event_id"], code=did.upper(),
                type=type, value=Decimal(value),
            ))
    return did


async def create_addon(session_factory, event_id, *, price=2000,
                       active=True) -> str:
    aid = new_id("addon")
    async with session_factory() as db:
        async with db.begin():
            db.add(EventAddon(
                id=aid, event_id=event_id, name="Parking", price=price,
                currency="GHS", is_active=active,
            ))
    return aid


async def add_member(session_factory, organizer_id, user_id):
    async with session_factory() as db:
        async with db.begin():
            db.add(OrganizationMember(
                organization_id=organizer_id, user_id=user_id,
            ))


async def make_super_admin(session_factory, user_id="user_admin"):
    async with session_factory() as db:
        async with db.begin():
            db.add(UserRole(user_id=user_id, role="super_admin"))
    return user_id


async def record_sale(session_factory, ids, reservation_id, *,
                      organizer_net=9405, status="success") -> str:
    tx_id = new_id("tx")
    async with session_factory() as db:
        async with db.begin():
            db.add(Transaction(
                id=tx_id, reference=new_id("ref"),
                reservation_id=reservation_id, event_id=ids["event_id"],
                amount=10000, currency="GHS", status=status,
                subtotal=10000, platform_fee=400, processor_fee=195,
                organizer_net=organizer_net,
                platform_fee_rate=Decimal("0.04"),
                processor_fee_rate=Decimal("0.0195"),
                fee_bearer="organizer", created_at=now_ts(),
            ))
    return tx_id


async def fetch_one(session_factory, sql: str, **params):
    async with session_factory() as db:
        return (await db.execute(text(sql), params)).mappings().first()


async def fetch_all(session_factory, sql: str, **params):
    async with session_factory() as db:
        return (await db.execute(text(sql), params)).mappings().all()


async def reservation_status(session_factory, rid: str) -> str:
    async with session_factory() as db:
        return (await db.execute(
            select(Reservation.status).where(Reservation.id == rid)
        )).scalar_one()
