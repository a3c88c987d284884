from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Numeric,
    JSON,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
    text,
)


Base = declarative_base()

# Reservation: pending | confirmed | cancelled | expired
# Ticket: valid | used | cancelled
# Transaction: success | unfulfilled
# Payout: pending | processing | paid | failed


# ----------------------------
# ORM models
# ----------------------------
class Organizer(Base):
    __tablename__ = "organizers"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    # nullable: falls back to the global setting
    platform_fee_percent = Column(Numeric(10, 6), nullable=True)


class OrganizationMember(Base):
    __tablename__ = "organization_team"
    organization_id = Column(
        String, ForeignKey("organizers.id"), primary_key=True
    )
    user_id = Column(String, primary_key=True)
    role = Column(String, nullable=False, default="member")


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, ForeignKey("organizers.id"), nullable=False)
    title = Column(String, nullable=False)
    # customer | organizer
    fee_bearer = Column(String, nullable=False, default="customer")
    platform_fee_percent = Column(Numeric(10, 6), nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "fee_bearer IN ('customer','organizer')",
            name="ck_events_fee_bearer",
        ),
    )


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="GHS")
    total_quantity = Column(Integer, nullable=False)
    quantity_sold = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "quantity_sold >= 0 AND quantity_sold <= total_quantity",
            name="ck_ticket_tiers_capacity",
        ),
    )


class EventAddon(Base):
    __tablename__ = "event_addons"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="GHS")
    is_active = Column(Boolean, nullable=False, default=True)


class Discount(Base):
    __tablename__ = "discounts"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    code = Column(String, nullable=False)
    # percentage | fixed (fixed value is in minor units)
    type = Column(String, nullable=False)
    value = Column(Numeric(12, 4), nullable=False)
    used_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("event_id", "code", name="uq_discounts_code"),
        CheckConstraint(
            "type IN ('percentage','fixed')", name="ck_discounts_type"
        ),
    )


class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default="pending")
    discount_id = Column(String, ForeignKey("discounts.id"), nullable=True)
    # {addon_id: qty} picked at checkout
    addons = Column(JSON, nullable=True)
    user_id = Column(String, nullable=True)
    guest_email = Column(String, nullable=True)
    guest_name = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservations_quantity"),
    )


class ReservationAddon(Base):
    __tablename__ = "reservation_addons"
    id = Column(String, primary_key=True)
    reservation_id = Column(String, ForeignKey("reservations.id"),
                            nullable=False)
    addon_id = Column(String, ForeignKey("event_addons.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)  # snapshot, minor units
    currency = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("reservation_id", "addon_id",
                         name="uq_reservation_addons"),
    )


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    reservation_id = Column(String, ForeignKey("reservations.id"),
                            nullable=False, index=True)
    user_id = Column(String, nullable=True)
    qr_code_hash = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="valid")
    order_reference = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True)
    reference = Column(String, nullable=False, index=True)
    reservation_id = Column(String, ForeignKey("reservations.id"),
                            nullable=False)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    # computed charge for this reservation, minor units
    amount = Column(Integer, nullable=False)
    # what the gateway reported for the whole charge, minor units
    gateway_amount = Column(Integer, nullable=True)
    currency = Column(String, nullable=False)
    channel = Column(String, nullable=True)
    status = Column(String, nullable=False)
    subtotal = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    processor_fee = Column(Integer, nullable=False)
    organizer_net = Column(Integer, nullable=False)
    # rates applied at settlement time, never recomputed
    platform_fee_rate = Column(Numeric(10, 6), nullable=False)
    processor_fee_rate = Column(Numeric(10, 6), nullable=False)
    fee_bearer = Column(String, nullable=False)
    paid_at = Column(String, nullable=True)
    payload = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("reference", "reservation_id",
                         name="uq_transactions_reference_reservation"),
        Index(
            "uq_transactions_success_reservation",
            "reservation_id",
            unique=True,
            sqlite_where=text("status = 'success'"),
            postgresql_where=text("status = 'success'"),
        ),
    )


class Payout(Base):
    __tablename__ = "payouts"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    organizer_id = Column(String, ForeignKey("organizers.id"),
                          nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    reference = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    requested_by = Column(String, nullable=True)
    processed_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payouts_amount"),
        Index(
            "uq_payouts_open_per_event",
            "event_id",
            unique=True,
            sqlite_where=text("status IN ('pending','processing')"),
            postgresql_where=text("status IN ('pending','processing')"),
        ),
    )


class SystemSetting(Base):
    __tablename__ = "system_settings"
    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(Float, nullable=True)


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id = Column(String, primary_key=True)
    role = Column(String, primary_key=True)


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False)


class ProcessedWebhookEvent(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
