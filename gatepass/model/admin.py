# gatepass/model/admin.py
"""
Admin data access: role lookup, fee settings and overrides, ledger
listing, activity log.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import text, bindparam, JSON, Numeric
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..fees import FEE_BEARERS, FeeRates, as_rate
from ..helpers import now_ts, to_iso
from ..notify import ErrorReporter
from .ledger import Gated, fee_rates_from_setting

SUPER_ADMIN = "super_admin"

# sentinel: "leave this column as it is"
KEEP = object()

SQL_UPSERT_SETTING = text("""
    INSERT INTO system_settings(key, value, updated_at)
    VALUES (:key, :value, :ts)
    ON CONFLICT (key) DO UPDATE SET
        value = excluded.value, updated_at = excluded.updated_at
""").bindparams(bindparam("value", type_=JSON))

SQL_INSERT_ACTIVITY = text("""
    INSERT INTO activity_logs(organization_id, user_id, action, entity_type,
                              entity_id, metadata, created_at)
    VALUES (:org, :user_id, :action, :entity_type, :entity_id, :details,
            :ts)
""").bindparams(bindparam("details", type_=JSON))


def _pct(value: Any) -> Optional[str]:
    return None if value is None else str(Decimal(str(value)))


def parse_override(value: Any) -> Optional[Decimal]:
    """None clears the override; anything else must be a rate in [0, 1)."""
    if value is None:
        return None
    rate = as_rate(value)
    if rate is None:
        raise ValueError("fee percent must be a fraction in [0, 1)")
    return rate


class AdminStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def is_super_admin(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT 1 FROM user_roles
                    WHERE user_id = :uid AND role = :role
                """), {"uid": user_id, "role": SUPER_ADMIN})).first()
        return row is not None

    async def fee_settings(self) -> FeeRates:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT value FROM system_settings WHERE key = 'fees'")
                )).first()
        return fee_rates_from_setting(row[0] if row else None)

    async def update_fee_settings(
        self, platform: Any = None, processor: Any = None
    ) -> FeeRates:
        current = await self.fee_settings()
        new_platform = current.platform
        new_processor = current.processor
        if platform is not None:
            new_platform = as_rate(platform)
            if new_platform is None:
                raise ValueError("platform fee percent must be in [0, 1)")
        if processor is not None:
            new_processor = as_rate(processor)
            if new_processor is None:
                raise ValueError("processor fee percent must be in [0, 1)")
        rates = FeeRates(platform=new_platform, processor=new_processor)
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(SQL_UPSERT_SETTING, {
                    "key": "fees", "value": rates.as_dict(), "ts": now_ts(),
                })
        return rates

    async def set_event_fees(
        self,
        event_id: str,
        *,
        platform_fee_percent: Any = KEEP,
        fee_bearer: Any = KEEP,
    ) -> Dict[str, Any]:
        sets = []
        params: Dict[str, Any] = {"id": event_id}
        binds = []
        if platform_fee_percent is not KEEP:
            sets.append("platform_fee_percent = :pct")
            params["pct"] = parse_override(platform_fee_percent)
            binds.append(bindparam("pct", type_=Numeric(10, 6)))
        if fee_bearer is not KEEP:
            if fee_bearer not in FEE_BEARERS:
                raise ValueError("fee_bearer must be customer or organizer")
            sets.append("fee_bearer = :bearer")
            params["bearer"] = fee_bearer
        if not sets:
            raise ValueError("nothing to update")

        stmt = text(
            "UPDATE events SET " + ", ".join(sets) + " WHERE id = :id "
            "RETURNING id, organizer_id, fee_bearer, platform_fee_percent"
        ).bindparams(*binds)
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(stmt, params)).mappings().first()
        if row is None:
            raise NotFound("Event")
        return {
            "id": row["id"],
            "organizer_id": row["organizer_id"],
            "fee_bearer": row["fee_bearer"],
            "platform_fee_percent": _pct(row["platform_fee_percent"]),
        }

    async def set_organizer_fee(
        self, organizer_id: str, platform_fee_percent: Any
    ) -> Dict[str, Any]:
        stmt = text("""
            UPDATE organizers SET platform_fee_percent = :pct
            WHERE id = :id
            RETURNING id, platform_fee_percent
        """).bindparams(bindparam("pct", type_=Numeric(10, 6)))
        pct = parse_override(platform_fee_percent)
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    stmt, {"id": organizer_id, "pct": pct}
                )).mappings().first()
        if row is None:
            raise NotFound("Organizer")
        return {
            "id": row["id"],
            "platform_fee_percent": _pct(row["platform_fee_percent"]),
        }

    async def list_transactions(
        self,
        *,
        limit: int = 200,
        status: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        where = []
        params: Dict[str, Any] = {"lim": max(1, min(int(limit), 1000))}
        if status:
            where.append("tx.status = :status")
            params["status"] = status
        if event_id:
            where.append("tx.event_id = :event_id")
            params["event_id"] = event_id
        sql = """
            SELECT tx.id, tx.reference, tx.reservation_id, tx.event_id,
                   e.title AS event_title, tx.amount, tx.gateway_amount,
                   tx.currency, tx.channel, tx.status, tx.subtotal,
                   tx.platform_fee, tx.processor_fee, tx.organizer_net,
                   tx.platform_fee_rate, tx.processor_fee_rate,
                   tx.fee_bearer, tx.paid_at, tx.created_at
            FROM transactions AS tx
            JOIN events AS e ON e.id = tx.event_id
        """
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY tx.created_at DESC LIMIT :lim"
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text(sql), params
                )).mappings().all()
        out = []
        for r in rows:
            item = dict(r)
            item["platform_fee_rate"] = _pct(r["platform_fee_rate"])
            item["processor_fee_rate"] = _pct(r["processor_fee_rate"])
            item["created_at"] = to_iso(r["created_at"])
            out.append(item)
        return out

    async def log_activity(
        self,
        reporter: ErrorReporter,
        *,
        organization_id: str,
        user_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Best effort; a failed write is reported, never raised."""
        try:
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(SQL_INSERT_ACTIVITY, {
                        "org": organization_id,
                        "user_id": user_id,
                        "action": action,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "details": details or {},
                        "ts": now_ts(),
                    })
        except Exception as e:
            reporter.report(
                "activity_log_failed", e,
                action=action, entity_type=entity_type, entity_id=entity_id,
            )
