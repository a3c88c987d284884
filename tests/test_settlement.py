import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from gatepass.errors import (
    ErrorCode, NoReservationsFound, VerificationError, VerificationFailed,
)
from gatepass.gateway import MockGateway, TransactionResult
from gatepass.model import ledger
from gatepass.model.db import Discount
from gatepass.model.ledger import SettlementStore
from gatepass.notify import Notifier
from gatepass.settlement import SettlementEngine
from tests.helpers import (
    add_tier, create_addon, create_discount, create_event,
    create_reservation, fetch_all, fetch_one, reservation_status,
)

pytestmark = pytest.mark.asyncio


class RecordingNotifier(Notifier):
    def __init__(self, fail=False):
        self.handoffs = []
        self.fail = fail

    async def deliver(self, handoff):
        self.handoffs.append(handoff)
        if self.fail:
            raise RuntimeError("mailer down")


def paid(reference, amount=None, **metadata):
    return TransactionResult(
        reference=reference, status="success", amount=amount,
        currency="GHS", channel="card", metadata=metadata,
        raw={"reference": reference, "status": "success"},
    )


def engine_for(store, **kw):
    return SettlementEngine(store.session_factory, store.gated, **kw)


async def test_settles_reservation_into_tickets(store):
    ids = await create_event(store.session_factory, total=5)
    rid = await create_reservation(store.session_factory, ids, quantity=2)
    notifier = RecordingNotifier()
    engine = engine_for(store, notifier=notifier)

    result = await engine.settle("ref_a", [rid], paid("ref_a", 21214))

    assert result.success and not result.failures
    assert len(result.tickets) == 2
    assert all(t.order_reference == "ref_a" for t in result.tickets)
    # independent high-entropy tokens
    tokens = {t.qr_code_hash for t in result.tickets}
    assert len(tokens) == 2 and all(len(t) >= 40 for t in tokens)
    assert await reservation_status(store.session_factory, rid) == "confirmed"

    tier = await fetch_one(store.session_factory,
                           "SELECT quantity_sold FROM ticket_tiers "
                           "WHERE id = :id", id=ids["tier_id"])
    assert tier["quantity_sold"] == 2

    tx = await fetch_one(store.session_factory,
                         "SELECT * FROM transactions WHERE reference = :r",
                         r="ref_a")
    assert tx["status"] == "success"
    assert tx["subtotal"] == 20000
    assert tx["platform_fee"] == 800
    assert tx["amount"] == 21214
    assert tx["amount"] == tx["subtotal"] + tx["platform_fee"] \
        + tx["processor_fee"]
    assert float(tx["platform_fee_rate"]) == pytest.approx(0.04)
    assert len(notifier.handoffs) == 1


async def test_second_settle_is_idempotent_with_zero_writes(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids)
    engine = engine_for(store)

    first = await engine.settle("ref_idem", [rid], paid("ref_idem"))
    writes_before = store.writes.count
    second = await engine.settle("ref_idem", [rid], paid("ref_idem"))

    assert second.success and second.already_settled
    assert sorted(t.id for t in second.tickets) == \
        sorted(t.id for t in first.tickets)
    assert store.writes.count == writes_before


async def test_no_oversell_under_concurrency(store):
    n, m = 3, 8
    ids = await create_event(store.session_factory, total=n)
    rids = [await create_reservation(store.session_factory, ids)
            for _ in range(m)]
    engine = engine_for(store)

    results = await asyncio.gather(*[
        engine.settle(f"ref_{i}", [rid], paid(f"ref_{i}"))
        for i, rid in enumerate(rids)
    ])

    won = [r for r in results if r.success]
    lost = [r for r in results if not r.success]
    assert len(won) == n
    assert len(lost) == m - n
    assert all(r.failures[0].code == ErrorCode.INVENTORY_EXCEEDED
               for r in lost)

    tier = await fetch_one(store.session_factory,
                           "SELECT quantity_sold FROM ticket_tiers "
                           "WHERE id = :id", id=ids["tier_id"])
    assert tier["quantity_sold"] == n
    tickets = await fetch_all(store.session_factory, "SELECT id FROM tickets")
    assert len(tickets) == n

    # paid but not fulfilled: kept on the ledger for refunds
    unfulfilled = await fetch_all(
        store.session_factory,
        "SELECT reservation_id FROM transactions WHERE status = 'unfulfilled'",
    )
    assert len(unfulfilled) == m - n


async def test_concurrent_settles_of_same_reference_have_one_winner(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids, quantity=2)
    engine = engine_for(store)

    results = await asyncio.gather(*[
        engine.settle("ref_race", [rid], paid("ref_race")) for _ in range(5)
    ])

    assert all(r.success for r in results)
    ticket_sets = {tuple(sorted(t.id for t in r.tickets)) for r in results}
    assert len(ticket_sets) == 1
    rows = await fetch_all(store.session_factory, "SELECT id FROM tickets")
    assert len(rows) == 2


async def test_discount_used_once_across_retries(store):
    ids = await create_event(store.session_factory, price=5000)
    did = await create_discount(store.session_factory, ids, value="1000")
    rid = await create_reservation(store.session_factory, ids,
                                   discount_id=did)
    engine = engine_for(store)

    await engine.settle("ref_d", [rid], paid("ref_d"))
    await engine.settle("ref_d", [rid], paid("ref_d"))
    # a retry under another reference must not count again either
    retry = await engine.settle("ref_d2", [rid], paid("ref_d2"))

    assert retry.success
    row = await fetch_one(store.session_factory,
                          "SELECT used_count FROM discounts WHERE id = :id",
                          id=did)
    assert row["used_count"] == 1
    tx = await fetch_one(store.session_factory,
                         "SELECT subtotal FROM transactions "
                         "WHERE reservation_id = :r", r=rid)
    assert tx["subtotal"] == 4000


async def test_duplicate_payment_is_reported(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids)
    reported = []

    class Reporter:
        def report(self, kind, error=None, **context):
            reported.append((kind, context))

    engine = engine_for(store, reporter=Reporter())
    await engine.settle("ref_one", [rid], paid("ref_one"))
    second = await engine.settle("ref_two", [rid], paid("ref_two"))

    assert second.success
    assert {t.order_reference for t in second.tickets} == {"ref_one"}
    assert reported[0][0] == "duplicate_payment"
    assert reported[0][1]["settled_reference"] == "ref_one"


async def test_partial_batch_success(store):
    ids = await create_event(store.session_factory, total=5)
    sold_out = await add_tier(store.session_factory, ids["event_id"],
                              total=1, sold=1)
    ok_rid = await create_reservation(store.session_factory, ids)
    bad_rid = await create_reservation(store.session_factory, ids,
                                       tier_id=sold_out)
    engine = engine_for(store)

    result = await engine.settle("ref_p", [ok_rid, bad_rid], paid("ref_p"))

    assert result.success
    assert {t.reservation_id for t in result.tickets} == {ok_rid}
    assert len(result.failures) == 1
    assert result.failures[0].reservation_id == bad_rid
    assert result.failures[0].code == ErrorCode.INVENTORY_EXCEEDED
    assert await reservation_status(store.session_factory, bad_rid) \
        == "pending"


async def test_missing_reservation_does_not_stop_batch(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids)
    engine = engine_for(store)

    result = await engine.settle("ref_m", ["res_nope", rid], paid("ref_m"))

    assert result.success
    assert result.failures[0].code == ErrorCode.RESERVATION_NOT_FOUND


async def test_metadata_custom_fields_fallback(store):
    ids = await create_event(store.session_factory)
    r1 = await create_reservation(store.session_factory, ids)
    r2 = await create_reservation(store.session_factory, ids)
    engine = engine_for(store)

    result = await engine.settle(
        "ref_meta", None, paid("ref_meta", custom_fields=f"{r1},{r2}")
    )

    assert result.success
    assert {t.reservation_id for t in result.tickets} == {r1, r2}


async def test_no_reservations_found(store):
    engine = engine_for(store)
    with pytest.raises(NoReservationsFound):
        await engine.settle("ref_none", None, paid("ref_none"))


async def test_expired_reservation_settles_late(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids,
                                   status="expired")
    result = await engine_for(store).settle("ref_late", [rid],
                                            paid("ref_late"))
    assert result.success
    assert await reservation_status(store.session_factory, rid) \
        == "confirmed"


async def test_cancelled_reservation_is_not_settled(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids,
                                   status="cancelled")
    result = await engine_for(store).settle("ref_c", [rid], paid("ref_c"))
    assert not result.success
    assert result.failures[0].code == ErrorCode.RESERVATION_UNAVAILABLE


async def test_verifies_through_gateway_when_no_payload(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids)
    gw = MockGateway()
    gw.add_transaction("ref_gw", amount=10607,
                       metadata={"reservation_id": rid})
    engine = engine_for(store, gateway=gw)

    result = await engine.settle("ref_gw")

    assert result.success and gw.calls == 1


async def test_gateway_failure_statuses(store):
    gw = MockGateway()
    gw.add_transaction("ref_abandoned", status="abandoned")
    engine = engine_for(store, gateway=gw)

    with pytest.raises(VerificationFailed):
        await engine.settle("ref_abandoned", ["r"])
    gw.unreachable = True
    with pytest.raises(VerificationError):
        await engine.settle("ref_abandoned", ["r"])


async def test_addons_recorded_with_price_snapshot(store):
    ids = await create_event(store.session_factory, price=10000)
    aid = await create_addon(store.session_factory, ids["event_id"],
                             price=2000)
    inactive = await create_addon(store.session_factory, ids["event_id"],
                                  active=False)
    rid = await create_reservation(store.session_factory, ids,
                                   addons={aid: 1, inactive: 3})

    result = await engine_for(store).settle("ref_add", [rid],
                                            paid("ref_add"))

    assert result.success
    rows = await fetch_all(store.session_factory,
                           "SELECT addon_id, quantity, unit_price "
                           "FROM reservation_addons")
    assert [(r["addon_id"], r["quantity"], r["unit_price"]) for r in rows] \
        == [(aid, 1, 2000)]
    tx = await fetch_one(store.session_factory,
                         "SELECT amount, platform_fee FROM transactions")
    assert tx["platform_fee"] == 400
    assert tx["amount"] == 12647


async def test_request_addons_apply_to_first_reservation(store):
    ids = await create_event(store.session_factory)
    aid = await create_addon(store.session_factory, ids["event_id"])
    r1 = await create_reservation(store.session_factory, ids)
    r2 = await create_reservation(store.session_factory, ids)

    await engine_for(store).settle("ref_ra", [r1, r2], paid("ref_ra"),
                                   addons={aid: 2})

    rows = await fetch_all(store.session_factory,
                           "SELECT reservation_id, quantity "
                           "FROM reservation_addons")
    assert [(r["reservation_id"], r["quantity"]) for r in rows] == [(r1, 2)]


async def test_event_override_snapshotted_on_transaction(store):
    ids = await create_event(store.session_factory, event_fee="0.02",
                             organizer_fee="0.03", fee_bearer="organizer")
    rid = await create_reservation(store.session_factory, ids)

    await engine_for(store).settle("ref_ov", [rid], paid("ref_ov"))

    tx = await fetch_one(store.session_factory,
                         "SELECT * FROM transactions")
    assert float(tx["platform_fee_rate"]) == pytest.approx(0.02)
    assert tx["platform_fee"] == 200
    assert tx["processor_fee"] == 195
    assert tx["organizer_net"] == 10000 - 200 - 195
    assert tx["fee_bearer"] == "organizer"


async def test_notification_failure_does_not_undo_settlement(store):
    ids = await create_event(store.session_factory)
    rid = await create_reservation(store.session_factory, ids)
    notifier = RecordingNotifier(fail=True)

    result = await engine_for(store, notifier=notifier).settle(
        "ref_n", [rid], paid("ref_n")
    )

    assert result.success and len(notifier.handoffs) == 1
    assert await reservation_status(store.session_factory, rid) \
        == "confirmed"


async def set_tier_total(store, tier_id, total):
    async with store.session_factory() as db:
        async with db.begin():
            await db.execute(
                text("UPDATE ticket_tiers SET total_quantity = :t "
                     "WHERE id = :id"),
                {"t": total, "id": tier_id},
            )


async def test_used_reference_does_not_settle_other_reservations(store):
    ids = await create_event(store.session_factory, total=10)
    paid_rid = await create_reservation(store.session_factory, ids)
    other_rid = await create_reservation(store.session_factory, ids,
                                         quantity=3)
    engine = engine_for(store)

    first = await engine.settle("ref_used", [paid_rid], paid("ref_used"))
    writes_before = store.writes.count
    second = await engine.settle("ref_used", [other_rid], paid("ref_used"))

    assert second.success and second.already_settled
    assert sorted(t.id for t in second.tickets) == \
        sorted(t.id for t in first.tickets)
    assert store.writes.count == writes_before
    assert await reservation_status(store.session_factory, other_rid) \
        == "pending"
    rows = await fetch_all(store.session_factory,
                           "SELECT id FROM tickets WHERE reservation_id = :r",
                           r=other_rid)
    assert rows == []


async def test_unfulfilled_reservation_retried_under_its_reference(store):
    ids = await create_event(store.session_factory, total=5)
    sold_out = await add_tier(store.session_factory, ids["event_id"],
                              total=1, sold=1)
    ok_rid = await create_reservation(store.session_factory, ids)
    late_rid = await create_reservation(store.session_factory, ids,
                                        tier_id=sold_out)
    engine = engine_for(store)

    first = await engine.settle("ref_u", [ok_rid, late_rid], paid("ref_u"))
    assert first.failures[0].code == ErrorCode.INVENTORY_EXCEEDED

    await set_tier_total(store, sold_out, 2)
    retry = await engine.settle("ref_u", [ok_rid, late_rid], paid("ref_u"))

    assert retry.success and not retry.failures
    assert not retry.already_settled
    assert {t.reservation_id for t in retry.tickets} == {ok_rid, late_rid}
    rows = await fetch_all(
        store.session_factory,
        "SELECT status FROM transactions "
        "WHERE reference = :ref AND reservation_id = :r",
        ref="ref_u", r=late_rid,
    )
    assert [r["status"] for r in rows] == ["success"]
    assert await reservation_status(store.session_factory, late_rid) \
        == "confirmed"


async def test_unfulfilled_upgraded_to_success_when_capacity_frees(store):
    ids = await create_event(store.session_factory, total=1, sold=1)
    rid = await create_reservation(store.session_factory, ids)
    engine = engine_for(store)

    first = await engine.settle("ref_up", [rid], paid("ref_up"))
    assert not first.success
    await set_tier_total(store, ids["tier_id"], 2)
    second = await engine.settle("ref_up", [rid], paid("ref_up"))

    assert second.success and len(second.tickets) == 1
    rows = await fetch_all(
        store.session_factory,
        "SELECT status FROM transactions "
        "WHERE reference = :ref AND reservation_id = :r",
        ref="ref_up", r=rid,
    )
    assert [r["status"] for r in rows] == ["success"]


async def test_failed_write_leaves_reservation_untouched(store, monkeypatch):
    ids = await create_event(store.session_factory, total=5)
    rid = await create_reservation(store.session_factory, ids, quantity=2)
    engine = engine_for(store)

    # both tickets get the same token: the second insert violates uniqueness
    monkeypatch.setattr(ledger, "new_qr_token", lambda: "qr-collision")
    result = await engine.settle("ref_atomic", [rid], paid("ref_atomic"))

    assert not result.success and result.retryable
    assert result.failures[0].code == ErrorCode.PERSISTENCE_ERROR
    assert await reservation_status(store.session_factory, rid) == "pending"
    tier = await fetch_one(store.session_factory,
                           "SELECT quantity_sold FROM ticket_tiers "
                           "WHERE id = :id", id=ids["tier_id"])
    assert tier["quantity_sold"] == 0
    assert await fetch_all(store.session_factory,
                           "SELECT id FROM tickets") == []
    assert await fetch_all(store.session_factory,
                           "SELECT id FROM transactions") == []

    monkeypatch.undo()
    retry = await engine.settle("ref_atomic", [rid], paid("ref_atomic"))
    assert retry.success and len(retry.tickets) == 2


async def test_unfulfilled_write_failure_keeps_inventory_exceeded(
    store, monkeypatch
):
    ids = await create_event(store.session_factory, total=1, sold=1)
    rid = await create_reservation(store.session_factory, ids)
    reported = []

    class Reporter:
        def report(self, kind, error=None, **context):
            reported.append(kind)

    async def broken(self, *args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(SettlementStore, "record_unfulfilled", broken)
    result = await engine_for(store, reporter=Reporter()).settle(
        "ref_full", [rid], paid("ref_full")
    )

    assert not result.success and not result.retryable
    assert result.failures[0].code == ErrorCode.INVENTORY_EXCEEDED
    assert reported == ["unfulfilled_record_failed", "paid_unfulfilled"]


async def test_discount_has_no_usage_cap(store):
    assert "max_uses" not in Discount.__table__.c
    ids = await create_event(store.session_factory, price=5000)
    did = await create_discount(store.session_factory, ids, value="1000")
    rids = [await create_reservation(store.session_factory, ids,
                                     discount_id=did) for _ in range(3)]
    engine = engine_for(store)

    for i, rid in enumerate(rids):
        assert (await engine.settle(f"ref_cap{i}", [rid],
                                    paid(f"ref_cap{i}"))).success

    row = await fetch_one(store.session_factory,
                          "SELECT used_count FROM discounts WHERE id = :id",
                          id=did)
    assert row["used_count"] == 3
