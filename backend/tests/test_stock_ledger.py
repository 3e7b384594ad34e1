"""
Stock ledger tests.

Verifies:
- IN / OUT / ADJUSTMENT semantics and the never-negative rule
- The movement chain (before/after continuity, head pointer, sum of deltas)
- Append-only movements
- Freeze on a broken chain and release after reconciliation
- Role checks on stock operations
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from matreq.models import StockRecord, StockMovement, AuditLog, MovementType, MovementSource
from matreq.services import audit_service, stock_ledger_service as ledger
from matreq.services.audit_service import list_audit_events
from matreq.services.concurrency import InsertRaceError, lock_or_create, run_with_retry
from matreq.services.errors import (
    ImmutableRecordError,
    InvalidStateError,
    LedgerConsistencyError,
    UnauthorizedTransitionError,
)
from matreq.validation import ValidationError

from conftest import actor


@pytest.fixture
def cement_stock(db_session, storekeeper, store, cement):
    return ledger.create_stock_record(
        cement.id, store.id, storekeeper.id, reorder_level="20", low_stock_threshold="10", opening_quantity="150",
    )


def _movements(stock_id):
    return ledger.list_movements(stock_id, limit=1000)[::-1]


# =============================================================================
# MOVEMENT SEMANTICS
# =============================================================================


class TestMovements:

    def test_opening_balance_is_first_movement(self, cement_stock):
        movements = _movements(cement_stock.id)
        assert len(movements) == 1
        first = movements[0]
        assert first.movement_type == MovementType.ADJUSTMENT.value
        assert first.quantity_before == Decimal("0")
        assert first.quantity_after == Decimal("150")
        assert cement_stock.last_movement_id == first.id

    def test_receipt_increases_on_hand(self, cement_stock, storekeeper, store, cement):
        result = ledger.receive_goods(cement.id, store.id, "40.5", storekeeper.id, source_id="GRN-001")
        assert result.applied
        assert result.quantity_before == Decimal("150.000")
        assert result.quantity_after == Decimal("190.500")
        assert result.movement.source_type == MovementSource.GOODS_RECEIPT.value
        assert result.movement.source_id == "GRN-001"
        assert ledger.get_stock_record(cement_stock.id).quantity_on_hand == Decimal("190.500")

    def test_receipt_creates_missing_record(self, db_session, storekeeper, store, sand):
        assert ledger.find_stock_record(sand.id, store.id) is None
        result = ledger.receive_goods(sand.id, store.id, 12, storekeeper.id)
        stock = ledger.find_stock_record(sand.id, store.id)
        assert stock is not None
        assert stock.quantity_on_hand == Decimal("12")
        assert stock.last_movement_id == result.movement.id

    def test_out_beyond_on_hand_is_rejected_not_clamped(self, cement_stock, storekeeper, store, cement):
        result = ledger.apply_movement(
            cement.id, store.id, MovementType.OUT, "151",
            source_type=MovementSource.REQUEST_ISSUANCE, source_id=1, actor_user_id=storekeeper.id,
        )
        assert not result.applied
        assert result.reason == ledger.REJECT_INSUFFICIENT_STOCK
        assert result.quantity_on_hand == Decimal("150.000")
        assert result.quantity_requested == Decimal("151.000")

    def test_out_exact_on_hand_reaches_zero(self, cement_stock, storekeeper, store, cement, db_session):
        result = ledger.apply_movement(
            cement.id, store.id, MovementType.OUT, "150",
            source_type=MovementSource.REQUEST_ISSUANCE, source_id=1, actor_user_id=storekeeper.id,
        )
        db_session.commit()
        assert result.applied
        assert result.quantity_after == Decimal("0")
        stock = ledger.get_stock_record(cement_stock.id)
        assert stock.quantity_on_hand == Decimal("0")
        assert stock.low_stock_alert is True

    def test_out_on_missing_record_is_rejected(self, db_session, storekeeper, store, sand):
        result = ledger.apply_movement(
            sand.id, store.id, MovementType.OUT, 1,
            source_type=MovementSource.REQUEST_ISSUANCE, actor_user_id=storekeeper.id,
        )
        assert not result.applied
        assert result.quantity_on_hand == Decimal("0")
        assert ledger.find_stock_record(sand.id, store.id) is None

    def test_quantities_must_be_positive(self, cement_stock, storekeeper, store, cement):
        with pytest.raises(ValidationError):
            ledger.receive_goods(cement.id, store.id, 0, storekeeper.id)
        with pytest.raises(ValidationError):
            ledger.receive_goods(cement.id, store.id, "-5", storekeeper.id)
        with pytest.raises(ValidationError):
            ledger.adjust_stock(cement.id, store.id, 0, storekeeper.id)

    def test_quantities_quantized_to_three_places(self, cement_stock, storekeeper, store, cement):
        result = ledger.receive_goods(cement.id, store.id, "0.0005", storekeeper.id)
        assert result.movement.quantity_delta == Decimal("0.001")


# =============================================================================
# ADJUSTMENTS (Scenario B)
# =============================================================================


class TestAdjustments:

    def test_negative_adjustment_beyond_on_hand_rejected(self, cement_stock, storekeeper, store, cement):
        movement_count = len(_movements(cement_stock.id))
        audit_count = len(list_audit_events("stock_record", cement_stock.id))

        result = ledger.adjust_stock(cement.id, store.id, "-200", storekeeper.id, note="Count variance")

        assert not result.applied
        assert result.quantity_on_hand == Decimal("150.000")
        assert ledger.get_stock_record(cement_stock.id).quantity_on_hand == Decimal("150.000")
        assert len(_movements(cement_stock.id)) == movement_count
        assert len(list_audit_events("stock_record", cement_stock.id)) == audit_count

    def test_negative_adjustment_within_on_hand_applied(self, cement_stock, storekeeper, store, cement):
        result = ledger.adjust_stock(cement.id, store.id, "-145", storekeeper.id, note="Damaged bags")
        assert result.applied
        assert result.movement.quantity_delta == Decimal("-145")
        stock = ledger.get_stock_record(cement_stock.id)
        assert stock.quantity_on_hand == Decimal("5")
        assert stock.low_stock_alert is True

        audit = list_audit_events("stock_record", cement_stock.id)
        assert audit[-1].action == "stock.adjusted"

    def test_rejected_adjustment_route_returns_409(self, client, cement_stock, storekeeper, store, cement):
        resp = client.post(
            "/api/stock/adjustments",
            json={"material_id": cement.id, "store_id": store.id, "quantity_delta": -200},
            headers=actor(storekeeper),
        )
        assert resp.status_code == 409
        assert resp.json["rejection"]["quantity_on_hand"] == "150.000"


# =============================================================================
# CHAIN INTEGRITY
# =============================================================================


class TestChain:

    def test_chain_continuity_after_mixed_movements(self, cement_stock, storekeeper, store, cement, db_session):
        ledger.receive_goods(cement.id, store.id, 25, storekeeper.id)
        ledger.adjust_stock(cement.id, store.id, "-10.250", storekeeper.id)
        ledger.apply_movement(
            cement.id, store.id, MovementType.OUT, 60,
            source_type=MovementSource.REQUEST_ISSUANCE, source_id=7, actor_user_id=storekeeper.id,
        )
        db_session.commit()

        movements = _movements(cement_stock.id)
        running = Decimal("0")
        for movement in movements:
            assert movement.quantity_before == running
            assert movement.quantity_after == movement.quantity_before + movement.quantity_delta
            running = movement.quantity_after

        stock = ledger.get_stock_record(cement_stock.id)
        assert stock.quantity_on_hand == running == sum(m.quantity_delta for m in movements)
        assert stock.last_movement_id == movements[-1].id

        report = ledger.verify_chain(cement_stock.id)
        assert report.ok
        assert report.movement_count == 4
        assert report.computed_quantity == Decimal("104.750")

    def test_movements_are_append_only(self, cement_stock, db_session):
        movement = _movements(cement_stock.id)[0]
        movement.note = "rewritten"
        with pytest.raises(ImmutableRecordError):
            db_session.flush()
        db_session.rollback()

        movement = _movements(cement_stock.id)[0]
        db_session.delete(movement)
        with pytest.raises(ImmutableRecordError):
            db_session.flush()
        db_session.rollback()

    def test_audit_rows_are_append_only(self, cement_stock, db_session):
        entry = db_session.query(AuditLog).first()
        entry.action = "tampered"
        with pytest.raises(ImmutableRecordError):
            db_session.flush()
        db_session.rollback()

    def test_audit_module_documents_its_invariants(self):
        assert audit_service.__doc__.strip().startswith("Audit invariants")


# =============================================================================
# FREEZE AND RELEASE
# =============================================================================


def _corrupt_on_hand(db_session, stock_id, value):
    db_session.execute(
        update(StockRecord.__table__)
        .where(StockRecord.__table__.c.id == stock_id)
        .values(quantity_on_hand=Decimal(value))
    )
    db_session.commit()
    db_session.expire_all()


class TestFreeze:

    def test_broken_chain_freezes_record(self, cement_stock, storekeeper, store, cement, db_session):
        _corrupt_on_hand(db_session, cement_stock.id, "175")

        with pytest.raises(LedgerConsistencyError) as exc_info:
            ledger.receive_goods(cement.id, store.id, 10, storekeeper.id)
        assert exc_info.value.stock_record_id == cement_stock.id

        stock = db_session.get(StockRecord, cement_stock.id)
        assert stock.is_frozen is True
        assert "quantity_on_hand is 175.000" in stock.frozen_reason
        assert len(_movements(cement_stock.id)) == 1

    def test_frozen_record_refuses_all_movements(self, cement_stock, storekeeper, store, cement, db_session):
        _corrupt_on_hand(db_session, cement_stock.id, "175")
        with pytest.raises(LedgerConsistencyError):
            ledger.adjust_stock(cement.id, store.id, 5, storekeeper.id)

        _corrupt_on_hand(db_session, cement_stock.id, "150")
        with pytest.raises(LedgerConsistencyError):
            ledger.receive_goods(cement.id, store.id, 10, storekeeper.id)
        with pytest.raises(LedgerConsistencyError):
            ledger.apply_movement(
                cement.id, store.id, MovementType.OUT, 1,
                source_type=MovementSource.REQUEST_ISSUANCE, actor_user_id=storekeeper.id,
            )

    def test_release_requires_clean_chain(self, cement_stock, storekeeper, store, cement, db_session):
        _corrupt_on_hand(db_session, cement_stock.id, "175")
        with pytest.raises(LedgerConsistencyError):
            ledger.receive_goods(cement.id, store.id, 10, storekeeper.id)

        assert not ledger.verify_chain(cement_stock.id).ok
        with pytest.raises(LedgerConsistencyError):
            ledger.release_freeze(cement_stock.id, storekeeper.id, "too early")

        _corrupt_on_hand(db_session, cement_stock.id, "150")
        stock = ledger.release_freeze(cement_stock.id, storekeeper.id, "Reconciled against physical count")
        assert stock.is_frozen is False
        assert stock.frozen_reason is None

        result = ledger.receive_goods(cement.id, store.id, 10, storekeeper.id)
        assert result.quantity_after == Decimal("160.000")
        assert list_audit_events("stock_record", cement_stock.id)[-2].action == "stock.released"

    def test_release_of_unfrozen_record_is_invalid(self, cement_stock, storekeeper):
        with pytest.raises(InvalidStateError):
            ledger.release_freeze(cement_stock.id, storekeeper.id)


# =============================================================================
# STOCK RECORD MAINTENANCE
# =============================================================================


class TestRecords:

    def test_duplicate_record_rejected(self, cement_stock, storekeeper, store, cement):
        with pytest.raises(InvalidStateError):
            ledger.create_stock_record(cement.id, store.id, storekeeper.id)

    def test_set_thresholds_reevaluates_flag(self, cement_stock, storekeeper):
        assert cement_stock.low_stock_alert is False
        stock = ledger.set_thresholds(cement_stock.id, storekeeper.id, low_stock_threshold="150")
        assert stock.low_stock_alert is True
        stock = ledger.set_thresholds(cement_stock.id, storekeeper.id, low_stock_threshold="0", reorder_level="0")
        assert stock.low_stock_alert is False
        actions = [e.action for e in list_audit_events("stock_record", cement_stock.id)]
        assert actions.count("stock.thresholds_changed") == 2

    def test_requester_cannot_adjust(self, cement_stock, requester, store, cement):
        with pytest.raises(UnauthorizedTransitionError):
            ledger.adjust_stock(cement.id, store.id, 5, requester.id)

    def test_inactive_storekeeper_cannot_receive(self, cement_stock, inactive_user, store, cement):
        with pytest.raises(UnauthorizedTransitionError):
            ledger.receive_goods(cement.id, store.id, 5, inactive_user.id)


# =============================================================================
# HTTP SURFACE
# =============================================================================


class TestStockRoutes:

    def test_missing_actor_header(self, client, db_session):
        assert client.get("/api/stock").status_code == 401

    def test_create_receive_and_verify(self, client, storekeeper, store, cement):
        resp = client.post(
            "/api/stock",
            json={"material_id": cement.id, "store_id": store.id, "reorder_level": 10},
            headers=actor(storekeeper),
        )
        assert resp.status_code == 201
        stock_id = resp.json["id"]

        resp = client.post(
            "/api/stock/receipts",
            json={"material_id": cement.id, "store_id": store.id, "quantity": "12.5", "source_id": "GRN-9"},
            headers=actor(storekeeper),
        )
        assert resp.status_code == 201
        assert resp.json["stock"]["quantity_on_hand"] == "12.500"

        resp = client.get(f"/api/stock/{stock_id}/verify", headers=actor(storekeeper))
        assert resp.status_code == 200
        assert resp.json["ok"] is True

        resp = client.get(f"/api/stock/{stock_id}/movements", headers=actor(storekeeper))
        assert resp.json["count"] == 1

    def test_unknown_stock_record(self, client, storekeeper):
        assert client.get("/api/stock/9999", headers=actor(storekeeper)).status_code == 404

    def test_health(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json["checks"]["database"]["status"] == "healthy"


# =============================================================================
# FIRST INSERT OF A STOCK KEY
# =============================================================================


class TestLockOrCreate:

    def _factory(self, material, store):
        return lambda: StockRecord(material_id=material.id, store_id=store.id, quantity_on_hand=Decimal("0"))

    def test_creates_then_reuses(self, db_session, store, sand):
        query = db_session.query(StockRecord).filter_by(material_id=sand.id, store_id=store.id)
        first, created = lock_or_create(query, self._factory(sand, store))
        assert created is True
        second, created = lock_or_create(query, self._factory(sand, store))
        assert created is False
        assert second is first
        db_session.rollback()

    def test_duplicate_key_surfaces_as_insert_race(self, cement_stock, db_session, store, cement):
        # a query blind to the existing row stands in for a writer that read before the winner committed
        blind = db_session.query(StockRecord).filter_by(material_id=cement.id, store_id=store.id, is_frozen=True)
        with pytest.raises(InsertRaceError):
            lock_or_create(blind, self._factory(cement, store))
        db_session.rollback()
        assert db_session.query(StockRecord).filter_by(material_id=cement.id).count() == 1

    def test_insert_race_is_retried(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) == 1:
                raise InsertRaceError("lost the first insert")
            return "done"

        assert run_with_retry(_op, attempts=3, backoff_base=0) == "done"
        assert len(calls) == 2
