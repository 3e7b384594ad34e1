# Overview: Stock ledger; sole writer of on-hand quantities and the append-only movement chain.

"""
Stock ledger invariants (authoritative)

- quantity_on_hand is never negative. An OUT or ADJUSTMENT that would breach
  zero is rejected, never clamped.
- Every applied change appends exactly one StockMovement with
  quantity_after == quantity_before + quantity_delta.
- quantity_before of a movement equals quantity_after of the previous head
  (last_movement_id), or 0 for the first movement.
- quantity_on_hand == quantity_after of the head == sum of all deltas.
- The cached quantity, the movement and the low-stock flag are written in
  the same transaction.

apply_movement() does not commit; it joins the caller's unit of work.
The public operations below wrap it in run_with_retry and commit.

A broken chain is fatal for the record: it is frozen in its own commit and
refuses every movement until release_freeze() finds the chain clean.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ..config import WorkflowConfig, current_workflow_config
from ..extensions import db
from ..models import StockRecord, StockMovement, MovementType, MovementSource
from ..time_utils import utcnow
from ..validation import ValidationError, to_quantity, quantize_quantity
from .audit_service import record_audit
from .catalog_service import require_material, require_store
from .concurrency import lock_for_update, lock_or_create, run_with_retry
from .errors import InvalidStateError, LedgerConsistencyError, NotFoundError
from .identity_service import require_active_user, require_any_role
from .threshold_service import ThresholdMonitor

logger = logging.getLogger(__name__)


REJECT_INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


@dataclass(frozen=True)
class MovementApplied:
    movement: StockMovement
    quantity_before: Decimal
    quantity_after: Decimal

    applied = True

    @property
    def stock_record_id(self) -> int:
        return self.movement.stock_record_id


@dataclass(frozen=True)
class MovementRejected:
    """Typed rejection; insufficient stock is a result, not an exception."""
    reason: str
    quantity_on_hand: Decimal
    quantity_requested: Decimal
    stock_record_id: Optional[int] = None

    applied = False

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "stock_record_id": self.stock_record_id,
            "quantity_on_hand": str(self.quantity_on_hand),
            "quantity_requested": str(self.quantity_requested),
        }


@dataclass
class ChainReport:
    stock_record_id: int
    movement_count: int = 0
    computed_quantity: Decimal = Decimal("0.000")
    cached_quantity: Decimal = Decimal("0.000")
    head_movement_id: Optional[int] = None
    problems: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def to_dict(self) -> dict:
        return {
            "stock_record_id": self.stock_record_id,
            "ok": self.ok,
            "movement_count": self.movement_count,
            "computed_quantity": str(self.computed_quantity),
            "cached_quantity": str(self.cached_quantity),
            "head_movement_id": self.head_movement_id,
            "problems": list(self.problems),
        }


def _snapshot(stock: StockRecord) -> dict:
    return {
        "quantity_on_hand": quantize_quantity(stock.quantity_on_hand),
        "reorder_level": quantize_quantity(stock.reorder_level),
        "low_stock_threshold": quantize_quantity(stock.low_stock_threshold),
        "low_stock_alert": bool(stock.low_stock_alert),
        "is_frozen": bool(stock.is_frozen),
    }


def _stock_key(material_id: int, store_id: int):
    return db.session.query(StockRecord).filter_by(material_id=material_id, store_id=store_id)


def _locked_record(material_id: int, store_id: int) -> StockRecord | None:
    return lock_for_update(_stock_key(material_id, store_id)).first()


def _record_or_new(
    material_id: int,
    store_id: int,
    *,
    reorder_level: Decimal,
    low_stock_threshold: Decimal,
) -> tuple[StockRecord, bool]:
    """Locked stock record for the key, inserted empty when missing; (record, created)."""
    require_material(material_id, active_only=False)
    require_store(store_id)
    return lock_or_create(
        _stock_key(material_id, store_id),
        lambda: StockRecord(
            material_id=material_id,
            store_id=store_id,
            quantity_on_hand=Decimal("0.000"),
            reorder_level=reorder_level,
            low_stock_threshold=low_stock_threshold,
            low_stock_alert=False,
        ),
    )


def _freeze(stock_record_id: int, reason: str) -> None:
    """
    Discard the caller's unit of work and persist the freeze on its own.

    Bulk update: the in-session instance may be the inconsistent one.
    """
    db.session.rollback()
    db.session.query(StockRecord).filter_by(id=stock_record_id).update(
        {
            StockRecord.is_frozen: True,
            StockRecord.frozen_reason: reason,
            StockRecord.frozen_at: utcnow(),
            StockRecord.version_id: StockRecord.version_id + 1,
        },
        synchronize_session=False,
    )
    db.session.commit()
    logger.critical("Stock record %s frozen: %s", stock_record_id, reason)


def _check_head(stock: StockRecord) -> None:
    """Compare the head movement with the cached quantity; freeze and raise on mismatch."""
    cached = quantize_quantity(stock.quantity_on_hand)
    if stock.last_movement_id is None:
        problem = None if cached == 0 else f"no movements but quantity_on_hand is {cached}"
    else:
        head = db.session.get(StockMovement, stock.last_movement_id)
        if head is None or head.stock_record_id != stock.id:
            problem = f"head movement {stock.last_movement_id} does not belong to this record"
        elif quantize_quantity(head.quantity_after) != cached:
            problem = (
                f"head movement {head.id} ends at {quantize_quantity(head.quantity_after)} "
                f"but quantity_on_hand is {cached}"
            )
        else:
            problem = None

    if problem:
        stock_id = stock.id
        _freeze(stock_id, problem)
        raise LedgerConsistencyError(stock_id, f"Ledger chain broken for stock record {stock_id}: {problem}")


def apply_movement(
    material_id: int,
    store_id: int,
    movement_type: MovementType | str,
    quantity,
    *,
    source_type: MovementSource | str,
    source_id: str | int | None = None,
    actor_user_id: int | None = None,
    note: str | None = None,
    config: WorkflowConfig | None = None,
) -> MovementApplied | MovementRejected:
    """
    Apply one signed change to the (material, store) stock record.

    IN and OUT take a positive quantity; ADJUSTMENT takes a signed delta.
    IN (and a positive ADJUSTMENT) creates the record when it is missing.

    Returns MovementApplied or MovementRejected. Raises
    LedgerConsistencyError for frozen records or a broken chain.
    Does not commit.
    """
    config = config or current_workflow_config()
    movement_type = MovementType(movement_type)
    source_type = MovementSource(source_type)

    if movement_type is MovementType.ADJUSTMENT:
        delta = to_quantity(quantity, "quantity_delta", allow_negative=True)
    else:
        qty = to_quantity(quantity, "quantity")
        delta = qty if movement_type is MovementType.IN else -qty

    stock = _locked_record(material_id, store_id)
    if stock is None:
        if delta < 0:
            logger.info(
                "Rejected %s of %s for material %s in store %s: no stock record",
                movement_type.value, abs(delta), material_id, store_id,
            )
            return MovementRejected(REJECT_INSUFFICIENT_STOCK, Decimal("0.000"), abs(delta))
        stock, _ = _record_or_new(
            material_id,
            store_id,
            reorder_level=config.default_reorder_level,
            low_stock_threshold=config.default_low_stock_threshold,
        )

    if stock.is_frozen:
        raise LedgerConsistencyError(
            stock.id,
            f"Stock record {stock.id} is frozen: {stock.frozen_reason or 'ledger inconsistency'}",
        )

    _check_head(stock)

    before = quantize_quantity(stock.quantity_on_hand)
    after = before + delta
    if after < 0:
        logger.info(
            "Rejected %s of %s on stock record %s: on hand %s",
            movement_type.value, abs(delta), stock.id, before,
        )
        return MovementRejected(REJECT_INSUFFICIENT_STOCK, before, abs(delta), stock.id)

    movement = StockMovement(
        stock_record_id=stock.id,
        material_id=stock.material_id,
        store_id=stock.store_id,
        movement_type=movement_type.value,
        source_type=source_type.value,
        source_id=str(source_id) if source_id is not None else None,
        quantity_before=before,
        quantity_delta=delta,
        quantity_after=after,
        actor_user_id=actor_user_id,
        note=note,
    )
    db.session.add(movement)
    db.session.flush()  # assigns movement.id for the head pointer

    stock.quantity_on_hand = after
    stock.last_movement_id = movement.id
    ThresholdMonitor(config).evaluate(stock)

    # version_id check happens here; a concurrent writer raises StaleDataError
    db.session.flush()

    return MovementApplied(movement=movement, quantity_before=before, quantity_after=after)


def _require_stock_manager(actor_user_id: int, config: WorkflowConfig, action: str):
    user = require_active_user(actor_user_id)
    require_any_role(user, config.stock_manager_roles, action)
    return user


def create_stock_record(
    material_id: int,
    store_id: int,
    actor_user_id: int,
    *,
    reorder_level=None,
    low_stock_threshold=None,
    opening_quantity=None,
    config: WorkflowConfig | None = None,
) -> StockRecord:
    """
    Create the stock record for (material, store).

    An opening quantity is booked as an ADJUSTMENT so the chain starts at 0
    like every other record.
    """
    config = config or current_workflow_config()
    _require_stock_manager(actor_user_id, config, "create stock records")

    reorder = (
        to_quantity(reorder_level, "reorder_level", allow_zero=True)
        if reorder_level is not None else config.default_reorder_level
    )
    threshold = (
        to_quantity(low_stock_threshold, "low_stock_threshold", allow_zero=True)
        if low_stock_threshold is not None else config.default_low_stock_threshold
    )
    opening = (
        to_quantity(opening_quantity, "opening_quantity", allow_zero=True)
        if opening_quantity is not None else Decimal("0.000")
    )

    def _op():
        require_material(material_id)
        stock, created = _record_or_new(
            material_id, store_id, reorder_level=reorder, low_stock_threshold=threshold,
        )
        if not created:
            raise InvalidStateError(f"Stock record for material {material_id} in store {store_id} already exists")

        if opening > 0:
            apply_movement(
                material_id,
                store_id,
                MovementType.ADJUSTMENT,
                opening,
                source_type=MovementSource.MANUAL_ADJUSTMENT,
                source_id=None,
                actor_user_id=actor_user_id,
                note="Opening balance",
                config=config,
            )
        else:
            ThresholdMonitor(config).evaluate(stock)

        record_audit(
            actor_user_id=actor_user_id,
            action="stock.created",
            resource_type="stock_record",
            resource_id=stock.id,
            after=_snapshot(stock),
        )
        db.session.commit()
        return stock

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def _booked_change(
    action: str,
    material_id: int,
    store_id: int,
    movement_type: MovementType,
    quantity,
    source_type: MovementSource,
    actor_user_id: int,
    source_id,
    note: str | None,
    config: WorkflowConfig,
) -> MovementApplied | MovementRejected:
    def _op():
        result = apply_movement(
            material_id,
            store_id,
            movement_type,
            quantity,
            source_type=source_type,
            source_id=source_id,
            actor_user_id=actor_user_id,
            note=note,
            config=config,
        )
        if not result.applied:
            db.session.rollback()
            return result

        record_audit(
            actor_user_id=actor_user_id,
            action=action,
            resource_type="stock_record",
            resource_id=result.stock_record_id,
            before={"quantity_on_hand": result.quantity_before},
            after={
                "quantity_on_hand": result.quantity_after,
                "movement_id": result.movement.id,
                "quantity_delta": result.movement.quantity_delta,
            },
        )
        db.session.commit()
        return result

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def receive_goods(
    material_id: int,
    store_id: int,
    quantity,
    actor_user_id: int,
    *,
    source_id: str | None = None,
    note: str | None = None,
    config: WorkflowConfig | None = None,
) -> MovementApplied:
    """Book a goods receipt (IN / GOODS_RECEIPT). Creates the record when missing."""
    config = config or current_workflow_config()
    _require_stock_manager(actor_user_id, config, "receive goods")
    qty = to_quantity(quantity, "quantity")
    return _booked_change(
        "stock.received", material_id, store_id, MovementType.IN, qty,
        MovementSource.GOODS_RECEIPT, actor_user_id, source_id, note, config,
    )


def adjust_stock(
    material_id: int,
    store_id: int,
    quantity_delta,
    actor_user_id: int,
    *,
    note: str | None = None,
    config: WorkflowConfig | None = None,
) -> MovementApplied | MovementRejected:
    """
    Book a signed manual adjustment.

    A rejected adjustment writes nothing: no movement, no audit row.
    """
    config = config or current_workflow_config()
    _require_stock_manager(actor_user_id, config, "adjust stock")
    delta = to_quantity(quantity_delta, "quantity_delta", allow_negative=True)
    return _booked_change(
        "stock.adjusted", material_id, store_id, MovementType.ADJUSTMENT, delta,
        MovementSource.MANUAL_ADJUSTMENT, actor_user_id, None, note, config,
    )


def set_thresholds(
    stock_record_id: int,
    actor_user_id: int,
    *,
    reorder_level=None,
    low_stock_threshold=None,
    config: WorkflowConfig | None = None,
) -> StockRecord:
    config = config or current_workflow_config()
    _require_stock_manager(actor_user_id, config, "change stock thresholds")
    if reorder_level is None and low_stock_threshold is None:
        raise ValidationError("reorder_level or low_stock_threshold is required")
    reorder = to_quantity(reorder_level, "reorder_level", allow_zero=True) if reorder_level is not None else None
    threshold = (
        to_quantity(low_stock_threshold, "low_stock_threshold", allow_zero=True)
        if low_stock_threshold is not None else None
    )

    def _op():
        stock = lock_for_update(db.session.query(StockRecord).filter_by(id=stock_record_id)).first()
        if not stock:
            raise NotFoundError(f"Stock record {stock_record_id} not found")

        before = _snapshot(stock)
        if reorder is not None:
            stock.reorder_level = reorder
        if threshold is not None:
            stock.low_stock_threshold = threshold
        ThresholdMonitor(config).evaluate(stock)
        db.session.flush()

        record_audit(
            actor_user_id=actor_user_id,
            action="stock.thresholds_changed",
            resource_type="stock_record",
            resource_id=stock.id,
            before=before,
            after=_snapshot(stock),
        )
        db.session.commit()
        return stock

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def verify_chain(stock_record_id: int) -> ChainReport:
    """Walk the full movement chain of one record and report every break."""
    stock = db.session.get(StockRecord, stock_record_id)
    if not stock:
        raise NotFoundError(f"Stock record {stock_record_id} not found")

    report = ChainReport(
        stock_record_id=stock.id,
        cached_quantity=quantize_quantity(stock.quantity_on_hand),
    )
    running = Decimal("0.000")
    last_id = None
    movements = (
        db.session.query(StockMovement)
        .filter_by(stock_record_id=stock.id)
        .order_by(StockMovement.id.asc())
        .all()
    )
    for movement in movements:
        before = quantize_quantity(movement.quantity_before)
        delta = quantize_quantity(movement.quantity_delta)
        after = quantize_quantity(movement.quantity_after)
        if before != running:
            report.problems.append(f"movement {movement.id}: quantity_before {before} != previous {running}")
        if before + delta != after:
            report.problems.append(f"movement {movement.id}: {before} + {delta} != {after}")
        running = before + delta
        last_id = movement.id

    report.movement_count = len(movements)
    report.computed_quantity = running
    report.head_movement_id = stock.last_movement_id

    if running != report.cached_quantity:
        report.problems.append(f"sum of deltas {running} != quantity_on_hand {report.cached_quantity}")
    if last_id != stock.last_movement_id:
        report.problems.append(f"last movement {last_id} != head pointer {stock.last_movement_id}")
    return report


def release_freeze(
    stock_record_id: int,
    actor_user_id: int,
    note: str | None = None,
    *,
    config: WorkflowConfig | None = None,
) -> StockRecord:
    """Unfreeze a record after manual reconciliation; refuses while the chain is still broken."""
    config = config or current_workflow_config()
    _require_stock_manager(actor_user_id, config, "release frozen stock")

    def _op():
        stock = lock_for_update(db.session.query(StockRecord).filter_by(id=stock_record_id)).first()
        if not stock:
            raise NotFoundError(f"Stock record {stock_record_id} not found")
        if not stock.is_frozen:
            raise InvalidStateError(f"Stock record {stock_record_id} is not frozen")

        report = verify_chain(stock_record_id)
        if not report.ok:
            raise LedgerConsistencyError(
                stock_record_id,
                f"Stock record {stock_record_id} chain still broken: {'; '.join(report.problems)}",
            )

        before = _snapshot(stock)
        before["frozen_reason"] = stock.frozen_reason
        stock.is_frozen = False
        stock.frozen_reason = None
        stock.frozen_at = None
        ThresholdMonitor(config).evaluate(stock)
        db.session.flush()

        record_audit(
            actor_user_id=actor_user_id,
            action="stock.released",
            resource_type="stock_record",
            resource_id=stock.id,
            before=before,
            after={**_snapshot(stock), "note": note},
        )
        db.session.commit()
        logger.warning("Stock record %s released from freeze by user %s", stock_record_id, actor_user_id)
        return stock

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def get_stock_record(stock_record_id: int) -> StockRecord:
    stock = db.session.get(StockRecord, stock_record_id)
    if not stock:
        raise NotFoundError(f"Stock record {stock_record_id} not found")
    return stock


def find_stock_record(material_id: int, store_id: int) -> StockRecord | None:
    return db.session.query(StockRecord).filter_by(material_id=material_id, store_id=store_id).first()


def list_stock_records(
    store_id: int | None = None,
    material_id: int | None = None,
    low_stock: bool | None = None,
) -> list[StockRecord]:
    query = db.session.query(StockRecord)
    if store_id is not None:
        query = query.filter(StockRecord.store_id == store_id)
    if material_id is not None:
        query = query.filter(StockRecord.material_id == material_id)
    if low_stock is not None:
        query = query.filter(StockRecord.low_stock_alert.is_(low_stock))
    return query.order_by(StockRecord.id.asc()).all()


def list_movements(stock_record_id: int, limit: int = 100) -> list[StockMovement]:
    """Most recent movements first."""
    get_stock_record(stock_record_id)
    return (
        db.session.query(StockMovement)
        .filter_by(stock_record_id=stock_record_id)
        .order_by(StockMovement.id.desc())
        .limit(limit)
        .all()
    )
