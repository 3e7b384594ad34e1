from __future__ import annotations

from enum import Enum

from sqlalchemy import event

from ..extensions import db
from matreq.time_utils import to_utc_z
from matreq.services.errors import ImmutableRecordError


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUSTMENT = "ADJUSTMENT"


class MovementSource(str, Enum):
    REQUEST_ISSUANCE = "REQUEST_ISSUANCE"
    GOODS_RECEIPT = "GOODS_RECEIPT"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


class StockRecord(db.Model):
    """
    On-hand quantity of one material in one store.

    quantity_on_hand is a cache of the movement chain, never an independent
    source of truth:
    - quantity_on_hand == SUM(stock_movements.quantity_delta)
    - quantity_on_hand == quantity_after of the head movement (last_movement_id)

    Only the stock ledger service writes quantity_on_hand. version_id is the
    optimistic lock that serializes concurrent movements on the same row.

    A frozen record refuses every movement until its chain verifies clean
    and it is released by hand.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("material_id", "store_id", name="uq_stock_records_material_store"),
        db.CheckConstraint("quantity_on_hand >= 0", name="ck_stock_records_on_hand_non_negative"),
        db.Index("ix_stock_records_store_alert", "store_id", "low_stock_alert"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    material_id = db.Column(db.Integer, db.ForeignKey("materials.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    quantity_on_hand = db.Column(db.Numeric(12, 3), nullable=False, default=0)
    reorder_level = db.Column(db.Numeric(12, 3), nullable=False, default=0)
    low_stock_threshold = db.Column(db.Numeric(12, 3), nullable=False, default=0)
    low_stock_alert = db.Column(db.Boolean, nullable=False, default=False)

    # Head of the movement chain; use_alter breaks the stock_records <-> stock_movements cycle
    last_movement_id = db.Column(
        db.Integer,
        db.ForeignKey("stock_movements.id", use_alter=True, name="fk_stock_records_last_movement"),
        nullable=True,
    )

    is_frozen = db.Column(db.Boolean, nullable=False, default=False)
    frozen_reason = db.Column(db.Text, nullable=True)
    frozen_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    material = db.relationship("Material")
    store = db.relationship("Store")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockRecord id={self.id} material_id={self.material_id} "
            f"store_id={self.store_id} on_hand={self.quantity_on_hand}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_id": self.material_id,
            "store_id": self.store_id,
            "quantity_on_hand": str(self.quantity_on_hand),
            "reorder_level": str(self.reorder_level),
            "low_stock_threshold": str(self.low_stock_threshold),
            "low_stock_alert": self.low_stock_alert,
            "last_movement_id": self.last_movement_id,
            "is_frozen": self.is_frozen,
            "frozen_reason": self.frozen_reason,
            "frozen_at": to_utc_z(self.frozen_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only ledger entry for one quantity change.

    INVARIANTS:
    - quantity_after == quantity_before + quantity_delta
    - quantity_before == quantity_after of the previous movement of the same record
    - rows are never updated or deleted (ORM listeners below)

    source_id is a generic reference (request id, receipt number); there is
    deliberately no foreign key back into the workflow tables.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_record_id", "stock_record_id", "id"),
        db.Index("ix_stock_movements_source", "source_type", "source_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_record_id = db.Column(db.Integer, db.ForeignKey("stock_records.id"), nullable=False)

    # Denormalized for read projections
    material_id = db.Column(db.Integer, nullable=False, index=True)
    store_id = db.Column(db.Integer, nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False)
    source_type = db.Column(db.String(32), nullable=False)
    source_id = db.Column(db.String(64), nullable=True)

    quantity_before = db.Column(db.Numeric(12, 3), nullable=False)
    quantity_delta = db.Column(db.Numeric(12, 3), nullable=False)
    quantity_after = db.Column(db.Numeric(12, 3), nullable=False)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    stock_record = db.relationship("StockRecord", foreign_keys=[stock_record_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_record_id": self.stock_record_id,
            "material_id": self.material_id,
            "store_id": self.store_id,
            "movement_type": self.movement_type,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "quantity_before": str(self.quantity_before),
            "quantity_delta": str(self.quantity_delta),
            "quantity_after": str(self.quantity_after),
            "actor_user_id": self.actor_user_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
def prevent_movement_update(mapper, connection, target):
    """Stock movements are immutable once written."""
    raise ImmutableRecordError("StockMovement", target.id, "stock movements cannot be modified")


@event.listens_for(StockMovement, "before_delete")
def prevent_movement_delete(mapper, connection, target):
    """Stock movements are never deleted, including by admin tooling."""
    raise ImmutableRecordError("StockMovement", target.id, "stock movements cannot be deleted")
