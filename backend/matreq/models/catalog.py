from __future__ import annotations

from ..extensions import db
from matreq.time_utils import to_utc_z


class Unit(db.Model):
    __tablename__ = "units"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), nullable=False, unique=True)
    name = db.Column(db.String(64), nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "code": self.code, "name": self.name}


class Material(db.Model):
    """
    Catalog material.

    unit_price is only read by the approval chain to decide whether a
    request escalates to director review. It is not a pricing subsystem.
    """
    __tablename__ = "materials"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False, index=True)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    unit = db.relationship("Unit")

    def __repr__(self) -> str:
        return f"<Material id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "unit_id": self.unit_id,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
