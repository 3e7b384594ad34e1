from __future__ import annotations

import re
from enum import Enum

from ..extensions import db
from matreq.time_utils import to_utc_z


class RequestStatus(str, Enum):
    """
    Fixed request states. Review states are not members: each configured
    approval level n has its own LEVEL_n_REVIEW status (see review_status).
    """
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ISSUED = "ISSUED"
    PARTIALLY_ISSUED = "PARTIALLY_ISSUED"


ISSUABLE_STATUSES = frozenset({RequestStatus.APPROVED.value, RequestStatus.PARTIALLY_ISSUED.value})

_REVIEW_STATUS = re.compile(r"^LEVEL_([1-9][0-9]*)_REVIEW$")


def review_status(level: int) -> str:
    """Status of a request waiting on approval level `level`."""
    if isinstance(level, bool) or not isinstance(level, int) or level < 1:
        raise ValueError(f"Approval level must be a positive integer, got {level!r}")
    return f"LEVEL_{level}_REVIEW"


def review_level(status) -> int | None:
    """Level a LEVEL_n_REVIEW status waits on; None for any other status."""
    if isinstance(status, RequestStatus):
        return None
    match = _REVIEW_STATUS.match(str(status))
    if not match:
        return None
    return int(match.group(1))


def is_known_status(status) -> bool:
    if review_level(status) is not None:
        return True
    return status in RequestStatus._value2member_map_


class ApprovalAction(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Request(db.Model):
    """
    Material request raised by a site.

    LIFECYCLE:
    1. DRAFT: Created by the requester, items editable, deletable
    2. SUBMITTED: Transient; the approval chain picks the first level
    3. LEVEL_n_REVIEW: Waiting on the reviewer for level n
    4. APPROVED: Chain complete, ready for the storekeeper
    5. ISSUED / PARTIALLY_ISSUED: Stock issued against approved quantities
    6. REJECTED: Any level rejected; terminal

    Only the request service mutates status. version_id guards concurrent
    approvals and issuances against stale reads.
    """
    __tablename__ = "requests"
    __table_args__ = (
        db.Index("ix_requests_site_status", "site_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    site_id = db.Column(db.Integer, db.ForeignKey("sites.id"), nullable=False, index=True)
    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(24), nullable=False, default=RequestStatus.DRAFT.value, index=True)
    notes = db.Column(db.Text, nullable=True)

    # Snapshot of sum(qty_requested * unit_price) taken at submit time
    estimated_value = db.Column(db.Numeric(14, 2), nullable=True)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_issued_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    site = db.relationship("Site")
    requested_by = db.relationship("User", foreign_keys=[requested_by_user_id])
    items = db.relationship(
        "RequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestItem.id",
    )
    approvals = db.relationship(
        "Approval",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="Approval.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Request id={self.id} status={self.status} site_id={self.site_id}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "site_id": self.site_id,
            "requested_by_user_id": self.requested_by_user_id,
            "status": self.status,
            "notes": self.notes,
            "estimated_value": str(self.estimated_value) if self.estimated_value is not None else None,
            "submitted_at": to_utc_z(self.submitted_at),
            "approved_at": to_utc_z(self.approved_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "issued_at": to_utc_z(self.issued_at),
            "last_issued_at": to_utc_z(self.last_issued_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["approvals"] = [approval.to_dict() for approval in self.approvals]
        return data


class RequestItem(db.Model):
    """
    One requested material line.

    INVARIANT: 0 <= qty_issued <= qty_approved <= qty_requested
    - qty_approved stays NULL until an approval action sets it
    - qty_issued accumulates across issuances
    """
    __tablename__ = "request_items"
    __table_args__ = (
        db.CheckConstraint("qty_requested > 0", name="ck_request_items_qty_requested_positive"),
        db.CheckConstraint("qty_issued >= 0", name="ck_request_items_qty_issued_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("requests.id"), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey("materials.id"), nullable=False, index=True)
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False)

    qty_requested = db.Column(db.Numeric(12, 3), nullable=False)
    qty_approved = db.Column(db.Numeric(12, 3), nullable=True)
    qty_issued = db.Column(db.Numeric(12, 3), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    request = db.relationship("Request", back_populates="items")
    material = db.relationship("Material")
    unit = db.relationship("Unit")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "material_id": self.material_id,
            "unit_id": self.unit_id,
            "qty_requested": str(self.qty_requested),
            "qty_approved": str(self.qty_approved) if self.qty_approved is not None else None,
            "qty_issued": str(self.qty_issued) if self.qty_issued is not None else "0",
        }


class Approval(db.Model):
    """
    Review record for one level of a request.

    A PENDING placeholder is written when the request enters a level; the
    reviewer's decision supersedes it. At most one non-superseded row per
    (request, level).
    """
    __tablename__ = "approvals"
    __table_args__ = (
        db.Index(
            "uq_approvals_request_level_current",
            "request_id",
            "level",
            unique=True,
            sqlite_where=db.text("is_superseded = 0"),
            postgresql_where=db.text("is_superseded = false"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("requests.id"), nullable=False, index=True)
    level = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(16), nullable=False, default=ApprovalAction.PENDING.value)
    comment = db.Column(db.Text, nullable=True)

    reviewer_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    reviewer_role = db.Column(db.String(64), nullable=True)

    is_superseded = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    request = db.relationship("Request", back_populates="approvals")
    reviewer = db.relationship("User", foreign_keys=[reviewer_user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "level": self.level,
            "action": self.action,
            "comment": self.comment,
            "reviewer_user_id": self.reviewer_user_id,
            "reviewer_role": self.reviewer_role,
            "is_superseded": self.is_superseded,
            "created_at": to_utc_z(self.created_at),
        }
