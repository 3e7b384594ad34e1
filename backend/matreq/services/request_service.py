# Overview: Request workflow engine; owns the Request aggregate from draft to issuance.

"""
Material request workflow.

WHY: A site's material request must pass every configured approval level in
order before a storekeeper may issue against it, and issuance must never
exceed either the approved quantities or what the store has on hand.

LIFECYCLE:
1. DRAFT: Created by the requester; items editable; deletable
2. SUBMITTED: Transient; the approval chain picks the first active level
3. LEVEL_n_REVIEW: Waiting on a reviewer holding a level-n role
4. APPROVED: Chain complete; qty_approved set on every item
5. PARTIALLY_ISSUED / ISSUED: Stock issued through the ledger
6. REJECTED: Any level rejected; terminal

Each operation runs as one unit of work under run_with_retry: the request
row is locked, re-read and always written, so a concurrent writer either
waits or fails its version check and re-runs against fresh state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ..config import WorkflowConfig, current_workflow_config
from ..extensions import db
from ..models import (
    Request,
    RequestItem,
    Approval,
    RequestStatus,
    ApprovalAction,
    MovementType,
    MovementSource,
)
from ..models.requests import ISSUABLE_STATUSES, is_known_status, review_level, review_status
from ..time_utils import utcnow
from ..validation import ValidationError, parse_items, to_int, to_quantity, quantize_quantity, quantize_price
from .approval_chain import ChainContext, ResolutionKind, build_resolver
from .audit_service import record_audit
from .catalog_service import require_material, require_unit, require_site, require_store, unit_price
from .concurrency import lock_for_update, run_with_retry
from .errors import InvalidStateError, NotFoundError, UnauthorizedTransitionError
from .identity_service import require_active_user, require_any_role, roles_for_user
from .stock_ledger_service import apply_movement

logger = logging.getLogger(__name__)

ADMIN_ROLE = "ADMIN"

_UNSET = object()


@dataclass(frozen=True)
class IssuedLine:
    item_id: int
    material_id: int
    quantity: Decimal
    movement_id: int
    partial: bool = False

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "material_id": self.material_id,
            "quantity": str(self.quantity),
            "movement_id": self.movement_id,
            "partial": self.partial,
        }


@dataclass(frozen=True)
class SkippedLine:
    item_id: int
    material_id: int
    remaining: Decimal
    quantity_on_hand: Decimal
    reason: str

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "material_id": self.material_id,
            "remaining": str(self.remaining),
            "quantity_on_hand": str(self.quantity_on_hand),
            "reason": self.reason,
        }


@dataclass
class IssueOutcome:
    request: Request
    issued: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.request.status

    def to_dict(self) -> dict:
        return {
            "request": self.request.to_dict(),
            "issued": [line.to_dict() for line in self.issued],
            "skipped": [line.to_dict() for line in self.skipped],
        }


def _context(request: Request) -> ChainContext:
    return ChainContext(total_value=quantize_price(request.estimated_value))


def _locked_request(request_id: int) -> Request:
    request = lock_for_update(db.session.query(Request).filter_by(id=request_id)).first()
    if not request:
        raise NotFoundError(f"Request {request_id} not found")
    return request


def _require_draft(request: Request, action: str) -> None:
    if request.status != RequestStatus.DRAFT.value:
        raise InvalidStateError(f"Cannot {action} request {request.id} in {request.status} status")


def _require_owner(request: Request, user_id: int, action: str) -> None:
    if request.requested_by_user_id == user_id:
        return
    if ADMIN_ROLE in roles_for_user(user_id):
        return
    raise UnauthorizedTransitionError(f"User {user_id} may not {action} request {request.id}")


def _quantities(request: Request) -> dict:
    return {
        str(item.id): {
            "qty_requested": quantize_quantity(item.qty_requested),
            "qty_approved": quantize_quantity(item.qty_approved) if item.qty_approved is not None else None,
            "qty_issued": quantize_quantity(item.qty_issued),
        }
        for item in request.items
    }


def _build_item(entry: dict) -> RequestItem:
    require_material(entry["material_id"])
    require_unit(entry["unit_id"])
    return RequestItem(
        material_id=entry["material_id"],
        unit_id=entry["unit_id"],
        qty_requested=entry["qty_requested"],
        qty_issued=Decimal("0.000"),
    )


def _transition(request: Request, new_status, actor_user_id: int | None) -> str:
    """Set status (a RequestStatus or a LEVEL_n_REVIEW string) and log the move."""
    new_value = new_status.value if isinstance(new_status, RequestStatus) else new_status
    old = request.status
    request.status = new_value
    logger.info("Request %s: %s -> %s (user %s)", request.id, old, new_value, actor_user_id)
    return old


def _open_level(request: Request, level: int, actor_user_id: int | None) -> None:
    """Enter a review level: status plus its PENDING placeholder."""
    _transition(request, review_status(level), actor_user_id)
    request.approvals.append(Approval(level=level, action=ApprovalAction.PENDING.value))


def create_request(
    site_id: int,
    requester_id: int,
    items,
    notes: str | None = None,
    *,
    config: WorkflowConfig | None = None,
) -> Request:
    """
    Create a DRAFT request with at least one item.

    Raises:
        ValidationError: malformed items
        NotFoundError: site, material or unit missing
        UnauthorizedTransitionError: requester inactive or without a requester role
    """
    config = config or current_workflow_config()
    site_id = to_int(site_id, "site_id")
    entries = parse_items(items)
    user = require_active_user(requester_id)
    require_any_role(user, config.requester_roles, "create requests")

    def _op():
        require_site(site_id)
        request = Request(
            site_id=site_id,
            requested_by_user_id=user.id,
            status=RequestStatus.DRAFT.value,
            notes=notes,
        )
        request.items = [_build_item(entry) for entry in entries]
        db.session.add(request)
        db.session.flush()

        record_audit(
            actor_user_id=user.id,
            action="request.created",
            resource_type="request",
            resource_id=request.id,
            after={"status": request.status, "site_id": site_id, "items": _quantities(request)},
        )
        db.session.commit()
        logger.info("Request %s created by user %s with %s item(s)", request.id, user.id, len(entries))
        return request

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def update_request(
    request_id: int,
    actor_id: int,
    *,
    notes=_UNSET,
    site_id: int | None = None,
    items=None,
    config: WorkflowConfig | None = None,
) -> Request:
    """Edit a DRAFT request. Passing items replaces the whole item list."""
    config = config or current_workflow_config()
    user = require_active_user(actor_id)
    entries = parse_items(items) if items is not None else None
    site_id = to_int(site_id, "site_id") if site_id is not None else None

    def _op():
        request = _locked_request(request_id)
        _require_draft(request, "edit")
        _require_owner(request, user.id, "edit")

        before = {"notes": request.notes, "site_id": request.site_id, "items": _quantities(request)}
        if site_id is not None:
            require_site(site_id)
            request.site_id = site_id
        if notes is not _UNSET:
            request.notes = notes
        if entries is not None:
            request.items = [_build_item(entry) for entry in entries]
        request.updated_at = utcnow()
        db.session.flush()

        record_audit(
            actor_user_id=user.id,
            action="request.updated",
            resource_type="request",
            resource_id=request.id,
            before=before,
            after={"notes": request.notes, "site_id": request.site_id, "items": _quantities(request)},
        )
        db.session.commit()
        return request

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def add_request_item(
    request_id: int,
    actor_id: int,
    material_id: int,
    unit_id: int,
    qty_requested,
    *,
    config: WorkflowConfig | None = None,
) -> RequestItem:
    config = config or current_workflow_config()
    user = require_active_user(actor_id)
    entry = parse_items([{"material_id": material_id, "unit_id": unit_id, "qty_requested": qty_requested}])[0]

    def _op():
        request = _locked_request(request_id)
        _require_draft(request, "add items to")
        _require_owner(request, user.id, "edit")

        item = _build_item(entry)
        request.items.append(item)
        request.updated_at = utcnow()
        db.session.flush()

        record_audit(
            actor_user_id=user.id,
            action="request.item_added",
            resource_type="request",
            resource_id=request.id,
            after={"item_id": item.id, "material_id": item.material_id, "qty_requested": item.qty_requested},
        )
        db.session.commit()
        return item

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def remove_request_item(
    request_id: int,
    item_id: int,
    actor_id: int,
    *,
    config: WorkflowConfig | None = None,
) -> Request:
    config = config or current_workflow_config()
    user = require_active_user(actor_id)

    def _op():
        request = _locked_request(request_id)
        _require_draft(request, "remove items from")
        _require_owner(request, user.id, "edit")

        item = next((i for i in request.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found on request {request_id}")

        before = {"item_id": item.id, "material_id": item.material_id, "qty_requested": item.qty_requested}
        request.items.remove(item)
        request.updated_at = utcnow()
        db.session.flush()

        record_audit(
            actor_user_id=user.id,
            action="request.item_removed",
            resource_type="request",
            resource_id=request.id,
            before=before,
        )
        db.session.commit()
        return request

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def delete_request(request_id: int, actor_id: int, *, config: WorkflowConfig | None = None) -> None:
    """Physically delete a DRAFT request; items and approvals cascade."""
    config = config or current_workflow_config()
    user = require_active_user(actor_id)

    def _op():
        request = _locked_request(request_id)
        _require_draft(request, "delete")
        _require_owner(request, user.id, "delete")

        record_audit(
            actor_user_id=user.id,
            action="request.deleted",
            resource_type="request",
            resource_id=request.id,
            before={"status": request.status, "site_id": request.site_id, "items": _quantities(request)},
        )
        db.session.delete(request)
        db.session.commit()
        logger.info("Request %s deleted by user %s", request_id, user.id)

    run_with_retry(_op, attempts=config.ledger_retry_attempts)


def estimate_value(request: Request) -> Decimal:
    total = Decimal("0")
    for item in request.items:
        total += quantize_quantity(item.qty_requested) * unit_price(item.material_id)
    return quantize_price(total)


def submit_request(request_id: int, actor_id: int, *, config: WorkflowConfig | None = None) -> Request:
    """
    DRAFT -> SUBMITTED -> first active review level (or APPROVED for an
    empty chain).

    The estimated value is snapshotted here and decides director
    escalation for the rest of the request's life.
    """
    config = config or current_workflow_config()
    resolver = build_resolver(config)
    user = require_active_user(actor_id)

    def _op():
        request = _locked_request(request_id)
        _require_draft(request, "submit")
        _require_owner(request, user.id, "submit")
        if not request.items or not any(quantize_quantity(i.qty_requested) > 0 for i in request.items):
            raise InvalidStateError(f"Request {request.id} has no items to submit")

        now = utcnow()
        request.estimated_value = estimate_value(request)
        request.submitted_at = now
        _transition(request, RequestStatus.SUBMITTED, user.id)

        resolution = resolver.first_level(_context(request))
        if resolution.kind is ResolutionKind.PENDING:
            _open_level(request, resolution.level, user.id)
        else:
            # Empty chain: implicit approval of the requested quantities
            for item in request.items:
                item.qty_approved = item.qty_requested
            request.status = RequestStatus.APPROVED.value
            request.approved_at = now
        db.session.flush()

        logger.info("Request %s: SUBMITTED -> %s (user %s)", request.id, request.status, user.id)
        record_audit(
            actor_user_id=user.id,
            action="request.submitted",
            resource_type="request",
            resource_id=request.id,
            before={"status": RequestStatus.DRAFT.value},
            after={
                "status": request.status,
                "path": [RequestStatus.DRAFT.value, RequestStatus.SUBMITTED.value, request.status],
                "estimated_value": request.estimated_value,
            },
        )
        db.session.commit()
        return request

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def _parse_adjustments(approved_quantities) -> dict[int, Decimal]:
    if not approved_quantities:
        return {}
    if not isinstance(approved_quantities, dict):
        raise ValidationError("approved_quantities must be an object of item_id -> quantity")
    return {
        to_int(key, "approved_quantities item id"): to_quantity(value, f"approved_quantities[{key}]", allow_zero=True)
        for key, value in approved_quantities.items()
    }


def record_approval(
    request_id: int,
    level,
    reviewer_id: int,
    action,
    approved_quantities: dict | None = None,
    comment: str | None = None,
    reviewer_role: str | None = None,
    *,
    config: WorkflowConfig | None = None,
) -> Request:
    """
    Record a reviewer's decision for the level the request is waiting on.

    APPROVED sets each item's qty_approved (explicit adjustment, else the
    previously approved amount, else qty_requested) and advances the chain.
    REJECTED ends the request.

    Raises:
        InvalidStateError: request is not in the review state for `level`
        UnauthorizedTransitionError: reviewer lacks a role for `level`
        ValidationError: bad action, level or adjustment
    """
    config = config or current_workflow_config()
    resolver = build_resolver(config)

    try:
        decision = ApprovalAction(action)
    except ValueError:
        raise ValidationError(f"action must be APPROVED or REJECTED, got {action!r}")
    if decision is ApprovalAction.PENDING:
        raise ValidationError("action must be APPROVED or REJECTED")
    level = to_int(level, "level")
    if not resolver.has_level(level):
        raise ValidationError(f"Unknown approval level {level}")
    adjustments = _parse_adjustments(approved_quantities)
    reviewer = require_active_user(reviewer_id)

    def _op():
        request = _locked_request(request_id)
        context = _context(request)
        waiting_on = resolver.resolve(request.status, context)
        if review_level(request.status) is None or waiting_on.level != level:
            raise InvalidStateError(
                f"Request {request.id} is {request.status}; cannot record a level {level} decision"
            )

        held = roles_for_user(reviewer.id)
        if reviewer_role is not None:
            if reviewer_role not in held:
                raise UnauthorizedTransitionError(f"User {reviewer.id} does not hold role {reviewer_role}")
            acting_role = resolver.authorize(level, {reviewer_role})
        else:
            acting_role = resolver.authorize(level, held)

        items_by_id = {item.id: item for item in request.items}
        for item_id, qty in adjustments.items():
            item = items_by_id.get(item_id)
            if item is None:
                raise ValidationError(f"Item {item_id} is not part of request {request.id}")
            if qty > quantize_quantity(item.qty_requested):
                raise ValidationError(
                    f"Approved quantity {qty} for item {item_id} exceeds requested {quantize_quantity(item.qty_requested)}"
                )

        before = {"status": request.status, "items": _quantities(request)}

        for current in request.approvals:
            if current.level == level and not current.is_superseded:
                current.is_superseded = True
        db.session.flush()  # free the (request, level) slot before the decision row

        request.approvals.append(
            Approval(
                level=level,
                action=decision.value,
                comment=comment,
                reviewer_user_id=reviewer.id,
                reviewer_role=acting_role,
            )
        )

        now = utcnow()
        if decision is ApprovalAction.REJECTED:
            _transition(request, RequestStatus.REJECTED, reviewer.id)
            request.rejected_at = now
            audit_action = "request.rejected"
        else:
            for item in request.items:
                if item.id in adjustments:
                    item.qty_approved = adjustments[item.id]
                elif item.qty_approved is None:
                    item.qty_approved = item.qty_requested

            resolution = resolver.next_level(level, context)
            if resolution.kind is ResolutionKind.PENDING:
                _open_level(request, resolution.level, reviewer.id)
            else:
                _transition(request, RequestStatus.APPROVED, reviewer.id)
                request.approved_at = now
            audit_action = "request.approved"

        request.updated_at = now
        db.session.flush()

        record_audit(
            actor_user_id=reviewer.id,
            action=audit_action,
            resource_type="request",
            resource_id=request.id,
            before=before,
            after={
                "status": request.status,
                "level": level,
                "reviewer_role": acting_role,
                "comment": comment,
                "items": _quantities(request),
            },
        )
        db.session.commit()
        return request

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def _remaining(item: RequestItem) -> Decimal:
    if item.qty_approved is None:
        return Decimal("0.000")
    return quantize_quantity(item.qty_approved) - quantize_quantity(item.qty_issued)


def issue_request(
    request_id: int,
    store_id: int,
    actor_id: int,
    *,
    config: WorkflowConfig | None = None,
) -> IssueOutcome:
    """
    Issue the remaining approved quantities from one store.

    One OUT movement per item with something remaining. When the store
    cannot cover an item's full remainder and partial fills are enabled,
    whatever is on hand is issued instead; otherwise the item is skipped.
    Everything happens in one transaction.

    Raises:
        InvalidStateError: request not APPROVED / PARTIALLY_ISSUED, or nothing remains
        UnauthorizedTransitionError: actor lacks an issuer role
        LedgerConsistencyError: a stock record is frozen or its chain is broken
    """
    config = config or current_workflow_config()
    user = require_active_user(actor_id)
    require_any_role(user, config.issuer_roles, "issue materials")
    store_id = to_int(store_id, "store_id")

    def _op():
        request = _locked_request(request_id)
        if request.status not in ISSUABLE_STATUSES:
            raise InvalidStateError(f"Cannot issue request {request.id} in {request.status} status")
        require_store(store_id)

        pending = [item for item in request.items if _remaining(item) > 0]
        if not pending:
            raise InvalidStateError(f"Request {request.id} has nothing left to issue")

        outcome = IssueOutcome(request=request)
        for item in pending:
            remaining = _remaining(item)
            result = apply_movement(
                item.material_id,
                store_id,
                MovementType.OUT,
                remaining,
                source_type=MovementSource.REQUEST_ISSUANCE,
                source_id=request.id,
                actor_user_id=user.id,
                note=f"Issue for request {request.id}",
                config=config,
            )
            partial = False
            if not result.applied and config.allow_partial_item_fill and result.quantity_on_hand > 0:
                result = apply_movement(
                    item.material_id,
                    store_id,
                    MovementType.OUT,
                    result.quantity_on_hand,
                    source_type=MovementSource.REQUEST_ISSUANCE,
                    source_id=request.id,
                    actor_user_id=user.id,
                    note=f"Partial issue for request {request.id}",
                    config=config,
                )
                partial = True

            if result.applied:
                issued_qty = -quantize_quantity(result.movement.quantity_delta)
                item.qty_issued = quantize_quantity(item.qty_issued) + issued_qty
                outcome.issued.append(
                    IssuedLine(item.id, item.material_id, issued_qty, result.movement.id, partial)
                )
            else:
                outcome.skipped.append(
                    SkippedLine(item.id, item.material_id, remaining, result.quantity_on_hand, result.reason)
                )

        now = utcnow()
        fully_issued = all(_remaining(item) <= 0 for item in request.items)
        _transition(request, RequestStatus.ISSUED if fully_issued else RequestStatus.PARTIALLY_ISSUED, user.id)
        if outcome.issued and request.issued_at is None:
            request.issued_at = now
        # Always written so the request version advances
        request.last_issued_at = now
        db.session.flush()

        record_audit(
            actor_user_id=user.id,
            action="request.issued",
            resource_type="request",
            resource_id=request.id,
            after={
                "status": request.status,
                "store_id": store_id,
                "issued": [line.to_dict() for line in outcome.issued],
                "skipped": [line.to_dict() for line in outcome.skipped],
            },
        )
        db.session.commit()
        logger.info(
            "Request %s issued from store %s: %s line(s) issued, %s skipped",
            request.id, store_id, len(outcome.issued), len(outcome.skipped),
        )
        return outcome

    return run_with_retry(_op, attempts=config.ledger_retry_attempts)


def get_request(request_id: int) -> Request:
    request = db.session.get(Request, request_id)
    if not request:
        raise NotFoundError(f"Request {request_id} not found")
    return request


def list_requests(
    status: Optional[str] = None,
    site_id: Optional[int] = None,
    requested_by: Optional[int] = None,
) -> list[Request]:
    query = db.session.query(Request)
    if status is not None:
        if not is_known_status(status):
            raise ValidationError(f"Unknown status {status!r}")
        query = query.filter(Request.status == status)
    if site_id is not None:
        query = query.filter(Request.site_id == site_id)
    if requested_by is not None:
        query = query.filter(Request.requested_by_user_id == requested_by)
    return query.order_by(Request.id.desc()).all()
