# Overview: Error taxonomy shared by the workflow, approval chain and stock ledger.

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for domain errors raised by the core services."""
    pass


class NotFoundError(WorkflowError):
    """Referenced request, item, stock record or collaborator row does not exist."""
    pass


class InvalidStateError(WorkflowError):
    """Operation attempted against a request or stock record in an incompatible state."""
    pass


class UnauthorizedTransitionError(WorkflowError):
    """Actor lacks the role required for the transition, or is inactive."""
    pass


class LedgerConsistencyError(WorkflowError):
    """
    The before/after chain of a stock record is broken, or the record is frozen.

    Fatal for the affected record: it refuses further movements until it is
    reconciled by hand and released.
    """

    def __init__(self, stock_record_id: int, message: str):
        super().__init__(message)
        self.stock_record_id = stock_record_id


class ImmutableRecordError(WorkflowError):
    """Attempt to update or delete an append-only row."""

    def __init__(self, entity_type: str, entity_id, reason: str):
        super().__init__(f"{entity_type} {entity_id}: {reason}")
        self.entity_type = entity_type
        self.entity_id = entity_id
