# Overview: Approval chain resolver; pure functions over request status and chain configuration.

"""
The approval chain is an ordered list of level descriptors. Each descriptor
carries a positive integer level, the roles allowed to decide at that level
and an activation predicate over the request context. The number of levels
is whatever the configuration lists. Director escalation is just a predicate
on the request's estimated value.

The resolver has no database access and reads no process state. It is
built from a WorkflowConfig and handed the request status and value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from ..config import WorkflowConfig
from ..models.requests import RequestStatus, is_known_status, review_level
from .errors import InvalidStateError, UnauthorizedTransitionError


@dataclass(frozen=True)
class ChainContext:
    """Facts about the request that activation predicates may look at."""
    total_value: Decimal = Decimal("0")


def _always(context: ChainContext) -> bool:
    return True


@dataclass(frozen=True)
class LevelDescriptor:
    level: int
    required_roles: frozenset = field(default_factory=frozenset)
    activation: Callable[[ChainContext], bool] = _always

    def __post_init__(self):
        if isinstance(self.level, bool) or not isinstance(self.level, int) or self.level < 1:
            raise ValueError(f"Approval level must be a positive integer, got {self.level!r}")

    def is_active(self, context: ChainContext) -> bool:
        return bool(self.activation(context))


class ResolutionKind(str, Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ChainResolution:
    kind: ResolutionKind
    level: Optional[int] = None


COMPLETE = ChainResolution(ResolutionKind.COMPLETE)
REJECTED = ChainResolution(ResolutionKind.REJECTED)


class ApprovalChainResolver:
    def __init__(self, levels: Iterable[LevelDescriptor]):
        ordered = sorted(levels, key=lambda d: d.level)
        seen = set()
        for descriptor in ordered:
            if descriptor.level in seen:
                raise ValueError(f"Approval level {descriptor.level} configured twice")
            seen.add(descriptor.level)
        self._levels = tuple(ordered)

    @property
    def levels(self) -> tuple[LevelDescriptor, ...]:
        return self._levels

    def has_level(self, level: int) -> bool:
        return any(d.level == level for d in self._levels)

    def descriptor(self, level: int) -> LevelDescriptor:
        for descriptor in self._levels:
            if descriptor.level == level:
                return descriptor
        raise InvalidStateError(f"Approval level {level} is not part of the chain")

    def active_levels(self, context: ChainContext) -> tuple[int, ...]:
        return tuple(d.level for d in self._levels if d.is_active(context))

    def first_level(self, context: ChainContext) -> ChainResolution:
        active = self.active_levels(context)
        if not active:
            return COMPLETE
        return ChainResolution(ResolutionKind.PENDING, active[0])

    def next_level(self, level: int, context: ChainContext) -> ChainResolution:
        """Resolution after `level` has been approved."""
        for candidate in self.active_levels(context):
            if candidate > level:
                return ChainResolution(ResolutionKind.PENDING, candidate)
        return COMPLETE

    def resolve(self, status, context: ChainContext) -> ChainResolution:
        """
        Map a request status to what the chain is waiting for.

        DRAFT/SUBMITTED resolve to the first active level; a LEVEL_n_REVIEW
        status resolves to level n, which must be active for the context;
        terminal and post-approval statuses resolve to COMPLETE or REJECTED.
        """
        if isinstance(status, RequestStatus):
            status = status.value
        if not is_known_status(status):
            raise InvalidStateError(f"Unknown request status {status}")
        level = review_level(status)
        if level is not None:
            if level not in self.active_levels(context):
                raise InvalidStateError(f"{status} is not an active level for this request")
            return ChainResolution(ResolutionKind.PENDING, level)
        if status == RequestStatus.REJECTED.value:
            return REJECTED
        if status in (RequestStatus.DRAFT.value, RequestStatus.SUBMITTED.value):
            return self.first_level(context)
        return COMPLETE

    def required_roles(self, level: int) -> frozenset:
        return self.descriptor(level).required_roles

    def authorize(self, level: int, roles: Iterable[str]) -> str:
        """
        Return the role under which `roles` may decide at `level`.

        Raises UnauthorizedTransitionError when none of the held roles is
        configured for the level.
        """
        required = self.required_roles(level)
        matched = sorted(required & frozenset(roles))
        if not matched:
            raise UnauthorizedTransitionError(
                f"Level {level} requires one of: {', '.join(sorted(required)) or '(none)'}"
            )
        return matched[0]


def _escalation_predicate(limit: Decimal) -> Callable[[ChainContext], bool]:
    def _above_limit(context: ChainContext) -> bool:
        return context.total_value > limit
    return _above_limit


def build_resolver(config: WorkflowConfig) -> ApprovalChainResolver:
    descriptors = []
    for entry in config.approval_chain:
        activation = _always
        if entry["escalation_only"]:
            activation = _escalation_predicate(config.director_escalation_limit)
        descriptors.append(
            LevelDescriptor(
                level=entry["level"],
                required_roles=frozenset(entry["roles"]),
                activation=activation,
            )
        )
    return ApprovalChainResolver(descriptors)
