"""
Approval chain resolver tests.

The resolver is pure: no database, no app context. Chains are built from
WorkflowConfig objects directly.
"""

from decimal import Decimal

import pytest

from matreq.config import WorkflowConfig
from matreq.models import RequestStatus
from matreq.models.requests import review_level, review_status
from matreq.services.approval_chain import (
    ApprovalChainResolver,
    ChainContext,
    LevelDescriptor,
    ResolutionKind,
    build_resolver,
)
from matreq.services.errors import InvalidStateError, UnauthorizedTransitionError


DEFAULT_CHAIN = (
    {"level": 1, "roles": ("DIOCESAN_SITE_ENGINEER",)},
    {"level": 2, "roles": ("PADIRI",)},
    {"level": 3, "roles": ("DIRECTOR",), "escalation_only": True},
)


@pytest.fixture
def resolver():
    config = WorkflowConfig.from_mapping({
        "APPROVAL_CHAIN": DEFAULT_CHAIN,
        "DIRECTOR_ESCALATION_LIMIT": "10000.00",
    })
    return build_resolver(config)


SMALL = ChainContext(total_value=Decimal("1050.00"))
LARGE = ChainContext(total_value=Decimal("25000.00"))


# =============================================================================
# LEVEL ACTIVATION
# =============================================================================


class TestActiveLevels:

    def test_director_skipped_below_limit(self, resolver):
        assert resolver.active_levels(SMALL) == (1, 2)

    def test_director_added_above_limit(self, resolver):
        assert resolver.active_levels(LARGE) == (1, 2, 3)

    def test_limit_itself_does_not_escalate(self, resolver):
        at_limit = ChainContext(total_value=Decimal("10000.00"))
        assert 3 not in resolver.active_levels(at_limit)

    def test_levels_sorted_regardless_of_config_order(self):
        resolver = ApprovalChainResolver([
            LevelDescriptor(2, frozenset({"PADIRI"})),
            LevelDescriptor(1, frozenset({"DIOCESAN_SITE_ENGINEER"})),
        ])
        assert [d.level for d in resolver.levels] == [1, 2]

    def test_duplicate_level_rejected(self):
        with pytest.raises(ValueError):
            ApprovalChainResolver([
                LevelDescriptor(1, frozenset({"A"})),
                LevelDescriptor(1, frozenset({"B"})),
            ])


# =============================================================================
# RESOLUTION
# =============================================================================


class TestResolve:

    def test_submitted_resolves_to_first_level(self, resolver):
        resolution = resolver.resolve(RequestStatus.SUBMITTED, SMALL)
        assert resolution.kind is ResolutionKind.PENDING
        assert resolution.level == 1

    def test_review_status_resolves_to_its_level(self, resolver):
        resolution = resolver.resolve("LEVEL_2_REVIEW", SMALL)
        assert resolution.level == 2

    def test_inactive_review_level_is_invalid(self, resolver):
        with pytest.raises(InvalidStateError):
            resolver.resolve("LEVEL_3_REVIEW", SMALL)

    def test_rejected_and_approved(self, resolver):
        assert resolver.resolve(RequestStatus.REJECTED, SMALL).kind is ResolutionKind.REJECTED
        assert resolver.resolve(RequestStatus.APPROVED, SMALL).kind is ResolutionKind.COMPLETE
        assert resolver.resolve(RequestStatus.PARTIALLY_ISSUED, SMALL).kind is ResolutionKind.COMPLETE

    def test_next_level_walks_the_chain(self, resolver):
        assert resolver.next_level(1, SMALL).level == 2
        assert resolver.next_level(2, SMALL).kind is ResolutionKind.COMPLETE
        assert resolver.next_level(2, LARGE).level == 3
        assert resolver.next_level(3, LARGE).kind is ResolutionKind.COMPLETE

    def test_empty_chain_completes_immediately(self):
        resolver = build_resolver(WorkflowConfig.from_mapping({"APPROVAL_CHAIN": ()}))
        assert resolver.first_level(SMALL).kind is ResolutionKind.COMPLETE
        assert resolver.resolve(RequestStatus.SUBMITTED, SMALL).kind is ResolutionKind.COMPLETE

    def test_single_level_chain(self):
        resolver = build_resolver(WorkflowConfig.from_mapping({
            "APPROVAL_CHAIN": ({"level": 2, "roles": ("PADIRI",)},),
        }))
        first = resolver.first_level(LARGE)
        assert first.level == 2
        assert resolver.next_level(first.level, LARGE).kind is ResolutionKind.COMPLETE


# =============================================================================
# AUTHORIZATION
# =============================================================================


class TestAuthorize:

    def test_matching_role_returned(self, resolver):
        assert resolver.authorize(1, {"SITE_ENGINEER", "DIOCESAN_SITE_ENGINEER"}) == (
            "DIOCESAN_SITE_ENGINEER"
        )

    def test_wrong_role_denied(self, resolver):
        with pytest.raises(UnauthorizedTransitionError):
            resolver.authorize(1, {"PADIRI"})

    def test_no_roles_denied(self, resolver):
        with pytest.raises(UnauthorizedTransitionError):
            resolver.authorize(3, set())

    def test_required_roles(self, resolver):
        assert resolver.required_roles(2) == frozenset({"PADIRI"})

    def test_unconfigured_level(self):
        resolver = build_resolver(WorkflowConfig.from_mapping({
            "APPROVAL_CHAIN": ({"level": 1, "roles": ("DIOCESAN_SITE_ENGINEER",)},),
        }))
        with pytest.raises(InvalidStateError):
            resolver.required_roles(3)


# =============================================================================
# CONFIGURABLE DEPTH
# =============================================================================


FOUR_LEVEL_CHAIN = DEFAULT_CHAIN + ({"level": 4, "roles": ("ADMIN",)},)


class TestConfigurableDepth:

    def test_four_level_chain_builds_and_walks(self):
        resolver = build_resolver(WorkflowConfig.from_mapping({"APPROVAL_CHAIN": FOUR_LEVEL_CHAIN}))
        assert resolver.active_levels(SMALL) == (1, 2, 4)
        assert resolver.active_levels(LARGE) == (1, 2, 3, 4)

        walked = []
        resolution = resolver.first_level(LARGE)
        while resolution.kind is ResolutionKind.PENDING:
            walked.append(resolution.level)
            assert resolver.resolve(review_status(resolution.level), LARGE) == resolution
            resolution = resolver.next_level(resolution.level, LARGE)
        assert walked == [1, 2, 3, 4]
        assert resolver.authorize(4, {"ADMIN"}) == "ADMIN"

    def test_gapped_levels_keep_their_numbers(self):
        resolver = build_resolver(WorkflowConfig.from_mapping({
            "APPROVAL_CHAIN": (
                {"level": 10, "roles": ("DIRECTOR",)},
                {"level": 5, "roles": ("PADIRI",)},
            ),
        }))
        assert resolver.first_level(SMALL).level == 5
        assert resolver.next_level(5, SMALL).level == 10
        assert resolver.resolve("LEVEL_10_REVIEW", SMALL).level == 10

    @pytest.mark.parametrize("level", [0, -1])
    def test_non_positive_level_rejected(self, level):
        with pytest.raises(ValueError):
            build_resolver(WorkflowConfig.from_mapping({
                "APPROVAL_CHAIN": ({"level": level, "roles": ("PADIRI",)},),
            }))

    def test_unknown_status_is_invalid(self, resolver):
        with pytest.raises(InvalidStateError):
            resolver.resolve("LEVEL_0_REVIEW", SMALL)
        with pytest.raises(InvalidStateError):
            resolver.resolve("ON_HOLD", SMALL)

    def test_review_status_round_trip(self):
        assert review_status(4) == "LEVEL_4_REVIEW"
        assert review_level("LEVEL_12_REVIEW") == 12
        assert review_level(RequestStatus.APPROVED.value) is None
        with pytest.raises(ValueError):
            review_status(0)
