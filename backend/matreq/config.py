# backend/matreq/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/matreq.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///matreq.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Requests whose estimated value exceeds this limit need director review
    DIRECTOR_ESCALATION_LIMIT = os.environ.get("DIRECTOR_ESCALATION_LIMIT", "10000.00")

    # Defaults applied when a stock record is created without explicit levels
    DEFAULT_REORDER_LEVEL = os.environ.get("DEFAULT_REORDER_LEVEL", "0")
    DEFAULT_LOW_STOCK_THRESHOLD = os.environ.get("DEFAULT_LOW_STOCK_THRESHOLD", "0")
    PROCUREMENT_MINIMUM_ORDER = os.environ.get("PROCUREMENT_MINIMUM_ORDER", "100")

    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "5"))
    ALLOW_PARTIAL_ITEM_FILL = _env_bool("ALLOW_PARTIAL_ITEM_FILL", True)

    # Role names per approval level, in chain order
    APPROVAL_CHAIN = (
        {"level": 1, "roles": ("DIOCESAN_SITE_ENGINEER",)},
        {"level": 2, "roles": ("PADIRI",)},
        {"level": 3, "roles": ("DIRECTOR",), "escalation_only": True},
    )
    ISSUER_ROLES = ("STOREKEEPER", "ADMIN")
    STOCK_MANAGER_ROLES = ("STOREKEEPER", "ADMIN")
    REQUESTER_ROLES = ("SITE_ENGINEER", "ADMIN")


@dataclass(frozen=True)
class WorkflowConfig:
    """
    Explicit configuration for the workflow core.

    Built once per app from the Flask config mapping and handed to the
    approval chain resolver, the threshold monitor and the services.
    Nothing in the core reads environment variables directly.
    """
    approval_chain: tuple = ()
    director_escalation_limit: Decimal = Decimal("10000.00")
    default_reorder_level: Decimal = Decimal("0")
    default_low_stock_threshold: Decimal = Decimal("0")
    procurement_minimum_order: Decimal = Decimal("100")
    ledger_retry_attempts: int = 5
    allow_partial_item_fill: bool = True
    issuer_roles: frozenset = field(default_factory=frozenset)
    stock_manager_roles: frozenset = field(default_factory=frozenset)
    requester_roles: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "WorkflowConfig":
        chain = tuple(
            {
                "level": int(entry["level"]),
                "roles": frozenset(entry.get("roles", ())),
                "escalation_only": bool(entry.get("escalation_only", False)),
            }
            for entry in mapping.get("APPROVAL_CHAIN", Config.APPROVAL_CHAIN)
        )
        return cls(
            approval_chain=chain,
            director_escalation_limit=Decimal(str(mapping.get("DIRECTOR_ESCALATION_LIMIT", "10000.00"))),
            default_reorder_level=Decimal(str(mapping.get("DEFAULT_REORDER_LEVEL", "0"))),
            default_low_stock_threshold=Decimal(str(mapping.get("DEFAULT_LOW_STOCK_THRESHOLD", "0"))),
            procurement_minimum_order=Decimal(str(mapping.get("PROCUREMENT_MINIMUM_ORDER", "100"))),
            ledger_retry_attempts=int(mapping.get("LEDGER_RETRY_ATTEMPTS", 5)),
            allow_partial_item_fill=bool(mapping.get("ALLOW_PARTIAL_ITEM_FILL", True)),
            issuer_roles=frozenset(mapping.get("ISSUER_ROLES", Config.ISSUER_ROLES)),
            stock_manager_roles=frozenset(mapping.get("STOCK_MANAGER_ROLES", Config.STOCK_MANAGER_ROLES)),
            requester_roles=frozenset(mapping.get("REQUESTER_ROLES", Config.REQUESTER_ROLES)),
        )


WORKFLOW_EXTENSION_KEY = "matreq.workflow"


def current_workflow_config() -> WorkflowConfig:
    """Return the WorkflowConfig bound to the active Flask app."""
    from flask import current_app

    return current_app.extensions[WORKFLOW_EXTENSION_KEY]
