# Overview: Catalog and directory lookups used by the workflow and the stock ledger.

from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..models import Material, Unit, Site, Store
from ..validation import quantize_price
from .errors import NotFoundError, InvalidStateError


def require_material(material_id: int, *, active_only: bool = True) -> Material:
    material = db.session.get(Material, material_id)
    if not material:
        raise NotFoundError(f"Material {material_id} not found")
    if active_only and not material.is_active:
        raise InvalidStateError(f"Material {material_id} is inactive")
    return material


def require_unit(unit_id: int) -> Unit:
    unit = db.session.get(Unit, unit_id)
    if not unit:
        raise NotFoundError(f"Unit {unit_id} not found")
    return unit


def unit_price(material_id: int) -> Decimal:
    """Current unit price; only used to decide director escalation."""
    return quantize_price(require_material(material_id, active_only=False).unit_price)


def require_site(site_id: int) -> Site:
    site = db.session.get(Site, site_id)
    if not site:
        raise NotFoundError(f"Site {site_id} not found")
    if not site.is_active:
        raise InvalidStateError(f"Site {site_id} is inactive")
    return site


def require_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if not store:
        raise NotFoundError(f"Store {store_id} not found")
    if not store.is_active:
        raise InvalidStateError(f"Store {store_id} is inactive")
    return store
