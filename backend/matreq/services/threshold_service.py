# Overview: Low-stock flag evaluation plus low-stock and procurement projections.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING

from sqlalchemy import or_

from ..config import WorkflowConfig, current_workflow_config
from ..extensions import db
from ..models import StockRecord
from ..validation import quantize_quantity


PRIORITY_CRITICAL = "CRITICAL"
PRIORITY_HIGH = "HIGH"
PRIORITY_MEDIUM = "MEDIUM"

_PRIORITY_ORDER = {PRIORITY_CRITICAL: 0, PRIORITY_HIGH: 1, PRIORITY_MEDIUM: 2}


class ThresholdMonitor:
    """
    Computes the low-stock flag of a stock record.

    low_stock_alert = quantity_on_hand <= max(reorder_level, low_stock_threshold)

    evaluate() writes only the flag and is idempotent. It runs inside the
    ledger's transaction, so a flag never disagrees with a committed
    quantity.
    """

    def __init__(self, config: WorkflowConfig | None = None):
        self.config = config or current_workflow_config()

    @staticmethod
    def trigger_level(stock: StockRecord) -> Decimal:
        return max(quantize_quantity(stock.reorder_level), quantize_quantity(stock.low_stock_threshold))

    def evaluate(self, stock: StockRecord) -> bool:
        flag = quantize_quantity(stock.quantity_on_hand) <= self.trigger_level(stock)
        if stock.low_stock_alert != flag:
            stock.low_stock_alert = flag
        return flag

    def recommend(self, stock: StockRecord) -> "ProcurementRecommendation | None":
        return recommend(stock, self.config.procurement_minimum_order)


def list_low_stock(store_id: int | None = None) -> list[StockRecord]:
    query = db.session.query(StockRecord).filter(StockRecord.low_stock_alert.is_(True))
    if store_id is not None:
        query = query.filter(StockRecord.store_id == store_id)
    return query.order_by(StockRecord.quantity_on_hand.asc(), StockRecord.id.asc()).all()


@dataclass(frozen=True)
class ProcurementRecommendation:
    stock_record_id: int
    material_id: int
    store_id: int
    priority: str
    suggested_quantity: Decimal
    reason: str
    quantity_on_hand: Decimal
    reorder_level: Decimal
    low_stock_threshold: Decimal

    def to_dict(self) -> dict:
        return {
            "stock_record_id": self.stock_record_id,
            "material_id": self.material_id,
            "store_id": self.store_id,
            "priority": self.priority,
            "suggested_quantity": str(self.suggested_quantity),
            "reason": self.reason,
            "quantity_on_hand": str(self.quantity_on_hand),
            "reorder_level": str(self.reorder_level),
            "low_stock_threshold": str(self.low_stock_threshold),
        }


def recommend(stock: StockRecord, minimum_order: Decimal) -> ProcurementRecommendation | None:
    """
    Priority and suggested order quantity for one record, or None when no
    purchase is needed. Suggestions round up to whole units.
    """
    on_hand = quantize_quantity(stock.quantity_on_hand)
    reorder = quantize_quantity(stock.reorder_level)
    threshold = quantize_quantity(stock.low_stock_threshold)

    if on_hand == 0:
        priority = PRIORITY_CRITICAL
        suggested = max(reorder * 2, minimum_order)
        reason = "Out of stock - immediate purchase required"
    elif stock.low_stock_alert or on_hand <= threshold:
        priority = PRIORITY_HIGH
        suggested = max(reorder - on_hand, reorder)
        reason = "Below low stock threshold"
    elif on_hand <= reorder:
        priority = PRIORITY_MEDIUM
        suggested = reorder * Decimal("1.5") - on_hand
        reason = "At or below reorder level"
    else:
        return None

    return ProcurementRecommendation(
        stock_record_id=stock.id,
        material_id=stock.material_id,
        store_id=stock.store_id,
        priority=priority,
        suggested_quantity=suggested.to_integral_value(rounding=ROUND_CEILING),
        reason=reason,
        quantity_on_hand=on_hand,
        reorder_level=reorder,
        low_stock_threshold=threshold,
    )


def procurement_recommendations(
    store_id: int | None = None,
    config: WorkflowConfig | None = None,
) -> list[ProcurementRecommendation]:
    monitor = ThresholdMonitor(config)
    query = db.session.query(StockRecord).filter(
        or_(
            StockRecord.low_stock_alert.is_(True),
            StockRecord.quantity_on_hand <= StockRecord.reorder_level,
        )
    )
    if store_id is not None:
        query = query.filter(StockRecord.store_id == store_id)

    recommendations = []
    for stock in query.order_by(StockRecord.id.asc()).all():
        rec = monitor.recommend(stock)
        if rec is not None:
            recommendations.append(rec)
    recommendations.sort(key=lambda r: (_PRIORITY_ORDER[r.priority], r.quantity_on_hand, r.stock_record_id))
    return recommendations
