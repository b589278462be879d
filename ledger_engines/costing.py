"""
Module: ledger_engines.costing
Responsibility:
    Weighted-average inventory costing.  Folds the ordered stream of stock
    events into a per-item position (total weight, total value).

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Purchases add weight and weight * price to value.
    - Sales remove weight at the CURRENT average cost, never at the sale
      price, so a sale does not change the average of what remains.
    - A sale also removes its wastage allowance:
      effective weight = weight * (1 + wastage_percentage / 100).
    - A position that reaches zero weight has zero value (no rounding dust).
    - Events are applied in (date, created_at, id) order.

Failure modes:
    - InsufficientStockError when a sale exceeds the available weight under
      the REJECT oversell policy.

Usage:
    from ledger_engines.costing import InventoryCostingEngine

    engine = InventoryCostingEngine()
    positions = engine.fold(events=events)
    positions["rice"].average_cost
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.dtos import StockEvent
from ledger_kernel.domain.enums import OversellPolicy, StockKind
from ledger_kernel.exceptions import InsufficientStockError
from ledger_kernel.logging_config import get_logger

logger = get_logger("engines.costing")

ZERO = Decimal("0")
HUNDRED = Decimal("100")
# Scale of the stored decimal columns
QUANTUM = Decimal("0.000000001")


@dataclass(frozen=True)
class StockPosition:
    """Weight and value on hand for one item."""

    item_name: str
    weight: Decimal = ZERO
    value: Decimal = ZERO

    @property
    def average_cost(self) -> Decimal:
        if self.weight == ZERO:
            return ZERO
        return self.value / self.weight

    def as_json(self) -> dict[str, str]:
        return {"weight": str(self.weight), "value": str(self.value)}


@dataclass(frozen=True)
class SaleCost:
    """What a sale removes from the position."""

    requested_weight: Decimal
    removed_weight: Decimal
    removed_value: Decimal
    average_cost: Decimal


class InventoryCostingEngine:
    """
    Weighted-average costing with an explicit oversell policy.

    Contract:
        Stateless apart from its policy.  ``fold`` recomputes positions from
        scratch; ``apply`` advances a single position by one event.

    Guarantees:
        - REJECT: a sale never takes weight below zero.
        - CLAMP: an oversell removes only what is on hand; weight and value
          floor at zero.
        - ALLOW_NEGATIVE: the sale is applied as is and the negative weight
          stays visible as a data-quality signal.
    """

    def __init__(
        self,
        oversell_policy: OversellPolicy = OversellPolicy.REJECT,
        wastage_percentage: Decimal = ZERO,
    ):
        if wastage_percentage < ZERO:
            raise ValueError(f"Wastage percentage must be non-negative, got {wastage_percentage}")
        self.oversell_policy = oversell_policy
        self.wastage_percentage = Decimal(wastage_percentage)

    def effective_weight(self, weight: Decimal) -> Decimal:
        """Sale weight including the wastage allowance."""
        if self.wastage_percentage == ZERO:
            return weight
        return (weight * (Decimal("1") + self.wastage_percentage / HUNDRED)).quantize(QUANTUM)

    def sale_cost(self, position: StockPosition, weight: Decimal) -> SaleCost:
        """
        Cost removed by selling ``weight`` from ``position``.

        Raises:
            InsufficientStockError: REJECT policy and not enough on hand.
        """
        requested = self.effective_weight(weight)
        average = position.average_cost

        if requested > position.weight:
            if self.oversell_policy is OversellPolicy.REJECT:
                raise InsufficientStockError(position.item_name, requested, position.weight)
            if self.oversell_policy is OversellPolicy.CLAMP:
                removed = max(position.weight, ZERO)
                return SaleCost(requested, removed, position.value if removed else ZERO, average)
            logger.warning(
                "stock_oversold",
                extra={
                    "item_name": position.item_name,
                    "requested": str(requested),
                    "available": str(position.weight),
                },
            )

        return SaleCost(requested, requested, (requested * average).quantize(QUANTUM), average)

    def apply(self, position: StockPosition, event: StockEvent) -> StockPosition:
        """Advance ``position`` by one purchase or sale."""
        if event.kind is StockKind.PURCHASE:
            return StockPosition(
                item_name=position.item_name,
                weight=position.weight + event.weight,
                value=position.value + (event.weight * event.price_per_unit).quantize(QUANTUM),
            )

        cost = self.sale_cost(position, event.weight)
        weight = position.weight - cost.removed_weight
        value = position.value - cost.removed_value
        if weight == ZERO:
            value = ZERO
        return StockPosition(item_name=position.item_name, weight=weight, value=value)

    @traced_engine("inventory_costing", "1.0", fingerprint_fields=("events",))
    def fold(
        self,
        *,
        events: Sequence[StockEvent],
        opening: Mapping[str, StockPosition] | None = None,
    ) -> dict[str, StockPosition]:
        """
        Positions after applying ``events`` on top of ``opening``.

        Returns:
            item_name -> StockPosition for every item seen.
        """
        positions: dict[str, StockPosition] = dict(opening or {})
        for event in sorted(events, key=lambda e: e.sort_key):
            current = positions.get(event.item_name) or StockPosition(event.item_name)
            positions[event.item_name] = self.apply(current, event)

        logger.debug(
            "stock_positions_folded",
            extra={"event_count": len(events), "item_count": len(positions)},
        )
        return positions
