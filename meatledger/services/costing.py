"""
Costing arithmetic shared by receiving, cutting, sales, closing and reports.

Everything here is pure: no I/O, no exceptions on zero denominators
(a zero basis yields 0, not an error).

Sign convention for variances: positive = surplus (actual above expected),
negative = shortage.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from meatledger.utils import money, safe_div


def cost_per_kg(total_cost: float, weight_kg: float) -> float:
    if float(weight_kg) <= 0:
        return 0.0
    return float(total_cost) / float(weight_kg)


def yield_percent(output_kg: float, waste_kg: float, reference_weight_kg: float) -> float:
    """
    Accounted-for weight (products + waste) as a % of the reference weight.

    Waste counts as accounted for; only unexplained shrinkage lowers the yield.
    """
    if float(reference_weight_kg) <= 0:
        return 0.0
    return (float(output_kg) + float(waste_kg)) / float(reference_weight_kg) * 100.0


def unaccounted_kg(reference_weight_kg: float, output_kg: float, waste_kg: float) -> float:
    return float(reference_weight_kg) - float(output_kg) - float(waste_kg)


def margin_percent(margin_amount: float, revenue: float) -> float:
    if float(revenue) <= 0:
        return 0.0
    return float(margin_amount) / float(revenue) * 100.0


def variance(actual: float, expected: float) -> float:
    return float(actual) - float(expected)


def variance_percent(actual: float, expected: float) -> float:
    return safe_div(variance(actual, expected), expected) * 100.0


@dataclass(frozen=True)
class LineAmounts:
    line_subtotal: float
    line_discount: float
    line_total: float
    tax_rate_percent: float
    tax_amount: float


def line_amounts(
    quantity_kg: float,
    unit_price: float,
    tax_rate_percent: float,
    line_discount: float = 0.0,
) -> LineAmounts:
    # line_total = quantity_kg * unit_price - line_discount; tax is on line_total
    subtotal = money(float(quantity_kg) * float(unit_price))
    discount = money(line_discount or 0.0)
    total = money(subtotal - discount)
    tax = money(total * float(tax_rate_percent) / 100.0)
    return LineAmounts(
        line_subtotal=subtotal,
        line_discount=discount,
        line_total=total,
        tax_rate_percent=float(tax_rate_percent),
        tax_amount=tax,
    )


def weighted_cost_per_kg(allocations: Iterable[tuple[float, float]]) -> float:
    """Mean cost/kg over (kg, cost_per_kg) pairs, weighted by kg."""
    total_kg = 0.0
    total_cost = 0.0
    for kg_taken, unit_cost in allocations:
        total_kg += float(kg_taken)
        total_cost += float(kg_taken) * float(unit_cost)
    return cost_per_kg(total_cost, total_kg)
