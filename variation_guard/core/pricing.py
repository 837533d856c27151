"""
Credit pricing for variation requests.

Computes how many credits a heterogeneous variation request costs.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Sequence

from .errors import InvalidRequest
from .variants import VariantKind, VariantSpec


@dataclass(frozen=True)
class CostTable:
    """Per-tag credit weights."""
    base_variation_cost: int = 1
    outfit_variation_cost: int = 1
    format_variation_cost: int = 1
    multi_animal_cost: int = 2

    def __post_init__(self):
        """Validate all weights are positive integers."""
        for name in ("base_variation_cost", "outfit_variation_cost",
                     "format_variation_cost", "multi_animal_cost"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer")

    def unit_cost(self, kind: VariantKind) -> int:
        """Credit weight of a single spec of the given kind."""
        return {
            VariantKind.BREED_COAT: self.base_variation_cost,
            VariantKind.OUTFIT: self.outfit_variation_cost,
            VariantKind.FORMAT: self.format_variation_cost,
            VariantKind.MULTI_SUBJECT: self.multi_animal_cost,
        }[kind]


DEFAULT_COST_TABLE = CostTable()


def calculate_required_credits(
    variant_specs: Sequence[VariantSpec],
    cost_table: CostTable = DEFAULT_COST_TABLE
) -> int:
    """Calculate the credits a request must reserve up front.

    A multi-subject composition is priced as one unit of work and does not
    stack with other tags. Otherwise each tag is charged its weight per
    occurrence. A non-empty request always costs at least one credit.

    Args:
        variant_specs: Requested transformations in submission order
        cost_table: Credit weights per tag

    Returns:
        Required credit count

    Raises:
        InvalidRequest: If no variant specs are given
    """
    if not variant_specs:
        raise InvalidRequest("At least one variant spec is required")

    counts = Counter(spec.kind for spec in variant_specs)

    if counts[VariantKind.MULTI_SUBJECT]:
        return cost_table.multi_animal_cost

    required = (
        counts[VariantKind.BREED_COAT] * cost_table.base_variation_cost
        + counts[VariantKind.OUTFIT] * cost_table.outfit_variation_cost
        + counts[VariantKind.FORMAT] * cost_table.format_variation_cost
    )
    return max(1, required)


def cost_breakdown(
    variant_specs: Sequence[VariantSpec],
    cost_table: CostTable = DEFAULT_COST_TABLE
) -> Dict[str, int]:
    """Per-tag spec counts alongside the request total, for quotes and audits."""
    counts = Counter(spec.kind for spec in variant_specs)
    breakdown = {kind.value: counts[kind] for kind in VariantKind}
    breakdown["total"] = calculate_required_credits(variant_specs, cost_table)
    return breakdown
