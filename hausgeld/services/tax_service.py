from __future__ import annotations

from decimal import Decimal

from ..models import Kostenkonto, WegEinheit
from .allocation_service import ZERO, quantize_cent
from .config import HgaConfig
from .cost_service import CostAggregationService, unit_mea


def compute_reduction(base: Decimal, rate: Decimal, cap: Decimal) -> Decimal:
    """Steuerermäßigung nach §35a EStG: ``min(max(base, 0) * rate, cap)``."""
    eligible = max(Decimal(base), ZERO)
    return quantize_cent(min(eligible * rate, cap))


class TaxDeductionService:
    def __init__(
        self,
        config: HgaConfig | None = None,
        costs: CostAggregationService | None = None,
    ) -> None:
        self.config = config or HgaConfig.from_settings()
        self.costs = costs or CostAggregationService()

    def compute_reduction(self, base: Decimal) -> Decimal:
        return compute_reduction(base, self.config.tax_rate, self.config.tax_cap)

    def calculate_tax_deductible(self, einheit: WegEinheit, year: int) -> dict[str, object]:
        allocation = self.costs.allocation
        mea = unit_mea(einheit)
        items = []
        for group in self.costs.account_groups(einheit.weg, year):
            kostenkonto = group.kostenkonto
            if not kostenkonto.tax_deductible:
                continue
            if kostenkonto.kategorie != Kostenkonto.Kategorie.UMLAGEFAEHIG:
                continue
            items.append(
                {
                    "kostenkonto": kostenkonto.nummer,
                    "beschreibung": kostenkonto.bezeichnung,
                    "verteilungsschluessel": group.key,
                    "gesamtkosten": quantize_cent(group.total),
                    "anrechenbar": quantize_cent(group.labor_total),
                    "anteil_kosten": allocation.allocate(
                        group.base_amount(einheit), group.key, mea, einheit, einheit.weg
                    ),
                    "anteil_anrechenbar": allocation.allocate(
                        group.labor_base_amount(einheit), group.key, mea, einheit, einheit.weg
                    ),
                }
            )
        base = quantize_cent(sum((item["anteil_anrechenbar"] for item in items), ZERO))
        uncapped = quantize_cent(max(base, ZERO) * self.config.tax_rate)
        reduction = self.compute_reduction(base)
        return {
            "items": items,
            "total": base,
            "rate": self.config.tax_rate,
            "cap": self.config.tax_cap,
            "tax_reduction": reduction,
            "cap_applied": uncapped > reduction,
        }
