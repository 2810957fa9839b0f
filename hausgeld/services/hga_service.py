from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any

from django.utils import timezone

from ..models import Umlageschluessel, Weg, WegEinheit
from .allocation_service import ZERO, AllocationService, fraction_to_decimal, quantize_cent
from .balance_service import BalanceService
from .config import HgaConfig
from .cost_service import CostAggregationService
from .external_cost_service import ExternalCostService
from .payment_service import PaymentReconciliationService
from .tax_service import TaxDeductionService

PER_MILLE = Decimal("0.001")


class HgaInputError(ValueError):
    """Eingaben für die Hausgeldabrechnung sind unvollständig oder ungültig."""

    def __init__(self, errors: list[str], einheit_id: int | None, year: int) -> None:
        self.errors = list(errors)
        self.einheit_id = einheit_id
        self.year = year
        super().__init__(
            f"Ungültige Eingaben für Einheit {einheit_id} / {year}: " + "; ".join(self.errors)
        )


class HgaGenerationError(RuntimeError):
    """Hausgeldabrechnung konnte nicht erzeugt werden."""

    def __init__(self, message: str, einheit_id: int | None, year: int) -> None:
        self.einheit_id = einheit_id
        self.year = year
        super().__init__(message)


class GenerationState(Enum):
    VALIDATING = "validating"
    AGGREGATING = "aggregating"
    ASSEMBLED = "assembled"
    FAILED = "failed"


def freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def json_ready(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: json_ready(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_ready(item) for item in value]
    return value


@dataclass(frozen=True)
class Statement:
    """Hausgeldabrechnung einer Einheit für ein Jahr (unveränderlich)."""

    einheit: Mapping[str, Any]
    weg: Mapping[str, Any]
    year: int
    costs: Mapping[str, Any]
    external_costs: Mapping[str, Any]
    payments: Mapping[str, Any]
    tax_deductible: Mapping[str, Any]
    balance: Mapping[str, Any]
    weg_totals: Mapping[str, Any]
    calculated_totals: Mapping[str, Any]
    umlageschluessel: tuple[Mapping[str, Any], ...]
    configuration: Mapping[str, Any]
    generated_at: datetime

    @classmethod
    def build(cls, **values: Any) -> "Statement":
        return cls(**{key: freeze(value) for key, value in values.items()})

    def to_dict(self) -> dict[str, Any]:
        return {
            "einheit": json_ready(self.einheit),
            "weg": json_ready(self.weg),
            "year": self.year,
            "costs": json_ready(self.costs),
            "external_costs": json_ready(self.external_costs),
            "payments": json_ready(self.payments),
            "tax_deductible": json_ready(self.tax_deductible),
            "balance": json_ready(self.balance),
            "weg_totals": json_ready(self.weg_totals),
            "calculated_totals": json_ready(self.calculated_totals),
            "umlageschluessel": json_ready(self.umlageschluessel),
            "configuration": json_ready(self.configuration),
            "generated_at": json_ready(self.generated_at),
        }


def _share(value: Decimal | None) -> Decimal:
    return ZERO if value is None else value


class HgaService:
    """Erzeugt die Hausgeldabrechnung (Einzelabrechnung) einer Einheit."""

    logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: HgaConfig | None = None,
        *,
        allocation: AllocationService | None = None,
        external_costs: ExternalCostService | None = None,
        costs: CostAggregationService | None = None,
        payments: PaymentReconciliationService | None = None,
        tax: TaxDeductionService | None = None,
        balance: BalanceService | None = None,
    ) -> None:
        self.config = config or HgaConfig.from_settings()
        self.allocation = allocation or AllocationService()
        self.external_costs = external_costs or ExternalCostService()
        self.costs = costs or CostAggregationService(self.allocation)
        self.payments = payments or PaymentReconciliationService()
        self.tax = tax or TaxDeductionService(self.config, self.costs)
        self.balance = balance or BalanceService()

    def validate_inputs(self, einheit: WegEinheit, year: int) -> list[str]:
        errors: list[str] = []
        mea_error = self._mea_error(einheit)
        if mea_error:
            errors.append(mea_error)

        max_year = timezone.now().year + 1
        if year < self.config.min_year or year > max_year:
            errors.append(
                f"Ungültiges Jahr {year}: erlaubt ist {self.config.min_year} bis {max_year}."
            )

        if einheit.weg_id is None:
            errors.append(f"Einheit {einheit.nummer}: keiner WEG zugeordnet.")
            return errors

        for other in WegEinheit.objects.filter(weg_id=einheit.weg_id).exclude(pk=einheit.pk):
            mea_error = self._mea_error(other)
            if mea_error:
                errors.append(mea_error)

        errors.extend(self.external_costs.validate_external_cost_data(einheit.weg, year))
        return errors

    @staticmethod
    def _mea_error(einheit: WegEinheit) -> str | None:
        mea = einheit.mea_fraction
        if mea is None:
            return f"Einheit {einheit.nummer}: kein gültiger MEA-Wert hinterlegt."
        if mea > 1:
            return f"Einheit {einheit.nummer}: MEA {einheit.miteigentumsanteile} liegt über 1."
        return None

    def generate_statement(self, einheit: WegEinheit, year: int) -> Statement:
        self._transition(GenerationState.VALIDATING, einheit, year)
        errors = self.validate_inputs(einheit, year)
        if errors:
            self._transition(GenerationState.FAILED, einheit, year)
            self.logger.warning(
                "HGA-Eingaben ungültig (Einheit %s, Jahr %s): %s",
                einheit.pk,
                year,
                "; ".join(errors),
            )
            raise HgaInputError(errors, einheit.pk, year)

        self._transition(GenerationState.AGGREGATING, einheit, year)
        try:
            statement = self._assemble(einheit, year)
        except Exception as exc:
            self._transition(GenerationState.FAILED, einheit, year)
            self.logger.exception(
                "HGA-Erstellung fehlgeschlagen (Einheit %s, Jahr %s).", einheit.pk, year
            )
            raise HgaGenerationError(
                f"Hausgeldabrechnung für Einheit {einheit.pk} / {year} fehlgeschlagen: {exc}",
                einheit.pk,
                year,
            ) from exc
        self._transition(GenerationState.ASSEMBLED, einheit, year)
        return statement

    def calculate_total_costs(self, weg: Weg, year: int) -> dict[str, object]:
        totals = self.costs.calculate_total_costs_for_weg(weg, year)
        # Rücklagen sind Zuführungen, keine Kosten (BGH V ZR 44/09).
        return {
            "umlagefaehig": totals["umlagefaehig"],
            "nicht_umlagefaehig": totals["nicht_umlagefaehig"],
            "ruecklagen": totals["ruecklagen"],
            "external_costs": self.external_costs.get_total_external_costs_for_weg(weg, year),
            "gesamtkosten": totals["gesamtkosten"],
        }

    def _assemble(self, einheit: WegEinheit, year: int) -> Statement:
        weg = einheit.weg
        costs = self.costs.calculate_total_costs(einheit, year)
        external_costs = self.external_costs.get_all_external_costs(einheit, year)
        payments = self._payment_data(einheit, year)
        tax_deductible = self.tax.calculate_tax_deductible(einheit, year)
        balance = self.balance.get_balance_data(weg, year)
        weg_cost_totals = self.calculate_total_costs(weg, year)
        payments["weg_totals"]["ruecklagen"] = weg_cost_totals["ruecklagen"]["total"]

        return Statement.build(
            einheit=self._unit_info(einheit),
            weg={"id": weg.pk, "name": weg.name, "adresse": weg.adresse},
            year=year,
            costs=costs,
            external_costs=external_costs,
            payments=payments,
            tax_deductible=tax_deductible,
            balance=balance,
            weg_totals={
                "gesamtkosten": weg_cost_totals["gesamtkosten"],
                "soll": payments["weg_totals"]["soll"],
                "ist": payments["weg_totals"]["ist"],
                "cost_breakdown": weg_cost_totals,
            },
            calculated_totals=self._final_totals(costs, external_costs, payments),
            umlageschluessel=self._key_overview(einheit, year),
            configuration={
                "section_headers": dict(self.config.section_headers),
                "standard_texts": dict(self.config.standard_texts),
            },
            generated_at=timezone.now(),
        )

    def _payment_data(self, einheit: WegEinheit, year: int) -> dict[str, Any]:
        weg = einheit.weg
        data: dict[str, Any] = self.payments.calculate_payment_balance(einheit, year)
        weg_totals = self.payments.calculate_weg_totals(weg, year)
        data.update(
            {
                "payment_details": self.payments.get_payment_details(einheit, year),
                "monthly_unit_payments": self.payments.get_monthly_actual_payments(einheit, year),
                "weg_category_totals": self.payments.get_weg_category_totals(weg, year),
                "weg_totals": {
                    **weg_totals,
                    "monthly_weg_soll": self.payments.get_monthly_advance_payment_for_weg(weg, year),
                    "monthly_unit_soll": self.payments.get_monthly_advance_payment(einheit, year),
                },
            }
        )
        return data

    @staticmethod
    def _unit_info(einheit: WegEinheit) -> dict[str, object]:
        mea = einheit.mea_fraction
        return {
            "id": einheit.pk,
            "nummer": einheit.nummer,
            "beschreibung": einheit.bezeichnung,
            "eigentuemer": einheit.miteigentuemer,
            "mea": einheit.miteigentumsanteile,
            "mea_prozent": quantize_cent(fraction_to_decimal(mea) * 100),
            "hebeanlage": einheit.hebeanlage or None,
            "adresse": einheit.adresse,
        }

    @staticmethod
    def _final_totals(
        costs: dict[str, Any],
        external_costs: dict[str, Any],
        payments: dict[str, Any],
    ) -> dict[str, object]:
        heating, water = external_costs["heating"], external_costs["water"]

        heizung_wasser_weg = heating["total"] + water["total"]
        umlagefaehig_weg = heizung_wasser_weg + sum(
            (item["total"] for item in costs["umlagefaehig"]["items"]), ZERO
        )
        nicht_umlagefaehig_weg = sum(
            (item["total"] for item in costs["nicht_umlagefaehig"]["items"]), ZERO
        )

        heizung_wasser_unit = _share(heating["unit_share"]) + _share(water["unit_share"])
        umlagefaehig_unit = heizung_wasser_unit + costs["umlagefaehig"]["total"]
        nicht_umlagefaehig_unit = costs["nicht_umlagefaehig"]["total"]
        # Rücklagen nicht in den Gesamtkosten (BGH V ZR 44/09).
        unit_gesamtkosten = umlagefaehig_unit + nicht_umlagefaehig_unit

        soll, ist = payments["soll"], payments["ist"]
        saldo = unit_gesamtkosten - ist
        return {
            "weg": {
                "umlagefaehig": quantize_cent(umlagefaehig_weg),
                "nicht_umlagefaehig": quantize_cent(nicht_umlagefaehig_weg),
                "gesamtkosten": quantize_cent(umlagefaehig_weg + nicht_umlagefaehig_weg),
                "heizung_wasser": quantize_cent(heizung_wasser_weg),
            },
            "unit": {
                "umlagefaehig": quantize_cent(umlagefaehig_unit),
                "nicht_umlagefaehig": quantize_cent(nicht_umlagefaehig_unit),
                "gesamtkosten": quantize_cent(unit_gesamtkosten),
                "heizung_wasser": quantize_cent(heizung_wasser_unit),
            },
            "balance": {
                "abrechnungsspitze": quantize_cent(unit_gesamtkosten - soll),
                "zahlungsdifferenz": quantize_cent(ist - soll),
                "saldo": quantize_cent(saldo),
                "is_guthaben": saldo < 0,
                "saldo_abs": quantize_cent(abs(saldo)),
            },
        }

    def _key_overview(self, einheit: WegEinheit, year: int) -> list[dict[str, object]]:
        mea = einheit.mea_fraction
        hebeanlage = einheit.hebeanlage_fraction
        basis: dict[Umlageschluessel, tuple[object, object]] = {
            Umlageschluessel.HEIZUNG_EXTERN: ("Beträge siehe Ergebnisliste", None),
            Umlageschluessel.WASSER_EXTERN: ("Beträge siehe Ergebnisliste", None),
            Umlageschluessel.EINHEITEN: (self.allocation.unit_count(einheit.weg), 1),
            Umlageschluessel.FESTUMLAGE: ("Beträge siehe Ergebnisliste", None),
            Umlageschluessel.MEA: (
                Decimal("1000.000"),
                (fraction_to_decimal(mea) * 1000).quantize(PER_MILLE),
            ),
            Umlageschluessel.HEBEANLAGE: (
                hebeanlage.denominator if hebeanlage else None,
                hebeanlage.numerator if hebeanlage else 0,
            ),
        }
        return [
            {
                "nummer": key.value,
                "bezeichnung": str(key.label),
                "umlage_typ": key.umlage_typ,
                "zeitraum": year,
                "gesamtumlage": gesamtumlage,
                "anteil": anteil,
            }
            for key, (gesamtumlage, anteil) in basis.items()
        ]

    def _transition(self, state: GenerationState, einheit: WegEinheit, year: int) -> None:
        self.logger.debug("HGA Einheit %s / %s: %s", einheit.pk, year, state.value)
