from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from ..models import HeizWasserkosten, Umlageschluessel, Weg, WegEinheit
from .allocation_service import ZERO, quantize_cent


class ExternalCostSource(Protocol):
    def get_heating_share(self, einheit: WegEinheit, year: int) -> Decimal | None:
        ...

    def get_water_share(self, einheit: WegEinheit, year: int) -> Decimal | None:
        ...

    def get_community_totals(self, weg: Weg, year: int) -> dict[str, Decimal]:
        ...


class HeizWasserkostenSource:
    """Liest vorab verteilte Heiz-/Wasserkosten aus ``HeizWasserkosten``."""

    @staticmethod
    def record(einheit: WegEinheit, year: int) -> HeizWasserkosten | None:
        return HeizWasserkosten.objects.filter(einheit=einheit, jahr=year).first()

    def get_heating_share(self, einheit: WegEinheit, year: int) -> Decimal | None:
        record = self.record(einheit, year)
        return None if record is None else record.heizkosten

    def get_water_share(self, einheit: WegEinheit, year: int) -> Decimal | None:
        record = self.record(einheit, year)
        return None if record is None else record.wasserkosten

    def get_community_totals(self, weg: Weg, year: int) -> dict[str, Decimal]:
        heating = ZERO
        water = ZERO
        for record in HeizWasserkosten.objects.filter(einheit__weg=weg, jahr=year):
            heating += record.heizkosten or ZERO
            water += record.wasserkosten or ZERO
        return {"heating": quantize_cent(heating), "water": quantize_cent(water)}


class ExternalCostService:
    """Übernimmt extern verteilte Heiz- und Wasserkosten (Schlüssel 01*/02*).

    Fehlende Werte bleiben ``None`` und werden nie stillschweigend zu 0.
    """

    def __init__(self, source: ExternalCostSource | None = None) -> None:
        self.source = source or HeizWasserkostenSource()

    def get_heating_costs(self, einheit: WegEinheit, year: int) -> dict[str, object]:
        totals = self.source.get_community_totals(einheit.weg, year)
        return self._cost_entry(
            total=totals["heating"],
            unit_share=self.source.get_heating_share(einheit, year),
            key=Umlageschluessel.HEIZUNG_EXTERN,
        )

    def get_water_costs(self, einheit: WegEinheit, year: int) -> dict[str, object]:
        totals = self.source.get_community_totals(einheit.weg, year)
        return self._cost_entry(
            total=totals["water"],
            unit_share=self.source.get_water_share(einheit, year),
            key=Umlageschluessel.WASSER_EXTERN,
        )

    def get_all_external_costs(self, einheit: WegEinheit, year: int) -> dict[str, object]:
        heating = self.get_heating_costs(einheit, year)
        water = self.get_water_costs(einheit, year)
        unit_total = sum(
            (entry["unit_share"] for entry in (heating, water) if entry["unit_share"] is not None),
            ZERO,
        )
        return {
            "heating": heating,
            "water": water,
            "total": quantize_cent(heating["total"] + water["total"]),
            "unit_total": quantize_cent(unit_total),
        }

    def get_total_external_costs_for_weg(self, weg: Weg, year: int) -> dict[str, Decimal]:
        totals = self.source.get_community_totals(weg, year)
        return {
            "heating_total": totals["heating"],
            "water_total": totals["water"],
            "grand_total": quantize_cent(totals["heating"] + totals["water"]),
        }

    def validate_external_cost_data(self, weg: Weg, year: int) -> list[str]:
        errors: list[str] = []
        for einheit in WegEinheit.objects.filter(weg=weg).order_by("nummer", "id"):
            heating = self.source.get_heating_share(einheit, year)
            water = self.source.get_water_share(einheit, year)
            if heating is None and water is None:
                errors.append(
                    f"Einheit {einheit.nummer}: keine Heiz- und Wasserkosten für {year} erfasst."
                )
                continue
            for field_name, label, value in (
                ("heizkosten", "Heizkosten", heating),
                ("wasserkosten", "Wasserkosten", water),
            ):
                if value is None:
                    errors.append(f"Einheit {einheit.nummer}: {label} ({field_name}) für {year} fehlen.")
                elif value < 0:
                    errors.append(
                        f"Einheit {einheit.nummer}: {label} ({field_name}) für {year} negativ ({value})."
                    )
        return errors

    @staticmethod
    def _cost_entry(
        *,
        total: Decimal,
        unit_share: Decimal | None,
        key: Umlageschluessel,
    ) -> dict[str, object]:
        return {
            "total": quantize_cent(total),
            "unit_share": None if unit_share is None else quantize_cent(unit_share),
            "distribution_key": key.value,
        }
