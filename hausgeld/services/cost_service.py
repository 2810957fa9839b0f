from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal

from ..models import Kostenkonto, Umlageschluessel, Weg, WegEinheit, Zahlung
from .allocation_service import (
    ZERO,
    AllocationService,
    InvalidAllocationInput,
    parse_key,
    quantize_cent,
)

BUCKETS: tuple[tuple[str, str], ...] = (
    ("umlagefaehig", Kostenkonto.Kategorie.UMLAGEFAEHIG),
    ("nicht_umlagefaehig", Kostenkonto.Kategorie.NICHT_UMLAGEFAEHIG),
    ("ruecklagen", Kostenkonto.Kategorie.RUECKLAGENZUFUEHRUNG),
)


@dataclass
class AccountGroup:
    """Alle Buchungen eines Kostenkontos im Abrechnungsjahr.

    Beträge sind als Kosten positiv (Buchungsbetrag negiert), Erstattungen
    mindern die Summe.
    """

    kostenkonto: Kostenkonto
    total: Decimal = ZERO
    labor_total: Decimal = ZERO
    count: int = 0
    unit_amounts: dict[int, Decimal] = field(default_factory=lambda: defaultdict(lambda: ZERO))
    unit_labor_amounts: dict[int, Decimal] = field(default_factory=lambda: defaultdict(lambda: ZERO))

    @property
    def key(self) -> str:
        return account_key(self.kostenkonto)

    def add(self, booking: Zahlung) -> None:
        amount = -Decimal(booking.betrag)
        labor = labor_portion(booking, amount)
        self.total += amount
        self.labor_total += labor
        self.count += 1
        if booking.eigentuemer_id is not None:
            self.unit_amounts[booking.eigentuemer_id] += amount
            self.unit_labor_amounts[booking.eigentuemer_id] += labor

    def base_amount(self, einheit: WegEinheit) -> Decimal:
        # 04* verteilt nie die WEG-Summe, sondern nur Buchungen der Einheit.
        if self.key == Umlageschluessel.FESTUMLAGE:
            return self.unit_amounts.get(einheit.pk, ZERO)
        return self.total

    def labor_base_amount(self, einheit: WegEinheit) -> Decimal:
        if self.key == Umlageschluessel.FESTUMLAGE:
            return self.unit_labor_amounts.get(einheit.pk, ZERO)
        return self.labor_total


def account_key(kostenkonto: Kostenkonto) -> str:
    """Umlageschlüssel des Kontos; ohne Angabe gilt 05* (MEA)."""
    return kostenkonto.umlageschluessel or Umlageschluessel.MEA.value


def labor_portion(booking: Zahlung, amount: Decimal) -> Decimal:
    """Arbeitskostenanteil einer Buchung (§35a EStG).

    Mit Rechnung und ausgewiesenen Arbeits-/Fahrtkosten anteilig, sonst
    der volle Betrag.
    """
    rechnung = booking.rechnung
    if rechnung is None or rechnung.arbeits_fahrtkosten is None:
        return amount
    gross = Decimal(rechnung.betrag_mit_steuern or ZERO)
    if gross <= ZERO:
        return amount
    return amount * Decimal(rechnung.arbeits_fahrtkosten) / gross


def unit_mea(einheit: WegEinheit):
    mea = einheit.mea_fraction
    if mea is None:
        raise InvalidAllocationInput(f"Einheit {einheit.nummer}: kein MEA-Wert hinterlegt.")
    return mea


class CostAggregationService:
    def __init__(self, allocation: AllocationService | None = None) -> None:
        self.allocation = allocation or AllocationService()

    def account_groups(self, weg: Weg, year: int) -> list[AccountGroup]:
        bookings = (
            Zahlung.objects.for_settlement_year(year)
            .filter(weg=weg, kostenkonto__isnull=False, kostenkonto__is_active=True)
            .select_related("kostenkonto", "rechnung")
            .order_by("kostenkonto__nummer", "datum", "id")
        )
        groups: dict[int, AccountGroup] = {}
        for booking in bookings:
            kostenkonto = booking.kostenkonto
            if parse_key(account_key(kostenkonto)).is_external:
                # Heizung/Wasser kommen aus ExternalCostService.
                continue
            if kostenkonto.pk not in groups:
                groups[kostenkonto.pk] = AccountGroup(kostenkonto=kostenkonto)
            groups[kostenkonto.pk].add(booking)
        return list(groups.values())

    def unit_share(self, group: AccountGroup, einheit: WegEinheit) -> Decimal:
        return self.allocation.allocate(
            group.base_amount(einheit),
            group.key,
            unit_mea(einheit),
            einheit,
            einheit.weg,
        )

    def calculate_total_costs(self, einheit: WegEinheit, year: int) -> dict[str, object]:
        groups = self.account_groups(einheit.weg, year)
        result: dict[str, object] = {}
        gesamtkosten = ZERO
        for bucket, kategorie in BUCKETS:
            items = [
                {
                    "kostenkonto": group.kostenkonto.nummer,
                    "beschreibung": group.kostenkonto.bezeichnung,
                    "verteilungsschluessel": group.key,
                    "total": quantize_cent(group.total),
                    "anteil": self.unit_share(group, einheit),
                    "count": group.count,
                }
                for group in groups
                if group.kostenkonto.kategorie == kategorie
            ]
            bucket_total = quantize_cent(sum((item["anteil"] for item in items), ZERO))
            result[bucket] = {"items": items, "total": bucket_total}
            gesamtkosten += bucket_total
        result["gesamtkosten"] = quantize_cent(gesamtkosten)
        return result

    def calculate_total_costs_for_weg(self, weg: Weg, year: int) -> dict[str, object]:
        groups = self.account_groups(weg, year)
        units = list(WegEinheit.objects.filter(weg=weg).select_related("weg").order_by("nummer", "id"))
        result: dict[str, object] = {}
        gesamtkosten = ZERO
        for bucket, kategorie in BUCKETS:
            items = []
            for group in groups:
                if group.kostenkonto.kategorie != kategorie:
                    continue
                total = quantize_cent(group.total)
                distributed = quantize_cent(
                    sum((self.unit_share(group, einheit) for einheit in units), ZERO)
                )
                items.append(
                    {
                        "kostenkonto": group.kostenkonto.nummer,
                        "beschreibung": group.kostenkonto.bezeichnung,
                        "verteilungsschluessel": group.key,
                        "total": total,
                        "distributed": distributed,
                        "rounding_diff": quantize_cent(total - distributed),
                        "count": group.count,
                    }
                )
            bucket_total = quantize_cent(sum((item["total"] for item in items), ZERO))
            bucket_distributed = quantize_cent(sum((item["distributed"] for item in items), ZERO))
            result[bucket] = {
                "items": items,
                "total": bucket_total,
                "distributed": bucket_distributed,
                "rounding_diff": quantize_cent(bucket_total - bucket_distributed),
            }
            gesamtkosten += bucket_total
        result["gesamtkosten"] = quantize_cent(gesamtkosten)
        return result
