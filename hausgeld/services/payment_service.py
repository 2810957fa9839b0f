from __future__ import annotations

from datetime import date
from decimal import Decimal

from django.db.models import DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce

from ..models import Vorauszahlung, Weg, WegEinheit, Zahlung
from .allocation_service import ZERO, quantize_cent

STATUS_UEBERDECKUNG = "ueberdeckung"
STATUS_UNTERDECKUNG = "unterdeckung"
STATUS_AUSGEGLICHEN = "ausgeglichen"

MONTHS = range(1, 13)


def _sum(field_filter: Q | None = None) -> Coalesce:
    return Coalesce(
        Sum(
            "betrag",
            filter=field_filter,
            output_field=DecimalField(max_digits=12, decimal_places=2),
        ),
        Value(ZERO),
    )


def booking_month(datum: date, year: int) -> int:
    if datum.year < year:
        return 1
    if datum.year > year:
        return 12
    return datum.month


def payment_status(differenz: Decimal) -> str:
    if differenz > 0:
        return STATUS_UEBERDECKUNG
    if differenz < 0:
        return STATUS_UNTERDECKUNG
    return STATUS_AUSGEGLICHEN


class PaymentReconciliationService:
    """Soll/Ist-Abgleich der Hausgeldvorauszahlungen."""

    @staticmethod
    def owner_payments(einheit: WegEinheit, year: int):
        return (
            Zahlung.objects.for_settlement_year(year)
            .filter(eigentuemer=einheit, betrag__gt=0)
            .order_by("datum", "id")
        )

    def calculate_advance_payments(self, einheit: WegEinheit, year: int) -> Decimal:
        vorauszahlung = Vorauszahlung.objects.filter(einheit=einheit, jahr=year).first()
        if vorauszahlung is None:
            return ZERO
        return quantize_cent(Decimal(vorauszahlung.monatsbetrag) * vorauszahlung.anzahl_monate)

    def get_monthly_advance_payment(self, einheit: WegEinheit, year: int) -> Decimal:
        vorauszahlung = Vorauszahlung.objects.filter(einheit=einheit, jahr=year).first()
        return ZERO if vorauszahlung is None else quantize_cent(vorauszahlung.monatsbetrag)

    def calculate_actual_payments(self, einheit: WegEinheit, year: int) -> Decimal:
        totals = self.owner_payments(einheit, year).aggregate(
            ist=_sum(Q(kategorie=Zahlung.Kategorie.HAUSGELD))
        )
        return quantize_cent(totals["ist"])

    def calculate_payment_balance(self, einheit: WegEinheit, year: int) -> dict[str, object]:
        soll = self.calculate_advance_payments(einheit, year)
        ist = self.calculate_actual_payments(einheit, year)
        differenz = ist - soll
        return {
            "soll": soll,
            "ist": ist,
            "differenz": differenz,
            "status": payment_status(differenz),
            "count": self.owner_payments(einheit, year).count(),
        }

    def get_payment_details(self, einheit: WegEinheit, year: int) -> list[dict[str, object]]:
        return [
            {
                "datum": payment.datum,
                "beschreibung": payment.bezeichnung or "Zahlung",
                "betrag": quantize_cent(payment.betrag),
                "kategorie": payment.kategorie,
            }
            for payment in self.owner_payments(einheit, year)
        ]

    def calculate_weg_totals(self, weg: Weg, year: int) -> dict[str, Decimal]:
        soll = ZERO
        ist = ZERO
        for einheit in WegEinheit.objects.filter(weg=weg):
            soll += self.calculate_advance_payments(einheit, year)
            ist += self.calculate_actual_payments(einheit, year)
        return {"soll": soll, "ist": ist, "differenz": ist - soll}

    def get_monthly_advance_payment_for_weg(self, weg: Weg, year: int) -> Decimal:
        totals = Vorauszahlung.objects.filter(einheit__weg=weg, jahr=year).aggregate(
            monat=Coalesce(
                Sum("monatsbetrag", output_field=DecimalField(max_digits=12, decimal_places=2)),
                Value(ZERO),
            )
        )
        return quantize_cent(totals["monat"])

    def get_monthly_actual_payments(self, einheit: WegEinheit, year: int) -> dict[int, Decimal]:
        """Hausgeld-Zahlungen je Monat; Summe entspricht dem Ist.

        Per ``abrechnungsjahr`` umgebuchte Zahlungen aus anderen Kalenderjahren
        zählen im Januar (früher gebucht) bzw. Dezember (später gebucht).
        """
        monthly = {month: ZERO for month in MONTHS}
        for payment in self.owner_payments(einheit, year).filter(kategorie=Zahlung.Kategorie.HAUSGELD):
            monthly[booking_month(payment.datum, year)] += Decimal(payment.betrag)
        return {month: quantize_cent(amount) for month, amount in monthly.items()}

    def get_weg_category_totals(self, weg: Weg, year: int) -> dict[str, Decimal]:
        """Sonderumlagen und Nachzahlungen der Eigentümer, WEG-weit."""
        totals = (
            Zahlung.objects.for_settlement_year(year)
            .filter(weg=weg, eigentuemer__isnull=False, betrag__gt=0)
            .aggregate(
                sonderumlage=_sum(Q(kategorie=Zahlung.Kategorie.SONDERUMLAGE)),
                nachzahlung=_sum(Q(kategorie=Zahlung.Kategorie.NACHZAHLUNG)),
            )
        )
        return {key: quantize_cent(value) for key, value in totals.items()}
