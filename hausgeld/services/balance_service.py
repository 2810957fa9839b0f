from __future__ import annotations

from datetime import date

from ..models import MonatsSaldo, Weg
from .allocation_service import quantize_cent


class BalanceService:
    """Kontostandsentwicklung der WEG aus den Monatssalden."""

    @staticmethod
    def monthly_balances(weg: Weg, year: int):
        return MonatsSaldo.objects.filter(
            weg=weg,
            monat__gte=date(year, 1, 1),
            monat__lte=date(year, 12, 31),
        ).order_by("monat")

    def get_balance_data(self, weg: Weg, year: int) -> dict[str, object]:
        balances = list(self.monthly_balances(weg, year))
        if not balances:
            return {"has_data": False, "year": year}
        start = quantize_cent(balances[0].anfangssaldo)
        end = quantize_cent(balances[-1].endsaldo)
        return {
            "has_data": True,
            "year": year,
            "start": start,
            "end": end,
            "change": end - start,
            "monthly": [
                {
                    "monat": saldo.monat,
                    "anfangssaldo": quantize_cent(saldo.anfangssaldo),
                    "umsatzsumme": quantize_cent(saldo.umsatzsumme),
                    "endsaldo": quantize_cent(saldo.endsaldo),
                    "anzahl_transaktionen": saldo.anzahl_transaktionen,
                }
                for saldo in balances
            ],
        }
