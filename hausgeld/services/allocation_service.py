from __future__ import annotations

import re
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_HALF_UP
from fractions import Fraction
from typing import Callable

from ..models import Umlageschluessel, Weg, WegEinheit

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

KEY_PATTERN = re.compile(r"^0[1-6]\*$")


class InvalidAllocationInput(ValueError):
    """Ungültige Eingabe für die Kostenverteilung (Schlüssel, MEA, WEG)."""


def quantize_cent(value: Decimal | str | int | None) -> Decimal:
    return Decimal(value or ZERO).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_share(value: Decimal) -> Decimal:
    """Rundet einen Einheitenanteil einmalig auf Cent (Banker's Rounding)."""
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def fraction_to_decimal(value: Fraction) -> Decimal:
    return Decimal(value.numerator) / Decimal(value.denominator)


def parse_key(key_code: str) -> Umlageschluessel:
    if not isinstance(key_code, str) or not KEY_PATTERN.match(key_code):
        raise InvalidAllocationInput(
            f"Umlageschlüssel {key_code!r} ungültig: erwartet Format 0X* mit X zwischen 1 und 6."
        )
    return Umlageschluessel(key_code)


class AllocationService:
    """Verteilt Gesamtbeträge nach Umlageschlüssel auf eine Einheit."""

    def __init__(self, unit_counter: Callable[[Weg], int] | None = None) -> None:
        self._unit_counter = unit_counter or self._count_units

    def allocate(
        self,
        total_amount: Decimal,
        key_code: str,
        unit_mea: Fraction | Decimal | None,
        einheit: WegEinheit | None = None,
        weg: Weg | None = None,
    ) -> Decimal:
        key = parse_key(key_code)
        total = Decimal(total_amount)
        if not total.is_finite():
            raise InvalidAllocationInput("Gesamtbetrag muss eine endliche Zahl sein.")
        mea = self._mea_as_decimal(unit_mea)

        if key.is_external:
            # Anteil liefert ExternalCostService; hier nie ein zweites Mal verteilen.
            return ZERO
        if key == Umlageschluessel.EINHEITEN:
            return self._equal_share(total, weg or (einheit.weg if einheit else None))
        if key == Umlageschluessel.FESTUMLAGE:
            return quantize_share(total)
        if key == Umlageschluessel.MEA:
            if mea is None:
                raise InvalidAllocationInput("MEA fehlt für Verteilung nach 05*.")
            return quantize_share(total * mea)
        return self._special_share(total, einheit)

    def unit_count(self, weg: Weg) -> int:
        return int(self._unit_counter(weg))

    def _equal_share(self, total: Decimal, weg: Weg | None) -> Decimal:
        if weg is None:
            raise InvalidAllocationInput("WEG erforderlich für Verteilung nach Einheiten (03*).")
        count = self.unit_count(weg)
        if count <= 0:
            raise InvalidAllocationInput(f"WEG {weg.pk} hat keine Einheiten für Verteilung nach 03*.")
        return quantize_share(total / Decimal(count))

    def _special_share(self, total: Decimal, einheit: WegEinheit | None) -> Decimal:
        if einheit is None:
            return ZERO
        fraction = einheit.hebeanlage_fraction
        if fraction is None:
            return ZERO
        return quantize_share(total * fraction_to_decimal(fraction))

    @staticmethod
    def _mea_as_decimal(unit_mea: Fraction | Decimal | None) -> Decimal | None:
        if unit_mea is None:
            return None
        if isinstance(unit_mea, Fraction):
            mea = fraction_to_decimal(unit_mea)
        else:
            mea = Decimal(unit_mea)
        if mea < 0 or mea > 1:
            raise InvalidAllocationInput(f"MEA {unit_mea} muss zwischen 0 und 1 liegen.")
        return mea

    @staticmethod
    def _count_units(weg: Weg) -> int:
        return WegEinheit.objects.filter(weg=weg).count()
