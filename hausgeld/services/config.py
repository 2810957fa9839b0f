from __future__ import annotations

from dataclasses import dataclass, field, fields
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from django.conf import settings

DEFAULT_SECTION_HEADERS: Mapping[str, str] = MappingProxyType(
    {
        "main_title": "HAUSGELDABRECHNUNG %s - EINZELABRECHNUNG",
        "owner_info": "EIGENTÜMER INFORMATION:",
        "summary": "ABRECHNUNGSÜBERSICHT:",
        "calculation": "BERECHNUNG DES ANTEILS:",
        "umlageschluessel": "UMLAGESCHLÜSSEL:",
        "umlagefaehig": "1. UMLAGEFÄHIGE KOSTEN (Mieter):",
        "nicht_umlagefaehig": "2. NICHT UMLAGEFÄHIGE KOSTEN (Mieter):",
        "ruecklagen": "3. RÜCKLAGENZUFÜHRUNG:",
        "tax_deductible": "STEUERBEGÜNSTIGTE LEISTUNGEN nach §35a EStG:",
        "payment_overview": "ZAHLUNGSÜBERSICHT %s:",
        "balance_development": "KONTOSTANDSENTWICKLUNG %s:",
        "end": "ENDE DER HAUSGELDABRECHNUNG",
    }
)

DEFAULT_STANDARD_TEXTS: Mapping[str, str] = MappingProxyType(
    {
        "tax_deductible_info": (
            "Ihr steuerlich absetzbarer Betrag (100%% der Arbeits-/Fahrtkosten inkl. MwSt.): %.2f EUR"
        ),
        "tax_notice": (
            "HINWEIS: Diese Beträge können Sie in Ihrer Steuererklärung als haushaltsnahe "
            "Dienstleistungen geltend machen (20% davon, max. 1.200 EUR Steuerermäßigung pro Jahr)."
        ),
        "result_nachzahlung": "Ergebnis: Nachzahlung in Höhe von %.2f €",
        "result_guthaben": "Ergebnis: Guthaben in Höhe von %.2f €",
    }
)


@dataclass(frozen=True)
class HgaConfig:
    """Konfiguration der Hausgeldabrechnung.

    Wird einmal gebaut (meist über ``from_settings``) und an die Services
    übergeben; zur Laufzeit wird nichts daran verändert.
    """

    tax_rate: Decimal = Decimal("0.20")
    tax_cap: Decimal = Decimal("1200.00")
    min_year: int = 2000
    percentage_tolerance: Decimal = Decimal("10")
    tax_ratio_threshold: Decimal = Decimal("25")
    heating_cost_threshold: Decimal = Decimal("5000.00")
    payment_count_min: int = 10
    payment_count_max: int = 16
    ai_timeout: float = 60.0
    feedback_limit: int = 10
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1:8b"
    claude_api_key: str = ""
    claude_model: str = "claude-3-haiku-20240307"
    claude_enabled: bool = False
    section_headers: Mapping[str, str] = field(default_factory=lambda: DEFAULT_SECTION_HEADERS)
    standard_texts: Mapping[str, str] = field(default_factory=lambda: DEFAULT_STANDARD_TEXTS)

    _DECIMAL_FIELDS = (
        "tax_rate",
        "tax_cap",
        "percentage_tolerance",
        "tax_ratio_threshold",
        "heating_cost_threshold",
    )

    @classmethod
    def from_settings(cls) -> "HgaConfig":
        overrides = getattr(settings, "HGA", None) or {}
        known = {item.name for item in fields(cls)}
        values: dict[str, object] = {}
        for key, value in overrides.items():
            name = str(key).lower()
            if name not in known:
                raise ValueError(f"Unbekannte HGA-Einstellung: {key}")
            if name in cls._DECIMAL_FIELDS:
                value = Decimal(str(value))
            elif name in ("section_headers", "standard_texts"):
                value = MappingProxyType(dict(value))
            values[name] = value
        return cls(**values)
