from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping

from ..models import HgaQualityFeedback, Umlageschluessel
from .ai_providers import AiProvider, AiProviderError, default_providers
from .config import HgaConfig
from .hga_service import Statement, json_ready

PASS = "pass"
WARNING = "warning"
CRITICAL = "critical"
FAIL = "fail"

ASSESSMENTS = (PASS, WARNING, CRITICAL)
REVIEW_KEYS = (Umlageschluessel.FESTUMLAGE.value, Umlageschluessel.HEBEANLAGE.value)


@dataclass(frozen=True)
class CheckResult:
    category: str
    severity: str
    status: str
    message: str
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "severity": self.severity,
            "status": self.status,
            "message": self.message,
            "details": json_ready(self.details),
        }


@dataclass(frozen=True)
class PlausibilityVerdict:
    status: str
    provider: str | None
    processing_time: float
    checks: tuple[CheckResult, ...]
    ai_analysis: Mapping[str, Any] | None = None
    ai_error: str | None = None
    user_feedback_injected: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "provider": self.provider,
            "processing_time": self.processing_time,
            "checks": [check.to_dict() for check in self.checks],
            "ai_analysis": json_ready(self.ai_analysis) if self.ai_analysis is not None else None,
            "ai_error": self.ai_error,
            "user_feedback_injected": self.user_feedback_injected,
        }


def _check(category: str, severity: str, status: str, message: str, **details: Any) -> CheckResult:
    return CheckResult(category, severity, status, message, MappingProxyType(details))


def overall_status(checks: tuple[CheckResult, ...] | list[CheckResult]) -> str:
    if any(check.status == FAIL and check.severity == CRITICAL for check in checks):
        return CRITICAL
    if any(
        (check.status == FAIL and check.severity == "high") or check.status == WARNING
        for check in checks
    ):
        return WARNING
    return PASS


def escalate(status: str, assessment: str | None) -> str:
    """KI-Einschätzung kann den Status nur verschärfen."""
    if assessment == CRITICAL:
        return CRITICAL
    if assessment == WARNING and status == PASS:
        return WARNING
    return status


def validate_ai_response(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise AiProviderError("KI-Antwort ist kein JSON-Objekt.")
    assessment = data.get("overall_assessment")
    if assessment not in ASSESSMENTS:
        raise AiProviderError(f"Ungültige overall_assessment: {assessment!r}.")
    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise AiProviderError(f"Ungültige confidence: {confidence!r}.")
    if not 0 <= confidence <= 1:
        raise AiProviderError(f"confidence {confidence} liegt nicht zwischen 0 und 1.")
    issues = data.get("issues_found")
    if not isinstance(issues, list):
        raise AiProviderError("issues_found fehlt oder ist keine Liste.")
    summary = data.get("summary")
    if not isinstance(summary, str):
        raise AiProviderError("summary fehlt oder ist kein Text.")
    return {
        "overall_assessment": assessment,
        "confidence": float(confidence),
        "issues_found": issues,
        "summary": summary,
    }


def _amount(value: Any) -> str:
    if value is None:
        return "fehlt"
    return f"{Decimal(value):.2f}"


class HgaQualityCheckService:
    """Plausibilitätsprüfung einer Hausgeldabrechnung (Regeln plus optionale KI)."""

    logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: HgaConfig | None = None,
        providers: Mapping[str, AiProvider] | None = None,
    ) -> None:
        self.config = config or HgaConfig.from_settings()
        self.providers = dict(providers) if providers is not None else default_providers(self.config)

    def run_quality_checks(
        self,
        statement: Statement,
        provider: str | AiProvider | None = "ollama",
        include_user_feedback: bool = True,
    ) -> PlausibilityVerdict:
        started = time.monotonic()
        checks = tuple(self.rule_checks(statement))
        status = overall_status(checks)

        ai_analysis = None
        ai_error = None
        feedback: list[HgaQualityFeedback] = []
        provider_name = None
        if provider is not None:
            if include_user_feedback:
                feedback = HgaQualityFeedback.recent_issues(self.config.feedback_limit)
            provider_name = provider if isinstance(provider, str) else provider.name
            try:
                ai_analysis = self._run_ai_analysis(statement, checks, provider, feedback)
            except AiProviderError as exc:
                self.logger.warning("KI-Analyse (%s) fehlgeschlagen: %s", provider_name, exc)
                ai_error = str(exc)
            else:
                status = escalate(status, ai_analysis["overall_assessment"])

        return PlausibilityVerdict(
            status=status,
            provider=provider_name,
            processing_time=time.monotonic() - started,
            checks=checks,
            ai_analysis=MappingProxyType(ai_analysis) if ai_analysis is not None else None,
            ai_error=ai_error,
            user_feedback_injected=len(feedback),
        )

    def get_debug_prompt(self, statement: Statement) -> str:
        checks = self.rule_checks(statement)
        feedback = HgaQualityFeedback.recent_issues(self.config.feedback_limit)
        return self.build_prompt(statement, checks, feedback)

    def rule_checks(self, statement: Statement) -> list[CheckResult]:
        return [
            *self.check_data_completeness(statement),
            *self.check_calculation_plausibility(statement),
            *self.check_compliance(statement),
        ]

    def check_data_completeness(self, statement: Statement) -> list[CheckResult]:
        checks = []
        heating = statement.external_costs["heating"]["unit_share"]
        water = statement.external_costs["water"]["unit_share"]
        if not heating and not water:
            checks.append(
                _check(
                    "data_completeness",
                    "high",
                    FAIL,
                    "Keine externen Kosten (Heizung/Wasser) vorhanden",
                    recommendation="Bitte Heiz- und Wasserkostendaten nachtragen",
                )
            )

        payments = statement.payments
        if payments["ist"] == 0:
            checks.append(
                _check(
                    "data_completeness",
                    CRITICAL,
                    FAIL,
                    "Keine Zahlungsdaten vorhanden (Ist = 0 EUR)",
                    recommendation="Bitte Zahlungen erfassen",
                )
            )

        count = payments["count"]
        if 0 < count < self.config.payment_count_min:
            checks.append(
                _check(
                    "data_completeness",
                    "medium",
                    WARNING,
                    f"Zu wenige Zahlungen für diese Einheit: {count} vorhanden, "
                    f"mindestens {self.config.payment_count_min} erwartet",
                    actual_count=count,
                    expected_min=self.config.payment_count_min,
                    expected_typical=12,
                    year=statement.year,
                )
            )
        elif count > self.config.payment_count_max:
            checks.append(
                _check(
                    "data_completeness",
                    "low",
                    WARNING,
                    f"Ungewöhnlich viele Zahlungen für diese Einheit: {count} vorhanden, "
                    f"normalerweise 12-{self.config.payment_count_max}",
                    actual_count=count,
                    expected_max=self.config.payment_count_max,
                    expected_typical=12,
                    year=statement.year,
                    recommendation="Auf Doppelbuchungen oder falsch zugeordnete Jahre prüfen",
                )
            )

        if not checks:
            checks.append(_check("data_completeness", "low", PASS, "Datenqualität: Vollständig"))
        return checks

    def check_calculation_plausibility(self, statement: Statement) -> list[CheckResult]:
        checks = []
        totals = statement.calculated_totals
        unit_costs = totals["unit"]["gesamtkosten"]
        weg_costs = totals["weg"]["gesamtkosten"]
        mea_percentage = statement.einheit["mea_prozent"]
        if weg_costs > 0 and mea_percentage > 0:
            actual = (unit_costs / weg_costs * 100).quantize(Decimal("0.01"))
            deviation = abs(actual - mea_percentage)
            if deviation > self.config.percentage_tolerance:
                special_keys = self._special_keys(statement)
                checks.append(
                    _check(
                        "calculation_plausibility",
                        "high",
                        FAIL,
                        f"Kostenanteil unplausibel: {actual:.1f}% statt erwartete "
                        f"{mea_percentage:.1f}% (MEA-Anteil)",
                        actual_percentage=actual,
                        expected_percentage=mea_percentage,
                        deviation=deviation,
                        review_required=bool(special_keys),
                        special_keys=special_keys,
                        recommendation="Prüfen Sie die Kostenverteilungsschlüssel und MEA-Anteile",
                    )
                )

        reduction = statement.tax_deductible["tax_reduction"]
        if reduction > self.config.tax_cap:
            checks.append(
                _check(
                    "calculation_plausibility",
                    CRITICAL,
                    FAIL,
                    f"Steuerermäßigung überschreitet gesetzliches Limit: {reduction:.2f} EUR "
                    f"> {self.config.tax_cap:.2f} EUR",
                    amount=reduction,
                    legal_maximum=self.config.tax_cap,
                )
            )

        heating = statement.external_costs["heating"]["unit_share"]
        if heating is not None and heating > self.config.heating_cost_threshold:
            checks.append(
                _check(
                    "calculation_plausibility",
                    "medium",
                    WARNING,
                    f"Heizkosten ungewöhnlich hoch: {heating:.2f} EUR",
                    amount=heating,
                    recommendation="Bitte prüfen Sie die Heizkostenabrechnungsdaten",
                )
            )

        if not checks:
            checks.append(_check("calculation_plausibility", "low", PASS, "Berechnungen: Plausibel"))
        return checks

    def check_compliance(self, statement: Statement) -> list[CheckResult]:
        checks = []
        base = statement.tax_deductible["total"]
        reduction = statement.tax_deductible["tax_reduction"]
        if base > 0 and reduction > 0:
            percentage = (reduction / base * 100).quantize(Decimal("0.1"))
            if percentage > self.config.tax_ratio_threshold:
                checks.append(
                    _check(
                        "compliance",
                        "medium",
                        WARNING,
                        f"Steuerermäßigung scheint zu hoch: {percentage}% von absetzbaren Kosten",
                        percentage=percentage,
                        expected_max=self.config.tax_rate * 100,
                        recommendation="Prüfen Sie die Berechnung der steuerlich absetzbaren Arbeitskosten",
                    )
                )
        if not checks:
            checks.append(_check("compliance", "low", PASS, "Compliance: OK"))
        return checks

    def build_prompt(
        self,
        statement: Statement,
        checks: list[CheckResult] | tuple[CheckResult, ...],
        feedback: list[HgaQualityFeedback],
    ) -> str:
        einheit = statement.einheit
        costs = statement.costs
        payments = statement.payments
        heating = statement.external_costs["heating"]
        water = statement.external_costs["water"]
        tax = statement.tax_deductible

        failed = [
            f"- [{check.severity.upper()}] {check.category}: {check.message}"
            for check in checks
            if check.status != PASS
        ]
        failed_text = "\n".join(failed) if failed else "(Keine automatisch erkannten Probleme)"

        feedback_text = ""
        if feedback:
            lines = ["", "", "WICHTIG - NUTZER HABEN DIESE FEHLER GEMELDET, DIE DU ERKENNEN SOLLST:", ""]
            for index, entry in enumerate(feedback, start=1):
                hint = (
                    "Wurde nicht erkannt - bitte immer prüfen!"
                    if entry.feedback_typ == HgaQualityFeedback.FeedbackTyp.FALSE_NEGATIVE
                    else "Neuer Check - bitte implementieren"
                )
                lines.append(f"Beispiel {index}: {entry.beschreibung}\n  → {hint}\n")
            feedback_text = "\n".join(lines)

        return f"""Analysiere diese Hausgeldabrechnung auf Fehler und Auffälligkeiten:{feedback_text}

EINHEIT:
- Nummer: {einheit['nummer']}
- Beschreibung: {einheit['beschreibung'] or 'N/A'}
- Eigentümer: {einheit['eigentuemer'] or 'N/A'}
- MEA-Anteil: {einheit['mea']} ({einheit['mea_prozent']} %)

ABRECHNUNGSJAHR: {statement.year}

KOSTEN-ÜBERSICHT:
- Gesamtkosten Einheit: {_amount(costs['gesamtkosten'])} EUR
- Umlagefähig: {_amount(costs['umlagefaehig']['total'])} EUR
- Nicht umlagefähig: {_amount(costs['nicht_umlagefaehig']['total'])} EUR
- Rücklagenzuführung: {_amount(costs['ruecklagen']['total'])} EUR

EXTERNE KOSTEN:
- Heizkosten gesamt: {_amount(heating['total'])} EUR
- Heizkosten Einheit: {_amount(heating['unit_share'])} EUR
- Wasserkosten gesamt: {_amount(water['total'])} EUR
- Wasserkosten Einheit: {_amount(water['unit_share'])} EUR

ZAHLUNGEN:
- Soll (Vorauszahlungen): {_amount(payments['soll'])} EUR
- Ist (tatsächlich gezahlt): {_amount(payments['ist'])} EUR
- Differenz: {_amount(payments['differenz'])} EUR
- Status: {payments['status']}

STEUERLICH ABSETZBAR (§35a EStG):
- Gesamt absetzbar: {_amount(tax['total'])} EUR
- Steuerermäßigung: {_amount(tax['tax_reduction'])} EUR

BEREITS ERKANNTE PROBLEME:
{failed_text}

AUFGABE:
1. Prüfe die Plausibilität aller Beträge
2. Identifiziere ungewöhnliche Muster oder Anomalien
3. Bewerte die Vollständigkeit der Daten
4. Erkenne mögliche Berechnungsfehler
5. Gib konkrete Handlungsempfehlungen

WICHTIG:
- Heizkosten sollten typisch zwischen €800-€2000 pro Einheit/Jahr liegen
- Wasserkosten typisch €200-€600 pro Person/Jahr
- Steuerermäßigung maximal {self.config.tax_rate * 100:.0f}% der Arbeitskosten, max €{self.config.tax_cap:.0f}/Jahr
- MEA-Kostenanteil sollte ungefähr dem MEA-Prozentsatz entsprechen

Antworte NUR mit gültigem JSON:
{{
    "overall_assessment": "pass" | "warning" | "critical",
    "confidence": 0.0-1.0,
    "issues_found": [
        {{
            "category": "data_completeness" | "calculation" | "pattern" | "compliance",
            "severity": "critical" | "high" | "medium" | "low",
            "issue": "Kurzbeschreibung",
            "details": "Ausführliche Erklärung",
            "recommendation": "Was sollte korrigiert werden"
        }}
    ],
    "summary": "Zusammenfassung der Qualitätsprüfung in 2-3 Sätzen"
}}"""

    def _resolve_provider(self, provider: str | AiProvider) -> AiProvider:
        if not isinstance(provider, str):
            return provider
        if provider == "olama":
            raise AiProviderError('Unbekannter KI-Anbieter "olama". Gemeint ist "ollama"?')
        resolved = self.providers.get(provider)
        if resolved is None:
            raise AiProviderError(
                f'Unbekannter KI-Anbieter "{provider}". Unterstützt: {", ".join(sorted(self.providers))}'
            )
        if not resolved.is_available():
            raise AiProviderError(f'KI-Anbieter "{provider}" ist nicht verfügbar (Konfiguration prüfen).')
        return resolved

    def _run_ai_analysis(
        self,
        statement: Statement,
        checks: tuple[CheckResult, ...],
        provider: str | AiProvider,
        feedback: list[HgaQualityFeedback],
    ) -> dict[str, Any]:
        resolved = self._resolve_provider(provider)
        prompt = self.build_prompt(statement, checks, feedback)
        timeout = self.config.ai_timeout
        self.logger.info(
            "HGA-Qualitätsprüfung: Prompt an %s (%s Zeichen, Einheit %s, Jahr %s).",
            resolved.name,
            len(prompt),
            statement.einheit["nummer"],
            statement.year,
        )

        started = time.monotonic()
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(resolved.analyze, prompt, timeout)
            try:
                raw = future.result(timeout=timeout)
            except concurrent.futures.TimeoutError as exc:
                future.cancel()
                self.logger.warning(
                    "KI-Analyse (%s) nach %.1fs abgebrochen.", resolved.name, time.monotonic() - started
                )
                raise AiProviderError(
                    f"{resolved.name}: keine Antwort innerhalb von {timeout:.0f}s."
                ) from exc
            except AiProviderError:
                raise
            except Exception as exc:
                self.logger.exception("KI-Analyse (%s) mit unerwartetem Fehler abgebrochen.", resolved.name)
                raise AiProviderError(f"{resolved.name}: {type(exc).__name__}: {exc}") from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        analysis = validate_ai_response(raw)
        self.logger.info(
            "HGA-Qualitätsprüfung: Antwort von %s: %s (Konfidenz %.2f).",
            resolved.name,
            analysis["overall_assessment"],
            analysis["confidence"],
        )
        return analysis

    @staticmethod
    def _special_keys(statement: Statement) -> list[str]:
        keys = set()
        for bucket in ("umlagefaehig", "nicht_umlagefaehig", "ruecklagen"):
            for item in statement.costs[bucket]["items"]:
                if item["verteilungsschluessel"] in REVIEW_KEYS and item["anteil"] != 0:
                    keys.add(item["verteilungsschluessel"])
        return sorted(keys)
