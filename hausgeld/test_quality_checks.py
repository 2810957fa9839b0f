import json
import threading
from decimal import Decimal
from unittest.mock import patch

import httpx
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from .models import HgaQualityFeedback
from .services.ai_providers import (
    AiProviderError,
    ClaudeProvider,
    OllamaProvider,
    extract_json_object,
)
from .services.config import HgaConfig
from .services.hga_service import Statement
from .services.quality_check_service import (
    CRITICAL,
    PASS,
    WARNING,
    HgaQualityCheckService,
    escalate,
    overall_status,
)

VALID_RESPONSE = {
    "overall_assessment": "pass",
    "confidence": 0.9,
    "issues_found": [],
    "summary": "Keine Auffälligkeiten.",
}


def statement_data():
    """Abrechnung mit MEA 290/1000, die alle Regelprüfungen besteht."""
    return {
        "einheit": {
            "id": 1,
            "nummer": "1",
            "beschreibung": "Wohnung 1",
            "eigentuemer": "Eigentümer 1",
            "mea": "290/1000",
            "mea_prozent": Decimal("29.00"),
            "hebeanlage": None,
            "adresse": "",
        },
        "weg": {"id": 1, "name": "WEG Lindenhof", "adresse": "Lindenstraße 5, 80331 München"},
        "year": 2024,
        "costs": {
            "umlagefaehig": {
                "items": [
                    {
                        "kostenkonto": "4000",
                        "beschreibung": "Hausmeister",
                        "verteilungsschluessel": "05*",
                        "total": Decimal("1000.00"),
                        "anteil": Decimal("290.00"),
                        "count": 1,
                    },
                    {
                        "kostenkonto": "4100",
                        "beschreibung": "Gartenpflege",
                        "verteilungsschluessel": "03*",
                        "total": Decimal("2000.00"),
                        "anteil": Decimal("500.00"),
                        "count": 1,
                    },
                ],
                "total": Decimal("790.00"),
            },
            "nicht_umlagefaehig": {"items": [], "total": Decimal("0.00")},
            "ruecklagen": {"items": [], "total": Decimal("0.00")},
            "gesamtkosten": Decimal("790.00"),
        },
        "external_costs": {
            "heating": {"total": Decimal("1000.00"), "unit_share": Decimal("290.00"), "distribution_key": "01*"},
            "water": {"total": Decimal("100.00"), "unit_share": Decimal("29.00"), "distribution_key": "02*"},
            "total": Decimal("1100.00"),
            "unit_total": Decimal("319.00"),
        },
        "payments": {
            "soll": Decimal("300.00"),
            "ist": Decimal("300.00"),
            "differenz": Decimal("0.00"),
            "status": "ausgeglichen",
            "count": 12,
        },
        "tax_deductible": {"items": [], "total": Decimal("500.00"), "tax_reduction": Decimal("100.00")},
        "balance": {"has_data": False, "year": 2024},
        "weg_totals": {},
        "calculated_totals": {
            "unit": {"gesamtkosten": Decimal("1109.00")},
            "weg": {"gesamtkosten": Decimal("4100.00")},
        },
        "umlageschluessel": [],
        "configuration": {},
        "generated_at": timezone.now(),
    }


def build_statement(data=None):
    return Statement.build(**(data or statement_data()))


class StubProvider:
    name = "stub"

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else VALID_RESPONSE
        self.error = error
        self.prompts = []

    def is_available(self):
        return True

    def analyze(self, prompt, timeout):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


class SlowProvider(StubProvider):
    name = "slow"

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def analyze(self, prompt, timeout):
        self.release.wait(5)
        return self.response


class RuleCheckTests(SimpleTestCase):
    def setUp(self):
        self.service = HgaQualityCheckService(HgaConfig(), providers={})

    def checks_by_status(self, verdict, status):
        return [check for check in verdict.checks if check.status == status]

    def test_plausible_statement_passes(self):
        verdict = self.service.run_quality_checks(build_statement(), provider=None)

        self.assertEqual(verdict.status, PASS)
        self.assertEqual(len(verdict.checks), 3)
        self.assertIsNone(verdict.provider)
        self.assertEqual(verdict.user_feedback_injected, 0)

    def test_missing_payments_are_critical(self):
        data = statement_data()
        data["payments"]["ist"] = Decimal("0.00")

        verdict = self.service.run_quality_checks(build_statement(data), provider=None)

        self.assertEqual(verdict.status, CRITICAL)
        failed = self.checks_by_status(verdict, "fail")
        self.assertEqual(failed[0].severity, CRITICAL)
        self.assertEqual(failed[0].category, "data_completeness")

    def test_missing_external_costs_warn(self):
        data = statement_data()
        data["external_costs"]["heating"]["unit_share"] = None
        data["external_costs"]["water"]["unit_share"] = None

        verdict = self.service.run_quality_checks(build_statement(data), provider=None)

        self.assertEqual(verdict.status, WARNING)
        self.assertEqual(self.checks_by_status(verdict, "fail")[0].severity, "high")

    def test_payment_count_bounds(self):
        data = statement_data()
        data["payments"]["count"] = 5
        verdict = self.service.run_quality_checks(build_statement(data), provider=None)
        warning = self.checks_by_status(verdict, WARNING)[0]
        self.assertEqual(verdict.status, WARNING)
        self.assertEqual(warning.severity, "medium")
        self.assertEqual(warning.details["actual_count"], 5)

        data["payments"]["count"] = 20
        verdict = self.service.run_quality_checks(build_statement(data), provider=None)
        warning = self.checks_by_status(verdict, WARNING)[0]
        self.assertEqual(warning.severity, "low")
        self.assertIn("Doppelbuchungen", warning.details["recommendation"])

    def test_cost_share_deviation(self):
        data = statement_data()
        data["calculated_totals"]["unit"]["gesamtkosten"] = Decimal("2000.00")

        verdict = self.service.run_quality_checks(build_statement(data), provider=None)

        failed = self.checks_by_status(verdict, "fail")[0]
        self.assertEqual(verdict.status, WARNING)
        self.assertEqual(failed.category, "calculation_plausibility")
        self.assertEqual(failed.details["actual_percentage"], Decimal("48.78"))
        self.assertFalse(failed.details["review_required"])

    def test_deviation_with_fixed_charges_requires_review(self):
        data = statement_data()
        data["calculated_totals"]["unit"]["gesamtkosten"] = Decimal("2000.00")
        data["costs"]["nicht_umlagefaehig"]["items"].append(
            {
                "kostenkonto": "4200",
                "beschreibung": "Sondernutzung Stellplatz",
                "verteilungsschluessel": "04*",
                "total": Decimal("230.00"),
                "anteil": Decimal("150.00"),
                "count": 2,
            }
        )

        verdict = self.service.run_quality_checks(build_statement(data), provider=None)

        failed = self.checks_by_status(verdict, "fail")[0]
        self.assertTrue(failed.details["review_required"])
        self.assertEqual(failed.details["special_keys"], ["04*"])

    def test_tax_reduction_over_cap_is_critical(self):
        data = statement_data()
        data["tax_deductible"]["total"] = Decimal("10000.00")
        data["tax_deductible"]["tax_reduction"] = Decimal("1300.00")

        verdict = self.service.run_quality_checks(build_statement(data), provider=None)

        self.assertEqual(verdict.status, CRITICAL)

    def test_high_heating_costs_warn(self):
        data = statement_data()
        data["external_costs"]["heating"]["unit_share"] = Decimal("6000.00")

        verdict = self.service.run_quality_checks(build_statement(data), provider=None)

        self.assertEqual(verdict.status, WARNING)
        self.assertEqual(self.checks_by_status(verdict, WARNING)[0].details["amount"], Decimal("6000.00"))

    def test_tax_ratio_compliance(self):
        data = statement_data()
        data["tax_deductible"]["total"] = Decimal("100.00")
        data["tax_deductible"]["tax_reduction"] = Decimal("50.00")

        verdict = self.service.run_quality_checks(build_statement(data), provider=None)

        warning = self.checks_by_status(verdict, WARNING)[0]
        self.assertEqual(warning.category, "compliance")
        self.assertEqual(warning.details["percentage"], Decimal("50.0"))

    def test_status_aggregation_and_escalation(self):
        verdict = self.service.run_quality_checks(build_statement(), provider=None)
        self.assertEqual(overall_status(verdict.checks), PASS)

        self.assertEqual(escalate(PASS, WARNING), WARNING)
        self.assertEqual(escalate(PASS, CRITICAL), CRITICAL)
        self.assertEqual(escalate(WARNING, PASS), WARNING)
        self.assertEqual(escalate(CRITICAL, WARNING), CRITICAL)
        self.assertEqual(escalate(WARNING, None), WARNING)

    def test_verdict_is_json_serializable(self):
        data = statement_data()
        data["calculated_totals"]["unit"]["gesamtkosten"] = Decimal("2000.00")

        payload = json.loads(
            json.dumps(self.service.run_quality_checks(build_statement(data), provider=None).to_dict())
        )

        self.assertEqual(payload["status"], WARNING)
        self.assertEqual(payload["checks"][1]["details"]["actual_percentage"], "48.78")


class AiAnalysisTests(TestCase):
    def setUp(self):
        self.service = HgaQualityCheckService(HgaConfig())

    def test_ai_assessment_escalates_status(self):
        provider = StubProvider({**VALID_RESPONSE, "overall_assessment": "critical"})

        verdict = self.service.run_quality_checks(build_statement(), provider=provider)

        self.assertEqual(verdict.status, CRITICAL)
        self.assertEqual(verdict.provider, "stub")
        self.assertEqual(verdict.ai_analysis["summary"], "Keine Auffälligkeiten.")
        self.assertIsNone(verdict.ai_error)

    def test_ai_pass_never_downgrades(self):
        data = statement_data()
        data["payments"]["count"] = 5

        verdict = self.service.run_quality_checks(build_statement(data), provider=StubProvider())

        self.assertEqual(verdict.status, WARNING)
        self.assertEqual(verdict.ai_analysis["overall_assessment"], PASS)

    def test_provider_error_keeps_rule_verdict(self):
        provider = StubProvider(error=AiProviderError("Ollama nicht erreichbar"))

        with self.assertLogs("hausgeld.services.quality_check_service", level="WARNING"):
            verdict = self.service.run_quality_checks(build_statement(), provider=provider)

        self.assertEqual(verdict.status, PASS)
        self.assertIsNone(verdict.ai_analysis)
        self.assertEqual(verdict.ai_error, "Ollama nicht erreichbar")

    def test_unexpected_provider_exception_keeps_rule_verdict(self):
        provider = StubProvider(error=ConnectionError("refused"))

        with self.assertLogs("hausgeld.services.quality_check_service", level="ERROR"):
            verdict = self.service.run_quality_checks(build_statement(), provider=provider)

        self.assertEqual(verdict.status, PASS)
        self.assertEqual(len(verdict.checks), 3)
        self.assertIsNone(verdict.ai_analysis)
        self.assertIn("ConnectionError", verdict.ai_error)

    def test_wrongly_typed_payload_keeps_rule_verdict(self):
        ollama = OllamaProvider(client=mock_client(lambda request: httpx.Response(200, json={"response": 42})))
        service = HgaQualityCheckService(HgaConfig(), providers={"ollama": ollama})

        verdict = service.run_quality_checks(build_statement(), provider="ollama")

        self.assertEqual(verdict.status, PASS)
        self.assertIsNone(verdict.ai_analysis)
        self.assertIn("Antworttyp", verdict.ai_error)

    def test_malformed_ai_response_is_reported(self):
        for response in (
            {**VALID_RESPONSE, "overall_assessment": "ok"},
            {**VALID_RESPONSE, "confidence": 2},
            {"overall_assessment": "pass", "confidence": 0.5, "summary": "x"},
        ):
            verdict = self.service.run_quality_checks(build_statement(), provider=StubProvider(response))
            self.assertEqual(verdict.status, PASS)
            self.assertIsNotNone(verdict.ai_error)
            self.assertIsNone(verdict.ai_analysis)

    def test_slow_provider_times_out(self):
        service = HgaQualityCheckService(HgaConfig(ai_timeout=0.05))
        provider = SlowProvider()
        try:
            verdict = service.run_quality_checks(build_statement(), provider=provider)
        finally:
            provider.release.set()

        self.assertEqual(verdict.status, PASS)
        self.assertIn("keine Antwort", verdict.ai_error)
        self.assertLess(verdict.processing_time, 5)

    def test_unknown_and_unavailable_providers(self):
        verdict = self.service.run_quality_checks(build_statement(), provider="foo")
        self.assertIn("Unbekannter KI-Anbieter", verdict.ai_error)

        verdict = self.service.run_quality_checks(build_statement(), provider="olama")
        self.assertIn('"ollama"', verdict.ai_error)

        verdict = self.service.run_quality_checks(build_statement(), provider="claude")
        self.assertIn("nicht verfügbar", verdict.ai_error)
        self.assertEqual(verdict.status, PASS)

    def test_named_provider_is_resolved(self):
        with patch.object(OllamaProvider, "analyze", return_value=VALID_RESPONSE) as analyze:
            verdict = self.service.run_quality_checks(build_statement(), provider="ollama")

        analyze.assert_called_once()
        self.assertEqual(verdict.provider, "ollama")
        self.assertEqual(verdict.ai_analysis["confidence"], 0.9)

    def test_user_feedback_is_injected(self):
        HgaQualityFeedback.objects.create(
            feedback_typ=HgaQualityFeedback.FeedbackTyp.FALSE_NEGATIVE,
            beschreibung="Hebeanlage wurde doppelt verteilt",
        )
        HgaQualityFeedback.objects.create(
            feedback_typ=HgaQualityFeedback.FeedbackTyp.NEW_CHECK,
            beschreibung="Sonderumlagen gegen Beschluss prüfen",
        )
        HgaQualityFeedback.objects.create(
            feedback_typ=HgaQualityFeedback.FeedbackTyp.FALSE_POSITIVE,
            beschreibung="Heizkostenwarnung war unnötig",
        )
        provider = StubProvider()

        verdict = self.service.run_quality_checks(build_statement(), provider=provider)

        self.assertEqual(verdict.user_feedback_injected, 2)
        prompt = provider.prompts[0]
        self.assertIn("Hebeanlage wurde doppelt verteilt", prompt)
        self.assertIn("Sonderumlagen gegen Beschluss prüfen", prompt)
        self.assertNotIn("Heizkostenwarnung war unnötig", prompt)

        verdict = self.service.run_quality_checks(
            build_statement(), provider=provider, include_user_feedback=False
        )
        self.assertEqual(verdict.user_feedback_injected, 0)
        self.assertNotIn("Hebeanlage wurde doppelt verteilt", provider.prompts[1])

    def test_feedback_limit(self):
        for index in range(3):
            HgaQualityFeedback.objects.create(
                feedback_typ=HgaQualityFeedback.FeedbackTyp.NEW_CHECK,
                beschreibung=f"Check {index}",
            )
        service = HgaQualityCheckService(HgaConfig(feedback_limit=1))

        verdict = service.run_quality_checks(build_statement(), provider=StubProvider())

        self.assertEqual(verdict.user_feedback_injected, 1)

    def test_debug_prompt(self):
        HgaQualityFeedback.objects.create(
            feedback_typ=HgaQualityFeedback.FeedbackTyp.FALSE_NEGATIVE,
            beschreibung="Wasserkosten fehlen bei Einheit 3",
        )
        data = statement_data()
        data["payments"]["ist"] = Decimal("0.00")

        prompt = self.service.get_debug_prompt(build_statement(data))

        self.assertIn("- Nummer: 1", prompt)
        self.assertIn("ABRECHNUNGSJAHR: 2024", prompt)
        self.assertIn("Heizkosten Einheit: 290.00 EUR", prompt)
        self.assertIn("[CRITICAL] data_completeness", prompt)
        self.assertIn("Wasserkosten fehlen bei Einheit 3", prompt)
        self.assertIn("max €1200/Jahr", prompt)


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class AiProviderTests(SimpleTestCase):
    def test_ollama_request_and_fenced_response(self):
        requests = []

        def handler(request):
            requests.append(request)
            body = "Hier das Ergebnis:\n```json\n" + json.dumps(VALID_RESPONSE) + "\n```"
            return httpx.Response(200, json={"response": body, "done": True})

        provider = OllamaProvider("http://ollama.test:11434/", "llama3.1:8b", client=mock_client(handler))

        result = provider.analyze("Prompt", timeout=5)

        self.assertEqual(result, VALID_RESPONSE)
        self.assertEqual(requests[0].url.path, "/api/generate")
        payload = json.loads(requests[0].content)
        self.assertEqual(payload["model"], "llama3.1:8b")
        self.assertFalse(payload["stream"])
        self.assertEqual(payload["options"]["temperature"], 0.1)

    def test_ollama_http_errors(self):
        provider = OllamaProvider(
            client=mock_client(lambda request: httpx.Response(500, text="model not loaded"))
        )
        with self.assertRaisesMessage(AiProviderError, "HTTP 500"):
            provider.analyze("Prompt", timeout=5)

        def refuse(request):
            raise httpx.ConnectError("Verbindung abgelehnt", request=request)

        with self.assertRaisesMessage(AiProviderError, "nicht erreichbar"):
            OllamaProvider(client=mock_client(refuse)).analyze("Prompt", timeout=5)

        def slow(request):
            raise httpx.ReadTimeout("zu langsam", request=request)

        with self.assertRaisesMessage(AiProviderError, "Zeitüberschreitung"):
            OllamaProvider(client=mock_client(slow)).analyze("Prompt", timeout=5)

    def test_ollama_non_json_body(self):
        provider = OllamaProvider(client=mock_client(lambda request: httpx.Response(200, text="kaputt")))
        with self.assertRaisesMessage(AiProviderError, "kein JSON"):
            provider.analyze("Prompt", timeout=5)

    def test_claude_request(self):
        requests = []

        def handler(request):
            requests.append(request)
            text = "Analyse: " + json.dumps(VALID_RESPONSE) + " Ende."
            return httpx.Response(
                200,
                json={
                    "content": [{"type": "text", "text": text}],
                    "usage": {"input_tokens": 1200, "output_tokens": 150},
                },
            )

        provider = ClaudeProvider("sk-test", enabled=True, client=mock_client(handler))

        self.assertEqual(provider.analyze("Prompt", timeout=5), VALID_RESPONSE)
        self.assertEqual(requests[0].headers["x-api-key"], "sk-test")
        self.assertEqual(requests[0].headers["anthropic-version"], "2023-06-01")
        self.assertEqual(json.loads(requests[0].content)["messages"][0]["content"], "Prompt")

    def test_claude_disabled_sends_nothing(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={})

        provider = ClaudeProvider("sk-test", enabled=False, client=mock_client(handler))

        self.assertFalse(provider.is_available())
        with self.assertRaises(AiProviderError):
            provider.analyze("Prompt", timeout=5)
        self.assertEqual(requests, [])
        self.assertFalse(ClaudeProvider("", enabled=True).is_available())

    def test_claude_unexpected_format(self):
        provider = ClaudeProvider(
            "sk-test",
            enabled=True,
            client=mock_client(lambda request: httpx.Response(200, json={"content": []})),
        )
        with self.assertRaisesMessage(AiProviderError, "Antwortformat"):
            provider.analyze("Prompt", timeout=5)

    def test_wrongly_typed_text_is_rejected(self):
        ollama = OllamaProvider(
            client=mock_client(lambda request: httpx.Response(200, json={"response": {"a": 1}}))
        )
        with self.assertRaisesMessage(AiProviderError, "Antworttyp dict"):
            ollama.analyze("Prompt", timeout=5)

        claude = ClaudeProvider(
            "sk-test",
            enabled=True,
            client=mock_client(
                lambda request: httpx.Response(200, json={"content": [{"type": "text", "text": None}]})
            ),
        )
        with self.assertRaisesMessage(AiProviderError, "Antworttyp NoneType"):
            claude.analyze("Prompt", timeout=5)

    def test_extract_json_object(self):
        self.assertEqual(extract_json_object('{"a": 1}'), {"a": 1})
        self.assertEqual(extract_json_object('```\n{"a": 1}\n```'), {"a": 1})
        self.assertEqual(extract_json_object('Antwort: {"a": {"b": 2}} fertig'), {"a": {"b": 2}})
        for raw in ("", "   ", "keine Ahnung", "[1, 2]"):
            with self.assertRaises(AiProviderError):
                extract_json_object(raw)
