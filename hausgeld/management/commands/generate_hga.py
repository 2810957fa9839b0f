import json

from django.core.management.base import BaseCommand, CommandError

from hausgeld.models import WegEinheit
from hausgeld.services.config import HgaConfig
from hausgeld.services.hga_service import HgaGenerationError, HgaInputError, HgaService
from hausgeld.services.quality_check_service import HgaQualityCheckService


class Command(BaseCommand):
    help = "Erzeugt die Hausgeldabrechnung einer Einheit als JSON (optional mit Qualitätsprüfung)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--einheit",
            type=int,
            required=True,
            help="ID der WEG-Einheit.",
        )
        parser.add_argument(
            "--jahr",
            type=int,
            required=True,
            help="Abrechnungsjahr (YYYY).",
        )
        parser.add_argument(
            "--check",
            action="store_true",
            help="Plausibilitätsprüfung im Anschluss ausführen.",
        )
        parser.add_argument(
            "--provider",
            type=str,
            default="ollama",
            help="KI-Anbieter für die Prüfung: ollama, claude oder none (Default: ollama).",
        )

    def handle(self, *args, **options):
        einheit = WegEinheit.objects.select_related("weg").filter(pk=options["einheit"]).first()
        if einheit is None:
            raise CommandError(f"Einheit mit ID {options['einheit']} wurde nicht gefunden.")

        config = HgaConfig.from_settings()
        try:
            statement = HgaService(config).generate_statement(einheit, options["jahr"])
        except HgaInputError as exc:
            raise CommandError("Ungültige Eingaben:\n  - " + "\n  - ".join(exc.errors)) from exc
        except HgaGenerationError as exc:
            raise CommandError(str(exc)) from exc

        payload = {"statement": statement.to_dict()}
        if options["check"]:
            provider = options["provider"]
            if provider.lower() == "none":
                provider = None
            verdict = HgaQualityCheckService(config).run_quality_checks(statement, provider=provider)
            payload["quality_check"] = verdict.to_dict()
            if verdict.ai_error:
                self.stderr.write(self.style.WARNING(f"KI-Analyse nicht verfügbar: {verdict.ai_error}"))

        self.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2))
        self.stderr.write(
            self.style.SUCCESS(
                f"Hausgeldabrechnung {options['jahr']} für Einheit {einheit.nummer} erstellt."
            )
        )
