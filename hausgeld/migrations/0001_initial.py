import django.core.validators
import django.db.models.deletion
import simple_history.models
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models

UMLAGESCHLUESSEL_CHOICES = [
    ("01*", "ext. berechnete Heizkosten"),
    ("02*", "ext. berechnete Wasserkosten"),
    ("03*", "Anzahl Einheiten"),
    ("04*", "Festumlage"),
    ("05*", "Miteigentumsanteil"),
    ("06*", "Hebeanlage"),
]

KOSTENKONTO_KATEGORIE_CHOICES = [
    ("umlagefaehig", "Umlagefähig - auf Mieter umlegbar"),
    ("nicht_umlagefaehig", "Nicht umlagefähig - nur Eigentümer"),
    ("ruecklagenzufuehrung", "Rücklagenzuführung"),
]

ZAHLUNG_KATEGORIE_CHOICES = [
    ("hausgeld", "Hausgeld-Zahlung"),
    ("sonderumlage", "Sonderumlage"),
    ("nachzahlung", "Nachzahlung Vorjahr"),
    ("ausgabe", "Ausgabe"),
    ("erstattung", "Erstattung/Gutschrift"),
]

HISTORY_TYPE_CHOICES = [("+", "Created"), ("~", "Changed"), ("-", "Deleted")]


def fraction_validator():
    return django.core.validators.RegexValidator(
        message="Erwartet wird ein Bruch wie 290/1000 oder eine ganze Zahl (Promille).",
        regex="^\\s*\\d+\\s*(/\\s*\\d+\\s*)?$",
    )


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Weg",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255, verbose_name="Bezeichnung")),
                ("street_address", models.CharField(max_length=255, verbose_name="Straße und Hausnummer")),
                (
                    "zip_code",
                    models.CharField(
                        max_length=20,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Die Postleitzahl darf nur aus Zahlen bestehen (4 bis 5 Ziffern).",
                                regex="^\\d{4,5}$",
                            )
                        ],
                        verbose_name="Postleitzahl",
                    ),
                ),
                ("city", models.CharField(max_length=100, verbose_name="Stadt")),
                ("notes", models.TextField(blank=True, verbose_name="Notizen")),
            ],
            options={
                "verbose_name": "WEG",
                "verbose_name_plural": "WEGs",
            },
        ),
        migrations.CreateModel(
            name="WegEinheit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("nummer", models.CharField(max_length=50, verbose_name="Nummer")),
                ("bezeichnung", models.CharField(blank=True, max_length=255, verbose_name="Bezeichnung")),
                ("miteigentuemer", models.CharField(blank=True, max_length=255, verbose_name="Miteigentümer")),
                ("email", models.EmailField(blank=True, max_length=254, verbose_name="E-Mail")),
                (
                    "telefon",
                    models.CharField(
                        blank=True,
                        max_length=50,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Telefon darf nur Ziffern enthalten, optional mit führendem +.",
                                regex="^\\+?\\d+$",
                            )
                        ],
                        verbose_name="Telefon",
                    ),
                ),
                ("adresse", models.CharField(blank=True, max_length=255, verbose_name="Adresse")),
                (
                    "miteigentumsanteile",
                    models.CharField(
                        blank=True,
                        help_text="Bruch wie 290/1000; ganze Zahlen werden als Promille gelesen.",
                        max_length=30,
                        validators=[fraction_validator()],
                        verbose_name="Miteigentumsanteile (MEA)",
                    ),
                ),
                (
                    "hebeanlage",
                    models.CharField(
                        blank=True,
                        help_text="Sonderschlüssel 06*, z. B. 2/6. Leer bedeutet keine Beteiligung.",
                        max_length=30,
                        validators=[fraction_validator()],
                        verbose_name="Anteil Hebeanlage",
                    ),
                ),
                (
                    "weg",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="einheiten",
                        to="hausgeld.weg",
                        verbose_name="WEG",
                    ),
                ),
            ],
            options={
                "verbose_name": "WEG-Einheit",
                "verbose_name_plural": "WEG-Einheiten",
                "ordering": ["nummer", "id"],
                "constraints": [
                    models.UniqueConstraint(fields=("weg", "nummer"), name="uniq_wegeinheit_weg_nummer"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Kostenkonto",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("nummer", models.CharField(max_length=20, unique=True, verbose_name="Kontonummer")),
                ("bezeichnung", models.CharField(max_length=255, verbose_name="Bezeichnung")),
                (
                    "umlageschluessel",
                    models.CharField(
                        choices=UMLAGESCHLUESSEL_CHOICES,
                        default="05*",
                        max_length=3,
                        verbose_name="Umlageschlüssel",
                    ),
                ),
                (
                    "kategorie",
                    models.CharField(
                        choices=KOSTENKONTO_KATEGORIE_CHOICES,
                        default="umlagefaehig",
                        max_length=30,
                        verbose_name="Kategorie",
                    ),
                ),
                ("is_active", models.BooleanField(default=True, verbose_name="Aktiv")),
                (
                    "tax_deductible",
                    models.BooleanField(default=False, verbose_name="Steuerlich absetzbar (§35a EStG)"),
                ),
            ],
            options={
                "verbose_name": "Kostenkonto",
                "verbose_name_plural": "Kostenkonten",
                "ordering": ["nummer"],
            },
        ),
        migrations.CreateModel(
            name="Rechnung",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("dienstleister", models.CharField(blank=True, max_length=255, verbose_name="Dienstleister")),
                ("rechnungsnummer", models.CharField(blank=True, max_length=100, verbose_name="Rechnungsnummer")),
                (
                    "betrag_mit_steuern",
                    models.DecimalField(decimal_places=2, max_digits=12, verbose_name="Betrag inkl. MwSt."),
                ),
                (
                    "arbeits_fahrtkosten",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Lohnanteil inkl. MwSt. für §35a EStG.",
                        max_digits=12,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(Decimal("0.00"))],
                        verbose_name="Arbeits- und Fahrtkosten",
                    ),
                ),
                ("datum_leistung", models.DateField(blank=True, null=True, verbose_name="Leistungsdatum")),
            ],
            options={
                "verbose_name": "Rechnung",
                "verbose_name_plural": "Rechnungen",
            },
        ),
        migrations.CreateModel(
            name="Zahlung",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("datum", models.DateField(verbose_name="Datum")),
                ("bezeichnung", models.CharField(blank=True, max_length=255, verbose_name="Bezeichnung")),
                (
                    "betrag",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Kosten negativ, Einnahmen positiv.",
                        max_digits=12,
                        verbose_name="Betrag",
                    ),
                ),
                (
                    "kategorie",
                    models.CharField(choices=ZAHLUNG_KATEGORIE_CHOICES, max_length=20, verbose_name="Kategorie"),
                ),
                ("dienstleister", models.CharField(blank=True, max_length=255, verbose_name="Dienstleister")),
                (
                    "abrechnungsjahr",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Abweichendes Wirtschaftsjahr; leer bedeutet Jahr des Buchungsdatums.",
                        null=True,
                        verbose_name="Abrechnungsjahr-Zuordnung",
                    ),
                ),
                ("is_simulation", models.BooleanField(default=False, verbose_name="Simulation")),
                (
                    "eigentuemer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="zahlungen",
                        to="hausgeld.wegeinheit",
                        verbose_name="Eigentümer/Einheit",
                    ),
                ),
                (
                    "kostenkonto",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="zahlungen",
                        to="hausgeld.kostenkonto",
                        verbose_name="Kostenkonto",
                    ),
                ),
                (
                    "rechnung",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="zahlungen",
                        to="hausgeld.rechnung",
                        verbose_name="Rechnung",
                    ),
                ),
                (
                    "weg",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="zahlungen",
                        to="hausgeld.weg",
                        verbose_name="WEG",
                    ),
                ),
            ],
            options={
                "verbose_name": "Zahlung",
                "verbose_name_plural": "Zahlungen",
                "ordering": ["datum", "id"],
            },
        ),
        migrations.CreateModel(
            name="HeizWasserkosten",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("jahr", models.PositiveIntegerField(verbose_name="Jahr")),
                (
                    "heizkosten",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Leer bedeutet: Daten fehlen (nicht 0).",
                        max_digits=12,
                        null=True,
                        verbose_name="Heizkosten",
                    ),
                ),
                (
                    "wasserkosten",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Leer bedeutet: Daten fehlen (nicht 0).",
                        max_digits=12,
                        null=True,
                        verbose_name="Wasserkosten",
                    ),
                ),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="Aktualisiert am")),
                (
                    "einheit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="heiz_wasserkosten",
                        to="hausgeld.wegeinheit",
                        verbose_name="Einheit",
                    ),
                ),
            ],
            options={
                "verbose_name": "Heiz- und Wasserkosten",
                "verbose_name_plural": "Heiz- und Wasserkosten",
                "constraints": [
                    models.UniqueConstraint(fields=("einheit", "jahr"), name="uniq_heizwasser_einheit_jahr"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Vorauszahlung",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("jahr", models.PositiveIntegerField(verbose_name="Jahr")),
                (
                    "monatsbetrag",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(Decimal("0.00"))],
                        verbose_name="Monatliches Hausgeld",
                    ),
                ),
                (
                    "ab_monat",
                    models.PositiveSmallIntegerField(
                        default=1,
                        help_text="Erster zahlungspflichtiger Monat bei unterjährigem Eintritt.",
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(12),
                        ],
                        verbose_name="Ab Monat",
                    ),
                ),
                (
                    "einheit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="vorauszahlungen",
                        to="hausgeld.wegeinheit",
                        verbose_name="Einheit",
                    ),
                ),
            ],
            options={
                "verbose_name": "Hausgeld-Vorauszahlung",
                "verbose_name_plural": "Hausgeld-Vorauszahlungen",
                "constraints": [
                    models.UniqueConstraint(fields=("einheit", "jahr"), name="uniq_vorauszahlung_einheit_jahr"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MonatsSaldo",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("monat", models.DateField(help_text="Erster Tag des Monats.", verbose_name="Monat")),
                ("anfangssaldo", models.DecimalField(decimal_places=2, max_digits=12, verbose_name="Anfangssaldo")),
                (
                    "umsatzsumme",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=12,
                        verbose_name="Umsätze",
                    ),
                ),
                ("endsaldo", models.DecimalField(decimal_places=2, max_digits=12, verbose_name="Endsaldo")),
                ("anzahl_transaktionen", models.PositiveIntegerField(default=0, verbose_name="Transaktionen")),
                (
                    "weg",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="monatssalden",
                        to="hausgeld.weg",
                        verbose_name="WEG",
                    ),
                ),
            ],
            options={
                "verbose_name": "Monatssaldo",
                "verbose_name_plural": "Monatssalden",
                "ordering": ["monat"],
                "constraints": [
                    models.UniqueConstraint(fields=("weg", "monat"), name="uniq_monatssaldo_weg_monat"),
                ],
            },
        ),
        migrations.CreateModel(
            name="HgaQualityFeedback",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("jahr", models.PositiveIntegerField(blank=True, null=True, verbose_name="Jahr")),
                ("ai_provider", models.CharField(blank=True, max_length=50, verbose_name="KI-Anbieter")),
                ("ai_result", models.JSONField(blank=True, null=True, verbose_name="KI-Ergebnis")),
                (
                    "feedback_typ",
                    models.CharField(
                        choices=[
                            ("false_negative", "Fehler nicht erkannt"),
                            ("false_positive", "Fehlalarm"),
                            ("new_check", "Neuer Check gewünscht"),
                        ],
                        max_length=20,
                        verbose_name="Feedback-Typ",
                    ),
                ),
                ("beschreibung", models.TextField(verbose_name="Beschreibung")),
                ("helpful_rating", models.BooleanField(blank=True, null=True, verbose_name="Hilfreich")),
                ("implemented", models.BooleanField(default=False, verbose_name="Umgesetzt")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="Erstellt am")),
                (
                    "einheit",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="quality_feedback",
                        to="hausgeld.wegeinheit",
                        verbose_name="Einheit",
                    ),
                ),
            ],
            options={
                "verbose_name": "HGA-Qualitätsfeedback",
                "verbose_name_plural": "HGA-Qualitätsfeedback",
                "ordering": ["-created_at", "-id"],
            },
        ),
        migrations.CreateModel(
            name="HistoricalKostenkonto",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("nummer", models.CharField(db_index=True, max_length=20, verbose_name="Kontonummer")),
                ("bezeichnung", models.CharField(max_length=255, verbose_name="Bezeichnung")),
                (
                    "umlageschluessel",
                    models.CharField(
                        choices=UMLAGESCHLUESSEL_CHOICES,
                        default="05*",
                        max_length=3,
                        verbose_name="Umlageschlüssel",
                    ),
                ),
                (
                    "kategorie",
                    models.CharField(
                        choices=KOSTENKONTO_KATEGORIE_CHOICES,
                        default="umlagefaehig",
                        max_length=30,
                        verbose_name="Kategorie",
                    ),
                ),
                ("is_active", models.BooleanField(default=True, verbose_name="Aktiv")),
                (
                    "tax_deductible",
                    models.BooleanField(default=False, verbose_name="Steuerlich absetzbar (§35a EStG)"),
                ),
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                ("history_type", models.CharField(choices=HISTORY_TYPE_CHOICES, max_length=1)),
                (
                    "history_user",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "historical Kostenkonto",
                "verbose_name_plural": "historical Kostenkonten",
                "ordering": ("-history_date", "-history_id"),
                "get_latest_by": ("history_date", "history_id"),
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="HistoricalZahlung",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("datum", models.DateField(verbose_name="Datum")),
                ("bezeichnung", models.CharField(blank=True, max_length=255, verbose_name="Bezeichnung")),
                (
                    "betrag",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Kosten negativ, Einnahmen positiv.",
                        max_digits=12,
                        verbose_name="Betrag",
                    ),
                ),
                (
                    "kategorie",
                    models.CharField(choices=ZAHLUNG_KATEGORIE_CHOICES, max_length=20, verbose_name="Kategorie"),
                ),
                ("dienstleister", models.CharField(blank=True, max_length=255, verbose_name="Dienstleister")),
                (
                    "abrechnungsjahr",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Abweichendes Wirtschaftsjahr; leer bedeutet Jahr des Buchungsdatums.",
                        null=True,
                        verbose_name="Abrechnungsjahr-Zuordnung",
                    ),
                ),
                ("is_simulation", models.BooleanField(default=False, verbose_name="Simulation")),
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                ("history_type", models.CharField(choices=HISTORY_TYPE_CHOICES, max_length=1)),
                (
                    "eigentuemer",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="hausgeld.wegeinheit",
                        verbose_name="Eigentümer/Einheit",
                    ),
                ),
                (
                    "history_user",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "kostenkonto",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="hausgeld.kostenkonto",
                        verbose_name="Kostenkonto",
                    ),
                ),
                (
                    "rechnung",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="hausgeld.rechnung",
                        verbose_name="Rechnung",
                    ),
                ),
                (
                    "weg",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="hausgeld.weg",
                        verbose_name="WEG",
                    ),
                ),
            ],
            options={
                "verbose_name": "historical Zahlung",
                "verbose_name_plural": "historical Zahlungen",
                "ordering": ("-history_date", "-history_id"),
                "get_latest_by": ("history_date", "history_id"),
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
    ]
