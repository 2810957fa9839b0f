from datetime import date
from decimal import Decimal
from fractions import Fraction
import re

from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models
from django.utils.translation import gettext_lazy as _
from simple_history.models import HistoricalRecords

# Validator für die Postleitzahl (4 bis 5 Ziffern)
zip_validator = RegexValidator(
    regex=r'^\d{4,5}$',
    message=_("Die Postleitzahl darf nur aus Zahlen bestehen (4 bis 5 Ziffern).")
)

fraction_validator = RegexValidator(
    regex=r'^\s*\d+\s*(/\s*\d+\s*)?$',
    message=_("Erwartet wird ein Bruch wie 290/1000 oder eine ganze Zahl (Promille)."),
)

FRACTION_PATTERN = re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*$")
PER_MILLE_PATTERN = re.compile(r"^\s*(\d+)\s*$")


def parse_fraction(value: str | None, *, allow_per_mille: bool = False) -> Fraction | None:
    """Liest "a/b" (und optional ganze Zahlen als Promille) als Fraction ein.

    Leere oder fehlerhafte Werte sowie Nenner 0 ergeben None.
    """
    if not value:
        return None
    match = FRACTION_PATTERN.match(str(value))
    if match:
        denominator = int(match.group(2))
        if denominator == 0:
            return None
        return Fraction(int(match.group(1)), denominator)
    if allow_per_mille:
        match = PER_MILLE_PATTERN.match(str(value))
        if match:
            return Fraction(int(match.group(1)), 1000)
    return None


class Umlageschluessel(models.TextChoices):
    HEIZUNG_EXTERN = "01*", _("ext. berechnete Heizkosten")
    WASSER_EXTERN = "02*", _("ext. berechnete Wasserkosten")
    EINHEITEN = "03*", _("Anzahl Einheiten")
    FESTUMLAGE = "04*", _("Festumlage")
    MEA = "05*", _("Miteigentumsanteil")
    HEBEANLAGE = "06*", _("Hebeanlage")

    @property
    def is_external(self) -> bool:
        # Anteile kommen fertig aus der Heiz-/Wasserkostenabrechnung.
        return self in (Umlageschluessel.HEIZUNG_EXTERN, Umlageschluessel.WASSER_EXTERN)

    @property
    def umlage_typ(self) -> str:
        return {
            Umlageschluessel.HEIZUNG_EXTERN: "€ Festbetrag",
            Umlageschluessel.WASSER_EXTERN: "€ Festbetrag",
            Umlageschluessel.EINHEITEN: "Einheiten-anteilig",
            Umlageschluessel.FESTUMLAGE: "€ Festbetrag",
            Umlageschluessel.MEA: "Anzahl anteilig",
            Umlageschluessel.HEBEANLAGE: "Spezial",
        }[self]


class Weg(models.Model):
    name = models.CharField(max_length=255, verbose_name=_("Bezeichnung"))
    street_address = models.CharField(max_length=255, verbose_name=_("Straße und Hausnummer"))
    zip_code = models.CharField(
        max_length=20,
        validators=[zip_validator],
        verbose_name=_("Postleitzahl"),
    )
    city = models.CharField(max_length=100, verbose_name=_("Stadt"))
    notes = models.TextField(blank=True, verbose_name=_("Notizen"))

    class Meta:
        verbose_name = _("WEG")
        verbose_name_plural = _("WEGs")

    def __str__(self) -> str:
        return f"{self.name} ({self.city})"

    @property
    def adresse(self) -> str:
        return f"{self.street_address}, {self.zip_code} {self.city}".strip(", ")


class WegEinheit(models.Model):
    weg = models.ForeignKey(
        Weg,
        on_delete=models.CASCADE,
        related_name="einheiten",
        verbose_name=_("WEG"),
    )
    nummer = models.CharField(max_length=50, verbose_name=_("Nummer"))
    bezeichnung = models.CharField(max_length=255, blank=True, verbose_name=_("Bezeichnung"))
    miteigentuemer = models.CharField(max_length=255, blank=True, verbose_name=_("Miteigentümer"))
    email = models.EmailField(blank=True, verbose_name=_("E-Mail"))
    telefon = models.CharField(
        max_length=50,
        blank=True,
        validators=[
            RegexValidator(
                regex=r'^\+?\d+$',
                message=_("Telefon darf nur Ziffern enthalten, optional mit führendem +."),
            )
        ],
        verbose_name=_("Telefon"),
    )
    adresse = models.CharField(max_length=255, blank=True, verbose_name=_("Adresse"))
    miteigentumsanteile = models.CharField(
        max_length=30,
        blank=True,
        validators=[fraction_validator],
        verbose_name=_("Miteigentumsanteile (MEA)"),
        help_text=_("Bruch wie 290/1000; ganze Zahlen werden als Promille gelesen."),
    )
    hebeanlage = models.CharField(
        max_length=30,
        blank=True,
        validators=[fraction_validator],
        verbose_name=_("Anteil Hebeanlage"),
        help_text=_("Sonderschlüssel 06*, z. B. 2/6. Leer bedeutet keine Beteiligung."),
    )

    class Meta:
        verbose_name = _("WEG-Einheit")
        verbose_name_plural = _("WEG-Einheiten")
        ordering = ["nummer", "id"]
        constraints = [
            models.UniqueConstraint(fields=["weg", "nummer"], name="uniq_wegeinheit_weg_nummer"),
        ]

    def __str__(self) -> str:
        return f"{self.nummer} ({self.weg.name})"

    @property
    def mea_fraction(self) -> Fraction | None:
        return parse_fraction(self.miteigentumsanteile, allow_per_mille=True)

    @property
    def hebeanlage_fraction(self) -> Fraction | None:
        return parse_fraction(self.hebeanlage)


class Kostenkonto(models.Model):
    class Kategorie(models.TextChoices):
        UMLAGEFAEHIG = "umlagefaehig", _("Umlagefähig - auf Mieter umlegbar")
        NICHT_UMLAGEFAEHIG = "nicht_umlagefaehig", _("Nicht umlagefähig - nur Eigentümer")
        RUECKLAGENZUFUEHRUNG = "ruecklagenzufuehrung", _("Rücklagenzuführung")

    nummer = models.CharField(max_length=20, unique=True, verbose_name=_("Kontonummer"))
    bezeichnung = models.CharField(max_length=255, verbose_name=_("Bezeichnung"))
    umlageschluessel = models.CharField(
        max_length=3,
        choices=Umlageschluessel.choices,
        default=Umlageschluessel.MEA,
        verbose_name=_("Umlageschlüssel"),
    )
    kategorie = models.CharField(
        max_length=30,
        choices=Kategorie.choices,
        default=Kategorie.UMLAGEFAEHIG,
        verbose_name=_("Kategorie"),
    )
    is_active = models.BooleanField(default=True, verbose_name=_("Aktiv"))
    tax_deductible = models.BooleanField(
        default=False,
        verbose_name=_("Steuerlich absetzbar (§35a EStG)"),
    )
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Kostenkonto")
        verbose_name_plural = _("Kostenkonten")
        ordering = ["nummer"]

    def __str__(self) -> str:
        return f"{self.nummer} {self.bezeichnung}"


class Rechnung(models.Model):
    dienstleister = models.CharField(max_length=255, blank=True, verbose_name=_("Dienstleister"))
    rechnungsnummer = models.CharField(max_length=100, blank=True, verbose_name=_("Rechnungsnummer"))
    betrag_mit_steuern = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        verbose_name=_("Betrag inkl. MwSt."),
    )
    arbeits_fahrtkosten = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal("0.00"))],
        verbose_name=_("Arbeits- und Fahrtkosten"),
        help_text=_("Lohnanteil inkl. MwSt. für §35a EStG."),
    )
    datum_leistung = models.DateField(null=True, blank=True, verbose_name=_("Leistungsdatum"))

    class Meta:
        verbose_name = _("Rechnung")
        verbose_name_plural = _("Rechnungen")

    def __str__(self) -> str:
        return f"{self.rechnungsnummer or '-'} · {self.dienstleister}"

    def clean(self):
        super().clean()
        if self.arbeits_fahrtkosten is None or self.betrag_mit_steuern is None:
            return
        if self.arbeits_fahrtkosten > self.betrag_mit_steuern:
            raise ValidationError(
                {"arbeits_fahrtkosten": _("Arbeitskosten dürfen den Rechnungsbetrag nicht übersteigen.")}
            )


class ZahlungQuerySet(models.QuerySet):
    def for_settlement_year(self, year: int) -> "ZahlungQuerySet":
        """Buchungen mit Abrechnungsjahr-Zuordnung oder ungetaggt im Kalenderjahr."""
        return self.filter(
            models.Q(
                abrechnungsjahr__isnull=True,
                datum__gte=date(year, 1, 1),
                datum__lte=date(year, 12, 31),
            )
            | models.Q(abrechnungsjahr=year),
            is_simulation=False,
        )


class Zahlung(models.Model):
    class Kategorie(models.TextChoices):
        HAUSGELD = "hausgeld", _("Hausgeld-Zahlung")
        SONDERUMLAGE = "sonderumlage", _("Sonderumlage")
        NACHZAHLUNG = "nachzahlung", _("Nachzahlung Vorjahr")
        AUSGABE = "ausgabe", _("Ausgabe")
        ERSTATTUNG = "erstattung", _("Erstattung/Gutschrift")

    weg = models.ForeignKey(
        Weg,
        on_delete=models.PROTECT,
        related_name="zahlungen",
        verbose_name=_("WEG"),
    )
    datum = models.DateField(verbose_name=_("Datum"))
    bezeichnung = models.CharField(max_length=255, blank=True, verbose_name=_("Bezeichnung"))
    betrag = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        verbose_name=_("Betrag"),
        help_text=_("Kosten negativ, Einnahmen positiv."),
    )
    kategorie = models.CharField(
        max_length=20,
        choices=Kategorie.choices,
        verbose_name=_("Kategorie"),
    )
    kostenkonto = models.ForeignKey(
        Kostenkonto,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="zahlungen",
        verbose_name=_("Kostenkonto"),
    )
    eigentuemer = models.ForeignKey(
        WegEinheit,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="zahlungen",
        verbose_name=_("Eigentümer/Einheit"),
    )
    dienstleister = models.CharField(max_length=255, blank=True, verbose_name=_("Dienstleister"))
    rechnung = models.ForeignKey(
        Rechnung,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="zahlungen",
        verbose_name=_("Rechnung"),
    )
    abrechnungsjahr = models.PositiveIntegerField(
        null=True,
        blank=True,
        verbose_name=_("Abrechnungsjahr-Zuordnung"),
        help_text=_("Abweichendes Wirtschaftsjahr; leer bedeutet Jahr des Buchungsdatums."),
    )
    is_simulation = models.BooleanField(default=False, verbose_name=_("Simulation"))
    history = HistoricalRecords()

    objects = ZahlungQuerySet.as_manager()

    class Meta:
        verbose_name = _("Zahlung")
        verbose_name_plural = _("Zahlungen")
        ordering = ["datum", "id"]

    def __str__(self) -> str:
        return f"{self.datum} · {self.bezeichnung or self.get_kategorie_display()} · {self.betrag}"


class HeizWasserkosten(models.Model):
    einheit = models.ForeignKey(
        WegEinheit,
        on_delete=models.CASCADE,
        related_name="heiz_wasserkosten",
        verbose_name=_("Einheit"),
    )
    jahr = models.PositiveIntegerField(verbose_name=_("Jahr"))
    heizkosten = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        verbose_name=_("Heizkosten"),
        help_text=_("Leer bedeutet: Daten fehlen (nicht 0)."),
    )
    wasserkosten = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        verbose_name=_("Wasserkosten"),
        help_text=_("Leer bedeutet: Daten fehlen (nicht 0)."),
    )
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Aktualisiert am"))

    class Meta:
        verbose_name = _("Heiz- und Wasserkosten")
        verbose_name_plural = _("Heiz- und Wasserkosten")
        constraints = [
            models.UniqueConstraint(fields=["einheit", "jahr"], name="uniq_heizwasser_einheit_jahr"),
        ]

    def __str__(self) -> str:
        return f"{self.einheit} · {self.jahr}"


class Vorauszahlung(models.Model):
    einheit = models.ForeignKey(
        WegEinheit,
        on_delete=models.CASCADE,
        related_name="vorauszahlungen",
        verbose_name=_("Einheit"),
    )
    jahr = models.PositiveIntegerField(verbose_name=_("Jahr"))
    monatsbetrag = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0.00"))],
        verbose_name=_("Monatliches Hausgeld"),
    )
    ab_monat = models.PositiveSmallIntegerField(
        default=1,
        validators=[MinValueValidator(1), MaxValueValidator(12)],
        verbose_name=_("Ab Monat"),
        help_text=_("Erster zahlungspflichtiger Monat bei unterjährigem Eintritt."),
    )

    class Meta:
        verbose_name = _("Hausgeld-Vorauszahlung")
        verbose_name_plural = _("Hausgeld-Vorauszahlungen")
        constraints = [
            models.UniqueConstraint(fields=["einheit", "jahr"], name="uniq_vorauszahlung_einheit_jahr"),
        ]

    def __str__(self) -> str:
        return f"{self.einheit} · {self.jahr} · {self.monatsbetrag}"

    @property
    def anzahl_monate(self) -> int:
        return 13 - int(self.ab_monat or 1)


class MonatsSaldo(models.Model):
    weg = models.ForeignKey(
        Weg,
        on_delete=models.CASCADE,
        related_name="monatssalden",
        verbose_name=_("WEG"),
    )
    monat = models.DateField(verbose_name=_("Monat"), help_text=_("Erster Tag des Monats."))
    anfangssaldo = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Anfangssaldo"))
    umsatzsumme = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        verbose_name=_("Umsätze"),
    )
    endsaldo = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Endsaldo"))
    anzahl_transaktionen = models.PositiveIntegerField(default=0, verbose_name=_("Transaktionen"))

    class Meta:
        verbose_name = _("Monatssaldo")
        verbose_name_plural = _("Monatssalden")
        ordering = ["monat"]
        constraints = [
            models.UniqueConstraint(fields=["weg", "monat"], name="uniq_monatssaldo_weg_monat"),
        ]

    def __str__(self) -> str:
        return f"{self.weg} · {self.monat:%m.%Y}"


class HgaQualityFeedback(models.Model):
    class FeedbackTyp(models.TextChoices):
        FALSE_NEGATIVE = "false_negative", _("Fehler nicht erkannt")
        FALSE_POSITIVE = "false_positive", _("Fehlalarm")
        NEW_CHECK = "new_check", _("Neuer Check gewünscht")

    einheit = models.ForeignKey(
        WegEinheit,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="quality_feedback",
        verbose_name=_("Einheit"),
    )
    jahr = models.PositiveIntegerField(null=True, blank=True, verbose_name=_("Jahr"))
    ai_provider = models.CharField(max_length=50, blank=True, verbose_name=_("KI-Anbieter"))
    ai_result = models.JSONField(null=True, blank=True, verbose_name=_("KI-Ergebnis"))
    feedback_typ = models.CharField(
        max_length=20,
        choices=FeedbackTyp.choices,
        verbose_name=_("Feedback-Typ"),
    )
    beschreibung = models.TextField(verbose_name=_("Beschreibung"))
    helpful_rating = models.BooleanField(null=True, blank=True, verbose_name=_("Hilfreich"))
    implemented = models.BooleanField(default=False, verbose_name=_("Umgesetzt"))
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Erstellt am"))

    class Meta:
        verbose_name = _("HGA-Qualitätsfeedback")
        verbose_name_plural = _("HGA-Qualitätsfeedback")
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.get_feedback_typ_display()} · {self.beschreibung[:40]}"

    @classmethod
    def recent_issues(cls, limit: int = 10) -> list["HgaQualityFeedback"]:
        return list(
            cls.objects.filter(
                feedback_typ__in=[cls.FeedbackTyp.FALSE_NEGATIVE, cls.FeedbackTyp.NEW_CHECK]
            ).order_by("-created_at", "-id")[:limit]
        )
