import json
from dataclasses import FrozenInstanceError
from datetime import date
from decimal import Decimal
from fractions import Fraction
from io import StringIO
from unittest.mock import patch

from django.core.management import CommandError, call_command
from django.test import TestCase, override_settings

from .models import (
    HeizWasserkosten,
    Kostenkonto,
    MonatsSaldo,
    Rechnung,
    Umlageschluessel,
    Vorauszahlung,
    Weg,
    WegEinheit,
    Zahlung,
    parse_fraction,
)
from .services.allocation_service import AllocationService, InvalidAllocationInput
from .services.balance_service import BalanceService
from .services.config import HgaConfig
from .services.cost_service import CostAggregationService
from .services.external_cost_service import ExternalCostService
from .services.hga_service import HgaGenerationError, HgaInputError, HgaService
from .services.payment_service import PaymentReconciliationService
from .services.quality_check_service import HgaQualityCheckService
from .services.tax_service import TaxDeductionService, compute_reduction

MEA_VALUES = ("290/1000", "250/1000", "210/1000", "250/1000")


class WegFixtureMixin:
    year = 2024

    def create_weg(self):
        self.weg = Weg.objects.create(
            name="WEG Lindenhof",
            street_address="Lindenstraße 5",
            zip_code="80331",
            city="München",
        )
        self.units = [
            WegEinheit.objects.create(
                weg=self.weg,
                nummer=str(index),
                bezeichnung=f"Wohnung {index}",
                miteigentuemer=f"Eigentümer {index}",
                miteigentumsanteile=mea,
            )
            for index, mea in enumerate(MEA_VALUES, start=1)
        ]
        self.einheit = self.units[0]

    def create_external_costs(self, year=None):
        for unit in self.units:
            promille = Decimal(unit.miteigentumsanteile.split("/")[0])
            HeizWasserkosten.objects.create(
                einheit=unit,
                jahr=year or self.year,
                heizkosten=promille.quantize(Decimal("0.01")),
                wasserkosten=(promille / 10).quantize(Decimal("0.01")),
            )

    def create_account(self, nummer, key, kategorie=Kostenkonto.Kategorie.UMLAGEFAEHIG, **kwargs):
        return Kostenkonto.objects.create(
            nummer=nummer,
            bezeichnung=f"Konto {nummer}",
            umlageschluessel=key,
            kategorie=kategorie,
            **kwargs,
        )

    def book(self, konto, betrag, datum=None, **kwargs):
        kwargs.setdefault("kategorie", Zahlung.Kategorie.AUSGABE)
        return Zahlung.objects.create(
            weg=self.weg,
            datum=datum or date(self.year, 3, 15),
            betrag=Decimal(betrag),
            kostenkonto=konto,
            **kwargs,
        )

    def pay(self, einheit, betrag, month, kategorie=Zahlung.Kategorie.HAUSGELD, **kwargs):
        return Zahlung.objects.create(
            weg=self.weg,
            datum=date(self.year, month, 3),
            betrag=Decimal(betrag),
            kategorie=kategorie,
            eigentuemer=einheit,
            **kwargs,
        )


class ParseFractionTests(TestCase):
    def test_parses_fractions_and_per_mille(self):
        self.assertEqual(parse_fraction("290/1000"), Fraction(29, 100))
        self.assertEqual(parse_fraction(" 2 / 6 "), Fraction(1, 3))
        self.assertEqual(parse_fraction("290", allow_per_mille=True), Fraction(290, 1000))

    def test_malformed_values_return_none(self):
        self.assertIsNone(parse_fraction(""))
        self.assertIsNone(parse_fraction(None))
        self.assertIsNone(parse_fraction("abc"))
        self.assertIsNone(parse_fraction("2/0"))
        self.assertIsNone(parse_fraction("290"))


class AllocationServiceTests(TestCase):
    def setUp(self):
        self.weg = Weg(name="WEG", street_address="Weg 1", zip_code="12345", city="Berlin")
        self.service = AllocationService(unit_counter=lambda weg: 3)

    def test_mea_share_equals_total_times_mea(self):
        share = self.service.allocate(Decimal("1000.00"), "05*", Fraction(290, 1000))
        self.assertEqual(share, Decimal("290.00"))

    def test_credit_keeps_negative_sign(self):
        share = self.service.allocate(Decimal("-100.00"), "05*", Decimal("0.25"))
        self.assertEqual(share, Decimal("-25.00"))

    def test_equal_shares_sum_back_within_rounding(self):
        total = Decimal("100.00")
        share = self.service.allocate(total, "03*", Fraction(1, 3), weg=self.weg)
        self.assertEqual(share, Decimal("33.33"))
        self.assertLessEqual(abs(total - share * 3), Decimal("0.03"))

    def test_equal_share_uses_bankers_rounding(self):
        service = AllocationService(unit_counter=lambda weg: 8)
        # 0.20 / 8 = 0.025 -> 0.02
        self.assertEqual(service.allocate(Decimal("0.20"), "03*", None, weg=self.weg), Decimal("0.02"))

    def test_equal_share_without_units_raises(self):
        service = AllocationService(unit_counter=lambda weg: 0)
        with self.assertRaises(InvalidAllocationInput):
            service.allocate(Decimal("100.00"), "03*", Fraction(1, 4), weg=self.weg)

    def test_equal_share_without_weg_raises(self):
        with self.assertRaises(InvalidAllocationInput):
            self.service.allocate(Decimal("100.00"), "03*", Fraction(1, 4))

    def test_fixed_amount_is_returned_unchanged(self):
        self.assertEqual(self.service.allocate(Decimal("123.45"), "04*", Fraction(1, 4)), Decimal("123.45"))

    def test_special_share_without_fraction_is_zero(self):
        einheit = WegEinheit(weg=self.weg, nummer="1", miteigentumsanteile="1/4", hebeanlage="")
        self.assertEqual(self.service.allocate(Decimal("600.00"), "06*", Fraction(1, 4), einheit), Decimal("0.00"))
        einheit.hebeanlage = "kaputt"
        self.assertEqual(self.service.allocate(Decimal("600.00"), "06*", Fraction(1, 4), einheit), Decimal("0.00"))

    def test_special_share_uses_unit_fraction(self):
        einheit = WegEinheit(weg=self.weg, nummer="1", miteigentumsanteile="1/4", hebeanlage="2/6")
        self.assertEqual(self.service.allocate(Decimal("600.00"), "06*", Fraction(1, 4), einheit), Decimal("200.00"))

    def test_external_keys_are_never_allocated(self):
        for key in ("01*", "02*"):
            self.assertEqual(self.service.allocate(Decimal("999.99"), key, Fraction(1, 4)), Decimal("0.00"))
        self.assertTrue(Umlageschluessel.HEIZUNG_EXTERN.is_external)
        self.assertFalse(Umlageschluessel.MEA.is_external)

    def test_invalid_key_raises(self):
        for key in ("07*", "5*", "05", "abc", None):
            with self.assertRaises(InvalidAllocationInput):
                self.service.allocate(Decimal("100.00"), key, Fraction(1, 4))

    def test_mea_out_of_range_raises(self):
        with self.assertRaises(InvalidAllocationInput):
            self.service.allocate(Decimal("100.00"), "05*", Decimal("1.5"))
        with self.assertRaises(InvalidAllocationInput):
            self.service.allocate(Decimal("100.00"), "05*", Fraction(-1, 10))

    def test_missing_mea_for_mea_key_raises(self):
        with self.assertRaises(InvalidAllocationInput):
            self.service.allocate(Decimal("100.00"), "05*", None)

    def test_unit_count_reads_current_units(self):
        weg = Weg.objects.create(name="WEG Zählung", street_address="Weg 2", zip_code="12345", city="Berlin")
        service = AllocationService()
        self.assertEqual(service.unit_count(weg), 0)
        WegEinheit.objects.create(weg=weg, nummer="1", miteigentumsanteile="1/2")
        self.assertEqual(service.unit_count(weg), 1)


class ExternalCostServiceTests(WegFixtureMixin, TestCase):
    def setUp(self):
        self.create_weg()
        self.create_external_costs()
        self.service = ExternalCostService()

    def test_all_external_costs_for_unit(self):
        costs = self.service.get_all_external_costs(self.einheit, self.year)

        self.assertEqual(costs["heating"]["total"], Decimal("1000.00"))
        self.assertEqual(costs["heating"]["unit_share"], Decimal("290.00"))
        self.assertEqual(costs["heating"]["distribution_key"], "01*")
        self.assertEqual(costs["water"]["total"], Decimal("100.00"))
        self.assertEqual(costs["water"]["unit_share"], Decimal("29.00"))
        self.assertEqual(costs["water"]["distribution_key"], "02*")
        self.assertEqual(costs["total"], Decimal("1100.00"))
        self.assertEqual(costs["unit_total"], Decimal("319.00"))

    def test_weg_totals_are_summed(self):
        totals = self.service.get_total_external_costs_for_weg(self.weg, self.year)
        self.assertEqual(totals["heating_total"], Decimal("1000.00"))
        self.assertEqual(totals["water_total"], Decimal("100.00"))
        self.assertEqual(totals["grand_total"], Decimal("1100.00"))

    def test_complete_data_validates(self):
        self.assertEqual(self.service.validate_external_cost_data(self.weg, self.year), [])

    def test_absent_share_stays_none(self):
        HeizWasserkosten.objects.filter(einheit=self.einheit).update(wasserkosten=None)

        costs = self.service.get_all_external_costs(self.einheit, self.year)

        self.assertIsNone(costs["water"]["unit_share"])
        self.assertEqual(costs["unit_total"], Decimal("290.00"))

    def test_zero_share_is_not_missing(self):
        HeizWasserkosten.objects.filter(einheit=self.einheit).update(wasserkosten=Decimal("0.00"))
        self.assertEqual(self.service.validate_external_cost_data(self.weg, self.year), [])

    def test_missing_record_is_reported_per_unit(self):
        HeizWasserkosten.objects.filter(einheit=self.units[1]).delete()

        errors = self.service.validate_external_cost_data(self.weg, self.year)

        self.assertEqual(len(errors), 1)
        self.assertIn("Einheit 2", errors[0])
        self.assertIn("2024", errors[0])

    def test_missing_or_negative_fields_are_reported(self):
        HeizWasserkosten.objects.filter(einheit=self.units[2]).update(heizkosten=None)
        HeizWasserkosten.objects.filter(einheit=self.units[3]).update(wasserkosten=Decimal("-5.00"))

        errors = self.service.validate_external_cost_data(self.weg, self.year)

        self.assertEqual(len(errors), 2)
        self.assertIn("Einheit 3", errors[0])
        self.assertIn("heizkosten", errors[0])
        self.assertIn("Einheit 4", errors[1])
        self.assertIn("negativ", errors[1])

    def test_custom_source_is_used(self):
        class FixedSource:
            def get_heating_share(self, einheit, year):
                return Decimal("10.00")

            def get_water_share(self, einheit, year):
                return None

            def get_community_totals(self, weg, year):
                return {"heating": Decimal("40.00"), "water": Decimal("0.00")}

        costs = ExternalCostService(FixedSource()).get_all_external_costs(self.einheit, self.year)

        self.assertEqual(costs["heating"]["unit_share"], Decimal("10.00"))
        self.assertIsNone(costs["water"]["unit_share"])
        self.assertEqual(costs["total"], Decimal("40.00"))


class CostAggregationServiceTests(WegFixtureMixin, TestCase):
    def setUp(self):
        self.create_weg()
        self.k_mea = self.create_account("4000", Umlageschluessel.MEA)
        self.k_units = self.create_account("4100", Umlageschluessel.EINHEITEN)
        self.k_fix = self.create_account(
            "4200", Umlageschluessel.FESTUMLAGE, Kostenkonto.Kategorie.NICHT_UMLAGEFAEHIG
        )
        self.k_reserve = self.create_account(
            "4300", Umlageschluessel.MEA, Kostenkonto.Kategorie.RUECKLAGENZUFUEHRUNG
        )
        self.k_heat = self.create_account("4400", Umlageschluessel.HEIZUNG_EXTERN)
        self.k_inactive = self.create_account("4500", Umlageschluessel.MEA, is_active=False)

        self.book(self.k_mea, "-600.00")
        self.book(self.k_mea, "-400.00", datum=date(2024, 9, 1))
        self.book(self.k_units, "-2000.00")
        self.book(self.k_fix, "-150.00", eigentuemer=self.units[0])
        self.book(self.k_fix, "-80.00", eigentuemer=self.units[1])
        self.book(self.k_reserve, "-1000.00")
        self.book(self.k_heat, "-1000.00")
        self.book(self.k_inactive, "-500.00")
        self.book(self.k_mea, "-999.00", is_simulation=True)
        self.service = CostAggregationService()

    def test_unit_costs_per_bucket(self):
        costs = self.service.calculate_total_costs(self.einheit, self.year)

        umlagefaehig = costs["umlagefaehig"]
        self.assertEqual([item["kostenkonto"] for item in umlagefaehig["items"]], ["4000", "4100"])
        self.assertEqual(umlagefaehig["items"][0]["total"], Decimal("1000.00"))
        self.assertEqual(umlagefaehig["items"][0]["anteil"], Decimal("290.00"))
        self.assertEqual(umlagefaehig["items"][0]["count"], 2)
        self.assertEqual(umlagefaehig["items"][1]["anteil"], Decimal("500.00"))
        self.assertEqual(umlagefaehig["total"], Decimal("790.00"))
        self.assertEqual(costs["nicht_umlagefaehig"]["total"], Decimal("150.00"))
        self.assertEqual(costs["ruecklagen"]["total"], Decimal("290.00"))
        self.assertEqual(costs["gesamtkosten"], Decimal("1230.00"))

    def test_external_inactive_and_simulated_bookings_are_skipped(self):
        costs = self.service.calculate_total_costs(self.einheit, self.year)

        accounts = [
            item["kostenkonto"]
            for bucket in ("umlagefaehig", "nicht_umlagefaehig", "ruecklagen")
            for item in costs[bucket]["items"]
        ]
        self.assertNotIn("4400", accounts)
        self.assertNotIn("4500", accounts)
        self.assertEqual(costs["umlagefaehig"]["items"][0]["total"], Decimal("1000.00"))

    def test_fixed_charge_only_counts_bookings_of_the_unit(self):
        costs = self.service.calculate_total_costs(self.units[2], self.year)

        item = costs["nicht_umlagefaehig"]["items"][0]
        self.assertEqual(item["total"], Decimal("230.00"))
        self.assertEqual(item["anteil"], Decimal("0.00"))

    def test_refunds_reduce_the_account_total(self):
        self.book(self.k_mea, "100.00", kategorie=Zahlung.Kategorie.ERSTATTUNG)

        costs = self.service.calculate_total_costs(self.einheit, self.year)

        self.assertEqual(costs["umlagefaehig"]["items"][0]["total"], Decimal("900.00"))
        self.assertEqual(costs["umlagefaehig"]["items"][0]["anteil"], Decimal("261.00"))

    def test_settlement_year_tag_moves_bookings(self):
        self.book(self.k_mea, "-50.00", datum=date(2025, 1, 10), abrechnungsjahr=2024)
        self.book(self.k_mea, "-70.00", datum=date(2024, 6, 1), abrechnungsjahr=2023)

        costs = self.service.calculate_total_costs(self.einheit, self.year)

        self.assertEqual(costs["umlagefaehig"]["items"][0]["total"], Decimal("1050.00"))
        self.assertEqual(costs["umlagefaehig"]["items"][0]["anteil"], Decimal("304.50"))

    def test_weg_totals_match_distributed_shares(self):
        totals = self.service.calculate_total_costs_for_weg(self.weg, self.year)

        umlagefaehig = totals["umlagefaehig"]
        self.assertEqual(umlagefaehig["total"], Decimal("3000.00"))
        self.assertEqual(umlagefaehig["distributed"], Decimal("3000.00"))
        self.assertEqual(umlagefaehig["rounding_diff"], Decimal("0.00"))
        fixed = totals["nicht_umlagefaehig"]["items"][0]
        self.assertEqual(fixed["total"], Decimal("230.00"))
        self.assertEqual(fixed["distributed"], Decimal("230.00"))
        self.assertEqual(totals["ruecklagen"]["total"], Decimal("1000.00"))
        self.assertEqual(totals["gesamtkosten"], Decimal("4230.00"))

    def test_weg_totals_report_rounding_difference(self):
        self.book(self.k_units, "-100.01", datum=date(2023, 5, 1))

        totals = self.service.calculate_total_costs_for_weg(self.weg, 2023)

        item = totals["umlagefaehig"]["items"][0]
        self.assertEqual(item["distributed"], Decimal("100.00"))
        self.assertEqual(item["rounding_diff"], Decimal("0.01"))

    def test_account_without_key_is_distributed_by_mea(self):
        self.book(self.create_account("4600", ""), "-1000.00")

        costs = self.service.calculate_total_costs(self.einheit, self.year)

        item = next(item for item in costs["umlagefaehig"]["items"] if item["kostenkonto"] == "4600")
        self.assertEqual(item["verteilungsschluessel"], "05*")
        self.assertEqual(item["anteil"], Decimal("290.00"))

    def test_allocation_errors_propagate(self):
        WegEinheit.objects.create(weg=self.weg, nummer="5", miteigentumsanteile="")

        with self.assertRaises(InvalidAllocationInput):
            self.service.calculate_total_costs_for_weg(self.weg, self.year)


class PaymentReconciliationServiceTests(WegFixtureMixin, TestCase):
    def setUp(self):
        self.create_weg()
        Vorauszahlung.objects.create(einheit=self.units[0], jahr=self.year, monatsbetrag=Decimal("25.00"))
        Vorauszahlung.objects.create(
            einheit=self.units[1],
            jahr=self.year,
            monatsbetrag=Decimal("30.00"),
            ab_monat=7,
        )
        for month in range(1, 13):
            self.pay(self.units[0], "25.00", month)
        for month in range(7, 12):
            self.pay(self.units[1], "30.00", month)
        self.pay(self.units[0], "200.00", 6, kategorie=Zahlung.Kategorie.SONDERUMLAGE)
        self.pay(self.units[1], "40.00", 2, kategorie=Zahlung.Kategorie.NACHZAHLUNG)
        self.service = PaymentReconciliationService()

    def test_balanced_unit(self):
        balance = self.service.calculate_payment_balance(self.units[0], self.year)

        self.assertEqual(balance["soll"], Decimal("300.00"))
        self.assertEqual(balance["ist"], Decimal("300.00"))
        self.assertEqual(balance["differenz"], Decimal("0.00"))
        self.assertEqual(balance["status"], "ausgeglichen")
        self.assertEqual(balance["count"], 13)

    def test_mid_year_entry_and_underpayment(self):
        balance = self.service.calculate_payment_balance(self.units[1], self.year)

        self.assertEqual(balance["soll"], Decimal("180.00"))
        self.assertEqual(balance["ist"], Decimal("150.00"))
        self.assertEqual(balance["differenz"], balance["ist"] - balance["soll"])
        self.assertEqual(balance["status"], "unterdeckung")

    def test_overpayment(self):
        self.pay(self.units[0], "10.00", 12)

        balance = self.service.calculate_payment_balance(self.units[0], self.year)

        self.assertEqual(balance["differenz"], Decimal("10.00"))
        self.assertEqual(balance["status"], "ueberdeckung")

    def test_unit_without_configuration_has_zero_soll(self):
        self.assertEqual(self.service.calculate_advance_payments(self.units[2], self.year), Decimal("0.00"))

    def test_negative_and_simulated_bookings_do_not_count(self):
        self.pay(self.units[0], "-25.00", 5)
        self.pay(self.units[0], "500.00", 5, is_simulation=True)

        self.assertEqual(self.service.calculate_actual_payments(self.units[0], self.year), Decimal("300.00"))

    def test_weg_totals_equal_sum_of_units(self):
        totals = self.service.calculate_weg_totals(self.weg, self.year)

        units = [self.service.calculate_payment_balance(unit, self.year) for unit in self.units]
        self.assertEqual(totals["soll"], sum((unit["soll"] for unit in units), Decimal("0")))
        self.assertEqual(totals["ist"], sum((unit["ist"] for unit in units), Decimal("0")))
        self.assertEqual(totals["soll"], Decimal("480.00"))
        self.assertEqual(totals["ist"], Decimal("450.00"))
        self.assertEqual(totals["differenz"], Decimal("-30.00"))

    def test_payment_details_and_monthly_data(self):
        details = self.service.get_payment_details(self.units[0], self.year)
        self.assertEqual(len(details), 13)
        self.assertEqual(details[0]["datum"], date(2024, 1, 3))
        self.assertEqual(details[0]["beschreibung"], "Zahlung")
        self.assertEqual(details[0]["betrag"], Decimal("25.00"))

        monthly = self.service.get_monthly_actual_payments(self.units[0], self.year)
        self.assertEqual(monthly[1], Decimal("25.00"))
        self.assertEqual(monthly[6], Decimal("25.00"))
        self.assertEqual(self.service.get_monthly_advance_payment_for_weg(self.weg, self.year), Decimal("55.00"))

    def test_retagged_payments_stay_in_settlement_year(self):
        for datum in (date(2023, 12, 28), date(2025, 1, 5)):
            Zahlung.objects.create(
                weg=self.weg,
                datum=datum,
                betrag=Decimal("25.00"),
                kategorie=Zahlung.Kategorie.HAUSGELD,
                eigentuemer=self.units[0],
                abrechnungsjahr=self.year,
            )

        monthly = self.service.get_monthly_actual_payments(self.units[0], self.year)

        self.assertEqual(monthly[1], Decimal("50.00"))
        self.assertEqual(monthly[12], Decimal("50.00"))
        self.assertEqual(
            sum(monthly.values(), Decimal("0")),
            self.service.calculate_actual_payments(self.units[0], self.year),
        )

    def test_weg_category_totals(self):
        totals = self.service.get_weg_category_totals(self.weg, self.year)
        self.assertEqual(totals["sonderumlage"], Decimal("200.00"))
        self.assertEqual(totals["nachzahlung"], Decimal("40.00"))


class TaxDeductionServiceTests(WegFixtureMixin, TestCase):
    def setUp(self):
        self.create_weg()
        self.service = TaxDeductionService(HgaConfig())

    def test_reduction_is_rate_times_base_below_cap(self):
        self.assertEqual(compute_reduction(Decimal("500.00"), Decimal("0.20"), Decimal("1200.00")), Decimal("100.00"))
        self.assertEqual(compute_reduction(Decimal("-50.00"), Decimal("0.20"), Decimal("1200.00")), Decimal("0.00"))

    def test_reduction_never_exceeds_cap(self):
        for base in ("6000.00", "10000.00", "999999999.99"):
            reduction = self.service.compute_reduction(Decimal(base))
            self.assertEqual(reduction, min(Decimal(base) * Decimal("0.20"), Decimal("1200.00")).quantize(Decimal("0.01")))
            self.assertLessEqual(reduction, Decimal("1200.00"))

    def test_full_amount_without_invoice(self):
        konto = self.create_account("4100", Umlageschluessel.EINHEITEN, tax_deductible=True)
        self.book(konto, "-2000.00")

        result = self.service.calculate_tax_deductible(self.einheit, self.year)

        self.assertEqual(len(result["items"]), 1)
        self.assertEqual(result["items"][0]["anrechenbar"], Decimal("2000.00"))
        self.assertEqual(result["items"][0]["anteil_anrechenbar"], Decimal("500.00"))
        self.assertEqual(result["total"], Decimal("500.00"))
        self.assertEqual(result["tax_reduction"], Decimal("100.00"))
        self.assertFalse(result["cap_applied"])

    def test_labor_portion_from_invoice(self):
        konto = self.create_account("4000", Umlageschluessel.MEA, tax_deductible=True)
        rechnung = Rechnung.objects.create(
            dienstleister="Gartenbau Huber",
            betrag_mit_steuern=Decimal("1000.00"),
            arbeits_fahrtkosten=Decimal("400.00"),
        )
        self.book(konto, "-1000.00", rechnung=rechnung)

        item = self.service.calculate_tax_deductible(self.einheit, self.year)["items"][0]

        self.assertEqual(item["gesamtkosten"], Decimal("1000.00"))
        self.assertEqual(item["anrechenbar"], Decimal("400.00"))
        self.assertEqual(item["anteil_kosten"], Decimal("290.00"))
        self.assertEqual(item["anteil_anrechenbar"], Decimal("116.00"))

    def test_only_allocatable_deductible_accounts_count(self):
        self.book(self.create_account("4000", Umlageschluessel.MEA), "-1000.00")
        self.book(
            self.create_account(
                "4600",
                Umlageschluessel.MEA,
                Kostenkonto.Kategorie.NICHT_UMLAGEFAEHIG,
                tax_deductible=True,
            ),
            "-1000.00",
        )

        result = self.service.calculate_tax_deductible(self.einheit, self.year)

        self.assertEqual(result["items"], [])
        self.assertEqual(result["tax_reduction"], Decimal("0.00"))

    def test_cap_scenario(self):
        konto = self.create_account("4100", Umlageschluessel.EINHEITEN, tax_deductible=True)
        self.book(konto, "-40000.00")

        result = self.service.calculate_tax_deductible(self.einheit, self.year)

        self.assertEqual(result["total"], Decimal("10000.00"))
        self.assertEqual(result["tax_reduction"], Decimal("1200.00"))
        self.assertTrue(result["cap_applied"])

    def test_rate_and_cap_come_from_config(self):
        service = TaxDeductionService(HgaConfig(tax_rate=Decimal("0.10"), tax_cap=Decimal("30.00")))
        self.assertEqual(service.compute_reduction(Decimal("500.00")), Decimal("30.00"))


class BalanceServiceTests(WegFixtureMixin, TestCase):
    def setUp(self):
        self.create_weg()

    def test_balance_development(self):
        MonatsSaldo.objects.create(
            weg=self.weg,
            monat=date(2024, 1, 1),
            anfangssaldo=Decimal("10000.00"),
            umsatzsumme=Decimal("500.00"),
            endsaldo=Decimal("10500.00"),
            anzahl_transaktionen=8,
        )
        MonatsSaldo.objects.create(
            weg=self.weg,
            monat=date(2024, 12, 1),
            anfangssaldo=Decimal("11800.00"),
            umsatzsumme=Decimal("200.00"),
            endsaldo=Decimal("12000.00"),
            anzahl_transaktionen=5,
        )

        data = BalanceService().get_balance_data(self.weg, 2024)

        self.assertTrue(data["has_data"])
        self.assertEqual(data["start"], Decimal("10000.00"))
        self.assertEqual(data["end"], Decimal("12000.00"))
        self.assertEqual(data["change"], Decimal("2000.00"))
        self.assertEqual(len(data["monthly"]), 2)

    def test_no_data(self):
        self.assertFalse(BalanceService().get_balance_data(self.weg, 2024)["has_data"])


class HgaScenarioMixin(WegFixtureMixin):
    """MEA 290/1000, 1.000 EUR nach 05*, 2.000 EUR §35a nach 03*, Soll = Ist = 300 EUR."""

    def create_scenario(self):
        self.create_weg()
        self.create_external_costs()
        self.k_mea = self.create_account("4000", Umlageschluessel.MEA)
        self.k_tax = self.create_account("4100", Umlageschluessel.EINHEITEN, tax_deductible=True)
        self.book(self.k_mea, "-1000.00")
        self.book(self.k_tax, "-2000.00")
        Vorauszahlung.objects.create(einheit=self.einheit, jahr=self.year, monatsbetrag=Decimal("25.00"))
        for month in range(1, 13):
            self.pay(self.einheit, "25.00", month)


class HgaServiceTests(HgaScenarioMixin, TestCase):
    def setUp(self):
        self.create_scenario()
        self.service = HgaService(HgaConfig())

    def test_end_to_end_statement_and_verdict(self):
        statement = self.service.generate_statement(self.einheit, self.year)

        items = statement.costs["umlagefaehig"]["items"]
        self.assertEqual(items[0]["verteilungsschluessel"], "05*")
        self.assertEqual(items[0]["anteil"], Decimal("290.00"))
        self.assertEqual(statement.payments["soll"], Decimal("300.00"))
        self.assertEqual(statement.payments["ist"], Decimal("300.00"))
        self.assertEqual(statement.payments["differenz"], Decimal("0.00"))
        self.assertEqual(statement.tax_deductible["total"], Decimal("500.00"))
        self.assertEqual(statement.tax_deductible["tax_reduction"], Decimal("100.00"))
        self.assertEqual(statement.einheit["mea_prozent"], Decimal("29.00"))
        self.assertEqual(statement.calculated_totals["unit"]["gesamtkosten"], Decimal("1109.00"))
        self.assertEqual(statement.calculated_totals["weg"]["gesamtkosten"], Decimal("4100.00"))

        verdict = HgaQualityCheckService(HgaConfig(), providers={}).run_quality_checks(statement, provider=None)

        self.assertEqual(verdict.status, "pass")
        self.assertIsNone(verdict.provider)
        self.assertIsNone(verdict.ai_analysis)
        self.assertTrue(all(check.status == "pass" for check in verdict.checks))

    def test_statement_is_idempotent_apart_from_timestamp(self):
        first = self.service.generate_statement(self.einheit, self.year).to_dict()
        second = self.service.generate_statement(self.einheit, self.year).to_dict()

        first.pop("generated_at")
        second.pop("generated_at")
        self.assertEqual(first, second)

    def test_statement_is_read_only(self):
        statement = self.service.generate_statement(self.einheit, self.year)

        with self.assertRaises(FrozenInstanceError):
            statement.year = 2025
        with self.assertRaises(TypeError):
            statement.costs["gesamtkosten"] = Decimal("0.00")
        self.assertIsInstance(statement.costs["umlagefaehig"]["items"], tuple)

    def test_to_dict_is_json_serializable(self):
        data = self.service.generate_statement(self.einheit, self.year).to_dict()

        payload = json.loads(json.dumps(data))
        self.assertEqual(payload["costs"]["umlagefaehig"]["items"][0]["anteil"], "290.00")
        self.assertEqual(payload["payments"]["payment_details"][0]["datum"], "2024-01-03")

    def test_reserves_are_not_part_of_gesamtkosten(self):
        reserve = self.create_account("4300", Umlageschluessel.MEA, Kostenkonto.Kategorie.RUECKLAGENZUFUEHRUNG)
        self.book(reserve, "-1000.00")

        statement = self.service.generate_statement(self.einheit, self.year)

        self.assertEqual(statement.costs["ruecklagen"]["total"], Decimal("290.00"))
        self.assertEqual(statement.calculated_totals["unit"]["gesamtkosten"], Decimal("1109.00"))
        self.assertEqual(statement.payments["weg_totals"]["ruecklagen"], Decimal("1000.00"))

    def test_final_balance(self):
        balance = self.service.generate_statement(self.einheit, self.year).calculated_totals["balance"]

        self.assertEqual(balance["abrechnungsspitze"], Decimal("809.00"))
        self.assertEqual(balance["zahlungsdifferenz"], Decimal("0.00"))
        self.assertEqual(balance["saldo"], Decimal("809.00"))
        self.assertFalse(balance["is_guthaben"])

    def test_key_overview(self):
        overview = self.service.generate_statement(self.einheit, self.year).umlageschluessel

        by_key = {entry["nummer"]: entry for entry in overview}
        self.assertEqual(list(by_key), ["01*", "02*", "03*", "04*", "05*", "06*"])
        self.assertEqual(by_key["03*"]["gesamtumlage"], 4)
        self.assertEqual(by_key["05*"]["anteil"], Decimal("290.000"))
        self.assertEqual(by_key["06*"]["anteil"], 0)

    def test_weg_cost_totals_include_external_costs(self):
        totals = self.service.calculate_total_costs(self.weg, self.year)

        self.assertEqual(totals["external_costs"]["grand_total"], Decimal("1100.00"))
        self.assertEqual(totals["gesamtkosten"], Decimal("3000.00"))

    def test_missing_external_costs_abort_before_aggregation(self):
        HeizWasserkosten.objects.filter(einheit=self.units[1]).update(heizkosten=None, wasserkosten=None)

        self.assertNotEqual(self.service.validate_inputs(self.einheit, self.year), [])
        with patch.object(CostAggregationService, "calculate_total_costs") as aggregate:
            with self.assertLogs("hausgeld.services.hga_service", level="WARNING"):
                with self.assertRaises(HgaInputError) as ctx:
                    self.service.generate_statement(self.einheit, self.year)
        aggregate.assert_not_called()
        self.assertEqual(ctx.exception.einheit_id, self.einheit.pk)
        self.assertEqual(ctx.exception.year, self.year)
        self.assertTrue(any("Einheit 2" in error for error in ctx.exception.errors))

    def test_mea_above_one_is_rejected_before_aggregation(self):
        self.units[1].miteigentumsanteile = "1500/1000"
        self.units[1].save()

        errors = self.service.validate_inputs(self.einheit, self.year)
        self.assertEqual(errors, ["Einheit 2: MEA 1500/1000 liegt über 1."])

        self.einheit.miteigentumsanteile = "1500/1000"
        self.einheit.save()
        with patch.object(CostAggregationService, "calculate_total_costs") as aggregate:
            with self.assertLogs("hausgeld.services.hga_service", level="WARNING"):
                with self.assertRaises(HgaInputError) as ctx:
                    self.service.generate_statement(self.einheit, self.year)
        aggregate.assert_not_called()
        self.assertIn("Einheit 1: MEA 1500/1000 liegt über 1.", ctx.exception.errors)

    def test_invalid_year_and_missing_mea(self):
        self.einheit.miteigentumsanteile = ""
        self.einheit.save()

        errors = self.service.validate_inputs(self.einheit, 1999)

        self.assertTrue(any("MEA" in error for error in errors))
        self.assertTrue(any("1999" in error for error in errors))

    def test_downstream_errors_are_wrapped(self):
        with patch.object(self.service.balance, "get_balance_data", side_effect=RuntimeError("Bank offline")):
            with self.assertLogs("hausgeld.services.hga_service", level="ERROR"):
                with self.assertRaises(HgaGenerationError) as ctx:
                    self.service.generate_statement(self.einheit, self.year)

        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertEqual(ctx.exception.einheit_id, self.einheit.pk)


@override_settings(HGA={"AI_TIMEOUT": 1, "OLLAMA_URL": "http://ollama.invalid:11434"})
class GenerateHgaCommandTests(HgaScenarioMixin, TestCase):
    def setUp(self):
        self.create_scenario()

    def test_command_writes_statement_json(self):
        out = StringIO()
        call_command("generate_hga", einheit=self.einheit.pk, jahr=self.year, stdout=out, stderr=StringIO())

        payload = json.loads(out.getvalue())
        self.assertEqual(payload["statement"]["year"], 2024)
        self.assertNotIn("quality_check", payload)

    def test_command_runs_rule_checks_without_ai(self):
        out = StringIO()
        call_command(
            "generate_hga",
            einheit=self.einheit.pk,
            jahr=self.year,
            check=True,
            provider="none",
            stdout=out,
            stderr=StringIO(),
        )

        payload = json.loads(out.getvalue())
        self.assertEqual(payload["quality_check"]["status"], "pass")
        self.assertIsNone(payload["quality_check"]["provider"])

    def test_command_reports_invalid_input(self):
        HeizWasserkosten.objects.filter(einheit=self.units[2]).delete()

        with self.assertRaises(CommandError) as ctx:
            call_command("generate_hga", einheit=self.einheit.pk, jahr=self.year, stdout=StringIO())
        self.assertIn("Einheit 3", str(ctx.exception))

    def test_command_unknown_unit(self):
        with self.assertRaises(CommandError):
            call_command("generate_hga", einheit=99999, jahr=self.year, stdout=StringIO())

    def test_config_reads_settings(self):
        config = HgaConfig.from_settings()
        self.assertEqual(config.ai_timeout, 1)
        self.assertEqual(config.ollama_url, "http://ollama.invalid:11434")
        self.assertEqual(config.tax_cap, Decimal("1200.00"))

    @override_settings(HGA={"UNKNOWN_KEY": 1})
    def test_config_rejects_unknown_keys(self):
        with self.assertRaises(ValueError):
            HgaConfig.from_settings()
