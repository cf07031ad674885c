"""
Tests for annualized income calculation.

Tests cover:
- Paystub mean gross times pay-frequency multiplier
- W2 max-of-boxes rule
- Pre-annualized document types and informational types
- Degrading unusable amounts to zero
- Money coercion at the boundary
"""
import pytest
from decimal import Decimal
from types import SimpleNamespace

from compliance.errors import RecoverableDataError
from compliance.income import calculate_resident_income, lease_verified_total, pay_frequency_multiplier
from compliance.schemas import (
    DocumentStatus,
    DocumentType,
    ExtractedDocument,
    PayFrequency,
    coerce_money,
    quantize_money,
)


def doc(document_type, status=DocumentStatus.COMPLETED, **fields):
    values = {
        "id": fields.pop("id", "doc"),
        "document_type": document_type,
        "status": status,
        "gross_pay_amount": None,
        "pay_frequency": None,
        "box1_wages": None,
        "box3_ss_wages": None,
        "box5_med_wages": None,
        "calculated_annualized_income": None,
    }
    values.update(fields)
    return SimpleNamespace(**values)


def stub(gross, frequency="BI-WEEKLY", **kwargs):
    return doc(DocumentType.PAYSTUB, gross_pay_amount=gross, pay_frequency=frequency, **kwargs)


class TestPaystubIncome:
    """Tests for the paystub annualization rule."""

    def test_two_biweekly_paystubs(self):
        """Should annualize mean gross by 26 for bi-weekly pay."""
        result = calculate_resident_income([
            stub(Decimal("1100.00")),
            stub(Decimal("1100.00")),
        ])

        assert result.total == Decimal("28600.00")
        assert result.by_type[DocumentType.PAYSTUB] == Decimal("28600.00")
        assert len(result.participating) == 2

    def test_uneven_paystubs_use_mean(self):
        """Should average gross pay before annualizing."""
        result = calculate_resident_income([
            stub(Decimal("1000.00"), "WEEKLY"),
            stub(Decimal("1200.00"), "WEEKLY"),
        ])

        # mean 1,100 * 52
        assert result.total == Decimal("57200.00")

    def test_zero_gross_excluded_from_mean(self):
        """Should ignore paystubs with no positive gross pay."""
        result = calculate_resident_income([
            stub(Decimal("1100.00")),
            stub(Decimal("0.00")),
            stub(Decimal("1100.00")),
        ])

        assert result.total == Decimal("28600.00")
        assert len(result.participating) == 2

    def test_first_paystub_frequency_governs(self):
        """Should use the first qualifying paystub's frequency and warn on a mix."""
        result = calculate_resident_income([
            stub(Decimal("500.00"), "WEEKLY"),
            stub(Decimal("1000.00"), "BI-WEEKLY"),
        ])

        # mean 750 * 52
        assert result.total == Decimal("39000.00")
        assert any("mixed pay frequencies" in w for w in result.warnings)

    def test_unknown_frequency_uses_default(self):
        """Should fall back to bi-weekly when the frequency is unrecognized."""
        result = calculate_resident_income([stub(Decimal("1000.00"), "fortnightly-ish")])

        assert result.total == Decimal("26000.00")

    @pytest.mark.parametrize("raw,expected", [
        ("WEEKLY", 52),
        ("bi-weekly", 26),
        ("Bi Weekly", 26),
        ("SEMI_MONTHLY", 24),
        ("monthly", 12),
        ("YEARLY", 1),
        (None, 26),
    ])
    def test_multiplier(self, raw, expected):
        """Should map every spelling of a frequency to its multiplier."""
        assert pay_frequency_multiplier(raw) == expected


class TestW2Income:
    """Tests for the W2 rule."""

    def test_max_of_boxes(self):
        """Should take the largest of boxes 1, 3 and 5."""
        result = calculate_resident_income([
            doc(
                DocumentType.W2,
                box1_wages=Decimal("40000.00"),
                box3_ss_wages=Decimal("41200.00"),
                box5_med_wages=Decimal("41000.00"),
            ),
        ])

        assert result.total == Decimal("41200.00")

    def test_multiple_w2s_are_summed(self):
        """Should add one figure per W2 for residents with two employers."""
        result = calculate_resident_income([
            doc(DocumentType.W2, box1_wages=Decimal("20000.00")),
            doc(DocumentType.W2, box5_med_wages=Decimal("15000.00")),
        ])

        assert result.total == Decimal("35000.00")

    def test_unusable_box_treated_as_zero(self):
        """Should degrade a non-numeric box to 0 with a warning."""
        result = calculate_resident_income([
            doc(DocumentType.W2, box1_wages="n/a", box3_ss_wages=Decimal("30000.00")),
        ])

        assert result.total == Decimal("30000.00")
        assert result.warnings


class TestOtherDocuments:
    """Tests for pre-annualized and informational document types."""

    def test_annualized_types_are_summed(self):
        """Should add the extracted annualized amount of each benefit document."""
        result = calculate_resident_income([
            doc(DocumentType.SOCIAL_SECURITY, calculated_annualized_income=Decimal("14400.00")),
            doc(DocumentType.SSA_1099, calculated_annualized_income=Decimal("1200.00")),
            doc(DocumentType.OTHER, calculated_annualized_income=Decimal("600.00")),
        ])

        assert result.total == Decimal("16200.00")

    def test_informational_types_never_contribute(self):
        """Should ignore bank statements and offer letters."""
        result = calculate_resident_income([
            doc(DocumentType.BANK_STATEMENT, calculated_annualized_income=Decimal("9999.00")),
            doc(DocumentType.OFFER_LETTER, calculated_annualized_income=Decimal("50000.00")),
        ])

        assert result.total == Decimal("0.00")
        assert result.participating == []

    def test_only_completed_documents_participate(self):
        """Should skip PENDING and NEEDS_REVIEW documents."""
        result = calculate_resident_income([
            stub(Decimal("1100.00"), status=DocumentStatus.PENDING),
            stub(Decimal("1100.00"), status=DocumentStatus.NEEDS_REVIEW),
            doc(DocumentType.OTHER, calculated_annualized_income=Decimal("500.00")),
        ])

        assert result.total == Decimal("500.00")

    def test_combined_sources(self):
        """Should add paystub, W2 and benefit income together."""
        result = calculate_resident_income([
            stub(Decimal("1100.00")),
            doc(DocumentType.W2, box1_wages=Decimal("5000.00")),
            doc(DocumentType.SOCIAL_SECURITY, calculated_annualized_income=Decimal("1000.00")),
        ])

        assert result.total == Decimal("34600.00")

    def test_no_documents(self):
        """Should return zero for an empty document set."""
        assert calculate_resident_income([]).total == Decimal("0.00")


class TestLeaseTotal:
    def test_sums_finalized_residents_only(self):
        """Should count only finalized residents' calculated income."""
        residents = [
            SimpleNamespace(income_finalized=True, calculated_income=Decimal("28600.00")),
            SimpleNamespace(income_finalized=True, calculated_income=Decimal("0.00")),
            SimpleNamespace(income_finalized=False, calculated_income=Decimal("41200.00")),
            SimpleNamespace(income_finalized=True, calculated_income=None),
        ]

        assert lease_verified_total(residents) == Decimal("28600.00")


class TestMoneyCoercion:
    """Tests for boundary money parsing."""

    @pytest.mark.parametrize("raw,expected", [
        ("28600", Decimal("28600.00")),
        ("$1,234.50", Decimal("1234.50")),
        (" 42.1 ", Decimal("42.10")),
        ("(100.00)", Decimal("-100.00")),
        (1100, Decimal("1100.00")),
        (1100.5, Decimal("1100.50")),
        (Decimal("0.005"), Decimal("0.01")),
    ])
    def test_coerce(self, raw, expected):
        assert coerce_money(raw, "amount") == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", True, "NaN", float("inf")])
    def test_rejects_unusable(self, raw):
        """Should raise a recoverable error naming the field."""
        with pytest.raises(RecoverableDataError) as exc_info:
            coerce_money(raw, "gross_pay_amount")
        assert exc_info.value.field == "gross_pay_amount"

    def test_quantize_half_up(self):
        assert quantize_money(Decimal("2.345")) == Decimal("2.35")

    def test_extracted_document_drops_unusable_amounts(self):
        """Should keep an unparseable extracted amount as missing."""
        extracted = ExtractedDocument(
            document_type=DocumentType.PAYSTUB,
            gross_pay_amount="see attached",
            pay_frequency="biweekly",
        )

        assert extracted.gross_pay_amount is None
        assert extracted.pay_frequency == PayFrequency.BI_WEEKLY.value
