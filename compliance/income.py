"""Annualized income from a resident's document set.

Pure functions over anything shaped like an IncomeDocument: ORM rows in the
service, plain objects in tests. Only COMPLETED documents participate.

- PAYSTUB: mean gross pay of paystubs with gross > 0, times the multiplier of
  the first qualifying paystub's frequency
- W2: max(box1, box3, box5) per W2, summed
- SOCIAL_SECURITY, SSA_1099, OTHER: the extracted annualized amount, summed
- BANK_STATEMENT, OFFER_LETTER: informational, never contribute
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from . import config
from .errors import RecoverableDataError
from .schemas import (
    ZERO,
    DocumentStatus,
    DocumentType,
    PayFrequency,
    coerce_money,
    quantize_money,
)

logger = logging.getLogger(__name__)

ANNUALIZED_TYPES = (DocumentType.SOCIAL_SECURITY, DocumentType.SSA_1099, DocumentType.OTHER)
W2_BOXES = ("box1_wages", "box3_ss_wages", "box5_med_wages")


@dataclass
class IncomeCalculation:
    """Result of one calculator run."""

    total: Decimal = ZERO
    participating: list = field(default_factory=list)
    by_type: dict[DocumentType, Decimal] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def add(self, document_type: DocumentType, amount: Decimal) -> None:
        self.by_type[document_type] = self.by_type.get(document_type, ZERO) + amount
        self.total = quantize_money(self.total + amount)


def pay_frequency_multiplier(raw: str | None) -> int:
    """Annualization multiplier, falling back to the configured default."""
    frequency = PayFrequency.parse(raw)
    if frequency is None:
        frequency = PayFrequency.parse(config.DEFAULT_PAY_FREQUENCY) or PayFrequency.BI_WEEKLY
    return frequency.multiplier


def _amount(document, attribute: str, calc: IncomeCalculation) -> Decimal:
    """Read a money field, degrading unusable values to zero."""
    try:
        return coerce_money(getattr(document, attribute, None), attribute)
    except RecoverableDataError as exc:
        message = f"document {getattr(document, 'id', '?')}: {exc}"
        calc.warnings.append(message)
        logger.warning(f"Treating as 0: {message}")
        return ZERO


def _document_type(document) -> DocumentType | None:
    try:
        return DocumentType(document.document_type)
    except ValueError:
        return None


def _paystub_income(paystubs: list, calc: IncomeCalculation) -> None:
    qualifying = []
    for stub in paystubs:
        gross = _amount(stub, "gross_pay_amount", calc)
        if gross > 0:
            qualifying.append((stub, gross))
    if not qualifying:
        return

    frequencies = {PayFrequency.parse(stub.pay_frequency) for stub, _ in qualifying}
    if len(frequencies) > 1:
        # TODO: annualize per frequency group once mixed pay schedules are supported
        message = (
            f"mixed pay frequencies {sorted(f.value if f else 'UNKNOWN' for f in frequencies)}; "
            f"using first paystub's"
        )
        calc.warnings.append(message)
        logger.warning(message)

    first_stub = qualifying[0][0]
    multiplier = pay_frequency_multiplier(first_stub.pay_frequency)
    mean_gross = sum((gross for _, gross in qualifying), ZERO) / len(qualifying)
    calc.add(DocumentType.PAYSTUB, quantize_money(mean_gross * multiplier))
    calc.participating.extend(stub for stub, _ in qualifying)


def _w2_income(w2s: list, calc: IncomeCalculation) -> None:
    for w2 in w2s:
        boxes = [_amount(w2, box, calc) for box in W2_BOXES]
        calc.add(DocumentType.W2, max(boxes))
        calc.participating.append(w2)


def calculate_resident_income(documents) -> IncomeCalculation:
    """Annualized income over the COMPLETED documents in ``documents``.

    Paystubs are considered in the order given, so callers should pass them
    in upload order for the frequency of the "first" paystub to be stable.
    """
    calc = IncomeCalculation()
    paystubs, w2s = [], []

    for document in documents:
        if document.status != DocumentStatus.COMPLETED:
            continue
        document_type = _document_type(document)
        if document_type == DocumentType.PAYSTUB:
            paystubs.append(document)
        elif document_type == DocumentType.W2:
            w2s.append(document)
        elif document_type in ANNUALIZED_TYPES:
            calc.add(document_type, _amount(document, "calculated_annualized_income", calc))
            calc.participating.append(document)

    _paystub_income(paystubs, calc)
    _w2_income(w2s, calc)

    logger.debug(
        f"Calculated {calc.total} from {len(calc.participating)} documents "
        f"({', '.join(f'{t.value}={v}' for t, v in calc.by_type.items()) or 'none'})"
    )
    return calc


def lease_verified_total(residents) -> Decimal:
    """Sum of calculated income over finalized residents."""
    total = ZERO
    for resident in residents:
        if resident.income_finalized and resident.calculated_income is not None:
            total += resident.calculated_income
    return quantize_money(total)
