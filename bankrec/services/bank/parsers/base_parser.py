"""
Base Parser Interface for Bank Statement Files

Defines the capability every statement format implements (CSV, OFX,
QIF, CAMT.053) and the canonical transaction record they produce.
Parsers are generators: rows are yielded one by one and row-level
problems are collected on a ParseReport instead of aborting the file.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, List, Optional, Protocol, Sequence, Union, runtime_checkable

from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)

DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%Y%m%d",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
]


class ParseError(ValueError):
    """Raised when a document cannot be read at all (bad signature or structure)."""
    pass


@dataclass
class ParsedTransaction:
    """
    Normalized transaction data from any bank statement format.

    amount is signed: positive for money received, negative for money paid.
    raw keeps the source fragment (CSV row, OFX block, ...) for audit.
    """
    date: date
    amount: Decimal
    currency: Optional[str] = None
    payment_ref: Optional[str] = None
    partner_name: Optional[str] = None
    account_number: Optional[str] = None
    transaction_type: Optional[str] = None
    ref: Optional[str] = None
    raw: Any = None

    def __post_init__(self):
        """Validate and normalize fields."""
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))
        for name in ("payment_ref", "partner_name", "transaction_type", "ref"):
            value = getattr(self, name)
            if value is not None:
                value = str(value).strip()
                setattr(self, name, value or None)
        if self.account_number:
            # Normalize IBAN/account: remove spaces, uppercase
            self.account_number = self.account_number.replace(" ", "").upper()
        if self.currency:
            self.currency = self.currency.strip().upper()


@dataclass
class ParseDiagnostic:
    """A row or entry that was skipped during parsing."""
    position: int
    message: str
    fragment: Optional[str] = None


@dataclass
class ParseReport:
    """Statement metadata and diagnostics collected while a parser runs."""
    format_name: Optional[str] = None
    account_number: Optional[str] = None
    account_type: Optional[str] = None
    currency: Optional[str] = None
    balance_start: Optional[Decimal] = None
    balance_end: Optional[Decimal] = None
    statement_date: Optional[date] = None
    statement_reference: Optional[str] = None
    diagnostics: List[ParseDiagnostic] = field(default_factory=list)

    @property
    def has_balances(self) -> bool:
        return self.balance_start is not None or self.balance_end is not None

    def skip(self, position: int, message: str, fragment: Optional[str] = None) -> None:
        """Record a skipped row and keep going."""
        if fragment is not None:
            fragment = fragment[:200]
        self.diagnostics.append(ParseDiagnostic(position=position, message=message, fragment=fragment))
        logger.warning(f"{self.format_name or 'statement'} row {position} skipped: {message}")


@runtime_checkable
class StatementParser(Protocol):
    """Capability implemented by every statement format."""

    format_name: str
    supported_extensions: Sequence[str]

    def validate(self, content: str) -> bool:
        ...

    def iter_transactions(self, content: str, report: ParseReport) -> Iterator[ParsedTransaction]:
        ...

    def parse(self, content: Union[str, bytes]) -> List[ParsedTransaction]:
        ...


class BaseStatementParser:
    """
    Shared helpers for the bundled parsers.

    Subclasses set format_name / supported_extensions and implement
    validate() and iter_transactions().
    """

    format_name: str = ""
    supported_extensions: Sequence[str] = ()

    def validate(self, content: str) -> bool:
        raise NotImplementedError

    def iter_transactions(self, content: str, report: ParseReport) -> Iterator[ParsedTransaction]:
        raise NotImplementedError

    def parse(self, content: Union[str, bytes], report: Optional[ParseReport] = None) -> List[ParsedTransaction]:
        """Parse a whole document into a list of transactions."""
        if report is None:
            report = ParseReport(format_name=self.format_name)
        return list(self.iter_transactions(decode_content(content), report))

    def handles_extension(self, filename: Optional[str]) -> bool:
        if not filename:
            return False
        lowered = filename.lower()
        return any(lowered.endswith(f".{ext}") for ext in self.supported_extensions)


def decode_content(content: Union[str, bytes]) -> str:
    """Decode raw file bytes, falling back to latin-1 for legacy exports."""
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def normalize_amount(value: Any, decimal_separator: Optional[str] = None) -> Optional[Decimal]:
    """
    Parse an amount from bank export formats.

    With an explicit decimal separator the other separator is treated as a
    thousands separator. Without one, the rightmost of ',' and '.' wins,
    and a lone comma followed by exactly two digits is a decimal comma.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    value = str(value).strip()
    negative = value.startswith("(") and value.endswith(")")
    value = re.sub(r"[^\d.,\-+]", "", value)
    if not re.search(r"\d", value):
        return None

    if decimal_separator == ",":
        value = value.replace(".", "").replace(",", ".")
    elif decimal_separator == ".":
        value = value.replace(",", "")
    elif "," in value and "." in value:
        if value.rfind(",") > value.rfind("."):
            # European: 1.234,56
            value = value.replace(".", "").replace(",", ".")
        else:
            # US: 1,234.56
            value = value.replace(",", "")
    elif "," in value:
        parts = value.split(",")
        if len(parts) == 2 and len(parts[1]) == 2:
            value = value.replace(",", ".")
        else:
            value = value.replace(",", "")

    try:
        amount = Decimal(value)
    except InvalidOperation:
        return None
    return -amount if negative else amount


def normalize_date(value: Any, formats: Optional[Sequence[str]] = None) -> Optional[date]:
    """Parse a date trying known export formats first, then a generic parse."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    value = str(value).strip()
    if not value:
        return None

    for fmt in formats or DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue

    try:
        return dateutil_parser.parse(value).date()
    except (ValueError, OverflowError):
        return None
