"""
QIF Parser - Quicken Interchange Format

Line oriented: each line starts with a one character field code,
'^' closes a record. Dates are ambiguous (US or European order) and
may use an apostrophe before a two digit year (3/15'24).
"""
import re
from datetime import date
from typing import Dict, Iterator, List, Optional

from .base_parser import (
    BaseStatementParser,
    ParsedTransaction,
    ParseReport,
    normalize_amount,
    normalize_date,
)

FIELD_CODES = {
    "D": "date",
    "T": "amount",
    "U": "amount",
    "P": "payee",
    "M": "memo",
    "N": "reference",
    "L": "category",
    "C": "cleared",
}


class QifParser(BaseStatementParser):
    """Parser for QIF exports."""

    format_name = "qif"
    supported_extensions = ("qif",)

    def validate(self, content: str) -> bool:
        return content.strip().startswith("!")

    def parse_qif_date(self, value: str) -> Optional[date]:
        """
        Parse a QIF date.

        Month/day/year is tried first; when that is impossible (month > 12)
        day/month/year is used. Two digit years above 50 map to 19xx.
        """
        value = value.strip().replace("'", "/").replace("-", "/")
        parts = [part.strip() for part in value.split("/")]
        if len(parts) == 3 and all(part.isdigit() for part in parts):
            first, second, year = (int(part) for part in parts)
            if year < 100:
                year += 1900 if year > 50 else 2000

            for month, day in ((first, second), (second, first)):
                if 1 <= month <= 12 and 1 <= day <= 31:
                    try:
                        return date(year, month, day)
                    except ValueError:
                        continue

        return normalize_date(value)

    def iter_transactions(self, content: str, report: ParseReport) -> Iterator[ParsedTransaction]:
        report.format_name = report.format_name or self.format_name
        record: Dict[str, object] = {}
        position = 0

        for line in content.splitlines():
            line = line.strip()
            if not line:
                continue

            if line.startswith("!Type:"):
                report.account_type = line[6:].strip()
                continue
            if line.startswith("!"):
                continue

            if line == "^":
                if record:
                    position += 1
                    transaction = self._build(record, report, position)
                    if transaction is not None:
                        yield transaction
                record = {}
                continue

            code, value = line[0], line[1:].strip()
            if code == "A":
                record.setdefault("address", []).append(value)
            elif code in FIELD_CODES:
                record[FIELD_CODES[code]] = value

        # Last record without a closing '^'
        if record:
            position += 1
            transaction = self._build(record, report, position)
            if transaction is not None:
                yield transaction

    def _build(self, record: Dict[str, object], report: ParseReport, position: int) -> Optional[ParsedTransaction]:
        fragment = "\n".join(f"{key}={value}" for key, value in record.items())

        raw_date = record.get("date")
        booking_date = self.parse_qif_date(raw_date) if raw_date else None
        if booking_date is None:
            report.skip(position, f"Invalid or missing date: {raw_date!r}", fragment)
            return None

        amount = normalize_amount(record.get("amount"))
        if amount is None:
            report.skip(position, "Invalid or missing amount", fragment)
            return None

        refs: List[str] = [str(record[key]) for key in ("reference", "memo") if record.get(key)]
        payee = record.get("payee")
        payment_ref = " - ".join(refs) or payee or "Transaction"

        return ParsedTransaction(
            date=booking_date,
            amount=amount,
            currency=report.currency,
            payment_ref=payment_ref,
            partner_name=payee,
            transaction_type=record.get("category"),
            ref=record.get("reference"),
            raw=dict(record),
        )
