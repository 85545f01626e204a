"""
CSV Parser - Generic bank CSV exports

Detects the delimiter from the first line and maps header names through
multilingual keyword lists (English, German, Italian, French, Dutch).
An explicit column mapping, delimiter and header flag can be configured
for exports the detection does not understand.
"""
import csv
import io
import re
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Union

from .base_parser import (
    BaseStatementParser,
    ParsedTransaction,
    ParseReport,
    normalize_amount,
    normalize_date,
)

DELIMITERS = [",", ";", "\t", "|"]

# First matching keyword wins, in list order
COLUMN_KEYWORDS = {
    "date": ["date", "datum", "transaction date", "booking date", "value date", "data"],
    "amount": ["amount", "betrag", "sum", "value", "importo", "montant", "bedrag"],
    "debit": ["debit", "withdrawal", "ausgabe", "uscita"],
    "credit": ["credit", "deposit", "einnahme", "entrata"],
    "payment_ref": ["description", "memo", "reference", "payment reference", "beschreibung", "descrizione", "libelle", "omschrijving"],
    "partner_name": ["payee", "partner", "name", "beneficiary", "counterparty", "recipient"],
    "account_number": ["account", "iban", "account number", "counter account", "tegenrekening"],
    "balance": ["balance", "saldo", "running balance"],
}


class CsvParser(BaseStatementParser):
    """Parser for delimited text exports."""

    format_name = "csv"
    supported_extensions = ("csv", "txt")

    def __init__(
        self,
        delimiter: Optional[str] = None,
        has_header: bool = True,
        column_mapping: Optional[Dict[str, Union[int, str]]] = None,
        decimal_separator: Optional[str] = None,
        date_format: Optional[str] = None,
    ):
        self.delimiter = delimiter
        self.has_header = has_header
        self.column_mapping = column_mapping or {}
        self.decimal_separator = decimal_separator
        self.date_format = date_format

    def validate(self, content: str) -> bool:
        return bool(content and content.strip())

    def detect_delimiter(self, content: str) -> str:
        """Pick the delimiter occurring most often on the first line."""
        first_line = content.lstrip("\r\n").split("\n", 1)[0]
        best, best_count = ",", 0
        for delimiter in DELIMITERS:
            count = first_line.count(delimiter)
            if count > best_count:
                best, best_count = delimiter, count
        return best

    def detect_columns(self, headers: List[str]) -> Dict[str, int]:
        """Map canonical fields to column indexes from header names."""
        normalized = [h.strip().lower() for h in headers]

        if self.column_mapping:
            mapping = {}
            for key, column in self.column_mapping.items():
                if isinstance(column, int):
                    mapping[key] = column
                elif column.strip().lower() in normalized:
                    mapping[key] = normalized.index(column.strip().lower())
            return mapping

        mapping = {}
        for key, keywords in COLUMN_KEYWORDS.items():
            for keyword in keywords:
                if keyword in normalized:
                    mapping[key] = normalized.index(keyword)
                    break
        return mapping

    def iter_transactions(self, content: str, report: ParseReport) -> Iterator[ParsedTransaction]:
        report.format_name = report.format_name or self.format_name
        delimiter = self.delimiter or self.detect_delimiter(content)
        reader = csv.reader(io.StringIO(content.lstrip("\ufeff")), delimiter=delimiter)

        headers: List[str] = []
        mapping: Dict[str, int] = {}
        if not self.has_header:
            mapping = self.detect_columns([]) if self.column_mapping else {}

        for row in reader:
            if not row or not any(cell.strip() for cell in row):
                continue

            if self.has_header and not headers:
                headers = [cell.strip() for cell in row]
                mapping = self.detect_columns(headers)
                continue

            position = reader.line_num
            transaction = self._parse_row(row, headers, mapping, report, position)
            if transaction is not None:
                yield transaction

    def _cell(self, row: List[str], index: Optional[int]) -> Optional[str]:
        if index is None or index >= len(row):
            return None
        value = row[index].strip()
        return value or None

    def _parse_row(
        self,
        row: List[str],
        headers: List[str],
        mapping: Dict[str, int],
        report: ParseReport,
        position: int,
    ) -> Optional[ParsedTransaction]:
        fragment = self._fragment(row)

        date_value = self._cell(row, mapping.get("date", 0))
        formats = [self.date_format] if self.date_format else None
        booking_date = normalize_date(date_value, formats) if date_value else None
        if booking_date is None and self.date_format and date_value:
            booking_date = normalize_date(date_value)
        if booking_date is None:
            report.skip(position, f"Invalid or missing date: {date_value!r}", fragment)
            return None

        amount = self._row_amount(row, mapping)
        if amount is None or amount == 0:
            report.skip(position, "Invalid or missing amount", fragment)
            return None

        if headers:
            keys = headers + [str(i) for i in range(len(headers), len(row))]
            raw = {key: (row[i] if i < len(row) else "") for i, key in enumerate(keys)}
        else:
            raw = {str(i): value for i, value in enumerate(row)}

        return ParsedTransaction(
            date=booking_date,
            amount=amount,
            currency=report.currency,
            payment_ref=self._cell(row, mapping.get("payment_ref")),
            partner_name=self._cell(row, mapping.get("partner_name")),
            account_number=self._cell(row, mapping.get("account_number")),
            raw=raw,
        )

    def _row_amount(self, row: List[str], mapping: Dict[str, int]) -> Optional[Decimal]:
        if "amount" in mapping:
            return normalize_amount(self._cell(row, mapping["amount"]), self.decimal_separator)

        if "debit" in mapping and "credit" in mapping:
            debit = normalize_amount(self._cell(row, mapping["debit"]) or "0", self.decimal_separator)
            credit = normalize_amount(self._cell(row, mapping["credit"]) or "0", self.decimal_separator)
            if debit is None and credit is None:
                return None
            # Some banks export debits already negative
            return (credit or Decimal("0")) - abs(debit or Decimal("0"))

        # No amount column: first numeric cell, skipping the date column
        date_index = mapping.get("date", 0)
        for index, value in enumerate(row):
            if index == date_index:
                continue
            cleaned = re.sub(r"[^\d.,\-+]", "", value)
            if cleaned and re.fullmatch(r"[-+]?\d+([.,]\d+)*", cleaned):
                return normalize_amount(value, self.decimal_separator)
        return None

    def _fragment(self, row: List[str]) -> str:
        return ",".join(row)
