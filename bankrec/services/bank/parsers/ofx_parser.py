"""
OFX / QFX Parser - Open Financial Exchange

Handles both SGML (OFX 1.x, unterminated tags) and XML (OFX 2.x)
variants. Values are extracted tag by tag so one broken <STMTTRN>
block never prevents the others from being read.
"""
import re
from datetime import datetime, date
from decimal import Decimal
from typing import Iterator, Optional

from .base_parser import (
    BaseStatementParser,
    ParsedTransaction,
    ParseError,
    ParseReport,
    normalize_amount,
    normalize_date,
)

TRANSACTION_BLOCK = re.compile(
    r"<STMTTRN>(.*?)(?=</STMTTRN>|<STMTTRN>|</BANKTRANLIST>|$)",
    re.IGNORECASE | re.DOTALL,
)
LEDGER_BALANCE = re.compile(r"<LEDGERBAL>.*?<BALAMT>([^<\r\n]+)", re.IGNORECASE | re.DOTALL)
# A value tag followed by anything but its own closing tag
UNCLOSED_VALUE = re.compile(r"<(\w+)>([^<\s][^<]*?)(\s*)(?=<(?!/\1>))")
OPEN_VALUE_LINE = re.compile(r"^<(\w+)>(.+)$")
CLOSED_LINE = re.compile(r"</\w+>$")


def _tag(content: str, name: str) -> Optional[str]:
    """Value of the first closed <NAME> tag."""
    match = re.search(rf"<{name}>([^<]*)</{name}>", content, re.IGNORECASE)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


class OfxParser(BaseStatementParser):
    """Parser for OFX/QFX statement downloads."""

    format_name = "ofx"
    supported_extensions = ("ofx", "qfx")

    def validate(self, content: str) -> bool:
        return "<OFX>" in content.upper() or "OFXHEADER" in content.upper()

    def strip_header(self, content: str) -> str:
        """Drop the SGML/XML header preceding <OFX>."""
        start = content.upper().find("<OFX>")
        if start == -1:
            raise ParseError("Not an OFX document: <OFX> element not found")
        return content[start:]

    def close_tags(self, body: str) -> str:
        """Close unterminated SGML value tags: <TRNAMT>-1.00 becomes <TRNAMT>-1.00</TRNAMT>."""
        body = UNCLOSED_VALUE.sub(lambda m: f"<{m.group(1)}>{m.group(2)}</{m.group(1)}>{m.group(3)}", body)
        lines = []
        for line in body.splitlines():
            line = line.strip()
            match = OPEN_VALUE_LINE.match(line)
            if match and not CLOSED_LINE.search(line):
                line = f"<{match.group(1)}>{match.group(2).strip()}</{match.group(1)}>"
            lines.append(line)
        return "\n".join(lines)

    def parse_ofx_date(self, value: str) -> Optional[date]:
        """Parse YYYYMMDD[HHMMSS[.XXX]][TZ] stamps."""
        value = re.sub(r"\[.*\]", "", value).strip()
        digits = re.match(r"\d+", value)
        digits = digits.group(0) if digits else ""
        try:
            if len(digits) >= 14:
                return datetime.strptime(digits[:14], "%Y%m%d%H%M%S").date()
            if len(digits) >= 8:
                return datetime.strptime(digits[:8], "%Y%m%d").date()
        except ValueError:
            return None
        return normalize_date(value)

    def iter_transactions(self, content: str, report: ParseReport) -> Iterator[ParsedTransaction]:
        report.format_name = report.format_name or self.format_name
        body = self.close_tags(self.strip_header(content))

        report.account_number = _tag(body, "ACCTID")
        report.account_type = _tag(body, "ACCTTYPE")
        report.currency = _tag(body, "CURDEF")
        ledger = LEDGER_BALANCE.search(body)
        if ledger:
            report.balance_end = normalize_amount(ledger.group(1), ".")
        stamp = _tag(body, "DTEND") or _tag(body, "DTASOF")
        if stamp:
            report.statement_date = self.parse_ofx_date(stamp)

        total = Decimal("0")
        for position, match in enumerate(TRANSACTION_BLOCK.finditer(body), start=1):
            transaction = self._parse_block(match.group(1), report, position)
            if transaction is not None:
                total += transaction.amount
                yield transaction

        # The ledger balance is the closing balance; derive the opening one
        if report.balance_end is not None:
            report.balance_start = report.balance_end - total

    def _parse_block(self, block: str, report: ParseReport, position: int) -> Optional[ParsedTransaction]:
        stamp = _tag(block, "DTPOSTED")
        booking_date = self.parse_ofx_date(stamp) if stamp else None
        if booking_date is None:
            report.skip(position, f"Invalid or missing DTPOSTED: {stamp!r}", block)
            return None

        amount = normalize_amount(_tag(block, "TRNAMT"), ".")
        if amount is None:
            report.skip(position, "Invalid or missing TRNAMT", block)
            return None

        transaction_type = _tag(block, "TRNTYPE")
        partner_name = _tag(block, "NAME") or _tag(block, "PAYEE")
        counter_account = _tag(block, "ACCTID") if "<BANKACCTTO>" in block.upper() else None
        payment_ref = _tag(block, "MEMO") or partner_name or transaction_type or "Transaction"

        return ParsedTransaction(
            date=booking_date,
            amount=amount,
            currency=_tag(block, "CURSYM") or report.currency,
            payment_ref=payment_ref,
            partner_name=partner_name,
            account_number=counter_account,
            transaction_type=transaction_type,
            ref=_tag(block, "FITID") or _tag(block, "CHECKNUM"),
            raw=block.strip(),
        )
