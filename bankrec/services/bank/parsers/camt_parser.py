"""
CAMT.053 Parser - ISO 20022 Bank Statement Format

Parses CAMT.053 XML files (Bank-to-Customer Account Statement).
This is the standard format used by European banks for PSD2 compliance.

Namespace: urn:iso:std:iso:20022:tech:xsd:camt.053.001.0X (X = version)
Lookups use the {*} wildcard so any version, or no namespace at all, works.
"""
import xml.etree.ElementTree as ET
from datetime import date
from decimal import Decimal
from typing import Iterator, List, Optional

from .base_parser import (
    BaseStatementParser,
    ParsedTransaction,
    ParseError,
    ParseReport,
    normalize_amount,
    normalize_date,
)

OPENING_BALANCE_CODES = ("OPBD", "PRCD")
CLOSING_BALANCE_CODES = ("CLBD", "CLAV")


def _path(path: str) -> str:
    return "/".join(f"{{*}}{part}" for part in path.split("/"))


def _child(element: Optional[ET.Element], path: str) -> Optional[ET.Element]:
    """Direct child lookup along path, namespace agnostic."""
    if element is None:
        return None
    return element.find(_path(path))


def _text(element: Optional[ET.Element], path: Optional[str] = None) -> Optional[str]:
    if path is not None:
        element = _child(element, path)
    if element is None or element.text is None:
        return None
    value = element.text.strip()
    return value or None


def _local_name(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def element_to_dict(element: ET.Element):
    """Namespace-free, JSON serializable view of an XML fragment."""
    children = list(element)
    if not children:
        text = (element.text or "").strip()
        if element.attrib:
            return {"_text": text, **element.attrib}
        return text
    result: dict = dict(element.attrib)
    for child in children:
        key = _local_name(child.tag)
        value = element_to_dict(child)
        if key in result:
            if not isinstance(result[key], list):
                result[key] = [result[key]]
            result[key].append(value)
        else:
            result[key] = value
    return result


class CamtParser(BaseStatementParser):
    """
    Parser for CAMT.053 XML bank statements.

    Supports multiple versions (camt.053.001.02, .04, .06, .08, etc.)
    """

    format_name = "camt"
    supported_extensions = ("xml", "camt", "camt053")

    def validate(self, content: str) -> bool:
        return (
            "camt.053" in content
            or "BkToCstmrStmt" in content
            or "urn:iso:std:iso:20022" in content
        )

    def iter_transactions(self, content: str, report: ParseReport) -> Iterator[ParsedTransaction]:
        report.format_name = report.format_name or self.format_name
        try:
            root = ET.fromstring(content.strip())
        except ET.ParseError as e:
            raise ParseError(f"Invalid XML format: {e}")

        statements = root.findall(".//{*}Stmt")
        if not statements and _local_name(root.tag) == "Stmt":
            statements = [root]
        if not statements:
            raise ParseError("No CAMT.053 <Stmt> element found")

        position = 0
        for stmt in statements:
            self._read_statement_header(stmt, report)

            for entry in stmt.findall("{*}Ntry"):
                position += 1
                try:
                    transactions = self._parse_entry(entry, report, position)
                except (ValueError, ArithmeticError) as e:
                    report.skip(position, f"Failed to parse CAMT entry: {e}", ET.tostring(entry, encoding="unicode"))
                    continue
                yield from transactions

    def _read_statement_header(self, stmt: ET.Element, report: ParseReport) -> None:
        acct_id = _child(stmt, "Acct/Id")
        account = _text(acct_id, "IBAN") or _text(acct_id, "Othr/Id")
        if account and not report.account_number:
            report.account_number = account
        currency = _text(stmt, "Acct/Ccy")
        if currency and not report.currency:
            report.currency = currency
        if not report.statement_reference:
            report.statement_reference = _text(stmt, "Id")

        for bal in stmt.findall("{*}Bal"):
            code = _text(bal, "Tp/CdOrPrtry/Cd")
            amount = normalize_amount(_text(bal, "Amt"), ".")
            if amount is None:
                continue
            if _text(bal, "CdtDbtInd") == "DBIT":
                amount = -amount

            if code in OPENING_BALANCE_CODES and report.balance_start is None:
                report.balance_start = amount
            elif code in CLOSING_BALANCE_CODES:
                # Last closing balance of the file wins
                report.balance_end = amount
                report.statement_date = self._parse_date(_text(bal, "Dt/Dt") or _text(bal, "Dt/DtTm")) or report.statement_date

        if report.statement_date is None:
            report.statement_date = self._parse_date(_text(stmt, "CreDtTm"))

    def _parse_date(self, value: Optional[str]) -> Optional[date]:
        if not value:
            return None
        return normalize_date(value)

    def _parse_entry(self, entry: ET.Element, report: ParseReport, position: int) -> List[ParsedTransaction]:
        amt = _child(entry, "Amt")
        amount = normalize_amount(_text(amt), ".")
        if amount is None:
            raise ValueError("missing entry amount")
        if _text(entry, "CdtDbtInd") == "DBIT":
            amount = -amount
        currency = (amt.get("Ccy") if amt is not None else None) or report.currency

        booking_date = self._parse_date(_text(entry, "BookgDt/Dt") or _text(entry, "BookgDt/DtTm"))
        if booking_date is None:
            raise ValueError("missing booking date")

        details = []
        for ntry_dtls in entry.findall("{*}NtryDtls"):
            details.extend(ntry_dtls.findall("{*}TxDtls"))

        if not details:
            return [
                ParsedTransaction(
                    date=booking_date,
                    amount=amount,
                    currency=currency,
                    payment_ref=_text(entry, "AddtlNtryInf") or "Bank Entry",
                    ref=_text(entry, "NtryRef") or _text(entry, "AcctSvcrRef"),
                    raw=element_to_dict(entry),
                )
            ]

        return [self._parse_details(tx, amount, currency, booking_date) for tx in details]

    def _parse_details(
        self,
        tx: ET.Element,
        entry_amount: Decimal,
        currency: Optional[str],
        booking_date: date,
    ) -> ParsedTransaction:
        """One transaction per TxDtls; its own amount overrides the entry's."""
        amount = normalize_amount(_text(tx, "Amt"), ".")
        if amount is None:
            amount = entry_amount
        tx_amt = _child(tx, "Amt")
        if tx_amt is not None and tx_amt.get("Ccy"):
            currency = tx_amt.get("Ccy")

        indicator = _text(tx, "CdtDbtInd")
        if indicator == "DBIT" and amount > 0:
            amount = -amount
        elif indicator == "CRDT" and amount < 0:
            amount = -amount
        elif indicator is None and entry_amount < 0 < amount:
            amount = -amount

        end_to_end_id = _text(tx, "Refs/EndToEndId")
        if end_to_end_id == "NOTPROVIDED":
            end_to_end_id = None
        msg_id = _text(tx, "Refs/MsgId")

        # Creditor for debits, debtor for credits
        parties = _child(tx, "RltdPties")
        if amount < 0:
            party, party_account = _child(parties, "Cdtr"), _child(parties, "CdtrAcct/Id")
        else:
            party, party_account = _child(parties, "Dbtr"), _child(parties, "DbtrAcct/Id")
        partner_name = _text(party, "Nm") or _text(party, "Pty/Nm")
        account_number = _text(party_account, "IBAN") or _text(party_account, "Othr/Id")

        unstructured = [
            elem.text.strip()
            for elem in tx.findall("{*}RmtInf/{*}Ustrd")
            if elem.text and elem.text.strip()
        ]
        payment_ref = " ".join(unstructured) or _text(tx, "AddtlTxInf")

        return ParsedTransaction(
            date=booking_date,
            amount=amount,
            currency=currency,
            payment_ref=payment_ref or end_to_end_id or "Transaction",
            partner_name=partner_name,
            account_number=account_number,
            transaction_type=_text(tx, "BkTxCd/Domn/Cd"),
            ref=end_to_end_id or msg_id or _text(tx, "Refs/TxId"),
            raw=element_to_dict(tx),
        )
