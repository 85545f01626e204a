"""
Bank Statement Import Service

Handles:
- Format detection through the parser registry
- Idempotent import (SHA-256 import hash per bank account)
- Statement creation when the file carries balances
- Streaming, chunked persistence of statement lines
- Import history with counts and row diagnostics
"""
import hashlib
import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Set, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bankrec.core.config import settings
from bankrec.models.bank import BankImportHistory, BankStatement, BankStatementLine, ImportStatus
from bankrec.schemas.bank import (
    ImportPreview,
    ImportResult,
    ParseDiagnosticResponse,
    PreviewTransaction,
)
from bankrec.services.bank.parsers import (
    ParsedTransaction,
    ParseError,
    ParseReport,
    ParserRegistry,
    StatementParser,
    decode_content,
    default_registry,
)
from bankrec.services.bank_statements import MAX_SEQUENCE, BankStatementStore, StatementValidationError
from bankrec.services.logging import reconciliation_logger

logger = logging.getLogger(__name__)


class ImportService:
    """Service for importing bank statement files into one bank account."""

    def __init__(
        self,
        db: AsyncSession,
        bank_account_id: uuid.UUID,
        registry: Optional[ParserRegistry] = None,
    ):
        self.db = db
        self.bank_account_id = bank_account_id
        self.registry = registry or default_registry()
        self.store = BankStatementStore(db, bank_account_id)

    def compute_hash(self, tx: ParsedTransaction) -> str:
        """
        Compute SHA256 hash for idempotent import.

        Hash components:
        - bank_account_id
        - date (YYYY-MM-DD)
        - amount (normalized to 2 decimal places)
        - payment_ref (stripped)
        - ref (optional, stripped)
        - account_number (optional, stripped)
        """
        parts = [
            str(self.bank_account_id),
            tx.date.isoformat(),
            f"{tx.amount:.2f}",
            (tx.payment_ref or "").strip(),
            (tx.ref or "").strip(),
            (tx.account_number or "").strip(),
        ]
        hash_input = "|".join(parts)
        return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()

    async def _existing_hashes(self) -> Set[str]:
        result = await self.db.execute(
            select(BankStatementLine.import_hash)
            .where(BankStatementLine.bank_account_id == self.bank_account_id)
            .where(BankStatementLine.import_hash.is_not(None))
        )
        return set(row[0] for row in result.fetchall())

    def resolve_parser(
        self,
        content: str,
        filename: Optional[str] = None,
        format: Optional[str] = None,
        **parser_options,
    ) -> StatementParser:
        """
        Parser for a document: the named format, else detection.

        parser_options (delimiter, column_mapping, ...) build a configured
        instance of the resolved parser class.
        """
        parser = self.registry.get(format) if format else self.registry.detect(content, filename)
        if parser_options:
            parser = type(parser)(**parser_options)
        return parser

    def _parse(self, parser: StatementParser, content: str) -> tuple:
        report = ParseReport(format_name=parser.format_name)
        transactions = list(parser.iter_transactions(content, report))
        return transactions, report

    async def preview(
        self,
        content: Union[str, bytes],
        filename: Optional[str] = None,
        format: Optional[str] = None,
        **parser_options,
    ) -> ImportPreview:
        """Parse a file and flag duplicates without persisting anything."""
        content = decode_content(content)
        parser = self.resolve_parser(content, filename, format, **parser_options)
        transactions, report = self._parse(parser, content)

        existing_hashes = await self._existing_hashes()
        previews = []
        duplicate_count = 0
        for tx in transactions:
            is_duplicate = self.compute_hash(tx) in existing_hashes
            duplicate_count += is_duplicate
            previews.append(
                PreviewTransaction(
                    date=tx.date,
                    amount=tx.amount,
                    currency=tx.currency,
                    payment_ref=tx.payment_ref,
                    partner_name=tx.partner_name,
                    account_number=tx.account_number,
                    transaction_type=tx.transaction_type,
                    ref=tx.ref,
                    is_duplicate=is_duplicate,
                )
            )

        dates = [tx.date for tx in transactions]
        return ImportPreview(
            format=parser.format_name,
            account_number=report.account_number,
            currency=report.currency,
            balance_start=report.balance_start,
            balance_end=report.balance_end,
            transaction_count=len(transactions),
            duplicate_count=duplicate_count,
            total_amount=sum((tx.amount for tx in transactions), Decimal("0.00")),
            date_from=min(dates) if dates else None,
            date_to=max(dates) if dates else None,
            transactions=previews,
            diagnostics=[ParseDiagnosticResponse.model_validate(d) for d in report.diagnostics],
        )

    async def import_file(
        self,
        content: Union[str, bytes],
        filename: str,
        format: Optional[str] = None,
        reject_discontinuous: bool = False,
        **parser_options,
    ) -> ImportResult:
        """
        Import bank transactions from any supported file format.

        The format is taken from `format` or detected (extension, then
        content, then CSV). Rows the parser cannot read are skipped and
        reported; an unreadable document raises ParseError and the import
        is recorded as failed.
        """
        await self.store.get_account()

        history = BankImportHistory(
            id=uuid.uuid4(),
            bank_account_id=self.bank_account_id,
            filename=filename,
            format=format or "unknown",
            status=ImportStatus.PROCESSING,
        )
        self.db.add(history)
        await self.db.flush()

        try:
            if len(content) > settings.MAX_UPLOAD_SIZE:
                raise ParseError(f"File too large (max {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB)")
            text = decode_content(content)
            parser = self.resolve_parser(text, filename, format, **parser_options)
            history.format = parser.format_name
        except ParseError as e:
            history.mark_failed(str(e))
            await self.db.commit()
            reconciliation_logger.import_failed(self.bank_account_id, filename, str(e), import_id=history.id)
            raise

        report = ParseReport(format_name=parser.format_name)
        return await self._persist(
            parser.iter_transactions(text, report),
            report,
            history,
            reject_discontinuous=reject_discontinuous,
        )

    async def import_transactions(
        self,
        transactions: Iterable[ParsedTransaction],
        report: Optional[ParseReport] = None,
        filename: str = "open-banking",
        format: str = "api",
        reject_discontinuous: bool = False,
    ) -> ImportResult:
        """Import pre-normalized transactions (Open Banking adapters)."""
        await self.store.get_account()

        report = report or ParseReport(format_name=format)
        history = BankImportHistory(
            id=uuid.uuid4(),
            bank_account_id=self.bank_account_id,
            filename=filename,
            format=format,
            status=ImportStatus.PROCESSING,
        )
        self.db.add(history)
        await self.db.flush()

        return await self._persist(transactions, report, history, reject_discontinuous=reject_discontinuous)

    async def _create_statement(
        self,
        report: ParseReport,
        file_total: Decimal,
        last_date: Optional[date],
    ) -> BankStatement:
        balance_start = report.balance_start
        balance_end = report.balance_end
        if balance_start is None:
            balance_start = balance_end - file_total
        if balance_end is None:
            balance_end = balance_start + file_total

        statement_date = report.statement_date or last_date
        if statement_date is None:
            raise ParseError("Statement without a date")
        name = report.statement_reference or f"{(report.format_name or 'import').upper()} {statement_date.isoformat()}"
        return await self.store.create_statement(
            name=name,
            statement_date=statement_date,
            balance_start=balance_start,
            balance_end_real=balance_end,
            reference=report.statement_reference,
        )

    async def _assign_statement(self, line_ids: List[uuid.UUID], statement: BankStatement) -> None:
        """Attach already flushed lines to the statement, one chunk at a time."""
        size = settings.IMPORT_CHUNK_SIZE
        for start in range(0, len(line_ids), size):
            await self.db.execute(
                update(BankStatementLine)
                .where(BankStatementLine.id.in_(line_ids[start:start + size]))
                .values(statement_id=statement.id)
                .execution_options(synchronize_session=False)
            )

    def _details(self, raw) -> Optional[dict]:
        if raw is None:
            return None
        if isinstance(raw, dict):
            return raw
        return {"raw": raw}

    async def _persist(
        self,
        transactions: Iterable[ParsedTransaction],
        report: ParseReport,
        history: BankImportHistory,
        reject_discontinuous: bool = False,
    ) -> ImportResult:
        """
        Consume transactions as they are produced.

        Lines are flushed and expunged in IMPORT_CHUNK_SIZE chunks. Balances
        and the statement date are read from the report once the source is
        exhausted, so parsers may fill them in late.
        """
        account = await self.store.get_account()
        existing_hashes = await self._existing_hashes()

        total_in_file = 0
        imported = 0
        skipped_duplicates = 0
        total_amount = Decimal("0.00")
        file_total = Decimal("0.00")
        last_date: Optional[date] = None
        first_key: Optional[str] = None
        line_ids: List[uuid.UUID] = []
        chunk: List[BankStatementLine] = []
        statement = None

        try:
            for tx in transactions:
                total_in_file += 1
                file_total += tx.amount
                last_date = tx.date if last_date is None else max(last_date, tx.date)

                tx_hash = self.compute_hash(tx)
                if tx_hash in existing_hashes:
                    skipped_duplicates += 1
                    continue
                existing_hashes.add(tx_hash)

                # Descending sequences keep file order within a date
                line = self.store.build_line(
                    tx.date,
                    tx.amount,
                    sequence=MAX_SEQUENCE - imported,
                    currency_code=tx.currency or report.currency or account.currency_code,
                    payment_ref=tx.payment_ref,
                    partner_name=tx.partner_name,
                    account_number=tx.account_number,
                    transaction_type=tx.transaction_type,
                    ref=tx.ref,
                    import_hash=tx_hash,
                    transaction_details=self._details(tx.raw),
                )
                self.db.add(line)
                chunk.append(line)
                line_ids.append(line.id)
                imported += 1
                total_amount += tx.amount
                if first_key is None or line.internal_index < first_key:
                    first_key = line.internal_index

                if len(chunk) >= settings.IMPORT_CHUNK_SIZE:
                    await self._flush_chunk(chunk)
                    chunk = []
            if chunk:
                await self._flush_chunk(chunk)
            history.transactions_count = total_in_file

            if report.has_balances and imported:
                statement = await self._create_statement(report, file_total, last_date)
                history.statement_id = statement.id
                await self._assign_statement(line_ids, statement)

            if first_key is not None:
                await self.store.recompute_running_balances(from_key=first_key)

            if statement is not None:
                await self.store.recompute_statement(statement, reject_discontinuous=reject_discontinuous)
        except (ParseError, StatementValidationError) as e:
            history.transactions_count = total_in_file
            await self._fail_import(history, str(e))
            raise

        history.mark_completed(imported, skipped_duplicates, total_amount)
        errors = [
            f"Row {d.position}: {d.message}"
            for d in report.diagnostics[: settings.MAX_IMPORT_ERRORS_REPORTED]
        ]
        if report.diagnostics:
            history.details = {"diagnostics": [
                {"position": d.position, "message": d.message} for d in report.diagnostics
            ]}
        await self.db.commit()

        if report.diagnostics:
            reconciliation_logger.import_rows_skipped(
                account_id=self.bank_account_id,
                filename=history.filename,
                skipped=len(report.diagnostics),
                positions=[d.position for d in report.diagnostics],
                import_id=history.id,
            )
        reconciliation_logger.import_completed(
            import_id=history.id,
            account_id=self.bank_account_id,
            filename=history.filename,
            format_name=history.format,
            imported=imported,
            skipped_duplicates=skipped_duplicates,
            statement_id=statement.id if statement else None,
        )

        return ImportResult(
            import_id=history.id,
            bank_account_id=self.bank_account_id,
            statement_id=statement.id if statement else None,
            format=history.format,
            imported_count=imported,
            skipped_duplicates_count=skipped_duplicates,
            total_in_file=total_in_file,
            total_amount=total_amount,
            errors=errors,
            diagnostics=[ParseDiagnosticResponse.model_validate(d) for d in report.diagnostics],
            message=self._message(imported, skipped_duplicates, len(report.diagnostics), history.format),
        )

    async def _flush_chunk(self, chunk: List[BankStatementLine]) -> None:
        await self.db.flush()
        for line in chunk:
            self.db.expunge(line)
        logger.debug(f"Flushed {len(chunk)} statement lines for account {self.bank_account_id}")

    async def _fail_import(self, history: BankImportHistory, error: str) -> None:
        """Roll back the partial import and keep a failed history record."""
        failed = BankImportHistory(
            id=history.id,
            bank_account_id=self.bank_account_id,
            filename=history.filename,
            format=history.format,
            status=ImportStatus.FAILED,
            transactions_count=history.transactions_count,
        )
        await self.db.rollback()
        failed.mark_failed(error)
        self.db.add(failed)
        await self.db.commit()
        reconciliation_logger.import_failed(self.bank_account_id, failed.filename, error, import_id=failed.id)

    def _message(self, imported: int, skipped: int, errors: int, format_name: str) -> str:
        if imported > 0 and errors == 0:
            return f"{imported} transactions imported ({format_name})."
        if imported > 0:
            return f"{imported} transactions imported, {errors} rows skipped ({format_name})."
        if skipped > 0:
            return f"No new transactions. {skipped} duplicates skipped ({format_name})."
        return f"No valid transactions found ({format_name})."
