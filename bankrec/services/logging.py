"""
Structured Logging Service

Provides reconciliation-aware structured logging for key events:
- Statement file imported / failed / rows skipped
- Statement balance discontinuity detected
- Reconciliation applied / undone / rejected
- Batch auto-reconcile completed
- Partner matched from a rule mapping

Each log entry includes:
- account_id (bank account context)
- entity_type (import, statement, statement_line, reconcile_model)
- entity_id
- severity (INFO/WARN/ERROR)
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Any, List
from uuid import UUID
from enum import Enum

from bankrec.core.config import settings


class LogSeverity(str, Enum):
    """Log severity levels."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogEntityType(str, Enum):
    """Entity types for structured logging."""
    IMPORT = "import"
    STATEMENT = "statement"
    STATEMENT_LINE = "statement_line"
    RECONCILE_MODEL = "reconcile_model"
    SYSTEM = "system"


class StructuredLogger:
    """
    Structured logging service for reconciliation events.

    Logs are emitted in JSON format, one document per event.
    """

    def __init__(self, logger_name: str = "bankrec"):
        self.logger = logging.getLogger(logger_name)
        self._ensure_handler()

    def _ensure_handler(self):
        """Ensure logger has a proper handler configured."""
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)
            self.logger.setLevel(settings.LOG_LEVEL)

    def _serialize(self, value: Any) -> Any:
        """Serialize UUID and Decimal values to strings."""
        if isinstance(value, (UUID, Decimal)):
            return str(value)
        return value

    def _create_log_entry(
        self,
        event: str,
        severity: LogSeverity,
        entity_type: LogEntityType,
        entity_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        message: Optional[str] = None,
        **extra
    ) -> dict:
        """Create a structured log entry."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "severity": severity.value,
            "entity_type": entity_type.value,
        }

        if entity_id:
            entry["entity_id"] = str(entity_id)
        if account_id:
            entry["account_id"] = str(account_id)
        if message:
            entry["message"] = message

        for key, value in extra.items():
            entry[key] = self._serialize(value)

        return entry

    def _log(self, entry: dict, severity: LogSeverity):
        """Emit the log entry at the appropriate level."""
        log_str = json.dumps(entry, default=str)
        if severity == LogSeverity.ERROR:
            self.logger.error(log_str)
        elif severity == LogSeverity.WARN:
            self.logger.warning(log_str)
        else:
            self.logger.info(log_str)

    # Import events
    def import_completed(
        self,
        import_id: UUID,
        account_id: UUID,
        filename: str,
        format_name: str,
        imported: int,
        skipped_duplicates: int,
        statement_id: Optional[UUID] = None,
    ):
        """Log a finished statement import."""
        entry = self._create_log_entry(
            event="import.completed",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.IMPORT,
            entity_id=import_id,
            account_id=account_id,
            message=f"Statement imported: {filename}",
            filename=filename,
            format=format_name,
            imported=imported,
            skipped_duplicates=skipped_duplicates,
            statement_id=statement_id,
        )
        self._log(entry, LogSeverity.INFO)

    def import_failed(
        self,
        account_id: UUID,
        filename: str,
        error: str,
        import_id: Optional[UUID] = None,
    ):
        """Log a statement import that could not be read."""
        entry = self._create_log_entry(
            event="import.failed",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.IMPORT,
            entity_id=import_id,
            account_id=account_id,
            message=f"Statement import failed: {filename}",
            filename=filename,
            error=error,
        )
        self._log(entry, LogSeverity.ERROR)

    def import_rows_skipped(
        self,
        account_id: UUID,
        filename: str,
        skipped: int,
        positions: List[int],
        import_id: Optional[UUID] = None,
    ):
        """Log rows dropped by a parser."""
        entry = self._create_log_entry(
            event="import.rows_skipped",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.IMPORT,
            entity_id=import_id,
            account_id=account_id,
            message=f"{skipped} rows skipped in {filename}",
            filename=filename,
            skipped=skipped,
            positions=positions[:20],
        )
        self._log(entry, LogSeverity.WARN)

    # Statement events
    def statement_discontinuity(
        self,
        statement_id: UUID,
        account_id: UUID,
        balance_start: Decimal,
        previous_balance_end: Decimal,
    ):
        """Log a statement whose opening balance breaks the chain."""
        entry = self._create_log_entry(
            event="statement.discontinuity",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.STATEMENT,
            entity_id=statement_id,
            account_id=account_id,
            message="Starting balance does not match the previous statement",
            balance_start=balance_start,
            previous_balance_end=previous_balance_end,
        )
        self._log(entry, LogSeverity.WARN)

    # Reconciliation events
    def reconcile_applied(
        self,
        line_id: UUID,
        account_id: UUID,
        allocated: Decimal,
        residual: Decimal,
        partial_count: int,
        full_reconcile: Optional[str] = None,
        reconcile_model_id: Optional[UUID] = None,
    ):
        """Log allocations written against a statement line."""
        entry = self._create_log_entry(
            event="reconcile.applied",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.STATEMENT_LINE,
            entity_id=line_id,
            account_id=account_id,
            message=f"Reconciled {allocated}, residual {residual}",
            allocated=allocated,
            residual=residual,
            partial_count=partial_count,
            full_reconcile=full_reconcile,
            reconcile_model_id=reconcile_model_id,
        )
        self._log(entry, LogSeverity.INFO)

    def reconcile_undone(
        self,
        line_id: UUID,
        account_id: UUID,
        removed_partials: int,
    ):
        """Log reconciliation undo."""
        entry = self._create_log_entry(
            event="reconcile.undone",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.STATEMENT_LINE,
            entity_id=line_id,
            account_id=account_id,
            message="Reconciliation undone",
            removed_partials=removed_partials,
        )
        self._log(entry, LogSeverity.INFO)

    def reconcile_rejected(
        self,
        line_id: UUID,
        account_id: UUID,
        reason: str,
    ):
        """Log a refused reconciliation."""
        entry = self._create_log_entry(
            event="reconcile.rejected",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.STATEMENT_LINE,
            entity_id=line_id,
            account_id=account_id,
            message=f"Reconciliation rejected: {reason}",
            reason=reason,
        )
        self._log(entry, LogSeverity.WARN)

    def batch_completed(
        self,
        account_id: Optional[UUID],
        reconciled: int,
        skipped: int,
        errors: int,
    ):
        """Log batch auto-reconcile summary."""
        entry = self._create_log_entry(
            event="reconcile.batch_completed",
            severity=LogSeverity.WARN if errors else LogSeverity.INFO,
            entity_type=LogEntityType.SYSTEM,
            account_id=account_id,
            message=f"Auto-reconcile: {reconciled} reconciled, {skipped} skipped, {errors} errors",
            reconciled=reconciled,
            skipped=skipped,
            errors=errors,
        )
        self._log(entry, LogSeverity.WARN if errors else LogSeverity.INFO)

    def partner_matched(
        self,
        line_id: UUID,
        account_id: UUID,
        partner_id: UUID,
        reconcile_model_id: UUID,
    ):
        """Log a partner inferred from a rule mapping."""
        entry = self._create_log_entry(
            event="partner.matched",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.STATEMENT_LINE,
            entity_id=line_id,
            account_id=account_id,
            message="Partner matched from reconcile model",
            partner_id=partner_id,
            reconcile_model_id=reconcile_model_id,
        )
        self._log(entry, LogSeverity.INFO)


# Global logger instance
reconciliation_logger = StructuredLogger()
