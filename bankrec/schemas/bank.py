"""
Bank Reconciliation Schemas

Pydantic schemas for:
- Statement file import and preview
- Match suggestions
- Reconciliation requests and results
- Batch auto-reconcile summaries
"""
from datetime import date as date_type
from typing import Optional, List
from uuid import UUID
from decimal import Decimal
from pydantic import BaseModel, Field
from enum import Enum


# ============ Enums (mirror SQLAlchemy enums) ============

class ReconcileTypeEnum(str, Enum):
    """Kind of entity a bank line is reconciled against."""
    INVOICE = "invoice"
    PAYMENT = "payment"
    MANUAL = "manual"


class SuggestionSourceEnum(str, Enum):
    """Where a suggestion comes from."""
    INVOICE = "invoice"
    PAYMENT = "payment"
    MODEL = "model"


class MatchQualityEnum(str, Enum):
    """Score band of a suggestion."""
    PERFECT = "perfect"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def match_quality(score: float) -> MatchQualityEnum:
    if score >= 150:
        return MatchQualityEnum.PERFECT
    if score >= 100:
        return MatchQualityEnum.HIGH
    if score >= 50:
        return MatchQualityEnum.MEDIUM
    return MatchQualityEnum.LOW


# ============ Import Schemas ============

class ParseDiagnosticResponse(BaseModel):
    """A row or entry skipped while parsing."""
    position: int
    message: str
    fragment: Optional[str] = None

    class Config:
        from_attributes = True


class ImportResult(BaseModel):
    """Response after importing a bank statement file."""
    import_id: Optional[UUID] = Field(None, description="BankImportHistory record")
    bank_account_id: UUID
    statement_id: Optional[UUID] = Field(None, description="Statement created from file balances")
    format: str = Field(..., description="Detected format (csv, ofx, qif, camt)")
    imported_count: int = Field(..., description="Number of lines created")
    skipped_duplicates_count: int = Field(..., description="Lines already present (same import hash)")
    total_in_file: int = Field(..., description="Transactions read from the file")
    total_amount: Decimal = Field(default=Decimal("0.00"), description="Sum of imported amounts")
    errors: List[str] = Field(default_factory=list, description="First row diagnostics")
    diagnostics: List[ParseDiagnosticResponse] = Field(default_factory=list)
    message: str = Field(..., description="Summary message")


class PreviewTransaction(BaseModel):
    """A parsed transaction shown before importing."""
    date: date_type
    amount: Decimal
    currency: Optional[str] = None
    payment_ref: Optional[str] = None
    partner_name: Optional[str] = None
    account_number: Optional[str] = None
    transaction_type: Optional[str] = None
    ref: Optional[str] = None
    is_duplicate: bool = False

    class Config:
        from_attributes = True


class ImportPreview(BaseModel):
    """Parse result without persisting anything."""
    format: str
    account_number: Optional[str] = None
    currency: Optional[str] = None
    balance_start: Optional[Decimal] = None
    balance_end: Optional[Decimal] = None
    transaction_count: int
    duplicate_count: int = 0
    total_amount: Decimal
    date_from: Optional[date_type] = None
    date_to: Optional[date_type] = None
    transactions: List[PreviewTransaction] = Field(default_factory=list)
    diagnostics: List[ParseDiagnosticResponse] = Field(default_factory=list)


# ============ Suggestion Schemas ============

class SuggestedWriteOff(BaseModel):
    """Write-off line computed by a reconcile model."""
    account_code: Optional[str] = None
    label: Optional[str] = None
    amount: Decimal


class MatchSuggestion(BaseModel):
    """A suggested match for a bank statement line."""
    source: SuggestionSourceEnum
    reconcile_type: ReconcileTypeEnum
    target_id: Optional[UUID] = Field(None, description="Invoice/payment id, None for model suggestions")
    reference: Optional[str] = None
    partner_id: Optional[UUID] = None
    partner_name: Optional[str] = None
    amount: Decimal = Field(..., description="Open residual of the target, or total write-off")
    document_date: Optional[date_type] = None
    score: float = Field(..., ge=0)
    match_type: MatchQualityEnum
    reconcile_model_id: Optional[UUID] = None
    rule_type: Optional[str] = None
    auto_reconcile: bool = False
    writeoffs: List[SuggestedWriteOff] = Field(default_factory=list)


# ============ Reconciliation Schemas ============

class ReconcileMatch(BaseModel):
    """One allocation requested against a statement line."""
    reconcile_type: ReconcileTypeEnum
    target_id: Optional[UUID] = Field(None, description="Required for invoice and payment")
    amount: Decimal = Field(..., gt=0, description="Allocated amount (unsigned)")
    date: Optional[date_type] = Field(None, description="Date of the settled entity")
    label: Optional[str] = None
    reconcile_model_id: Optional[UUID] = None


class ReconcileResult(BaseModel):
    """Outcome of reconcile()."""
    line_id: UUID
    partial_ids: List[UUID]
    full_reconcile_id: Optional[UUID] = None
    full_reconcile_name: Optional[str] = None
    amount_residual: Decimal
    is_reconciled: bool
    version: int


class BatchReconcileError(BaseModel):
    line_id: UUID
    error: str


class BatchReconcileResult(BaseModel):
    """Outcome of batch_auto_reconcile()."""
    reconciled_count: int = 0
    skipped_count: int = 0
    errors: List[BatchReconcileError] = Field(default_factory=list)
