"""
Bank Reconciliation Models

Models for bank statement import and transaction reconciliation:
- BankAccount: Bank account holding statements and lines
- BankStatement: Batch boundary with start/end balances
- BankStatementLine: Imported or manual bank transaction
- ReconcileModel: Declarative matching rule with write-off lines and partner mappings
- PartialReconcile / FullReconcile: Settlement allocations
- BankImportHistory: One record per imported file
"""
import uuid
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from sqlalchemy import String, DateTime, Date, func, ForeignKey, Text, Numeric, Enum as SQLEnum, Boolean, Integer
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import Mapped, mapped_column, relationship
import enum

from bankrec.core.database import Base


class RuleType(str, enum.Enum):
    """How the orchestrator uses a matching rule."""
    WRITEOFF_BUTTON = "writeoff_button"          # Manual button in the reconciliation widget
    WRITEOFF_SUGGESTION = "writeoff_suggestion"  # Suggest a counterpart write-off
    INVOICE_MATCHING = "invoice_matching"        # Match open invoices/payments


class MatchingOrder(str, enum.Enum):
    OLD_FIRST = "old_first"
    NEW_FIRST = "new_first"


class MatchNature(str, enum.Enum):
    AMOUNT_RECEIVED = "amount_received"
    AMOUNT_PAID = "amount_paid"
    BOTH = "both"


class AmountCondition(str, enum.Enum):
    LOWER = "lower"
    GREATER = "greater"
    BETWEEN = "between"


class TextCondition(str, enum.Enum):
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    MATCH_REGEX = "match_regex"


class ToleranceType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class AmountType(str, enum.Enum):
    """How a rule line computes its write-off amount."""
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    PERCENTAGE_ST_LINE = "percentage_st_line"
    REGEX = "regex"


class ReconcileType(str, enum.Enum):
    """Kind of entity a partial reconcile settles against."""
    INVOICE = "invoice"
    PAYMENT = "payment"
    MANUAL = "manual"


class ImportStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BankAccount(Base):
    """
    Bank account owning statements and statement lines.

    current_balance mirrors the running balance of the last line
    by ordering key.
    """
    __tablename__ = "bank_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), nullable=True)
    iban: Mapped[str] = mapped_column(String(34), nullable=True)
    bank_name: Mapped[str] = mapped_column(String(120), nullable=True)
    currency_code: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    current_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0.00"), nullable=False)
    last_statement_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0.00"), nullable=False)
    last_statement_date: Mapped[date] = mapped_column(Date, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    statements = relationship("BankStatement", back_populates="bank_account", cascade="all, delete-orphan")
    lines = relationship("BankStatementLine", back_populates="bank_account", cascade="all, delete-orphan")
    import_history = relationship("BankImportHistory", back_populates="bank_account", cascade="all, delete-orphan")

    @property
    def display_name(self) -> str:
        name = self.name
        if self.account_number:
            name += f" (****{self.account_number[-4:]})"
        return name


class BankStatement(Base):
    """
    Bank statement: a batch of lines between two bank-reported balances.

    balance_end is computed from the lines, balance_end_real is what the
    bank reported. Validity is continuity with the previous statement.
    """
    __tablename__ = "bank_statements"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    reference: Mapped[str] = mapped_column(String(120), nullable=True)  # External reference from import
    date: Mapped[date] = mapped_column(Date, nullable=False)
    balance_start: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0.00"), nullable=False)
    balance_end: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0.00"), nullable=False)
    balance_end_real: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0.00"), nullable=False)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    problem_description: Mapped[str] = mapped_column(Text, nullable=True)
    first_line_index: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    bank_account = relationship("BankAccount", back_populates="statements")
    lines = relationship(
        "BankStatementLine",
        back_populates="statement",
        order_by="BankStatementLine.internal_index",
    )


class BankStatementLine(Base):
    """
    A single bank transaction.

    internal_index is the ordering key (date, inverted sequence, identity)
    used for running balances. version is an optimistic lock counter
    bumped on every flush that updates the row.
    """
    __tablename__ = "bank_statement_lines"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    statement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_statements.id", ondelete="SET NULL"), nullable=True, index=True
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)  # Positive = credit, Negative = debit
    currency_code: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    payment_ref: Mapped[str] = mapped_column(Text, nullable=True)  # Transaction label
    partner_name: Mapped[str] = mapped_column(String(255), nullable=True)  # Name before partner is identified
    partner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    account_number: Mapped[str] = mapped_column(String(64), nullable=True)  # Counterparty account
    transaction_type: Mapped[str] = mapped_column(String(64), nullable=True)
    ref: Mapped[str] = mapped_column(String(255), nullable=True)  # Bank reference (FITID, EndToEndId, ...)
    narration: Mapped[str] = mapped_column(Text, nullable=True)  # Internal note
    sequence: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    internal_index: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    running_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=True)
    amount_residual: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=True)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    import_hash: Mapped[str] = mapped_column(String(64), nullable=True, index=True)  # SHA256 hash
    transaction_details: Mapped[dict] = mapped_column(JSONB, nullable=True)  # Raw data from import
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    bank_account = relationship("BankAccount", back_populates="lines")
    statement = relationship("BankStatement", back_populates="lines")
    partial_reconciles = relationship("PartialReconcile", back_populates="statement_line", passive_deletes=True)

    @property
    def type(self) -> str:
        return "credit" if self.amount >= 0 else "debit"

    @property
    def absolute_amount(self) -> Decimal:
        return abs(self.amount)

    @property
    def display_name(self) -> str:
        name = self.payment_ref or "Transaction"
        if self.partner_name:
            name += f" - {self.partner_name}"
        return name


class ReconcileModel(Base):
    """
    Declarative reconciliation rule.

    Filters are evaluated in a fixed order (nature, amount, label, note,
    partner). Lines describe write-off amounts, partner mappings infer
    the counterparty from free text.
    """
    __tablename__ = "reconcile_models"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(
        SQLEnum(RuleType), default=RuleType.WRITEOFF_BUTTON, nullable=False
    )
    auto_reconcile: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    to_check: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    matching_order: Mapped[MatchingOrder] = mapped_column(
        SQLEnum(MatchingOrder), default=MatchingOrder.OLD_FIRST, nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Where to look for label text
    match_text_location_label: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    match_text_location_note: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    match_text_location_reference: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Conditions
    match_nature: Mapped[MatchNature] = mapped_column(
        SQLEnum(MatchNature), default=MatchNature.BOTH, nullable=False
    )
    match_amount: Mapped[AmountCondition] = mapped_column(SQLEnum(AmountCondition), nullable=True)
    match_amount_min: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=True)
    match_amount_max: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=True)
    match_label: Mapped[TextCondition] = mapped_column(SQLEnum(TextCondition, name="textcondition_label"), nullable=True)
    match_label_param: Mapped[str] = mapped_column(String(255), nullable=True)
    match_note: Mapped[TextCondition] = mapped_column(SQLEnum(TextCondition, name="textcondition_note"), nullable=True)
    match_note_param: Mapped[str] = mapped_column(String(255), nullable=True)
    match_same_currency: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    match_partner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Tolerance for invoice matching
    allow_payment_tolerance: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payment_tolerance_param: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    payment_tolerance_type: Mapped[ToleranceType] = mapped_column(
        SQLEnum(ToleranceType), default=ToleranceType.PERCENTAGE, nullable=False
    )
    past_months_limit: Mapped[int] = mapped_column(Integer, default=18, nullable=False)
    decimal_separator: Mapped[str] = mapped_column(String(1), default=".", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    lines = relationship(
        "ReconcileModelLine",
        back_populates="reconcile_model",
        order_by="ReconcileModelLine.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    partner_mappings = relationship(
        "ReconcileModelPartnerMapping",
        back_populates="reconcile_model",
        order_by="ReconcileModelPartnerMapping.sequence",
        collection_class=ordering_list("sequence"),
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ReconcileModelLine(Base):
    """Write-off line of a reconcile model."""
    __tablename__ = "reconcile_model_lines"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    reconcile_model_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("reconcile_models.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    account_code: Mapped[str] = mapped_column(String(20), nullable=True)
    label: Mapped[str] = mapped_column(String(255), nullable=True)
    amount_type: Mapped[AmountType] = mapped_column(
        SQLEnum(AmountType), default=AmountType.PERCENTAGE, nullable=False
    )
    amount_string: Mapped[str] = mapped_column(String(255), default="100", nullable=False)  # Number or regex

    # Relationships
    reconcile_model = relationship("ReconcileModel", back_populates="lines")

    @property
    def amount(self) -> Decimal:
        """Numeric value of amount_string for fixed and percentage lines."""
        try:
            return Decimal(str(self.amount_string).strip().replace(",", "."))
        except (InvalidOperation, TypeError):
            return Decimal("0")


class ReconcileModelPartnerMapping(Base):
    """Regex based partner inference; evaluated in declaration order."""
    __tablename__ = "reconcile_model_partner_mappings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    reconcile_model_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("reconcile_models.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    partner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    payment_ref_regex: Mapped[str] = mapped_column(String(255), nullable=True)
    narration_regex: Mapped[str] = mapped_column(String(255), nullable=True)  # Matched against partner_name

    # Relationships
    reconcile_model = relationship("ReconcileModel", back_populates="partner_mappings")


class FullReconcile(Base):
    """Completed group of partial reconciles netting to zero."""
    __tablename__ = "full_reconciles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)  # REC000001
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    partials = relationship("PartialReconcile", back_populates="full_reconcile")


class PartialReconcile(Base):
    """
    Allocation of part of a statement line against an invoice, payment
    or manual write-off.
    """
    __tablename__ = "partial_reconciles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    bank_statement_line_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_statement_lines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reconcile_type: Mapped[ReconcileType] = mapped_column(SQLEnum(ReconcileType), nullable=False)
    reconcile_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)  # None for write-offs
    reconcile_model_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)  # Rule that produced it
    label: Mapped[str] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    max_date: Mapped[date] = mapped_column(Date, nullable=False)
    full_reconcile_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("full_reconciles.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    statement_line = relationship("BankStatementLine", back_populates="partial_reconciles")
    full_reconcile = relationship("FullReconcile", back_populates="partials")


class BankImportHistory(Base):
    """One record per imported file, with counts and row diagnostics."""
    __tablename__ = "bank_import_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    format: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[ImportStatus] = mapped_column(
        SQLEnum(ImportStatus), default=ImportStatus.PENDING, nullable=False
    )
    transactions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transactions_imported: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transactions_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0.00"), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSONB, nullable=True)
    statement_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    bank_account = relationship("BankAccount", back_populates="import_history")

    def mark_completed(self, imported: int, skipped: int, total_amount: Decimal) -> None:
        self.status = ImportStatus.COMPLETED
        self.transactions_imported = imported
        self.transactions_skipped = skipped
        self.total_amount = total_amount

    def mark_failed(self, error_message: str) -> None:
        self.status = ImportStatus.FAILED
        self.error_message = error_message[:2000]
