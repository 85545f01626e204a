"""
Open Document Models

Minimal projection of the invoice/payment collaborator: open documents
with an outstanding residual that bank lines can be reconciled against.
"""
import uuid
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import String, DateTime, Date, func, Numeric, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
import enum

from bankrec.core.database import Base


class DocumentType(str, enum.Enum):
    INVOICE = "invoice"
    PAYMENT = "payment"


class DocumentStatus(str, enum.Enum):
    OPEN = "open"
    PARTIAL = "partial"
    PAID = "paid"


class OpenDocument(Base):
    """
    Invoice or payment with an open residual.

    amount_total is signed like the bank line that settles it:
    positive for customer invoices / incoming payments, negative for
    vendor bills / outgoing payments. amount_residual is absolute.
    """
    __tablename__ = "open_documents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    document_type: Mapped[DocumentType] = mapped_column(SQLEnum(DocumentType), nullable=False)
    partner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    partner_name: Mapped[str] = mapped_column(String(255), nullable=True)
    number: Mapped[str] = mapped_column(String(100), nullable=True)
    reference: Mapped[str] = mapped_column(String(255), nullable=True)
    document_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_total: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    amount_residual: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        SQLEnum(DocumentStatus), default=DocumentStatus.OPEN, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def update_status(self) -> None:
        """Update status based on residual vs total amount."""
        if self.amount_residual <= Decimal("0.00"):
            self.status = DocumentStatus.PAID
            self.amount_residual = Decimal("0.00")
        elif self.amount_residual < abs(self.amount_total):
            self.status = DocumentStatus.PARTIAL
        else:
            self.status = DocumentStatus.OPEN
