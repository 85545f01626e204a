"""
Open Documents Lookup

Boundary to the invoice/payment collaborator. The orchestrator only talks
to the DocumentLookup protocol; SqlDocumentLookup is the default
implementation backed by the open_documents table.
"""
import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrec.core.config import settings
from bankrec.models.documents import OpenDocument, DocumentType, DocumentStatus


class DocumentLookupError(Exception):
    """Raised when a document allocation cannot be applied."""
    pass


@runtime_checkable
class DocumentLookup(Protocol):
    """What the orchestrator needs from the invoice/payment side."""

    async def find_open_documents(
        self,
        document_type: DocumentType,
        partner_id: Optional[uuid.UUID],
        min_amount: Decimal,
        max_amount: Decimal,
        currency: Optional[str] = None,
        since: Optional[date] = None,
    ) -> List[OpenDocument]:
        ...

    async def get_document(self, document_type: DocumentType, document_id: uuid.UUID) -> Optional[OpenDocument]:
        ...

    async def allocate(self, document_type: DocumentType, document_id: uuid.UUID, amount: Decimal) -> None:
        ...

    async def release(self, document_type: DocumentType, document_id: uuid.UUID, amount: Decimal) -> None:
        ...


class SqlDocumentLookup:
    """DocumentLookup over the OpenDocument table in the same session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_open_documents(
        self,
        document_type: DocumentType,
        partner_id: Optional[uuid.UUID],
        min_amount: Decimal,
        max_amount: Decimal,
        currency: Optional[str] = None,
        since: Optional[date] = None,
    ) -> List[OpenDocument]:
        """Open documents whose residual lies within [min_amount, max_amount]."""
        query = (
            select(OpenDocument)
            .where(OpenDocument.document_type == DocumentType(document_type))
            .where(OpenDocument.status != DocumentStatus.PAID)
            .order_by(OpenDocument.document_date, OpenDocument.number)
        )
        if partner_id is not None:
            query = query.where(OpenDocument.partner_id == partner_id)
        if currency:
            query = query.where(OpenDocument.currency_code == currency)
        if since is not None:
            query = query.where(OpenDocument.document_date >= since)

        result = await self.db.execute(query)
        # Amount window applied on Decimal values
        return [
            document
            for document in result.scalars().all()
            if document.amount_residual > 0 and min_amount <= document.amount_residual <= max_amount
        ]

    async def get_document(self, document_type: DocumentType, document_id: uuid.UUID) -> Optional[OpenDocument]:
        result = await self.db.execute(
            select(OpenDocument)
            .where(OpenDocument.id == document_id)
            .where(OpenDocument.document_type == DocumentType(document_type))
        )
        return result.scalar_one_or_none()

    async def allocate(self, document_type: DocumentType, document_id: uuid.UUID, amount: Decimal) -> None:
        """Reduce the document residual by an allocated amount."""
        document = await self._require(document_type, document_id)
        amount = abs(amount)
        if amount > document.amount_residual + settings.RESIDUAL_TOLERANCE:
            raise DocumentLookupError(
                f"Allocation {amount} exceeds residual {document.amount_residual} of document {document.number or document.id}"
            )
        document.amount_residual = max(document.amount_residual - amount, Decimal("0.00"))
        document.update_status()
        await self.db.flush()

    async def release(self, document_type: DocumentType, document_id: uuid.UUID, amount: Decimal) -> None:
        """Give an allocated amount back to the document."""
        document = await self._require(document_type, document_id)
        document.amount_residual = min(document.amount_residual + abs(amount), abs(document.amount_total))
        document.update_status()
        await self.db.flush()

    async def _require(self, document_type: DocumentType, document_id: uuid.UUID) -> OpenDocument:
        document = await self.get_document(document_type, document_id)
        if document is None:
            raise DocumentLookupError(f"{DocumentType(document_type).value} {document_id} not found")
        return document
