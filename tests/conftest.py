"""
Pytest configuration and fixtures for bankrec tests.

Provides an in-memory database, a session, a bank account and helpers
to build reconcile models and open documents.
"""
import uuid
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from bankrec.core.database import Base, build_engine
from bankrec.models import (
    BankAccount,
    DocumentStatus,
    DocumentType,
    OpenDocument,
)
from bankrec.services.bank_statements import BankStatementStore


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine sharing one in-memory connection."""
    engine = build_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def bank_account(db_session: AsyncSession) -> BankAccount:
    """Create a EUR bank account."""
    account = BankAccount(
        id=uuid.uuid4(),
        name="Main account",
        account_number="NL91ABNA0417164300",
        iban="NL91ABNA0417164300",
        bank_name="ABN AMRO",
        currency_code="EUR",
    )
    db_session.add(account)
    await db_session.commit()
    return account


@pytest.fixture
def store(db_session: AsyncSession, bank_account: BankAccount) -> BankStatementStore:
    return BankStatementStore(db_session, bank_account.id)


@pytest.fixture
def make_document(db_session: AsyncSession):
    """Factory adding an open invoice or payment to the session."""
    async def _make(
        amount,
        number="INV-2024-001",
        document_type=DocumentType.INVOICE,
        partner_id=None,
        partner_name=None,
        document_date=date(2024, 1, 10),
        currency_code="EUR",
        reference=None,
    ) -> OpenDocument:
        amount = Decimal(str(amount))
        document = OpenDocument(
            id=uuid.uuid4(),
            document_type=document_type,
            partner_id=partner_id,
            partner_name=partner_name,
            number=number,
            reference=reference,
            document_date=document_date,
            amount_total=amount,
            amount_residual=abs(amount),
            currency_code=currency_code,
            status=DocumentStatus.OPEN,
        )
        db_session.add(document)
        await db_session.commit()
        return document

    return _make
