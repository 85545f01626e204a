"""
Bank Statement Store

Holds statement lines for one bank account and keeps derived state
consistent:
- Ordering key (date, manual sequence descending, identity)
- Running balances, re-derived forward from the earliest changed key
- Statement totals, completeness and continuity with the previous statement

Derived state is recomputed explicitly by the operations below after
they mutate lines. Nothing here relies on ORM events.
"""
import uuid
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from bankrec.core.config import settings
from bankrec.models.bank import BankAccount, BankStatement, BankStatementLine, PartialReconcile
from bankrec.services.logging import reconciliation_logger

MAX_SEQUENCE = 2147483647
DISCONTINUITY_MESSAGE = "The starting balance doesn't match the ending balance of the previous statement."

# Fields update_line() accepts
EDITABLE_FIELDS = {
    "date",
    "amount",
    "sequence",
    "statement_id",
    "currency_code",
    "payment_ref",
    "partner_name",
    "partner_id",
    "account_number",
    "transaction_type",
    "ref",
    "narration",
}
KEY_FIELDS = {"date", "sequence"}


class BankStatementError(Exception):
    """Base exception for statement store operations."""
    pass


class StatementValidationError(BankStatementError):
    """Raised when a statement does not continue the previous one and the caller asked to reject it."""
    def __init__(self, statement: BankStatement, previous_balance_end: Decimal):
        self.statement_id = statement.id
        self.balance_start = statement.balance_start
        self.previous_balance_end = previous_balance_end
        super().__init__(
            f"{DISCONTINUITY_MESSAGE} start={statement.balance_start}, previous end={previous_balance_end}"
        )


def compute_ordering_key(line: BankStatementLine) -> str:
    """
    Ordering key: YYYYMMDD + (MAX_SEQUENCE - sequence) zero padded to 10
    digits + the line identity as 32 hex characters.

    Higher sequence numbers sort first within a date.
    """
    if line.id is None:
        line.id = uuid.uuid4()
    sequence = line.sequence if line.sequence is not None else 1
    return f"{line.date:%Y%m%d}{MAX_SEQUENCE - sequence:010d}{line.id.hex}"


class BankStatementStore:
    """
    Statement and line store scoped to one bank account.

    Methods flush but never commit; the calling service owns the transaction.
    """

    def __init__(self, db: AsyncSession, bank_account_id: uuid.UUID):
        self.db = db
        self.bank_account_id = bank_account_id

    compute_ordering_key = staticmethod(compute_ordering_key)

    async def get_account(self) -> BankAccount:
        account = await self.db.get(BankAccount, self.bank_account_id)
        if account is None:
            raise BankStatementError(f"Bank account {self.bank_account_id} not found")
        return account

    async def get_line(self, line_id: uuid.UUID) -> Optional[BankStatementLine]:
        result = await self.db.execute(
            select(BankStatementLine)
            .where(BankStatementLine.id == line_id)
            .where(BankStatementLine.bank_account_id == self.bank_account_id)
        )
        return result.scalar_one_or_none()

    async def get_statement(self, statement_id: uuid.UUID) -> Optional[BankStatement]:
        result = await self.db.execute(
            select(BankStatement)
            .where(BankStatement.id == statement_id)
            .where(BankStatement.bank_account_id == self.bank_account_id)
        )
        return result.scalar_one_or_none()

    async def list_lines(self, statement_id: Optional[uuid.UUID] = None) -> List[BankStatementLine]:
        """Lines of the account (or one statement) in ordering key order."""
        query = (
            select(BankStatementLine)
            .where(BankStatementLine.bank_account_id == self.bank_account_id)
            .order_by(BankStatementLine.internal_index)
        )
        if statement_id is not None:
            query = query.where(BankStatementLine.statement_id == statement_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _predecessor(self, key: str) -> Optional[BankStatementLine]:
        result = await self.db.execute(
            select(BankStatementLine)
            .where(BankStatementLine.bank_account_id == self.bank_account_id)
            .where(BankStatementLine.internal_index < key)
            .order_by(BankStatementLine.internal_index.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _seed_balance(self, line: BankStatementLine) -> Decimal:
        """Balance before the first line of the account."""
        if line.statement_id is not None:
            statement = await self.db.get(BankStatement, line.statement_id)
            if statement is not None:
                return statement.balance_start
        return Decimal("0.00")

    async def compute_running_balance(self, line: BankStatementLine) -> Decimal:
        """Running balance of a single line from its predecessor by ordering key."""
        if not line.internal_index:
            line.internal_index = compute_ordering_key(line)
        predecessor = await self._predecessor(line.internal_index)
        if predecessor is not None and predecessor.running_balance is not None:
            return predecessor.running_balance + line.amount
        if predecessor is not None:
            # Predecessor never computed: derive the whole chain instead
            await self.recompute_running_balances(from_key=predecessor.internal_index)
            return predecessor.running_balance + line.amount
        return await self._seed_balance(line) + line.amount

    async def recompute_running_balances(self, from_key: Optional[str] = None) -> Decimal:
        """
        Forward pass over the account's lines starting at from_key
        (or the first line). Updates the account's current balance and
        returns it.
        """
        balance: Optional[Decimal] = None
        query = (
            select(BankStatementLine)
            .where(BankStatementLine.bank_account_id == self.bank_account_id)
            .order_by(BankStatementLine.internal_index)
        )
        if from_key is not None:
            predecessor = await self._predecessor(from_key)
            if predecessor is not None:
                if predecessor.running_balance is None:
                    return await self.recompute_running_balances()
                balance = predecessor.running_balance
            query = query.where(BankStatementLine.internal_index >= from_key)

        result = await self.db.execute(query)
        lines = result.scalars().all()

        if balance is None:
            balance = await self._seed_balance(lines[0]) if lines else Decimal("0.00")

        for line in lines:
            balance = balance + line.amount
            if line.running_balance != balance:
                line.running_balance = balance

        account = await self.get_account()
        account.current_balance = balance
        await self.db.flush()
        return balance

    async def previous_statement(self, statement: BankStatement) -> Optional[BankStatement]:
        """Statement preceding this one on the account."""
        query = (
            select(BankStatement)
            .where(BankStatement.bank_account_id == self.bank_account_id)
            .where(BankStatement.id != statement.id)
        )
        if statement.first_line_index:
            query = query.where(BankStatement.first_line_index < statement.first_line_index).order_by(
                BankStatement.first_line_index.desc()
            )
        else:
            query = query.where(BankStatement.date < statement.date).order_by(BankStatement.date.desc())
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def recompute_statement(
        self,
        statement: BankStatement,
        reject_discontinuous: bool = False,
    ) -> BankStatement:
        """
        Recompute balance_end, is_complete, first_line_index and continuity.

        Idempotent. A discontinuity only marks the statement invalid unless
        reject_discontinuous is set, in which case StatementValidationError
        is raised.
        """
        lines = await self.list_lines(statement_id=statement.id)
        total = sum((line.amount for line in lines), Decimal("0.00"))

        statement.balance_end = statement.balance_start + total
        statement.is_complete = abs(statement.balance_end - statement.balance_end_real) < settings.BALANCE_TOLERANCE
        statement.first_line_index = lines[0].internal_index if lines else None

        was_valid = statement.is_valid
        previous = await self.previous_statement(statement)
        if previous is not None and abs(statement.balance_start - previous.balance_end_real) >= settings.BALANCE_TOLERANCE:
            statement.is_valid = False
            statement.problem_description = DISCONTINUITY_MESSAGE
            if was_valid:
                reconciliation_logger.statement_discontinuity(
                    statement_id=statement.id,
                    account_id=self.bank_account_id,
                    balance_start=statement.balance_start,
                    previous_balance_end=previous.balance_end_real,
                )
            if reject_discontinuous:
                raise StatementValidationError(statement, previous.balance_end_real)
        else:
            statement.is_valid = True
            statement.problem_description = None

        account = await self.get_account()
        if account.last_statement_date is None or statement.date >= account.last_statement_date:
            account.last_statement_date = statement.date
            account.last_statement_balance = statement.balance_end_real

        await self.db.flush()
        return statement

    async def create_statement(
        self,
        name: str,
        statement_date: date,
        balance_start: Decimal = Decimal("0.00"),
        balance_end_real: Decimal = Decimal("0.00"),
        reference: Optional[str] = None,
    ) -> BankStatement:
        statement = BankStatement(
            bank_account_id=self.bank_account_id,
            name=name,
            reference=reference,
            date=statement_date,
            balance_start=balance_start,
            balance_end=balance_start,
            balance_end_real=balance_end_real,
            is_valid=True,
        )
        self.db.add(statement)
        await self.db.flush()
        return statement

    def build_line(self, line_date: date, amount: Decimal, **fields) -> BankStatementLine:
        """Instantiate a line with identity, residual and ordering key set (not added)."""
        unknown = set(fields) - EDITABLE_FIELDS - {"import_hash", "transaction_details", "id"}
        if unknown:
            raise BankStatementError(f"Unknown line fields: {', '.join(sorted(unknown))}")
        amount = Decimal(str(amount))
        sequence = fields.pop("sequence", None)
        line = BankStatementLine(
            id=fields.pop("id", None) or uuid.uuid4(),
            bank_account_id=self.bank_account_id,
            date=line_date,
            amount=amount,
            amount_residual=abs(amount),
            sequence=1 if sequence is None else sequence,
            currency_code=fields.pop("currency_code", None) or settings.DEFAULT_CURRENCY,
            is_reconciled=False,
            checked=False,
            **fields,
        )
        line.internal_index = compute_ordering_key(line)
        return line

    async def create_line(self, line_date: date, amount: Decimal, **fields) -> BankStatementLine:
        """Create a line and recompute running balances and its statement."""
        line = self.build_line(line_date, amount, **fields)
        self.db.add(line)
        await self.db.flush()

        await self.recompute_running_balances(from_key=line.internal_index)
        if line.statement_id is not None:
            await self._recompute_statements([line.statement_id])
        return line

    async def update_line(self, line: BankStatementLine, **changes) -> BankStatementLine:
        """
        Apply field changes. Changing date, sequence, amount or statement
        membership re-derives the ordering key, the running balances and
        the old and new parent statements.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise BankStatementError(f"Unknown line fields: {', '.join(sorted(unknown))}")

        if "amount" in changes:
            changes["amount"] = Decimal(str(changes["amount"]))
            if changes["amount"] != line.amount and await self._has_partials(line):
                raise BankStatementError("Cannot change the amount of a reconciled line; undo the reconciliation first")

        old_key = line.internal_index
        old_statement_id = line.statement_id

        for field, value in changes.items():
            setattr(line, field, value)

        if KEY_FIELDS & set(changes):
            line.internal_index = compute_ordering_key(line)
        if "amount" in changes:
            line.amount_residual = abs(line.amount)

        await self.db.flush()

        if KEY_FIELDS & set(changes) or "amount" in changes or "statement_id" in changes:
            keys = [key for key in (old_key, line.internal_index) if key]
            await self.recompute_running_balances(from_key=min(keys) if keys else None)
            await self._recompute_statements([old_statement_id, line.statement_id])
        return line

    async def delete_line(self, line: BankStatementLine) -> None:
        """Delete an unreconciled line and re-derive balances after it."""
        if await self._has_partials(line):
            raise BankStatementError("Cannot delete a reconciled line; undo the reconciliation first")

        key = line.internal_index
        statement_id = line.statement_id
        await self.db.delete(line)
        await self.db.flush()

        await self.recompute_running_balances(from_key=key)
        await self._recompute_statements([statement_id])

    async def assign_lines(self, lines: Iterable[BankStatementLine], statement: BankStatement) -> None:
        """Move lines into a statement and recompute everything they touch."""
        lines = list(lines)
        previous_ids = {line.statement_id for line in lines}
        for line in lines:
            line.statement_id = statement.id
        await self.db.flush()
        await self._recompute_statements(list(previous_ids) + [statement.id])

    async def _recompute_statements(self, statement_ids: Iterable[Optional[uuid.UUID]]) -> None:
        seen = set()
        for statement_id in statement_ids:
            if statement_id is None or statement_id in seen:
                continue
            seen.add(statement_id)
            statement = await self.get_statement(statement_id)
            if statement is not None:
                await self.recompute_statement(statement)

    async def _has_partials(self, line: BankStatementLine) -> bool:
        result = await self.db.execute(
            select(func.count(PartialReconcile.id)).where(PartialReconcile.bank_statement_line_id == line.id)
        )
        return result.scalar_one() > 0
