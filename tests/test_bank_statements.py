"""
Tests for the bank statement store

Tests cover:
- Ordering key composition and sort order
- Running balances (forward recompute after insert, move and delete)
- Statement totals, completeness and continuity
- Guards on reconciled lines
"""
import uuid
import pytest
from datetime import date
from decimal import Decimal

from bankrec.models import BankStatementLine, PartialReconcile, ReconcileType
from bankrec.services.bank_statements import (
    DISCONTINUITY_MESSAGE,
    MAX_SEQUENCE,
    BankStatementError,
    StatementValidationError,
    compute_ordering_key,
)


class TestOrderingKey:
    """Tests for the derived ordering key."""

    def test_key_layout(self):
        line_id = uuid.uuid4()
        line = BankStatementLine(id=line_id, date=date(2024, 1, 15), sequence=1, amount=Decimal("10"))

        key = compute_ordering_key(line)

        assert key == f"20240115{MAX_SEQUENCE - 1:010d}{line_id.hex}"
        assert len(key) == 8 + 10 + 32

    def test_identity_assigned_when_missing(self):
        line = BankStatementLine(date=date(2024, 1, 15), sequence=1, amount=Decimal("10"))

        key = compute_ordering_key(line)

        assert line.id is not None
        assert key.endswith(line.id.hex)

    def test_higher_sequence_sorts_first_on_same_date(self):
        first = BankStatementLine(date=date(2024, 1, 15), sequence=2, amount=Decimal("1"))
        second = BankStatementLine(date=date(2024, 1, 15), sequence=1, amount=Decimal("1"))

        assert compute_ordering_key(first) < compute_ordering_key(second)

    def test_date_dominates_sequence(self):
        earlier = BankStatementLine(date=date(2024, 1, 14), sequence=1, amount=Decimal("1"))
        later = BankStatementLine(date=date(2024, 1, 15), sequence=1000, amount=Decimal("1"))

        assert compute_ordering_key(earlier) < compute_ordering_key(later)


class TestRunningBalances:
    """Tests for running balance derivation."""

    @pytest.mark.asyncio
    async def test_balances_from_statement_start(self, store, bank_account):
        statement = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("500"), balance_end_real=Decimal("570")
        )
        first = await store.create_line(date(2024, 1, 1), Decimal("100"), statement_id=statement.id)
        assert first.running_balance == Decimal("600")

        second = await store.create_line(date(2024, 1, 2), Decimal("-30"), statement_id=statement.id)
        assert second.running_balance == Decimal("570")

        account = await store.get_account()
        assert account.current_balance == Decimal("570")

    @pytest.mark.asyncio
    async def test_backdated_line_shifts_later_balances(self, store):
        jan1 = await store.create_line(date(2024, 1, 1), Decimal("100"))
        jan2 = await store.create_line(date(2024, 1, 2), Decimal("-30"))
        assert jan2.running_balance == Decimal("70")

        dec31 = await store.create_line(date(2023, 12, 31), Decimal("50"))

        assert dec31.running_balance == Decimal("50")
        assert jan1.running_balance == Decimal("150")
        assert jan2.running_balance == Decimal("120")

    @pytest.mark.asyncio
    async def test_same_date_follows_sequence(self, store):
        low = await store.create_line(date(2024, 1, 1), Decimal("10"), sequence=1)
        high = await store.create_line(date(2024, 1, 1), Decimal("20"), sequence=2)

        lines = await store.list_lines()

        assert [line.id for line in lines] == [high.id, low.id]
        assert high.running_balance == Decimal("20")
        assert low.running_balance == Decimal("30")

    @pytest.mark.asyncio
    async def test_moving_a_line_recomputes(self, store):
        jan1 = await store.create_line(date(2024, 1, 1), Decimal("100"))
        jan2 = await store.create_line(date(2024, 1, 2), Decimal("-30"))

        await store.update_line(jan2, date=date(2023, 12, 30))

        assert jan2.internal_index.startswith("20231230")
        assert jan2.running_balance == Decimal("-30")
        assert jan1.running_balance == Decimal("70")

    @pytest.mark.asyncio
    async def test_amount_change_recomputes(self, store):
        jan1 = await store.create_line(date(2024, 1, 1), Decimal("100"))
        jan2 = await store.create_line(date(2024, 1, 2), Decimal("-30"))

        await store.update_line(jan1, amount="80")

        assert jan1.amount_residual == Decimal("80")
        assert jan2.running_balance == Decimal("50")

    @pytest.mark.asyncio
    async def test_delete_recomputes(self, store):
        jan1 = await store.create_line(date(2024, 1, 1), Decimal("100"))
        jan2 = await store.create_line(date(2024, 1, 2), Decimal("-30"))

        await store.delete_line(jan1)

        assert jan2.running_balance == Decimal("-30")
        account = await store.get_account()
        assert account.current_balance == Decimal("-30")

    @pytest.mark.asyncio
    async def test_compute_running_balance_of_single_line(self, store):
        await store.create_line(date(2024, 1, 1), Decimal("100"))
        pending = store.build_line(date(2024, 1, 5), Decimal("25"))

        assert await store.compute_running_balance(pending) == Decimal("125")


class TestStatements:
    """Tests for statement recompute and continuity."""

    @pytest.mark.asyncio
    async def test_balance_equation_and_completeness(self, store):
        statement = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("500"), balance_end_real=Decimal("570")
        )
        await store.create_line(date(2024, 1, 1), Decimal("100"), statement_id=statement.id)
        await store.create_line(date(2024, 1, 2), Decimal("-30"), statement_id=statement.id)

        lines = await store.list_lines(statement_id=statement.id)
        assert statement.balance_end == statement.balance_start + sum(line.amount for line in lines)
        assert statement.balance_end == Decimal("570")
        assert statement.is_complete is True
        assert statement.first_line_index == lines[0].internal_index

    @pytest.mark.asyncio
    async def test_incomplete_statement(self, store):
        statement = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("500"), balance_end_real=Decimal("600")
        )
        await store.create_line(date(2024, 1, 1), Decimal("99.98"), statement_id=statement.id)

        assert statement.is_complete is False

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, store):
        statement = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("0"), balance_end_real=Decimal("10")
        )
        await store.create_line(date(2024, 1, 1), Decimal("10"), statement_id=statement.id)

        await store.recompute_statement(statement)
        await store.recompute_statement(statement)

        assert statement.balance_end == Decimal("10")
        assert statement.is_complete is True
        assert statement.is_valid is True

    @pytest.mark.asyncio
    async def test_discontinuity_marks_statement_invalid(self, store):
        january = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("500"), balance_end_real=Decimal("570")
        )
        await store.create_line(date(2024, 1, 1), Decimal("70"), statement_id=january.id)

        february = await store.create_statement(
            "February", date(2024, 2, 29), balance_start=Decimal("560"), balance_end_real=Decimal("580")
        )
        await store.create_line(date(2024, 2, 1), Decimal("20"), statement_id=february.id)

        assert await store.previous_statement(february) is january
        assert february.is_valid is False
        assert february.problem_description == DISCONTINUITY_MESSAGE

    @pytest.mark.asyncio
    async def test_continuous_statement_is_valid(self, store):
        january = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("500"), balance_end_real=Decimal("570")
        )
        await store.create_line(date(2024, 1, 1), Decimal("70"), statement_id=january.id)
        february = await store.create_statement(
            "February", date(2024, 2, 29), balance_start=Decimal("570"), balance_end_real=Decimal("590")
        )
        await store.create_line(date(2024, 2, 1), Decimal("20"), statement_id=february.id)

        assert february.is_valid is True
        assert february.problem_description is None

    @pytest.mark.asyncio
    async def test_reject_discontinuous(self, store):
        january = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("0"), balance_end_real=Decimal("100")
        )
        await store.create_line(date(2024, 1, 1), Decimal("100"), statement_id=january.id)
        february = await store.create_statement(
            "February", date(2024, 2, 29), balance_start=Decimal("90"), balance_end_real=Decimal("100")
        )
        await store.create_line(date(2024, 2, 1), Decimal("10"), statement_id=february.id)

        with pytest.raises(StatementValidationError) as exc_info:
            await store.recompute_statement(february, reject_discontinuous=True)

        assert exc_info.value.balance_start == Decimal("90")
        assert exc_info.value.previous_balance_end == Decimal("100")

    @pytest.mark.asyncio
    async def test_moving_line_between_statements(self, store):
        first = await store.create_statement(
            "First", date(2024, 1, 31), balance_start=Decimal("0"), balance_end_real=Decimal("30")
        )
        second = await store.create_statement(
            "Second", date(2024, 2, 29), balance_start=Decimal("30"), balance_end_real=Decimal("30")
        )
        await store.create_line(date(2024, 1, 1), Decimal("30"), statement_id=first.id)
        line = await store.create_line(date(2024, 1, 2), Decimal("5"), statement_id=first.id)
        assert first.balance_end == Decimal("35")

        await store.update_line(line, statement_id=second.id)

        assert first.balance_end == Decimal("30")
        assert first.is_complete is True
        assert second.balance_end == Decimal("35")

    @pytest.mark.asyncio
    async def test_account_tracks_last_statement(self, store):
        statement = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("0"), balance_end_real=Decimal("10")
        )
        await store.create_line(date(2024, 1, 1), Decimal("10"), statement_id=statement.id)

        account = await store.get_account()
        assert account.last_statement_date == date(2024, 1, 31)
        assert account.last_statement_balance == Decimal("10")


class TestLineGuards:
    """Tests for edits refused on reconciled lines."""

    @pytest.mark.asyncio
    async def test_unknown_field(self, store):
        line = await store.create_line(date(2024, 1, 1), Decimal("10"))

        with pytest.raises(BankStatementError):
            await store.update_line(line, is_reconciled=True)

    @pytest.mark.asyncio
    async def test_amount_change_refused_with_partials(self, store, db_session):
        line = await store.create_line(date(2024, 1, 1), Decimal("10"))
        db_session.add(
            PartialReconcile(
                bank_statement_line_id=line.id,
                reconcile_type=ReconcileType.MANUAL,
                amount=Decimal("5"),
                max_date=date(2024, 1, 1),
            )
        )
        await db_session.flush()

        with pytest.raises(BankStatementError):
            await store.update_line(line, amount=Decimal("20"))
        with pytest.raises(BankStatementError):
            await store.delete_line(line)

    @pytest.mark.asyncio
    async def test_new_line_is_unreconciled(self, store):
        line = await store.create_line(date(2024, 1, 1), Decimal("-42.10"))

        assert line.amount_residual == Decimal("42.10")
        assert line.is_reconciled is False
        assert line.type == "debit"
        assert line.absolute_amount == Decimal("42.10")
        assert line.version == 1
