"""
Unit Tests for Bank Reconciliation

Tests cover:
- Reconcile / undo and the residual state machine
- Full Reconcile grouping and naming
- Rejected reconciliations (rollback)
- Match suggestions and scoring
- Batch auto-reconcile
- Partner inference and the reviewed flag
"""
import uuid
import pytest
from datetime import date
from decimal import Decimal

from sqlalchemy import select, func

from bankrec.models import (
    AmountType,
    DocumentStatus,
    DocumentType,
    FullReconcile,
    PartialReconcile,
    ReconcileModel,
    ReconcileModelLine,
    ReconcileModelPartnerMapping,
    RuleType,
    TextCondition,
    ToleranceType,
)
from bankrec.schemas.bank import (
    MatchQualityEnum,
    ReconcileMatch,
    ReconcileTypeEnum,
    SuggestionSourceEnum,
)
from bankrec.services.bank_reconciliation import (
    ConcurrentModificationError,
    LineAlreadyReconciledError,
    OverAllocationError,
    ReconciliationError,
    ReconciliationService,
    UnknownTargetError,
)
from bankrec.services.open_documents import DocumentLookupError


@pytest.fixture
def service(db_session, bank_account) -> ReconciliationService:
    return ReconciliationService(db_session, bank_account.id)


@pytest.fixture
def make_line(db_session, store):
    async def _make(amount, payment_ref="Payment", line_date=date(2024, 1, 12), **fields):
        line = await store.create_line(line_date, Decimal(str(amount)), payment_ref=payment_ref, **fields)
        await db_session.commit()
        return line

    return _make


@pytest.fixture
def make_rule(db_session):
    async def _make(name, rule_type=RuleType.WRITEOFF_SUGGESTION, writeoff_lines=(), mappings=(), **fields):
        rule = ReconcileModel(id=uuid.uuid4(), name=name, rule_type=rule_type, **fields)
        for sequence, (label, amount_type, amount_string) in enumerate(writeoff_lines, start=1):
            rule.lines.append(
                ReconcileModelLine(
                    sequence=sequence,
                    account_code="6500",
                    label=label,
                    amount_type=amount_type,
                    amount_string=amount_string,
                )
            )
        for partner_id, payment_ref_regex in mappings:
            rule.partner_mappings.append(
                ReconcileModelPartnerMapping(partner_id=partner_id, payment_ref_regex=payment_ref_regex)
            )
        db_session.add(rule)
        await db_session.commit()
        return rule

    return _make


async def count(db_session, model) -> int:
    result = await db_session.execute(select(func.count(model.id)))
    return result.scalar_one()


class TestReconcile:
    """Tests for reconcile() and undo_reconciliation()."""

    @pytest.mark.asyncio
    async def test_full_reconcile_against_invoice(self, service, make_line, make_document):
        line = await make_line("100.00", "Payment INV-2024-001")
        invoice = await make_document("100.00")

        result = await service.reconcile(
            line,
            [ReconcileMatch(reconcile_type=ReconcileTypeEnum.INVOICE, target_id=invoice.id, amount=Decimal("100.00"))],
        )

        assert result.is_reconciled is True
        assert result.amount_residual == Decimal("0.00")
        assert result.full_reconcile_name == "REC000001"
        assert len(result.partial_ids) == 1
        assert line.is_reconciled is True
        assert line.checked is True
        assert line.amount_residual == Decimal("0.00")
        assert invoice.amount_residual == Decimal("0.00")
        assert invoice.status == DocumentStatus.PAID

    @pytest.mark.asyncio
    async def test_reconcile_then_undo_restores_line(self, service, make_line, make_document, db_session):
        line = await make_line("100.00")
        invoice = await make_document("100.00")
        await service.reconcile(
            line,
            [{"reconcile_type": "invoice", "target_id": invoice.id, "amount": "100.00"}],
        )

        removed = await service.undo_reconciliation(line)

        assert removed == 1
        assert line.amount_residual == Decimal("100.00")
        assert line.is_reconciled is False
        assert line.checked is True
        assert invoice.amount_residual == Decimal("100.00")
        assert invoice.status == DocumentStatus.OPEN
        assert await count(db_session, PartialReconcile) == 0
        assert await count(db_session, FullReconcile) == 0

    @pytest.mark.asyncio
    async def test_partial_then_full(self, service, make_line, db_session):
        line = await make_line("-100.00")

        first = await service.reconcile(
            line, [ReconcileMatch(reconcile_type=ReconcileTypeEnum.MANUAL, amount=Decimal("40"), label="Fees")]
        )
        assert first.is_reconciled is False
        assert first.amount_residual == Decimal("60.00")
        assert first.full_reconcile_id is None

        second = await service.reconcile(
            line, [ReconcileMatch(reconcile_type=ReconcileTypeEnum.MANUAL, amount=Decimal("60"), label="Rest")]
        )
        assert second.is_reconciled is True

        partials = await service.get_partials(line)
        assert len(partials) == 2
        assert {p.full_reconcile_id for p in partials} == {second.full_reconcile_id}

    @pytest.mark.asyncio
    async def test_full_reconcile_names_increment(self, service, make_line):
        first_line = await make_line("10")
        second_line = await make_line("20")

        first = await service.reconcile(first_line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("10"))])
        second = await service.reconcile(second_line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("20"))])

        assert first.full_reconcile_name == "REC000001"
        assert second.full_reconcile_name == "REC000002"

    @pytest.mark.asyncio
    async def test_split_over_invoice_and_payment(self, service, make_line, make_document):
        line = await make_line("150.00")
        invoice = await make_document("100.00")
        payment = await make_document("50.00", number="PAY-7", document_type=DocumentType.PAYMENT)

        result = await service.reconcile(
            line,
            [
                ReconcileMatch(reconcile_type="invoice", target_id=invoice.id, amount=Decimal("100")),
                ReconcileMatch(reconcile_type="payment", target_id=payment.id, amount=Decimal("50")),
            ],
        )

        assert result.is_reconciled is True
        assert len(result.partial_ids) == 2
        assert payment.status == DocumentStatus.PAID

    @pytest.mark.asyncio
    async def test_over_allocation_rejected(self, service, make_line, db_session):
        line = await make_line("100.00")

        with pytest.raises(OverAllocationError):
            await service.reconcile(line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("150"))])

        await db_session.refresh(line)
        assert line.amount_residual == Decimal("100.00")
        assert await count(db_session, PartialReconcile) == 0

    @pytest.mark.asyncio
    async def test_already_reconciled_rejected(self, service, make_line):
        line = await make_line("10")
        await service.reconcile(line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("10"))])

        with pytest.raises(LineAlreadyReconciledError):
            await service.reconcile(line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("1"))])

    @pytest.mark.asyncio
    async def test_unknown_target_rolls_back(self, service, make_line, make_document, db_session):
        line = await make_line("150.00")
        invoice = await make_document("100.00")

        with pytest.raises(UnknownTargetError):
            await service.reconcile(
                line,
                [
                    ReconcileMatch(reconcile_type="invoice", target_id=invoice.id, amount=Decimal("100")),
                    ReconcileMatch(reconcile_type="invoice", target_id=uuid.uuid4(), amount=Decimal("50")),
                ],
            )

        await db_session.refresh(invoice)
        await db_session.refresh(line)
        assert invoice.amount_residual == Decimal("100.00")
        assert line.amount_residual == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back(self, service, make_line, make_document, db_session, monkeypatch):
        line = await make_line("150.00")
        invoice = await make_document("100.00")

        async def broken_allocate(document_type, document_id, amount):
            raise RuntimeError("document store unavailable")

        monkeypatch.setattr(service.documents, "allocate", broken_allocate)

        with pytest.raises(RuntimeError):
            await service.reconcile(
                line,
                [
                    ReconcileMatch(reconcile_type="manual", amount=Decimal("50")),
                    ReconcileMatch(reconcile_type="invoice", target_id=invoice.id, amount=Decimal("100")),
                ],
            )

        assert not db_session.new
        assert await count(db_session, PartialReconcile) == 0

    @pytest.mark.asyncio
    async def test_document_over_allocation_rejected(self, service, make_line, make_document):
        line = await make_line("100.00")
        invoice = await make_document("60.00")

        with pytest.raises(ReconciliationError):
            await service.reconcile(
                line, [ReconcileMatch(reconcile_type="invoice", target_id=invoice.id, amount=Decimal("100"))]
            )

    @pytest.mark.asyncio
    async def test_version_conflict(self, service, make_line, db_session):
        line = await make_line("10")
        stale_version = line.version - 1

        with pytest.raises(ConcurrentModificationError):
            await service.reconcile(
                line,
                [ReconcileMatch(reconcile_type="manual", amount=Decimal("10"))],
                expected_version=stale_version,
            )

        await db_session.refresh(line)
        assert line.is_reconciled is False

    @pytest.mark.asyncio
    async def test_version_increments(self, service, make_line):
        line = await make_line("10")
        version = line.version

        result = await service.reconcile(
            line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("4"))], expected_version=version
        )

        assert result.version == version + 1

    @pytest.mark.asyncio
    async def test_reconcile_recomputes_statement(self, service, store, db_session):
        statement = await store.create_statement(
            "January", date(2024, 1, 31), balance_start=Decimal("0"), balance_end_real=Decimal("10")
        )
        line = await store.create_line(date(2024, 1, 5), Decimal("10"), statement_id=statement.id)
        await db_session.commit()

        await service.reconcile(line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("10"))])

        assert statement.balance_end == Decimal("10")
        assert statement.is_complete is True


class TestSuggestions:
    """Tests for get_suggestions()."""

    @pytest.mark.asyncio
    async def test_ranked_document_suggestions(self, service, make_line, make_document):
        line = await make_line("100.00", "Payment INV-2024-001", partner_name="Acme")
        best = await make_document("100.00", number="INV-2024-001", partner_name="Acme", document_date=date(2024, 1, 10))
        older = await make_document("100.00", number="INV-2023-999", document_date=date(2023, 6, 1))
        payment = await make_document("100.00", number="PAY-1", document_type=DocumentType.PAYMENT)
        too_big = await make_document("300.00", number="INV-2024-002")
        vendor_bill = await make_document("-100.00", number="BILL-1")

        suggestions = await service.get_suggestions(line)

        target_ids = [s.target_id for s in suggestions]
        assert target_ids[0] == best.id
        assert suggestions[0].score == 200
        assert suggestions[0].match_type == MatchQualityEnum.PERFECT
        assert older.id in target_ids
        assert payment.id in target_ids
        assert too_big.id not in target_ids
        assert vendor_bill.id not in target_ids

    @pytest.mark.asyncio
    async def test_suggestions_are_read_only(self, service, make_line, make_document):
        line = await make_line("100.00", "INV-2024-001")
        invoice = await make_document("100.00")

        await service.get_suggestions(line)

        assert line.amount_residual == Decimal("100.00")
        assert invoice.amount_residual == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_tolerance_rule_widens_match(self, service, make_line, make_document, make_rule):
        await make_rule(
            "Invoices",
            rule_type=RuleType.INVOICE_MATCHING,
            payment_tolerance_param=Decimal("5"),
            payment_tolerance_type=ToleranceType.PERCENTAGE,
        )
        line = await make_line("98.00")
        invoice = await make_document("100.00")

        suggestions = await service.get_suggestions(line)
        documents = [s for s in suggestions if s.source == SuggestionSourceEnum.INVOICE]

        assert [s.target_id for s in documents] == [invoice.id]
        # 80 minus the 2% gap, plus the date proximity bonus
        assert documents[0].score == pytest.approx(99.6)

    @pytest.mark.asyncio
    async def test_suggestions_limited_to_line_partner(self, service, make_line, make_document):
        acme, globex = uuid.uuid4(), uuid.uuid4()
        line = await make_line("100.00", "Transfer", partner_id=acme)
        own = await make_document("100.00", number="INV-A", partner_id=acme)
        other = await make_document("100.00", number="INV-B", partner_id=globex)

        suggestions = await service.get_suggestions(line)

        target_ids = [s.target_id for s in suggestions]
        assert own.id in target_ids
        assert other.id not in target_ids

    @pytest.mark.asyncio
    async def test_suggestions_without_line_partner_span_partners(self, service, make_line, make_document):
        line = await make_line("100.00", "Transfer")
        first = await make_document("100.00", number="INV-A", partner_id=uuid.uuid4())
        second = await make_document("100.00", number="INV-B", partner_id=uuid.uuid4())

        suggestions = await service.get_suggestions(line)

        assert {first.id, second.id} <= {s.target_id for s in suggestions}

    @pytest.mark.asyncio
    async def test_model_suggestion_with_writeoffs(self, service, make_line, make_rule):
        rule = await make_rule(
            "Bank fees",
            match_label=TextCondition.CONTAINS,
            match_label_param="fee",
            writeoff_lines=[("Bank fee", AmountType.PERCENTAGE_ST_LINE, "100")],
        )
        await make_rule("Button", rule_type=RuleType.WRITEOFF_BUTTON)
        line = await make_line("-2.50", "Monthly bank fee")

        suggestions = await service.get_suggestions(line)

        assert len(suggestions) == 1
        suggestion = suggestions[0]
        assert suggestion.source == SuggestionSourceEnum.MODEL
        assert suggestion.reconcile_model_id == rule.id
        assert suggestion.amount == Decimal("2.50")
        assert suggestion.writeoffs[0].label == "Bank fee"

    @pytest.mark.asyncio
    async def test_auto_reconcile_rule_stops_model_suggestions(self, service, make_line, make_rule):
        await make_rule("Auto", sequence=1, auto_reconcile=True)
        await make_rule("Later", sequence=2)
        line = await make_line("-5")

        suggestions = await service.get_suggestions(line)

        assert [s.reference for s in suggestions] == ["Auto"]


class TestBatchAutoReconcile:
    """Tests for batch_auto_reconcile()."""

    @pytest.mark.asyncio
    async def test_rules_and_perfect_matches(self, service, make_line, make_document, make_rule):
        await make_rule(
            "Bank fees",
            auto_reconcile=True,
            match_label=TextCondition.CONTAINS,
            match_label_param="fee",
            writeoff_lines=[("Bank fee", AmountType.PERCENTAGE_ST_LINE, "100")],
        )
        fee = await make_line("-2.50", "Monthly bank fee", line_date=date(2024, 1, 3))
        paid = await make_line("100.00", "Payment INV-2024-001")
        unknown = await make_line("7.00", "Mystery")
        await make_document("100.00", number="INV-2024-001")

        result = await service.batch_auto_reconcile([unknown, paid, fee])

        assert result.reconciled_count == 2
        assert result.skipped_count == 1
        assert result.errors == []
        assert fee.is_reconciled is True
        assert paid.is_reconciled is True
        assert unknown.is_reconciled is False

    @pytest.mark.asyncio
    async def test_invoice_matching_writes_off_difference(self, service, make_line, make_document, make_rule):
        rule = await make_rule(
            "Invoices",
            rule_type=RuleType.INVOICE_MATCHING,
            auto_reconcile=True,
            payment_tolerance_param=Decimal("5"),
            payment_tolerance_type=ToleranceType.PERCENTAGE,
        )
        line = await make_line("102.00", "Transfer")
        invoice = await make_document("100.00")

        result = await service.batch_auto_reconcile([line], apply_perfect_matches=False)

        assert result.reconciled_count == 1
        assert invoice.status == DocumentStatus.PAID
        partials = await service.get_partials(line)
        assert sorted(p.amount for p in partials) == [Decimal("2.00"), Decimal("100.00")]
        assert all(p.reconcile_model_id == rule.id for p in partials)

    @pytest.mark.asyncio
    async def test_writeoff_rule_without_lines_takes_residual(self, service, make_line, make_rule):
        await make_rule("Catch all", auto_reconcile=True, match_label=TextCondition.CONTAINS, match_label_param="interest")
        line = await make_line("0.42", "Interest Q1")

        result = await service.batch_auto_reconcile([line])

        assert result.reconciled_count == 1
        assert line.amount_residual == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_matching_order(self, service, make_line, make_document):
        await make_document("100.00", number="INV-1", document_date=date(2024, 1, 1))
        older = await make_line("100.00", "INV-1", line_date=date(2024, 1, 5))
        newer = await make_line("100.00", "INV-1", line_date=date(2024, 1, 10))

        result = await service.batch_auto_reconcile([older, newer], matching_order="new_first")

        assert result.reconciled_count == 1
        assert newer.is_reconciled is True
        assert older.is_reconciled is False

    @pytest.mark.asyncio
    async def test_failed_line_does_not_stop_batch(self, service, make_line, make_document, db_session, monkeypatch):
        blocked = await make_document("100.00", number="INV-1")
        await make_document("200.00", number="INV-2")
        failing = await make_line("100.00", "INV-1", line_date=date(2024, 1, 5))
        passing = await make_line("200.00", "INV-2", line_date=date(2024, 1, 10))
        blocked_id, failing_id = blocked.id, failing.id
        allocate = service.documents.allocate

        async def allocate_unless_blocked(document_type, document_id, amount):
            if document_id == blocked_id:
                raise DocumentLookupError("Invoice INV-1 is locked")
            await allocate(document_type, document_id, amount)

        monkeypatch.setattr(service.documents, "allocate", allocate_unless_blocked)

        result = await service.batch_auto_reconcile([failing, passing])

        assert result.reconciled_count == 1
        assert [e.line_id for e in result.errors] == [failing_id]
        await db_session.refresh(passing)
        assert passing.is_reconciled is True

    @pytest.mark.asyncio
    async def test_reconciled_lines_are_skipped(self, service, make_line):
        line = await make_line("10")
        await service.reconcile(line, [ReconcileMatch(reconcile_type="manual", amount=Decimal("10"))])

        result = await service.batch_auto_reconcile([line])

        assert result.reconciled_count == 0
        assert result.skipped_count == 1


class TestPartnerAndReview:
    """Tests for match_partner() and set_checked()."""

    @pytest.mark.asyncio
    async def test_match_partner_persists_first_hit(self, service, make_line, make_rule):
        acme, other = uuid.uuid4(), uuid.uuid4()
        await make_rule("Acme", sequence=1, mappings=[(acme, "ACME")])
        await make_rule("Other", sequence=2, mappings=[(other, "ACME")])
        line = await make_line("50", "ACME invoice 12")

        assert await service.match_partner(line) == acme
        assert line.partner_id == acme

    @pytest.mark.asyncio
    async def test_match_partner_miss(self, service, make_line, make_rule):
        await make_rule("Acme", mappings=[(uuid.uuid4(), "ACME")])
        line = await make_line("50", "Groceries")

        assert await service.match_partner(line) is None
        assert line.partner_id is None

    @pytest.mark.asyncio
    async def test_set_checked_is_independent(self, service, make_line):
        line = await make_line("50")

        await service.set_checked(line, True)

        assert line.checked is True
        assert line.is_reconciled is False
