"""
Bank Reconciliation Service

Handles:
- Match suggestion generation (open invoices, payments, reconcile models)
- Reconciliation (partial / full) with document residual bookkeeping
- Undo of reconciliations
- Batch auto-reconcile driven by reconcile models
- Partner inference from reconcile model mappings

Every reconcile/undo runs in one transaction: commit on success,
rollback on any error.
"""
import uuid
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from bankrec.core.config import settings
from bankrec.models.bank import (
    BankStatementLine,
    FullReconcile,
    MatchingOrder,
    PartialReconcile,
    ReconcileModel,
    ReconcileType,
    RuleType,
)
from bankrec.models.documents import DocumentType, OpenDocument
from bankrec.schemas.bank import (
    BatchReconcileError,
    BatchReconcileResult,
    MatchSuggestion,
    ReconcileMatch,
    ReconcileResult,
    ReconcileTypeEnum,
    SuggestedWriteOff,
    SuggestionSourceEnum,
    match_quality,
)
from bankrec.services.bank_statements import BankStatementStore
from bankrec.services.logging import reconciliation_logger
from bankrec.services.open_documents import DocumentLookup, DocumentLookupError, SqlDocumentLookup
from bankrec.services.reconcile_rules import (
    CompiledRule,
    amount_tolerance,
    compile_rules,
    compute_writeoffs,
    find_partner,
    first_matching,
)

# Suggestion scoring
EXACT_AMOUNT_SCORE = 100
TOLERANCE_AMOUNT_SCORE = 80
PAYMENT_TOLERANCE_SCORE = 70
PAYMENT_TOLERANCE_PERCENT = Decimal("5")
REFERENCE_SCORE = 50
PARTNER_SCORE = 30
MODEL_SCORE = 60
PERFECT_SCORE = 150
SUGGESTIONS_PER_SOURCE = 5
DATE_PROXIMITY_SCORES = ((3, 20), (7, 10), (30, 5))


class ReconciliationError(Exception):
    """Base exception for reconciliation operations."""
    pass


class LineAlreadyReconciledError(ReconciliationError):
    """Raised when reconciling a line whose residual is already settled."""
    pass


class UnknownTargetError(ReconciliationError):
    """Raised when a match references an invoice or payment that does not exist."""
    pass


class OverAllocationError(ReconciliationError):
    """Raised when allocations exceed the line's residual."""
    def __init__(self, allocated: Decimal, residual: Decimal):
        self.allocated = allocated
        self.residual = residual
        super().__init__(f"Allocations of {allocated} exceed the residual amount {residual}")


class ConcurrentModificationError(ReconciliationError):
    """Raised when the line changed since it was read."""
    pass


def _residual(line: BankStatementLine) -> Decimal:
    if line.amount_residual is None:
        return abs(line.amount)
    return line.amount_residual


def _settled(amount: Decimal) -> bool:
    return abs(amount) < settings.RESIDUAL_TOLERANCE


class ReconciliationService:
    """
    Reconciliation orchestrator for one bank account.

    Reads rules through the rule engine, open documents through a
    DocumentLookup and writes Partial/Full Reconciles back through the
    statement store.
    """

    def __init__(
        self,
        db: AsyncSession,
        bank_account_id: uuid.UUID,
        documents: Optional[DocumentLookup] = None,
    ):
        self.db = db
        self.bank_account_id = bank_account_id
        self.store = BankStatementStore(db, bank_account_id)
        self.documents = documents if documents is not None else SqlDocumentLookup(db)

    async def load_rules(self) -> List[CompiledRule]:
        """Active reconcile models in ascending sequence, compiled."""
        result = await self.db.execute(
            select(ReconcileModel)
            .where(ReconcileModel.active.is_(True))
            .order_by(ReconcileModel.sequence, ReconcileModel.name)
        )
        return compile_rules(result.scalars().all())

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def get_suggestions(
        self,
        line: BankStatementLine,
        rules: Optional[List[CompiledRule]] = None,
    ) -> List[MatchSuggestion]:
        """
        Ranked suggestions for a line. Read-only.

        Top invoices and payments (scored on amount, reference, partner and
        date proximity) plus matching non-button reconcile models.
        """
        if rules is None:
            rules = await self.load_rules()
        matching_rule = first_matching(rules, line, [RuleType.INVOICE_MATCHING])

        suggestions: List[MatchSuggestion] = []
        invoices = await self._document_suggestions(line, DocumentType.INVOICE, matching_rule)
        suggestions.extend(invoices[:SUGGESTIONS_PER_SOURCE])
        payments = await self._document_suggestions(line, DocumentType.PAYMENT, matching_rule)
        suggestions.extend(payments[:SUGGESTIONS_PER_SOURCE])
        suggestions.extend(self._model_suggestions(line, rules))

        suggestions.sort(key=lambda s: s.score, reverse=True)
        return suggestions[: settings.MAX_SUGGESTIONS]

    def _search_window(self, target: Decimal, document_type: DocumentType, rule: Optional[CompiledRule]):
        """Residual range worth fetching for a target amount."""
        margin = settings.RESIDUAL_TOLERANCE
        if document_type == DocumentType.PAYMENT:
            percent = PAYMENT_TOLERANCE_PERCENT
        else:
            # Fixed tolerances do not depend on the document amount
            fixed = amount_tolerance(rule, Decimal("0"))
            if fixed:
                return max(target - fixed - margin, Decimal("0")), target + fixed + margin
            percent = amount_tolerance(rule, Decimal("100"))
        if percent >= 100:
            return Decimal("0"), target * 100
        low = target / (1 + percent / 100) - margin
        high = target / (1 - percent / 100) + margin
        return low.quantize(Decimal("0.01")), high.quantize(Decimal("0.01"))

    async def _find_candidates(
        self,
        line: BankStatementLine,
        document_type: DocumentType,
        rule: Optional[CompiledRule],
        partner_id: Optional[uuid.UUID] = None,
    ) -> List[OpenDocument]:
        target = _residual(line)
        low, high = self._search_window(target, document_type, rule)
        model = rule.model if rule is not None else None
        past_months = model.past_months_limit if model is not None and model.past_months_limit else settings.DEFAULT_PAST_MONTHS_LIMIT
        same_currency = model.match_same_currency if model is not None and model.match_same_currency is not None else True

        documents = await self.documents.find_open_documents(
            document_type,
            partner_id,
            low,
            high,
            currency=line.currency_code if same_currency else None,
            since=line.date - relativedelta(months=past_months),
        )
        # Incoming money settles customer documents, outgoing money vendor ones
        return [
            document for document in documents
            if (document.amount_total >= 0) == (line.amount >= 0)
        ]

    def _score_document(
        self,
        line: BankStatementLine,
        document: OpenDocument,
        document_type: DocumentType,
        rule: Optional[CompiledRule],
    ) -> float:
        """Suggestion score; 0 when the amount is out of tolerance."""
        target = _residual(line)
        residual = document.amount_residual
        diff = abs(target - residual)

        if document_type == DocumentType.INVOICE:
            allowed = amount_tolerance(rule, residual)
            if diff < Decimal("0.01"):
                score = float(EXACT_AMOUNT_SCORE)
            elif diff <= allowed:
                score = TOLERANCE_AMOUNT_SCORE - float(diff / residual * 20)
            else:
                return 0.0
        else:
            if diff < Decimal("0.01"):
                score = float(EXACT_AMOUNT_SCORE)
            elif diff <= residual * PAYMENT_TOLERANCE_PERCENT / 100:
                score = float(PAYMENT_TOLERANCE_SCORE)
            else:
                return 0.0

        label = (line.payment_ref or "").lower()
        references = [ref for ref in (document.number, document.reference) if ref]
        if label and any(ref.lower() in label for ref in references):
            score += REFERENCE_SCORE

        if line.partner_id is not None and line.partner_id == document.partner_id:
            score += PARTNER_SCORE
        elif document_type == DocumentType.INVOICE and line.partner_name and document.partner_name:
            similarity = SequenceMatcher(None, line.partner_name.lower(), document.partner_name.lower()).ratio()
            score += similarity * 100 * 0.3

        if document_type == DocumentType.INVOICE and document.document_date:
            days = abs((line.date - document.document_date).days)
            for max_days, bonus in DATE_PROXIMITY_SCORES:
                if days <= max_days:
                    score += bonus
                    break

        return round(score, 2)

    async def _document_suggestions(
        self,
        line: BankStatementLine,
        document_type: DocumentType,
        rule: Optional[CompiledRule],
    ) -> List[MatchSuggestion]:
        suggestions = []
        # Restricted to the line's counterparty once it is known
        for document in await self._find_candidates(line, document_type, rule, partner_id=line.partner_id):
            score = self._score_document(line, document, document_type, rule)
            if score <= 0:
                continue
            suggestions.append(
                MatchSuggestion(
                    source=SuggestionSourceEnum(document_type.value),
                    reconcile_type=ReconcileTypeEnum(document_type.value),
                    target_id=document.id,
                    reference=document.number or document.reference or str(document.id),
                    partner_id=document.partner_id,
                    partner_name=document.partner_name,
                    amount=document.amount_residual,
                    document_date=document.document_date,
                    score=score,
                    match_type=match_quality(score),
                )
            )
        suggestions.sort(key=lambda s: s.score, reverse=True)
        return suggestions

    def _model_suggestions(self, line: BankStatementLine, rules: Sequence[CompiledRule]) -> List[MatchSuggestion]:
        suggestions = []
        for rule in rules:
            if rule.rule_type == RuleType.WRITEOFF_BUTTON or not rule.matches(line):
                continue

            writeoffs = [
                SuggestedWriteOff(account_code=rule_line.account_code, label=rule_line.label, amount=amount)
                for rule_line, amount in compute_writeoffs(rule, line)
            ]
            suggestions.append(
                MatchSuggestion(
                    source=SuggestionSourceEnum.MODEL,
                    reconcile_type=ReconcileTypeEnum.MANUAL,
                    reference=rule.name,
                    partner_id=find_partner(rule, line),
                    amount=sum((w.amount for w in writeoffs), Decimal("0.00")),
                    score=MODEL_SCORE,
                    match_type=match_quality(MODEL_SCORE),
                    reconcile_model_id=rule.id,
                    rule_type=rule.rule_type.value,
                    auto_reconcile=rule.auto_reconcile,
                    writeoffs=writeoffs,
                )
            )
            # An auto-reconcile model shadows the ones after it
            if rule.auto_reconcile:
                break
        return suggestions

    # ------------------------------------------------------------------
    # Reconcile / undo
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        line: BankStatementLine,
        matches: Sequence[Union[ReconcileMatch, Dict]],
        expected_version: Optional[int] = None,
    ) -> ReconcileResult:
        """
        Allocate parts of a line against invoices, payments or write-offs.

        Creates one PartialReconcile per match; when the line's allocations
        net to zero every ungrouped partial of the line joins a new
        FullReconcile. Raises ReconciliationError (and rolls back) when the
        line is already reconciled, a target is unknown, allocations exceed
        the residual or the line was modified concurrently.
        """
        line_id = line.id
        try:
            result = await self._reconcile(line, [ReconcileMatch.model_validate(m) for m in matches], expected_version)
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            reconciliation_logger.reconcile_rejected(line_id, self.bank_account_id, "concurrent modification")
            raise ConcurrentModificationError(f"Statement line {line_id} was modified concurrently")
        except DocumentLookupError as e:
            await self.db.rollback()
            reconciliation_logger.reconcile_rejected(line_id, self.bank_account_id, str(e))
            raise ReconciliationError(str(e))
        except ReconciliationError as e:
            await self.db.rollback()
            reconciliation_logger.reconcile_rejected(line_id, self.bank_account_id, str(e))
            raise
        except Exception:
            await self.db.rollback()
            raise
        return result

    async def _reconcile(
        self,
        line: BankStatementLine,
        matches: List[ReconcileMatch],
        expected_version: Optional[int],
    ) -> ReconcileResult:
        await self.db.refresh(line)
        if expected_version is not None and line.version != expected_version:
            raise ConcurrentModificationError(
                f"Statement line {line.id} is at version {line.version}, expected {expected_version}"
            )
        if line.bank_account_id != self.bank_account_id:
            raise ReconciliationError(f"Statement line {line.id} does not belong to bank account {self.bank_account_id}")
        if line.is_reconciled:
            raise LineAlreadyReconciledError(f"Statement line {line.id} is already reconciled")
        if not matches:
            raise ReconciliationError("No matches given")

        residual = _residual(line)
        allocated = sum((abs(m.amount) for m in matches), Decimal("0.00"))
        if allocated > residual + settings.RESIDUAL_TOLERANCE:
            raise OverAllocationError(allocated, residual)

        partials: List[PartialReconcile] = []
        for match in matches:
            reconcile_type = ReconcileType(match.reconcile_type.value)
            match_date = match.date
            if reconcile_type != ReconcileType.MANUAL:
                if match.target_id is None:
                    raise UnknownTargetError(f"A {reconcile_type.value} match needs a target id")
                document_type = DocumentType(reconcile_type.value)
                document = await self.documents.get_document(document_type, match.target_id)
                if document is None:
                    raise UnknownTargetError(f"{reconcile_type.value} {match.target_id} not found")
                await self.documents.allocate(document_type, match.target_id, match.amount)
                match_date = match_date or document.document_date

            partial = PartialReconcile(
                id=uuid.uuid4(),
                bank_statement_line_id=line.id,
                reconcile_type=reconcile_type,
                reconcile_id=match.target_id if reconcile_type != ReconcileType.MANUAL else None,
                reconcile_model_id=match.reconcile_model_id,
                label=match.label,
                amount=abs(match.amount),
                currency_code=line.currency_code,
                max_date=max(line.date, match_date) if match_date else line.date,
            )
            self.db.add(partial)
            partials.append(partial)

        new_residual = residual - allocated
        if _settled(new_residual):
            new_residual = Decimal("0.00")
        line.amount_residual = new_residual

        full_reconcile = None
        if new_residual == 0:
            line.is_reconciled = True
            line.checked = True
            await self.db.flush()
            full_reconcile = await self._create_full_reconcile(line)
        await self.db.flush()

        if line.statement_id is not None:
            statement = await self.store.get_statement(line.statement_id)
            if statement is not None:
                await self.store.recompute_statement(statement)

        reconciliation_logger.reconcile_applied(
            line_id=line.id,
            account_id=self.bank_account_id,
            allocated=allocated,
            residual=new_residual,
            partial_count=len(partials),
            full_reconcile=full_reconcile.name if full_reconcile else None,
            reconcile_model_id=next((m.reconcile_model_id for m in matches if m.reconcile_model_id), None),
        )
        return ReconcileResult(
            line_id=line.id,
            partial_ids=[p.id for p in partials],
            full_reconcile_id=full_reconcile.id if full_reconcile else None,
            full_reconcile_name=full_reconcile.name if full_reconcile else None,
            amount_residual=new_residual,
            is_reconciled=line.is_reconciled,
            version=line.version,
        )

    async def _next_full_reconcile_name(self) -> str:
        result = await self.db.execute(select(func.max(FullReconcile.name)))
        last = result.scalar_one_or_none()
        number = int(last[3:]) + 1 if last and last[3:].isdigit() else 1
        return f"REC{number:06d}"

    async def _create_full_reconcile(self, line: BankStatementLine) -> FullReconcile:
        """Group every ungrouped partial of the line."""
        full_reconcile = FullReconcile(id=uuid.uuid4(), name=await self._next_full_reconcile_name())
        self.db.add(full_reconcile)
        await self.db.flush()

        result = await self.db.execute(
            select(PartialReconcile)
            .where(PartialReconcile.bank_statement_line_id == line.id)
            .where(PartialReconcile.full_reconcile_id.is_(None))
        )
        for partial in result.scalars().all():
            partial.full_reconcile_id = full_reconcile.id
        return full_reconcile

    async def get_partials(self, line: BankStatementLine) -> List[PartialReconcile]:
        result = await self.db.execute(
            select(PartialReconcile)
            .where(PartialReconcile.bank_statement_line_id == line.id)
            .order_by(PartialReconcile.created_at)
        )
        return list(result.scalars().all())

    async def undo_reconciliation(self, line: BankStatementLine) -> int:
        """
        Remove every allocation of a line.

        Documents get their residual back, emptied Full Reconciles are
        deleted, residual resets to |amount|. checked is left untouched.
        Returns the number of partials removed.
        """
        try:
            partials = await self.get_partials(line)
            full_ids = {p.full_reconcile_id for p in partials if p.full_reconcile_id}

            for partial in partials:
                if partial.reconcile_type != ReconcileType.MANUAL and partial.reconcile_id:
                    document_type = DocumentType(ReconcileType(partial.reconcile_type).value)
                    if await self.documents.get_document(document_type, partial.reconcile_id) is not None:
                        await self.documents.release(document_type, partial.reconcile_id, partial.amount)
                await self.db.delete(partial)
            await self.db.flush()

            for full_id in full_ids:
                remaining = await self.db.execute(
                    select(func.count(PartialReconcile.id)).where(PartialReconcile.full_reconcile_id == full_id)
                )
                if remaining.scalar_one() == 0:
                    full_reconcile = await self.db.get(FullReconcile, full_id)
                    if full_reconcile is not None:
                        await self.db.delete(full_reconcile)

            line.amount_residual = abs(line.amount)
            line.is_reconciled = False
            await self.db.flush()

            if line.statement_id is not None:
                statement = await self.store.get_statement(line.statement_id)
                if statement is not None:
                    await self.store.recompute_statement(statement)
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConcurrentModificationError(f"Statement line {line.id} was modified concurrently")
        except Exception:
            await self.db.rollback()
            raise

        reconciliation_logger.reconcile_undone(line.id, self.bank_account_id, len(partials))
        return len(partials)

    # ------------------------------------------------------------------
    # Batch auto-reconcile
    # ------------------------------------------------------------------

    async def batch_auto_reconcile(
        self,
        lines: Sequence[BankStatementLine],
        matching_order: Union[MatchingOrder, str] = MatchingOrder.OLD_FIRST,
        apply_perfect_matches: bool = True,
    ) -> BatchReconcileResult:
        """
        Auto-reconcile lines with active auto_reconcile models.

        Lines are processed by ordering key (oldest or newest first). The
        first model that matches and yields allocations is applied; when no
        model applies, a perfect document suggestion is used if allowed.
        Each line commits separately; failures are collected.
        """
        order = MatchingOrder(matching_order)
        rules = await self.load_rules()
        auto_rules = [rule for rule in rules if rule.auto_reconcile and rule.rule_type != RuleType.WRITEOFF_BUTTON]

        ordered = sorted(lines, key=lambda l: l.internal_index or "", reverse=order == MatchingOrder.NEW_FIRST)
        # A failed line rolls back and expires every loaded instance
        line_ids = [line.id for line in ordered]
        result = BatchReconcileResult()

        for line, line_id in zip(ordered, line_ids):
            await self.db.refresh(line)
            if line.is_reconciled:
                result.skipped_count += 1
                continue
            try:
                applied = await self._auto_reconcile_line(line, auto_rules, rules, apply_perfect_matches)
            except ReconciliationError as e:
                result.errors.append(BatchReconcileError(line_id=line_id, error=str(e)))
                continue
            if applied:
                result.reconciled_count += 1
            else:
                result.skipped_count += 1

        reconciliation_logger.batch_completed(
            account_id=self.bank_account_id,
            reconciled=result.reconciled_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
        )
        return result

    async def _auto_reconcile_line(
        self,
        line: BankStatementLine,
        auto_rules: Sequence[CompiledRule],
        rules: Sequence[CompiledRule],
        apply_perfect_matches: bool,
    ) -> bool:
        for rule in auto_rules:
            if not rule.matches(line):
                continue
            if line.partner_id is None:
                partner_id = find_partner(rule, line)
                if partner_id is not None:
                    line.partner_id = partner_id
                    await self.db.flush()
            matches = await self._rule_allocations(rule, line)
            if matches:
                await self.reconcile(line, matches)
                return True

        if apply_perfect_matches:
            for suggestion in await self.get_suggestions(line, rules=list(rules)):
                if suggestion.source == SuggestionSourceEnum.MODEL or suggestion.score < PERFECT_SCORE:
                    continue
                amount = min(suggestion.amount, _residual(line))
                await self.reconcile(
                    line,
                    [ReconcileMatch(reconcile_type=suggestion.reconcile_type, target_id=suggestion.target_id, amount=amount)],
                )
                return True
        return False

    async def _rule_allocations(self, rule: CompiledRule, line: BankStatementLine) -> List[ReconcileMatch]:
        """Allocations a model produces for a line, clamped to its residual."""
        residual = _residual(line)
        if _settled(residual):
            return []

        if rule.rule_type == RuleType.INVOICE_MATCHING:
            return await self._invoice_allocations(rule, line, residual)

        writeoffs = compute_writeoffs(rule, line)
        if not writeoffs:
            return [
                ReconcileMatch(
                    reconcile_type=ReconcileTypeEnum.MANUAL,
                    amount=residual,
                    label=rule.name,
                    date=line.date,
                    reconcile_model_id=rule.id,
                )
            ]

        matches = []
        remaining = residual
        for rule_line, amount in writeoffs:
            amount = min(amount, remaining)
            if amount <= 0:
                continue
            matches.append(
                ReconcileMatch(
                    reconcile_type=ReconcileTypeEnum.MANUAL,
                    amount=amount,
                    label=rule_line.label or rule.name,
                    date=line.date,
                    reconcile_model_id=rule.id,
                )
            )
            remaining -= amount
        return matches

    async def _invoice_allocations(
        self,
        rule: CompiledRule,
        line: BankStatementLine,
        residual: Decimal,
    ) -> List[ReconcileMatch]:
        partner_id = line.partner_id or find_partner(rule, line)
        candidates = []
        for document_type in (DocumentType.INVOICE, DocumentType.PAYMENT):
            for document in await self._find_candidates(line, document_type, rule, partner_id=partner_id):
                candidates.append((document_type, document))
        if not candidates:
            return []

        candidates.sort(
            key=lambda c: (c[1].document_date, c[1].number or ""),
            reverse=rule.matching_order == MatchingOrder.NEW_FIRST,
        )
        for document_type, document in candidates:
            allowed = amount_tolerance(rule, document.amount_residual)
            difference = residual - document.amount_residual
            if abs(difference) >= Decimal("0.01") and abs(difference) > allowed:
                continue

            allocation = min(residual, document.amount_residual)
            matches = [
                ReconcileMatch(
                    reconcile_type=ReconcileTypeEnum(document_type.value),
                    target_id=document.id,
                    amount=allocation,
                    date=document.document_date,
                    reconcile_model_id=rule.id,
                )
            ]
            # Payment difference within tolerance is written off
            if difference >= Decimal("0.01"):
                matches.append(
                    ReconcileMatch(
                        reconcile_type=ReconcileTypeEnum.MANUAL,
                        amount=difference,
                        label=f"{rule.name}: payment difference",
                        date=line.date,
                        reconcile_model_id=rule.id,
                    )
                )
            return matches
        return []

    # ------------------------------------------------------------------
    # Partner / review flag
    # ------------------------------------------------------------------

    async def match_partner(self, line: BankStatementLine) -> Optional[uuid.UUID]:
        """Assign the partner of the first matching model mapping, if any."""
        for rule in await self.load_rules():
            partner_id = find_partner(rule, line)
            if partner_id is None:
                continue
            line.partner_id = partner_id
            await self.db.flush()
            await self.db.commit()
            reconciliation_logger.partner_matched(line.id, self.bank_account_id, partner_id, rule.id)
            return partner_id
        return None

    async def set_checked(self, line: BankStatementLine, checked: bool = True) -> BankStatementLine:
        """Set the reviewed flag; independent of reconciliation state."""
        line.checked = checked
        await self.db.commit()
        return line
