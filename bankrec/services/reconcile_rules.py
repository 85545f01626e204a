"""
Reconcile Rule Engine

Evaluates declarative reconcile models against statement lines:
- Filters compiled once per rule into typed variants
- Fixed evaluation order: nature, amount, label, note, partner
- Partner inference from regex mappings (first mapping wins)
- Write-off amount computation for rule lines
- Payment tolerance for invoice matching

The engine only reads lines; it never mutates them.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple, Union

from bankrec.core.config import settings
from bankrec.models.bank import (
    AmountCondition,
    AmountType,
    BankStatementLine,
    MatchingOrder,
    MatchNature,
    ReconcileModel,
    ReconcileModelLine,
    RuleType,
    TextCondition,
    ToleranceType,
)
from bankrec.services.bank.parsers import normalize_amount

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Line attribute behind each text location
TEXT_SOURCES = {
    "label": "payment_ref",
    "note": "narration",
    "reference": "ref",
}


class ReconcileRuleError(Exception):
    """Raised when a reconcile model cannot be compiled."""
    pass


def _value(value, default):
    return default if value is None else value


def _compile_regex(pattern: str, rule_name: str) -> Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ReconcileRuleError(f"Invalid regular expression in rule '{rule_name}': {e}")


@dataclass(frozen=True)
class NatureFilter:
    nature: MatchNature

    def evaluate(self, line: BankStatementLine) -> bool:
        if self.nature == MatchNature.AMOUNT_RECEIVED:
            return line.amount >= 0
        if self.nature == MatchNature.AMOUNT_PAID:
            return line.amount <= 0
        return True


@dataclass(frozen=True)
class AmountFilter:
    """Bounds are compared against the absolute line amount."""
    condition: AmountCondition
    minimum: Decimal
    maximum: Optional[Decimal] = None

    def evaluate(self, line: BankStatementLine) -> bool:
        amount = abs(line.amount)
        if self.condition == AmountCondition.LOWER:
            return amount < self.minimum
        if self.condition == AmountCondition.GREATER:
            return amount > self.minimum
        if amount < self.minimum:
            return False
        return self.maximum is None or amount <= self.maximum


@dataclass(frozen=True)
class TextFilter:
    condition: TextCondition
    param: str
    sources: Tuple[str, ...]
    pattern: Optional[Pattern] = None

    def text(self, line: BankStatementLine) -> str:
        values = [getattr(line, TEXT_SOURCES[source]) for source in self.sources]
        return "\n".join(value for value in values if value)

    def evaluate(self, line: BankStatementLine) -> bool:
        text = self.text(line)
        if self.condition == TextCondition.CONTAINS:
            return self.param.lower() in text.lower()
        if self.condition == TextCondition.NOT_CONTAINS:
            return self.param.lower() not in text.lower()
        return bool(self.pattern.search(text))


@dataclass(frozen=True)
class PartnerFilter:
    def evaluate(self, line: BankStatementLine) -> bool:
        return line.partner_id is not None


LineFilter = Union[NatureFilter, AmountFilter, TextFilter, PartnerFilter]


@dataclass(frozen=True)
class PartnerMapping:
    partner_id: uuid.UUID
    payment_ref_pattern: Optional[Pattern]
    partner_name_pattern: Optional[Pattern]

    def matches(self, line: BankStatementLine) -> bool:
        if self.payment_ref_pattern is not None and line.payment_ref:
            if self.payment_ref_pattern.search(line.payment_ref):
                return True
        if self.partner_name_pattern is not None and line.partner_name:
            if self.partner_name_pattern.search(line.partner_name):
                return True
        return False


@dataclass
class CompiledRule:
    """A reconcile model with its filters prepared for evaluation."""
    model: ReconcileModel
    rule_type: RuleType
    sequence: int
    auto_reconcile: bool
    matching_order: MatchingOrder
    filters: List[LineFilter] = field(default_factory=list)
    partner_mappings: List[PartnerMapping] = field(default_factory=list)

    @property
    def id(self) -> uuid.UUID:
        return self.model.id

    @property
    def name(self) -> str:
        return self.model.name

    def matches(self, line: BankStatementLine) -> bool:
        return all(line_filter.evaluate(line) for line_filter in self.filters)


def _label_sources(model: ReconcileModel) -> Tuple[str, ...]:
    sources = []
    if _value(model.match_text_location_label, True):
        sources.append("label")
    if _value(model.match_text_location_note, False):
        sources.append("note")
    if _value(model.match_text_location_reference, False):
        sources.append("reference")
    return tuple(sources)


def compile_rule(model: ReconcileModel) -> CompiledRule:
    """Build the filter chain of a reconcile model."""
    filters: List[LineFilter] = []

    nature = MatchNature(_value(model.match_nature, MatchNature.BOTH))
    if nature != MatchNature.BOTH:
        filters.append(NatureFilter(nature))

    if model.match_amount:
        filters.append(
            AmountFilter(
                condition=AmountCondition(model.match_amount),
                minimum=Decimal(str(_value(model.match_amount_min, 0))),
                maximum=Decimal(str(model.match_amount_max)) if model.match_amount_max is not None else None,
            )
        )

    sources = _label_sources(model)
    if model.match_label and model.match_label_param and sources:
        condition = TextCondition(model.match_label)
        pattern = _compile_regex(model.match_label_param, model.name) if condition == TextCondition.MATCH_REGEX else None
        filters.append(TextFilter(condition, model.match_label_param, sources, pattern))

    if model.match_note and model.match_note_param:
        condition = TextCondition(model.match_note)
        pattern = _compile_regex(model.match_note_param, model.name) if condition == TextCondition.MATCH_REGEX else None
        filters.append(TextFilter(condition, model.match_note_param, ("note",), pattern))

    if _value(model.match_partner, False):
        filters.append(PartnerFilter())

    mappings = [
        PartnerMapping(
            partner_id=mapping.partner_id,
            payment_ref_pattern=_compile_regex(mapping.payment_ref_regex, model.name) if mapping.payment_ref_regex else None,
            partner_name_pattern=_compile_regex(mapping.narration_regex, model.name) if mapping.narration_regex else None,
        )
        for mapping in model.partner_mappings
    ]

    return CompiledRule(
        model=model,
        rule_type=RuleType(_value(model.rule_type, RuleType.WRITEOFF_BUTTON)),
        sequence=_value(model.sequence, 10),
        auto_reconcile=_value(model.auto_reconcile, False),
        matching_order=MatchingOrder(_value(model.matching_order, settings.DEFAULT_MATCHING_ORDER)),
        filters=filters,
        partner_mappings=mappings,
    )


def compile_rules(models: Iterable[ReconcileModel]) -> List[CompiledRule]:
    """Compile active models in ascending sequence."""
    compiled = [compile_rule(model) for model in models if _value(model.active, True)]
    return sorted(compiled, key=lambda rule: rule.sequence)


def _compiled(rule: Union[ReconcileModel, CompiledRule]) -> CompiledRule:
    return rule if isinstance(rule, CompiledRule) else compile_rule(rule)


def matches_line(rule: Union[ReconcileModel, CompiledRule], line: BankStatementLine) -> bool:
    """True when every configured filter of the rule accepts the line."""
    return _compiled(rule).matches(line)


def find_partner(rule: Union[ReconcileModel, CompiledRule], line: BankStatementLine) -> Optional[uuid.UUID]:
    """Partner of the first mapping (declaration order) matching the line."""
    for mapping in _compiled(rule).partner_mappings:
        if mapping.matches(line):
            return mapping.partner_id
    return None


def compute_amount(
    rule_line: ReconcileModelLine,
    line: BankStatementLine,
    decimal_separator: Optional[str] = None,
) -> Decimal:
    """
    Write-off amount (unsigned) of one rule line for a statement line.

    fixed: the configured amount. percentage / percentage_st_line: share of
    the absolute line amount. regex: first capture group of payment_ref,
    0 when the expression does not match; without a decimal separator the
    separator is detected from the captured text.
    """
    amount_type = AmountType(_value(rule_line.amount_type, AmountType.PERCENTAGE))

    if amount_type == AmountType.FIXED:
        return rule_line.amount.quantize(CENT, rounding=ROUND_HALF_UP)

    if amount_type in (AmountType.PERCENTAGE, AmountType.PERCENTAGE_ST_LINE):
        value = abs(line.amount) * rule_line.amount / Decimal("100")
        return value.quantize(CENT, rounding=ROUND_HALF_UP)

    try:
        match = re.search(rule_line.amount_string, line.payment_ref or "")
    except re.error as e:
        logger.warning(f"Invalid amount regex on rule line {rule_line.id}: {e}")
        return Decimal("0")
    if not match or not match.groups() or match.group(1) is None:
        return Decimal("0")
    separator = decimal_separator
    if separator is None and rule_line.reconcile_model is not None:
        separator = rule_line.reconcile_model.decimal_separator
    value = normalize_amount(re.sub(r"[^\d,.]", "", match.group(1)), separator)
    if value is None:
        return Decimal("0")
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_writeoffs(
    rule: Union[ReconcileModel, CompiledRule],
    line: BankStatementLine,
) -> List[Tuple[ReconcileModelLine, Decimal]]:
    """Computed amount of every rule line, in line sequence order."""
    model = _compiled(rule).model
    separator = model.decimal_separator
    return [(rule_line, compute_amount(rule_line, line, separator)) for rule_line in model.lines]


def amount_tolerance(rule: Union[ReconcileModel, CompiledRule, None], reference_amount: Decimal) -> Decimal:
    """
    Accepted difference between a line and a document amount.

    Without a rule the configured defaults apply.
    """
    if rule is None:
        allow = True
        param = settings.DEFAULT_PAYMENT_TOLERANCE
        tolerance_type = ToleranceType(settings.DEFAULT_PAYMENT_TOLERANCE_TYPE)
    else:
        model = _compiled(rule).model
        allow = _value(model.allow_payment_tolerance, True)
        param = Decimal(str(_value(model.payment_tolerance_param, 0)))
        tolerance_type = ToleranceType(_value(model.payment_tolerance_type, ToleranceType.PERCENTAGE))

    if not allow or not param:
        return Decimal("0")
    if tolerance_type == ToleranceType.PERCENTAGE:
        return (abs(reference_amount) * param / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(str(param))


def first_matching(
    rules: Sequence[CompiledRule],
    line: BankStatementLine,
    rule_types: Optional[Iterable[RuleType]] = None,
) -> Optional[CompiledRule]:
    """First rule (by sequence) of the given types matching the line."""
    wanted = set(rule_types) if rule_types is not None else None
    for rule in rules:
        if wanted is not None and rule.rule_type not in wanted:
            continue
        if rule.matches(line):
            return rule
    return None
