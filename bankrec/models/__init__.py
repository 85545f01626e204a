# Models module
from bankrec.models.bank import (
    BankAccount,
    BankStatement,
    BankStatementLine,
    BankImportHistory,
    ReconcileModel,
    ReconcileModelLine,
    ReconcileModelPartnerMapping,
    PartialReconcile,
    FullReconcile,
    RuleType,
    MatchingOrder,
    MatchNature,
    AmountCondition,
    TextCondition,
    ToleranceType,
    AmountType,
    ReconcileType,
    ImportStatus,
)
from bankrec.models.documents import OpenDocument, DocumentType, DocumentStatus

__all__ = [
    "BankAccount",
    "BankStatement",
    "BankStatementLine",
    "BankImportHistory",
    "ReconcileModel",
    "ReconcileModelLine",
    "ReconcileModelPartnerMapping",
    "PartialReconcile",
    "FullReconcile",
    "RuleType",
    "MatchingOrder",
    "MatchNature",
    "AmountCondition",
    "TextCondition",
    "ToleranceType",
    "AmountType",
    "ReconcileType",
    "ImportStatus",
    "OpenDocument",
    "DocumentType",
    "DocumentStatus",
]
