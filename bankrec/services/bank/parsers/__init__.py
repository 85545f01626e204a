"""Bank statement parsers."""
from .base_parser import (
    BaseStatementParser,
    ParsedTransaction,
    ParseDiagnostic,
    ParseError,
    ParseReport,
    StatementParser,
    decode_content,
    normalize_amount,
    normalize_date,
)
from .camt_parser import CamtParser
from .csv_parser import CsvParser
from .ofx_parser import OfxParser
from .qif_parser import QifParser
from .registry import ParserRegistry, default_registry

__all__ = [
    "BaseStatementParser",
    "ParsedTransaction",
    "ParseDiagnostic",
    "ParseError",
    "ParseReport",
    "StatementParser",
    "decode_content",
    "normalize_amount",
    "normalize_date",
    "CamtParser",
    "CsvParser",
    "OfxParser",
    "QifParser",
    "ParserRegistry",
    "default_registry",
]
