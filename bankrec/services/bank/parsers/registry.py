"""
Parser registry and format detection.

Detection order: file extension confirmed by content validation, then
content validation alone, then the CSV fallback.
"""
from typing import Dict, List, Optional

from .base_parser import ParseError, StatementParser
from .camt_parser import CamtParser
from .csv_parser import CsvParser
from .ofx_parser import OfxParser
from .qif_parser import QifParser

FALLBACK_FORMAT = "csv"


class ParserRegistry:
    """Statement parsers keyed by format name, in registration order."""

    def __init__(self):
        self._parsers: Dict[str, StatementParser] = {}

    def register(self, parser: StatementParser) -> None:
        if not isinstance(parser, StatementParser):
            raise TypeError(f"{parser!r} does not implement StatementParser")
        self._parsers[parser.format_name] = parser

    def get(self, format_name: str) -> StatementParser:
        try:
            return self._parsers[format_name.lower()]
        except KeyError:
            raise ParseError(f"Unsupported statement format: {format_name}")

    @property
    def formats(self) -> List[str]:
        return list(self._parsers)

    def detect(self, content: str, filename: Optional[str] = None) -> StatementParser:
        """Pick the parser for a document."""
        if filename:
            lowered = filename.lower()
            for parser in self._parsers.values():
                extensions = parser.supported_extensions
                if any(lowered.endswith(f".{ext}") for ext in extensions) and parser.validate(content):
                    return parser

        for name, parser in self._parsers.items():
            if name != FALLBACK_FORMAT and parser.validate(content):
                return parser

        if FALLBACK_FORMAT in self._parsers and self._parsers[FALLBACK_FORMAT].validate(content):
            return self._parsers[FALLBACK_FORMAT]
        raise ParseError("Unable to detect statement format")


def default_registry() -> ParserRegistry:
    """Registry with every bundled format."""
    registry = ParserRegistry()
    registry.register(CamtParser())
    registry.register(OfxParser())
    registry.register(QifParser())
    registry.register(CsvParser())
    return registry
