from grantforge.parsers.base import ParsedText
from grantforge.parsers.registry import ParserRegistry, extract_text

__all__ = ["ParsedText", "ParserRegistry", "extract_text"]
