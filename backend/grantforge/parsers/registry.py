from __future__ import annotations

import logging

from grantforge.parsers.base import AttachmentParser, ParsedText
from grantforge.parsers.documents import DocxParser, PdfParser, PlainTextParser, RtfParser

logger = logging.getLogger("grantforge.parsers")


class ParserRegistry:
    def __init__(self, parsers: list[AttachmentParser] | None = None) -> None:
        # RTF goes before plain text because browsers upload it as text/rtf.
        self._parsers = parsers or [PdfParser(), DocxParser(), RtfParser(), PlainTextParser()]

    def parse(self, *, content: bytes, file_name: str, content_type: str) -> ParsedText:
        for parser in self._parsers:
            if parser.supports(file_name=file_name, content_type=content_type):
                return parser.parse(content)
        return ParsedText(parser_id="none", error="No parser registered for this file type.")


def extract_text(*, content: bytes, file_name: str, content_type: str, registry: ParserRegistry | None = None) -> ParsedText:
    parsed = (registry or ParserRegistry()).parse(content=content, file_name=file_name, content_type=content_type)
    if parsed.error:
        logger.warning(
            "attachment_text_extraction_failed",
            extra={
                "event": "attachment_text_extraction_failed",
                "file_name": file_name,
                "content_type": content_type,
                "parser_id": parsed.parser_id,
                "error": parsed.error,
            },
        )
    return parsed
