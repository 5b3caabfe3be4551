from __future__ import annotations

import io
import zipfile
from pathlib import Path

from grantforge.parsers.base import ParsedText, decode_bytes


def _suffix(file_name: str) -> str:
    return Path(file_name).suffix.lower()


class PdfParser:
    parser_id = "pdf"

    def supports(self, *, file_name: str, content_type: str) -> bool:
        return content_type.lower() == "application/pdf" or _suffix(file_name) == ".pdf"

    def parse(self, content: bytes) -> ParsedText:
        from pypdf import PdfReader
        from pypdf.errors import PyPdfError

        try:
            reader = PdfReader(io.BytesIO(content), strict=False)
            pages = [" ".join((page.extract_text() or "").split()) for page in reader.pages]
        except (PyPdfError, ValueError, OSError) as exc:
            return ParsedText(parser_id=self.parser_id, error=f"pdf parse failed: {exc}")
        return ParsedText(parser_id=self.parser_id, pages=[page for page in pages if page])


class DocxParser:
    parser_id = "docx"
    _CONTENT_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}

    def supports(self, *, file_name: str, content_type: str) -> bool:
        return content_type.lower() in self._CONTENT_TYPES or _suffix(file_name) == ".docx"

    def parse(self, content: bytes) -> ParsedText:
        from docx import Document
        from docx.opc.exceptions import PackageNotFoundError

        try:
            document = Document(io.BytesIO(content))
        except (PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError) as exc:
            return ParsedText(parser_id=self.parser_id, error=f"docx parse failed: {exc}")

        lines = [" ".join(paragraph.text.split()) for paragraph in document.paragraphs]
        for table in document.tables:
            for row in table.rows:
                cells = [" ".join(cell.text.split()) for cell in row.cells]
                lines.append(" | ".join(cell for cell in cells if cell))
        text = "\n".join(line for line in lines if line)
        return ParsedText(parser_id=self.parser_id, pages=[text] if text else [])


class RtfParser:
    parser_id = "rtf"
    _CONTENT_TYPES = {"application/rtf", "text/rtf"}

    def supports(self, *, file_name: str, content_type: str) -> bool:
        return content_type.lower() in self._CONTENT_TYPES or _suffix(file_name) == ".rtf"

    def parse(self, content: bytes) -> ParsedText:
        from striprtf.striprtf import rtf_to_text

        decoded = decode_bytes(content)
        if decoded is None:
            return ParsedText(parser_id=self.parser_id, error="rtf decode failed using utf-8 and latin-1")
        text = "\n".join(line.strip() for line in rtf_to_text(decoded).splitlines() if line.strip())
        return ParsedText(parser_id=self.parser_id, pages=[text] if text else [])


class PlainTextParser:
    parser_id = "text"
    _SUFFIXES = {".txt", ".md", ".csv", ".json", ".html", ".htm", ".xml"}

    def supports(self, *, file_name: str, content_type: str) -> bool:
        return content_type.lower().startswith("text/") or _suffix(file_name) in self._SUFFIXES

    def parse(self, content: bytes) -> ParsedText:
        decoded = decode_bytes(content)
        if decoded is None:
            return ParsedText(parser_id=self.parser_id, error="text decode failed using utf-8 and latin-1")
        pages = [page.strip() for page in decoded.replace("\r\n", "\n").split("\f")]
        return ParsedText(parser_id=self.parser_id, pages=[page for page in pages if page])
