from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class ParsedText:
    parser_id: str
    pages: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def text(self) -> str:
        return "\n\n".join(page for page in self.pages if page.strip())

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)


class AttachmentParser(Protocol):
    parser_id: str

    def supports(self, *, file_name: str, content_type: str) -> bool:
        ...

    def parse(self, content: bytes) -> ParsedText:
        ...


def decode_bytes(content: bytes) -> str | None:
    for encoding in ("utf-8", "latin-1"):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None
