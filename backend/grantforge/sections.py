"""Resolve a funding-scheme section template into an ordered outline.

Templates are immutable value objects. Every call builds a fresh outline, so
the default template can be shared across requests without copying.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from html import unescape
from typing import Any, Iterable, Mapping

logger = logging.getLogger("grantforge.sections")

NON_WORD_PATTERN = re.compile(r"[^\w\s]")
WHITESPACE_PATTERN = re.compile(r"\s+")
HTML_TAG_PATTERN = re.compile(r"<[^>]*>")


@dataclass(frozen=True)
class SectionTemplate:
    label: str
    key: str | None = None
    description: str = ""
    char_limit: int | None = None
    subsections: tuple["SectionTemplate", ...] = ()

    @property
    def resolved_key(self) -> str:
        return self.key or derive_section_key(self.label)


@dataclass(frozen=True)
class OutlineEntry:
    key: str
    label: str
    depth: int
    description: str = ""
    char_limit: int | None = None
    source: str = "template"

    def to_dict(self) -> dict[str, object]:
        return {
            "key": self.key,
            "label": self.label,
            "depth": self.depth,
            "description": self.description,
            "charLimit": self.char_limit,
            "source": self.source,
        }


@dataclass(frozen=True)
class OutlinePartition:
    present: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


DEFAULT_TEMPLATE: tuple[SectionTemplate, ...] = (
    SectionTemplate(key="summary", label="Executive Summary"),
    SectionTemplate(key="introduction", label="Introduction"),
    SectionTemplate(key="relevance", label="Relevance"),
    SectionTemplate(key="objectives", label="Objectives"),
    SectionTemplate(key="methodology", label="Methodology"),
    SectionTemplate(key="impact", label="Impact"),
    SectionTemplate(key="consortium", label="Consortium"),
    SectionTemplate(key="risk_management", label="Risk Management"),
    SectionTemplate(key="dissemination", label="Dissemination & Communication"),
)


def derive_section_key(label: str) -> str:
    """Stable lookup key for a label: lowercase, word characters only, underscores for spaces."""
    stripped = NON_WORD_PATTERN.sub("", str(label or "").lower()).strip()
    key = WHITESPACE_PATTERN.sub("_", stripped)
    return key or "section"


def derive_section_label(key: str) -> str:
    return " ".join(part.capitalize() for part in str(key).replace("_", " ").split())


def parse_template(payload: Any) -> tuple[SectionTemplate, ...]:
    """Build a template forest from a JSON-like list of section descriptors.

    Entries that are not objects are skipped. A node without a label falls back
    to a label derived from its key.
    """
    if isinstance(payload, Mapping):
        payload = payload.get("sections", [])
    if not isinstance(payload, list):
        return ()

    nodes: list[SectionTemplate] = []
    for item in payload:
        if not isinstance(item, Mapping):
            continue
        key = str(item.get("key") or "").strip() or None
        label = str(item.get("label") or item.get("title") or "").strip()
        if not label:
            label = derive_section_label(key) if key else "Untitled Section"
        char_limit = item.get("charLimit", item.get("char_limit"))
        nodes.append(
            SectionTemplate(
                label=label,
                key=key,
                description=str(item.get("description") or "").strip(),
                char_limit=char_limit if isinstance(char_limit, int) and not isinstance(char_limit, bool) else None,
                subsections=parse_template(item.get("subsections") or []),
            )
        )
    return tuple(nodes)


def template_to_payload(forest: Iterable[SectionTemplate]) -> list[dict[str, object]]:
    return [
        {
            "key": node.resolved_key,
            "label": node.label,
            "description": node.description,
            "charLimit": node.char_limit,
            "subsections": template_to_payload(node.subsections),
        }
        for node in forest
    ]


def flatten_template(forest: Iterable[SectionTemplate], *, source: str = "template") -> list[OutlineEntry]:
    entries: list[OutlineEntry] = []

    def visit(node: SectionTemplate, depth: int) -> None:
        entries.append(
            OutlineEntry(
                key=node.resolved_key,
                label=node.label,
                depth=depth,
                description=node.description,
                char_limit=node.char_limit,
                source=source,
            )
        )
        for child in node.subsections:
            visit(child, depth + 1)

    for root in forest:
        visit(root, 0)
    return entries


def resolve_outline(
    template: Iterable[SectionTemplate] | None,
    generated: Mapping[str, Any] | None = None,
) -> list[OutlineEntry]:
    """Flatten the template (or the default one) and append generated keys it does not cover."""
    forest = tuple(template) if template else ()
    if forest:
        outline = flatten_template(forest)
    else:
        outline = flatten_template(DEFAULT_TEMPLATE, source="default")

    known = {entry.key for entry in outline}
    extras: list[str] = []
    for key in generated or {}:
        if key in known:
            continue
        known.add(key)
        extras.append(key)
        outline.append(OutlineEntry(key=key, label=derive_section_label(key), depth=0, source="generated"))

    if extras:
        logger.info(
            "outline_extra_sections_appended",
            extra={"event": "outline_extra_sections_appended", "keys": extras},
        )
    return outline


def has_content(value: Any) -> bool:
    if value is None:
        return False
    if not isinstance(value, str):
        return bool(value)
    text = unescape(HTML_TAG_PATTERN.sub(" ", value)).replace("\xa0", " ")
    return bool(text.strip())


def partition_outline(outline: Iterable[OutlineEntry], contents: Mapping[str, Any]) -> OutlinePartition:
    partition = OutlinePartition()
    for entry in outline:
        bucket = partition.present if has_content(contents.get(entry.key)) else partition.missing
        if entry.key not in bucket:
            bucket.append(entry.key)
    return partition
