from __future__ import annotations

import re
from typing import Any, Callable, Mapping

from grantforge.sections import derive_section_key

# alias -> canonical, per record scope. Canonical names are the wire names.
FIELD_SYNONYMS: dict[str, dict[str, str]] = {
    "document": {
        "dynamicSections": "sections",
        "dynamic_sections": "sections",
        "work_packages": "workPackages",
        "workPlanPackages": "workPackages",
        "target_budget": "targetBudget",
        "generation_prompt": "generationPrompt",
        "template_id": "templateId",
        "fundingSchemeId": "templateId",
        "created_at": "createdAt",
        "savedAt": "createdAt",
        "generatedAt": "createdAt",
        "updated_at": "updatedAt",
        "name": "title",
        "abstract": "summary",
    },
    "budget_item": {
        "item": "label",
        "name": "label",
        "title": "label",
        "category": "label",
        "amount": "cost",
        "total": "cost",
        "totalCost": "cost",
        "total_cost": "cost",
        "costBreakdown": "breakdown",
        "cost_breakdown": "breakdown",
        "partner_allocations": "partnerAllocations",
        "allocations": "partnerAllocations",
    },
    "breakdown": {
        "sub_item": "subItem",
        "item": "subItem",
        "name": "subItem",
        "qty": "quantity",
        "unit_cost": "unitCost",
        "cost": "total",
        "amount": "total",
    },
    "allocation": {
        "partnerName": "partner",
        "partner_name": "partner",
        "name": "partner",
        "value": "amount",
        "cost": "amount",
    },
    "work_package": {
        "title": "name",
        "tasks": "activities",
        "deliverable": "deliverables",
    },
    "activity": {
        "title": "name",
        "budget": "estimatedBudget",
        "estimated_budget": "estimatedBudget",
        "cost": "estimatedBudget",
        "lead_partner": "leadPartner",
        "lead": "leadPartner",
        "participating_partners": "participatingPartners",
        "partners": "participatingPartners",
    },
    "partner": {
        "organisation": "name",
        "organization": "name",
        "partnerName": "name",
        "organisationType": "organizationType",
        "organization_type": "organizationType",
        "is_coordinator": "isCoordinator",
    },
    "risk": {
        "title": "risk",
        "description": "risk",
        "probability": "likelihood",
        "mitigationStrategy": "mitigation",
        "mitigation_strategy": "mitigation",
    },
    "knowledge_chunk": {
        "text": "content",
        "source_name": "sourceName",
        "source": "sourceName",
        "chunk_type": "type",
    },
}

# Narrative fields older records kept at the top level instead of under sections.
LEGACY_SECTION_FIELDS = (
    "introduction",
    "relevance",
    "objectives",
    "methods",
    "methodology",
    "impact",
    "expectedResults",
    "innovation",
    "sustainability",
    "consortium",
    "riskManagement",
    "dissemination",
)

CAMEL_KEY_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9]*")
CAMEL_BOUNDARY_PATTERN = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
SNAKE_KEY_PATTERN = re.compile(r"[a-z0-9_]+")


def apply_synonyms(record: Mapping[str, Any], scope: str) -> dict[str, Any]:
    """Copy aliased fields onto their canonical name.

    The canonical field wins when both are present. Aliases are left in place
    so older records survive a round trip unchanged.
    """
    normalized = dict(record)
    for alias, canonical in FIELD_SYNONYMS[scope].items():
        if alias in record and canonical not in normalized:
            normalized[canonical] = record[alias]
    return normalized


def normalize_section_key(key: str) -> str:
    text = str(key).strip()
    if SNAKE_KEY_PATTERN.fullmatch(text):
        return text
    if CAMEL_KEY_PATTERN.fullmatch(text):
        return CAMEL_BOUNDARY_PATTERN.sub("_", text).lower()
    return derive_section_key(text)


def normalize_sections(sections: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    # Keys already in canonical form take precedence over their camelCase twins.
    for key, value in sections.items():
        canonical = normalize_section_key(key)
        if canonical == key:
            normalized[canonical] = value
    for key, value in sections.items():
        canonical = normalize_section_key(key)
        if canonical not in normalized:
            normalized[canonical] = value
    return {key: normalized[key] for key in _ordered_keys(sections) if key in normalized}


def _ordered_keys(sections: Mapping[str, Any]) -> list[str]:
    return list(dict.fromkeys(normalize_section_key(key) for key in sections))


def _normalize_records(value: Any, scope: str, nested: Callable[[dict[str, Any]], dict[str, Any]] | None = None) -> Any:
    if not isinstance(value, list):
        return value
    records: list[Any] = []
    for item in value:
        if isinstance(item, Mapping):
            record = apply_synonyms(item, scope)
            records.append(nested(record) if nested is not None else record)
        else:
            records.append(item)
    return records


def _normalize_budget_item(record: dict[str, Any]) -> dict[str, Any]:
    if "breakdown" in record:
        record["breakdown"] = _normalize_records(record["breakdown"], "breakdown")
    if "partnerAllocations" in record:
        record["partnerAllocations"] = _normalize_records(record["partnerAllocations"], "allocation")
    return record


def _normalize_work_package(record: dict[str, Any]) -> dict[str, Any]:
    if "activities" in record:
        record["activities"] = _normalize_records(record["activities"], "activity")
    return record


def normalize_budget(items: Any) -> Any:
    return _normalize_records(items, "budget_item", _normalize_budget_item)


def normalize_work_packages(items: Any) -> Any:
    return _normalize_records(items, "work_package", _normalize_work_package)


def normalize_partners(items: Any) -> Any:
    return _normalize_records(items, "partner")


def normalize_risks(items: Any) -> Any:
    return _normalize_records(items, "risk")


def normalize_knowledge_chunks(items: Any) -> Any:
    return _normalize_records(items, "knowledge_chunk")


STRUCTURED_FIELD_NORMALIZERS: dict[str, Callable[[Any], Any]] = {
    "budget": normalize_budget,
    "workPackages": normalize_work_packages,
    "partners": normalize_partners,
    "risks": normalize_risks,
}


def normalize_document_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Canonicalize a full or partial document payload.

    Only fields present in the payload are touched, so a partial update stays
    partial.
    """
    document = apply_synonyms(payload, "document")

    sections = document.get("sections")
    sections = dict(sections) if isinstance(sections, Mapping) else None
    for field in LEGACY_SECTION_FIELDS:
        value = document.get(field)
        if isinstance(value, str) and value.strip():
            if sections is None:
                sections = {}
            sections.setdefault(normalize_section_key(field), value)
    if sections is not None:
        document["sections"] = normalize_sections(sections)

    for field, normalizer in STRUCTURED_FIELD_NORMALIZERS.items():
        if field in document:
            document[field] = normalizer(document[field])
    return document


def normalize_partner_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    partner = apply_synonyms(payload, "partner")
    keywords = partner.get("keywords")
    if isinstance(keywords, str):
        partner["keywords"] = [item.strip() for item in keywords.split(",") if item.strip()]
    return partner
