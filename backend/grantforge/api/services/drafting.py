from __future__ import annotations

from typing import Any, Mapping

from fastapi import HTTPException

from grantforge.api.contracts import AiEditRequest, GenerateProposalRequest, GenerateSectionRequest
from grantforge.api.services.runtime import (
    ProviderGetter,
    document_from_record,
    extract_provider_object,
    grounding_for,
    invoke_provider,
    load_partners,
    load_template,
    logger,
    new_record_id,
    persist_document,
    proposal_key,
    require_record,
    utc_now_iso,
    validate_document,
)
from grantforge.budget import enforce_budget, resolve_target_budget
from grantforge.config import settings
from grantforge.normalization import FIELD_SYNONYMS, normalize_document_payload, normalize_section_key
from grantforge.prompts import (
    STRUCTURED_SECTIONS,
    build_edit_prompt,
    build_generation_prompt,
    build_section_detection_prompt,
    build_section_prompt,
)
from grantforge.proposal import Partner, PartnerRef, ProposalDocument
from grantforge.sections import OutlineEntry, derive_section_label, partition_outline, resolve_outline

WORK_PACKAGE_ALIASES = {"workPlan", "activities", "tasks"}
TOP_LEVEL_NARRATIVE = {"title", "summary"}
BUDGETED_SECTIONS = {"budget", "workPackages"}
BUDGET_TRIGGERS = BUDGETED_SECTIONS | {"targetBudget"}
DOCUMENT_ALIASES = frozenset(FIELD_SYNONYMS["document"])
SECTION_FIELDS = {"sections"} | {
    alias for alias, canonical in FIELD_SYNONYMS["document"].items() if canonical == "sections"
}


def partner_refs(partners: list[Partner]) -> list[PartnerRef]:
    """Proposal-side partner entries; the first partner coordinates when none is flagged."""
    has_coordinator = any(partner.isCoordinator for partner in partners)
    return [
        PartnerRef(
            id=partner.id,
            name=partner.name,
            role=partner.role,
            isCoordinator=partner.isCoordinator or (not has_coordinator and index == 0),
            description=partner.description,
        )
        for index, partner in enumerate(partners)
    ]


def _names_overlap(left: str, right: str) -> bool:
    left, right = left.strip().lower(), right.strip().lower()
    if not left or not right:
        return False
    return left in right or right in left


def merge_partner_details(selected: list[PartnerRef], generated: list[PartnerRef]) -> list[PartnerRef]:
    """Keep the selected partners, taking the role and description the provider wrote for each."""
    if not generated:
        return selected
    merged: list[PartnerRef] = []
    for partner in selected:
        match = next((candidate for candidate in generated if _names_overlap(candidate.name, partner.name)), None)
        merged.append(
            partner.model_copy(
                update={
                    "role": (match.role if match else "") or partner.role or "Partner",
                    "description": (match.description if match else "") or partner.description,
                }
            )
        )
    return merged


def outline_payload(outline: list[OutlineEntry], contents: Mapping[str, Any]) -> dict[str, object]:
    partition = partition_outline(outline, contents)
    return {
        "sections": [entry.to_dict() for entry in outline],
        "present": partition.present,
        "missing": partition.missing,
    }


def generate_proposal(payload: GenerateProposalRequest, *, get_provider: ProviderGetter) -> dict[str, object]:
    partners = partner_refs(load_partners(payload.partner_ids))
    template = load_template(payload.template_id)
    prompt_outline = resolve_outline(template)
    target_budget = resolve_target_budget(payload.user_prompt, payload.constraints.budget)
    grounding = grounding_for(
        f"{payload.idea.title} {payload.idea.description} {payload.user_prompt or ''}",
        settings.grounding_top_k_generate,
    )

    prompt = build_generation_prompt(
        idea_title=payload.idea.title,
        idea_description=payload.idea.description,
        constraints=payload.constraints.model_dump(),
        partners=partners,
        outline=prompt_outline,
        target_budget=target_budget,
        grounding=grounding,
        user_prompt=payload.user_prompt or "",
    )
    raw = invoke_provider(get_provider, prompt, purpose="proposal generation")
    document = validate_document(extract_provider_object(raw, purpose="proposal generation"))

    if partners:
        document.partners = merge_partner_details(partners, document.partners)
    report = enforce_budget(document, target_budget)

    now = utc_now_iso()
    document.id = new_record_id("proposal")
    document.title = document.title or payload.idea.title
    document.targetBudget = target_budget
    document.templateId = payload.template_id
    document.generationPrompt = prompt
    document.createdAt = now
    document.updatedAt = now
    document = persist_document(document)

    logger.info(
        "proposal_generated",
        extra={
            "event": "proposal_generated",
            "document_id": document.id,
            "partner_count": len(document.partners),
            "section_count": len(document.sections),
            "target_budget": target_budget,
        },
    )
    outline = resolve_outline(template, document.sections)
    return {
        "document": document.model_dump(mode="json"),
        "outline": outline_payload(outline, document.section_contents()),
        "budget_report": report.to_dict(),
    }


def get_outline(document_id: str, template_id: str | None) -> dict[str, object]:
    document = document_from_record(require_record(proposal_key(document_id), label="Proposal"))
    template = load_template(template_id or document.templateId)
    contents = document.section_contents()
    return {"document_id": document_id, **outline_payload(resolve_outline(template, document.sections), contents)}


def save_document(payload: Mapping[str, Any]) -> ProposalDocument:
    document = validate_document(payload)
    now = utc_now_iso()
    document.createdAt = document.createdAt or now
    document.updatedAt = now
    if document.targetBudget is not None and (document.budget or document.workPackages):
        enforce_budget(document, document.targetBudget)
    return persist_document(document)


def _normalized_changes(stored: Mapping[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    """Canonical form of a partial update, ready to merge over ``stored``."""
    normalized = normalize_document_payload(changes)
    for alias in DOCUMENT_ALIASES:
        normalized.pop(alias, None)
    # Legacy narrative fields fold into sections; they add to the stored ones instead of replacing them.
    if "sections" in normalized and not SECTION_FIELDS & changes.keys():
        stored_sections = stored.get("sections")
        if isinstance(stored_sections, Mapping):
            normalized["sections"] = {**stored_sections, **normalized["sections"]}
    return normalized


def update_document(document_id: str, changes: Mapping[str, Any]) -> ProposalDocument:
    record = require_record(proposal_key(document_id), label="Proposal")
    expected_version = changes.get("version")
    if expected_version is not None and not isinstance(expected_version, int):
        raise HTTPException(status_code=422, detail={"message": "version must be an integer."})

    normalized = _normalized_changes(record.value, {key: value for key, value in changes.items() if key != "version"})
    merged = {**record.value, **normalized, "id": document_id}
    document = validate_document(merged)
    budget_touched = bool(BUDGET_TRIGGERS & normalized.keys())
    if document.targetBudget is not None and budget_touched and (document.budget or document.workPackages):
        enforce_budget(document, document.targetBudget)
    document.updatedAt = utc_now_iso()
    return persist_document(document, expected_version=expected_version)


def resolve_edit_section(section: str) -> str:
    if section in WORK_PACKAGE_ALIASES or section.startswith("extra_wp_"):
        return "workPackages"
    if section in STRUCTURED_SECTIONS or section in TOP_LEVEL_NARRATIVE:
        return section
    return normalize_section_key(section)


def detect_section(instruction: str, *, get_provider: ProviderGetter) -> str:
    raw = invoke_provider(get_provider, build_section_detection_prompt(instruction), purpose="section detection", lite=True)
    detected = extract_provider_object(raw, purpose="section detection").get("section")
    if not isinstance(detected, str) or not detected.strip():
        raise HTTPException(
            status_code=422,
            detail={"message": "Could not determine which section the instruction targets."},
        )
    return detected.strip()


def _current_content(document: ProposalDocument, section: str) -> Any:
    if section in STRUCTURED_SECTIONS:
        return [item.model_dump(mode="json") for item in getattr(document, section)]
    if section in TOP_LEVEL_NARRATIVE:
        return getattr(document, section)
    return document.sections.get(section, "")


def apply_ai_edit(document_id: str, payload: AiEditRequest, *, get_provider: ProviderGetter) -> dict[str, object]:
    record = require_record(proposal_key(document_id), label="Proposal")
    document = document_from_record(record)

    requested = (payload.section_key or "").strip() or detect_section(payload.instruction, get_provider=get_provider)
    section = resolve_edit_section(requested)

    grounding = grounding_for(f"{payload.instruction} {section}", settings.grounding_top_k_edit)
    prompt = build_edit_prompt(
        section=section,
        current_content=_current_content(document, section),
        instruction=payload.instruction,
        grounding=grounding,
    )
    raw = invoke_provider(get_provider, prompt, purpose="section edit")
    content = extract_provider_object(raw, purpose="section edit").get("content")

    if section in STRUCTURED_SECTIONS:
        if not isinstance(content, list):
            raise HTTPException(
                status_code=422,
                detail={"message": f"Edited content for '{section}' must be a list.", "section": section},
            )
        update: dict[str, Any] = {section: content}
    elif section in TOP_LEVEL_NARRATIVE:
        update = {section: content}
    else:
        update = {"sections": {**document.sections, section: content}}

    base = document.model_dump(mode="json", exclude={"version"})
    edited = validate_document({**base, **update})
    if section in BUDGETED_SECTIONS:
        target = resolve_target_budget(payload.instruction, fallback=document.targetBudget)
        enforce_budget(edited, target)
        edited.targetBudget = target
    edited.id = document_id
    edited.updatedAt = utc_now_iso()
    edited = persist_document(edited, expected_version=record.version)

    logger.info(
        "proposal_section_edited",
        extra={"event": "proposal_section_edited", "document_id": document_id, "section": section},
    )
    return {"document": edited.model_dump(mode="json"), "editedSection": section}


def generate_missing_section(
    document_id: str, payload: GenerateSectionRequest, *, get_provider: ProviderGetter
) -> dict[str, object]:
    record = require_record(proposal_key(document_id), label="Proposal")
    document = document_from_record(record)
    section_key = normalize_section_key(payload.section_key)
    label = (payload.label or "").strip() or derive_section_label(section_key)

    grounding = grounding_for(f"{label} {document.title} {document.summary}", settings.grounding_top_k_edit)
    prompt = build_section_prompt(
        label=label,
        proposal_context=f"Title: {document.title}\nSummary: {document.summary}",
        existing_sections=list(document.sections),
        grounding=grounding,
    )
    raw = invoke_provider(get_provider, prompt, purpose="section generation")
    content = extract_provider_object(raw, purpose="section generation").get("content")
    if not isinstance(content, str) or not content.strip():
        raise HTTPException(
            status_code=422,
            detail={"message": f"Provider returned no content for section '{section_key}'."},
        )

    document.sections = {**document.sections, section_key: content}
    document.updatedAt = utc_now_iso()
    document = persist_document(document, expected_version=record.version)
    return {"document": document.model_dump(mode="json"), "section_key": section_key}
