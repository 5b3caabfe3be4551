from __future__ import annotations

import json
from typing import Any, Sequence

from grantforge.proposal import PartnerRef
from grantforge.sections import OutlineEntry

STRUCTURED_SECTIONS = ("budget", "risks", "workPackages", "partners")
DETECTABLE_SECTIONS = ("title", "summary", "relevance", "impact", "budget", "risks", "partners", "workPackages")

NO_GROUNDING_TEXT = "No specific guidelines found for this query."


def format_amount(value: int) -> str:
    return f"€{value:,}"


def _outline_block(outline: Sequence[OutlineEntry]) -> str:
    lines = []
    for entry in outline:
        indent = "  " * entry.depth
        limit = f" (max {entry.char_limit} characters)" if entry.char_limit else ""
        hint = f": {entry.description}" if entry.description else ""
        lines.append(f"{indent}- {entry.key} - {entry.label}{limit}{hint}")
    return "\n".join(lines)


def _partner_block(partners: Sequence[PartnerRef]) -> str:
    return ",\n    ".join(
        json.dumps(
            {
                "name": partner.name,
                "role": partner.role or ("Project Coordinator" if partner.isCoordinator else "Technical Partner"),
                "isCoordinator": partner.isCoordinator,
                "description": "Concise profile...",
            },
            ensure_ascii=False,
        )
        for partner in partners
    )


def build_generation_prompt(
    *,
    idea_title: str,
    idea_description: str,
    constraints: dict[str, str],
    partners: Sequence[PartnerRef],
    outline: Sequence[OutlineEntry],
    target_budget: int,
    grounding: str = "",
    user_prompt: str = "",
) -> str:
    coordinator = next((partner.name for partner in partners if partner.isCoordinator), "")
    constraint_lines = "\n".join(f"- {key.capitalize()}: {value}" for key, value in constraints.items() if value)
    requirements = f"\nADDITIONAL USER REQUIREMENTS:\n{user_prompt.strip()}\n" if user_prompt.strip() else ""
    return f"""SELECTED PROJECT IDEA:
Title: {idea_title}
Description: {idea_description}

CONSTRAINTS:
{constraint_lines or "- None specified"}
{requirements}
### EXPERT INTELLIGENCE (apply these quality standards):
{grounding or NO_GROUNDING_TEXT}

RULES:
1. The "partners" array MUST contain EXACTLY {len(partners)} elements.{f" {coordinator} IS THE COORDINATOR." if coordinator else ""}
2. The sum of all "cost" values in "budget" MUST EQUAL EXACTLY {target_budget} ({format_amount(target_budget)}).
3. Every budget item carries a "breakdown" (subItem, quantity, unitCost, total) and "partnerAllocations" (partner, amount) that sum to its cost.
4. Every work package activity carries an integer "estimatedBudget"; all activities together sum to {target_budget}.
5. Write HTML narrative (<p>, <ul>, <li>, <strong>) for each section key below under "sections":
{_outline_block(outline)}

OUTPUT FORMAT (JSON ONLY):
{{
  "title": "{idea_title}",
  "summary": "<p>...</p>",
  "sections": {{"<section_key>": "<p>...</p>"}},
  "partners": [
    {_partner_block(partners)}
  ],
  "workPackages": [{{"name": "WP1: Management", "description": "...", "duration": "M1-M24", "activities": [{{"name": "...", "description": "...", "leadPartner": "...", "participatingPartners": [], "estimatedBudget": 0}}], "deliverables": []}}],
  "budget": [{{"label": "...", "cost": 0, "description": "...", "breakdown": [], "partnerAllocations": []}}],
  "risks": [{{"risk": "...", "likelihood": "Low|Medium|High", "impact": "Low|Medium|High", "mitigation": "..."}}]
}}"""


def build_section_detection_prompt(instruction: str) -> str:
    return f"""Given this user instruction: "{instruction}"

Which ONE section of the proposal should be edited?

Available sections:
- {", ".join(DETECTABLE_SECTIONS)}
- workPackages (choose this for anything related to activities, tasks, work packages or the work plan)
- any narrative section key of the proposal

Return JSON: {{"section": "<sectionName>"}}"""


def build_edit_prompt(*, section: str, current_content: Any, instruction: str, grounding: str = "") -> str:
    structured = section in STRUCTURED_SECTIONS
    shape = "a JSON ARRAY of objects" if structured else "an HTML string (<p>, <ul>, <li>, <strong>)"
    return f"""Current content of {section}: {json.dumps(current_content, ensure_ascii=False)}

User instruction: {instruction}

### EXPERT INTELLIGENCE (apply these quality standards to the edit):
{grounding or NO_GROUNDING_TEXT}

TASK: Generate the NEW content for the "{section}" section only, following the user instruction.
The content MUST be {shape}.
If updating budget or workPackages and a total amount is specified, all item costs must sum EXACTLY to that total.

Return JSON: {{"content": <new content>}}"""


def build_section_prompt(*, label: str, proposal_context: str, existing_sections: Sequence[str], grounding: str = "") -> str:
    return f"""You are generating a new section for a funding proposal.

### EXPERT INTELLIGENCE (guidelines for this section):
{grounding or "Follow general best practices for EU funding."}

SECTION TO CREATE: "{label}"

PROPOSAL CONTEXT:
{proposal_context}

EXISTING SECTIONS:
{", ".join(existing_sections) or "none"}

Write comprehensive, professional HTML content (<p>, <ul>, <li>, <strong>) for the "{label}" section.

Return JSON: {{"content": "<p>...</p>"}}"""


def build_partner_import_prompt(attached_text: str = "") -> str:
    document = f"\n\nPARTNER PROFILE:\n{attached_text}" if attached_text else ""
    return f"""Extract the partner organisation described in the attached profile.

Return JSON with keys: name, acronym, country, organizationType, description, experience,
keywords (array of 5-10 expertise keywords), role.{document}"""


def build_knowledge_index_prompt(source_name: str, attached_text: str = "") -> str:
    document = f"\n\nGUIDELINE DOCUMENT:\n{attached_text}" if attached_text else ""
    return f"""Deeply analyze the guidelines for "{source_name}".

Extract 15-20 technical knowledge chunks.

Return JSON: {{"chunks": [{{"content": "...", "type": "criteria|best_practice|output", "keywords": ["..."]}}]}}{document}"""
