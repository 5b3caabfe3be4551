from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from grantforge.amounts import coerce_amount
from grantforge.normalization import normalize_document_payload


class WireModel(BaseModel):
    # Unknown and aliased fields are kept so older records survive a round trip.
    model_config = ConfigDict(extra="allow")


class BreakdownEntry(WireModel):
    subItem: str = ""
    quantity: float = 1
    unitCost: int = 0
    total: int = 0


class PartnerAllocation(WireModel):
    partner: str = ""
    amount: int = 0


class BudgetItem(WireModel):
    label: str = ""
    cost: int = 0
    description: str = ""
    breakdown: list[BreakdownEntry] = Field(default_factory=list)
    partnerAllocations: list[PartnerAllocation] = Field(default_factory=list)


class Activity(WireModel):
    name: str = ""
    description: str = ""
    leadPartner: str = ""
    participatingPartners: list[str] = Field(default_factory=list)
    estimatedBudget: int = 0


class WorkPackage(WireModel):
    name: str = ""
    description: str = ""
    duration: str = ""
    activities: list[Activity] = Field(default_factory=list)
    deliverables: list[str] = Field(default_factory=list)


class PartnerRef(WireModel):
    id: str | None = None
    name: str = Field(..., min_length=1)
    role: str = ""
    isCoordinator: bool = False
    description: str = ""


class Risk(WireModel):
    risk: str = ""
    likelihood: str = ""
    impact: str = ""
    mitigation: str = ""


class ProposalDocument(WireModel):
    id: str | None = None
    title: str = ""
    summary: str = ""
    sections: dict[str, str] = Field(default_factory=dict)
    workPackages: list[WorkPackage] = Field(default_factory=list)
    budget: list[BudgetItem] = Field(default_factory=list)
    partners: list[PartnerRef] = Field(default_factory=list)
    risks: list[Risk] = Field(default_factory=list)
    targetBudget: int | None = None
    templateId: str | None = None
    generationPrompt: str | None = None
    createdAt: str | None = None
    updatedAt: str | None = None
    version: int | None = None

    def section_contents(self) -> dict[str, str]:
        """Narrative content keyed the way outlines look it up."""
        return {"summary": self.summary, **self.sections}


class Partner(WireModel):
    """A partner organisation in the directory, ranked against proposal narratives."""

    id: str | None = None
    name: str = Field(..., min_length=1)
    acronym: str = ""
    country: str = ""
    organizationType: str = ""
    description: str = ""
    experience: str = ""
    keywords: list[str] = Field(default_factory=list)
    role: str = ""
    isCoordinator: bool = False
    createdAt: str | None = None


class KnowledgeChunk(WireModel):
    id: str | None = None
    content: str = Field(..., min_length=1)
    sourceName: str = "Guideline"
    type: str = "Guideline"
    keywords: list[str] = Field(default_factory=list)
    createdAt: str | None = None


AMOUNT_FIELDS: dict[str, tuple[str, ...]] = {
    "budget_item": ("cost",),
    "breakdown": ("unitCost", "total"),
    "allocation": ("amount",),
    "activity": ("estimatedBudget",),
}


def _coerce_amounts(record: dict[str, Any], scope: str) -> dict[str, Any]:
    for field in AMOUNT_FIELDS[scope]:
        if field not in record:
            continue
        coerced = coerce_amount(record[field])
        if coerced is None:
            record.pop(field)
        else:
            record[field] = coerced
    return record


def _records(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [dict(item) for item in value if isinstance(item, Mapping)]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(_text(item) for item in value if item is not None)
    if isinstance(value, Mapping):
        return "\n".join(_text(item) for item in value.values())
    return str(value)


def _strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [_text(item) for item in value if item is not None]


def repair_document_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce generator drift into something the document model accepts.

    Currency strings and floats become integer units, non-object list members
    are dropped and narrative values are flattened to text.
    """
    repaired = dict(payload)

    if "sections" in repaired:
        sections = repaired["sections"]
        repaired["sections"] = (
            {str(key): _text(value) for key, value in sections.items() if value is not None}
            if isinstance(sections, Mapping)
            else {}
        )
    for field in ("title", "summary"):
        if field in repaired:
            repaired[field] = _text(repaired[field])

    if "budget" in repaired:
        items = []
        for item in _records(repaired["budget"]):
            _coerce_amounts(item, "budget_item")
            item["description"] = _text(item.get("description"))
            item["label"] = _text(item.get("label"))
            item["breakdown"] = [_coerce_amounts(entry, "breakdown") for entry in _records(item.get("breakdown"))]
            for entry in item["breakdown"]:
                if "quantity" in entry and not isinstance(entry["quantity"], (int, float)):
                    quantity = coerce_amount(entry["quantity"])
                    if quantity is None:
                        entry.pop("quantity")
                    else:
                        entry["quantity"] = quantity
            item["partnerAllocations"] = [
                _coerce_amounts(entry, "allocation") for entry in _records(item.get("partnerAllocations"))
            ]
            items.append(item)
        repaired["budget"] = items

    if "workPackages" in repaired:
        packages = []
        for package in _records(repaired["workPackages"]):
            package["activities"] = [
                _coerce_amounts(activity, "activity") for activity in _records(package.get("activities"))
            ]
            for activity in package["activities"]:
                activity["participatingPartners"] = _strings(activity.get("participatingPartners"))
            package["deliverables"] = _strings(package.get("deliverables"))
            package["duration"] = _text(package.get("duration"))
            packages.append(package)
        repaired["workPackages"] = packages

    if "partners" in repaired:
        repaired["partners"] = [
            partner for partner in _records(repaired["partners"]) if str(partner.get("name") or "").strip()
        ]
    if "risks" in repaired:
        repaired["risks"] = [
            {key: _text(value) for key, value in risk.items()} for risk in _records(repaired["risks"])
        ]
    if "targetBudget" in repaired:
        repaired["targetBudget"] = coerce_amount(repaired["targetBudget"])
    return repaired


def validate_with_repair(payload: Mapping[str, Any]) -> tuple[ProposalDocument | None, bool, list[str]]:
    normalized = normalize_document_payload(payload)
    try:
        return ProposalDocument.model_validate(normalized), False, []
    except ValidationError as err:
        initial_errors = [issue["msg"] for issue in err.errors()]

    repaired_payload = repair_document_payload(normalized)
    try:
        return ProposalDocument.model_validate(repaired_payload), True, initial_errors
    except ValidationError as repaired_err:
        final_errors = [issue["msg"] for issue in repaired_err.errors()]
        return None, True, initial_errors + final_errors
