from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query

from grantforge.api.contracts import AiEditRequest, GenerateProposalRequest, GenerateSectionRequest
from grantforge.api.services.drafting import (
    apply_ai_edit,
    generate_missing_section,
    generate_proposal,
    get_outline,
    save_document,
    update_document,
)
from grantforge.api.services.runtime import (
    ProviderGetter,
    document_from_record,
    list_documents,
    proposal_key,
    remove_record,
    require_record,
)


def build_proposals_router(*, get_generation_provider: ProviderGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/generate-proposal")
    def generate_proposal_endpoint(payload: GenerateProposalRequest) -> dict[str, object]:
        return generate_proposal(payload, get_provider=get_generation_provider)

    @router.get("/proposals")
    def list_proposals() -> dict[str, object]:
        return {"proposals": [document.model_dump(mode="json") for document in list_documents()]}

    @router.post("/proposals")
    def save_proposal(payload: dict[str, Any] = Body(...)) -> dict[str, object]:
        return {"document": save_document(payload).model_dump(mode="json")}

    @router.get("/proposals/{document_id}")
    def get_proposal(document_id: str) -> dict[str, object]:
        document = document_from_record(require_record(proposal_key(document_id), label="Proposal"))
        return {"document": document.model_dump(mode="json")}

    @router.put("/proposals/{document_id}")
    def update_proposal(document_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, object]:
        return {"document": update_document(document_id, payload).model_dump(mode="json")}

    @router.delete("/proposals/{document_id}")
    def delete_proposal(document_id: str) -> dict[str, object]:
        if not remove_record(proposal_key(document_id)):
            raise HTTPException(status_code=404, detail="Proposal not found")
        return {"deleted": True, "id": document_id}

    @router.get("/proposals/{document_id}/outline")
    def proposal_outline(document_id: str, template_id: str | None = Query(default=None)) -> dict[str, object]:
        return get_outline(document_id, template_id)

    @router.post("/proposals/{document_id}/ai-edit")
    def ai_edit(document_id: str, payload: AiEditRequest) -> dict[str, object]:
        return apply_ai_edit(document_id, payload, get_provider=get_generation_provider)

    @router.post("/proposals/{document_id}/generate-section")
    def generate_section(document_id: str, payload: GenerateSectionRequest) -> dict[str, object]:
        return generate_missing_section(document_id, payload, get_provider=get_generation_provider)

    return router
