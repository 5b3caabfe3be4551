from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, File, Form, UploadFile

from grantforge.api.contracts import KnowledgeCreateRequest, RankPartnersRequest, TemplateCreateRequest
from grantforge.api.services.library import import_partner, index_knowledge, save_knowledge_chunks, save_partner, save_template
from grantforge.api.services.runtime import (
    ProviderGetter,
    StorageGetter,
    list_knowledge,
    list_partners,
    partner_key,
    read_upload,
    require_record,
    scan_records,
    template_key,
)
from grantforge.ranking import rank_partners
from grantforge.store import TEMPLATE_PREFIX


def build_library_router(*, get_generation_provider: ProviderGetter, get_object_storage: StorageGetter) -> APIRouter:
    router = APIRouter()

    @router.get("/partners")
    def list_partners_endpoint() -> dict[str, object]:
        return {"partners": [partner.model_dump(mode="json") for partner in list_partners()]}

    @router.post("/partners")
    def create_partner(payload: dict[str, Any] = Body(...)) -> dict[str, object]:
        return {"partner": save_partner(payload).model_dump(mode="json")}

    @router.post("/partners/rank")
    def rank_partners_endpoint(payload: RankPartnersRequest) -> dict[str, object]:
        ranked = rank_partners(payload.context, list_partners())
        if payload.limit is not None:
            ranked = ranked[: payload.limit]
        return {
            "partners": [
                {
                    **item.candidate.model_dump(mode="json"),
                    "relevanceScore": item.relevance_score,
                    "matchReasons": item.match_reasons,
                }
                for item in ranked
            ]
        }

    @router.post("/partners/import")
    async def import_partner_endpoint(file: UploadFile = File(...)) -> dict[str, object]:
        file_name, content_type, content = await read_upload(file)
        return import_partner(
            file_name=file_name,
            content_type=content_type,
            content=content,
            get_provider=get_generation_provider,
            get_storage=get_object_storage,
        )

    @router.get("/partners/{partner_id}")
    def get_partner(partner_id: str) -> dict[str, object]:
        return {"partner": require_record(partner_key(partner_id), label="Partner").value}

    @router.get("/knowledge")
    def list_knowledge_endpoint() -> dict[str, object]:
        return {"chunks": [chunk.model_dump(mode="json") for chunk in list_knowledge()]}

    @router.post("/knowledge")
    def create_knowledge(payload: KnowledgeCreateRequest) -> dict[str, object]:
        chunks = save_knowledge_chunks(payload.source_name, payload.chunks)
        return {"chunks": [chunk.model_dump(mode="json") for chunk in chunks]}

    @router.post("/knowledge/index")
    async def index_knowledge_endpoint(
        file: UploadFile = File(...),
        source_name: str | None = Form(default=None),
    ) -> dict[str, object]:
        file_name, content_type, content = await read_upload(file)
        return index_knowledge(
            source_name=(source_name or "").strip() or file_name,
            file_name=file_name,
            content_type=content_type,
            content=content,
            get_provider=get_generation_provider,
            get_storage=get_object_storage,
        )

    @router.get("/templates")
    def list_templates() -> dict[str, object]:
        return {"templates": [record.value for record in scan_records(TEMPLATE_PREFIX)]}

    @router.post("/templates")
    def create_template(payload: TemplateCreateRequest) -> dict[str, object]:
        return {"template": save_template(payload.name, payload.sections)}

    @router.get("/templates/{template_id}")
    def get_template(template_id: str) -> dict[str, object]:
        return {"template": require_record(template_key(template_id), label="Template").value}

    return router
