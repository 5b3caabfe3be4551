from __future__ import annotations

from typing import Any, Mapping

from fastapi import HTTPException
from pydantic import ValidationError

from grantforge.api.services.runtime import (
    ProviderGetter,
    StorageGetter,
    extract_provider_object,
    fetch_upload,
    invoke_provider,
    knowledge_key,
    logger,
    new_record_id,
    partner_key,
    prepare_attachment,
    save_record,
    store_upload,
    template_key,
    utc_now_iso,
)
from grantforge.normalization import normalize_knowledge_chunks, normalize_partner_payload
from grantforge.parsers import extract_text
from grantforge.prompts import build_knowledge_index_prompt, build_partner_import_prompt
from grantforge.proposal import KnowledgeChunk, Partner
from grantforge.ranking import extract_smart_keywords
from grantforge.sections import parse_template, template_to_payload
from grantforge.storage import GLOBAL_LIBRARY_BUCKET, PARTNER_DOCS_BUCKET


def _validation_messages(exc: ValidationError) -> list[str]:
    return [issue["msg"] for issue in exc.errors()]


def save_partner(payload: Mapping[str, Any]) -> Partner:
    try:
        partner = Partner.model_validate(normalize_partner_payload(payload))
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={"message": "Partner failed validation.", "errors": _validation_messages(exc)},
        ) from exc
    partner.id = partner.id or new_record_id("partner")
    partner.createdAt = partner.createdAt or utc_now_iso()
    save_record(partner_key(partner.id), partner.model_dump(mode="json"))
    return partner


def import_partner(
    *,
    file_name: str,
    content_type: str,
    content: bytes,
    get_provider: ProviderGetter,
    get_storage: StorageGetter,
) -> dict[str, object]:
    attachment, inline_text = prepare_attachment(file_name=file_name, content_type=content_type, content=content)
    path = store_upload(
        get_storage,
        bucket=PARTNER_DOCS_BUCKET,
        file_name=file_name,
        content_type=content_type,
        content=content,
    )
    raw = invoke_provider(
        get_provider,
        build_partner_import_prompt(inline_text),
        purpose="partner import",
        attachment=attachment,
    )
    partner = save_partner(extract_provider_object(raw, purpose="partner import"))
    logger.info(
        "partner_imported",
        extra={"event": "partner_imported", "partner_id": partner.id, "file_name": file_name, "path": path},
    )
    return {"partner": partner.model_dump(mode="json"), "source": {"bucket": PARTNER_DOCS_BUCKET, "path": path}}


def save_knowledge_chunks(
    source_name: str,
    chunks: Any,
    *,
    fallback_keywords: list[str] | None = None,
) -> list[KnowledgeChunk]:
    normalized = normalize_knowledge_chunks(chunks)
    if not isinstance(normalized, list):
        raise HTTPException(status_code=422, detail={"message": "Knowledge chunks must be a list."})

    saved: list[KnowledgeChunk] = []
    errors: list[str] = []
    now = utc_now_iso()
    for item in normalized:
        if not isinstance(item, Mapping):
            continue
        try:
            chunk = KnowledgeChunk.model_validate({"sourceName": source_name, **item})
        except ValidationError as exc:
            errors.extend(_validation_messages(exc))
            continue
        if not chunk.keywords:
            chunk.keywords = extract_smart_keywords(chunk.content) or list(fallback_keywords or [])
        chunk.id = chunk.id or new_record_id("knowledge")
        chunk.createdAt = chunk.createdAt or now
        save_record(knowledge_key(chunk.id), chunk.model_dump(mode="json"))
        saved.append(chunk)

    if not saved:
        raise HTTPException(
            status_code=422,
            detail={"message": "No valid knowledge chunks were provided.", "errors": errors},
        )
    if errors:
        logger.warning(
            "knowledge_chunks_skipped",
            extra={"event": "knowledge_chunks_skipped", "source_name": source_name, "errors": errors[:10]},
        )
    return saved


def index_knowledge(
    *,
    source_name: str,
    file_name: str,
    content_type: str,
    content: bytes,
    get_provider: ProviderGetter,
    get_storage: StorageGetter,
) -> dict[str, object]:
    path = store_upload(
        get_storage,
        bucket=GLOBAL_LIBRARY_BUCKET,
        file_name=file_name,
        content_type=content_type,
        content=content,
    )
    stored = fetch_upload(get_storage, bucket=GLOBAL_LIBRARY_BUCKET, path=path)
    attachment, inline_text = prepare_attachment(file_name=file_name, content_type=content_type, content=stored)

    parsed = extract_text(content=stored, file_name=file_name, content_type=content_type)
    document_keywords = extract_smart_keywords(parsed.text) if parsed.ok else []

    raw = invoke_provider(
        get_provider,
        build_knowledge_index_prompt(source_name, inline_text),
        purpose="knowledge indexing",
        attachment=attachment,
    )
    response = extract_provider_object(raw, purpose="knowledge indexing")
    chunks = save_knowledge_chunks(source_name, response.get("chunks"), fallback_keywords=document_keywords)
    logger.info(
        "knowledge_indexed",
        extra={
            "event": "knowledge_indexed",
            "source_name": source_name,
            "chunk_count": len(chunks),
            "path": path,
        },
    )
    return {
        "source": {"bucket": GLOBAL_LIBRARY_BUCKET, "path": path, "name": source_name},
        "chunks": [chunk.model_dump(mode="json") for chunk in chunks],
    }


def save_template(name: str, sections: list[dict[str, object]]) -> dict[str, object]:
    forest = parse_template(sections)
    if not forest:
        raise HTTPException(status_code=422, detail={"message": "Template must contain at least one section."})
    template = {
        "id": new_record_id("template"),
        "name": name.strip(),
        "sections": template_to_payload(forest),
        "createdAt": utc_now_iso(),
    }
    save_record(template_key(str(template["id"])), template)
    return template
