from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping
from uuid import uuid4

from fastapi import HTTPException, UploadFile

from grantforge.config import settings
from grantforge.extraction import ExtractionError, extract_json_object
from grantforge.parsers import extract_text
from grantforge.proposal import KnowledgeChunk, Partner, ProposalDocument, validate_with_repair
from grantforge.provider import (
    Attachment,
    GenerationBlockedError,
    GenerationProvider,
    GenerationProviderError,
    GenerationRateLimitError,
    GenerationTimeoutError,
)
from grantforge.ranking import render_grounding, select_grounding_chunks
from grantforge.sections import SectionTemplate, parse_template
from grantforge.storage import ObjectStorage, StorageError
from grantforge.store import (
    KNOWLEDGE_PREFIX,
    PARTNER_PREFIX,
    PROPOSAL_PREFIX,
    TEMPLATE_PREFIX,
    PersistenceError,
    StoredRecord,
    VersionConflictError,
    delete_value,
    get_value,
    scan_prefix,
    set_value,
)

logger = logging.getLogger("grantforge.api")

ProviderGetter = Callable[[], GenerationProvider]
StorageGetter = Callable[[], ObjectStorage]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_record_id(kind: str) -> str:
    return f"{kind}-{uuid4()}"


def invoke_provider(
    get_provider: ProviderGetter,
    prompt: str,
    *,
    purpose: str,
    attachment: Attachment | None = None,
    lite: bool = False,
) -> str:
    try:
        return get_provider().generate(prompt, attachment=attachment, lite=lite)
    except GenerationRateLimitError as exc:
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        raise HTTPException(
            status_code=429,
            detail={"message": f"Generation provider is rate limited during {purpose}.", "error": str(exc)},
            headers=headers,
        ) from exc
    except GenerationTimeoutError as exc:
        raise HTTPException(
            status_code=504,
            detail={"message": f"Generation provider timed out during {purpose}.", "error": str(exc)},
        ) from exc
    except GenerationBlockedError as exc:
        raise HTTPException(
            status_code=422,
            detail={"message": f"Generation provider blocked the {purpose} request.", "error": str(exc)},
        ) from exc
    except GenerationProviderError as exc:
        raise HTTPException(
            status_code=502,
            detail={"message": f"Generation provider failed during {purpose}.", "error": str(exc)},
        ) from exc


def extract_provider_object(raw: str, *, purpose: str) -> dict[str, Any]:
    try:
        return extract_json_object(raw)
    except ExtractionError as exc:
        raise HTTPException(
            status_code=422,
            detail={**exc.to_detail(), "message": f"Provider output for {purpose} could not be repaired."},
        ) from exc


def validate_document(payload: Mapping[str, Any]) -> ProposalDocument:
    document, repaired, errors = validate_with_repair(payload)
    if document is None:
        raise HTTPException(
            status_code=422,
            detail={"message": "Proposal document failed validation.", "errors": errors},
        )
    if repaired:
        logger.info(
            "document_payload_repaired",
            extra={"event": "document_payload_repaired", "errors": errors[:10]},
        )
    return document


def load_record(key: str) -> StoredRecord | None:
    try:
        return get_value(key)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail={"message": "Document store is unavailable.", "error": str(exc)}) from exc


def require_record(key: str, *, label: str) -> StoredRecord:
    record = load_record(key)
    if record is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return record


def save_record(key: str, value: dict[str, Any], *, expected_version: int | None = None) -> StoredRecord:
    try:
        return set_value(key, value, expected_version=expected_version)
    except VersionConflictError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Record was modified by another request.",
                "expected_version": exc.expected_version,
                "current_version": exc.current_version,
            },
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail={"message": "Document store rejected the write.", "error": str(exc)}) from exc


def remove_record(key: str) -> bool:
    try:
        return delete_value(key)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail={"message": "Document store is unavailable.", "error": str(exc)}) from exc


def scan_records(prefix: str) -> list[StoredRecord]:
    try:
        return scan_prefix(prefix)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail={"message": "Document store is unavailable.", "error": str(exc)}) from exc


def proposal_key(document_id: str) -> str:
    return f"{PROPOSAL_PREFIX}{document_id}"


def partner_key(partner_id: str) -> str:
    return f"{PARTNER_PREFIX}{partner_id}"


def knowledge_key(chunk_id: str) -> str:
    return f"{KNOWLEDGE_PREFIX}{chunk_id}"


def template_key(template_id: str) -> str:
    return f"{TEMPLATE_PREFIX}{template_id}"


def document_from_record(record: StoredRecord) -> ProposalDocument:
    document = validate_document(record.value)
    document.version = record.version
    return document


def persist_document(document: ProposalDocument, *, expected_version: int | None = None) -> ProposalDocument:
    if not document.id:
        document.id = new_record_id("proposal")
    payload = document.model_dump(mode="json", exclude={"version"})
    record = save_record(proposal_key(document.id), payload, expected_version=expected_version)
    document.version = record.version
    return document


def serialize_document(document: ProposalDocument) -> dict[str, Any]:
    return document.model_dump(mode="json")


def list_documents() -> list[ProposalDocument]:
    documents = [document_from_record(record) for record in scan_records(PROPOSAL_PREFIX)]
    return sorted(documents, key=lambda document: document.updatedAt or document.createdAt or "", reverse=True)


def load_partners(partner_ids: list[str]) -> list[Partner]:
    partners: list[Partner] = []
    missing: list[str] = []
    for partner_id in dict.fromkeys(partner_ids):
        record = load_record(partner_key(partner_id))
        if record is None:
            missing.append(partner_id)
            continue
        partners.append(Partner.model_validate({**record.value, "id": partner_id}))
    if missing:
        raise HTTPException(status_code=404, detail={"message": "Partners not found.", "partner_ids": missing})
    return partners


def list_partners() -> list[Partner]:
    return [Partner.model_validate(record.value) for record in scan_records(PARTNER_PREFIX)]


def list_knowledge() -> list[KnowledgeChunk]:
    return [KnowledgeChunk.model_validate(record.value) for record in scan_records(KNOWLEDGE_PREFIX)]


def load_template(template_id: str | None) -> tuple[SectionTemplate, ...] | None:
    if not template_id:
        return None
    record = require_record(template_key(template_id), label="Template")
    return parse_template(record.value.get("sections", []))


def grounding_for(context: str, top_k: int) -> str:
    return render_grounding(select_grounding_chunks(context, list_knowledge(), top_k))


async def read_upload(upload: UploadFile) -> tuple[str, str, bytes]:
    safe_name = Path(upload.filename or "upload.bin").name or "upload.bin"
    content = await upload.read(settings.max_upload_file_bytes + 1)
    if len(content) > settings.max_upload_file_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File '{safe_name}' exceeds max size of {settings.max_upload_file_bytes} bytes.",
        )
    if not content:
        raise HTTPException(status_code=400, detail=f"File '{safe_name}' is empty.")
    return safe_name, upload.content_type or "application/octet-stream", content


def store_upload(get_storage: StorageGetter, *, bucket: str, file_name: str, content_type: str, content: bytes) -> str:
    path = f"{uuid4()}_{file_name}"
    try:
        get_storage().upload(bucket, path, content, content_type)
    except StorageError as exc:
        raise HTTPException(status_code=502, detail={"message": "Object storage upload failed.", "error": str(exc)}) from exc
    return path


def fetch_upload(get_storage: StorageGetter, *, bucket: str, path: str) -> bytes:
    try:
        return get_storage().download(bucket, path)
    except StorageError as exc:
        raise HTTPException(status_code=502, detail={"message": "Object storage download failed.", "error": str(exc)}) from exc


def prepare_attachment(*, file_name: str, content_type: str, content: bytes) -> tuple[Attachment | None, str]:
    """Attach the file when the provider reads its format, otherwise inline its text."""
    attachment = Attachment(content=content, mime_type=content_type, name=file_name)
    if attachment.document_format is not None:
        return attachment, ""
    parsed = extract_text(content=content, file_name=file_name, content_type=content_type)
    if not parsed.ok:
        raise HTTPException(
            status_code=415,
            detail={
                "message": f"File '{file_name}' cannot be sent to the generation provider.",
                "error": parsed.error or "no extractable text",
            },
        )
    return None, parsed.text
