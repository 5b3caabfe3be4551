from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol

from grantforge.config import Settings

logger = logging.getLogger("grantforge.provider")

SYSTEM_PROMPT = (
    "You are an expert European grant proposal writer. "
    "Answer with strict JSON only. Do not include markdown or prose around it."
)

# MIME types the converse API accepts as document blocks.
ATTACHMENT_FORMATS = {
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "text/plain": "txt",
    "text/markdown": "md",
    "text/html": "html",
    "text/csv": "csv",
}

RATE_LIMIT_ERROR_CODES = {"ThrottlingException", "ServiceQuotaExceededException", "TooManyRequestsException"}
TIMEOUT_ERROR_CODES = {"ModelTimeoutException", "RequestTimeout", "RequestTimeoutException"}
TIMEOUT_EXCEPTION_NAMES = {"ReadTimeoutError", "ConnectTimeoutError", "TimeoutError"}
BLOCKED_STOP_REASONS = {"guardrail_intervened", "content_filtered"}
DOCUMENT_NAME_PATTERN = re.compile(r"[^A-Za-z0-9\s\-\(\)\[\]]")


class GenerationProviderError(RuntimeError):
    """Raised when the generation provider fails or returns no usable text."""


class GenerationRateLimitError(GenerationProviderError):
    def __init__(self, message: str, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class GenerationTimeoutError(GenerationProviderError):
    pass


class GenerationBlockedError(GenerationProviderError):
    pass


@dataclass(frozen=True)
class Attachment:
    content: bytes
    mime_type: str
    name: str = "attachment"

    @property
    def document_format(self) -> str | None:
        return ATTACHMENT_FORMATS.get(self.mime_type.split(";")[0].strip().lower())


class GenerationProvider(Protocol):
    def generate(self, prompt: str, *, attachment: Attachment | None = None, lite: bool = False) -> str:
        ...


def _error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return str(response.get("Error", {}).get("Code", ""))
    return ""


def _document_name(name: str) -> str:
    cleaned = " ".join(DOCUMENT_NAME_PATTERN.sub(" ", name.rsplit(".", 1)[0]).split())
    return cleaned[:200] or "attachment"


class BedrockGenerationProvider:
    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client or self._create_bedrock_client()

    def generate(self, prompt: str, *, attachment: Attachment | None = None, lite: bool = False) -> str:
        model_id = self._settings.bedrock_lite_model_id if lite else self._settings.bedrock_model_id
        if not model_id:
            raise GenerationProviderError("Bedrock model ID is not configured.")

        content: list[dict[str, Any]] = [{"text": prompt}]
        if attachment is not None:
            document_format = attachment.document_format
            if document_format is None:
                raise GenerationProviderError(f"Attachments of type '{attachment.mime_type}' are not supported.")
            content.append(
                {
                    "document": {
                        "format": document_format,
                        "name": _document_name(attachment.name),
                        "source": {"bytes": attachment.content},
                    }
                }
            )

        started = time.perf_counter()
        try:
            response = self._client.converse(
                modelId=model_id,
                system=[{"text": SYSTEM_PROMPT}],
                messages=[{"role": "user", "content": content}],
                inferenceConfig={
                    "temperature": self._settings.agent_temperature,
                    "maxTokens": self._settings.agent_max_tokens,
                },
            )
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            raise self._translate_error(exc, model_id=model_id, duration_ms=duration_ms) from exc

        stop_reason = str(response.get("stopReason") or "")
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        if stop_reason in BLOCKED_STOP_REASONS:
            logger.warning(
                "generation_failed",
                extra={"event": "generation_failed", "model_id": model_id, "stop_reason": stop_reason},
            )
            raise GenerationBlockedError(f"Generation for model '{model_id}' was blocked ({stop_reason}).")
        text = self._extract_text(response)
        if stop_reason == "max_tokens":
            logger.warning(
                "generation_output_truncated",
                extra={
                    "event": "generation_output_truncated",
                    "model_id": model_id,
                    "response_chars": len(text),
                    "max_tokens": self._settings.agent_max_tokens,
                },
            )

        logger.info(
            "generation_completed",
            extra={
                "event": "generation_completed",
                "model_id": model_id,
                "duration_ms": duration_ms,
                "prompt_chars": len(prompt),
                "attachment_bytes": len(attachment.content) if attachment is not None else 0,
                "response_chars": len(text),
                "stop_reason": stop_reason,
            },
        )
        return text

    def _create_bedrock_client(self) -> Any:
        try:
            import boto3  # type: ignore
        except ImportError as exc:
            raise GenerationProviderError("boto3 is required for the Bedrock generation provider.") from exc

        return boto3.client("bedrock-runtime", region_name=self._settings.aws_region)

    @staticmethod
    def _translate_error(exc: Exception, *, model_id: str, duration_ms: float) -> GenerationProviderError:
        code = _error_code(exc)
        logger.warning(
            "generation_failed",
            extra={
                "event": "generation_failed",
                "model_id": model_id,
                "duration_ms": duration_ms,
                "error_code": code or type(exc).__name__,
                "error": str(exc),
            },
        )
        if code in RATE_LIMIT_ERROR_CODES:
            return GenerationRateLimitError(f"Generation provider is rate limited: {exc}", retry_after=30)
        if code in TIMEOUT_ERROR_CODES or type(exc).__name__ in TIMEOUT_EXCEPTION_NAMES:
            return GenerationTimeoutError(f"Generation provider timed out for model '{model_id}': {exc}")
        return GenerationProviderError(f"Bedrock invocation failed for model '{model_id}': {exc}")

    @staticmethod
    def _extract_text(response: Any) -> str:
        outputs = response.get("output", {}).get("message", {}).get("content", [])
        parts = [item["text"] for item in outputs if isinstance(item.get("text"), str) and item["text"].strip()]
        if not parts:
            raise GenerationProviderError("Generation provider response did not include textual output.")
        return "\n".join(parts).strip()
