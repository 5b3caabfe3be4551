import json
import logging
from uuid import UUID

from fastapi.testclient import TestClient

from grantforge.observability import JsonFormatter, reset_request_id, sanitize_for_logging, set_request_id


def test_request_id_header_is_generated_when_missing(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    request_id = response.headers.get("X-Request-ID")
    assert request_id is not None
    UUID(request_id)


def test_request_id_header_is_preserved_when_provided(client: TestClient) -> None:
    response = client.get("/ready", headers={"X-Request-ID": "demo-request-123"})
    assert response.status_code == 200
    assert response.headers.get("X-Request-ID") == "demo-request-123"


def test_malformed_request_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
    UUID(response.headers["X-Request-ID"])


def test_request_started_log_redacts_sensitive_query_values(client: TestClient, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="grantforge.api"):
        response = client.get("/health?token=supersecret&email=user@example.org&q=public")
    assert response.status_code == 200

    request_started_logs = [
        record for record in caplog.records if getattr(record, "event", None) == "request_started"
    ]
    assert request_started_logs
    query = request_started_logs[-1].query
    assert query["token"] == "[REDACTED]"
    assert query["email"] == "[REDACTED]"
    assert query["q"] == "public"


def test_sanitize_for_logging_redacts_common_sensitive_patterns() -> None:
    aws_access_key = "AKIA" "ABCDEFGHIJKLMNOP"
    payload = {
        "notes": (
            "Contact the coordinator at coordinator@agritech.example.org or +31 (20) 555-0101, "
            f"token Bearer abc123, key {aws_access_key}."
        ),
        "api_key": "plain-value",
        "partner": {"contactEmail": "someone@example.org", "name": "Agritech Lab"},
        "attachment": b"%PDF-1.7",
    }

    sanitized = sanitize_for_logging(payload, max_string_length=2000)
    notes = sanitized["notes"]
    assert "agritech.example.org" not in notes
    assert "555" not in notes
    assert "[REDACTED_EMAIL]" in notes
    assert "[REDACTED_PHONE]" in notes
    assert "Bearer [REDACTED]" in notes
    assert "[REDACTED_AWS_ACCESS_KEY]" in notes
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["partner"] == {"contactEmail": "[REDACTED]", "name": "Agritech Lab"}
    assert sanitized["attachment"] == "[8 bytes]"


def test_sanitize_for_logging_truncates_long_strings() -> None:
    assert sanitize_for_logging("x" * 10, max_string_length=4) == "xxxx...[truncated 6 chars]"


def test_json_formatter_emits_extras_with_request_id() -> None:
    record = logging.LogRecord("grantforge.api", logging.INFO, __file__, 1, "proposal_generated", None, None)
    record.event = "proposal_generated"
    record.document_id = "proposal-1"
    record.note = "write to coordinator@agritech.example.org"

    token = set_request_id("req-42")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        reset_request_id(token)

    assert payload["message"] == "proposal_generated"
    assert payload["request_id"] == "req-42"
    assert payload["document_id"] == "proposal-1"
    assert payload["note"] == "write to [REDACTED_EMAIL]"


def test_sanitize_for_logging_redacts_partner_bank_and_tax_identifiers() -> None:
    partner = {
        "name": "Agritech Lab",
        "legalRepresentative": "Jan de Vries",
        "vatNumber": "NL123456789B01",
        "bank-account": "NL91ABNA0417164300",
        "description": "Invoices go to NL91 ABNA 0417 1643 00 (VAT no. NL123456789B01); VAT reimbursement applies.",
    }

    sanitized = sanitize_for_logging(partner, max_string_length=2000)

    assert sanitized["name"] == "Agritech Lab"
    assert sanitized["legalRepresentative"] == "[REDACTED]"
    assert sanitized["vatNumber"] == "[REDACTED]"
    assert sanitized["bank-account"] == "[REDACTED]"
    assert sanitized["description"] == (
        "Invoices go to [REDACTED_IBAN] (VAT no. [REDACTED_VAT]); VAT reimbursement applies."
    )


def test_json_formatter_keeps_token_counts_but_hides_tokens() -> None:
    record = logging.LogRecord("grantforge.provider", logging.WARNING, __file__, 1, "generation_truncated", None, None)
    record.max_tokens = 4096
    record.session_token = "abc123"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["max_tokens"] == 4096
    assert payload["session_token"] == "[REDACTED]"
