import json
from pathlib import Path
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient

from grantforge.api.routers.system import reset_ready_cache
from grantforge.config import settings
from grantforge.main import app
from grantforge.provider import Attachment
from grantforge.storage import LocalObjectStorage


class FakeGenerationProvider:
    """Replays queued responses; exceptions in the queue are raised instead."""

    def __init__(self) -> None:
        self.responses: list[Any] = []
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        for response in responses:
            self.responses.append(json.dumps(response) if isinstance(response, (dict, list)) else response)

    def generate(self, prompt: str, *, attachment: Attachment | None = None, lite: bool = False) -> str:
        self.calls.append({"prompt": prompt, "attachment": attachment, "lite": lite})
        if not self.responses:
            raise AssertionError("FakeGenerationProvider has no queued response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_provider() -> FakeGenerationProvider:
    return FakeGenerationProvider()


@pytest.fixture
def object_storage(tmp_path: Path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "objects")


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_provider: FakeGenerationProvider,
    object_storage: LocalObjectStorage,
) -> Iterator[TestClient]:
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/test.db")
    monkeypatch.setattr(settings, "storage_root", str(tmp_path / "objects"))
    monkeypatch.setattr("grantforge.main.get_generation_provider", lambda: fake_provider)
    monkeypatch.setattr("grantforge.main.get_object_storage", lambda: object_storage)
    reset_ready_cache()

    with TestClient(app) as test_client:
        yield test_client
    reset_ready_cache()
