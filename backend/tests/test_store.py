from pathlib import Path

import pytest

from grantforge.config import settings
from grantforge.store import (
    PersistenceError,
    VersionConflictError,
    delete_value,
    get_value,
    init_db,
    scan_prefix,
    set_value,
)


@pytest.fixture(autouse=True)
def isolated_store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/store.db")
    init_db()


def test_set_and_get_bumps_version() -> None:
    first = set_value("proposal:1", {"title": "A"})
    second = set_value("proposal:1", {"title": "B"})

    assert first.version == 1
    assert second.version == 2
    stored = get_value("proposal:1")
    assert stored is not None
    assert stored.value == {"title": "B"}
    assert stored.version == 2


def test_missing_key_returns_none() -> None:
    assert get_value("proposal:missing") is None


def test_expected_version_must_match() -> None:
    set_value("proposal:1", {"title": "A"})

    updated = set_value("proposal:1", {"title": "B"}, expected_version=1)
    assert updated.version == 2

    with pytest.raises(VersionConflictError) as exc_info:
        set_value("proposal:1", {"title": "stale"}, expected_version=1)
    assert exc_info.value.current_version == 2
    assert get_value("proposal:1").value == {"title": "B"}


def test_expected_version_zero_creates_only_when_absent() -> None:
    created = set_value("proposal:new", {"title": "A"}, expected_version=0)
    assert created.version == 1

    with pytest.raises(VersionConflictError):
        set_value("proposal:new", {"title": "again"}, expected_version=0)


def test_prefix_scan_is_literal_and_ordered() -> None:
    set_value("partner:b", {"name": "B"})
    set_value("partner:a", {"name": "A"})
    set_value("partner_x:c", {"name": "not a partner"})
    set_value("proposal:1", {"title": "P"})

    records = scan_prefix("partner:")

    assert [record.key for record in records] == ["partner:a", "partner:b"]


def test_delete_reports_whether_a_record_existed() -> None:
    set_value("template:1", {"name": "T"})

    assert delete_value("template:1") is True
    assert delete_value("template:1") is False
    assert get_value("template:1") is None


def test_non_sqlite_url_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "database_url", "postgresql://localhost/db")

    with pytest.raises(PersistenceError):
        get_value("proposal:1")
