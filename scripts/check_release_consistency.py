#!/usr/bin/env python3
"""Validate that the runtime version, the FastAPI app and the package metadata agree."""

from __future__ import annotations

import re
import tomllib
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _parse_app_version(version_text: str) -> str | None:
    match = re.search(r'^APP_VERSION\s*=\s*"([^"]+)"\s*$', version_text, flags=re.MULTILINE)
    if not match:
        return None
    return match.group(1).strip()


def _validate_semver(version: str) -> bool:
    return re.fullmatch(r"\d+\.\d+\.\d+", version) is not None


def check(repo_root: Path = REPO_ROOT) -> list[str]:
    version_file = repo_root / "backend" / "grantforge" / "version.py"
    main_file = repo_root / "backend" / "grantforge" / "main.py"
    pyproject_file = repo_root / "pyproject.toml"

    errors = [f"Missing file: {path}" for path in (version_file, main_file, pyproject_file) if not path.exists()]
    if errors:
        return errors

    app_version = _parse_app_version(_read(version_file))
    if app_version is None:
        errors.append(f"Could not parse APP_VERSION from {version_file}")
        app_version = "unknown"
    elif not _validate_semver(app_version):
        errors.append(f"APP_VERSION must follow X.Y.Z semantic versioning, found: {app_version}")

    main_text = _read(main_file)
    if "from grantforge.version import APP_VERSION" not in main_text:
        errors.append("backend/grantforge/main.py must import APP_VERSION from grantforge.version.")
    if re.search(r"FastAPI\([^)]*version\s*=\s*APP_VERSION", main_text, flags=re.DOTALL) is None:
        errors.append("backend/grantforge/main.py must set FastAPI version=APP_VERSION.")

    try:
        project = tomllib.loads(_read(pyproject_file)).get("project", {})
    except tomllib.TOMLDecodeError as exc:
        errors.append(f"pyproject.toml is not valid TOML: {exc}")
        return errors
    package_version = str(project.get("version") or "")
    if package_version != app_version:
        errors.append(f"pyproject.toml version '{package_version}' does not match APP_VERSION '{app_version}'.")
    return errors


def main() -> int:
    errors = check()
    if errors:
        for error in errors:
            print(f"[ERROR] {error}")
        return 1

    print("[OK] Release consistency checks passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
