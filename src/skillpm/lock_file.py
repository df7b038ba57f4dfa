from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .errors import FileSystemError

logger = logging.getLogger(__name__)

LOCK_FILENAME = "skills-lock.json"
SCHEMA_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class InstalledSkillRecord:
    name: str
    version: str
    content_id: str
    installed_at: str
    installed_path: str
    is_direct_dependency: bool = False
    dependencies: tuple[dict[str, str], ...] = ()  # [{"name", "version"}]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "contentId": self.content_id,
            "installedAt": self.installed_at,
            "installedPath": self.installed_path,
            "isDirectDependency": self.is_direct_dependency,
            "dependencies": [dict(d) for d in self.dependencies],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "InstalledSkillRecord":
        return cls(
            name=str(raw["name"]),
            version=str(raw["version"]),
            content_id=str(raw.get("contentId", "")),
            installed_at=str(raw.get("installedAt", "")),
            installed_path=str(raw.get("installedPath", "")),
            is_direct_dependency=bool(raw.get("isDirectDependency", False)),
            dependencies=tuple(
                {"name": str(d.get("name", "")), "version": str(d.get("version", ""))}
                for d in raw.get("dependencies") or []
                if isinstance(d, dict)
            ),
        )


@dataclass(frozen=True)
class LockFile:
    install_location: str
    generated_at: str = field(default_factory=utc_now)
    skills: tuple[InstalledSkillRecord, ...] = ()
    schema_version: int = SCHEMA_VERSION

    def get(self, name: str) -> InstalledSkillRecord | None:
        for rec in self.skills:
            if rec.name == name:
                return rec
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "generatedAt": self.generated_at,
            "installLocation": self.install_location,
            "skills": [s.to_dict() for s in self.skills],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, install_location: str) -> "LockFile":
        skills = raw.get("skills")
        if not isinstance(skills, list):
            raise ValueError("skills must be a list")
        return cls(
            schema_version=int(raw.get("schemaVersion", SCHEMA_VERSION)),
            generated_at=str(raw.get("generatedAt") or utc_now()),
            install_location=str(raw.get("installLocation") or install_location),
            skills=tuple(InstalledSkillRecord.from_dict(s) for s in skills),
        )


def resolve_lock_file_path(install_dir: str | Path) -> Path:
    return Path(install_dir).expanduser().resolve().parent / LOCK_FILENAME


def empty_lock(path: Path) -> LockFile:
    return LockFile(install_location=str(path.parent))


def read_lock(path: Path) -> LockFile:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return empty_lock(path)
    except PermissionError as e:
        raise FileSystemError(
            "Failed to read lock file: permission denied",
            path=str(path),
            remedy=f"Check file permissions for {path}.",
        ) from e
    except OSError as e:
        raise FileSystemError(f"Failed to read lock file: {e}", path=str(path)) from e

    try:
        raw = json.loads(text)
        if not isinstance(raw, dict):
            raise ValueError("lock file must be a JSON object")
        lock = LockFile.from_dict(raw, install_location=str(path.parent))
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Lock file %s is corrupt (%s); starting from an empty lock", path, e)
        return empty_lock(path)

    if lock.schema_version > SCHEMA_VERSION:
        logger.warning("Lock file %s has newer schema version %d", path, lock.schema_version)
    return lock


def write_lock(lock: LockFile, path: Path) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(lock.to_dict(), indent=2) + "\n", encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise FileSystemError(
            f"Failed to write lock file: {e.strerror or e}",
            path=str(path),
            remedy="Check disk space and permissions.",
        ) from e


def merge_lock(lock: LockFile, records: Iterable[InstalledSkillRecord]) -> LockFile:
    skills = list(lock.skills)
    for rec in records:
        for i, existing in enumerate(skills):
            if existing.name == rec.name:
                skills[i] = rec
                break
        else:
            skills.append(rec)
    return replace(lock, skills=tuple(skills), generated_at=utc_now())


def update_lock(record: InstalledSkillRecord, path: Path) -> LockFile:
    lock = merge_lock(read_lock(path), [record])
    write_lock(lock, path)
    return lock
