"""Append-only, versioned skill metadata store.

Versions are only ever added. ``latest_version`` always points at the most
recently registered version, regardless of semantic ordering.
"""

from __future__ import annotations

import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field, replace
from functools import cmp_to_key
from pathlib import Path
from typing import Any, Callable, Iterable

from .errors import AuthorizationError, FileSystemError, SkillNotFoundError, ValidationError
from .manifest import MAX_DESCRIPTION_LENGTH, DependencyRef, validate_name, validate_version

logger = logging.getLogger(__name__)

REGISTRY_NAME = "Agent Skills Registry"
REGISTRY_VERSION = "1.1.0"
ADP_VERSION = "1.0"
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100

CONTENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")

# Fields an owner may change on an existing version.
UPDATABLE_FIELDS = (
    "description",
    "author",
    "tags",
    "dependencies",
    "external_requirements",
    "license",
    "bundled_files",
    "changelog",
)


class Decision(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


def authorize(caller: str | None, owner: str | None) -> Decision:
    if caller and owner and caller == owner:
        return Decision.ALLOW
    return Decision.DENY


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    raw = version.strip()
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # ignore build metadata
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(p for p in pre_s.split(".") if p != "")
    else:
        main_s = raw
        pre_parts = None
    main_parts = main_s.split(".")
    if any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def compare_versions(a: str, b: str) -> int:
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        return (a > b) - (a < b)
    if ma != mb:
        return -1 if ma < mb else 1
    if pa == pb:
        return 0
    # A release sorts after any of its pre-releases.
    if pa is None:
        return 1
    if pb is None:
        return -1
    for x, y in zip(pa, pb):
        if x == y:
            continue
        if x.isdigit() and y.isdigit():
            return -1 if int(x) < int(y) else 1
        if x.isdigit() != y.isdigit():
            return -1 if x.isdigit() else 1
        return -1 if x < y else 1
    return (len(pa) > len(pb)) - (len(pa) < len(pb))


def sort_versions(versions: Iterable[str]) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions))


@dataclass(frozen=True)
class BundledFileSummary:
    name: str
    type: str
    size: str
    description: str
    level: str
    preview: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "size": self.size,
            "description": self.description,
            "level": self.level,
            "preview": self.preview,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BundledFileSummary":
        return cls(
            name=str(raw.get("name", "")),
            type=str(raw.get("type", "")),
            size=str(raw.get("size", "")),
            description=str(raw.get("description", "")),
            level=str(raw.get("level", "")),
            preview=str(raw.get("preview", "")),
        )


@dataclass(frozen=True)
class SkillVersionRecord:
    name: str
    version: str
    description: str
    author: str
    owner: str
    content_id: str
    tags: tuple[str, ...] = ()
    dependencies: tuple[DependencyRef, ...] = ()
    external_requirements: tuple[str, ...] = ()
    license: str | None = None
    bundled_files: tuple[BundledFileSummary, ...] = ()
    changelog: str = ""
    published_at: int = 0  # epoch milliseconds
    updated_at: int = 0
    download_count: int = 0
    last_downloaded_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "owner": self.owner,
            "contentId": self.content_id,
            "tags": list(self.tags),
            "dependencies": [d.to_dict() for d in self.dependencies],
            "externalRequirements": list(self.external_requirements),
            "license": self.license,
            "bundledFiles": [f.to_dict() for f in self.bundled_files],
            "changelog": self.changelog,
            "publishedAt": self.published_at,
            "updatedAt": self.updated_at,
            "downloadCount": self.download_count,
            "lastDownloadedAt": self.last_downloaded_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SkillVersionRecord":
        return cls(
            name=str(raw["name"]),
            version=str(raw["version"]),
            description=str(raw.get("description", "")),
            author=str(raw.get("author", "")),
            owner=str(raw.get("owner", "")),
            content_id=str(raw.get("contentId", "")),
            tags=tuple(str(t) for t in raw.get("tags") or []),
            dependencies=tuple(DependencyRef.from_raw(d) for d in raw.get("dependencies") or []),
            external_requirements=tuple(str(r) for r in raw.get("externalRequirements") or []),
            license=raw.get("license"),
            bundled_files=tuple(BundledFileSummary.from_dict(f) for f in raw.get("bundledFiles") or []),
            changelog=str(raw.get("changelog") or ""),
            published_at=int(raw.get("publishedAt") or 0),
            updated_at=int(raw.get("updatedAt") or 0),
            download_count=int(raw.get("downloadCount") or 0),
            last_downloaded_at=raw.get("lastDownloadedAt"),
        )


@dataclass
class SkillRegistryEntry:
    name: str
    latest_version: str
    versions: dict[str, SkillVersionRecord] = field(default_factory=dict)

    @property
    def latest(self) -> SkillVersionRecord:
        return self.versions[self.latest_version]

    @property
    def owner(self) -> str:
        return self.latest.owner


@dataclass(frozen=True)
class SkillPage:
    skills: list[SkillVersionRecord]
    total: int
    limit: int
    offset: int

    @property
    def returned(self) -> int:
        return len(self.skills)

    @property
    def has_next_page(self) -> bool:
        return self.offset + self.limit < self.total

    @property
    def has_prev_page(self) -> bool:
        return self.offset > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "skills": [s.to_dict() for s in self.skills],
            "pagination": {
                "total": self.total,
                "limit": self.limit,
                "offset": self.offset,
                "returned": self.returned,
                "hasNextPage": self.has_next_page,
                "hasPrevPage": self.has_prev_page,
            },
        }


def _validate_record_fields(*, name: str, version: str, description: str, author: str, content_id: str) -> None:
    if not name:
        raise ValidationError("Name is required", field="name")
    validate_name(name)
    if not version:
        raise ValidationError("Version is required", field="version")
    validate_version(version)
    if not description:
        raise ValidationError("Description is required", field="description")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description exceeds maximum length of {MAX_DESCRIPTION_LENGTH} characters",
            field="description",
            value=len(description),
        )
    if not author:
        raise ValidationError("Author is required", field="author")
    if not content_id:
        raise ValidationError("Content id is required", field="contentId")
    if not CONTENT_ID_RE.match(content_id):
        raise ValidationError(
            "Invalid content id format. Expected 43-character identifier",
            field="contentId",
            value=content_id,
        )


class SkillRegistry:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._skills: dict[str, SkillRegistryEntry] = {}
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def __len__(self) -> int:
        return len(self._skills)

    def __contains__(self, name: object) -> bool:
        return name in self._skills

    def info(self) -> dict[str, Any]:
        return {
            "process": {
                "name": REGISTRY_NAME,
                "version": REGISTRY_VERSION,
                "adpVersion": ADP_VERSION,
                "capabilities": ["register", "update", "search", "retrieve", "list", "versions", "downloads"],
            },
            "handlers": [
                "Info",
                "Register-Skill",
                "Update-Skill",
                "Get-Skill",
                "Get-Skill-Versions",
                "Search-Skills",
                "List-Skills",
                "Record-Download",
                "Get-Download-Stats",
            ],
            "skillCount": len(self._skills),
        }

    def register_skill(
        self,
        *,
        name: str,
        version: str,
        description: str,
        author: str,
        owner: str,
        content_id: str,
        tags: Iterable[str] = (),
        dependencies: Iterable[DependencyRef] = (),
        external_requirements: Iterable[str] = (),
        license: str | None = None,
        bundled_files: Iterable[BundledFileSummary] = (),
        changelog: str = "",
    ) -> SkillVersionRecord:
        _validate_record_fields(name=name, version=version, description=description, author=author, content_id=content_id)
        if not owner:
            raise AuthorizationError("Caller identity is required to register a skill")

        entry = self._skills.get(name)
        if entry is not None:
            if version in entry.versions:
                raise ValidationError(
                    f"Version {version} of skill '{name}' already exists",
                    field="version",
                    value=version,
                    remedy="Bump the version in SKILL.md before publishing again.",
                )
            if authorize(owner, entry.owner) is Decision.DENY:
                raise AuthorizationError(
                    f"Skill '{name}' is owned by another identity",
                    identity=owner,
                    remedy="Choose a different skill name.",
                )

        now = self._now_ms()
        record = SkillVersionRecord(
            name=name,
            version=version,
            description=description,
            author=author,
            owner=owner,
            content_id=content_id,
            tags=tuple(tags),
            dependencies=tuple(dependencies),
            external_requirements=tuple(external_requirements),
            license=license,
            bundled_files=tuple(bundled_files),
            changelog=changelog,
            published_at=now,
            updated_at=now,
        )
        if entry is None:
            entry = SkillRegistryEntry(name=name, latest_version=version)
            self._skills[name] = entry
        entry.versions[version] = record
        entry.latest_version = version
        logger.debug("registered %s@%s", name, version)
        return record

    def update_skill(self, *, name: str, version: str, caller: str | None, **changes: Any) -> SkillVersionRecord:
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        current = self.get_skill(name, version)
        if authorize(caller, current.owner) is Decision.DENY:
            raise AuthorizationError(
                f"Only the owner of '{name}' can update it",
                identity=caller,
                remedy="Publish with the wallet that originally registered this skill.",
            )

        if "tags" in changes:
            changes["tags"] = tuple(changes["tags"] or ())
        if "dependencies" in changes:
            changes["dependencies"] = tuple(changes["dependencies"] or ())
        if "external_requirements" in changes:
            changes["external_requirements"] = tuple(changes["external_requirements"] or ())
        if "bundled_files" in changes:
            changes["bundled_files"] = tuple(changes["bundled_files"] or ())
        updated = replace(current, **changes, updated_at=self._now_ms())
        _validate_record_fields(
            name=updated.name,
            version=updated.version,
            description=updated.description,
            author=updated.author,
            content_id=updated.content_id,
        )
        self._skills[name].versions[version] = updated
        logger.debug("updated %s@%s", name, version)
        return updated

    def get_skill(self, name: str, version: str | None = None) -> SkillVersionRecord:
        entry = self._skills.get(name)
        if entry is None:
            raise SkillNotFoundError(name, version)
        if version is None:
            return entry.latest
        record = entry.versions.get(version)
        if record is None:
            raise SkillNotFoundError(name, version)
        return record

    def get_skill_versions(self, name: str) -> dict[str, Any]:
        entry = self._skills.get(name)
        if entry is None:
            raise SkillNotFoundError(name)
        return {"latest": entry.latest_version, "versions": sort_versions(entry.versions)}

    def search_skills(self, query: str = "") -> list[SkillVersionRecord]:
        q = (query or "").strip().lower()
        results: list[SkillVersionRecord] = []
        for name in sorted(self._skills):
            latest = self._skills[name].latest
            if not q:
                results.append(latest)
                continue
            haystacks = [latest.name, latest.description, *latest.tags]
            if any(q in h.lower() for h in haystacks):
                results.append(latest)
        return results

    def list_skills(
        self,
        *,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        author: str | None = None,
        tags: Iterable[str] | None = None,
        name: str | None = None,
    ) -> SkillPage:
        limit = max(1, min(int(limit), MAX_PAGE_LIMIT))
        offset = max(0, int(offset))
        wanted_tags = [t.lower() for t in (tags or []) if t]
        author_l = author.lower() if author else None
        name_l = name.lower() if name else None

        matches: list[SkillVersionRecord] = []
        for skill_name in sorted(self._skills):
            latest = self._skills[skill_name].latest
            if author_l and latest.author.lower() != author_l:
                continue
            if name_l and name_l not in latest.name.lower():
                continue
            if wanted_tags:
                have = {t.lower() for t in latest.tags}
                if not all(t in have for t in wanted_tags):
                    continue
            matches.append(latest)

        return SkillPage(skills=matches[offset : offset + limit], total=len(matches), limit=limit, offset=offset)

    def record_download(self, name: str, version: str | None = None) -> SkillVersionRecord:
        record = self.get_skill(name, version)
        updated = replace(record, download_count=record.download_count + 1, last_downloaded_at=self._now_ms())
        self._skills[name].versions[record.version] = updated
        return updated

    def get_download_stats(self, name: str) -> dict[str, Any]:
        entry = self._skills.get(name)
        if entry is None:
            raise SkillNotFoundError(name)
        versions = {
            v: {"version": v, "downloads": rec.download_count, "lastDownloadedAt": rec.last_downloaded_at}
            for v, rec in entry.versions.items()
        }
        return {
            "skillName": name,
            "totalDownloads": sum(rec.download_count for rec in entry.versions.values()),
            "versions": versions,
            "latestVersion": entry.latest_version,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "skills": {
                name: {
                    "latest": entry.latest_version,
                    "versions": {v: rec.to_dict() for v, rec in entry.versions.items()},
                }
                for name, entry in sorted(self._skills.items())
            }
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, clock: Callable[[], float] = time.time) -> "SkillRegistry":
        registry = cls(clock=clock)
        for name, entry_raw in (raw.get("skills") or {}).items():
            versions = {v: SkillVersionRecord.from_dict(r) for v, r in (entry_raw.get("versions") or {}).items()}
            latest = entry_raw.get("latest")
            if not versions or latest not in versions:
                raise ValidationError(f"Registry snapshot entry {name!r} has no valid latest version", field="latest", value=latest)
            registry._skills[name] = SkillRegistryEntry(name=name, latest_version=latest, versions=versions)
        return registry

    @classmethod
    def load(cls, path: Path, *, clock: Callable[[], float] = time.time) -> "SkillRegistry":
        if not path.exists():
            return cls(clock=clock)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Registry snapshot {path} is not valid JSON: {e}", field="registry", value=str(path)) from e
        except OSError as e:
            raise FileSystemError(f"Cannot read registry snapshot: {e}", path=str(path)) from e
        if not isinstance(raw, dict):
            raise ValidationError(f"Registry snapshot {path} must be a JSON object", field="registry", value=str(path))
        return cls.from_dict(raw, clock=clock)

    def save(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise FileSystemError(f"Cannot write registry snapshot: {e}", path=str(path)) from e
