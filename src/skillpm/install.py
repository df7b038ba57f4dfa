from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .client import RegistryClient
from .errors import SkillNotFoundError, SkillpmError, ValidationError
from .graph import topological_sort
from .lock_file import InstalledSkillRecord, read_lock, resolve_lock_file_path, update_lock, utc_now
from .manifest import MANIFEST_FILENAME, validate_name
from .resolver import DEFAULT_MAX_DEPTH, DependencyNode, DependencyResolver
from .skill_package import ConfirmOverwrite, ensure_writable, extract_atomic, install_root
from .storage import StorageClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    type: str
    message: str
    current_item: str | None = None
    current_index: int | None = None
    total_items: int | None = None


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class InstallOptions:
    global_: bool = False
    install_dir: str | Path | None = None
    force: bool = False
    no_lock: bool = False
    max_depth: int = DEFAULT_MAX_DEPTH
    confirm: ConfirmOverwrite | None = None
    progress: ProgressCallback | None = None


@dataclass(frozen=True)
class InstallResult:
    installed: list[str]
    skipped: list[str]
    dependency_count: int
    total_bytes: int
    elapsed_s: float
    install_dir: Path
    lock_path: Path | None
    notices: list[str] = field(default_factory=list)


def parse_skill_spec(value: str) -> tuple[str, str | None]:
    raw = value.strip()
    name, sep, version = raw.partition("@")
    name = name.strip()
    version = version.strip()
    if not name:
        raise ValidationError(f"Invalid skill identifier {value!r}. Expected <name> or <name>@<version>.", field="skill", value=value)
    if sep and not version:
        raise ValidationError(f"Missing version after '@' in {value!r}", field="version", value=value)
    validate_name(name)
    return name, version or None


class InstallService:
    def __init__(
        self,
        registry: RegistryClient,
        storage: StorageClient,
        *,
        resolver: DependencyResolver | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.resolver = resolver or DependencyResolver(registry)
        self.cwd = cwd

    def _emit(self, options: InstallOptions, event: ProgressEvent) -> None:
        logger.debug("[%s] %s", event.type, event.message)
        if options.progress is not None:
            options.progress(event)

    async def install(self, spec: str, options: InstallOptions | None = None) -> InstallResult:
        options = options or InstallOptions()
        started = time.monotonic()
        name, version = parse_skill_spec(spec)

        root_dir = install_root(install_dir=options.install_dir, global_=options.global_, cwd=self.cwd)
        ensure_writable(root_dir)
        lock_path = resolve_lock_file_path(root_dir)
        logger.debug("installing %s into %s", spec, root_dir)

        self._emit(options, ProgressEvent("query-registry", "Querying registry..."))
        record = await self.registry.get_skill(name, version)
        if record is None:
            raise SkillNotFoundError(name, version)
        self.resolver.cache.put((name, version), record)

        self._emit(options, ProgressEvent("resolve-dependencies", "Resolving dependencies..."))
        lock = read_lock(lock_path)

        def is_installed(skill_name: str, skill_version: str) -> bool:
            if not (root_dir / skill_name / MANIFEST_FILENAME).is_file():
                return False
            rec = lock.get(skill_name)
            return rec is None or rec.version == skill_version

        tree = await self.resolver.resolve(
            name,
            version=version,
            max_depth=options.max_depth,
            skip_installed=not options.force,
            is_installed=None if options.force else is_installed,
        )

        root_key = tree.root.key
        notices: list[str] = []
        if tree.root.external_requirements:
            notices.append(
                f"Note: {tree.root.name} requires external tools: {', '.join(tree.root.external_requirements)}. "
                "Install them separately."
            )
        external = dict.fromkeys(r for node in tree.flat_list if node.key != root_key for r in node.external_requirements)
        for requirement in external:
            if requirement not in tree.root.external_requirements:
                notices.append(f"Skipping external requirement {requirement} (must be installed separately)")
        for notice in notices:
            logger.info(notice)

        ordered = topological_sort(tree.flat_list)
        installed: list[str] = []
        skipped: list[str] = []
        total_bytes = 0
        total = len(ordered)
        for index, node in enumerate(ordered, start=1):
            item = node.key
            target = root_dir / node.name
            if not options.force and (node.already_installed or is_installed(node.name, node.version)):
                skipped.append(item)
                self._emit(options, ProgressEvent("extract-bundle", f"Skipping {item} (already installed)", item, index, total))
                continue

            self._emit(options, ProgressEvent("download-bundle", f"Downloading {item}", item, index, total))
            data = await self.storage.download(node.content_id)
            total_bytes += len(data)

            self._emit(options, ProgressEvent("extract-bundle", f"Installing {item}", item, index, total))
            extract_atomic(data, target, force=options.force, confirm=options.confirm)
            installed.append(item)

            if not options.no_lock:
                self._record_lock(node, target, lock_path, is_root=node.key == root_key, options=options)
            await self._record_download(node)

        self._emit(options, ProgressEvent("complete", "Installation complete"))
        return InstallResult(
            installed=installed,
            skipped=skipped,
            dependency_count=tree.total_count - 1,
            total_bytes=total_bytes,
            elapsed_s=time.monotonic() - started,
            install_dir=root_dir,
            lock_path=None if options.no_lock else lock_path,
            notices=notices,
        )

    def _record_lock(self, node: DependencyNode, target: Path, lock_path: Path, *, is_root: bool, options: InstallOptions) -> None:
        self._emit(options, ProgressEvent("update-lock-file", f"Updating lock file for {node.key}"))
        record = InstalledSkillRecord(
            name=node.name,
            version=node.version,
            content_id=node.content_id,
            installed_at=utc_now(),
            installed_path=str(target),
            is_direct_dependency=is_root,
            dependencies=tuple({"name": c.name, "version": c.version} for c in node.children),
        )
        try:
            update_lock(record, lock_path)
        except SkillpmError as e:
            logger.warning("Failed to update lock file for %s: %s", node.key, e)

    async def _record_download(self, node: DependencyNode) -> None:
        try:
            await self.registry.record_download(node.name, node.version)
        except Exception as e:  # noqa: BLE001
            logger.debug("download telemetry for %s failed: %s", node.key, e)
