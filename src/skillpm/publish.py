from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .client import RegistryClient
from .errors import AuthorizationError, FileSystemError, UserCancelledError, ValidationError
from .install import ProgressCallback, ProgressEvent
from .lock_file import utc_now
from .manifest import MANIFEST_FILENAME, load_manifest
from .registry import Decision, authorize
from .signer import Signer, resolve_signer
from .skill_package import pack_skill, summarize_files
from .storage import StorageClient

logger = logging.getLogger(__name__)

RegistryFactory = Callable[[Signer], RegistryClient]
StorageFactory = Callable[[Signer], StorageClient]


@dataclass(frozen=True)
class PublishOptions:
    wallet_path: str | Path | None = None
    seed_phrase: str | None = None
    signer: Signer | None = None
    skip_confirmation: bool = False
    confirm_large_bundle: Callable[[int], bool] | None = None
    progress: ProgressCallback | None = None


@dataclass(frozen=True)
class PublishResult:
    skill_name: str
    version: str
    content_id: str
    bundle_size: int
    file_count: int
    upload_cost: int
    registry_message_id: str
    published_at: str
    updated_existing: bool = False
    warnings: list[str] = field(default_factory=list)


class PublishService:
    def __init__(self, registry_factory: RegistryFactory, storage_factory: StorageFactory) -> None:
        self.registry_factory = registry_factory
        self.storage_factory = storage_factory

    def _emit(self, options: PublishOptions, type_: str, message: str) -> None:
        logger.debug("[%s] %s", type_, message)
        if options.progress is not None:
            options.progress(ProgressEvent(type_, message))

    async def publish(self, directory: str | Path, options: PublishOptions | None = None) -> PublishResult:
        options = options or PublishOptions()
        skill_dir = Path(directory).expanduser().resolve()

        self._emit(options, "validating", f"Validating {skill_dir}")
        if not skill_dir.is_dir():
            raise FileSystemError(f"Not a directory: {skill_dir}", path=str(skill_dir))
        if not (skill_dir / MANIFEST_FILENAME).is_file():
            raise ValidationError(
                f"Missing required file: {skill_dir / MANIFEST_FILENAME}",
                field=MANIFEST_FILENAME,
                remedy="Create a SKILL.md with YAML frontmatter at the root of the skill directory.",
            )

        self._emit(options, "parsing", "Parsing SKILL.md")
        manifest = load_manifest(skill_dir)
        warnings = list(manifest.warnings)

        signer = resolve_signer(signer=options.signer, wallet_path=options.wallet_path, seed_phrase=options.seed_phrase)
        logger.debug("publishing as %s", signer.identity)

        self._emit(options, "bundling", "Creating bundle")
        bundle = pack_skill(skill_dir)
        warnings.extend(bundle.warnings)
        if bundle.exceeds_threshold and not options.skip_confirmation:
            if options.confirm_large_bundle is not None and not options.confirm_large_bundle(bundle.size_bytes):
                raise UserCancelledError("Publish cancelled: bundle exceeds the recommended size")

        self._emit(options, "uploading", f"Uploading {bundle.size_bytes} bytes")
        storage = self.storage_factory(signer)
        try:
            upload = await storage.upload(
                bundle.zip_bytes,
                tags={
                    "Content-Type": "application/zip",
                    "App-Name": "skillpm",
                    "Skill-Name": manifest.name,
                    "Skill-Version": manifest.version,
                },
            )
        finally:
            await storage.aclose()
        logger.debug("uploaded bundle as %s (cost %d)", upload.content_id, upload.cost)

        files = summarize_files(skill_dir)

        self._emit(options, "registering", "Registering with registry")
        registry = self.registry_factory(signer)
        try:
            fields = dict(
                description=manifest.description,
                author=manifest.author,
                tags=manifest.tags,
                dependencies=manifest.dependencies,
                external_requirements=manifest.external_requirements,
                license=manifest.license,
                bundled_files=tuple(files),
            )
            existing = await registry.get_skill(manifest.name)
            updated_existing = False
            if existing is not None and authorize(signer.identity, existing.owner) is Decision.DENY:
                raise AuthorizationError(
                    f"Skill '{manifest.name}' is owned by another identity",
                    identity=signer.identity,
                    remedy="Publish under a different skill name, or use the wallet that registered it.",
                )
            same_version = None
            if existing is not None:
                same_version = existing if existing.version == manifest.version else await registry.get_skill(manifest.name, manifest.version)
            if same_version is not None:
                if same_version.content_id != upload.content_id:
                    msg = (
                        f"{manifest.name}@{manifest.version} is already published; only its metadata was updated. "
                        "Bump the version to publish new content."
                    )
                    logger.warning(msg)
                    warnings.append(msg)
                message_id = await registry.update_skill(name=manifest.name, version=manifest.version, **fields)
                updated_existing = True
            else:
                message_id = await registry.register_skill(
                    name=manifest.name,
                    version=manifest.version,
                    content_id=upload.content_id,
                    **fields,
                )
        finally:
            await registry.aclose()

        self._emit(options, "complete", f"Published {manifest.name}@{manifest.version}")
        return PublishResult(
            skill_name=manifest.name,
            version=manifest.version,
            content_id=upload.content_id,
            bundle_size=bundle.size_bytes,
            file_count=bundle.file_count,
            upload_cost=upload.cost,
            registry_message_id=message_id,
            published_at=utc_now(),
            updated_existing=updated_existing,
            warnings=warnings,
        )
