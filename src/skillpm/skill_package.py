from __future__ import annotations

import hashlib
import io
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from platformdirs import user_data_path

from .errors import FileSystemError, UserCancelledError, ValidationError
from .manifest import MANIFEST_FILENAME, split_frontmatter
from .registry import BundledFileSummary

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUNDLE_BYTES = 10 * 1024 * 1024  # 10 MiB soft threshold
FILE_MODE = 0o644
DIR_MODE = 0o755
LOCAL_INSTALL_DIR = Path(".skills") / "skills"

# Directory/file names to skip anywhere in the tree.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    ".DS_Store",
    "Thumbs.db",
    "__pycache__",
}
# Dotfiles that still ship with the bundle.
ALLOWED_DOTFILES = {".skillsrc"}

# Top-level files that are not described in the registry listing.
SUMMARY_SKIP_NAMES = {"package.json", "package-lock.json", "README.md"}


@dataclass(frozen=True)
class Bundle:
    root: Path
    zip_bytes: bytes
    sha256: str
    size_bytes: int
    file_count: int
    exceeds_threshold: bool
    warnings: list[str]


ConfirmOverwrite = Callable[[Path], bool]


def _should_exclude(path: Path, root: Path) -> bool:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return True

    for part in rel.parts:
        if part in DEFAULT_EXCLUDE_NAMES:
            return True
        if part.startswith(".") and part not in ALLOWED_DOTFILES:
            return True
    return False


def pack_skill(root: Path, *, max_bundle_bytes: int = DEFAULT_MAX_BUNDLE_BYTES) -> Bundle:
    root = root.expanduser().resolve()
    if not root.exists():
        raise FileSystemError(f"Path does not exist: {root}", path=str(root))
    if not root.is_dir():
        raise FileSystemError(f"Not a directory: {root}", path=str(root))

    skill_md = root / MANIFEST_FILENAME
    if not skill_md.is_file():
        raise ValidationError(
            f"Missing required file: {skill_md}",
            field=MANIFEST_FILENAME,
            remedy="Create a SKILL.md with YAML frontmatter at the root of the skill directory.",
        )

    files: list[Path] = []
    for p in root.rglob("*"):
        if _should_exclude(p, root):
            continue
        if p.is_symlink():
            # Avoid surprising content and portability issues.
            continue
        if p.is_file():
            files.append(p)

    files.sort(key=lambda p: str(p.relative_to(root)).lower())

    buf = io.BytesIO()
    try:
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for p in files:
                zf.write(p, arcname=str(p.relative_to(root)).replace(os.sep, "/"))
    except OSError as e:
        raise FileSystemError(f"Failed to read {e.filename}: {e.strerror}", path=str(e.filename)) from e

    zip_bytes = buf.getvalue()
    size_bytes = len(zip_bytes)
    exceeds = size_bytes > max_bundle_bytes

    warnings: list[str] = []
    if exceeds:
        msg = f"Bundle is {size_bytes} bytes which exceeds the recommended {max_bundle_bytes} bytes."
        logger.warning(msg)
        warnings.append(msg)

    return Bundle(
        root=root,
        zip_bytes=zip_bytes,
        sha256=hashlib.sha256(zip_bytes).hexdigest(),
        size_bytes=size_bytes,
        file_count=len(files),
        exceeds_threshold=exceeds,
        warnings=warnings,
    )


def _manifest_member(zf: zipfile.ZipFile) -> zipfile.ZipInfo | None:
    candidates = [i for i in zf.infolist() if not i.is_dir() and Path(i.filename).name == MANIFEST_FILENAME]
    if not candidates:
        return None
    # Prefer the shallowest SKILL.md (archives may wrap everything in one folder).
    return min(candidates, key=lambda i: i.filename.count("/"))


def read_manifest_name(zip_bytes: bytes) -> str:
    """Read the declared skill name from the archive's SKILL.md only."""
    try:
        with zipfile.ZipFile(io.BytesIO(zip_bytes), "r") as zf:
            info = _manifest_member(zf)
            if info is None:
                raise FileSystemError("Archive does not contain SKILL.md", remedy="Re-publish the skill with a SKILL.md.")
            text = zf.read(info).decode("utf-8")
    except zipfile.BadZipFile as e:
        raise FileSystemError(f"Corrupt archive: {e}") from e

    data, _ = split_frontmatter(text)
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("SKILL.md in archive has no name", field="name")
    return name.strip()


def install_root(*, install_dir: str | Path | None = None, global_: bool = False, cwd: Path | None = None) -> Path:
    if install_dir is not None:
        return Path(install_dir).expanduser().resolve()
    if global_:
        return user_data_path("skillpm") / "skills"
    return ((cwd or Path.cwd()) / LOCAL_INSTALL_DIR).resolve()


def resolve_install_path(
    name: str,
    *,
    install_dir: str | Path | None = None,
    global_: bool = False,
    cwd: Path | None = None,
) -> Path:
    return install_root(install_dir=install_dir, global_=global_, cwd=cwd) / name


def ensure_writable(directory: Path) -> None:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(
            f"Cannot create install directory {directory}: {e.strerror}",
            path=str(directory),
            remedy="Choose a different location or fix directory permissions.",
        ) from e
    if not os.access(directory, os.W_OK):
        raise FileSystemError(
            f"Install directory is not writable: {directory}",
            path=str(directory),
            remedy="Fix directory permissions or install with --global / --local.",
        )


def _existing_ancestor(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path(path.anchor or ".")


def check_free_space(target: Path, archive_size: int) -> None:
    required = archive_size * 2
    free = shutil.disk_usage(_existing_ancestor(target)).free
    if free < required:
        raise FileSystemError(
            f"Insufficient disk space: need {required} bytes, {free} available",
            path=str(target),
            remedy="Free up disk space and retry.",
        )


def _safe_extract_zip(zip_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(io.BytesIO(zip_bytes), "r") as zf:
            for info in zf.infolist():
                name = info.filename
                if not name:
                    continue
                if name.startswith("/"):
                    raise FileSystemError(f"Archive contains an absolute path entry: {name!r}")
                target = (dest / name).resolve()
                base = dest.resolve()
                if not str(target).startswith(str(base) + os.sep) and target != base:
                    raise FileSystemError(f"Archive contains an invalid path entry: {name!r}")

                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, "r") as src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
    except zipfile.BadZipFile as e:
        raise FileSystemError(f"Corrupt archive: {e}", path=str(dest)) from e


def _apply_modes(root: Path) -> None:
    os.chmod(root, DIR_MODE)
    for dirpath, dirnames, filenames in os.walk(root):
        for d in dirnames:
            os.chmod(os.path.join(dirpath, d), DIR_MODE)
        for f in filenames:
            os.chmod(os.path.join(dirpath, f), FILE_MODE)


def extract_atomic(
    zip_bytes: bytes,
    target: Path,
    *,
    force: bool = False,
    confirm: ConfirmOverwrite | None = None,
) -> Path:
    """Extract ``zip_bytes`` into ``target`` all-or-nothing.

    The archive is unpacked into a staging directory next to ``target`` and
    renamed into place only after SKILL.md is found at its root. Until then
    an existing ``target`` is left as it was.
    """
    check_free_space(target.parent, len(zip_bytes))

    if target.exists() and not force:
        if confirm is None or not confirm(target):
            raise UserCancelledError(f"Not overwriting existing skill at {target}")

    target.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".skillpm-staging-", dir=target.parent))
    backup = target.with_name(target.name + ".skillpm-backup")
    had_existing = False
    try:
        unpack_root = staging / "unpacked"
        _safe_extract_zip(zip_bytes, unpack_root)

        source_root = unpack_root
        if not (source_root / MANIFEST_FILENAME).is_file():
            children = list(unpack_root.iterdir())
            if len(children) == 1 and children[0].is_dir() and (children[0] / MANIFEST_FILENAME).is_file():
                source_root = children[0]
            else:
                raise FileSystemError(
                    f"Archive for {target.name} does not contain SKILL.md at root",
                    path=str(target),
                    remedy="The published bundle is invalid; ask the author to re-publish it.",
                )

        _apply_modes(source_root)

        if backup.exists():
            shutil.rmtree(backup)
        if target.exists():
            target.rename(backup)
            had_existing = True
        try:
            source_root.rename(target)
        except OSError:
            if had_existing and backup.exists() and not target.exists():
                backup.rename(target)
            raise
    except OSError as e:
        raise FileSystemError(f"Extraction into {target} failed: {e}", path=str(target)) from e
    finally:
        shutil.rmtree(staging, ignore_errors=True)
        if had_existing and backup.exists() and target.exists():
            shutil.rmtree(backup, ignore_errors=True)

    logger.debug("extracted %d bytes into %s", len(zip_bytes), target)
    return target


def _file_type(name: str) -> str:
    ext = Path(name).suffix.lower()
    return {".md": "markdown", ".py": "python", ".js": "javascript", ".ts": "javascript", ".sh": "script"}.get(ext, "text")


def _file_description(name: str) -> str:
    if name == MANIFEST_FILENAME:
        return "Main skill file"
    ext = Path(name).suffix.lower()
    return {
        ".md": "Documentation file",
        ".py": "Python script",
        ".js": "JavaScript module",
        ".ts": "TypeScript module",
        ".json": "Configuration file",
        ".yaml": "Configuration file",
        ".yml": "Configuration file",
        ".sh": "Shell script",
    }.get(ext, "Resource file")


def _preview(path: Path, *, max_lines: int = 10, max_chars: int = 500) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""
    lines = [line for line in text.splitlines() if line.strip()]
    preview = "\n".join(lines[:max_lines])
    if len(preview) > max_chars:
        return preview[:max_chars] + "..."
    return preview


def summarize_files(root: Path) -> list[BundledFileSummary]:
    """Describe the top-level files of a skill directory for registry display."""
    summaries: list[BundledFileSummary] = []
    for entry in root.iterdir():
        if entry.is_dir() or entry.name.startswith(".") or entry.name in SUMMARY_SKIP_NAMES:
            continue
        if entry.name in DEFAULT_EXCLUDE_NAMES:
            continue
        level = "Level 2" if entry.suffix.lower() == ".md" else "Level 3"
        summaries.append(
            BundledFileSummary(
                name=entry.name,
                type=_file_type(entry.name),
                size=f"{entry.stat().st_size / 1024:.1f} KB",
                description=_file_description(entry.name),
                level=level,
                preview=_preview(entry),
            )
        )

    summaries.sort(key=lambda s: (s.name != MANIFEST_FILENAME, s.level, s.name))
    return summaries
