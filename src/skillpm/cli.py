from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from dataclasses import replace
from typing import Any

from ._version import __version__
from .client import RetryPolicy, make_registry_client
from .config import Config, apply_env_overrides, load_config
from .diagnostics import format_error, setup_logging
from .errors import SkillpmError, UserCancelledError, exit_code_for
from .install import InstallOptions, InstallService, ProgressEvent
from .publish import PublishOptions, PublishService
from .registry import SkillVersionRecord
from .resolver import DEFAULT_MAX_DEPTH
from .signer import Signer
from .storage import make_storage_client

logger = logging.getLogger(__name__)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _truncate(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def _confirm(prompt: str) -> bool:
    if not sys.stdin.isatty():
        return False
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _runtime_config(args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env_overrides(load_config(getattr(args, "config", None)))
    return replace(
        cfg,
        registry_url=getattr(args, "registry", None) or cfg.registry_url,
        gateway_url=getattr(args, "gateway", None) or cfg.gateway_url,
        wallet_path=getattr(args, "wallet", None) or cfg.wallet_path,
        install_dir=getattr(args, "install_dir", None) or cfg.install_dir,
    )


def _progress(event: ProgressEvent) -> None:
    if event.type == "query-registry" or event.type == "complete":
        return
    if event.current_index is not None and event.total_items is not None:
        print(f"[{event.current_index}/{event.total_items}] {event.message}", file=sys.stderr)
    else:
        print(event.message, file=sys.stderr)


def relevance(record: SkillVersionRecord, query: str) -> int:
    q = query.strip().lower()
    if not q:
        return 0
    name = record.name.lower()
    if name == q:
        return 5
    if name.startswith(q):
        return 4
    if q in name:
        return 3
    if q in record.description.lower():
        return 2
    if any(q in t.lower() for t in record.tags):
        return 1
    return 0


def rank_results(results: list[SkillVersionRecord], query: str, tags: list[str] | None = None) -> list[SkillVersionRecord]:
    wanted = [t.lower() for t in tags or [] if t]
    if wanted:
        results = [r for r in results if all(t in {x.lower() for x in r.tags} for t in wanted)]
    return sorted(results, key=lambda r: (-relevance(r, query), r.name))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillpm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Publish, resolve and install agent skills.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLPM_REGISTRY_URL, SKILLPM_GATEWAY_URL, SKILLPM_WALLET, SKILLPM_SEED_PHRASE,
              SKILLPM_TIMEOUT_S, SKILLPM_CONFIG_PATH
            """
        ),
    )

    def _add_common(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--config", help="Config file path (default: ./.skillsrc or user config)")
        parser.add_argument("--registry", help="Registry URL, file:// URL or snapshot path")
        parser.add_argument("--verbose", action="store_true", help="Debug logging and structured error output")

    p.add_argument("--version", action="version", version=f"skillpm {__version__}")
    sub = p.add_subparsers(dest="cmd", required=True)

    pub = sub.add_parser("publish", help="Publish a skill directory")
    _add_common(pub)
    pub.add_argument("directory")
    pub.add_argument("--wallet", help="Wallet JSON file used to sign the registry write")
    pub.add_argument("--gateway", help="Storage gateway URL or local content directory")
    pub.add_argument("--skip-confirmation", action="store_true", help="Do not prompt for oversized bundles")
    pub.add_argument("--json", action="store_true", help="Output JSON")

    inst = sub.add_parser("install", help="Install a skill and its dependencies")
    _add_common(inst)
    inst.add_argument("skill", help="Skill name, optionally name@version")
    where = inst.add_mutually_exclusive_group()
    where.add_argument("--global", dest="global_", action="store_true", help="Install into the user skills directory")
    where.add_argument("--local", action="store_true", help="Install into ./.skills/skills (default)")
    where.add_argument("--install-dir", help="Install into this directory")
    inst.add_argument("--gateway", help="Storage gateway URL or local content directory")
    inst.add_argument("--force", action="store_true", help="Reinstall even if already installed")
    inst.add_argument("--no-lock", action="store_true", help="Do not update skills-lock.json")
    inst.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum dependency depth")
    inst.add_argument("--json", action="store_true", help="Output JSON")

    search = sub.add_parser("search", help="Search skills by name, description or tag")
    _add_common(search)
    search.add_argument("query")
    search.add_argument("--tag", action="append", default=[], help="Require tag (repeatable)")
    search.add_argument("--json", action="store_true", help="Output JSON")

    lst = sub.add_parser("list", help="List skills page by page")
    _add_common(lst)
    lst.add_argument("--limit", type=int, default=10)
    lst.add_argument("--offset", type=int, default=0)
    lst.add_argument("--author")
    lst.add_argument("--tag", action="append", default=[], help="Require tag (repeatable)")
    lst.add_argument("--name", help="Name substring")
    lst.add_argument("--json", action="store_true", help="Output JSON")

    versions = sub.add_parser("versions", help="Show all published versions of a skill")
    _add_common(versions)
    versions.add_argument("name")
    versions.add_argument("--json", action="store_true", help="Output JSON")

    info = sub.add_parser("info", help="Show registry information")
    _add_common(info)
    info.add_argument("--json", action="store_true", help="Output JSON")

    return p


async def _publish(args: argparse.Namespace, cfg: Config) -> int:
    def registry_factory(signer: Signer):
        return make_registry_client(cfg.registry_url, signer=signer, retry=RetryPolicy(timeout_s=cfg.timeout_s))

    def storage_factory(signer: Signer):
        return make_storage_client(cfg.gateway_url, signer=signer, retry=RetryPolicy(multiplier=2.0, timeout_s=cfg.timeout_s))

    # Fail fast on missing endpoints before touching credentials.
    if not cfg.registry_url:
        make_registry_client(None)

    service = PublishService(registry_factory, storage_factory)
    result = await service.publish(
        args.directory,
        PublishOptions(
            wallet_path=cfg.wallet_path,
            skip_confirmation=args.skip_confirmation,
            confirm_large_bundle=lambda size: _confirm(f"Bundle is {size} bytes. Upload anyway?"),
            progress=None if args.json else _progress,
        ),
    )

    if args.json:
        print(json.dumps(result.__dict__, indent=2, sort_keys=True, default=str))
        return 0
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    action = "updated" if result.updated_existing else "published"
    print(f"{action}: {result.skill_name}@{result.version}")
    _print_table(
        [
            ["FIELD", "VALUE"],
            ["content_id", result.content_id],
            ["bundle_size", f"{result.bundle_size} bytes ({result.file_count} files)"],
            ["upload_cost", str(result.upload_cost)],
            ["message_id", result.registry_message_id],
            ["published_at", result.published_at],
        ]
    )
    return 0


async def _install(args: argparse.Namespace, cfg: Config) -> int:
    registry = make_registry_client(cfg.registry_url, retry=RetryPolicy(timeout_s=cfg.timeout_s))
    try:
        storage = make_storage_client(cfg.gateway_url, retry=RetryPolicy(multiplier=2.0, timeout_s=cfg.timeout_s))
    except SkillpmError:
        await registry.aclose()
        raise
    # An explicit --global or --local beats a configured install directory.
    install_dir = None if args.global_ or args.local else cfg.install_dir
    try:
        service = InstallService(registry, storage)
        result = await service.install(
            args.skill,
            InstallOptions(
                global_=bool(args.global_),
                install_dir=install_dir,
                force=args.force,
                no_lock=args.no_lock,
                max_depth=args.max_depth,
                confirm=lambda path: _confirm(f"{path} already exists. Overwrite?"),
                progress=None if args.json else _progress,
            ),
        )
    finally:
        await registry.aclose()
        await storage.aclose()

    if args.json:
        payload = {
            "installed": result.installed,
            "skipped": result.skipped,
            "dependency_count": result.dependency_count,
            "total_bytes": result.total_bytes,
            "elapsed_s": round(result.elapsed_s, 3),
            "install_dir": str(result.install_dir),
            "lock_path": str(result.lock_path) if result.lock_path else None,
            "notices": result.notices,
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    for notice in result.notices:
        print(notice)
    print(f"install_dir: {result.install_dir}")
    if result.lock_path:
        print(f"lock: {result.lock_path}")
    for key in result.installed:
        print(f"installed: {key}")
    for key in result.skipped:
        print(f"unchanged: {key}")
    print(
        f"{len(result.installed)} installed, {result.dependency_count} dependencies, "
        f"{result.total_bytes} bytes in {result.elapsed_s:.2f}s"
    )
    return 0


def _skill_rows(records: list[SkillVersionRecord]) -> list[list[str]]:
    rows = [["NAME", "VERSION", "AUTHOR", "TAGS", "DESCRIPTION"]]
    for r in records:
        rows.append([r.name, r.version, r.author, ",".join(r.tags), _truncate(r.description)])
    return rows


async def _search(args: argparse.Namespace, cfg: Config) -> int:
    registry = make_registry_client(cfg.registry_url, retry=RetryPolicy(timeout_s=cfg.timeout_s))
    try:
        results = rank_results(await registry.search_skills(args.query), args.query, args.tag)
    finally:
        await registry.aclose()

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2, sort_keys=True))
        return 0
    if not results:
        print(f"No skills found for {args.query!r}")
        return 0
    _print_table(_skill_rows(results))
    return 0


async def _list(args: argparse.Namespace, cfg: Config) -> int:
    registry = make_registry_client(cfg.registry_url, retry=RetryPolicy(timeout_s=cfg.timeout_s))
    try:
        page = await registry.list_skills(
            limit=args.limit,
            offset=args.offset,
            author=args.author,
            tags=args.tag or None,
            name=args.name,
        )
    finally:
        await registry.aclose()

    if args.json:
        print(json.dumps(page.to_dict(), indent=2, sort_keys=True))
        return 0
    _print_table(_skill_rows(page.skills))
    print(f"showing {page.returned} of {page.total} (offset {page.offset})")
    return 0


async def _versions(args: argparse.Namespace, cfg: Config) -> int:
    registry = make_registry_client(cfg.registry_url, retry=RetryPolicy(timeout_s=cfg.timeout_s))
    try:
        data = await registry.get_skill_versions(args.name)
    finally:
        await registry.aclose()

    if args.json:
        print(json.dumps(data, indent=2, sort_keys=True))
        return 0
    latest = data.get("latest")
    for v in data.get("versions", []):
        print(f"{v} (latest)" if v == latest else v)
    return 0


async def _info(args: argparse.Namespace, cfg: Config) -> int:
    registry = make_registry_client(cfg.registry_url, retry=RetryPolicy(timeout_s=cfg.timeout_s))
    try:
        data: dict[str, Any] = await registry.info()
    finally:
        await registry.aclose()

    if args.json:
        print(json.dumps(data, indent=2, sort_keys=True))
        return 0
    process = data.get("process", {})
    _print_table(
        [
            ["FIELD", "VALUE"],
            ["name", str(process.get("name", ""))],
            ["version", str(process.get("version", ""))],
            ["capabilities", ", ".join(process.get("capabilities", []))],
            ["handlers", ", ".join(data.get("handlers", []))],
        ]
    )
    return 0


COMMANDS = {
    "publish": _publish,
    "install": _install,
    "search": _search,
    "list": _list,
    "versions": _versions,
    "info": _info,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    verbose = bool(getattr(args, "verbose", False))
    setup_logging(verbose=verbose)
    try:
        cfg = _runtime_config(args)
        return asyncio.run(COMMANDS[args.cmd](args, cfg))
    except UserCancelledError as e:
        print(str(e), file=sys.stderr)
        return exit_code_for(e)
    except SkillpmError as e:
        print(format_error(e, verbose=verbose, context={"command": args.cmd}), file=sys.stderr)
        return exit_code_for(e)
    except KeyboardInterrupt:
        print("Operation cancelled by user", file=sys.stderr)
        return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
