from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import ValidationError

DEFAULT_TIMEOUT_S = 30.0
LOCAL_CONFIG_FILENAME = ".skillsrc"


@dataclass(frozen=True)
class Config:
    registry_url: str | None = None  # http(s) endpoint, file:// URL or path to a registry snapshot
    gateway_url: str | None = None  # storage gateway URL or local content directory
    wallet_path: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    install_dir: str | None = None


def config_path(path_override: str | Path | None = None, *, cwd: Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLPM_CONFIG_PATH"):
        return Path(env).expanduser()
    local = (cwd or Path.cwd()) / LOCAL_CONFIG_FILENAME
    if local.is_file():
        return local
    return user_config_path("skillpm") / "config.json"


def load_config(path_override: str | Path | None = None, *, cwd: Path | None = None) -> Config:
    path = config_path(path_override, cwd=cwd)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(
            f"Config file {path} is not valid JSON: {e}",
            field="config",
            value=str(path),
            remedy="Fix the JSON syntax or delete the file to fall back to defaults.",
        ) from e
    if not isinstance(raw, dict):
        return Config()

    # Accept the camelCase keys used by .skillsrc files as well.
    aliases = {"registryUrl": "registry_url", "gatewayUrl": "gateway_url", "wallet": "wallet_path", "timeoutS": "timeout_s"}
    raw = {aliases.get(k, k): v for k, v in raw.items()}

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def apply_env_overrides(cfg: Config) -> Config:
    timeout_s = os.getenv("SKILLPM_TIMEOUT_S")
    try:
        timeout_s_f = float(timeout_s) if timeout_s else cfg.timeout_s
    except ValueError:
        timeout_s_f = cfg.timeout_s
    return replace(
        cfg,
        registry_url=os.getenv("SKILLPM_REGISTRY_URL") or cfg.registry_url,
        gateway_url=os.getenv("SKILLPM_GATEWAY_URL") or cfg.gateway_url,
        wallet_path=os.getenv("SKILLPM_WALLET") or cfg.wallet_path,
        timeout_s=timeout_s_f,
    )


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may point at a wallet).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path
