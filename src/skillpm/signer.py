from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError, ValidationError

SEED_PHRASE_ENV = "SKILLPM_SEED_PHRASE"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class Signer:
    key: bytes = field(repr=False)
    source: str = "preloaded"

    @property
    def identity(self) -> str:
        return _b64url(hashlib.sha256(self.key).digest())

    def sign(self, payload: bytes | str) -> str:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hmac.new(self.key, payload, hashlib.sha256).hexdigest()

    @classmethod
    def from_seed_phrase(cls, phrase: str) -> "Signer":
        words = phrase.split()
        if len(words) not in (12, 24):
            raise ValidationError(
                "Seed phrase must contain 12 or 24 words",
                field="seedPhrase",
                value=len(words),
            )
        normalized = " ".join(w.lower() for w in words)
        key = hashlib.pbkdf2_hmac("sha512", normalized.encode("utf-8"), b"skillpm-seed", 2048)
        return cls(key=key, source="seed-phrase")

    @classmethod
    def from_wallet_file(cls, path: Path) -> "Signer":
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Wallet file not found: {path}",
                config_key="wallet",
                remedy="Pass --wallet with the path to an existing wallet JSON file.",
            ) from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read wallet file {path}: {e}", config_key="wallet") from e
        except json.JSONDecodeError as e:
            raise ValidationError(f"Wallet file {path} is not valid JSON", field="wallet", value=str(path)) from e

        key = raw.get("key") if isinstance(raw, dict) else None
        if not isinstance(key, str) or not key:
            raise ValidationError(
                f"Wallet file {path} has no 'key' field",
                field="wallet",
                value=str(path),
                remedy="Wallet files must be JSON objects with a non-empty 'key' string.",
            )
        return cls(key=key.encode("utf-8"), source=str(path))


def resolve_signer(
    *,
    signer: Signer | None = None,
    wallet_path: str | Path | None = None,
    seed_phrase: str | None = None,
) -> Signer:
    if signer is not None:
        return signer
    if wallet_path:
        return Signer.from_wallet_file(Path(wallet_path).expanduser())
    seed_phrase = seed_phrase or os.getenv(SEED_PHRASE_ENV)
    if seed_phrase:
        return Signer.from_seed_phrase(seed_phrase)
    raise ConfigurationError(
        "No signing credential available",
        config_key="wallet",
        remedy=f"Pass --wallet PATH, set 'wallet' in .skillsrc, or export {SEED_PHRASE_ENV}.",
    )
