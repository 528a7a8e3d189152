"""
API-key authentication for the governance action surface.

Keys live in a YAML file, never in the database:

    keys:
      - key_sha256: 9f86d081884c7d65...   # preferred: hex SHA-256 of the key
        user_id: u-finance-1
        tenant_id: t-acme
        roles: [finance]
      - key: dev-only-plaintext-key      # accepted for local development
        user_id: u-admin
        tenant_id: t-acme
        roles: [super_admin]

Presented keys are hashed and compared against every entry with
hmac.compare_digest, so lookup time does not depend on which entry matched.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .errors import AuthenticationError
from .models import Role

logger = logging.getLogger("ai_governance.auth")


@dataclass(frozen=True)
class Caller:
    user_id: str
    tenant_id: str
    roles: frozenset[Role]

    @classmethod
    def of(cls, user_id: str, tenant_id: str, roles) -> "Caller":
        return cls(user_id, tenant_id, frozenset(Role(r) for r in roles))

    def has_any(self, roles) -> bool:
        return bool(self.roles & set(roles))


@dataclass(frozen=True)
class _KeyEntry:
    digest: str
    caller: Caller


def hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class ApiKeyAuthenticator:

    def __init__(self, entries: list[_KeyEntry]) -> None:
        self._entries = entries

    @classmethod
    def from_file(cls, path: str | Path) -> "ApiKeyAuthenticator":
        path = Path(path)
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        keys = raw.get("keys") if isinstance(raw, dict) else None
        if not isinstance(keys, list):
            raise ValueError(f"{path}: expected a top-level 'keys' list")

        entries = []
        for i, item in enumerate(keys):
            if not isinstance(item, dict):
                raise ValueError(f"{path}: keys[{i}] must be a mapping")
            if "key_sha256" in item:
                digest = str(item["key_sha256"]).lower()
            elif "key" in item:
                digest = hash_key(str(item["key"]))
            else:
                raise ValueError(f"{path}: keys[{i}] needs 'key' or 'key_sha256'")
            try:
                caller = Caller.of(item["user_id"], item["tenant_id"], item.get("roles", []))
            except KeyError as e:
                raise ValueError(f"{path}: keys[{i}] missing {e.args[0]!r}") from None
            except ValueError as e:
                raise ValueError(f"{path}: keys[{i}]: {e}") from None
            entries.append(_KeyEntry(digest, caller))
        logger.info("Loaded %d API keys from %s", len(entries), path)
        return cls(entries)

    def authenticate(self, authorization: Optional[str]) -> Caller:
        """Resolve an 'Authorization: Bearer <key>' header value to a Caller."""
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("missing bearer token")
        presented = hash_key(authorization[len("Bearer "):].strip())
        match = None
        for entry in self._entries:
            if hmac.compare_digest(entry.digest, presented):
                match = entry.caller
        if match is None:
            raise AuthenticationError("invalid API key")
        return match
