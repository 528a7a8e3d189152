"""
AuditLog — append-only records of administrative mutations.
============================================================
Every mutating governance action (switch_strategy, update_budget,
apply_penalty, clear_penalty, reset_posterior) writes exactly one
AuditLogEntry capturing:
  - who acted (actor) and for which tenant
  - which action and which target entity
  - the value before and after the change, where applicable

Entries go straight to the GovernanceStore's audit_log table. The component
that performs the mutation writes the entry, so callers never double-log.

Usage
-----
    log = AuditLog(store)
    await log.record(tenant_id="t1", actor="u1", action="update_budget",
                     target_entity="tenant:t1",
                     previous_value={"monthly_budget": 100.0},
                     new_value={"monthly_budget": 250.0})
    entries = await log.recent("t1", limit=20)
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .models import AuditLogEntry, new_id, utcnow
from .store import GovernanceStore

logger = logging.getLogger("ai_governance.audit")


class AuditLog:
    """
    Writer/reader over the audit_log table.

    Methods
    -------
    record()       — append one AuditLogEntry
    recent()       — newest-first entries for a tenant (or all tenants)
    export_jsonl() — append entries to a JSONL file for offline review
    """

    def __init__(self, store: GovernanceStore, clock: Callable = utcnow) -> None:
        self._store = store
        self._clock = clock

    # ── Write ──────────────────────────────────────────────────────────────────

    async def record(
        self,
        tenant_id:      str,
        actor:          str,
        action:         str,
        target_entity:  str,
        previous_value: Optional[dict[str, Any]] = None,
        new_value:      Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            entry_id=new_id(),
            timestamp=self._clock(),
            tenant_id=tenant_id,
            actor=actor,
            action=action,
            target_entity=target_entity,
            previous_value=previous_value,
            new_value=new_value,
        )
        await self._store.append_audit(entry)
        logger.info("audit: %s on %s by %s", action, target_entity, actor)
        return entry

    # ── Read ───────────────────────────────────────────────────────────────────

    async def recent(self, tenant_id: Optional[str], limit: int = 50) -> list[AuditLogEntry]:
        return await self._store.recent_audit(tenant_id, limit)

    # ── Export ─────────────────────────────────────────────────────────────────

    async def export_jsonl(self, path: str | Path, tenant_id: Optional[str] = None,
                           limit: int = 10_000) -> int:
        """
        Append entries (oldest first) to a JSONL file, one object per line.

        The file is opened in append mode so successive exports accumulate.
        Returns the number of entries written.
        """
        entries = list(reversed(await self.recent(tenant_id, limit)))
        with open(path, "a", encoding="utf-8") as fh:
            for entry in entries:
                fh.write(json.dumps(entry.to_dict(), sort_keys=True) + "\n")
        return len(entries)
