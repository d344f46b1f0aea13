"""Retention policies: one per resource kind, stamped at write time."""

from __future__ import annotations

import sqlite3
import threading
from typing import Callable, Mapping

from privacy_vault.audit.log import AuditLog
from privacy_vault.core.config import Settings
from privacy_vault.core.logging import get_logger
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.models.entities import AuditAction, AuditEntry, Outcome, ResourceKind, RetentionPolicy
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)

MANAGED_KINDS = (ResourceKind.DOCUMENTS, ResourceKind.CHAT_MESSAGES)

# rewrites retention_expires_at = created_at + ttl for every row of one kind
Restamper = Callable[[sqlite3.Connection, int], int]


def default_policies(settings: Settings) -> dict[ResourceKind, RetentionPolicy]:
    return {
        ResourceKind.DOCUMENTS: RetentionPolicy(
            resource_kind=ResourceKind.DOCUMENTS,
            ttl_seconds=settings.document_ttl_seconds,
            auto_delete=settings.document_auto_delete,
        ),
        ResourceKind.CHAT_MESSAGES: RetentionPolicy(
            resource_kind=ResourceKind.CHAT_MESSAGES,
            ttl_seconds=settings.chat_message_ttl_seconds,
            auto_delete=settings.chat_message_auto_delete,
        ),
    }


class RetentionPolicyStore:
    """Reads and writes ``retention_policies``.

    Changing a policy affects new writes only; existing stamps move only
    through ``restamp`` (or ``set_policy(..., restamp=True)``).
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        audit: AuditLog,
        settings: Settings,
        restampers: Mapping[ResourceKind, Restamper] | None = None,
    ) -> None:
        self.db = db
        self.audit = audit
        self.settings = settings
        self.restampers = dict(restampers or {})
        self._policies: dict[ResourceKind, RetentionPolicy] = {}
        self._lock = threading.Lock()

    def load(self) -> None:
        """Insert configured defaults for kinds that have no row yet, then cache all rows."""
        now = now_ms()
        with self.db.transaction() as conn:
            for policy in default_policies(self.settings).values():
                conn.execute(
                    """
                    INSERT OR IGNORE INTO retention_policies(resource_kind, ttl_seconds, auto_delete, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (policy.resource_kind.value, policy.ttl_seconds, int(policy.auto_delete), now),
                )
        rows = self.db.query("SELECT * FROM retention_policies")
        with self._lock:
            self._policies = {ResourceKind(row["resource_kind"]): _row_to_policy(row) for row in rows}

    def get(self, resource_kind: ResourceKind | str) -> RetentionPolicy | None:
        return self._policies.get(ResourceKind(resource_kind))

    def all(self) -> list[RetentionPolicy]:
        return [self._policies[kind] for kind in MANAGED_KINDS if kind in self._policies]

    def expiry_for(self, resource_kind: ResourceKind | str, created_at: int) -> int | None:
        policy = self.get(resource_kind)
        return policy.expires_at(created_at) if policy else None

    def set_policy(
        self,
        resource_kind: ResourceKind | str,
        ttl_seconds: int,
        auto_delete: bool,
        *,
        restamp: bool = False,
        actor: str = "system",
    ) -> RetentionPolicy:
        kind = ResourceKind(resource_kind)
        if kind not in MANAGED_KINDS:
            raise ValueError(f"No retention policy can be set for '{kind.value}'")
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        policy = RetentionPolicy(resource_kind=kind, ttl_seconds=ttl_seconds, auto_delete=auto_delete, updated_at=now_ms())
        with self._lock:
            previous = self._policies.get(kind)
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO retention_policies(resource_kind, ttl_seconds, auto_delete, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(resource_kind) DO UPDATE SET
                      ttl_seconds = excluded.ttl_seconds,
                      auto_delete = excluded.auto_delete,
                      updated_at = excluded.updated_at
                    """,
                    (kind.value, ttl_seconds, int(auto_delete), policy.updated_at),
                )
                self.audit.record(
                    AuditEntry(
                        subject_id=actor,
                        action=AuditAction.RETENTION_POLICY_SET,
                        resource_kind=ResourceKind.RETENTION_POLICIES,
                        resource_id=kind.value,
                        outcome=Outcome.SUCCESS,
                        detail={
                            "ttl_seconds": ttl_seconds,
                            "auto_delete": auto_delete,
                            "previous_ttl_seconds": previous.ttl_seconds if previous else None,
                            "previous_auto_delete": previous.auto_delete if previous else None,
                        },
                        timestamp=policy.updated_at,
                    )
                )
                if restamp:
                    self._restamp_in(conn, kind, ttl_seconds, actor)
            self._policies[kind] = policy
        logger.info("Retention policy set", extra={"ctx_kind": kind.value, "ctx_ttl": ttl_seconds})
        return policy

    def restamp(self, resource_kind: ResourceKind | str, actor: str = "system") -> int:
        """Recompute expiry stamps for every existing row of one kind from the current policy."""
        kind = ResourceKind(resource_kind)
        policy = self.get(kind)
        if policy is None:
            raise ValueError(f"No retention policy for '{kind.value}'")
        with self.db.transaction() as conn:
            return self._restamp_in(conn, kind, policy.ttl_seconds, actor)

    def _restamp_in(self, conn: sqlite3.Connection, kind: ResourceKind, ttl_seconds: int, actor: str) -> int:
        restamper = self.restampers.get(kind)
        if restamper is None:
            raise ValueError(f"No restamping pass registered for '{kind.value}'")
        updated = restamper(conn, ttl_seconds)
        self.audit.record(
            AuditEntry(
                subject_id=actor,
                action=AuditAction.RETENTION_RESTAMPED,
                resource_kind=kind,
                outcome=Outcome.SUCCESS,
                detail={"updated": updated, "ttl_seconds": ttl_seconds},
            )
        )
        return updated


def _row_to_policy(row: sqlite3.Row) -> RetentionPolicy:
    return RetentionPolicy(
        resource_kind=ResourceKind(row["resource_kind"]),
        ttl_seconds=int(row["ttl_seconds"]),
        auto_delete=bool(row["auto_delete"]),
        updated_at=row["updated_at"],
    )


__all__ = ["RetentionPolicyStore", "default_policies", "MANAGED_KINDS"]
