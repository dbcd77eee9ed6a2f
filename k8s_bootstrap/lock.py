#!/usr/bin/env python3
"""
@format
Named mutual-exclusion locks on a DynamoDB table.

A lock is a single row keyed by ``LockName``, created with a conditional
put so that concurrent acquirers race on the table rather than on local
state. A holder that dies leaves its row behind; any later acquirer that
finds the row older than ``stale_after`` evicts it and tries again once.

Lock rows:
    LockName    — cluster-init | token-refresh-lock | token-gen-lock | restore-lock
    InstanceId  — holder
    Status      — INITIALIZING | RESTORING (optional)
    CreatedAt   — UTC ISO-8601
    ExpiresAt   — epoch seconds (DynamoDB TTL backstop)
"""

from __future__ import annotations

import enum
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from k8s_bootstrap.aws import DynamoTable
from k8s_bootstrap.common import (
    format_timestamp, log_info, log_warn, parse_timestamp, utc_now,
)

CLUSTER_INIT_LOCK = "cluster-init"
TOKEN_REFRESH_LOCK = "token-refresh-lock"
TOKEN_GEN_LOCK = "token-gen-lock"
RESTORE_LOCK = "restore-lock"


class LockStatus(str, enum.Enum):
    INITIALIZING = "INITIALIZING"
    RESTORING = "RESTORING"


class DistributedLock:
    """Acquire and release named locks held in a DynamoDB table."""

    KEY = "LockName"

    def __init__(self, table: DynamoTable, clock: Callable[[], datetime] = utc_now):
        self._table = table
        self._clock = clock

    def acquire(self, lock_name: str, holder_id: str, stale_after: float,
                status: Optional[LockStatus] = None) -> bool:
        """
        Try to take ``lock_name`` for ``holder_id``.

        Args:
            lock_name: Lock row key.
            holder_id: Instance id of the caller.
            stale_after: Seconds after which an existing row is evicted.
            status: Optional status recorded on the row.

        Returns:
            True if the caller now holds the lock, False if a live holder
            has it (a deferral signal, not an error).
        """
        if self._try_insert(lock_name, holder_id, stale_after, status):
            log_info(f"✓ Acquired lock {lock_name}", lock=lock_name, holder=holder_id)
            return True

        existing = self._table.get({self.KEY: lock_name})
        if existing is None:
            # Released between our insert and our read
            acquired = self._try_insert(lock_name, holder_id, stale_after, status)
            if acquired:
                log_info(f"✓ Acquired lock {lock_name}", lock=lock_name, holder=holder_id)
            return acquired

        age = self._age_seconds(existing)
        if age is not None and age <= stale_after:
            log_info(
                f"Lock {lock_name} held by {existing.get('InstanceId')}",
                lock=lock_name,
                holder=existing.get("InstanceId"),
                age_seconds=int(age),
            )
            return False

        log_warn(
            f"⚠ Evicting stale lock {lock_name} held by {existing.get('InstanceId')}",
            lock=lock_name,
            evicted_holder=existing.get("InstanceId"),
            age_seconds=None if age is None else int(age),
            stale_after=stale_after,
        )
        expected = {"InstanceId": existing.get("InstanceId")}
        if "CreatedAt" in existing:
            expected["CreatedAt"] = existing["CreatedAt"]
        self._table.delete_if_matches({self.KEY: lock_name}, expected)

        acquired = self._try_insert(lock_name, holder_id, stale_after, status)
        if acquired:
            log_info(f"✓ Acquired lock {lock_name} after eviction",
                     lock=lock_name, holder=holder_id)
        return acquired

    def release(self, lock_name: str) -> None:
        """Delete the lock row. Releasing an absent lock is a no-op."""
        self._table.delete({self.KEY: lock_name})
        log_info(f"Released lock {lock_name}", lock=lock_name)

    def holder(self, lock_name: str) -> Optional[str]:
        row = self._table.get({self.KEY: lock_name})
        return row.get("InstanceId") if row else None

    @contextmanager
    def hold(self, lock_name: str, holder_id: str, stale_after: float,
             status: Optional[LockStatus] = None) -> Iterator[bool]:
        """Yield the acquisition result; release on exit if acquired."""
        acquired = self.acquire(lock_name, holder_id, stale_after, status)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(lock_name)

    def _try_insert(self, lock_name: str, holder_id: str, stale_after: float,
                    status: Optional[LockStatus]) -> bool:
        now = self._clock()
        item = {
            self.KEY: lock_name,
            "InstanceId": holder_id,
            "CreatedAt": format_timestamp(now),
            "ExpiresAt": int(now.timestamp() + stale_after),
        }
        if status is not None:
            item["Status"] = LockStatus(status).value
        return self._table.put_if_absent(item, self.KEY)

    def _age_seconds(self, row: dict) -> Optional[float]:
        created = parse_timestamp(row.get("CreatedAt"))
        if created is None:
            return None
        return (self._clock() - created).total_seconds()
