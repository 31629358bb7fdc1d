"""
Append-only audit log service. Entries are written once and never updated or deleted by the application. Writes on the request path are dispatched as background tasks: the caller never waits on them, and a failed write is logged, counted and handed to an optional failure hook instead of surfacing to the original response. The read side supports filtering by actor, action, resource and time range with page-based pagination.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, select

from database import get_db_session
from db_models import AuditLog
from models.audit.audit_models import AuditAction, AuditLogEntry, AuditLogFilters, AuditLogPage, Pagination
from services.common.pagination import cap_pagination, page_count

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

FailureHook = Callable[[BaseException, Dict[str, Any]], None]


def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_audit_log_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(10))
    return f"audit_{_to_base36(int(time.time() * 1000))}{suffix}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_entry(row: AuditLog) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=AuditAction(row.action),
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        details=row.details,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=_as_utc(row.timestamp),
    )


class AuditLogService:

    def __init__(self, on_failure: Optional[FailureHook] = None) -> None:
        self._on_failure = on_failure
        self._pending: Set[asyncio.Task] = set()
        self._failure_lock = threading.Lock()
        self._failures_total = 0

    @property
    def failure_count(self) -> int:
        with self._failure_lock:
            return self._failures_total

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def record(
        self,
        *,
        action: AuditAction | str,
        resource_type: str,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        entry_id = generate_audit_log_id()
        with get_db_session() as db:
            db.add(
                AuditLog(
                    id=entry_id,
                    user_id=user_id,
                    action=AuditAction(action).value,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    details=details,
                    ip_address=ip_address,
                    user_agent=user_agent[:512] if user_agent else None,
                    timestamp=datetime.now(timezone.utc),
                )
            )
        return entry_id

    async def _write(self, entry: Dict[str, Any]) -> Optional[str]:
        try:
            return await run_in_threadpool(lambda: self.record(**entry))
        except Exception as exc:
            self._handle_failure(exc, entry)
            return None

    def _handle_failure(self, exc: BaseException, entry: Dict[str, Any]) -> None:
        with self._failure_lock:
            self._failures_total += 1
            total = self._failures_total
        logger.error(
            "audit_write_failed total=%s action=%s resource_type=%s error=%s",
            total,
            entry.get("action"),
            entry.get("resource_type"),
            exc,
        )
        if self._on_failure is not None:
            try:
                self._on_failure(exc, entry)
            except Exception:
                logger.exception("Audit failure hook raised")

    def dispatch(self, **entry: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def query(self, filters: AuditLogFilters) -> AuditLogPage:
        page, limit, offset = cap_pagination(filters.page, filters.limit)

        conditions = []
        if filters.user_id:
            conditions.append(AuditLog.user_id == filters.user_id)
        if filters.action:
            conditions.append(AuditLog.action == AuditAction(filters.action).value)
        if filters.resource_type:
            conditions.append(AuditLog.resource_type == filters.resource_type)
        if filters.resource_id:
            conditions.append(AuditLog.resource_id == filters.resource_id)
        if filters.start_date:
            conditions.append(AuditLog.timestamp >= _as_utc(filters.start_date))
        if filters.end_date:
            conditions.append(AuditLog.timestamp <= _as_utc(filters.end_date))

        with get_db_session() as db:
            total = db.execute(select(func.count()).select_from(AuditLog).where(*conditions)).scalar_one()
            rows = db.execute(
                select(AuditLog)
                .where(*conditions)
                .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            entries = [_to_entry(row) for row in rows]

        return AuditLogPage(
            data=entries,
            pagination=Pagination(page=page, limit=limit, total=int(total), pages=page_count(int(total), limit)),
        )

    def resource_history(self, resource_type: str, resource_id: str, limit: int = 10) -> List[AuditLogEntry]:
        _, capped, _ = cap_pagination(1, limit)
        with get_db_session() as db:
            rows = db.execute(
                select(AuditLog)
                .where(AuditLog.resource_type == resource_type, AuditLog.resource_id == resource_id)
                .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
                .limit(capped)
            ).scalars().all()
            return [_to_entry(row) for row in rows]


audit_service = AuditLogService()
