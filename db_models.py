"""
SQLAlchemy models for the RevenueForge API, defining the schema for users, catalog products, the append-only audit log and the shared rate limit counters.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id:              Mapped[str]           = mapped_column(String,      primary_key=True, default=_uuid)
    email:           Mapped[str]           = mapped_column(String(255), unique=True, nullable=False, index=True)
    name:            Mapped[Optional[str]] = mapped_column(String(200))
    hashed_password: Mapped[str]           = mapped_column(String(255), nullable=False)
    role:            Mapped[str]           = mapped_column(String(20),  nullable=False, default="viewer")
    is_active:       Mapped[bool]          = mapped_column(Boolean,     default=True, nullable=False)
    session_id:      Mapped[Optional[str]] = mapped_column(String(64))
    created_at:      Mapped[datetime]      = mapped_column(DateTime,    default=_now, nullable=False)
    updated_at:      Mapped[datetime]      = mapped_column(DateTime,    default=_now, onupdate=_now, nullable=False)

    __table_args__ = (
        Index("idx_users_role_active", "role", "is_active"),
    )


class Product(Base):
    __tablename__ = "products"

    id:          Mapped[str]           = mapped_column(String,      primary_key=True, default=_uuid)
    name:        Mapped[str]           = mapped_column(String(200), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    price:       Mapped[float]         = mapped_column(Float,       nullable=False, default=0.0)
    category:    Mapped[str]           = mapped_column(String(100), nullable=False, index=True)
    in_stock:    Mapped[int]           = mapped_column(Integer,     nullable=False, default=0)
    created_at:  Mapped[datetime]      = mapped_column(DateTime,    default=_now, nullable=False)
    updated_at:  Mapped[datetime]      = mapped_column(DateTime,    default=_now, onupdate=_now, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id:            Mapped[str]                      = mapped_column(String(64),  primary_key=True)
    user_id:       Mapped[Optional[str]]            = mapped_column(String,      index=True)
    action:        Mapped[str]                      = mapped_column(String(20),  nullable=False, index=True)
    resource_type: Mapped[str]                      = mapped_column(String(100), nullable=False)
    resource_id:   Mapped[Optional[str]]            = mapped_column(String)
    details:       Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    ip_address:    Mapped[Optional[str]]            = mapped_column(String(64))
    user_agent:    Mapped[Optional[str]]            = mapped_column(String(512))
    timestamp:     Mapped[datetime]                 = mapped_column(DateTime(timezone=True), default=_now, nullable=False, index=True)

    __table_args__ = (
        Index("idx_audit_log_resource", "resource_type", "resource_id"),
        Index("idx_audit_log_user_time", "user_id", "timestamp"),
    )


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    key:        Mapped[str]      = mapped_column(String(512), primary_key=True)
    count:      Mapped[int]      = mapped_column(Integer,     nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
