from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _generate_uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for the data-source metadata store."""


class DataSourceType(str, enum.Enum):
    POSTGRES = "postgres"
    MYSQL = "mysql"
    REDSHIFT = "redshift"
    SNOWFLAKE = "snowflake"
    SQLITE = "sqlite"
    BIGQUERY = "bigquery"
    GOOGLE_ANALYTICS = "google_analytics"


class MemberRole(str, enum.Enum):
    READONLY = "readonly"
    COLLABORATOR = "collaborator"
    ANALYST = "analyst"
    EXPERIMENTER = "experimenter"
    ENGINEER = "engineer"
    ADMIN = "admin"


class QueryStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DimensionSlicesStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_SLICE_STATUSES = frozenset(
    {DimensionSlicesStatus.COMPLETED, DimensionSlicesStatus.ERROR, DimensionSlicesStatus.CANCELLED}
)


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255))
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    date_created: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    members: Mapped[list["Member"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan"
    )


class Member(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(64))
    email: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255), default="")
    role: Mapped[MemberRole] = mapped_column(Enum(MemberRole, name="member_role"))
    project_roles: Mapped[list[dict[str, str]]] = mapped_column(JSON, default=list)

    organization: Mapped[Organization] = relationship(back_populates="members")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_member_per_organization"),
    )


class DataSource(Base):
    __tablename__ = "data_sources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[DataSourceType] = mapped_column(Enum(DataSourceType, name="datasource_type"))
    params: Mapped[str] = mapped_column(Text, default="")
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    projects: Mapped[list[str]] = mapped_column(JSON, default=list)
    date_created: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    date_updated: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class Metric(Base):
    __tablename__ = "metrics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    datasource_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(32), default="binomial")
    sql: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id_types: Mapped[list[str]] = mapped_column(JSON, default=list)
    projects: Mapped[list[str]] = mapped_column(JSON, default=list)
    owner: Mapped[str] = mapped_column(String(64), default="")
    date_created: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class Segment(Base):
    __tablename__ = "segments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    datasource_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))
    sql: Mapped[str] = mapped_column(Text, default="")
    user_id_type: Mapped[str] = mapped_column(String(64), default="user_id")


class Dimension(Base):
    __tablename__ = "dimensions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    datasource_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))
    sql: Mapped[str] = mapped_column(Text, default="")
    user_id_type: Mapped[str] = mapped_column(String(64), default="user_id")


class QueryRun(Base):
    __tablename__ = "queries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    datasource_id: Mapped[str] = mapped_column(String(36), index=True)
    language: Mapped[str] = mapped_column(String(16), default="sql")
    query: Mapped[str] = mapped_column(Text)
    status: Mapped[QueryStatus] = mapped_column(
        Enum(QueryStatus, name="query_status"), default=QueryStatus.QUEUED
    )
    result: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class DimensionSlices(Base):
    __tablename__ = "dimension_slices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    datasource_id: Mapped[str] = mapped_column(String(36), index=True)
    exposure_query_id: Mapped[str] = mapped_column(String(255))
    lookback_days: Mapped[int] = mapped_column(Integer, default=30)
    status: Mapped[DimensionSlicesStatus] = mapped_column(
        Enum(DimensionSlicesStatus, name="dimension_slices_status"),
        default=DimensionSlicesStatus.PENDING,
    )
    results: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    queries: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    date_created: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    date_updated: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class FactTable(Base):
    __tablename__ = "fact_tables"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    datasource_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    owner: Mapped[str] = mapped_column(String(64), default="")
    event_name: Mapped[str] = mapped_column(String(255), default="")
    sql: Mapped[str] = mapped_column(Text)
    projects: Mapped[list[str]] = mapped_column(JSON, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    user_id_types: Mapped[list[str]] = mapped_column(JSON, default=list)
    columns: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    columns_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    filters: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    date_created: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    date_updated: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class InformationSchema(Base):
    __tablename__ = "information_schemas"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    datasource_id: Mapped[str] = mapped_column(String(36))
    databases: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(32), default="COMPLETE")
    date_created: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class InformationSchemaTable(Base):
    __tablename__ = "information_schema_tables"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    information_schema_id: Mapped[str] = mapped_column(String(36), index=True)
    table_schema: Mapped[str] = mapped_column(String(255), default="")
    table_name: Mapped[str] = mapped_column(String(255))
    columns: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    date_created: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
