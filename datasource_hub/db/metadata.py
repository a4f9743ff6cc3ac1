from __future__ import annotations

import os
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import Select, create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .schema import (
    Base,
    DataSource,
    DataSourceType,
    Dimension,
    DimensionSlices,
    DimensionSlicesStatus,
    FactTable,
    InformationSchema,
    InformationSchemaTable,
    Member,
    MemberRole,
    Metric,
    Organization,
    QueryRun,
    QueryStatus,
    Segment,
)

DEFAULT_SQLITE_URL = "sqlite:///data/metadata.db"

DATASOURCE_MUTABLE_FIELDS = frozenset(
    {"name", "description", "params", "settings", "projects", "date_updated"}
)


def _resolve_sqlite_url(url: str | None = None) -> str:
    resolved = url or os.getenv("SQLITE_URL", DEFAULT_SQLITE_URL)
    if resolved.startswith("sqlite:///"):
        db_path = Path(resolved.replace("sqlite:///", "", 1))
        db_path.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def build_engine(url: str | None = None) -> Engine:
    resolved = _resolve_sqlite_url(url)
    connect_args = {"check_same_thread": False} if resolved.startswith("sqlite") else {}
    return create_engine(resolved, future=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, future=True)


def init_database(engine: Engine) -> None:
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class MetadataRepository:
    """Organization-scoped data access helpers for the metadata store."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Organization helpers --------------------------------------------
    def create_organization(self, *, name: str, settings: Mapping[str, Any] | None = None) -> Organization:
        organization = Organization(name=name, settings=dict(settings or {}))
        self.session.add(organization)
        self.session.flush()
        return organization

    def get_organization(self, organization_id: str) -> Organization | None:
        return self.session.get(Organization, organization_id)

    def update_organization_settings(
        self, organization: Organization, settings: Mapping[str, Any]
    ) -> Organization:
        organization.settings = {**(organization.settings or {}), **settings}
        return organization

    def add_member(
        self,
        *,
        organization: Organization,
        user_id: str,
        email: str,
        role: MemberRole,
        name: str = "",
        project_roles: Sequence[Mapping[str, str]] | None = None,
    ) -> Member:
        member = Member(
            organization=organization,
            user_id=user_id,
            email=email,
            name=name,
            role=role,
            project_roles=[dict(entry) for entry in project_roles or []],
        )
        self.session.add(member)
        self.session.flush()
        return member

    def get_member(self, organization_id: str, user_id: str) -> Member | None:
        stmt: Select[tuple[Member]] = select(Member).where(
            Member.organization_id == organization_id, Member.user_id == user_id
        )
        return self.session.execute(stmt).scalars().first()

    # Data source helpers ---------------------------------------------
    def list_datasources(self, organization_id: str) -> Sequence[DataSource]:
        stmt: Select[tuple[DataSource]] = (
            select(DataSource)
            .where(DataSource.organization_id == organization_id)
            .order_by(DataSource.date_created.asc())
        )
        return self.session.execute(stmt).scalars().all()

    def get_datasource(self, organization_id: str, datasource_id: str) -> DataSource | None:
        stmt: Select[tuple[DataSource]] = select(DataSource).where(
            DataSource.organization_id == organization_id, DataSource.id == datasource_id
        )
        return self.session.execute(stmt).scalars().first()

    def create_datasource(
        self,
        *,
        organization_id: str,
        name: str,
        type: DataSourceType,
        params: str,
        settings: Mapping[str, Any],
        description: str | None = None,
        projects: Sequence[str] | None = None,
    ) -> DataSource:
        now = datetime.now(UTC)
        datasource = DataSource(
            organization_id=organization_id,
            name=name,
            description=description,
            type=type,
            params=params,
            settings=dict(settings),
            projects=list(projects or []),
            date_created=now,
            date_updated=now,
        )
        self.session.add(datasource)
        self.session.flush()
        return datasource

    def update_datasource(self, datasource: DataSource, updates: Mapping[str, Any]) -> DataSource:
        unknown = set(updates) - DATASOURCE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported data source fields: {', '.join(sorted(unknown))}")
        for field_name, value in updates.items():
            setattr(datasource, field_name, value)
        if "date_updated" not in updates:
            datasource.date_updated = datetime.now(UTC)
        self.session.flush()
        return datasource

    def delete_datasource(self, organization_id: str, datasource_id: str) -> int:
        result = self.session.execute(
            delete(DataSource).where(
                DataSource.organization_id == organization_id, DataSource.id == datasource_id
            )
        )
        return result.rowcount or 0

    # Dependent entity helpers ----------------------------------------
    def list_metrics_by_datasource(self, organization_id: str, datasource_id: str) -> Sequence[Metric]:
        stmt: Select[tuple[Metric]] = select(Metric).where(
            Metric.organization_id == organization_id, Metric.datasource_id == datasource_id
        )
        return self.session.execute(stmt).scalars().all()

    def create_metric(
        self,
        *,
        organization_id: str,
        datasource_id: str,
        name: str,
        type: str = "binomial",
        sql: str | None = None,
        description: str = "",
        user_id_types: Sequence[str] | None = None,
        projects: Sequence[str] | None = None,
        owner: str = "",
    ) -> Metric:
        metric = Metric(
            organization_id=organization_id,
            datasource_id=datasource_id,
            name=name,
            type=type,
            sql=sql,
            description=description,
            user_id_types=list(user_id_types or []),
            projects=list(projects or []),
            owner=owner,
        )
        self.session.add(metric)
        self.session.flush()
        return metric

    def list_segments_by_datasource(self, organization_id: str, datasource_id: str) -> Sequence[Segment]:
        stmt: Select[tuple[Segment]] = select(Segment).where(
            Segment.organization_id == organization_id, Segment.datasource_id == datasource_id
        )
        return self.session.execute(stmt).scalars().all()

    def create_segment(
        self, *, organization_id: str, datasource_id: str, name: str, sql: str = ""
    ) -> Segment:
        segment = Segment(
            organization_id=organization_id, datasource_id=datasource_id, name=name, sql=sql
        )
        self.session.add(segment)
        self.session.flush()
        return segment

    def list_dimensions_by_datasource(
        self, organization_id: str, datasource_id: str
    ) -> Sequence[Dimension]:
        stmt: Select[tuple[Dimension]] = select(Dimension).where(
            Dimension.organization_id == organization_id, Dimension.datasource_id == datasource_id
        )
        return self.session.execute(stmt).scalars().all()

    def create_dimension(
        self, *, organization_id: str, datasource_id: str, name: str, sql: str = ""
    ) -> Dimension:
        dimension = Dimension(
            organization_id=organization_id, datasource_id=datasource_id, name=name, sql=sql
        )
        self.session.add(dimension)
        self.session.flush()
        return dimension

    # Query log helpers -----------------------------------------------
    def create_query_run(
        self,
        *,
        organization_id: str,
        datasource_id: str,
        query: str,
        language: str = "sql",
        status: QueryStatus = QueryStatus.QUEUED,
    ) -> QueryRun:
        run = QueryRun(
            organization_id=organization_id,
            datasource_id=datasource_id,
            query=query,
            language=language,
            status=status,
        )
        self.session.add(run)
        self.session.flush()
        return run

    def get_query_run(self, organization_id: str, query_id: str) -> QueryRun | None:
        stmt: Select[tuple[QueryRun]] = select(QueryRun).where(
            QueryRun.organization_id == organization_id, QueryRun.id == query_id
        )
        return self.session.execute(stmt).scalars().first()

    def get_query_runs_by_ids(self, organization_id: str, ids: Iterable[str]) -> Sequence[QueryRun]:
        id_list = [value for value in ids if value]
        if not id_list:
            return []
        stmt: Select[tuple[QueryRun]] = select(QueryRun).where(
            QueryRun.organization_id == organization_id, QueryRun.id.in_(id_list)
        )
        return self.session.execute(stmt).scalars().all()

    def list_query_runs_by_datasource(
        self, organization_id: str, datasource_id: str, *, limit: int = 50
    ) -> Sequence[QueryRun]:
        stmt: Select[tuple[QueryRun]] = (
            select(QueryRun)
            .where(QueryRun.organization_id == organization_id, QueryRun.datasource_id == datasource_id)
            .order_by(QueryRun.created_at.desc())
            .limit(limit)
        )
        return self.session.execute(stmt).scalars().all()

    def transition_query_run(
        self,
        query_id: str,
        *,
        from_statuses: Iterable[QueryStatus],
        to_status: QueryStatus,
        **fields: Any,
    ) -> bool:
        result = self.session.execute(
            update(QueryRun)
            .where(QueryRun.id == query_id, QueryRun.status.in_(tuple(from_statuses)))
            .values(status=to_status, **fields)
        )
        return bool(result.rowcount)

    def set_query_run_external_id(self, query_id: str, external_id: str) -> None:
        self.session.execute(
            update(QueryRun).where(QueryRun.id == query_id).values(external_id=external_id)
        )

    # Dimension slice helpers -----------------------------------------
    def create_dimension_slices(
        self,
        *,
        organization_id: str,
        datasource_id: str,
        exposure_query_id: str,
        lookback_days: int,
    ) -> DimensionSlices:
        now = datetime.now(UTC)
        record = DimensionSlices(
            organization_id=organization_id,
            datasource_id=datasource_id,
            exposure_query_id=exposure_query_id,
            lookback_days=lookback_days,
            status=DimensionSlicesStatus.PENDING,
            results=[],
            queries=[],
            date_created=now,
            date_updated=now,
        )
        self.session.add(record)
        self.session.flush()
        return record

    def get_dimension_slices(self, organization_id: str, slices_id: str) -> DimensionSlices | None:
        stmt: Select[tuple[DimensionSlices]] = select(DimensionSlices).where(
            DimensionSlices.organization_id == organization_id, DimensionSlices.id == slices_id
        )
        return self.session.execute(stmt).scalars().first()

    def get_latest_dimension_slices(
        self, organization_id: str, datasource_id: str, exposure_query_id: str
    ) -> DimensionSlices | None:
        stmt: Select[tuple[DimensionSlices]] = (
            select(DimensionSlices)
            .where(
                DimensionSlices.organization_id == organization_id,
                DimensionSlices.datasource_id == datasource_id,
                DimensionSlices.exposure_query_id == exposure_query_id,
            )
            .order_by(DimensionSlices.date_created.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def transition_dimension_slices(
        self,
        slices_id: str,
        *,
        from_statuses: Iterable[DimensionSlicesStatus],
        to_status: DimensionSlicesStatus,
        **fields: Any,
    ) -> bool:
        """Move a record to ``to_status`` only if it is currently in one of ``from_statuses``."""
        result = self.session.execute(
            update(DimensionSlices)
            .where(
                DimensionSlices.id == slices_id,
                DimensionSlices.status.in_(tuple(from_statuses)),
            )
            .values(status=to_status, date_updated=datetime.now(UTC), **fields)
        )
        return bool(result.rowcount)

    # Fact table helpers ----------------------------------------------
    def list_fact_tables_by_datasource(
        self, organization_id: str, datasource_id: str
    ) -> Sequence[FactTable]:
        stmt: Select[tuple[FactTable]] = select(FactTable).where(
            FactTable.organization_id == organization_id, FactTable.datasource_id == datasource_id
        )
        return self.session.execute(stmt).scalars().all()

    def create_fact_table(
        self,
        *,
        organization_id: str,
        datasource_id: str,
        name: str,
        sql: str,
        owner: str = "",
        event_name: str = "",
        description: str = "",
        projects: Sequence[str] | None = None,
        tags: Sequence[str] | None = None,
        user_id_types: Sequence[str] | None = None,
        columns: Sequence[Mapping[str, Any]] | None = None,
        columns_error: str | None = None,
    ) -> FactTable:
        now = datetime.now(UTC)
        fact_table = FactTable(
            organization_id=organization_id,
            datasource_id=datasource_id,
            name=name,
            sql=sql,
            owner=owner,
            event_name=event_name,
            description=description,
            projects=list(projects or []),
            tags=list(tags or []),
            user_id_types=list(user_id_types or []),
            columns=[dict(column) for column in columns or []],
            columns_error=columns_error,
            filters=[],
            date_created=now,
            date_updated=now,
        )
        self.session.add(fact_table)
        self.session.flush()
        return fact_table

    # Information schema helpers --------------------------------------
    def create_information_schema(
        self,
        *,
        organization_id: str,
        datasource_id: str,
        databases: Sequence[Mapping[str, Any]] | None = None,
    ) -> InformationSchema:
        schema = InformationSchema(
            organization_id=organization_id,
            datasource_id=datasource_id,
            databases=[dict(entry) for entry in databases or []],
        )
        self.session.add(schema)
        self.session.flush()
        return schema

    def get_information_schema(
        self, organization_id: str, information_schema_id: str
    ) -> InformationSchema | None:
        stmt: Select[tuple[InformationSchema]] = select(InformationSchema).where(
            InformationSchema.organization_id == organization_id,
            InformationSchema.id == information_schema_id,
        )
        return self.session.execute(stmt).scalars().first()

    def create_information_schema_table(
        self,
        *,
        organization_id: str,
        information_schema_id: str,
        table_name: str,
        table_schema: str = "",
        columns: Sequence[Mapping[str, Any]] | None = None,
    ) -> InformationSchemaTable:
        table = InformationSchemaTable(
            organization_id=organization_id,
            information_schema_id=information_schema_id,
            table_name=table_name,
            table_schema=table_schema,
            columns=[dict(column) for column in columns or []],
        )
        self.session.add(table)
        self.session.flush()
        return table

    def list_information_schema_tables(
        self, organization_id: str, information_schema_id: str
    ) -> Sequence[InformationSchemaTable]:
        stmt: Select[tuple[InformationSchemaTable]] = select(InformationSchemaTable).where(
            InformationSchemaTable.organization_id == organization_id,
            InformationSchemaTable.information_schema_id == information_schema_id,
        )
        return self.session.execute(stmt).scalars().all()

    def delete_information_schema(self, organization_id: str, information_schema_id: str) -> int:
        result = self.session.execute(
            delete(InformationSchema).where(
                InformationSchema.organization_id == organization_id,
                InformationSchema.id == information_schema_id,
            )
        )
        return result.rowcount or 0

    def delete_information_schema_tables(
        self, organization_id: str, information_schema_id: str
    ) -> int:
        result = self.session.execute(
            delete(InformationSchemaTable).where(
                InformationSchemaTable.organization_id == organization_id,
                InformationSchemaTable.information_schema_id == information_schema_id,
            )
        )
        return result.rowcount or 0
