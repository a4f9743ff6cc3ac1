from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from datasource_hub.db.metadata import MetadataRepository, session_scope
from datasource_hub.services.errors import NotFoundError
from datasource_hub.services.job_queue import (
    CREATE_AUTO_GENERATED_FACT_TABLES,
    CREATE_AUTO_GENERATED_METRICS,
    JobQueue,
)
from datasource_hub.utils.logging import get_logger
from datasource_hub.utils.metrics import emit_datasource_metric

LOGGER = get_logger(__name__)


def create_auto_generated_metrics(
    session_factory: sessionmaker[Session], payload: Mapping[str, Any]
) -> int:
    """Persist the metrics a user selected while editing a data source."""
    organization_id = payload["organizationId"]
    datasource_id = payload["datasourceId"]
    created = 0
    with session_scope(session_factory) as session:
        repo = MetadataRepository(session)
        datasource = repo.get_datasource(organization_id, datasource_id)
        if datasource is None:
            raise NotFoundError("Cannot find data source")
        for metric in payload.get("metricsToCreate") or []:
            if not metric.get("shouldCreate", True):
                continue
            repo.create_metric(
                organization_id=organization_id,
                datasource_id=datasource_id,
                name=metric["name"],
                type=metric.get("type") or "binomial",
                sql=metric.get("sql"),
                description=metric.get("description") or "",
                user_id_types=metric.get("userIdTypes") or [],
                projects=datasource.projects,
                owner=payload.get("userId") or "",
            )
            created += 1
    emit_datasource_metric("auto_metrics.created", datasource_id=datasource_id, count=created)
    return created


def create_auto_generated_fact_tables(
    session_factory: sessionmaker[Session], payload: Mapping[str, Any]
) -> int:
    organization_id = payload["organizationId"]
    datasource_id = payload["datasourceId"]
    created = 0
    with session_scope(session_factory) as session:
        repo = MetadataRepository(session)
        datasource = repo.get_datasource(organization_id, datasource_id)
        if datasource is None:
            raise NotFoundError("Cannot find data source")
        for fact_table in payload.get("factTables") or []:
            repo.create_fact_table(
                organization_id=organization_id,
                datasource_id=datasource_id,
                name=fact_table["name"],
                sql=fact_table["sql"],
                event_name=fact_table.get("eventName") or "",
                user_id_types=fact_table.get("userIdTypes") or [],
                columns=fact_table.get("columns") or [],
                projects=datasource.projects,
                owner=payload.get("userId") or "",
            )
            created += 1
    emit_datasource_metric("auto_fact_tables.created", datasource_id=datasource_id, count=created)
    return created


def register_datasource_jobs(queue: JobQueue, session_factory: sessionmaker[Session]) -> JobQueue:
    queue.register(
        CREATE_AUTO_GENERATED_METRICS,
        lambda payload: create_auto_generated_metrics(session_factory, payload),
    )
    queue.register(
        CREATE_AUTO_GENERATED_FACT_TABLES,
        lambda payload: create_auto_generated_fact_tables(session_factory, payload),
    )
    return queue
