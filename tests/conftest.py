from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from datasource_hub.api.router import create_app
from datasource_hub.db.metadata import (
    MetadataRepository,
    build_engine,
    create_session_factory,
    init_database,
    session_scope,
)
from datasource_hub.db.schema import DataSourceType, MemberRole
from datasource_hub.services.context import RequestContext
from datasource_hub.services.job_queue import JobQueue
from datasource_hub.utils.crypto import encrypt_json
from tests.fixtures.fake_warehouse import FakeWarehouse
from tests.fixtures.organization import SeededOrganization


@pytest.fixture(autouse=True)
def temp_data_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_root = tmp_path / "data"
    data_root.mkdir()
    monkeypatch.setenv("DATA_ROOT", str(data_root))
    return data_root


@pytest.fixture(autouse=True)
def secret_key(monkeypatch: pytest.MonkeyPatch) -> str:
    key = Fernet.generate_key().decode()
    monkeypatch.setenv("DATASOURCE_SECRET_KEY", key)
    return key


@pytest.fixture
def sqlite_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    db_path = tmp_path / "metadata.db"
    url = f"sqlite:///{db_path}"
    monkeypatch.setenv("SQLITE_URL", url)
    return url


@pytest.fixture
def session_factory(sqlite_url: str) -> Iterator[sessionmaker[Session]]:
    engine = build_engine(sqlite_url)
    init_database(engine)
    factory = create_session_factory(engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_scope(session_factory) as session:
        yield session


@pytest.fixture
def metadata_repository(db_session: Session) -> MetadataRepository:
    return MetadataRepository(db_session)


@pytest.fixture
def seeded(session_factory: sessionmaker[Session]) -> SeededOrganization:
    with session_scope(session_factory) as session:
        repo = MetadataRepository(session)
        organization = repo.create_organization(name="Acme Analytics")
        repo.add_member(
            organization=organization, user_id="admin-1", email="admin@acme.test", role=MemberRole.ADMIN
        )
        repo.add_member(
            organization=organization,
            user_id="analyst-1",
            email="analyst@acme.test",
            role=MemberRole.ANALYST,
            project_roles=[{"project": "prj_restricted", "role": "readonly"}],
        )
        repo.add_member(
            organization=organization,
            user_id="engineer-1",
            email="engineer@acme.test",
            role=MemberRole.ENGINEER,
        )
        repo.add_member(
            organization=organization, user_id="reader-1", email="reader@acme.test", role=MemberRole.READONLY
        )
        return SeededOrganization(organization_id=organization.id)


@pytest.fixture
def make_context(
    session_factory: sessionmaker[Session], seeded: SeededOrganization
) -> Callable[[str], RequestContext]:
    def _build(user_id: str = "admin-1") -> RequestContext:
        with session_scope(session_factory) as session:
            repo = MetadataRepository(session)
            organization = repo.get_organization(seeded.organization_id)
            member = repo.get_member(seeded.organization_id, user_id)
            assert organization is not None and member is not None
            return RequestContext.from_member(organization, member)

    return _build


@pytest.fixture
def create_datasource(
    session_factory: sessionmaker[Session], seeded: SeededOrganization
) -> Callable[..., str]:
    def _create(
        *,
        name: str = "Warehouse",
        type: DataSourceType = DataSourceType.POSTGRES,
        params: Mapping[str, Any] | None = None,
        settings: Mapping[str, Any] | None = None,
        projects: Sequence[str] | None = None,
    ) -> str:
        with session_scope(session_factory) as session:
            datasource = MetadataRepository(session).create_datasource(
                organization_id=seeded.organization_id,
                name=name,
                type=type,
                params=encrypt_json(
                    dict(params or {"host": "db.internal", "user": "analytics", "password": "s3cret"})
                ),
                settings=dict(settings or {}),
                projects=projects,
            )
            return datasource.id

    return _create


@pytest.fixture
def fake_warehouse() -> FakeWarehouse:
    return FakeWarehouse()


@pytest.fixture
def job_queue() -> Iterator[JobQueue]:
    queue = JobQueue(concurrency=2)
    try:
        yield queue
    finally:
        queue.shutdown(wait=True)


@pytest.fixture
def client(
    sqlite_url: str,
    seeded: SeededOrganization,
    fake_warehouse: FakeWarehouse,
    job_queue: JobQueue,
) -> TestClient:
    app = create_app(
        integration_factory=fake_warehouse.factory,
        bigquery_dataset_lister=lambda **_: ["analytics", "", "events"],
        job_queue=job_queue,
    )
    return TestClient(app)


@pytest.fixture
def auth_headers(seeded: SeededOrganization) -> Callable[[str], dict[str, str]]:
    def _headers(user_id: str = "admin-1") -> dict[str, str]:
        return {"X-Organization-Id": seeded.organization_id, "X-User-Id": user_id}

    return _headers
