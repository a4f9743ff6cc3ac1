from __future__ import annotations

from datetime import timedelta

import pytest

from datasource_hub.db.metadata import MetadataRepository
from datasource_hub.db.schema import DataSourceType, DimensionSlicesStatus, QueryStatus


@pytest.fixture
def organization_id(metadata_repository: MetadataRepository) -> str:
    return metadata_repository.create_organization(name="Acme").id


def _datasource(repo: MetadataRepository, organization_id: str, name: str = "Warehouse") -> str:
    return repo.create_datasource(
        organization_id=organization_id,
        name=name,
        type=DataSourceType.POSTGRES,
        params="",
        settings={},
    ).id


def test_datasources_are_scoped_to_organization(
    metadata_repository: MetadataRepository, organization_id: str
) -> None:
    datasource_id = _datasource(metadata_repository, organization_id)
    other_org = metadata_repository.create_organization(name="Other").id

    assert metadata_repository.get_datasource(organization_id, datasource_id) is not None
    assert metadata_repository.get_datasource(other_org, datasource_id) is None
    assert metadata_repository.list_datasources(other_org) == []


def test_update_datasource_rejects_unknown_fields(
    metadata_repository: MetadataRepository, organization_id: str
) -> None:
    datasource = metadata_repository.get_datasource(
        organization_id, _datasource(metadata_repository, organization_id)
    )
    assert datasource is not None

    metadata_repository.update_datasource(datasource, {"name": "Renamed"})
    assert datasource.name == "Renamed"
    with pytest.raises(ValueError, match="organization_id"):
        metadata_repository.update_datasource(datasource, {"organization_id": "elsewhere"})


def test_dimension_slice_transitions_are_conditional(
    metadata_repository: MetadataRepository, organization_id: str
) -> None:
    datasource_id = _datasource(metadata_repository, organization_id)
    record = metadata_repository.create_dimension_slices(
        organization_id=organization_id,
        datasource_id=datasource_id,
        exposure_query_id="eq_1",
        lookback_days=30,
    )

    assert metadata_repository.transition_dimension_slices(
        record.id,
        from_statuses=[DimensionSlicesStatus.PENDING],
        to_status=DimensionSlicesStatus.RUNNING,
    )
    assert metadata_repository.transition_dimension_slices(
        record.id,
        from_statuses=[DimensionSlicesStatus.PENDING, DimensionSlicesStatus.RUNNING],
        to_status=DimensionSlicesStatus.CANCELLED,
    )
    assert not metadata_repository.transition_dimension_slices(
        record.id,
        from_statuses=[DimensionSlicesStatus.RUNNING],
        to_status=DimensionSlicesStatus.COMPLETED,
        results=[{"dimension": "country", "dimensionSlices": []}],
    )

    metadata_repository.session.expire_all()
    stored = metadata_repository.get_dimension_slices(organization_id, record.id)
    assert stored is not None
    assert stored.status is DimensionSlicesStatus.CANCELLED
    assert stored.results == []


def test_latest_dimension_slices_prefers_newest(
    metadata_repository: MetadataRepository, organization_id: str
) -> None:
    datasource_id = _datasource(metadata_repository, organization_id)
    older = metadata_repository.create_dimension_slices(
        organization_id=organization_id,
        datasource_id=datasource_id,
        exposure_query_id="eq_1",
        lookback_days=14,
    )
    older.date_created = older.date_created - timedelta(hours=1)
    latest = metadata_repository.create_dimension_slices(
        organization_id=organization_id,
        datasource_id=datasource_id,
        exposure_query_id="eq_1",
        lookback_days=14,
    )

    found = metadata_repository.get_latest_dimension_slices(organization_id, datasource_id, "eq_1")
    assert found is not None and found.id == latest.id
    assert metadata_repository.get_latest_dimension_slices(organization_id, datasource_id, "eq_2") is None


def test_query_run_transition_and_lookup(
    metadata_repository: MetadataRepository, organization_id: str
) -> None:
    datasource_id = _datasource(metadata_repository, organization_id)
    run = metadata_repository.create_query_run(
        organization_id=organization_id,
        datasource_id=datasource_id,
        query="SELECT 1",
        status=QueryStatus.RUNNING,
    )

    assert metadata_repository.transition_query_run(
        run.id, from_statuses=[QueryStatus.RUNNING], to_status=QueryStatus.SUCCEEDED
    )
    assert not metadata_repository.transition_query_run(
        run.id, from_statuses=[QueryStatus.RUNNING], to_status=QueryStatus.CANCELLED
    )
    found = metadata_repository.get_query_runs_by_ids(organization_id, [run.id, "", "missing"])
    assert [item.id for item in found] == [run.id]
