from __future__ import annotations

import pytest

from datasource_hub.db.schema import MemberRole
from datasource_hub.services.errors import PermissionDenied
from datasource_hub.services.permissions import Permission, Permissions


def test_global_role_applies_when_resource_has_no_projects() -> None:
    admin = Permissions.from_member_roles("admin")
    reader = Permissions.from_member_roles(MemberRole.READONLY)

    assert admin.can_delete_datasource({"projects": []})
    assert reader.can_read_datasource({"projects": []})
    assert not reader.can_update_datasource_settings({"projects": []})
    assert not reader.can_run_schema_queries({"projects": []})


def test_project_override_restricts_all_mode_checks() -> None:
    analyst = Permissions.from_member_roles(
        "analyst", [{"project": "prj_restricted", "role": "readonly"}]
    )

    assert analyst.can_update_datasource_settings({"projects": ["prj_open"]})
    assert not analyst.can_update_datasource_settings({"projects": ["prj_open", "prj_restricted"]})
    assert analyst.role_for("prj_restricted") is MemberRole.READONLY
    assert analyst.role_for(None) is MemberRole.ANALYST


def test_read_access_needs_any_project() -> None:
    reader = Permissions.from_member_roles(
        "readonly", [{"project": "prj_open", "role": "analyst"}]
    )

    assert reader.can_read_data(["prj_open", "prj_other"])
    assert reader.has_permission(Permission.RUN_QUERIES, ["prj_open", "prj_other"], mode="any")
    assert not reader.has_permission(Permission.RUN_QUERIES, ["prj_open", "prj_other"], mode="all")


def test_engineer_can_run_queries_but_not_manage_fact_tables() -> None:
    engineer = Permissions.from_member_roles("engineer")

    assert engineer.can_run_test_queries({"projects": []})
    assert not engineer.can_create_fact_table({"projects": []})
    assert not engineer.can_create_datasource({"projects": []})


def test_incomplete_project_role_entries_are_ignored() -> None:
    permissions = Permissions.from_member_roles(
        "analyst", [{"project": "", "role": "readonly"}, {"project": "prj_a"}]
    )
    assert permissions.project_roles == {}


def test_throw_permission_error_raises_403() -> None:
    with pytest.raises(PermissionDenied) as excinfo:
        Permissions.from_member_roles("readonly").throw_permission_error()
    assert excinfo.value.status_code == 403
