from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, NoReturn

from datasource_hub.db.schema import MemberRole
from datasource_hub.services.errors import PermissionDenied


class Permission(str, Enum):
    READ_DATA = "readData"
    RUN_QUERIES = "runQueries"
    MANAGE_FACT_TABLES = "manageFactTables"
    EDIT_DATASOURCE_SETTINGS = "editDatasourceSettings"
    CREATE_DATASOURCES = "createDatasources"


_ANALYST_PERMISSIONS = frozenset(
    {
        Permission.READ_DATA,
        Permission.RUN_QUERIES,
        Permission.MANAGE_FACT_TABLES,
        Permission.EDIT_DATASOURCE_SETTINGS,
    }
)

ROLE_PERMISSIONS: Mapping[MemberRole, frozenset[Permission]] = {
    MemberRole.READONLY: frozenset({Permission.READ_DATA}),
    MemberRole.COLLABORATOR: frozenset({Permission.READ_DATA}),
    MemberRole.ENGINEER: frozenset({Permission.READ_DATA, Permission.RUN_QUERIES}),
    MemberRole.ANALYST: _ANALYST_PERMISSIONS,
    MemberRole.EXPERIMENTER: _ANALYST_PERMISSIONS,
    MemberRole.ADMIN: frozenset(Permission),
}

ProjectMode = Literal["all", "any"]


def _projects_of(resource: Any) -> list[str]:
    """Accept either an entity with a ``projects`` attribute or a ``{"projects": [...]}`` mapping."""
    if isinstance(resource, Mapping):
        projects = resource.get("projects")
    else:
        projects = getattr(resource, "projects", None)
    return [project for project in projects or [] if project]


@dataclass(frozen=True)
class Permissions:
    """Capability checks for one member, evaluated against a resource's project set."""

    global_role: MemberRole
    project_roles: Mapping[str, MemberRole] = field(default_factory=dict)

    @classmethod
    def from_member_roles(
        cls, role: MemberRole | str, project_roles: Iterable[Mapping[str, str]] | None = None
    ) -> "Permissions":
        mapping: dict[str, MemberRole] = {}
        for entry in project_roles or []:
            project = entry.get("project")
            raw_role = entry.get("role")
            if not project or not raw_role:
                continue
            mapping[project] = MemberRole(raw_role)
        return cls(global_role=MemberRole(role), project_roles=mapping)

    def role_for(self, project: str | None) -> MemberRole:
        if project and project in self.project_roles:
            return self.project_roles[project]
        return self.global_role

    def has_permission(
        self,
        permission: Permission,
        projects: Sequence[str] | None = None,
        *,
        mode: ProjectMode = "all",
    ) -> bool:
        project_list = [project for project in projects or [] if project]
        if not project_list:
            return permission in ROLE_PERMISSIONS[self.global_role]
        checks = (permission in ROLE_PERMISSIONS[self.role_for(project)] for project in project_list)
        return all(checks) if mode == "all" else any(checks)

    # ---- data sources ----
    def can_read_datasource(self, datasource: Any) -> bool:
        return self.has_permission(Permission.READ_DATA, _projects_of(datasource), mode="any")

    def can_read_data(self, projects: Sequence[str] | None) -> bool:
        return self.has_permission(Permission.READ_DATA, projects, mode="any")

    def can_create_datasource(self, resource: Any) -> bool:
        return self.has_permission(Permission.CREATE_DATASOURCES, _projects_of(resource))

    def can_update_datasource_settings(self, resource: Any) -> bool:
        return self.has_permission(Permission.EDIT_DATASOURCE_SETTINGS, _projects_of(resource))

    def can_update_datasource_params(self, resource: Any) -> bool:
        return self.has_permission(Permission.CREATE_DATASOURCES, _projects_of(resource))

    def can_delete_datasource(self, resource: Any) -> bool:
        return self.has_permission(Permission.CREATE_DATASOURCES, _projects_of(resource))

    # ---- queries ----
    def can_run_schema_queries(self, resource: Any) -> bool:
        return self.has_permission(Permission.RUN_QUERIES, _projects_of(resource))

    def can_run_test_queries(self, resource: Any) -> bool:
        return self.has_permission(Permission.RUN_QUERIES, _projects_of(resource))

    # ---- fact tables ----
    def can_create_fact_table(self, resource: Any) -> bool:
        return self.has_permission(Permission.MANAGE_FACT_TABLES, _projects_of(resource))

    def throw_permission_error(self) -> NoReturn:
        raise PermissionDenied()
