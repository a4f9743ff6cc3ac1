from __future__ import annotations

import copy
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from datasource_hub.db.schema import Member, Organization
from datasource_hub.services.permissions import Permissions


@dataclass(frozen=True)
class RequestContext:
    """Identity and capabilities of the caller, built once per request."""

    organization_id: str
    organization_name: str
    organization_settings: Mapping[str, Any]
    user_id: str
    email: str
    user_name: str
    permissions: Permissions

    @classmethod
    def from_member(cls, organization: Organization, member: Member) -> "RequestContext":
        return cls(
            organization_id=organization.id,
            organization_name=organization.name,
            organization_settings=MappingProxyType(copy.deepcopy(organization.settings or {})),
            user_id=member.user_id,
            email=member.email,
            user_name=member.name or "",
            permissions=Permissions.from_member_roles(member.role, member.project_roles),
        )

    @property
    def default_datasource_id(self) -> str | None:
        return self.organization_settings.get("defaultDataSource")
