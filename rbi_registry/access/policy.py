"""
Policy Evaluator — per-request gate for jurisdiction-tagged records.

Every read or write performed by the resident/household layer passes
through ``authorize`` first. Checks run in a fixed order:

1. inactive account            → Deny(inactive_account)
2. super-admin-equivalent role → Allow
3. record outside the resolved scope → Deny(out_of_scope)
4. writes need the role's write capability for the entity type

Denials are returned as values, never raised. Only data-integrity
failures (``UnresolvedJurisdiction``) propagate as exceptions. The
evaluator does not log decisions; callers record them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from rbi_registry.access.jurisdiction import JurisdictionResolver, is_in_scope
from rbi_registry.core.roles import RoleCatalog
from rbi_registry.core.schema import (
    AccessLevel,
    AccountProfile,
    JurisdictionRecord,
    JurisdictionScope,
    Operation,
)


class DenyReason(str, Enum):
    """Why an operation was refused."""

    INACTIVE_ACCOUNT = "inactive_account"
    UNKNOWN_ROLE = "unknown_role"
    NO_JURISDICTION = "no_jurisdiction"
    OUT_OF_SCOPE = "out_of_scope"
    MISSING_CAPABILITY = "missing_capability"


@dataclass(frozen=True)
class Allow:
    """The operation may proceed."""

    scope: JurisdictionScope | None = None

    @property
    def is_allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Deny:
    """The operation is refused for ``reason``."""

    reason: DenyReason
    detail: str = ""

    @property
    def is_allowed(self) -> bool:
        return False


Decision = Union[Allow, Deny]


class PolicyEvaluator:
    """
    Read-only authorization over profiles, roles and resolved scopes.

    Usage:
        evaluator = PolicyEvaluator(JurisdictionResolver(store))
        decision = evaluator.authorize(profile, Operation.WRITE, record)
        if not decision.is_allowed:
            ...
    """

    def __init__(
        self,
        resolver: JurisdictionResolver,
        roles: RoleCatalog | None = None,
    ) -> None:
        self.resolver = resolver
        self.roles = roles or RoleCatalog()

    def authorize(
        self,
        profile: AccountProfile,
        operation: Operation,
        record: JurisdictionRecord,
    ) -> Decision:
        """
        Decide whether ``profile`` may perform ``operation`` on ``record``.

        Raises:
            UnresolvedJurisdiction: the profile's jurisdiction node is
                missing or inactive.
        """
        if not profile.is_active:
            return Deny(DenyReason.INACTIVE_ACCOUNT, f"account {profile.id} is inactive")

        role = self.roles.get(profile.role_id)
        if role is None:
            return Deny(DenyReason.UNKNOWN_ROLE, f"role {profile.role_id} is not defined")

        if role.is_super_admin:
            return Allow(scope=JurisdictionScope(level=AccessLevel.NATIONAL))

        if AccessLevel.NONE in (role.access_level, profile.jurisdiction_level):
            return Deny(DenyReason.NO_JURISDICTION, f"role {role.name} grants no jurisdiction")

        scope = self.resolver.resolve_scope(profile)
        if not is_in_scope(scope, record.geo_code, record.geo_level):
            return Deny(
                DenyReason.OUT_OF_SCOPE,
                f"{record.geo_level.value} {record.geo_code} is outside "
                f"{scope.level.value} {scope.code}",
            )

        if operation == Operation.WRITE and not role.can(record.entity_type, Operation.WRITE):
            return Deny(
                DenyReason.MISSING_CAPABILITY,
                f"role {role.name} cannot write {record.entity_type}",
            )

        return Allow(scope=scope)
