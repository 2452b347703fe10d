"""
Jurisdiction Resolver — which geographic subtree an account may reach.

Scope checks exploit the prefix encoding of PSGC codes: projecting a
record's code onto the scope's level (truncating it to that level's code
length) yields the record's ancestor at that level, so one comparison
authorizes across all four levels. This relies on the hierarchy store
keeping codes consistent with parent pointers.

``resolve_scope`` and ``is_in_scope`` are the public surface used by the
statistics cache refresher.
"""

from __future__ import annotations

import logging

from rbi_registry.core.errors import UnresolvedJurisdiction
from rbi_registry.core.schema import (
    CODE_LENGTHS,
    AccessLevel,
    AccountProfile,
    GeoLevel,
    JurisdictionScope,
    access_to_geo_level,
    level_depth,
    project_code,
)
from rbi_registry.geography.hierarchy import HierarchyStore

logger = logging.getLogger(__name__)

NATIONAL_SCOPE = JurisdictionScope(level=AccessLevel.NATIONAL)
NO_SCOPE = JurisdictionScope(level=AccessLevel.NONE)


def is_in_scope(scope: JurisdictionScope, record_geo_code: str, record_level: GeoLevel) -> bool:
    """
    Whether a record tagged with ``record_geo_code`` falls inside ``scope``.

    National scope matches everything. A record coarser than the scope (a
    city-level record checked against a barangay scope) never matches, and
    neither does a code whose length disagrees with its level.
    """
    if scope.is_national:
        return True
    scope_level = access_to_geo_level(scope.level)
    if scope_level is None or scope.code is None:
        return False
    if level_depth(record_level) < level_depth(scope_level):
        return False
    if len(record_geo_code) != CODE_LENGTHS[record_level]:
        return False
    return project_code(record_geo_code, scope_level) == scope.code


class JurisdictionResolver:
    """Computes a profile's scope from its assigned node and declared level."""

    def __init__(self, store: HierarchyStore) -> None:
        self.store = store

    def resolve_scope(self, profile: AccountProfile) -> JurisdictionScope:
        """
        Resolve the ``{level, code}`` scope of ``profile``.

        The assigned node may sit below the declared level (a city admin
        assigned to a barangay); the scope code is then the assigned code
        projected to the declared level. Nothing is cached, so repeated
        calls against an unchanged hierarchy return equal scopes.

        Raises:
            UnresolvedJurisdiction: the code is missing, shallower than the
                declared level, or points at a missing or inactive node.
        """
        level = profile.jurisdiction_level
        if level == AccessLevel.NATIONAL:
            return NATIONAL_SCOPE
        if level == AccessLevel.NONE:
            return NO_SCOPE

        code = profile.jurisdiction_code
        if not code:
            raise UnresolvedJurisdiction(None, f"{level.value} account has no jurisdiction code")

        geo_level = access_to_geo_level(level)
        scope_code = project_code(code, geo_level)
        if scope_code is None:
            raise UnresolvedJurisdiction(
                code, f"code is too short for a {level.value} jurisdiction"
            )

        for checked in dict.fromkeys((code, scope_code)):
            node = self.store.get_node(checked)
            if node is None:
                raise UnresolvedJurisdiction(checked, "node does not exist")
            if not node.active:
                raise UnresolvedJurisdiction(checked, "node is inactive")

        return JurisdictionScope(level=level, code=scope_code)

    def accessible_codes(self, scope: JurisdictionScope, level: GeoLevel) -> list[str]:
        """
        Active node codes at ``level`` that lie inside ``scope``.

        Levels above the scope's own level return nothing: a barangay scope
        does not grant its whole city.
        """
        if scope.is_national:
            return [n.code for n in self.store.list_nodes(level=level, active_only=True)]
        scope_level = access_to_geo_level(scope.level)
        if scope_level is None or scope.code is None:
            return []
        if level_depth(level) < level_depth(scope_level):
            return []
        return self.store.descendant_codes(scope.code, level)
