"""
Registry Schema — Pydantic models for jurisdictions, roles and accounts.

These models are the canonical in-memory shapes exchanged between the
hierarchy store, the jurisdiction resolver, the policy evaluator and the
provisioning state machine. Database rows (store/models.py) are converted
to these models at the service boundary.

Geographic codes follow the PSGC convention: the code of a node
prefix-encodes its ancestry (2 digits region, 4 province, 6 city or
municipality, 9 barangay), so the parent of any node is recoverable from
its own code.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from rbi_registry.core.errors import ReferenceSetError


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class GeoLevel(str, enum.Enum):
    """Levels of the administrative hierarchy, top-down."""

    REGION = "region"
    PROVINCE = "province"
    CITY = "city"  # City or municipality
    BARANGAY = "barangay"


class AccessLevel(str, enum.Enum):
    """Breadth of data an account or role may reach."""

    NATIONAL = "national"
    REGION = "region"
    PROVINCE = "province"
    CITY = "city"
    BARANGAY = "barangay"
    NONE = "none"


class ProvisioningState(str, enum.Enum):
    """Lifecycle of an account from provider signup to a usable local profile."""

    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    PROFILE_CREATED = "profile_created"
    ROLE_ASSIGNED = "role_assigned"
    BLOCKED_DUPLICATE_ADMIN = "blocked_duplicate_admin"


class Operation(str, enum.Enum):
    """Data operations gated by the policy evaluator."""

    READ = "read"
    WRITE = "write"


# ════════════════════════════════════════════════════════════════
# Code geometry
# ════════════════════════════════════════════════════════════════

LEVEL_ORDER: tuple[GeoLevel, ...] = (
    GeoLevel.REGION,
    GeoLevel.PROVINCE,
    GeoLevel.CITY,
    GeoLevel.BARANGAY,
)

CODE_LENGTHS: dict[GeoLevel, int] = {
    GeoLevel.REGION: 2,
    GeoLevel.PROVINCE: 4,
    GeoLevel.CITY: 6,
    GeoLevel.BARANGAY: 9,
}


def level_depth(level: GeoLevel) -> int:
    """0 for region, 3 for barangay."""
    return LEVEL_ORDER.index(level)


def parent_level(level: GeoLevel) -> GeoLevel | None:
    depth = level_depth(level)
    return LEVEL_ORDER[depth - 1] if depth > 0 else None


def child_level(level: GeoLevel) -> GeoLevel | None:
    depth = level_depth(level)
    return LEVEL_ORDER[depth + 1] if depth + 1 < len(LEVEL_ORDER) else None


def level_for_code(code: str) -> GeoLevel | None:
    """Infer the hierarchy level from a code's length, or None if malformed."""
    if not code or not code.isdigit():
        return None
    for level, length in CODE_LENGTHS.items():
        if len(code) == length:
            return level
    return None


def project_code(code: str, level: GeoLevel) -> str | None:
    """
    Truncate a code to the ancestor at ``level``.

    Returns None when the code is shallower than the requested level.
    """
    length = CODE_LENGTHS[level]
    if len(code) < length:
        return None
    return code[:length]


def expected_parent_code(code: str, level: GeoLevel) -> str | None:
    """Parent code implied by the prefix encoding (None for regions)."""
    parent = parent_level(level)
    if parent is None:
        return None
    return code[: CODE_LENGTHS[parent]]


def access_to_geo_level(level: AccessLevel) -> GeoLevel | None:
    """Map an access level onto the hierarchy; national and none have no node."""
    if level in (AccessLevel.NATIONAL, AccessLevel.NONE):
        return None
    return GeoLevel(level.value)


def _code_problems(code: str, parent_code: str | None, level: GeoLevel) -> list[str]:
    problems = []
    if not code.isdigit() or len(code) != CODE_LENGTHS[level]:
        problems.append(
            f"{code}: {level.value} codes must be {CODE_LENGTHS[level]} digits"
        )
        return problems
    expected = expected_parent_code(code, level)
    if parent_code != expected:
        problems.append(
            f"{code}: parent {parent_code!r} does not match code prefix {expected!r}"
        )
    return problems


# ════════════════════════════════════════════════════════════════
# Geographic hierarchy
# ════════════════════════════════════════════════════════════════


class GeoNode(BaseModel):
    """A node of the administrative hierarchy."""

    model_config = ConfigDict(from_attributes=True)

    code: str = Field(description="PSGC code; prefix-encodes the ancestry")
    name: str = Field(default="")
    level: GeoLevel
    parent_code: str | None = Field(
        default=None, description="Code of the node one level up (None for regions)"
    )
    active: bool = True

    @model_validator(mode="after")
    def _check_code_geometry(self) -> "GeoNode":
        problems = _code_problems(self.code, self.parent_code, self.level)
        if problems:
            raise ValueError("; ".join(problems))
        return self


class ReferenceNode(BaseModel):
    """One tuple of an authoritative reference set."""

    code: str
    parent_code: str | None = None
    level: GeoLevel


class ReferenceSet(BaseModel):
    """
    Authoritative set of valid node codes, supplied by the reference-data importer.

    The set is versioned input: reconciliation is idempotent against
    whatever set is supplied and does not assume successive versions agree.
    """

    version: str = Field(default="unversioned")
    nodes: list[ReferenceNode] = Field(default_factory=list)

    @classmethod
    def from_rows(cls, rows: Iterable[dict], version: str = "unversioned") -> "ReferenceSet":
        return cls(version=version, nodes=[ReferenceNode(**row) for row in rows])

    def codes(self, level: GeoLevel) -> set[str]:
        return {n.code for n in self.nodes if n.level == level}

    def parent_map(self, level: GeoLevel) -> dict[str, str | None]:
        return {n.code: n.parent_code for n in self.nodes if n.level == level}

    def validate_set(self) -> None:
        """
        Reject malformed sets before any mutation.

        Checks code geometry, duplicate codes and closure (every non-region
        entry's parent is itself part of the set).

        Raises:
            ReferenceSetError: listing every problem found.
        """
        problems: list[str] = []
        seen: dict[str, GeoLevel] = {}
        for node in self.nodes:
            problems.extend(_code_problems(node.code, node.parent_code, node.level))
            if node.code in seen:
                problems.append(f"{node.code}: listed more than once")
            seen[node.code] = node.level

        for node in self.nodes:
            if node.parent_code is None:
                continue
            expected = parent_level(node.level)
            if seen.get(node.parent_code) != expected:
                problems.append(
                    f"{node.code}: parent {node.parent_code} is not a "
                    f"{expected.value if expected else 'valid'} in the set"
                )

        if problems:
            raise ReferenceSetError(problems)


# ════════════════════════════════════════════════════════════════
# Roles
# ════════════════════════════════════════════════════════════════


class Role(BaseModel):
    """A static role definition (reference data)."""

    id: int
    name: str
    access_level: AccessLevel
    single_per_jurisdiction: bool = Field(
        default=False,
        description="At most one active holder per jurisdiction code",
    )
    capabilities: dict[str, list[Operation]] = Field(
        default_factory=dict,
        description="Entity type -> permitted operations ('*' matches any entity)",
    )
    description: str = ""

    @computed_field
    @property
    def is_super_admin(self) -> bool:
        return self.access_level == AccessLevel.NATIONAL

    def can(self, entity_type: str, operation: Operation) -> bool:
        allowed = self.capabilities.get(entity_type, self.capabilities.get("*", []))
        return operation in allowed


# ════════════════════════════════════════════════════════════════
# Accounts
# ════════════════════════════════════════════════════════════════


class AccountIdentity(BaseModel):
    """Provider-issued identity record. Owned by the identity provider."""

    id: str
    email: str
    confirmed_at: datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None


class SignupMetadata(BaseModel):
    """User-supplied metadata attached to the identity at signup time."""

    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    requested_jurisdiction_code: str | None = Field(
        default=None, alias="requestedJurisdictionCode"
    )
    requested_role: str | None = Field(
        default=None,
        alias="requestedRole",
        description="Role name; defaults to the admin role of the jurisdiction's level",
    )


class AccountProfile(BaseModel):
    """Local profile materialized after identity confirmation."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Same as AccountIdentity.id")
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    role_id: int
    jurisdiction_code: str | None = None
    jurisdiction_level: AccessLevel
    is_active: bool = True
    provisioning_state: ProvisioningState
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JurisdictionScope(BaseModel):
    """Resolved {level, code} pair; derived per request, never persisted."""

    model_config = ConfigDict(frozen=True)

    level: AccessLevel
    code: str | None = None

    @property
    def is_national(self) -> bool:
        return self.level == AccessLevel.NATIONAL


class JurisdictionRecord(BaseModel):
    """A jurisdiction-tagged record presented to the policy evaluator."""

    entity_type: str = Field(description="e.g. 'residents', 'households'")
    geo_code: str
    geo_level: GeoLevel = GeoLevel.BARANGAY
