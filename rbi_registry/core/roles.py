"""
Role reference data and the role -> capability table.

Roles are static. The single-per-jurisdiction admin roles are the only
ones subject to the "first user becomes admin" election at signup.
"""

from __future__ import annotations

from rbi_registry.core.schema import AccessLevel, GeoLevel, Operation, Role

READ = [Operation.READ]
READ_WRITE = [Operation.READ, Operation.WRITE]


SUPER_ADMIN = Role(
    id=1,
    name="super_admin",
    access_level=AccessLevel.NATIONAL,
    capabilities={"*": READ_WRITE},
    description="System-wide access",
)

REGION_ADMIN = Role(
    id=2,
    name="region_admin",
    access_level=AccessLevel.REGION,
    single_per_jurisdiction=True,
    capabilities={
        "residents": READ,
        "households": READ,
        "user_profiles": READ_WRITE,
    },
    description="Regional oversight",
)

PROVINCE_ADMIN = Role(
    id=3,
    name="province_admin",
    access_level=AccessLevel.PROVINCE,
    single_per_jurisdiction=True,
    capabilities={
        "residents": READ,
        "households": READ,
        "user_profiles": READ_WRITE,
    },
    description="Provincial oversight",
)

CITY_ADMIN = Role(
    id=4,
    name="city_admin",
    access_level=AccessLevel.CITY,
    single_per_jurisdiction=True,
    capabilities={
        "residents": READ,
        "households": READ,
        "user_profiles": READ_WRITE,
    },
    description="City / municipality oversight",
)

BARANGAY_ADMIN = Role(
    id=5,
    name="barangay_admin",
    access_level=AccessLevel.BARANGAY,
    single_per_jurisdiction=True,
    capabilities={
        "residents": READ_WRITE,
        "households": READ_WRITE,
        "settings": READ_WRITE,
        "user_profiles": READ_WRITE,
    },
    description="Barangay administrative access",
)

BARANGAY_USER = Role(
    id=6,
    name="barangay_user",
    access_level=AccessLevel.BARANGAY,
    capabilities={
        "residents": READ_WRITE,
        "households": READ_WRITE,
    },
    description="Regular barangay encoder",
)

READ_ONLY = Role(
    id=7,
    name="read_only",
    access_level=AccessLevel.BARANGAY,
    capabilities={"residents": READ, "households": READ},
    description="Read-only access",
)

DEFAULT_ROLES: tuple[Role, ...] = (
    SUPER_ADMIN,
    REGION_ADMIN,
    PROVINCE_ADMIN,
    CITY_ADMIN,
    BARANGAY_ADMIN,
    BARANGAY_USER,
    READ_ONLY,
)


class RoleCatalog:
    """Lookup table over the static role definitions."""

    def __init__(
        self,
        roles: tuple[Role, ...] | list[Role] | None = None,
        default_role_name: str = BARANGAY_USER.name,
    ) -> None:
        roles = roles or DEFAULT_ROLES
        self._by_id = {r.id: r for r in roles}
        self._by_name = {r.name: r for r in roles}
        if default_role_name not in self._by_name:
            raise ValueError(f"Default role {default_role_name!r} is not defined")
        default = self._by_name[default_role_name]
        if default.single_per_jurisdiction or default.is_super_admin:
            raise ValueError("The default role must be non-administrative")
        self.default_role = default

    def get(self, role_id: int) -> Role | None:
        return self._by_id.get(role_id)

    def by_name(self, name: str) -> Role | None:
        return self._by_name.get(name)

    def admin_role_for(self, level: GeoLevel) -> Role | None:
        """The single-per-jurisdiction role whose access level matches ``level``."""
        for role in self._by_id.values():
            if role.single_per_jurisdiction and role.access_level.value == level.value:
                return role
        return None

    def list_roles(self) -> list[Role]:
        return sorted(self._by_id.values(), key=lambda r: r.id)
