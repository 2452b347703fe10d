"""
Tests for the registry schema — code geometry, reference sets and roles.

Validates:
- PSGC prefix helpers (level inference, projection, parent codes)
- GeoNode code/parent consistency
- Reference set validation before any mutation
- Role capabilities and the role catalogue
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rbi_registry.core.errors import ReferenceSetError
from rbi_registry.core.roles import (
    BARANGAY_ADMIN,
    BARANGAY_USER,
    CITY_ADMIN,
    READ_ONLY,
    SUPER_ADMIN,
    RoleCatalog,
)
from rbi_registry.core.schema import (
    AccessLevel,
    GeoLevel,
    GeoNode,
    Operation,
    ReferenceSet,
    SignupMetadata,
    access_to_geo_level,
    child_level,
    expected_parent_code,
    level_for_code,
    parent_level,
    project_code,
)


class TestCodeGeometry:
    """Test the prefix encoding helpers."""

    def test_level_for_code(self):
        assert level_for_code("01") == GeoLevel.REGION
        assert level_for_code("0102") == GeoLevel.PROVINCE
        assert level_for_code("010203") == GeoLevel.CITY
        assert level_for_code("010203004") == GeoLevel.BARANGAY

    def test_level_for_malformed_code(self):
        assert level_for_code("") is None
        assert level_for_code("01020") is None
        assert level_for_code("01A2") is None

    def test_project_code(self):
        assert project_code("010203004", GeoLevel.REGION) == "01"
        assert project_code("010203004", GeoLevel.CITY) == "010203"
        assert project_code("010203004", GeoLevel.BARANGAY) == "010203004"

    def test_project_code_too_short(self):
        assert project_code("0102", GeoLevel.CITY) is None

    def test_expected_parent_code(self):
        assert expected_parent_code("010203004", GeoLevel.BARANGAY) == "010203"
        assert expected_parent_code("0102", GeoLevel.PROVINCE) == "01"
        assert expected_parent_code("01", GeoLevel.REGION) is None

    def test_level_neighbours(self):
        assert parent_level(GeoLevel.REGION) is None
        assert parent_level(GeoLevel.CITY) == GeoLevel.PROVINCE
        assert child_level(GeoLevel.CITY) == GeoLevel.BARANGAY
        assert child_level(GeoLevel.BARANGAY) is None

    def test_access_to_geo_level(self):
        assert access_to_geo_level(AccessLevel.NATIONAL) is None
        assert access_to_geo_level(AccessLevel.NONE) is None
        assert access_to_geo_level(AccessLevel.PROVINCE) == GeoLevel.PROVINCE


class TestGeoNode:
    """Test GeoNode validation."""

    def test_valid_node(self):
        node = GeoNode(code="010203", level=GeoLevel.CITY, parent_code="0102")
        assert node.active is True

    def test_parent_must_match_prefix(self):
        with pytest.raises(ValidationError):
            GeoNode(code="010203", level=GeoLevel.CITY, parent_code="0199")

    def test_region_has_no_parent(self):
        with pytest.raises(ValidationError):
            GeoNode(code="01", level=GeoLevel.REGION, parent_code="00")

    def test_code_length_must_match_level(self):
        with pytest.raises(ValidationError):
            GeoNode(code="0102", level=GeoLevel.CITY, parent_code="01")


class TestReferenceSet:
    """Test validation of authoritative reference sets."""

    def _rows(self):
        return [
            {"code": "01", "parent_code": None, "level": "region"},
            {"code": "0102", "parent_code": "01", "level": "province"},
            {"code": "010203", "parent_code": "0102", "level": "city"},
        ]

    def test_valid_set(self):
        ref = ReferenceSet.from_rows(self._rows(), version="2024Q1")
        ref.validate_set()
        assert ref.codes(GeoLevel.PROVINCE) == {"0102"}
        assert ref.parent_map(GeoLevel.CITY) == {"010203": "0102"}

    def test_missing_parent_rejected(self):
        rows = self._rows()[1:]
        with pytest.raises(ReferenceSetError) as exc_info:
            ReferenceSet.from_rows(rows).validate_set()
        assert any("0102" in p for p in exc_info.value.problems)

    def test_duplicate_code_rejected(self):
        rows = self._rows() + [{"code": "0102", "parent_code": "01", "level": "province"}]
        with pytest.raises(ReferenceSetError):
            ReferenceSet.from_rows(rows).validate_set()

    def test_inconsistent_prefix_rejected(self):
        rows = self._rows() + [{"code": "0299", "parent_code": "01", "level": "province"}]
        with pytest.raises(ReferenceSetError):
            ReferenceSet.from_rows(rows).validate_set()

    def test_loads_from_json(self):
        ref = ReferenceSet.model_validate_json(
            '{"version": "v2", "nodes": [{"code": "15", "level": "region"}]}'
        )
        assert ref.version == "v2"
        assert ref.codes(GeoLevel.REGION) == {"15"}


class TestRoles:
    """Test role capabilities and the catalogue."""

    def test_super_admin_wildcard(self):
        assert SUPER_ADMIN.is_super_admin
        assert SUPER_ADMIN.can("residents", Operation.WRITE)
        assert SUPER_ADMIN.can("anything", Operation.READ)

    def test_read_only_cannot_write(self):
        assert READ_ONLY.can("residents", Operation.READ)
        assert not READ_ONLY.can("residents", Operation.WRITE)

    def test_city_admin_reads_residents_only(self):
        assert CITY_ADMIN.can("residents", Operation.READ)
        assert not CITY_ADMIN.can("residents", Operation.WRITE)
        assert CITY_ADMIN.can("user_profiles", Operation.WRITE)

    def test_unknown_entity_denied(self):
        assert not BARANGAY_USER.can("settings", Operation.READ)

    def test_admin_role_for_level(self):
        catalog = RoleCatalog()
        assert catalog.admin_role_for(GeoLevel.BARANGAY) == BARANGAY_ADMIN
        assert catalog.admin_role_for(GeoLevel.CITY) == CITY_ADMIN

    def test_default_role(self):
        assert RoleCatalog().default_role == BARANGAY_USER

    def test_default_role_must_be_non_admin(self):
        with pytest.raises(ValueError):
            RoleCatalog(default_role_name="barangay_admin")

    def test_unknown_default_role(self):
        with pytest.raises(ValueError):
            RoleCatalog(default_role_name="mayor")

    def test_list_roles_sorted(self):
        ids = [r.id for r in RoleCatalog().list_roles()]
        assert ids == sorted(ids)
        assert len(ids) == 7


class TestSignupMetadata:
    def test_accepts_camel_case_aliases(self):
        meta = SignupMetadata.model_validate({
            "firstName": "Ana",
            "lastName": "Santos",
            "requestedJurisdictionCode": "010203004",
        })
        assert meta.first_name == "Ana"
        assert meta.requested_jurisdiction_code == "010203004"
        assert meta.requested_role is None
