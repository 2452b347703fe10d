"""
Registry database — SQLAlchemy models for the hierarchy and account tables.

Three tables back the core:

1. geo_nodes        — the administrative hierarchy (self-referencing by code)
2. account_profiles — one row per confirmed identity, keyed by identity id
3. signup_requests  — pre-profile provisioning lifecycle and re-drive bookkeeping

The at-most-one-admin invariant is linearized by the unique ``admin_seat_code``
column: it holds the jurisdiction code while the profile is the active
single-per-jurisdiction administrator, and NULL otherwise. NULLs never
collide, so only seat holders compete for uniqueness.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all registry models."""
    pass


class GeoNodeDB(Base):
    """
    A node of the region → province → city → barangay tree.

    Rows are written only by the hierarchy maintainer. A node is never
    removed while it still has children; children are deleted or relinked
    first (bottom-up).
    """

    __tablename__ = "geo_nodes"

    code = Column(
        String(9), primary_key=True,
        comment="PSGC code; prefix-encodes the ancestry",
    )
    name = Column(String(200), nullable=False, default="")
    level = Column(
        String(10), nullable=False,
        comment="region, province, city or barangay",
    )
    parent_code = Column(
        String(9), ForeignKey("geo_nodes.code"), nullable=True,
        comment="Code of the node one level up (NULL for regions)",
    )
    active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_geo_level_parent", "level", "parent_code"),
        Index("ix_geo_parent", "parent_code"),
    )

    def __repr__(self) -> str:
        return f"<GeoNode {self.level}:{self.code} parent={self.parent_code}>"


class AccountProfileDB(Base):
    """Local account profile, exactly one row per provider identity."""

    __tablename__ = "account_profiles"

    id = Column(
        String(64), primary_key=True,
        comment="Identity provider account id",
    )
    email = Column(String(320), nullable=False, default="")
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    role_id = Column(Integer, nullable=False)
    jurisdiction_code = Column(String(9), nullable=True)
    jurisdiction_level = Column(String(10), nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    provisioning_state = Column(String(32), nullable=False)
    admin_seat_code = Column(
        String(9), nullable=True, unique=True,
        comment="Jurisdiction code while holding the single admin seat",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_profile_jurisdiction", "jurisdiction_code"),
        Index("ix_profile_role_active", "role_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<AccountProfile {self.id} role={self.role_id} "
            f"{self.jurisdiction_level}:{self.jurisdiction_code} "
            f"state={self.provisioning_state}>"
        )


class SignupRequestDB(Base):
    """
    Provisioning bookkeeping for one identity.

    Created on the provider's account-created event and kept after the
    profile exists, so the reconciliation sweep can find signups stuck in
    ``confirmed`` or ``profile_created`` and re-drive them.
    """

    __tablename__ = "signup_requests"

    identity_id = Column(String(64), primary_key=True)
    email = Column(String(320), nullable=False, default="")
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    requested_jurisdiction_code = Column(String(9), nullable=True)
    requested_role = Column(String(50), nullable=True)
    state = Column(String(32), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    needs_operator = Column(
        Boolean, nullable=False, default=False,
        comment="Re-drive budget exhausted; waiting for an operator",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_signup_state_next", "state", "next_attempt_at"),
    )
