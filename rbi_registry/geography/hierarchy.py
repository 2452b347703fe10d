"""
Geographic Hierarchy Store — canonical region/province/city/barangay tree.

Read by every request (through the jurisdiction resolver) and written only
by the hierarchy maintainer. Writes are small transactions so readers are
never starved by a long repair.

Invariants kept by this store:
- every non-region node's parent exists, is one level up and matches the
  node's code prefix
- an active node never has an inactive parent
- a node is never removed while it still has children
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from rbi_registry.core.errors import HierarchyIntegrityError
from rbi_registry.core.schema import (
    CODE_LENGTHS,
    GeoLevel,
    GeoNode,
    expected_parent_code,
    level_for_code,
    parent_level,
)
from rbi_registry.store.database import Database
from rbi_registry.store.models import GeoNodeDB

logger = logging.getLogger(__name__)


def _to_node(row: GeoNodeDB) -> GeoNode:
    # Live rows may violate the code geometry; verify_integrity reports those
    return GeoNode.model_construct(
        code=row.code,
        name=row.name,
        level=GeoLevel(row.level),
        parent_code=row.parent_code,
        active=row.active,
    )


@dataclass(frozen=True)
class IntegrityViolation:
    """One broken invariant found by :meth:`HierarchyStore.verify_integrity`."""

    code: str
    level: str
    problem: str


class HierarchyStore:
    """
    Service over the ``geo_nodes`` table.

    Every public method opens its own short session unless a session is
    passed in, which lets the maintainer group a batch into one transaction.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ── Reads ──────────────────────────────────────────────────

    def get_node(self, code: str) -> GeoNode | None:
        with self.db.session() as session:
            row = session.get(GeoNodeDB, code)
            return _to_node(row) if row is not None else None

    def list_nodes(
        self,
        level: GeoLevel | None = None,
        parent_code: str | None = None,
        active_only: bool = False,
    ) -> list[GeoNode]:
        stmt = select(GeoNodeDB)
        if level is not None:
            stmt = stmt.where(GeoNodeDB.level == level.value)
        if parent_code is not None:
            stmt = stmt.where(GeoNodeDB.parent_code == parent_code)
        if active_only:
            stmt = stmt.where(GeoNodeDB.active.is_(True))
        with self.db.session() as session:
            rows = session.execute(stmt.order_by(GeoNodeDB.code)).scalars().all()
            return [_to_node(r) for r in rows]

    def children(self, code: str) -> list[GeoNode]:
        return self.list_nodes(parent_code=code)

    def codes_at_level(self, level: GeoLevel, session: Session | None = None) -> set[str]:
        """Live set of codes at ``level`` (no caching; callers rely on freshness)."""
        stmt = select(GeoNodeDB.code).where(GeoNodeDB.level == level.value)
        if session is not None:
            return set(session.execute(stmt).scalars().all())
        with self.db.session() as s:
            return set(s.execute(stmt).scalars().all())

    def parent_links(
        self, level: GeoLevel, session: Session | None = None
    ) -> dict[str, str | None]:
        """Live ``code -> parent_code`` map for one level."""
        stmt = select(GeoNodeDB.code, GeoNodeDB.parent_code).where(
            GeoNodeDB.level == level.value
        )
        if session is not None:
            return {code: parent for code, parent in session.execute(stmt).all()}
        with self.db.session() as s:
            return {code: parent for code, parent in s.execute(stmt).all()}

    def descendant_codes(self, ancestor_code: str, level: GeoLevel) -> list[str]:
        """Active codes at ``level`` whose code starts with ``ancestor_code``."""
        if len(ancestor_code) > CODE_LENGTHS[level]:
            return []
        stmt = (
            select(GeoNodeDB.code)
            .where(GeoNodeDB.level == level.value)
            .where(GeoNodeDB.active.is_(True))
            .where(GeoNodeDB.code.startswith(ancestor_code, autoescape=True))
            .order_by(GeoNodeDB.code)
        )
        with self.db.session() as session:
            return list(session.execute(stmt).scalars().all())

    def count_by_level(self) -> dict[str, int]:
        with self.db.session() as session:
            rows = session.execute(
                select(GeoNodeDB.level, func.count()).group_by(GeoNodeDB.level)
            ).all()
        counts = {level.value: 0 for level in GeoLevel}
        counts.update({level: count for level, count in rows})
        return counts

    # ── Writes ─────────────────────────────────────────────────

    def add_nodes(self, nodes: Iterable[GeoNode]) -> int:
        """
        Insert or update nodes, parents before children.

        Used when seeding from an import. Each node's parent must already
        exist or be part of the same call.

        Returns:
            Number of nodes written.
        """
        ordered = sorted(nodes, key=lambda n: (len(n.code), n.code))
        with self.db.session() as session:
            for node in ordered:
                if node.parent_code is not None:
                    parent = session.get(GeoNodeDB, node.parent_code)
                    if parent is None:
                        raise HierarchyIntegrityError(
                            f"Cannot add {node.code}: parent {node.parent_code} does not exist"
                        )
                    if node.active and not parent.active:
                        raise HierarchyIntegrityError(
                            f"Cannot add active {node.code} under inactive {node.parent_code}"
                        )
                session.merge(
                    GeoNodeDB(
                        code=node.code,
                        name=node.name,
                        level=node.level.value,
                        parent_code=node.parent_code,
                        active=node.active,
                    )
                )
                # Flush so later children in this call can see the parent
                session.flush()
        logger.info("Hierarchy nodes written: %d", len(ordered))
        return len(ordered)

    def relink(self, code: str, new_parent_code: str, session: Session | None = None) -> bool:
        """
        Point ``code`` at a new parent without deleting it.

        Returns:
            True if the parent pointer changed, False if it already matched.

        Raises:
            HierarchyIntegrityError: node or new parent missing, or the new
                parent is not one level up.
        """
        if session is None:
            with self.db.session() as s:
                return self.relink(code, new_parent_code, session=s)

        node = session.get(GeoNodeDB, code)
        if node is None:
            raise HierarchyIntegrityError(f"Cannot relink {code}: node does not exist")
        parent = session.get(GeoNodeDB, new_parent_code)
        if parent is None:
            raise HierarchyIntegrityError(
                f"Cannot relink {code}: parent {new_parent_code} does not exist"
            )
        expected = parent_level(GeoLevel(node.level))
        if expected is None or parent.level != expected.value:
            raise HierarchyIntegrityError(
                f"Cannot relink {code}: {new_parent_code} is a {parent.level}, "
                f"expected {expected.value if expected else 'no parent'}"
            )
        if node.parent_code == new_parent_code:
            return False
        logger.info("Relinking %s: %s -> %s", code, node.parent_code, new_parent_code)
        node.parent_code = new_parent_code
        return True

    def deactivate_node(self, code: str) -> None:
        """
        Soft-delete a node.

        Raises:
            HierarchyIntegrityError: if the node has active children.
        """
        with self.db.session() as session:
            node = session.get(GeoNodeDB, code)
            if node is None:
                raise HierarchyIntegrityError(f"Cannot deactivate {code}: node does not exist")
            active_children = session.execute(
                select(func.count())
                .select_from(GeoNodeDB)
                .where(GeoNodeDB.parent_code == code)
                .where(GeoNodeDB.active.is_(True))
            ).scalar_one()
            if active_children:
                raise HierarchyIntegrityError(
                    f"Cannot deactivate {code}: {active_children} active children remain"
                )
            node.active = False
        logger.info("Hierarchy node deactivated: %s", code)

    def reactivate_node(self, code: str) -> None:
        with self.db.session() as session:
            node = session.get(GeoNodeDB, code)
            if node is None:
                raise HierarchyIntegrityError(f"Cannot reactivate {code}: node does not exist")
            if node.parent_code is not None:
                parent = session.get(GeoNodeDB, node.parent_code)
                if parent is None or not parent.active:
                    raise HierarchyIntegrityError(
                        f"Cannot reactivate {code}: parent {node.parent_code} is not active"
                    )
            node.active = True

    def delete_codes(self, codes: Sequence[str], session: Session) -> int:
        """
        Hard-delete a batch of childless nodes inside the caller's transaction.

        Codes that no longer exist are ignored, so a repeated batch is a no-op.

        Raises:
            HierarchyIntegrityError: if any node in the batch still has children.
        """
        if not codes:
            return 0
        blocking = session.execute(
            select(GeoNodeDB.parent_code)
            .where(GeoNodeDB.parent_code.in_(codes))
            .distinct()
        ).scalars().all()
        if blocking:
            raise HierarchyIntegrityError(
                f"Cannot delete nodes that still have children: {sorted(blocking)[:5]}"
            )
        result = session.execute(delete(GeoNodeDB).where(GeoNodeDB.code.in_(codes)))
        return result.rowcount or 0

    def rename_node(self, code: str, name: str) -> None:
        with self.db.session() as session:
            session.execute(update(GeoNodeDB).where(GeoNodeDB.code == code).values(name=name))

    # ── Integrity ──────────────────────────────────────────────

    def verify_integrity(self) -> list[IntegrityViolation]:
        """
        Check every node against the hierarchy invariants.

        Returns:
            All violations found; an empty list means the tree is consistent.
        """
        with self.db.session() as session:
            rows = session.execute(
                select(
                    GeoNodeDB.code, GeoNodeDB.level, GeoNodeDB.parent_code, GeoNodeDB.active
                )
            ).all()

        nodes = {code: (level, parent, active) for code, level, parent, active in rows}
        violations: list[IntegrityViolation] = []

        for code, (level_value, parent_code, active) in sorted(nodes.items()):
            try:
                level = GeoLevel(level_value)
            except ValueError:
                violations.append(IntegrityViolation(code, level_value, "unknown level"))
                continue

            if level_for_code(code) != level:
                violations.append(
                    IntegrityViolation(code, level.value, "code length does not match level")
                )
                continue

            expected_parent = expected_parent_code(code, level)
            if expected_parent is None:
                if parent_code is not None:
                    violations.append(
                        IntegrityViolation(code, level.value, "region has a parent")
                    )
                continue

            if parent_code != expected_parent:
                violations.append(
                    IntegrityViolation(
                        code, level.value,
                        f"parent {parent_code} does not match code prefix {expected_parent}",
                    )
                )

            parent = nodes.get(parent_code) if parent_code is not None else None
            if parent is None:
                violations.append(
                    IntegrityViolation(code, level.value, f"orphaned: parent {parent_code} missing")
                )
                continue

            parent_level_value, _, parent_active = parent
            expected_level = parent_level(level)
            if expected_level is not None and parent_level_value != expected_level.value:
                violations.append(
                    IntegrityViolation(
                        code, level.value,
                        f"parent {parent_code} is a {parent_level_value}, "
                        f"expected {expected_level.value}",
                    )
                )
            if active and not parent_active:
                violations.append(
                    IntegrityViolation(code, level.value, f"parent {parent_code} is inactive")
                )

        return violations
