"""
Hierarchy Audit Tool — integrity check and reference reconciliation.

Connects directly to the registry database, reports every node that breaks
the hierarchy invariants (orphans, inactive parents, level mismatches,
code-prefix inconsistencies) and, given an authoritative reference set,
shows or applies the reconciliation.

Usage:
    python -m rbi_registry.geography.audit
    python -m rbi_registry.geography.audit --reference psgc-2024.json
    python -m rbi_registry.geography.audit --reference psgc-2024.json --apply
    python -m rbi_registry.geography.audit --database-url postgresql://...

The reference file is JSON: {"version": "...", "nodes": [{"code", "parent_code", "level"}, ...]}
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.table import Table

from rbi_registry.config import settings
from rbi_registry.core.errors import HierarchyReconciliationPartial, ReferenceSetError
from rbi_registry.core.schema import GeoLevel, ReferenceSet
from rbi_registry.geography.hierarchy import HierarchyStore
from rbi_registry.geography.reconciler import HierarchyMaintainer, ReconciliationPlan
from rbi_registry.store.database import Database

console = Console()


def load_reference_set(path: Path) -> ReferenceSet:
    return ReferenceSet.model_validate_json(path.read_text(encoding="utf-8"))


def run_audit(store: HierarchyStore, verbose: bool = False) -> bool:
    """
    Run a full hierarchy integrity audit.

    Returns:
        True if no violations were found.
    """
    console.print("\n[bold blue]═══ Geographic Hierarchy Integrity Audit ═══[/bold blue]\n")

    counts = store.count_by_level()
    table = Table(title="Nodes by level")
    table.add_column("Level", style="cyan")
    table.add_column("Count", justify="right")
    for level in GeoLevel:
        table.add_row(level.value, str(counts.get(level.value, 0)))
    console.print(table)

    console.print("  Checking invariants...", end=" ")
    start_time = time.time()
    violations = store.verify_integrity()
    elapsed = time.time() - start_time

    if not violations:
        console.print("[bold green]✓ CONSISTENT[/bold green]")
        console.print(f"  Verification time: {elapsed:.3f}s")
        return True

    console.print(f"[bold red]✗ {len(violations)} VIOLATIONS[/bold red]")
    shown = violations if verbose else violations[:50]
    vtable = Table(show_lines=False)
    vtable.add_column("Code", style="cyan", width=11)
    vtable.add_column("Level", style="green", width=10)
    vtable.add_column("Problem")
    for violation in shown:
        vtable.add_row(violation.code, violation.level, violation.problem)
    console.print(vtable)
    if len(shown) < len(violations):
        console.print(f"[dim]  ... {len(violations) - len(shown)} more (use --verbose)[/dim]")
    return False


def print_plan(plan: ReconciliationPlan, verbose: bool = False) -> None:
    console.print(f"\n[bold]Reconciliation plan[/bold] (reference {plan.reference_version})")
    if plan.is_noop:
        console.print("[green]  Hierarchy already matches the reference set[/green]")
        return

    table = Table()
    table.add_column("Level", style="cyan")
    table.add_column("Relink", justify="right")
    table.add_column("Delete", justify="right", style="red")
    for level in GeoLevel:
        table.add_row(
            level.value,
            str(len(plan.relinks.get(level.value, {}))),
            str(len(plan.deletions.get(level.value, []))),
        )
    console.print(table)

    if plan.unresolved_relinks:
        console.print(
            f"[yellow]⚠ {len(plan.unresolved_relinks)} nodes point at parents missing "
            f"from the live tree[/yellow]"
        )
    if verbose:
        for level, codes in plan.deletions.items():
            if codes:
                console.print(f"  [red]delete {level}:[/red] {', '.join(codes)}")


def run_reconcile(
    store: HierarchyStore,
    reference_set: ReferenceSet,
    apply: bool = False,
    batch_size: int = 500,
    verbose: bool = False,
) -> bool:
    """Show the plan and, with ``apply``, execute it. Returns True on success."""
    maintainer = HierarchyMaintainer(
        store, batch_size=batch_size, prune_empty_regions=settings.prune_empty_regions
    )
    try:
        plan = maintainer.plan(reference_set)
    except ReferenceSetError as exc:
        console.print(f"[bold red]✗ Reference set rejected[/bold red]: {exc}")
        return False

    print_plan(plan, verbose=verbose)
    if not apply or plan.is_noop:
        return True

    console.print("\n  Applying...", end=" ")
    try:
        report = maintainer.reconcile(reference_set)
    except HierarchyReconciliationPartial as exc:
        console.print("[bold red]✗ INCOMPLETE[/bold red]")
        console.print(f"  Stopped at {exc.level}; last completed batch {exc.last_completed_range}")
        console.print("  Committed batches stand; re-run to resume.")
        return False

    console.print("[bold green]✓ DONE[/bold green]")
    console.print(f"  Relinked: {report.relinked}")
    console.print(f"  Deleted:  {report.deleted}")
    console.print(f"  Batches:  {report.batches_committed}")
    if report.orphaned_reference_nodes:
        console.print(
            f"[yellow]⚠ Removed {len(report.orphaned_reference_nodes)} reference nodes "
            f"whose parents could not be resolved[/yellow]"
        )
    return True


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="RBI Registry geographic hierarchy auditor"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--reference",
        type=Path,
        default=None,
        help="Authoritative reference set (JSON) to reconcile against",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Apply the reconciliation instead of only showing the plan",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.reconcile_batch_size,
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="List every violation and deletion",
    )
    args = parser.parse_args(argv)

    db = Database(args.database_url or settings.database_url_sync)
    store = HierarchyStore(db)
    try:
        ok = True
        if args.reference is not None:
            ok = run_reconcile(
                store,
                load_reference_set(args.reference),
                apply=args.apply,
                batch_size=args.batch_size,
                verbose=args.verbose,
            )
        ok = run_audit(store, verbose=args.verbose) and ok
    finally:
        db.dispose()

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
