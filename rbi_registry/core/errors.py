"""
Registry error taxonomy.

Only data-integrity problems and provisioning failures are exceptional.
Authorization denials are returned as values by the Policy Evaluator and
never raised.
"""

from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """Base class for every error raised by the registry core."""
    pass


# ── Jurisdiction / hierarchy ───────────────────────────────────


class UnresolvedJurisdiction(RegistryError):
    """An account points at a jurisdiction node that is missing or inactive."""

    def __init__(self, code: str | None, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Unresolved jurisdiction {code!r}: {reason}")


class HierarchyIntegrityError(RegistryError):
    """A store mutation would break the parent/child invariants of the tree."""
    pass


class ReferenceSetError(RegistryError):
    """The authoritative reference set is malformed; nothing was applied."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        preview = "; ".join(problems[:5])
        more = f" (+{len(problems) - 5} more)" if len(problems) > 5 else ""
        super().__init__(f"Invalid reference set: {preview}{more}")


class HierarchyReconciliationPartial(RegistryError):
    """
    A reconciliation run stopped after some batches were committed.

    Committed batches are valid on their own; re-running the reconciliation
    with the same reference set resumes where this run stopped.
    """

    def __init__(
        self,
        level: str,
        last_completed_range: tuple[str, str] | None,
        report: Any = None,
        cause: BaseException | None = None,
    ) -> None:
        self.level = level
        self.last_completed_range = last_completed_range
        self.report = report
        self.cause = cause
        where = (
            f"{last_completed_range[0]}..{last_completed_range[1]}"
            if last_completed_range else "none"
        )
        super().__init__(
            f"Reconciliation stopped at level {level}; last completed batch: {where}"
        )


class ReconciliationCancelled(HierarchyReconciliationPartial):
    """The run was cancelled between batches."""
    pass


# ── Provisioning ───────────────────────────────────────────────


class DuplicateAdminConflict(RegistryError):
    """
    Another active profile already holds the admin seat for a jurisdiction.

    Handled inside provisioning by demoting the signup to the default role.
    """

    def __init__(self, jurisdiction_code: str, holder_id: str | None = None) -> None:
        self.jurisdiction_code = jurisdiction_code
        self.holder_id = holder_id
        super().__init__(
            f"Jurisdiction {jurisdiction_code} already has an active administrator"
        )


class ProvisioningRetryable(RegistryError):
    """Provisioning could not complete yet; the caller should re-queue."""

    def __init__(self, identity_id: str, reason: str, attempts: int = 0) -> None:
        self.identity_id = identity_id
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"Provisioning of {identity_id} deferred: {reason}")


class ProvisioningPermanentFailure(RegistryError):
    """The signup can never be provisioned as submitted and must be rejected."""

    def __init__(self, identity_id: str, reason: str) -> None:
        self.identity_id = identity_id
        self.reason = reason
        super().__init__(f"Provisioning of {identity_id} rejected: {reason}")


class InvalidTransition(RegistryError):
    """A provisioning event is not valid in the account's current state."""

    def __init__(self, state: str, event: str) -> None:
        self.state = state
        self.event = event
        super().__init__(f"Event {event!r} is not valid in state {state!r}")


class IdentityProviderError(RegistryError):
    """Transport or server failure while talking to the identity provider."""
    pass


class IdentityGone(RegistryError):
    """The identity provider reports the account as permanently removed."""

    def __init__(self, identity_id: str) -> None:
        self.identity_id = identity_id
        super().__init__(f"Identity {identity_id} no longer exists at the provider")
