"""
Provisioning Service — materialize a local profile once an identity is confirmed.

Lifecycle per identity (see state_machine.py):

1. register_signup   — provider's account-created event; metadata validated
2. confirm_identity  — provider's email-confirmed event
3. provision         — wait for provider visibility (no DB lock held), then
                       upsert the profile and run the admin-seat election in
                       one transaction, then assign the role and activate

Idempotence: the profile row is keyed by identity id, so repeated or
concurrent triggers for the same identity converge on a single row and a
finished account is returned untouched.

First admin wins: the admin seat is the unique ``admin_seat_code`` column.
Two signups racing for the same empty jurisdiction both try to take it;
the loser's insert fails on the unique constraint, its transaction rolls
back, and the retry loop re-reads the seat and demotes it to the default
role. The loser's signup still succeeds.

Failures never leave an identity silently without a profile: the signup
request keeps its last reached state, error and next attempt time so the
sweep in queue.py can re-drive it.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from rbi_registry.core.errors import (
    DuplicateAdminConflict,
    IdentityGone,
    ProvisioningPermanentFailure,
    ProvisioningRetryable,
)
from rbi_registry.core.roles import RoleCatalog
from rbi_registry.core.schema import (
    AccessLevel,
    AccountIdentity,
    AccountProfile,
    ProvisioningState,
    Role,
    SignupMetadata,
    access_to_geo_level,
    level_depth,
    level_for_code,
    project_code,
)
from rbi_registry.geography.hierarchy import HierarchyStore
from rbi_registry.provisioning.backoff import BackoffPolicy, wait_until_visible
from rbi_registry.provisioning.identity_client import IdentityDirectory
from rbi_registry.provisioning.state_machine import (
    ProvisioningEvent,
    ProvisioningStateMachine,
)
from rbi_registry.store.database import Database
from rbi_registry.store.models import AccountProfileDB, SignupRequestDB

logger = logging.getLogger(__name__)

ELECTION_ATTEMPTS = 3
REDRIVABLE_STATES = (ProvisioningState.CONFIRMED.value, ProvisioningState.PROFILE_CREATED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningService:
    """
    Drives identities through the provisioning lifecycle against the database.

    Usage:
        service = ProvisioningService(db, store, identity_client)
        service.register_signup(identity, metadata)
        service.confirm_identity(identity.id, confirmed_at)
        profile = service.provision(identity.id)
    """

    def __init__(
        self,
        db: Database,
        store: HierarchyStore,
        directory: IdentityDirectory,
        roles: RoleCatalog | None = None,
        backoff: BackoffPolicy | None = None,
        max_redrives: int = 5,
        redrive_base_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.store = store
        self.directory = directory
        self.roles = roles or RoleCatalog()
        self.backoff = backoff or BackoffPolicy()
        self.max_redrives = max_redrives
        self.redrive_base_delay = redrive_base_delay
        self.sleep = sleep
        self.clock = clock
        self.fsm = ProvisioningStateMachine()

    # ── Signup events ──────────────────────────────────────────

    def register_signup(
        self, identity: AccountIdentity, metadata: SignupMetadata
    ) -> ProvisioningState:
        """
        Record an account-created event.

        Re-delivery of the same event is harmless: an existing request keeps
        its state (advancing to ``confirmed`` if the identity now is). The
        metadata is only read when the request is first created; later
        events for the same identity need not carry it.

        Raises:
            ProvisioningPermanentFailure: the signup metadata is malformed.
        """
        try:
            with self.db.session() as session:
                request = session.get(SignupRequestDB, identity.id)
                if request is None:
                    self._validate_metadata(identity.id, metadata)
                    request = SignupRequestDB(
                        identity_id=identity.id,
                        email=identity.email,
                        first_name=metadata.first_name,
                        last_name=metadata.last_name,
                        requested_jurisdiction_code=metadata.requested_jurisdiction_code,
                        requested_role=metadata.requested_role,
                        state=ProvisioningState.PENDING_CONFIRMATION.value,
                        attempts=0,
                    )
                    session.add(request)
                    logger.info(
                        "Signup registered: id=%s jurisdiction=%s",
                        identity.id, metadata.requested_jurisdiction_code,
                    )
                if identity.confirmed_at is not None:
                    self._advance_confirmed(request, identity.confirmed_at)
                state = ProvisioningState(request.state)
        except IntegrityError:
            # The same event was delivered twice concurrently; the other insert won
            with self.db.session() as session:
                request = session.get(SignupRequestDB, identity.id)
                if identity.confirmed_at is not None:
                    self._advance_confirmed(request, identity.confirmed_at)
                state = ProvisioningState(request.state)
        return state

    def confirm_identity(
        self, identity_id: str, confirmed_at: datetime | None = None
    ) -> ProvisioningState:
        """
        Record an email-confirmed event.

        Raises:
            ProvisioningRetryable: the account-created event has not been
                registered yet (out-of-order delivery); re-queue.
        """
        with self.db.session() as session:
            request = session.get(SignupRequestDB, identity_id)
            if request is None:
                raise ProvisioningRetryable(identity_id, "signup not registered yet")
            self._advance_confirmed(request, confirmed_at or self.clock())
            return ProvisioningState(request.state)

    def _advance_confirmed(self, request: SignupRequestDB, confirmed_at: datetime) -> None:
        state = ProvisioningState(request.state)
        if self.fsm.has_reached(state, ProvisioningState.CONFIRMED):
            return
        request.state = self.fsm.transition(state, ProvisioningEvent.IDENTITY_CONFIRMED).value
        request.confirmed_at = confirmed_at
        logger.info("Identity confirmed: id=%s", request.identity_id)

    def _validate_metadata(self, identity_id: str, metadata: SignupMetadata) -> None:
        code = metadata.requested_jurisdiction_code
        if not code:
            raise ProvisioningPermanentFailure(identity_id, "missing requested jurisdiction code")
        if level_for_code(code) is None:
            raise ProvisioningPermanentFailure(identity_id, f"malformed jurisdiction code {code!r}")
        if metadata.requested_role:
            role = self.roles.by_name(metadata.requested_role)
            if role is None:
                raise ProvisioningPermanentFailure(
                    identity_id, f"unknown role {metadata.requested_role!r}"
                )
            if role.is_super_admin:
                raise ProvisioningPermanentFailure(
                    identity_id, "national roles cannot be requested at signup"
                )

    # ── Provisioning trigger ───────────────────────────────────

    def provision(self, identity_id: str) -> AccountProfile:
        """
        Materialize the profile and role for a confirmed identity.

        Safe to call any number of times; a finished account is returned
        without changes and without contacting the identity provider.

        Returns:
            The account profile in a terminal state.

        Raises:
            ProvisioningRetryable: not confirmed yet, not visible at the
                provider yet, or a transient database failure; re-queue.
            ProvisioningPermanentFailure: the signup can never be provisioned.
        """
        with self.db.session() as session:
            request = session.get(SignupRequestDB, identity_id)
            if request is None:
                raise ProvisioningRetryable(identity_id, "signup not registered yet")
            state = ProvisioningState(request.state)

        if state == ProvisioningState.PENDING_CONFIRMATION:
            raise ProvisioningRetryable(identity_id, "identity not confirmed yet")
        if self.fsm.is_terminal(state):
            profile = self.get_profile(identity_id)
            if profile is not None:
                return profile

        # Waits happen here, outside any transaction
        try:
            wait_until_visible(
                self.directory.identity_visible, identity_id, self.backoff, sleep=self.sleep
            )
        except ProvisioningRetryable as exc:
            self._record_failure(identity_id, exc.reason)
            raise
        except IdentityGone as exc:
            self._record_failure(identity_id, str(exc), permanent=True)
            raise ProvisioningPermanentFailure(identity_id, str(exc)) from exc

        try:
            state = self._materialize_profile(identity_id)
            if state == ProvisioningState.PROFILE_CREATED:
                state = self._assign_role(identity_id)
        except ProvisioningPermanentFailure as exc:
            self._record_failure(identity_id, exc.reason, permanent=True)
            raise
        except ProvisioningRetryable as exc:
            self._record_failure(identity_id, exc.reason)
            raise
        except SQLAlchemyError as exc:
            logger.exception("Provisioning of %s failed; left for re-drive", identity_id)
            self._record_failure(identity_id, f"database error: {exc}")
            raise ProvisioningRetryable(identity_id, f"database error: {exc}") from exc

        profile = self.get_profile(identity_id)
        logger.info(
            "Provisioned: id=%s state=%s role=%s jurisdiction=%s",
            identity_id, state.value, profile.role_id, profile.jurisdiction_code,
        )
        return profile

    def _resolve_requested_role(self, request: SignupRequestDB) -> Role:
        if request.requested_role:
            role = self.roles.by_name(request.requested_role)
            if role is None:
                raise ProvisioningPermanentFailure(
                    request.identity_id, f"unknown role {request.requested_role!r}"
                )
            return role
        level = level_for_code(request.requested_jurisdiction_code or "")
        if level is None:
            raise ProvisioningPermanentFailure(request.identity_id, "missing jurisdiction code")
        # First user of a jurisdiction becomes its administrator
        return self.roles.admin_role_for(level) or self.roles.default_role

    def _jurisdiction_for(self, identity_id: str, role: Role, code: str) -> tuple[AccessLevel, str]:
        """
        Jurisdiction level and seat code for ``role`` at ``code``.

        A non-admin role whose level lies below the signup node gets no
        jurisdiction at all until an operator assigns a deeper node.
        """
        code_level = level_for_code(code)
        role_level = access_to_geo_level(role.access_level)
        if role_level is None:
            return role.access_level, code
        if level_depth(code_level) < level_depth(role_level):
            if role.single_per_jurisdiction:
                raise ProvisioningPermanentFailure(
                    identity_id,
                    f"{role.name} needs a {role_level.value} code, got {code_level.value} {code}",
                )
            logger.warning(
                "%s at %s %s is too coarse for %s; no jurisdiction granted",
                identity_id, code_level.value, code, role.name,
            )
            return AccessLevel.NONE, code
        return role.access_level, project_code(code, role_level)

    def _materialize_profile(self, identity_id: str) -> ProvisioningState:
        """
        Upsert the profile and elect the admin seat in one transaction.

        Retries on unique-constraint conflicts: the next pass sees the row
        or seat that the competing transaction committed.
        """
        with self.db.session() as session:
            request = session.get(SignupRequestDB, identity_id)
            code = request.requested_jurisdiction_code
            requested = self._resolve_requested_role(request)

        node = self.store.get_node(code)
        if node is None or not node.active:
            raise ProvisioningPermanentFailure(
                identity_id, f"jurisdiction {code} does not exist or is inactive"
            )
        level, seat = self._jurisdiction_for(identity_id, requested, code)

        for attempt in range(1, ELECTION_ATTEMPTS + 1):
            try:
                with self.db.session() as session:
                    request = session.get(SignupRequestDB, identity_id)
                    existing = session.get(AccountProfileDB, identity_id)
                    if existing is not None:
                        # Created by an earlier or concurrent trigger; never re-elect
                        request.state = existing.provisioning_state
                        return ProvisioningState(existing.provisioning_state)

                    role, state, seat_code, jurisdiction_level = (
                        requested, ProvisioningState.PROFILE_CREATED, None, level
                    )
                    if requested.single_per_jurisdiction:
                        holder = session.execute(
                            select(AccountProfileDB.id)
                            .where(AccountProfileDB.admin_seat_code == seat)
                        ).scalar_one_or_none()
                        if holder is None:
                            seat_code = seat
                        else:
                            role, state = self._demote(identity_id, seat, holder)
                            jurisdiction_level, _ = self._jurisdiction_for(
                                identity_id, role, code
                            )

                    self.fsm.transition(
                        ProvisioningState(request.state),
                        ProvisioningEvent.PROVISIONING_TRIGGERED,
                        state,
                    )
                    session.add(
                        AccountProfileDB(
                            id=identity_id,
                            email=request.email,
                            first_name=request.first_name,
                            last_name=request.last_name,
                            role_id=role.id,
                            jurisdiction_code=code,
                            jurisdiction_level=jurisdiction_level.value,
                            # A blocked signup ends here as a usable default account
                            is_active=state == ProvisioningState.BLOCKED_DUPLICATE_ADMIN,
                            provisioning_state=state.value,
                            admin_seat_code=seat_code,
                        )
                    )
                    request.state = state.value
                    session.flush()
                    return state
            except IntegrityError:
                logger.info(
                    "Profile insert for %s lost a race (attempt %d/%d); re-reading",
                    identity_id, attempt, ELECTION_ATTEMPTS,
                )
        raise ProvisioningRetryable(identity_id, "profile election kept conflicting")

    def _demote(self, identity_id: str, seat: str, holder: str) -> tuple[Role, ProvisioningState]:
        conflict = DuplicateAdminConflict(seat, holder)
        logger.info(
            "%s; signup %s continues as %s", conflict, identity_id, self.roles.default_role.name
        )
        return self.roles.default_role, ProvisioningState.BLOCKED_DUPLICATE_ADMIN

    def _assign_role(self, identity_id: str) -> ProvisioningState:
        with self.db.session() as session:
            profile = session.get(AccountProfileDB, identity_id)
            request = session.get(SignupRequestDB, identity_id)
            current = ProvisioningState(profile.provisioning_state)
            if current != ProvisioningState.PROFILE_CREATED:
                return current
            if self.roles.get(profile.role_id) is None:
                raise ProvisioningPermanentFailure(
                    identity_id, f"role {profile.role_id} is not defined"
                )
            state = self.fsm.transition(current, ProvisioningEvent.ROLE_RESOLVED)
            profile.is_active = True
            profile.provisioning_state = state.value
            request.state = state.value
            request.last_error = None
            request.next_attempt_at = None
            return state

    def _record_failure(self, identity_id: str, reason: str, permanent: bool = False) -> None:
        """Persist the failure on the signup request; the state is left as reached."""
        try:
            with self.db.session() as session:
                request = session.get(SignupRequestDB, identity_id)
                if request is None:
                    return
                request.attempts = (request.attempts or 0) + 1
                request.last_error = reason[:1000]
                if permanent or request.attempts >= self.max_redrives:
                    request.needs_operator = True
                    request.next_attempt_at = None
                else:
                    delay = self.redrive_base_delay * (2 ** (request.attempts - 1))
                    request.next_attempt_at = self.clock() + timedelta(seconds=delay)
                attempts = request.attempts
                needs_operator = request.needs_operator
        except SQLAlchemyError:
            logger.exception("Could not record provisioning failure for %s", identity_id)
            return
        logger.warning(
            "Provisioning of %s failed (attempt %d, operator=%s): %s",
            identity_id, attempts, needs_operator, reason,
        )

    # ── Account management ─────────────────────────────────────

    def get_profile(self, identity_id: str) -> AccountProfile | None:
        with self.db.session() as session:
            row = session.get(AccountProfileDB, identity_id)
            return AccountProfile.model_validate(row) if row is not None else None

    def deactivate_account(self, identity_id: str) -> AccountProfile:
        """
        Deactivate a profile (never deleted) and free its admin seat.

        Raises:
            KeyError: no profile exists for ``identity_id``.
        """
        with self.db.session() as session:
            row = session.get(AccountProfileDB, identity_id)
            if row is None:
                raise KeyError(identity_id)
            row.is_active = False
            row.admin_seat_code = None
        logger.info("Account deactivated: id=%s", identity_id)
        return self.get_profile(identity_id)

    def admin_holder(self, jurisdiction_code: str) -> AccountProfile | None:
        """The profile currently holding the admin seat for a jurisdiction."""
        with self.db.session() as session:
            row = session.execute(
                select(AccountProfileDB)
                .where(AccountProfileDB.admin_seat_code == jurisdiction_code)
            ).scalar_one_or_none()
            return AccountProfile.model_validate(row) if row is not None else None

    # ── Re-drive bookkeeping ───────────────────────────────────

    def pending_requests(self, limit: int = 100) -> list[str]:
        """Identity ids stuck before a terminal state and due for another attempt."""
        now = self.clock()
        with self.db.session() as session:
            return list(
                session.execute(
                    select(SignupRequestDB.identity_id)
                    .where(SignupRequestDB.state.in_(REDRIVABLE_STATES))
                    .where(SignupRequestDB.needs_operator.is_(False))
                    .where(
                        or_(
                            SignupRequestDB.next_attempt_at.is_(None),
                            SignupRequestDB.next_attempt_at <= now,
                        )
                    )
                    .order_by(SignupRequestDB.updated_at)
                    .limit(limit)
                ).scalars().all()
            )

    def operator_queue(self) -> list[SignupRequestDB]:
        """Signups whose re-drive budget is exhausted or that failed permanently."""
        with self.db.session() as session:
            return list(
                session.execute(
                    select(SignupRequestDB)
                    .where(SignupRequestDB.needs_operator.is_(True))
                    .order_by(SignupRequestDB.updated_at)
                ).scalars().all()
            )

    def release_to_redrive(self, identity_id: str) -> None:
        """Operator action: put a signup back into the automatic re-drive loop."""
        with self.db.session() as session:
            request = session.get(SignupRequestDB, identity_id)
            if request is None:
                raise KeyError(identity_id)
            request.needs_operator = False
            request.attempts = 0
            request.next_attempt_at = None
