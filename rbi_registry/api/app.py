"""
Registry API — identity-provider webhooks and the authorization gate.

FastAPI application providing:
- Identity webhooks (account.created, account.confirmed) that record the
  signup and trigger provisioning once the email is confirmed
- Authorization endpoint for the resident/household CRUD layer
- Scope lookup (resolved scope + accessible barangay codes)
- Health check

Authorization decisions are logged here; the evaluator itself stays silent.
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from rbi_registry.config import settings
from rbi_registry.core.errors import (
    ProvisioningPermanentFailure,
    ProvisioningRetryable,
    UnresolvedJurisdiction,
)
from rbi_registry.core.schema import GeoLevel, JurisdictionRecord, Operation
from rbi_registry.provisioning.identity_client import parse_provider_user

logger = logging.getLogger(__name__)


# ── Pydantic request / response models ────────────────────────


class IdentityEvent(BaseModel):
    type: str  # "account.created" | "account.confirmed"
    record: dict[str, Any]


class AuthorizeRequest(BaseModel):
    profile_id: str
    operation: Operation
    record: JurisdictionRecord


class RegistryState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.db: Any = None
        self.store: Any = None
        self.resolver: Any = None
        self.evaluator: Any = None
        self.provisioning: Any = None
        self.queue: Any = None
        self.identity_client: Any = None
        self.webhook_secret: str | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)


state = RegistryState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services from settings unless they were injected beforehand."""
    from rbi_registry.access.jurisdiction import JurisdictionResolver
    from rbi_registry.access.policy import PolicyEvaluator
    from rbi_registry.core.roles import RoleCatalog
    from rbi_registry.geography.hierarchy import HierarchyStore
    from rbi_registry.provisioning.backoff import BackoffPolicy
    from rbi_registry.provisioning.identity_client import IdentityProviderClient
    from rbi_registry.provisioning.queue import ProvisioningQueue
    from rbi_registry.provisioning.service import ProvisioningService
    from rbi_registry.store.database import Database

    owned_client = False
    if state.db is None:
        state.db = Database(settings.database_url_sync)
        state.db.initialize()
        logger.info("Registry API connected to database")
    roles = RoleCatalog(default_role_name=settings.default_role_name)
    if state.store is None:
        state.store = HierarchyStore(state.db)
    if state.resolver is None:
        state.resolver = JurisdictionResolver(state.store)
    if state.evaluator is None:
        state.evaluator = PolicyEvaluator(state.resolver, roles)
    if state.provisioning is None:
        if state.identity_client is None:
            state.identity_client = IdentityProviderClient(
                settings.identity_provider_url,
                settings.identity_service_key,
                timeout=settings.identity_timeout_seconds,
            )
            owned_client = True
        state.provisioning = ProvisioningService(
            state.db,
            state.store,
            state.identity_client,
            roles=roles,
            backoff=BackoffPolicy.from_settings(settings),
            max_redrives=settings.provisioning_max_redrives,
            redrive_base_delay=settings.redrive_base_delay_seconds,
        )
    if state.queue is None:
        state.queue = ProvisioningQueue(
            state.provisioning,
            max_redrives=settings.provisioning_max_redrives,
            base_delay=settings.redrive_base_delay_seconds,
        )
    if state.webhook_secret is None:
        state.webhook_secret = settings.webhook_secret
    if not state.webhook_secret:
        logger.warning("No webhook secret configured; identity webhooks are unauthenticated")

    yield

    if owned_client:
        state.identity_client.close()
    logger.info("Registry API shut down")


app = FastAPI(
    title="RBI Registry — Identity & Access",
    description="Jurisdiction-scoped provisioning and authorization for the civil registry",
    version="0.1.0",
    lifespan=lifespan,
)


def _check_secret(supplied: str | None) -> None:
    if not state.webhook_secret:
        return
    if supplied is None or not hmac.compare_digest(supplied, state.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


# ── Routes: Identity webhooks ─────────────────────────────────


@app.post("/webhooks/identity")
def identity_webhook(
    event: IdentityEvent,
    x_webhook_secret: str | None = Header(default=None),
):
    """
    Receive an identity-provider lifecycle event.

    Re-delivered events are harmless. Provisioning runs only once the
    identity is confirmed; a retryable failure is queued for re-drive and
    still answered with 202 so the provider does not hammer us.
    """
    _check_secret(x_webhook_secret)
    if event.type not in ("account.created", "account.confirmed"):
        raise HTTPException(status_code=400, detail=f"Unsupported event type {event.type!r}")

    try:
        account = parse_provider_user(event.record)
    except (KeyError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Malformed account record: {exc}")

    try:
        signup_state = state.provisioning.register_signup(account.identity, account.metadata)
        if event.type == "account.confirmed" and account.identity.confirmed_at is None:
            signup_state = state.provisioning.confirm_identity(account.identity.id)
    except ProvisioningPermanentFailure as exc:
        logger.warning("Signup %s rejected: %s", exc.identity_id, exc.reason)
        raise HTTPException(status_code=422, detail=exc.reason)

    if signup_state.value == "pending_confirmation":
        return JSONResponse(
            {"status": "registered", "state": signup_state.value}, status_code=202
        )

    outcome = state.queue.drive(account.identity.id)
    body = {"status": outcome.status.value, "reason": outcome.reason}
    if outcome.profile is not None:
        body["state"] = outcome.profile.provisioning_state.value
        body["role_id"] = outcome.profile.role_id
        return JSONResponse(body)
    return JSONResponse(body, status_code=202)


@app.post("/provisioning/{identity_id}/retry")
def retry_provisioning(identity_id: str):
    """Operator action: drive one signup immediately."""
    try:
        profile = state.provisioning.provision(identity_id)
    except ProvisioningPermanentFailure as exc:
        raise HTTPException(status_code=422, detail=exc.reason)
    except ProvisioningRetryable as exc:
        state.queue.submit(identity_id, delay=state.queue.base_delay)
        return JSONResponse({"status": "requeued", "reason": exc.reason}, status_code=202)
    return JSONResponse({"status": "provisioned", "state": profile.provisioning_state.value})


# ── Routes: Authorization ─────────────────────────────────────


@app.post("/authorize")
def authorize(req: AuthorizeRequest):
    """Gate one read or write on a jurisdiction-tagged record."""
    profile = state.provisioning.get_profile(req.profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"No profile {req.profile_id}")

    try:
        decision = state.evaluator.authorize(profile, req.operation, req.record)
    except UnresolvedJurisdiction as exc:
        logger.error("Authorization for %s failed: %s", profile.id, exc)
        raise HTTPException(status_code=409, detail=str(exc))

    if decision.is_allowed:
        logger.info(
            "ALLOW %s %s %s %s",
            profile.id, req.operation.value, req.record.entity_type, req.record.geo_code,
        )
        scope = decision.scope
        return JSONResponse({
            "allowed": True,
            "scope": {"level": scope.level.value, "code": scope.code} if scope else None,
        })

    logger.info(
        "DENY %s %s %s %s: %s",
        profile.id, req.operation.value, req.record.entity_type, req.record.geo_code,
        decision.reason.value,
    )
    return JSONResponse(
        {"allowed": False, "reason": decision.reason.value, "detail": decision.detail},
        status_code=403,
    )


@app.get("/profiles/{profile_id}/scope")
def profile_scope(profile_id: str, level: GeoLevel = GeoLevel.BARANGAY):
    """Resolved scope of a profile and the live codes it covers at ``level``."""
    profile = state.provisioning.get_profile(profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"No profile {profile_id}")
    try:
        scope = state.resolver.resolve_scope(profile)
    except UnresolvedJurisdiction as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return JSONResponse({
        "level": scope.level.value,
        "code": scope.code,
        "codes": state.resolver.accessible_codes(scope, level),
    })


# ── Health ─────────────────────────────────────────────────────


@app.get("/health")
async def health():
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "database_available": state.db is not None,
        "queued_signups": len(state.queue) if state.queue is not None else 0,
        "operator_queue": len(state.queue.operator_queue) if state.queue is not None else 0,
    })
