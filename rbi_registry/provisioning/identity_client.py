"""
Identity provider admin API client.

Thin wrapper over the provider's admin user endpoint, used to check
whether a freshly created account is visible yet and to read the
metadata attached at signup. The service key comes from settings and is
never embedded in code.

Status mapping:
    200 → account returned
    404 → not visible yet (replication lag)
    410 → account permanently removed
    5xx / transport errors → IdentityProviderError (transient)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from rbi_registry.core.errors import IdentityGone, IdentityProviderError
from rbi_registry.core.schema import AccountIdentity, SignupMetadata

logger = logging.getLogger(__name__)


class IdentityDirectory(Protocol):
    """What provisioning needs from the identity provider."""

    def identity_visible(self, identity_id: str) -> bool:
        ...


@dataclass(frozen=True)
class ProviderAccount:
    identity: AccountIdentity
    metadata: SignupMetadata


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_provider_user(data: dict[str, Any]) -> ProviderAccount:
    """Convert a provider user payload into identity + signup metadata."""
    metadata = data.get("user_metadata") or data.get("raw_user_meta_data") or {}
    return ProviderAccount(
        identity=AccountIdentity(
            id=str(data["id"]),
            email=data.get("email") or "",
            confirmed_at=_parse_timestamp(
                data.get("email_confirmed_at") or data.get("confirmed_at")
            ),
        ),
        metadata=SignupMetadata(
            first_name=metadata.get("first_name") or metadata.get("firstName") or "",
            last_name=metadata.get("last_name") or metadata.get("lastName") or "",
            requested_jurisdiction_code=(
                metadata.get("requested_jurisdiction_code")
                or metadata.get("requestedJurisdictionCode")
                or metadata.get("barangay_code")
            ),
            requested_role=metadata.get("requested_role") or metadata.get("requestedRole"),
        ),
    )


class IdentityProviderClient:
    """
    Synchronous admin client for the identity provider.

    Uses httpx; pass ``transport`` to substitute a mock in tests.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    def _ensure_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def __enter__(self) -> "IdentityProviderClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── Accounts ───────────────────────────────────────────────

    def fetch_account(self, identity_id: str) -> ProviderAccount | None:
        """
        Fetch an account by id.

        Returns:
            The account, or None while it is not visible yet.

        Raises:
            IdentityGone: the provider reports the account as removed.
            IdentityProviderError: transport failure or server error.
        """
        client = self._ensure_client()
        try:
            resp = client.get(f"/auth/v1/admin/users/{identity_id}")
        except httpx.HTTPError as exc:
            raise IdentityProviderError(str(exc)) from exc

        if resp.status_code == 404:
            return None
        if resp.status_code == 410:
            raise IdentityGone(identity_id)
        if resp.status_code >= 400:
            raise IdentityProviderError(
                f"GET user {identity_id} failed with HTTP {resp.status_code}"
            )
        return parse_provider_user(resp.json())

    def identity_visible(self, identity_id: str) -> bool:
        return self.fetch_account(identity_id) is not None
