"""
OAuth session manager
---------------------
Obtains, caches, refreshes and revokes Platform tokens per tenant.

* Refresh is single-flight per install id: the first caller performs the
  network refresh, concurrent callers await the same future.
* The first call made with a new access token discovers the tenant's
  regional API base URL from ``/id`` and caches it for that token.
* A missing refresh token, or a refresh the Platform rejects, surfaces as
  ``ReauthRequired`` carrying the re-authorization URL.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from smsbridge.config import DEFAULT_TOKEN_TTL_SEC, OAUTH_SCOPE, Settings, settings
from smsbridge.datastore import run_io
from smsbridge.errors import PlatformError, ReauthRequired
from smsbridge.runtime import get_logger, mask_value, utc_now
from smsbridge.schema import TenantTokens
from smsbridge.tenant_store import TENANTS, TenantStore

logger = get_logger("token_manager")


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    token_type: str = "Bearer"

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        access = data.get("access_token")
        if not access:
            raise PlatformError("Token response missing access_token", body=data)
        try:
            expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SEC)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL_SEC
        return cls(
            access_token=access,
            refresh_token=data.get("refresh_token") or None,
            expires_in=expires_in,
            token_type=data.get("token_type") or "Bearer",
        )


@dataclass(frozen=True)
class PlatformSession:
    """Authenticated binding of one tenant to its regional API host."""

    install_id: str
    access_token: str
    token_type: str
    base_url: str

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"{self.token_type or 'Bearer'} {self.access_token}",
            "Accept": "application/json",
        }


def _error_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


class TokenManager:
    def __init__(
        self,
        tenants: TenantStore = TENANTS,
        *,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tenants = tenants
        self._config = config
        self._transport = transport
        self._clock = clock
        self._inflight: Dict[str, asyncio.Future] = {}
        self._base_urls: Dict[str, Tuple[str, str]] = {}

    @property
    def config(self) -> Settings:
        return self._config or settings()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SEC, transport=self._transport)

    # ------------------------------------------------------------ authorization
    def redirect_uri(self, install_id: str) -> str:
        return f"{self.config.APP_BASE_URL}/eloqua/app/oauth/callback/{install_id}"

    def authorize_url(self, install_id: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.ELOQUA_CLIENT_ID or "",
            "redirect_uri": self.redirect_uri(install_id),
            "scope": OAUTH_SCOPE,
            "state": install_id,
        }
        return f"{self.config.ELOQUA_AUTHORIZE_URL}?{urlencode(params)}"

    async def _token_request(self, form: Dict[str, str]) -> TokenSet:
        cfg = self.config
        auth = httpx.BasicAuth(cfg.ELOQUA_CLIENT_ID or "", cfg.ELOQUA_CLIENT_SECRET or "")
        async with self._client() as client:
            try:
                resp = await client.post(
                    cfg.ELOQUA_TOKEN_URL,
                    data=form,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                raise PlatformError(f"Token endpoint unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise PlatformError(
                f"Token endpoint HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=_error_body(resp),
                payload={"grant_type": form.get("grant_type")},
            )
        return TokenSet.from_response(resp.json())

    async def exchange_code(self, code: str, install_id: str) -> TokenSet:
        """Trade an authorization code; the redirect URI must match the authorize call."""
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri(install_id),
            }
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": OAUTH_SCOPE,
            }
        )

    async def revoke(self, token: Optional[str]) -> bool:
        if not token:
            return False
        cfg = self.config
        auth = httpx.BasicAuth(cfg.ELOQUA_CLIENT_ID or "", cfg.ELOQUA_CLIENT_SECRET or "")
        try:
            async with self._client() as client:
                resp = await client.post(cfg.ELOQUA_REVOKE_URL, data={"token": token}, auth=auth)
        except httpx.HTTPError as exc:
            logger.warning("Token revoke failed: %s", exc)
            return False
        if resp.status_code >= 400:
            logger.warning("Token revoke rejected (HTTP %s)", resp.status_code)
            return False
        return True

    async def complete_authorization(self, code: str, install_id: str) -> PlatformSession:
        """Exchange ``code``, persist the tokens and discover the API host."""
        token_set = await self.exchange_code(code, install_id)
        tokens = await run_io(
            self._tenants.save_tokens,
            install_id,
            token_set.access_token,
            token_set.refresh_token,
            token_set.expires_in,
            token_set.token_type,
            self._clock(),
        )
        logger.info("OAuth tokens stored for %s (access=%s)", install_id, mask_value(tokens.access_token))
        return await self._session(install_id, tokens)

    # -------------------------------------------------------------- sessions
    def _needs_refresh(self, tokens: TenantTokens) -> bool:
        if not tokens.access_token or tokens.expires_at is None:
            return True
        skew = timedelta(seconds=self.config.TOKEN_REFRESH_SKEW_SEC)
        return tokens.expires_at - skew <= self._clock()

    async def bind_client(self, install_id: str, *, force_refresh: bool = False) -> PlatformSession:
        """Return a session with a fresh token, refreshing first when needed."""
        tokens = await run_io(self._tenants.get_tokens, install_id)
        if force_refresh or self._needs_refresh(tokens):
            if not tokens.refresh_token:
                raise ReauthRequired(install_id, "No refresh token available")
            tokens = await self._refresh_single_flight(install_id, tokens.access_token)
        return await self._session(install_id, tokens)

    async def _refresh_single_flight(self, install_id: str, stale_token: Optional[str]) -> TenantTokens:
        pending = self._inflight.get(install_id)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[install_id] = future
        try:
            tokens = await self._refresh_tenant(install_id, stale_token)
        except ReauthRequired as exc:
            future.set_exception(exc)
            raise
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            logger.error("Token refresh failed for %s: %s", install_id, exc)
            err = ReauthRequired(install_id, f"Token refresh failed: {exc}")
            future.set_exception(err)
            raise err from exc
        else:
            future.set_result(tokens)
            return tokens
        finally:
            self._inflight.pop(install_id, None)
            if future.done() and not future.cancelled():
                future.exception()  # mark retrieved when nobody else awaited

    async def _refresh_tenant(self, install_id: str, stale_token: Optional[str]) -> TenantTokens:
        current = await run_io(self._tenants.get_tokens, install_id)
        if current.access_token and current.access_token != stale_token and not self._needs_refresh(current):
            return current
        if not current.refresh_token:
            raise ReauthRequired(install_id, "No refresh token available")

        logger.info("Refreshing Platform token for %s", install_id)
        token_set = await self.refresh(current.refresh_token)
        tokens = await run_io(
            self._tenants.save_tokens,
            install_id,
            token_set.access_token,
            token_set.refresh_token or current.refresh_token,
            token_set.expires_in,
            token_set.token_type,
            self._clock(),
        )
        self._base_urls.pop(install_id, None)
        return tokens

    async def _session(self, install_id: str, tokens: TenantTokens) -> PlatformSession:
        if not tokens.access_token:
            raise ReauthRequired(install_id, "No access token available")
        base_url = await self._base_url(install_id, tokens)
        return PlatformSession(
            install_id=install_id,
            access_token=tokens.access_token,
            token_type=tokens.token_type,
            base_url=base_url,
        )

    async def _base_url(self, install_id: str, tokens: TenantTokens) -> str:
        cached = self._base_urls.get(install_id)
        if cached and cached[0] == tokens.access_token:
            return cached[1]

        headers = {"Authorization": f"{tokens.token_type} {tokens.access_token}", "Accept": "application/json"}
        async with self._client() as client:
            try:
                resp = await client.get(self.config.ELOQUA_ID_URL, headers=headers)
            except httpx.HTTPError as exc:
                raise PlatformError(f"Base URL discovery failed: {exc}") from exc
        if resp.status_code >= 400:
            raise PlatformError(
                f"Base URL discovery HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=_error_body(resp),
            )
        base_url = ((resp.json() or {}).get("urls") or {}).get("base")
        if not base_url:
            raise PlatformError("Base URL discovery returned no urls.base", body=resp.json())
        base_url = str(base_url).rstrip("/")
        self._base_urls[install_id] = (tokens.access_token or "", base_url)
        await run_io(self._tenants.save_base_url, install_id, base_url)
        logger.info("Discovered API base %s for %s", base_url, install_id)
        return base_url

    def forget(self, install_id: str) -> None:
        self._base_urls.pop(install_id, None)
