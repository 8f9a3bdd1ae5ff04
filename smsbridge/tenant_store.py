"""
Tenant store
------------
Durable record per installation (the ``consumers`` collection).

Install lookup order for ``get_or_create``:
  1. active tenant by site id (install id refreshed when it changed),
  2. active tenant by install id,
  3. inactive tenant by site id (reactivated),
  4. new tenant.

Tokens and gateway credentials are read only through ``get_tokens`` and
``get_gateway_credentials``; ``Tenant`` itself never carries them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from smsbridge.config import DEFAULT_TOKEN_TTL_SEC
from smsbridge.datastore import (
    CONNECTOR,
    create_record,
    list_records,
    match_formula,
    update_record,
)
from smsbridge.errors import NotFoundError, ValidationError
from smsbridge.runtime import get_logger, iso, utc_now
from smsbridge.schema import (
    ACTION_KEYS,
    GATEWAY_FIELDS,
    TOKEN_FIELDS,
    ActionMapping,
    GatewayCredentials,
    Tenant,
    TenantTokens,
)

logger = get_logger("tenant_store")


def _tenant(record: Optional[Dict[str, Any]]) -> Optional[Tenant]:
    if not record:
        return None
    raw = dict(record)
    raw["fields"] = {k: v for k, v in (record.get("fields") or {}).items() if k not in TOKEN_FIELDS + GATEWAY_FIELDS}
    return Tenant.from_record(raw)


def _is_active(record: Dict[str, Any]) -> bool:
    value = (record.get("fields") or {}).get("is_active")
    return value is True or str(value).lower() in ("true", "1", "yes")


class TenantStore:
    def __init__(self, connector=CONNECTOR) -> None:
        self._connector = connector

    @property
    def _handle(self):
        return self._connector.consumers()

    # ---------------------------------------------------------------- lookups
    def _records_for(self, **match: Any) -> List[Dict[str, Any]]:
        return list_records(self._handle, formula=match_formula(**match))

    def _record_by_install(self, install_id: str) -> Optional[Dict[str, Any]]:
        records = self._records_for(install_id=install_id)
        active = [r for r in records if _is_active(r)]
        return (active or records or [None])[0]

    def _require_record(self, install_id: str) -> Dict[str, Any]:
        record = self._record_by_install(install_id)
        if not record:
            raise NotFoundError(f"Unknown installation {install_id}")
        return record

    def get(self, install_id: str) -> Optional[Tenant]:
        if not install_id:
            return None
        return _tenant(self._record_by_install(install_id))

    def require(self, install_id: str) -> Tenant:
        tenant = self.get(install_id)
        if tenant is None:
            raise NotFoundError(f"Unknown installation {install_id}")
        return tenant

    def find_active_by_site(self, site_id: str) -> Optional[Tenant]:
        for record in self._records_for(site_id=site_id):
            if _is_active(record):
                return _tenant(record)
        return None

    def list_active(self) -> List[Tenant]:
        return [t for t in (_tenant(r) for r in list_records(self._handle) if _is_active(r)) if t]

    # -------------------------------------------------------------- lifecycle
    def get_or_create(self, install_id: str, site_id: str, site_name: Optional[str] = None) -> Tenant:
        if not install_id or not site_id:
            raise ValidationError("installId and siteId are required")

        by_site = self._records_for(site_id=site_id)
        active_site = [r for r in by_site if _is_active(r)]
        if active_site:
            record = active_site[0]
            for extra in active_site[1:]:
                logger.warning("Deactivating duplicate active tenant %s for site %s", extra["id"], site_id)
                update_record(self._handle, extra["id"], {"is_active": False})
            updates: Dict[str, Any] = {}
            if record["fields"].get("install_id") != install_id:
                logger.info("Install id changed for site %s: %s -> %s", site_id, record["fields"].get("install_id"), install_id)
                updates["install_id"] = install_id
            if site_name and record["fields"].get("site_name") != site_name:
                updates["site_name"] = site_name
            if updates:
                record = update_record(self._handle, record["id"], updates)
            return _tenant(record)  # type: ignore[return-value]

        by_install = self._records_for(install_id=install_id)
        active_install = [r for r in by_install if _is_active(r)]
        if active_install:
            record = update_record(self._handle, active_install[0]["id"], {"site_id": site_id, "site_name": site_name})
            return _tenant(record)  # type: ignore[return-value]

        if by_site:
            record = update_record(
                self._handle,
                by_site[0]["id"],
                {
                    "install_id": install_id,
                    "site_name": site_name or by_site[0]["fields"].get("site_name"),
                    "is_active": True,
                    "installed_at": iso(utc_now()),
                    "uninstalled_at": None,
                },
            )
            logger.info("Reactivated tenant for site %s (install %s)", site_id, install_id)
            return _tenant(record)  # type: ignore[return-value]

        tenant = Tenant(
            install_id=install_id,
            site_id=site_id,
            site_name=site_name,
            is_active=True,
            installed_at=utc_now(),
        )
        record = create_record(self._handle, tenant.to_fields())
        logger.info("Created tenant for site %s (install %s)", site_id, install_id)
        return _tenant(record)  # type: ignore[return-value]

    def deactivate(self, install_id: str) -> Tenant:
        record = self._require_record(install_id)
        record = update_record(
            self._handle,
            record["id"],
            {
                "is_active": False,
                "uninstalled_at": iso(utc_now()),
                "oauth_token": None,
                "oauth_refresh_token": None,
                "oauth_expires_at": None,
            },
        )
        logger.info("Tenant %s deactivated", install_id)
        return _tenant(record)  # type: ignore[return-value]

    # ------------------------------------------------------------------ tokens
    def get_tokens(self, install_id: str) -> TenantTokens:
        record = self._require_record(install_id)
        return TenantTokens.from_fields(install_id, record.get("fields") or {})

    def save_tokens(
        self,
        install_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: Optional[int],
        token_type: Optional[str] = "Bearer",
        now: Optional[datetime] = None,
    ) -> TenantTokens:
        record = self._require_record(install_id)
        expires_at = (now or utc_now()) + timedelta(seconds=int(expires_in or DEFAULT_TOKEN_TTL_SEC))
        updates: Dict[str, Any] = {
            "oauth_token": access_token,
            "oauth_expires_at": iso(expires_at),
            "oauth_token_type": token_type or "Bearer",
        }
        if refresh_token:
            updates["oauth_refresh_token"] = refresh_token
        record = update_record(self._handle, record["id"], updates)
        return TenantTokens.from_fields(install_id, record.get("fields") or {})

    def clear_tokens(self, install_id: str) -> None:
        record = self._require_record(install_id)
        update_record(
            self._handle,
            record["id"],
            {"oauth_token": None, "oauth_refresh_token": None, "oauth_expires_at": None, "api_base_url": None},
        )

    def save_base_url(self, install_id: str, base_url: Optional[str]) -> None:
        record = self._require_record(install_id)
        update_record(self._handle, record["id"], {"api_base_url": base_url})

    # ----------------------------------------------------------- configuration
    def get_gateway_credentials(self, install_id: str) -> Optional[GatewayCredentials]:
        fields = self._require_record(install_id).get("fields") or {}
        key, secret = fields.get("transmitsms_api_key"), fields.get("transmitsms_api_secret")
        if not key or not secret:
            return None
        return GatewayCredentials(api_key=key, api_secret=secret)

    def save_configuration(
        self,
        install_id: str,
        *,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        default_country: Optional[str] = None,
        actions: Optional[Dict[str, Dict[str, Any]]] = None,
        callbacks: Optional[Dict[str, Optional[str]]] = None,
    ) -> Tenant:
        record = self._require_record(install_id)
        updates: Dict[str, Any] = {"configured_at": iso(utc_now())}
        if api_key:
            updates["transmitsms_api_key"] = api_key.strip()
        if api_secret:
            updates["transmitsms_api_secret"] = api_secret.strip()
        if default_country:
            updates["default_country"] = default_country
        if actions is not None:
            current = Tenant.from_record({"fields": {"actions": record["fields"].get("actions")}}).actions or {}
            for key, value in actions.items():
                if key not in ACTION_KEYS:
                    raise ValidationError(f"Unknown action mapping '{key}'")
                current[key] = ActionMapping.from_dict(value).to_dict()
            updates["actions"] = Tenant.encode("actions", current)
        for name, value in (callbacks or {}).items():
            if name in ("dlr_callback", "reply_callback", "link_hits_callback"):
                updates[name] = value
        record = update_record(self._handle, record["id"], updates)
        return _tenant(record)  # type: ignore[return-value]

    def mark_synced(self, install_id: str) -> None:
        record = self._require_record(install_id)
        update_record(self._handle, record["id"], {"last_synced_at": iso(utc_now())})


TENANTS = TenantStore()
