"""
Platform (Eloqua) REST and Bulk API client
------------------------------------------
Thin async wrapper. Authentication is delegated to the TokenManager:

* 401: one forced refresh then one retry; a second 401 raises ReauthRequired.
* 429 / 5xx / transport errors: retried with capped exponential backoff.
* any other 4xx: PlatformError, never retried.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from smsbridge.config import Settings, settings
from smsbridge.errors import PlatformError, ReauthRequired
from smsbridge.runtime import epoch_ms, get_logger, retry_async
from smsbridge.schema import StepKind
from smsbridge.token_manager import PlatformSession, TokenManager

logger = get_logger("platform_client")

REST = "/api/REST/2.0"
BULK = "/api/bulk/2.0"
CLOUD = "/api/cloud/1.0"

_INSTANCE_PATHS = {
    StepKind.ACTION: "actions",
    StepKind.DECISION: "decisions",
    StepKind.FEEDER: "feeders",
}

CONTACT_IMPORT_FIELDS = {
    "ContactID": "{{Contact.Id}}",
    "EmailAddress": "{{Contact.Field(C_EmailAddress)}}",
}


def compact_id(instance_id: str) -> str:
    """Instance ids appear without dashes inside Platform markup."""
    return (instance_id or "").replace("-", "")


def decision_import_definition(instance_id: str, verdict: str, now_ms: Optional[int] = None) -> Dict[str, Any]:
    ident = compact_id(instance_id)
    return {
        "name": f"SMS_Decision_{ident}_{verdict}_{now_ms if now_ms is not None else epoch_ms()}",
        "fields": dict(CONTACT_IMPORT_FIELDS),
        "identifierFieldName": "EmailAddress",
        "isSyncTriggeredOnImport": False,
        "dataRetentionDuration": "P7D",
        "syncActions": [
            {
                "destination": f"{{{{DecisionInstance({ident})}}}}",
                "action": "setDecision",
                "value": verdict,
            }
        ],
    }


def action_import_definition(
    instance_id: str, execution_id: str, outcome: str, now_ms: Optional[int] = None
) -> Dict[str, Any]:
    ident = compact_id(instance_id)
    return {
        "name": f"SMS_Action_{ident}_{outcome}_{now_ms if now_ms is not None else epoch_ms()}",
        "fields": dict(CONTACT_IMPORT_FIELDS),
        "identifierFieldName": "EmailAddress",
        "isSyncTriggeredOnImport": False,
        "dataRetentionDuration": "P7D",
        "syncActions": [
            {
                "destination": f"{{{{ActionInstance({ident}).Execution[{execution_id}]}}}}",
                "action": "setStatus",
                "value": outcome,
            }
        ],
    }


def import_rows(entries: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for entry in entries:
        rows.append(
            {
                "ContactID": entry.get("contactId") or entry.get("ContactID") or "",
                "EmailAddress": entry.get("emailAddress") or entry.get("EmailAddress") or "",
            }
        )
    return rows


def field_values(values: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """``{field_id: value}`` -> Platform ``fieldValues`` list."""
    return [{"id": str(fid), "value": "" if v is None else str(v)} for fid, v in values.items() if fid]


class PlatformClient:
    def __init__(
        self,
        install_id: str,
        tokens: TokenManager,
        *,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.install_id = install_id
        self._tokens = tokens
        self._config = config
        self._transport = transport

    @property
    def config(self) -> Settings:
        return self._config or settings()

    # ---------------------------------------------------------------- transport
    async def _send(self, session: PlatformSession, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = path if path.startswith("http") else f"{session.base_url}{path}"
        headers = dict(session.headers)
        headers.update(kwargs.pop("headers", {}) or {})
        async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SEC, transport=self._transport) as client:
            try:
                return await client.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as exc:
                raise PlatformError(f"{method} {path} failed: {exc}", payload=kwargs.get("json")) from exc

    async def _attempt(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            session = await self._tokens.bind_client(self.install_id)
        except PlatformError as exc:
            if exc.status_code != 401:
                raise
            session = await self._tokens.bind_client(self.install_id, force_refresh=True)
        resp = await self._send(session, method, path, **dict(kwargs))
        if resp.status_code == 401:
            logger.info("401 from %s %s for %s; forcing token refresh", method, path, self.install_id)
            session = await self._tokens.bind_client(self.install_id, force_refresh=True)
            resp = await self._send(session, method, path, **dict(kwargs))
            if resp.status_code == 401:
                raise ReauthRequired(self.install_id, "Platform rejected refreshed token")
        if resp.status_code >= 400:
            raise PlatformError(
                f"Platform HTTP {resp.status_code} on {method} {path}",
                status_code=resp.status_code,
                body=_body(resp),
                payload=kwargs.get("json"),
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return _body(resp)

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        cfg = self.config
        return await retry_async(
            lambda: self._attempt(method, path, **kwargs),
            retries=max(0, cfg.PLATFORM_MAX_ATTEMPTS - 1),
            base_delay=cfg.PLATFORM_BACKOFF_BASE_SEC,
            max_delay=cfg.PLATFORM_BACKOFF_CAP_SEC,
            exceptions=(PlatformError,),
            should_retry=lambda exc: isinstance(exc, PlatformError) and exc.transient,
            logger=logger,
        )

    # ------------------------------------------------------------ custom objects
    async def list_custom_objects(self, search: str = "", count: int = 50, page: int = 1) -> Dict[str, Any]:
        params: Dict[str, Any] = {"count": count, "page": page, "depth": "minimal"}
        if search:
            params["search"] = f"name='*{search}*'"
        return await self.request("GET", f"{REST}/assets/customObjects", params=params) or {}

    async def get_custom_object(self, custom_object_id: str) -> Dict[str, Any]:
        return await self.request(
            "GET", f"{REST}/assets/customObject/{custom_object_id}", params={"depth": "complete"}
        ) or {}

    async def create_custom_object_record(self, custom_object_id: str, values: Mapping[str, Any]) -> Dict[str, Any]:
        body = {"fieldValues": field_values(values)}
        return await self.request("POST", f"{REST}/data/customObject/{custom_object_id}/instance", json=body) or {}

    async def update_custom_object_record(
        self, custom_object_id: str, record_id: str, values: Mapping[str, Any]
    ) -> Dict[str, Any]:
        body = {"id": record_id, "fieldValues": field_values(values)}
        return await self.request(
            "PUT", f"{REST}/data/customObject/{custom_object_id}/instance/{record_id}", json=body
        ) or {}

    async def delete_custom_object_record(self, custom_object_id: str, record_id: str) -> None:
        await self.request("DELETE", f"{REST}/data/customObject/{custom_object_id}/instance/{record_id}")

    # ------------------------------------------------------------------ contacts
    async def list_contact_fields(self, count: int = 200) -> Dict[str, Any]:
        return await self.request(
            "GET", f"{REST}/assets/contact/fields", params={"count": count, "depth": "minimal"}
        ) or {}

    async def get_contact(self, contact_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"{REST}/data/contact/{contact_id}") or {}

    async def update_contact(self, contact_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("PUT", f"{REST}/data/contact/{contact_id}", json=dict(data)) or {}

    # ----------------------------------------------------------------- campaigns
    async def list_campaigns(self, search: str = "", count: int = 50) -> Dict[str, Any]:
        params: Dict[str, Any] = {"count": count, "depth": "minimal"}
        if search:
            params["search"] = f"name='*{search}*'"
        return await self.request("GET", f"{REST}/assets/campaigns", params=params) or {}

    async def get_campaign(self, campaign_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"{REST}/assets/campaign/{campaign_id}") or {}

    # ------------------------------------------------------------- bulk imports
    async def create_contact_import(self, definition: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", f"{BULK}/contacts/imports", json=dict(definition)) or {}

    async def upload_import_data(self, import_uri: str, rows: List[Dict[str, Any]]) -> None:
        await self.request("POST", f"{BULK}{import_uri}/data", json=rows)

    async def create_sync(self, import_uri: str) -> Dict[str, Any]:
        return await self.request("POST", f"{BULK}/syncs", json={"syncedInstanceUri": import_uri}) or {}

    async def get_sync(self, sync_uri: str) -> Dict[str, Any]:
        return await self.request("GET", f"{BULK}{sync_uri}") or {}

    async def import_contacts(self, definition: Mapping[str, Any], rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Create import, upload rows, trigger sync. Returns the sync resource."""
        created = await self.create_contact_import(definition)
        uri = created.get("uri")
        if not uri:
            raise PlatformError("Import definition returned no uri", body=created, payload=dict(definition))
        await self.upload_import_data(uri, rows)
        sync = await self.create_sync(uri)
        logger.info("Import %s synced %s rows (%s)", definition.get("name"), len(rows), sync.get("uri"))
        return sync

    async def sync_decision(self, instance_id: str, verdict: str, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self.import_contacts(decision_import_definition(instance_id, verdict), rows)

    async def sync_action_outcome(
        self, instance_id: str, execution_id: str, outcome: str, entries: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """One `setStatus` import moving ``entries`` to ``outcome`` (complete or errored)."""
        definition = action_import_definition(instance_id, execution_id, outcome)
        return await self.import_contacts(definition, import_rows(entries))

    # ---------------------------------------------------------- step instances
    async def update_instance(
        self,
        kind: StepKind,
        instance_id: str,
        record_definition: Mapping[str, str],
        requires_configuration: bool = False,
    ) -> Any:
        body = {
            "recordDefinition": dict(record_definition),
            "requiresConfiguration": bool(requires_configuration),
        }
        return await self.request("PUT", f"{CLOUD}/{_INSTANCE_PATHS[kind]}/instances/{instance_id}", json=body)


def _body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()
