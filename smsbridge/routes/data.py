"""
Lookup endpoints used by the configuration screens.

Every path carries ``{install_id}/{site_id}``; the pair must match an active
installation before any Platform or gateway call is made.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from smsbridge.datastore import run_io
from smsbridge.errors import ValidationError
from smsbridge.phone import PhoneFormatError, format_phone
from smsbridge.routes.common import get_ctx, param, parse_body
from smsbridge.runtime import get_logger
from smsbridge.schema import Tenant

logger = get_logger("routes.data")

MAX_PAGE_SIZE = 200


async def site_tenant(request: Request, install_id: str, site_id: str) -> Tenant:
    tenant = await run_io(get_ctx(request).tenants.require, install_id)
    if str(tenant.site_id) != str(site_id):
        logger.warning("Site mismatch for %s: %s != %s", install_id, site_id, tenant.site_id)
        raise HTTPException(status_code=403, detail="Site does not match installation")
    return tenant


def _count(request: Request, default: int) -> int:
    raw = request.query_params.get("count") or default
    try:
        return max(1, min(MAX_PAGE_SIZE, int(raw)))
    except ValueError:
        raise ValidationError(f"count must be a number, got {raw!r}")


def add_data_routes(router: APIRouter) -> None:
    # ----------------------------------------------------------- custom objects
    @router.get("/customobjects/{install_id}/{site_id}/customObject")
    async def custom_objects(install_id: str, site_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        page = request.query_params.get("page") or "1"
        if not page.isdigit():
            raise ValidationError("page must be a positive number")
        return await get_ctx(request).platform(install_id).list_custom_objects(
            search=request.query_params.get("search", ""), count=_count(request, 50), page=int(page)
        )

    @router.get("/customobject/{install_id}/{site_id}/{custom_object_id}")
    async def custom_object(install_id: str, site_id: str, custom_object_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        return await get_ctx(request).platform(install_id).get_custom_object(custom_object_id)

    @router.post("/customobject/{install_id}/{site_id}/{custom_object_id}/instance")
    async def create_record(install_id: str, site_id: str, custom_object_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        values = await _field_values(request)
        return await get_ctx(request).platform(install_id).create_custom_object_record(custom_object_id, values)

    @router.put("/customobject/{install_id}/{site_id}/{custom_object_id}/instance/{record_id}")
    async def update_record(install_id: str, site_id: str, custom_object_id: str, record_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        values = await _field_values(request)
        return await get_ctx(request).platform(install_id).update_custom_object_record(
            custom_object_id, record_id, values
        )

    @router.delete("/customobject/{install_id}/{site_id}/{custom_object_id}/instance/{record_id}")
    async def delete_record(install_id: str, site_id: str, custom_object_id: str, record_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        await get_ctx(request).platform(install_id).delete_custom_object_record(custom_object_id, record_id)
        return {"success": True, "customObjectId": custom_object_id, "recordId": record_id}

    # ----------------------------------------------------------------- contacts
    @router.get("/contactfields/{install_id}/{site_id}")
    async def contact_fields(install_id: str, site_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        return await get_ctx(request).platform(install_id).list_contact_fields(count=_count(request, MAX_PAGE_SIZE))

    @router.get("/contact/{install_id}/{site_id}/{contact_id}")
    async def contact(install_id: str, site_id: str, contact_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        return await get_ctx(request).platform(install_id).get_contact(contact_id)

    @router.put("/contact/{install_id}/{site_id}/{contact_id}")
    async def update_contact(install_id: str, site_id: str, contact_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        body = await parse_body(request)
        if not body:
            raise ValidationError("Contact update body is empty")
        return await get_ctx(request).platform(install_id).update_contact(contact_id, body)

    # ---------------------------------------------------------------- campaigns
    @router.get("/campaigns/{install_id}/{site_id}")
    async def campaigns(install_id: str, site_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        return await get_ctx(request).platform(install_id).list_campaigns(
            search=request.query_params.get("search", ""), count=_count(request, 50)
        )

    @router.get("/campaign/{install_id}/{site_id}/{campaign_id}")
    async def campaign(install_id: str, site_id: str, campaign_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        return await get_ctx(request).platform(install_id).get_campaign(campaign_id)

    # ------------------------------------------------------------------ gateway
    @router.get("/sender-ids/{install_id}/{site_id}")
    async def sender_ids(install_id: str, site_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        gateway = await _gateway(request, install_id)
        return {"senderIds": await gateway.get_sender_ids()}

    @router.get("/balance/{install_id}/{site_id}")
    async def balance(install_id: str, site_id: str, request: Request):
        await site_tenant(request, install_id, site_id)
        gateway = await _gateway(request, install_id)
        return await gateway.get_balance()

    @router.post("/testsms/{install_id}/{site_id}/{country}/{phone}")
    async def test_sms(install_id: str, site_id: str, country: str, phone: str, request: Request):
        """Send one message straight through the gateway, outside any campaign."""
        await site_tenant(request, install_id, site_id)
        body = await parse_body(request)
        try:
            to = format_phone(phone, country)
        except PhoneFormatError as exc:
            raise ValidationError(str(exc))
        gateway = await _gateway(request, install_id)
        sent = await gateway.send_sms(
            to,
            param(request, "message", body=body) or "",
            sender=param(request, "caller_id", body=body, required=False),
            tracked_link_url=param(request, "tracked_link_url", body=body, required=False),
        )
        logger.info("Test SMS for %s sent to %s (message_id=%s)", install_id, to, sent.get("message_id"))
        return {"success": True, "to": to, "messageId": str(sent.get("message_id"))}


async def _gateway(request: Request, install_id: str):
    ctx = get_ctx(request)
    credentials = await run_io(ctx.tenants.get_gateway_credentials, install_id)
    return ctx.gateway(credentials)


async def _field_values(request: Request):
    body = await parse_body(request)
    values = body.get("fieldValues", body)
    if isinstance(values, list):
        values = {str(v.get("id")): v.get("value") for v in values if isinstance(v, dict) and v.get("id")}
    if not isinstance(values, dict) or not values:
        raise ValidationError("fieldValues are required")
    return values
