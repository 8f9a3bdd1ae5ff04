import pytest

from smsbridge.errors import NotFoundError, ValidationError
from smsbridge.tenant_store import TenantStore


@pytest.fixture
def store():
    return TenantStore()


def test_get_or_create_reuses_site_and_tracks_new_install_id(store):
    first = store.get_or_create("install-a", "site-1", "Acme")
    again = store.get_or_create("install-b", "site-1")
    assert again.record_id == first.record_id
    assert again.install_id == "install-b"
    assert again.site_name == "Acme"
    assert store.get("install-a") is None
    assert len(store.list_active()) == 1


def test_reinstall_reactivates_deactivated_tenant(store):
    created = store.get_or_create("install-a", "site-1")
    store.save_tokens("install-a", "tok", "ref", 3600)
    gone = store.deactivate("install-a")
    assert gone.is_active is False
    assert store.get_tokens("install-a").access_token is None

    back = store.get_or_create("install-c", "site-1")
    assert back.record_id == created.record_id
    assert back.is_active is True
    assert back.uninstalled_at is None


def test_require_unknown_install(store):
    with pytest.raises(NotFoundError):
        store.require("nope")
    with pytest.raises(ValidationError):
        store.get_or_create("", "site")


def test_configuration_keeps_secrets_off_the_tenant(store):
    store.get_or_create("install-a", "site-1")
    assert store.get_gateway_credentials("install-a") is None

    tenant = store.save_configuration(
        "install-a",
        api_key=" key ",
        api_secret="secret",
        default_country="New Zealand",
        actions={"send": {"custom_object_id": "12", "fields": {"mobile": "101", "bogus": "1"}}},
        callbacks={"dlr_callback": "https://example.test/dlr"},
    )
    creds = store.get_gateway_credentials("install-a")
    assert (creds.api_key, creds.api_secret) == ("key", "secret")
    assert tenant.default_country == "New Zealand"
    assert tenant.mapping("send").to_dict() == {"custom_object_id": "12", "fields": {"mobile": "101"}}
    assert tenant.dlr_callback == "https://example.test/dlr"
    assert "transmitsms_api_key" not in str(tenant.public_dict())

    with pytest.raises(ValidationError):
        store.save_configuration("install-a", actions={"unknown": {}})


def test_tokens_round_trip_with_expiry(store):
    store.get_or_create("install-a", "site-1")
    tokens = store.save_tokens("install-a", "access", "refresh", 60)
    assert tokens.access_token == "access"
    assert tokens.expires_at is not None

    store.save_tokens("install-a", "access-2", None, 60)
    assert store.get_tokens("install-a").refresh_token == "refresh"

    store.clear_tokens("install-a")
    cleared = store.get_tokens("install-a")
    assert cleared.access_token is None and cleared.refresh_token is None
