import asyncio
from datetime import timedelta

from conftest import INSTALL_ID, make_instance
from smsbridge.feeder import accepts, map_event
from smsbridge.runtime import utc_now
from smsbridge.schema import FeederInstance, LinkHit, SmsReply, StepKind


def _replies(ctx, *messages):
    start = utc_now() - timedelta(minutes=len(messages))
    return [
        ctx.replies.create(
            SmsReply(
                install_id=INSTALL_ID,
                from_mobile=f"6141234567{i}",
                to_number="61400000000",
                message=text,
                response_id=f"r{i}",
                received_at=start + timedelta(minutes=i),
            )
        )
        for i, text in enumerate(messages)
    ]


def _sms_feeder(ctx, instance_id="feed-1", **config):
    config.setdefault("feeder_type", "incoming_sms")
    config.setdefault("field_mappings", {"mobile": "C_MobilePhone", "message": "C_SMS_Reply"})
    return make_instance(ctx, "feeder", instance_id, config)


def test_accepts_filters_by_type_sender_and_keyword():
    reply = SmsReply(from_mobile="61412345678", to_number="61400000000", message="Stop now")
    hit = LinkHit(mobile="61412345678", short_url="https://tapth.is/x")
    base = FeederInstance(instance_id="f", install_id=INSTALL_ID, requires_configuration=False)

    assert accepts(base, reply)
    assert not accepts(base, hit)
    assert accepts(FeederInstance(instance_id="f", feeder_type="link_hits", requires_configuration=False), hit)
    assert not accepts(FeederInstance(instance_id="f", install_id=INSTALL_ID), reply)
    assert not accepts(
        FeederInstance(instance_id="f", sender_ids=["61400000099"], requires_configuration=False), reply
    )
    assert accepts(FeederInstance(instance_id="f", sender_ids=["0400000000"], requires_configuration=False), reply)
    assert accepts(
        FeederInstance(instance_id="f", text_type="Keyword", keyword="stop", requires_configuration=False), reply
    )
    assert not accepts(
        FeederInstance(instance_id="f", text_type="Keyword", keyword="yes", requires_configuration=False), reply
    )


def test_map_event_keeps_only_mapped_fields():
    instance = FeederInstance(instance_id="f", field_mappings={"url": "C_Link", "link_hits": "C_Hits"})
    hit = LinkHit(mobile="61412345678", short_url="https://tapth.is/x", link_hits=2)
    assert map_event(instance, hit) == {"C_Link": "https://tapth.is/x", "C_Hits": 2}


def test_pull_pages_and_marks_events_fed(ctx, tenant):
    _sms_feeder(ctx)
    _replies(ctx, "one", "two", "three")

    first = asyncio.run(ctx.feeder.pull("feed-1", max_rows=2))
    assert first["count"] == 2
    assert [item["C_SMS_Reply"] for item in first["items"]] == ["one", "two"]

    second = asyncio.run(ctx.feeder.pull("feed-1", max_rows="10", offset="0"))
    assert [item["C_SMS_Reply"] for item in second["items"]] == ["three"]
    assert asyncio.run(ctx.feeder.pull("feed-1"))["count"] == 0
    assert ctx.instances.get(StepKind.FEEDER, "feed-1").records_sent == 3


def test_pull_offset_skips_without_marking(ctx, tenant):
    _sms_feeder(ctx, text_type="Keyword", keyword="yes")
    _replies(ctx, "yes a", "no", "yes b", "yes c")

    page = asyncio.run(ctx.feeder.pull("feed-1", max_rows=1, offset=1))
    assert [item["C_SMS_Reply"] for item in page["items"]] == ["yes b"]
    rest = asyncio.run(ctx.feeder.pull("feed-1", max_rows="bogus", offset=-3))
    assert [item["C_SMS_Reply"] for item in rest["items"]] == ["yes a", "yes c"]


def test_link_hit_feeder_pulls_link_hits(ctx, tenant):
    make_instance(ctx, "feeder", "feed-links", {"feeder_type": "link_hits", "field_mappings": {"url": "C_Link"}})
    ctx.link_hits.create(LinkHit(install_id=INSTALL_ID, mobile="61412345678", short_url="https://tapth.is/q"))
    _replies(ctx, "ignored")
    result = asyncio.run(ctx.feeder.pull("feed-links"))
    assert result == {"count": 1, "items": [{"C_Link": "https://tapth.is/q"}]}


def test_incoming_sms_writes_only_to_its_feeder(ctx, tenant, fake_platform):
    _sms_feeder(ctx, custom_object_id="88", field_mappings={"mobile": "301", "message": "302", "sender_id": "303"})
    _sms_feeder(ctx, "feed-2", custom_object_id="99", field_mappings={"message": "401"})

    reply = asyncio.run(
        ctx.feeder.incoming_sms(
            "feed-1", None, {"mobile": "61412345678", "response": "hi", "longcode": "61400000000", "response_id": "x"}
        )
    )
    assert reply.install_id == INSTALL_ID
    assert fake_platform.custom_object_writes == [
        {
            "fieldValues": [
                {"id": "301", "value": "61412345678"},
                {"id": "302", "value": "hi"},
                {"id": "303", "value": "61400000000"},
            ]
        }
    ]
    assert ctx.instances.get(StepKind.FEEDER, "feed-1").records_sent == 1
    assert ctx.instances.get(StepKind.FEEDER, "feed-2").records_sent == 0


def test_register_forwarding_points_numbers_at_feeder(ctx, tenant, fake_gateway):
    instance = _sms_feeder(ctx, sender_ids="61400000001, 61400000002")
    result = asyncio.run(ctx.feeder.register_forwarding(instance))
    assert result == {"61400000001": "ok", "61400000002": "ok"}
    assert [f["number"] for f in fake_gateway.forwards] == ["61400000001", "61400000002"]
    forward_url = fake_gateway.forwards[0]["forward_url"]
    assert forward_url.startswith("https://bridge.test/eloqua/feeder/incomingsms?")
    assert "instanceId=feed-1" in forward_url


def test_register_forwarding_skips_link_feeders(ctx, tenant, fake_gateway):
    instance = make_instance(ctx, "feeder", "feed-links", {"feeder_type": "link_hits"})
    assert asyncio.run(ctx.feeder.register_forwarding(instance)) == {}
    assert fake_gateway.forwards == []
