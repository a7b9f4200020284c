"""Tests for the OpenSea stream adapter and client message handling."""
import asyncio

import pytest

from chains.opensea_client import OpenSeaStreamClient, heartbeat_message, join_message
from chains.opensea_stream import (
    EVENT_MAPPING,
    PriceField,
    StreamEventType,
    attach_usd_value,
    parse_stream_event,
    split_nft_id,
    unwrap_payload,
    usd_value,
)
from conftest import FakePrices
from core.errors import MalformedPayloadError
from core.models import ActivityType

CONTRACT = "0x495f947276749ce646f68ac8c248420045cb7b5e"
ZERO = "0x0000000000000000000000000000000000000000"


def _payload(**kw):
    body = {
        "item": {
            "nft_id": f"ethereum/{CONTRACT.upper().replace('0X', '0x')}/42",
            "chain": {"name": "ethereum"},
            "metadata": {"name": "Candy #42", "image_url": "https://img.test/42.png"},
        },
        "collection": {"slug": "candy"},
        "maker": {"address": "0xAAAA000000000000000000000000000000000001"},
        "taker": {"address": "0xBBBB000000000000000000000000000000000002"},
        "payment_token": {"symbol": "ETH", "decimals": 18, "address": ZERO, "usd_price": "99999"},
        "sale_price": "1500000000000000000",
        "base_price": "2000000000000000000",
        "order_hash": "0xorder",
        "transaction": {"hash": "0xtx", "block_number": 123},
    }
    body.update(kw)
    return {"payload": {"payload": body, "event_type": "item_sold"}, "sent_at": "2024-05-01T00:00:00Z"}


def test_event_mapping_is_total():
    assert set(EVENT_MAPPING) == set(StreamEventType)


def test_event_type_parse():
    assert StreamEventType.parse("item_sold") is StreamEventType.SOLD
    assert StreamEventType.parse("received_bid") is StreamEventType.RECEIVED_BID
    assert StreamEventType.parse("collection_offer") is None
    assert StreamEventType.parse(None) is None


def test_sold_uses_sale_price():
    ev = parse_stream_event("item_sold", _payload())
    assert ev.activity_type == ActivityType.SALE
    assert ev.price == "1500000000000000000"
    assert ev.contract_address == CONTRACT
    assert ev.token_id == "42"
    assert ev.marketplace == "OpenSea"
    assert ev.image_url == "https://img.test/42.png"
    assert ev.order_hash == "0xorder"
    assert ev.transaction_hash == "0xtx"
    assert ev.block_number == "123"
    assert ev.event_timestamp == "2024-05-01T00:00:00Z"
    assert ev.from_address == "0xaaaa000000000000000000000000000000000001"


@pytest.mark.parametrize(
    "event_type,expected",
    [
        ("item_listed", ActivityType.LISTING),
        ("item_received_bid", ActivityType.BID),
        ("item_received_offer", ActivityType.OFFER),
    ],
)
def test_order_events_use_base_price(event_type, expected):
    ev = parse_stream_event(event_type, _payload())
    assert ev.activity_type == expected
    assert ev.price == "2000000000000000000"


def test_transferred_has_no_price_and_detects_mint():
    ev = parse_stream_event(
        "item_transferred",
        _payload(from_account={"address": ZERO}, to_account={"address": "0xCCCC000000000000000000000000000000000003"}),
    )
    assert ev.activity_type == ActivityType.MINT
    assert ev.price is None
    assert ev.to_address == "0xcccc000000000000000000000000000000000003"

    ev = parse_stream_event(
        "item_transferred",
        _payload(from_account={"address": "0xCCCC000000000000000000000000000000000003"}, to_account={"address": ZERO}),
    )
    assert ev.activity_type == ActivityType.BURN


def test_dropped_event_types():
    assert parse_stream_event("item_metadata_updated", _payload()) is None
    assert parse_stream_event("item_cancelled", _payload()) is None
    assert parse_stream_event("something_else", _payload()) is None


def test_unwrap_payload_shapes():
    inner = {"item": {"nft_id": "ethereum/0xabc/1"}}
    assert unwrap_payload({"payload": {"payload": inner}}) is inner
    assert unwrap_payload({"payload": inner}) is inner
    assert unwrap_payload(inner) is inner
    with pytest.raises(MalformedPayloadError):
        unwrap_payload({"sent_at": "x"})


def test_missing_nft_id_is_malformed():
    with pytest.raises(MalformedPayloadError):
        parse_stream_event("item_sold", {"payload": {"item": {}}})


def test_split_nft_id():
    assert split_nft_id("base/0xABC/7") == ("base", "0xabc", "7")
    assert split_nft_id("bad") == (None, None, None)


def test_usd_is_recomputed_from_external_quote():
    ev = parse_stream_event("item_sold", _payload())
    prices = FakePrices({"ETH": 2000.0})
    attach_usd_value(ev, prices)
    assert ev.price_usd == pytest.approx(3000.0)
    assert prices.calls == [("ETH", ZERO)]


def test_usd_missing_quote():
    assert usd_value("1000000", 6, None) is None
    assert usd_value("1000000", 6, 1.0) == pytest.approx(1.0)
    assert usd_value("not-a-number", 18, 1.0) is None


def test_phoenix_messages():
    assert join_message("candy", 1) == {"topic": "collection:candy", "event": "phx_join", "payload": {}, "ref": 1}
    assert heartbeat_message(2)["topic"] == "phoenix"


@pytest.mark.asyncio
async def test_client_forwards_subscribed_events():
    received = []

    async def handler(event_type, event):
        received.append((event_type, event))

    client = OpenSeaStreamClient("key", collections=lambda: ["candy"], handler=handler)
    payload = {"event_type": "item_sold", "sent_at": "2024-05-01T00:00:00Z", "payload": {"item": {}}}

    task = client._dispatch({"topic": "collection:candy", "event": "item_sold", "payload": payload})
    assert client._dispatch({"topic": "phoenix", "event": "phx_reply", "payload": {"status": "ok"}}) is None
    await asyncio.wait_for(task, timeout=1)

    assert received == [("item_sold", {"payload": payload, "sent_at": "2024-05-01T00:00:00Z"})]
    assert client.stats["events"] == 1


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


def test_non_json_frame_is_skipped():
    async def handler(event_type, event):
        raise AssertionError("handler must not run")

    client = OpenSeaStreamClient("key", collections=lambda: ["candy"], handler=handler)
    assert client._on_text("not json {") is None
    assert client._on_text("[1, 2]") is None
    assert client.stats["events"] == 0


@pytest.mark.asyncio
async def test_newly_tracked_collections_are_joined():
    slugs = ["candy"]

    async def handler(event_type, event):
        pass

    client = OpenSeaStreamClient("key", collections=lambda: list(slugs), handler=handler)
    ws = RecordingSocket()
    joined = set()

    await client.refresh_subscriptions(ws, joined)
    slugs.append("gum")
    await client.refresh_subscriptions(ws, joined)

    assert [m["topic"] for m in ws.sent] == ["collection:candy", "collection:gum"]
    assert joined == {"candy", "gum"}


@pytest.mark.asyncio
async def test_run_survives_collection_lookup_failure(monkeypatch):
    sleeps = []

    async def fake_sleep(secs):
        sleeps.append(secs)
        if len(sleeps) == 2:
            client.stop()

    monkeypatch.setattr("chains.opensea_client.asyncio.sleep", fake_sleep)

    async def handler(event_type, event):
        pass

    calls = []

    def collections():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return []

    client = OpenSeaStreamClient("key", collections=collections, handler=handler)
    await asyncio.wait_for(client.run(), timeout=5)

    assert len(calls) == 2
    assert client.stats["reconnects"] == 1
    assert sleeps == [1.0, 30]
