"""Tests for trending and image-fee entitlement checks."""
from datetime import timedelta

import pytest

from conftest import CONTRACT
from core.entitlements import EntitlementGate, LegacyTrendingProvider, TrendingProvider
from core.models import TrendingPaymentRecord, utcnow


class StaticProvider(TrendingProvider):
    def __init__(self, name, answer):
        self.name = name
        self.answer = answer
        self.calls = 0

    def is_trending(self, contract_address):
        self.calls += 1
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


class BrokenStore:
    def get_broadcast_channels(self):
        raise RuntimeError("db down")

    def is_image_fee_active(self, contract_address):
        raise RuntimeError("db down")


@pytest.mark.asyncio
async def test_providers_tried_in_order_until_first_yes():
    first = StaticProvider("secure", False)
    second = StaticProvider("legacy", True)
    third = StaticProvider("extra", True)
    gate = EntitlementGate(store=None, providers=[first, second, third])

    assert await gate.is_trending(CONTRACT) is True
    assert (first.calls, second.calls, third.calls) == (1, 1, 0)


@pytest.mark.asyncio
async def test_provider_error_falls_through_and_fails_closed():
    gate = EntitlementGate(store=None, providers=[StaticProvider("secure", RuntimeError("boom"))])
    assert await gate.is_trending(CONTRACT) is False

    fallback = StaticProvider("legacy", True)
    gate = EntitlementGate(store=None, providers=[StaticProvider("secure", RuntimeError("boom")), fallback])
    assert await gate.is_trending(CONTRACT) is True


@pytest.mark.asyncio
async def test_not_trending_never_notifies_channels(store):
    store.add_tracked_token(CONTRACT)
    store.add_channel("-100", "all", show_trending=True, show_all_activities=True)
    gate = EntitlementGate(store)

    result = await gate.channel_eligibility(CONTRACT)
    assert result.notify is False
    assert result.channels == []
    assert result.is_trending is False


@pytest.mark.asyncio
async def test_trending_selects_channels_by_preference(store):
    token_id = store.add_tracked_token(CONTRACT)
    store.add_trending_payment(token_id, "0xpay", duration_hours=24)
    store.add_channel("-100", "trending only")
    store.add_channel("-200", "everything", show_trending=False, show_all_activities=True)
    store.add_channel("-300", "muted", show_trending=False, show_all_activities=False)
    gate = EntitlementGate(store)

    result = await gate.channel_eligibility(CONTRACT.upper().replace("0X", "0x"))
    assert result.notify is True
    assert result.is_trending is True
    assert [c.telegram_chat_id for c in result.channels] == ["-100", "-200"]


@pytest.mark.asyncio
async def test_channel_lookup_error_fails_closed():
    gate = EntitlementGate(BrokenStore(), providers=[StaticProvider("secure", True)])
    result = await gate.channel_eligibility(CONTRACT)
    assert result.notify is False
    assert result.channels == []


@pytest.mark.asyncio
async def test_expired_trending_payment(store):
    token_id = store.add_tracked_token(CONTRACT)
    store.add_trending_payment(token_id, "0xpay", duration_hours=1)
    store.clock = lambda: utcnow() + timedelta(hours=2)
    gate = EntitlementGate(store, providers=[
        LegacyTrendingProvider(store, clock=store.clock),
    ])
    assert await gate.is_trending(CONTRACT) is False
    assert await gate.verify_trending(CONTRACT) is False


def test_legacy_record_validity():
    now = utcnow()
    assert TrendingPaymentRecord(CONTRACT, True, now + timedelta(minutes=1)).is_valid(now)
    assert not TrendingPaymentRecord(CONTRACT, False, now + timedelta(minutes=1)).is_valid(now)
    assert not TrendingPaymentRecord(CONTRACT, True, now - timedelta(minutes=1)).is_valid(now)


@pytest.mark.asyncio
async def test_image_fee(store):
    gate = EntitlementGate(store)
    assert await gate.is_image_fee_active(CONTRACT) is False
    store.add_image_fee_payment(CONTRACT, "0xfee", duration_days=30)
    assert await gate.is_image_fee_active(CONTRACT) is True

    broken = EntitlementGate(BrokenStore(), providers=[])
    assert await broken.is_image_fee_active(CONTRACT) is False
