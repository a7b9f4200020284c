"""Tests for the SQLAlchemy store."""
from datetime import timedelta

from sqlalchemy import select

from conftest import CONTRACT, mint_activity
from core.models import utcnow
from storage.db import NFTActivityRow


def test_tracked_token_lookup_is_case_insensitive(store):
    token_id = store.add_tracked_token(CONTRACT.upper().replace("0X", "0x"), token_name="Candy", collection_slug="candy")
    token = store.get_tracked_token(CONTRACT)
    assert token.id == token_id
    assert token.contract_address == CONTRACT
    assert store.get_tracked_token("0xnope") is None


def test_solana_mint_keeps_case(store):
    mint = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
    store.add_tracked_token(mint, chain="solana")
    assert store.get_tracked_token(mint).contract_address == mint


def test_collection_slugs(store):
    store.add_tracked_token(CONTRACT, collection_slug="candy")
    store.add_tracked_token("0x2", collection_slug="candy")
    store.add_tracked_token("0x3")
    assert store.list_active_collection_slugs() == ["candy"]


def test_subscriptions_skip_inactive_users(store, tracked):
    other = store.add_user("2002")
    store.subscribe(other, tracked.id, chat_id="-555")
    subs = store.get_notifiable_subscriptions(tracked.id)
    assert [(s.telegram_id, s.chat_id) for s in subs] == [("1001", "1001"), ("2002", "-555")]

    store.deactivate_user("2002")
    assert [s.telegram_id for s in store.get_notifiable_subscriptions(tracked.id)] == ["1001"]


def test_disable_chat_subscriptions_leaves_private_chat(store, tracked):
    user_id = store.add_user("2002")
    store.subscribe(user_id, tracked.id, chat_id="-4242")
    store.subscribe(user_id, tracked.id)

    assert store.disable_chat_subscriptions("-4242") == 1
    subs = store.get_notifiable_subscriptions(tracked.id)
    assert [(s.telegram_id, s.chat_id) for s in subs] == [("1001", "1001"), ("2002", "2002")]


def test_trending_payments(store, tracked):
    assert not store.has_active_trending_payment(CONTRACT)
    store.add_trending_payment(tracked.id, "0xpay", duration_hours=1, tier="premium")
    assert store.has_active_trending_payment(CONTRACT)

    records = store.list_trending_payments()
    assert [(r.contract_address, r.tier) for r in records] == [(CONTRACT, "premium")]

    store.clock = lambda: utcnow() + timedelta(hours=2)
    assert not store.has_active_trending_payment(CONTRACT)


def test_image_fee_expiry(store):
    store.add_image_fee_payment(CONTRACT, "0xfee", duration_days=1)
    assert store.is_image_fee_active(CONTRACT.upper().replace("0X", "0x"))
    store.clock = lambda: utcnow() + timedelta(days=2)
    assert not store.is_image_fee_active(CONTRACT)


def test_channels(store):
    store.add_channel("-1", "a")
    store.add_channel("-2", "b", show_trending=False)
    store.deactivate_channel("-1")
    assert store.get_broadcast_channels() == []


def test_log_activity(store):
    row_id = store.log_activity(mint_activity(price="1000"))
    with store.Session() as s:
        row = s.execute(select(NFTActivityRow).where(NFTActivityRow.id == row_id)).scalar_one()
    assert row.activity_type == "mint"
    assert row.source == "alchemy"
    assert row.price == "1000"


def test_ping(store):
    assert store.ping() is True
