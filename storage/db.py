"""
Persistence for the notifier.

The pipeline only reads tokens, subscriptions, channels and payment records,
and appends to the activity and webhook logs. The write helpers at the bottom
exist for the bot side and for tests.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
    create_engine, func, select, text, update,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from core.models import (
    CanonicalActivity, Channel, Subscription, TrackedToken, TrendingPaymentRecord, utcnow,
)

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(String(64), unique=True, nullable=False, index=True)
    username = Column(String(255))
    first_name = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class TrackedTokenRow(Base):
    __tablename__ = "tracked_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_address = Column(String(128), unique=True, nullable=False)
    chain = Column(String(32), default="ethereum", nullable=False)
    token_name = Column(String(255))
    collection_slug = Column(String(255), index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "token_id", "chat_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_id = Column(Integer, ForeignKey("tracked_tokens.id", ondelete="CASCADE"), nullable=False, index=True)
    chat_id = Column(String(64), default="private", nullable=False)  # "private" or a group chat id
    notification_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class TrendingPayment(Base):
    __tablename__ = "trending_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(Integer, ForeignKey("tracked_tokens.id"), nullable=False)
    payment_amount = Column(String(78), nullable=False)  # wei
    transaction_hash = Column(String(128), unique=True, nullable=False)
    tier = Column(String(16), default="normal", nullable=False)  # normal | premium
    start_time = Column(DateTime, default=utcnow)
    end_time = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class ImageFeePayment(Base):
    __tablename__ = "image_fee_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_address = Column(String(128), nullable=False, index=True)
    amount = Column(String(78), nullable=False)
    transaction_hash = Column(String(128), unique=True, nullable=False)
    duration_days = Column(Integer, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class NFTActivityRow(Base):
    __tablename__ = "nft_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_address = Column(String(128), nullable=False, index=True)
    token_id = Column(String(128))
    activity_type = Column(String(32), nullable=False)
    source = Column(String(32))
    chain = Column(String(32))
    from_address = Column(String(128))
    to_address = Column(String(128))
    transaction_hash = Column(String(128))
    block_number = Column(String(32))
    price = Column(String(78))
    marketplace = Column(String(64))
    created_at = Column(DateTime, default=utcnow)


class ChannelRow(Base):
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_chat_id = Column(String(64), unique=True, nullable=False, index=True)
    channel_title = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    show_trending = Column(Boolean, default=True, nullable=False)
    show_all_activities = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_type = Column(String(32), nullable=False)
    payload = Column(Text, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class Store:
    def __init__(self, database_url: str = "sqlite:///nft_notifier.db", clock: Callable[[], datetime] = utcnow):
        kwargs: dict = {"pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url == "sqlite://":
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.clock = clock

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.Session() as s:
            s.execute(text("SELECT 1"))
        return True

    # ---- reads -------------------------------------------------------------

    def get_tracked_token(self, contract_address: str) -> Optional[TrackedToken]:
        with self.Session() as s:
            row = s.execute(
                select(TrackedTokenRow).where(
                    func.lower(TrackedTokenRow.contract_address) == (contract_address or "").lower()
                )
            ).scalar_one_or_none()
        return _token(row) if row else None

    def list_active_collection_slugs(self) -> List[str]:
        with self.Session() as s:
            rows = s.execute(
                select(TrackedTokenRow.collection_slug).where(
                    TrackedTokenRow.is_active.is_(True),
                    TrackedTokenRow.collection_slug.is_not(None),
                )
            ).scalars().all()
        return sorted(set(rows))

    def get_notifiable_subscriptions(self, token_id: int) -> List[Subscription]:
        stmt = (
            select(UserSubscription, User)
            .join(User, User.id == UserSubscription.user_id)
            .where(
                UserSubscription.token_id == token_id,
                UserSubscription.notification_enabled.is_(True),
                User.is_active.is_(True),
            )
            .order_by(UserSubscription.id)
        )
        with self.Session() as s:
            rows = s.execute(stmt).all()
        return [
            Subscription(
                user_id=user.id,
                telegram_id=user.telegram_id,
                token_id=sub.token_id,
                chat_context=sub.chat_id or "private",
                notification_enabled=sub.notification_enabled,
            )
            for sub, user in rows
        ]

    def get_broadcast_channels(self) -> List[Channel]:
        stmt = select(ChannelRow).where(
            ChannelRow.is_active.is_(True),
            (ChannelRow.show_trending.is_(True)) | (ChannelRow.show_all_activities.is_(True)),
        ).order_by(ChannelRow.id)
        with self.Session() as s:
            rows = s.execute(stmt).scalars().all()
        return [
            Channel(
                telegram_chat_id=r.telegram_chat_id,
                title=r.channel_title,
                show_trending=r.show_trending,
                show_all_activities=r.show_all_activities,
                is_active=r.is_active,
            )
            for r in rows
        ]

    def has_active_trending_payment(self, contract_address: str) -> bool:
        stmt = (
            select(func.count(TrendingPayment.id))
            .join(TrackedTokenRow, TrackedTokenRow.id == TrendingPayment.token_id)
            .where(
                func.lower(TrackedTokenRow.contract_address) == (contract_address or "").lower(),
                TrendingPayment.is_active.is_(True),
                TrendingPayment.end_time > self.clock(),
            )
        )
        with self.Session() as s:
            return (s.execute(stmt).scalar() or 0) > 0

    def list_trending_payments(self) -> List[TrendingPaymentRecord]:
        stmt = (
            select(TrendingPayment, TrackedTokenRow.contract_address)
            .join(TrackedTokenRow, TrackedTokenRow.id == TrendingPayment.token_id)
            .where(TrendingPayment.is_active.is_(True))
            .order_by(TrendingPayment.start_time.desc())
        )
        with self.Session() as s:
            rows = s.execute(stmt).all()
        return [
            TrendingPaymentRecord(
                contract_address=addr,
                is_active=p.is_active,
                end_time=p.end_time,
                tier=p.tier,
                payment_amount=p.payment_amount,
            )
            for p, addr in rows
        ]

    def is_image_fee_active(self, contract_address: str) -> bool:
        stmt = select(func.count(ImageFeePayment.id)).where(
            func.lower(ImageFeePayment.contract_address) == (contract_address or "").lower(),
            ImageFeePayment.is_active.is_(True),
            ImageFeePayment.end_time > self.clock(),
        )
        with self.Session() as s:
            return (s.execute(stmt).scalar() or 0) > 0

    # ---- writes used by the pipeline ---------------------------------------

    def log_activity(self, activity: CanonicalActivity) -> int:
        row = NFTActivityRow(
            contract_address=activity.contract_address,
            token_id=activity.token_id,
            activity_type=activity.activity_type.value,
            source=activity.source,
            chain=activity.chain,
            from_address=activity.from_address,
            to_address=activity.to_address,
            transaction_hash=activity.transaction_hash,
            block_number=activity.block_number,
            price=activity.price,
            marketplace=activity.marketplace,
        )
        with self.Session() as s:
            s.add(row)
            s.commit()
            return row.id

    def log_webhook(self, webhook_type: str, payload: Any, processed: bool = False,
                    error_message: Optional[str] = None) -> None:
        with self.Session() as s:
            s.add(WebhookLog(
                webhook_type=webhook_type,
                payload=json.dumps(payload, default=str),
                processed=processed,
                error_message=error_message,
            ))
            s.commit()

    def deactivate_user(self, telegram_id: str) -> None:
        with self.Session() as s:
            s.execute(update(User).where(User.telegram_id == str(telegram_id)).values(is_active=False))
            s.commit()

    def deactivate_channel(self, telegram_chat_id: str) -> None:
        with self.Session() as s:
            s.execute(
                update(ChannelRow)
                .where(ChannelRow.telegram_chat_id == str(telegram_chat_id))
                .values(is_active=False)
            )
            s.commit()

    def disable_chat_subscriptions(self, chat_id: str) -> int:
        """Turns off every subscription delivered to one group or channel chat."""
        with self.Session() as s:
            result = s.execute(
                update(UserSubscription)
                .where(UserSubscription.chat_id == str(chat_id))
                .values(notification_enabled=False)
            )
            s.commit()
            return result.rowcount

    # ---- write helpers -----------------------------------------------------

    def add_user(self, telegram_id: str, username: Optional[str] = None) -> int:
        with self.Session() as s:
            user = User(telegram_id=str(telegram_id), username=username)
            s.add(user)
            s.commit()
            return user.id

    def add_tracked_token(self, contract_address: str, token_name: Optional[str] = None,
                          chain: str = "ethereum", collection_slug: Optional[str] = None) -> int:
        with self.Session() as s:
            row = TrackedTokenRow(
                contract_address=contract_address.lower() if chain != "solana" else contract_address,
                token_name=token_name,
                chain=chain,
                collection_slug=collection_slug,
            )
            s.add(row)
            s.commit()
            return row.id

    def subscribe(self, user_id: int, token_id: int, chat_id: str = "private") -> int:
        with self.Session() as s:
            sub = UserSubscription(user_id=user_id, token_id=token_id, chat_id=str(chat_id))
            s.add(sub)
            s.commit()
            return sub.id

    def add_channel(self, telegram_chat_id: str, title: Optional[str] = None,
                    show_trending: bool = True, show_all_activities: bool = False) -> int:
        with self.Session() as s:
            row = ChannelRow(
                telegram_chat_id=str(telegram_chat_id),
                channel_title=title,
                show_trending=show_trending,
                show_all_activities=show_all_activities,
            )
            s.add(row)
            s.commit()
            return row.id

    def add_trending_payment(self, token_id: int, transaction_hash: str, duration_hours: int,
                             payment_amount: str = "0", tier: str = "normal") -> int:
        now = self.clock()
        with self.Session() as s:
            row = TrendingPayment(
                token_id=token_id,
                transaction_hash=transaction_hash,
                payment_amount=payment_amount,
                tier=tier,
                start_time=now,
                end_time=now + timedelta(hours=duration_hours),
            )
            s.add(row)
            s.commit()
            return row.id

    def add_image_fee_payment(self, contract_address: str, transaction_hash: str,
                              duration_days: int, amount: str = "0") -> int:
        with self.Session() as s:
            row = ImageFeePayment(
                contract_address=contract_address,
                transaction_hash=transaction_hash,
                amount=amount,
                duration_days=duration_days,
                end_time=self.clock() + timedelta(days=duration_days),
            )
            s.add(row)
            s.commit()
            return row.id


def _token(row: TrackedTokenRow) -> TrackedToken:
    return TrackedToken(
        id=row.id,
        contract_address=row.contract_address,
        chain=row.chain,
        token_name=row.token_name,
        collection_slug=row.collection_slug,
        is_active=bool(row.is_active),
    )
