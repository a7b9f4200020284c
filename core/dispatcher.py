from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from core.entitlements import EntitlementGate
from core.images import ImageResolver, ResolvedImage
from core.models import CanonicalActivity, Channel, DispatchReport, Subscription, TrackedToken
from core.telegram_client import TelegramError
from messages import build_reply_markup, format_activity_message

logger = logging.getLogger(__name__)


class FanoutDispatcher:
    """
    Sends one rendered notification per recipient.

    Users are resolved from their subscriptions, each delivered to the chat the
    subscription was created in. Channels come from the entitlement gate and
    are re-verified right before sending. A failed send never stops the
    remaining sends; permission failures deactivate the recipient.
    """

    def __init__(
        self,
        store,
        telegram,
        gate: EntitlementGate,
        images: ImageResolver,
        admin_chat_id: Optional[str] = None,
        max_caption_chars: int = 1024,
    ):
        self.store = store
        self.telegram = telegram
        self.gate = gate
        self.images = images
        self.admin_chat_id = admin_chat_id
        self.max_caption_chars = max_caption_chars

    async def dispatch(self, token: TrackedToken, activity: CanonicalActivity) -> DispatchReport:
        report = DispatchReport()
        contract = activity.contract_key or token.contract_address

        paid = await self.gate.is_image_fee_active(contract)
        # Raises ImageResolutionError; the caller records the failure.
        image = await self.images.resolve(activity, paid=paid)

        try:
            subs = await asyncio.to_thread(self.store.get_notifiable_subscriptions, token.id)
            eligibility = await self.gate.channel_eligibility(contract)

            caption = format_activity_message(token, activity, max_chars=self.max_caption_chars)
            markup = build_reply_markup(activity)

            await self._notify_users(subs, caption, markup, image, report)
            if self.admin_chat_id:
                await self._notify_admin(caption, markup, image, report)

            if eligibility.notify:
                logger.info("Notifying channels for %s (%s)", token.token_name or contract, eligibility.reason)
                await self._notify_channels(token, activity, eligibility.channels, markup, image, report)
            else:
                logger.debug("No channel notification for %s: %s", contract, eligibility.reason)
        finally:
            self.images.schedule_cleanup(image)

        logger.info(
            "Fan-out for %s: users %d sent/%d failed, channels %d sent/%d failed",
            contract, report.users_sent, report.users_failed, report.channels_sent, report.channels_failed,
        )
        return report

    async def _notify_users(self, subs: List[Subscription], caption, markup, image, report) -> None:
        for sub in subs:
            ok = await self._send(
                sub.chat_id, caption, markup, image,
                on_permission_error=self._on_user_permission_error(sub),
                label=f"user {sub.telegram_id} (chat {sub.chat_id})",
                report=report,
            )
            if ok:
                report.users_sent += 1
            else:
                report.users_failed += 1

    def _on_user_permission_error(self, sub: Subscription) -> Callable[[], None]:
        # A kicked group only loses its own subscriptions; the user's private chat stays live.
        if sub.chat_context and sub.chat_context != "private":
            return lambda: self.store.disable_chat_subscriptions(sub.chat_context)
        return lambda: self.store.deactivate_user(sub.telegram_id)

    async def _notify_admin(self, caption, markup, image, report) -> None:
        await self._send(
            self.admin_chat_id, caption, markup, image,
            on_permission_error=None,
            label=f"admin chat {self.admin_chat_id}",
            report=report,
        )

    async def _notify_channels(
        self,
        token: TrackedToken,
        activity: CanonicalActivity,
        channels: List[Channel],
        markup,
        image: ResolvedImage,
        report: DispatchReport,
    ) -> None:
        if not await self.gate.verify_trending(activity.contract_key or token.contract_address):
            return

        caption = format_activity_message(token, activity, trending=True, max_chars=self.max_caption_chars)
        for channel in channels:
            ok = await self._send(
                channel.telegram_chat_id, caption, markup, image,
                on_permission_error=lambda c=channel: self.store.deactivate_channel(c.telegram_chat_id),
                label=f"channel {channel.telegram_chat_id} ({channel.title})",
                report=report,
            )
            if ok:
                report.channels_sent += 1
            else:
                report.channels_failed += 1

    async def _send(
        self,
        chat_id: str,
        caption: str,
        markup,
        image: ResolvedImage,
        on_permission_error: Optional[Callable[[], None]],
        label: str,
        report: DispatchReport,
    ) -> bool:
        try:
            await asyncio.to_thread(self.telegram.send_photo, chat_id, image.data, caption, markup)
            logger.debug("Notified %s", label)
            return True
        except TelegramError as e:
            logger.error("Failed to notify %s: %s", label, e)
            if e.is_permission_error and on_permission_error is not None:
                try:
                    await asyncio.to_thread(on_permission_error)
                    report.deactivated.append(str(chat_id))
                    logger.info("Deactivated %s after permission failure", label)
                except Exception:
                    logger.exception("Could not deactivate %s", label)
        except Exception:
            logger.exception("Unexpected failure notifying %s", label)
        return False
