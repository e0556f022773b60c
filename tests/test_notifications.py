from __future__ import annotations

import asyncio
import json
from typing import List

import httpx
import pytest

from config.constants import PlanTier
from config.settings import IdentitySettings, NotificationSettings
from exceptions import NotificationError
from monitoring.notifications import (
    LoggingNotifier,
    MailDispatchNotifier,
    NotificationDispatcher,
    StaticIdentityResolver,
    build_notifier,
)
from tests.conftest import RecordingNotifier, _no_sleep


MAIL_SETTINGS = NotificationSettings(
    mail_endpoint="https://mail.example.com/send",
    api_token="mail-token",
    sender="alerts@sentinel.example.com",
)


async def test_mail_notifier_posts_json_with_bearer_token() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    notifier = MailDispatchNotifier(MAIL_SETTINGS, transport=httpx.MockTransport(handler))
    await notifier.send(" Owner@Example.com ", "Site down", "details")
    await notifier.close()

    assert len(seen) == 1
    request = seen[0]
    assert str(request.url) == "https://mail.example.com/send"
    assert request.headers["Authorization"] == "Bearer mail-token"
    assert json.loads(request.content) == {
        "to": "owner@example.com",
        "from": "alerts@sentinel.example.com",
        "subject": "Site down",
        "text": "details",
    }


async def test_mail_notifier_raises_on_error_status() -> None:
    notifier = MailDispatchNotifier(MAIL_SETTINGS, transport=httpx.MockTransport(lambda r: httpx.Response(500)))

    with pytest.raises(NotificationError) as exc_info:
        await notifier.send("owner@example.com", "Site down", "details")
    await notifier.close()

    assert "HTTP 500" in exc_info.value.message


async def test_mail_notifier_raises_when_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    notifier = MailDispatchNotifier(MAIL_SETTINGS, transport=httpx.MockTransport(handler))

    with pytest.raises(NotificationError):
        await notifier.send("owner@example.com", "Site down", "details")
    await notifier.close()


def test_build_notifier_falls_back_to_logging() -> None:
    assert isinstance(build_notifier(NotificationSettings(mail_endpoint=None)), LoggingNotifier)
    assert isinstance(build_notifier(MAIL_SETTINGS), MailDispatchNotifier)


async def test_queued_notifications_are_delivered_by_the_loop(notification_settings) -> None:
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier, notification_settings, sleep=_no_sleep)
    await dispatcher.start()

    assert await dispatcher.notify("owner@example.com", "one", "body")
    assert await dispatcher.notify("owner@example.com", "two", "body")
    await asyncio.wait_for(dispatcher.join(), timeout=5)
    await dispatcher.stop()

    assert notifier.subjects() == ["one", "two"]
    assert dispatcher.get_stats()["sent"] == 2


async def test_missing_recipient_is_skipped(dispatcher, notifier) -> None:
    assert not await dispatcher.notify(None, "subject", "body")
    assert notifier.attempts == 0


async def test_static_identity_resolver() -> None:
    resolver = StaticIdentityResolver(
        IdentitySettings(plans={"vip": "founder"}, contacts={"vip": "vip@example.com"})
    )

    assert await resolver.resolve_plan("vip") == PlanTier.FOUNDER
    assert await resolver.resolve_plan("nobody") == PlanTier.FREE
    assert await resolver.resolve_plan("nobody", default=PlanTier.PRO) == PlanTier.PRO
    assert await resolver.resolve_contact("vip") == "vip@example.com"
    assert await resolver.resolve_contact("someone@example.com") == "someone@example.com"
