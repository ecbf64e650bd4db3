"""Tests for notification composition, filtering, targeting and delivery."""

import asyncio
from urllib.parse import parse_qs

import httpx

from tracker.core.config_resolver import EffectiveConfig
from tracker.core.notifications import (
    NotificationTarget,
    compose_message,
    dispatch_notifications,
    notification_targets,
    passes_keyword_filter,
)


def _config(**overrides) -> EffectiveConfig:
    values = dict(
        partner_id="acme",
        name="Acme Ads",
        target_domain="track.acme.example",
        telegram_globally_enabled=True,
        telegram_enabled=True,
        telegram_bot_token="111:shared",
        telegram_channel_id="-100111",
    )
    values.update(overrides)
    return EffectiveConfig(**values)


def _dispatch(message, targets, handler):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await dispatch_notifications(message, targets, "acme", client=client)

    return asyncio.run(run())


class TestComposeMessage:
    def test_layout(self):
        message = compose_message(
            "Acme Ads",
            {"clickid": "c-1", "sum": "7.5"},
            "c-1",
            "203.0.113.9",
            200,
            "OK",
        )
        assert message.splitlines() == [
            "PARTNER: Acme Ads",
            "clickid=c-1",
            "sum=7.5",
            "CLICKID: c-1",
            "IP: 203.0.113.9",
            "STATUS: 200",
            "RESPONSE: OK",
        ]

    def test_values_html_escaped(self):
        message = compose_message(
            "A&B <Ads>",
            {"clickid": "c-1", "note": "x<5 & y>2"},
            "c-1",
            "203.0.113.9",
            200,
            "a & b",
        )
        assert "PARTNER: A&amp;B &lt;Ads&gt;" in message
        assert "note=x&lt;5 &amp; y&gt;2" in message
        assert "RESPONSE: a &amp; b" in message
        assert "<" not in message


class TestKeywordFilter:
    def test_no_filter_always_passes(self):
        assert passes_keyword_filter("anything", None) is True

    def test_empty_list_never_passes(self):
        assert passes_keyword_filter("anything", []) is False

    def test_case_insensitive_match(self):
        assert passes_keyword_filter("STATUS: 200\ngeo=US", ["Geo=us"]) is True

    def test_no_match(self):
        assert passes_keyword_filter("geo=DE", ["geo=US", "sale"]) is False

    def test_matches_unescaped_text(self):
        message = compose_message("Acme", {"offer": "a&b <vip>"}, "c-1", "ip", 200, "")
        assert passes_keyword_filter(message, ["a&b <VIP>"]) is True


class TestNotificationTargets:
    def test_shared_only(self):
        targets = notification_targets(_config())
        assert [t.name for t in targets] == ["shared"]
        assert targets[0].bot_token == "111:shared"
        assert targets[0].keywords is None

    def test_global_toggle_off(self):
        assert notification_targets(_config(telegram_globally_enabled=False)) == []

    def test_partner_flag_off(self):
        assert notification_targets(_config(telegram_enabled=False)) == []

    def test_partner_channel_needs_both_credentials(self):
        cfg = _config(
            telegram_globally_enabled=False,
            partner_telegram_enabled=True,
            partner_telegram_bot_token="222:partner",
        )
        assert notification_targets(cfg) == []

    def test_both_targets(self):
        cfg = _config(
            partner_telegram_enabled=True,
            partner_telegram_bot_token="222:partner",
            partner_telegram_channel_id="-100222",
        )
        assert [t.name for t in notification_targets(cfg)] == ["shared", "partner"]

    def test_whitelist_applies_to_both(self):
        cfg = _config(
            telegram_whitelist_enabled=True,
            telegram_whitelist_keywords=("sale",),
            partner_telegram_enabled=True,
            partner_telegram_bot_token="222:partner",
            partner_telegram_channel_id="-100222",
        )
        assert all(t.keywords == ("sale",) for t in notification_targets(cfg))

    def test_whitelist_keywords_ignored_when_disabled(self):
        cfg = _config(telegram_whitelist_enabled=False, telegram_whitelist_keywords=("sale",))
        assert notification_targets(cfg)[0].keywords is None


class TestDispatch:
    SHARED = NotificationTarget("shared", "111:shared", "-100111")
    PARTNER = NotificationTarget("partner", "222:partner", "-100222")

    def test_delivers_to_each_target(self):
        calls = []

        def handler(request):
            calls.append((request.url.path, parse_qs(request.content.decode())))
            return httpx.Response(200, json={"ok": True})

        delivered = _dispatch("PARTNER: Acme", [self.SHARED, self.PARTNER], handler)
        assert delivered == 2
        sent = dict(calls)
        assert set(sent) == {"/bot111:shared/sendMessage", "/bot222:partner/sendMessage"}
        assert sent["/bot111:shared/sendMessage"]["chat_id"] == ["-100111"]
        assert sent["/bot111:shared/sendMessage"]["text"] == ["PARTNER: Acme"]
        assert sent["/bot111:shared/sendMessage"]["parse_mode"] == ["HTML"]

    def test_failure_of_one_target_does_not_block_other(self):
        def handler(request):
            if "111:shared" in request.url.path:
                return httpx.Response(400, json={"ok": False, "description": "chat not found"})
            return httpx.Response(200, json={"ok": True})

        assert _dispatch("msg", [self.SHARED, self.PARTNER], handler) == 1

    def test_transport_error_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        assert _dispatch("msg", [self.SHARED], handler) == 0

    def test_filtered_target_not_contacted(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"ok": True})

        filtered = NotificationTarget("shared", "111:shared", "-100111", keywords=("sale",))
        assert _dispatch("geo=US", [filtered], handler) == 0
        assert calls == []

    def test_missing_credentials_counted_as_failure(self):
        def handler(request):
            return httpx.Response(200, json={"ok": True})

        incomplete = NotificationTarget("shared", "", "-100111")
        assert _dispatch("msg", [incomplete], handler) == 0

    def test_escaped_text_sent_as_html(self):
        calls = []

        def handler(request):
            calls.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"ok": True})

        message = compose_message("Acme", {"note": "x<5 & y>2"}, "c-1", "ip", 200, "")
        assert _dispatch(message, [self.SHARED], handler) == 1
        assert calls[0]["parse_mode"] == ["HTML"]
        assert "note=x&lt;5 &amp; y&gt;2" in calls[0]["text"][0]

    def test_targets_sent_concurrently(self):
        both_in = asyncio.Event()
        arrived = []

        async def handler(request):
            arrived.append(request.url.path)
            if len(arrived) < 2:
                # a sequential sender never gets to the second target
                await asyncio.wait_for(both_in.wait(), timeout=1)
            else:
                both_in.set()
            return httpx.Response(200, json={"ok": True})

        assert _dispatch("msg", [self.SHARED, self.PARTNER], handler) == 2
