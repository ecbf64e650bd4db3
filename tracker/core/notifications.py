"""
Notification fanout — Telegram.

Two independent targets:
  - shared channel   → global bot/channel, only when the system-wide toggle
                       AND the partner's telegram_enabled flag are on
  - partner channel  → partner's own bot/channel, only when the partner turned
                       it on and filled in both credentials

Keyword filter (per target):
  None        → no filtering, always send
  []          → filtering on with nothing to match, never send
  [k1, k2...] → send if the message contains any keyword (case-insensitive)

Values are HTML-escaped for parse_mode=HTML; keyword matching sees the
unescaped text. Targets are sent concurrently. Delivery failures are logged
and swallowed. No retries.
"""

import asyncio
import html
from dataclasses import dataclass
from typing import Mapping, Sequence

import httpx

from tracker.config import get_settings
from tracker.core.config_resolver import EffectiveConfig
from tracker.core.errors import NotificationFailed

import structlog

logger = structlog.get_logger()

MESSAGE_RESPONSE_WIDTH = 500


@dataclass(frozen=True)
class NotificationTarget:
    name: str
    bot_token: str
    channel_id: str
    keywords: tuple[str, ...] | None = None


def compose_message(
    partner_name: str,
    forwarded_params: Mapping[str, str],
    click_id: str,
    ip: str,
    status: int,
    response: str,
) -> str:
    esc = html.escape
    lines = [f"PARTNER: {esc(partner_name)}"]
    lines.extend(f"{esc(key)}={esc(value)}" for key, value in forwarded_params.items())
    lines.append(f"CLICKID: {esc(click_id)}")
    lines.append(f"IP: {esc(ip)}")
    lines.append(f"STATUS: {status}")
    lines.append(f"RESPONSE: {esc(response)}")
    return "\n".join(lines)


def passes_keyword_filter(message: str, keywords: Sequence[str] | None) -> bool:
    if keywords is None:
        return True
    haystack = html.unescape(message).lower()
    return any(kw and kw.lower() in haystack for kw in keywords)


def notification_targets(config: EffectiveConfig) -> list[NotificationTarget]:
    keywords = config.telegram_whitelist_keywords if config.telegram_whitelist_enabled else None
    targets = []

    if config.telegram_globally_enabled and config.telegram_enabled:
        targets.append(NotificationTarget(
            name="shared",
            bot_token=config.telegram_bot_token,
            channel_id=config.telegram_channel_id,
            keywords=keywords,
        ))

    if (
        config.partner_telegram_enabled
        and config.partner_telegram_bot_token
        and config.partner_telegram_channel_id
    ):
        targets.append(NotificationTarget(
            name="partner",
            bot_token=config.partner_telegram_bot_token,
            channel_id=config.partner_telegram_channel_id,
            keywords=keywords,
        ))

    return targets


async def send_telegram_message(
    client: httpx.AsyncClient,
    target: NotificationTarget,
    message: str,
) -> None:
    settings = get_settings()
    if not target.bot_token or not target.channel_id:
        raise NotificationFailed(f"{target.name} target has no credentials")

    try:
        resp = await client.post(
            f"{settings.telegram_api_base}/bot{target.bot_token}/sendMessage",
            data={"chat_id": target.channel_id, "text": message, "parse_mode": "HTML"},
            timeout=settings.notification_timeout_seconds,
        )
    except httpx.HTTPError as e:
        raise NotificationFailed(f"{target.name}: {e}") from e

    if resp.status_code != 200:
        raise NotificationFailed(f"{target.name}: telegram returned {resp.status_code}: {resp.text[:200]}")


async def dispatch_notifications(
    message: str,
    targets: Sequence[NotificationTarget],
    partner_id: str = "",
    client: httpx.AsyncClient | None = None,
) -> int:
    """Send to every eligible target. Returns the number of messages delivered."""
    eligible = [t for t in targets if passes_keyword_filter(message, t.keywords)]
    for target in targets:
        if target not in eligible:
            logger.info("notification_filtered", partner=partner_id, target=target.name)
    if not eligible:
        return 0

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient()

    async def send(target: NotificationTarget) -> bool:
        try:
            await send_telegram_message(client, target, message)
        except NotificationFailed as e:
            logger.warning("notification_failed", partner=partner_id, target=target.name, error=str(e))
            return False
        return True

    try:
        results = await asyncio.gather(*(send(t) for t in eligible))
    finally:
        if owns_client:
            await client.aclose()

    return sum(results)
