"""
Forwarder — one outbound call to the partner destination.

Any received response counts as a successful redirect, whatever its status:
the destination's status and body go back to the caller verbatim. Only a
transport failure (no response at all, or the total timeout elapsing) is an
error, and it is fatal for the request — no retries here.
"""

import asyncio
import re
from dataclasses import dataclass
from urllib.parse import urlencode, urlparse

import httpx

from tracker.core.config_resolver import EffectiveConfig
from tracker.core.errors import ForwardUnavailable

import structlog

logger = structlog.get_logger()

_TAG_RE = re.compile(r"<[^>]*>")


@dataclass(frozen=True)
class ForwardResult:
    url: str
    status_code: int
    body: bytes
    text: str
    content_type: str | None
    elapsed_ms: int


def build_target_url(scheme: str, host: str, params: dict[str, str]) -> str:
    return f"{scheme}://{host}?{urlencode(params)}"


def url_path_with_query(url: str | None) -> str:
    """`/path?query` part of a URL, for compact log lines."""
    if not url:
        return ""
    parsed = urlparse(url)
    path = parsed.path or "/"
    return f"{path}?{parsed.query}" if parsed.query else path


def truncate_response(text: str, width: int) -> str:
    """Strip markup and trim to `width` characters including the trailing marker."""
    stripped = _TAG_RE.sub("", text or "")
    if len(stripped) <= width:
        return stripped
    return stripped[: max(width - 3, 0)] + "..."


async def forward(
    url: str,
    config: EffectiveConfig,
    user_agent: str,
    client: httpx.AsyncClient | None = None,
) -> ForwardResult:
    timeout = httpx.Timeout(config.forward_timeout, connect=config.forward_connect_timeout)
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            verify=config.forward_ssl_verify,
            follow_redirects=True,
            timeout=timeout,
        )

    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        # httpx timeouts are per-phase; wait_for caps the whole exchange
        resp = await asyncio.wait_for(
            client.get(url, headers={"User-Agent": user_agent}, follow_redirects=True, timeout=timeout),
            timeout=config.forward_timeout,
        )
    except (httpx.HTTPError, asyncio.TimeoutError) as e:
        reason = str(e) or type(e).__name__
        logger.warning("forward_failed", partner=config.partner_id, url=url, error=reason)
        raise ForwardUnavailable(url, reason) from e
    finally:
        if owns_client:
            await client.aclose()

    elapsed_ms = int((loop.time() - started) * 1000)
    logger.info(
        "forward_completed",
        partner=config.partner_id,
        status=resp.status_code,
        elapsed_ms=elapsed_ms,
    )
    return ForwardResult(
        url=url,
        status_code=resp.status_code,
        body=resp.content,
        text=resp.text,
        content_type=resp.headers.get("content-type"),
        elapsed_ms=elapsed_ms,
    )
