"""
Postback endpoint — /postback?pid={partner_id}&...

Flow:
  1. Rate limit per caller IP
  2. Resolve partner config (global settings overlaid by the partner record)
  3. IP allow-list
  4. Attribution: click id, raw sum, extra params
  5. Sum mapping
  6. Forward to the partner destination
  7. Record summary + detail stats
  8. Redirect log line (partner logging flag)
  9. After the response is sent: notifications + export enqueue

The caller gets the destination's status and body verbatim. Pipeline errors
map to 400/403/404/429/500 and are still recorded in the statistics once
the partner is known.
"""

import asyncio

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.config import get_settings
from tracker.core.access import check_ip_allowed
from tracker.core.attribution import (
    PARTNER_ID_PARAM,
    Attribution,
    build_forward_params,
    extract_attribution,
    first_wins,
    map_sum,
)
from tracker.core.config_resolver import PARTNER_ID_PATTERN, EffectiveConfig, resolve_config
from tracker.core.errors import MissingPartnerId, PipelineError, RateLimited
from tracker.core.export_queue import JobStore, build_export_job, enqueue_export, export_row
from tracker.core.forwarder import build_target_url, forward, truncate_response, url_path_with_query
from tracker.core.notifications import (
    MESSAGE_RESPONSE_WIDTH,
    NotificationTarget,
    compose_message,
    dispatch_notifications,
    notification_targets,
)
from tracker.core.stats import StatEvent, record_event
from tracker.middleware.rate_limit import get_client_ip, rate_limit_ip
from tracker.models.database import get_db
from tracker.models.tables import Partner

import structlog

logger = structlog.get_logger()
router = APIRouter()

DETAIL_RESPONSE_WIDTH = 150


def get_job_store() -> JobStore:
    """FastAPI dependency — the export queue."""
    return JobStore(get_settings().queue_dir)


async def _notify(message: str, targets: list[NotificationTarget], partner_id: str) -> None:
    budget = get_settings().notification_timeout_seconds + 1
    try:
        await asyncio.wait_for(dispatch_notifications(message, targets, partner_id), timeout=budget)
    except asyncio.TimeoutError:
        logger.warning("notification_timeout", partner=partner_id, budget_s=budget)


async def _partner_exists(db: AsyncSession, partner_id: str | None) -> bool:
    if not partner_id or not PARTNER_ID_PATTERN.fullmatch(partner_id):
        return False
    try:
        return await db.get(Partner, partner_id) is not None
    except SQLAlchemyError as e:
        logger.error("partner_lookup_failed", partner=partner_id, error=str(e))
        return False


def _error_response(error: PipelineError) -> Response:
    settings = get_settings()
    code = error.status_code
    if settings.debug:
        body = f"Error {code}: {error.message}"
    elif code == 403:
        body = "Access Denied"
    else:
        body = f"Error {code}"

    headers = None
    if isinstance(error, RateLimited):
        headers = {
            "Retry-After": str(error.retry_after),
            "X-RateLimit-Limit": str(error.limit),
            "X-RateLimit-Remaining": "0",
        }
    return PlainTextResponse(body, status_code=code, headers=headers)


def _raw_sum_for_failure(config: EffectiveConfig | None, params: dict[str, str]) -> str:
    keys = config.sum_keys if config else ("sum",)
    return next((params[k] for k in keys if k in params), "")


async def _record_failure(
    db: AsyncSession,
    error: PipelineError,
    partner_id: str | None,
    config: EffectiveConfig | None,
    attribution: Attribution | None,
    params: dict[str, str],
    original_url: str,
) -> None:
    # stats rows reference partners; unknown or malformed ids have nowhere to go
    if config is None and not (isinstance(error, RateLimited) and await _partner_exists(db, partner_id)):
        return

    settings = get_settings()
    await record_event(
        db,
        StatEvent(
            partner_id=partner_id,
            url=original_url,
            status=error.status_code,
            click_id=attribution.click_id if attribution else "N/A",
            response=f"Error: {error.message}",
            sum=_raw_sum_for_failure(config, params),
        ),
        success=False,
        retention=settings.detail_retention,
    )


@router.api_route("/postback", methods=["GET", "POST"])
async def postback(
    request: Request,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    store: JobStore = Depends(get_job_store),
):
    settings = get_settings()
    ip = get_client_ip(request)
    original_url = str(request.url)
    params = first_wins(request.query_params.multi_items())
    partner_id = params.get(PARTNER_ID_PARAM)

    config: EffectiveConfig | None = None
    attribution: Attribution | None = None

    try:
        # --- 1. Rate limiting ---
        rate_limit_ip(request)

        # --- 2. Config ---
        if not partner_id:
            raise MissingPartnerId()
        config = await resolve_config(db, partner_id)

        # --- 3. Access ---
        check_ip_allowed(config, ip)

        # --- 4-5. Attribution + sum mapping ---
        attribution = extract_attribution(config, params)
        mapped_sum = map_sum(attribution.raw_sum, config.sum_mapping)
        forwarded = build_forward_params(params, config, mapped_sum)

        # --- 6. Forward ---
        target_url = build_target_url(settings.forward_scheme, config.target_domain, forwarded)
        result = await forward(
            target_url,
            config,
            request.headers.get("user-agent") or settings.forward_user_agent,
        )
    except PipelineError as e:
        logger.warning(
            "postback_rejected",
            partner=partner_id,
            status=e.status_code,
            error=e.message,
            ip=ip,
        )
        await _record_failure(db, e, partner_id, config, attribution, params, original_url)
        return _error_response(e)

    # --- 7. Stats ---
    await record_event(
        db,
        StatEvent(
            partner_id=config.partner_id,
            url=original_url,
            status=result.status_code,
            click_id=attribution.click_id,
            response=truncate_response(result.text, DETAIL_RESPONSE_WIDTH),
            sum=attribution.raw_sum,
            sum_mapping=mapped_sum,
            extra_params=attribution.extra_params,
        ),
        success=True,
        retention=settings.detail_retention,
    )

    # --- 8. Redirect log ---
    if config.logging_enabled:
        logger.info(
            "redirect_logged",
            partner=config.name,
            url=url_path_with_query(original_url),
            target=url_path_with_query(target_url),
            click_id=attribution.click_id,
            ip=ip,
            status=result.status_code,
            response=truncate_response(result.text, DETAIL_RESPONSE_WIDTH),
        )

    # --- 9. Side effects, after the response ---
    targets = notification_targets(config)
    if targets:
        message = compose_message(
            config.name,
            forwarded,
            attribution.click_id,
            ip,
            result.status_code,
            truncate_response(result.text, MESSAGE_RESPONSE_WIDTH),
        )
        background.add_task(_notify, message, targets, config.partner_id)

    job = build_export_job(
        config,
        export_row(
            config,
            click_id=attribution.click_id,
            raw_sum=attribution.raw_sum,
            mapped_sum=mapped_sum,
            status=result.status_code,
            ip=ip,
            response_text=result.text,
            extra_params=attribution.extra_params,
        ),
    )
    if job is not None:
        background.add_task(enqueue_export, store, job, config.partner_id)

    headers = {"content-type": result.content_type} if result.content_type else None
    return Response(content=result.body, status_code=result.status_code, headers=headers)
