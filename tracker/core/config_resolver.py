"""
Config resolution — global settings overlaid by one partner record.

Precedence for every key (highest first):
  1. partner record column (when not NULL)
  2. global `settings` row
  3. process fallback from `Settings` (env)

Serialized fields are decoded once, here, into a tagged union:
  Decoded(value) — the stored text was valid JSON
  Raw(text)      — it wasn't; kept as the opaque string
Typed accessors then turn Raw into "absent" for list/table slots, so a
malformed stored value only degrades that one field.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.config import Settings, get_settings
from tracker.core.errors import InvalidPartnerId, PartnerNotFound
from tracker.models.tables import Partner, Setting

import structlog

logger = structlog.get_logger()

PARTNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,50}$")

# Partner columns stored as JSON text
SERIALIZED_FIELDS = (
    "clickid_keys",
    "sum_keys",
    "sum_mapping",
    "telegram_whitelist_keywords",
    "allowed_ips",
)

# Older installs stored forwarding settings under these keys
LEGACY_SETTING_KEYS = {
    "curl_timeout": "forward_timeout",
    "curl_connect_timeout": "forward_connect_timeout",
    "curl_ssl_verify": "forward_ssl_verify",
}

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Decoded:
    value: Any


@dataclass(frozen=True)
class Raw:
    text: str


FieldValue = Union[Decoded, Raw]


def decode_field(value: Any) -> FieldValue:
    """Decode a stored value. Never raises."""
    if not isinstance(value, str):
        return Decoded(value)
    try:
        return Decoded(json.loads(value))
    except ValueError:
        return Raw(value)


# ---------------------------------------------------------------------------
# Typed accessors
# ---------------------------------------------------------------------------

def _as_list(fv: FieldValue | None) -> tuple[str, ...]:
    if isinstance(fv, Decoded) and isinstance(fv.value, list):
        return tuple(str(v) for v in fv.value if v is not None)
    return ()


def _as_table(fv: FieldValue | None) -> dict[str, str]:
    if isinstance(fv, Decoded) and isinstance(fv.value, dict):
        return {str(k): "" if v is None else str(v) for k, v in fv.value.items()}
    return {}


def _as_str(fv: FieldValue | None) -> str:
    if fv is None:
        return ""
    if isinstance(fv, Raw):
        return fv.text
    value = fv.value
    if value is None or isinstance(value, (list, dict)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_bool(fv: FieldValue | None, default: bool = False) -> bool:
    if fv is None:
        return default
    if isinstance(fv, Decoded):
        value = fv.value
        if value is None:
            return default
        if isinstance(value, (bool, int, float)):
            return bool(value)
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return bool(value)
    return fv.text.strip().lower() in _TRUTHY


def _as_seconds(fv: FieldValue | None, default: float) -> float:
    if fv is None:
        return default
    raw = fv.value if isinstance(fv, Decoded) else fv.text
    if isinstance(raw, bool) or raw is None:
        return default
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return default
    return seconds if seconds > 0 else default


# ---------------------------------------------------------------------------
# Effective configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EffectiveConfig:
    partner_id: str
    name: str
    target_domain: str

    # Attribution
    clickid_keys: tuple[str, ...] = ()
    sum_keys: tuple[str, ...] = ()
    sum_mapping: dict[str, str] = field(default_factory=dict)

    # Logging + notifications
    logging_enabled: bool = False
    telegram_globally_enabled: bool = False
    telegram_enabled: bool = False
    telegram_bot_token: str = ""
    telegram_channel_id: str = ""
    telegram_whitelist_enabled: bool = False
    telegram_whitelist_keywords: tuple[str, ...] = ()
    partner_telegram_enabled: bool = False
    partner_telegram_bot_token: str = ""
    partner_telegram_channel_id: str = ""

    # Access control
    ip_whitelist_enabled: bool = False
    allowed_ips: tuple[str, ...] = ()

    # Export
    google_spreadsheet_id: str = ""
    google_sheet_name: str = ""
    google_service_account_json: str = ""

    # Forwarding
    forward_timeout: float = 10.0
    forward_connect_timeout: float = 5.0
    forward_ssl_verify: bool = True

    @property
    def has_export_target(self) -> bool:
        return bool(
            self.google_spreadsheet_id
            and self.google_sheet_name
            and self.google_service_account_json
        )


def merge_config(
    global_settings: Mapping[str, Any],
    partner: Mapping[str, Any],
    settings: Settings | None = None,
) -> EffectiveConfig:
    """Pure merge: global settings, overlaid by non-NULL partner values, onto env fallbacks."""
    settings = settings or get_settings()

    merged: dict[str, FieldValue] = {}
    for key, value in global_settings.items():
        if value is None:
            continue
        merged[LEGACY_SETTING_KEYS.get(key, key)] = decode_field(value)

    for key, value in partner.items():
        if value is None:
            continue
        if key in SERIALIZED_FIELDS:
            merged[key] = decode_field(value)
            if isinstance(merged[key], Raw):
                logger.warning("config_field_undecodable", partner=partner.get("id"), field=key)
        else:
            merged[key] = Decoded(value)

    def get(key: str) -> FieldValue | None:
        return merged.get(key)

    return EffectiveConfig(
        partner_id=_as_str(get("id")),
        name=_as_str(get("name")),
        target_domain=_as_str(get("target_domain")),
        clickid_keys=_as_list(get("clickid_keys")),
        sum_keys=_as_list(get("sum_keys")),
        sum_mapping=_as_table(get("sum_mapping")),
        logging_enabled=_as_bool(get("logging_enabled")),
        telegram_globally_enabled=_as_bool(get("telegram_globally_enabled")),
        telegram_enabled=_as_bool(get("telegram_enabled")),
        telegram_bot_token=_as_str(get("telegram_bot_token")),
        telegram_channel_id=_as_str(get("telegram_channel_id")),
        telegram_whitelist_enabled=_as_bool(get("telegram_whitelist_enabled")),
        telegram_whitelist_keywords=_as_list(get("telegram_whitelist_keywords")),
        partner_telegram_enabled=_as_bool(get("partner_telegram_enabled")),
        partner_telegram_bot_token=_as_str(get("partner_telegram_bot_token")),
        partner_telegram_channel_id=_as_str(get("partner_telegram_channel_id")),
        ip_whitelist_enabled=_as_bool(get("ip_whitelist_enabled")),
        allowed_ips=_as_list(get("allowed_ips")),
        google_spreadsheet_id=_as_str(get("google_spreadsheet_id")),
        google_sheet_name=_as_str(get("google_sheet_name")),
        google_service_account_json=_as_str(get("google_service_account_json")),
        forward_timeout=_as_seconds(get("forward_timeout"), settings.forward_timeout_seconds),
        forward_connect_timeout=_as_seconds(
            get("forward_connect_timeout"), settings.forward_connect_timeout_seconds
        ),
        forward_ssl_verify=_as_bool(get("forward_ssl_verify"), settings.forward_ssl_verify),
    )


def validate_partner_id(partner_id: str) -> str:
    if not PARTNER_ID_PATTERN.fullmatch(partner_id or ""):
        raise InvalidPartnerId()
    return partner_id


def _row_to_mapping(row: Partner) -> dict[str, Any]:
    return {column.key: getattr(row, column.key) for column in Partner.__table__.columns}


async def resolve_config(db: AsyncSession, partner_id: str) -> EffectiveConfig:
    """Read settings + partner and merge them. Pure read, no writes."""
    validate_partner_id(partner_id)

    result = await db.execute(select(Setting.setting_key, Setting.setting_value))
    global_settings = {key: value for key, value in result.all()}

    partner = await db.get(Partner, partner_id)
    if partner is None:
        raise PartnerNotFound(partner_id)

    return merge_config(global_settings, _row_to_mapping(partner))
