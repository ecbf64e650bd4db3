"""
Attribution — click id, sum and extra params from an inbound postback.

Rules:
  1. Click id   → first configured click-id key with a NON-EMPTY value.
                  Configured order wins, not the order seen in the query.
                  None found = MissingClickId (not billable, never forwarded).
  2. Raw sum    → first configured sum key that is PRESENT, even if empty.
                  No sum at all is fine.
  3. Extras     → everything that is not `pid`, a click-id key or a sum key.

Sum mapping is an exact-string lookup (raw → target). When it applies, every
sum key present in the forwarded params is rewritten to the target value.
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from tracker.core.config_resolver import EffectiveConfig
from tracker.core.errors import MissingClickId

PARTNER_ID_PARAM = "pid"


@dataclass(frozen=True)
class Attribution:
    click_id: str
    raw_sum: str
    extra_params: dict[str, str] = field(default_factory=dict)


def first_wins(items: Iterable[tuple[str, str]]) -> dict[str, str]:
    """Collapse repeated query keys, keeping the first occurrence."""
    params: dict[str, str] = {}
    for key, value in items:
        params.setdefault(key, value)
    return params


def extract_attribution(config: EffectiveConfig, params: Mapping[str, str]) -> Attribution:
    click_id = None
    for key in config.clickid_keys:
        if params.get(key):
            click_id = params[key]
            break

    if not click_id:
        raise MissingClickId()

    raw_sum = ""
    for key in config.sum_keys:
        if key in params:
            raw_sum = params[key]
            break

    known = {PARTNER_ID_PARAM, *config.clickid_keys, *config.sum_keys}
    extra_params = {k: v for k, v in params.items() if k not in known}

    return Attribution(click_id=click_id, raw_sum=raw_sum, extra_params=extra_params)


def map_sum(raw_sum: str, sum_mapping: Mapping[str, str]) -> str:
    """Return the mapped target value, or "" when no mapping applies."""
    if not raw_sum:
        return ""
    return sum_mapping.get(raw_sum, "")


def build_forward_params(
    params: Mapping[str, str],
    config: EffectiveConfig,
    mapped_sum: str,
) -> dict[str, str]:
    """Inbound params minus `pid`, with sum keys rewritten when a mapping applied."""
    forwarded = {k: v for k, v in params.items() if k != PARTNER_ID_PARAM}
    if mapped_sum:
        for key in config.sum_keys:
            if key in forwarded:
                forwarded[key] = mapped_sum
    return forwarded
