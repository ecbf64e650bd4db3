"""IP allow-list guard. Exact literal match only — no CIDR, no normalization."""

from tracker.core.config_resolver import EffectiveConfig
from tracker.core.errors import ForbiddenIp


def check_ip_allowed(config: EffectiveConfig, ip: str) -> None:
    if not config.ip_whitelist_enabled:
        return
    if ip not in config.allowed_ips:
        raise ForbiddenIp(ip)
