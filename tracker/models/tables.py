"""
Database models — the store behind the postback pipeline.

Design principles:
  - settings and partners are owned by the admin surface; the pipeline only reads them
  - multi-valued partner fields are stored serialized (JSON text) and decoded on read
  - summary_stats is one counter row per partner, updated by atomic upsert
  - detailed_stats is append-only, bounded per partner by the retention window
  - deleting a partner cascades its statistics
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER PRIMARY KEY
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Configuration tables (read-only for the pipeline)
# ---------------------------------------------------------------------------

class Setting(Base):
    """Global key/value settings. Values are JSON text ("true", "10", "\"abc\"") or raw strings."""
    __tablename__ = "settings"

    setting_key = Column(String(50), primary_key=True)
    setting_value = Column(Text, nullable=True)


class Partner(Base):
    __tablename__ = "partners"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    notes = Column(Text, nullable=True)

    # Where postbacks are forwarded (host, optionally with path)
    target_domain = Column(String(255), nullable=False)

    # Attribution rules — serialized JSON lists/tables
    clickid_keys = Column(Text, nullable=True)               # ["clickid", "cid"]
    sum_keys = Column(Text, nullable=True)                   # ["sum", "payout"]
    sum_mapping = Column(Text, nullable=True)                # {"10": "7.5"}

    # Logging + notifications
    logging_enabled = Column(Boolean, default=True)
    telegram_enabled = Column(Boolean, default=True)
    telegram_whitelist_enabled = Column(Boolean, default=False)
    telegram_whitelist_keywords = Column(Text, nullable=True)  # ["sale", "approved"]
    partner_telegram_enabled = Column(Boolean, default=False)
    partner_telegram_bot_token = Column(String(255), nullable=True)
    partner_telegram_channel_id = Column(String(255), nullable=True)

    # Access control
    ip_whitelist_enabled = Column(Boolean, default=False)
    allowed_ips = Column(Text, nullable=True)                # ["203.0.113.7"]

    # Spreadsheet export target
    google_spreadsheet_id = Column(String(255), nullable=True)
    google_sheet_name = Column(String(255), nullable=True)
    google_service_account_json = Column(Text, nullable=True)

    # Forwarding overrides (NULL = use global setting)
    forward_timeout = Column(Float, nullable=True)
    forward_connect_timeout = Column(Float, nullable=True)
    forward_ssl_verify = Column(Boolean, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ---------------------------------------------------------------------------
# Statistics tables
# ---------------------------------------------------------------------------

class SummaryStat(Base):
    """
    One row per partner. total_requests == successful_redirects + errors,
    kept true by always incrementing total together with exactly one bucket.
    """
    __tablename__ = "summary_stats"

    partner_id = Column(
        String(100),
        ForeignKey("partners.id", ondelete="CASCADE"),
        primary_key=True,
    )
    total_requests = Column(Integer, nullable=False, default=0)
    successful_redirects = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)


class DetailStat(Base):
    """Append-only per-event log. At most `detail_retention` rows kept per partner."""
    __tablename__ = "detailed_stats"

    stat_id = Column(BigIntId, primary_key=True, autoincrement=True)
    partner_id = Column(
        String(100),
        ForeignKey("partners.id", ondelete="CASCADE"),
        nullable=False,
    )
    timestamp = Column(DateTime(timezone=True), nullable=False)
    url = Column(Text, nullable=True)                        # original inbound URL
    status = Column(SmallInteger, nullable=True)             # forwarded (or error) status
    click_id = Column(String(255), nullable=True)
    response = Column(Text, nullable=True)                   # truncated, tags stripped
    sum = Column(String(50), nullable=True)
    sum_mapping = Column(String(50), nullable=True)
    extra_params = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_detailed_stats_partner_ts", "partner_id", "timestamp"),
    )
