from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, BigInteger, Float, JSON, Index
)
from sqlalchemy.sql import func
from .database import Base


class Link(Base):
    """Model for storing shortened links and their redirect configuration."""

    __tablename__ = "links"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    short_code = Column(String(20), unique=True, nullable=False, index=True)
    original_url = Column(Text, nullable=False)
    default_target_url = Column(Text, nullable=False)
    owner_id = Column(String(64), nullable=True, index=True)
    state = Column(String(16), default="active", nullable=False)
    health_score = Column(Integer, default=100, nullable=False)
    trust_score = Column(Integer, default=100, nullable=False)
    rules = Column(JSON, default=list, nullable=False)
    scripts = Column(JSON, default=list, nullable=False)
    limits = Column(JSON, default=dict, nullable=False)
    total_clicks = Column(BigInteger, default=0, nullable=False)
    unique_clicks = Column(BigInteger, default=0, nullable=False)
    clicks_today = Column(Integer, default=0, nullable=False)
    last_click_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_links_state', 'state'),
    )

    def __repr__(self):
        return f"<Link(code={self.short_code}, url={(self.default_target_url or '')[:50]}...)>"


class ClickEvent(Base):
    """Append-only record of one resolved redirect."""

    __tablename__ = "click_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    link_id = Column(BigInteger, nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now())
    ip = Column(String(64), nullable=False)
    ip_hash = Column(String(64), nullable=False, index=True)  # salted SHA-256 for privacy
    user_agent = Column(Text, nullable=True)
    fingerprint = Column(String(32), nullable=True)
    country = Column(String(2), nullable=True)
    city = Column(String(100), nullable=True)
    device = Column(String(20), nullable=True)  # desktop, mobile, tablet, bot
    os = Column(String(64), nullable=True)
    browser = Column(String(64), nullable=True)
    language = Column(String(8), nullable=True)
    referrer = Column(Text, nullable=True)
    is_bot = Column(Boolean, default=False, nullable=False)
    is_suspicious = Column(Boolean, default=False, nullable=False)
    fraud_score = Column(Integer, default=0, nullable=False)
    fraud_reasons = Column(JSON, default=list, nullable=False)
    redirected_to = Column(Text, nullable=False)
    rule_applied = Column(String(64), nullable=True)
    response_time_ms = Column(Integer, nullable=True)

    __table_args__ = (
        Index('idx_clicks_link_timestamp', 'link_id', 'timestamp'),
        Index('idx_clicks_link_ip_hash', 'link_id', 'ip_hash'),
    )

    def __repr__(self):
        return f"<ClickEvent(link_id={self.link_id}, at={self.timestamp})>"


class Webhook(Base):
    """Outbound notification endpoint registered by a link owner."""

    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False, index=True)
    url = Column(Text, nullable=False)
    secret = Column(String(128), nullable=False)
    events = Column(JSON, default=list, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    retry_delay_seconds = Column(Float, default=1.0, nullable=False)
    total_deliveries = Column(Integer, default=0, nullable=False)
    failed_deliveries = Column(Integer, default=0, nullable=False)
    last_delivery_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Webhook(owner={self.owner_id}, url={self.url})>"
