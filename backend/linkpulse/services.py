from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import case
from sqlalchemy.orm import Session

from .models import Link, ClickEvent
from .redis_client import RedisService
from .schemas import (
    ClickEventData,
    LinkLimits,
    LinkScript,
    LinkSnapshot,
    LinkState,
    RedirectRule,
)
from .utils import day_start, normalize_utc, utc_now, is_reserved_code
from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def _parse_items(model: Type[T], raw: Any, link_code: str) -> List[T]:
    """Validate stored JSON items one by one, dropping the malformed ones."""
    items: List[T] = []
    for entry in raw or []:
        try:
            items.append(model.model_validate(entry))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {model.__name__} on link {link_code}: {e.errors()[:1]}")
    return items


def clicks_today_as_of(link: Link, now: Optional[datetime] = None) -> int:
    """Stored clicks_today, or 0 when the last click happened before today started."""
    last_click = normalize_utc(link.last_click_at)
    if last_click is not None and last_click < day_start(now):
        return 0
    return link.clicks_today or 0


def to_snapshot(link: Link, now: Optional[datetime] = None) -> LinkSnapshot:
    """Convert an ORM row to the immutable view the decision pipeline works on."""
    code = str(link.short_code)

    try:
        limits = LinkLimits.model_validate(link.limits or {})
    except ValidationError as e:
        logger.warning(f"Ignoring malformed limits on link {code}: {e.errors()[:1]}")
        limits = LinkLimits()

    try:
        state = LinkState(link.state)
    except ValueError:
        logger.warning(f"Unknown state {link.state!r} on link {code}, treating as dead")
        state = LinkState.DEAD

    return LinkSnapshot(
        id=link.id,
        short_code=code,
        original_url=link.original_url,
        default_target_url=link.default_target_url,
        owner_id=link.owner_id,
        state=state,
        health_score=link.health_score if link.health_score is not None else 100,
        trust_score=link.trust_score if link.trust_score is not None else 100,
        rules=_parse_items(RedirectRule, link.rules, code),
        scripts=_parse_items(LinkScript, link.scripts, code),
        limits=limits,
        total_clicks=link.total_clicks or 0,
        unique_clicks=link.unique_clicks or 0,
        clicks_today=clicks_today_as_of(link, now),
        last_click_at=link.last_click_at,
        created_at=link.created_at,
    )


class LinkService:
    """Link store used by the redirect pipeline."""

    @staticmethod
    def find_by_short_code(db: Session, code: str, now: Optional[datetime] = None) -> Optional[LinkSnapshot]:
        """Snapshot of a link by its short code, or None."""
        link = db.query(Link).filter(Link.short_code == code).first()
        if not link:
            return None
        return to_snapshot(link, now)

    @staticmethod
    def create_link(
        db: Session,
        short_code: str,
        target_url: str,
        owner_id: Optional[str] = None,
        rules: Optional[List[Dict[str, Any]]] = None,
        scripts: Optional[List[Dict[str, Any]]] = None,
        limits: Optional[Dict[str, Any]] = None,
    ) -> tuple[Optional[Link], Optional[str]]:
        """
        Create a link with optional rules, scripts and limits.
        Returns (link, error_message).
        """
        if is_reserved_code(short_code):
            return None, "This short code is reserved"

        if db.query(Link).filter(Link.short_code == short_code).first():
            return None, "This short code is already taken"

        # Validate before storing so the redirect path never meets bad config
        try:
            stored_rules = [RedirectRule.model_validate(r).model_dump(mode="json") for r in rules or []]
            stored_scripts = [LinkScript.model_validate(s).model_dump(mode="json") for s in scripts or []]
            stored_limits = LinkLimits.model_validate(limits or {}).model_dump(mode="json", exclude_none=True)
        except ValidationError as e:
            return None, f"Invalid link configuration: {e.errors()[0]['msg']}"

        link = Link(
            short_code=short_code,
            original_url=target_url,
            default_target_url=target_url,
            owner_id=owner_id,
            rules=stored_rules,
            scripts=stored_scripts,
            limits=stored_limits,
        )
        db.add(link)
        db.commit()
        db.refresh(link)

        logger.info(f"Created link: {short_code} -> {target_url[:50]}...")
        return link, None

    @staticmethod
    def increment_total(db: Session, link_id: int, now: Optional[datetime] = None) -> None:
        """
        Atomically bump total and daily counters and stamp the click time.
        A daily count left over from an earlier day restarts at 1.
        """
        db.query(Link).filter(Link.id == link_id).update(
            {
                Link.total_clicks: Link.total_clicks + 1,
                Link.clicks_today: case(
                    (Link.last_click_at < day_start(now), 1),
                    else_=Link.clicks_today + 1,
                ),
                Link.last_click_at: normalize_utc(now) or utc_now(),
            },
            synchronize_session=False,
        )
        db.commit()

    @staticmethod
    def increment_unique(db: Session, link_id: int) -> None:
        db.query(Link).filter(Link.id == link_id).update(
            {Link.unique_clicks: Link.unique_clicks + 1},
            synchronize_session=False,
        )
        db.commit()

    @staticmethod
    def reset_daily_clicks(db: Session, now: Optional[datetime] = None) -> int:
        """
        Zero clicks_today on links whose last click is before the start of the
        current day. Idempotent, so a missed or repeated run is harmless.
        Returns the number of rows touched.
        """
        count = db.query(Link).filter(
            Link.clicks_today != 0,
            Link.last_click_at < day_start(now),
        ).update(
            {Link.clicks_today: 0},
            synchronize_session=False,
        )
        db.commit()
        if count:
            logger.info(f"Reset daily click counters on {count} links")
        return count


class ClickService:
    """Click store: append-only events plus per-link visitor uniqueness."""

    @staticmethod
    def append(db: Session, data: ClickEventData) -> ClickEvent:
        event = ClickEvent(**data.model_dump(), timestamp=utc_now())
        db.add(event)
        db.commit()
        db.refresh(event)
        RedisService.remember_visitor(data.link_id, data.ip_hash)
        return event

    @staticmethod
    def has_prior_click(db: Session, link_id: int, ip_hash: str) -> bool:
        """Whether this visitor hash has clicked this link before (lifetime)."""
        if RedisService.is_known_visitor(link_id, ip_hash):
            return True
        return db.query(ClickEvent.id).filter(
            ClickEvent.link_id == link_id,
            ClickEvent.ip_hash == ip_hash,
        ).first() is not None

    @staticmethod
    def recent_for_link(db: Session, link_id: int, limit: int = 20) -> List[ClickEvent]:
        return (
            db.query(ClickEvent)
            .filter(ClickEvent.link_id == link_id)
            .order_by(ClickEvent.timestamp.desc(), ClickEvent.id.desc())
            .limit(limit)
            .all()
        )
