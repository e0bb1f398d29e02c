"""
Redirect orchestration.

lookup -> context -> fraud analysis -> target resolution -> scripts ->
click record -> counters -> webhooks -> redirect.

Only an unknown short code fails the request. Once a target is resolved the
redirect always goes out; persistence and notification failures are logged
and swallowed.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Mapping, Optional

from sqlalchemy.orm import Session

from .config import settings
from .context import get_client_ip, parse_context
from .engine import RedirectEngine, redirect_engine
from .fraud import FraudDetector, fraud_detector
from .geo import GeoLookup, build_geo_lookup, safe_lookup
from .schemas import (
    ClickEventData,
    ContextField,
    FraudAnalysis,
    LinkPreviewResponse,
    LinkSnapshot,
    RedirectContext,
    ScriptResult,
)
from .scripts import ScriptEngine, script_engine
from .services import ClickService, LinkService
from .utils import hash_ip, utc_now
from .webhooks import FRAUD_DETECTED, LINK_CLICKED, WebhookDispatcher, webhook_dispatcher
from .logging_config import get_logger

logger = get_logger(__name__)


class LinkNotFoundError(Exception):
    """No link exists for the requested short code."""

    def __init__(self, short_code: str):
        super().__init__(f"Link not found: {short_code}")
        self.short_code = short_code


@dataclass
class RedirectOutcome:
    url: str
    status_code: int = 302
    rule_id: Optional[str] = None
    denied: Optional[str] = None
    fraud: Optional[FraudAnalysis] = None
    scripts: List[ScriptResult] = field(default_factory=list)
    click_recorded: bool = False


class RedirectHandler:
    """Composes the decision components with the link, click and webhook stores."""

    def __init__(
        self,
        fraud: FraudDetector = fraud_detector,
        engine: RedirectEngine = redirect_engine,
        scripts: ScriptEngine = script_engine,
        webhooks: WebhookDispatcher = webhook_dispatcher,
        geo: Optional[GeoLookup] = None,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self.fraud = fraud
        self.engine = engine
        self.scripts = scripts
        self.webhooks = webhooks
        self.geo = geo if geo is not None else build_geo_lookup()
        self._timer = timer

    def handle(
        self,
        db: Session,
        short_code: str,
        headers: Mapping[str, str],
        query_params: Optional[Mapping[str, str]] = None,
        remote_addr: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RedirectOutcome:
        started = self._timer()
        headers = {k.lower(): v for k, v in headers.items()}

        link = LinkService.find_by_short_code(db, short_code, now)
        if link is None:
            raise LinkNotFoundError(short_code)

        ip = get_client_ip(headers, remote_addr)
        location = safe_lookup(self.geo, ip)
        context = parse_context(headers, query_params, remote_addr, now=now, location=location)
        user_agent = headers.get("user-agent", "")

        fraud = self._analyze(ip, user_agent, headers, context)
        target = self.engine.resolve_target(link, context, now)
        outcome = RedirectOutcome(
            url=target.url,
            rule_id=target.rule_id,
            denied=target.denied,
            fraud=fraud,
        )

        if target.denied:
            logger.info(f"Link {short_code} soft-denied ({target.denied}) -> {target.url}")
            if not settings.RECORD_SOFT_DENIED_CLICKS:
                return outcome

        if not target.denied:
            outcome.scripts = self._evaluate_scripts(link)

        ip_hash = hash_ip(ip)
        is_new_visitor = self._is_new_visitor(db, link.id, ip_hash)

        click = ClickEventData(
            link_id=link.id,
            ip=ip,
            ip_hash=ip_hash,
            user_agent=user_agent,
            fingerprint=fraud.fingerprint,
            country=context.country,
            city=location.city if location else None,
            device=str(context.value_of(ContextField.DEVICE) or "unknown"),
            os=context.os or "unknown",
            browser=context.browser or "unknown",
            language=context.language,
            referrer=context.referrer,
            is_bot=fraud.is_bot,
            is_suspicious=fraud.is_suspicious,
            fraud_score=fraud.fraud_score,
            fraud_reasons=fraud.reasons,
            redirected_to=target.url,
            rule_applied=target.rule_id,
            response_time_ms=int((self._timer() - started) * 1000),
        )
        outcome.click_recorded = self._record_click(db, click)

        # Soft-denied hits may be recorded for visibility but never count as clicks
        if not target.denied:
            self._increment_counters(db, link.id, is_new_visitor, now)

        self._notify(link, context, fraud, target.url)
        return outcome

    def preview(self, db: Session, short_code: str) -> LinkPreviewResponse:
        link = LinkService.find_by_short_code(db, short_code)
        if link is None:
            raise LinkNotFoundError(short_code)
        return LinkPreviewResponse(
            short_code=link.short_code,
            target_url=link.default_target_url,
            state=link.state,
            total_clicks=link.total_clicks,
            created_at=link.created_at,
        )

    def _analyze(self, ip: str, user_agent: str, headers, context: RedirectContext) -> FraudAnalysis:
        try:
            return self.fraud.analyze(ip, user_agent, headers, context)
        except Exception as e:
            logger.error(f"Fraud analysis failed, treating hit as clean: {e}")
            return FraudAnalysis(
                is_bot=False, is_suspicious=False, fraud_score=0, reasons=[], fingerprint=""
            )

    def _evaluate_scripts(self, link: LinkSnapshot) -> List[ScriptResult]:
        try:
            results = self.scripts.evaluate(link)
        except Exception as e:
            logger.error(f"Script evaluation failed for link {link.short_code}: {e}")
            return []
        # TODO: hand triggered actions to an executor queue once pause/notify/switch_target have real effects
        for result in results:
            logger.info(
                f"Script {result.script_id} triggered on link {link.short_code}: "
                f"{result.action.value} {result.params}"
            )
        return results

    @staticmethod
    def _is_new_visitor(db: Session, link_id: int, ip_hash: str) -> bool:
        try:
            return not ClickService.has_prior_click(db, link_id, ip_hash)
        except Exception as e:
            db.rollback()
            logger.warning(f"Uniqueness check failed for link {link_id}: {e}")
            return False

    @staticmethod
    def _record_click(db: Session, click: ClickEventData) -> bool:
        try:
            ClickService.append(db, click)
            return True
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record click for link {click.link_id}: {e}")
            return False

    @staticmethod
    def _increment_counters(db: Session, link_id: int, is_new_visitor: bool, now: Optional[datetime] = None) -> None:
        try:
            LinkService.increment_total(db, link_id, now)
            if is_new_visitor:
                LinkService.increment_unique(db, link_id)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to update counters for link {link_id}: {e}")

    def _notify(self, link: LinkSnapshot, context: RedirectContext, fraud: FraudAnalysis, target_url: str) -> None:
        payload = {
            "link_id": link.id,
            "short_code": link.short_code,
            "target_url": target_url,
            "country": context.country,
            "device": context.value_of(ContextField.DEVICE),
            "is_bot": fraud.is_bot,
            "timestamp": utc_now().isoformat(),
        }
        try:
            self.webhooks.trigger(link.owner_id, LINK_CLICKED, payload)
            if fraud.is_bot or fraud.is_suspicious:
                self.webhooks.trigger(link.owner_id, FRAUD_DETECTED, {
                    **payload,
                    "fraud_score": fraud.fraud_score,
                    "reasons": fraud.reasons,
                    "fingerprint": fraud.fingerprint,
                })
        except Exception as e:
            logger.warning(f"Webhook dispatch failed for link {link.short_code}: {e}")


redirect_handler = RedirectHandler()
