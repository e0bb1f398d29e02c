"""
Redirect target resolution.

Order of evaluation is fixed: link state, then limits, then active rules by
ascending priority (first match wins), then the default target. Nothing in
this module performs I/O or mutates the link.
"""

from datetime import datetime
from typing import Optional, Tuple

from .schemas import (
    LinkSnapshot,
    LinkState,
    RedirectContext,
    RedirectRule,
    ResolvedTarget,
    RuleCondition,
    RuleOperator,
)
from .utils import normalize_utc, utc_now

PAUSED_URL = "/paused"
EXPIRED_URL = "/expired"
NOT_FOUND_URL = "/not-found"
LIMIT_REACHED_URL = "/limit-reached"
NOT_YET_ACTIVE_URL = "/not-yet-active"
GEO_BLOCKED_URL = "/geo-blocked"

STATE_URLS = {
    LinkState.PAUSED: PAUSED_URL,
    LinkState.EXPIRED: EXPIRED_URL,
    LinkState.DEAD: NOT_FOUND_URL,
}


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def evaluate_condition(cond: RuleCondition, context: RedirectContext) -> bool:
    """Unknown context values never match, whatever the operator."""
    value = context.value_of(cond.field)
    if value is None:
        return False

    op = cond.operator
    expected = cond.value

    if op is RuleOperator.EQ:
        return value == expected
    if op is RuleOperator.NEQ:
        return value != expected
    if op is RuleOperator.IN:
        return isinstance(expected, list) and value in expected
    if op is RuleOperator.NIN:
        return isinstance(expected, list) and value not in expected
    if op in (RuleOperator.GT, RuleOperator.LT, RuleOperator.GTE, RuleOperator.LTE):
        if not (_is_number(value) and _is_number(expected)):
            return False
        if op is RuleOperator.GT:
            return value > expected
        if op is RuleOperator.LT:
            return value < expected
        if op is RuleOperator.GTE:
            return value >= expected
        return value <= expected
    if op is RuleOperator.CONTAINS:
        return isinstance(value, str) and isinstance(expected, str) and expected in value
    return False


def evaluate_rule(rule: RedirectRule, context: RedirectContext) -> bool:
    return all(evaluate_condition(cond, context) for cond in rule.conditions)


def check_limits(
    link: LinkSnapshot,
    context: RedirectContext,
    now: Optional[datetime] = None,
) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Returns (allowed, fallback_url, reason). The first violated limit wins.
    Geo restrictions are skipped when the country is unknown.
    """
    limits = link.limits
    now = normalize_utc(now) or utc_now()

    if limits.max_clicks and link.total_clicks >= limits.max_clicks:
        return False, EXPIRED_URL, "max_clicks"

    if limits.max_clicks_per_day and link.clicks_today >= limits.max_clicks_per_day:
        return False, LIMIT_REACHED_URL, "max_clicks_per_day"

    valid_from = normalize_utc(limits.valid_from)
    if valid_from and now < valid_from:
        return False, NOT_YET_ACTIVE_URL, "not_yet_active"

    expires_at = normalize_utc(limits.expires_at)
    if expires_at and now > expires_at:
        return False, EXPIRED_URL, "expired"

    country = context.country.upper() if context.country else None
    if country:
        if limits.allowed_countries and country not in limits.allowed_countries:
            return False, GEO_BLOCKED_URL, "geo_blocked"
        if country in limits.blocked_countries:
            return False, GEO_BLOCKED_URL, "geo_blocked"

    return True, None, None


class RedirectEngine:
    """Pure decision function from (link, context) to a target URL."""

    def resolve_target(
        self,
        link: LinkSnapshot,
        context: RedirectContext,
        now: Optional[datetime] = None,
    ) -> ResolvedTarget:
        if link.state is not LinkState.ACTIVE:
            if link.state in STATE_URLS:
                return ResolvedTarget(url=STATE_URLS[link.state], denied=link.state.value)
            return ResolvedTarget(url=link.default_target_url)

        allowed, fallback_url, reason = check_limits(link, context, now)
        if not allowed:
            return ResolvedTarget(url=fallback_url or link.default_target_url, denied=reason)

        # sorted() is stable, so equal priorities keep their stored order
        active_rules = sorted(
            (rule for rule in link.rules if rule.active),
            key=lambda rule: rule.priority,
        )
        for rule in active_rules:
            if evaluate_rule(rule, context):
                return ResolvedTarget(url=rule.target_url, rule_id=rule.id)

        return ResolvedTarget(url=link.default_target_url)


redirect_engine = RedirectEngine()
