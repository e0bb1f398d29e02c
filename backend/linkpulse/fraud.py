"""
Heuristic bot and click-fraud scoring.

Scores are additive and capped at 100. Two signals are stateful: click
velocity per fingerprint (sliding window) and repetition per IP (a counter
cleared by the periodic sweep). Both live in process memory only, so a restart
starts every visitor from zero.
"""

import hashlib
import re
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .schemas import ContextField, FraudAnalysis, RedirectContext
from .config import settings
from .logging_config import get_logger

logger = get_logger(__name__)

BOT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"bot", r"crawler", r"spider", r"scraper",
        r"curl", r"wget", r"python", r"java/",
        r"headless", r"phantom", r"selenium",
        r"googlebot", r"bingbot", r"yandex",
        r"facebookexternalhit", r"twitterbot",
    )
]

SUSPICIOUS_PATTERNS = [
    re.compile(r"^$"),
    re.compile(r"^-$"),
    re.compile(r"test", re.IGNORECASE),
]

# Literal prefixes of large cloud provider ranges
DATACENTER_PREFIXES = ("34.", "35.", "52.", "54.", "104.", "108.", "157.", "159.")

SCORE_CAP = 100
BOT_THRESHOLD = 80
SUSPICIOUS_THRESHOLD = 40

KNOWN_BOT_UA_SCORE = 80
SUSPICIOUS_UA_SCORE = 30
NO_ACCEPT_LANGUAGE_SCORE = 15
NO_ACCEPT_HEADER_SCORE = 10
DATACENTER_SCORE = 20

# (clicks in window strictly above, score), checked top down
VELOCITY_TIERS = ((50, 50), (20, 30), (10, 15))
BURST_INTERVAL_SECONDS = 1.0
BURST_SCORE = 25

# (hits already seen from the IP strictly above, score), checked top down
IP_TIERS = ((100, 40), (50, 20), (20, 10))


class FraudDetector:
    """
    Owns the per-fingerprint and per-IP state behind one lock so concurrent
    analyze() calls never lose increments.
    """

    def __init__(
        self,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds or settings.FRAUD_WINDOW_SECONDS
        self._clock = clock
        self._lock = threading.Lock()
        self._click_history: Dict[str, List[float]] = {}
        self._ip_click_counts: Dict[str, int] = {}

    def analyze(
        self,
        ip: str,
        user_agent: Optional[str],
        headers: Mapping[str, str],
        context: RedirectContext,
    ) -> FraudAnalysis:
        """Score one hit. Reasons are listed in evaluation order."""
        headers = {k.lower(): v for k, v in headers.items()}
        ua = user_agent or ""
        reasons: List[str] = []
        score = 0

        fingerprint = self.generate_fingerprint(ip, ua, headers, context)

        is_known_bot = any(p.search(ua) for p in BOT_PATTERNS)
        if is_known_bot:
            reasons.append("known_bot_ua")
            score += KNOWN_BOT_UA_SCORE

        if any(p.search(ua) for p in SUSPICIOUS_PATTERNS):
            reasons.append("suspicious_ua")
            score += SUSPICIOUS_UA_SCORE

        if not headers.get("accept-language"):
            reasons.append("no_accept_language")
            score += NO_ACCEPT_LANGUAGE_SCORE

        if not headers.get("accept"):
            reasons.append("no_accept_header")
            score += NO_ACCEPT_HEADER_SCORE

        velocity_score = self._check_click_velocity(fingerprint)
        if velocity_score > 0:
            reasons.append("high_click_velocity")
            score += velocity_score

        ip_score = self._check_ip_reputation(ip)
        if ip_score > 0:
            reasons.append("suspicious_ip_activity")
            score += ip_score

        if self.looks_like_datacenter(ip):
            reasons.append("datacenter_ip")
            score += DATACENTER_SCORE

        score = max(0, min(score, SCORE_CAP))

        analysis = FraudAnalysis(
            is_bot=is_known_bot or score >= BOT_THRESHOLD,
            is_suspicious=score >= SUSPICIOUS_THRESHOLD,
            fraud_score=score,
            reasons=reasons,
            fingerprint=fingerprint,
        )
        if analysis.is_suspicious:
            logger.info(f"Suspicious hit fp={fingerprint} score={score} reasons={reasons}")
        return analysis

    @staticmethod
    def generate_fingerprint(
        ip: str,
        user_agent: str,
        headers: Mapping[str, str],
        context: RedirectContext,
    ) -> str:
        """Correlation key for velocity tracking. Not an identity."""
        components = [
            ip or "",
            user_agent or "",
            headers.get("accept-language") or "",
            headers.get("accept-encoding") or "",
            str(context.value_of(ContextField.DEVICE) or ""),
            context.os or "",
        ]
        return hashlib.sha256("|".join(components).encode()).hexdigest()[:16]

    def _check_click_velocity(self, fingerprint: str) -> int:
        now = self._clock()
        cutoff = now - self.window_seconds

        with self._lock:
            history = self._click_history.get(fingerprint, [])
            history.append(now)
            recent = [t for t in history if t > cutoff]
            self._click_history[fingerprint] = recent

        score = 0
        for threshold, tier_score in VELOCITY_TIERS:
            if len(recent) > threshold:
                score = tier_score
                break

        if len(recent) >= 2 and recent[-1] - recent[-2] < BURST_INTERVAL_SECONDS:
            score += BURST_SCORE

        return score

    def _check_ip_reputation(self, ip: str) -> int:
        with self._lock:
            seen = self._ip_click_counts.get(ip, 0)
            self._ip_click_counts[ip] = seen + 1

        for threshold, tier_score in IP_TIERS:
            if seen > threshold:
                return tier_score
        return 0

    @staticmethod
    def looks_like_datacenter(ip: str) -> bool:
        return bool(ip) and ip.startswith(DATACENTER_PREFIXES)

    def cleanup(self) -> Tuple[int, int]:
        """
        Drop fingerprints with no clicks inside the window and clear every IP
        counter. Returns (fingerprints_removed, ips_cleared).
        """
        cutoff = self._clock() - self.window_seconds
        removed = 0

        with self._lock:
            for fingerprint in list(self._click_history):
                recent = [t for t in self._click_history[fingerprint] if t > cutoff]
                if recent:
                    self._click_history[fingerprint] = recent
                else:
                    del self._click_history[fingerprint]
                    removed += 1
            ips_cleared = len(self._ip_click_counts)
            self._ip_click_counts.clear()

        logger.debug(f"Fraud state sweep: {removed} fingerprints pruned, {ips_cleared} IP counters cleared")
        return removed, ips_cleared

    def tracked_fingerprints(self) -> int:
        with self._lock:
            return len(self._click_history)

    def reset(self) -> None:
        with self._lock:
            self._click_history.clear()
            self._ip_click_counts.clear()


# Process-wide detector shared by every request
fraud_detector = FraudDetector()
