"""
Link script trigger evaluation.

A script condition is a tiny expression: `<field> <op> <integer>`, or one of
the literals `always` / `never`. Conditions are tokenized into a typed
ScriptCondition; anything that does not parse is inert and never fires.
The engine only reports which actions should fire; executing them is up to
the caller.
"""

import operator
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from .schemas import LinkScript, LinkSnapshot, ScriptResult
from .utils import clock_now, day_of_week
from .logging_config import get_logger

logger = get_logger(__name__)


class ScriptField(str, Enum):
    CLICKS_TODAY = "clicks_today"
    CLICKS_HOUR = "clicks_hour"
    TOTAL_CLICKS = "total_clicks"
    HOUR = "hour"
    DAY = "day"
    HEALTH_SCORE = "health_score"
    TRUST_SCORE = "trust_score"


COMPARATORS: Dict[str, Callable[[int, int], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

TOKEN_RE = re.compile(
    r"\s*(?:(?P<ident>[A-Za-z_]+)|(?P<op>>=|<=|==|!=|>|<)|(?P<int>\d+))"
)


@dataclass(frozen=True)
class ScriptCondition:
    field: ScriptField
    op: str
    threshold: int

    def holds(self, stats: "ScriptStats") -> bool:
        return COMPARATORS[self.op](stats.value_of(self.field), self.threshold)


@dataclass(frozen=True)
class ConstantCondition:
    result: bool

    def holds(self, stats: "ScriptStats") -> bool:
        return self.result


ALWAYS = ConstantCondition(True)
NEVER = ConstantCondition(False)


class ScriptStats(BaseModel):
    """Numbers a script condition can compare against."""

    clicks_today: int = 0
    clicks_this_hour: int = 0
    total_clicks: int = 0
    hour_of_day: int = 0
    day_of_week: int = 0
    health_score: int = 100
    trust_score: int = 100

    def value_of(self, field: ScriptField) -> int:
        return {
            ScriptField.CLICKS_TODAY: self.clicks_today,
            ScriptField.CLICKS_HOUR: self.clicks_this_hour,
            ScriptField.TOTAL_CLICKS: self.total_clicks,
            ScriptField.HOUR: self.hour_of_day,
            ScriptField.DAY: self.day_of_week,
            ScriptField.HEALTH_SCORE: self.health_score,
            ScriptField.TRUST_SCORE: self.trust_score,
        }[field]


def tokenize(text: str) -> Optional[List[tuple]]:
    """Split a condition into (kind, value) tokens, or None on stray characters."""
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            return None
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


@lru_cache(maxsize=1024)
def parse_condition(text: str) -> Optional[Union[ScriptCondition, ConstantCondition]]:
    """Parse a condition string. Returns None when it is not understood."""
    if not isinstance(text, str):
        return None
    tokens = tokenize(text)
    if not tokens:
        return None

    if len(tokens) == 1 and tokens[0][0] == "ident":
        word = tokens[0][1].lower()
        if word == "always":
            return ALWAYS
        if word == "never":
            return NEVER
        return None

    if len(tokens) != 3:
        return None
    (k1, name), (k2, op), (k3, number) = tokens
    if (k1, k2, k3) != ("ident", "op", "int"):
        return None
    try:
        field = ScriptField(name.lower())
    except ValueError:
        return None
    return ScriptCondition(field=field, op=op, threshold=int(number))


class ScriptEngine:
    """Decides which of a link's scripts fire right now."""

    def build_stats(
        self,
        link: LinkSnapshot,
        overrides: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ScriptStats:
        wall_clock = clock_now(now)
        values: Dict[str, Any] = {
            "clicks_today": link.clicks_today,
            "clicks_this_hour": 0,
            "total_clicks": link.total_clicks,
            "hour_of_day": wall_clock.hour,
            "day_of_week": day_of_week(wall_clock),
            "health_score": link.health_score,
            "trust_score": link.trust_score,
        }
        if overrides:
            values.update({k: v for k, v in overrides.items() if k in values})
        return ScriptStats(**values)

    def evaluate(
        self,
        link: LinkSnapshot,
        stats_override: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> List[ScriptResult]:
        stats = self.build_stats(link, stats_override, now)
        results: List[ScriptResult] = []
        for script in link.scripts:
            if self._triggered(script, stats):
                results.append(ScriptResult(
                    script_id=script.id,
                    action=script.action,
                    params=dict(script.action_params),
                ))
        return results

    @staticmethod
    def _triggered(script: LinkScript, stats: ScriptStats) -> bool:
        condition = parse_condition(script.condition)
        if condition is None:
            logger.debug(f"Ignoring script {script.id}: unparseable condition {script.condition!r}")
            return False
        return condition.holds(stats)


script_engine = ScriptEngine()
