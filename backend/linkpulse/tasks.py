"""
Background maintenance tasks.
Sweeps fraud-detector state and zeroes daily click counters left over from an
earlier CLOCK_TIMEZONE day. The reset is driven by each link's stored
last_click_at, so a restart or a missed pass only delays cleanup.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

from .config import settings
from .database import SessionLocal
from .fraud import FraudDetector, fraud_detector
from .services import LinkService
from .logging_config import get_logger

logger = get_logger(__name__)


def sweep_fraud_state(detector: FraudDetector = fraud_detector) -> None:
    """Prune idle fingerprints and clear IP counters."""
    removed, cleared = detector.cleanup()
    if removed or cleared:
        logger.info(f"Fraud sweep pruned {removed} fingerprints and cleared {cleared} IP counters")


def reset_daily_counters(session_factory: Callable = SessionLocal, now: Optional[datetime] = None) -> int:
    """Zero clicks_today on links not clicked since the current day started."""
    db = session_factory()
    try:
        return LinkService.reset_daily_clicks(db, now)
    except Exception as e:
        logger.error(f"Error resetting daily click counters: {e}")
        db.rollback()
        return 0
    finally:
        db.close()


class BackgroundTaskRunner:
    """Manages background maintenance tasks."""

    def __init__(
        self,
        detector: FraudDetector = fraud_detector,
        session_factory: Callable = SessionLocal,
        interval_seconds: Optional[int] = None,
    ):
        self._detector = detector
        self._session_factory = session_factory
        self._interval = interval_seconds or settings.FRAUD_CLEANUP_INTERVAL_SECONDS
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def run_once(self, now: Optional[datetime] = None) -> None:
        """One maintenance pass; safe to call directly."""
        try:
            sweep_fraud_state(self._detector)
        except Exception as e:
            logger.error(f"Error in fraud state sweep: {e}")

        reset_daily_counters(self._session_factory, now)

    async def _run_loop(self):
        """Main background task loop."""
        logger.info(f"Starting background maintenance tasks (interval: {self._interval}s)")

        while self._running:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error(f"Error in background task loop: {e}")
            await asyncio.sleep(self._interval)

    def start(self):
        """Start the background task runner."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Background task runner started")

    def stop(self):
        """Stop the background task runner."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        logger.info("Background task runner stopped")


# Global task runner instance
task_runner = BackgroundTaskRunner()
