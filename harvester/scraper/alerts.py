"""
Alert System for Scraper Failures

Formats alerts for target-level problems and writes them to the log.
An AlertManager is a HealthMonitor subscriber; the orchestrator also
calls it directly for circuit and data-quality alerts.
"""

import time
import logging
from typing import Dict, Optional, Callable, Any
from enum import Enum

from .core.health_monitor import HealthAlert, HealthStatus

logger = logging.getLogger(__name__)


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


LEVEL_LOG = {
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.CRITICAL: logging.CRITICAL,
}


class AlertManager:
    """
    Manages alerts for scraper failures and health issues.

    Alert triggers:
    - Target becomes unhealthy or critical (via HealthMonitor)
    - Circuit breaker opens (target down)
    - Data quality below threshold (possible selector breakage)

    The same alert is sent at most once per min_alert_interval seconds.
    """

    def __init__(
        self,
        min_alert_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.min_alert_interval = min_alert_interval
        self._clock = clock
        self.last_alerts: Dict[str, float] = {}

        # Stats
        self.alerts_sent = 0
        self.alerts_suppressed = 0

    def _should_alert(self, alert_key: str) -> bool:
        """Check if we should send this alert (debounce)."""
        now = self._clock()
        last = self.last_alerts.get(alert_key)
        if last is not None and now - last < self.min_alert_interval:
            self.alerts_suppressed += 1
            return False
        self.last_alerts[alert_key] = now
        return True

    def send(self, level: AlertLevel, title: str, message: str, target_id: Optional[str] = None) -> bool:
        """Send one alert unless an identical one went out recently"""
        alert_key = f"{level.value}_{title}_{target_id or 'global'}"
        if not self._should_alert(alert_key):
            return False

        logger.log(LEVEL_LOG[level], f"ALERT [{level.value.upper()}] {title}: {message}")
        self.alerts_sent += 1
        return True

    def __call__(self, alert: HealthAlert):
        """HealthMonitor subscriber"""
        level = AlertLevel.CRITICAL if alert.status == HealthStatus.CRITICAL else AlertLevel.WARNING
        self.send(
            level,
            f"Target {alert.target_id} is {alert.status.value}",
            f"error rate {alert.error_rate:.0%}, "
            f"{alert.consecutive_failures} consecutive failures, "
            f"last error: {alert.last_error or 'n/a'}",
            alert.target_id,
        )

    def alert_circuit_open(self, target_id: str, retry_after: float):
        """Alert when a target's circuit breaker opens."""
        self.send(
            AlertLevel.CRITICAL,
            f"Circuit breaker OPEN for {target_id}",
            f"Target is failing repeatedly; next trial in {retry_after:.0f}s",
            target_id,
        )

    def alert_low_quality(self, target_id: str, score: float, threshold: float):
        """Alert when too many scraped records fail normalization."""
        self.send(
            AlertLevel.WARNING,
            f"Low data quality for {target_id}",
            f"Quality score {score:.0%} below {threshold:.0%}; possible selector change",
            target_id,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get alert statistics."""
        return {
            'alerts_sent': self.alerts_sent,
            'alerts_suppressed': self.alerts_suppressed,
            'last_alerts': dict(self.last_alerts),
        }
