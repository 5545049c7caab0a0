"""
Health Monitoring for Targets

Tracks per-target outcomes across jobs and notifies subscribers when a
target degrades. Subscribers are registered explicitly on the monitor.
"""

import time
import logging
from enum import Enum
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Optional, List, Callable

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status levels"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"     # Fallbacks used or elevated errors
    UNHEALTHY = "unhealthy"   # Significant issues, may need intervention
    CRITICAL = "critical"     # Target effectively down


@dataclass
class HealthThresholds:
    """Thresholds for health status determination"""
    degraded_error_rate: float = 0.20
    unhealthy_error_rate: float = 0.40
    critical_error_rate: float = 0.60

    # Seconds per scrape run
    degraded_response_time: float = 60.0
    unhealthy_response_time: float = 180.0

    degraded_consecutive_failures: int = 2
    unhealthy_consecutive_failures: int = 3
    critical_consecutive_failures: int = 5

    # Quality score below which a run counts as degraded
    degraded_quality_score: float = 0.5


@dataclass
class HealthAlert:
    target_id: str
    status: HealthStatus
    error_rate: float
    consecutive_failures: int
    last_error: Optional[str]
    fallback_used: Optional[str]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'target_id': self.target_id,
            'status': self.status.value,
            'error_rate': f"{self.error_rate:.1%}",
            'consecutive_failures': self.consecutive_failures,
            'last_error': self.last_error,
            'fallback_used': self.fallback_used,
            'timestamp': self.timestamp,
        }


AlertSubscriber = Callable[[HealthAlert], None]


@dataclass
class TargetHealth:
    """Rolling health data for one target"""
    target_id: str
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_event_count: int = 0
    last_quality_score: Optional[float] = None
    response_times: deque = field(default_factory=lambda: deque(maxlen=50))
    recent_results: deque = field(default_factory=lambda: deque(maxlen=20))
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[float] = None
    last_success_time: Optional[float] = None
    fallback_used: Optional[str] = None

    @property
    def error_rate(self) -> float:
        if not self.recent_results:
            return 0.0
        failures = sum(1 for r in self.recent_results if not r)
        return failures / len(self.recent_results)

    @property
    def avg_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)


class HealthMonitor:
    """
    Monitors health of targets and alerts subscribers.
    """

    def __init__(
        self,
        thresholds: Optional[HealthThresholds] = None,
        alert_cooldown: float = 300.0,
    ):
        self.thresholds = thresholds or HealthThresholds()
        self.targets: Dict[str, TargetHealth] = {}
        self._subscribers: List[AlertSubscriber] = []
        self._alert_cooldowns: Dict[str, float] = {}
        self._alert_cooldown_seconds = alert_cooldown

    def subscribe(self, callback: AlertSubscriber):
        """Register an alert subscriber"""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: AlertSubscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _get(self, target_id: str) -> TargetHealth:
        if target_id not in self.targets:
            self.targets[target_id] = TargetHealth(target_id=target_id)
        return self.targets[target_id]

    def record_success(
        self,
        target_id: str,
        response_time: float,
        event_count: int,
        quality_score: Optional[float] = None,
        fallback_used: Optional[str] = None,
    ):
        """Record a successful target run"""
        h = self._get(target_id)
        h.total_runs += 1
        h.successful_runs += 1
        h.consecutive_failures = 0
        h.last_success_time = time.time()
        h.last_event_count = event_count
        h.last_quality_score = quality_score
        h.fallback_used = fallback_used
        h.response_times.append(response_time)
        h.recent_results.append(True)

        logger.debug(
            f"[{target_id}] Success: {event_count} events in {response_time:.2f}s"
            + (f" (fallback {fallback_used})" if fallback_used else "")
        )

    def record_failure(self, target_id: str, error: str):
        """Record a failed target run"""
        h = self._get(target_id)
        h.total_runs += 1
        h.failed_runs += 1
        h.consecutive_failures += 1
        h.last_error = error
        h.last_error_time = time.time()
        h.recent_results.append(False)

        logger.warning(f"[{target_id}] Failure: {error}")
        self._check_alerts(target_id, h)

    def get_status(self, target_id: str) -> HealthStatus:
        """Determine health status for a target"""
        h = self._get(target_id)
        t = self.thresholds

        if h.consecutive_failures >= t.critical_consecutive_failures:
            return HealthStatus.CRITICAL
        if h.error_rate >= t.critical_error_rate:
            return HealthStatus.CRITICAL

        if h.consecutive_failures >= t.unhealthy_consecutive_failures:
            return HealthStatus.UNHEALTHY
        if h.error_rate >= t.unhealthy_error_rate:
            return HealthStatus.UNHEALTHY
        if h.avg_response_time >= t.unhealthy_response_time:
            return HealthStatus.UNHEALTHY

        if h.consecutive_failures >= t.degraded_consecutive_failures:
            return HealthStatus.DEGRADED
        if h.error_rate >= t.degraded_error_rate:
            return HealthStatus.DEGRADED
        if h.avg_response_time >= t.degraded_response_time:
            return HealthStatus.DEGRADED
        if h.fallback_used:
            return HealthStatus.DEGRADED
        if h.last_quality_score is not None and h.last_quality_score < t.degraded_quality_score:
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY

    def _check_alerts(self, target_id: str, h: TargetHealth):
        status = self.get_status(target_id)
        if status not in (HealthStatus.UNHEALTHY, HealthStatus.CRITICAL):
            return

        alert_key = f"{target_id}:{status.value}"
        last_alert = self._alert_cooldowns.get(alert_key, 0)
        if time.time() - last_alert < self._alert_cooldown_seconds:
            return
        self._alert_cooldowns[alert_key] = time.time()

        alert = HealthAlert(
            target_id=target_id,
            status=status,
            error_rate=h.error_rate,
            consecutive_failures=h.consecutive_failures,
            last_error=h.last_error,
            fallback_used=h.fallback_used,
        )
        logger.log(
            logging.CRITICAL if status == HealthStatus.CRITICAL else logging.WARNING,
            f"[ALERT] Target {target_id} is {status.value}: {alert.to_dict()}"
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(alert)
            except Exception as e:
                logger.error(f"Alert subscriber failed: {e}")

    def get_health_report(self) -> Dict:
        """Get full health report for all targets"""
        report = {}
        for target_id, h in self.targets.items():
            report[target_id] = {
                'status': self.get_status(target_id).value,
                'total_runs': h.total_runs,
                'successful_runs': h.successful_runs,
                'failed_runs': h.failed_runs,
                'error_rate': f"{h.error_rate:.1%}",
                'avg_response_time': f"{h.avg_response_time:.2f}s",
                'consecutive_failures': h.consecutive_failures,
                'last_event_count': h.last_event_count,
                'last_quality_score': h.last_quality_score,
                'fallback_used': h.fallback_used,
                'last_success': h.last_success_time,
                'last_error': h.last_error,
            }
        return report

    def get_summary(self) -> str:
        """Get human-readable health summary"""
        lines = ["Target Health Summary", "=" * 40]
        for target_id, h in self.targets.items():
            status = self.get_status(target_id)
            lines.append(
                f"{status.value.upper():<10} {target_id}: "
                f"{h.last_event_count} events, {h.error_rate:.0%} errors"
            )
        return "\n".join(lines)
