"""Tests for target health tracking and alerting"""

import logging

from harvester.scraper.alerts import AlertLevel, AlertManager
from harvester.scraper.core.health_monitor import HealthAlert, HealthMonitor, HealthStatus


class TestHealthMonitor:
    def test_new_target_is_healthy(self):
        monitor = HealthMonitor()
        monitor.record_success("t", response_time=1.0, event_count=10, quality_score=1.0)
        assert monitor.get_status("t") == HealthStatus.HEALTHY

    def test_fallback_degrades(self):
        """A run rescued by a fallback marks the target degraded"""
        monitor = HealthMonitor()
        monitor.record_success("t", response_time=1.0, event_count=3, fallback_used="alt")
        assert monitor.get_status("t") == HealthStatus.DEGRADED

    def test_low_quality_degrades(self):
        monitor = HealthMonitor()
        monitor.record_success("t", response_time=1.0, event_count=3, quality_score=0.2)
        assert monitor.get_status("t") == HealthStatus.DEGRADED

    def test_consecutive_failures(self):
        """Status worsens with consecutive failures"""
        monitor = HealthMonitor()
        for _ in range(9):
            monitor.record_success("t", response_time=1.0, event_count=1)
        monitor.record_failure("t", "network: down")
        monitor.record_failure("t", "network: down")
        assert monitor.get_status("t") == HealthStatus.DEGRADED
        monitor.record_failure("t", "network: down")
        assert monitor.get_status("t") == HealthStatus.UNHEALTHY

    def test_success_resets_consecutive_failures(self):
        monitor = HealthMonitor()
        monitor.record_failure("t", "timeout: slow")
        monitor.record_success("t", response_time=1.0, event_count=1)
        assert monitor.targets["t"].consecutive_failures == 0

    def test_subscribers_alerted_once_per_cooldown(self):
        """Unhealthy targets notify subscribers, throttled by cooldown"""
        monitor = HealthMonitor()
        received = []
        monitor.subscribe(received.append)

        for _ in range(4):
            monitor.record_failure("t", "blocked: 403")

        assert len(received) == 1
        assert received[0].status == HealthStatus.CRITICAL
        assert received[0].last_error == "blocked: 403"

    def test_failing_subscriber_does_not_break_monitor(self):
        monitor = HealthMonitor()

        def broken(alert):
            raise RuntimeError("pager down")

        monitor.subscribe(broken)
        monitor.record_failure("t", "network: down")
        assert monitor.targets["t"].failed_runs == 1

    def test_report_and_summary(self):
        monitor = HealthMonitor()
        monitor.record_success("t", response_time=2.0, event_count=7, quality_score=0.9)
        report = monitor.get_health_report()["t"]
        assert report['status'] == 'healthy'
        assert report['last_event_count'] == 7
        assert "HEALTHY" in monitor.get_summary()


class TestAlertManager:
    def test_debounce(self, clock):
        """The same alert is suppressed within the interval"""
        alerts = AlertManager(min_alert_interval=300, clock=clock)

        assert alerts.send(AlertLevel.WARNING, "Slow", "slow target", "t")
        assert not alerts.send(AlertLevel.WARNING, "Slow", "slow target", "t")
        clock.advance(301)
        assert alerts.send(AlertLevel.WARNING, "Slow", "slow target", "t")

        stats = alerts.get_stats()
        assert (stats['alerts_sent'], stats['alerts_suppressed']) == (2, 1)

    def test_distinct_targets_not_debounced(self, clock):
        alerts = AlertManager(clock=clock)
        assert alerts.send(AlertLevel.INFO, "Note", "x", "a")
        assert alerts.send(AlertLevel.INFO, "Note", "x", "b")

    def test_health_alert_subscriber(self, clock, caplog):
        """Critical health alerts are logged at critical level"""
        alerts = AlertManager(clock=clock)
        alert = HealthAlert(
            target_id="t", status=HealthStatus.CRITICAL, error_rate=1.0,
            consecutive_failures=5, last_error="network: down", fallback_used=None,
        )
        with caplog.at_level(logging.WARNING, logger="harvester.scraper.alerts"):
            alerts(alert)
        assert caplog.records[-1].levelno == logging.CRITICAL
        assert "Target t is critical" in caplog.records[-1].getMessage()

    def test_circuit_and_quality_alerts(self, clock):
        alerts = AlertManager(clock=clock)
        alerts.alert_circuit_open("t", 600)
        alerts.alert_circuit_open("t", 590)
        alerts.alert_low_quality("t", 0.4, 0.8)
        assert alerts.get_stats()['alerts_sent'] == 2
        assert alerts.get_stats()['alerts_suppressed'] == 1
