"""Tests for error typing and retry classification"""

import asyncio

import pytest

from harvester.scraper.config import RetryConfig
from harvester.scraper.core.error_classifier import ErrorClassifier, RecoveryAction, ErrorPriority
from harvester.scraper.errors import (
    AuthError,
    BlockedError,
    CaptchaError,
    ErrorType,
    NetworkError,
    ParsingError,
    RateLimitError,
    ScrapeTimeoutError,
    ValidationError,
    infer_error_type,
    to_scraping_error,
)


@pytest.fixture
def classifier():
    return ErrorClassifier(RetryConfig(base_delay=1.0))


class TestClassification:
    @pytest.mark.parametrize("error", [
        NetworkError("connection reset"),
        ScrapeTimeoutError("navigation timed out"),
        RateLimitError("slow down"),
        BlockedError("403"),
        AuthError("login required"),
    ])
    def test_transient_types_are_retryable(self, classifier, error):
        """network, timeout, rate_limit, blocked and auth retry"""
        assert classifier.classify(error).is_retryable

    @pytest.mark.parametrize("error", [
        CaptchaError("challenge shown"),
        ParsingError("container missing"),
        ValidationError("bad target"),
    ])
    def test_terminal_types_are_not_retryable(self, classifier, error):
        """captcha, parsing and validation never retry"""
        classification = classifier.classify(error)
        assert not classification.is_retryable
        assert classification.estimated_retry_delay == 0.0

    def test_rate_limit_uses_server_retry_after(self, classifier):
        """A Retry-After value wins over exponential backoff"""
        classification = classifier.classify(RateLimitError("429", retry_after=42))
        assert classification.estimated_retry_delay == 42.0
        assert classification.recommended_action == RecoveryAction.INCREASE_DELAY

    def test_rate_limit_backoff_without_retry_after(self, classifier):
        """Without a hint the delay doubles with the retry count, capped at a minute"""
        first = classifier.classify(RateLimitError("429"), {'retry_count': 0})
        third = classifier.classify(RateLimitError("429"), {'retry_count': 2})
        huge = classifier.classify(RateLimitError("429"), {'retry_count': 20})
        assert first.estimated_retry_delay == 1.0
        assert third.estimated_retry_delay == 4.0
        assert huge.estimated_retry_delay == 60.0

    def test_blocked_rotates_session(self, classifier):
        """Blocked targets get a new identity after a long pause"""
        classification = classifier.classify(BlockedError("forbidden"))
        assert classification.recommended_action == RecoveryAction.ROTATE_SESSION
        assert classification.priority == ErrorPriority.CRITICAL
        assert classification.estimated_retry_delay == 60.0

    def test_ssl_failures_are_not_retried(self, classifier):
        """Certificate problems are configuration, not transient"""
        classification = classifier.classify(NetworkError("SSL certificate verify failed"))
        assert not classification.is_retryable
        assert classification.recommended_action == RecoveryAction.CHECK_SSL_CONFIG

    def test_dns_failures_wait_longer(self, classifier):
        """DNS errors retry after a fixed pause"""
        classification = classifier.classify(NetworkError("net::ERR_NAME_NOT_RESOLVED"))
        assert classification.is_retryable
        assert classification.estimated_retry_delay == 5.0

    def test_timeout_increases_timeout(self, classifier):
        """Timeouts recommend a longer timeout"""
        classification = classifier.classify(asyncio.TimeoutError())
        assert classification.recommended_action == RecoveryAction.INCREASE_TIMEOUT


class TestConversion:
    def test_typed_error_passes_through(self):
        """A ScrapingError keeps its identity and gains a url"""
        error = ParsingError("no items")
        converted = to_scraping_error(error, url="https://x.test")
        assert converted is error
        assert converted.url == "https://x.test"

    def test_connection_error_becomes_network(self):
        """Socket-level failures are network errors"""
        converted = to_scraping_error(ConnectionError("reset by peer"))
        assert converted.error_type == ErrorType.NETWORK
        assert isinstance(converted.__cause__, ConnectionError)
        assert converted.details['original_type'] == 'ConnectionError'

    def test_timeout_error_becomes_timeout(self):
        """TimeoutError is typed as timeout, not network"""
        assert to_scraping_error(TimeoutError("slow")).error_type == ErrorType.TIMEOUT

    @pytest.mark.parametrize("message,expected", [
        ("Too Many Requests", ErrorType.RATE_LIMIT),
        ("hCaptcha challenge", ErrorType.CAPTCHA),
        ("Access denied", ErrorType.BLOCKED),
        ("element not found", ErrorType.PARSING),
        ("something odd", ErrorType.NETWORK),
    ])
    def test_message_inference(self, message, expected):
        """Untyped failures are typed from their message"""
        assert infer_error_type(message) == expected


class TestStatistics:
    def test_counts_by_type_and_severity(self, classifier):
        """Every classified error is counted"""
        classifier.classify(NetworkError("a"))
        classifier.classify(NetworkError("b"))
        classifier.classify(CaptchaError("c"))

        stats = classifier.get_error_statistics()

        assert stats['total_errors'] == 3
        assert stats['by_type'] == {'network': 2, 'captcha': 1}
        assert stats['by_severity']['critical'] == 1
        assert len(stats['recent']) == 3

    def test_reset(self, classifier):
        """reset_statistics clears the counters"""
        classifier.classify(NetworkError("a"))
        classifier.reset_statistics()
        assert classifier.get_error_statistics()['total_errors'] == 0
