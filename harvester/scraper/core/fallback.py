"""
Fallback Strategy Engine

An ordered list of recovery rules tried after a target's primary scrape
fails in a recognised way. Rules are evaluated in declared order; the
first one that matches and succeeds ends the chain.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any, Callable, Awaitable, Iterable

from ..errors import ScrapingError, ErrorType, EmptyResultsError, ParsingError
from ..models import ScrapeTarget, RawScrapedData

logger = logging.getLogger(__name__)

ScrapeFn = Callable[[ScrapeTarget], Awaitable[RawScrapedData]]

DEFAULT_WAIT_DELAY = 60.0
DEFAULT_WAIT_RETRIES = 1


class FallbackTrigger(str, Enum):
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    EMPTY_RESULTS = "empty_results"
    SELECTOR_MISSING = "selector_missing"
    ERROR = "error"  # Matches any failure


class FallbackAction(str, Enum):
    WAIT_AND_RETRY = "wait_and_retry"
    DIFFERENT_URL = "different_url"
    ALTERNATIVE_SELECTORS = "alternative_selectors"
    SKIP = "skip"


@dataclass
class FallbackRule:
    id: str
    triggers: List[FallbackTrigger]
    action: FallbackAction
    config: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FallbackRule":
        return cls(
            id=data['id'],
            triggers=[FallbackTrigger(t) for t in data['triggers']],
            action=FallbackAction(data['action']),
            config=dict(data.get('config') or {}),
            description=data.get('description', ''),
        )


@dataclass
class FallbackOutcome:
    rule_id: str
    action: FallbackAction
    result: RawScrapedData

    @property
    def skipped(self) -> bool:
        return self.result.skipped


def error_triggers(error: ScrapingError) -> List[FallbackTrigger]:
    """Triggers raised by a classified failure"""
    triggers = [FallbackTrigger.ERROR]
    if error.error_type == ErrorType.RATE_LIMIT:
        triggers.append(FallbackTrigger.RATE_LIMITED)
    elif error.error_type == ErrorType.BLOCKED:
        triggers.append(FallbackTrigger.BLOCKED)
    if isinstance(error, EmptyResultsError):
        triggers.append(FallbackTrigger.EMPTY_RESULTS)
    elif isinstance(error, ParsingError) and error.selector:
        triggers.append(FallbackTrigger.SELECTOR_MISSING)
    return triggers


class FallbackStrategyEngine:
    """
    Usage:
        engine = FallbackStrategyEngine.from_config(target.fallbacks)
        outcome = await engine.run(target, error, scraper.scrape)
    """

    def __init__(
        self,
        rules: Iterable[FallbackRule] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rules = list(rules)
        self._sleep = sleep

    @classmethod
    def from_config(cls, rules: Iterable[Any], **kwargs) -> "FallbackStrategyEngine":
        return cls(
            [r if isinstance(r, FallbackRule) else FallbackRule.from_dict(r) for r in rules],
            **kwargs,
        )

    def matching_rules(self, error: ScrapingError) -> List[FallbackRule]:
        raised = set(error_triggers(error))
        return [rule for rule in self.rules if raised.intersection(rule.triggers)]

    async def run(
        self,
        target: ScrapeTarget,
        error: ScrapingError,
        scrape: ScrapeFn,
    ) -> Optional[FallbackOutcome]:
        """
        Try matching rules in order.

        Returns the first outcome whose scrape produced events or was a
        skip; None when no rule recovered the target.
        """
        for rule in self.matching_rules(error):
            logger.info(
                f"[{target.id}] Trying fallback '{rule.id}' ({rule.action.value}) "
                f"after {error.error_type.value} error"
            )
            try:
                result = await self.execute(rule, target, scrape)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[{target.id}] Fallback '{rule.id}' failed: {e}")
                continue

            if result.skipped or result.events:
                result.fallback_used = rule.id
                logger.info(
                    f"[{target.id}] Fallback '{rule.id}' succeeded: "
                    f"{len(result.events)} events{' (skipped)' if result.skipped else ''}"
                )
                return FallbackOutcome(rule_id=rule.id, action=rule.action, result=result)

            logger.warning(f"[{target.id}] Fallback '{rule.id}' returned no events")

        return None

    async def execute(
        self,
        rule: FallbackRule,
        target: ScrapeTarget,
        scrape: ScrapeFn,
    ) -> RawScrapedData:
        """Run one rule's action"""
        if rule.action == FallbackAction.SKIP:
            logger.info(f"[{target.id}] Skipping target: {rule.description or rule.id}")
            return RawScrapedData.empty(target, skipped=True)

        if rule.action == FallbackAction.WAIT_AND_RETRY:
            delay = float(rule.config.get('delay', DEFAULT_WAIT_DELAY))
            retries = max(int(rule.config.get('max_retries', DEFAULT_WAIT_RETRIES)), 1)
            for attempt in range(retries):
                await self._sleep(delay)
                try:
                    return await scrape(target)
                except ScrapingError:
                    if attempt == retries - 1:
                        raise
            raise RuntimeError("wait_and_retry exhausted")  # loop always returns or raises

        if rule.action == FallbackAction.DIFFERENT_URL:
            url = rule.config.get('url')
            if not url:
                raise ValueError(f"Fallback '{rule.id}' has no url configured")
            return await scrape(target.with_url(url))

        if rule.action == FallbackAction.ALTERNATIVE_SELECTORS:
            selectors = rule.config.get('selectors') or {}
            if not selectors:
                raise ValueError(f"Fallback '{rule.id}' has no selectors configured")
            return await scrape(target.with_selectors(**selectors))

        raise ValueError(f"Unknown fallback action: {rule.action}")
