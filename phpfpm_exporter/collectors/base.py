"""Base collector abstract class for registry collectors."""

from abc import ABC, abstractmethod
from typing import List
import asyncio
import logging
import time
from functools import wraps

from ..utils.errors import TransportError
from ..utils.metrics import TargetResult
from ..utils.status import ScrapeState


class BaseCollector(ABC):
    """
    Abstract base class for collectors driven by a pull-based registry.

    Subclasses implement the asynchronous ``scrape`` for one cycle; the
    registry-facing ``collect`` is synchronous and runs one event loop per
    cycle through ``run_cycle``.
    """

    def __init__(self, logger: logging.Logger):
        """
        Initialize base collector.

        Args:
            logger: Logger instance
        """
        self.logger = logger.getChild(self.__class__.__name__)

    @abstractmethod
    async def scrape(self, overrides=None) -> List[TargetResult]:
        """
        Run one collection cycle across all targets.

        Returns:
            List[TargetResult]: One result per target, in configuration order

        Note:
            Implementations should use @safe_fetch on the per-target fetch so
            transport failures become failed results instead of exceptions.
        """
        pass

    def run_cycle(self, overrides=None) -> List[TargetResult]:
        """
        Run ``scrape`` to completion on a fresh event loop.

        Called from registry threads, so it never reuses a loop across cycles.
        """
        start_time = time.time()
        results = asyncio.run(self.scrape(overrides))
        duration_ms = (time.time() - start_time) * 1000

        failed = sum(1 for result in results if result.state == ScrapeState.FAILED)
        self.logger.debug(
            f"Collection cycle finished in {duration_ms:.0f}ms",
            extra={"targets": len(results), "failed": failed}
        )
        return results


def safe_fetch(func):
    """
    Decorator turning a per-target TransportError into a failed result.

    The wrapped coroutine takes the target as its first argument and returns
    a TargetResult on success.

    Args:
        func: Per-target collection coroutine

    Returns:
        Wrapped coroutine that never raises TransportError
    """
    @wraps(func)
    async def wrapper(self, target, *args, **kwargs):
        try:
            return await func(self, target, *args, **kwargs)
        except TransportError as e:
            self.logger.error(
                "error collecting php-fpm metrics",
                extra={"target": target.name, "error": str(e)}
            )
            return TargetResult(
                target_name=target.name,
                state=ScrapeState.FAILED,
                error=str(e)
            )
    return wrapper
