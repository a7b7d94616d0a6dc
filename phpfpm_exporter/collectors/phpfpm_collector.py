"""PHP-FPM status collector: the registry-facing collection orchestrator."""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from ..config.models import ExporterConfig
from ..utils.metrics import TargetResult
from ..utils.status import ScrapeState
from .base import BaseCollector, safe_fetch
from .mapper import DESCRIPTORS, SCRAPE_FAILURES, UP, MetricDescriptor, MappedSample, ValueKind, map_sample
from .status_parser import parse_status
from .target import Target, TargetAddress
from .transport import TransportOptions, build_transport


TARGET_LABEL = "target"

_POOL_NAME_RE = re.compile(r'[A-Za-z0-9._-]+')


@dataclass(frozen=True)
class CollectOverrides:
    """
    Per-scrape request parameters.

    ``pool`` rewrites the status path of the target for this scrape only and
    is honoured in single-target mode.
    """
    pool: Optional[str] = None

    def __post_init__(self):
        if self.pool is not None and not _POOL_NAME_RE.fullmatch(self.pool):
            raise ValueError(f"Invalid pool name: {self.pool!r}")


class PHPFPMCollector(BaseCollector):
    """
    Collects status pages of all targets concurrently and exposes them as
    metric families.

    With a single target no series carries a ``target`` label; with several
    targets every series does.
    """

    def __init__(
        self,
        targets: Sequence[Target],
        logger: logging.Logger,
        pool_status_path: str = "/{pool}/status"
    ):
        """
        Initialize collector.

        Args:
            targets: Targets in exposition order, names must be unique
            logger: Logger instance
            pool_status_path: Status path template for the pool override
        """
        super().__init__(logger)
        if not targets:
            raise ValueError("At least one target is required")
        self.targets = list(targets)
        self.pool_status_path = pool_status_path

    @classmethod
    def from_config(cls, config: ExporterConfig, logger: logging.Logger) -> "PHPFPMCollector":
        """
        Build targets and their transports from configuration.

        Raises:
            ConfigurationError: For invalid addresses or TLS material
        """
        options = TransportOptions(
            timeout=config.timeout,
            tls=config.tls,
            basic_auth=config.basic_auth,
        )
        targets = []
        for target_config in config.targets:
            address = TargetAddress.parse(target_config.url)
            targets.append(Target(target_config.name, address, build_transport(address, options)))
        return cls(targets, logger, pool_status_path=config.pool_status_path)

    @property
    def labeled(self) -> bool:
        return len(self.targets) > 1

    def describe(self) -> List[Metric]:
        """Fixed list of metric families, without samples."""
        return [self._new_family(descriptor) for descriptor in DESCRIPTORS]

    def collect(self, overrides: Optional[CollectOverrides] = None) -> Iterator[Metric]:
        """
        Run one collection cycle and yield the resulting metric families.

        Args:
            overrides: Per-request parameters, None for a plain scrape
        """
        results = self.run_cycle(overrides)
        return iter(self.build_families(results))

    def bind(self, overrides: Optional[CollectOverrides]) -> "BoundCollector":
        """View of this collector whose ``collect`` applies the given overrides."""
        return BoundCollector(self, overrides)

    async def scrape(self, overrides: Optional[CollectOverrides] = None) -> List[TargetResult]:
        """
        Fetch every target concurrently and wait for all of them.

        Returns:
            List[TargetResult]: One result per target, in configuration order
        """
        tasks = [self._collect_target(target, overrides) for target in self.targets]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        final_results = []
        for target, result in zip(self.targets, results):
            if isinstance(result, Exception):
                # Not a transport failure: still report the target as down
                self.logger.error(
                    f"Unexpected error collecting {target.name}: {result!r}",
                    exc_info=result,
                    extra={"target": target.name}
                )
                result = TargetResult(
                    target_name=target.name,
                    state=ScrapeState.FAILED,
                    error=repr(result),
                    failures=target.record_outcome(failed=True)
                )
            final_results.append(result)

        return final_results

    def resolve_address(self, target: Target, overrides: Optional[CollectOverrides]) -> TargetAddress:
        """Apply the pool override to a target's address when it applies."""
        if overrides is None or overrides.pool is None:
            return target.address
        if self.labeled:
            self.logger.debug(
                "Ignoring pool override with multiple targets",
                extra={"pool": overrides.pool}
            )
            return target.address
        return target.address.with_status_path(self.pool_status_path.format(pool=overrides.pool))

    async def _collect_target(self, target: Target, overrides: Optional[CollectOverrides]) -> TargetResult:
        result = await self._fetch_target(target, overrides)
        result.failures = target.record_outcome(failed=result.error is not None)
        return result

    @safe_fetch
    async def _fetch_target(self, target: Target, overrides: Optional[CollectOverrides]) -> TargetResult:
        result = TargetResult(target_name=target.name)
        address = self.resolve_address(target, overrides)

        result.state = ScrapeState.FETCHING
        body = await target.transport.fetch(address)
        result.state = ScrapeState.SUCCEEDED

        target_labels = (target.name,) if self.labeled else ()
        for sample in parse_status(body):
            mapped = map_sample(sample, target_labels)
            if mapped is not None:
                result.samples.append(mapped)

        return result

    def build_families(self, results: Sequence[TargetResult]) -> List[Metric]:
        """
        Assemble metric families from a finished cycle.

        ``up`` and ``scrape_failures_total`` get one sample per target; other
        families are only emitted when some target produced a value.
        """
        families: Dict[MetricDescriptor, Metric] = {
            descriptor: self._new_family(descriptor) for descriptor in DESCRIPTORS
        }

        for result in results:
            target_labels = [result.target_name] if self.labeled else []
            families[UP].add_metric(target_labels, result.up)
            families[SCRAPE_FAILURES].add_metric(target_labels, float(result.failures))
            for mapped in result.samples:
                self._add_sample(families[mapped.descriptor], mapped)
            result.state = ScrapeState.REPORTED

        return [
            family for descriptor, family in families.items()
            if family.samples or descriptor in (UP, SCRAPE_FAILURES)
        ]

    @staticmethod
    def _add_sample(family: Metric, mapped: MappedSample):
        family.add_metric(list(mapped.label_values), mapped.value)

    def _new_family(self, descriptor: MetricDescriptor) -> Metric:
        labels = [TARGET_LABEL] if self.labeled else []
        if descriptor.extra_label_key:
            labels.append(descriptor.extra_label_key)

        family_class = CounterMetricFamily if descriptor.value_kind == ValueKind.COUNTER else GaugeMetricFamily
        return family_class(descriptor.full_name, descriptor.documentation, labels=labels)


class BoundCollector:
    """Registry adapter carrying one request's overrides."""

    def __init__(self, collector: PHPFPMCollector, overrides: Optional[CollectOverrides]):
        self.collector = collector
        self.overrides = overrides

    def describe(self) -> List[Metric]:
        return self.collector.describe()

    def collect(self) -> Iterator[Metric]:
        return self.collector.collect(self.overrides)
