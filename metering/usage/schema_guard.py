"""
Schema Guard: turns missing storage structures into a reduced feature set.

Each optional feature (daily tracking, overage logging, usage history) owns
an ordered chain of probe strategies. Probes run in order and the first one
that succeeds marks the feature available; when every enabled probe reports
the structure missing, the feature is switched off. A feature whose probes
cannot reach the store keeps its previous flag and the status is marked
unverified. verify() never raises.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from metering.exceptions import StorageUnavailable
from metering.types.usage import SchemaStatus

from .periods import Clock, utcnow
from .store import (
    DAILY_COLUMNS,
    HISTORY_COLUMNS,
    HISTORY_TABLE,
    OVERAGE_COLUMNS,
    OVERAGE_TABLE,
    USAGE_TABLE,
    UsageStore,
)

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[UsageStore], Awaitable[bool]]


class Feature(str, Enum):
    """Optional features gated by the Schema Guard."""

    DAILY_TRACKING = "daily_tracking"
    OVERAGE_LOGGING = "overage_logging"
    USAGE_HISTORY = "usage_history"


@dataclass
class Probe:
    """One strategy for detecting a storage structure."""

    name: str
    check: ProbeFunc
    enabled: bool = True


@dataclass
class ProbeChain:
    """Ordered probes for one feature, stopping at the first success."""

    feature: Feature
    probes: List[Probe] = field(default_factory=list)

    async def run(self, store: UsageStore) -> bool:
        """
        Run the enabled probes in order.

        Returns:
            True on the first success, False when every probe reports the
            structure missing.

        Raises:
            StorageUnavailable: If no probe succeeded and at least one could
                not reach the store.
        """
        unreachable: Optional[StorageUnavailable] = None
        for probe in self.probes:
            if not probe.enabled:
                continue
            try:
                if await probe.check(store):
                    logger.debug(f"Schema probe {probe.name} succeeded for {self.feature.value}")
                    return True
            except StorageUnavailable as e:
                logger.warning(f"Schema probe {probe.name} could not reach storage for {self.feature.value}")
                unreachable = e
            except Exception as e:
                logger.warning(f"Schema probe {probe.name} failed for {self.feature.value}: {e}")
        if unreachable is not None:
            raise unreachable
        return False


def _catalog_probe(table: str, columns) -> Probe:
    async def check(store: UsageStore) -> bool:
        return await store.has_columns(table, columns)

    return Probe(name=f"catalog:{table}", check=check)


def _select_probe(table: str, columns) -> Probe:
    async def check(store: UsageStore) -> bool:
        return await store.can_select(table, columns)

    return Probe(name=f"select:{table}", check=check)


def default_probe_chains() -> Dict[Feature, ProbeChain]:
    """Catalog lookup first, then a zero-row SELECT, for each feature."""
    structures = {
        Feature.DAILY_TRACKING: (USAGE_TABLE, DAILY_COLUMNS),
        Feature.OVERAGE_LOGGING: (OVERAGE_TABLE, OVERAGE_COLUMNS),
        Feature.USAGE_HISTORY: (HISTORY_TABLE, HISTORY_COLUMNS),
    }
    return {
        feature: ProbeChain(
            feature=feature,
            probes=[_catalog_probe(table, columns), _select_probe(table, columns)],
        )
        for feature, (table, columns) in structures.items()
    }


class SchemaGuard:
    """
    Detects which optional storage structures exist.

    Run at startup and again whenever a SchemaMissing error surfaces. The
    resulting SchemaStatus is pushed into the store so downstream components
    skip unavailable features instead of failing. A check that could not
    reach storage is repeated after the next successful store operation.
    """

    def __init__(
        self,
        store: UsageStore,
        chains: Optional[Dict[Feature, ProbeChain]] = None,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._chains = chains or default_probe_chains()
        self._clock = clock
        self._status: Optional[SchemaStatus] = None
        self._lock = asyncio.Lock()

    @property
    def status(self) -> SchemaStatus:
        """Last verified status; everything assumed available before the first run."""
        return self._status or self._store.schema_status

    @property
    def needs_verification(self) -> bool:
        return self._status is not None and not self._status.verified

    def set_probe_enabled(self, feature: Feature, probe_name: str, enabled: bool) -> None:
        """Enable or disable a single probe in a feature's chain."""
        for probe in self._chains[feature].probes:
            if probe.name == probe_name:
                probe.enabled = enabled
                return
        raise KeyError(f"No probe {probe_name!r} for {feature.value}")

    async def _check(self, feature: Feature, previous: bool) -> Tuple[bool, bool]:
        """Return (available, verified) for one feature."""
        chain = self._chains.get(feature)
        if chain is None:
            return True, True
        try:
            return await chain.run(self._store), True
        except StorageUnavailable:
            logger.warning(
                f"Schema guard: storage unreachable while checking {feature.value}, "
                f"keeping available={previous} until the next check"
            )
            return previous, False

    async def verify(self) -> SchemaStatus:
        """Probe every feature and apply the result to the store."""
        async with self._lock:
            previous = self.status
            daily, daily_ok = await self._check(
                Feature.DAILY_TRACKING, previous.daily_tracking_available
            )
            overage, overage_ok = await self._check(
                Feature.OVERAGE_LOGGING, previous.overage_logging_available
            )
            history, history_ok = await self._check(
                Feature.USAGE_HISTORY, previous.usage_history_available
            )
            status = SchemaStatus(
                daily_tracking_available=daily,
                overage_logging_available=overage,
                usage_history_available=history,
                verified=daily_ok and overage_ok and history_ok,
                checked_at=self._clock(),
            )

            if not status.daily_tracking_available:
                logger.warning("Schema guard: daily tracking unavailable, enforcing monthly limits only")
            if not status.overage_logging_available:
                logger.error("Schema guard: overage log unavailable, overage charges will not be recorded")
            if not status.usage_history_available:
                logger.warning("Schema guard: usage history unavailable, resets will not be archived")

            self._store.apply_schema_status(status)
            self._status = status
            return status

    async def verify_if_pending(self) -> None:
        """Re-run verify() when the last check could not reach storage."""
        if self.needs_verification:
            logger.info("Schema guard: storage reachable again, re-checking schema")
            await self.verify()
