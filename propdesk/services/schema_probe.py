from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable

from propdesk.core.config import DEPOSIT_COLUMN_CHAIN, get_settings
from propdesk.core.errors import DataClientError
from propdesk.persistence.client import DataClient


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Observed column set of a relation, or ``None`` when it could not be determined.

    An unknown result is optimistic: every candidate column is allowed.
    """

    columns: frozenset[str] | None

    @classmethod
    def unknown(cls) -> "ProbeResult":
        return cls(columns=None)

    @property
    def is_unknown(self) -> bool:
        return self.columns is None

    def allows(self, column: str) -> bool:
        return self.columns is None or column in self.columns

    def first_present(self, chain: tuple[str, ...] | list[str]) -> str | None:
        # Pick the first chain member actually present; unknown probes get the preferred name.
        if self.columns is None:
            return chain[0] if chain else None
        for name in chain:
            if name in self.columns:
                return name
        return None


class SchemaProbe:
    def __init__(
        self,
        client: DataClient,
        *,
        cache_ttl_s: int | None = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        ttl = get_settings().schema_probe_cache_ttl_s if cache_ttl_s is None else cache_ttl_s
        self._cache_ttl_s = max(0, int(ttl))
        self._time_source = time_source
        self._cache: dict[str, tuple[float, ProbeResult]] = {}

    def bound_to(self, client: DataClient) -> "SchemaProbe":
        # Same memo, different connection; used for transaction-bound writes.
        probe = SchemaProbe(client, cache_ttl_s=self._cache_ttl_s, time_source=self._time_source)
        probe._cache = self._cache
        return probe

    def invalidate(self, relation: str | None = None) -> None:
        # Drop memoized results after a migration or a write that failed on schema grounds.
        if relation is None:
            self._cache.clear()
        else:
            self._cache.pop(relation, None)

    async def probe_columns(self, relation: str) -> ProbeResult:
        if self._cache_ttl_s > 0:
            cached = self._cache.get(relation)
            if cached is not None and self._time_source() - cached[0] < self._cache_ttl_s:
                return cached[1]
        try:
            rows = await self._client.sample(relation, 1)
        except DataClientError as exc:
            logger.warning("schema_probe_failed relation=%s error=%s", relation, exc)
            return ProbeResult.unknown()
        if not rows:
            logger.warning("schema_probe_empty relation=%s", relation)
            return ProbeResult.unknown()
        result = ProbeResult(columns=frozenset(rows[0].keys()))
        # Only definite results are memoized; unknown is retried on the next write.
        if self._cache_ttl_s > 0:
            self._cache[relation] = (self._time_source(), result)
        return result


@dataclass(frozen=True)
class SchemaCapabilities:
    # Versionable descriptor of the optional lease columns a deployment carries.
    deposit_column: str | None
    has_notes: bool
    has_is_draft: bool
    has_status: bool
    probed: bool


def capabilities_from_probe(probe: ProbeResult) -> SchemaCapabilities:
    return SchemaCapabilities(
        deposit_column=probe.first_present(DEPOSIT_COLUMN_CHAIN),
        has_notes=probe.allows("notes"),
        has_is_draft=probe.allows("is_draft"),
        has_status=probe.allows("status"),
        probed=not probe.is_unknown,
    )


async def resolve_capabilities(probe: SchemaProbe, relation: str = "leases") -> SchemaCapabilities:
    return capabilities_from_probe(await probe.probe_columns(relation))
