from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from propdesk.core.config import DEPOSIT_COLUMN_CHAIN
from propdesk.core.errors import DataClientError
from propdesk.persistence.client import DataClient, Row
from propdesk.services.schema_probe import ProbeResult, SchemaProbe


logger = logging.getLogger(__name__)


# Logical field -> candidate column names in priority order.
FallbackChains = Mapping[str, Sequence[str]]

LEASE_FALLBACK_CHAINS: dict[str, tuple[str, ...]] = {"deposit_amount": DEPOSIT_COLUMN_CHAIN}


def build_write_payload(
    candidate_fields: Mapping[str, Any],
    probe: ProbeResult,
    *,
    fallback_chains: FallbackChains | None = None,
) -> dict[str, Any]:
    """Reduce the caller's intended fields to the columns the relation accepts.

    Strictly additive over ``candidate_fields``: nothing is invented. An
    absent key was not supplied and is left alone; a key present with
    ``None`` is written as null so callers can clear a column.
    """
    chains = fallback_chains or {}
    payload: dict[str, Any] = {}
    for name, value in candidate_fields.items():
        chain = chains.get(name)
        if chain:
            column = probe.first_present(tuple(chain))
            if column is None:
                logger.warning("adaptive_write_field_skipped field=%s candidates=%s", name, ",".join(chain))
                continue
            payload[column] = value
            continue
        if probe.allows(name):
            payload[name] = value
        else:
            logger.debug("adaptive_write_column_absent field=%s", name)
    return payload


class AdaptiveWriter:
    def __init__(self, client: DataClient, probe: SchemaProbe | None = None) -> None:
        self._client = client
        self._probe = probe or SchemaProbe(client)

    @property
    def client(self) -> DataClient:
        return self._client

    async def insert(
        self,
        relation: str,
        fields: Mapping[str, Any],
        *,
        fallback_chains: FallbackChains | None = None,
    ) -> Row:
        # Errors from the client surface verbatim; no retry, no cleanup.
        probe = await self._probe.probe_columns(relation)
        payload = build_write_payload(fields, probe, fallback_chains=fallback_chains)
        try:
            return await self._client.insert(relation, payload)
        except DataClientError:
            self._probe.invalidate(relation)
            raise

    async def update(
        self,
        relation: str,
        row_id: str,
        fields: Mapping[str, Any],
        *,
        fallback_chains: FallbackChains | None = None,
    ) -> Row:
        probe = await self._probe.probe_columns(relation)
        payload = build_write_payload(fields, probe, fallback_chains=fallback_chains)
        if not payload:
            # Nothing writable survived the probe; report the row as it stands.
            current = await self._client.get(relation, row_id)
            if current is None:
                raise DataClientError(f"{relation} row {row_id} not found", relation=relation)
            return current
        try:
            return await self._client.update(relation, row_id, payload)
        except DataClientError:
            self._probe.invalidate(relation)
            raise

    def with_client(self, client: DataClient) -> "AdaptiveWriter":
        # Share probe state with a transaction-bound client.
        return AdaptiveWriter(client, self._probe.bound_to(client))
