"""
Balance lookup.

An ordered list of ``BalanceProbe`` adapters is tried until one answers;
results are cached per address in an explicit ``TTLCache``.  The probes
shipped here speak the Esplora REST API (Blockstream, mempool.space).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, Sequence

import aiohttp

from moosh_core.addresses import validate_address
from moosh_core.config import BalanceConfig
from moosh_core.errors import ProviderUnavailable, ValidationError
from moosh_core.timestamps import Clock, system_clock

logger = logging.getLogger("moosh_balance")

_TESTNET_PREFIXES = ("tb1", "m", "n", "2")


def address_network(address: str) -> str:
    return "TESTNET" if address.startswith(_TESTNET_PREFIXES) else "MAINNET"


class BalanceProbe(Protocol):
    name: str

    async def probe(self, address: str, session: aiohttp.ClientSession) -> dict:
        ...


class EsploraProbe:
    """Esplora ``/address/<addr>`` endpoint."""

    def __init__(self, base_url: str, name: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.name = name or self.base_url

    async def probe(self, address: str, session: aiohttp.ClientSession) -> dict:
        async with session.get(f"{self.base_url}/address/{address}") as resp:
            if resp.status != 200:
                raise ValueError(f"HTTP {resp.status}")
            body = await resp.json(content_type=None)
        chain = body["chain_stats"]
        mempool = body.get("mempool_stats") or {}
        confirmed = int(chain["funded_txo_sum"]) - int(chain["spent_txo_sum"])
        unconfirmed = int(mempool.get("funded_txo_sum", 0)) - int(mempool.get("spent_txo_sum", 0))
        return {
            "address": address,
            "network": address_network(address),
            "confirmedSats": confirmed,
            "unconfirmedSats": unconfirmed,
            "provider": self.name,
        }

    def __repr__(self) -> str:
        return f"EsploraProbe({self.name})"


class TTLCache:
    """Tiny time-bounded cache.  One instance per process; clock is injected."""

    def __init__(self, ttl: float, clock: Clock = system_clock):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Any, tuple[float, Any]] = {}

    def get(self, key: Any) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, value = entry
        if self._clock() >= expires:
            del self._entries[key]
            return None
        return value

    def set(self, key: Any, value: Any) -> None:
        self._entries[key] = (self._clock() + self.ttl, value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ProviderChain:
    """First probe to answer wins; none answering is ``ProviderUnavailable``."""

    def __init__(
        self,
        probes: Sequence[BalanceProbe],
        cache: Optional[TTLCache] = None,
        *,
        testnet_probes: Sequence[BalanceProbe] = (),
        timeout: float = 10.0,
    ):
        self.probes = list(probes)
        self.testnet_probes = list(testnet_probes)
        self.cache = cache if cache is not None else TTLCache(30.0)
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def get_balance(self, address: str,
                          session: Optional[aiohttp.ClientSession] = None) -> dict:
        if not validate_address(address, "bitcoin"):
            raise ValidationError("Invalid Bitcoin address")
        network = address_network(address)
        cached = self.cache.get((network, address))
        if cached is not None:
            return cached

        probes = self.testnet_probes if network == "TESTNET" else self.probes
        if session is None:
            async with aiohttp.ClientSession(timeout=self._timeout) as own:
                result = await self._try_probes(probes, address, own)
        else:
            result = await self._try_probes(probes, address, session)
        self.cache.set((network, address), result)
        return result

    async def _try_probes(self, probes: Sequence[BalanceProbe], address: str,
                          session: aiohttp.ClientSession) -> dict:
        for probe in probes:
            try:
                return await probe.probe(address, session)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Balance provider %s failed: %s", probe.name, exc)
        names = ", ".join(p.name for p in probes) or "none configured"
        raise ProviderUnavailable(f"All balance providers failed: {names}")


def build_provider_chain(cfg: BalanceConfig, clock: Clock = system_clock) -> ProviderChain:
    return ProviderChain(
        [EsploraProbe(url) for url in cfg.providers],
        TTLCache(cfg.cache_ttl_seconds, clock),
        testnet_probes=[EsploraProbe(url) for url in cfg.testnet_providers],
        timeout=cfg.timeout_seconds,
    )
