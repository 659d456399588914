"""Alias, proxy and root maps for one (network, deployment) namespace.

Every mutation bumps :attr:`Registry.version`. Anything that caches data
derived from these maps (contract handles in particular) records the version
it was built at and rebuilds once the token moves.
"""

from __future__ import annotations

import logging

from chainwright.core.types import Address, Alias
from chainwright.deployment.store import NOT_FOUND, ScopedStore

logger = logging.getLogger(__name__)

# ── Persisted layout ─────────────────────────────────────────────────────────

ROOTS_KEY = "roots.json"
ALIASES_KEY = "aliases.json"
PROXIES_KEY = "proxies.json"
CONFIGURATION_KEY = "configuration.json"
ARTIFACTS_PREFIX = "artifacts/"
MIGRATIONS_PREFIX = "migrations/"
VERIFY_ARGS_PREFIX = "verify-args/"

Aliases = dict[Alias, Address]
Proxies = dict[Address, Address]
Roots = dict[Alias, Address]


class Registry:
    """Bidirectional alias ↔ address and address → implementation maps."""

    def __init__(self, store: ScopedStore) -> None:
        self.store = store
        self.version = 0

    def _bump(self) -> None:
        self.version += 1

    async def _read_map(self, key: str) -> dict[str, str]:
        value = await self.store.read(key)
        if value is NOT_FOUND:
            return {}
        return dict(value)

    # ── Aliases ──────────────────────────────────────────────────────────────

    async def get_aliases(self) -> Aliases:
        return await self._read_map(ALIASES_KEY)

    async def put_alias(self, alias: Alias, address: Address) -> None:
        aliases = await self.get_aliases()
        aliases[alias] = address
        await self.store.write(ALIASES_KEY, aliases)
        self._bump()
        logger.debug("Stored alias %s -> %s", alias, address)

    async def store_aliases(self, aliases: Aliases) -> None:
        """Replace the whole alias map."""
        await self.store.write(ALIASES_KEY, dict(aliases))
        self._bump()

    async def aliases_for(self, address: Address) -> list[Alias]:
        """Reverse lookup: every alias currently pointing at ``address``."""
        wanted = address.lower()
        return sorted(a for a, addr in (await self.get_aliases()).items() if addr.lower() == wanted)

    # ── Proxies ──────────────────────────────────────────────────────────────

    async def get_proxies(self) -> Proxies:
        return await self._read_map(PROXIES_KEY)

    async def put_proxy(self, address: Address, implementation: Address) -> None:
        proxies = await self.get_proxies()
        proxies[address] = implementation
        await self.store.write(PROXIES_KEY, proxies)
        self._bump()
        logger.debug("Stored proxy %s -> %s", address, implementation)

    async def store_proxies(self, proxies: Proxies) -> None:
        await self.store.write(PROXIES_KEY, dict(proxies))
        self._bump()

    # ── Roots ────────────────────────────────────────────────────────────────

    async def get_roots(self) -> Roots:
        return await self._read_map(ROOTS_KEY)

    async def put_roots(self, roots: Roots) -> None:
        """Merge ``roots`` into the stored root set. Roots are never dropped."""
        merged = await self.get_roots()
        merged.update(roots)
        await self.store.write(ROOTS_KEY, merged)
        self._bump()
