"""Graph crawler that rebuilds a deployment's alias and proxy maps.

Starting from the root set, addresses are visited breadth-first. For every
address the node source reports its kind and the fields named by the kind's
relation rule; address-valued fields join the frontier. Each address is
visited once, so the walk ends when the frontier is empty.

Addresses whose kind has no rule (or cannot be determined) are recorded under
their alias as opaque nodes and not expanded.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel, Field

from chainwright.core.types import Address, Alias, is_address
from chainwright.deployment.registry import Aliases, Proxies, Registry, Roots
from chainwright.deployment.relations import RelationConfig

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


class NodeInfo(BaseModel):
    """What the crawler can observe about one address."""

    kind: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class NodeSource(Protocol):
    """External collaborator answering "what is at this address?"."""

    async def describe(
        self, address: Address, relations: RelationConfig, kind: str | None = None
    ) -> NodeInfo:
        """Return the node's kind and the fields its rule asks for.

        When ``kind`` is given the caller already knows which rule applies
        (a proxy read through its implementation's interface).
        """
        ...


@dataclass
class SpiderResult:
    """Output of one crawl."""

    aliases: Aliases = field(default_factory=dict)
    proxies: Proxies = field(default_factory=dict)
    kinds: dict[Address, str | None] = field(default_factory=dict)

    @property
    def addresses(self) -> set[str]:
        return {a.lower() for a in self.aliases.values()}

    def opaque(self) -> list[Address]:
        return [addr for addr, kind in self.kinds.items() if kind is None]


def _referenced_addresses(value: Any) -> list[tuple[int | None, Address]]:
    if isinstance(value, (list, tuple)):
        return [(i, v) for i, v in enumerate(value) if is_address(v)]
    if is_address(value):
        return [(None, value)]
    return []


class Spider:
    """Breadth-first crawler over relation rules."""

    def __init__(self, source: NodeSource, relations: RelationConfig) -> None:
        self.source = source
        self.relations = relations

    async def crawl(self, roots: Roots) -> SpiderResult:
        result = SpiderResult()
        seen: set[str] = set()
        taken: dict[Alias, str] = {}
        frontier: deque[tuple[Alias, Address, bool]] = deque(
            (alias, address, True) for alias, address in roots.items()
        )

        while frontier:
            alias, address, is_root = frontier.popleft()
            key = address.lower()
            if key in seen or key == ZERO_ADDRESS:
                continue
            seen.add(key)

            info = await self.source.describe(address, self.relations)
            rule = self.relations.rule_for(info.kind)

            implementation: Address | None = None
            if rule is not None and rule.delegates:
                candidate = info.fields.get(rule.delegates)
                if is_address(candidate) and candidate.lower() != ZERO_ADDRESS:
                    implementation = candidate
                    impl_info = await self.source.describe(implementation, self.relations)
                    impl_rule = self.relations.rule_for(impl_info.kind)
                    if impl_rule is not None:
                        # Read the proxy through its implementation's interface.
                        info = await self.source.describe(
                            address, self.relations, kind=impl_info.kind
                        )
                        info.kind = impl_info.kind
                        rule = impl_rule
                    result.proxies[address] = implementation

            name = alias
            if not is_root and rule is not None and rule.alias_field:
                named = info.fields.get(rule.alias_field)
                if isinstance(named, str) and named:
                    name = named
            name = _unique(name, key, taken)
            result.aliases[name] = address
            result.kinds[address] = info.kind if rule is not None else None

            if implementation is not None:
                frontier.append((f"{name}:implementation", implementation, False))

            if rule is None:
                logger.debug("Opaque node %s at %s (kind=%s)", name, address, info.kind)
                continue

            for field_name, relation in rule.relations.items():
                for index, child in _referenced_addresses(info.fields.get(field_name)):
                    child_alias = relation.render(field_name, name, rule.kind, index)
                    frontier.append((child_alias, child, False))

        logger.info(
            "Crawled %d contracts (%d proxies, %d opaque) from %d roots",
            len(result.aliases), len(result.proxies), len(result.opaque()), len(roots),
        )
        return result


def _unique(alias: Alias, address_key: str, taken: dict[Alias, str]) -> Alias:
    """Give ``alias`` a numeric suffix if another address already holds it."""
    name = alias
    n = 1
    while name in taken and taken[name] != address_key:
        name = f"{alias}_{n}"
        n += 1
    taken[name] = address_key
    return name


async def persist_crawl(registry: Registry, roots: Roots, result: SpiderResult) -> None:
    """Store roots, then aliases, then proxies.

    A crash between steps leaves stored roots that a re-crawl can rebuild
    from; aliases and proxies are each replaced by a single write.
    """
    await registry.put_roots(roots)
    await registry.store_aliases(result.aliases)
    await registry.store_proxies(result.proxies)
