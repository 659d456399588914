"""Scenario world and per-run execution context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from chainwright.core.config import Settings
from chainwright.core.types import Address
from chainwright.deployment.manager import DeploymentManager
from chainwright.deployment.migration import Migration, MigrationOutcome, MigrationRegistry
from chainwright.deployment.runtime import Handle, ManagedSigner, Signer

DEFAULT_ACTORS = ("admin", "albert", "betty", "charles")


@dataclass
class Actor:
    """A named account taking part in a scenario."""

    name: str
    signer: ManagedSigner

    @property
    def address(self) -> Address:
        return self.signer.address


class World:
    """Shared, read-mostly inputs of a scenario run."""

    def __init__(
        self,
        dm: DeploymentManager,
        gov_dm: DeploymentManager | None = None,
        migrations: MigrationRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.dm = dm
        self.auxiliary_dm = gov_dm
        self.migrations = migrations or MigrationRegistry()
        self.settings = settings or dm.settings

    @property
    def name(self) -> str:
        return f"{self.dm.network}/{self.dm.deployment}"

    @property
    def governance_dm(self) -> DeploymentManager:
        """Where governance actions execute: the auxiliary deployment if any."""
        return self.auxiliary_dm or self.dm

    def pending_migrations(self) -> list[Migration]:
        return self.migrations.discover(self.dm.network, self.dm.deployment)

    async def fork(self) -> "World":
        dm = await self.dm.fork()
        gov_dm = await self.auxiliary_dm.fork() if self.auxiliary_dm is not None else None
        return World(dm, gov_dm, self.migrations, self.settings)


class ScenarioContext:
    """Everything one scenario combination mutates; discarded afterwards."""

    def __init__(
        self,
        world: World,
        actors: dict[str, Actor] | None = None,
        proposer: Signer | None = None,
    ) -> None:
        self.world = world
        self.actors = actors or {}
        self.proposer = proposer
        self.migrations: list[Migration] = []
        self.previously_enacted: set[str] = set()
        self.outcomes: dict[str, MigrationOutcome] = {}

    @property
    def dm(self) -> DeploymentManager:
        return self.world.dm

    async def contracts(self) -> dict[str, Handle]:
        return await self.world.dm.contracts()

    async def properties(self) -> dict[str, Any]:
        """What a scenario body receives: contract handles plus ``actors``."""
        props: dict[str, Any] = dict(await self.contracts())
        props["actors"] = dict(self.actors)
        return props

    async def fork(self) -> "ScenarioContext":
        """Clone onto forked deployment managers, rebinding actors' signers."""
        world = await self.world.fork()
        actors = {
            name: Actor(name, await world.dm.get_signer(actor.address))
            for name, actor in self.actors.items()
        }
        copy = ScenarioContext(world, actors, self.proposer)
        copy.migrations = list(self.migrations)
        copy.previously_enacted = set(self.previously_enacted)
        copy.outcomes = dict(self.outcomes)
        return copy


async def initial_context(
    world: World,
    actor_names: Sequence[str] = DEFAULT_ACTORS,
    crawl: bool = False,
) -> ScenarioContext:
    """Build the base context: optionally crawl, then name the first signers."""
    if crawl:
        await world.dm.spider()
    signers = await world.dm.get_signers()
    actors = {name: Actor(name, signer) for name, signer in zip(actor_names, signers)}
    return ScenarioContext(world, actors)
