"""Constraints that turn pending migrations into scenario solutions.

:class:`MigrationConstraint` yields one solution per subset of the pending
migrations. Each solution orders its subset by name, records it on the
context, then prepares every unit and enacts the ones not yet applied.
:class:`VerifyMigrationConstraint` later walks the recorded subset and
verifies only the units that were not already enacted before the run.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol

from chainwright.deployment.migration import Migration, MigrationOutcome, MigrationRunner
from chainwright.scenario.context import ScenarioContext, World
from chainwright.scenario.subsets import subsets

logger = logging.getLogger(__name__)

Solution = Callable[[ScenarioContext], Awaitable[ScenarioContext]]


class Constraint(Protocol):
    async def solve(self, world: World, requirements: dict[str, Any]) -> list[Solution]:
        ...


class MigrationSolution:
    """Apply one ordered subset of migrations to a context."""

    def __init__(self, label: str, units: list[Migration]) -> None:
        self.label = label
        self.units = sorted(units, key=lambda m: m.name)

    @property
    def names(self) -> list[str]:
        return [m.name for m in self.units]

    async def __call__(self, ctx: ScenarioContext) -> ScenarioContext:
        gov_dm = ctx.world.governance_dm
        ctx.migrations = list(self.units)
        ctx.previously_enacted = set()

        if ctx.proposer is not None:
            await gov_dm.push_signer(ctx.proposer)
        try:
            logger.debug("%s Running scenario with migrations: %s", self.label, self.names)
            runner = MigrationRunner(ctx.world.dm, gov_dm, label=self.label)
            for unit in self.units:
                outcome = MigrationOutcome(name=unit.name)
                artifact = await runner.prepare(unit, outcome)
                # enacted() is evaluated once here; verification relies on it.
                await runner.enact(unit, artifact, outcome)
                if outcome.previously_enacted:
                    ctx.previously_enacted.add(unit.name)
                ctx.outcomes[unit.name] = outcome
        finally:
            if ctx.proposer is not None:
                gov_dm.pop_signer()
        return ctx

    def __repr__(self) -> str:
        return f"MigrationSolution({self.names})"


class MigrationConstraint:
    """One solution per subset of the discovered migration pool."""

    def __init__(self, include_empty: bool | None = None) -> None:
        self.include_empty = include_empty

    async def solve(self, world: World, requirements: dict[str, Any] | None = None) -> list[Solution]:
        label = f"[{world.name}] {{MigrationConstraint}}"
        pool = world.pending_migrations()
        if requirements and requirements.get("migrations") is False:
            pool = []

        include_empty = self.include_empty
        if include_empty is None:
            include_empty = world.settings.include_empty_migration_set

        solutions: list[Solution] = []
        for subset in subsets(pool, include_empty=include_empty):
            solutions.append(MigrationSolution(label, subset))
        if not include_empty and pool:
            logger.debug("%s Skipping empty migration set", label)
        return solutions


class VerifyMigrationConstraint:
    """Verify freshly enacted migrations recorded on the context."""

    async def solve(self, world: World, requirements: dict[str, Any] | None = None) -> list[Solution]:
        label = f"[{world.name}] {{VerifyMigrationConstraint}}"

        async def verify(ctx: ScenarioContext) -> ScenarioContext:
            runner = MigrationRunner(ctx.world.dm, ctx.world.governance_dm, label=label)
            for unit in ctx.migrations:
                outcome = ctx.outcomes.get(unit.name) or MigrationOutcome(
                    name=unit.name, previously_enacted=unit.name in ctx.previously_enacted
                )
                await runner.verify(unit, outcome)
                ctx.outcomes[unit.name] = outcome
            return ctx

        return [verify]
