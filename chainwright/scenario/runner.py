"""Scenario registry and harness.

A scenario is a named async body receiving ``(properties, context)``:

    scenarios = ScenarioRunner()

    @scenarios.scenario("upgrade comet and initialize")
    async def upgrade(props, ctx):
        comet = props["comet"]
        ...

    results = await scenarios.run(world)

For each scenario the harness takes the cartesian product of every
constraint's solutions, forks the base context per combination, applies the
solutions in order and finally runs the body. Combinations run concurrently
over independent forks; a failure aborts only its own combination.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from chainwright.core.config import Settings
from chainwright.core.errors import ScenarioFailure, StructuralError
from chainwright.core.logging import scenario_context
from chainwright.scenario.constraints import (
    Constraint,
    MigrationConstraint,
    MigrationSolution,
    Solution,
    VerifyMigrationConstraint,
)
from chainwright.scenario.context import ScenarioContext, World, initial_context

logger = logging.getLogger(__name__)

ScenarioFn = Callable[[dict[str, Any], ScenarioContext], Awaitable[None]]
ContextFactory = Callable[[World], Awaitable[ScenarioContext]]


@dataclass
class ScenarioSpec:
    name: str
    fn: ScenarioFn
    requirements: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScenarioResult:
    """Outcome of one scenario body over one combination of solutions."""

    scenario: str
    subset: list[str]
    passed: bool
    failure: ScenarioFailure | None = None
    elapsed: float = 0.0


class ScenarioRunner:
    """Registers scenarios and runs them over every solution combination."""

    def __init__(
        self,
        constraints: Sequence[Constraint] | None = None,
        context_factory: ContextFactory = initial_context,
        settings: Settings | None = None,
    ) -> None:
        self.constraints: list[Constraint] = list(
            constraints
            if constraints is not None
            else [MigrationConstraint(), VerifyMigrationConstraint()]
        )
        self.context_factory = context_factory
        self.settings = settings
        self._scenarios: dict[str, ScenarioSpec] = {}

    @property
    def scenarios(self) -> dict[str, ScenarioSpec]:
        return dict(self._scenarios)

    def scenario(
        self,
        name: str,
        requirements: dict[str, Any] | None = None,
        fn: ScenarioFn | None = None,
    ):
        """Register a scenario body; usable as a decorator when ``fn`` is omitted."""

        def decorator(body: ScenarioFn) -> ScenarioFn:
            if name in self._scenarios:
                raise StructuralError(f"Scenario '{name}' is already registered")
            self._scenarios[name] = ScenarioSpec(name, body, dict(requirements or {}))
            return body

        if fn is not None:
            return decorator(fn)
        return decorator

    async def solve(
        self, world: World, requirements: dict[str, Any] | None = None
    ) -> list[tuple[Solution, ...]]:
        """Cartesian product of every constraint's solutions."""
        per_constraint = [await c.solve(world, requirements or {}) for c in self.constraints]
        return list(itertools.product(*per_constraint))

    async def run(self, world: World, only: Sequence[str] | None = None) -> list[ScenarioResult]:
        settings = self.settings or world.settings
        semaphore = asyncio.Semaphore(max(1, settings.scenario_concurrency))
        base = await self.context_factory(world)

        jobs = []
        for spec in self._scenarios.values():
            if only is not None and spec.name not in only:
                continue
            for combo in await self.solve(world, spec.requirements):
                jobs.append((spec, combo))

        # A structural error in one run cancels the runs still in flight.
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [
                    group.create_task(self._run_one(spec, base, combo, semaphore))
                    for spec, combo in jobs
                ]
        except BaseExceptionGroup as eg:
            raise eg.exceptions[0] from None
        results = [task.result() for task in tasks]
        failed = [r for r in results if not r.passed]
        logger.info(
            "[%s] %d scenario runs, %d passed, %d failed",
            world.name, len(results), len(results) - len(failed), len(failed),
        )
        return results

    async def _run_one(
        self,
        spec: ScenarioSpec,
        base: ScenarioContext,
        combo: tuple[Solution, ...],
        semaphore: asyncio.Semaphore,
    ) -> ScenarioResult:
        subset: list[str] = []
        for solution in combo:
            if isinstance(solution, MigrationSolution):
                subset = solution.names

        async with semaphore:
            scenario_context.set((spec.name, subset))
            started = time.monotonic()
            try:
                ctx = await base.fork()
                for solution in combo:
                    ctx = await solution(ctx)
                await spec.fn(await ctx.properties(), ctx)
            except StructuralError:
                raise
            except Exception as exc:
                failure = ScenarioFailure(spec.name, subset, exc)
                logger.error("%s", failure.message, exc_info=exc)
                return ScenarioResult(
                    spec.name, subset, False, failure, time.monotonic() - started
                )
            logger.info("Scenario '%s' passed with migrations %s", spec.name, subset)
            return ScenarioResult(spec.name, subset, True, None, time.monotonic() - started)
