"""Migration units, their registry, and the runner that applies them.

A migration is a named upgrade with four operations:

    prepare(dm, gov_dm)            -> artifact   (not destructive, always runs)
    enacted(dm, gov_dm)            -> bool       ("already applied?")
    enact(dm, gov_dm, artifact)                  (destructive, at most once)
    verify(dm, gov_dm)                           (read-only post-condition)

Units are subclasses of :class:`Migration` (or built with :func:`migration`)
registered per (network, deployment) in a :class:`MigrationRegistry`. Names
start with a timestamp, so lexical order is chronological order.
"""

from __future__ import annotations

import importlib.util
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from chainwright.core.errors import MalformedMigrationError, StructuralError
from chainwright.core.types import Namespace
from chainwright.deployment.registry import ARTIFACTS_PREFIX, MIGRATIONS_PREFIX
from chainwright.deployment.store import NOT_FOUND, ScopedStore

if TYPE_CHECKING:
    from chainwright.deployment.manager import DeploymentManager

logger = logging.getLogger(__name__)


# ── Migration units ──────────────────────────────────────────────────────────


class Migration:
    """Base class for migration units.

    Subclasses set ``name`` and implement :meth:`prepare` and :meth:`enact`.
    :meth:`enacted` defaults to "never applied" and :meth:`verify` to a no-op.
    """

    name: str = ""

    async def prepare(self, dm: "DeploymentManager", gov_dm: "DeploymentManager") -> Any:
        raise NotImplementedError

    async def enact(
        self, dm: "DeploymentManager", gov_dm: "DeploymentManager", artifact: Any
    ) -> None:
        raise NotImplementedError

    async def enacted(self, dm: "DeploymentManager", gov_dm: "DeploymentManager") -> bool:
        return False

    async def verify(self, dm: "DeploymentManager", gov_dm: "DeploymentManager") -> None:
        return None

    @property
    def artifact_key(self) -> str:
        return f"{ARTIFACTS_PREFIX}{self.name}.json"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class FunctionMigration(Migration):
    """A migration assembled from plain async callables."""

    def __init__(
        self,
        name: str,
        prepare: Callable[..., Awaitable[Any]],
        enact: Callable[..., Awaitable[None]],
        enacted: Callable[..., Awaitable[bool]] | None = None,
        verify: Callable[..., Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self._prepare = prepare
        self._enact = enact
        self._enacted = enacted
        self._verify = verify

    async def prepare(self, dm, gov_dm):
        return await self._prepare(dm, gov_dm)

    async def enact(self, dm, gov_dm, artifact):
        await self._enact(dm, gov_dm, artifact)

    async def enacted(self, dm, gov_dm):
        if self._enacted is None:
            return False
        return bool(await self._enacted(dm, gov_dm))

    async def verify(self, dm, gov_dm):
        if self._verify is not None:
            await self._verify(dm, gov_dm)


def migration(
    name: str,
    *,
    prepare: Callable[..., Awaitable[Any]],
    enact: Callable[..., Awaitable[None]],
    enacted: Callable[..., Awaitable[bool]] | None = None,
    verify: Callable[..., Awaitable[None]] | None = None,
) -> Migration:
    """Build and validate a :class:`FunctionMigration`."""
    unit = FunctionMigration(name, prepare, enact, enacted, verify)
    validate_migration(unit)
    return unit


def validate_migration(unit: Any) -> None:
    """Raise :class:`MalformedMigrationError` unless ``unit`` is usable."""
    if not isinstance(unit, Migration):
        raise MalformedMigrationError(f"{unit!r} is not a Migration")
    if not isinstance(unit.name, str) or not unit.name:
        raise MalformedMigrationError(f"{type(unit).__name__} has no name")
    if isinstance(unit, FunctionMigration):
        hooks = {"prepare": unit._prepare, "enact": unit._enact,
                 "enacted": unit._enacted, "verify": unit._verify}
        for hook, fn in hooks.items():
            if fn is not None and not callable(fn):
                raise MalformedMigrationError(f"Migration {unit.name}: {hook} is not callable")
        return
    for required in ("prepare", "enact"):
        if getattr(type(unit), required) is getattr(Migration, required):
            raise MalformedMigrationError(f"Migration {unit.name} does not implement {required}()")


# ── Registry ─────────────────────────────────────────────────────────────────


class MigrationRegistry:
    """Explicit catalogue of migration units per (network, deployment)."""

    def __init__(self) -> None:
        self._units: dict[Namespace, dict[str, Migration]] = {}

    def register(self, network: str, deployment: str, unit: Migration) -> Migration:
        validate_migration(unit)
        bucket = self._units.setdefault(Namespace(network=network, deployment=deployment), {})
        existing = bucket.get(unit.name)
        if existing is not None and existing is not unit:
            raise MalformedMigrationError(
                f"Duplicate migration name {unit.name} for {network}/{deployment}"
            )
        bucket[unit.name] = unit
        return unit

    def discover(self, network: str, deployment: str) -> list[Migration]:
        """Return the units for a namespace. Order is unspecified."""
        return list(self._units.get(Namespace(network=network, deployment=deployment), {}).values())

    def load_directory(self, path: str | Path, network: str, deployment: str) -> list[Migration]:
        """Import every ``*.py`` in ``path`` and register its ``migration`` export."""
        directory = Path(path)
        if not directory.is_dir():
            logger.info("Migrations directory %s does not exist, nothing to load", directory)
            return []

        loaded: list[Migration] = []
        for py_file in sorted(directory.glob("*.py")):
            if py_file.name.startswith("_"):
                continue
            mod_name = f"chainwright_migration_{network}_{deployment}_{py_file.stem}"
            spec = importlib.util.spec_from_file_location(mod_name, py_file)
            if spec is None or spec.loader is None:
                raise MalformedMigrationError(f"Cannot import migration file {py_file}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            unit = getattr(module, "migration", None)
            if unit is None:
                raise MalformedMigrationError(f"{py_file} does not export `migration`")
            loaded.append(self.register(network, deployment, unit))
        logger.info("Loaded %d migrations from %s", len(loaded), directory)
        return loaded


# ── Template ─────────────────────────────────────────────────────────────────

MIGRATION_TEMPLATE = '''"""Migration {name}."""

from chainwright.deployment.migration import Migration


class {class_name}(Migration):
    name = "{name}"

    async def prepare(self, dm, gov_dm):
        return {{}}

    async def enact(self, dm, gov_dm, artifact):
        pass

    async def enacted(self, dm, gov_dm):
        return False

    async def verify(self, dm, gov_dm):
        pass


migration = {class_name}()
'''


async def generate_migration(store: ScopedStore, name: str, timestamp: int | None = None) -> str:
    """Write a new migration skeleton; return its key."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    full_name = f"{timestamp}_{name}"
    key = f"{MIGRATIONS_PREFIX}{full_name}.py"
    if await store.read(key) is not NOT_FOUND:
        raise StructuralError(f"Migration {key} already exists")
    class_name = "".join(part.capitalize() for part in name.split("_") if part) or "Unnamed"
    await store.write(key, MIGRATION_TEMPLATE.format(name=full_name, class_name=class_name))
    return key


# ── Runner ───────────────────────────────────────────────────────────────────


class MigrationState(str, Enum):
    DISCOVERED = "discovered"
    PREPARED = "prepared"
    ENACTED = "enacted"
    SKIPPED = "skipped"
    VERIFIED = "verified"


@dataclass
class MigrationOutcome:
    """What happened to one unit during a run."""

    name: str
    transitions: list[MigrationState] = field(default_factory=lambda: [MigrationState.DISCOVERED])
    artifact: Any = None
    artifact_key: str | None = None
    previously_enacted: bool = False

    @property
    def state(self) -> MigrationState:
        return self.transitions[-1]

    @property
    def verified(self) -> bool:
        return MigrationState.VERIFIED in self.transitions


class MigrationRunner:
    """Drives units through prepare → enact → verify.

    ``enacted()`` is checked before every ``enact``; a unit that is already
    applied is skipped (logged, not an error) and not re-verified.
    """

    def __init__(
        self,
        dm: "DeploymentManager",
        gov_dm: "DeploymentManager | None" = None,
        label: str = "",
    ) -> None:
        self.dm = dm
        self.gov_dm = gov_dm or dm
        self.label = label or f"[{dm.network}/{dm.deployment}]"

    def _log(self, message: str, unit: Migration, *args: Any) -> None:
        logger.info("%s " + message, self.label, unit.name, *args, extra={"migration": unit.name})

    async def prepare(self, unit: Migration, outcome: MigrationOutcome | None = None) -> Any:
        """Run ``prepare`` and persist the artifact, unconditionally."""
        artifact = await unit.prepare(self.dm, self.gov_dm)
        key = await self.dm.store_artifact(unit, artifact)
        self._log("Prepared migration %s; artifact stored at %s", unit, key)
        if outcome is not None:
            outcome.artifact = artifact
            outcome.artifact_key = key
            outcome.transitions.append(MigrationState.PREPARED)
        return artifact

    async def enact(self, unit: Migration, artifact: Any, outcome: MigrationOutcome) -> None:
        """Enact unless already applied."""
        outcome.previously_enacted = await unit.enacted(self.dm, self.gov_dm)
        if outcome.previously_enacted:
            self._log("Migration %s has already been enacted", unit)
            outcome.transitions.append(MigrationState.SKIPPED)
            return
        await unit.enact(self.dm, self.gov_dm, artifact)
        outcome.transitions.append(MigrationState.ENACTED)
        self._log("Enacted migration %s", unit)

    async def verify(self, unit: Migration, outcome: MigrationOutcome) -> None:
        if outcome.previously_enacted:
            return
        await unit.verify(self.dm, self.gov_dm)
        outcome.transitions.append(MigrationState.VERIFIED)
        self._log("Verified migration %s", unit)

    async def run(self, unit: Migration, verify: bool = True) -> MigrationOutcome:
        outcome = MigrationOutcome(name=unit.name)
        artifact = await self.prepare(unit, outcome)
        await self.enact(unit, artifact, outcome)
        if verify:
            await self.verify(unit, outcome)
        return outcome

    async def enact_stored(self, unit: Migration, verify: bool = True) -> MigrationOutcome:
        """Enact from a previously stored artifact instead of re-preparing."""
        artifact = await self.dm.read_artifact(unit)
        if artifact is NOT_FOUND:
            raise StructuralError(f"No stored artifact for migration {unit.name}; prepare it first")
        outcome = MigrationOutcome(name=unit.name, artifact=artifact, artifact_key=unit.artifact_key)
        await self.enact(unit, artifact, outcome)
        if verify:
            await self.verify(unit, outcome)
        return outcome

    async def run_all(self, units: list[Migration], verify: bool = True) -> list[MigrationOutcome]:
        """Run units one after another in lexical name order."""
        return [await self.run(unit, verify) for unit in sorted(units, key=lambda m: m.name)]
