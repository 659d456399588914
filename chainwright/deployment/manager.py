"""Deployment coordinator.

Owns everything a single (network, deployment) needs: the namespaced store,
the alias/proxy registry, managed signers, the deployment counter and a
lazily built map of contract handles. Contract creation is idempotent per
alias: an alias that already resolves is returned as-is unless ``force`` is
set.

Usage:
    dm = DeploymentManager("mainnet", "usdc", runtime, importer=BlockExplorerImporter())
    comet = await dm.deploy("comet", comet_spec, [config])
    await dm.spider()
    contracts = await dm.contracts()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chainwright.core.config import (
    DeploymentManagerConfig,
    Settings,
    VerificationStrategy,
    get_settings,
)
from chainwright.core.errors import (
    MissingDeployScriptError,
    StructuralError,
    UnsupportedNetworkError,
    UnverifiedContractError,
)
from chainwright.core.retry import retry
from chainwright.core.types import Address, Alias, BuildSpec, Namespace
from chainwright.deployment.importer import (
    ContractImporter,
    fetch_and_cache_contract,
    read_build_spec,
    store_build_spec,
)
from chainwright.deployment.migration import Migration, generate_migration
from chainwright.deployment.registry import CONFIGURATION_KEY, Aliases, Proxies, Registry
from chainwright.deployment.relations import RelationConfig, load_relation_config
from chainwright.deployment.runtime import (
    ContractRuntime,
    Handle,
    ManagedSigner,
    RuntimeNodeSource,
    Signer,
)
from chainwright.deployment.spider import Spider, SpiderResult, persist_crawl
from chainwright.deployment.store import Store
from chainwright.deployment.verify import (
    Verifier,
    VerifyArgs,
    delete_verify_args,
    get_verify_args,
    put_verify_args,
    verify_contract,
)

logger = logging.getLogger(__name__)

Deployed = dict[Alias, Handle]
DeployScript = Callable[["DeploymentManager", Any], Awaitable["Deployed | None"]]


@dataclass
class DeploymentSnapshot:
    count: int
    spider: SpiderResult


@dataclass
class DeploymentDelta:
    """Deployment counter and crawl graph before and after a deploy script."""

    old: DeploymentSnapshot
    new: DeploymentSnapshot

    @property
    def deployed_count(self) -> int:
        return self.new.count - self.old.count

    def added_aliases(self) -> Aliases:
        return {
            alias: address
            for alias, address in self.new.spider.aliases.items()
            if self.old.spider.aliases.get(alias) != address
        }


class DeployScriptRegistry:
    """Deploy procedures keyed by (network, deployment)."""

    def __init__(self) -> None:
        self._scripts: dict[Namespace, DeployScript] = {}

    def register(self, network: str, deployment: str, script: DeployScript | None = None):
        """Register ``script``; usable as a decorator when ``script`` is omitted."""

        def decorator(fn: DeployScript) -> DeployScript:
            self._scripts[Namespace(network=network, deployment=deployment)] = fn
            return fn

        if script is not None:
            return decorator(script)
        return decorator

    def get(self, network: str, deployment: str) -> DeployScript | None:
        return self._scripts.get(Namespace(network=network, deployment=deployment))


class DeploymentManager:
    """Coordinates contract creation, import, crawling and migration storage."""

    def __init__(
        self,
        network: str,
        deployment: str,
        runtime: ContractRuntime,
        *,
        importer: ContractImporter | None = None,
        verifier: Verifier | None = None,
        relations: RelationConfig | None = None,
        deploy_scripts: DeployScriptRegistry | None = None,
        config: DeploymentManagerConfig | None = None,
        settings: Settings | None = None,
        store: Store | None = None,
    ) -> None:
        self.network = network
        self.deployment = deployment
        self.runtime = runtime
        self.importer = importer
        self.verifier = verifier
        self.relations = relations
        self.deploy_scripts = deploy_scripts or DeployScriptRegistry()
        self.settings = settings or get_settings()
        self.config = (config or DeploymentManagerConfig()).resolved(self.settings)

        self.namespace = Namespace(network=network, deployment=deployment)
        self.store = store or Store(
            base_dir=self.config.base_dir,
            write_to_disk=bool(self.config.write_cache_to_disk),
        )
        self.cache = self.store.scoped(self.namespace)
        self.registry = Registry(self.cache)

        self.counter = 0
        self._contracts: dict[Alias, Handle] | None = None
        self._contracts_version = -1
        self._signers: list[ManagedSigner] = []

    def __repr__(self) -> str:
        return f"DeploymentManager({self.network!r}, {self.deployment!r})"

    # ── Signers ──────────────────────────────────────────────────────────────

    async def get_signers(self) -> list[ManagedSigner]:
        if self._signers:
            return self._signers
        self._signers = [ManagedSigner(s) for s in await self.runtime.get_signers()]
        return self._signers

    async def get_signer(self, address: Address | None = None) -> ManagedSigner:
        """Return the default signer, or the managed signer for ``address``."""
        signers = await self.get_signers()
        if address is None:
            if not signers:
                raise StructuralError(f"No signers available on {self.network}")
            return signers[0]

        for signer in signers:
            if signer.address.lower() == address.lower():
                return signer

        managed = ManagedSigner(await self.runtime.get_signer(address))
        self._signers.append(managed)
        return managed

    async def push_signer(self, signer: Signer | ManagedSigner) -> ManagedSigner:
        """Make ``signer`` the default signer until :meth:`pop_signer`."""
        await self.get_signers()
        managed = signer if isinstance(signer, ManagedSigner) else ManagedSigner(signer)
        self._signers.insert(0, managed)
        return managed

    def pop_signer(self) -> ManagedSigner:
        return self._signers.pop(0)

    def reset_signers_pending_counts(self) -> None:
        for signer in self._signers:
            signer.reset()

    async def _on_retry(self) -> None:
        self.reset_signers_pending_counts()

    # ── Retry ────────────────────────────────────────────────────────────────

    async def retry(
        self,
        fn: Callable[[], Awaitable[Any]],
        retries: int | None = None,
        time_limit: float | None = None,
        wait: float | None = None,
        label: str = "deployment",
    ) -> Any:
        """Retry ``fn`` with exponential backoff, resetting nonces in between."""
        return await retry(
            fn,
            retries=self.settings.deploy_retries if retries is None else retries,
            time_limit=self.settings.deploy_time_limit if time_limit is None else time_limit,
            wait=self.settings.deploy_retry_wait if wait is None else wait,
            on_retry=self._on_retry,
            label=label,
        )

    # ── Import ───────────────────────────────────────────────────────────────

    async def import_contract(self, address: Address, network: str | None = None) -> BuildSpec:
        """Import (once) the build spec of an already-deployed contract."""
        if self.importer is None:
            raise StructuralError("No contract importer configured")
        return await fetch_and_cache_contract(
            self.store,
            self.importer,
            network or self.network,
            address,
            retries=int(self.config.import_retries),
            retry_delay=float(self.config.import_retry_delay),
        )

    async def _spec_for(self, address: Address) -> BuildSpec | None:
        """Cached or imported build spec; None when none can be obtained.

        Unverified contracts and networks without an explorer both yield None,
        so the caller records an opaque node or an untyped handle.
        """
        cached = await read_build_spec(self.store, self.network, address)
        if cached is not None:
            return cached
        if self.importer is None:
            return None
        try:
            return await self.import_contract(address)
        except (UnverifiedContractError, UnsupportedNetworkError) as exc:
            logger.debug("No build spec for %s on %s: %s", address, self.network, exc.message)
            return None

    async def kind_of(self, address: Address) -> str | None:
        spec = await self._spec_for(address)
        return spec.contract if spec is not None and spec.contract else None

    async def cast(self, address: Address, spec: BuildSpec) -> Handle:
        """Treat ``address`` as ``spec`` without touching any cache."""
        return Handle(None, address, spec, self.runtime, await self.get_signer())

    # ── Deploy / clone / adopt ───────────────────────────────────────────────

    async def _construct(self, spec: BuildSpec, args: list[Any], retries: int | None) -> Address:
        async def attempt() -> Address:
            signer = await self.get_signer()
            signer.increment()
            return await self.runtime.construct(spec, list(args), signer.signer)

        address = await self.retry(attempt, retries=retries, label=f"deploy of {spec.contract}")
        self.counter += 1
        await store_build_spec(self.store, self.network, address, spec)
        await self._after_deploy(address, spec, args)
        logger.info("Deployed %s at %s", spec.contract, address,
                    extra={"network": self.network, "deployment": self.deployment})
        return address

    async def _after_deploy(self, address: Address, spec: BuildSpec, args: list[Any]) -> None:
        strategy = self.config.verification_strategy
        if strategy in (None, VerificationStrategy.NONE):
            return
        verify_args = VerifyArgs(
            address=address,
            network=self.network,
            contract=spec.contract,
            constructor_args=list(args),
            compiler_version=spec.compiler_version,
        )
        if strategy == VerificationStrategy.LAZY or self.verifier is None:
            await put_verify_args(self.cache, verify_args)
            return
        await verify_contract(
            self.verifier, verify_args, self.settings.raise_on_verification_failure
        )

    async def deploy(
        self,
        alias: Alias,
        spec: BuildSpec,
        args: list[Any] | None = None,
        force: bool = False,
        retries: int | None = None,
    ) -> Handle:
        """Deploy ``spec`` under ``alias`` unless the alias already resolves."""
        existing = await self.contract(alias)
        if existing is not None and not force:
            logger.debug("Alias %s already deployed at %s", alias, existing.address)
            return existing
        address = await self._construct(spec, args or [], retries)
        await self.put_alias(alias, address)
        return Handle(alias, address, spec, self.runtime, await self.get_signer())

    async def clone(
        self,
        alias: Alias,
        address: Address,
        args: list[Any] | None = None,
        from_network: str | None = None,
        force: bool = False,
        retries: int | None = None,
    ) -> Handle:
        """Deploy a copy of a contract living at ``address`` (on ``from_network``)."""
        existing = await self.contract(alias)
        if existing is not None and not force:
            return existing
        spec = await self.import_contract(address, from_network)
        new_address = await self._construct(spec, args or [], retries)
        await self.put_alias(alias, new_address)
        return Handle(alias, new_address, spec, self.runtime, await self.get_signer())

    async def existing(self, alias: Alias, address: Address) -> Handle:
        """Adopt an already-deployed contract under ``alias``."""
        current = await self.contract(alias)
        if current is not None:
            return current
        spec = await self.import_contract(address)
        await self.put_alias(alias, address)
        logger.debug("Imported %s from %s as '%s'", spec.contract, address, alias)
        return Handle(alias, address, spec, self.runtime, await self.get_signer())

    async def run_deploy_script(
        self, deploy_spec: Any = None, script: DeployScript | None = None
    ) -> DeploymentDelta:
        """Run the deployment's deploy script and report what it changed."""
        script = script or self.deploy_scripts.get(self.network, self.deployment)
        if script is None or not callable(script):
            raise MissingDeployScriptError(
                f"Missing deploy function for {self.network}/{self.deployment}"
            )
        old = DeploymentSnapshot(self.counter, await self.spider())
        deployed = await script(self, deploy_spec)
        new = DeploymentSnapshot(self.counter, await self.spider(deployed or {}))
        return DeploymentDelta(old=old, new=new)

    async def verify_contracts(self) -> int:
        """Verify every contract with stored verify-args; return how many passed."""
        if self.verifier is None:
            raise StructuralError("No verifier configured")
        verified = 0
        for address, args in (await get_verify_args(self.cache)).items():
            ok = await verify_contract(
                self.verifier, args, self.settings.raise_on_verification_failure
            )
            if ok:
                await delete_verify_args(self.cache, address)
                verified += 1
        return verified

    # ── Crawl ────────────────────────────────────────────────────────────────

    def relation_config(self) -> RelationConfig:
        if self.relations is None:
            self.relations = load_relation_config(
                self.config.base_dir or ".", self.network, self.deployment
            )
        return self.relations

    async def spider(self, deployed: Deployed | None = None) -> SpiderResult:
        """Crawl from the stored roots plus ``deployed``; persist the result."""
        roots = await self.registry.get_roots()
        roots.update({alias: handle.address for alias, handle in (deployed or {}).items()})
        source = RuntimeNodeSource(self.runtime, self.kind_of)
        result = await Spider(source, self.relation_config()).crawl(roots)
        await persist_crawl(self.registry, roots, result)
        self.invalidate_contracts_cache()
        return result

    # ── Registry ─────────────────────────────────────────────────────────────

    async def put_alias(self, alias: Alias, address: Address) -> None:
        await self.registry.put_alias(alias, address)
        self.invalidate_contracts_cache()

    async def put_proxy(self, address: Address, implementation: Address) -> None:
        await self.registry.put_proxy(address, implementation)
        self.invalidate_contracts_cache()

    async def get_aliases(self) -> Aliases:
        return await self.registry.get_aliases()

    async def get_proxies(self) -> Proxies:
        return await self.registry.get_proxies()

    def invalidate_contracts_cache(self) -> None:
        self._contracts = None

    # ── Contract handles ─────────────────────────────────────────────────────

    async def contracts(self) -> dict[Alias, Handle]:
        """Alias → handle map, rebuilt whenever the registry version moves.

        A proxied address is materialized with its implementation's build
        spec. Addresses without a known build spec get an untyped handle.
        """
        if self._contracts is not None and self._contracts_version == self.registry.version:
            return self._contracts

        version = self.registry.version
        aliases = await self.get_aliases()
        proxies = await self.get_proxies()

        handles: dict[Alias, Handle] = {}
        for alias, address in aliases.items():
            handles[alias] = await self._handle(alias, address, proxies)

        self._contracts = handles
        self._contracts_version = version
        return handles

    async def contract(self, alias: Alias) -> Handle | None:
        """Handle for one alias, built without materializing the others."""
        if self._contracts is not None and self._contracts_version == self.registry.version:
            return self._contracts.get(alias)
        address = (await self.get_aliases()).get(alias)
        if address is None:
            return None
        return await self._handle(alias, address, await self.get_proxies())

    async def _handle(self, alias: Alias, address: Address, proxies: Proxies) -> Handle:
        spec = await self._spec_for(proxies.get(address, address))
        if spec is None:
            spec = BuildSpec(contract="", network=self.network, address=address)
        signer = await self.get_signer() if await self.get_signers() else None
        return Handle(alias, address, spec, self.runtime, signer)

    # ── Configuration, migrations, artifacts ─────────────────────────────────

    async def read_config(self) -> Any:
        return await self.cache.read(CONFIGURATION_KEY)

    async def generate_migration(self, name: str, timestamp: int | None = None) -> str:
        key = await generate_migration(self.cache, name, timestamp)
        return self.cache.file_path(key)

    async def store_artifact(self, migration: Migration, artifact: Any) -> str:
        await self.cache.write(migration.artifact_key, artifact)
        return self.cache.file_path(migration.artifact_key)

    async def read_artifact(self, migration: Migration) -> Any:
        return await self.cache.read(migration.artifact_key)

    # ── Forking ──────────────────────────────────────────────────────────────

    async def fork(self) -> "DeploymentManager":
        """Independent copy over a forked runtime and a copied store."""
        copy = DeploymentManager(
            self.network,
            self.deployment,
            await self.runtime.fork(),
            importer=self.importer,
            verifier=self.verifier,
            relations=self.relations,
            deploy_scripts=self.deploy_scripts,
            config=self.config,
            settings=self.settings,
            store=self.store.fork(),
        )
        copy.counter = self.counter
        return copy
