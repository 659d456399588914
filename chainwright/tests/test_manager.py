"""Tests for the deployment coordinator (chainwright/deployment/manager.py).

Covers:
- Idempotent deploy / clone / existing per alias, and ``force``
- Deployment counter, retries and signer nonce bookkeeping
- Contract handle cache invalidation
- Deploy scripts and their delta
- Crawling through the runtime
- Verification strategies, artifacts, configuration and forking
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from chainwright.core.config import DeploymentManagerConfig, VerificationStrategy
from chainwright.core.errors import (
    MissingDeployScriptError,
    StructuralError,
    TransientError,
    VerificationError,
)
from chainwright.deployment.importer import BlockExplorerImporter
from chainwright.deployment.manager import DeploymentManager, DeployScriptRegistry
from chainwright.deployment.migration import migration
from chainwright.deployment.store import NOT_FOUND, Store
from chainwright.deployment.verify import get_verify_args

from conftest import FakeSigner, FakeVerifier, addr


# ── Deploy ───────────────────────────────────────────────────────────────────


class TestDeploy:
    @pytest.mark.asyncio
    async def test_deploy_is_idempotent_per_alias(self, dm, runtime, comet_spec):
        first = await dm.deploy("comet", comet_spec)
        second = await dm.deploy("comet", comet_spec)
        assert first.address == second.address
        assert len(runtime.constructed) == 1
        assert dm.counter == 1

    @pytest.mark.asyncio
    async def test_force_redeploys(self, dm, runtime, comet_spec):
        first = await dm.deploy("comet", comet_spec)
        second = await dm.deploy("comet", comet_spec, force=True)
        assert first.address != second.address
        assert len(runtime.constructed) == 2
        assert dm.counter == 2
        assert (await dm.get_aliases())["comet"] == second.address

    @pytest.mark.asyncio
    async def test_deploy_passes_args_and_default_signer(self, dm, runtime, comet_spec):
        await dm.deploy("comet", comet_spec, ["config"])
        assert runtime.constructed == [("Comet", ["config"], runtime.signers[0].address)]

    @pytest.mark.asyncio
    async def test_deployed_handle_has_kind(self, dm, comet_spec):
        await dm.deploy("comet", comet_spec)
        handle = await dm.contract("comet")
        assert handle.kind == "Comet"

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, dm, runtime, comet_spec):
        runtime.fail_construct = 2
        handle = await dm.deploy("comet", comet_spec)
        assert handle.address
        assert dm.counter == 1
        signer = await dm.get_signer()
        # Failed attempts reset the pending delta; only the success remains.
        assert signer.pending == 1

    @pytest.mark.asyncio
    async def test_retry_delay_doubles_from_configured_wait(
        self, runtime, importer, relations, settings, comet_spec
    ):
        manager = DeploymentManager(
            "mainnet",
            "usdc",
            runtime,
            importer=importer,
            relations=relations,
            settings=settings.model_copy(update={"deploy_retry_wait": 0.25}),
            store=Store(),
        )
        runtime.fail_construct = 2
        with patch("chainwright.core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await manager.deploy("comet", comet_spec)
        assert runtime.construct_attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.25, 0.5]

    @pytest.mark.asyncio
    async def test_other_aliases_are_not_resolved(self, dm, runtime, importer, comet_spec):
        await dm.put_alias("external", addr(0xBA5E))
        await dm.deploy("comet", comet_spec)
        await dm.deploy("comet", comet_spec)
        assert importer.fetched == []
        assert len(runtime.constructed) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, dm, runtime, comet_spec):
        runtime.fail_construct = 10
        with pytest.raises(TransientError):
            await dm.deploy("comet", comet_spec, retries=1)
        assert dm.counter == 0
        assert await dm.contract("comet") is None


class TestCloneAndExisting:
    @pytest.mark.asyncio
    async def test_clone_imports_then_constructs(self, dm, runtime, importer, comet_spec):
        source = addr(0x5EED)
        importer.specs[source.lower()] = comet_spec
        handle = await dm.clone("comet", source, ["cfg"], from_network="mainnet")
        assert handle.address != source
        assert runtime.constructed[0][:2] == ("Comet", ["cfg"])
        again = await dm.clone("comet", source)
        assert again.address == handle.address
        assert len(importer.fetched) == 1

    @pytest.mark.asyncio
    async def test_existing_adopts_without_construct(self, dm, runtime, importer, token_spec):
        weth = addr(0xEE)
        importer.specs[weth.lower()] = token_spec
        handle = await dm.existing("weth", weth)
        assert handle.address == weth
        assert handle.kind == "ERC20"
        assert runtime.constructed == []
        assert (await dm.get_aliases()) == {"weth": weth}

    @pytest.mark.asyncio
    async def test_import_is_cached(self, dm, importer, token_spec):
        weth = addr(0xEE)
        importer.specs[weth.lower()] = token_spec
        await dm.import_contract(weth)
        await dm.import_contract(weth)
        assert len(importer.fetched) == 1

    @pytest.mark.asyncio
    async def test_import_retries_transient(self, dm, importer, token_spec):
        weth = addr(0xEE)
        importer.specs[weth.lower()] = token_spec
        importer.fail_first = 1
        spec = await dm.import_contract(weth)
        assert spec.contract == "ERC20"
        assert len(importer.fetched) == 2

    @pytest.mark.asyncio
    async def test_import_without_importer(self, runtime, settings):
        manager = DeploymentManager("mainnet", "usdc", runtime, settings=settings, store=Store())
        with pytest.raises(StructuralError):
            await manager.import_contract(addr(1))

    @pytest.mark.asyncio
    async def test_cast_does_not_touch_aliases(self, dm, token_spec):
        handle = await dm.cast(addr(7), token_spec)
        assert handle.kind == "ERC20"
        assert await dm.get_aliases() == {}


# ── Handles and signers ──────────────────────────────────────────────────────


class TestContractsCache:
    @pytest.mark.asyncio
    async def test_cache_reused_until_registry_changes(self, dm, comet_spec):
        await dm.deploy("comet", comet_spec)
        first = await dm.contracts()
        assert await dm.contracts() is first
        await dm.put_alias("other", addr(9))
        refreshed = await dm.contracts()
        assert refreshed is not first
        assert set(refreshed) == {"comet", "other"}

    @pytest.mark.asyncio
    async def test_repointed_alias_resolves_new_address(self, dm, comet_spec):
        first = await dm.deploy("comet", comet_spec)
        assert (await dm.contract("comet")).address == first.address
        await dm.put_alias("comet", addr(0xC0FE))
        assert (await dm.contract("comet")).address == addr(0xC0FE)

    @pytest.mark.asyncio
    async def test_unknown_spec_gives_untyped_handle(self, dm):
        await dm.put_alias("mystery", addr(0xDEAD))
        handle = await dm.contract("mystery")
        assert handle.kind == ""

    @pytest.mark.asyncio
    async def test_proxy_uses_implementation_spec(self, dm, comet_spec):
        impl = await dm.deploy("comet:implementation", comet_spec)
        await dm.put_alias("comet", addr(0xF0))
        await dm.put_proxy(addr(0xF0), impl.address)
        handle = await dm.contract("comet")
        assert handle.address == addr(0xF0)
        assert handle.kind == "Comet"

    @pytest.mark.asyncio
    async def test_send_increments_signer(self, dm, runtime, comet_spec):
        comet = await dm.deploy("comet", comet_spec)
        signer = await dm.get_signer()
        before = signer.pending
        await comet.send("pause", True)
        assert signer.pending == before + 1
        assert runtime.sent == [(comet.address, "pause", [True])]


class TestSigners:
    @pytest.mark.asyncio
    async def test_get_signer_by_address(self, dm, runtime):
        signer = await dm.get_signer(runtime.signers[2].address.upper().replace("0X", "0x"))
        assert signer.address == runtime.signers[2].address

    @pytest.mark.asyncio
    async def test_unknown_signer_is_fetched_from_runtime(self, dm):
        signer = await dm.get_signer(addr(0x999))
        assert signer.address == addr(0x999)

    @pytest.mark.asyncio
    async def test_push_and_pop(self, dm):
        proposer = FakeSigner(addr(0x777))
        await dm.push_signer(proposer)
        assert (await dm.get_signer()).address == proposer.address
        dm.pop_signer()
        assert (await dm.get_signer()).address != proposer.address

    @pytest.mark.asyncio
    async def test_transaction_count_includes_pending(self, dm):
        signer = await dm.get_signer()
        signer.signer.nonce = 10
        signer.increment(2)
        assert await signer.get_transaction_count() == 12
        dm.reset_signers_pending_counts()
        assert await signer.get_transaction_count() == 10


# ── Deploy scripts ───────────────────────────────────────────────────────────


class TestDeployScripts:
    @pytest.mark.asyncio
    async def test_delta_reports_new_contracts(self, dm, comet_spec, token_spec):
        async def deploy_usdc(manager, deploy_spec):
            usdc = await manager.deploy("usdc", token_spec)
            comet = await manager.deploy("comet", comet_spec, [deploy_spec["supply_cap"]])
            return {"comet": comet, "usdc": usdc}

        delta = await dm.run_deploy_script({"supply_cap": 100}, deploy_usdc)
        assert delta.old.count == 0
        assert delta.deployed_count == 2
        assert set(delta.added_aliases()) == {"comet", "usdc"}
        assert set(await dm.registry.get_roots()) == {"comet", "usdc"}

    @pytest.mark.asyncio
    async def test_registered_script_is_used(self, runtime, importer, relations, settings, token_spec):
        scripts = DeployScriptRegistry()

        @scripts.register("mainnet", "usdc")
        async def deploy(manager, deploy_spec):
            return {"usdc": await manager.deploy("usdc", token_spec)}

        manager = DeploymentManager(
            "mainnet", "usdc", runtime,
            importer=importer, relations=relations, deploy_scripts=scripts,
            settings=settings, store=Store(),
        )
        delta = await manager.run_deploy_script()
        assert delta.deployed_count == 1

    @pytest.mark.asyncio
    async def test_rerun_deploys_nothing(self, dm, token_spec):
        async def deploy(manager, deploy_spec):
            return {"usdc": await manager.deploy("usdc", token_spec)}

        await dm.run_deploy_script(None, deploy)
        delta = await dm.run_deploy_script(None, deploy)
        assert delta.deployed_count == 0
        assert delta.added_aliases() == {}

    @pytest.mark.asyncio
    async def test_missing_script(self, dm):
        with pytest.raises(MissingDeployScriptError):
            await dm.run_deploy_script()


# ── Crawl ────────────────────────────────────────────────────────────────────


class TestSpider:
    @pytest.mark.asyncio
    async def test_crawl_through_runtime(self, dm, runtime, importer, comet_spec, token_spec):
        comet, usdc = addr(0xC0), addr(0xB0)
        runtime.add(comet, "Comet", baseToken=usdc)
        runtime.add(usdc, "ERC20", symbol="USDC")
        importer.specs.update({comet.lower(): comet_spec, usdc.lower(): token_spec})
        await dm.registry.put_roots({"comet": comet})

        result = await dm.spider()
        assert result.aliases == {"comet": comet, "USDC": usdc}
        contracts = await dm.contracts()
        assert contracts["USDC"].kind == "ERC20"

    @pytest.mark.asyncio
    async def test_local_network_crawl_without_explorer(
        self, runtime, relations, settings, comet_spec
    ):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(500, json={})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        manager = DeploymentManager(
            "hardhat",
            "usdc",
            runtime,
            importer=BlockExplorerImporter(settings, client),
            relations=relations,
            settings=settings,
            store=Store(),
        )
        await manager.put_alias("external", addr(0xBA5E))
        comet = await manager.deploy("comet", comet_spec)
        usdc = runtime.add(addr(0xB0), "ERC20", symbol="USDC")
        runtime.contracts[comet.address.lower()]["fields"]["baseToken"] = usdc

        result = await manager.spider({"comet": comet})
        assert result.aliases["comet"] == comet.address
        assert usdc in result.opaque()
        contracts = await manager.contracts()
        assert contracts["comet"].kind == "Comet"
        assert requests == []

    @pytest.mark.asyncio
    async def test_unverified_root_is_opaque(self, dm):
        await dm.registry.put_roots({"mystery": addr(0xDEAD)})
        result = await dm.spider()
        assert result.opaque() == [addr(0xDEAD)]
        assert (await dm.contract("mystery")).kind == ""


# ── Verification ─────────────────────────────────────────────────────────────


class TestVerification:
    @pytest.mark.asyncio
    async def test_lazy_stores_args_then_verifies(self, runtime, relations, settings, comet_spec):
        verifier = FakeVerifier()
        manager = DeploymentManager(
            "mainnet", "usdc", runtime,
            verifier=verifier, relations=relations, settings=settings, store=Store(),
            config=DeploymentManagerConfig(verification_strategy=VerificationStrategy.LAZY),
        )
        comet = await manager.deploy("comet", comet_spec, [1, 2])
        pending = await get_verify_args(manager.cache)
        assert list(pending) == [comet.address]
        assert pending[comet.address].constructor_args == [1, 2]
        assert verifier.verified == []

        assert await manager.verify_contracts() == 1
        assert await get_verify_args(manager.cache) == {}

    @pytest.mark.asyncio
    async def test_eager_verifies_immediately(self, runtime, relations, settings, comet_spec):
        verifier = FakeVerifier()
        manager = DeploymentManager(
            "mainnet", "usdc", runtime,
            verifier=verifier, relations=relations, settings=settings, store=Store(),
            config=DeploymentManagerConfig(verification_strategy=VerificationStrategy.EAGER),
        )
        await manager.deploy("comet", comet_spec)
        assert [a.contract for a in verifier.verified] == ["Comet"]

    @pytest.mark.asyncio
    async def test_failed_verification_is_tolerated_by_default(self, runtime, relations, settings, comet_spec):
        manager = DeploymentManager(
            "mainnet", "usdc", runtime,
            verifier=FakeVerifier(fail=True), relations=relations, settings=settings, store=Store(),
            config=DeploymentManagerConfig(verification_strategy=VerificationStrategy.LAZY),
        )
        await manager.deploy("comet", comet_spec)
        assert await manager.verify_contracts() == 0
        assert len(await get_verify_args(manager.cache)) == 1

    @pytest.mark.asyncio
    async def test_failed_verification_can_raise(self, runtime, relations, settings, comet_spec):
        settings.raise_on_verification_failure = True
        manager = DeploymentManager(
            "mainnet", "usdc", runtime,
            verifier=FakeVerifier(fail=True), relations=relations, settings=settings, store=Store(),
            config=DeploymentManagerConfig(verification_strategy=VerificationStrategy.EAGER),
        )
        with pytest.raises(VerificationError):
            await manager.deploy("comet", comet_spec)


# ── Config, migrations, artifacts ────────────────────────────────────────────


class TestStorage:
    @pytest.mark.asyncio
    async def test_read_config(self, dm):
        assert await dm.read_config() is NOT_FOUND
        await dm.cache.write("configuration.json", {"baseToken": "USDC"})
        assert await dm.read_config() == {"baseToken": "USDC"}

    @pytest.mark.asyncio
    async def test_artifacts(self, dm):
        unit = migration("1000_add_asset", prepare=_noop, enact=_noop)
        path = await dm.store_artifact(unit, {"asset": "0x1"})
        assert path == "memory://mainnet/usdc/artifacts/1000_add_asset.json"
        assert await dm.read_artifact(unit) == {"asset": "0x1"}

    @pytest.mark.asyncio
    async def test_generate_migration_once(self, dm):
        path = await dm.generate_migration("add_asset", timestamp=1000)
        assert path.endswith("migrations/1000_add_asset.py")
        with pytest.raises(StructuralError):
            await dm.generate_migration("add_asset", timestamp=1000)


async def _noop(*args):
    return None


# ── Fork ─────────────────────────────────────────────────────────────────────


class TestFork:
    @pytest.mark.asyncio
    async def test_fork_is_isolated(self, dm, runtime, comet_spec, token_spec):
        await dm.deploy("comet", comet_spec)
        forked = await dm.fork()
        assert runtime.forks == 1
        assert forked.counter == 1
        assert (await forked.contract("comet")).address == (await dm.contract("comet")).address

        await forked.deploy("usdc", token_spec)
        assert await forked.contract("usdc") is not None
        assert await dm.contract("usdc") is None
        assert dm.counter == 1
