"""Shared fixtures for the chainwright test suite."""

from __future__ import annotations

import copy
from typing import Any

import pytest

from chainwright.core.config import Settings
from chainwright.core.errors import TransientError, UnverifiedContractError
from chainwright.core.types import BuildSpec
from chainwright.deployment.manager import DeploymentManager
from chainwright.deployment.relations import RelationConfig
from chainwright.deployment.store import Store
from chainwright.deployment.verify import VerifyArgs


def addr(n: int) -> str:
    """Deterministic checksum-free test address."""
    return "0x" + f"{n:040x}"


# ── Fakes ────────────────────────────────────────────────────────────────────


class FakeSigner:
    """Minimal signer with a settable on-chain nonce."""

    def __init__(self, address: str, nonce: int = 0):
        self.address = address
        self.nonce = nonce

    async def get_transaction_count(self) -> int:
        return self.nonce


class FakeRuntime:
    """In-memory contract runtime.

    ``contracts`` maps lowercased address -> {"kind": str, "fields": dict}.
    Reading a field that is not set reverts, like calling a missing getter.
    """

    def __init__(self, signers: list[FakeSigner] | None = None):
        self.signers = signers or [FakeSigner(addr(0xA0 + i)) for i in range(4)]
        self.contracts: dict[str, dict[str, Any]] = {}
        self.constructed: list[tuple[str, list[Any], str]] = []
        self.sent: list[tuple[str, str, list[Any]]] = []
        self.fail_construct = 0
        self.construct_attempts = 0
        self.forks = 0
        self._next = 0x1000

    def add(self, address: str, kind: str, **fields: Any) -> str:
        self.contracts[address.lower()] = {"kind": kind, "fields": dict(fields)}
        return address

    async def get_signers(self) -> list[FakeSigner]:
        return list(self.signers)

    async def get_signer(self, address: str) -> FakeSigner:
        for signer in self.signers:
            if signer.address.lower() == address.lower():
                return signer
        signer = FakeSigner(address)
        self.signers.append(signer)
        return signer

    async def construct(self, spec: BuildSpec, args: list[Any], signer: FakeSigner) -> str:
        self.construct_attempts += 1
        if self.fail_construct > 0:
            self.fail_construct -= 1
            raise TransientError("replacement transaction underpriced")
        self._next += 1
        address = addr(self._next)
        self.add(address, spec.contract)
        self.constructed.append((spec.contract, list(args), signer.address))
        return address

    async def call(self, address: str, selector: str, args: list[Any]) -> Any:
        node = self.contracts.get(address.lower())
        if node is None or selector not in node["fields"]:
            raise RuntimeError("execution reverted")
        return node["fields"][selector]

    async def send(self, address: str, selector: str, args: list[Any], signer: FakeSigner) -> Any:
        self.sent.append((address, selector, list(args)))
        node = self.contracts.setdefault(address.lower(), {"kind": "", "fields": {}})
        if args:
            node["fields"][selector] = args[0]
        return {"status": 1}

    async def fork(self) -> "FakeRuntime":
        self.forks += 1
        child = FakeRuntime([FakeSigner(s.address, s.nonce) for s in self.signers])
        child.contracts = copy.deepcopy(self.contracts)
        child._next = self._next
        return child


class FakeImporter:
    """Importer answering from a fixed address -> build spec table."""

    def __init__(self, specs: dict[str, BuildSpec] | None = None):
        self.specs = {a.lower(): s for a, s in (specs or {}).items()}
        self.fetched: list[tuple[str, str]] = []
        self.fail_first = 0

    async def fetch(self, address: str, network: str) -> BuildSpec:
        self.fetched.append((address, network))
        if self.fail_first > 0:
            self.fail_first -= 1
            raise TransientError("rate limited")
        spec = self.specs.get(address.lower())
        if spec is None:
            raise UnverifiedContractError(f"{address} is not verified")
        return spec


class FakeVerifier:
    def __init__(self, fail: bool = False):
        self.verified: list[VerifyArgs] = []
        self.fail = fail

    async def verify(self, args: VerifyArgs) -> None:
        if self.fail:
            raise RuntimeError("explorer says no")
        self.verified.append(args)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    """Settings with no waiting between retries."""
    return Settings(
        deploy_retry_wait=0.0,
        import_retry_delay=0.0,
        import_retries=2,
        deployments_dir="deployments",
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def importer() -> FakeImporter:
    return FakeImporter()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def relations() -> RelationConfig:
    return RelationConfig.from_mapping(
        {
            "Comet": {
                "relations": {
                    "baseToken": {},
                    "assets": {"alias": "asset{index}"},
                }
            },
            "TransparentUpgradeableProxy": {"delegates": "implementation"},
            "ERC20": {"alias_field": "symbol"},
        }
    )


@pytest.fixture
def dm(runtime, importer, verifier, relations, settings) -> DeploymentManager:
    return DeploymentManager(
        "mainnet",
        "usdc",
        runtime,
        importer=importer,
        verifier=verifier,
        relations=relations,
        settings=settings,
        store=Store(),
    )


@pytest.fixture
def comet_spec() -> BuildSpec:
    return BuildSpec(contract="Comet", abi=[{"type": "constructor", "inputs": []}], bytecode="0x60")


@pytest.fixture
def token_spec() -> BuildSpec:
    return BuildSpec(contract="ERC20", bytecode="0x61")
