"""Contract runtime interface, managed signers and contract handles.

The execution backend is an external collaborator. chainwright only needs two
capabilities from it, construction and call/send, plus signer lookup and the
ability to fork itself for isolated scenario runs.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from chainwright.core.types import Address, Alias, BuildSpec
from chainwright.deployment.relations import RelationConfig
from chainwright.deployment.spider import NodeInfo

logger = logging.getLogger(__name__)


@runtime_checkable
class Signer(Protocol):
    address: Address

    async def get_transaction_count(self) -> int:
        ...


class ContractRuntime(Protocol):
    """Execution backend (a node, a local fork, a test double)."""

    async def get_signers(self) -> list[Signer]:
        ...

    async def get_signer(self, address: Address) -> Signer:
        ...

    async def construct(self, spec: BuildSpec, args: list[Any], signer: Signer) -> Address:
        """Create a new instance of ``spec``; return its address."""
        ...

    async def call(self, address: Address, selector: str, args: list[Any]) -> Any:
        """Read-only call. Raises on revert."""
        ...

    async def send(
        self, address: Address, selector: str, args: list[Any], signer: Signer
    ) -> Any:
        """State-changing transaction. Raises on revert."""
        ...

    async def fork(self) -> "ContractRuntime":
        """Return an independent copy of the current execution state."""
        ...


class ManagedSigner:
    """Signer wrapper that counts transactions it has sent but not seen mined.

    The pending delta is never cleared on its own; call :meth:`reset` after a
    failed attempt so a retry does not skip nonces.
    """

    def __init__(self, signer: Signer) -> None:
        self.signer = signer
        self._delta_count = 0

    @property
    def address(self) -> Address:
        return self.signer.address

    @property
    def pending(self) -> int:
        return self._delta_count

    async def get_transaction_count(self) -> int:
        return await self.signer.get_transaction_count() + self._delta_count

    def increment(self, count: int = 1) -> None:
        self._delta_count += count

    def reset(self) -> None:
        self._delta_count = 0

    def __repr__(self) -> str:
        return f"ManagedSigner({self.address!r}, pending={self._delta_count})"


class Handle:
    """A contract materialized from an alias: address + interface + runtime."""

    def __init__(
        self,
        alias: Alias | None,
        address: Address,
        spec: BuildSpec,
        runtime: ContractRuntime,
        signer: ManagedSigner | None = None,
    ) -> None:
        self.alias = alias
        self.address = address
        self.spec = spec
        self.runtime = runtime
        self.signer = signer

    @property
    def kind(self) -> str:
        return self.spec.contract

    async def call(self, selector: str, *args: Any) -> Any:
        return await self.runtime.call(self.address, selector, list(args))

    async def send(self, selector: str, *args: Any) -> Any:
        if self.signer is None:
            raise ValueError(f"Handle for {self.alias or self.address} has no signer")
        self.signer.increment()
        return await self.runtime.send(self.address, selector, list(args), self.signer.signer)

    def connect(self, signer: ManagedSigner) -> "Handle":
        return Handle(self.alias, self.address, self.spec, self.runtime, signer)

    def __repr__(self) -> str:
        return f"Handle({self.alias!r}, {self.address!r}, kind={self.kind!r})"


class RuntimeNodeSource:
    """Node source backed by build-spec lookup (kind) and runtime calls (fields)."""

    def __init__(
        self,
        runtime: ContractRuntime,
        kind_of: Callable[[Address], Awaitable[str | None]],
    ) -> None:
        self.runtime = runtime
        self.kind_of = kind_of

    async def describe(
        self, address: Address, relations: RelationConfig, kind: str | None = None
    ) -> NodeInfo:
        if kind is None:
            kind = await self.kind_of(address)
        rule = relations.rule_for(kind)
        if rule is None:
            return NodeInfo(kind=kind)

        fields: dict[str, Any] = {}
        for name in rule.fields():
            try:
                fields[name] = await self.runtime.call(address, name, [])
            except Exception as exc:
                # A field that reverts is simply absent from this node.
                logger.debug("Reading %s.%s at %s failed: %r", kind, name, address, exc)
        return NodeInfo(kind=kind, fields=fields)
