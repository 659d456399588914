"""Import build descriptions of already-deployed contracts from block explorers."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from chainwright.core.chains import require_chain_config
from chainwright.core.config import Settings, get_settings
from chainwright.core.errors import (
    ImportFailedError,
    InvalidAddressError,
    UnverifiedContractError,
)
from chainwright.core.retry import retry_fixed
from chainwright.core.types import Address, BuildSpec, Namespace, is_address
from chainwright.deployment.store import NOT_FOUND, Store

logger = logging.getLogger(__name__)

# Imported and locally deployed build specs are shared by every deployment on a
# network, so they live in a network-level namespace.
CONTRACTS_DEPLOYMENT = ".contracts"


class ContractImporter(Protocol):
    """External collaborator: ``fetch(address, network) -> BuildSpec``."""

    async def fetch(self, address: Address, network: str) -> BuildSpec:
        ...


class BlockExplorerImporter:
    """Fetch verified contract metadata from Etherscan-compatible APIs."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(timeout=self.settings.explorer_timeout_seconds)

    async def fetch(self, address: Address, network: str) -> BuildSpec:
        """Fetch the build spec for a verified contract.

        Raises:
            InvalidAddressError: ``address`` is not a 20-byte hex address
            UnsupportedNetworkError: no explorer is configured for ``network``
            ImportFailedError: the explorer errored or rate limited (retryable)
            UnverifiedContractError: the explorer has no verified source
        """
        if not is_address(address):
            raise InvalidAddressError(f"Invalid contract address format: {address}")

        chain = require_chain_config(network)
        api_key = getattr(self.settings, chain.api_key_setting, "")

        result = await self._query(
            chain.explorer_api_url,
            {"module": "contract", "action": "getsourcecode", "address": address},
            api_key,
        )
        info = result[0] if isinstance(result, list) and result else {}

        raw_abi = info.get("ABI", "")
        try:
            abi = json.loads(raw_abi)
        except (TypeError, json.JSONDecodeError):
            raise UnverifiedContractError(
                f"Contract at {address} on {network} is not verified",
                details={"address": address, "network": network},
            ) from None

        bytecode = await self._creation_bytecode(chain.explorer_api_url, address, api_key)

        return BuildSpec(
            contract=info.get("ContractName", ""),
            abi=abi,
            bytecode=bytecode,
            source=info.get("SourceCode", ""),
            compiler_version=info.get("CompilerVersion", ""),
            constructor_args=info.get("ConstructorArguments", ""),
            network=network,
            address=address,
        )

    async def _creation_bytecode(self, url: str, address: Address, api_key: str) -> str:
        result = await self._query(
            url,
            {"module": "contract", "action": "getcontractcreation", "contractaddresses": address},
            api_key,
        )
        if isinstance(result, list) and result:
            return result[0].get("creationBytecode", "") or ""
        return ""

    async def _query(self, url: str, params: dict[str, str], api_key: str) -> Any:
        if api_key:
            params = {**params, "apikey": api_key}
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ImportFailedError(
                f"Explorer request failed: {exc}", details={"url": url}
            ) from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise ImportFailedError(
                "Explorer returned a non-JSON body", details={"url": url}
            ) from exc
        if data.get("status") != "1":
            raise ImportFailedError(
                f"Explorer returned an error: {data.get('message')} {data.get('result')}",
                details={"url": url, "action": params.get("action")},
            )
        return data.get("result")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


# ── Build spec cache ─────────────────────────────────────────────────────────


def _contracts_ns(network: str) -> Namespace:
    return Namespace(network=network, deployment=CONTRACTS_DEPLOYMENT)


async def read_build_spec(store: Store, network: str, address: Address) -> BuildSpec | None:
    cached = await store.read(_contracts_ns(network), f"{address.lower()}.json")
    if cached is NOT_FOUND:
        return None
    return BuildSpec(**cached)


async def store_build_spec(store: Store, network: str, address: Address, spec: BuildSpec) -> None:
    await store.write(_contracts_ns(network), f"{address.lower()}.json", spec)


async def fetch_and_cache_contract(
    store: Store,
    importer: ContractImporter,
    network: str,
    address: Address,
    retries: int,
    retry_delay: float,
) -> BuildSpec:
    """Return the cached build spec for ``address``, importing it on a miss."""
    cached = await read_build_spec(store, network, address)
    if cached is not None:
        logger.debug("Build spec cache hit for %s on %s", address, network)
        return cached

    logger.debug("Build spec cache miss for %s on %s, importing", address, network)
    spec = await retry_fixed(
        lambda: importer.fetch(address, network),
        retries=retries,
        delay=retry_delay,
        label=f"Import of {address} on {network}",
    )
    await store_build_spec(store, network, address, spec)
    return spec
