"""Source verification of deployed contracts."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import BaseModel, Field

from chainwright.core.errors import VerificationError
from chainwright.core.types import Address
from chainwright.deployment.registry import VERIFY_ARGS_PREFIX
from chainwright.deployment.store import ScopedStore

logger = logging.getLogger(__name__)


class VerifyArgs(BaseModel):
    """Everything a verifier needs to match a deployment to its source."""

    address: Address
    network: str
    contract: str
    constructor_args: list[Any] = Field(default_factory=list)
    compiler_version: str = ""


class Verifier(Protocol):
    """External collaborator submitting sources to a block explorer."""

    async def verify(self, args: VerifyArgs) -> None:
        ...


def _key(address: Address) -> str:
    return f"{VERIFY_ARGS_PREFIX}{address.lower()}.json"


async def put_verify_args(store: ScopedStore, args: VerifyArgs) -> None:
    await store.write(_key(args.address), args)


async def get_verify_args(store: ScopedStore) -> dict[Address, VerifyArgs]:
    pending: dict[Address, VerifyArgs] = {}
    for key in await store.keys(VERIFY_ARGS_PREFIX):
        data = await store.read(key)
        if data:
            args = VerifyArgs(**data)
            pending[args.address] = args
    return pending


async def delete_verify_args(store: ScopedStore, address: Address) -> None:
    await store.delete(_key(address))


async def verify_contract(
    verifier: Verifier, args: VerifyArgs, raise_on_failure: bool = False
) -> bool:
    """Verify one contract. Returns False on a tolerated failure."""
    try:
        await verifier.verify(args)
    except Exception as exc:
        if raise_on_failure:
            raise VerificationError(
                f"Verification of {args.contract} at {args.address} failed: {exc}",
                details={"address": args.address, "network": args.network},
            ) from exc
        logger.warning("Verification of %s at %s failed: %s", args.contract, args.address, exc)
        return False
    logger.info("Verified %s at %s", args.contract, args.address)
    return True
