"""Shared types used across chainwright."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field

Alias = str
Address = str

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(value: Any) -> bool:
    """Return True if ``value`` looks like a 20-byte hex address."""
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def same_address(a: Address, b: Address) -> bool:
    return a.lower() == b.lower()


class BuildSpec(BaseModel):
    """Description of a contract: what it is and how to construct it."""

    contract: str
    abi: list[dict[str, Any]] = Field(default_factory=list)
    bytecode: str = ""
    source: str = ""
    compiler_version: str = ""
    constructor_args: str = ""
    network: str = ""
    address: Address | None = None  # set when imported from an explorer


class Namespace(BaseModel, frozen=True):
    """A (network, deployment) scope inside the persistent store."""

    network: str
    deployment: str = ""

    def __str__(self) -> str:
        if self.deployment:
            return f"{self.network}/{self.deployment}"
        return self.network
