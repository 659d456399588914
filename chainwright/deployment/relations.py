"""Relation rules: which fields of a contract kind point at related contracts.

Rules are keyed by contract kind (the contract name in its build spec) and
usually live in a YAML file next to the deployment:

    Comet:
      delegates: implementation        # proxy -> implementation field
      relations:
        baseToken: {}
        assets:
          alias: "asset{index}"
    FaucetToken:
      alias_field: symbol              # name the node after its symbol()

A deployment-level file may override individual kinds of a network-level one
(see :meth:`RelationConfig.merged`).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from chainwright.core.errors import StructuralError


class FieldRelation(BaseModel):
    """One address-valued field and how to name what it points at.

    ``alias`` is a ``str.format`` template with ``field``, ``parent``,
    ``kind`` and ``index`` placeholders. Without a template single-valued
    fields are named after the field and list-valued ones get the index
    appended.
    """

    alias: str | None = None

    def render(self, field: str, parent: str, kind: str, index: int | None) -> str:
        if self.alias is None:
            return field if index is None else f"{field}{index}"
        return self.alias.format(
            field=field,
            parent=parent,
            kind=kind,
            index="" if index is None else index,
        )


class RelationRule(BaseModel):
    """Crawl rule for a single contract kind."""

    kind: str
    relations: dict[str, FieldRelation] = Field(default_factory=dict)
    delegates: str | None = None
    alias_field: str | None = None

    def fields(self) -> list[str]:
        """Every field the crawler needs to observe for this kind."""
        wanted = list(self.relations)
        for extra in (self.delegates, self.alias_field):
            if extra and extra not in wanted:
                wanted.append(extra)
        return wanted


class RelationConfig(BaseModel):
    """The full rule set for a (network, deployment)."""

    rules: dict[str, RelationRule] = Field(default_factory=dict)

    def rule_for(self, kind: str | None) -> RelationRule | None:
        if kind is None:
            return None
        return self.rules.get(kind)

    def merged(self, override: "RelationConfig") -> "RelationConfig":
        """Return a config where ``override`` replaces rules kind by kind."""
        return RelationConfig(rules={**self.rules, **override.rules})

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "RelationConfig":
        if not isinstance(data, dict):
            raise StructuralError("Relation config must be a mapping of kind -> rule")
        rules: dict[str, RelationRule] = {}
        for kind, body in data.items():
            body = dict(body or {})
            relations = {
                name: FieldRelation(**(spec or {}))
                for name, spec in (body.pop("relations", None) or {}).items()
            }
            rules[kind] = RelationRule(kind=kind, relations=relations, **body)
        return cls(rules=rules)

    @classmethod
    def load(cls, path: str | Path) -> "RelationConfig":
        """Parse a relations YAML file."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_mapping(data)


def load_relation_config(
    base_dir: str | Path, network: str, deployment: str
) -> RelationConfig:
    """Load ``relations.yaml`` for a network, overlaid by the deployment's own.

    Missing files simply contribute no rules.
    """
    root = Path(base_dir)
    config = RelationConfig()
    for candidate in (
        root / "relations.yaml",
        root / network / "relations.yaml",
        root / network / deployment / "relations.yaml",
    ):
        if candidate.is_file():
            config = config.merged(RelationConfig.load(candidate))
    return config
