"""Pydantic models for rendered roster/duty configuration snapshots.

The configuration evaluator is external: g8r only consumes its rendered
output, a mapping with ``rosters`` and ``duties`` lists.  A snapshot is
treated as immutable for the duration of one ingestion cycle.

Usage::

    from g8r.core.snapshot import ConfigSnapshot

    snapshot = ConfigSnapshot.from_mapping(data)
    snapshot = ConfigSnapshot.from_file("checkout/g8r.yaml")

Example YAML::

    rosters:
      - name: aws-prod
        roster_type: aws_account
        traits: [aws, us-east-1]
        connection: {account_id: "123456789012", region: us-east-1}
    duties:
      - name: site-bucket
        duty_type: S3Bucket
        backend: aws
        roster_selector: {traits: [aws]}
        spec: {bucket: example-site}
      - name: site-cert
        duty_type: AcmCertificate
        backend: aws
        roster_selector: {traits: [aws, us-east-1]}
        depends_on: [site-bucket]

JSON is accepted too, since it is a subset of YAML.

Tags:
    g8r, snapshot, yaml, pydantic, declarative
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from g8r.core.errors import ConfigurationError
from g8r.core.models import Duty, Roster, RosterSelector


class RosterSelectorSpec(BaseModel):
    """Trait / roster-type selector of a duty."""

    model_config = ConfigDict(extra="forbid")

    traits: list[str] = Field(default_factory=list, description="All of these traits")
    any_traits: list[str] = Field(default_factory=list, description="At least one of these traits")
    roster_type: str | None = Field(default=None, description="Exact roster type")

    def to_selector(self) -> RosterSelector:
        return RosterSelector(
            traits=frozenset(self.traits),
            any_traits=frozenset(self.any_traits),
            roster_type=self.roster_type,
        )


class RosterSpec(BaseModel):
    """A roster definition as rendered by the configuration evaluator."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    roster_type: str = Field(..., min_length=1)
    traits: list[str] = Field(default_factory=list)
    connection: dict[str, Any] = Field(default_factory=dict)
    auth: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_roster(self) -> Roster:
        return Roster(
            name=self.name,
            roster_type=self.roster_type,
            traits=frozenset(self.traits),
            connection=dict(self.connection),
            auth=dict(self.auth) if self.auth is not None else None,
            metadata=dict(self.metadata),
        )


class DutySpec(BaseModel):
    """A duty definition as rendered by the configuration evaluator."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    duty_type: str = Field(..., min_length=1)
    backend: str = Field(..., min_length=1)
    selector: RosterSelectorSpec = Field(
        default_factory=RosterSelectorSpec, alias="roster_selector"
    )
    spec: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("depends_on")
    @classmethod
    def no_self_dependency(cls, v: list[str], info: ValidationInfo) -> list[str]:
        name = info.data.get("name")
        if name is not None and name in v:
            raise ValueError(f"duty '{name}' depends on itself")
        return list(dict.fromkeys(v))

    def to_duty(self, source: str | None = None) -> Duty:
        return Duty(
            name=self.name,
            duty_type=self.duty_type,
            backend=self.backend,
            selector=self.selector.to_selector(),
            spec=dict(self.spec),
            depends_on=list(self.depends_on),
            metadata=dict(self.metadata),
            source=source,
        )


class ConfigSnapshot(BaseModel):
    """Rendered configuration: all rosters and duties of one source revision."""

    model_config = ConfigDict(extra="ignore")

    rosters: list[RosterSpec] = Field(default_factory=list)
    duties: list[DutySpec] = Field(default_factory=list)

    @field_validator("rosters")
    @classmethod
    def unique_roster_names(cls, v: list[RosterSpec]) -> list[RosterSpec]:
        _check_unique("roster", [r.name for r in v])
        return v

    @field_validator("duties")
    @classmethod
    def unique_duty_names(cls, v: list[DutySpec]) -> list[DutySpec]:
        _check_unique("duty", [d.name for d in v])
        return v

    def to_rosters(self) -> list[Roster]:
        return [spec.to_roster() for spec in self.rosters]

    def to_duties(self, source: str | None = None) -> list[Duty]:
        return [spec.to_duty(source) for spec in self.duties]

    @classmethod
    def from_mapping(cls, data: Any) -> ConfigSnapshot:
        """Validate rendered data, raising ``ConfigurationError`` on bad input."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Snapshot must be a mapping with 'rosters' and 'duties', got {type(data).__name__}"
            )
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid configuration snapshot: {e}", cause=e)

    @classmethod
    def from_yaml(cls, content: str) -> ConfigSnapshot:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in snapshot: {e}", cause=e)
        return cls.from_mapping(data)

    @classmethod
    def from_file(cls, path: str | Path) -> ConfigSnapshot:
        path = Path(path)
        if not path.is_file():
            raise ConfigurationError(f"Snapshot file not found: {path}")
        return cls.from_yaml(path.read_text(encoding="utf-8"))


def _check_unique(kind: str, names: list[str]) -> None:
    dupes = sorted(name for name, count in Counter(names).items() if count > 1)
    if dupes:
        raise ValueError(f"duplicate {kind} name(s): {', '.join(dupes)}")
