"""
Test support utilities for g8r tests.

Helpers that don't fit as pytest fixtures but are useful across
multiple test files.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def write_snapshot(directory: Path, content: dict[str, Any], name: str = "g8r.yaml") -> Path:
    """Write a rendered configuration snapshot as YAML and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(content, f, default_flow_style=False, sort_keys=False)
    return path


def snapshot(
    duties: list[dict[str, Any]],
    rosters: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """A snapshot with one ``aws-prod`` roster unless rosters are given."""
    if rosters is None:
        rosters = [{"name": "aws-prod", "roster_type": "aws_account", "traits": ["aws", "us-east-1"]}]
    return {"rosters": rosters, "duties": duties}


def fake_duty(name: str, depends_on: list[str] | None = None, **extra: Any) -> dict[str, Any]:
    """Snapshot entry for a duty handled by ``ScriptedHandler`` (Fake/test)."""
    entry = {
        "name": name,
        "duty_type": "Fake",
        "backend": "test",
        "roster_selector": {"traits": ["aws"]},
        "depends_on": depends_on or [],
    }
    entry.update(extra)
    return entry


class OrderValidator:
    """
    Validates topological ordering of executed duties.

    Usage:
        validator = OrderValidator(handler.applied())
        validator.assert_before("site-bucket", "site-cert")
    """

    def __init__(self, names: list[str]) -> None:
        self.names = list(names)
        self._index = {name: i for i, name in enumerate(self.names)}

    def get_index(self, name: str) -> int:
        if name not in self._index:
            raise ValueError(f"Duty '{name}' not found in {self.names}")
        return self._index[name]

    def assert_before(self, first: str, second: str) -> None:
        first_idx = self.get_index(first)
        second_idx = self.get_index(second)
        assert first_idx < second_idx, (
            f"Expected '{first}' (index {first_idx}) before "
            f"'{second}' (index {second_idx}), order: {self.names}"
        )
