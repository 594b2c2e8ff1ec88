"""Routing policy: which provider handles which event type."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pcas.model import Event


class PolicyError(Exception):
    """Raised when a policy cannot be read or parsed."""


@dataclass
class ProviderConfig:
    """A named provider and its extra configuration keys."""

    name: str = ""
    type: str = ""
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class Condition:
    """Matches an event type directly or through any of several conditions."""

    event_type: str = ""
    any_of: list["Condition"] = field(default_factory=list)


@dataclass
class Action:
    """What to do when a rule matches."""

    provider: str = ""
    prompt_template: str = ""


@dataclass
class Rule:
    """A named condition/action pair."""

    name: str = ""
    condition: Condition = field(default_factory=Condition)
    action: Action = field(default_factory=Action)


@dataclass
class Policy:
    """The whole policy document."""

    version: str = ""
    providers: list[ProviderConfig] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)


class _SchemaError(ValueError):
    pass


def _mapping(value: Any, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _SchemaError(f"{where} must be a mapping")
    return value


def _sequence(value: Any, where: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise _SchemaError(f"{where} must be a list")
    return value


def _text(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise _SchemaError(f"{where} must be a string")


def _provider_from(node: Any) -> ProviderConfig:
    mapping = _mapping(node, "provider")
    extra = {key: value for key, value in mapping.items() if key not in ("name", "type")}
    return ProviderConfig(
        name=_text(mapping.get("name"), "provider name"),
        type=_text(mapping.get("type"), "provider type"),
        config=extra,
    )


def _condition_from(node: Any) -> Condition:
    mapping = _mapping(node, "condition")
    return Condition(
        event_type=_text(mapping.get("event_type"), "event_type"),
        any_of=[_condition_from(item) for item in _sequence(mapping.get("any_of"), "any_of")],
    )


def _action_from(node: Any) -> Action:
    mapping = _mapping(node, "then")
    return Action(
        provider=_text(mapping.get("provider"), "provider"),
        prompt_template=_text(mapping.get("prompt_template"), "prompt_template"),
    )


def _rule_from(node: Any) -> Rule:
    mapping = _mapping(node, "rule")
    return Rule(
        name=_text(mapping.get("name"), "rule name"),
        condition=_condition_from(mapping.get("if")),
        action=_action_from(mapping.get("then")),
    )


def parse_policy(text: str | bytes) -> Policy:
    """Parse a YAML policy document."""
    try:
        document = _mapping(yaml.safe_load(text), "policy")
        return Policy(
            version=_text(document.get("version"), "version"),
            providers=[_provider_from(p) for p in _sequence(document.get("providers"), "providers")],
            rules=[_rule_from(r) for r in _sequence(document.get("rules"), "rules")],
        )
    except (yaml.YAMLError, _SchemaError) as exc:
        raise PolicyError(f"failed to parse policy file: {exc}") from exc


def load_policy(path: str | os.PathLike[str]) -> Policy:
    """Read and parse a YAML policy file."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise PolicyError(f"failed to read policy file: {exc}") from exc
    return parse_policy(data)


class PolicyEngine:
    """Evaluates policy rules to pick a provider for an event."""

    def __init__(self, policy: Policy) -> None:
        self.policy = policy

    def select_provider(self, event: Event) -> tuple[str, str]:
        """Return ``(provider, prompt_template)`` for an event, or empty strings."""
        return self.select_provider_for_stream(event.type)

    def select_provider_for_stream(self, event_type: str) -> tuple[str, str]:
        """Return ``(provider, prompt_template)`` for an event type, or empty strings."""
        for rule in self.policy.rules:
            condition = rule.condition
            direct = bool(condition.event_type) and condition.event_type == event_type
            if direct or any(c.event_type == event_type for c in condition.any_of):
                return rule.action.provider, rule.action.prompt_template
        return "", ""