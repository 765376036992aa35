"""Tests for queue message handlers."""

import pytest

from g8r.core.errors import ConfigurationError
from g8r.scheduling.messages import MessageHandlerRegistry, duty_sync, stack_sync
from g8r.scheduling.sources import QueueMessage


def message(payload):
    return QueueMessage(id="m-1", payload=payload)


class TestDutySync:
    def test_named_scope(self):
        request = duty_sync(message({"duties": ["b", "a", "b"], "rosters": ["aws-prod"]}), {})
        assert request.duties == ["b", "a"]
        assert request.rosters == ["aws-prod"]
        assert request.is_targeted
        assert request.scope()["duties"] == ["a", "b"]

    def test_full(self):
        request = duty_sync(message({"full": True}), {})
        assert request.full and not request.is_targeted

    def test_empty_scope_rejected(self):
        with pytest.raises(ConfigurationError):
            duty_sync(message({}), {})

    def test_invalid_payload(self):
        with pytest.raises(ConfigurationError):
            duty_sync(message({"duties": "site-bucket"}), {})


class TestStackSync:
    def test_stack_from_payload_or_config(self):
        assert stack_sync(message({"stack": "websites"}), {}).stack == "websites"
        assert stack_sync(message({}), {"stack": "infra"}).is_stack_sync

    def test_missing_stack(self):
        with pytest.raises(ConfigurationError):
            stack_sync(message({"ref": "main"}), {})


class TestMessageHandlerRegistry:
    def test_builtins_and_custom(self):
        registry = MessageHandlerRegistry()
        assert registry.list_handlers() == ["duty_sync", "stack_sync"]

        registry.register("everything", lambda msg, cfg: duty_sync(message({"full": True}), cfg))
        assert registry.get("everything")(message({}), {}).full

    def test_unknown_handler(self):
        with pytest.raises(ConfigurationError):
            MessageHandlerRegistry().get("sns")
