"""Tests for g8r.execution.registry and the built-in handlers."""

import pytest

from g8r.core.errors import CapabilityMismatch, HandlerNotFound, ValidationError
from g8r.core.models import DutyPhase
from g8r.execution.handlers import EchoHandler, register_builtin_handlers
from g8r.execution.registry import DutyHandler, HandlerRegistry
from tests._support.handlers import ScriptedHandler, make_duty, make_roster


class TestHandlerRegistry:
    """Lookup and capability checks."""

    def test_register_and_get(self):
        registry = HandlerRegistry()
        handler = ScriptedHandler()
        registry.register("Fake", "test", handler)
        assert registry.get("Fake", "test") is handler
        assert registry.has("Fake", "test")
        assert registry.list_handlers() == [("Fake", "test")]

    def test_duplicate_registration(self):
        registry = HandlerRegistry()
        registry.register("Fake", "test", ScriptedHandler())
        with pytest.raises(ValueError):
            registry.register("Fake", "test", ScriptedHandler())
        registry.register("Fake", "test", ScriptedHandler(), replace=True)

    def test_missing_handler(self):
        registry = register_builtin_handlers(HandlerRegistry())
        with pytest.raises(HandlerNotFound) as exc_info:
            registry.get("Bucket", "aws")
        assert "Echo/local" in str(exc_info.value)

    def test_capability_mismatch(self):
        registry = HandlerRegistry()
        registry.register("Fake", "test", ScriptedHandler(required_traits={"aws", "s3"}))
        duty = make_duty("site-bucket")

        with pytest.raises(CapabilityMismatch) as exc_info:
            registry.resolve(make_roster("aws-prod", "aws"), duty)
        assert exc_info.value.missing == ["s3"]

        assert registry.resolve(make_roster("aws-prod", "aws", "s3"), duty) is not None

    def test_decorator_registration(self):
        registry = HandlerRegistry()

        @registry.handler("Noop", "local")
        class NoopHandler(DutyHandler):
            """Does nothing."""

            def apply(self, roster, duty):
                return {"phase": "deployed"}

            def destroy(self, roster, duty):
                pass

        assert isinstance(registry.get("Noop", "local"), NoopHandler)
        assert registry.list_with_metadata()[0]["description"] == "Does nothing."

    def test_unregister(self):
        registry = register_builtin_handlers(HandlerRegistry())
        assert registry.unregister("Echo", "local")
        assert not registry.unregister("Echo", "local")


class TestEchoHandler:
    """The built-in smoke-test handler."""

    def test_apply_echoes_message(self):
        duty = make_duty("hello", duty_type="Echo", backend="local", spec={"message": "hi"})
        result = EchoHandler().apply(make_roster(), duty)
        assert result.phase == DutyPhase.DEPLOYED
        assert result.outputs == {"message": "hi"}

    def test_apply_short_circuits_on_prior_outputs(self):
        duty = make_duty("hello", duty_type="Echo", backend="local", spec={"message": "hi"})
        duty.prior_outputs = {"message": "hi"}
        assert EchoHandler().apply(make_roster(), duty).message == "already echoed"

    def test_validate_rejects_non_string(self):
        duty = make_duty("hello", duty_type="Echo", backend="local", spec={"message": 3})
        with pytest.raises(ValidationError):
            EchoHandler().validate(make_roster(), duty)
