"""Built-in handlers.

Only ``EchoHandler`` ships with the engine: real providers live in their
own packages and register through ``HandlerRegistry``.
"""

from __future__ import annotations

from g8r.core.errors import ValidationError
from g8r.core.logging import get_logger
from g8r.core.models import Duty, DutyPhase, HandlerResult, Roster
from g8r.execution.registry import DutyHandler, HandlerRegistry

logger = get_logger(__name__)


class EchoHandler(DutyHandler):
    """Logs ``spec.message`` and reports ``deployed``.  Useful for smoke tests."""

    def validate(self, roster: Roster, duty: Duty) -> None:
        message = duty.spec.get("message")
        if message is not None and not isinstance(message, str):
            raise ValidationError(f"Echo duty '{duty.name}': 'message' must be a string")

    def apply(self, roster: Roster, duty: Duty) -> HandlerResult:
        message = duty.spec.get("message", duty.name)
        if duty.prior_outputs and duty.prior_outputs.get("message") == message:
            return HandlerResult(DutyPhase.DEPLOYED, "already echoed", dict(duty.prior_outputs))
        logger.info("echo.apply", duty=duty.name, roster=roster.name, message=message)
        return HandlerResult(DutyPhase.DEPLOYED, f"echoed on {roster.name}", {"message": message})

    def destroy(self, roster: Roster, duty: Duty) -> None:
        logger.info("echo.destroy", duty=duty.name, roster=roster.name)


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    registry.register("Echo", "local", EchoHandler(), description=EchoHandler.__doc__)
    return registry
