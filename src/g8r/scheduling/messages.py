"""Message handlers: turn a queue message into a convergence request.

A queue row names its ``message_handler``; the handler receives the
message plus the queue's ``handler_config`` and returns a
``ConvergenceRequest``.  Built-ins:

* ``duty_sync``  -- payload ``{"duties": [...], "rosters": [...]}`` or
  ``{"full": true}``; converges the named scope.
* ``stack_sync`` -- payload ``{"stack": name}`` (or ``handler_config.stack``);
  bridges a push event such as a repository webhook into a pull sync of
  that stack.  An event for an unchanged revision records a skip.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from g8r.core.errors import ConfigurationError
from g8r.scheduling.sources import QueueMessage


@dataclass
class ConvergenceRequest:
    """Scope of a convergence pass requested by a push event."""

    duties: list[str] = field(default_factory=list)
    rosters: list[str] = field(default_factory=list)
    full: bool = False
    stack: str | None = None

    @property
    def is_stack_sync(self) -> bool:
        return self.stack is not None

    @property
    def is_targeted(self) -> bool:
        return not self.full and self.stack is None

    def scope(self) -> dict[str, Any]:
        return {
            "duties": sorted(self.duties),
            "rosters": sorted(self.rosters),
            "full": self.full,
            "stack": self.stack,
        }


MessageHandler = Callable[[QueueMessage, dict[str, Any]], ConvergenceRequest]


class DutySyncPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    duties: list[str] = Field(default_factory=list)
    rosters: list[str] = Field(default_factory=list)
    full: bool = False


def duty_sync(message: QueueMessage, config: dict[str, Any]) -> ConvergenceRequest:
    try:
        payload = DutySyncPayload.model_validate(message.payload)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid duty_sync message {message.id}: {e}", cause=e)
    if not (payload.full or payload.duties or payload.rosters):
        raise ConfigurationError(
            f"duty_sync message {message.id} names no duties or rosters and is not a full sync"
        )
    return ConvergenceRequest(
        duties=list(dict.fromkeys(payload.duties)),
        rosters=list(dict.fromkeys(payload.rosters)),
        full=payload.full,
    )


def stack_sync(message: QueueMessage, config: dict[str, Any]) -> ConvergenceRequest:
    stack = message.payload.get("stack") or config.get("stack")
    if not stack:
        raise ConfigurationError(f"stack_sync message {message.id} does not name a stack")
    return ConvergenceRequest(stack=str(stack))


class MessageHandlerRegistry:
    """Name → message handler lookup, pre-loaded with the built-ins."""

    def __init__(self) -> None:
        self._handlers: dict[str, MessageHandler] = {
            "duty_sync": duty_sync,
            "stack_sync": stack_sync,
        }

    def register(self, name: str, handler: MessageHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> MessageHandler:
        if name not in self._handlers:
            raise ConfigurationError(
                f"Unknown message handler '{name}'. Available: {sorted(self._handlers)}"
            )
        return self._handlers[name]

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)
