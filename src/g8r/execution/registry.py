"""Handler Registry: ``(duty_type, backend)`` → capability-checked handler.

Manifesto:
The engine never knows how to create a bucket or a DNS record.  It knows
that a duty declares ``duty_type`` + ``backend``, that some handler was
registered for that pair, and that the handler requires certain roster
traits.  The registry resolves the pair and refuses to hand out a handler
for a roster that lacks the traits.

ARCHITECTURE
────────────
::

    DutyHandler (ABC)
      ├── .required_roster_traits()   ─ traits a roster must have
      ├── .validate(roster, duty)     ─ raise ValidationError, no side effects
      ├── .apply(roster, duty)        ─ {phase, message, outputs}
      └── .destroy(roster, duty)      ─ idempotent; absent target is success

    HandlerRegistry
      ├── .register(duty_type, backend, handler)
      ├── .get(duty_type, backend)      ─ HandlerNotFound on miss
      ├── .resolve(roster, duty)        ─ get + capability check
      └── .handler(duty_type, backend)  ─ class decorator

There is no global registry: build one at startup and pass it to the
executor.

Tags:
    g8r, execution, registry, handlers, capability-check

Doc-Types:
    api-reference
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from g8r.core.errors import CapabilityMismatch, HandlerNotFound
from g8r.core.models import Duty, HandlerResult, Roster


class DutyHandler(ABC):
    """Contract every backend handler implements.

    Handlers receive only ``(roster, duty)``.  ``duty.prior_outputs`` holds
    the outputs of the last successful apply on this roster (None if the
    resource was never created, or was destroyed), so an apply can
    short-circuit instead of creating the resource again.
    ``duty.dependency_outputs`` maps dependency names to outputs produced
    earlier in the same pass.

    Raise ``TransientError`` for conditions worth retrying and
    ``PermanentError`` for everything that is not.
    """

    #: Traits a roster must have for this handler to run against it
    required_traits: frozenset[str] = frozenset()

    def required_roster_traits(self) -> frozenset[str]:
        return frozenset(self.required_traits)

    def validate(self, roster: Roster, duty: Duty) -> None:
        """Check the duty spec.  Default accepts everything."""

    @abstractmethod
    def apply(self, roster: Roster, duty: Duty) -> HandlerResult | dict[str, Any]:
        ...

    @abstractmethod
    def destroy(self, roster: Roster, duty: Duty) -> None:
        ...


def handler_key(duty_type: str, backend: str) -> str:
    return f"{duty_type}/{backend}"


class HandlerRegistry:
    """Injectable handler registry.

    Example:
        >>> registry = HandlerRegistry()
        >>> registry.register("Echo", "local", EchoHandler())
        >>> handler = registry.resolve(roster, duty)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, DutyHandler] = {}
        self._metadata: dict[str, dict[str, Any]] = {}

    def register(
        self,
        duty_type: str,
        backend: str,
        handler: DutyHandler,
        description: str | None = None,
        replace: bool = False,
    ) -> None:
        """Register ``handler`` for ``(duty_type, backend)``.

        Raises:
            ValueError: If the pair is already registered and ``replace`` is False
        """
        key = handler_key(duty_type, backend)
        if key in self._handlers and not replace:
            raise ValueError(f"Handler already registered for {key}")
        self._handlers[key] = handler
        self._metadata[key] = {
            "duty_type": duty_type,
            "backend": backend,
            "handler": type(handler).__name__,
            "required_traits": sorted(handler.required_roster_traits()),
            "description": description,
        }

    def handler(
        self, duty_type: str, backend: str, description: str | None = None
    ) -> Callable[[type[DutyHandler]], type[DutyHandler]]:
        """Class decorator: instantiate and register a handler class."""

        def decorator(cls: type[DutyHandler]) -> type[DutyHandler]:
            self.register(duty_type, backend, cls(), description=description or cls.__doc__)
            return cls

        return decorator

    def get(self, duty_type: str, backend: str) -> DutyHandler:
        """Get the handler for a pair.

        Raises:
            HandlerNotFound: If nothing is registered for the pair
        """
        key = handler_key(duty_type, backend)
        if key not in self._handlers:
            raise HandlerNotFound(duty_type, backend, sorted(self._handlers))
        return self._handlers[key]

    def has(self, duty_type: str, backend: str) -> bool:
        return handler_key(duty_type, backend) in self._handlers

    def resolve(self, roster: Roster, duty: Duty) -> DutyHandler:
        """Look up the duty's handler and verify the roster can run it.

        Raises:
            HandlerNotFound: no handler for ``(duty_type, backend)``
            CapabilityMismatch: roster lacks a required trait
        """
        handler = self.get(duty.duty_type, duty.backend)
        missing = handler.required_roster_traits() - roster.traits
        if missing:
            raise CapabilityMismatch(roster.name, duty.handler_key, missing).with_context(
                duty=duty.name
            )
        return handler

    def unregister(self, duty_type: str, backend: str) -> bool:
        key = handler_key(duty_type, backend)
        if key in self._handlers:
            del self._handlers[key]
            del self._metadata[key]
            return True
        return False

    def list_handlers(self) -> list[tuple[str, str]]:
        """All registered ``(duty_type, backend)`` pairs, sorted."""
        return sorted((m["duty_type"], m["backend"]) for m in self._metadata.values())

    def list_with_metadata(self) -> list[dict[str, Any]]:
        return sorted(
            (m.copy() for m in self._metadata.values()),
            key=lambda m: (m["duty_type"], m["backend"]),
        )
