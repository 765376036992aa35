"""Duty execution: retry policy, handler contract and registry, engine."""

from g8r.execution.engine import DutyExecutor
from g8r.execution.handlers import EchoHandler, register_builtin_handlers
from g8r.execution.registry import DutyHandler, HandlerRegistry
from g8r.execution.retry import RetryContext, RetryPolicy

__all__ = [
    "DutyExecutor",
    "DutyHandler",
    "EchoHandler",
    "HandlerRegistry",
    "RetryContext",
    "RetryPolicy",
    "register_builtin_handlers",
]
