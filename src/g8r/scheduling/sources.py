"""Ingestion sources: version-controlled stacks (pull) and message queues (push).

Architecture::

    ┌──────────────────────────────────────────────────────────────┐
    │                         sources.py                            │
    ├───────────────────────────────┬──────────────────────────────┤
    │  StackSource (pull)           │  QueueSource (push)          │
    │   ├── GitSource  (git CLI)    │   └── InMemoryQueueSource    │
    │   └── LocalSource (directory) │        (MemoryBroker channel)│
    └───────────────────────────────┴──────────────────────────────┘
                │                                  │
                ▼                                  ▼
       revision + ConfigSnapshot            QueueMessage (ack after record)

``GitSource`` shells out to the ``git`` executable (clone, fetch,
hard-reset to ``FETCH_HEAD``); its revision is the HEAD commit sha.
``LocalSource`` reads a directory; its revision is the content hash of the
snapshot file.  Both raise ``SourceError`` (retryable) when fetching fails.

Source types are pluggable through ``SourceFactory``.
"""

from __future__ import annotations

import base64
import os
import queue as queue_lib
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from g8r.core.errors import ConfigurationError, SourceError
from g8r.core.hashing import file_hash
from g8r.core.logging import get_logger
from g8r.core.models import Queue, Stack, utcnow
from g8r.core.snapshot import ConfigSnapshot

logger = get_logger(__name__)

GIT_TIMEOUT_SECONDS = 120


# =============================================================================
# STACK SOURCES (pull)
# =============================================================================


class StackSource(ABC):
    """A version-controlled location holding a rendered configuration snapshot."""

    def __init__(self, stack: Stack) -> None:
        self.stack = stack

    @abstractmethod
    def fetch(self) -> str:
        """Bring the local view up to date and return the current revision."""

    @property
    @abstractmethod
    def root(self) -> Path:
        ...

    def snapshot_path(self) -> Path:
        return self.root / self.stack.config_path

    def load_snapshot(self) -> ConfigSnapshot:
        return ConfigSnapshot.from_file(self.snapshot_path())


class GitSourceConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str = Field(..., min_length=1)
    branch: str = "main"
    token: str | None = None
    local_path: str | None = None


class GitSource(StackSource):
    """Checkout of a git branch managed through the ``git`` executable.

    Credentials: ``token`` from the source config, else ``GITHUB_TOKEN`` from
    the environment, sent as HTTP basic auth (``oauth2:<token>``).
    """

    def __init__(self, stack: Stack, workspace_dir: Path) -> None:
        super().__init__(stack)
        try:
            self.config = GitSourceConfig.model_validate(stack.source_config)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid git source config for stack '{stack.name}': {e}", cause=e
            ).with_context(stack=stack.name)
        if self.config.token is None:
            self.config.token = os.environ.get("GITHUB_TOKEN")
        self._root = Path(self.config.local_path or Path(workspace_dir) / stack.name)

    @property
    def root(self) -> Path:
        return self._root

    def fetch(self) -> str:
        if not (self._root / ".git").exists():
            self._root.parent.mkdir(parents=True, exist_ok=True)
            logger.info("git.clone", stack=self.stack.name, branch=self.config.branch)
            self._git(
                "clone", "--branch", self.config.branch, "--single-branch",
                self.config.url, str(self._root),
                cwd=self._root.parent,
            )
        else:
            logger.debug("git.fetch", stack=self.stack.name, branch=self.config.branch)
            self._git("fetch", "origin", self.config.branch)
            self._git("reset", "--hard", "FETCH_HEAD")
        return self._git("rev-parse", "HEAD").strip()

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        cmd = ["git"]
        if self.config.token:
            credentials = base64.b64encode(f"oauth2:{self.config.token}".encode()).decode()
            cmd += ["-c", f"http.extraHeader=Authorization: Basic {credentials}"]
        cmd += list(args)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd or self._root),
                capture_output=True,
                text=True,
                check=True,
                timeout=GIT_TIMEOUT_SECONDS,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except FileNotFoundError as e:
            raise SourceError("git executable not found", cause=e).with_context(stack=self.stack.name)
        except subprocess.TimeoutExpired as e:
            raise SourceError(f"git {args[0]} timed out", cause=e).with_context(stack=self.stack.name)
        except subprocess.CalledProcessError as e:
            raise SourceError(
                f"git {args[0]} failed: {(e.stderr or '').strip()}", cause=e
            ).with_context(stack=self.stack.name)
        return result.stdout


class LocalSource(StackSource):
    """A plain directory (``source_config.path``); revision = snapshot content hash."""

    def __init__(self, stack: Stack, workspace_dir: Path | None = None) -> None:
        super().__init__(stack)
        path = stack.source_config.get("path")
        if not path:
            raise ConfigurationError(
                f"Local source for stack '{stack.name}' needs a 'path'"
            ).with_context(stack=stack.name)
        self._root = Path(path)

    @property
    def root(self) -> Path:
        return self._root

    def fetch(self) -> str:
        path = self.snapshot_path()
        try:
            return file_hash(path.read_bytes())
        except OSError as e:
            raise SourceError(f"Cannot read snapshot {path}: {e}", cause=e).with_context(
                stack=self.stack.name
            )


# =============================================================================
# QUEUE SOURCES (push)
# =============================================================================


@dataclass
class QueueMessage:
    """One message from a push source."""

    id: str
    payload: dict[str, Any]
    attributes: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=utcnow)


class QueueSource(ABC):
    """An external event channel."""

    def __init__(self, queue: Queue) -> None:
        self.queue = queue

    def connect(self) -> None:
        """Open the channel.  Default: nothing to do."""

    def disconnect(self) -> None:
        """Close the channel.  Unacknowledged messages are redelivered."""

    @abstractmethod
    def receive(self, timeout: float = 0.0) -> QueueMessage | None:
        """Next message, or None if none arrives within ``timeout`` seconds."""

    @abstractmethod
    def acknowledge(self, message_id: str) -> None:
        ...

    @abstractmethod
    def reject(self, message_id: str) -> None:
        """Return a message for redelivery."""


class MemoryChannel:
    """In-process FIFO with acknowledgement tracking."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._messages: queue_lib.Queue[QueueMessage] = queue_lib.Queue()
        self._inflight: dict[str, QueueMessage] = {}
        self._lock = threading.Lock()

    def publish(
        self, payload: dict[str, Any], attributes: dict[str, Any] | None = None
    ) -> QueueMessage:
        message = QueueMessage(id=uuid4().hex, payload=dict(payload), attributes=dict(attributes or {}))
        self._messages.put(message)
        return message

    def get(self, timeout: float) -> QueueMessage | None:
        try:
            message = self._messages.get(timeout=timeout) if timeout > 0 else self._messages.get_nowait()
        except queue_lib.Empty:
            return None
        with self._lock:
            self._inflight[message.id] = message
        return message

    def ack(self, message_id: str) -> None:
        with self._lock:
            self._inflight.pop(message_id, None)

    def nack(self, message_id: str) -> None:
        with self._lock:
            message = self._inflight.pop(message_id, None)
        if message is not None:
            self._messages.put(message)

    def requeue_inflight(self) -> int:
        with self._lock:
            inflight = list(self._inflight.values())
            self._inflight.clear()
        for message in inflight:
            self._messages.put(message)
        return len(inflight)

    @property
    def depth(self) -> int:
        return self._messages.qsize()

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._inflight)


class MemoryBroker:
    """Named in-process channels shared by producers and ``InMemoryQueueSource``."""

    def __init__(self) -> None:
        self._channels: dict[str, MemoryChannel] = {}
        self._lock = threading.Lock()

    def channel(self, name: str) -> MemoryChannel:
        with self._lock:
            if name not in self._channels:
                self._channels[name] = MemoryChannel(name)
            return self._channels[name]

    def publish(
        self, channel: str, payload: dict[str, Any], attributes: dict[str, Any] | None = None
    ) -> QueueMessage:
        return self.channel(channel).publish(payload, attributes)


class InMemoryQueueSource(QueueSource):
    """Queue type ``memory``: reads ``queue_config.channel`` (default: queue name)."""

    def __init__(self, queue: Queue, broker: MemoryBroker) -> None:
        super().__init__(queue)
        self._channel = broker.channel(queue.queue_config.get("channel") or queue.name)

    def disconnect(self) -> None:
        self._channel.requeue_inflight()

    def receive(self, timeout: float = 0.0) -> QueueMessage | None:
        return self._channel.get(timeout)

    def acknowledge(self, message_id: str) -> None:
        self._channel.ack(message_id)

    def reject(self, message_id: str) -> None:
        self._channel.nack(message_id)


# =============================================================================
# FACTORY
# =============================================================================


StackSourceFactory = Callable[[Stack], StackSource]
QueueSourceFactory = Callable[[Queue], QueueSource]


class SourceFactory:
    """Builds stack and queue sources by type name.

    Example:
        >>> factory = SourceFactory(workspace_dir=Path("/var/lib/g8r"))
        >>> factory.register_queue_type("sqs", lambda q: SqsQueueSource(q))
        >>> source = factory.stack_source(stack)
    """

    def __init__(self, workspace_dir: Path, broker: MemoryBroker | None = None) -> None:
        self.workspace_dir = Path(workspace_dir)
        self.broker = broker or MemoryBroker()
        self._stack_types: dict[str, StackSourceFactory] = {
            "git": lambda stack: GitSource(stack, self.workspace_dir),
            "local": lambda stack: LocalSource(stack, self.workspace_dir),
        }
        self._queue_types: dict[str, QueueSourceFactory] = {
            "memory": lambda q: InMemoryQueueSource(q, self.broker),
        }

    def register_stack_type(self, source_type: str, factory: StackSourceFactory) -> None:
        self._stack_types[source_type] = factory

    def register_queue_type(self, queue_type: str, factory: QueueSourceFactory) -> None:
        self._queue_types[queue_type] = factory

    def stack_source(self, stack: Stack) -> StackSource:
        factory = self._stack_types.get(stack.source_type)
        if factory is None:
            raise ConfigurationError(
                f"Unsupported stack source type: {stack.source_type}. "
                f"Available: {sorted(self._stack_types)}"
            ).with_context(stack=stack.name)
        return factory(stack)

    def queue_source(self, queue: Queue) -> QueueSource:
        factory = self._queue_types.get(queue.queue_type)
        if factory is None:
            raise ConfigurationError(
                f"Unsupported queue type: {queue.queue_type}. "
                f"Available: {sorted(self._queue_types)}"
            ).with_context(queue=queue.name)
        return factory(queue)
