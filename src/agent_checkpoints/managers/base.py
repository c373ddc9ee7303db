"""
Base manager abstract class for the checkpoint engine.

This module provides the foundation for manager components with:
- Lifecycle management (initialize/start/stop)
- Event notification system
- Background task tracking
- Health checking
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable, Awaitable
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..utils.logging import get_logger


class ManagerState(Enum):
    """Manager lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ManagerError(Exception):
    """Base exception for manager lifecycle errors."""
    pass


class ManagerNotReadyError(ManagerError):
    """Raised when manager operation is called before initialization."""
    pass


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class BaseManager(ABC):
    """
    Abstract base class for manager components.

    Subclasses implement _initialize/_start/_stop/_health_check.
    """

    def __init__(self, name: str, enable_notifications: bool = True):
        """Initialize base manager."""
        self.name = name
        self.enable_notifications = enable_notifications
        self.logger = get_logger(f"agent-checkpoints.managers.{name}")
        self.state = ManagerState.UNINITIALIZED
        self._event_handlers: Dict[str, List[Callable]] = {}
        self._health_status = HealthStatus(healthy=True, last_check=datetime.now(timezone.utc))
        self._tasks: List[asyncio.Task] = []

    @property
    def is_ready(self) -> bool:
        """Check if manager is ready for operations."""
        return self.state in (ManagerState.READY, ManagerState.RUNNING)

    @property
    def is_running(self) -> bool:
        return self.state == ManagerState.RUNNING

    async def initialize(self) -> None:
        """Run component setup and transition to READY."""
        if self.state != ManagerState.UNINITIALIZED:
            raise ManagerError(f"Cannot initialize from state: {self.state}")

        self.state = ManagerState.INITIALIZING
        self.logger.info("initializing_manager", manager=self.name)

        try:
            await self._initialize()
            self.state = ManagerState.READY
            self.logger.info("manager_initialized", manager=self.name)
            await self._notify_event("initialized", {"manager": self.name})
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("initialization_failed", error=str(e), exc_info=True)
            raise

    async def start(self) -> None:
        """Begin background operations."""
        if not self.is_ready:
            raise ManagerNotReadyError(f"Manager {self.name} not ready")
        if self.is_running:
            return

        self.state = ManagerState.STARTING
        self.logger.info("starting_manager", manager=self.name)

        try:
            await self._start()
            self.state = ManagerState.RUNNING
            self.logger.info("manager_started", manager=self.name)
            await self._notify_event("started", {"manager": self.name})
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("start_failed", error=str(e), exc_info=True)
            raise

    async def stop(self) -> None:
        """Stop background work and release resources."""
        if self.state in (ManagerState.STOPPED, ManagerState.UNINITIALIZED):
            self.logger.warning("stop_called_when_not_running", state=self.state.value)
            return

        self.state = ManagerState.STOPPING
        self.logger.info("stopping_manager", manager=self.name)

        try:
            for task in self._tasks:
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
            self._tasks.clear()

            await self._stop()

            self.state = ManagerState.STOPPED
            self.logger.info("manager_stopped", manager=self.name)
            await self._notify_event("stopped", {"manager": self.name})
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("stop_failed", error=str(e), exc_info=True)
            raise

    async def health_check(self) -> HealthStatus:
        """Return current health status."""
        try:
            details = await self._health_check()
            self._health_status = HealthStatus(
                healthy=True,
                last_check=datetime.now(timezone.utc),
                details=details
            )
        except Exception as e:
            self._health_status = HealthStatus(
                healthy=False,
                last_check=datetime.now(timezone.utc),
                error=str(e)
            )
            self.logger.error("health_check_failed", error=str(e))

        return self._health_status

    def register_event_handler(self, event: str, handler: Callable) -> None:
        """Register an event handler. Handlers receive (event, data)."""
        self._event_handlers.setdefault(event, []).append(handler)
        self.logger.debug("event_handler_registered", event_type=event)

    async def _notify_event(self, event: str, data: Dict[str, Any]) -> None:
        """Notify all handlers of an event."""
        if not self.enable_notifications:
            return

        for handler in self._event_handlers.get(event, []):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event, data)
                else:
                    handler(event, data)
            except Exception as e:
                self.logger.error(
                    "event_handler_error",
                    event_type=event,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e)
                )

    def _spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Start a background task that stop() will cancel."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    @abstractmethod
    async def _initialize(self) -> None:
        pass

    async def _start(self) -> None:
        pass

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        return {}


__all__ = [
    'BaseManager',
    'ManagerState',
    'ManagerError',
    'ManagerNotReadyError',
    'HealthStatus',
]
