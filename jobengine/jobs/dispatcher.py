"""Job dispatcher interface: where invocations are scheduled."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable


# Runs one invocation of a job; supplied by the resume handler registry.
InvocationRunner = Callable[[str], Awaitable[None]]


class JobDispatcher(ABC):
    """Abstract interface for scheduling job invocations (in-process or queue-backed)."""

    @abstractmethod
    def bind(self, runner: InvocationRunner) -> None:
        """Set the coroutine that executes one invocation of a job id."""
        ...

    @abstractmethod
    async def submit(self, job_id: str) -> None:
        """Schedule a fresh invocation of the job. Returns without waiting for it."""
        ...

    @abstractmethod
    def is_active(self, job_id: str) -> bool:
        """True while an invocation of the job is executing in this dispatcher."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loops)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
