"""
Backing Store Protection

OperationQueue is a FIFO admission gate: at most `max_concurrent`
operations run at once, the rest wait in arrival order. It is applied
only to queries a request flags as critical (see QueryExecutor);
everything else goes straight to the database.

The queue has no timeout of its own. An operation that never finishes
keeps its slot; `stats()` exposes how long the oldest running ticket
has been running so that this shows up in monitoring.
"""

import asyncio
import inspect
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set


logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]

# Errors that mean "the database is out of connections, try again shortly"
CONNECTION_EXHAUSTED_MARKERS = ("max_connections", "too many connections", "remaining connection slots")
TIMEOUT_MARKERS = ("timeout", "timed out")


class TicketState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(eq=False)
class QueueTicket:
    """One admitted operation and the future its caller awaits."""
    operation: Operation
    future: asyncio.Future
    position: int
    state: TicketState = TicketState.PENDING
    enqueued_at: float = field(default_factory=time.monotonic)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class OperationQueue:
    """Concurrency-bounded FIFO queue for expensive backing-store calls."""

    def __init__(self, max_concurrent: int = 3):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.current_operations = 0
        self._pending: Deque[QueueTicket] = deque()
        self._running: Set[QueueTicket] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._positions = itertools.count()
        self.completed = 0
        self.failed = 0
        self.max_observed = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def add(self, operation: Operation) -> Any:
        """
        Admit an operation and wait for its result.

        The operation's exception, if any, is raised here and affects no
        other ticket.
        """
        loop = asyncio.get_running_loop()
        ticket = QueueTicket(
            operation=operation,
            future=loop.create_future(),
            position=next(self._positions),
        )
        self._pending.append(ticket)
        self._promote()
        return await ticket.future

    def _promote(self):
        while self._pending and self.current_operations < self.max_concurrent:
            ticket = self._pending.popleft()
            if ticket.future.done():
                # caller gave up while waiting
                continue

            ticket.state = TicketState.RUNNING
            ticket.started_at = time.monotonic()
            self._running.add(ticket)
            task = asyncio.create_task(self._run(ticket))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

            self.current_operations += 1
            self.max_observed = max(self.max_observed, self.current_operations)

    async def _run(self, ticket: QueueTicket):
        try:
            result = ticket.operation()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            ticket.state = TicketState.FAILED
            if not ticket.future.done():
                ticket.future.cancel()
            raise
        except Exception as e:
            ticket.state = TicketState.FAILED
            self.failed += 1
            if not ticket.future.done():
                ticket.future.set_exception(e)
        else:
            ticket.state = TicketState.COMPLETED
            self.completed += 1
            if not ticket.future.done():
                ticket.future.set_result(result)
        finally:
            ticket.finished_at = time.monotonic()
            self._running.discard(ticket)
            self.current_operations -= 1
            self._promote()

    def stats(self) -> Dict[str, Any]:
        now = time.monotonic()
        oldest = max((now - t.started_at for t in self._running), default=0.0)
        return {
            "max_concurrent": self.max_concurrent,
            "running": self.current_operations,
            "pending": self.pending_count,
            "completed": self.completed,
            "failed": self.failed,
            "max_observed": self.max_observed,
            "oldest_running_seconds": round(oldest, 3),
        }


class QueryExecutor:
    """
    Request-scoped seam between route handlers and the database.

    Critical requests go through the shared OperationQueue, others run
    directly. With `retries`, connection exhaustion and timeouts are
    retried inside the same queue slot. Synchronous query functions run
    in a worker thread so the event loop is never blocked on the
    database driver.
    """

    def __init__(
        self,
        queue: OperationQueue,
        critical: bool = False,
        retries: int = 0,
        base_delay: float = 2.0,
        on_timeout: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.queue = queue
        self.critical = critical
        self.retries = retries
        self.base_delay = base_delay
        self.on_timeout = on_timeout

    async def run(self, query_fn: Callable[[], Any]) -> Any:
        operation = _as_coroutine_fn(query_fn)
        if self.retries > 0:
            operation = partial(
                run_with_retry,
                operation,
                retries=self.retries,
                base_delay=self.base_delay,
                on_timeout=self.on_timeout,
            )
        if self.critical:
            return await self.queue.add(operation)
        return await operation()

    __call__ = run


def _as_coroutine_fn(query_fn: Callable[[], Any]) -> Operation:
    if inspect.iscoroutinefunction(query_fn):
        return query_fn

    async def operation():
        return await asyncio.to_thread(query_fn)

    return operation


def _matches(error: Exception, markers) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in markers)


async def run_with_retry(
    query_fn: Operation,
    retries: int = 2,
    base_delay: float = 2.0,
    on_timeout: Optional[Callable[[], Awaitable[None]]] = None,
) -> Any:
    """
    Run a query, retrying when the database is out of connections.

    Connection exhaustion is retried after `(attempt + 1) * base_delay`
    seconds. Timeouts are retried immediately, after `on_timeout` (e.g. a
    pool reset) has run. Any other error is raised at once.
    """
    for attempt in range(retries + 1):
        try:
            return await query_fn()
        except Exception as e:
            if attempt >= retries:
                raise

            if _matches(e, CONNECTION_EXHAUSTED_MARKERS):
                delay = (attempt + 1) * base_delay
                logger.warning(f"Connection limit hit, retrying in {delay:.1f}s...")
                await asyncio.sleep(delay)
                continue

            if _matches(e, TIMEOUT_MARKERS):
                logger.warning("Query timeout, retrying...")
                if on_timeout is not None:
                    try:
                        await on_timeout()
                    except Exception as reset_error:
                        logger.warning(f"Reconnect before retry failed: {reset_error}")
                continue

            raise
