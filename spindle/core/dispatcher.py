"""Worker loop: claims tasks from the store and runs them through their handlers."""

import asyncio
import logging
import signal
import sqlite3
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Set

from ..common.config import get_breaker_settings, get_worker_settings
from ..common.errors import (
    HandlerExecutionError,
    HandlerTimeoutError,
    InvalidStateTransitionError,
    NonRetryableError,
    StoreUnavailableError,
    TaskNotFoundError,
    UnregisteredHandlerError,
)
from ..common.handler import load_handlers
from ..database.base import TaskStoreBackend
from ..database.store import TaskStore
from ..lib.utils import utc_now
from ..schemas.handler import TaskContext, TaskResult
from ..schemas.retry import RetryKind, RetryStrategy
from ..schemas.tasks import Task, TaskStatus
from .breaker import BreakerConfig, CircuitBreakerBoard
from .logger import TaskLogger
from .registry import HandlerRegistry
from .retry import next_delay

logger = logging.getLogger(__name__)

# Failures that mean the store is unreachable rather than a task being wrong
STORE_ERRORS = (sqlite3.Error, OSError, StoreUnavailableError)

DEFAULT_RECONNECT_STRATEGY = RetryStrategy(
    kind=RetryKind.EXPONENTIAL,
    base_delay=0.5,
    multiplier=2.0,
    max_delay=30.0,
    max_attempts=100,
)


def _new_stats() -> Dict[str, Any]:
    return {
        "claimed": 0,
        "completed": 0,
        "retried": 0,
        "failed": 0,
        "short_circuited": 0,
        "started_at": None,
    }


@dataclass
class WorkerState:
    """Mutable state owned by exactly one dispatcher."""

    breakers: CircuitBreakerBoard
    in_flight: Set[asyncio.Task] = field(default_factory=set)
    stats: Dict[str, Any] = field(default_factory=_new_stats)


class Dispatcher:
    """Runs claimed tasks concurrently with timeouts, retries and circuit breaking.

    Features:
    - Bounded concurrency on one event loop (blocking handlers run in threads)
    - Batched atomic claims, highest priority and oldest first
    - Per task type circuit breakers that re-queue instead of invoking
    - Stale task recovery for runs whose worker died before reporting
    - Back-off instead of crashing while the store is unreachable
    - Graceful shutdown on stop() or SIGINT/SIGTERM

    Settings left as None come from the [worker] and [circuit_breaker]
    tables of spindle.toml.
    """

    def __init__(
        self,
        store: TaskStoreBackend,
        registry: HandlerRegistry,
        *,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        batch_size: int | None = None,
        task_timeout: float | None = None,
        breaker_config: BreakerConfig | None = None,
        stale_after: float | None = None,
        reaper_interval: float | None = None,
        shutdown_timeout: float | None = None,
        reconnect_strategy: RetryStrategy | None = None,
        clock: Callable[[], datetime] = utc_now,
        install_signal_handlers: bool = False,
    ):
        settings = get_worker_settings()

        self.store = store
        self.registry = registry
        self.concurrency = concurrency if concurrency is not None else settings["concurrency"]
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings["poll_interval"]
        )
        self.batch_size = batch_size if batch_size is not None else settings["batch_size"]
        self.task_timeout = (
            task_timeout if task_timeout is not None else settings["task_timeout"]
        )
        self.stale_after = stale_after if stale_after is not None else settings["stale_after"]
        self.reaper_interval = (
            reaper_interval if reaper_interval is not None else settings["reaper_interval"]
        )
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None else settings["shutdown_timeout"]
        )
        self.reconnect_strategy = reconnect_strategy or DEFAULT_RECONNECT_STRATEGY
        self.install_signal_handlers = install_signal_handlers
        self._clock = clock

        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.task_timeout <= 0:
            raise ValueError(f"task_timeout must be > 0, got {self.task_timeout}")
        if 0 < self.stale_after <= self.task_timeout:
            logger.warning(
                "stale_after (%ss) is not larger than task_timeout (%ss); "
                "slow tasks may be recovered while still running",
                self.stale_after,
                self.task_timeout,
            )

        config = breaker_config or BreakerConfig.from_settings(get_breaker_settings())
        self.state = WorkerState(breakers=CircuitBreakerBoard(config, clock))

        self._shutdown_event = asyncio.Event()
        self._last_reap: datetime | None = None
        self._previous_signal_handlers: Dict[int, Any] = {}

    # === Loop ===

    async def start(self) -> None:
        """Process tasks until stop() is called or a shutdown signal arrives."""
        self.state.stats["started_at"] = self._clock()
        self._shutdown_event.clear()

        if self.install_signal_handlers:
            self._register_signal_handlers()

        logger.info(
            "Dispatcher started: concurrency=%d, batch_size=%d, poll_interval=%ss, handlers=%s",
            self.concurrency,
            self.batch_size,
            self.poll_interval,
            ", ".join(self.registry.task_types()) or "none",
        )

        consecutive_failures = 0
        try:
            while not self._shutdown_event.is_set():
                saturated = len(self.state.in_flight) >= self.concurrency
                try:
                    await self._maybe_recover_stale()
                    claimed = await self.run_once()
                except STORE_ERRORS as e:
                    consecutive_failures += 1
                    delay = next_delay(consecutive_failures, self.reconnect_strategy)
                    logger.error(
                        "Task store unavailable (%s), retrying in %.1fs",
                        e,
                        delay.total_seconds(),
                    )
                    await self._pause(delay.total_seconds())
                    continue

                if consecutive_failures:
                    logger.info("Task store reachable again")
                    consecutive_failures = 0

                if not claimed and not saturated:
                    await self._pause(self.poll_interval)
        finally:
            await self._graceful_shutdown()
            self._restore_signal_handlers()

    def stop(self) -> None:
        """Ask the loop to finish; in-flight tasks get ``shutdown_timeout`` to complete."""
        self._shutdown_event.set()

    async def run_once(self) -> int:
        """Claim and spawn as many tasks as there are free slots.

        Returns:
            Number of tasks claimed (0 when idle or saturated)
        """
        free = self.concurrency - len(self.state.in_flight)
        if free <= 0:
            await asyncio.wait(
                set(self.state.in_flight),
                timeout=self.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
            return 0

        tasks = await self.store.claim_next(min(free, self.batch_size))
        for task in tasks:
            self._spawn(task)

        if tasks:
            self.state.stats["claimed"] += len(tasks)
            logger.debug("Claimed %d task(s)", len(tasks))
        return len(tasks)

    async def run_until_idle(self) -> int:
        """Run until nothing is claimable and nothing is running.

        Tasks scheduled for later (retries with backoff, short-circuited
        tasks) are left for a future run.

        Returns:
            Total number of tasks claimed
        """
        total = 0
        while True:
            claimed = await self.run_once()
            total += claimed
            if claimed:
                continue
            if self.state.in_flight:
                await asyncio.wait(
                    set(self.state.in_flight), return_when=asyncio.FIRST_COMPLETED
                )
                continue
            return total

    async def sync_task_types(self) -> List[str]:
        """Register every task type this worker can handle in the store."""
        for registered in self.registry:
            await self.store.register_task_type(
                registered.task_type, registered.description or None
            )
        task_types = self.registry.task_types()
        if task_types:
            logger.info("Registered task types: %s", ", ".join(task_types))
        return task_types

    def stats(self) -> Dict[str, Any]:
        stats = dict(self.state.stats)
        stats["in_flight"] = len(self.state.in_flight)
        stats["circuits"] = {
            task_type: state.value
            for task_type, state in self.state.breakers.snapshot().items()
        }
        return stats

    # === Execution ===

    def _spawn(self, task: Task) -> None:
        execution = asyncio.create_task(self._execute(task), name=f"task-{task['id'][:8]}")
        self.state.in_flight.add(execution)
        execution.add_done_callback(self._on_done)

    def _on_done(self, execution: asyncio.Task) -> None:
        self.state.in_flight.discard(execution)
        if not execution.cancelled() and execution.exception() is not None:
            logger.error(
                "Execution %s crashed",
                execution.get_name(),
                exc_info=execution.exception(),
            )

    async def _execute(self, task: Task) -> None:
        task_id = task["id"]
        task_type = task["task_type"]
        breakers = self.state.breakers

        if not breakers.allow(task_type):
            delay = breakers.retry_after(task_type)
            updated = await self._report(
                self.store.requeue, task_id, delay, claim_id=task["claim_id"]
            )
            if updated is not None:
                self.state.stats["short_circuited"] += 1
                logger.warning(
                    "Circuit open for '%s', task %s re-queued for %.0fs",
                    task_type,
                    task_id,
                    delay.total_seconds(),
                )
            return

        try:
            registered = self.registry.get(task_type)
        except UnregisteredHandlerError as e:
            breakers.abandon(task_type)
            logger.error("Task %s: %s", task_id, e)
            await self._fail(task, str(e), retryable=True)
            return

        timeout = registered.timeout_seconds or self.task_timeout
        ctx = TaskContext.from_task(task, TaskLogger(task_id, task_type))
        logger.debug(
            "Running task %s (%s), attempt %d/%d",
            task_id,
            task_type,
            ctx.attempt,
            ctx.max_attempts,
        )

        # A timed out blocking handler keeps its thread until it returns
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                result = TaskResult.coerce(await registered.invoke(ctx))
        except TimeoutError as e:
            breakers.record(task_type, success=False)
            # Only the deadline counts as a timeout, not a TimeoutError raised by the handler
            if deadline.expired():
                message = str(HandlerTimeoutError(task_type, timeout))
            else:
                message = str(HandlerExecutionError(task_type, f"{type(e).__name__}: {e}"))
            await self._fail(task, message, retryable=True)
            return
        except NonRetryableError as e:
            breakers.record(task_type, success=False)
            await self._fail(task, str(HandlerExecutionError(task_type, str(e))), retryable=False)
            return
        except Exception as e:
            breakers.record(task_type, success=False)
            logger.debug("Handler for task %s raised", task_id, exc_info=True)
            error = HandlerExecutionError(task_type, f"{type(e).__name__}: {e}")
            await self._fail(task, str(error), retryable=True)
            return

        if result.success:
            breakers.record(task_type, success=True)
            updated = await self._report(
                self.store.report_success,
                task_id,
                result.result_metadata(),
                claim_id=task["claim_id"],
            )
            if updated is not None:
                self.state.stats["completed"] += 1
                logger.info("Task %s (%s) completed", task_id, task_type)
        else:
            breakers.record(task_type, success=False)
            error = HandlerExecutionError(task_type, result.error or "handler reported failure")
            await self._fail(task, str(error), retryable=result.retryable)

    async def _fail(self, task: Task, error: str, retryable: bool) -> None:
        updated = await self._report(
            self.store.report_failure,
            task["id"],
            error,
            retryable,
            claim_id=task["claim_id"],
        )
        if updated is None:
            return

        if updated["status"] == TaskStatus.RETRYING:
            self.state.stats["retried"] += 1
            logger.warning(
                "Task %s (%s) failed attempt %d/%d, retrying at %s: %s",
                updated["id"],
                updated["task_type"],
                updated["current_attempt"],
                updated["max_attempts"],
                updated["scheduled_at"].isoformat() if updated["scheduled_at"] else "now",
                error,
            )
        else:
            self.state.stats["failed"] += 1
            logger.error(
                "Task %s (%s) moved to dead letter after %d attempt(s): %s",
                updated["id"],
                updated["task_type"],
                updated["current_attempt"],
                error,
            )

    async def _report(
        self, operation: Callable[..., Awaitable[Task]], *args: Any, **kwargs: Any
    ) -> Task | None:
        """Record an outcome, retrying through store outages until shutdown.

        Returns None when the outcome could not be recorded, either because
        the task changed under us (for example it was recovered as stale and
        claimed by another run) or because the dispatcher is shutting down
        (stale recovery picks such tasks up later).
        """
        failures = 0
        while True:
            try:
                return await operation(*args, **kwargs)
            except (InvalidStateTransitionError, TaskNotFoundError) as e:
                logger.warning("Outcome not recorded: %s", e)
                return None
            except STORE_ERRORS as e:
                failures += 1
                if self._shutdown_event.is_set():
                    logger.error("Outcome not recorded, store unavailable during shutdown: %s", e)
                    return None
                delay = next_delay(failures, self.reconnect_strategy)
                logger.error(
                    "Could not record outcome (%s), retrying in %.1fs",
                    e,
                    delay.total_seconds(),
                )
                await self._pause(delay.total_seconds())

    async def _maybe_recover_stale(self) -> None:
        if self.stale_after <= 0:
            return

        now = self._clock()
        if (
            self._last_reap is not None
            and (now - self._last_reap).total_seconds() < self.reaper_interval
        ):
            return

        self._last_reap = now
        recovered = await self.store.recover_stale(timedelta(seconds=self.stale_after))
        if recovered:
            logger.warning("Recovered %d stale task(s)", len(recovered))

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early when shutdown is requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # === Shutdown ===

    async def _graceful_shutdown(self) -> None:
        in_flight = set(self.state.in_flight)
        if in_flight:
            logger.info(
                "Shutting down, waiting up to %ss for %d running task(s)",
                self.shutdown_timeout,
                len(in_flight),
            )
            _, pending = await asyncio.wait(in_flight, timeout=self.shutdown_timeout)
            for execution in pending:
                execution.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "Cancelled %d task(s) still running at shutdown; "
                    "they will be recovered as stale",
                    len(pending),
                )

        stats = self.state.stats
        logger.info(
            "Dispatcher stopped: claimed=%d completed=%d retried=%d failed=%d short_circuited=%d",
            stats["claimed"],
            stats["completed"],
            stats["retried"],
            stats["failed"],
            stats["short_circuited"],
        )

    def _register_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def signal_handler(sig, frame):
            logger.info("Received signal %s", signal.Signals(sig).name)
            loop.call_soon_threadsafe(self._shutdown_event.set)

        signals = [signal.SIGINT]
        if sys.platform != "win32":
            signals.append(signal.SIGTERM)
        for sig in signals:
            self._previous_signal_handlers[sig] = signal.signal(sig, signal_handler)

    def _restore_signal_handlers(self) -> None:
        for sig, previous in self._previous_signal_handlers.items():
            signal.signal(sig, previous)
        self._previous_signal_handlers.clear()


async def start_worker(
    modules: Iterable[str] = (),
    *,
    registry: HandlerRegistry | None = None,
    store: TaskStoreBackend | None = None,
    register_task_types: bool = True,
    once: bool = False,
    **options: Any,
) -> Dict[str, Any]:
    """Start a worker process for the handlers found in ``modules``.

    Args:
        modules: Importable modules containing @handler functions
        registry: Pre-built registry (handlers from modules are added to it)
        store: Task store (configured database if omitted)
        register_task_types: Register handled types in the store first
        once: Drain the queue and return instead of running until stopped
        **options: Dispatcher settings such as concurrency or poll_interval

    Returns:
        Worker statistics after the run
    """
    registry = registry or HandlerRegistry()
    for module in modules:
        for func in load_handlers(module):
            registry.add(func)

    if not len(registry):
        raise ValueError("No handlers registered; pass a module with @handler functions")

    async with (store or TaskStore()) as task_store:
        dispatcher = Dispatcher(
            task_store,
            registry,
            install_signal_handlers=not once,
            **options,
        )
        if register_task_types:
            await dispatcher.sync_task_types()

        if once:
            await dispatcher.run_until_idle()
        else:
            await dispatcher.start()

        return dispatcher.stats()
