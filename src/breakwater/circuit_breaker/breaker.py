"""Core circuit breaker implementation."""

import asyncio
import functools
import inspect
import threading
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from typing import Any, ParamSpec, TypeVar, cast

from breakwater.circuit_breaker.config import BreakerConfig
from breakwater.circuit_breaker.exceptions import (
    BreakerStateError,
    CallTimeoutError,
    CircuitOpenError,
    ProbeLimitExceededError,
)
from breakwater.circuit_breaker.metrics import (
    BreakerListener,
    BreakerMetrics,
    CallCounters,
)
from breakwater.circuit_breaker.state import (
    REASON_CIRCUIT_OPEN,
    REASON_PROBE_LIMIT_EXCEEDED,
    BreakerStateData,
    CircuitState,
    ProceedDecision,
    StateTransition,
)
from breakwater.circuit_breaker.state_manager import BreakerStateManager, Clock
from breakwater.logging import (
    BreakerLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)

T = TypeVar("T")
P = ParamSpec("P")


class _DeadlineExceeded(Exception):
    """Internal signal: the call timeout won the race."""


def _discard_outcome(task: asyncio.Future[object]) -> None:
    with suppress(asyncio.CancelledError, Exception):
        task.exception()


def _run_in_daemon_thread(
    operation: Callable[[], T],
    *,
    timeout: float,
    thread_name: str,
) -> T:
    """Run a blocking callable in a daemon thread and wait up to ``timeout``."""
    done = threading.Event()
    error: BaseException | None = None
    result: object | None = None

    def _run() -> None:
        nonlocal error, result
        try:
            result = operation()
        except BaseException as exc:
            error = exc
        finally:
            done.set()

    thread = threading.Thread(target=_run, name=thread_name, daemon=True)
    thread.start()
    if not done.wait(timeout):
        raise _DeadlineExceeded
    if error is not None:
        raise error
    return cast(T, result)


class CircuitBreaker:
    """Stateful guard around calls to one unreliable dependency.

    One breaker protects one dependency. Instances are passed explicitly to the
    collaborators that need them; there is no shared registry.
    """

    def __init__(
        self,
        name: str,
        *,
        config: BreakerConfig | None = None,
        clock: Clock = time.monotonic,
        listeners: Sequence[BreakerListener] | None = None,
        logger: BreakerLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name used in errors, metrics and logs.
            config: Breaker behavior configuration. Defaults to
                ``BreakerConfig()``.
            clock: Monotonic clock returning seconds. Inject a fake in tests.
            listeners: Optional listener hooks for breaker events.
            logger: Structured logger. Defaults to a structlog logger.
        """
        self._name = name
        self._config = BreakerConfig() if config is None else config
        self._logger = get_logger(__name__) if logger is None else logger
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._manager = BreakerStateManager(
            self._config,
            clock=clock,
            logger=self._logger,
            name=name,
        )
        self._counters = CallCounters()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> BreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Return the current breaker state."""
        return self._manager.snapshot().state

    async def execute(
        self,
        operation: Callable[[], Awaitable[T] | T],
        *,
        operation_name: str | None = None,
    ) -> T:
        """Invoke ``operation`` under circuit breaker protection.

        Args:
            operation: Zero-argument callable returning a value or an
                awaitable. Bind arguments with a closure or ``functools.partial``.
            operation_name: Optional label used in logs.

        Returns:
            The operation result when the call is admitted and succeeds.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            ProbeLimitExceededError: When half-open probe slots are exhausted.
            CallTimeoutError: When the call exceeds ``call_timeout_ms``.
            BreakerStateError: When the breaker is in an unknown state.
            Exception: The original exception raised by ``operation``.
        """
        generation = self._counters.call_started()
        if not self._config.enabled:
            outcome = operation()
            if inspect.isawaitable(outcome):
                return await outcome
            return outcome

        decision = self._admit(operation_name, generation)
        started = self._manager.now()
        try:
            result = await self._invoke_async(operation, started)
        except _DeadlineExceeded:
            raise self._on_timeout(
                decision, generation, started, operation_name
            ) from None
        except Exception as exc:
            self._on_failure(decision, generation, exc, started)
            raise
        except BaseException:
            self._manager.release(decision)
            raise
        self._on_success(decision, generation, started)
        return result

    def execute_sync(
        self,
        operation: Callable[[], T],
        *,
        operation_name: str | None = None,
    ) -> T:
        """Invoke a blocking ``operation`` under circuit breaker protection.

        Safe to call from many threads at once. With ``call_timeout_ms`` set
        the operation runs in a daemon worker thread; the caller returns at
        the deadline and a late result is discarded.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            ProbeLimitExceededError: When half-open probe slots are exhausted.
            CallTimeoutError: When the call exceeds ``call_timeout_ms``.
            BreakerStateError: When the breaker is in an unknown state.
            Exception: The original exception raised by ``operation``.
        """
        generation = self._counters.call_started()
        if not self._config.enabled:
            return operation()

        decision = self._admit(operation_name, generation)
        started = self._manager.now()
        try:
            result = self._invoke_sync(operation)
        except _DeadlineExceeded:
            raise self._on_timeout(
                decision, generation, started, operation_name
            ) from None
        except Exception as exc:
            self._on_failure(decision, generation, exc, started)
            raise
        except BaseException:
            self._manager.release(decision)
            raise
        self._on_success(decision, generation, started)
        return result

    def protect(self, func: Callable[P, T]) -> Callable[P, T]:
        """Return ``func`` wrapped so every call goes through this breaker.

        Coroutine functions are routed through ``execute`` and plain functions
        through ``execute_sync``. ``func`` itself is left untouched.
        """
        operation_name = getattr(func, "__qualname__", None)

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
                return await self.execute(
                    functools.partial(func, *args, **kwargs),
                    operation_name=operation_name,
                )

            return cast(Callable[P, T], _async_wrapper)

        @functools.wraps(func)
        def _sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.execute_sync(
                functools.partial(func, *args, **kwargs),
                operation_name=operation_name,
            )

        return _sync_wrapper

    def get_metrics(self) -> BreakerMetrics:
        """Return a read-only metrics snapshot. Never blocks on a call."""
        data = self._manager.snapshot()
        counters = self._counters.values()
        time_in_state_ms = max(
            (self._manager.now() - data.last_state_change_at) * 1000.0, 0.0
        )
        return BreakerMetrics(
            name=self._name,
            state=data.state,
            enabled=self._config.enabled,
            total_calls=counters.total_calls,
            total_successes=counters.total_successes,
            total_failures=counters.total_failures,
            total_short_circuited=counters.total_short_circuited,
            total_timeouts=counters.total_timeouts,
            consecutive_failures=data.consecutive_failures,
            consecutive_successes=data.consecutive_successes,
            half_open_in_flight=data.half_open_in_flight,
            time_in_state_ms=time_in_state_ms,
            success_rate=counters.success_rate,
            failure_rate=counters.failure_rate,
        )

    def get_state(self) -> BreakerStateData:
        """Return a detached copy of the breaker state data."""
        return self._manager.snapshot()

    def get_state_history(self) -> tuple[StateTransition, ...]:
        """Return bounded transition history, oldest first."""
        return self._manager.history()

    def force_state(
        self,
        state: CircuitState,
        reason: str,
        metadata: Mapping[str, object] | None = None,
    ) -> StateTransition:
        """Administratively move the breaker to ``state``."""
        transition = self._manager.force_state(state, reason, metadata)
        self._announce(transition)
        return transition

    def force_open(self, reason: str = "manually forced open") -> StateTransition:
        return self.force_state(CircuitState.OPEN, reason)

    def force_close(self, reason: str = "manually forced closed") -> StateTransition:
        return self.force_state(CircuitState.CLOSED, reason)

    def reset(self, reason: str = "reset to initial state") -> StateTransition:
        """Force ``CLOSED`` and zero the call counters."""
        transition = self.force_state(CircuitState.CLOSED, reason)
        self._counters.reset()
        return transition

    async def _invoke_async(
        self, operation: Callable[[], Awaitable[T] | T], started: float
    ) -> T:
        outcome = operation()
        if not inspect.isawaitable(outcome):
            self._check_deadline(started)
            return outcome

        timeout_ms = self._config.call_timeout_ms
        if timeout_ms is None:
            return await outcome

        task = asyncio.ensure_future(outcome)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        task.add_done_callback(_discard_outcome)
        task.cancel()
        raise _DeadlineExceeded

    def _invoke_sync(self, operation: Callable[[], T]) -> T:
        timeout_ms = self._config.call_timeout_ms
        if timeout_ms is None:
            result = operation()
        else:
            result = _run_in_daemon_thread(
                operation,
                timeout=timeout_ms / 1000.0,
                thread_name=f"circuit_breaker:{self._name}",
            )
        if inspect.isawaitable(result):
            if inspect.iscoroutine(result):
                result.close()
            raise TypeError("execute_sync requires a synchronous operation")
        return result

    def _check_deadline(self, started: float) -> None:
        timeout_ms = self._config.call_timeout_ms
        if timeout_ms is None:
            return
        if (self._manager.now() - started) * 1000.0 > timeout_ms:
            raise _DeadlineExceeded

    def _admit(
        self, operation_name: str | None, generation: int
    ) -> ProceedDecision:
        decision = self._manager.can_proceed()
        if decision.transition is not None:
            self._announce(decision.transition)
        if decision.allowed:
            return decision

        self._counters.short_circuited(generation)
        log_info(
            self._logger,
            "circuit_breaker_call_rejected",
            breaker=self._name,
            reason=decision.reason,
            operation=operation_name,
            retry_after_ms=decision.retry_after_ms,
        )
        self._emit("on_call_rejected", decision.reason)
        if decision.reason == REASON_CIRCUIT_OPEN:
            raise CircuitOpenError(self._name, retry_after_ms=decision.retry_after_ms)
        if decision.reason == REASON_PROBE_LIMIT_EXCEEDED:
            raise ProbeLimitExceededError(
                self._name, self._config.half_open_max_concurrent_probes
            )
        raise BreakerStateError(self._name, self._manager.snapshot().state)

    def _elapsed(self, started: float) -> float:
        return max(self._manager.now() - started, 0.0)

    def _on_success(
        self, decision: ProceedDecision, generation: int, started: float
    ) -> None:
        transition = self._manager.record_success(decision)
        self._counters.succeeded(generation)
        if transition is not None:
            self._announce(transition)
        self._emit("on_call_succeeded", self._elapsed(started))

    def _on_failure(
        self,
        decision: ProceedDecision,
        generation: int,
        exc: BaseException,
        started: float,
        *,
        timed_out: bool = False,
    ) -> None:
        transition = self._manager.record_failure(decision)
        self._counters.failed(generation, timed_out=timed_out)
        if transition is not None:
            self._announce(transition)
        self._emit("on_call_failed", exc, self._elapsed(started))

    def _on_timeout(
        self,
        decision: ProceedDecision,
        generation: int,
        started: float,
        operation_name: str | None,
    ) -> CallTimeoutError:
        timeout_ms = cast(int, self._config.call_timeout_ms)
        error = CallTimeoutError(self._name, timeout_ms)
        log_warning(
            self._logger,
            "circuit_breaker_call_timed_out",
            breaker=self._name,
            operation=operation_name,
            timeout_ms=timeout_ms,
        )
        self._on_failure(decision, generation, error, started, timed_out=True)
        return error

    def _announce(self, transition: StateTransition) -> None:
        log = log_warning if transition.to_state == CircuitState.OPEN else log_info
        log(
            self._logger,
            "circuit_breaker_state_changed",
            breaker=self._name,
            from_state=str(transition.from_state),
            to_state=str(transition.to_state),
            reason=transition.reason,
        )
        self._emit("on_state_change", transition)

    def _emit(self, hook: str, *args: object) -> None:
        for listener in self._listeners:
            try:
                getattr(listener, hook)(self._name, *args)
            except Exception:
                log_exception(
                    self._logger,
                    "circuit_breaker_listener_failed",
                    breaker=self._name,
                    hook=hook,
                    listener=type(listener).__qualname__,
                )
