"""
Step execution harness.

Runs one named step, retrying transient failures with backoff up to a
bounded number of attempts, and reports the final outcome as a StepResult.
The pipeline decides what a step is and which errors are transient; the
harness owns timing, timeouts and backoff.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, TypeVar

import structlog

from ..config import Settings
from ..errors import StepExhausted

log = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_s: float = 1.0
    backoff: Literal["constant", "linear", "exponential"] = "exponential"
    max_delay_s: float = 30.0
    timeout_s: float | None = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.STEP_RETRY_LIMIT,
            base_delay_s=settings.STEP_RETRY_DELAY_MS / 1000,
            backoff=settings.STEP_RETRY_BACKOFF,
            max_delay_s=settings.STEP_MAX_DELAY_MS / 1000,
            timeout_s=settings.STEP_TIMEOUT_S,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number ``attempt`` (1-based)."""
        if self.backoff == "constant":
            delay = self.base_delay_s
        elif self.backoff == "linear":
            delay = self.base_delay_s * attempt
        else:
            delay = self.base_delay_s * (2 ** (attempt - 1))
        return min(delay, self.max_delay_s)


@dataclass
class StepResult(Generic[T]):
    step_name: str
    attempts: int
    duration_s: float
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cause(self) -> BaseException | None:
        """The step's own error, unwrapped from StepExhausted."""
        if isinstance(self.error, StepExhausted):
            return self.error.last_error
        return self.error

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value


class StepHarness:
    """
    Executes named steps under a RetryPolicy.

    Args:
        policy: Retry budget, backoff and per-attempt timeout
        sleep: Awaitable sleep used between attempts (injectable for tests)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _attempt(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self.policy.timeout_s is None:
            return await fn()
        return await asyncio.wait_for(fn(), timeout=self.policy.timeout_s)

    async def run(
        self,
        step_name: str,
        fn: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...] = (),
    ) -> StepResult[T]:
        """
        Run ``fn`` until it succeeds, fails with a non-retryable error, or the
        attempt budget is spent.

        Errors that are instances of ``retry_on`` and attempt timeouts are
        retried. Exhaustion is reported as a StepExhausted error carrying
        the last underlying error.
        """
        started = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            try:
                value = await self._attempt(fn)
                return StepResult(step_name, attempt, time.perf_counter() - started, value=value)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    e = TimeoutError(f"Step '{step_name}' timed out after {self.policy.timeout_s}s")
                elif not isinstance(e, retry_on):
                    return StepResult(step_name, attempt, time.perf_counter() - started, error=e)

                if attempt >= self.policy.max_attempts:
                    log.error(
                        "step.exhausted",
                        step=step_name,
                        attempts=attempt,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    return StepResult(
                        step_name,
                        attempt,
                        time.perf_counter() - started,
                        error=StepExhausted(step_name, attempt, e),
                    )

                delay = self.policy.delay_for(attempt)
                log.warning(
                    "step.retrying",
                    step=step_name,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    delay_s=delay,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._sleep(delay)
