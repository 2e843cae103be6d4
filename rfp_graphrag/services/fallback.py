"""
Graph health controller.

Tracks whether the graph store may be used by search and ingestion.

States:
- Uninitialized: initialize() has not run yet (reported as VectorOnly)
- GraphEnabled: graph calls allowed (reported as GraphDegraded while
  consecutive failures are accumulating)
- VectorOnly: graph calls skipped until a probe succeeds after the cooldown

Failures are counted once per request: a request that hits several graph
errors still counts as one failure. A successful request resets the count.
"""

import asyncio
import contextlib
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any

from rfp_graphrag.core.config import Settings
from rfp_graphrag.core.logging import get_logger
from rfp_graphrag.db.enums import GraphStatus

logger = get_logger(__name__)

HealthCheck = Callable[[], Awaitable[Any]]
RecoveryHook = Callable[[], Awaitable[None] | None]


class GraphRequest:
    """
    Per-request view of graph health.

    Usage:
        with controller.request() as graph:
            if graph.allowed:
                try:
                    hits = await store.traverse(...)
                    graph.mark_success()
                except GraphConnectionError as e:
                    graph.mark_failure(str(e))
    """

    def __init__(self, controller: "GraphHealthController"):
        self._controller = controller
        self.allowed = controller.allows_graph()
        self.degraded = not self.allowed
        self.used = False
        self.errors: list[str] = []

    def mark_success(self) -> None:
        """Record that a graph call of this request succeeded."""
        self.used = True

    def mark_failure(self, reason: str) -> None:
        """Record a graph failure; only the first one per request is counted."""
        self.used = True
        self.errors.append(reason)
        if self.allowed and not self.degraded:
            self.degraded = True
            self._controller.record_failure(reason)

    def __enter__(self) -> "GraphRequest":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.allowed and self.used and not self.degraded:
            self._controller.record_success()


class GraphHealthController:
    """
    Health state machine for the graph store.

    Usage:
        controller = GraphHealthController(store.ping)
        await controller.initialize()
        controller.start()      # background probe loop
        ...
        await controller.stop()
    """

    def __init__(
        self,
        check: HealthCheck,
        *,
        enabled: bool = True,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        probe_interval_seconds: float = 30.0,
        probe_timeout_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize controller.

        Args:
            check: Coroutine function raising when the graph is unreachable
            enabled: When False the graph is never used
            failure_threshold: Consecutive failing requests before VectorOnly
            cooldown_seconds: Time in VectorOnly before a probe may restore
            probe_interval_seconds: Background probe period
            probe_timeout_s: Timeout of one health check
            clock: Monotonic clock (injectable for tests)
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._check = check
        self.enabled = enabled
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.probe_interval_seconds = probe_interval_seconds
        self.probe_timeout_s = probe_timeout_s
        self._clock = clock

        self._state = GraphStatus.UNINITIALIZED
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: str | None = None
        self._recovery_hooks: list[RecoveryHook] = []
        self._probe_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, check: HealthCheck, app_settings: Settings) -> "GraphHealthController":
        """Build a controller from application settings."""
        return cls(
            check,
            enabled=app_settings.graph_enabled,
            failure_threshold=app_settings.graph_failure_threshold,
            cooldown_seconds=app_settings.graph_cooldown_seconds,
            probe_interval_seconds=app_settings.graph_probe_interval_seconds,
            probe_timeout_s=app_settings.graph_timeout_s,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> GraphStatus:
        """Internal state (Uninitialized, GraphEnabled or VectorOnly)."""
        return self._state

    @property
    def consecutive_failures(self) -> int:
        """Failing requests since the last success."""
        return self._consecutive_failures

    def cooldown_remaining(self) -> float:
        """Seconds until a probe may restore the graph (0 when not cooling down)."""
        if self._state != GraphStatus.VECTOR_ONLY:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    def allows_graph(self) -> bool:
        """Whether graph calls should be attempted right now."""
        return self.enabled and self._state == GraphStatus.GRAPH_ENABLED

    def health(self) -> GraphStatus:
        """Externally reported status."""
        if not self.enabled or self._state in (GraphStatus.UNINITIALIZED, GraphStatus.VECTOR_ONLY):
            return GraphStatus.VECTOR_ONLY
        if self._consecutive_failures > 0:
            return GraphStatus.GRAPH_DEGRADED
        return GraphStatus.GRAPH_ENABLED

    def snapshot(self) -> dict[str, Any]:
        """Health details for the API."""
        return {
            "graph_store_status": self.health().value,
            "graph_enabled": self.enabled,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_remaining_s": round(self.cooldown_remaining(), 3),
            "last_error": self._last_error,
        }

    def request(self) -> GraphRequest:
        """Open a per-request graph scope."""
        return GraphRequest(self)

    def add_recovery_hook(self, hook: RecoveryHook) -> None:
        """Call `hook` whenever the graph returns from VectorOnly to GraphEnabled."""
        self._recovery_hooks.append(hook)

    # =========================================================================
    # Transitions
    # =========================================================================

    def record_success(self) -> None:
        """A request used the graph without failure."""
        if self._consecutive_failures:
            logger.info("Graph store recovered from transient failures", failures=self._consecutive_failures)
        self._consecutive_failures = 0

    def record_failure(self, reason: str) -> None:
        """A request failed on the graph (timeout or error)."""
        self._last_error = reason
        if self._state != GraphStatus.GRAPH_ENABLED:
            return
        self._consecutive_failures += 1
        logger.warning(
            "Graph request failed",
            consecutive_failures=self._consecutive_failures,
            threshold=self.failure_threshold,
            reason=reason,
        )
        if self._consecutive_failures >= self.failure_threshold:
            self._enter_vector_only(reason)

    def _enter_vector_only(self, reason: str) -> None:
        self._state = GraphStatus.VECTOR_ONLY
        self._cooldown_until = self._clock() + self.cooldown_seconds
        logger.error(
            "Graph store disabled, serving vector-only results",
            cooldown_seconds=self.cooldown_seconds,
            reason=reason,
        )

    async def _run_check(self) -> str | None:
        """Run the health check; returns an error description or None."""
        try:
            await asyncio.wait_for(self._check(), timeout=self.probe_timeout_s)
        except asyncio.TimeoutError:
            return f"health check timed out after {self.probe_timeout_s}s"
        except Exception as e:
            return str(e) or type(e).__name__
        return None

    async def initialize(self) -> GraphStatus:
        """Probe connectivity once at startup."""
        if not self.enabled:
            logger.info("Graph store disabled by configuration")
            self._state = GraphStatus.VECTOR_ONLY
            return self.health()

        error = await self._run_check()
        if error is None:
            self._state = GraphStatus.GRAPH_ENABLED
            self._consecutive_failures = 0
            logger.info("Graph store enabled")
        else:
            self._last_error = error
            self._enter_vector_only(error)
        return self.health()

    async def probe(self, force: bool = False) -> GraphStatus:
        """
        Re-check the graph store.

        In VectorOnly, a probe within the cooldown does nothing (unless
        forced); afterwards success restores GraphEnabled and fires the
        recovery hooks, failure extends the cooldown.
        """
        if not self.enabled:
            return self.health()
        if self._state == GraphStatus.UNINITIALIZED:
            return await self.initialize()

        if self._state == GraphStatus.GRAPH_ENABLED:
            error = await self._run_check()
            if error is None:
                self.record_success()
            else:
                self.record_failure(error)
            return self.health()

        if not force and self._clock() < self._cooldown_until:
            return self.health()

        error = await self._run_check()
        if error is not None:
            self._last_error = error
            self._cooldown_until = self._clock() + self.cooldown_seconds
            logger.warning("Graph probe failed, extending cooldown", error=error)
            return self.health()

        self._state = GraphStatus.GRAPH_ENABLED
        self._consecutive_failures = 0
        logger.info("Graph store re-enabled after probe")
        await self._fire_recovery_hooks()
        return self.health()

    async def _fire_recovery_hooks(self) -> None:
        for hook in list(self._recovery_hooks):
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Graph recovery hook failed")

    # =========================================================================
    # Background probing
    # =========================================================================

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.probe_interval_seconds)
            if self._state != GraphStatus.GRAPH_ENABLED:
                await self.probe()

    def start(self) -> None:
        """Start the background probe loop (idempotent)."""
        if not self.enabled or (self._probe_task and not self._probe_task.done()):
            return
        self._probe_task = asyncio.create_task(self._probe_loop(), name="graph-health-probe")

    async def stop(self) -> None:
        """Stop the background probe loop."""
        if self._probe_task is None:
            return
        self._probe_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._probe_task
        self._probe_task = None
