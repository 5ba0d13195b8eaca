"""Fan-out / join — run a batch of independent units concurrently.

WHY
───
Phases like "scan every build architecture" or "assess every service"
submit several units that do not depend on each other.  ``FanOutJoin``
runs them on a bounded thread pool, waits for every one of them, and
hands the owning phase a result list in input order so aggregation is
deterministic.

ARCHITECTURE
────────────
::

    FanOutJoin(invoker, max_concurrency)
      └── join_all(units, context) → list[UnitResult]   (len == len(units))

    dispatch loop (caller thread)          worker threads
    ─────────────────────────────          ──────────────
    while undispatched or in flight:
      cancelled? → stop dispatching
      fill free slots  ───────────────▶    invoke_unit(invoker, unit)
      wait(FIRST_COMPLETED) ◀──────────    UnitResult
    undispatched slots → Failure(CANCELLED)

Guarantees:
    - never short-circuits: a failing unit does not stop the others
    - result order == input order, whatever the completion order
    - cancellation stops new dispatches; in-flight units finish
    - each worker runs in a copy of the caller's contextvars, so log
      lines keep the bound run_id, process and phase
    - no retries (that is the invoker's business)

Example::

    join = FanOutJoin(invoker, max_concurrency=4)
    results = join.join_all(units, ctx)
    failures = [r for r in results if r.failed]
"""

from __future__ import annotations

import contextvars
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from phasegate.core.logging import get_logger
from phasegate.orchestration.invoker import TaskInvoker, invoke_unit
from phasegate.orchestration.run_context import RunContext
from phasegate.orchestration.unit import UnitOfWork, UnitResult

logger = get_logger(__name__)

ResultCallback = Callable[[int, UnitResult], None]


class FanOutJoin:
    """Bounded concurrent execution of independent units with an all-complete barrier."""

    def __init__(self, invoker: TaskInvoker, max_concurrency: int = 4) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._invoker = invoker
        self._max_concurrency = max_concurrency

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def join_all(
        self,
        units: Sequence[UnitOfWork],
        context: RunContext | None = None,
        *,
        max_concurrency: int | None = None,
        on_result: ResultCallback | None = None,
    ) -> list[UnitResult]:
        """Run ``units`` and return exactly one result per unit, in input order.

        Args:
            units: Independent units; each receives only its own payload
            context: Run context whose cancellation flag is checked before
                every dispatch
            max_concurrency: Per-call override of the pool width
            on_result: Called on the caller thread as ``(index, result)``
                when each unit finishes

        Returns:
            List with ``len(units)`` entries; units never dispatched because
            of cancellation are ``Failure(CANCELLED)``.
        """
        if not units:
            return []

        width = min(max_concurrency or self._max_concurrency, len(units))
        results: list[UnitResult | None] = [None] * len(units)
        log = context.logger if context is not None else logger

        log.debug("fanout.start", units=len(units), max_concurrency=width)

        next_index = 0
        with ThreadPoolExecutor(max_workers=width, thread_name_prefix="phasegate-fanout") as pool:
            in_flight: dict[Future[UnitResult], int] = {}

            while next_index < len(units) or in_flight:
                while next_index < len(units) and len(in_flight) < width:
                    if context is not None and context.cancelled:
                        break
                    unit = units[next_index]
                    # workers start with an empty context; carry run_id/process/phase over
                    worker_context = contextvars.copy_context()
                    future = pool.submit(worker_context.run, invoke_unit, self._invoker, unit)
                    in_flight[future] = next_index
                    next_index += 1

                if not in_flight:
                    break

                done, _ = wait(in_flight.keys(), return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    result = future.result()
                    results[index] = result
                    if result.failed:
                        log.warning(
                            "fanout.unit_failed",
                            index=index,
                            unit=result.unit,
                            kind=result.kind.value if result.kind else None,
                            message=result.message,
                        )
                    if on_result is not None:
                        on_result(index, result)

        for index in range(len(units)):
            if results[index] is None:
                results[index] = UnitResult.cancelled(units[index])
                if on_result is not None:
                    on_result(index, results[index])

        final = [r for r in results if r is not None]
        failed = sum(1 for r in final if r.failed)
        log.info("fanout.complete", units=len(final), succeeded=len(final) - failed, failed=failed)
        return final


__all__ = ["FanOutJoin"]
