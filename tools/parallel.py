"""Concurrent execution of independent steps."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from schemas.definitions import Step
from schemas.pipeline_state import GroupResult, StepResult, StepStatus

from .step_executor import StepEnvironment, StepExecutor

logger = logging.getLogger(__name__)


class ParallelGroup:
    """Runs a set of steps concurrently and collects every outcome.

    Members share nothing but the read-only workspace. A failing member
    never cancels its siblings: the group report is always complete.
    """

    def __init__(self, executor: StepExecutor, max_workers: int | None = None) -> None:
        """Initialize parallel group.

        Args:
            executor: Executor used for each member
            max_workers: Thread cap (default: one per step)
        """
        self.executor = executor
        self.max_workers = max_workers

    def run(self, steps: list[Step] | tuple[Step, ...], env: StepEnvironment) -> GroupResult:
        """Run all steps and aggregate their results.

        Args:
            steps: Independent steps
            env: Shared working environment

        Returns:
            GroupResult with one entry per step, in declaration order
        """
        if not steps:
            return GroupResult()

        start = time.monotonic()
        results: dict[int, StepResult] = {}
        workers = self.max_workers or len(steps)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="step") as pool:
            futures = {
                pool.submit(self.executor.run, step, env): index
                for index, step in enumerate(steps)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    results[index] = future.result()
                except Exception as e:
                    logger.exception("GROUP: Member %s raised", steps[index].name)
                    results[index] = StepResult(
                        name=steps[index].name,
                        status=StepStatus.FAILED,
                        output=f"Internal error: {e}",
                    )

        group = GroupResult(
            results=[results[index] for index in range(len(steps))],
            duration=time.monotonic() - start,
        )
        logger.info(
            "GROUP: %d steps, %d failed, %.2fs",
            len(group.results),
            len(group.failures),
            group.duration,
        )
        return group
