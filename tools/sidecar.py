"""Lifecycle management for ephemeral sidecar resources.

A sidecar (for example a database container) is started for one stage,
polled until its readiness probe passes, and torn down when the stage ends.
Each acquisition gets its own generated name, handed back as a handle, so
no two stages or runs ever share a resource by accident.
"""

import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from schemas.definitions import SidecarSpec, Step

from .errors import ResourceUnavailable
from .step_executor import StepEnvironment, StepExecutor

logger = logging.getLogger(__name__)


class SidecarState(str, Enum):
    """Lifecycle of an acquired sidecar."""

    STARTING = "starting"
    READY = "ready"
    STOPPED = "stopped"
    STOP_FAILED = "stop_failed"


@dataclass
class SidecarHandle:
    """Exclusive reference to a running sidecar.

    Returned by ``acquire`` and passed explicitly to ``release``.
    """

    spec: SidecarSpec
    name: str
    state: SidecarState = SidecarState.STARTING
    attempts: int = 0
    started_at: float = field(default_factory=time.monotonic)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def variables(self) -> dict[str, str]:
        """Variables exported to the sidecar commands and to the stage's steps."""
        return {"SIDECAR_NAME": self.name, "SIDECAR_KIND": self.spec.kind}

    @property
    def released(self) -> bool:
        return self.state in (SidecarState.STOPPED, SidecarState.STOP_FAILED)


class ResourceLifecycleManager:
    """Starts, health-checks and tears down sidecars."""

    def __init__(
        self,
        executor: StepExecutor,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize lifecycle manager.

        Args:
            executor: Executor for start, probe and stop commands
            sleep: Wait function between readiness probes
        """
        self.executor = executor
        self._sleep = sleep

    def acquire(self, spec: SidecarSpec, env: StepEnvironment, owner: str) -> SidecarHandle:
        """Start a sidecar and block until it is ready.

        Args:
            spec: Sidecar description
            env: Environment the commands run in
            owner: Name of the owning stage (used in the generated name)

        Returns:
            Handle for the ready sidecar

        Raises:
            ResourceUnavailable: Start failed or the probe never passed within
                ``max_attempts``. The sidecar has already been torn down.
        """
        handle = SidecarHandle(spec=spec, name=self._generate_name(spec.kind, owner))
        command_env = env.with_variables(handle.variables)
        logger.info("SIDECAR: Starting %s (%s)", handle.name, spec.kind)

        start = self.executor.run(self._as_step(handle, "start", spec.start_command), command_env)
        if not start.passed:
            self.release(handle, env)
            raise ResourceUnavailable(
                f"Sidecar {handle.name} failed to start (exit {start.exit_code})",
                output=start.output,
            )

        probe_step = self._as_step(handle, "probe", spec.readiness_probe)
        last_output = ""
        for attempt in range(1, spec.max_attempts + 1):
            handle.attempts = attempt
            probe = self.executor.run(probe_step, command_env)
            if probe.passed:
                handle.state = SidecarState.READY
                logger.info("SIDECAR: %s ready after %d probe(s)", handle.name, attempt)
                return handle
            last_output = probe.output
            logger.debug("SIDECAR: %s not ready (attempt %d/%d)", handle.name, attempt, spec.max_attempts)
            if attempt < spec.max_attempts:
                self._sleep(spec.poll_interval)

        self.release(handle, env)
        raise ResourceUnavailable(
            f"Sidecar {handle.name} not ready after {spec.max_attempts} attempts",
            output=last_output,
        )

    def release(self, handle: SidecarHandle, env: StepEnvironment) -> str | None:
        """Tear a sidecar down. Safe to call more than once.

        Errors are logged and returned as a warning, never raised, so they
        cannot mask the failure that ended the stage.

        Returns:
            Warning message if teardown failed, else None
        """
        with handle._lock:
            if handle.released:
                return None
            try:
                result = self.executor.run(
                    self._as_step(handle, "stop", handle.spec.stop_command),
                    env.with_variables(handle.variables),
                )
            except Exception as e:
                logger.warning("SIDECAR: Teardown of %s raised: %s", handle.name, e)
                handle.state = SidecarState.STOP_FAILED
                return f"Sidecar {handle.name} teardown error: {e}"

            if not result.passed:
                logger.warning(
                    "SIDECAR: Teardown of %s failed (exit %s): %s",
                    handle.name,
                    result.exit_code,
                    result.output.strip()[:500],
                )
                handle.state = SidecarState.STOP_FAILED
                return f"Sidecar {handle.name} teardown failed (exit {result.exit_code})"

            handle.state = SidecarState.STOPPED
            logger.info("SIDECAR: %s stopped", handle.name)
            return None

    @staticmethod
    def _generate_name(kind: str, owner: str) -> str:
        base = re.sub(r"[^a-zA-Z0-9_.-]+", "-", f"{kind}-{owner}").strip("-").lower()
        return f"{base}-{uuid.uuid4().hex[:8]}"

    @staticmethod
    def _as_step(handle: SidecarHandle, action: str, command: str) -> Step:
        return Step(
            name=f"{handle.name}:{action}",
            command=command,
            timeout=handle.spec.command_timeout,
        )
