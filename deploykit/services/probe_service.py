"""
DeployKit — Readiness Probe Service
=====================================

What:  Runs a service's readiness probe and tracks its state.
How:   A probe command is executed every `interval` seconds, each run bounded
       by `timeout`. Exit code 0 means ready.

State Machine:
    DECLARED
        → start(): STARTING
    STARTING
        → check exits 0: READY
        → check fails inside start_period: stays STARTING (not counted)
        → check fails after start_period: failure streak += 1
        → streak reaches `retries`: UNHEALTHY
    UNHEALTHY
        → a later check exits 0: READY

    The probe only reports. Whether an unhealthy service is restarted or
    alerted on is decided by the process manager, never here.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from deploykit.config import settings
from deploykit.exceptions import ProbeError
from deploykit.schemas.topology import ReadinessProbe, ResolvedTopology, ServiceDefinition
from deploykit.services.process import CommandResult, CommandRunner, run_command

logger = logging.getLogger(__name__)


def probe_command(test: Sequence[str]) -> List[str]:
    """Map a compose `test` list (CMD / CMD-SHELL form) to an argv."""
    if not test:
        raise ProbeError("Empty probe test")
    form, rest = test[0], list(test[1:])
    if form == "CMD-SHELL":
        return ["sh", "-c", rest[0]]
    if form == "CMD":
        return rest
    raise ProbeError(f"Unsupported probe form '{form}'")


# ══════════════════════════════════════════════════════════════════════════
# Executors
# ══════════════════════════════════════════════════════════════════════════

class ProbeExecutor:
    """Runs a probe test somewhere and returns its CommandResult."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or run_command

    def argv(self, test: Sequence[str]) -> List[str]:
        return probe_command(test)

    async def execute(self, test: Sequence[str], timeout: float) -> CommandResult:
        argv = self.argv(test)
        try:
            return await self.runner(argv, timeout)
        except OSError as exc:
            raise ProbeError(
                f"Could not run probe command '{argv[0]}': {exc}",
                context={"argv": argv},
            ) from exc


class ShellExecutor(ProbeExecutor):
    """Runs the probe on the local host."""


class DockerExecExecutor(ProbeExecutor):
    """Runs the probe inside a running container via `docker exec`."""

    def __init__(
        self,
        container: str,
        runner: Optional[CommandRunner] = None,
        docker_binary: Optional[str] = None,
    ):
        super().__init__(runner)
        self.container = container
        self.docker_binary = docker_binary or settings.docker_binary

    def argv(self, test: Sequence[str]) -> List[str]:
        return [self.docker_binary, "exec", self.container, *probe_command(test)]


# ══════════════════════════════════════════════════════════════════════════
# Runner
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProbeResult:
    service: str
    state: str
    checks: int
    consecutive_failures: int
    elapsed: float

    @property
    def ready(self) -> bool:
        return self.state == ProbeRunner.READY


class ProbeRunner:
    """Drives one service's readiness probe through its state machine."""

    DECLARED = "declared"
    STARTING = "starting"
    READY = "ready"
    UNHEALTHY = "unhealthy"

    def __init__(
        self,
        service_name: str,
        probe: ReadinessProbe,
        executor: ProbeExecutor,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service_name = service_name
        self.probe = probe
        self.executor = executor
        self._clock = clock
        self._sleep = sleep
        self.state = self.DECLARED
        self.consecutive_failures = 0
        self.checks = 0
        self.started_at: Optional[float] = None

    def start(self) -> None:
        """declared -> starting; the start period is measured from here."""
        if self.state != self.DECLARED:
            raise ProbeError(f"Probe for '{self.service_name}' already started")
        self.started_at = self._clock()
        self.state = self.STARTING
        logger.info("Probe for %s: declared -> starting", self.service_name)

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self._clock() - self.started_at

    def record(self, exit_code: int) -> str:
        """Apply one check result and return the new state."""
        if self.state == self.DECLARED:
            raise ProbeError(f"Probe for '{self.service_name}' has not been started")

        self.checks += 1
        if exit_code == 0:
            if self.state != self.READY:
                logger.info(
                    "Probe for %s: %s -> ready after %.1fs",
                    self.service_name,
                    self.state,
                    self.elapsed,
                )
            self.state = self.READY
            self.consecutive_failures = 0
            return self.state

        if self.elapsed < self.probe.start_period and self.state == self.STARTING:
            logger.debug(
                "Probe for %s failed inside start period (%.1fs < %.1fs); not counted",
                self.service_name,
                self.elapsed,
                self.probe.start_period,
            )
            return self.state

        self.consecutive_failures += 1
        if self.consecutive_failures >= self.probe.retries and self.state != self.UNHEALTHY:
            logger.warning(
                "Probe for %s: unhealthy after %d consecutive failures",
                self.service_name,
                self.consecutive_failures,
            )
            self.state = self.UNHEALTHY
        return self.state

    async def check_once(self) -> int:
        """Run the probe command once; returns its exit code, -1 on timeout."""
        result = await self.executor.execute(self.probe.test, self.probe.timeout)
        if result.timed_out:
            logger.warning(
                "Probe for %s timed out after %.1fs",
                self.service_name,
                self.probe.timeout,
            )
            return -1
        return result.returncode

    def result(self) -> ProbeResult:
        """Snapshot of the runner as it stands now."""
        return ProbeResult(
            service=self.service_name,
            state=self.state,
            checks=self.checks,
            consecutive_failures=self.consecutive_failures,
            elapsed=self.elapsed,
        )

    async def run(self, max_checks: Optional[int] = None) -> ProbeResult:
        """
        Check every `interval` until READY or UNHEALTHY (or `max_checks`).

        Like Docker, the first check happens one interval after start.
        """
        if self.state == self.DECLARED:
            self.start()
        while True:
            await self._sleep(self.probe.interval)
            self.record(await self.check_once())
            if self.state in (self.READY, self.UNHEALTHY):
                break
            if max_checks is not None and self.checks >= max_checks:
                break
        return self.result()


ExecutorFactory = Callable[[ServiceDefinition], ProbeExecutor]


def docker_exec_factory(service: ServiceDefinition) -> ProbeExecutor:
    """Default executor: run the probe inside the service's container."""
    return DockerExecExecutor(service.container_name)


async def wait_until_ready(
    topology: ResolvedTopology,
    executor_factory: ExecutorFactory = docker_exec_factory,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Dict[str, ProbeResult]:
    """
    Probe every datastore that declares a readiness probe, concurrently.

    If one probe cannot be executed (ProbeError), the others are cancelled
    and awaited before the error propagates, so no probe keeps running in
    the background.
    """
    if not isinstance(topology, ResolvedTopology):
        raise ProbeError("Probes need a resolved topology (call resolve() first)")

    runners = [
        ProbeRunner(svc.name, svc.healthcheck, executor_factory(svc), clock=clock, sleep=sleep)
        for svc in topology.datastores()
        if svc.healthcheck is not None
    ]
    tasks = [asyncio.ensure_future(runner.run()) for runner in runners]
    try:
        results = await asyncio.gather(*tasks)
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return {result.service: result for result in results}
