"""
DeployKit — Readiness Probe Tests
==================================

What we test:
    ✅ declared → starting → ready on the first successful check
    ✅ A healthy datastore becomes ready within start_period + retries × interval
    ✅ `retries` consecutive failures after the start period → unhealthy
    ✅ Failures inside the start period are not counted
    ✅ A timed-out check counts as a failure
    ✅ An unhealthy service that recovers reports ready again
    ✅ Probes run inside the container via `docker exec`
    ✅ A check that cannot run cancels the other datastores' checks
"""

import asyncio

import pytest

from deploykit.exceptions import ProbeError
from deploykit.schemas.topology import ReadinessProbe
from deploykit.services.probe_service import (
    DockerExecExecutor,
    ProbeRunner,
    ShellExecutor,
    probe_command,
    wait_until_ready,
)
from deploykit.services.process import CommandResult
from deploykit.services.topology_service import resolve

PG_PROBE = ReadinessProbe(
    test=["CMD-SHELL", "pg_isready -U svc -d orders"],
    interval=10,
    timeout=5,
    retries=5,
    start_period=10,
)

OK = CommandResult(returncode=0, output="accepting connections")
FAIL = CommandResult(returncode=2, output="no response")


def _runner(clock, results, probe=PG_PROBE):
    return ProbeRunner(
        "postgres",
        probe,
        ShellExecutor(runner=results),
        clock=clock,
        sleep=clock.sleep,
    )


class TestProbeCommand:

    def test_shell_form(self):
        assert probe_command(["CMD-SHELL", "pg_isready"]) == ["sh", "-c", "pg_isready"]

    def test_exec_form(self):
        assert probe_command(["CMD", "pg_isready", "-q"]) == ["pg_isready", "-q"]

    def test_unknown_form(self):
        with pytest.raises(ProbeError):
            probe_command(["RUN", "true"])


class TestStateMachine:

    def test_initial_state_is_declared(self, fake_clock, scripted_runner):
        runner = _runner(fake_clock, scripted_runner(OK))
        assert runner.state == ProbeRunner.DECLARED

    def test_record_before_start_rejected(self, fake_clock, scripted_runner):
        runner = _runner(fake_clock, scripted_runner(OK))
        with pytest.raises(ProbeError):
            runner.record(0)

    def test_start_period_failures_not_counted(self, fake_clock, scripted_runner):
        probe = PG_PROBE.model_copy(update={"start_period": 30, "retries": 2})
        runner = _runner(fake_clock, scripted_runner(FAIL), probe)
        runner.start()

        fake_clock.now += 10
        assert runner.record(1) == ProbeRunner.STARTING
        fake_clock.now += 10
        assert runner.record(1) == ProbeRunner.STARTING
        assert runner.consecutive_failures == 0

        fake_clock.now += 10
        assert runner.record(1) == ProbeRunner.STARTING
        assert runner.consecutive_failures == 1
        fake_clock.now += 10
        assert runner.record(1) == ProbeRunner.UNHEALTHY

    def test_recovery_after_unhealthy(self, fake_clock, scripted_runner):
        probe = PG_PROBE.model_copy(update={"start_period": 0, "retries": 1})
        runner = _runner(fake_clock, scripted_runner(FAIL), probe)
        runner.start()

        assert runner.record(1) == ProbeRunner.UNHEALTHY
        assert runner.record(0) == ProbeRunner.READY
        assert runner.consecutive_failures == 0

    def test_success_resets_failure_streak(self, fake_clock, scripted_runner):
        probe = PG_PROBE.model_copy(update={"start_period": 0, "retries": 3})
        runner = _runner(fake_clock, scripted_runner(FAIL), probe)
        runner.start()

        runner.record(1)
        runner.record(1)
        runner.record(0)
        runner.record(1)
        # One failure after being ready does not flip the state yet
        assert runner.state == ProbeRunner.READY
        assert runner.consecutive_failures == 1


class TestRun:

    @pytest.mark.asyncio
    async def test_ready_on_first_check(self, fake_clock, scripted_runner):
        result = await _runner(fake_clock, scripted_runner(OK)).run()
        assert result.ready
        assert result.checks == 1
        # First check happens one interval after start
        assert fake_clock.sleeps == [10]

    @pytest.mark.asyncio
    async def test_ready_within_deadline(self, fake_clock, scripted_runner):
        result = await _runner(fake_clock, scripted_runner(FAIL, FAIL, FAIL, OK)).run()
        assert result.state == ProbeRunner.READY
        assert result.checks == 4
        assert result.elapsed <= PG_PROBE.deadline

    @pytest.mark.asyncio
    async def test_unhealthy_after_retries(self, fake_clock, scripted_runner):
        result = await _runner(fake_clock, scripted_runner(FAIL)).run()
        assert result.state == ProbeRunner.UNHEALTHY
        assert result.consecutive_failures == PG_PROBE.retries
        assert result.elapsed <= PG_PROBE.deadline

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, fake_clock, scripted_runner):
        timed_out = CommandResult(returncode=-1, output="", timed_out=True)
        runner = _runner(fake_clock, scripted_runner(timed_out))
        result = await runner.run()
        assert result.state == ProbeRunner.UNHEALTHY

    @pytest.mark.asyncio
    async def test_check_timeout_passed_to_runner(self, fake_clock, scripted_runner):
        commands = scripted_runner(OK)
        await _runner(fake_clock, commands).run()
        assert commands.timeouts == [PG_PROBE.timeout]

    @pytest.mark.asyncio
    async def test_max_checks(self, fake_clock, scripted_runner):
        result = await _runner(fake_clock, scripted_runner(FAIL)).run(max_checks=2)
        assert result.checks == 2
        assert result.state == ProbeRunner.STARTING


class TestExecutors:

    @pytest.mark.asyncio
    async def test_docker_exec_argv(self, scripted_runner):
        commands = scripted_runner(OK)
        executor = DockerExecExecutor("orders-db", runner=commands, docker_binary="docker")
        result = await executor.execute(["CMD-SHELL", "pg_isready -U svc -d orders"], 5)

        assert result.ok
        assert commands.calls == [
            ["docker", "exec", "orders-db", "sh", "-c", "pg_isready -U svc -d orders"]
        ]

    @pytest.mark.asyncio
    async def test_unrunnable_probe_raises(self):
        async def runner(argv, timeout):
            raise FileNotFoundError(argv[0])

        with pytest.raises(ProbeError, match="Could not run probe"):
            await ShellExecutor(runner=runner).execute(["CMD", "pg_isready"], 5)


class TestWaitUntilReady:

    @pytest.mark.asyncio
    async def test_probes_every_datastore(self, topology, parameter_env, fake_clock, scripted_runner):
        resolved = resolve(topology, parameter_env)
        commands = scripted_runner(OK)

        results = await wait_until_ready(
            resolved,
            executor_factory=lambda svc: DockerExecExecutor(svc.container_name, runner=commands),
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )

        assert set(results) == {"postgres", "test_postgres"}
        assert all(r.ready for r in results.values())
        containers = sorted(call[2] for call in commands.calls)
        assert containers == ["orders-db", "orders-test-db"]
        assert commands.calls[0][-1] == "pg_isready -U svc -d orders"

    @pytest.mark.asyncio
    async def test_unresolved_topology_rejected(self, topology):
        with pytest.raises(ProbeError, match="resolved"):
            await wait_until_ready(topology)

    @pytest.mark.asyncio
    async def test_failure_cancels_other_datastores(self, topology, parameter_env, fake_clock):
        resolved = resolve(topology, parameter_env)
        cancelled = []

        async def broken(argv, timeout):
            raise FileNotFoundError(argv[0])

        async def hanging(argv, timeout):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(argv[2])
                raise

        async def yielding_sleep(seconds):
            await asyncio.sleep(0)

        def factory(svc):
            runner = broken if svc.name == "postgres" else hanging
            return DockerExecExecutor(svc.container_name, runner=runner)

        with pytest.raises(ProbeError):
            await wait_until_ready(resolved, executor_factory=factory, clock=fake_clock, sleep=yielding_sleep)
        assert cancelled == ["orders-test-db"]
