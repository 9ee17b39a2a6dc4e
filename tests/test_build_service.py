"""
DeployKit — Build Pipeline Tests
=================================

What we test:
    ✅ Dockerfile layout: scaffold, manifests, warm-up, source, real build
    ✅ Layering rules reject plans that would defeat the dependency cache
    ✅ Source-only changes reuse the dependency layer; lock changes do not
    ✅ The final image is toolchain-free and runs exactly one artifact
    ✅ Build failures and timeouts raise BuildError, never a partial result
"""

import pytest

from deploykit.exceptions import BuildError
from deploykit.services.build_service import (
    CARGO,
    compare_layer_keys,
    compute_layer_keys,
    plan_build,
    render_dockerfile,
    run_build,
    validate_layer_order,
)
from deploykit.services.process import CommandResult


def _without(plan, phase):
    stage = plan.stages[0]
    kept = [i for i in stage.instructions if i.phase != phase]
    stages = [stage.model_copy(update={"instructions": kept}), plan.stages[1]]
    return plan.model_copy(update={"stages": stages})


class TestPlan:

    def test_dockerfile_layout(self):
        dockerfile = render_dockerfile(plan_build("app"))
        assert dockerfile == (
            "FROM rust:latest AS build\n"
            "RUN USER=root cargo new app\n"
            "WORKDIR /app\n"
            "COPY ./Cargo.lock ./Cargo.lock\n"
            "COPY ./Cargo.toml ./Cargo.toml\n"
            "RUN cargo build --release\n"
            "RUN rm src/*.rs\n"
            "COPY ./src ./src\n"
            "RUN rm -f ./target/release/app* ./target/release/deps/app*\n"
            "RUN cargo build --release\n"
            "\n"
            "FROM debian:bookworm-slim\n"
            "COPY --from=build /app/target/release/app .\n"
            'CMD ["./app"]\n'
        )

    def test_crate_name_uses_underscores(self):
        dockerfile = render_dockerfile(plan_build("order-service"))
        assert "./target/release/deps/order_service*" in dockerfile

    def test_plan_passes_layer_rules(self):
        validate_layer_order(plan_build("app"))

    def test_artifact(self):
        artifact = plan_build("app").artifact
        assert artifact.source_path == "/app/target/release/app"
        assert artifact.command == ["./app"]

    def test_invalid_project_name(self):
        with pytest.raises(BuildError):
            plan_build("My App")


class TestLayerRules:

    def test_missing_warmup_rejected(self):
        with pytest.raises(BuildError, match="warmup"):
            validate_layer_order(_without(plan_build("app"), "warmup"))

    def test_source_before_warmup_rejected(self):
        plan = plan_build("app")
        steps = list(plan.stages[0].instructions)
        source = next(i for i in steps if i.phase == "source")
        steps.remove(source)
        steps.insert(3, source)
        stages = [plan.stages[0].model_copy(update={"instructions": steps}), plan.stages[1]]
        with pytest.raises(BuildError):
            validate_layer_order(plan.model_copy(update={"stages": stages}))

    def test_final_image_must_not_be_toolchain(self):
        plan = plan_build("app")
        final = plan.stages[1].model_copy(update={"base_image": CARGO.builder_image})
        with pytest.raises(BuildError, match="toolchain"):
            validate_layer_order(plan.model_copy(update={"stages": [plan.stages[0], final]}))


class TestLayerCache:

    def test_keys_are_deterministic(self, cargo_context):
        plan = plan_build("app")
        assert compute_layer_keys(plan, cargo_context) == compute_layer_keys(plan, cargo_context)

    def test_source_change_reuses_dependency_layer(self, cargo_context, cargo_project, tmp_path):
        plan = plan_build("app")
        changed = cargo_project(tmp_path / "changed")
        (changed / "src" / "main.rs").write_text('fn main() {\n    println!("bye");\n}\n')

        report = compare_layer_keys(
            compute_layer_keys(plan, cargo_context),
            compute_layer_keys(plan, changed),
        )
        assert report.dependency_layer_reused
        assert report.first_invalidated.phase == "source"
        assert report.reused_layers < report.total_layers

    def test_lock_change_invalidates_dependency_layer(self, cargo_context, cargo_project, tmp_path):
        plan = plan_build("app")
        changed = cargo_project(tmp_path / "changed")
        (changed / "Cargo.lock").write_text('version = 3\n\n[[package]]\nname = "serde"\nversion = "1.0.200"\n')

        report = compare_layer_keys(
            compute_layer_keys(plan, cargo_context),
            compute_layer_keys(plan, changed),
        )
        assert not report.dependency_layer_reused
        assert report.first_invalidated.phase == "dependencies"

    def test_final_stage_tracks_build_output(self, cargo_context, cargo_project, tmp_path):
        plan = plan_build("app")
        changed = cargo_project(tmp_path / "changed")
        (changed / "src" / "lib.rs").write_text("pub fn helper() {}\n")

        before = compute_layer_keys(plan, cargo_context)
        after = compute_layer_keys(plan, changed)
        runtime_before = [k for k in before if k.stage == "runtime"]
        runtime_after = [k for k in after if k.stage == "runtime"]
        # Base image layer is shared; the artifact copy is not
        assert runtime_before[0].key == runtime_after[0].key
        assert runtime_before[1].key != runtime_after[1].key

    def test_missing_source_is_an_error(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("")
        with pytest.raises(BuildError, match="Cargo.lock"):
            compute_layer_keys(plan_build("app"), tmp_path)


class TestRunBuild:

    @pytest.mark.asyncio
    async def test_success_returns_artifact(self, cargo_context, scripted_runner):
        runner = scripted_runner(CommandResult(returncode=0, output="Successfully built"))
        artifact = await run_build(plan_build("app"), cargo_context, "orders:1", runner=runner)

        assert artifact.command == ["./app"]
        argv = runner.calls[0]
        assert argv[1:3] == ["build", "-f"]
        assert argv[-3:] == ["-t", "orders:1", str(cargo_context)]
        assert (cargo_context / "Dockerfile").read_text() == render_dockerfile(plan_build("app"))

    @pytest.mark.asyncio
    async def test_compile_failure_raises(self, cargo_context, scripted_runner):
        output = "\n".join(f"line {i}" for i in range(100)) + "\nerror[E0425]: cannot find value"
        runner = scripted_runner(CommandResult(returncode=101, output=output))

        with pytest.raises(BuildError) as exc_info:
            await run_build(plan_build("app"), cargo_context, "orders:1", runner=runner)
        assert "101" in exc_info.value.message
        assert exc_info.value.output_tail.endswith("error[E0425]: cannot find value")
        assert exc_info.value.output_tail.startswith("<clipped")

    @pytest.mark.asyncio
    async def test_timeout_raises(self, cargo_context, scripted_runner):
        runner = scripted_runner(CommandResult(returncode=-1, output="", timed_out=True))
        with pytest.raises(BuildError, match="exceeded"):
            await run_build(plan_build("app"), cargo_context, "t", runner=runner, timeout=5)
        assert runner.timeouts == [5]

    @pytest.mark.asyncio
    async def test_missing_docker_raises(self, cargo_context):
        async def runner(argv, timeout):
            raise FileNotFoundError(argv[0])

        with pytest.raises(BuildError, match="Could not start"):
            await run_build(plan_build("app"), cargo_context, "t", runner=runner)
