"""
DeployKit — Build Pipeline Service
====================================

What:  Plans, renders, checks and runs the dependency-layer-caching image build.
How:   The build stage is laid out so that dependency compilation lands in
       its own cached layer:

           1. scaffold a placeholder project
           2. COPY manifest and lock file only
           3. compile the placeholder          ← dependency layer
           4. delete placeholder sources
           5. COPY the real source tree
           6. delete the placeholder's compiled artifact
           7. compile again                    ← only application code

       The final stage starts from a toolchain-free runtime image and copies
       exactly one artifact out of the build stage.

       Docker's cache key for a layer is a function of its parent layer, the
       instruction, and (for COPY) the content of the copied files.
       `compute_layer_keys()` reproduces that chaining so cache behaviour can
       be reasoned about and tested without a Docker daemon.

Failure semantics:
    Any non-zero exit from the builder raises BuildError. No image tag or
    artifact is reported on failure.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from deploykit.config import settings
from deploykit.exceptions import BuildError
from deploykit.schemas.build import (
    BuildArtifact,
    BuildPlan,
    BuildStage,
    CacheReport,
    Instruction,
    LayerKey,
    Toolchain,
)
from deploykit.services.process import CommandRunner, clip_output, run_command

logger = logging.getLogger(__name__)

BUILD_STAGE = "build"
RUNTIME_STAGE = "runtime"

CARGO = Toolchain(
    name="cargo",
    builder_image="rust:latest",
    runtime_image="debian:bookworm-slim",
    manifest_files=["Cargo.lock", "Cargo.toml"],
    scaffold_command="USER=root cargo new {name}",
    build_command="cargo build --release",
    placeholder_glob="src/*.rs",
    source_dir="src",
    artifact_dir="target/release",
    stale_artifacts=["{artifact_dir}/{name}*", "{artifact_dir}/deps/{crate}*"],
)

TOOLCHAINS: Dict[str, Toolchain] = {CARGO.name: CARGO}


# ══════════════════════════════════════════════════════════════════════════
# Planning
# ══════════════════════════════════════════════════════════════════════════

def _fill(template: str, toolchain: Toolchain, project: str) -> str:
    return template.format(
        name=project,
        crate=project.replace("-", "_"),
        artifact_dir=toolchain.artifact_dir,
    )


def plan_build(project: str, toolchain: Toolchain = CARGO) -> BuildPlan:
    """
    Produce the ordered two-stage build for `project`.

    Raises:
        BuildError: project name unusable by the toolchain.
    """
    if not re.match(toolchain.name_pattern, project):
        raise BuildError(
            f"Project name '{project}' is not valid for the {toolchain.name} toolchain",
            context={"pattern": toolchain.name_pattern},
        )

    workdir = f"/{project}"

    def step(keyword: str, args: str, phase: str, sources: Optional[List[str]] = None) -> Instruction:
        return Instruction(keyword=keyword, args=args, stage=BUILD_STAGE, phase=phase, sources=sources)

    build_steps: List[Instruction] = [
        step("FROM", f"{toolchain.builder_image} AS {BUILD_STAGE}", "base"),
        step("RUN", _fill(toolchain.scaffold_command, toolchain, project), "scaffold"),
        step("WORKDIR", workdir, "base"),
    ]
    for manifest in toolchain.manifest_files:
        build_steps.append(step("COPY", f"./{manifest} ./{manifest}", "dependencies", [manifest]))
    build_steps.append(step("RUN", toolchain.build_command, "warmup"))
    build_steps.append(step("RUN", f"rm {toolchain.placeholder_glob}", "invalidate"))
    build_steps.append(
        step("COPY", f"./{toolchain.source_dir} ./{toolchain.source_dir}", "source", [toolchain.source_dir])
    )
    stale = " ".join(f"./{_fill(p, toolchain, project)}" for p in toolchain.stale_artifacts)
    build_steps.append(step("RUN", f"rm -f {stale}", "build"))
    build_steps.append(step("RUN", toolchain.build_command, "build"))

    artifact = BuildArtifact(
        name=project,
        source_path=f"{workdir}/{toolchain.artifact_dir}/{project}",
        runtime_path=f"./{project}",
        command=[f"./{project}"],
    )

    def final(keyword: str, args: str) -> Instruction:
        return Instruction(keyword=keyword, args=args, stage=RUNTIME_STAGE, phase="runtime")

    runtime_steps = [
        final("FROM", toolchain.runtime_image),
        final("COPY", f"--from={BUILD_STAGE} {artifact.source_path} ."),
        final("CMD", "[" + ", ".join(f'"{part}"' for part in artifact.command) + "]"),
    ]

    return BuildPlan(
        project=project,
        toolchain=toolchain,
        stages=[
            BuildStage(name=BUILD_STAGE, base_image=toolchain.builder_image, instructions=build_steps),
            BuildStage(name=RUNTIME_STAGE, base_image=toolchain.runtime_image, instructions=runtime_steps),
        ],
        artifact=artifact,
    )


def validate_layer_order(plan: BuildPlan) -> None:
    """
    Enforce the layering discipline the dependency cache relies on.

    Raises:
        BuildError: describing the first violated rule.
    """
    steps = plan.stages[0].instructions
    phases = [s.phase for s in steps]

    def first(phase: str) -> int:
        try:
            return phases.index(phase)
        except ValueError:
            raise BuildError(f"Build stage has no '{phase}' step") from None

    source_at = first("source")
    warmup_at = first("warmup")
    invalidate_at = first("invalidate")

    manifest_at = [i for i, s in enumerate(steps) if s.phase == "dependencies"]
    copied = [src for i in manifest_at for src in (steps[i].sources or [])]
    if copied != list(plan.toolchain.manifest_files):
        raise BuildError(
            "Manifest files must be copied in order " + ", ".join(plan.toolchain.manifest_files),
            context={"copied": copied},
        )
    if any(i > warmup_at for i in manifest_at):
        raise BuildError("Manifest files must be copied before the dependency warm-up build")
    if not warmup_at < invalidate_at < source_at:
        raise BuildError("Dependency warm-up and placeholder removal must precede the source copy")
    tail = steps[source_at + 1:]
    if not tail or tail[-1].phase != "build" or tail[-1].keyword != "RUN":
        raise BuildError("The real build must be the last step of the build stage")

    final = plan.final_stage
    if final.base_image == plan.toolchain.builder_image:
        raise BuildError("Final image must not be based on the build toolchain image")
    artifact_copies = [i for i in final.instructions if i.keyword == "COPY"]
    if len(artifact_copies) != 1 or not artifact_copies[0].args.startswith(f"--from={BUILD_STAGE} "):
        raise BuildError("Final image must copy exactly one artifact from the build stage")
    last = final.instructions[-1]
    if last.keyword != "CMD" or len(plan.artifact.command) != 1:
        raise BuildError("Final image must run the artifact with no arguments")


def render_dockerfile(plan: BuildPlan) -> str:
    """Dockerfile text for `plan`, one blank line between stages."""
    blocks = ["\n".join(i.render() for i in stage.instructions) for stage in plan.stages]
    return "\n\n".join(blocks) + "\n"


# ══════════════════════════════════════════════════════════════════════════
# Cache keys
# ══════════════════════════════════════════════════════════════════════════

def _iter_files(path: Path) -> Iterable[Path]:
    """Files under `path` in sorted order (or `path` itself when it is a file)."""
    if path.is_file():
        yield path
        return
    for child in sorted(p for p in path.rglob("*") if p.is_file()):
        yield child


def _digest_sources(context_dir: Path, sources: Sequence[str]) -> str:
    """sha256 over relative path and content of every file a COPY brings in."""
    digest = hashlib.sha256()
    for source in sources:
        root = context_dir / source
        if not root.exists():
            raise BuildError(
                f"COPY source '{source}' not found in build context {context_dir}",
                context={"source": source},
            )
        for file in _iter_files(root):
            digest.update(file.relative_to(context_dir).as_posix().encode("utf-8"))
            digest.update(b"\0")
            digest.update(file.read_bytes())
            digest.update(b"\0")
    return digest.hexdigest()


def compute_layer_keys(plan: BuildPlan, context_dir: Union[str, Path]) -> List[LayerKey]:
    """
    Chain a cache key through every instruction of every stage.

    A layer's key covers its parent key, its instruction text and, for COPY
    from the build context, the bytes of the copied files. `COPY --from`
    additionally covers the last key of the referenced stage.
    """
    context = Path(context_dir)
    stage_heads: Dict[str, str] = {}
    keys: List[LayerKey] = []
    index = 0
    for stage in plan.stages:
        parent = ""
        for instruction in stage.instructions:
            extra = ""
            if instruction.keyword == "COPY" and instruction.sources:
                extra = _digest_sources(context, instruction.sources)
            elif instruction.keyword == "COPY" and instruction.args.startswith("--from="):
                ref = instruction.args.split()[0].split("=", 1)[1]
                extra = stage_heads.get(ref, "")
            text = instruction.render()
            key = hashlib.sha256(f"{parent}\n{text}\n{extra}".encode("utf-8")).hexdigest()
            keys.append(
                LayerKey(index=index, stage=stage.name, phase=instruction.phase, instruction=text, key=key)
            )
            parent = key
            index += 1
        stage_heads[stage.name] = parent
    return keys


def compare_layer_keys(before: Sequence[LayerKey], after: Sequence[LayerKey]) -> CacheReport:
    """
    What:  Report which layers of `after` a builder could take from the
           cache left by `before`.
    How:   Keys are compared position by position. Because each key chains
           its parent, the first mismatch invalidates everything after it.
           `dependency_layer_reused` is set when a warm-up layer survives,
           which is the case after a source-only edit.
    """
    reused = 0
    first_invalidated: Optional[LayerKey] = None
    dependency_reused = False
    for old, new in zip(before, after):
        if old.key == new.key:
            reused += 1
            if new.phase == "warmup":
                dependency_reused = True
        elif first_invalidated is None:
            first_invalidated = new
    if first_invalidated is None and len(after) > len(before):
        first_invalidated = after[len(before)]
    return CacheReport(
        reused_layers=reused,
        total_layers=len(after),
        first_invalidated=first_invalidated,
        dependency_layer_reused=dependency_reused,
    )


# ══════════════════════════════════════════════════════════════════════════
# Execution
# ══════════════════════════════════════════════════════════════════════════

def write_dockerfile(plan: BuildPlan, path: Union[str, Path]) -> Path:
    validate_layer_order(plan)
    target = Path(path)
    target.write_text(render_dockerfile(plan), encoding="utf-8")
    logger.info("Wrote Dockerfile %s", target)
    return target


async def run_build(
    plan: BuildPlan,
    context_dir: Union[str, Path],
    tag: str,
    runner: Optional[CommandRunner] = None,
    dockerfile_name: str = "Dockerfile",
    timeout: Optional[float] = None,
) -> BuildArtifact:
    """
    Build the image with the docker CLI.

    Returns the artifact baked into the image tagged `tag`.

    Raises:
        BuildError: plan violates layering, docker is missing, the build
                    exits non-zero, or the timeout elapses.
    """
    context = Path(context_dir)
    dockerfile = write_dockerfile(plan, context / dockerfile_name)
    argv = [settings.docker_binary, "build", "-f", str(dockerfile), "-t", tag, str(context)]
    run = runner or run_command
    limit = timeout if timeout is not None else settings.build_timeout

    logger.info("Building image %s for project %s", tag, plan.project)
    try:
        result = await run(argv, limit)
    except OSError as exc:
        raise BuildError(
            f"Could not start '{settings.docker_binary}': {exc}",
            context={"argv": argv},
        ) from exc

    if result.timed_out:
        raise BuildError(
            f"Image build exceeded {limit:.0f}s",
            output_tail=clip_output(result.output),
            context={"tag": tag},
        )
    if result.returncode != 0:
        logger.error("Image build for %s failed with exit code %d", tag, result.returncode)
        raise BuildError(
            f"Image build failed with exit code {result.returncode}",
            output_tail=clip_output(result.output),
            context={"tag": tag, "returncode": result.returncode},
        )

    logger.info("Image %s built; entry command %s", tag, plan.artifact.command)
    return plan.artifact
