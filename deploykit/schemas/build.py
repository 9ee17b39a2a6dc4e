"""
DeployKit — Build Pipeline Schemas
===================================

What:  Pydantic models describing a two-stage, dependency-caching image build.
How:   A `Toolchain` captures everything language-specific (images, scaffold
       and build commands, manifest files, artifact location). A `BuildPlan`
       is the ordered list of instructions derived from it; every instruction
       is tagged with the `phase` it belongs to so ordering rules can be
       checked without parsing Dockerfile text.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Phase = Literal[
    "base",          # FROM / WORKDIR
    "scaffold",      # create the placeholder project
    "dependencies",  # COPY manifest + lock
    "warmup",        # compile placeholder -> dependency layer
    "invalidate",    # drop placeholder sources
    "source",        # COPY real source tree
    "build",         # drop stale artifact, compile for real
    "runtime",       # final image: artifact copy + entry command
]


class Toolchain(BaseModel):
    """
    Language-specific knobs of the build.

    `manifest_files` are copied in the listed order before any source is
    introduced; `{name}` in commands and paths is replaced by the project name.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    builder_image: str
    runtime_image: str
    manifest_files: List[str] = Field(min_length=1)
    scaffold_command: str
    build_command: str
    placeholder_glob: str
    source_dir: str = "src"
    artifact_dir: str
    # Outputs of the placeholder build removed before the real build;
    # `{crate}` is the project name with dashes turned into underscores.
    stale_artifacts: List[str] = Field(default_factory=lambda: ["{artifact_dir}/{name}*"])
    name_pattern: str = r"^[a-z][a-z0-9_-]*$"


class Instruction(BaseModel):
    model_config = ConfigDict(frozen=True)

    keyword: Literal["FROM", "RUN", "WORKDIR", "COPY", "CMD", "ENV"]
    args: str
    stage: str
    phase: Phase
    # Build-context paths read by a COPY (None for --from copies and non-COPY)
    sources: Optional[List[str]] = None

    def render(self) -> str:
        return f"{self.keyword} {self.args}"


class BuildStage(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    base_image: str
    instructions: List[Instruction]


class BuildArtifact(BaseModel):
    """
    The compiled binary; owned by the final stage and immutable once built.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    source_path: str
    runtime_path: str
    command: List[str]


class BuildPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    project: str
    toolchain: Toolchain
    stages: List[BuildStage]
    artifact: BuildArtifact

    @property
    def instructions(self) -> List[Instruction]:
        return [i for stage in self.stages for i in stage.instructions]

    @property
    def final_stage(self) -> BuildStage:
        return self.stages[-1]


class LayerKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    stage: str
    phase: Phase
    instruction: str
    key: str


class CacheReport(BaseModel):
    """Outcome of comparing layer keys from two build contexts."""

    reused_layers: int
    total_layers: int
    first_invalidated: Optional[LayerKey] = None
    dependency_layer_reused: bool
