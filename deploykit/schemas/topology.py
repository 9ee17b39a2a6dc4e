"""
DeployKit — Topology Schemas
=============================

What:  Pydantic models for the deployment topology: service definitions,
       readiness probes, port mappings and bind mounts.
How:   Models are frozen; they are declared once and never mutated. Any
       string that may carry a `${NAME}` reference is a "template" and is
       reachable through `ServiceDefinition.templates()` so validation and
       resolution can treat every field uniformly.
       `to_compose()` methods emit the docker-compose representation.
"""

import posixpath
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


RestartPolicy = Literal["no", "always", "on-failure", "unless-stopped"]
DependencyCondition = Literal[
    "service_started", "service_healthy", "service_completed_successfully"
]
ServiceRole = Literal["datastore", "application"]


def _format_duration(seconds: float) -> str:
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{int(round(seconds * 1000))}ms"


class ReadinessProbe(BaseModel):
    """
    An executable readiness check with Docker healthcheck semantics.

    Failures during `start_period` do not count toward `retries`; after the
    start period, `retries` consecutive failures mark the service unhealthy.
    The probe never stops the service itself.
    """

    model_config = ConfigDict(frozen=True)

    test: List[str] = Field(min_length=2)
    interval: float = Field(default=10, gt=0)
    timeout: float = Field(default=5, gt=0)
    retries: int = Field(default=5, ge=1)
    start_period: float = Field(default=10, ge=0)

    @field_validator("test")
    @classmethod
    def validate_test_form(cls, v: List[str]) -> List[str]:
        if v[0] not in ("CMD", "CMD-SHELL"):
            raise ValueError(f"probe test must start with CMD or CMD-SHELL, got '{v[0]}'")
        if v[0] == "CMD-SHELL" and len(v) != 2:
            raise ValueError("CMD-SHELL probes take exactly one shell command string")
        return v

    @property
    def deadline(self) -> float:
        """Latest time (seconds from start) by which a healthy service is ready."""
        return self.start_period + self.retries * self.interval

    def to_compose(self) -> Dict[str, Any]:
        return {
            "test": list(self.test),
            "interval": _format_duration(self.interval),
            "timeout": _format_duration(self.timeout),
            "retries": self.retries,
            "start_period": _format_duration(self.start_period),
        }


class PortMapping(BaseModel):
    """`published` is a host port template, `target` the fixed container port."""

    model_config = ConfigDict(frozen=True)

    published: str = Field(min_length=1)
    target: int = Field(ge=1, le=65535)

    def to_compose(self) -> str:
        return f"{self.published}:{self.target}"


class VolumeMount(BaseModel):
    model_config = ConfigDict(frozen=True)

    host_path: str = Field(min_length=1)
    container_path: str = Field(min_length=1)

    @field_validator("container_path")
    @classmethod
    def validate_container_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"container_path must be absolute, got '{v}'")
        return v

    @property
    def normalized_host_path(self) -> str:
        """Host path with `./`, `//` and trailing slashes collapsed."""
        return posixpath.normpath(self.host_path)

    def to_compose(self) -> str:
        return f"{self.host_path}:{self.container_path}"


class BuildSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    context: str = Field(default=".")
    dockerfile: str = Field(default="Dockerfile")

    def to_compose(self) -> Any:
        if self.dockerfile == "Dockerfile":
            return self.context
        return {"context": self.context, "dockerfile": self.dockerfile}


class ServiceDefinition(BaseModel):
    """
    A declared, named process definition within the topology.

    Exactly one of `image` (prebuilt) or `build` (local build context) is set.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=r"^[a-z][a-z0-9_-]*$")
    container_name: str = Field(min_length=1)
    role: ServiceRole
    image: Optional[str] = None
    build: Optional[BuildSource] = None
    restart: Optional[RestartPolicy] = None
    ports: List[PortMapping] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    volumes: List[VolumeMount] = Field(default_factory=list)
    healthcheck: Optional[ReadinessProbe] = None
    depends_on: Dict[str, DependencyCondition] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_image_source(self) -> "ServiceDefinition":
        if (self.image is None) == (self.build is None):
            raise ValueError(f"service '{self.name}' needs exactly one of image or build")
        return self

    def templates(self) -> Iterator[Tuple[str, str]]:
        """Yield `(location, template)` for every parameterizable string."""
        yield ("container_name", self.container_name)
        for i, port in enumerate(self.ports):
            yield (f"ports[{i}].published", port.published)
        for key, value in self.environment.items():
            yield (f"environment.{key}", value)
        for i, volume in enumerate(self.volumes):
            yield (f"volumes[{i}].host_path", volume.host_path)
        if self.healthcheck is not None:
            for i, part in enumerate(self.healthcheck.test):
                yield (f"healthcheck.test[{i}]", part)

    def map_templates(self, fn: Callable[[str], str]) -> "ServiceDefinition":
        """Return a copy with `fn` applied to every template string."""
        update: Dict[str, Any] = {
            "container_name": fn(self.container_name),
            "ports": [p.model_copy(update={"published": fn(p.published)}) for p in self.ports],
            "environment": {k: fn(v) for k, v in self.environment.items()},
            "volumes": [v.model_copy(update={"host_path": fn(v.host_path)}) for v in self.volumes],
        }
        if self.healthcheck is not None:
            update["healthcheck"] = self.healthcheck.model_copy(
                update={"test": [fn(part) for part in self.healthcheck.test]}
            )
        return self.model_copy(update=update)

    def to_compose(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"container_name": self.container_name}
        if self.image is not None:
            body["image"] = self.image
        if self.build is not None:
            body["build"] = self.build.to_compose()
        if self.restart is not None:
            body["restart"] = self.restart
        if self.ports:
            body["ports"] = [p.to_compose() for p in self.ports]
        if self.environment:
            body["environment"] = [f"{k}={v}" for k, v in self.environment.items()]
        if self.volumes:
            body["volumes"] = [v.to_compose() for v in self.volumes]
        if self.healthcheck is not None:
            body["healthcheck"] = self.healthcheck.to_compose()
        if self.depends_on:
            body["depends_on"] = {
                name: {"condition": condition} for name, condition in self.depends_on.items()
            }
        return body


class Topology(BaseModel):
    """Ordered set of services that run together."""

    model_config = ConfigDict(frozen=True)

    services: List[ServiceDefinition] = Field(min_length=1)

    def service(self, name: str) -> ServiceDefinition:
        for svc in self.services:
            if svc.name == name:
                return svc
        raise KeyError(name)

    def datastores(self) -> List[ServiceDefinition]:
        return [s for s in self.services if s.role == "datastore"]

    def application(self) -> ServiceDefinition:
        apps = [s for s in self.services if s.role == "application"]
        if len(apps) != 1:
            raise LookupError(f"expected exactly one application service, found {len(apps)}")
        return apps[0]

    def to_compose(self) -> Dict[str, Any]:
        return {"services": {s.name: s.to_compose() for s in self.services}}


class ResolvedTopology(Topology):
    """A Topology whose templates have all been substituted with concrete values."""
