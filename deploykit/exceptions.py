"""
DeployKit — Custom Exception Hierarchy
========================================

What:  Application-specific exceptions for configuration, topology, build,
       readiness and datastore failures.
How:   Each exception carries a human-readable message and an optional
       context dict. The CLI turns them into a red message and exit code 1;
       the runtime shell registers FastAPI handlers that turn them into JSON.

Exception Hierarchy:
    DeployKitError (base)
    ├── ConfigurationError            → launch-time, fatal
    │   ├── MissingParameterError     → a required parameter has no value
    │   ├── MalformedReferenceError   → `$[X]`, bare `$X`, unclosed `${`
    │   └── UndeclaredParameterError  → `${X}` where X is not a known parameter
    ├── TopologyError                 → the declaration itself is inconsistent
    │   ├── HostMountConflictError    → two services write one host path
    │   └── PortConflictError         → two services publish one host port
    ├── BuildError                    → image construction aborted
    ├── ProbeError                    → a readiness probe could not be executed
    └── DatastoreUnavailableError     → runtime shell gave up connecting
"""

from typing import Any, Dict, Iterable, Optional


class DeployKitError(Exception):
    """
    Base exception for all DeployKit errors.

    Attributes:
        message:  Human-readable description (safe to print or return)
        context:  Additional debug info (logged, never returned over HTTP)
    """

    def __init__(
        self,
        message: str = "An unexpected deployment error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


# ══════════════════════════════════════════════════════════════════════════
# Configuration
# ══════════════════════════════════════════════════════════════════════════

class ConfigurationError(DeployKitError):
    """Raised when the parameter set or a template cannot be used as given."""

    def __init__(
        self,
        message: str = "Configuration validation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class MissingParameterError(ConfigurationError):
    """
    Raised when one or more required parameters are absent or empty.

    The message lists every missing name at once so an operator can fix the
    `.env` file in a single pass.
    """

    def __init__(
        self,
        names: Iterable[str],
        context: Optional[Dict[str, Any]] = None,
    ):
        self.names = sorted(set(names))
        message = "Missing required parameter(s): " + ", ".join(self.names)
        ctx = context or {}
        ctx["missing"] = self.names
        super().__init__(message=message, context=ctx)


class MalformedReferenceError(ConfigurationError):
    """
    Raised for a parameter reference that is not of the form `${NAME}`.

    Example:
        `$[TEST_DB_CONTAINER_NAME]` would be passed through verbatim by most
        compose implementations, so it is rejected instead of substituted.
    """

    def __init__(
        self,
        fragment: str,
        template: str,
        position: Optional[int] = None,
    ):
        self.fragment = fragment
        self.template = template
        self.position = position
        message = f"Malformed parameter reference '{fragment}' in '{template}'"
        super().__init__(
            message=message,
            context={"fragment": fragment, "template": template, "position": position},
        )


class UndeclaredParameterError(ConfigurationError):
    """Raised when a template references a name outside the parameter set."""

    def __init__(self, name: str, template: str):
        self.name = name
        message = f"Template '{template}' references undeclared parameter '{name}'"
        super().__init__(message=message, context={"name": name, "template": template})


# ══════════════════════════════════════════════════════════════════════════
# Topology
# ══════════════════════════════════════════════════════════════════════════

class TopologyError(DeployKitError):
    """Raised when service definitions are inconsistent with each other."""

    def __init__(
        self,
        message: str = "Topology validation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class HostMountConflictError(TopologyError):
    """
    Raised when two services bind-mount the same host path, or one service
    mounts a directory inside another service's mount.

    A datastore's data directory has exactly one writer; two PostgreSQL
    processes sharing one PGDATA tree corrupt it.
    """

    def __init__(
        self,
        host_path: str,
        services: Iterable[str],
        nested_path: Optional[str] = None,
    ):
        self.host_path = host_path
        self.nested_path = nested_path
        self.services = sorted(services)
        if nested_path is None:
            message = (
                f"Host path '{host_path}' is mounted by more than one service: "
                + ", ".join(self.services)
            )
        else:
            message = (
                f"Host path '{nested_path}' lies inside '{host_path}'; "
                "both are mounted by different services: " + ", ".join(self.services)
            )
        super().__init__(
            message=message,
            context={"host_path": host_path, "nested_path": nested_path, "services": self.services},
        )


class PortConflictError(TopologyError):
    """Raised when two services publish the same host port."""

    def __init__(self, port: str, services: Iterable[str]):
        self.port = port
        self.services = sorted(services)
        message = (
            f"Host port '{port}' is published by more than one service: "
            + ", ".join(self.services)
        )
        super().__init__(message=message, context={"port": port, "services": self.services})


# ══════════════════════════════════════════════════════════════════════════
# Build / Probe / Runtime
# ══════════════════════════════════════════════════════════════════════════

class BuildError(DeployKitError):
    """
    Raised when an image cannot be fully built.

    There is no partial-success state: either an image is produced or this
    is raised. `output_tail` holds the last lines of builder output.
    """

    def __init__(
        self,
        message: str = "Image build failed",
        output_tail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if output_tail:
            ctx["output_tail"] = output_tail
        super().__init__(message=message, context=ctx)
        self.output_tail = output_tail


class ProbeError(DeployKitError):
    """Raised when a probe command cannot even be started (not when it fails)."""

    def __init__(
        self,
        message: str = "Readiness probe could not be executed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatastoreUnavailableError(DeployKitError):
    """
    Raised when the runtime shell exhausts its connection retries.

    Attributes:
        attempts:  How many connection attempts were made
        target:    Which datastore was tried (primary or test)
    """

    def __init__(
        self,
        message: str = "Datastore is not accepting connections",
        attempts: Optional[int] = None,
        target: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if attempts is not None:
            ctx["attempts"] = attempts
        if target:
            ctx["target"] = target
        super().__init__(message=message, context=ctx)
        self.attempts = attempts
        self.target = target
