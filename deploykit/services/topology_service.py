"""
DeployKit — Deployment Topology Service
=========================================

What:  Declares the three-service topology, validates it, resolves it
       against a ParameterSet and renders it as a docker-compose document.
How:   The declaration contains only `${NAME}` references, never literal
       identities, credentials or ports. `resolve()` substitutes them from a
       ParameterSet at launch; `render_compose()` keeps them so the emitted
       file stays parameter-agnostic and compose reads values from `.env`.

Topology:
    postgres       stock image, restart unless-stopped, ./data/postgres
    test_postgres  stock image, restart unless-stopped, ./data/test_postgres
    app            built locally, publishes ${PORT}:8080, waits for the
                   datastore selected by DEPLOYKIT_DATASTORE_TARGET
"""

import logging
import posixpath
from collections import defaultdict
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping, Optional, Union

import yaml

from deploykit.config import PARAMETER_FIELDS, PARAMETER_NAMES, ParameterSet, settings
from deploykit.exceptions import (
    HostMountConflictError,
    MissingParameterError,
    PortConflictError,
    TopologyError,
)
from deploykit.schemas.topology import (
    BuildSource,
    PortMapping,
    ReadinessProbe,
    ResolvedTopology,
    ServiceDefinition,
    Topology,
    VolumeMount,
)
from deploykit.substitution import (
    find_references,
    is_pure_reference,
    substitute,
    validate_references,
)

logger = logging.getLogger(__name__)

POSTGRES_IMAGE = "postgres"
PGDATA = "/var/lib/postgresql/data"

_SECRET_MARKERS = ("PASSWORD", "SECRET", "TOKEN")


# ══════════════════════════════════════════════════════════════════════════
# Declaration
# ══════════════════════════════════════════════════════════════════════════

def _datastore(name: str, container_ref: str, data_root: str) -> ServiceDefinition:
    return ServiceDefinition(
        name=name,
        container_name=container_ref,
        role="datastore",
        image=POSTGRES_IMAGE,
        restart="unless-stopped",
        environment={
            "POSTGRES_DB": "${DB_NAME}",
            "POSTGRES_USER": "${DB_USERNAME}",
            "POSTGRES_PASSWORD": "${DB_PASSWORD}",
            "PGDATA": PGDATA,
        },
        # One host directory per datastore; PGDATA has a single writer.
        volumes=[VolumeMount(host_path=posixpath.join(data_root, name), container_path=PGDATA)],
        healthcheck=ReadinessProbe(
            test=["CMD-SHELL", "pg_isready -U ${DB_USERNAME} -d ${DB_NAME}"],
            interval=10,
            timeout=5,
            retries=5,
            start_period=10,
        ),
    )


# Compose service backing each runtime-shell datastore target
DATASTORE_SERVICES: Dict[str, str] = {"primary": "postgres", "test": "test_postgres"}


def declare_topology(
    data_root: Optional[str] = None,
    wait_for_datastore: bool = True,
    app_port: Optional[int] = None,
    datastore_target: Optional[str] = None,
) -> Topology:
    """
    Declare the primary datastore, the test datastore and the application.

    Args:
        data_root:           Host-relative directory holding one
                             subdirectory per datastore.
        wait_for_datastore:  Make the application depend on its datastore
                             being healthy rather than merely started.
        app_port:            Fixed internal port of the application.
        datastore_target:    `primary` or `test`; which datastore the
                             application connects to and waits for.
                             Defaults to settings.datastore_target.
    """
    root = data_root or settings.data_root
    internal_port = app_port or settings.app_internal_port
    target = datastore_target or settings.datastore_target
    if target not in DATASTORE_SERVICES:
        raise TopologyError(
            f"Unknown datastore target '{target}'; expected one of: "
            + ", ".join(DATASTORE_SERVICES),
            {"datastore_target": target},
        )

    app = ServiceDefinition(
        name="app",
        container_name="${APP_CONTAINER_NAME}",
        role="application",
        build=BuildSource(context="."),
        ports=[PortMapping(published="${PORT}", target=internal_port)],
        environment={
            "DB_CONTAINER_NAME": "${DB_CONTAINER_NAME}",
            "TEST_DB_CONTAINER_NAME": "${TEST_DB_CONTAINER_NAME}",
            "APP_CONTAINER_NAME": "${APP_CONTAINER_NAME}",
            "DB_USERNAME": "${DB_USERNAME}",
            "DB_PASSWORD": "${DB_PASSWORD}",
            "DB_NAME": "${DB_NAME}",
            "DEPLOYKIT_DATASTORE_TARGET": target,
        },
        depends_on={DATASTORE_SERVICES[target]: "service_healthy"} if wait_for_datastore else {},
    )

    return Topology(
        services=[
            _datastore("postgres", "${DB_CONTAINER_NAME}", root),
            _datastore("test_postgres", "${TEST_DB_CONTAINER_NAME}", root),
            app,
        ]
    )


# ══════════════════════════════════════════════════════════════════════════
# Validation
# ══════════════════════════════════════════════════════════════════════════

def _check_unique_names(services: Iterable[ServiceDefinition]) -> None:
    seen: Dict[str, int] = defaultdict(int)
    for svc in services:
        seen[svc.name] += 1
    dupes = sorted(name for name, count in seen.items() if count > 1)
    if dupes:
        raise TopologyError(f"Duplicate service names: {', '.join(dupes)}", {"services": dupes})


def _check_unique_containers(services: Iterable[ServiceDefinition]) -> None:
    owners: Dict[str, List[str]] = defaultdict(list)
    for svc in services:
        owners[svc.container_name].append(svc.name)
    for container, names in owners.items():
        if len(names) > 1:
            raise TopologyError(
                f"Container name '{container}' is shared by: {', '.join(sorted(names))}",
                {"container_name": container, "services": sorted(names)},
            )


def _check_host_mounts(services: Iterable[ServiceDefinition]) -> None:
    """
    Reject host paths written by more than one service.

    Two mounts conflict when their normalized paths are equal or when one
    lies inside the other: a directory nested in another datastore's PGDATA
    is written by both processes.
    """
    owners: Dict[str, List[str]] = defaultdict(list)
    for svc in services:
        for volume in svc.volumes:
            owners[volume.normalized_host_path].append(svc.name)
    for host_path, names in owners.items():
        if len(names) > 1:
            raise HostMountConflictError(host_path, names)

    paths = sorted(owners)
    for outer in paths:
        for inner in paths:
            if outer == inner or PurePosixPath(outer) not in PurePosixPath(inner).parents:
                continue
            if set(owners[outer]) == set(owners[inner]):
                continue
            raise HostMountConflictError(
                outer,
                set(owners[outer]) | set(owners[inner]),
                nested_path=inner,
            )


def _check_published_ports(services: Iterable[ServiceDefinition]) -> None:
    owners: Dict[str, List[str]] = defaultdict(list)
    for svc in services:
        for port in svc.ports:
            owners[port.published].append(svc.name)
    for published, names in owners.items():
        if len(names) > 1:
            raise PortConflictError(published, names)


def _check_dependencies(topology: Topology) -> None:
    by_name = {svc.name: svc for svc in topology.services}
    for svc in topology.services:
        for target, condition in svc.depends_on.items():
            if target == svc.name:
                raise TopologyError(f"Service '{svc.name}' depends on itself")
            if target not in by_name:
                raise TopologyError(
                    f"Service '{svc.name}' depends on unknown service '{target}'",
                    {"service": svc.name, "depends_on": target},
                )
            if condition == "service_healthy" and by_name[target].healthcheck is None:
                raise TopologyError(
                    f"Service '{svc.name}' waits for '{target}' to be healthy, "
                    f"but '{target}' declares no readiness probe",
                    {"service": svc.name, "depends_on": target},
                )


def _check_no_literal_secrets(services: Iterable[ServiceDefinition]) -> None:
    for svc in services:
        for key, value in svc.environment.items():
            if any(marker in key.upper() for marker in _SECRET_MARKERS) and not is_pure_reference(value):
                raise TopologyError(
                    f"Service '{svc.name}' sets {key} to a literal value; "
                    "secrets must come from the parameter set",
                    {"service": svc.name, "variable": key},
                )


def validate_topology(topology: Topology, allowed: Iterable[str] = PARAMETER_NAMES) -> None:
    """
    Check the declaration for internal consistency.

    Raises:
        MalformedReferenceError / UndeclaredParameterError: bad template
        HostMountConflictError: two services share a host data directory
        PortConflictError:      two services publish the same host port
        TopologyError:          duplicate names/containers, bad depends_on,
                                literal secrets, not exactly one application
    """
    allowed_names = frozenset(allowed)
    services = topology.services

    _check_unique_names(services)
    for svc in services:
        for _, template in svc.templates():
            validate_references(template, allowed_names)
    _check_unique_containers(services)
    _check_host_mounts(services)
    _check_published_ports(services)
    _check_dependencies(topology)
    _check_no_literal_secrets(services)

    try:
        topology.application()
    except LookupError as exc:
        raise TopologyError(str(exc)) from exc

    logger.debug("Topology validated: %d services", len(services))


def referenced_parameters(topology: Topology) -> List[str]:
    """All parameter names the topology references, in first-use order."""
    names: List[str] = []
    for svc in topology.services:
        for _, template in svc.templates():
            for name in find_references(template):
                if name not in names:
                    names.append(name)
    return names


# ══════════════════════════════════════════════════════════════════════════
# Resolution
# ══════════════════════════════════════════════════════════════════════════

def resolve(
    topology: Topology,
    parameters: Union[ParameterSet, Mapping[str, str]],
) -> ResolvedTopology:
    """
    Substitute every template from the parameter set.

    All missing parameters are reported together before anything is
    substituted. The concrete result is re-checked for collisions that only
    appear after substitution (e.g. two container names resolving equal).
    """
    validate_topology(topology)

    values = parameters.as_mapping() if isinstance(parameters, ParameterSet) else dict(parameters)
    missing = [name for name in referenced_parameters(topology) if not values.get(name)]
    if missing:
        raise MissingParameterError(missing)

    services = [svc.map_templates(lambda t: substitute(t, values)) for svc in topology.services]
    _check_unique_containers(services)
    _check_host_mounts(services)
    _check_published_ports(services)

    logger.info(
        "Topology resolved: %s",
        ", ".join(f"{s.name}={s.container_name}" for s in services),
    )
    return ResolvedTopology(services=services)


# ══════════════════════════════════════════════════════════════════════════
# Rendering & host preparation
# ══════════════════════════════════════════════════════════════════════════

def render_compose(topology: Topology) -> str:
    """Compose YAML for `topology`, in declaration order."""
    return yaml.safe_dump(
        topology.to_compose(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def write_compose(topology: Topology, path: Union[str, Path]) -> Path:
    """Render `topology` and write it to `path`, creating parent directories."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_compose(topology), encoding="utf-8")
    logger.info("Wrote compose file %s", target)
    return target


def render_env_template(names: Iterable[str] = PARAMETER_FIELDS) -> str:
    """
    `.env` skeleton listing every required parameter with an empty value.

    The empty values are deliberate: an unfilled template fails the
    parameter check instead of launching with blanks.
    """
    lines = ["# Required deployment parameters. Every entry must be set before launch."]
    lines.extend(f"{name}=" for name in names)
    return "\n".join(lines) + "\n"


def prepare_data_dirs(topology: Topology, base_dir: Union[str, Path] = ".") -> List[Path]:
    """
    Create each datastore's host data directory if it does not exist.

    Existing directories and their contents are left untouched, so a
    relaunch reattaches to previously written data.
    """
    _check_host_mounts(topology.services)
    base = Path(base_dir)
    created: List[Path] = []
    for svc in topology.datastores():
        for volume in svc.volumes:
            if find_references(volume.host_path):
                raise TopologyError(
                    f"Host path '{volume.host_path}' of '{svc.name}' is unresolved",
                    {"service": svc.name},
                )
            path = base / volume.normalized_host_path
            existed = path.exists()
            path.mkdir(parents=True, exist_ok=True)
            logger.info(
                "Data directory for %s: %s (%s)",
                svc.name,
                path,
                "reused" if existed else "created",
            )
            created.append(path)
    return created
