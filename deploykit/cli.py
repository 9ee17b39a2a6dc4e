"""
DeployKit — Command Line Interface
===================================

What:  Operator entry point: validate a parameter set, render the compose
       file and Dockerfile, inspect layer cache keys, build the image, run
       readiness probes, prepare data directories and start the runtime shell.
How:   Typer commands with rich output. Every DeployKitError is reported in
       red and turned into exit code 1; nothing half-configured is started.
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from deploykit import __version__
from deploykit.config import PARAMETER_FIELDS, load_parameters, settings
from deploykit.database import create_engine, wait_for_datastore
from deploykit.exceptions import DeployKitError
from deploykit.logging_config import setup_logging
from deploykit.services import build_service, probe_service, topology_service

app = typer.Typer(
    no_args_is_help=True,
    help="Validate, render and drive the datastore + application deployment.",
)

_console = Console()


def _fail(exc: DeployKitError) -> None:
    _console.print(f"[red]Error:[/red] {exc.message}")
    raise typer.Exit(code=1)


def _emit(text: str, output: Optional[Path]) -> None:
    if output is None:
        typer.echo(text, nl=False)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    _console.print(f"Wrote [bold]{output}[/bold]")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override DEPLOYKIT_LOG_LEVEL."),
) -> None:
    setup_logging(log_level or "WARNING")


@app.command()
def version() -> None:
    """Print the package version."""
    typer.echo(__version__)


@app.command()
def check(
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Dotenv file with the parameter set."),
    data_root: Optional[str] = typer.Option(None, "--data-root"),
    project: str = typer.Option(settings.project_name, "--project"),
) -> None:
    """Validate the parameter set, topology and build plan without starting anything."""
    try:
        parameters = load_parameters(env_file)
        topology = topology_service.declare_topology(data_root=data_root)
        resolved = topology_service.resolve(topology, parameters)
        build_service.validate_layer_order(build_service.plan_build(project))
    except DeployKitError as exc:
        _fail(exc)
        return

    table = Table(title="DeployKit check")
    table.add_column("Service", style="bright_green", no_wrap=True)
    table.add_column("Container", style="white")
    table.add_column("Ports", style="white")
    table.add_column("Data", style="dim")
    table.add_column("Probe deadline", style="dim")
    for svc in resolved.services:
        table.add_row(
            svc.name,
            svc.container_name,
            ", ".join(p.to_compose() for p in svc.ports) or "-",
            ", ".join(v.host_path for v in svc.volumes) or "-",
            f"{svc.healthcheck.deadline:.0f}s" if svc.healthcheck else "-",
        )
    _console.print(table)
    _console.print("[green]OK[/green] parameter set, topology and build plan are valid")


@app.command()
def compose(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write here instead of stdout."),
    data_root: Optional[str] = typer.Option(None, "--data-root"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Do not make the app wait for a healthy datastore."),
    target: Optional[str] = typer.Option(None, "--target", help="Datastore the app uses: primary or test."),
) -> None:
    """Render docker-compose YAML with ${NAME} references left in place."""
    try:
        topology = topology_service.declare_topology(
            data_root=data_root,
            wait_for_datastore=not no_wait,
            datastore_target=target,
        )
        topology_service.validate_topology(topology)
    except DeployKitError as exc:
        _fail(exc)
        return
    _emit(topology_service.render_compose(topology), output)


@app.command()
def dockerfile(
    project: str = typer.Option(settings.project_name, "--project"),
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
) -> None:
    """Render the two-stage, dependency-caching Dockerfile."""
    try:
        plan = build_service.plan_build(project)
        build_service.validate_layer_order(plan)
    except DeployKitError as exc:
        _fail(exc)
        return
    _emit(build_service.render_dockerfile(plan), output)


@app.command("env-template")
def env_template(output: Optional[Path] = typer.Option(None, "--output", "-o")) -> None:
    """Write a .env skeleton listing every required parameter."""
    _emit(topology_service.render_env_template(PARAMETER_FIELDS), output)


@app.command("cache-keys")
def cache_keys(
    context: Path = typer.Argument(..., exists=True, file_okay=False, help="Build context directory."),
    project: str = typer.Option(settings.project_name, "--project"),
    against: Optional[Path] = typer.Option(
        None, "--against", exists=True, file_okay=False, help="Second context to compare with."
    ),
) -> None:
    """Show layer cache keys, or which layers a second context would reuse."""
    try:
        plan = build_service.plan_build(project)
        keys = build_service.compute_layer_keys(plan, context)
        other = build_service.compute_layer_keys(plan, against) if against else None
    except DeployKitError as exc:
        _fail(exc)
        return

    table = Table(title=f"Layer keys ({context})")
    table.add_column("#", justify="right")
    table.add_column("Phase", style="bright_green")
    table.add_column("Instruction")
    table.add_column("Key", style="dim")
    if other is not None:
        table.add_column("Cache")
    for i, key in enumerate(keys):
        row = [str(key.index), key.phase, key.instruction, key.key[:12]]
        if other is not None:
            row.append("hit" if i < len(other) and other[i].key == key.key else "[yellow]miss[/yellow]")
        table.add_row(*row)
    _console.print(table)

    if other is not None:
        report = build_service.compare_layer_keys(keys, other)
        status = "reused" if report.dependency_layer_reused else "[yellow]rebuilt[/yellow]"
        _console.print(
            f"{report.reused_layers}/{report.total_layers} layers reused; dependency layer {status}"
        )


@app.command()
def build(
    context: Path = typer.Argument(..., exists=True, file_okay=False),
    tag: str = typer.Option(..., "--tag", "-t"),
    project: str = typer.Option(settings.project_name, "--project"),
) -> None:
    """Build the application image. Any compilation failure aborts the build."""
    try:
        plan = build_service.plan_build(project)
        artifact = asyncio.run(build_service.run_build(plan, context, tag))
    except DeployKitError as exc:
        if getattr(exc, "output_tail", None):
            _console.print(exc.output_tail, style="dim", markup=False)
        _fail(exc)
        return
    _console.print(f"[green]Built[/green] {tag} → {' '.join(artifact.command)}")


@app.command()
def probe(
    env_file: Optional[Path] = typer.Option(None, "--env-file"),
    service: Optional[str] = typer.Option(None, "--service", help="Probe only this datastore."),
) -> None:
    """Run datastore readiness probes inside their containers."""
    try:
        parameters = load_parameters(env_file)
        resolved = topology_service.resolve(topology_service.declare_topology(), parameters)
        if service is not None:
            svc = resolved.service(service)
            if svc.healthcheck is None:
                _console.print(f"[red]Error:[/red] service '{service}' has no readiness probe")
                raise typer.Exit(code=1)
            runner = probe_service.ProbeRunner(
                svc.name, svc.healthcheck, probe_service.docker_exec_factory(svc)
            )
            results = {svc.name: asyncio.run(runner.run())}
        else:
            results = asyncio.run(probe_service.wait_until_ready(resolved))
    except KeyError:
        _console.print(f"[red]Error:[/red] unknown service '{service}'")
        raise typer.Exit(code=1)
    except DeployKitError as exc:
        _fail(exc)
        return

    table = Table(title="Readiness")
    table.add_column("Service", style="bright_green")
    table.add_column("State")
    table.add_column("Checks", justify="right")
    table.add_column("Elapsed", justify="right")
    for result in results.values():
        state = result.state if result.ready else f"[red]{result.state}[/red]"
        table.add_row(result.service, state, str(result.checks), f"{result.elapsed:.1f}s")
    _console.print(table)
    if not all(r.ready for r in results.values()):
        raise typer.Exit(code=1)


@app.command("init-data")
def init_data(
    data_root: Optional[str] = typer.Option(None, "--data-root"),
    base_dir: Path = typer.Option(Path("."), "--base-dir"),
) -> None:
    """Create datastore data directories; existing data is left untouched."""
    try:
        paths = topology_service.prepare_data_dirs(
            topology_service.declare_topology(data_root=data_root), base_dir
        )
    except DeployKitError as exc:
        _fail(exc)
        return
    for path in paths:
        _console.print(f"  {path}")


@app.command("wait-db")
def wait_db(
    env_file: Optional[Path] = typer.Option(None, "--env-file"),
    target: Optional[str] = typer.Option(None, "--target", help="primary or test"),
    attempts: Optional[int] = typer.Option(None, "--attempts", min=1),
) -> None:
    """Wait (with exponential backoff) until the datastore accepts connections."""
    if target not in (None, "primary", "test"):
        _console.print("[red]Error:[/red] --target must be 'primary' or 'test'")
        raise typer.Exit(code=1)

    async def _wait() -> int:
        engine = create_engine(parameters, target)
        try:
            return await wait_for_datastore(engine, max_attempts=attempts)
        finally:
            await engine.dispose()

    try:
        parameters = load_parameters(env_file)
        made = asyncio.run(_wait())
    except DeployKitError as exc:
        _fail(exc)
        return
    _console.print(f"[green]Datastore ready[/green] after {made} attempt(s)")


@app.command()
def serve() -> None:
    """Start the application runtime shell on the fixed internal port."""
    from deploykit.main import serve as run_server

    run_server()


def run() -> None:
    app()


if __name__ == "__main__":
    run()
