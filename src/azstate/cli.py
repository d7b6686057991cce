"""azstate: operator CLI for the Azure Blob state backend."""

from __future__ import annotations

from typing import Annotated

import typer
from pydantic import ValidationError

from .backend import Backend, build_backend
from .errors import LockNotFoundError, StateBackendError
from .keys import DEFAULT_WORKSPACE
from .logging import setup_logging
from .settings import get_settings

app = typer.Typer(
    add_completion=False,
    invoke_without_command=True,
    help="Azure Blob state backend CLI (check, workspaces, lock-info, force-unlock, pull).",
)

WorkspaceOption = Annotated[
    str,
    typer.Option("--workspace", "-w", help="Workspace name."),
]


@app.callback()
def _main(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def _backend() -> Backend:
    try:
        settings = get_settings()
    except ValidationError as exc:
        typer.echo(f"error: invalid configuration:\n{exc}", err=True)
        raise typer.Exit(code=2) from exc
    setup_logging(settings)
    try:
        return build_backend(settings)
    except StateBackendError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _fail(exc: StateBackendError) -> typer.Exit:
    typer.echo(f"error: {exc}", err=True)
    return typer.Exit(code=1)


@app.command(name="check", help="Verify credentials and container access.")
def check() -> None:
    with _backend() as backend:
        try:
            backend.check()
        except StateBackendError as exc:
            raise _fail(exc) from exc
    typer.echo("storage connection OK")


@app.command(name="workspaces", help="List workspaces that have state.")
def workspaces() -> None:
    with _backend() as backend:
        try:
            names = backend.workspaces()
        except StateBackendError as exc:
            raise _fail(exc) from exc
    for name in names:
        typer.echo(name)


@app.command(name="lock-info", help="Show who holds the lock on a workspace.")
def lock_info(workspace: WorkspaceOption = DEFAULT_WORKSPACE) -> None:
    with _backend() as backend:
        try:
            record = backend.lock_info(workspace)
        except StateBackendError as exc:
            raise _fail(exc) from exc
    if record is None:
        typer.echo(f"workspace {workspace} is not locked")
        return
    typer.echo(f"ID:        {record.id}")
    typer.echo(f"Who:       {record.who}")
    typer.echo(f"Created:   {record.created.isoformat()}")
    typer.echo(f"Operation: {record.operation}")
    typer.echo(f"Info:      {record.info}")
    typer.echo(f"Path:      {record.path}")


@app.command(name="force-unlock", help="Break the lock on a workspace (destructive).")
def force_unlock(
    lock_id: Annotated[str, typer.Argument(help="Lock ID reported by the holder.")],
    workspace: WorkspaceOption = DEFAULT_WORKSPACE,
    yes: Annotated[
        bool,
        typer.Option("--yes", help="Confirm breaking another process's lock."),
    ] = False,
) -> None:
    if not yes:
        typer.echo("error: force-unlock requires --yes", err=True)
        raise typer.Exit(code=1)

    with _backend() as backend:
        try:
            cleared = backend.force_unlock(workspace, lock_id)
        except LockNotFoundError as exc:
            typer.echo(f"workspace {workspace} is not locked", err=True)
            raise typer.Exit(code=1) from exc
        except StateBackendError as exc:
            raise _fail(exc) from exc
    holder = cleared.who if cleared is not None else "unknown"
    typer.echo(f"lock on workspace {workspace} released (was held by {holder})")


@app.command(name="pull", help="Write a workspace's state to stdout.")
def pull(workspace: WorkspaceOption = DEFAULT_WORKSPACE) -> None:
    with _backend() as backend:
        try:
            content = backend.read_state(workspace)
        except StateBackendError as exc:
            raise _fail(exc) from exc
    if content is None:
        typer.echo(f"workspace {workspace} has no state", err=True)
        raise typer.Exit(code=1)
    typer.echo(content.data, nl=False)


def main() -> None:
    app()


__all__ = ["app", "main"]
