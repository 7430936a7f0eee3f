"""Command-line interface: one-shot sweeps and the webhook service."""

import logging
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import SETTINGS
from .github import GitHubClient
from .models import PullState, SweepSummary
from .worker import SweepContext, run_sweep

app = typer.Typer(
    name="prsweep",
    help="Approve and squash-merge open pull requests that are ready.",
    add_completion=False,
)
console = Console()

_STATE_STYLE = {
    PullState.MERGED: "green",
    PullState.SKIPPED: "yellow",
    PullState.FAILED: "red",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _split_repository(full_name: str) -> tuple:
    parts = full_name.strip().split("/")
    if len(parts) != 2 or not all(parts):
        console.print(f"[red]Repository '{full_name}' must be in owner/repo form.[/red]")
        raise typer.Exit(1)
    return parts[0], parts[1]


def _render(summary: SweepSummary) -> None:
    title = f"{summary.owner}/{summary.repo}"
    if summary.author:
        title += f" (author: {summary.author})"
    table = Table(title=title)
    table.add_column("PR", justify="right")
    table.add_column("Title")
    table.add_column("Result")
    table.add_column("Detail")
    for r in summary.results:
        style = _STATE_STYLE[r.state]
        result = r.state.value if r.reason is None else f"{r.state.value} ({r.reason.value})"
        table.add_row(f"#{r.ref.number}", r.ref.title, f"[{style}]{result}[/{style}]", r.detail)
    console.print(table)


@app.command()
def run(
    repositories: List[str] = typer.Argument(..., help="Repositories in owner/repo form"),
    author: Optional[str] = typer.Option(None, "--author", "-a", help="Only pull requests opened by this login"),
    token: Optional[str] = typer.Option(None, "--token", envvar="GITHUB_TOKEN", help="GitHub token"),
    ci_rollup: bool = typer.Option(
        SETTINGS.ci_rollup,
        "--ci-rollup/--ci-detailed",
        help="Judge CI by the status rollup, or by each check run and status context",
    ),
    fail_on_error: bool = typer.Option(False, "--fail-on-error", help="Exit 2 if any pull request failed"),
    log_level: str = typer.Option(SETTINGS.log_level, "--log-level"),
) -> None:
    """Sweep the open pull requests of each repository, in order."""
    _configure_logging(log_level)
    if not token:
        console.print("[red]A GitHub token is required (--token or GITHUB_TOKEN).[/red]")
        raise typer.Exit(1)

    targets = [_split_repository(r) for r in repositories]
    ctx = SweepContext(GitHubClient(token=token, ci_rollup=ci_rollup))
    author = author or SETTINGS.author or None

    failed = 0
    for owner, repo in targets:
        try:
            summary = run_sweep(ctx, owner, repo, author=author)
        except Exception as e:
            console.print(f"[red]Could not list pull requests for {owner}/{repo}: {e}[/red]")
            raise typer.Exit(1)
        _render(summary)
        failed += summary.count(PullState.FAILED)

    if fail_on_error and failed:
        raise typer.Exit(2)


@app.command()
def serve(
    host: str = typer.Option(SETTINGS.host, "--host"),
    port: int = typer.Option(SETTINGS.port, "--port"),
    log_level: str = typer.Option(SETTINGS.log_level, "--log-level"),
) -> None:
    """Run the webhook service that sweeps a repository after relevant events."""
    import uvicorn

    _configure_logging(log_level)
    uvicorn.run("prsweep.main:app", host=host, port=port, log_level=log_level.lower())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
