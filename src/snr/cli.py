from __future__ import annotations

import argparse
import asyncio
from functools import partial
from pathlib import Path
from typing import Never, Sequence

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter
from snippet_runner import DockerRuntimeClient, ExecutionRequest, RunnerSettings, SessionOrchestrator
from snippet_runner.api import create_app
from snippet_runner.errors import DeadlineExceeded, ExecutionError, RuntimeClientError
from snippet_runner.execution import CallbackSink, ContainerInfo, ExecutionStatus, OutputChunk, StreamKind
from snippet_runner.logging_setup import LOG_LEVELS, configure_logging

_CONSOLE = Console(no_color=False)

EXIT_OK = 0
EXIT_PROGRAM_ERROR = 1
EXIT_ORCHESTRATION_ERROR = 2
EXIT_TIMEOUT = 124


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m snr")
        ```
    """

    def error(self, message: str) -> Never:
        """Show the message in a red panel, print help and exit with status 2.

        Example:
            ```python
            # parser.error("File not found: main.go")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the snippet-runner server and its containers.

    Example:
        ```python
        args = build_parser().parse_args(["run", "main.go"])
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m snr",
        description=(
            "snippet-runner CLI\n"
            "Serve the execution API, run a file in a one-shot container,\n"
            "or inspect and clean up containers labeled by snippet-runner."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m snr serve --port 4000 --env production\n"
            "  python -m snr run main.go\n"
            "  python -m snr list containers\n"
            "  python -m snr cleanup\n\n"
            "Remote Examples:\n"
            "  python -m snr --docker-host tcp://10.0.0.5:2375 list containers\n"
            "  python -m snr --config /etc/snippet-runner.toml serve"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help="TOML settings file ([runner] table). Defaults are bundled with the package.",
    )
    parser.add_argument(
        "--docker-host",
        help=(
            "Docker Engine endpoint.\n"
            "Examples: unix:///var/run/docker.sock, tcp://host:2375\n"
            "Falls back to DOCKER_HOST, then the local socket."
        ),
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="INFO",
        help="Logging verbosity (default: INFO).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    serve_cmd = sub.add_parser(
        "serve",
        help="Run the HTTP/WebSocket execution API.",
        description=(
            "Serve POST /v1/execute (JSON), WebSocket /v1/execute (streaming)\n"
            "and GET /v1/healthcheck."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    serve_cmd.add_argument("--host", help="Bind address (default from settings: 0.0.0.0).")
    serve_cmd.add_argument("--port", type=int, help="API server port (default from settings: 4000).")
    serve_cmd.add_argument(
        "--env",
        choices=("development", "staging", "production"),
        help="Environment reported by the healthcheck.",
    )
    serve_cmd.add_argument("--timeout-seconds", type=float, help="Execution deadline per request.")

    run_cmd = sub.add_parser(
        "run",
        help="Execute a local source file in a fresh container.",
        description=(
            "Package FILE, run it in a single-use container and stream its output.\n"
            "Exit codes: 0 success, 1 program error, 2 orchestration error, 124 timeout."
        ),
        epilog=(
            "Examples:\n"
            "  python -m snr run main.go\n"
            "  python -m snr run main.go --timeout-seconds 30"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("file")
    run_cmd.add_argument("--timeout-seconds", type=float, help="Execution deadline (default from settings).")

    list_cmd = sub.add_parser(
        "list",
        help="List managed containers.",
        description="List containers created and labeled by snippet-runner.",
        formatter_class=_HELP_FORMATTER,
    )
    list_cmd_sub = list_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    list_cmd_sub.add_parser(
        "containers",
        help="List managed containers in every state.",
        description="Includes id, name, image, state, and status.",
        formatter_class=_HELP_FORMATTER,
    )

    cleanup_cmd = sub.add_parser(
        "cleanup",
        help="Force-remove leftover managed containers.",
        description=(
            "Remove managed containers that are not running.\n"
            "Use --all to also remove running ones (stops in-flight sessions)."
        ),
        epilog=(
            "Examples:\n"
            "  python -m snr cleanup\n"
            "  python -m snr cleanup --all"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    cleanup_cmd.add_argument("--all", action="store_true", help="Include running containers.")

    return parser


def load_settings(args: argparse.Namespace) -> RunnerSettings:
    """Resolve settings from --config and command-line overrides.

    Flags left unset keep the file or bundled value.

    Example:
        ```python
        settings = load_settings(build_parser().parse_args(["serve", "--port", "8081"]))
        ```
    """
    settings = RunnerSettings.from_file(args.config) if args.config else RunnerSettings()
    return settings.with_overrides(
        docker_host=args.docker_host,
        timeout_seconds=getattr(args, "timeout_seconds", None),
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        env=getattr(args, "env", None),
    )


def build_runtime(settings: RunnerSettings) -> DockerRuntimeClient:
    """Create a runtime client for the configured Docker endpoint.

    Example:
        ```python
        async with build_runtime(settings) as runtime:
            ok, reason = await runtime.ping()
        ```
    """
    return DockerRuntimeClient(docker_host=settings.resolved_docker_host, api_version=settings.api_version)


def _print_containers(rows: list[ContainerInfo]) -> None:
    """Render managed containers as a table.

    Example:
        ```python
        _print_containers(await runtime.list_containers(all_states=True))
        ```
    """
    table = Table(title="Managed Containers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Image")
    table.add_column("State")
    table.add_column("Status")
    for row in rows:
        table.add_row(row.id, row.name, row.image, row.state, row.status)
    _CONSOLE.print(table)


async def _print_chunk(chunk: OutputChunk) -> None:
    """Echo one chunk to the terminal, stderr in red.

    Example:
        ```python
        sink = CallbackSink(_print_chunk)
        ```
    """
    text = chunk.data.decode("utf-8", errors="replace")
    style = "red" if chunk.stream is StreamKind.STDERR else None
    _CONSOLE.print(text, style=style, end="", markup=False, highlight=False)


async def _run_file(path: Path, settings: RunnerSettings) -> int:
    """Execute a local file in a fresh container and map the outcome to an exit code.

    Example:
        ```python
        code = asyncio.run(_run_file(Path("main.go"), RunnerSettings()))
        ```
    """
    source = path.read_text(encoding="utf-8")
    async with build_runtime(settings) as runtime:
        ok, reason = await runtime.ping()
        if not ok:
            _CONSOLE.print(Panel.fit(str(reason), title="Docker unavailable", border_style="red"))
            return EXIT_ORCHESTRATION_ERROR
        orchestrator = SessionOrchestrator(runtime, settings)
        try:
            result = await orchestrator.execute(ExecutionRequest(source), CallbackSink(_print_chunk))
        except DeadlineExceeded as exc:
            _CONSOLE.print(Panel.fit(str(exc), title="Timeout", border_style="yellow"))
            return EXIT_TIMEOUT
        except ExecutionError as exc:
            _CONSOLE.print(Panel.fit(str(exc), title="Execution failed", border_style="red"))
            return EXIT_ORCHESTRATION_ERROR
    if result.status is ExecutionStatus.SUCCESS:
        _CONSOLE.print(Panel.fit(f"Exited with code {result.exit_code}", style="bold green"))
        return EXIT_OK
    _CONSOLE.print(Panel.fit(f"Exited with code {result.exit_code}", style="bold red"))
    return EXIT_PROGRAM_ERROR


async def _list_containers(settings: RunnerSettings) -> list[ContainerInfo]:
    """Return managed containers in every state.

    Example:
        ```python
        rows = asyncio.run(_list_containers(settings))
        ```
    """
    async with build_runtime(settings) as runtime:
        return await runtime.list_containers(all_states=True)


async def _cleanup(settings: RunnerSettings, include_running: bool) -> tuple[int, list[str]]:
    """Force-remove managed containers, skipping running ones unless asked.

    Returns the removed count and one line per container that could not be removed.

    Example:
        ```python
        removed, failures = asyncio.run(_cleanup(settings, include_running=False))
        ```
    """
    removed = 0
    failures: list[str] = []
    async with build_runtime(settings) as runtime:
        for container in await runtime.list_containers(all_states=True):
            if container.state == "running" and not include_running:
                continue
            try:
                await runtime.remove_container(container.id, force=True)
            except RuntimeClientError as exc:
                failures.append(f"{container.name}: {exc}")
                continue
            removed += 1
    return removed, failures


def _serve(settings: RunnerSettings, log_level: str) -> int:
    """Serve the API with uvicorn until interrupted.

    Example:
        ```python
        _serve(RunnerSettings(port=4000), "INFO")
        ```
    """
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None, log_level=log_level.lower())
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `snr` CLI command handler.

    Example:
        ```python
        raise SystemExit(main(["list", "containers"]))
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.log_level)
    try:
        settings = load_settings(args)
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "serve":
        return _serve(settings, args.log_level)
    if args.command == "run":
        path = Path(args.file)
        if not path.is_file():
            parser.error(f"File not found: {path}")
        return asyncio.run(_run_file(path, settings))
    if args.command == "list" and args.resource == "containers":
        try:
            rows = asyncio.run(_list_containers(settings))
        except RuntimeClientError as exc:
            _CONSOLE.print(Panel.fit(str(exc), title="Docker error", border_style="red"))
            return EXIT_ORCHESTRATION_ERROR
        if not rows:
            _CONSOLE.print(Panel.fit("No managed containers.", style="bold yellow"))
            return EXIT_OK
        _print_containers(rows)
        return EXIT_OK
    if args.command == "cleanup":
        try:
            removed, failures = asyncio.run(_cleanup(settings, include_running=args.all))
        except RuntimeClientError as exc:
            _CONSOLE.print(Panel.fit(str(exc), title="Docker error", border_style="red"))
            return EXIT_ORCHESTRATION_ERROR
        for failure in failures:
            _CONSOLE.print(Panel.fit(failure, title="Not removed", border_style="red"))
        _CONSOLE.print(Panel.fit(f"Removed {removed} managed container(s)", style="bold green"))
        return EXIT_ORCHESTRATION_ERROR if failures else EXIT_OK

    parser.error("Unhandled command")
