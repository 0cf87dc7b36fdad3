from __future__ import annotations

import argparse
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter
from safe_bundle_runner import BundleRunner, ExecutionRequest, SandboxPolicy
from safe_bundle_runner.execution.errors import SandboxError
from safe_bundle_runner.execution.types import (
    RuntimeFailure,
    StaticDocument,
    Success,
    SystemFailure,
    Timeout,
)
from safe_bundle_runner.execution.workspace import WorkspaceManager

_CONSOLE = Console(no_color=False)


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
        parser = _RichArgumentParser(prog="python -m sbr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for running bundles and managing workspaces.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m sbr",
        description=(
            "safe-bundle-runner CLI\n"
            "Render fragment bundles, inspect workspaces and serve the HTTP API.\n"
            "Only directories named ws-<request-id>-<timestamp> under the scratch root are touched."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m sbr run --server-script page.php --markup body.html\n"
            "  python -m sbr list workspaces\n"
            "  python -m sbr sweep\n"
            "  python -m sbr serve --port 8000\n\n"
            "Config Examples:\n"
            "  python -m sbr --policy-file /etc/sbr/policy.toml serve\n"
            "  python -m sbr --policy-file dev.toml run --server-script app.py"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--policy-file",
        help=(
            "Path to a policy TOML file with a [policy] table.\n"
            "Defaults to the bundled policy when omitted."
        ),
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Render one bundle from fragment files.",
        description=(
            "Render a bundle through the same pipeline as the HTTP API.\n"
            "Each fragment is read from a file; omitted fragments are empty."
        ),
        epilog=(
            "Examples:\n"
            "  python -m sbr run --server-script page.php\n"
            "  python -m sbr run --markup body.html --style site.css --output out.html"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("--markup", help="File holding the markup fragment.")
    run_cmd.add_argument("--style", help="File holding the style fragment.")
    run_cmd.add_argument("--client-script", help="File holding the client script fragment.")
    run_cmd.add_argument("--server-script", help="File holding the server script fragment.")
    run_cmd.add_argument("--title", help="Document title (default: Preview).")
    run_cmd.add_argument(
        "--output",
        help="Write the rendered document to this file instead of printing it.",
    )

    list_cmd = sub.add_parser(
        "list",
        help="List workspaces under the scratch root.",
        description="List resources owned by safe-bundle-runner.",
        formatter_class=_HELP_FORMATTER,
    )
    list_cmd_sub = list_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    list_cmd_sub.add_parser(
        "workspaces",
        help="List workspace directories.",
        description=(
            "Show workspace directories present under the scratch root.\n"
            "Includes name, request id and age."
        ),
        formatter_class=_HELP_FORMATTER,
    )

    sweep_cmd = sub.add_parser(
        "sweep",
        help="Remove stale workspaces.",
        description=(
            "Remove workspaces older than the grace period.\n"
            "The same reconciliation runs automatically at service startup."
        ),
        epilog=(
            "Examples:\n"
            "  python -m sbr sweep\n"
            "  python -m sbr sweep --grace-seconds 60"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    sweep_cmd.add_argument(
        "--grace-seconds",
        type=float,
        help="Override the policy's stale_grace_seconds for this sweep.",
    )

    serve_cmd = sub.add_parser(
        "serve",
        help="Run the HTTP API with uvicorn.",
        description="Serve POST /execute and the project endpoints.",
        formatter_class=_HELP_FORMATTER,
    )
    serve_cmd.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    serve_cmd.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")

    return parser


def load_policy(args: argparse.Namespace) -> SandboxPolicy:
    """Load the policy selected by the global CLI flags.

    Example:
        ```python
        policy = load_policy(args)
        ```
    """
    if args.policy_file:
        return SandboxPolicy.from_file(args.policy_file)
    return SandboxPolicy()


def build_runner(policy: SandboxPolicy) -> BundleRunner:
    """Create the BundleRunner used by `run`.

    Example:
        ```python
        runner = build_runner(policy)
        ```
    """
    return BundleRunner(policy)


def build_workspaces(policy: SandboxPolicy, grace_seconds: float | None = None) -> WorkspaceManager:
    """Create a WorkspaceManager without sweeping on construction.

    Example:
        ```python
        manager = build_workspaces(policy, grace_seconds=60)
        ```
    """
    grace = grace_seconds if grace_seconds is not None else policy.stale_grace_seconds
    return WorkspaceManager(policy.scratch_root, stale_grace_seconds=grace, sweep_on_start=False)


def _read_fragment(path: str | None) -> str:
    """Read one fragment file, treating a missing option as empty.

    Example:
        ```python
        markup = _read_fragment("body.html")
        ```
    """
    if not path:
        return ""
    return Path(path).read_text(encoding="utf-8")


def _print_workspaces(rows: list[Any]) -> None:
    """Render workspaces in a rich table.

    Example:
        ```python
        _print_workspaces(manager.list_workspaces())
        ```
    """
    table = Table(title="Workspaces")
    table.add_column("Name", style="cyan")
    table.add_column("Request ID", style="magenta")
    table.add_column("Age (s)", justify="right")
    table.add_column("In Flight")
    for row in rows:
        table.add_row(row.name, row.request_id, f"{row.age_seconds:.1f}", "yes" if row.in_flight else "no")
    _CONSOLE.print(table)


def _run_bundle(args: argparse.Namespace, policy: SandboxPolicy) -> int:
    """Execute the `run` command and report the outcome.

    Example:
        ```python
        code = _run_bundle(args, policy)
        ```
    """
    request = ExecutionRequest(
        markup=_read_fragment(args.markup),
        style=_read_fragment(args.style),
        client_script=_read_fragment(args.client_script),
        server_script=_read_fragment(args.server_script),
        title=args.title or "Preview",
    )
    runner = build_runner(policy)
    try:
        outcome = runner.execute(request)
    except SandboxError as exc:
        _CONSOLE.print(Panel.fit(f"{type(exc).__name__}: {exc}", style="bold red"))
        return 1

    if isinstance(outcome, (StaticDocument, Success)):
        if isinstance(outcome, StaticDocument):
            document = outcome.html
        else:
            document = outcome.output.decode("utf-8", errors="replace")
        if args.output:
            Path(args.output).write_text(document, encoding="utf-8")
            _CONSOLE.print(Panel.fit(f"Wrote {args.output}", style="bold green"))
        else:
            _CONSOLE.print(document, markup=False, highlight=False)
        if isinstance(outcome, Success) and outcome.truncated:
            _CONSOLE.print(Panel.fit("Output was truncated at the size limit", style="bold yellow"))
        return 0
    if isinstance(outcome, RuntimeFailure):
        _CONSOLE.print(
            Panel(
                outcome.stderr or "(no stderr)",
                title=f"Runtime error (exit {outcome.exit_code})",
                border_style="red",
            )
        )
    elif isinstance(outcome, Timeout):
        _CONSOLE.print(Panel.fit(f"Timed out after {outcome.elapsed_ms} ms", style="bold red"))
    elif isinstance(outcome, SystemFailure):
        _CONSOLE.print(Panel.fit(Pretty({"reason": outcome.reason}), title="System error", border_style="red"))
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `sbr` CLI command handler.

    Example:
        ```python
        code = main(["list", "workspaces"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    policy = load_policy(args)

    if args.command == "run":
        return _run_bundle(args, policy)
    if args.command == "list" and args.resource == "workspaces":
        _print_workspaces(build_workspaces(policy).list_workspaces())
        return 0
    if args.command == "sweep":
        summary = build_workspaces(policy, args.grace_seconds).sweep()
        _CONSOLE.print(
            Panel.fit(
                Pretty({"removed": summary.removed, "kept": summary.kept, "failed": summary.failed}),
                title="Sweep Summary",
                border_style="green",
            )
        )
        return 0
    if args.command == "serve":
        import uvicorn

        from safe_bundle_runner.server import create_app

        uvicorn.run(create_app(policy), host=args.host, port=args.port)
        return 0

    parser.error("Unhandled command")
    return 2
