from __future__ import annotations

import io
from pathlib import Path

import pytest

from safe_bundle_runner.execution.errors import GateFull
from safe_bundle_runner.execution.types import RuntimeFailure, StaticDocument, Success, SystemFailure, Timeout
from safe_bundle_runner.execution.workspace import SweepSummary, WorkspaceInfo
from sbr import cli


class _FakeRunner:
    outcome: object = StaticDocument(html="<p>doc</p>")
    requests: list = []

    def __init__(self, policy) -> None:
        self.policy = policy

    def execute(self, request):
        self.__class__.requests.append(request)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class _FakeWorkspaces:
    grace_seconds: float | None = None

    def __init__(self, policy, grace_seconds: float | None = None) -> None:
        self.__class__.grace_seconds = grace_seconds

    def list_workspaces(self):
        return [WorkspaceInfo("ws-abc-1", "abc", 1, 12.5, True)]

    def sweep(self):
        return SweepSummary(removed=2, kept=1, failed=0)


@pytest.fixture(autouse=True)
def _patch_pipeline(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeRunner.outcome = StaticDocument(html="<p>doc</p>")
    _FakeRunner.requests = []
    monkeypatch.setattr(cli, "build_runner", _FakeRunner)
    monkeypatch.setattr(cli, "build_workspaces", _FakeWorkspaces)


def test_cli_run_reads_fragment_files(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    markup = tmp_path / "body.html"
    script = tmp_path / "page.php"
    markup.write_text("<h1>Hi</h1>", encoding="utf-8")
    script.write_text("<?php echo 1; ?>", encoding="utf-8")

    code = cli.main(["run", "--markup", str(markup), "--server-script", str(script)])
    output = capsys.readouterr().out

    assert code == 0
    assert "<p>doc</p>" in output
    (request,) = _FakeRunner.requests
    assert request.markup == "<h1>Hi</h1>"
    assert request.server_script == "<?php echo 1; ?>"
    assert request.style == ""
    assert request.title == "Preview"


def test_cli_run_writes_output_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _FakeRunner.outcome = Success(output=b"<p>from server</p>", truncated=True)
    target = tmp_path / "out.html"

    code = cli.main(["run", "--title", "Demo", "--output", str(target)])
    output = capsys.readouterr().out

    assert code == 0
    assert target.read_text(encoding="utf-8") == "<p>from server</p>"
    assert "Wrote" in output
    assert "truncated" in output
    assert _FakeRunner.requests[0].title == "Demo"


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        (RuntimeFailure(stderr="PHP Fatal error: boom", exit_code=255), "Runtime error (exit 255)"),
        (Timeout(elapsed_ms=10002), "Timed out after 10002 ms"),
        (SystemFailure(reason="php missing"), "System error"),
        (GateFull("All 4 execution slots are busy"), "GateFull"),
    ],
)
def test_cli_run_failures_exit_non_zero(outcome, expected: str, capsys: pytest.CaptureFixture[str]) -> None:
    _FakeRunner.outcome = outcome

    code = cli.main(["run"])
    output = capsys.readouterr().out

    assert code == 1
    assert expected in output


def test_cli_list_workspaces(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["list", "workspaces"])
    output = capsys.readouterr().out

    assert code == 0
    assert "ws-abc-1" in output
    assert "12.5" in output


def test_cli_sweep_passes_grace_override(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["sweep", "--grace-seconds", "60"])
    output = capsys.readouterr().out

    assert code == 0
    assert _FakeWorkspaces.grace_seconds == 60.0
    assert "Sweep Summary" in output
    assert "'removed': 2" in output


def test_cli_policy_file_is_loaded(tmp_path: Path) -> None:
    config = tmp_path / "policy.toml"
    config.write_text("[policy]\nmax_concurrency = 9\n", encoding="utf-8")
    args = cli.build_parser().parse_args(["--policy-file", str(config), "list", "workspaces"])

    assert cli.load_policy(args).max_concurrency == 9


def test_cli_subcommand_help(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["sweep", "--help"])
    output = capsys.readouterr().out
    assert exc.value.code == 0
    assert "Remove workspaces older than the grace period." in output


def test_cli_top_level_help_examples(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--help"])
    output = capsys.readouterr().out
    assert exc.value.code == 0
    assert "Quick Examples:" in output
    assert "python -m sbr list workspaces" in output
    assert "Config Examples:" in output


def test_cli_print_help_writes_to_requested_stream(capsys: pytest.CaptureFixture[str]) -> None:
    parser = cli.build_parser()
    buffer = io.StringIO()
    parser.print_help(file=buffer)
    output = capsys.readouterr().out
    assert output == ""
    help_text = buffer.getvalue()
    assert "Usage:" in help_text
    assert "safe-bundle-runner CLI" in help_text


def test_cli_missing_command_errors(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 2
    assert "Error:" in capsys.readouterr().out
