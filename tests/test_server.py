from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from safe_bundle_runner import BundleRunner, SandboxPolicy
from safe_bundle_runner.collaborators import AuthenticationFailed, FragmentBundle, Principal
from safe_bundle_runner.execution.errors import ExecutionCancelled
from safe_bundle_runner.execution.gate import ConcurrencyGate
from safe_bundle_runner.execution.types import ExecutionRequest, RuntimeFailure, Success, SystemFailure, Timeout
from safe_bundle_runner.server import (
    REQUEST_ID_HEADER,
    STATUS_CLIENT_CLOSED_REQUEST,
    TRUNCATED_HEADER,
    create_app,
    render_outcome,
    run_request,
)
from safe_bundle_runner.session import SessionContext

PHP_SCRIPT = "<?php echo 'hi'; ?>"


class _FakeEngine:
    def __init__(self) -> None:
        self.result = Success(output=b"<p>rendered</p>")
        self.calls = 0

    def run(self, workspace, source_path, limits, cancel=None):
        self.calls += 1
        return self.result


class _CancelAwareEngine:
    def run(self, workspace, source_path, limits, cancel=None):
        assert cancel is not None
        cancel.wait(10)
        raise ExecutionCancelled("Execution cancelled while running")


class _DisconnectedRequest:
    async def is_disconnected(self) -> bool:
        return True


class _FakeIdentity:
    def authenticate(self, credentials):
        raise AuthenticationFailed("not used")

    def verify(self, token: str) -> Principal:
        if token == "alice-token":
            return Principal("1", "alice")
        if token == "bob-token":
            return Principal("2", "bob")
        raise AuthenticationFailed("unknown token")


class _FakeStore:
    def __init__(self) -> None:
        self.bundles = {
            "7": FragmentBundle(owner_id="1", title="Demo: One", markup="<p>stored</p>", server_script=PHP_SCRIPT),
            "8": FragmentBundle(owner_id="1", title="Plain", markup="<p>plain</p>"),
        }

    def create(self, bundle):
        raise NotImplementedError

    def read(self, project_id: str) -> FragmentBundle:
        return self.bundles[project_id]

    def update(self, project_id, bundle):
        raise NotImplementedError

    def list(self, owner_id):
        return []

    def delete(self, project_id):
        raise NotImplementedError


def _runner(tmp_path: Path, engine=None, **overrides) -> BundleRunner:
    settings = {"timeout_seconds": 2, "scratch_root": str(tmp_path / "scratch")}
    settings.update(overrides)
    gate = settings.pop("gate", None)
    return BundleRunner(SandboxPolicy(**settings), engine=engine or _FakeEngine(), gate=gate)


def _client(runner: BundleRunner, **kwargs) -> TestClient:
    return TestClient(create_app(runner=runner, configure_logs=False, **kwargs))


def test_static_bundle_returns_document(tmp_path: Path) -> None:
    engine = _FakeEngine()
    with _client(_runner(tmp_path, engine)) as client:
        response = client.post("/execute", json={"markup": "<h1>Hi</h1>", "style": "h1{}", "clientScript": ""})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "<h1>Hi</h1>" in response.text
    assert response.text.startswith("<!DOCTYPE html>")
    assert response.headers[REQUEST_ID_HEADER]
    assert engine.calls == 0


def test_success_returns_script_output(tmp_path: Path) -> None:
    engine = _FakeEngine()
    with _client(_runner(tmp_path, engine)) as client:
        response = client.post("/execute", json={"serverScript": PHP_SCRIPT})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert response.text == "<p>rendered</p>"
    assert TRUNCATED_HEADER not in response.headers
    assert engine.calls == 1


def test_truncated_success_sets_header(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.result = Success(output=b"xxxx", truncated=True)
    with _client(_runner(tmp_path, engine)) as client:
        response = client.post("/execute", json={"serverScript": PHP_SCRIPT})

    assert response.status_code == 200
    assert response.headers[TRUNCATED_HEADER] == "true"


def test_runtime_error_is_plain_text_500(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.result = RuntimeFailure(stderr="PHP Parse error: unexpected '}'", exit_code=255)
    with _client(_runner(tmp_path, engine)) as client:
        response = client.post("/execute", json={"serverScript": PHP_SCRIPT})

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text.startswith("runtime_error\n")
    assert "Exit code: 255" in response.text
    assert "PHP Parse error: unexpected '}'" in response.text


def test_timeout_is_plain_text_500(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.result = Timeout(elapsed_ms=2003)
    with _client(_runner(tmp_path, engine)) as client:
        response = client.post("/execute", json={"serverScript": PHP_SCRIPT})

    assert response.status_code == 500
    assert response.text.startswith("timeout\n")
    assert "2s limit" in response.text
    assert "2003 ms" in response.text


def test_system_error_hides_reason(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.result = SystemFailure(reason="/srv/secret/path is not writable")
    with _client(_runner(tmp_path, engine)) as client:
        response = client.post("/execute", json={"serverScript": PHP_SCRIPT})

    assert response.status_code == 500
    assert response.text.startswith("system_error\n")
    assert "/srv/secret" not in response.text


def test_full_gate_returns_429_with_retry_after(tmp_path: Path) -> None:
    gate = ConcurrencyGate(1, mode="reject")
    held = gate.admit()
    with _client(_runner(tmp_path, gate=gate)) as client:
        response = client.post("/execute", json={"serverScript": PHP_SCRIPT})
    gate.dismiss(held)

    assert response.status_code == 429
    assert response.headers["retry-after"] == "1"
    assert response.text.startswith("queue_full")


@pytest.mark.parametrize(
    "body",
    [{"markup": 1}, {"serverScript": None}, {"clientScript": ["a"]}],
)
def test_malformed_body_is_400(tmp_path: Path, body: dict) -> None:
    with _client(_runner(tmp_path)) as client:
        response = client.post("/execute", json=body)

    assert response.status_code == 400
    assert response.text.startswith("Malformed request")


def test_non_json_body_is_400(tmp_path: Path) -> None:
    with _client(_runner(tmp_path)) as client:
        response = client.post("/execute", content=b"not json", headers={"content-type": "application/json"})

    assert response.status_code == 400


def test_oversized_fragment_is_413(tmp_path: Path) -> None:
    engine = _FakeEngine()
    with _client(_runner(tmp_path, engine, max_fragment_kb=1)) as client:
        response = client.post("/execute", json={"markup": "a" * 2048, "serverScript": PHP_SCRIPT})

    assert response.status_code == 413
    assert "'markup' is 2048 bytes" in response.text
    assert engine.calls == 0


def test_auth_required_when_identity_configured(tmp_path: Path) -> None:
    with _client(_runner(tmp_path), identity=_FakeIdentity()) as client:
        missing = client.post("/execute", json={"markup": "x"})
        invalid = client.post("/execute", json={"markup": "x"}, headers={"Authorization": "Bearer nope"})
        valid = client.post("/execute", json={"markup": "x"}, headers={"Authorization": "Bearer alice-token"})

    assert missing.status_code == 401
    assert invalid.status_code == 403
    assert valid.status_code == 200


def test_execute_stored_project(tmp_path: Path) -> None:
    engine = _FakeEngine()
    with _client(_runner(tmp_path, engine), identity=_FakeIdentity(), store=_FakeStore()) as client:
        response = client.post("/projects/7/execute", headers={"Authorization": "Bearer alice-token"})

    assert response.status_code == 200
    assert response.text == "<p>rendered</p>"
    assert engine.calls == 1


def test_projects_of_other_owners_are_not_found(tmp_path: Path) -> None:
    with _client(_runner(tmp_path), identity=_FakeIdentity(), store=_FakeStore()) as client:
        other = client.post("/projects/7/execute", headers={"Authorization": "Bearer bob-token"})
        missing = client.get("/projects/99/export", headers={"Authorization": "Bearer alice-token"})

    assert other.status_code == 404
    assert missing.status_code == 404


def test_projects_without_store_are_not_found(tmp_path: Path) -> None:
    with _client(_runner(tmp_path)) as client:
        response = client.get("/projects/7/export")

    assert response.status_code == 404


def test_export_downloads_static_document(tmp_path: Path) -> None:
    engine = _FakeEngine()
    with _client(_runner(tmp_path, engine), store=_FakeStore()) as client:
        response = client.get("/projects/7/export")

    assert response.status_code == 200
    assert response.headers["content-disposition"] == 'attachment; filename="Demo_ One.html"'
    assert "<title>Demo: One</title>" in response.text
    assert "<p>stored</p>" in response.text
    assert engine.calls == 0


def test_health_reports_gate(tmp_path: Path) -> None:
    with _client(_runner(tmp_path, max_concurrency=3)) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "interpreter": "php",
        "max_concurrency": 3,
        "in_use": 0,
        "waiting": 0,
    }


def test_render_outcome_rejects_unknown_types() -> None:
    with pytest.raises(TypeError):
        render_outcome(object(), timeout_seconds=1)  # type: ignore[arg-type]


def test_client_disconnect_cancels_execution(tmp_path: Path) -> None:
    runner = _runner(tmp_path, _CancelAwareEngine())
    request = ExecutionRequest(server_script=PHP_SCRIPT, request_id="gone")

    response = asyncio.run(
        run_request(runner, request, SessionContext.anonymous(), _DisconnectedRequest())  # type: ignore[arg-type]
    )

    assert response.status_code == STATUS_CLIENT_CLOSED_REQUEST == 499
    assert response.headers[REQUEST_ID_HEADER] == "gone"
    assert runner.gate.in_use == 0
    assert list((tmp_path / "scratch").iterdir()) == []
