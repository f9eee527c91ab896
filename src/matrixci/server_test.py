from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from matrixci.controller import PipelineController
from matrixci.dsl import job, on_pull_request, on_push, sh, wf
from matrixci.executor import ShellRunner
from matrixci.platforms import PlatformResolver
from matrixci.server import create_app, event_from_github
from matrixci.ui.console import Console


@pytest.fixture
def client(tmp_path):
    spec = wf(
        "ci",
        job("lint", sh("ok", "true")),
        job("test", sh("check", 'test "$MATRIXCI_JOB" = test')),
        on=[on_pull_request(), on_push("master")],
    )

    def factory(s):
        return PipelineController(
            s,
            work_dir=tmp_path / "work",
            platforms=PlatformResolver(platform="linux"),
            runner=ShellRunner(poll_interval=0.02),
            console=Console(quiet=True),
        )

    return TestClient(create_app(spec, controller_factory=factory))


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "pipeline": "ci"}


def test_post_event_runs_pipeline(client):
    r = client.post("/events", json={"kind": "push", "branch": "master", "sha": "abc"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "succeeded"
    assert [j["instance"] for j in body["jobs"]] == ["lint", "test"]
    assert body["jobs"][0]["log"][0]["outcome"] == "succeeded"


def test_post_event_not_triggered(client):
    r = client.post("/events", json={"kind": "push", "branch": "feature"})
    assert r.status_code == 200
    assert r.json() == {"run_id": r.json()["run_id"], "status": "not-triggered", "jobs": []}


def test_malformed_event_is_422(client):
    r = client.post("/events", json={"kind": "tag"})
    assert r.status_code == 422


def test_github_push_webhook(client):
    r = client.post(
        "/webhook",
        json={"ref": "refs/heads/master", "after": "abc"},
        headers={"X-GitHub-Event": "push"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "succeeded"


def test_github_ping_and_ignored_events(client):
    assert client.post("/webhook", json={"zen": "hi"}, headers={"X-GitHub-Event": "ping"}).json() == {"ok": True}
    r = client.post("/webhook", json={}, headers={"X-GitHub-Event": "issues"})
    assert r.json()["status"] == "ignored"


def test_event_from_github_pull_request():
    event = event_from_github(
        "pull_request",
        {"pull_request": {"base": {"ref": "main"}, "head": {"sha": "deadbeef"}}},
    )
    assert (event.kind, event.branch, event.sha) == ("pull_request", "main", "deadbeef")
