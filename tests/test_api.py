"""
API endpoint tests.
"""
import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from main import app
from ciserver.core.builds import build_store
from ciserver.core.hooks import list_hook_events
from ciserver.core.projects import project_store
from ciserver.schemas.build import BuildStatus


@pytest.fixture
def create_project(client, auth_headers, tmp_path):
    """Register projects through the API; delete them afterwards."""
    created = []

    def factory(remote=None, build=None, **extra):
        body = {
            "name": "api-test",
            "local": str(tmp_path / f"checkout-{len(created)}"),
            "remote": str(remote or tmp_path / "no-such-remote"),
            "build": build if build is not None else ["echo built"],
        }
        body.update(extra)
        response = client.post("/project", json=body, headers=auth_headers)
        assert response.status_code == 201
        project = response.json()
        created.append(project["id"])
        return project

    yield factory
    for project_id in created:
        client.delete(f"/project/{project_id}", headers=auth_headers)


def wait_for_status(client, auth_headers, project_id, build_id, timeout=30.0):
    """Poll the build endpoint until the build is finished."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        build = client.get(f"/project/{project_id}/build/{build_id}", headers=auth_headers).json()
        if build["status"] in ("success", "failed", "timeout"):
            return build
        time.sleep(0.2)
    raise AssertionError(f"build {build_id} did not finish")


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_returns_ok(self, client):
        """Health endpoint should not need a key and should report the coordinator."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["coordinator"] == "running"


class TestAuthentication:
    """Tests for API key authentication."""

    def test_missing_api_key_returns_401(self, client):
        response = client.get("/project")
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing API key"

    def test_invalid_api_key_returns_401(self, client, invalid_auth_headers):
        response = client.get("/project", headers=invalid_auth_headers)
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_bearer_token_is_accepted(self, client):
        response = client.get("/project", headers={"Authorization": "Bearer test-api-key"})
        assert response.status_code == 200

    def test_no_key_configured_means_open_access(self, client, monkeypatch):
        monkeypatch.delenv("CI_API_KEY")
        response = client.get("/project")
        assert response.status_code == 200

    def test_request_id_is_echoed(self, client, auth_headers):
        response = client.get("/project", headers={**auth_headers, "X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"


class TestProjectEndpoints:
    """Tests for project registration."""

    def test_create_and_get_project(self, client, auth_headers, create_project):
        project = create_project(
            build=["make", "make test"],
            hooks={"on_failed": ["http://127.0.0.1:9/hook"]},
        )
        assert project["build"] == ["make", "make test"]

        response = client.get(f"/project/{project['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["hooks"] == {"on_failed": ["http://127.0.0.1:9/hook"]}

    def test_list_projects(self, client, auth_headers, create_project):
        project = create_project()
        data = client.get("/project", headers=auth_headers).json()
        assert project["id"] in [p["id"] for p in data["items"]]
        assert data["total"] == len(data["items"])

    def test_unknown_hook_event_rejected(self, client, auth_headers, tmp_path):
        response = client.post(
            "/project",
            json={
                "name": "bad",
                "local": str(tmp_path),
                "remote": str(tmp_path),
                "hooks": {"on_deploy": ["http://127.0.0.1:9/hook"]},
            },
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_blank_build_command_rejected(self, client, auth_headers, tmp_path):
        response = client.post(
            "/project",
            json={"name": "bad", "local": str(tmp_path), "remote": str(tmp_path), "build": ["  "]},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_missing_project_returns_404(self, client, auth_headers):
        assert client.get("/project/999999", headers=auth_headers).status_code == 404
        assert client.delete("/project/999999", headers=auth_headers).status_code == 404
        assert client.get("/project/999999/build", headers=auth_headers).status_code == 404


class TestBuildEndpoints:
    """Tests for queueing and reading builds."""

    def test_build_runs_to_success(self, client, auth_headers, create_project, git_remote):
        project = create_project(remote=git_remote, build=["cat README"])

        response = client.post(
            f"/project/{project['id']}/build",
            json={"title": "Add README", "branch": "main", "author": "dev", "tags": ["docs"]},
            headers=auth_headers,
        )
        assert response.status_code == 200
        build = response.json()
        assert build["status"] in ("queued", "building")
        assert build["project"] == project["id"]

        done = wait_for_status(client, auth_headers, project["id"], build["id"])
        assert done["status"] == "success"
        assert done["exit"] == 0
        assert "$ cat README\n" in done["output"]
        assert "hello from the remote\n" in done["output"]
        assert done["start"] is not None
        assert done["stop"] is not None

    def test_failing_command_fails_build(self, client, auth_headers, create_project, git_remote):
        project = create_project(remote=git_remote, build=["echo step one", "exit 7", "echo unreachable"])

        build = client.post(
            f"/project/{project['id']}/build", json={"branch": "main"}, headers=auth_headers,
        ).json()
        done = wait_for_status(client, auth_headers, project["id"], build["id"])

        assert done["status"] == "failed"
        assert done["exit"] == 7
        assert "$ echo unreachable\n" not in done["output"]

    def test_ci_skip_queues_nothing(self, client, auth_headers, create_project):
        project = create_project()

        response = client.post(
            f"/project/{project['id']}/build",
            json={"title": "Fix typo [ci skip]", "branch": "main"},
            headers=auth_headers,
        )

        assert response.status_code == 204
        assert client.get(f"/project/{project['id']}/build", headers=auth_headers).json() == []

    def test_copy_reruns_build(self, client, auth_headers, create_project):
        project = create_project()
        original = client.post(
            f"/project/{project['id']}/build",
            json={"title": "Release", "branch": "release", "revision": "abc123", "author": "dev", "tags": ["v1"]},
            headers=auth_headers,
        ).json()

        response = client.post(
            f"/project/{project['id']}/build",
            json={"copy": original["id"], "title": "ignored"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        copy = response.json()
        assert copy["id"] != original["id"]
        for field in ("title", "branch", "revision", "author", "tags"):
            assert copy[field] == original[field]

    def test_copy_of_missing_build_returns_404(self, client, auth_headers, create_project):
        project = create_project()
        response = client.post(
            f"/project/{project['id']}/build", json={"copy": 999999}, headers=auth_headers,
        )
        assert response.status_code == 404

    def test_list_builds_with_paging(self, client, auth_headers, create_project):
        project = create_project()
        url = f"/project/{project['id']}/build"
        ids = [
            client.post(url, json={"title": str(i)}, headers=auth_headers).json()["id"]
            for i in range(4)
        ]

        everything = client.get(url, headers=auth_headers).json()
        assert [b["id"] for b in everything] == list(reversed(ids))

        newest = client.get(url, params={"limit": 2}, headers=auth_headers).json()
        assert [b["id"] for b in newest] == [ids[3], ids[2]]

        older = client.get(url, params={"limit": 2, "last": ids[2]}, headers=auth_headers).json()
        assert [b["id"] for b in older] == [ids[1], ids[0]]

        # `last` alone is ignored, and empty values mean no constraint
        assert len(client.get(url, params={"last": ids[2]}, headers=auth_headers).json()) == 4
        assert len(client.get(url, params={"limit": ""}, headers=auth_headers).json()) == 4

        assert client.get(url, params={"limit": "many"}, headers=auth_headers).status_code == 422

    def test_delete_build(self, client, auth_headers, create_project):
        project = create_project()
        build = client.post(
            f"/project/{project['id']}/build", json={"title": "t"}, headers=auth_headers,
        ).json()
        url = f"/project/{project['id']}/build/{build['id']}"

        assert client.delete(url, headers=auth_headers).json() == {}
        assert client.get(url, headers=auth_headers).status_code == 404
        assert client.delete(url, headers=auth_headers).status_code == 404

    def test_build_of_other_project_is_not_found(self, client, auth_headers, create_project):
        first = create_project()
        second = create_project()
        build = client.post(
            f"/project/{first['id']}/build", json={"title": "t"}, headers=auth_headers,
        ).json()

        response = client.get(f"/project/{second['id']}/build/{build['id']}", headers=auth_headers)
        assert response.status_code == 404


class TestQueueEndpoint:
    def test_queue_reports_state(self, client, auth_headers):
        response = client.get("/queue", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"busy", "current", "pending"}
        assert isinstance(data["pending"], list)


class TestMetricsEndpoint:
    """Tests for metrics endpoint."""

    def test_metrics_requires_auth(self, client):
        response = client.get("/metrics")
        assert response.status_code == 401

    def test_metrics_returns_prometheus_format(self, client, auth_headers):
        response = client.get("/metrics", headers=auth_headers)
        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        content = response.text
        assert "ciserver_requests_total" in content
        assert "ciserver_builds_created_total" in content
        assert "ciserver_worker_exit_timeout_total" in content


class TestStartupRecovery:
    def test_interrupted_build_is_failed_with_hook(self, tmp_path):
        """A build a previous server left `building` ends failed with on_failed."""
        project = project_store.create(
            name="recovery", local=str(tmp_path), remote=str(tmp_path / "none"), build=[],
        )
        build = build_store.create(project.id, branch="main")
        build_store.update(replace(build, status=BuildStatus.BUILDING))
        try:
            with TestClient(app):
                pass

            recovered = build_store.get(project.id, build.id)
            assert recovered.status == BuildStatus.FAILED
            assert [e["event"] for e in list_hook_events(build.id, project.id)] == ["on_failed"]
        finally:
            project_store.delete(project.id)
