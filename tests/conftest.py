"""
Pytest configuration and fixtures.
"""
import os
import shutil
import subprocess
import sys
import tempfile
import time

# Set test environment before importing app
os.environ["CI_API_KEY"] = "test-api-key"
os.environ["CI_DATA_DIR"] = tempfile.mkdtemp(prefix="ciserver-test-")
os.environ.pop("CI_DATABASE_URL", None)
os.environ["CI_BUILD_TIMEOUT_S"] = "30"
os.environ["CI_LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from ciserver.core.builds import build_store
from ciserver.schemas.build import TERMINAL_STATUSES


@pytest.fixture
def client():
    """Create a test client (runs the app lifespan, so the coordinator is live)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Return valid authentication headers."""
    return {"X-API-Key": "test-api-key"}


@pytest.fixture
def invalid_auth_headers():
    """Return invalid authentication headers."""
    return {"X-API-Key": "invalid-key"}


@pytest.fixture
def git_remote(tmp_path):
    """A local git repository with one commit on branch `main`."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = tmp_path / "remote"
    repo.mkdir()

    def git(*args):
        subprocess.run(
            ["git", "-c", "user.name=ci", "-c", "user.email=ci@example.com", *args],
            cwd=repo,
            check=True,
            capture_output=True,
        )

    git("init")
    git("checkout", "-b", "main")
    (repo / "README").write_text("hello from the remote\n")
    git("add", "README")
    git("commit", "-m", "initial commit")
    return repo


def wait_for_build(project_id, build_id, timeout=30.0):
    """Poll the store until the build is terminal; return it."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        build = build_store.get(project_id, build_id)
        if build is not None and build.status in TERMINAL_STATUSES:
            return build
        time.sleep(0.1)
    raise AssertionError(f"build {project_id}/{build_id} did not finish within {timeout}s")


@pytest.fixture
def wait_for():
    """Return the build polling helper."""
    return wait_for_build
