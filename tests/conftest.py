"""Shared test fixtures: template DB for fast per-test isolation, fake GitHub API."""

import base64
import shutil
import sqlite3
import tempfile
from pathlib import Path

import httpx
import pytest

from tagscan.config import DEFAULT_CONFIG, save_project_config
from tagscan.db import add_project, get_connection
from tagscan.github import GitHubClient

OWNER = "user-1"
REPO_URL = "https://github.com/acme/widgets"


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + a configured project.

    ``testproj`` is owned by ``user-1``, linked to acme/widgets, and carries
    the default tag configuration. ``bare`` has no repository link.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        proj = add_project(conn, "testproj", OWNER, repo_url=REPO_URL)
        save_project_config(conn, proj["id"], OWNER, DEFAULT_CONFIG)
        add_project(conn, "bare", OWNER)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + testproj pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def project_id(db_conn: sqlite3.Connection) -> str:
    row = db_conn.execute("SELECT id FROM projects WHERE name = 'testproj'").fetchone()
    return row["id"]


class FakeGitHub:
    """In-memory GitHub REST API served through ``httpx.MockTransport``.

    ``files`` maps repository paths to text. Individual paths can be made
    to fail with ``fail_paths``; the tree endpoint with ``tree_status``.
    """

    def __init__(self, files: dict[str, str] | None = None):
        self.files: dict[str, str] = dict(files or {})
        self.fail_paths: dict[str, int] = {}
        self.tree_status = 200
        self.tree_body = "tree unavailable"
        self.tree_headers: dict[str, str] = {}
        self.branches: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if "/git/trees/" in path:
            if self.tree_status != 200:
                return httpx.Response(
                    self.tree_status, text=self.tree_body, headers=self.tree_headers
                )
            tree = [
                {"path": p, "type": "blob", "sha": "x", "size": len(c)}
                for p, c in self.files.items()
            ]
            dirs = {p.rsplit("/", 1)[0] for p in self.files if "/" in p}
            tree.extend({"path": d, "type": "tree", "sha": "d"} for d in sorted(dirs))
            return httpx.Response(200, json={"tree": tree, "truncated": False})
        if "/contents/" in path:
            file_path = path.split("/contents/", 1)[1]
            if file_path in self.fail_paths:
                return httpx.Response(self.fail_paths[file_path], text="nope")
            if file_path not in self.files:
                return httpx.Response(404, text="Not Found")
            encoded = base64.b64encode(self.files[file_path].encode()).decode()
            # GitHub wraps base64 content at 60 columns.
            wrapped = "\n".join(encoded[i : i + 60] for i in range(0, len(encoded), 60))
            return httpx.Response(200, json={"content": wrapped, "encoding": "base64"})
        if "/branches/" in path:
            name = path.rsplit("/branches/", 1)[1]
            if name not in self.branches:
                return httpx.Response(404, text="Branch not found")
            return httpx.Response(200, json=self.branches[name])
        return httpx.Response(404, text="unexpected request")

    def client(self) -> GitHubClient:
        return GitHubClient("test-token", transport=httpx.MockTransport(self.handler))


@pytest.fixture()
def fake_github() -> FakeGitHub:
    return FakeGitHub()
