from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from conftest import FakeSftp, fake_connector
from prisma_notes.config import GitHubSettings, Settings, SftpSettings
from prisma_notes.errors import ConfigurationError, TransportError
from prisma_notes.http import JsonResponse
from prisma_notes.storage import NoteMetadata, build_backends
from prisma_notes.storage import github
from prisma_notes.storage.github import (
    GitHubBackend,
    GitHubRepository,
    base_branch_for,
    is_allowed_path,
    target_branch_for,
)
from prisma_notes.storage.local import LocalBackend
from prisma_notes.storage.sftp import SftpBackend

METADATA = NoteMetadata(title="Le Petit Prince", contributor="Camille", summary="Un conte.")


class FakeRepository:
    """In-memory stand-in for the Git Data API."""

    def __init__(self, branches: dict[str, str] | None = None, open_pulls: list[dict[str, Any]] | None = None) -> None:
        self.branches = dict(branches or {"develop": "base-sha", "main": "main-sha"})
        self.open_pulls = list(open_pulls or [])
        self.blobs: list[bytes] = []
        self.trees: list[list[dict[str, str]]] = []
        self.ref_updates: list[tuple[str, str, bool]] = []
        self.created_refs: list[tuple[str, str]] = []
        self.pulls_created: list[dict[str, Any]] = []
        self.create_pull_error: TransportError | None = None

    def get_ref(self, branch: str) -> str:
        if branch not in self.branches:
            raise TransportError(f"GET ref {branch} failed with 404", status=404)
        return self.branches[branch]

    def create_ref(self, branch: str, sha: str) -> None:
        self.created_refs.append((branch, sha))
        self.branches[branch] = sha

    def update_ref(self, branch: str, sha: str, force: bool = False) -> None:
        self.ref_updates.append((branch, sha, force))
        self.branches[branch] = sha

    def create_blob(self, content: bytes) -> str:
        self.blobs.append(content)
        return f"blob-{len(self.blobs)}"

    def get_commit_tree(self, commit_sha: str) -> str:
        return f"tree-of-{commit_sha}"

    def create_tree(self, base_tree: str, entries: list[dict[str, str]]) -> str:
        self.trees.append(entries)
        return "new-tree"

    def create_commit(self, message: str, tree: str, parents: list[str]) -> str:
        self.last_commit = (message, tree, parents)
        return "commit-sha"

    def create_pull(self, title: str, body: str, head: str, base: str, draft: bool) -> dict[str, Any]:
        if self.create_pull_error:
            raise self.create_pull_error
        pull = {"number": 7, "title": title, "body": body, "head": head, "base": base, "draft": draft}
        pull["html_url"] = "https://github.com/prisma/site/pull/7"
        self.pulls_created.append(pull)
        return pull

    def find_open_pull(self, head: str, base: str) -> dict[str, Any] | None:
        return self.open_pulls[0] if self.open_pulls else None


def _stage_note(backend: GitHubBackend) -> None:
    backend.upload_cover("le-petit-prince-0123456789ab.png", b"png")
    backend.upload_note("le-petit-prince.md", "---\nbookTitle: Le Petit Prince\n---\n")


def test_local_backend_writes_site_files(tmp_path: Path) -> None:
    backend = LocalBackend(tmp_path)

    assert backend.upload_cover("cover.png", b"png") == "/img/cover.png"
    backend.upload_note("le-petit-prince.md", "note")
    receipt = backend.finish(METADATA)

    assert (tmp_path / "public/img/cover.png").read_bytes() == b"png"
    assert (tmp_path / "src/summaries/le-petit-prince.md").read_text(encoding="utf-8") == "note"
    assert receipt.url is None
    assert "2 files" in receipt.message


@pytest.mark.parametrize("name", ["../escape.md", "nested/note.md", ".."])
def test_local_backend_rejects_paths(tmp_path: Path, name: str) -> None:
    with pytest.raises(ValueError):
        LocalBackend(tmp_path).upload_note(name, "note")


def test_sftp_backend_uploads_under_environment_directory() -> None:
    sftp = FakeSftp(existing={"/prisma"})
    backend = SftpBackend(
        SftpSettings(host="sftp.example.org", username="prisma", password="x"),
        "production",
        "https://cdn.example.org/covers/",
        connect=fake_connector(sftp),
    )

    cover_url = backend.upload_cover("cover.png", b"png")
    note_path = backend.upload_note("le-petit-prince.md", "note")
    receipt = backend.finish(METADATA)
    backend.close()

    assert cover_url == "https://cdn.example.org/covers/cover.png"
    assert note_path == "/prisma/production/notes/le-petit-prince.md"
    assert sftp.files["/prisma/production/covers/cover.png"] == b"png"
    assert sftp.created == ["/prisma/production", "/prisma/production/covers", "/prisma/production/notes"]
    assert "2 files" in receipt.message
    assert sftp.closed


def test_sftp_backend_wraps_remote_failures() -> None:
    class BrokenSftp(FakeSftp):
        def putfo(self, handle: Any, path: str) -> None:
            raise OSError("Permission denied")

    backend = SftpBackend(SftpSettings(), "development", "", connect=fake_connector(BrokenSftp({"/prisma"})))

    with pytest.raises(TransportError, match="Permission denied"):
        backend.upload_bytes(b"x", "note.md")
    with pytest.raises(ValueError):
        backend.upload_bytes(b"x", "../note.md")


def test_branch_naming() -> None:
    assert base_branch_for("production") == "main"
    assert base_branch_for("preview") == "staging"
    assert base_branch_for("anything-else") == "develop"
    assert target_branch_for("production", draft=False) == "notes/upload-main"
    assert target_branch_for("production", draft=True) == "notes/upload-develop"


def test_allowed_paths() -> None:
    assert is_allowed_path("src/summaries/dune.md")
    assert is_allowed_path("public/img/dune.png")
    assert not is_allowed_path("src/summaries/../../package.json")
    assert not is_allowed_path(".github/workflows/deploy.yml")


def test_first_submission_creates_branch_and_pull_request() -> None:
    repository = FakeRepository()
    backend = GitHubBackend(repository, "development")
    _stage_note(backend)

    receipt = backend.finish(METADATA)

    assert repository.created_refs == [("notes/upload-develop", "base-sha")]
    assert [entry["path"] for entry in repository.trees[0]] == [
        "public/img/le-petit-prince-0123456789ab.png",
        "src/summaries/le-petit-prince.md",
    ]
    assert repository.last_commit == ("[note] Le Petit Prince", "new-tree", ["base-sha"])
    assert repository.ref_updates == [("notes/upload-develop", "commit-sha", False)]
    assert repository.pulls_created[0]["title"] == "[Note] Le Petit Prince"
    assert "- contributor: Camille" in repository.pulls_created[0]["body"]
    assert receipt.url == "https://github.com/prisma/site/pull/7"


def test_resubmission_reuses_the_open_pull_request() -> None:
    open_pull = {"number": 3, "html_url": "https://github.com/prisma/site/pull/3"}
    repository = FakeRepository(
        branches={"develop": "base-sha", "notes/upload-develop": "previous-sha"}, open_pulls=[open_pull]
    )
    backend = GitHubBackend(repository, "development")
    _stage_note(backend)

    receipt = backend.finish(METADATA)

    assert repository.pulls_created == []
    assert repository.ref_updates == [("notes/upload-develop", "commit-sha", False)]
    assert repository.last_commit[2] == ["previous-sha"]
    assert receipt.url == "https://github.com/prisma/site/pull/3"
    assert "already exists" in receipt.message


def test_stale_branch_without_pull_request_is_reset_to_base() -> None:
    repository = FakeRepository(branches={"develop": "base-sha", "notes/upload-develop": "stale-sha"})
    backend = GitHubBackend(repository, "development")
    _stage_note(backend)

    backend.finish(METADATA)

    assert repository.ref_updates[0] == ("notes/upload-develop", "base-sha", True)
    assert repository.last_commit[2] == ["base-sha"]


def test_pull_request_conflict_falls_back_to_existing_one() -> None:
    # The branch is new, so the open pull request is only looked up after the 422.
    repository = FakeRepository(open_pulls=[{"html_url": "https://github.com/prisma/site/pull/9"}])
    repository.create_pull_error = TransportError("A pull request already exists", status=422)
    backend = GitHubBackend(repository, "development")
    _stage_note(backend)

    receipt = backend.finish(METADATA)

    assert receipt.url == "https://github.com/prisma/site/pull/9"


def test_other_pull_request_failures_propagate() -> None:
    repository = FakeRepository()
    repository.create_pull_error = TransportError("Bad credentials", status=401)
    backend = GitHubBackend(repository, "production", draft=True)
    _stage_note(backend)

    with pytest.raises(TransportError, match="Bad credentials"):
        backend.finish(METADATA)


def test_github_backend_refuses_paths_outside_content_dirs() -> None:
    backend = GitHubBackend(FakeRepository(), "development")

    with pytest.raises(ValueError):
        backend.upload_note("../../package.json", "{}")


def test_repository_queries_open_pulls_by_owner_and_branch(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str]] = []

    def fake_request_json(method, url, payload=None, headers=None, timeout=15):
        calls.append((method, url))
        assert headers["Authorization"] == "Bearer ghp_test"
        return JsonResponse(status=200, body=[{"number": 4, "html_url": "https://github.com/prisma/site/pull/4"}])

    monkeypatch.setattr(github, "request_json", fake_request_json)
    repository = GitHubRepository("ghp_test", "prisma", "site")

    pull = repository.find_open_pull("notes/upload-develop", "develop")

    assert pull["number"] == 4
    assert calls == [
        (
            "GET",
            "https://api.github.com/repos/prisma/site/pulls?state=open&head=prisma:notes/upload-develop&base=develop",
        )
    ]


def test_repository_requires_credentials() -> None:
    with pytest.raises(ConfigurationError, match="GITHUB_TOKEN"):
        GitHubRepository.from_settings(GitHubSettings(owner="prisma", repo="site"))


def test_build_backends_follows_upload_modes(tmp_path: Path) -> None:
    settings = Settings(
        upload_modes=("local", "github"),
        local_content_root=tmp_path,
        github=GitHubSettings(token="t", owner="prisma", repo="site"),
    )

    backends = build_backends(settings, draft=True)

    assert [backend.name for backend in backends] == ["local", "github"]
    assert backends[1].target_branch == "notes/upload-develop"
