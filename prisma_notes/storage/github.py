"""Publishing through the GitHub Git Data API: blobs, tree, commit, ref and pull request."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from ..config import GitHubSettings
from ..errors import ConfigurationError, TransportError
from ..http import request_json
from . import COVERS_DIR, COVERS_URL_PREFIX, NOTES_DIR, NoteMetadata, PublishReceipt

logger = logging.getLogger(__name__)

ALLOWED_DIRS = (NOTES_DIR, COVERS_DIR)
ENVIRONMENT_BRANCHES = {"production": "main", "preview": "staging"}
DEFAULT_BRANCH = "develop"
DRAFT_BRANCH = "notes/upload-develop"


def base_branch_for(environment: str) -> str:
    return ENVIRONMENT_BRANCHES.get(environment, DEFAULT_BRANCH)


def target_branch_for(environment: str, draft: bool) -> str:
    if draft:
        return DRAFT_BRANCH
    return f"notes/upload-{base_branch_for(environment)}"


def is_allowed_path(path: str) -> bool:
    normalized = path.replace("\\", "/")
    if ".." in normalized.split("/"):
        return False
    return any(normalized.startswith(f"{directory}/") for directory in ALLOWED_DIRS)


class GitHubRepository:
    def __init__(self, token: str, owner: str, repo: str, api_url: str = "https://api.github.com") -> None:
        self.token = token
        self.owner = owner
        self.repo = repo
        self.base_url = f"{api_url.rstrip('/')}/repos/{quote(owner)}/{quote(repo)}"

    @classmethod
    def from_settings(cls, settings: GitHubSettings) -> GitHubRepository:
        missing = settings.missing()
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")
        return cls(settings.token, settings.owner, settings.repo, settings.api_url)

    def _call(self, method: str, path: str, payload: Any = None) -> Any:
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        return request_json(method, f"{self.base_url}{path}", payload=payload, headers=headers).body

    def get_ref(self, branch: str) -> str:
        return self._call("GET", f"/git/ref/heads/{quote(branch)}")["object"]["sha"]

    def create_ref(self, branch: str, sha: str) -> None:
        self._call("POST", "/git/refs", {"ref": f"refs/heads/{branch}", "sha": sha})

    def update_ref(self, branch: str, sha: str, force: bool = False) -> None:
        self._call("PATCH", f"/git/refs/heads/{quote(branch)}", {"sha": sha, "force": force})

    def create_blob(self, content: bytes) -> str:
        payload = {"content": base64.b64encode(content).decode("ascii"), "encoding": "base64"}
        return self._call("POST", "/git/blobs", payload)["sha"]

    def get_commit_tree(self, commit_sha: str) -> str:
        return self._call("GET", f"/git/commits/{commit_sha}")["tree"]["sha"]

    def create_tree(self, base_tree: str, entries: list[dict[str, str]]) -> str:
        return self._call("POST", "/git/trees", {"base_tree": base_tree, "tree": entries})["sha"]

    def create_commit(self, message: str, tree: str, parents: list[str]) -> str:
        return self._call("POST", "/git/commits", {"message": message, "tree": tree, "parents": parents})["sha"]

    def create_pull(self, title: str, body: str, head: str, base: str, draft: bool) -> dict[str, Any]:
        return self._call(
            "POST", "/pulls", {"title": title, "body": body, "head": head, "base": base, "draft": draft}
        )

    def find_open_pull(self, head: str, base: str) -> dict[str, Any] | None:
        pulls = self._call("GET", f"/pulls?state=open&head={quote(self.owner)}:{quote(head)}&base={quote(base)}")
        return pulls[0] if pulls else None


@dataclass
class _StagedFile:
    path: str
    blob_sha: str


class GitHubBackend:
    name = "github"

    def __init__(self, repository: GitHubRepository, environment: str, draft: bool = False) -> None:
        self.repository = repository
        self.draft = draft
        self.base_branch = base_branch_for(environment)
        self.target_branch = target_branch_for(environment, draft)
        self.staged: list[_StagedFile] = []

    def _stage(self, path: str, content: bytes) -> None:
        if not is_allowed_path(path):
            raise ValueError(f"Invalid file path: {path}")
        self.staged.append(_StagedFile(path=path, blob_sha=self.repository.create_blob(content)))

    def upload_cover(self, file_name: str, data: bytes) -> str:
        self._stage(f"{COVERS_DIR}/{file_name}", data)
        return f"{COVERS_URL_PREFIX}/{file_name}"

    def upload_note(self, file_name: str, text: str) -> str:
        path = f"{NOTES_DIR}/{file_name}"
        self._stage(path, text.encode("utf-8"))
        return path

    def sync_branch(self) -> dict[str, Any] | None:
        """Prepare the upload branch and return the pull request already open on it, if any."""

        base_sha = self.repository.get_ref(self.base_branch)
        try:
            self.repository.get_ref(self.target_branch)
        except TransportError as exc:
            if exc.status != 404:
                raise
            logger.info("Creating branch %s from %s", self.target_branch, self.base_branch)
            self.repository.create_ref(self.target_branch, base_sha)
            return None

        open_pull = self.repository.find_open_pull(self.target_branch, self.base_branch)
        if open_pull:
            logger.info("Branch %s has open pull request #%s, keeping its history", self.target_branch, open_pull.get("number"))
            return open_pull

        logger.info("Resetting branch %s to %s", self.target_branch, self.base_branch)
        self.repository.update_ref(self.target_branch, base_sha, force=True)
        return None

    def _pull_request_text(self, metadata: NoteMetadata) -> tuple[str, str]:
        title = metadata.title or "New note"
        prefix = "[Draft]" if self.draft else "[Note]"
        status = "This note is a draft." if self.draft else "This note is ready for review."
        body = "\n".join(
            [
                "This pull request was created automatically after a new note was submitted.",
                "",
                status,
                "",
                "### Details",
                *metadata.as_lines(),
            ]
        )
        return f"{prefix} {title}", body

    def finish(self, metadata: NoteMetadata) -> PublishReceipt:
        if not self.staged:
            raise ValueError("Nothing to commit")

        open_pull = self.sync_branch()
        head_sha = self.repository.get_ref(self.target_branch)
        base_tree = self.repository.get_commit_tree(head_sha)
        tree = self.repository.create_tree(
            base_tree,
            [{"path": staged.path, "mode": "100644", "type": "blob", "sha": staged.blob_sha} for staged in self.staged],
        )
        commit = self.repository.create_commit(f"[note] {metadata.title or 'New note'}", tree, [head_sha])
        self.repository.update_ref(self.target_branch, commit)
        logger.info("Committed %s to %s", commit, self.target_branch)

        if open_pull:
            return PublishReceipt(message="A pull request already exists for this branch", url=open_pull.get("html_url"))

        title, body = self._pull_request_text(metadata)
        try:
            pull = self.repository.create_pull(title, body, self.target_branch, self.base_branch, self.draft)
        except TransportError as exc:
            if exc.status != 422:
                raise
            existing = self.repository.find_open_pull(self.target_branch, self.base_branch)
            return PublishReceipt(
                message="A pull request already exists for this branch",
                url=existing.get("html_url") if existing else None,
            )
        return PublishReceipt(message="Pull request created", url=pull.get("html_url"))

    def close(self) -> None:
        self.staged.clear()
