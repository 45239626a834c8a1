"""GitHub REST access and the repository fetch orchestrator.

Network-facing functions return a ``ScanError`` instead of raising for HTTP
and transport failures, so callers branch on the result type:

    result = await scan_repo(owner, repo, "main", token, config)
    if isinstance(result, ScanError):
        ...
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from tagscan.models import BranchInfo, ParsedTask, ScanConfig, TreeEntry
from tagscan.parser import compile_ignore_patterns, parse_file_content, should_ignore_path

log = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
BATCH_SIZE = 10
DEFAULT_TIMEOUT = 30.0
# Upstream error bodies are cut to this many characters.
MAX_ERROR_BODY = 200

RATE_LIMITED = "rate_limited"
GITHUB_API_ERROR = "github_api_error"
PARSE_ERROR = "parse_error"


@dataclass(frozen=True)
class ScanError:
    """Failure value for repository access.

    ``status`` is 0 for transport failures that never produced a response.
    """

    kind: str
    message: str = ""
    status: int | None = None
    retry_after: int | None = None

    def describe(self) -> str:
        if self.kind == RATE_LIMITED:
            return "rate limited"
        return self.message or self.kind


def _one_line(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) > MAX_ERROR_BODY:
        return flat[: MAX_ERROR_BODY - 3] + "..."
    return flat


def _network_error(exc: Exception) -> ScanError:
    return ScanError(GITHUB_API_ERROR, _one_line(str(exc)) or "network error", status=0)


def _error_from_response(response: httpx.Response) -> ScanError:
    if response.status_code == 403:
        header = response.headers.get("Retry-After")
        retry_after = int(header) if header and header.strip().isdigit() else None
        return ScanError(RATE_LIMITED, "rate limited", status=403, retry_after=retry_after)
    body = _one_line(response.text) or "unknown error"
    return ScanError(GITHUB_API_ERROR, body, status=response.status_code)


def _decode_content(content: str) -> str:
    raw = base64.b64decode(content.replace("\n", ""))
    return raw.decode("utf-8", errors="replace")


class GitHubClient:
    """Thin async wrapper around the GitHub REST endpoints the scanner needs."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = GITHUB_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "tagscan",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any:
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            return _network_error(exc)
        if not response.is_success:
            return _error_from_response(response)
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ScanError(PARSE_ERROR, "failed to parse response json")

    async def fetch_repo_tree(self, owner: str, repo: str, ref: str) -> list[TreeEntry] | ScanError:
        payload = await self._get_json(
            f"/repos/{owner}/{repo}/git/trees/{quote(ref, safe='')}", {"recursive": "1"}
        )
        if isinstance(payload, ScanError):
            return payload
        if not isinstance(payload, dict) or not isinstance(payload.get("tree"), list):
            return ScanError(PARSE_ERROR, "no tree field in response")
        if payload.get("truncated"):
            log.warning("Tree for %s/%s@%s was truncated by GitHub", owner, repo, ref)
        entries: list[TreeEntry] = []
        for entry in payload["tree"]:
            if entry.get("type") not in ("blob", "tree"):
                continue
            entries.append(
                {
                    "path": entry["path"],
                    "type": entry["type"],
                    "sha": entry.get("sha", ""),
                    "size": entry.get("size") or 0,
                }
            )
        return entries

    async def fetch_file_content(
        self, owner: str, repo: str, path: str, ref: str
    ) -> str | ScanError:
        payload = await self._get_json(
            f"/repos/{owner}/{repo}/contents/{quote(path)}", {"ref": ref}
        )
        if isinstance(payload, ScanError):
            return payload
        content = payload.get("content") if isinstance(payload, dict) else None
        if not content:
            return ScanError(PARSE_ERROR, "no content field in response")
        try:
            return _decode_content(content)
        except (binascii.Error, ValueError):
            return ScanError(PARSE_ERROR, f"invalid base64 content for {path}")

    async def fetch_branch(self, owner: str, repo: str, branch: str) -> BranchInfo | ScanError:
        payload = await self._get_json(f"/repos/{owner}/{repo}/branches/{quote(branch, safe='')}")
        if isinstance(payload, ScanError):
            return payload
        if not isinstance(payload, dict):
            return ScanError(PARSE_ERROR, "unexpected branch payload")
        commit = payload.get("commit") or {}
        message = (commit.get("commit") or {}).get("message")
        return {
            "branch": payload.get("name", branch),
            "commit_sha": commit.get("sha"),
            "commit_msg": message,
            "commit_url": commit.get("html_url") or commit.get("url"),
        }


def batched(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


async def _scan_with_client(
    client: GitHubClient, owner: str, repo: str, ref: str, config: ScanConfig
) -> list[ParsedTask] | ScanError:
    tree = await client.fetch_repo_tree(owner, repo, ref)
    if isinstance(tree, ScanError):
        return tree

    ignore = compile_ignore_patterns(config["ignore"])
    file_paths = [
        entry["path"]
        for entry in tree
        if entry["type"] == "blob" and not should_ignore_path(entry["path"], ignore)
    ]
    log.info("Scanning %d files in %s/%s@%s", len(file_paths), owner, repo, ref)

    all_tasks: list[ParsedTask] = []
    skipped = 0
    for file_batch in batched(file_paths, BATCH_SIZE):
        results = await asyncio.gather(
            *(client.fetch_file_content(owner, repo, path, ref) for path in file_batch)
        )
        for path, result in zip(file_batch, results, strict=True):
            if isinstance(result, ScanError):
                skipped += 1
                log.debug("Skipping %s: %s", path, result.describe())
                continue
            all_tasks.extend(parse_file_content(result, path, config))

    if skipped:
        log.info("Skipped %d unreadable files in %s/%s", skipped, owner, repo)
    return all_tasks


async def scan_repo(
    owner: str,
    repo: str,
    ref: str,
    access_token: str,
    config: ScanConfig,
    *,
    client: GitHubClient | None = None,
) -> list[ParsedTask] | ScanError:
    """Fetch every non-ignored file of *ref* and parse its annotations.

    Files are fetched ``BATCH_SIZE`` at a time; batches run one after the
    other. A failed tree fetch is returned; a failed file fetch is skipped.
    """
    if client is not None:
        return await _scan_with_client(client, owner, repo, ref, config)
    async with GitHubClient(access_token) as own_client:
        return await _scan_with_client(own_client, owner, repo, ref, config)
