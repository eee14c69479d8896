"""Repository client: PR diffs and commit statuses via the GitHub REST API.

RepositoryClient ABC defines the interface; GitHubClient is the real
implementation on a shared httpx.AsyncClient. Calls that hit rate limits,
gateway errors or transport failures are retried by tenacity with exponential
backoff plus up to 20% of the initial delay as jitter.

Tests inject AsyncMock clients or an httpx.MockTransport.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from previewd.config import settings
from previewd.errors import UpstreamError

log = logging.getLogger(__name__)

STATUS_CONTEXT = "previewd/preview"
_PER_PAGE = 100
_RETRYABLE_STATUS = {429, 502, 503, 504}
_SERVICE_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def _is_retryable(exc: BaseException) -> bool:
    """Transport errors, 429/5xx gateway errors and rate-limited 403s."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        if response.status_code in _RETRYABLE_STATUS:
            return True
        return response.status_code == 403 and "rate limit" in response.text.lower()
    return False


class CommitState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    FAILURE = "failure"


@dataclass(frozen=True)
class ChangedFile:
    filename: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0


class RepositoryClient(ABC):
    @abstractmethod
    async def fetch_diff(self, repository: str, pr_number: int) -> list[ChangedFile]: ...

    @abstractmethod
    async def update_commit_status(
        self,
        repository: str,
        revision: str,
        state: CommitState,
        target_url: str,
        description: str,
    ) -> None: ...


class GitHubClient(RepositoryClient):
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str | None = None,
        api_url: str | None = None,
        max_retries: int = 3,
        initial_backoff: float = 0.1,
        max_backoff: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = http_client
        self._token = settings.GITHUB_TOKEN if token is None else token
        self._api_url = (api_url or settings.GITHUB_API_URL).rstrip("/")
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._sleep = sleep

    # ── internal helpers ───────────────────────────────────────────────────

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential_jitter(
                initial=self._initial_backoff,
                max=self._max_backoff,
                jitter=self._initial_backoff * 0.2,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(log, logging.DEBUG),
            sleep=self._sleep,
            reraise=True,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self._api_url}{path}"
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.request(
                        method, url, headers=self._headers(), **kwargs
                    )
                    response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if _is_retryable(exc):
                raise UpstreamError(
                    f"GitHub {method} {path} failed after {self._max_retries} retries: HTTP {status}"
                ) from exc
            raise UpstreamError(f"GitHub {method} {path} failed: HTTP {status}") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(
                f"GitHub {method} {path} failed after {self._max_retries} retries: "
                f"{str(exc) or type(exc).__name__}"
            ) from exc
        return response

    # ── public interface ───────────────────────────────────────────────────

    async def fetch_diff(self, repository: str, pr_number: int) -> list[ChangedFile]:
        files: list[ChangedFile] = []
        page = 1
        while True:
            response = await self._request(
                "GET",
                f"/repos/{repository}/pulls/{pr_number}/files",
                params={"per_page": _PER_PAGE, "page": page},
            )
            batch = response.json()
            for raw in batch:
                files.append(
                    ChangedFile(
                        filename=raw["filename"],
                        status=raw.get("status", "modified"),
                        additions=raw.get("additions", 0),
                        deletions=raw.get("deletions", 0),
                    )
                )
            if len(batch) < _PER_PAGE:
                return files
            page += 1

    async def update_commit_status(
        self,
        repository: str,
        revision: str,
        state: CommitState,
        target_url: str,
        description: str,
    ) -> None:
        await self._request(
            "POST",
            f"/repos/{repository}/statuses/{revision}",
            json={
                "state": CommitState(state).value,
                "target_url": target_url,
                # GitHub rejects descriptions over 140 characters.
                "description": description[:140],
                "context": STATUS_CONTEXT,
            },
        )


def detect_services(files: list[ChangedFile], prefix: str = "services/") -> list[str]:
    """Services touched by a diff: the first directory under services/.

    services/auth/main.go and services/auth/k8s/deploy.yaml both map to
    "auth". Names that are not valid DNS labels are ignored.
    """
    found: set[str] = set()
    for changed in files:
        if not changed.filename.startswith(prefix):
            continue
        parts = changed.filename[len(prefix):].split("/")
        if len(parts) < 2:
            continue
        name = parts[0]
        if _SERVICE_NAME.match(name):
            found.add(name)
    return sorted(found)
