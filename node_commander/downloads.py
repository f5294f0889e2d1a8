"""
Node Commander — Install Script Downloads
═══════════════════════════════════════════════════
Fetches install scripts into a workload's volume directory.

- URI placeholders are resolved against the caller's variable map first
- transport errors, 429 and 5xx answers are retried with a fixed backoff
- any other non-200 answer fails the script at once
- one script failing never stops the others; failures are logged
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from .errors import ConfigError, DownloadError, TransientNetworkError
from .models import InstallScript
from .templating import render
from .volumes import resolve_inside

logger = logging.getLogger(__name__)


@dataclass
class ScriptResult:
    path: str
    uri: str
    ok: bool
    attempts: int = 0
    error: Optional[str] = None


class ScriptFetcher:
    """Downloads files with bounded retry."""

    def __init__(
        self,
        max_attempts: int = 3,
        retry_backoff: float = 2.0,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, transport=self._transport
        )

    async def fetch_all(
        self, scripts: List[InstallScript], volume_dir: str, variables: Dict[str, str]
    ) -> List[ScriptResult]:
        results = []
        async with self._client() as client:
            for script in scripts:
                uri = render(script.uri, variables)
                result = ScriptResult(path=script.path, uri=uri, ok=False)
                try:
                    destination = resolve_inside(volume_dir, script.path)
                    result.attempts = await self._download(client, uri, destination)
                    result.ok = True
                    logger.info(f"[Downloads] Successfully downloaded {script.path}")
                except (ConfigError, DownloadError, TransientNetworkError, OSError) as e:
                    result.error = str(e)
                    logger.error(f"[Downloads] Failed to download {script.path}: {e}")
                results.append(result)
        return results

    async def _download(self, client: httpx.AsyncClient, uri: str, destination: str) -> int:
        """Returns the number of attempts used."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._download_once(client, uri, destination)
                return attempt
            except TransientNetworkError as e:
                if attempt >= self.max_attempts:
                    raise TransientNetworkError(f"{e} (gave up after {attempt} attempts)")
                logger.warning(
                    f"[Downloads] {uri} attempt {attempt}/{self.max_attempts} failed: {e}, "
                    f"retrying in {self.retry_backoff}s"
                )
                await asyncio.sleep(self.retry_backoff)
        return self.max_attempts

    async def _download_once(self, client: httpx.AsyncClient, uri: str, destination: str) -> None:
        directory = os.path.dirname(destination)
        os.makedirs(directory, exist_ok=True)
        try:
            async with client.stream("GET", uri) as response:
                if response.status_code == 429 or response.status_code >= 500:
                    raise TransientNetworkError(f"HTTP status code {response.status_code}")
                if response.status_code != 200:
                    raise DownloadError(f"HTTP status code {response.status_code}")

                fd, tmp_path = tempfile.mkstemp(prefix=".download.", dir=directory)
                try:
                    with os.fdopen(fd, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                    os.replace(tmp_path, destination)
                except BaseException:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
                    raise
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{type(e).__name__}: {e}")
        except httpx.HTTPError as e:
            # Redirect loops, undecodable bodies and the like are not retried
            raise DownloadError(f"{type(e).__name__}: {e}")
        except httpx.InvalidURL as e:
            raise DownloadError(f"invalid URL {uri!r}: {e}")
