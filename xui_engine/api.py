"""HTTP client for the Xray release index and release archives."""

import asyncio
import logging
from typing import List, Optional, Self

import httpx
from httpx import AsyncClient, Response

from xui_engine.settings import DEFAULT_DOWNLOAD_URL, DEFAULT_RELEASES_URL
from xui_engine.util import UpdateError

logger = logging.getLogger(__name__)

# platform.machine() -> suffix used in release archive names
ARCH_MAP = {
    "x86_64": "64",
    "amd64": "64",
    "aarch64": "arm64-v8a",
    "arm64": "arm64-v8a",
}


def resolve_arch(machine: str) -> str:
    """Map a host CPU architecture to the release archive suffix.

    Raises:
        UpdateError: If no release is published for the architecture.
    """
    try:
        return ARCH_MAP[machine.lower()]
    except KeyError:
        raise UpdateError(f"Unsupported architecture: {machine}") from None


def normalize_tag(version: str) -> str:
    """Ensure a version tag starts with "v", e.g. "1.8.4" -> "v1.8.4"."""
    version = version.strip()
    return version if version.startswith("v") else f"v{version}"


def build_download_url(version: str, machine: str, template: str = DEFAULT_DOWNLOAD_URL) -> str:
    return template.format(tag=normalize_tag(version), arch=resolve_arch(machine))


class ReleaseClient:
    def __init__(self, index_url: str = DEFAULT_RELEASES_URL, *,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 60.0) -> None:
        self.session: AsyncClient | None = None
        self.index_url: str = index_url
        self.transport = transport
        self.timeout: float = timeout
        self.max_retries: int = 5
        self.retry_delay: float = 1

    async def safe_get(self, url: httpx.URL | str) -> Response:
        """GET with retries on transport errors and 5xx responses.

        Raises:
            UpdateError: On a 4xx response or once the retries are used up.
        """
        if self.session is None:
            raise RuntimeError("Session is not initialized")

        for attempt in range(self.max_retries):
            try:
                resp = await self.session.get(url)
            except httpx.TransportError as e:
                logger.warning("Request to %s failed (%s), attempt %d/%d",
                               url, e, attempt + 1, self.max_retries)
                if attempt + 1 >= self.max_retries:
                    raise UpdateError(f"Failed to fetch {url}: {e}") from e
                await asyncio.sleep(self.retry_delay)
                continue

            if resp.status_code == 200:
                return resp
            if resp.status_code >= 500 and attempt + 1 < self.max_retries:
                await asyncio.sleep(self.retry_delay)
                continue
            raise UpdateError(f"Server returned status code {resp.status_code} for {url}")

        raise UpdateError(f"Failed to fetch {url}: max retries exceeded")

    async def list_releases(self) -> List[str]:
        """Return the published version tags, newest first as the index lists them."""
        resp = await self.safe_get(self.index_url)
        try:
            releases = resp.json()
        except ValueError as e:
            raise UpdateError(f"Failed to parse releases: {e}") from e
        if not isinstance(releases, list):
            raise UpdateError("Failed to parse releases: expected a JSON array")

        tags = []
        for release in releases:
            if isinstance(release, str):
                tags.append(release)
            elif isinstance(release, dict) and "tag_name" in release:
                tags.append(release["tag_name"])
        return tags

    async def download(self, url: str) -> bytes:
        logger.info("Downloading from: %s", url)
        resp = await self.safe_get(url)
        return resp.content

    def connect(self) -> None:
        self.session = AsyncClient(
            headers={"User-Agent": "xui-engine"},
            follow_redirects=True,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def disconnect(self) -> None:
        if self.session is not None:
            await self.session.aclose()
            self.session = None

    async def __aenter__(self) -> Self:
        self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()
        return
