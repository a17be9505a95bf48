"""Result storage - optional local copy of provider result files.

Provider result URLs are often short-lived.  With ``STORE_RESULTS`` enabled
the completion path downloads the file into ``ARTIFACTS_DIR/<execution_id>/``
and the task's result URL is rewritten to the served ``/api/artifacts/...``
path.  A failed download keeps the provider URL; it never fails the task.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
from pathlib import Path
from urllib.parse import urlparse

import httpx

from flowsched.registry import SchedulerConfig

logger = logging.getLogger("flowsched.storage")

ARTIFACTS_ROUTE = "/api/artifacts"


def _filename(node_id: str, url: str, content_type: str | None) -> str:
    suffix = Path(urlparse(url).path).suffix
    if not suffix and content_type:
        suffix = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ""
    safe_node = "".join(c if c.isalnum() or c in "-_" else "_" for c in node_id)
    return f"{safe_node}{suffix}"


class ResultStorage:
    def __init__(self, config: SchedulerConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.root = Path(config.artifacts_dir)
        self._client = httpx.AsyncClient(
            timeout=config.provider_timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return self.config.store_results

    async def store(self, execution_id: str, node_id: str, url: str) -> str:
        """Download *url* and return the local artifact URL (or *url* on failure)."""
        if not self.enabled or not url.startswith(("http://", "https://")):
            return url
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Could not store result for node %s: %s", node_id, exc)
            return url

        name = _filename(node_id, url, resp.headers.get("content-type"))
        target = self.root / execution_id / name
        await asyncio.to_thread(self._write, target, resp.content)
        logger.info("Stored result of node %s at %s (%d bytes)", node_id, target, len(resp.content))
        return f"{ARTIFACTS_ROUTE}/{execution_id}/{name}"

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(content)
        os.replace(tmp, target)

    async def close(self) -> None:
        await self._client.aclose()
