"""Tests for optional local storage of provider results."""

from __future__ import annotations

import httpx
import pytest

from conftest import make_config
from flowsched.services.storage_service import ResultStorage


def _storage(tmp_path, handler, **overrides) -> ResultStorage:
    config = make_config(store_results=True, artifacts_dir=str(tmp_path), **overrides)
    return ResultStorage(config, transport=httpx.MockTransport(handler))


class TestResultStorage:
    @pytest.mark.asyncio
    async def test_downloads_and_rewrites_url(self, tmp_path):
        storage = _storage(tmp_path, lambda request: httpx.Response(200, content=b"video-bytes"))
        try:
            url = await storage.store("exec-1", "node/1", "https://cdn.test/out.mp4?sig=abc")
        finally:
            await storage.close()
        assert url == "/api/artifacts/exec-1/node_1.mp4"
        assert (tmp_path / "exec-1" / "node_1.mp4").read_bytes() == b"video-bytes"
        assert not (tmp_path / "exec-1" / "node_1.mp4.part").exists()

    @pytest.mark.asyncio
    async def test_extension_from_content_type(self, tmp_path):
        storage = _storage(
            tmp_path, lambda request: httpx.Response(200, content=b"png", headers={"content-type": "image/png"})
        )
        try:
            url = await storage.store("exec-1", "img", "https://cdn.test/render")
        finally:
            await storage.close()
        assert url == "/api/artifacts/exec-1/img.png"

    @pytest.mark.asyncio
    async def test_failed_download_keeps_provider_url(self, tmp_path):
        storage = _storage(tmp_path, lambda request: httpx.Response(404))
        try:
            url = await storage.store("exec-1", "v", "https://cdn.test/gone.mp4")
        finally:
            await storage.close()
        assert url == "https://cdn.test/gone.mp4"
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_disabled_or_non_http_is_untouched(self, tmp_path):
        calls = []
        storage = ResultStorage(
            make_config(store_results=False, artifacts_dir=str(tmp_path)),
            transport=httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200)),
        )
        try:
            assert await storage.store("e", "n", "https://cdn.test/a.png") == "https://cdn.test/a.png"
        finally:
            await storage.close()

        storage = _storage(tmp_path, lambda request: calls.append(request) or httpx.Response(200))
        try:
            assert await storage.store("e", "n", "data:image/png;base64,AAA") == "data:image/png;base64,AAA"
        finally:
            await storage.close()
        assert calls == []
