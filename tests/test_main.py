"""Tests for settings and application wiring."""

import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import ValidationError

from magnus.config import Settings
from magnus.main import build_app, create_components, shutdown_components


def _sse_answer(text: str) -> bytes:
    record = json.dumps({"choices": [{"delta": {"content": text}}]})
    return f"data: {record}\n\ndata: [DONE]\n\n".encode()


class TestSettings:
    def test_provider_aliases(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_BASE", "http://local:1234/v1")
        monkeypatch.setenv("OPENAI_MODEL", "qwen")
        monkeypatch.setenv("MAGNUS_MAX_ITERATIONS", "7")
        settings = Settings(_env_file=None)
        assert settings.api_base_url == "http://local:1234/v1"
        assert settings.model == "qwen"
        assert settings.max_iterations == 7

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.tool_call_format == "xml"
        assert settings.compaction_split_ratio == 0.75
        assert settings.summary_max_chars == 1000

    def test_split_ratio_bounds(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, compaction_split_ratio=1.0)

    def test_max_iterations_bounds(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_iterations=0)


class TestWiring:
    @pytest.mark.asyncio
    async def test_create_components(self, settings, tmp_path):
        settings.workspace_dir = str(tmp_path)
        components = await create_components(settings, httpx.MockTransport(lambda r: httpx.Response(200)))
        try:
            assert components["registry"].names() == ["read", "glob", "grep", "tree", "cli"]
            system = components["history"].get_history()[0]
            assert system.role == "system"
            assert "TOOL: read" in system.content
        finally:
            await shutdown_components(components)

    @pytest.mark.asyncio
    async def test_app_end_to_end(self, settings, registry):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=_sse_answer("### THINKING\nok\n\n### RESPONSE\nHi there."))

        app = build_app(settings, http_transport=httpx.MockTransport(handler), registry=registry)

        async with app.router.lifespan_context(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                resp = await client.post("/chat", json={"message": "hello"})
                health = await client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["response"] == "Hi there."
        assert health.json()["tools"] == 4
        assert requests[0]["messages"][0]["role"] == "system"
        assert requests[0]["messages"][-1] == {"role": "user", "content": "hello"}
