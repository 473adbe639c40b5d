"""Tests for the OpenAI-compatible model invoker."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from psyche.core.exceptions import PermanentModelError, TransientModelError
from psyche.gateway.model_adapters import OpenAIModelInvoker, build_invoker
from psyche.schemas.llm_output import LlmPsychographicOutput

SCHEMA = LlmPsychographicOutput.model_json_schema()


@pytest.fixture
def invoker():
    return OpenAIModelInvoker(api_key="sk-test-fake-key", model="gpt-4o-mini")


def _response(status_code: int = 200, data=None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    if isinstance(data, Exception):
        resp.json.side_effect = data
    else:
        resp.json.return_value = data
    return resp


def _patched_client(mock_class, response=None, error=None) -> AsyncMock:
    mock_client = AsyncMock()
    if error is not None:
        mock_client.post.side_effect = error
    else:
        mock_client.post.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_class.return_value = mock_client
    return mock_client


OK_DATA = {
    "choices": [{"message": {"content": '{"status": "ok"}'}, "finish_reason": "stop"}],
    "model": "gpt-4o-mini-2024-07-18",
    "usage": {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150},
}


# ==========================================================================
# Test: successful calls
# ==========================================================================


class TestInvoke:
    @pytest.mark.asyncio
    async def test_success(self, invoker):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            _patched_client(MockClient, _response(200, OK_DATA))
            reply = await invoker.invoke("system", "user prompt", SCHEMA, timeout=5)

        assert reply.content == '{"status": "ok"}'
        assert reply.model_version == "gpt-4o-mini-2024-07-18"
        assert reply.total_tokens == 150
        MockClient.assert_called_once_with(timeout=5)

    @pytest.mark.asyncio
    async def test_payload_carries_schema_and_messages(self, invoker):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            mock_client = _patched_client(MockClient, _response(200, OK_DATA))
            await invoker.invoke("Be precise.", "Analyze this.", SCHEMA)

        call_kwargs = mock_client.post.call_args.kwargs
        payload = call_kwargs["json"]
        assert payload["model"] == "gpt-4o-mini"
        assert payload["messages"] == [
            {"role": "system", "content": "Be precise."},
            {"role": "user", "content": "Analyze this."},
        ]
        assert payload["response_format"]["type"] == "json_schema"
        assert payload["response_format"]["json_schema"]["name"] == "LlmPsychographicOutput"
        assert call_kwargs["headers"]["Authorization"] == "Bearer sk-test-fake-key"

    @pytest.mark.asyncio
    async def test_empty_system_prompt_omitted(self, invoker):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            mock_client = _patched_client(MockClient, _response(200, OK_DATA))
            await invoker.invoke("", "Analyze this.", SCHEMA)

        messages = mock_client.post.call_args.kwargs["json"]["messages"]
        assert [m["role"] for m in messages] == ["user"]

    def test_model_tag(self, invoker):
        assert invoker.model_tag == "llm@gpt-4o-mini"


# ==========================================================================
# Test: failure classification
# ==========================================================================


class TestFailureClassification:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    async def test_transient_status_codes(self, invoker, status_code):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            _patched_client(MockClient, _response(status_code, {}))
            with pytest.raises(TransientModelError) as exc_info:
                await invoker.invoke("s", "u", SCHEMA)
        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 404, 422])
    async def test_permanent_status_codes(self, invoker, status_code):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            _patched_client(MockClient, _response(status_code, {}, text='{"error": "bad"}'))
            with pytest.raises(PermanentModelError) as exc_info:
                await invoker.invoke("s", "u", SCHEMA)
        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, invoker):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            _patched_client(MockClient, error=httpx.ReadTimeout("timed out"))
            with pytest.raises(TransientModelError, match="Timeout"):
                await invoker.invoke("s", "u", SCHEMA, timeout=2)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, invoker):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            _patched_client(MockClient, error=httpx.ConnectError("refused"))
            with pytest.raises(TransientModelError, match="Transport"):
                await invoker.invoke("s", "u", SCHEMA)

    @pytest.mark.asyncio
    async def test_malformed_envelope_is_permanent(self, invoker):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            _patched_client(MockClient, _response(200, {"choices": []}))
            with pytest.raises(PermanentModelError, match="Malformed"):
                await invoker.invoke("s", "u", SCHEMA)

    @pytest.mark.asyncio
    async def test_non_json_body_is_permanent(self, invoker):
        with patch("psyche.gateway.model_adapters.httpx.AsyncClient") as MockClient:
            _patched_client(MockClient, _response(200, ValueError("not json")))
            with pytest.raises(PermanentModelError):
                await invoker.invoke("s", "u", SCHEMA)


def test_build_invoker_without_key_still_builds():
    invoker = build_invoker("", "gpt-4o-mini", "https://api.openai.com/v1/chat/completions")
    assert isinstance(invoker, OpenAIModelInvoker)
