"""Tests for novel_engine.llm — HttpLLM wire formats and error mapping."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from novel_engine.errors import BackendError, LLMError
from novel_engine.llm import HttpLLM


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


# ---------------------------------------------------------------------------
# KoboldCpp format
# ---------------------------------------------------------------------------

class TestHttpLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="http://localhost:5001/", max_tokens=120)

    async def test_happy_path(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": '{"dialogue": "Hi"}'}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("dialogue", "Say hi.")
        assert result == '{"dialogue": "Hi"}'

    async def test_request_shape(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("dialogue", "my prompt")
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["json"] == {"prompt": "my prompt", "max_length": 120}
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001", api_key="secret")
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("dialogue", "prompt")
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    async def test_connect_error(self, llm: HttpLLM) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(LLMError, match="Cannot connect"):
                await llm("dialogue", "prompt")

    async def test_timeout(self, llm: HttpLLM) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.TimeoutException("slow"))):
            with pytest.raises(LLMError, match="timed out"):
                await llm("dialogue", "prompt")

    @pytest.mark.parametrize("error", [
        httpx.ReadError("connection reset"),
        httpx.RemoteProtocolError("bad frame"),
        httpx.UnsupportedProtocol("ftp"),
    ])
    async def test_other_transport_errors(self, llm: HttpLLM, error: httpx.HTTPError) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=error)):
            with pytest.raises(LLMError, match="transport error"):
                await llm("dialogue", "prompt")

    async def test_http_status_error(self, llm: HttpLLM) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({}, status=503))):
            with pytest.raises(LLMError, match="HTTP 503"):
                await llm("dialogue", "prompt")

    async def test_non_json_body(self, llm: HttpLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("not json")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="non-JSON"):
                await llm("dialogue", "prompt")

    async def test_malformed_response(self, llm: HttpLLM) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({"choices": []}))):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm("dialogue", "prompt")

    def test_llm_error_is_a_backend_error(self) -> None:
        assert issubclass(LLMError, BackendError)


# ---------------------------------------------------------------------------
# OpenAI-compatible format
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM.from_connection({
            "provider_url": "http://localhost:8080",
            "provider_format": "openai",
            "model": "mistral-7b",
        })

    async def test_request_shape(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("dialogue", "prompt")
        assert result == "ok"
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/completions"
        sent = mock_post.call_args.kwargs["json"]
        assert sent["model"] == "mistral-7b"
        assert sent["max_tokens"] == 300

    async def test_kobold_body_rejected(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "kobold format accidentally"}]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm("dialogue", "prompt")
