"""Tests for the Gotenberg render client."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.core.exceptions import RenderError, RenderUnavailableError
from app.services.pdf_render import GotenbergClient, RenderOptions


def _client() -> GotenbergClient:
    return GotenbergClient(base_url="http://gotenberg.test", timeout=5, health_timeout=1, locale="es-MX")


def _http_client(response=None, error: Exception | None = None) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    if error is not None:
        mock_client.post = AsyncMock(side_effect=error)
    else:
        mock_client.post = AsyncMock(return_value=response)
    return mock_client


def _response(status_code: int = 200, content: bytes = b"%PDF-1.7 body") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    response.text = content.decode(errors="replace")
    return response


# ─── Options & HTML ──────────────────────────────────────────────────────────

class TestRenderOptions:
    def test_form_fields(self):
        fields = RenderOptions(wait_delay_seconds=2, title="Contrato", author="Ana").form_fields()
        assert fields["paperWidth"] == "8.27"
        assert fields["printBackground"] == "true"
        assert fields["landscape"] == "false"
        assert fields["waitDelay"] == "2s"
        assert json.loads(fields["metadata"]) == {"Title": "Contrato", "Author": "Ana"}

    def test_no_delay_no_metadata(self):
        fields = RenderOptions().form_fields()
        assert "waitDelay" not in fields
        assert "metadata" not in fields


class TestWrapHtml:
    def test_wraps_fragment(self):
        html = _client().wrap_html("<p>Hola</p>", title="Propuesta")
        assert html.lstrip().startswith("<!DOCTYPE html>")
        assert '<html lang="es">' in html
        assert "<p>Hola</p>" in html
        assert "<title>Propuesta</title>" in html

    def test_full_document_untouched(self):
        page = "<html><body>x</body></html>"
        assert _client().wrap_html(page) == page


# ─── Rendering ───────────────────────────────────────────────────────────────

class TestRenderPdf:
    @pytest.mark.asyncio
    async def test_unhealthy_backend_fails_fast(self):
        client = _client()
        with patch.object(client, "health_check", AsyncMock(return_value=False)):
            with patch("app.services.pdf_render.httpx.AsyncClient") as mock_client_cls:
                with pytest.raises(RenderUnavailableError) as exc_info:
                    await client.render_pdf("<p>x</p>")
                mock_client_cls.assert_not_called()
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_success(self):
        client = _client()
        http = _http_client(_response())
        with patch.object(client, "health_check", AsyncMock(return_value=True)):
            with patch("app.services.pdf_render.httpx.AsyncClient", return_value=http):
                pdf = await client.render_business_document("<p>x</p>", title="Propuesta", author="Ana")

        assert pdf == b"%PDF-1.7 body"
        args, kwargs = http.post.call_args
        assert args[0] == "http://gotenberg.test/forms/chromium/convert/html"
        names = [f[1][0] for f in kwargs["files"]]
        assert names == ["index.html", "footer.html"]
        assert kwargs["data"]["waitDelay"] == "1s"

    @pytest.mark.asyncio
    async def test_contract_preset(self):
        client = _client()
        http = _http_client(_response())
        with patch.object(client, "health_check", AsyncMock(return_value=True)):
            with patch("app.services.pdf_render.httpx.AsyncClient", return_value=http):
                await client.render_contract_document("<p>x</p>", title="Contrato", client_name="Acme")

        data = http.post.call_args.kwargs["data"]
        assert data["paperWidth"] == "8.5"
        assert data["scale"] == "0.95"
        assert json.loads(data["metadata"])["Subject"] == "Contrato - Acme"

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self):
        client = _client()
        http = _http_client(_response(400, b"bad html"))
        with patch.object(client, "health_check", AsyncMock(return_value=True)):
            with patch("app.services.pdf_render.httpx.AsyncClient", return_value=http):
                with pytest.raises(RenderError) as exc_info:
                    await client.render_pdf("<p>x</p>")
        assert exc_info.value.status_code == 400
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        client = _client()
        http = _http_client(_response(503, b"busy"))
        with patch.object(client, "health_check", AsyncMock(return_value=True)):
            with patch("app.services.pdf_render.httpx.AsyncClient", return_value=http):
                with pytest.raises(RenderError) as exc_info:
                    await client.render_pdf("<p>x</p>")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        client = _client()
        http = _http_client(error=httpx.ReadTimeout("slow"))
        with patch.object(client, "health_check", AsyncMock(return_value=True)):
            with patch("app.services.pdf_render.httpx.AsyncClient", return_value=http):
                with pytest.raises(RenderError) as exc_info:
                    await client.render_pdf("<p>x</p>")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_non_pdf_payload(self):
        client = _client()
        http = _http_client(_response(200, b"<html>error</html>"))
        with patch.object(client, "health_check", AsyncMock(return_value=True)):
            with patch("app.services.pdf_render.httpx.AsyncClient", return_value=http):
                with pytest.raises(RenderError, match="non-PDF"):
                    await client.render_pdf("<p>x</p>")
