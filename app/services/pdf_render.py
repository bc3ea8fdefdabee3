"""PDF rendering through Gotenberg: HTML (Jinja2 wrapper) -> PDF bytes.

Gotenberg converts HTML with headless Chromium::

    POST {GOTENBERG_URL}/forms/chromium/convert/html
    multipart: files=index.html [, footer.html], paperWidth, marginTop, ...
    -> application/pdf

Every render is preceded by ``GET /health`` so an unavailable backend fails
fast with ``RenderUnavailableError`` instead of waiting for the full timeout.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx
from jinja2 import Environment, FileSystemLoader

from app.config import get_settings
from app.core.exceptions import RenderError, RenderUnavailableError

settings = get_settings()
logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "pdf"

# Paper sizes in inches
A4 = (8.27, 11.7)
LETTER = (8.5, 11.0)


@dataclass
class RenderOptions:
    paper_width: float = A4[0]
    paper_height: float = A4[1]
    margin_top: float = 1.0
    margin_bottom: float = 1.0
    margin_left: float = 0.8
    margin_right: float = 0.8
    landscape: bool = False
    print_background: bool = True
    scale: float = 1.0
    wait_delay_seconds: float = 0.0
    title: str | None = None
    author: str | None = None
    subject: str | None = None
    footer_text: str | None = None

    def form_fields(self) -> dict[str, str]:
        fields = {
            "paperWidth": str(self.paper_width),
            "paperHeight": str(self.paper_height),
            "marginTop": str(self.margin_top),
            "marginBottom": str(self.margin_bottom),
            "marginLeft": str(self.margin_left),
            "marginRight": str(self.margin_right),
            "landscape": str(self.landscape).lower(),
            "printBackground": str(self.print_background).lower(),
            "scale": str(self.scale),
        }
        if self.wait_delay_seconds:
            fields["waitDelay"] = f"{self.wait_delay_seconds:g}s"
        metadata = {
            key: value
            for key, value in (("Title", self.title), ("Author", self.author), ("Subject", self.subject))
            if value
        }
        if metadata:
            fields["metadata"] = json.dumps(metadata, ensure_ascii=False)
        return fields


class GotenbergClient:
    """HTML -> PDF through a Gotenberg instance."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        health_timeout: float | None = None,
        locale: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.gotenberg_url).rstrip("/")
        self.timeout = timeout or settings.render_timeout_seconds
        self.health_timeout = health_timeout or settings.render_health_timeout_seconds
        self.lang = (locale or settings.document_locale).split("-")[0]
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=True,
        )

    def wrap_html(self, body: str, title: str = "") -> str:
        """Wrap template content into a full page with the base print CSS.

        Content that already is a complete HTML document is sent untouched.
        """
        if "<html" in body[:1000].lower():
            return body
        template = self.jinja_env.get_template("document.html")
        return template.render(body=body, title=title, lang=self.lang)

    def render_footer(self, text: str) -> str:
        return self.jinja_env.get_template("footer.html").render(text=text)

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.health_timeout) as client:
                response = await client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Gotenberg health check failed: %s", e)
            return False

    async def render_pdf(self, html: str, options: RenderOptions | None = None) -> bytes:
        """Convert ``html`` to PDF bytes.

        Raises:
            RenderUnavailableError: the health check failed.
            RenderError: the conversion failed (retryable unless rejected with 4xx).
        """
        options = options or RenderOptions()
        if not await self.health_check():
            raise RenderUnavailableError("PDF render service is unavailable")

        files = [("files", ("index.html", self.wrap_html(html, options.title or "").encode("utf-8"), "text/html"))]
        if options.footer_text:
            files.append(
                ("files", ("footer.html", self.render_footer(options.footer_text).encode("utf-8"), "text/html"))
            )

        url = f"{self.base_url}{settings.render_convert_path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, data=options.form_fields(), files=files)
        except httpx.TimeoutException as e:
            raise RenderError(f"PDF render timed out after {self.timeout}s", retryable=True) from e
        except httpx.HTTPError as e:
            raise RenderError(f"PDF render request failed: {e}", retryable=True) from e

        if response.status_code != 200:
            detail = response.text[:500]
            raise RenderError(
                f"PDF render failed with status {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        pdf = response.content
        if not pdf.startswith(b"%PDF"):
            raise RenderError("Render service returned a non-PDF payload", retryable=True)

        logger.info("Rendered PDF %r (%d bytes)", options.title, len(pdf))
        return pdf

    async def render_business_document(
        self,
        html: str,
        title: str,
        author: str | None = None,
    ) -> bytes:
        """A4, standard margins, 1s settle delay for fonts and images."""
        options = RenderOptions(
            paper_width=A4[0],
            paper_height=A4[1],
            margin_top=1.0,
            margin_bottom=1.0,
            margin_left=0.8,
            margin_right=0.8,
            wait_delay_seconds=1.0,
            title=title,
            author=author,
            subject=title,
            footer_text=title,
        )
        return await self.render_pdf(html, options)

    async def render_contract_document(
        self,
        html: str,
        title: str,
        client_name: str | None = None,
    ) -> bytes:
        """Letter size with wider margins, slightly scaled down to fit clauses."""
        options = RenderOptions(
            paper_width=LETTER[0],
            paper_height=LETTER[1],
            margin_top=1.2,
            margin_bottom=1.2,
            margin_left=1.0,
            margin_right=1.0,
            scale=0.95,
            wait_delay_seconds=2.0,
            title=title,
            author=client_name,
            subject=f"Contrato - {client_name}" if client_name else title,
            footer_text=title,
        )
        return await self.render_pdf(html, options)


# Singleton
pdf_render_service = GotenbergClient()
