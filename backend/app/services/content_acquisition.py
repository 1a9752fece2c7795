"""
Content acquisition for the legal ingestor.

Turns an ingestion request into one text blob:
  - stored file  → download from the legal-training bucket, sniff %PDF-, extract or decode
  - source URL   → allow-list check, fetch with the bot User-Agent, PDF or raw text/HTML
  - raw content  → passed through

Any ``source_url`` on the request is checked against the approved domains
before anything else happens, so a non-approved domain is never contacted.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
import pdfplumber
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import normalize_hostname, settings
from app.db.schemas import IngestionRequest
from app.services.s3_service import s3_service
from app.utils.exceptions import ComplianceError, ContentAcquisitionError

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "text/html,application/pdf,text/plain"
PDF_MAGIC = b"%PDF-"


@dataclass
class AcquiredContent:
    text: str
    origin: str       # "file" | "url" | "content"
    reference: str    # file path, URL, or "manual"


# ============================================================================
# Compliance
# ============================================================================

def is_allowed_host(host: str) -> bool:
    host = normalize_hostname(host)
    if not host:
        return False
    return any(host == domain or host.endswith(f".{domain}") for domain in settings.allowed_source_domains_list)


def ensure_allowed_url(url: str) -> str:
    """Return the URL's hostname, or raise ComplianceError if it is not on the approved list."""
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ComplianceError(f"Invalid source URL: {url!r}")
    host = parsed.hostname.lower()
    if not is_allowed_host(host):
        raise ComplianceError(f"Domain {host} not in approved sources list")
    return host


# ============================================================================
# PDF handling
# ============================================================================

def is_pdf(data: bytes) -> bool:
    return data[:len(PDF_MAGIC)] == PDF_MAGIC


def extract_pdf_text(pdf_bytes: bytes) -> str:
    """Page-by-page text with ``--- Page N ---`` separators."""
    parts: list[str] = []
    try:
        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            for i, page in enumerate(pdf.pages, start=1):
                page_text = page.extract_text() or ""
                parts.append(f"\n--- Page {i} ---\n{page_text}\n")
    except Exception as exc:
        raise ContentAcquisitionError(f"Failed to extract PDF text: {exc}") from exc

    text = "".join(parts).strip()
    logger.info("Extracted %d characters from %d PDF pages", len(text), len(parts))
    return text


# ============================================================================
# Sources
# ============================================================================

async def _check_request_host(request: httpx.Request) -> None:
    # Runs for the initial request and every redirect hop
    ensure_allowed_url(str(request.url))


async def fetch_url_content(url: str) -> str:
    ensure_allowed_url(url)
    logger.info("Fetching content from %s", url)

    headers = {"User-Agent": settings.INGEST_USER_AGENT, "Accept": ACCEPT_HEADER}
    try:
        async with httpx.AsyncClient(
            timeout=settings.INGEST_FETCH_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers=headers,
            event_hooks={"request": [_check_request_host]},
        ) as client:
            resp = await client.get(url)
            resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise ContentAcquisitionError(f"Failed to fetch content: {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise ContentAcquisitionError(f"Failed to fetch content: {exc}") from exc

    content_type = resp.headers.get("content-type", "")
    if "application/pdf" in content_type or is_pdf(resp.content):
        return await asyncio.to_thread(extract_pdf_text, resp.content)
    return resp.text


async def load_stored_file(file_path: str) -> str:
    logger.info("Processing stored file %s", file_path)
    try:
        data = await asyncio.to_thread(s3_service.download_bytes, file_path)
    except (ClientError, BotoCoreError) as exc:
        raise ContentAcquisitionError(f"Failed to download file: {exc}") from exc

    # Sniff the bytes, not the extension
    if is_pdf(data):
        return await asyncio.to_thread(extract_pdf_text, data)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ContentAcquisitionError(f"File {file_path} is not UTF-8 text or PDF") from exc


async def acquire_content(request: IngestionRequest) -> AcquiredContent:
    if request.source_url:
        ensure_allowed_url(request.source_url)

    if request.file_path:
        acquired = AcquiredContent(await load_stored_file(request.file_path), "file", request.file_path)
    elif request.source_url and not request.content:
        acquired = AcquiredContent(await fetch_url_content(request.source_url), "url", request.source_url)
    else:
        acquired = AcquiredContent(request.content or "", "content", "manual")

    if not acquired.text.strip():
        raise ContentAcquisitionError("No content to ingest")
    logger.info("Acquired %d characters from %s", len(acquired.text), acquired.origin)
    return acquired
