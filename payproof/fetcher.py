"""Proof image retrieval from object storage or local disk."""

import io
import logging
from pathlib import Path
from urllib.parse import urlparse, unquote

import fitz  # PyMuPDF
import httpx
import magic
from PIL import Image, UnidentifiedImageError

from .config import Config

logger = logging.getLogger(__name__)

SUPPORTED_MIMES = {
    'application/pdf',
    'image/png',
    'image/jpeg',
    'image/jpg',
    'image/webp',
}


class ProofFetchError(Exception):
    """The proof image could not be retrieved or decoded. Retry by resubmitting."""

    retryable = True


def _read_remote(url: str, timeout: float) -> bytes:
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise ProofFetchError(f"Failed to fetch {url}: {e}") from e
    return response.content


def _read_local(location: str) -> bytes:
    parsed = urlparse(location)
    path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(location)
    try:
        return path.read_bytes()
    except OSError as e:
        raise ProofFetchError(f"Failed to read {path}: {e}") from e


def render_pdf_first_page(data: bytes) -> bytes:
    """Convert the first PDF page to PNG bytes."""
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.page_count == 0:
                raise ProofFetchError("PDF has no pages")
            pix = doc[0].get_pixmap(matrix=fitz.Matrix(2, 2))  # 2x scale for OCR
            return pix.tobytes("png")
    except (RuntimeError, ValueError) as e:
        raise ProofFetchError(f"Could not render PDF: {e}") from e


def fetch_proof(file_url: str, file_type: str, config: Config) -> bytes:
    """Return decodable image bytes for a proof, rendering PDFs to PNG.

    Raises ProofFetchError when the proof cannot be retrieved or decoded.
    """
    scheme = urlparse(file_url).scheme.lower()
    if scheme in ("http", "https"):
        data = _read_remote(file_url, config.ocr.fetch_timeout_seconds)
    else:
        data = _read_local(file_url)

    if not data:
        raise ProofFetchError(f"Empty file at {file_url}")

    size_mb = len(data) / (1024 * 1024)
    if size_mb > config.ocr.max_file_size_mb:
        raise ProofFetchError(
            f"File too large ({size_mb:.1f} MB > {config.ocr.max_file_size_mb} MB)"
        )

    sniffed = magic.from_buffer(data[:4096], mime=True)
    if sniffed != file_type:
        logger.info(f"Declared type {file_type} differs from detected {sniffed} for {file_url}")
    if sniffed not in SUPPORTED_MIMES:
        logger.warning(f"Unexpected content type {sniffed} for {file_url}")

    if sniffed == "application/pdf" or (file_type == "application/pdf" and data[:5] == b"%PDF-"):
        data = render_pdf_first_page(data)

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        # verify() does not decode pixel data
        with Image.open(io.BytesIO(data)) as img:
            img.load()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ProofFetchError(f"File at {file_url} is not a readable image: {e}") from e

    logger.debug(f"Fetched {len(data)} bytes from {file_url}")
    return data
