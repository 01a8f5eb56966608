import base64
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

# Only the opening pages are sent to the model
MAX_PAGES = 10
THUMBNAIL_SCALE = 0.5


class ExtractionError(Exception):
    """Raised when a file cannot be read as a PDF."""


@dataclass
class ExtractedDocument:
    text: str
    thumbnail: Optional[str] = None  # data:image/png;base64,...


# clean lines by stripping whitespace and removing empties
def _clean_lines(lines: List[str]) -> List[str]:

    cleaned = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        cleaned.append(line)
    return cleaned


# Page text flattened onto one line
def _page_text(page) -> str:
    raw_text = page.get_text("text")
    return " ".join(_clean_lines(raw_text.split("\n")))


# Render page 1 as a small PNG data URL
def _render_thumbnail(page, scale: float) -> str:
    pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale))
    encoded = base64.b64encode(pix.tobytes("png")).decode("ascii")
    return f"data:image/png;base64,{encoded}"


# Main PDF extraction: text of the first pages + preview of page 1
def extract_document(
    data: bytes,
    max_pages: int = MAX_PAGES,
    thumbnail_scale: float = THUMBNAIL_SCALE,
) -> ExtractedDocument:

    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        logger.error("Error extracting PDF data: %s", exc)
        raise ExtractionError("Failed to process PDF file.") from exc

    if doc.page_count == 0:
        doc.close()
        raise ExtractionError("Failed to process PDF file: no pages found.")

    try:
        page_count = min(doc.page_count, max_pages)
        pages = [_page_text(doc.load_page(i)) for i in range(page_count)]
        thumbnail = _render_thumbnail(doc.load_page(0), thumbnail_scale)
    except Exception as exc:
        logger.error("Error extracting PDF data: %s", exc)
        raise ExtractionError("Failed to process PDF file.") from exc
    finally:
        doc.close()

    text = "\n".join(pages).strip()
    logger.debug("Extracted %d chars from %d page(s)", len(text), page_count)
    return ExtractedDocument(text=text, thumbnail=thumbnail)


# Convenience wrapper for files on disk
def extract_document_from_path(pdf_path: str, **kwargs) -> ExtractedDocument:

    if not os.path.exists(pdf_path):
        raise FileNotFoundError(f"PDF not found: {pdf_path}")

    with open(pdf_path, "rb") as f:
        return extract_document(f.read(), **kwargs)
