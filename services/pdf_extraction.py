"""
PDF text extraction with PyMuPDF.

Some document systems wrap the real PDF in a proprietary envelope, so the
``%PDF-`` signature is searched for within the first 10 KB and anything before
it is dropped.
"""

import asyncio
import logging
from typing import Union

import fitz  # PyMuPDF

from services.errors import CorruptPdfError, EmptyPdfError, EncryptedPdfError, PdfProcessingError

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF-"
SIGNATURE_SEARCH_BYTES = 10_000
MIN_PDF_BYTES = 100

BytesLike = Union[bytes, bytearray, memoryview]


def find_signature_offset(data: bytes) -> int:
    """Offset of the PDF signature within the search window, or -1."""
    return data.find(PDF_SIGNATURE, 0, SIGNATURE_SEARCH_BYTES + len(PDF_SIGNATURE))


class PdfExtractor:
    """Turns uploaded PDF bytes into plain text."""

    def validate_bytes(self, data: BytesLike) -> None:
        """Cheap structural checks before opening the document."""
        data = bytes(data)
        if len(data) < MIN_PDF_BYTES:
            raise CorruptPdfError()
        if find_signature_offset(data) == -1:
            raise CorruptPdfError()

    def normalize(self, data: BytesLike) -> bytes:
        """Strip any wrapper preceding the PDF signature."""
        data = bytes(data)
        if data.startswith(PDF_SIGNATURE):
            return data
        offset = find_signature_offset(data)
        if offset == -1:
            raise CorruptPdfError()
        logger.debug(f"Found embedded PDF at offset {offset}")
        return data[offset:]

    async def extract_text(self, data: BytesLike) -> str:
        """Extract the text of every page, joined and stripped."""
        self.validate_bytes(data)
        pdf_bytes = self.normalize(data)
        return await asyncio.to_thread(self._extract_sync, pdf_bytes)

    def _extract_sync(self, pdf_bytes: bytes) -> str:
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            logger.warning(f"PyMuPDF could not open document: {e}")
            raise self._classify(e) from e

        try:
            if doc.needs_pass:
                raise EncryptedPdfError()
            pages = [page.get_text() for page in doc]
        except (RuntimeError, ValueError) as e:
            logger.warning(f"PyMuPDF failed while reading pages: {e}")
            raise self._classify(e) from e
        finally:
            doc.close()

        text = "\n".join(pages).strip()
        if not text:
            raise EmptyPdfError()
        return text

    @staticmethod
    def _classify(exc: Exception) -> PdfProcessingError:
        message = str(exc).lower()
        if "encrypt" in message or "password" in message:
            return EncryptedPdfError()
        if any(word in message for word in ("corrupt", "invalid", "broken", "cannot open", "failed to open", "syntax")):
            return CorruptPdfError()
        return PdfProcessingError(f"Failed to extract text from PDF: {exc}")


_extractor = None


def get_pdf_extractor() -> PdfExtractor:
    global _extractor
    if _extractor is None:
        _extractor = PdfExtractor()
    return _extractor
