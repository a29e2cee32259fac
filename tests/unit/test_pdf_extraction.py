"""Tests for PDF text extraction."""

import pytest

from services.errors import CorruptPdfError, EmptyPdfError, EncryptedPdfError, PdfProcessingError
from services.pdf_extraction import PdfExtractor, find_signature_offset


async def test_extracts_text(pdf_bytes):
    text = await PdfExtractor().extract_text(pdf_bytes)
    assert "Quarterly budget review" in text
    assert text == text.strip()


async def test_extracts_text_from_wrapped_pdf(pdf_bytes):
    wrapped = b"HANDYSOFT-APPROVAL-HEADER\x00\x01" * 20 + pdf_bytes
    extractor = PdfExtractor()

    assert extractor.normalize(wrapped) == pdf_bytes
    assert "Quarterly budget review" in await extractor.extract_text(wrapped)


def test_signature_search_is_limited_to_first_10kb(pdf_bytes):
    assert find_signature_offset(b"x" * 500 + pdf_bytes) == 500
    assert find_signature_offset(b"x" * 20000 + pdf_bytes) == -1


async def test_rejects_non_pdf_bytes(corrupt_pdf_bytes):
    with pytest.raises(CorruptPdfError):
        await PdfExtractor().extract_text(corrupt_pdf_bytes)


async def test_rejects_tiny_input():
    with pytest.raises(CorruptPdfError):
        await PdfExtractor().extract_text(b"%PDF-1.7")


async def test_garbage_after_signature_is_a_processing_error():
    with pytest.raises(PdfProcessingError):
        await PdfExtractor().extract_text(b"%PDF-1.7\n" + b"\x00garbage" * 50)


async def test_encrypted_pdf(encrypted_pdf_bytes):
    with pytest.raises(EncryptedPdfError) as excinfo:
        await PdfExtractor().extract_text(encrypted_pdf_bytes)
    assert excinfo.value.status_code == 422


async def test_pdf_without_text(empty_pdf_bytes):
    with pytest.raises(EmptyPdfError):
        await PdfExtractor().extract_text(empty_pdf_bytes)
