"""File type detection from magic bytes."""

from typing import Optional

from config import runtime_config
from errors import UnsupportedFormatError

PDF_MAGIC = b"%PDF-"
ZIP_MAGIC = b"PK\x03\x04"

SUPPORTED_FORMATS = ("pdf", "docx")


def detect_file_type(data: bytes, min_docx_size: Optional[int] = None) -> str:
    """
    Infer the document format from its leading bytes.

    A ZIP local-file header alone is not enough for DOCX: archives smaller
    than ``min_docx_size`` cannot hold the mandatory OOXML parts and are
    rejected.

    Returns:
        "pdf" or "docx"

    Raises:
        UnsupportedFormatError: anything else, including inputs shorter than 8 bytes
    """
    if min_docx_size is None:
        min_docx_size = runtime_config.docx_min_size

    if not data or len(data) < 8:
        raise UnsupportedFormatError(
            "Document too small to identify",
            details=f"{len(data or b'')} bytes",
        )

    if data.startswith(PDF_MAGIC):
        return "pdf"

    if data.startswith(ZIP_MAGIC):
        if len(data) > min_docx_size:
            return "docx"
        raise UnsupportedFormatError(
            "ZIP archive too small to be a DOCX document",
            details=f"{len(data)} bytes (minimum {min_docx_size})",
        )

    raise UnsupportedFormatError(
        "Unsupported document format",
        details=f"Supported: {', '.join(SUPPORTED_FORMATS)}",
        signature=data[:8].hex(),
    )
