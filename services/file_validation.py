"""
Receipt file validation.

The content type is decided by the file's leading bytes, never by the
extension or the client's Content-Type. Only JPEG, PNG and PDF are
accepted, up to MAX_RECEIPT_FILE_SIZE.

scan_file_for_virus is a heuristic pre-filter, not an antivirus engine:
it rejects executables and a few well-known hostile markers.
"""

import hashlib
import secrets
import time
from dataclasses import dataclass
from typing import Optional

MAX_RECEIPT_FILE_SIZE = 10 * 1024 * 1024  # 10MB
MIN_SCANNABLE_SIZE = 100

ALLOWED_RECEIPT_MIME_TYPES = ("image/jpeg", "image/png", "application/pdf")

MIME_TO_EXTENSION = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "application/pdf": "pdf",
}

# Declared types that tell us nothing; detection alone decides
_UNINFORMATIVE_MIME_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

_JPEG_MAGIC = b"\xFF\xD8\xFF"
_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
_PDF_MAGIC = b"%PDF-"

_EXECUTABLE_SIGNATURES = (
    b"MZ",                  # DOS/Windows PE
    b"\x7FELF",             # Linux ELF
    b"\xFE\xED\xFA\xCE",    # Mach-O 32
    b"\xFE\xED\xFA\xCF",    # Mach-O 64
    b"\xCE\xFA\xED\xFE",
    b"\xCF\xFA\xED\xFE",
    b"\xCA\xFE\xBA\xBE",    # Mach-O fat / Java class
    b"#!",                  # script with interpreter line
)

_EICAR_MARKER = b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE"

# Active content a receipt PDF has no business carrying
_PDF_ACTIVE_MARKERS = (b"/JavaScript", b"/JS", b"/Launch", b"/EmbeddedFile")


@dataclass
class FileValidationResult:
    valid: bool
    error: Optional[str] = None
    mime_type: Optional[str] = None
    extension: Optional[str] = None
    size: int = 0
    hash: Optional[str] = None


def detect_mime_type(file_bytes: bytes) -> Optional[str]:
    """Identify JPEG, PNG or PDF from magic bytes; None for anything else."""
    if file_bytes.startswith(_JPEG_MAGIC):
        return "image/jpeg"
    if file_bytes.startswith(_PNG_MAGIC):
        return "image/png"
    if file_bytes.startswith(_PDF_MAGIC):
        return "application/pdf"
    return None


def normalize_mime_type(mime_type: Optional[str]) -> str:
    normalized = (mime_type or "").split(";")[0].strip().lower()
    if normalized in ("image/jpg", "image/pjpeg"):
        return "image/jpeg"
    return normalized


def calculate_file_hash(file_bytes: bytes) -> str:
    """SHA-256 hex digest of the raw bytes."""
    return hashlib.sha256(file_bytes).hexdigest()


def validate_receipt_file(
    file_bytes: bytes,
    declared_mime_type: Optional[str] = None,
    max_size: int = MAX_RECEIPT_FILE_SIZE,
) -> FileValidationResult:
    """
    Validate an uploaded receipt.

    Checks, in order: size ceiling, non-empty, type detectable as JPEG,
    PNG or PDF, declared type consistent with the detected one. A declared type
    that carries no information (missing, application/octet-stream) is
    not held against the file.

    Returns:
        FileValidationResult; on success it carries the detected MIME type,
        extension, size and SHA-256 hash.
    """
    size = len(file_bytes)

    if size > max_size:
        return FileValidationResult(
            valid=False,
            error=f"File size exceeds maximum limit of {max_size // (1024 * 1024)}MB",
            size=size,
        )

    if size == 0:
        return FileValidationResult(valid=False, error="File is empty", size=0)

    detected = detect_mime_type(file_bytes)
    if detected is None:
        return FileValidationResult(
            valid=False,
            error="Invalid file type. Only JPEG, PNG, and PDF files are allowed.",
            size=size,
        )

    declared = normalize_mime_type(declared_mime_type)
    if declared not in _UNINFORMATIVE_MIME_TYPES and declared != detected:
        return FileValidationResult(
            valid=False,
            error="File content does not match the declared file type.",
            mime_type=detected,
            size=size,
        )

    return FileValidationResult(
        valid=True,
        mime_type=detected,
        extension=MIME_TO_EXTENSION[detected],
        size=size,
        hash=calculate_file_hash(file_bytes),
    )


def scan_file_for_virus(file_bytes: bytes, max_size: int = MAX_RECEIPT_FILE_SIZE) -> bool:
    """
    Heuristic malware screen. Returns True when the file looks clean.

    Files under MIN_SCANNABLE_SIZE bytes are treated as suspicious, as are
    oversized files, executable headers, the EICAR test string and PDFs
    with script or launch actions.
    """
    size = len(file_bytes)
    if size < MIN_SCANNABLE_SIZE or size > max_size:
        return False

    head = file_bytes[:8]
    if any(head.startswith(sig) for sig in _EXECUTABLE_SIGNATURES):
        return False

    if _EICAR_MARKER in file_bytes:
        return False

    if file_bytes.startswith(_PDF_MAGIC):
        for marker in _PDF_ACTIVE_MARKERS:
            idx = file_bytes.find(marker)
            # "/JS" also prefixes "/JSON"-like names; require a delimiter after it
            while idx != -1:
                end = idx + len(marker)
                if end >= size or not chr(file_bytes[end]).isalnum():
                    return False
                idx = file_bytes.find(marker, end)

    return True


def generate_secure_filename(mime_type: str) -> str:
    """receipt-{epoch_ms}-{16 hex}.{ext}; never derived from client input."""
    extension = MIME_TO_EXTENSION.get(mime_type, "bin")
    return f"receipt-{int(time.time() * 1000)}-{secrets.token_hex(8)}.{extension}"
