"""Receipt file validation and the heuristic security scan."""

import hashlib
import re

import pytest

from conftest import jpeg_bytes, pdf_bytes, png_bytes
from services.file_validation import (
    MAX_RECEIPT_FILE_SIZE,
    calculate_file_hash,
    detect_mime_type,
    generate_secure_filename,
    normalize_mime_type,
    scan_file_for_virus,
    validate_receipt_file,
)


class TestDetectMimeType:
    def test_known_signatures(self):
        assert detect_mime_type(jpeg_bytes()) == "image/jpeg"
        assert detect_mime_type(png_bytes()) == "image/png"
        assert detect_mime_type(pdf_bytes()) == "application/pdf"

    def test_unknown_content(self):
        assert detect_mime_type(b"GIF89a" + b"\x00" * 200) is None
        assert detect_mime_type(b"") is None

    def test_normalize_aliases(self):
        assert normalize_mime_type("image/jpg") == "image/jpeg"
        assert normalize_mime_type("IMAGE/PJPEG") == "image/jpeg"
        assert normalize_mime_type("application/pdf; charset=binary") == "application/pdf"
        assert normalize_mime_type(None) == ""


class TestValidateReceiptFile:
    def test_valid_png(self):
        data = png_bytes(b"receipt-1")
        result = validate_receipt_file(data, "image/png")

        assert result.valid is True
        assert result.mime_type == "image/png"
        assert result.extension == "png"
        assert result.size == len(data)
        assert result.hash == hashlib.sha256(data).hexdigest()

    def test_extension_and_declared_type_do_not_override_content(self):
        result = validate_receipt_file(b"MZ" + b"\x90" * 300, "image/png")
        assert result.valid is False
        assert result.error == "Invalid file type. Only JPEG, PNG, and PDF files are allowed."

    def test_empty_file(self):
        result = validate_receipt_file(b"", "image/png")
        assert result.valid is False
        assert result.error == "File is empty"

    def test_too_large(self):
        data = png_bytes(size=MAX_RECEIPT_FILE_SIZE + 1)
        result = validate_receipt_file(data, "image/png")

        assert result.valid is False
        assert result.error == "File size exceeds maximum limit of 10MB"

    def test_exactly_at_limit_is_accepted(self):
        data = pdf_bytes(size=MAX_RECEIPT_FILE_SIZE)
        assert validate_receipt_file(data, "application/pdf").valid is True

    def test_declared_type_mismatch(self):
        result = validate_receipt_file(png_bytes(), "application/pdf")
        assert result.valid is False
        assert result.error == "File content does not match the declared file type."

    @pytest.mark.parametrize("declared", [None, "", "application/octet-stream"])
    def test_uninformative_declared_type_is_accepted(self, declared):
        result = validate_receipt_file(jpeg_bytes(), declared)
        assert result.valid is True
        assert result.mime_type == "image/jpeg"

    def test_jpg_alias_matches_jpeg(self):
        assert validate_receipt_file(jpeg_bytes(), "image/jpg").valid is True


class TestSecurityScan:
    def test_clean_files_pass(self):
        assert scan_file_for_virus(png_bytes()) is True
        assert scan_file_for_virus(jpeg_bytes()) is True
        assert scan_file_for_virus(pdf_bytes()) is True

    def test_tiny_files_are_suspicious(self):
        assert scan_file_for_virus(png_bytes(size=50)) is False

    @pytest.mark.parametrize(
        "header",
        [b"MZ", b"\x7fELF", b"\xfe\xed\xfa\xcf", b"\xca\xfe\xba\xbe", b"#!/bin/sh\n"],
    )
    def test_executable_headers_rejected(self, header):
        assert scan_file_for_virus(header + b"\x00" * 300) is False

    def test_eicar_rejected(self):
        data = png_bytes(b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*")
        assert scan_file_for_virus(data) is False

    @pytest.mark.parametrize(
        "marker",
        [b"<< /JavaScript (app.alert(1)) >>", b"<< /JS (x) >>", b"<< /Launch /F (cmd.exe) >>", b"/EmbeddedFile "],
    )
    def test_pdf_active_content_rejected(self, marker):
        assert scan_file_for_virus(pdf_bytes(extra=marker)) is False

    def test_pdf_name_that_only_starts_with_js_is_allowed(self):
        assert scan_file_for_virus(pdf_bytes(extra=b"<< /JSONData 1 >>")) is True


def test_file_hash_is_sha256_hex():
    assert calculate_file_hash(b"abc") == hashlib.sha256(b"abc").hexdigest()
    assert len(calculate_file_hash(b"abc")) == 64


def test_secure_filename_ignores_client_names():
    name = generate_secure_filename("application/pdf")
    assert re.fullmatch(r"receipt-\d{13}-[0-9a-f]{16}\.pdf", name)
    assert generate_secure_filename("image/png") != generate_secure_filename("image/png")
