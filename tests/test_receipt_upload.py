import pytest
from sqlmodel import select

from conftest import auth_headers, jpeg_bytes, pdf_bytes, png_bytes
from models import Receipt
from services.file_validation import MAX_RECEIPT_FILE_SIZE
from services.receipts import UPLOAD_SUCCESS_MESSAGE, parse_book_format, parse_purchase_date
from exceptions import ValidationError


async def upload(client, token, content=None, filename="receipt.png", content_type="image/png", **fields):
    data = {"retailer": "Amazon", **fields}
    files = None
    if content is not None:
        files = {"file": (filename, content, content_type)}
    return await client.post(
        "/receipts/upload",
        data=data,
        files=files,
        headers=auth_headers(token),
    )


class TestParsing:
    def test_purchase_date_formats(self):
        assert parse_purchase_date(None) is None
        assert parse_purchase_date("  ") is None
        assert parse_purchase_date("2025-03-01").day == 1
        parsed = parse_purchase_date("2025-03-01T12:00:00Z")
        assert parsed.tzinfo is None
        assert parsed.hour == 12

    def test_purchase_date_garbage(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_purchase_date("last tuesday")
        assert exc_info.value.error_code == "INVALID_DATE"

    def test_book_format(self):
        assert parse_book_format("Hardcover").value == "hardcover"
        assert parse_book_format("") is None
        with pytest.raises(ValidationError) as exc_info:
            parse_book_format("scroll")
        assert exc_info.value.error_code == "INVALID_FORMAT"


@pytest.mark.asyncio
async def test_upload_requires_session(client, session):
    response = await client.post(
        "/receipts/upload",
        data={"retailer": "Amazon"},
        files={"file": ("r.png", png_bytes(), "image/png")},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHORIZED"
    assert (await session.exec(select(Receipt))).all() == []


@pytest.mark.asyncio
async def test_successful_upload(client, session, storage, reader):
    user, token = reader

    response = await upload(
        client,
        token,
        png_bytes(b"first"),
        orderNumber=" 112-555 ",
        format="ebook",
        purchaseDate="2025-02-14",
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == UPLOAD_SUCCESS_MESSAGE
    assert body["data"]["status"] == "PENDING"
    assert body["data"]["publicUrl"] is False
    assert body["data"]["fileUrl"].startswith("/uploads/receipts/receipt-")
    assert body["data"]["fileUrl"].endswith(".png")

    receipt = (await session.exec(select(Receipt).where(Receipt.id == body["data"]["receiptId"]))).one()
    assert receipt.user_id == user.id
    assert receipt.order_number == "112-555"
    assert receipt.format == "ebook"
    assert receipt.mime_type == "image/png"
    assert receipt.file_size == 512
    assert len(receipt.file_hash) == 64

    stored_name = body["data"]["fileUrl"].rsplit("/", 1)[-1]
    assert (storage.storage_root / "receipts" / stored_name).exists()


@pytest.mark.asyncio
async def test_jpeg_and_pdf_are_accepted(client, reader):
    _, token = reader

    jpeg = await upload(client, token, jpeg_bytes(b"j"), filename="r.jpg", content_type="image/jpeg")
    pdf = await upload(client, token, pdf_bytes(b"p"), filename="r.pdf", content_type="application/pdf")

    assert jpeg.status_code == 201
    assert jpeg.json()["data"]["fileUrl"].endswith(".jpg")
    assert pdf.status_code == 201
    assert pdf.json()["data"]["fileUrl"].endswith(".pdf")


@pytest.mark.asyncio
async def test_octet_stream_declaration_is_not_held_against_the_file(client, reader):
    _, token = reader
    response = await upload(client, token, png_bytes(b"os"), content_type="application/octet-stream")
    assert response.status_code == 201


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content, fields, content_type, status, error",
    [
        (None, {}, "image/png", 400, "MISSING_FILE"),
        (png_bytes(b"a"), {"retailer": "   "}, "image/png", 400, "MISSING_RETAILER"),
        (png_bytes(b"b"), {"format": "scroll"}, "image/png", 400, "INVALID_FORMAT"),
        (png_bytes(b"c"), {"purchaseDate": "yesterday"}, "image/png", 400, "INVALID_DATE"),
        (b"just some text " * 40, {}, "text/plain", 400, "INVALID_FILE"),
        (png_bytes(b"d"), {}, "application/pdf", 400, "INVALID_FILE"),
        (pdf_bytes(b"e", extra=b"/OpenAction << /S /JavaScript >>\n"), {}, "application/pdf", 400,
         "SECURITY_SCAN_FAILED"),
        (png_bytes(b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!"), {},
         "image/png", 400, "SECURITY_SCAN_FAILED"),
    ],
)
async def test_upload_rejections(client, session, reader, content, fields, content_type, status, error):
    _, token = reader

    response = await upload(client, token, content, content_type=content_type, **fields)

    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["error"] == error

    assert (await session.exec(select(Receipt))).all() == []


@pytest.mark.asyncio
async def test_oversized_file_is_invalid(client, session, reader):
    _, token = reader

    response = await upload(client, token, png_bytes(size=MAX_RECEIPT_FILE_SIZE + 1))

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "INVALID_FILE"
    assert body["message"] == "File size exceeds maximum limit of 10MB"
    assert (await session.exec(select(Receipt))).all() == []


@pytest.mark.asyncio
async def test_same_user_duplicate(client, reader):
    _, token = reader
    content = png_bytes(b"dup")

    assert (await upload(client, token, content)).status_code == 201
    again = await upload(client, token, content)

    assert again.status_code == 409
    assert again.json() == {
        "success": False,
        "message": "You have already uploaded this receipt",
        "error": "DUPLICATE_RECEIPT_SAME_USER",
    }


@pytest.mark.asyncio
async def test_cross_user_duplicate(client, reader, other_reader):
    _, token = reader
    _, other_token = other_reader
    content = png_bytes(b"shared")

    assert (await upload(client, token, content)).status_code == 201
    response = await upload(client, other_token, content)

    assert response.status_code == 409
    assert response.json()["error"] == "DUPLICATE_RECEIPT"
    assert response.json()["message"] == "This receipt has already been used"


@pytest.mark.asyncio
async def test_sixth_upload_in_an_hour_is_rate_limited(client, reader, clock):
    _, token = reader

    for i in range(5):
        response = await upload(client, token, png_bytes(f"rl-{i}".encode()))
        assert response.status_code == 201

    limited = await upload(client, token, png_bytes(b"rl-5"))

    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "3600"
    assert limited.json()["message"] == "Too many uploads. Please try again in 60 minutes."

    clock.advance(3601)
    assert (await upload(client, token, png_bytes(b"rl-5"))).status_code == 201


@pytest.mark.asyncio
async def test_rotating_forwarded_for_prefix_shares_one_upload_limit(client, reader):
    _, token = reader

    async def upload_from(spoofed, content):
        return await client.post(
            "/receipts/upload",
            data={"retailer": "Amazon"},
            files={"file": ("receipt.png", content, "image/png")},
            headers={**auth_headers(token), "X-Forwarded-For": f"{spoofed}, 198.51.100.9"},
        )

    for i in range(5):
        response = await upload_from(f"1.1.1.{i}", png_bytes(f"xff-{i}".encode()))
        assert response.status_code == 201

    limited = await upload_from("1.1.1.250", png_bytes(b"xff-5"))

    assert limited.status_code == 429


@pytest.mark.asyncio
async def test_list_own_receipts(client, reader, other_reader):
    _, token = reader
    _, other_token = other_reader
    await upload(client, token, png_bytes(b"mine"))
    await upload(client, other_token, png_bytes(b"theirs"))

    response = await client.get("/receipts", headers=auth_headers(token))

    assert response.status_code == 200
    data = response.json()["data"]
    assert len(data) == 1
    assert data[0]["status"] == "PENDING"
    assert data[0]["retailer"] == "Amazon"


@pytest.mark.asyncio
async def test_unique_hash_constraint_settles_concurrent_uploads(
    client, session, storage, reader, other_reader, monkeypatch
):
    # Both later uploads slip past the pre-check, as a concurrent request would
    import services.receipts as receipts_service
    from services.duplicate_detector import DuplicateCheckResult

    real_check = receipts_service.check_duplicate_receipt
    blind_calls = []

    async def check_after_race(db_session, file_hash, user_id):
        if blind_calls:
            blind_calls.pop()
            return DuplicateCheckResult(is_duplicate=False)
        return await real_check(db_session, file_hash, user_id)

    monkeypatch.setattr(receipts_service, "check_duplicate_receipt", check_after_race)

    _, token = reader
    _, other_token = other_reader
    content = png_bytes(b"raced")

    assert (await upload(client, token, content)).status_code == 201

    blind_calls.append(True)
    same_user = await upload(client, token, content)
    blind_calls.append(True)
    other_user = await upload(client, other_token, content)

    assert same_user.status_code == 409
    assert same_user.json()["error"] == "DUPLICATE_RECEIPT_SAME_USER"
    assert other_user.status_code == 409
    assert other_user.json()["error"] == "DUPLICATE_RECEIPT"

    assert len((await session.exec(select(Receipt))).all()) == 1
    # The losing uploads' stored copies are cleaned up
    assert len(list((storage.storage_root / "receipts").iterdir())) == 1
