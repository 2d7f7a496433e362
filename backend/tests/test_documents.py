from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from io import BytesIO
from pathlib import Path

import pytest
from pypdf import PdfReader

from fims_web.civil_dates import region_zone
from fims_web.documents import ReportlabDocumentRenderer, merge_pdfs, render_statement_pdf, verification_url
from fims_web.entries import FuelEntry, FuelEntryDetail, Operator, TradeParty, Warehouse
from fims_web.uploads import LocalCertificateStorage

SARAJEVO = region_zone("Europe/Sarajevo")


def _detail(**overrides: object) -> FuelEntryDetail:
    values: dict[str, object] = {
        "entry_id": "fe_0123456789abcdef01234567",
        "registration_number": 12345,
        "entry_date": datetime(2026, 10, 14, 22, 0, tzinfo=timezone.utc),
        "warehouse_id": "wh-1",
        "product_name": "Eurodiesel BS & additives",
        "quantity": 12000,
        "operator_id": "op-7",
        "delivery_note_number": "DN-2210",
        "delivery_note_date": date(2026, 10, 14),
        "is_higher_quality": True,
        "improved_characteristics": ("cetane", "cold filter plugging point"),
        "laboratory_name": "Inspecto Lab",
        "test_report_number": "TR-88",
    }
    values.update(overrides)
    return FuelEntryDetail(
        entry=FuelEntry(**values),
        warehouse=Warehouse(warehouse_id="wh-1", name="Main depot", code="SA-01"),
        operator=Operator(operator_id="op-7", name="Amra K."),
        supplier=TradeParty(party_id="sup-1", name="Adriatic Oil"),
    )


def _page_count(content: bytes) -> int:
    return len(PdfReader(BytesIO(content)).pages)


def test_verification_url_strips_trailing_slash() -> None:
    assert verification_url("https://fims.example/", "fe_1") == "https://fims.example/verify/fe_1"


def test_render_statement_pdf_produces_single_page_document() -> None:
    content = render_statement_pdf(_detail(), public_base_url="https://fims.example", zone=SARAJEVO)

    assert content.startswith(b"%PDF")
    assert _page_count(content) == 1


def test_merge_pdfs_concatenates_pages() -> None:
    first = render_statement_pdf(_detail(), public_base_url="https://fims.example", zone=SARAJEVO)
    second = render_statement_pdf(
        _detail(registration_number=12346), public_base_url="https://fims.example", zone=SARAJEVO
    )

    assert _page_count(merge_pdfs([first, second])) == 2


def test_renderer_appends_pdf_certificate(tmp_path: Path) -> None:
    storage = LocalCertificateStorage(tmp_path)
    certificate = render_statement_pdf(_detail(), public_base_url="https://fims.example", zone=SARAJEVO)
    (tmp_path / "cert_12345_1.pdf").write_bytes(certificate)
    renderer = ReportlabDocumentRenderer(storage=storage, public_base_url="https://fims.example", zone=SARAJEVO)
    detail = _detail(certificate_path="/uploads/certificates/cert_12345_1.pdf")

    assert _page_count(renderer.render(detail, include_certificate=True)) == 2
    assert _page_count(renderer.render(detail, include_certificate=False)) == 1


def test_renderer_skips_image_certificates(tmp_path: Path) -> None:
    (tmp_path / "cert_12345_1.png").write_bytes(b"\x89PNG\r\n\x1a\n")
    renderer = ReportlabDocumentRenderer(
        storage=LocalCertificateStorage(tmp_path), public_base_url="https://fims.example", zone=SARAJEVO
    )
    detail = _detail(certificate_path="/uploads/certificates/cert_12345_1.png")

    assert _page_count(renderer.render(detail, include_certificate=True)) == 1


def test_renderer_falls_back_when_certificate_is_missing_or_corrupt(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    (tmp_path / "cert_12345_2.pdf").write_bytes(b"not a pdf at all")
    renderer = ReportlabDocumentRenderer(
        storage=LocalCertificateStorage(tmp_path), public_base_url="https://fims.example", zone=SARAJEVO
    )

    with caplog.at_level(logging.WARNING, logger="fims_web.documents"):
        missing = renderer.render(_detail(certificate_path="/uploads/certificates/gone.pdf"), include_certificate=True)
        corrupt = renderer.render(
            _detail(certificate_path="/uploads/certificates/cert_12345_2.pdf"), include_certificate=True
        )

    assert _page_count(missing) == 1
    assert _page_count(corrupt) == 1
    messages = [record.getMessage() for record in caplog.records]
    assert any("certificate file missing" in message for message in messages)
    assert any("certificate merge failed" in message for message in messages)
