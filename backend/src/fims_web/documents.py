from __future__ import annotations

import logging
from datetime import date, timezone
from io import BytesIO
from typing import Protocol
from zoneinfo import ZoneInfo

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .civil_dates import format_civil_date
from .entries import FuelEntryDetail
from .uploads import CertificateStorage

logger = logging.getLogger(__name__)

TEXT_COLOR = colors.HexColor("#111827")
GRID_COLOR = colors.HexColor("#d1d5db")


class DocumentRenderer(Protocol):
    def render(self, detail: FuelEntryDetail, *, include_certificate: bool) -> bytes: ...


def verification_url(public_base_url: str, entry_id: str) -> str:
    return f"{public_base_url.rstrip('/')}/verify/{entry_id}"


def _format_date(value: date | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%d.%m.%Y")


def _text(value: object | None) -> str:
    if value is None:
        return "-"
    normalized = str(value).strip()
    return normalized or "-"


def _qr_drawing(url: str, size: float) -> Drawing:
    widget = QrCodeWidget(url)
    x1, y1, x2, y2 = widget.getBounds()
    width = x2 - x1
    height = y2 - y1
    drawing = Drawing(size, size, transform=[size / width, 0, 0, size / height, 0, 0])
    drawing.add(widget)
    return drawing


def _key_value_table(rows: list[list[str]], *, label_width: float = 2.4 * inch) -> Table:
    table = Table(rows, colWidths=[label_width, 7.0 * inch - label_width], hAlign="LEFT")
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTNAME", (1, 0), (1, -1), "Helvetica"),
                ("FONTSIZE", (0, 0), (-1, -1), 9.5),
                ("TEXTCOLOR", (0, 0), (-1, -1), TEXT_COLOR),
                ("GRID", (0, 0), (-1, -1), 0.5, GRID_COLOR),
                ("BACKGROUND", (0, 0), (0, -1), colors.HexColor("#f3f4f6")),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("LEFTPADDING", (0, 0), (-1, -1), 4),
                ("RIGHTPADDING", (0, 0), (-1, -1), 4),
                ("TOPPADDING", (0, 0), (-1, -1), 4),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ]
        )
    )
    return table


def render_statement_pdf(
    detail: FuelEntryDetail,
    *,
    public_base_url: str,
    zone: ZoneInfo | timezone,
) -> bytes:
    entry = detail.entry
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=0.6 * inch,
        rightMargin=0.6 * inch,
        topMargin=0.6 * inch,
        bottomMargin=0.6 * inch,
        title=f"Statement of conformity {entry.registration_number}",
        author="FIMS",
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "statement_title",
        parent=styles["Heading1"],
        fontName="Helvetica-Bold",
        fontSize=16,
        leading=20,
        textColor=TEXT_COLOR,
    )
    heading_style = ParagraphStyle(
        "statement_heading",
        parent=styles["Heading3"],
        fontName="Helvetica-Bold",
        fontSize=11,
        leading=14,
        textColor=TEXT_COLOR,
        spaceBefore=8,
        spaceAfter=4,
    )
    body_style = ParagraphStyle(
        "statement_body",
        parent=styles["BodyText"],
        fontName="Helvetica",
        fontSize=9,
        leading=12,
        textColor=TEXT_COLOR,
    )

    warehouse = detail.warehouse
    verify_url = verification_url(public_base_url, entry.entry_id)

    story: list = []
    header = Table(
        [
            [
                [
                    Paragraph("STATEMENT OF CONFORMITY", title_style),
                    Paragraph(f"Registration number: <b>{entry.registration_number}</b>", body_style),
                    Paragraph(f"Entry date: {format_civil_date(entry.entry_date, zone)}", body_style),
                ],
                _qr_drawing(verify_url, 1.1 * inch),
            ]
        ],
        colWidths=[5.8 * inch, 1.2 * inch],
        hAlign="LEFT",
    )
    header.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))
    story.append(header)
    story.append(Spacer(1, 0.12 * inch))

    story.append(Paragraph("Delivery", heading_style))
    story.append(
        _key_value_table(
            [
                ["Warehouse", f"{warehouse.name} ({warehouse.code})" if warehouse else entry.warehouse_id],
                ["Product", entry.product_name],
                ["Quantity (L)", f"{entry.quantity:,}"],
                ["Delivery note", f"{_text(entry.delivery_note_number)} / {_format_date(entry.delivery_note_date)}"],
                [
                    "Customs declaration",
                    f"{_text(entry.customs_declaration_number)} / {_format_date(entry.customs_declaration_date)}",
                ],
                ["Supplier", detail.supplier.name if detail.supplier else "-"],
                ["Transporter", detail.transporter.name if detail.transporter else "-"],
                ["Driver", _text(entry.driver_name)],
                ["Pickup location", _text(entry.pickup_location)],
                ["Order opened by", _text(entry.order_opened_by)],
            ]
        )
    )

    story.append(Paragraph("Quality", heading_style))
    characteristics = ", ".join(entry.improved_characteristics) if entry.improved_characteristics else "-"
    story.append(
        _key_value_table(
            [
                ["Country of origin", _text(entry.country_of_origin)],
                ["Higher quality fuel", "Yes" if entry.is_higher_quality else "No"],
                ["Improved characteristics", characteristics],
                ["Laboratory", _text(entry.laboratory_name)],
                ["Lab accreditation", _text(entry.lab_accreditation_number)],
                ["Test report", f"{_text(entry.test_report_number)} / {_format_date(entry.test_report_date)}"],
            ]
        )
    )

    story.append(Spacer(1, 0.2 * inch))
    operator_name = detail.operator.name if detail.operator else entry.operator_id
    story.append(Paragraph(f"Recorded by: {operator_name}", body_style))
    story.append(Paragraph(f"Verify this document at {verify_url}", body_style))

    doc.build(story)
    return buffer.getvalue()


def merge_pdfs(documents: list[bytes]) -> bytes:
    writer = PdfWriter()
    for document in documents:
        reader = PdfReader(BytesIO(document))
        for page in reader.pages:
            writer.add_page(page)
    output = BytesIO()
    writer.write(output)
    return output.getvalue()


class ReportlabDocumentRenderer:
    def __init__(
        self,
        *,
        storage: CertificateStorage,
        public_base_url: str,
        zone: ZoneInfo | timezone,
    ) -> None:
        self._storage = storage
        self._public_base_url = public_base_url
        self._zone = zone

    def render(self, detail: FuelEntryDetail, *, include_certificate: bool) -> bytes:
        statement = render_statement_pdf(detail, public_base_url=self._public_base_url, zone=self._zone)
        if not include_certificate or not detail.entry.certificate_path:
            return statement
        return self._append_certificate(statement, detail)

    def _append_certificate(self, statement: bytes, detail: FuelEntryDetail) -> bytes:
        entry = detail.entry
        certificate_path = self._storage.resolve(entry.certificate_path)
        if certificate_path is None:
            logger.warning("certificate file missing for entry_id=%s path=%s", entry.entry_id, entry.certificate_path)
            return statement
        if certificate_path.suffix.lower() != ".pdf":
            # Image certificates are not merged into the statement.
            return statement
        try:
            return merge_pdfs([statement, certificate_path.read_bytes()])
        except (OSError, PdfReadError, ValueError) as exc:
            logger.warning("certificate merge failed for entry_id=%s: %s", entry.entry_id, exc)
            return statement
