from __future__ import annotations

from datetime import timezone
from html import escape
from zoneinfo import ZoneInfo

from .civil_dates import format_civil_date
from .entries import FuelEntryDetail

BRANDING_CONTENT_ID = "fims-header"


def digest_subject(*, date_from_label: str, date_to_label: str, batch_number: int, total_batches: int) -> str:
    return (
        f"Automatic report - fuel entries ({date_from_label} to {date_to_label})"
        f" - Package {batch_number}/{total_batches}"
    )


def statement_file_name(registration_number: int) -> str:
    return f"Statement_{registration_number}.pdf"


def build_entries_digest_html(
    entries: list[FuelEntryDetail],
    *,
    date_from_label: str,
    date_to_label: str,
    batch_number: int,
    total_batches: int,
    zone: ZoneInfo | timezone,
    include_branding: bool = False,
) -> str:
    total_quantity = sum(detail.entry.quantity for detail in entries)
    rows = "".join(
        "<tr>"
        f"<td>{detail.entry.registration_number}</td>"
        f"<td>{escape(format_civil_date(detail.entry.entry_date, zone))}</td>"
        f"<td>{escape(detail.warehouse.code if detail.warehouse else detail.entry.warehouse_id)}</td>"
        f"<td>{escape(detail.entry.product_name)}</td>"
        f"<td style=\"text-align:right\">{detail.entry.quantity:,}</td>"
        "</tr>"
        for detail in entries
    )
    branding = (
        f'<img src="cid:{BRANDING_CONTENT_ID}" alt="FIMS" style="max-width:600px;display:block;margin-bottom:16px" />'
        if include_branding
        else ""
    )
    period = f"{escape(date_from_label)} to {escape(date_to_label)}"
    return (
        '<div style="font-family:Arial,Helvetica,sans-serif;color:#111827">'
        f"{branding}"
        f"<h2>Fuel entries for {period}</h2>"
        f"<p>Package {batch_number} of {total_batches}. "
        f"{len(entries)} entries are attached as statements of conformity.</p>"
        '<table cellpadding="6" cellspacing="0" border="1" style="border-collapse:collapse;border-color:#d1d5db">'
        "<thead><tr>"
        "<th>Registration no.</th><th>Date</th><th>Warehouse</th><th>Product</th><th>Quantity (L)</th>"
        "</tr></thead>"
        f"<tbody>{rows}</tbody>"
        "<tfoot><tr>"
        f'<td colspan="4"><strong>Total</strong></td><td style="text-align:right"><strong>{total_quantity:,}</strong></td>'
        "</tr></tfoot>"
        "</table>"
        "<p>This message was generated automatically.</p>"
        "</div>"
    )
