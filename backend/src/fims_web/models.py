from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

BatchItemStatus = Literal["PENDING", "SENT", "FAILED"]


def _blank_to_none(value: object) -> object:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class FuelEntryCreateRequest(BaseModel):
    entry_date: datetime | date
    warehouse_id: str = Field(min_length=1, max_length=64)
    product_name: str = Field(min_length=1, max_length=256)
    quantity: int = Field(gt=0)
    delivery_note_number: str | None = Field(default=None, max_length=128)
    delivery_note_date: date | None = None
    customs_declaration_number: str | None = Field(default=None, max_length=128)
    customs_declaration_date: date | None = None
    is_higher_quality: bool = False
    improved_characteristics: list[str] = Field(default_factory=list, max_length=32)
    country_of_origin: str | None = Field(default=None, max_length=128)
    laboratory_name: str | None = Field(default=None, max_length=256)
    lab_accreditation_number: str | None = Field(default=None, max_length=128)
    test_report_number: str | None = Field(default=None, max_length=128)
    test_report_date: date | None = None
    order_opened_by: str | None = Field(default=None, max_length=256)
    pickup_location: str | None = Field(default=None, max_length=256)
    supplier_id: str | None = Field(default=None, max_length=64)
    transporter_id: str | None = Field(default=None, max_length=64)
    driver_name: str | None = Field(default=None, max_length=256)

    @field_validator(
        "delivery_note_number",
        "delivery_note_date",
        "customs_declaration_number",
        "customs_declaration_date",
        "country_of_origin",
        "laboratory_name",
        "lab_accreditation_number",
        "test_report_number",
        "test_report_date",
        "order_opened_by",
        "pickup_location",
        "supplier_id",
        "transporter_id",
        "driver_name",
        mode="before",
    )
    @classmethod
    def _optional_blank_is_none(cls, value: object) -> object:
        return _blank_to_none(value)

    @field_validator("warehouse_id", "product_name")
    @classmethod
    def _normalize_required_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("required text fields cannot be blank")
        return normalized

    @field_validator("improved_characteristics")
    @classmethod
    def _normalize_characteristics(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if str(item).strip()]


class FuelEntryResponse(BaseModel):
    entry_id: str
    registration_number: int
    entry_date: datetime
    warehouse_id: str
    product_name: str
    quantity: int
    is_higher_quality: bool
    improved_characteristics: list[str]
    delivery_note_number: str | None = None
    customs_declaration_number: str | None = None
    country_of_origin: str | None = None
    laboratory_name: str | None = None
    supplier_id: str | None = None
    transporter_id: str | None = None
    driver_name: str | None = None
    certificate_path: str | None = None
    certificate_file_name: str | None = None
    is_active: bool
    operator_id: str
    created_at: datetime


class AutoSendRunRequest(BaseModel):
    date_from: date | None = None
    date_to: date | None = None
    recipient_ids: list[str] | None = Field(default=None, max_length=256)
    include_certificates: bool = True

    @model_validator(mode="after")
    def _validate_window(self) -> AutoSendRunRequest:
        if self.date_from is not None and self.date_to is not None and self.date_to < self.date_from:
            raise ValueError("date_to must be greater than or equal to date_from")
        if self.date_from is None and self.date_to is not None:
            raise ValueError("date_from is required when date_to is provided")
        return self


class AutoSendRunResponse(BaseModel):
    batch_id: str
    batches: int
    entries: int
    sent: int
    date_from: date
    date_to: date
    queued: bool


class DispatchQueuedResponse(BaseModel):
    batch_id: str
    queued: bool


class BatchItemProgress(BaseModel):
    item_id: str
    sequence: int
    entries_count: int
    recipient_emails: list[str]
    status: BatchItemStatus
    sent_at: datetime | None = None
    error_message: str | None = None


class BatchProgressResponse(BaseModel):
    batch_id: str
    total: int
    sent: int
    failed: int
    pending: int
    complete: bool
    items: list[BatchItemProgress]


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class BatchSummary(BaseModel):
    batch_id: str
    date_from: datetime
    date_to: datetime
    total_entries: int
    batch_size: int
    total_batches: int
    recipients_count: int
    include_certificates: bool
    created_at: datetime
    created_by: str | None = None


class HistoryItem(BaseModel):
    item_id: str
    batch_id: str
    sequence: int
    entries_count: int
    entry_numbers: list[int]
    recipient_emails: list[str]
    include_certificates: bool
    status: BatchItemStatus
    sent_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime
    batch: BatchSummary | None = None


class BatchHistoryEntry(BatchSummary):
    items: list[HistoryItem]


class BatchHistoryResponse(BaseModel):
    batches: list[BatchHistoryEntry]
    pagination: Pagination


class ItemHistoryResponse(BaseModel):
    items: list[HistoryItem]
    pagination: Pagination


class AutoSendSettingsResponse(BaseModel):
    is_enabled: bool
    selected_recipient_ids: list[str]
    updated_by: str | None = None
    updated_at: datetime | None = None


class AutoSendSettingsUpdateRequest(BaseModel):
    is_enabled: bool | None = None
    selected_recipient_ids: list[str] | None = Field(default=None, max_length=256)

    @model_validator(mode="after")
    def _require_change(self) -> AutoSendSettingsUpdateRequest:
        if self.is_enabled is None and self.selected_recipient_ids is None:
            raise ValueError("is_enabled or selected_recipient_ids is required")
        return self


class RecipientCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=256)
    name: str | None = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        local, _, domain = normalized.partition("@")
        if not local or "." not in domain or " " in normalized:
            raise ValueError("email must be a valid address")
        return normalized


class RecipientResponse(BaseModel):
    recipient_id: str
    email: str
    name: str | None = None
    is_active: bool
    created_at: datetime


class RecipientListResponse(BaseModel):
    recipients: list[RecipientResponse]


class CronRunResponse(BaseModel):
    skipped: bool = False
    reason: str | None = None
    batch_id: str | None = None
    batches: int = 0
    entries: int = 0
    sent: int = 0


class VerificationResponse(BaseModel):
    verified: bool
    entry_id: str
    registration_number: int
    entry_date: datetime
    product_name: str
    quantity: int
    warehouse_name: str | None = None
    warehouse_code: str | None = None
    supplier_name: str | None = None
    country_of_origin: str | None = None
    laboratory_name: str | None = None
    test_report_number: str | None = None
    is_higher_quality: bool
    has_certificate: bool
