from __future__ import annotations

import hmac
import json
import logging
import re

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .audit import AuditLogRepository, create_audit_log_repository
from .auto_send import (
    ArchiveUnavailableError,
    AutoSendRepository,
    AutoSendService,
    BatchItemNotFoundError,
    BatchNotFoundError,
    DuplicateRecipientError,
    PlanningError,
    RecipientNotFoundError,
    create_auto_send_repository,
    settings_response,
)
from .civil_dates import CivilDateError, region_zone
from .config import get_settings
from .dispatch_queue import DispatchQueue
from .documents import ReportlabDocumentRenderer
from .entries import (
    CertificateUploadError,
    EntryNotFoundError,
    EntryRepository,
    EntryValidationError,
    FuelEntry,
    FuelEntryService,
    create_entry_repository,
)
from .mailer import MailSender, create_mail_sender
from .models import (
    AutoSendRunRequest,
    AutoSendRunResponse,
    AutoSendSettingsResponse,
    AutoSendSettingsUpdateRequest,
    BatchHistoryResponse,
    BatchProgressResponse,
    CronRunResponse,
    DispatchQueuedResponse,
    FuelEntryCreateRequest,
    FuelEntryResponse,
    ItemHistoryResponse,
    RecipientCreateRequest,
    RecipientListResponse,
    RecipientResponse,
    VerificationResponse,
)
from .rate_limit import RateLimitStore, create_rate_limit_store, hash_client_key
from .uploads import CertificateUpload, CertificateValidationError, LocalCertificateStorage

logger = logging.getLogger(__name__)

ENTRY_ID_PATTERN = re.compile(r"^fe_[0-9a-f]{24}$")

_settings = get_settings()
_zone = region_zone(_settings.region_timezone)
router = APIRouter(prefix=_settings.api_prefix, tags=["fims"])

audit_repo: AuditLogRepository = create_audit_log_repository(
    backend=_settings.audit_store_backend, database_url=_settings.database_url
)
entry_repo: EntryRepository = create_entry_repository(
    backend=_settings.entry_store_backend, database_url=_settings.database_url
)
certificate_storage = LocalCertificateStorage(_settings.certificate_upload_dir)
entry_service = FuelEntryService(
    repository=entry_repo,
    storage=certificate_storage,
    audit=audit_repo,
    zone=_zone,
    max_certificate_bytes=_settings.certificate_max_bytes,
)
auto_send_repo: AutoSendRepository = create_auto_send_repository(
    backend=_settings.auto_send_store_backend, database_url=_settings.database_url
)
mail_sender: MailSender = create_mail_sender(_settings)
auto_send_service = AutoSendService(
    repository=auto_send_repo,
    entries=entry_repo,
    renderer=ReportlabDocumentRenderer(
        storage=certificate_storage,
        public_base_url=_settings.public_base_url,
        zone=_zone,
    ),
    sender=mail_sender,
    audit=audit_repo,
    zone=_zone,
    batch_size=_settings.auto_send_batch_size,
    max_entries=_settings.auto_send_max_entries,
    branding_image_path=_settings.branding_image_path,
)
rate_limit_store: RateLimitStore = create_rate_limit_store(
    backend=_settings.rate_limit_backend, database_url=_settings.database_url
)


def _dispatch_in_background(batch_id: str, *, initiated_by: str | None = None) -> None:
    auto_send_service.dispatch_batch(batch_id, initiated_by=initiated_by)


dispatch_queue = DispatchQueue(_dispatch_in_background, max_workers=_settings.dispatch_max_workers)


def reset_runtime_state_for_tests() -> None:
    entry_repo.reset()
    auto_send_repo.reset()
    audit_repo.reset()
    rate_limit_store.reset()


def resume_pending_dispatches() -> int:
    return dispatch_queue.resume_pending(auto_send_service.pending_batch_ids())


def _require_actor(request: Request) -> str:
    # Sessions are issued by the external auth service; it forwards the user id.
    actor_id = request.headers.get("X-Actor-Id", "").strip()
    if not actor_id:
        raise HTTPException(401, "authenticated actor required")
    return actor_id


def _client_ip(request: Request) -> str:
    direct_ip = request.client.host if request.client else "unknown"
    if not _settings.trust_proxy_headers:
        return direct_ip
    if not _settings.trusted_proxy_ips or direct_ip not in _settings.trusted_proxy_ips:
        return direct_ip
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded:
        return direct_ip
    trusted_ip = forwarded.split(",")[0].strip()
    return trusted_ip or direct_ip


def _entry_response(entry: FuelEntry) -> FuelEntryResponse:
    return FuelEntryResponse(
        entry_id=entry.entry_id,
        registration_number=entry.registration_number,
        entry_date=entry.entry_date,
        warehouse_id=entry.warehouse_id,
        product_name=entry.product_name,
        quantity=entry.quantity,
        is_higher_quality=entry.is_higher_quality,
        improved_characteristics=list(entry.improved_characteristics),
        delivery_note_number=entry.delivery_note_number,
        customs_declaration_number=entry.customs_declaration_number,
        country_of_origin=entry.country_of_origin,
        laboratory_name=entry.laboratory_name,
        supplier_id=entry.supplier_id,
        transporter_id=entry.transporter_id,
        driver_name=entry.driver_name,
        certificate_path=entry.certificate_path,
        certificate_file_name=entry.certificate_file_name,
        is_active=entry.is_active,
        operator_id=entry.operator_id,
        created_at=entry.created_at,
    )


def _read_certificate(certificate: UploadFile | None) -> CertificateUpload | None:
    if certificate is None or not certificate.filename:
        return None
    return CertificateUpload(
        file_name=certificate.filename,
        content_type=(certificate.content_type or "").lower(),
        content=certificate.file.read(),
    )


@router.post("/fuel-entries", response_model=FuelEntryResponse, status_code=status.HTTP_201_CREATED)
def create_fuel_entry(
    request: Request,
    payload: str = Form(...),
    certificate: UploadFile | None = File(default=None),
) -> FuelEntryResponse:
    actor_id = _require_actor(request)
    try:
        parsed = FuelEntryCreateRequest.model_validate_json(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=json.loads(exc.json())) from exc
    try:
        entry = entry_service.create_entry(
            parsed,
            operator_id=actor_id,
            certificate=_read_certificate(certificate),
        )
    except (CertificateValidationError, EntryValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CertificateUploadError as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc
    return _entry_response(entry)


@router.get("/fuel-entries/{entry_id}", response_model=FuelEntryResponse)
def get_fuel_entry(entry_id: str, request: Request) -> FuelEntryResponse:
    _require_actor(request)
    try:
        return _entry_response(entry_service.get_entry(entry_id))
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"fuel entry not found: {entry_id}") from exc


@router.delete("/fuel-entries/{entry_id}", response_model=FuelEntryResponse)
def deactivate_fuel_entry(entry_id: str, request: Request) -> FuelEntryResponse:
    actor_id = _require_actor(request)
    try:
        return _entry_response(entry_service.deactivate_entry(entry_id, actor_id=actor_id))
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"fuel entry not found: {entry_id}") from exc


@router.post("/auto-send/run", response_model=AutoSendRunResponse)
def run_auto_send(request: Request, payload: AutoSendRunRequest | None = None) -> AutoSendRunResponse:
    actor_id = _require_actor(request)
    run_request = payload or AutoSendRunRequest()
    recipient_ids = run_request.recipient_ids
    if not recipient_ids:
        recipient_ids = list(auto_send_repo.get_settings().selected_recipient_ids)
    try:
        plan = auto_send_service.plan_batch(
            date_from=run_request.date_from,
            date_to=run_request.date_to,
            recipient_ids=recipient_ids,
            include_certificates=run_request.include_certificates,
            initiated_by=actor_id,
        )
    except (PlanningError, CivilDateError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    queued = dispatch_queue.submit(plan.batch_id, initiated_by=actor_id)
    return AutoSendRunResponse(
        batch_id=plan.batch_id,
        batches=plan.batches,
        entries=plan.entries,
        sent=plan.recipients,
        date_from=plan.date_from,
        date_to=plan.date_to,
        queued=queued,
    )


@router.post(
    "/auto-send/batches/{batch_id}/dispatch",
    response_model=DispatchQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def redispatch_batch(batch_id: str, request: Request) -> DispatchQueuedResponse:
    actor_id = _require_actor(request)
    if auto_send_repo.get_batch(batch_id) is None:
        raise HTTPException(status_code=404, detail=f"batch not found: {batch_id}")
    queued = dispatch_queue.submit(batch_id, initiated_by=actor_id)
    return DispatchQueuedResponse(batch_id=batch_id, queued=queued)


@router.get("/auto-send/batches/{batch_id}/progress", response_model=BatchProgressResponse)
def get_batch_progress(batch_id: str, request: Request) -> BatchProgressResponse:
    _require_actor(request)
    try:
        return auto_send_service.get_progress(batch_id)
    except BatchNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"batch not found: {batch_id}") from exc


@router.get("/auto-send/history/batches", response_model=BatchHistoryResponse)
def list_batch_history(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    recipient: str | None = Query(default=None, max_length=256),
) -> BatchHistoryResponse:
    _require_actor(request)
    return auto_send_service.list_batch_history(page=page, limit=limit, recipient=recipient)


@router.get("/auto-send/history", response_model=ItemHistoryResponse)
def list_item_history(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    recipient: str | None = Query(default=None, max_length=256),
    batch_id: str | None = Query(default=None, max_length=64),
) -> ItemHistoryResponse:
    _require_actor(request)
    return auto_send_service.list_item_history(page=page, limit=limit, recipient=recipient, batch_id=batch_id)


@router.get("/auto-send/history/{item_id}/download")
def download_item_archive(item_id: str, request: Request) -> Response:
    _require_actor(request)
    try:
        file_name, pdf_bytes = auto_send_service.render_item_archive(item_id)
    except BatchItemNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"batch item not found: {item_id}") from exc
    except ArchiveUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/auto-send/settings", response_model=AutoSendSettingsResponse)
def get_auto_send_settings(request: Request) -> AutoSendSettingsResponse:
    _require_actor(request)
    return settings_response(auto_send_repo.get_settings())


@router.patch("/auto-send/settings", response_model=AutoSendSettingsResponse)
def update_auto_send_settings(payload: AutoSendSettingsUpdateRequest, request: Request) -> AutoSendSettingsResponse:
    actor_id = _require_actor(request)
    updated = auto_send_repo.update_settings(
        is_enabled=payload.is_enabled,
        selected_recipient_ids=payload.selected_recipient_ids,
        updated_by=actor_id,
    )
    return settings_response(updated)


@router.get("/auto-send/recipients", response_model=RecipientListResponse)
def list_recipients(request: Request, include_inactive: bool = Query(default=False)) -> RecipientListResponse:
    _require_actor(request)
    return RecipientListResponse(
        recipients=[
            RecipientResponse(**row.__dict__)
            for row in auto_send_repo.list_recipients(include_inactive=include_inactive)
        ]
    )


@router.post("/auto-send/recipients", response_model=RecipientResponse, status_code=status.HTTP_201_CREATED)
def add_recipient(payload: RecipientCreateRequest, request: Request) -> RecipientResponse:
    _require_actor(request)
    try:
        recipient = auto_send_repo.add_recipient(email=payload.email, name=payload.name)
    except DuplicateRecipientError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return RecipientResponse(**recipient.__dict__)


@router.delete("/auto-send/recipients/{recipient_id}", response_model=RecipientResponse)
def deactivate_recipient(recipient_id: str, request: Request) -> RecipientResponse:
    _require_actor(request)
    try:
        recipient = auto_send_repo.deactivate_recipient(recipient_id)
    except RecipientNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"recipient not found: {recipient_id}") from exc
    return RecipientResponse(**recipient.__dict__)


@router.post("/cron/auto-send", response_model=CronRunResponse)
def run_scheduled_auto_send(request: Request) -> CronRunResponse:
    secret = _settings.cron_secret.strip()
    if not secret:
        raise HTTPException(500, "cron secret not configured")
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token or not hmac.compare_digest(token, secret):
        raise HTTPException(401, "unauthorized")

    try:
        outcome = auto_send_service.run_scheduled()
    except PlanningError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if outcome.skipped or outcome.plan is None:
        return CronRunResponse(skipped=True, reason=outcome.reason)

    plan = outcome.plan
    dispatch_queue.submit(plan.batch_id, initiated_by="scheduler")
    return CronRunResponse(
        batch_id=plan.batch_id,
        batches=plan.batches,
        entries=plan.entries,
        sent=plan.recipients,
    )


@router.get("/verify/{entry_id}", response_model=VerificationResponse)
def verify_entry(entry_id: str, request: Request, response: Response):
    decision = rate_limit_store.hit(
        hash_client_key("verify", _client_ip(request)),
        limit=_settings.verify_rate_limit_max,
        window_seconds=_settings.verify_rate_limit_window_seconds,
    )
    if not decision.allowed:
        return JSONResponse(
            status_code=429,
            content={"detail": "too many verification requests, try again later"},
            headers={
                "Retry-After": str(decision.reset_in_seconds),
                "X-RateLimit-Remaining": "0",
            },
        )
    remaining = {"X-RateLimit-Remaining": str(decision.remaining)}

    if not ENTRY_ID_PATTERN.match(entry_id):
        raise HTTPException(status_code=400, detail="invalid document identifier", headers=remaining)

    entry = entry_repo.get_entry(entry_id)
    if entry is None:
        return JSONResponse(
            status_code=404,
            content={"verified": False, "detail": "document not found"},
            headers=remaining,
        )
    if not entry.is_active:
        return JSONResponse(
            status_code=410,
            content={"verified": False, "detail": "document has been withdrawn"},
            headers=remaining,
        )

    details = entry_repo.get_entry_details([entry_id])
    detail = details[0] if details else None
    response.headers.update(remaining)
    return VerificationResponse(
        verified=True,
        entry_id=entry.entry_id,
        registration_number=entry.registration_number,
        entry_date=entry.entry_date,
        product_name=entry.product_name,
        quantity=entry.quantity,
        warehouse_name=detail.warehouse.name if detail and detail.warehouse else None,
        warehouse_code=detail.warehouse.code if detail and detail.warehouse else None,
        supplier_name=detail.supplier.name if detail and detail.supplier else None,
        country_of_origin=entry.country_of_origin,
        laboratory_name=entry.laboratory_name,
        test_report_number=entry.test_report_number,
        is_higher_quality=entry.is_higher_quality,
        has_certificate=entry.has_certificate,
    )
