"""FastAPI application for shipping-label intake and record management.

The app is built by ``create_app`` from an explicit configuration; the
database and other components are opened in the lifespan handler and
reached through ``request.app.state.services``.
"""

import io
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Annotated, Any

from fastapi import (
    APIRouter,
    Body,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from shipscan.api.schemas import ClientCreate, ClientRename, ProcessRequest, envelope
from shipscan.extraction.fields import ExtractedFields
from shipscan.ocr.errors import OCRError
from shipscan.pipeline.processor import ImageUpload
from shipscan.pipeline.session import ScanSession
from shipscan.preprocessing.compress import UnsupportedImageError
from shipscan.records.export import write_records_csv
from shipscan.records.models import InvoiceType, Registration, RegistrationStatus
from shipscan.records.service import report_from_schema_error
from shipscan.services import Services, build_services
from shipscan.storage.pagination import PageRequest
from shipscan.storage.repositories import ConflictError, RecordQuery
from shipscan.utils.config import AppConfig, load_config
from shipscan.utils.logger import get_logger
from shipscan.validation.rules_engine import RecordValidationError, flatten

logger = get_logger(__name__)

VERSION = "1.0.0"

_MISSING_FIELD_LABELS = {
    "interestedFeatures": "interestedFeatures (at least one required)",
}


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


def require_token(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Check the bearer token when tokens are configured."""
    tokens = request.app.state.services.config.api.auth_tokens
    if not tokens:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or token.strip() not in tokens:
        raise HTTPException(status_code=401, detail="Unauthorized")


async def _read_uploads(files: list[UploadFile]) -> list[ImageUpload]:
    uploads = []
    for index, file in enumerate(files):
        uploads.append(
            ImageUpload(
                file_name=file.filename or f"upload-{index}",
                data=await file.read(),
                mime_type=file.content_type or "application/octet-stream",
            )
        )
    return uploads


def _validation_failure(report_error: RecordValidationError) -> JSONResponse:
    report = report_error.report
    return envelope(
        400,
        "Validation failed",
        errors=report.error_details(),
        missingFields=report.missing_fields,
        warnings=report.warnings,
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict):
            detail = dict(exc.detail)
            message = detail.pop("message", "Request failed")
            return envelope(exc.status_code, message, **detail)
        return envelope(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(p) for p in err["loc"] if p != "body"),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        return envelope(400, "Invalid request", errors=errors)

    @app.exception_handler(RecordValidationError)
    async def record_error(request: Request, exc: RecordValidationError) -> JSONResponse:
        return _validation_failure(exc)

    @app.exception_handler(ConflictError)
    async def conflict_error(request: Request, exc: ConflictError) -> JSONResponse:
        return envelope(409, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return envelope(500, "Internal server error")


public = APIRouter()
api = APIRouter(prefix="/api", dependencies=[Depends(require_token)])


@public.get("/health")
async def health_check(services: ServicesDep) -> JSONResponse:
    """Return service health and which extraction paths are available."""
    return envelope(
        200,
        "healthy",
        version=VERSION,
        databaseConnected=services.db.is_connected,
        visionModelConfigured=services.processor.gemini.available,
        tesseractFallback=services.processor.tesseract is not None,
    )


def _already_registered(existing: Registration) -> JSONResponse:
    return envelope(
        409,
        "This email has already completed registration. You cannot submit again.",
        recordId=existing.id,
        submittedAt=existing.submitted_at or existing.updated_at,
    )


@public.post("/form/submit")
def submit_registration(
    services: ServicesDep,
    payload: Annotated[dict[str, Any], Body()],
) -> JSONResponse:
    """Accept a business registration; one final submission per email."""
    email = payload.get("email")
    if not isinstance(email, str) or not email.strip():
        return envelope(400, "Business email is required")

    try:
        registration = Registration.model_validate(
            {k: v for k, v in payload.items() if k not in ("id", "status", "source")}
        ).sanitized()
    except ValidationError as exc:
        return envelope(
            400,
            "Invalid fields",
            errors=report_from_schema_error(exc).error_details(),
        )

    existing = services.registrations.find_submitted(registration.email)
    if existing is not None:
        return _already_registered(existing)

    report = services.rules.validate(
        flatten(registration.model_dump(by_alias=True)), "registration"
    )
    if report.missing_fields:
        missing = [_MISSING_FIELD_LABELS.get(f, f) for f in report.missing_fields]
        return envelope(400, "Missing required fields", missingFields=missing)
    if not report.all_valid:
        return envelope(400, "Invalid fields", errors=report.error_details())

    try:
        stored = services.registrations.create(
            registration.model_copy(
                update={
                    "status": RegistrationStatus.SUBMITTED,
                    "is_submitted": True,
                    "submitted_at": datetime.now(UTC),
                }
            )
        )
    except ConflictError:
        existing = services.registrations.find_submitted(registration.email)
        if existing is None:
            raise
        return _already_registered(existing)
    return envelope(
        201,
        "Registration submitted successfully! We'll contact you within 24 hours.",
        recordId=stored.id,
        email=stored.email,
        status=stored.status.value,
        submittedAt=stored.submitted_at,
    )


@public.get("/files/{key}")
def get_file(key: str, services: ServicesDep) -> FileResponse:
    path = services.file_store.path_for(key)
    if path is None or not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)


@api.post("/ocr/extract")
async def extract_image(
    services: ServicesDep,
    file: Annotated[UploadFile, File(...)],
) -> JSONResponse:
    """Extract label fields from one image."""
    (upload,) = await _read_uploads([file])
    try:
        extraction = await services.processor.process_image(upload)
    except UnsupportedImageError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except OCRError as exc:
        logger.error("Extraction failed for %s: %s", upload.file_name, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return envelope(200, f"Processed {upload.file_name}", result=extraction.to_dict())


def _batch_body(services: Services, batch) -> dict[str, Any]:
    aggregated = services.processor.aggregate(batch.usable)
    return {
        "results": {name: o.to_dict() for name, o in batch.outcomes.items()},
        "skipped": batch.skipped,
        "usable": batch.usable_count,
        "failed": len(batch.outcomes) - batch.usable_count,
        "nextStepAllowed": batch.next_step_allowed,
        "aggregatedContents": [item.model_dump(mode="json") for item in aggregated],
    }


@api.post("/ocr/batch")
async def extract_batch(
    services: ServicesDep,
    files: Annotated[list[UploadFile], File(...)],
) -> JSONResponse:
    """Extract every image of one shipment and aggregate their contents."""
    uploads = await _read_uploads(files)
    batch = await services.processor.process_batch(uploads, ScanSession())
    message = (
        f"Processed {batch.usable_count} of {len(uploads)} images"
        if batch.next_step_allowed
        else "No image produced a usable result"
    )
    return envelope(200, message, **_batch_body(services, batch))


@api.post("/ocr/process")
def process_fields(services: ServicesDep, payload: ProcessRequest) -> JSONResponse:
    """Assemble and save a record from already extracted fields."""
    fields = ExtractedFields.from_mapping(payload.fields)
    assembled = services.assembler.assemble(
        fields,
        image_url=payload.image_url,
        image_urls=payload.image_urls,
        client_name=payload.client_name,
        invoice_type=payload.invoice_type,
    )
    saved = services.record_service.save(assembled.record)
    return envelope(
        201,
        "Record created",
        record=saved.record.to_payload(),
        overrides=assembled.overrides,
        warnings=saved.warnings,
    )


@api.post("/scan")
async def scan_shipment(
    services: ServicesDep,
    files: Annotated[list[UploadFile], File(...)],
    client_name: Annotated[str, Form(alias="clientName")] = "default-client",
    invoice_type: Annotated[InvoiceType, Form(alias="invoiceType")] = InvoiceType.INDIVIDUAL,
) -> JSONResponse:
    """Extract, store and save a batch of label images in one call."""
    uploads = await _read_uploads(files)
    batch = await services.processor.process_batch(uploads, ScanSession())
    body = _batch_body(services, batch)
    if not batch.next_step_allowed:
        return envelope(422, "No image produced a usable result", **body)

    saved = await services.processor.save_batch(batch, uploads, client_name, invoice_type)
    saved_count = sum(1 for o in saved.outcomes if o.saved)
    message = (
        f"Saved {saved_count} record(s)"
        if saved.all_saved
        else "Some records failed to save. Please check the data and try again."
    )
    return envelope(
        201 if saved_count else 400,
        message,
        saves=[o.to_dict() for o in saved.outcomes],
        imageUrls=saved.image_urls,
        **body,
    )


@api.post("/records")
def create_record(
    services: ServicesDep,
    payload: Annotated[dict[str, Any], Body()],
) -> JSONResponse:
    record = services.record_service.parse(payload)
    saved = services.record_service.save(record)
    return envelope(
        201, "Record created", record=saved.record.to_payload(), warnings=saved.warnings
    )


@api.get("/records")
def list_records(
    services: ServicesDep,
    barcode: str | None = None,
    search: str | None = None,
    date_from: Annotated[date | None, Query(alias="dateFrom")] = None,
    date_to: Annotated[date | None, Query(alias="dateTo")] = None,
    invoice_type: Annotated[InvoiceType | None, Query(alias="invoiceType")] = None,
    client_name: Annotated[str | None, Query(alias="clientName")] = None,
    page: int = 1,
    limit: int = 10,
    sort: str = "createdAt",
    order: str = "desc",
) -> JSONResponse:
    """Filtered, paginated record listing."""
    result = services.records.list_page(
        RecordQuery(
            barcode=barcode,
            search=search,
            date_from=date_from,
            date_to=date_to,
            invoice_type=invoice_type.value if invoice_type else None,
            client_name=client_name,
            page=page,
            size=limit,
            sort=sort,
            order=order,
        )
    )
    result.items = [r.to_payload() for r in result.items]
    return envelope(200, "Records fetched", **result.to_dict("records"))


@api.get("/records/export")
def export_records(
    services: ServicesDep,
    client_name: Annotated[str | None, Query(alias="clientName")] = None,
    invoice_type: Annotated[InvoiceType | None, Query(alias="invoiceType")] = None,
) -> Response:
    """Download matching records as CSV."""
    records = services.records.all(
        RecordQuery(
            client_name=client_name,
            invoice_type=invoice_type.value if invoice_type else None,
        )
    )
    buffer = io.StringIO()
    write_records_csv(records, buffer)
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="records.csv"'},
    )


@api.get("/records/{record_id}")
def get_record(record_id: str, services: ServicesDep) -> JSONResponse:
    record = services.records.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return envelope(200, "Record fetched", record=record.to_payload())


@api.patch("/records/{record_id}")
def update_record(
    record_id: str,
    services: ServicesDep,
    payload: Annotated[dict[str, Any], Body()],
) -> JSONResponse:
    saved = services.record_service.update(record_id, payload)
    if saved is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return envelope(
        200, "Record updated", record=saved.record.to_payload(), warnings=saved.warnings
    )


@api.delete("/records/{record_id}")
def delete_record(record_id: str, services: ServicesDep) -> JSONResponse:
    """Delete a record and the stored images no other record points at."""
    record = services.records.get(record_id)
    if record is None or not services.records.delete(record_id):
        raise HTTPException(status_code=404, detail="Record not found")
    for url in dict.fromkeys([record.image_url, *record.image_urls]):
        key = services.file_store.key_for_url(url)
        if key is not None and not services.records.references_image(url):
            services.file_store.remove(key)
    return envelope(200, "Record deleted")


@api.post("/clients")
def create_client(services: ServicesDep, payload: ClientCreate) -> JSONResponse:
    client = services.clients.create(payload.name)
    return envelope(201, "Client created", client=client.model_dump(by_alias=True))


@api.get("/clients")
def list_clients(
    services: ServicesDep,
    page: int = 1,
    size: int = 10,
    search: str = "",
    sort: str = "createdAt",
    order: str = "desc",
) -> JSONResponse:
    result = services.clients.list_page(
        PageRequest(page=page, size=size, sort=sort, order=order, search=search)
    )
    result.items = [c.model_dump(by_alias=True) for c in result.items]
    return envelope(200, "Clients fetched", **result.to_dict("clients"))


@api.get("/clients/{client_id}")
def get_client(client_id: str, services: ServicesDep) -> JSONResponse:
    client = services.clients.get(client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return envelope(200, "Client fetched", client=client.model_dump(by_alias=True))


@api.patch("/clients/{client_id}")
def rename_client(
    client_id: str, services: ServicesDep, payload: ClientRename
) -> JSONResponse:
    client = services.clients.rename(client_id, payload.name)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return envelope(200, "Client updated", client=client.model_dump(by_alias=True))


@api.delete("/clients/{client_id}")
def delete_client(client_id: str, services: ServicesDep) -> JSONResponse:
    if not services.clients.delete(client_id):
        raise HTTPException(status_code=404, detail="Client not found")
    return envelope(200, "Client deleted")


def create_app(
    config: AppConfig | None = None,
    services_factory: Callable[[AppConfig], Services] = build_services,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Application configuration; loaded from the default path if
            omitted.
        services_factory: Builds the components at startup.

    Returns:
        Configured application. Components exist only while its lifespan
        is running.
    """
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = services_factory(config)
        app.state.services = services
        logger.info("Services started")
        try:
            yield
        finally:
            services.close()
            logger.info("Services stopped")

    app = FastAPI(
        title="Shipscan API",
        description="Shipping-label OCR intake, records and clients",
        version=VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)
    app.include_router(public)
    app.include_router(api)
    return app
