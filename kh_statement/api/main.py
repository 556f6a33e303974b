"""
FastAPI application for the control statement service.

Endpoints
---------
- GET  /health
- GET  /months
- GET  /months/{month}/summary
- GET  /months/{month}/invoices
- GET  /months/{month}/kh
- GET  /months/{month}/kh/history
- POST /months/{month}/kh/generate
- POST /months/{month}/kh/mark-submitted
- GET  /years/{year}
- GET  /invoices/{invoice_id}
- PUT  /invoices/{invoice_id}
- DELETE /invoices/{invoice_id}
- POST /invoices/{invoice_id}/ocr
- GET  /settings
- PUT  /settings
- POST /ocr/queue
- POST /ocr/queue/invoice/{invoice_id}
- GET  /ocr/queue/{job_id}

``month`` is always ``YYYY-MM``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import AppSettings, configure_logging, load_settings
from ..errors import (
    DocumentWriteError,
    InvoiceNotFoundError,
    JobNotFoundError,
    OcrFailedError,
    OcrInProgressError,
    SectionMismatchError,
    SubmissionHistoryError,
    SubmissionNotFoundError,
)
from ..ocr_queue import EnqueueResult, OcrQueue
from ..repository import InMemoryInvoiceRepository
from ..schema import (
    GenerationRequest,
    GenerationResult,
    InvoiceTaxData,
    InvoiceWithData,
    MonthlySummary,
    OcrJob,
    OcrRunResult,
    Period,
    PeriodOverview,
    Submission,
    TaxDataUpdate,
    TaxpayerSettings,
    TaxpayerSettingsUpdate,
    YearSummary,
)
from ..service import ControlStatementService
from ..submissions import JSONFileSubmissionStore, SubmissionManager

logger = logging.getLogger(__name__)

router = APIRouter()


class OcrQueueRequest(BaseModel):
    invoice_ids: List[str] = Field(default_factory=list)


class OcrQueueResponse(BaseModel):
    job_id: str
    total: int


def build_service(settings: AppSettings) -> ControlStatementService:
    """Wire the file-backed repository and submission store from settings."""
    repository = InMemoryInvoiceRepository.from_file(settings.data_file)
    manager = SubmissionManager(JSONFileSubmissionStore(settings.submissions_file), settings.output_dir)
    return ControlStatementService(repository, manager, software_name=settings.software_name)


def _parse_month(month: str) -> Period:
    try:
        return Period.parse(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _service(request: Request) -> ControlStatementService:
    return request.app.state.service


def _ocr_queue(request: Request) -> OcrQueue:
    queue = request.app.state.ocr_queue
    if queue is None:
        raise HTTPException(status_code=503, detail="OCR extractor is not configured")
    return queue


def create_app(
    service: Optional[ControlStatementService] = None,
    ocr_queue: Optional[OcrQueue] = None,
) -> FastAPI:
    """
    Build the application. Without a ``service`` one is wired from the
    environment (see `kh_statement.config`).
    """
    if service is None:
        settings = load_settings()
        configure_logging(settings.log_level)
        service = build_service(settings)

    app = FastAPI(title="KH Statement Service", version=__version__)
    app.state.service = service
    app.state.ocr_queue = ocr_queue

    # Local desktop front-end talks to this API from another origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvoiceNotFoundError)
    @app.exception_handler(SubmissionNotFoundError)
    @app.exception_handler(JobNotFoundError)
    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(SectionMismatchError)
    async def section_mismatch(request: Request, exc: SectionMismatchError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"error": str(exc)})

    @app.exception_handler(OcrInProgressError)
    async def ocr_busy(request: Request, exc: OcrInProgressError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(DocumentWriteError)
    @app.exception_handler(SubmissionHistoryError)
    @app.exception_handler(OcrFailedError)
    async def server_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("%s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    app.include_router(router)
    return app


# --- Routes ---------------------------------------------------------------


@router.get("/health")
async def health(request: Request) -> dict:
    """
    Simple health-check endpoint.
    """
    return {
        "status": "ok",
        "ocr": request.app.state.ocr_queue is not None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/months", response_model=List[MonthlySummary])
def all_months(request: Request) -> List[MonthlySummary]:
    """
    Summaries of every month that holds invoices, newest first.
    """
    return _service(request).months()


@router.get("/months/{month}/summary", response_model=MonthlySummary)
def month_summary(month: str, request: Request) -> MonthlySummary:
    return _service(request).summary(_parse_month(month))


@router.get("/months/{month}/invoices", response_model=List[InvoiceWithData])
def month_invoices(month: str, request: Request) -> List[InvoiceWithData]:
    return _service(request).invoices(_parse_month(month))


@router.get("/years/{year}", response_model=YearSummary)
def year_summary(year: str, request: Request) -> YearSummary:
    if not re.fullmatch(r"\d{4}", year):
        raise HTTPException(status_code=400, detail=f"Invalid year {year!r}")
    return _service(request).year_summary(int(year))


@router.get("/months/{month}/kh", response_model=PeriodOverview)
def kh_overview(month: str, request: Request) -> PeriodOverview:
    """
    Invoices grouped by section, the current submission and the list of
    invoices still lacking a section.
    """
    return _service(request).overview(_parse_month(month))


@router.get("/months/{month}/kh/history", response_model=List[Submission])
def kh_history(month: str, request: Request) -> List[Submission]:
    return _service(request).history(_parse_month(month))


@router.post("/months/{month}/kh/generate", response_model=GenerationResult)
def kh_generate(
    month: str,
    request: Request,
    body: Optional[GenerationRequest] = Body(default=None),
) -> GenerationResult:
    """
    Generate the control statement XML for the month and record a new
    submission. Unclassified invoices are reported, not fatal.
    """
    period = _parse_month(month)
    return _service(request).generate(period, body or GenerationRequest())


@router.post("/months/{month}/kh/mark-submitted", response_model=Submission)
def kh_mark_submitted(month: str, request: Request) -> Submission:
    return _service(request).mark_submitted(_parse_month(month))


@router.get("/invoices/{invoice_id}", response_model=InvoiceWithData)
def get_invoice(invoice_id: str, request: Request) -> InvoiceWithData:
    return _service(request).get_invoice(invoice_id)


@router.put("/invoices/{invoice_id}", response_model=InvoiceTaxData)
def update_invoice(invoice_id: str, update: TaxDataUpdate, request: Request) -> InvoiceTaxData:
    """
    Manually correct an invoice's tax data. Fields omitted from the body are
    left unchanged.
    """
    return _service(request).apply_correction(invoice_id, update)


@router.delete("/invoices/{invoice_id}")
def delete_invoice(invoice_id: str, request: Request) -> dict:
    _service(request).delete_invoice(invoice_id)
    return {"ok": True}


@router.post("/invoices/{invoice_id}/ocr", response_model=OcrRunResult)
def run_invoice_ocr(invoice_id: str, request: Request) -> OcrRunResult:
    """
    Run OCR on one invoice immediately and store the result.
    """
    return _ocr_queue(request).run_now(invoice_id)


@router.get("/settings", response_model=TaxpayerSettings)
def get_settings(request: Request) -> TaxpayerSettings:
    return _service(request).settings()


@router.put("/settings", response_model=TaxpayerSettings)
def update_settings(update: TaxpayerSettingsUpdate, request: Request) -> TaxpayerSettings:
    """
    Update the taxpayer identity. Fields omitted from the body are kept.
    """
    return _service(request).update_settings(update)


@router.post("/ocr/queue", response_model=OcrQueueResponse)
def ocr_queue_batch(payload: OcrQueueRequest, request: Request) -> OcrQueueResponse:
    queue = _ocr_queue(request)
    try:
        job = queue.enqueue(payload.invoice_ids)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return OcrQueueResponse(job_id=job.id, total=job.total)


@router.post("/ocr/queue/invoice/{invoice_id}", response_model=EnqueueResult)
def ocr_queue_invoice(invoice_id: str, request: Request) -> EnqueueResult:
    return _ocr_queue(request).enqueue_invoice(invoice_id)


@router.get("/ocr/queue/{job_id}", response_model=OcrJob)
def ocr_job_status(job_id: str, request: Request) -> OcrJob:
    return _ocr_queue(request).get(job_id)


# For local development convenience:
#   uvicorn kh_statement.api.main:create_app --factory --reload
