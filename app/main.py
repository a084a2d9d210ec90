"""
Preventive Screening FHIR Service - FastAPI Application

Main application entry point with API endpoints for:
- FHIR R4 resources (Patient, Observation, Condition, Immunization,
  FamilyMemberHistory, ServiceRequest, ImmunizationRecommendation)
- CDS Hooks patient-view screening cards
- Raw screening determinations and deterministic risk scores

Run:
    uvicorn app.main:app --reload
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import FHIR_VERSION, SERVICE_NAME, SERVICE_VERSION, Settings
from app.core.cds import CDSCardGenerator
from app.core.events import EventBus
from app.core.fhir import ClinicalDataStore, FHIRResourceService
from app.core.fhir.sample_data import seed_sample_data
from app.core.risk import RiskScorer
from app.core.screening import ScreeningRulesEngine
from app.models import HealthResponse
from app.routes import cds_router, fhir_router, patients_router
from app.routes.fhir import FHIR_JSON
from app.utils import FHIRServiceError, get_logger, operation_outcome, setup_logging

logger = get_logger(__name__)


# ---- Application Lifespan ----

def build_lifespan(settings: Optional[Settings] = None):
    """Lifespan that wires store -> service -> engine -> generator on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = settings or Settings.from_env()
        setup_logging(config.log_level, config.log_file)

        store = ClinicalDataStore()
        store.init()
        events = EventBus()
        service = FHIRResourceService(store, settings=config, events=events)
        engine = ScreeningRulesEngine(lead_window_days=config.lead_window_days)
        generator = CDSCardGenerator(
            engine.rules,
            critical_overdue_days=config.critical_overdue_days,
            source_label=config.cds_source_label,
            source_url=config.cds_source_url,
        )

        app.state.settings = config
        app.state.store = store
        app.state.events = events
        app.state.service = service
        app.state.engine = engine
        app.state.generator = generator
        app.state.scorer = RiskScorer()
        app.state.started_at = datetime.now()

        if config.seed_sample_data:
            seeded = seed_sample_data(service)
            logger.info(f"Seeded {seeded} sample resource(s)")

        logger.info(f"{SERVICE_NAME} {SERVICE_VERSION} ready (FHIR {FHIR_VERSION})")
        yield

        store.shutdown()
        logger.info(f"{SERVICE_NAME} shut down.")

    return lifespan


# ---- Error Handlers ----

async def fhir_error_handler(request: Request, exc: FHIRServiceError) -> JSONResponse:
    logger.warning(
        f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_operation_outcome(),
        media_type=FHIR_JSON,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    logger.warning(f"{request.method} {request.url.path} -> 400 invalid request: {problems}")
    return JSONResponse(
        status_code=400,
        content=operation_outcome(f"Invalid request: {problems}", code="invalid"),
        media_type=FHIR_JSON,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=operation_outcome("Internal server error", code="exception"),
        media_type=FHIR_JSON,
    )


# ---- FastAPI Application ----

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(
        title=SERVICE_NAME,
        description="FHIR R4 resource server with guideline screening and CDS Hooks cards",
        version=SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=build_lifespan(settings),
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FHIRServiceError, fhir_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(fhir_router)
    app.include_router(cds_router)
    app.include_router(patients_router)

    @app.get("/", response_model=HealthResponse, tags=["Health"])
    async def root(request: Request):
        """API root - health check."""
        return _health(request)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint."""
        return _health(request)

    return app


def _health(request: Request) -> HealthResponse:
    state = request.app.state
    return HealthResponse(
        status="healthy" if state.store.is_open else "unavailable",
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        fhir_version=FHIR_VERSION,
        timestamp=datetime.now().isoformat(),
        uptime_seconds=(datetime.now() - state.started_at).total_seconds(),
        resource_counts=state.store.counts(),
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=False)
