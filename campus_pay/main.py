# campus_pay/main.py
from contextlib import asynccontextmanager
from typing import Dict, List, Optional
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from campus_pay import database, schemas
from campus_pay.auth import get_caller, require_admin
from campus_pay.config import Settings
from campus_pay.errors import Forbidden, NotFoundError, PaymentError, ReconciliationConflict
from campus_pay.events import EventPublisher, payment_event
from campus_pay.projection import StudentPaymentProjection
from campus_pay.providers import PaymentProvider, build_providers
from campus_pay.reconciliation import Caller, ReconciliationEngine, ReconciliationOutcome

logger = logging.getLogger("payment-service")

router = APIRouter()


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_engine(request: Request, db: Session = Depends(get_db)) -> ReconciliationEngine:
    settings = request.app.state.settings
    return ReconciliationEngine(
        db,
        request.app.state.providers,
        default_provider=settings.payment_provider,
        default_currency=settings.default_currency,
    )


def _announce(request: Request, background_tasks: BackgroundTasks, outcome: ReconciliationOutcome) -> None:
    # built now, while the session is still open; published after the response
    if outcome.changed and outcome.transaction is not None:
        routing_key, event = payment_event(outcome.transaction)
        background_tasks.add_task(request.app.state.publisher.publish, routing_key, event)


# Root and health endpoints
@router.get("/")
def root():
    return {
        "service": "Campus Payment Service",
        "status": "running",
        "endpoints": ["/initiate-payment", "/verify-payment/{reference}", "/webhook", "/payments", "/docs"],
    }


@router.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


@router.post("/initiate-payment", response_model=schemas.PaymentInitiated, status_code=201)
def initiate_payment(
    payment_in: schemas.PaymentInitiate,
    caller: Caller = Depends(get_caller),
    engine: ReconciliationEngine = Depends(get_engine),
):
    if caller.role == "student" and caller.id != payment_in.student_id:
        raise Forbidden("Students may only pay their own fees")
    transaction, charge = engine.initiate(payment_in)
    return schemas.PaymentInitiated(
        provider_reference=charge.provider_reference,
        authorization_url=charge.authorization_url,
        internal_transaction_id=transaction.id,
    )


@router.get("/verify-payment/{reference}", response_model=schemas.VerificationOut)
def verify_payment(
    reference: str,
    request: Request,
    background_tasks: BackgroundTasks,
    provider: Optional[str] = Query(None),
    caller: Caller = Depends(get_caller),
    engine: ReconciliationEngine = Depends(get_engine),
):
    outcome = engine.confirm_from_client(reference, caller=caller, provider_name=provider)
    _announce(request, background_tasks, outcome)
    transaction = outcome.transaction
    return schemas.VerificationOut(
        status=outcome.status,
        provider_status=outcome.provider_status,
        transaction=schemas.TransactionOut.model_validate(transaction) if transaction is not None else None,
    )


async def _receive_webhook(
    request: Request, background_tasks: BackgroundTasks, engine: ReconciliationEngine, provider_name: Optional[str]
) -> schemas.WebhookAck:
    provider = engine.provider(provider_name)
    raw_body = await request.body()
    signature = request.headers.get(provider.signature_header)
    outcome = await run_in_threadpool(engine.handle_webhook, raw_body, signature, provider.name)
    _announce(request, background_tasks, outcome)
    return schemas.WebhookAck(received=True)


@router.post("/webhook", response_model=schemas.WebhookAck)
async def webhook(request: Request, background_tasks: BackgroundTasks, engine: ReconciliationEngine = Depends(get_engine)):
    return await _receive_webhook(request, background_tasks, engine, None)


@router.post("/webhook/{provider_name}", response_model=schemas.WebhookAck)
async def provider_webhook(
    provider_name: str,
    request: Request,
    background_tasks: BackgroundTasks,
    engine: ReconciliationEngine = Depends(get_engine),
):
    return await _receive_webhook(request, background_tasks, engine, provider_name)


# List payments with optional filters (status, student_id)
@router.get("/payments", response_model=List[schemas.TransactionOut])
def list_payments(
    status: Optional[str] = Query(None),
    student_id: Optional[str] = Query(None),
    caller: Caller = Depends(get_caller),
    engine: ReconciliationEngine = Depends(get_engine),
):
    if caller.role == "student":
        student_id = caller.id
    return [schemas.TransactionOut.model_validate(t) for t in engine.store.list(status=status, student_id=student_id)]


@router.get("/payments/{transaction_id}", response_model=schemas.TransactionOut)
def get_payment(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    engine: ReconciliationEngine = Depends(get_engine),
):
    transaction = engine.store.get(transaction_id)
    if transaction is None or (caller.role == "student" and transaction.student_id != caller.id):
        raise NotFoundError("Payment not found")
    return schemas.TransactionOut.model_validate(transaction)


@router.get("/students/{student_id}/payment-status", response_model=schemas.StudentPaymentStatus)
def student_payment_status(student_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    if caller.role == "student" and caller.id != student_id:
        raise Forbidden("Students may only view their own payment status")
    return schemas.StudentPaymentStatus.model_validate(StudentPaymentProjection(db).get_student(student_id))


@router.post("/students/{student_id}/payment-status/rebuild", response_model=schemas.StudentPaymentStatus)
def rebuild_payment_status(student_id: str, caller: Caller = Depends(require_admin), db: Session = Depends(get_db)):
    student = StudentPaymentProjection(db).rebuild(student_id)
    logger.info("Admin %s rebuilt payment status for student %s", caller.id, student_id)
    return schemas.StudentPaymentStatus.model_validate(student)


def payment_error_handler(request: Request, exc: PaymentError):
    if isinstance(exc, ReconciliationConflict):
        logger.critical("Reconciliation conflict on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": errors})


def create_app(
    settings: Optional[Settings] = None,
    providers: Optional[Dict[str, PaymentProvider]] = None,
    publisher: Optional[EventPublisher] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: initialize DB
        logger.info("Initializing DB with %r", settings)
        app.state.session_factory = database.init_db(settings.database_url)
        if settings.payment_provider not in app.state.providers:
            logger.warning("Default provider %s has no credentials configured", settings.payment_provider)
        logger.info("Startup complete; providers=%s", sorted(app.state.providers))
        yield
        app.state.session_factory.kw["bind"].dispose()

    app = FastAPI(title="Campus Payment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.providers = providers if providers is not None else build_providers(settings)
    app.state.publisher = publisher or EventPublisher(settings.rabbitmq_url)
    app.state.session_factory = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    return app


app = create_app()
