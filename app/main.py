import logging
import uuid
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings
from .db import SessionLocal, get_db, init_db
from .errors import SubscriptionError
from .models import Plan
from .pricing import calculate
from .schemas import (
    ErrorOut,
    PlanOut,
    PriceQuoteIn,
    PricingResult,
    SubscribeIn,
    SubscribeOut,
    SubscriptionOut,
)
from .services import create_subscription, get_subscription, list_subscriptions, seed_catalog

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
MAX_IDEMPOTENCY_KEY_LENGTH = 255


def error_responses(*status_codes: int) -> dict:
    return {status_code: {"model": ErrorOut} for status_code in status_codes}

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def startup():
    init_db()
    if settings.seed_catalog:
        db = SessionLocal()
        try:
            seed_catalog(db)
        finally:
            db.close()


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    incoming = request.headers.get(REQUEST_ID_HEADER)
    request.state.request_id = incoming.strip() if incoming and incoming.strip() else str(uuid.uuid4())
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request.state.request_id
    return response


def _error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    return JSONResponse(
        status_code=status_code,
        content={
            "status_code": status_code,
            "error": HTTPStatus(status_code).phrase,
            "code": code,
            "message": message,
            "path": request.url.path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
        },
        headers={REQUEST_ID_HEADER: request_id},
    )


@app.exception_handler(SubscriptionError)
def subscription_error_handler(request: Request, exc: SubscriptionError):
    if exc.status_code >= 500:
        log.error("Request failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return _error_response(request, exc.status_code, exc.code, exc.message)


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = HTTPStatus(exc.status_code).phrase.lower().replace(" ", "_")
    return _error_response(request, exc.status_code, code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return _error_response(request, 422, "validation_error", message or "Invalid request")


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("Unhandled error path=%s", request.url.path)
    return _error_response(request, 500, "internal_error", "Internal server error")


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # authentication happens upstream, it forwards the caller id
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/plans", response_model=list[PlanOut])
def get_plans(db: Session = Depends(get_db)):
    return db.execute(select(Plan).order_by(Plan.base_price_monthly)).scalars().all()


@app.post("/pricing/calculate", response_model=PricingResult, responses=error_responses(400, 422))
def post_calculate(payload: PriceQuoteIn, db: Session = Depends(get_db)):
    return calculate(
        db,
        plan_code=payload.plan_code,
        billing_period=payload.billing_period,
        seats=payload.seats,
        promo_code=payload.promo_code,
    )


@app.post(
    "/subscriptions",
    response_model=SubscribeOut,
    status_code=201,
    responses=error_responses(400, 401, 404, 409, 422, 500, 502),
)
def post_subscription(
    payload: SubscribeIn,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    if idempotency_key and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Idempotency-Key exceeds {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
        )
    result = create_subscription(db, user_id=user_id, data=payload, idempotency_key=idempotency_key)
    if result.idempotent_replay:
        response.status_code = 200
    return result


@app.get("/subscriptions", response_model=list[SubscriptionOut], responses=error_responses(401))
def get_my_subscriptions(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    return list_subscriptions(db, user_id)


@app.get("/subscriptions/{subscription_id}", response_model=SubscriptionOut, responses=error_responses(401, 404))
def get_my_subscription(
    subscription_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return get_subscription(db, subscription_id, user_id)
