import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from database import AdminUsers, OrderStore, get_database, get_documents
from errors import NotFound, OrderError, PersistenceUnavailable
from logging_config import RequestLoggingMiddleware, setup_logging
from notifications import AssetUploader, Notifier, SmtpMailer, WhatsAppClient
from orders import OrderPipeline
from receipt import receipt_filename
from schemas import AdminUser, OrderStatus, OrderUpdate, Product, StatusChange
from settings import Settings, get_settings

ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

logger = logging.getLogger(__name__)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginPayload(BaseModel):
    username: str
    password: str


# Helper functions for auth

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, secret_key: str, expires_delta: timedelta):
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def get_pipeline(request: Request) -> OrderPipeline:
    return request.app.state.pipeline


def get_admins(request: Request) -> AdminUsers:
    return request.app.state.admins


def get_current_admin(
    request: Request,
    token: str = Depends(oauth2_scheme),
    admins: AdminUsers = Depends(get_admins),
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings: Settings = request.app.state.settings
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    username = payload.get("sub")
    if username is None:
        raise credentials_exception
    if payload.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    user = admins.find_active(username)
    if not user:
        raise credentials_exception
    return user


router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(get_current_admin)])


# Auth endpoints
@router.post("/auth/login", response_model=Token)
def login(payload: LoginPayload, request: Request, admins: AdminUsers = Depends(get_admins)):
    user = admins.find_active(payload.username)
    if not user or not verify_password(payload.password, user["password_hash"]):
        raise HTTPException(400, "Incorrect username or password")

    settings: Settings = request.app.state.settings
    access_token = create_access_token(
        {"sub": payload.username, "role": "admin"},
        settings.SECRET_KEY,
        timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {"access_token": access_token, "token_type": "bearer"}


# Seed the first admin user; refused once any admin exists
@router.post("/auth/seed-admin")
def seed_admin(
    username: str = Body(...),
    password: str = Body(...),
    admins: AdminUsers = Depends(get_admins),
):
    if admins.count() > 0:
        return {"status": "exists"}
    admins.create(AdminUser(username=username, password_hash=get_password_hash(password)))
    logger.info(f"Seeded admin user {username}")
    return {"status": "created"}


# Orders public endpoints
@router.post("/orders")
def create_order(payload: Dict[str, Any] = Body(...), pipeline: OrderPipeline = Depends(get_pipeline)):
    return pipeline.create(payload).response()


@router.get("/orders/track")
def track_order(
    ref: Optional[str] = None,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    pipeline: OrderPipeline = Depends(get_pipeline),
):
    order_id, order = pipeline.track(ref, phone, email)
    return {"ok": True, "order": order.public_view(order_id)}


@router.get("/orders/receipt.pdf")
def order_receipt(
    ref: Optional[str] = None,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    pipeline: OrderPipeline = Depends(get_pipeline),
):
    order, pdf = pipeline.receipt(ref, phone, email)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{receipt_filename(order.reference)}"'},
    )


@router.patch("/orders/{order_id}", dependencies=[Depends(get_current_admin)])
def update_order(order_id: str, payload: OrderUpdate, pipeline: OrderPipeline = Depends(get_pipeline)):
    result = pipeline.update(order_id, payload)
    return {
        "ok": True,
        "order": result.order.public_view(result.id),
        "changes": result.changes,
        "notification": result.notification.as_dict(),
    }


# Products public endpoints
@router.get("/products", response_model=List[Product])
def list_products(request: Request):
    items = get_documents(request.app.state.db, "product", {"active": True})
    for it in items:
        it.pop("_id", None)
    return items


@router.get("/products/{key}", response_model=Product)
def get_product(key: str, request: Request):
    items = get_documents(request.app.state.db, "product", {"key": key, "active": True}, limit=1)
    if not items:
        raise NotFound("Product not found")
    items[0].pop("_id", None)
    return items[0]


# Orders admin
@admin_router.get("/orders")
def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: Optional[OrderStatus] = None,
    ref: Optional[str] = None,
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    q: Optional[str] = None,
    pipeline: OrderPipeline = Depends(get_pipeline),
):
    return pipeline.list_orders(page, limit, status, ref, date_from, date_to, q)


@admin_router.post("/orders/{order_id}/status")
def admin_change_status(order_id: str, payload: StatusChange, pipeline: OrderPipeline = Depends(get_pipeline)):
    result = pipeline.update(order_id, OrderUpdate(status=payload.status))
    return {"ok": True, "order": result.order.public_view(result.id)}


@admin_router.post("/orders/{order_id}/resend")
def admin_resend_notifications(order_id: str, pipeline: OrderPipeline = Depends(get_pipeline)):
    outcomes = pipeline.resend(order_id)
    return {"ok": True, "notifications": {label: o.as_dict() for label, o in outcomes.items()}}


router.include_router(admin_router)


def create_app(
    settings: Optional[Settings] = None,
    db=None,
    store: Optional[OrderStore] = None,
    admins: Optional[AdminUsers] = None,
    notifier: Optional[Notifier] = None,
    uploader: Optional[AssetUploader] = None,
) -> FastAPI:
    settings = settings or get_settings()
    if db is None and (store is None or admins is None):
        db = get_database(settings)
    store = store or OrderStore(db)
    admins = admins or AdminUsers(db)
    notifier = notifier or Notifier(settings, SmtpMailer(settings), WhatsAppClient(settings))
    uploader = uploader or AssetUploader(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            store.ensure_indexes()
        except PersistenceUnavailable as exc:
            logger.warning(f"Order indexes not ensured: {exc.message}")
        yield

    app = FastAPI(title="LWG Orders API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.store = store
    app.state.admins = admins
    app.state.pipeline = OrderPipeline(settings, store, notifier, uploader)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"ok": False, "error": message})

    @app.get("/")
    def root():
        return {"ok": True, "name": "LWG Orders API"}

    @app.head("/health", status_code=204)
    def health_head():
        return Response(status_code=204)

    @app.get("/health")
    def health():
        return {"ok": True, "service": settings.SERVICE_NAME, "time": datetime.now(timezone.utc).isoformat()}

    # Simple health and db test
    @app.get("/test")
    def test_database():
        try:
            collections = store.ping()
            return {"backend": "ok", "db": "ok" if db is not None else "not configured", "collections": collections}
        except PersistenceUnavailable as e:
            return {"backend": "ok", "db": f"error: {e.message}"}

    app.include_router(router)
    app.include_router(router, prefix="/api")
    return app


setup_logging(get_settings().SERVICE_NAME, get_settings().LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
