from fastapi import FastAPI, Depends, APIRouter, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional
import logging
import requests
import schemas
import crud
from auth import get_current_user_id, require_admin
from config import Settings, configure_logging
from credential_vault import CredentialVault
from database import get_db, init_db, make_engine, make_session_factory
from documents import render_delivery_slip, render_invoice
from errors import AuthorizationError, NotFoundError, PaymentError
from gateways import GATEWAY_ADAPTERS
from payment_service import PaymentService

logger = logging.getLogger(__name__)

CLIENT_VERIFY_ACTIONS = ("verify", "validate", "query")
CALLBACK_ACTIONS = ("success", "fail", "cancel", "ipn")
FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]

router = APIRouter()

# ==================== DEPENDENCIES ====================

def get_payment_service(request: Request, db: Session = Depends(get_db)) -> PaymentService:
    state = request.app.state
    return PaymentService(db, state.settings, state.vault, state.http)

async def read_params(request: Request) -> Dict[str, Any]:
    """Query string merged with the JSON or form body; gateways use all three"""
    params: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return params

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            params.update(body)
    elif content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        params.update({key: value for key, value in form.items() if isinstance(value, str)})
    return params

def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})

# ==================== HOME ====================

@router.get("/")
def read_root():
    return {
        "service": "Storefront payment functions",
        "gateways": sorted(GATEWAY_ADAPTERS),
        "endpoints": [
            "GET|POST /{gateway}-payment",
            "POST /encrypt-credentials",
            "POST /generate-invoice",
            "POST /generate-delivery-slip",
        ],
    }

# ==================== CORS ====================

@router.options("/{path:path}", include_in_schema=False)
def preflight(path: str):
    # Browser preflights never get here, CORSMiddleware answers them
    return Response(
        status_code=200,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": ", ".join(CORS_ALLOW_HEADERS),
        },
    )

# ==================== PAYMENT GATEWAYS ====================

@router.api_route("/{gateway}-payment", methods=["GET", "POST"])
async def gateway_payment(
    gateway: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    """init / verify come from the storefront, success / fail / cancel / ipn from the gateway"""
    adapter_class = GATEWAY_ADAPTERS.get(gateway)
    if adapter_class is None:
        return error_response(404, "Unknown payment gateway")

    params = await read_params(request)
    action = str(request.query_params.get("action") or params.get("action") or "").lower()

    if action == "init":
        order_id = params.get("orderId") or params.get("order_id")
        try:
            result = await run_in_threadpool(service.initiate, gateway, order_id, params.get("provider_id"))
        except PaymentError as e:
            logger.warning(f"{adapter_class.display_name} init for order {order_id} refused: {e.message}")
            return error_response(e.status_code, e.message)

        return schemas.PaymentInitResponse(
            success=True,
            gatewayUrl=result.gateway_url,
            reference=result.reference,
            **result.extra,
        )

    if action in CLIENT_VERIFY_ACTIONS:
        reference = params.get("reference") or params.get(adapter_class.reference_field)
        try:
            result = await run_in_threadpool(service.verify, gateway, reference, params.get("provider_id"))
        except PaymentError as e:
            return error_response(e.status_code, e.message)

        return schemas.PaymentVerifyResponse(
            success=result.confirmed,
            status=result.status,
            transaction_id=result.transaction_id,
            data=result.raw,
        )

    if action in CALLBACK_ACTIONS:
        outcome = await run_in_threadpool(service.handle_callback, gateway, action, params)
        if action == "ipn":
            # Answered to the gateway's server, not a browser
            return PlainTextResponse("IPN_RECEIVED")
        return RedirectResponse(url=outcome.redirect_url, status_code=302)

    return error_response(400, "Invalid action")

# ==================== CREDENTIAL VAULT ====================

@router.post("/encrypt-credentials", response_model=schemas.EncryptCredentialsResponse)
def encrypt_credentials(
    body: schemas.EncryptCredentialsRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
):
    """Encrypt gateway secrets before the admin console stores them"""
    vault: CredentialVault = request.app.state.vault
    if not vault.configured:
        logger.error("CREDENTIALS_ENCRYPTION_KEY not set, refusing to encrypt credentials")
        return error_response(500, "Encryption key not configured")

    encrypted = {}
    for field, value in body.credentials.items():
        if isinstance(value, str) and value.strip():
            encrypted[field] = vault.encrypt(value)
        else:
            encrypted[field] = value

    logger.info(f"Encrypted {len(encrypted)} credential field(s) for admin {admin_id}")
    return {"success": True, "encrypted": encrypted}

# ==================== DOCUMENTS ====================

def build_document(db: Session, user_id: str, order_id: Optional[str], renderer, label: str):
    try:
        order = crud.get_order(db, order_id) if order_id else None
        if not order:
            raise NotFoundError("Order not found")

        if order.user_id != user_id and not crud.is_admin(db, user_id):
            return JSONResponse(status_code=403, content={"error": "Unauthorized access"})

        logger.info(f"Generating {label} for order {order.id}")
        html = renderer(order, order.items, order.address, crud.get_invoice_settings(db))
        return {"success": True, "html": html, "order_number": order.order_number}
    except PaymentError as e:
        logger.error(f"Cannot generate {label} for order {order_id}: {e.message}")
        return JSONResponse(status_code=500, content={"error": e.message})
    except Exception:
        logger.exception(f"Error generating {label} for order {order_id}")
        return JSONResponse(status_code=500, content={"error": f"Failed to generate {label}"})

@router.post("/generate-invoice", response_model=schemas.DocumentResponse)
def generate_invoice(
    body: schemas.DocumentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return build_document(db, user_id, body.order_id, render_invoice, "invoice")

@router.post("/generate-delivery-slip", response_model=schemas.DocumentResponse)
def generate_delivery_slip(
    body: schemas.DocumentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return build_document(db, user_id, body.order_id, render_delivery_slip, "delivery slip")

# ==================== APP FACTORY ====================

def create_app(settings: Optional[Settings] = None, http_session: Optional[requests.Session] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    engine = make_engine(settings.database_url)
    init_db(engine)

    app = FastAPI(title="Storefront Payment Functions", version="1.0.0")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.http = http_session or requests.Session()
    app.state.vault = CredentialVault(settings.credentials_encryption_key, settings.encryption_mode)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_ALLOW_HEADERS,
    )

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    app.include_router(router)
    return app

# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8001)
