import os
import secrets
from contextlib import closing
from datetime import datetime, timezone
from urllib.parse import urlencode

import psycopg2
import requests
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse

from scripture_api.auth import (
    NAME_MAX_LEN,
    create_user,
    deactivate_user,
    get_user_by_email,
    get_user_by_id,
    hash_password,
    needs_password_upgrade,
    normalize_email,
    password_problem,
    update_last_login,
    update_password_hash,
    update_profile_name,
    validate_email,
    verify_password,
)
from scripture_api.billing_events import subscription_period_end
from scripture_api.billing_gateway import StripeGateway
from scripture_api.chat import build_messages, clean_message, generate_answer, stream_answer
from scripture_api.config import API_TITLE, API_VERSION, DB, AppConfig, load_config
from scripture_api.entitlements import EntitlementRecord, PgEntitlementStore
from scripture_api.errors import (
    ApiError,
    BillingUnavailable,
    LlmUnavailable,
    WebhookSignatureError,
    auth_error,
    billing_unavailable,
    validation_error,
)
from scripture_api.events import (
    log_api_event,
    log_billing_event,
    log_chat_event,
    reset_event_log,
)
from scripture_api.jwt_utils import TokenExpired, create_access_token, verify_access_token
from scripture_api.models import (
    AccountDeleteResponse,
    AuthLoginRequest,
    AuthMeResponse,
    AuthRegisterRequest,
    CancelSubscriptionResponse,
    ChatAnswerResponse,
    ChatAskRequest,
    CheckoutSessionResponse,
    HealthResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PlansResponse,
    PortalSessionResponse,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    SubscriptionStatusResponse,
    SyncSubscriptionResponse,
    TokenResponse,
    VerifySessionRequest,
    VerifySessionResponse,
    WebhookResponse,
)
from scripture_api.oauth_accounts import get_oauth_account, link_oauth_account
from scripture_api.oauth_google import (
    build_google_auth_url,
    exchange_code_for_tokens,
    fetch_google_userinfo,
    google_configured,
    new_pkce_pair,
)
from scripture_api.oauth_state import consume_oauth_state, store_oauth_state
from scripture_api.quota import QuotaGate, require_premium
from scripture_api.rate_limit import AUTH_LIMIT, CHAT_LIMIT, PAYMENT_LIMIT, enforce
from scripture_api.reconcile import ReconciliationEngine, verify_webhook_event
from scripture_api.sse import SSE_HEADERS, relay_answer

app = FastAPI(title=API_TITLE, version=API_VERSION)

CONFIG = load_config()

CORS_ALLOW_ALL = os.getenv("CORS_ALLOW_ALL", "0") == "1"
if CORS_ALLOW_ALL:
    allow_origins = ["*"]
else:
    raw_origins = os.getenv("CORS_ALLOW_ORIGINS", CONFIG.frontend_url)
    allow_origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After"],
)

EVENT_LOG_RESET_ON_STARTUP = os.getenv("EVENT_LOG_RESET_ON_STARTUP", "0") == "1"

PREMIUM_FEATURES = [
    "Unlimited scripture questions",
    "Save your chat history",
    "Priority responses",
    "Support our ministry",
    "Cancel anytime",
]


@app.on_event("startup")
def _reset_event_log_on_startup() -> None:
    if EVENT_LOG_RESET_ON_STARTUP:
        reset_event_log("startup")


def _error_response(status_code: int, code: str, message: str, headers: dict | None = None, **extra):
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, **extra}},
        headers=headers,
    )


@app.exception_handler(ApiError)
def handle_api_error(_request: Request, exc: ApiError):
    return _error_response(exc.status_code, exc.code, exc.message, exc.headers)


@app.exception_handler(BillingUnavailable)
def handle_billing_unavailable(_request: Request, exc: BillingUnavailable):
    log_billing_event("billing_provider_unavailable", {"error": type(exc.__cause__ or exc).__name__})
    err = billing_unavailable()
    return _error_response(err.status_code, err.code, err.message)


@app.exception_handler(LlmUnavailable)
def handle_llm_unavailable(_request: Request, _exc: LlmUnavailable):
    return _error_response(
        503,
        "llm_unavailable",
        "The answer service is temporarily unavailable. Please try again.",
    )


@app.exception_handler(HTTPException)
def handle_http_exception(_request: Request, exc: HTTPException):
    return _error_response(exc.status_code, "http_error", str(exc.detail), exc.headers)


@app.exception_handler(RequestValidationError)
def handle_validation_exception(_request: Request, exc: RequestValidationError):
    return _error_response(422, "validation_error", "invalid request", details=exc.errors())


@app.exception_handler(Exception)
def handle_unexpected_exception(_request: Request, exc: Exception):
    log_api_event("api_internal_error", {"error": type(exc).__name__})
    if CONFIG.development:
        return _error_response(500, "internal_error", "Something went wrong.", details=repr(exc))
    return _error_response(500, "internal_error", "Something went wrong.")


def get_config() -> AppConfig:
    return CONFIG


def get_conn():
    conn = psycopg2.connect(**DB)
    try:
        yield conn
    finally:
        conn.close()


def get_store(conn=Depends(get_conn)) -> PgEntitlementStore:
    return PgEntitlementStore(conn)


def get_gateway(config: AppConfig = Depends(get_config)) -> StripeGateway:
    return StripeGateway(
        config.stripe_secret_key,
        price_id=config.stripe_price_id,
        webhook_secret=config.stripe_webhook_secret,
    )


def get_engine(
    store=Depends(get_store),
    gateway=Depends(get_gateway),
    config: AppConfig = Depends(get_config),
) -> ReconciliationEngine:
    return ReconciliationEngine(store, gateway, config)


def get_event_applier(gateway=Depends(get_gateway), config: AppConfig = Depends(get_config)):
    # Webhooks connect only once the signature has been checked.
    def apply_event(event):
        with closing(psycopg2.connect(**DB)) as conn:
            return ReconciliationEngine(PgEntitlementStore(conn), gateway, config).apply(event)

    return apply_event


def get_gate(store=Depends(get_store), config: AppConfig = Depends(get_config)) -> QuotaGate:
    return QuotaGate(config, store)


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def _get_client_ip(request: Request) -> str:
    xff = request.headers.get("X-Forwarded-For", "")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def require_user(request: Request, conn=Depends(get_conn)) -> dict:
    token = _get_bearer_token(request)
    if not token:
        raise auth_error("Not authorized. Please log in.")
    try:
        payload = verify_access_token(token)
    except TokenExpired:
        raise auth_error("Your session has expired. Please log in again.")
    if not payload or not payload.get("sub"):
        raise auth_error("Not authorized. Invalid token.")
    user = get_user_by_id(conn, payload["sub"])
    if not user:
        raise auth_error("User not found.")
    if not user.get("is_active"):
        raise auth_error("Account has been deactivated.")
    return user


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _entitlement(user: dict) -> EntitlementRecord:
    return EntitlementRecord.from_row(user)


def _usage_payload(gate: QuotaGate, record: EntitlementRecord) -> dict:
    status = gate.can_proceed(record)
    return {
        "questions_today": gate.usage_today(record),
        "total_questions": record.usage_lifetime_count,
        "can_ask": status.allowed,
        "remaining": status.remaining,
        "reset_at": _iso(status.reset_at),
    }


def _token_payload(user: dict) -> dict:
    access_token, access_exp = create_access_token(user["user_id"], user["email"])
    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": access_exp - int(datetime.now(timezone.utc).timestamp()),
        "user": {
            "user_id": user["user_id"],
            "email": user["email"],
            "name": user.get("name"),
            "entitlement": user.get("entitlement") or "free",
        },
    }


@app.get("/health", response_model=HealthResponse)
def health():
    return {"status": "ok"}


@app.post("/v1/auth/register", response_model=TokenResponse)
def register(payload: AuthRegisterRequest, request: Request, conn=Depends(get_conn)):
    enforce(AUTH_LIMIT, _get_client_ip(request))
    email = normalize_email(payload.email)
    if not validate_email(email):
        log_api_event("auth_register_failed", {"reason": "invalid_email"})
        raise validation_error("Please provide a valid email.")
    problem = password_problem(payload.password)
    if problem:
        log_api_event("auth_register_failed", {"reason": "invalid_password"})
        raise validation_error(problem)
    name = (payload.name or "").strip() or None
    if name and len(name) > NAME_MAX_LEN:
        raise validation_error(f"Name cannot exceed {NAME_MAX_LEN} characters.")
    if get_user_by_email(conn, email):
        log_api_event("auth_register_failed", {"reason": "email_exists"})
        raise ApiError(409, "conflict", "An account with this email already exists.")
    try:
        user = create_user(conn, email, payload.password, name)
    except psycopg2.IntegrityError:
        conn.rollback()
        log_api_event("auth_register_failed", {"reason": "email_exists"})
        raise ApiError(409, "conflict", "An account with this email already exists.")
    update_last_login(conn, user["user_id"])
    conn.commit()
    log_api_event("auth_register_success", {"user_id": user["user_id"]})
    return _token_payload(user)


@app.post("/v1/auth/login", response_model=TokenResponse)
def login(payload: AuthLoginRequest, request: Request, conn=Depends(get_conn)):
    enforce(AUTH_LIMIT, _get_client_ip(request))
    email = normalize_email(payload.email)
    user = get_user_by_email(conn, email)
    if not user or not user.get("is_active"):
        log_api_event("auth_login_failed", {"reason": "invalid_credentials"})
        raise auth_error("Invalid email or password.")
    if not user.get("password_hash"):
        log_api_event("auth_login_failed", {"reason": "no_password"})
        raise validation_error(
            "This account does not use a password. Sign in the way you signed up."
        )
    if not verify_password(payload.password or "", user["password_hash"]):
        log_api_event("auth_login_failed", {"reason": "invalid_credentials"})
        raise auth_error("Invalid email or password.")
    if needs_password_upgrade(user["password_hash"]):
        update_password_hash(conn, user["user_id"], hash_password(payload.password))
    update_last_login(conn, user["user_id"])
    conn.commit()
    log_api_event("auth_login_success", {"user_id": user["user_id"]})
    return _token_payload(user)


@app.get("/v1/auth/google")
def google_start(request: Request):
    enforce(AUTH_LIMIT, _get_client_ip(request))
    if not google_configured():
        log_api_event("auth_oauth_start_failed", {"provider": "google", "reason": "not_configured"})
        raise ApiError(503, "oauth_unavailable", "Google sign-in is not configured.")
    state = secrets.token_urlsafe(24)
    code_verifier, code_challenge = new_pkce_pair()
    store_oauth_state(state, {"provider": "google", "code_verifier": code_verifier})
    log_api_event("auth_oauth_start", {"provider": "google"})
    return RedirectResponse(build_google_auth_url(state, code_challenge), status_code=302)


def _google_failure(config: AppConfig, reason: str) -> RedirectResponse:
    log_api_event("auth_oauth_failed", {"provider": "google", "reason": reason})
    return RedirectResponse(f"{config.frontend_url}/login?error=google_auth_failed", status_code=302)


@app.get("/v1/auth/google/callback")
def google_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    conn=Depends(get_conn),
    config: AppConfig = Depends(get_config),
):
    if error or not code or not state:
        return _google_failure(config, "access_denied" if error else "invalid_request")
    saved = consume_oauth_state(state)
    if not saved or saved.get("provider") != "google":
        return _google_failure(config, "invalid_state")
    try:
        token_data = exchange_code_for_tokens(code, saved.get("code_verifier") or "")
        access_token = token_data.get("access_token")
        if not access_token:
            return _google_failure(config, "token_missing")
        profile = fetch_google_userinfo(access_token)
    except requests.RequestException:
        return _google_failure(config, "request_failed")

    provider_user_id = profile.get("sub")
    email = normalize_email(profile.get("email") or "")
    if not provider_user_id or not validate_email(email):
        return _google_failure(config, "profile_missing")
    if not profile.get("email_verified"):
        return _google_failure(config, "email_unverified")
    profile_name = (profile.get("name") or "").strip()[:NAME_MAX_LEN] or None

    account = get_oauth_account(conn, "google", provider_user_id)
    if account:
        user = get_user_by_id(conn, account["user_id"])
    else:
        user = get_user_by_email(conn, email)
    if user is None:
        user = create_user(conn, email, None, profile_name, auth_provider="google")
    if not user.get("is_active"):
        return _google_failure(config, "inactive")
    link_oauth_account(conn, "google", provider_user_id, user["user_id"], email, profile_name)
    update_last_login(conn, user["user_id"])
    conn.commit()
    log_api_event("auth_oauth_success", {"provider": "google", "user_id": user["user_id"]})
    token, _exp = create_access_token(user["user_id"], user["email"])
    return RedirectResponse(
        f"{config.frontend_url}/auth/callback?{urlencode({'token': token})}", status_code=302
    )


@app.get("/v1/auth/me", response_model=AuthMeResponse)
def me(current_user=Depends(require_user), gate: QuotaGate = Depends(get_gate)):
    record = _entitlement(current_user)
    return {
        "user_id": record.user_id,
        "email": record.email,
        "name": current_user.get("name"),
        "auth_provider": current_user.get("auth_provider") or "local",
        "entitlement": record.entitlement,
        "entitlement_period_end": _iso(record.entitlement_period_end),
        "has_billing_customer": bool(record.billing_customer_ref),
        "created_at": _iso(current_user.get("created_at")),
        "last_login": _iso(current_user.get("last_login")),
        "usage": _usage_payload(gate, record),
    }


@app.put("/v1/auth/profile", response_model=ProfileUpdateResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    current_user=Depends(require_user),
    conn=Depends(get_conn),
):
    name = (payload.name or "").strip()
    if not name:
        raise validation_error("Name cannot be empty.")
    if len(name) > NAME_MAX_LEN:
        raise validation_error(f"Name cannot exceed {NAME_MAX_LEN} characters.")
    update_profile_name(conn, current_user["user_id"], name)
    conn.commit()
    log_api_event("auth_profile_updated", {"user_id": current_user["user_id"]})
    return {"user_id": current_user["user_id"], "name": name}


@app.put("/v1/auth/password", response_model=PasswordChangeResponse)
def change_password(
    payload: PasswordChangeRequest,
    current_user=Depends(require_user),
    conn=Depends(get_conn),
):
    if not current_user.get("password_hash"):
        raise validation_error("This account does not use a password.")
    if not verify_password(payload.current_password or "", current_user["password_hash"]):
        log_api_event("auth_password_change_failed", {"reason": "wrong_password"})
        raise auth_error("Current password is incorrect.")
    problem = password_problem(payload.new_password)
    if problem:
        raise validation_error(problem)
    update_password_hash(conn, current_user["user_id"], hash_password(payload.new_password))
    conn.commit()
    log_api_event("auth_password_changed", {"user_id": current_user["user_id"]})
    return {"changed": True}


@app.delete("/v1/auth/account", response_model=AccountDeleteResponse)
def delete_account(current_user=Depends(require_user), conn=Depends(get_conn)):
    deleted = deactivate_user(conn, current_user["user_id"])
    conn.commit()
    log_api_event("auth_account_deactivated", {"user_id": current_user["user_id"]})
    return {"deleted": deleted}


@app.post("/v1/chat/anonymous")
def chat_anonymous(payload: ChatAskRequest, request: Request):
    enforce(CHAT_LIMIT, f"anon:{_get_client_ip(request)}")
    message = clean_message(payload.message)
    messages = build_messages(message, [turn.model_dump() for turn in payload.history])
    log_chat_event("chat_anonymous", {"history_turns": len(payload.history)})
    return StreamingResponse(
        relay_answer(stream_answer(messages)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/v1/chat/ask", response_model=ChatAnswerResponse)
def chat_ask(
    payload: ChatAskRequest,
    current_user=Depends(require_user),
    gate: QuotaGate = Depends(get_gate),
):
    record = _entitlement(current_user)
    enforce(CHAT_LIMIT, record.user_id)
    require_premium(record)
    message = clean_message(payload.message)
    answer = generate_answer(build_messages(message, [turn.model_dump() for turn in payload.history]))
    updated = gate.record_usage(record) or record
    log_chat_event("chat_answered", {"user_id": record.user_id, "stream": False})
    return {
        "response": answer,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "usage": _usage_payload(gate, updated),
    }


def _record_streamed_usage(record: EntitlementRecord, config: AppConfig) -> None:
    # The request connection is closed before the body streams.
    try:
        with closing(psycopg2.connect(**DB)) as conn:
            QuotaGate(config, PgEntitlementStore(conn)).record_usage(record)
    except psycopg2.Error as exc:
        log_chat_event(
            "chat_usage_record_failed",
            {"user_id": record.user_id, "error": type(exc).__name__},
        )


@app.post("/v1/chat/ask/stream")
def chat_ask_stream(
    payload: ChatAskRequest,
    current_user=Depends(require_user),
    config: AppConfig = Depends(get_config),
):
    record = _entitlement(current_user)
    enforce(CHAT_LIMIT, record.user_id)
    require_premium(record)
    message = clean_message(payload.message)
    messages = build_messages(message, [turn.model_dump() for turn in payload.history])

    def on_complete(_full_response: str) -> None:
        _record_streamed_usage(record, config)
        log_chat_event("chat_answered", {"user_id": record.user_id, "stream": True})

    return StreamingResponse(
        relay_answer(stream_answer(messages), on_complete=on_complete),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/v1/billing/plans", response_model=PlansResponse)
def billing_plans(config: AppConfig = Depends(get_config)):
    return {
        "plans": [
            {
                "plan_id": "premium",
                "name": "ScriptureChat Subscription",
                "amount": config.premium_monthly_amount,
                "currency": "usd",
                "interval": "month",
                "features": PREMIUM_FEATURES,
            }
        ]
    }


@app.post("/v1/billing/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    current_user=Depends(require_user),
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: StripeGateway = Depends(get_gateway),
    config: AppConfig = Depends(get_config),
):
    record = _entitlement(current_user)
    enforce(PAYMENT_LIMIT, record.user_id)
    if record.is_premium:
        raise validation_error("You already have an active premium subscription.")
    if not config.stripe_price_id:
        raise BillingUnavailable("price id not configured")
    customer_ref = engine.ensure_customer(record, current_user.get("name"))
    session = gateway.create_checkout_session(
        customer_ref,
        record.user_id,
        success_url=f"{config.frontend_url}/dashboard?session_id={{CHECKOUT_SESSION_ID}}&success=true",
        cancel_url=f"{config.frontend_url}/dashboard?canceled=true",
    )
    log_billing_event("billing_checkout_created", {"user_id": record.user_id})
    return {"session_id": session["id"], "url": session.get("url")}


@app.post("/v1/billing/portal-session", response_model=PortalSessionResponse)
def create_portal_session(
    current_user=Depends(require_user),
    gateway: StripeGateway = Depends(get_gateway),
    config: AppConfig = Depends(get_config),
):
    record = _entitlement(current_user)
    enforce(PAYMENT_LIMIT, record.user_id)
    if not record.billing_customer_ref:
        raise validation_error("No subscription found. Please subscribe first.")
    url = gateway.create_portal_session(
        record.billing_customer_ref, return_url=f"{config.frontend_url}/dashboard"
    )
    return {"url": url}


@app.post("/v1/billing/verify-session", response_model=VerifySessionResponse)
def verify_session(
    payload: VerifySessionRequest,
    current_user=Depends(require_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    session_id = (payload.session_id or "").strip()
    if not session_id:
        raise validation_error("Session ID is required.")
    result = engine.verify_checkout(_entitlement(current_user), session_id)
    return {
        "activated": result.activated,
        "entitlement": result.entitlement,
        "payment_status": result.payment_status,
    }


@app.post("/v1/billing/sync-subscription", response_model=SyncSubscriptionResponse)
def sync_subscription(
    current_user=Depends(require_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    record = _entitlement(current_user)
    enforce(PAYMENT_LIMIT, record.user_id)
    result = engine.sync_subscription(record)
    entitlement = result.entitlement or record.entitlement
    return {"entitlement": entitlement, "changed": entitlement != record.entitlement}


@app.get("/v1/billing/subscription-status", response_model=SubscriptionStatusResponse)
def subscription_status(
    current_user=Depends(require_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    record = _entitlement(current_user)
    details = None
    if record.billing_subscription_ref:
        try:
            subscription = gateway.retrieve_subscription(record.billing_subscription_ref)
        except BillingUnavailable:
            log_billing_event("billing_status_details_failed", {"user_id": record.user_id})
        else:
            details = {
                "status": subscription.get("status"),
                "current_period_end": _iso(subscription_period_end(subscription)),
                "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            }
    return {
        "entitlement": record.entitlement,
        "entitlement_period_end": _iso(record.entitlement_period_end),
        "has_subscription": bool(record.billing_subscription_ref),
        "details": details,
    }


@app.post("/v1/billing/cancel-subscription", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    current_user=Depends(require_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    record = _entitlement(current_user)
    if not record.billing_subscription_ref:
        raise validation_error("No active subscription found.")
    subscription = gateway.set_cancel_at_period_end(record.billing_subscription_ref, True)
    log_billing_event("billing_cancel_requested", {"user_id": record.user_id})
    return {
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "current_period_end": _iso(subscription_period_end(subscription)),
    }


@app.post("/v1/billing/reactivate-subscription", response_model=CancelSubscriptionResponse)
def reactivate_subscription(
    current_user=Depends(require_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    record = _entitlement(current_user)
    if not record.billing_subscription_ref:
        raise validation_error("No subscription found.")
    subscription = gateway.set_cancel_at_period_end(record.billing_subscription_ref, False)
    log_billing_event("billing_reactivate_requested", {"user_id": record.user_id})
    return {
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "current_period_end": _iso(subscription_period_end(subscription)),
    }


@app.post("/v1/billing/webhook", response_model=WebhookResponse)
async def billing_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_gateway),
    config: AppConfig = Depends(get_config),
    apply_event=Depends(get_event_applier),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = verify_webhook_event(gateway, config, payload, signature)
        result = await run_in_threadpool(apply_event, event)
    except WebhookSignatureError as exc:
        log_billing_event("billing_webhook_rejected", {"reason": str(exc)})
        raise ApiError(400, "signature_error", "Webhook signature verification failed.")
    except ValueError as exc:
        log_billing_event("billing_webhook_malformed", {"reason": str(exc)})
        raise validation_error("Malformed webhook event.")
    except psycopg2.Error as exc:
        log_billing_event("billing_webhook_store_failed", {"error": type(exc).__name__})
        raise ApiError(503, "store_unavailable", "Entitlement store is unavailable.")
    log_billing_event(
        "billing_webhook_received",
        {"event": result.event_type, "outcome": result.outcome, "user_id": result.user_id},
    )
    return {"received": True}
