"""Server-rendered pages for the partner referral portal."""
from __future__ import annotations

import contextlib
import logging
import os
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import AsyncIterator, Dict, List, Mapping, Optional

from fastapi import Depends, FastAPI, Form, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import PortalSettings, load_settings
from .errors import LoadFailed, PortalError, ProviderError, SubmissionFailed, ValidationError
from .guard import AccessGuard
from .models import ReferralStats
from .provider import ProviderClient
from .referrals import BUSINESS_TYPES, FORM_FIELDS, TIME_IN_BUSINESS, ReferralService, ReferralSubmission
from .sessions import SessionStore

logger = logging.getLogger("partnerportal.web")

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

SESSION_COOKIE_NAME = "partnerportal_session"

REGISTRATION_PENDING_MESSAGE = (
    "Registration successful! Please check your email to confirm your account."
)
REGISTRATION_COMPLETE_MESSAGE = "Registration successful! Your account is ready to use."


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("PORTAL_TRUSTED_PROXIES")
    if not raw:
        return "*"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "*"


def _format_currency(value: Optional[Decimal]) -> str:
    amount = Decimal("0") if value is None else Decimal(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _format_date(value: datetime) -> str:
    return f"{value.month}/{value.day}/{value.year}"


def create_app(
    *,
    settings: Optional[PortalSettings] = None,
    provider: Optional[ProviderClient] = None,
    session_secret: Optional[str] = None,
) -> FastAPI:
    """Create the partner portal web application."""

    if provider is None or session_secret is None:
        if settings is None:
            settings = load_settings()

    owns_provider = provider is None
    if provider is None:
        assert settings is not None
        provider = ProviderClient.from_settings(settings)

    if session_secret is None and settings is not None:
        session_secret = settings.session_secret
    if not session_secret:
        raise RuntimeError("PORTAL_SESSION_SECRET must be configured to serve the partner portal")

    secure_cookie = settings.secure_cookies if settings is not None else False

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            if owns_provider:
                await provider.aclose()

    app = FastAPI(
        title="Partner Portal",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie=SESSION_COOKIE_NAME,
        https_only=secure_cookie,
        same_site="lax",
        max_age=60 * 60 * 24 * 7,
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.state.provider = provider

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.filters["currency"] = _format_currency
    templates.env.filters["short_date"] = _format_date
    templates.env.globals["now"] = datetime.now

    guard = AccessGuard(login_route="show_login")

    async def session_store(request: Request) -> AsyncIterator[SessionStore]:
        async with SessionStore.open(provider.auth(request.session)) as store:
            yield store

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _redirect(request: Request, route: str) -> RedirectResponse:
        return RedirectResponse(
            request.url_for(route),
            status_code=status.HTTP_303_SEE_OTHER,
        )

    def _referral_service(store: SessionStore) -> ReferralService:
        assert store.session is not None
        return ReferralService(provider.data(store.session))

    def _render_register(
        request: Request,
        values: Mapping[str, str],
        *,
        error: Optional[str] = None,
        success: Optional[str] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> HTMLResponse:
        return templates.TemplateResponse(
            request,
            "register.html",
            {"values": values, "error": error, "success": success},
            status_code=status_code,
        )

    def _render_new_referral(
        request: Request,
        store: SessionStore,
        values: Mapping[str, str],
        *,
        error: Optional[str] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> HTMLResponse:
        return templates.TemplateResponse(
            request,
            "new_referral.html",
            {
                "user": store.user,
                "values": values,
                "error": error,
                "business_types": BUSINESS_TYPES,
                "time_in_business_options": TIME_IN_BUSINESS,
            },
            status_code=status_code,
        )

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/", name="root")
    async def root(request: Request):
        return _redirect(request, "show_login")

    @app.get("/login", response_class=HTMLResponse, name="show_login")
    async def login_form(request: Request, store: SessionStore = Depends(session_store)):
        if store.is_authenticated:
            return _redirect(request, "dashboard")
        email = request.session.pop("login_email", "")
        return templates.TemplateResponse(
            request,
            "login.html",
            {"messages": _consume_flash(request), "email": email},
        )

    @app.post("/login", name="process_login")
    async def process_login(
        request: Request,
        email: str = Form(""),
        password: str = Form(""),
        store: SessionStore = Depends(session_store),
    ):
        try:
            await store.login(email, password)
        except PortalError as exc:
            logger.warning("Failed portal login attempt for %s: %s", email, exc.message)
            _flash(request, exc.message, category="error")
            request.session["login_email"] = email
            return _redirect(request, "show_login")

        if not store.is_authenticated:
            _flash(request, "Login failed. Please try again.", category="error")
            request.session["login_email"] = email
            return _redirect(request, "show_login")

        assert store.user is not None
        logger.info("Partner %s signed in to the portal", store.user.id)
        return _redirect(request, "dashboard")

    @app.get("/register", response_class=HTMLResponse, name="show_register")
    async def register_form(request: Request, store: SessionStore = Depends(session_store)):
        if store.is_authenticated:
            return _redirect(request, "dashboard")
        return _render_register(request, {})

    @app.post("/register", response_class=HTMLResponse, name="process_register")
    async def process_register(
        request: Request,
        email: str = Form(""),
        password: str = Form(""),
        first_name: str = Form(""),
        last_name: str = Form(""),
        company_name: str = Form(""),
        phone: str = Form(""),
        store: SessionStore = Depends(session_store),
    ):
        values = {
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "company_name": company_name,
            "phone": phone,
        }
        try:
            result = await store.register(email, password, first_name, last_name, company_name, phone)
        except ValidationError as exc:
            return _render_register(
                request, values, error=exc.message, status_code=status.HTTP_400_BAD_REQUEST
            )
        except PortalError as exc:
            logger.warning("Registration for %s was rejected: %s", email, exc.message)
            return _render_register(
                request, values, error=exc.message, status_code=status.HTTP_400_BAD_REQUEST
            )

        logger.info("Registration accepted for partner %s", result.user.id)
        message = (
            REGISTRATION_PENDING_MESSAGE if result.confirmation_required else REGISTRATION_COMPLETE_MESSAGE
        )
        return _render_register(request, values, success=message)

    @app.get("/logout", name="logout")
    async def logout(request: Request, store: SessionStore = Depends(session_store)):
        if store.is_authenticated:
            try:
                await store.logout()
            except ProviderError as exc:
                logger.warning("Sign out failed: %s", exc.message)
                _flash(request, exc.message, category="error")
                return _redirect(request, "dashboard")
        return _redirect(request, "show_login")

    @app.get("/dashboard", response_class=HTMLResponse, name="dashboard")
    async def dashboard(request: Request, store: SessionStore = Depends(session_store)):
        redirect = guard.check(request, store.snapshot)
        if redirect is not None:
            return redirect
        assert store.user is not None

        error: Optional[str] = None
        stats = ReferralStats()
        try:
            stats = await _referral_service(store).stats(store.user)
        except LoadFailed as exc:
            error = exc.message

        return templates.TemplateResponse(
            request,
            "dashboard.html",
            {
                "user": store.user,
                "stats": stats,
                "error": error,
                "messages": _consume_flash(request),
            },
        )

    @app.get("/new-referral", response_class=HTMLResponse, name="new_referral")
    async def new_referral(request: Request, store: SessionStore = Depends(session_store)):
        redirect = guard.check(request, store.snapshot)
        if redirect is not None:
            return redirect
        return _render_new_referral(request, store, {})

    @app.post("/new-referral", response_class=HTMLResponse, name="submit_referral")
    async def submit_referral(request: Request, store: SessionStore = Depends(session_store)):
        redirect = guard.check(request, store.snapshot)
        if redirect is not None:
            return redirect
        assert store.user is not None

        form = await request.form()
        values = {name: str(form.get(name) or "") for name in FORM_FIELDS}

        try:
            submission = ReferralSubmission.from_form(values)
        except ValidationError as exc:
            return _render_new_referral(
                request, store, values, error=exc.message, status_code=status.HTTP_400_BAD_REQUEST
            )

        try:
            await _referral_service(store).submit(store.user, submission)
        except SubmissionFailed as exc:
            return _render_new_referral(
                request, store, values, error=exc.message, status_code=status.HTTP_502_BAD_GATEWAY
            )

        _flash(request, "Referral submitted successfully.", category="success")
        return _redirect(request, "dashboard")

    @app.get("/history", response_class=HTMLResponse, name="history")
    async def history(request: Request, store: SessionStore = Depends(session_store)):
        redirect = guard.check(request, store.snapshot)
        if redirect is not None:
            return redirect
        assert store.user is not None

        error: Optional[str] = None
        referrals = []
        try:
            referrals = await _referral_service(store).history(store.user)
        except LoadFailed as exc:
            error = exc.message

        return templates.TemplateResponse(
            request,
            "history.html",
            {"user": store.user, "referrals": referrals, "error": error},
        )

    return app


__all__ = ["create_app", "REGISTRATION_PENDING_MESSAGE", "REGISTRATION_COMPLETE_MESSAGE"]
