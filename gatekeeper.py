# gatekeeper.py
import asyncio
import hmac
import logging
import os
from typing import Optional

import httpx
import stripe
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi_utils.tasks import repeat_every

import regcodec
from errors import ConfigMissing, MessagingError
from mailer import RegistrationMailer
from messaging import TelegramClient
from models import EmailRequest, RegistrationLink, parse_update
from reconciler import Reconciler
from registry import SheetsRegistry, get_credential_handle
from settings import Settings, load_settings


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("stripe").setLevel(logging.WARNING)

STRIPE_CANCELLATION_EVENTS = {"customer.subscription.deleted"}


def build_reconciler(settings: Settings, http: httpx.AsyncClient) -> Reconciler:
    telegram = TelegramClient(settings.telegram_bot_token, http, settings.telegram_api_base)
    registry = SheetsRegistry(
        settings.spreadsheet_id,
        settings.registry_range,
        get_credential_handle(settings.google_credentials_file),
        http,
        settings.sheets_api_base,
    )
    return Reconciler(registry, telegram, settings.guarded_chat_id, settings.admin_chat_id)


async def run_event(name: str, coro):
    """Event boundary: nothing raised while handling an event escapes to the transport."""
    try:
        return await coro
    except Exception:
        logger.exception(f"Handling {name} failed")
        return None


def acknowledge() -> Response:
    """Fixed acknowledgement for inbound events: 200, no body."""
    return Response(status_code=200)


def _secret_matches(expected: Optional[str], received: Optional[str]) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected.encode(), (received or "").encode())


def _stripe_cancellation_email(customer_id: str) -> str:
    customer = stripe.Customer.retrieve(customer_id)
    metadata = customer.get("metadata") or {}
    return metadata.get("linked_email") or customer.get("email") or ""


def create_app(
    settings: Optional[Settings] = None,
    reconciler: Optional[Reconciler] = None,
    mailer: Optional[RegistrationMailer] = None,
) -> FastAPI:
    settings = settings or load_settings()
    http = None
    if reconciler is None:
        http = httpx.AsyncClient(timeout=settings.http_timeout)
        reconciler = build_reconciler(settings, http)
    if mailer is None and settings.mail_enabled:
        mailer = RegistrationMailer(settings.sendgrid_api_key, settings.mail_from)
    if settings.stripe_enabled:
        stripe.api_key = settings.stripe_secret_key

    app = FastAPI()
    app.state.settings = settings
    app.state.reconciler = reconciler

    @app.on_event("shutdown")
    async def close_http_client():
        if http is not None:
            await http.aclose()

    if settings.lapse_sweep_seconds > 0:
        @app.on_event("startup")
        @repeat_every(seconds=settings.lapse_sweep_seconds)
        async def sweep_lapsed_members():
            await run_event("lapse sweep", reconciler.sweep_lapsed())

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.post("/telegram")
    async def telegram_webhook(request: Request):
        received = request.headers.get("X-Telegram-Bot-Api-Secret-Token")
        if not _secret_matches(settings.telegram_webhook_secret, received):
            raise HTTPException(status_code=403, detail="Bad webhook secret")
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Update must be an object")

        update = parse_update(body)
        logger.info(f"Telegram update {body.get('update_id')}: {update.kind}")
        await run_event(f"telegram update {body.get('update_id')}", reconciler.handle_update(update))
        return acknowledge()

    @app.post("/cancel")
    async def cancel(cancellation: EmailRequest, request: Request):
        if not settings.cancel_webhook_secret:
            raise HTTPException(status_code=404, detail="Cancellation endpoint is not configured")
        if not _secret_matches(settings.cancel_webhook_secret, request.headers.get("X-Cancel-Secret")):
            raise HTTPException(status_code=403, detail="Bad cancellation secret")
        await run_event(f"cancellation for {cancellation.email}", reconciler.handle_cancellation(cancellation.email))
        return acknowledge()

    @app.post("/stripe_webhook")
    async def stripe_webhook(request: Request):
        if not settings.stripe_enabled:
            raise HTTPException(status_code=404, detail="Stripe is not configured")
        payload = await request.body()
        sig_header = request.headers.get("stripe-signature")
        if not sig_header:
            raise HTTPException(status_code=400, detail="Missing signature")
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid signature: {e}")
            raise HTTPException(status_code=400, detail="Invalid signature")

        if event["type"] not in STRIPE_CANCELLATION_EVENTS:
            logger.info(f"Ignoring Stripe event {event['type']}")
            return acknowledge()

        async def cancel_customer():
            customer_id = event["data"]["object"]["customer"]
            email = await asyncio.to_thread(_stripe_cancellation_email, customer_id)
            if not email:
                logger.warning(f"Stripe customer {customer_id} has no email; cancellation dropped")
                return None
            return await reconciler.handle_cancellation(email)

        await run_event(f"stripe event {event['id']}", cancel_customer())
        return acknowledge()

    async def build_link(email: str) -> RegistrationLink:
        email = email.strip()
        if not email:
            raise HTTPException(status_code=422, detail="email must not be blank")
        token = regcodec.encode(email)
        if len(token) > regcodec.MAX_DEEP_LINK_PAYLOAD:
            logger.error(f"Registration token for {email} is {len(token)} characters, over the deep-link limit")
            raise HTTPException(status_code=422, detail="email is too long for a registration link")
        try:
            me = await reconciler.messaging.who_am_i()
        except MessagingError as e:
            logger.error(f"Cannot build registration link: {e}")
            raise HTTPException(status_code=503, detail="Messaging platform unavailable")
        return RegistrationLink(
            email=email,
            token=token,
            link=regcodec.build_deep_link(me["username"], email),
        )

    @app.get("/registration-link", response_model=RegistrationLink)
    async def registration_link(email: str = Query(..., min_length=1)):
        return await build_link(email)

    @app.post("/registration-link/email")
    async def email_registration_link(payload: EmailRequest):
        if mailer is None:
            raise HTTPException(status_code=404, detail="Email delivery is not configured")
        link = await build_link(payload.email)
        try:
            status = await mailer.send_registration_link(payload.email, link.link)
        except Exception as e:
            logger.error(f"Error sending registration link to {payload.email}: {e}")
            raise HTTPException(status_code=502, detail="Email delivery failed")
        return {"ok": True, "status": status}

    return app


if __name__ == "__main__":
    import uvicorn

    try:
        application = create_app()
    except ConfigMissing as e:
        logger.critical(str(e))
        raise SystemExit(1)
    uvicorn.run(application, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
