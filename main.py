import hmac
import logging

import telnyx
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

import db
from app.services import reply_router, scheduler, verification
from app.types.delivery_contract import (
    LinkCodeRequest,
    LinkCodeResponse,
    TelegramUpdate,
    parse_slot,
)
from app.utils.channels import gateway_for
from app.utils.log import configure_logging
from config import settings

_LOGGER = logging.getLogger(__name__)

app = FastAPI()

# Create DB pool lazily and close on shutdown

@app.on_event("startup")
async def startup_event():
    configure_logging(settings.LOG_LEVEL)
    # Tables are managed via Alembic migrations

@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


def _secret_matches(provided: str | None, expected: str | None) -> bool:
    if not expected:
        return True  # dev mode: no secret configured
    return bool(provided) and hmac.compare_digest(provided, expected)


@app.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    return PlainTextResponse("OK")

# --------------------------------------------
# Delivery sweep trigger (cron / external invoker)
# --------------------------------------------
@app.api_route("/v1/cron/deliver", methods=["GET", "POST"])
async def cron_deliver(
    request: Request,
    slot_type: str | None = Query(None, alias="type"),
    x_cron_secret: str | None = Header(None),
):
    provided = x_cron_secret or request.query_params.get("secret")
    if not _secret_matches(provided, settings.CRON_SECRET):
        _LOGGER.warning("Unauthorized cron request from %s", request.client.host if request.client else "?")
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    slot = parse_slot(slot_type)
    if slot is None:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            'Invalid type parameter. Must be "morning" or "evening"',
        )

    try:
        report = await scheduler.run_sweep(slot)
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Delivery sweep failed slot=%s", slot)
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to run delivery sweep")

    results = [r.model_dump(mode="json") for r in report.results if r.status != "not_due"]
    return {
        "message": f"Processed {slot} prompts",
        "processed": len(results),
        "delivered": report.delivered,
        "failed": report.failed,
        "results": results,
    }

# --------------------------------------------
# Telegram inbound
# --------------------------------------------
def _parse_update(raw: object) -> TelegramUpdate | None:
    try:
        return TelegramUpdate.model_validate(raw)
    except ValidationError:
        return None


@app.post("/v1/telegram/webhook")
async def telegram_webhook(
    request: Request,
    background: BackgroundTasks,
    x_telegram_bot_api_secret_token: str | None = Header(None),
):
    if not _secret_matches(x_telegram_bot_api_secret_token, settings.TELEGRAM_WEBHOOK_SECRET):
        _LOGGER.warning("Unauthorized Telegram webhook attempt")
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    try:
        update = _parse_update(await request.json())
    except ValueError:
        update = None
    message = update.message if update else None
    if message is None or not message.text:
        _LOGGER.info("Ignoring non-text Telegram update")
        return {"ok": True}

    background.add_task(
        reply_router.handle_inbound, "telegram", str(message.chat.id), message.text
    )
    return {"ok": True}


@app.post("/v1/telegram/webhook/{user_id}")
async def telegram_user_webhook(
    user_id: str,
    request: Request,
    background: BackgroundTasks,
    x_telegram_bot_api_secret_token: str | None = Header(None),
):
    if not _secret_matches(x_telegram_bot_api_secret_token, settings.TELEGRAM_WEBHOOK_SECRET):
        _LOGGER.warning("Unauthorized Telegram webhook attempt user=%s", user_id)
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    try:
        update = _parse_update(await request.json())
    except ValueError:
        update = None
    message = update.message if update else None
    if message is None or not message.text:
        return {"ok": True}

    try:
        config = await db.get_config(user_id)
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Config lookup failed user=%s", user_id)
        return {"ok": True}
    if config is None:
        _LOGGER.warning("Bot config not found for user=%s", user_id)
        return {"ok": True}
    if str(message.chat.id) != (config.channel_identity or ""):
        _LOGGER.warning("Chat ID mismatch for user=%s", user_id)
        return {"ok": True}

    background.add_task(_route_reply, config, message.text)
    return {"ok": True}


async def _route_reply(config: db.DeliveryConfig, text: str) -> None:
    try:
        await reply_router.route(config, text, gateway_for(config.channel))
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Reply routing failed user=%s", config.user_id)

# --------------------------------------------
# SMS inbound (Telnyx)
# --------------------------------------------
@app.post("/v1/sms/telnyx", response_class=PlainTextResponse)
async def telnyx_webhook(request: Request, background: BackgroundTasks):
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")

    try:
        if settings.TELNYX_PUBLIC_KEY:
            telnyx.public_key = settings.TELNYX_PUBLIC_KEY
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            payload = event.data["payload"]
        else:  # dev mode: skip signature verification
            payload = (await request.json())["data"]["payload"]
    except Exception:  # noqa: BLE001
        raise HTTPException(400, "Bad signature")

    if payload.get("type") == "ping":
        return PlainTextResponse("PONG")

    # TelnyxObject -> dict if needed
    if hasattr(payload, "to_dict"):
        payload = payload.to_dict()

    sender = payload.get("from") or payload.get("from_", {})
    if hasattr(sender, "to_dict"):
        sender = sender.to_dict()
    from_num = (sender or {}).get("phone_number")
    text = (payload.get("text") or "").strip()

    if not from_num or not text:
        return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)

    background.add_task(reply_router.handle_inbound, "sms", from_num, text)
    return PlainTextResponse("OK")

# --------------------------------------------
# Link code issue (called by the dashboard backend)
# --------------------------------------------
@app.post("/v1/link/code", response_model=LinkCodeResponse)
async def issue_link_code(body: LinkCodeRequest, x_internal_token: str | None = Header(None)):
    if not _secret_matches(x_internal_token, settings.INTERNAL_API_TOKEN):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
    row = await verification.issue_code(body.user_id, body.timezone)
    return LinkCodeResponse(code=row.code, expires_at=row.expires_at)
