"""
Telegram alerts for operator-relevant lifecycle events.
"""
from __future__ import annotations

import logging

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

E_ERROR = "\U0001F6A8"
E_UNDO = "↩️"
E_TROPHY = "\U0001F3C6"


def send_telegram(message: str, parse_mode: str | None = "HTML") -> bool:
    """Send a Telegram message. Returns True if successful."""
    if not settings.TELEGRAM_ENABLED:
        return False
    token = settings.TELEGRAM_BOT_TOKEN
    chat_id = settings.TELEGRAM_CHAT_ID
    if not token or not chat_id:
        logger.debug("Telegram not configured (missing token or chat_id)")
        return False

    payload = {"chat_id": chat_id, "text": message}
    if parse_mode:
        payload["parse_mode"] = parse_mode
    try:
        resp = httpx.post(f"https://api.telegram.org/bot{token}/sendMessage", json=payload, timeout=10)
    except httpx.HTTPError as exc:
        logger.warning("Telegram send failed: %s", exc)
        return False
    if resp.status_code != 200:
        logger.warning("Telegram API error %s: %s", resp.status_code, resp.text[:200])
        return False
    return True


def notify_error(context: str, error: str = ""):
    msg = f"{E_ERROR} <b>ERROR</b>\n<b>Context:</b> {context}"
    if error:
        msg += f"\n<b>Error:</b> {error[:500]}"
    send_telegram(msg)


def notify_position_rolled_back(position_id: int, symbol: str, reason: str = "", realized_pnl=None):
    msg = f"{E_UNDO} <b>POSITION ROLLED BACK</b>\n<b>Position:</b> #{position_id} {symbol}"
    if realized_pnl is not None:
        msg += f"\n<b>PnL:</b> {realized_pnl}"
    if reason:
        msg += f"\n<b>Reason:</b> {reason[:500]}"
    send_telegram(msg)


def notify_position_closed(position_id: int, symbol: str, realized_pnl=None):
    msg = f"{E_TROPHY} <b>POSITION CLOSED</b>\n<b>Position:</b> #{position_id} {symbol}"
    if realized_pnl is not None:
        msg += f"\n<b>PnL:</b> {realized_pnl}"
    send_telegram(msg)
