"""
Telegram notifications. Never log token or chat_id.

TelegramNotifier queues messages and sends them from a daemon thread so a
slow or failing Telegram API never blocks a tick. Sending never raises.
"""

from __future__ import annotations
import logging
import queue
import threading
from decimal import Decimal
from typing import Optional

import requests

from momentum_bot.core.types import Direction, ExitReason, Signal

logger = logging.getLogger("momentum_bot.utils.telegram")

_STOP = object()


def send_telegram(text: str, bot_token: str = "", chat_id: str = "") -> bool:
    """Send message to Telegram. Returns True on success. Uses empty strings if not configured."""
    if not bot_token or not chat_id:
        logger.debug("Telegram not configured, skipping message (len=%d)", len(text))
        return False
    try:
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text}
        r = requests.post(url, json=payload, timeout=10)
        if r.status_code != 200:
            logger.warning("Telegram send failed: %s %s", r.status_code, r.text[:200])
            return False
        return True
    except Exception as e:
        logger.exception("Telegram error: %s", e)
        return False


class TelegramNotifier:
    """Fire-and-forget notifier. send() enqueues; a worker thread delivers."""

    def __init__(self, bot_token: str = "", chat_id: str = "", max_queue: int = 500):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def start(self) -> None:
        if self._thread is not None or not self.enabled:
            return
        self._thread = threading.Thread(target=self._run, name="telegram", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Telegram queue full on shutdown, dropping pending messages")
        self._thread.join(timeout)
        self._thread = None

    def send(self, text: str) -> None:
        if not self.enabled:
            logger.debug("Telegram not configured, skipping message (len=%d)", len(text))
            return
        try:
            self._queue.put_nowait(text)
        except queue.Full:
            logger.warning("Telegram queue full, dropping message (len=%d)", len(text))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            send_telegram(str(item), self.bot_token, self.chat_id)


def _d(value: Optional[Decimal], places: int = 4) -> str:
    if value is None:
        return "-"
    return f"{value:.{places}f}"


def format_entry(signal: Signal, quantity: Decimal, fill_price: Optional[Decimal] = None) -> str:
    icon = "🟢" if signal.direction is Direction.LONG else "🔴"
    return (
        f"{icon} {signal.direction.value} {signal.instrument}\n"
        f"Entry: {_d(fill_price or signal.entry_price)}  Qty: {quantity}\n"
        f"Stop: {_d(signal.stop_loss)}  Target: {_d(signal.take_profit)}\n"
        f"Confidence: {signal.confidence:.2f}\n"
        f"{signal.reason}"
    )


def format_exit(
    instrument: str,
    direction: Direction,
    entry_price: Decimal,
    exit_price: Optional[Decimal],
    reason: ExitReason,
    pnl: Optional[Decimal] = None,
) -> str:
    icon = "✅" if pnl is not None and pnl > 0 else "⛔"
    lines = [
        f"{icon} CLOSED {direction.value} {instrument}",
        f"Reason: {reason.value}",
        f"Entry: {_d(entry_price)}  Exit: {_d(exit_price)}",
    ]
    if pnl is not None:
        lines.append(f"PnL: {pnl:+.2f} USDT")
    return "\n".join(lines)


def format_rejected(signal: Signal, why: str) -> str:
    return (
        f"⚠️ Signal rejected: {signal.direction.value} {signal.instrument} @ {_d(signal.entry_price)}\n"
        f"Reason: {why}"
    )


def format_alert(text: str) -> str:
    return f"🚨 {text}"
