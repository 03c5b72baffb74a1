"""Telegram delivery — Bot API send helper."""

from __future__ import annotations

import re

import httpx
from loguru import logger

TELEGRAM_API = "https://api.telegram.org/bot{token}"
MESSAGE_LIMIT = 4000


async def send_message(token: str, chat_id: int | str, text: str) -> None:
    """Send a message via Telegram Bot API.

    Long texts are split into several messages.  Raises httpx.HTTPStatusError
    when Telegram rejects the plain-text fallback as well.
    """
    url = f"{TELEGRAM_API.format(token=token)}/sendMessage"

    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
        for chunk in split_message(text):
            resp = await client.post(
                url,
                json={"chat_id": chat_id, "text": md_to_html(chunk), "parse_mode": "HTML"},
            )
            # Fallback to plain text if HTML parsing fails
            if resp.status_code != 200:
                logger.debug(f"Telegram HTML send failed ({resp.status_code}), retrying as plain text")
                resp = await client.post(url, json={"chat_id": chat_id, "text": chunk})
            resp.raise_for_status()


def make_telegram_sender(token: str):
    """Adapt send_message to the DeliveryQueue ``sender(target, text)`` shape."""

    async def _send(target: str, text: str) -> None:
        await send_message(token, target, text)

    return _send


def split_message(text: str, limit: int = MESSAGE_LIMIT) -> list[str]:
    """Split text into chunks of at most ``limit`` chars, preferring line breaks."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def md_to_html(text: str) -> str:
    """Convert Telegram-style markdown to Telegram HTML.

    Handles: *bold*, **bold**, _italic_, `code`, ```code blocks```, [links](url)
    """
    # Preserve code blocks
    blocks: list[str] = []

    def save_block(m: re.Match) -> str:
        blocks.append(m.group(1))
        return f"%%CODEBLOCK{len(blocks) - 1}%%"

    text = re.sub(r"```(?:\w*\n)?(.*?)```", save_block, text, flags=re.DOTALL)

    # Escape HTML entities
    text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")

    text = re.sub(r"`([^`]+)`", r"<code>\1</code>", text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"\*([^*\n]+)\*", r"<b>\1</b>", text)
    text = re.sub(r"(?<!\w)_([^_\n]+)_(?!\w)", r"<i>\1</i>", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2">\1</a>', text)

    # Restore code blocks
    for i, block in enumerate(blocks):
        escaped = block.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = text.replace(f"%%CODEBLOCK{i}%%", f"<pre>{escaped}</pre>")

    return text
