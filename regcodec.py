# regcodec.py
"""
Registration tokens.

A token is the URL-safe base64 form of the customer email with the padding
stripped, which fits Telegram's deep-link alphabet (A-Z a-z 0-9 _ -). It is
not a secret: it keeps raw emails out of links and gives a stable payload.
Telegram caps start payloads at 64 characters, so emails longer than 48
characters cannot get a registration link.
"""
import base64
import binascii

MAX_DEEP_LINK_PAYLOAD = 64


def encode(email: str) -> str:
    raw = base64.urlsafe_b64encode(email.encode("utf-8")).decode("ascii")
    return raw.rstrip("=")


def decode(token: str) -> str:
    """Best-effort inverse of encode(). Malformed tokens never raise; they
    come back as a string that will not match any registry row."""
    token = (token or "").strip()
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError):
        return token
    return raw.decode("utf-8", errors="replace")


def build_deep_link(bot_username: str, email: str) -> str:
    return f"https://t.me/{bot_username}?start={encode(email)}"
