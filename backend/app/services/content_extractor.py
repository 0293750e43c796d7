"""
Plain-text extraction for Gmail API messages.

A message fetched with ``format=full`` carries a ``payload`` tree: each node
has a ``mimeType``, an optional ``body.data`` (base64url-encoded) and optional
child ``parts``. Resolution order, first non-empty result wins:

  1. the top-level body payload
  2. the first text/plain part anywhere in the tree (depth-first)
  3. the first text/html part, tags stripped and whitespace collapsed
  4. the first part of any type with decodable data

The caller decides what counts as "too short to use"; this module returns
whatever it found, including an empty string.
"""

import base64
import binascii
import html
import logging
import re
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def decode_body_data(data: Optional[str]) -> str:
    """
    Decode a Gmail base64url body string to text.

    Gmail uses the URL-safe alphabet and may drop the trailing padding, so the
    alphabet is mapped back (``-`` → ``+``, ``_`` → ``/``) and the padding
    restored before standard decoding. Undecodable data yields "".
    """
    if not data:
        return ""
    normalized = data.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        raw = base64.b64decode(normalized)
    except (binascii.Error, ValueError) as e:
        logger.debug(f"Base64 decode error: {e}")
        return ""
    return raw.decode("utf-8", errors="replace")


def html_to_text(markup: str) -> str:
    """Strip tags, unescape entities and collapse runs of whitespace."""
    text = _TAG_RE.sub(" ", markup)
    text = html.unescape(text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def _part_data(part: dict) -> str:
    return decode_body_data((part.get("body") or {}).get("data"))


def _find_part(node: dict, predicate: Callable[[dict], bool]) -> str:
    """Depth-first search for the first part satisfying predicate with data."""
    for part in node.get("parts") or []:
        if predicate(part):
            text = _part_data(part)
            if text:
                return text
        nested = _find_part(part, predicate)
        if nested:
            return nested
    return ""


def _is_mime(mime_type: str) -> Callable[[dict], bool]:
    return lambda part: (part.get("mimeType") or "").lower() == mime_type


def extract_body(message: Any) -> str:
    """
    Return the plain-text body of a Gmail message.

    Accepts either a raw Gmail message dict (with a ``payload`` key) or an
    object exposing a ``payload`` attribute, such as mailbox_client's
    CandidateMessage.
    """
    payload = message.get("payload") if isinstance(message, dict) else getattr(message, "payload", None)
    payload = payload or {}

    top_level = _part_data(payload)
    if top_level:
        if (payload.get("mimeType") or "").lower() == "text/html":
            return html_to_text(top_level)
        return top_level.strip()

    plain = _find_part(payload, _is_mime("text/plain"))
    if plain:
        return plain.strip()

    markup = _find_part(payload, _is_mime("text/html"))
    if markup:
        return html_to_text(markup)

    return _find_part(payload, lambda part: True).strip()
