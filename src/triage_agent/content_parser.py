"""
Gmail message payload parsing.

Turns a users.messages.get(format='full') response into a ParsedMessage:
    - From and Subject headers (first occurrence, case-insensitive names)
    - Body text: the first text/plain part found depth-first; when a message
      has no plain-text part, the first text/html part converted to Markdown
      with html2text
    - label ids, thread id and internal date

Example:
    >>> parsed = parse_gmail_message(service.users().messages().get(
    ...     userId='me', id=msg_id, format='full').execute())
    >>> parsed.sender, parsed.subject
"""
import base64
import binascii
import logging
from typing import Any, Dict, Optional

import html2text

from triage_agent.models import ParsedMessage

logger = logging.getLogger(__name__)


def html_to_markdown(html_body: str) -> str:
    """Convert an HTML body to Markdown (links kept, images dropped, no wrapping)."""
    h = html2text.HTML2Text()
    h.ignore_links = False
    h.ignore_images = True
    h.body_width = 0
    h.unicode_snob = True
    return h.handle(html_body).strip()


def decode_body_data(data: Optional[str]) -> str:
    """Decode Gmail's URL-safe base64 body data (padding optional)."""
    if not data:
        return ''
    padded = data + '=' * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode('utf-8', errors='replace')
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Could not decode message body data: {e}")
        return ''


def extract_headers(payload: Dict[str, Any]) -> Dict[str, str]:
    """Header name (lower-cased) to value; the first occurrence wins."""
    headers: Dict[str, str] = {}
    for header in payload.get('headers') or []:
        name = (header.get('name') or '').lower()
        if name and name not in headers:
            headers[name] = header.get('value') or ''
    return headers


def _find_part_text(payload: Dict[str, Any], mime_type: str) -> Optional[str]:
    if payload.get('mimeType') == mime_type:
        text = decode_body_data((payload.get('body') or {}).get('data'))
        if text:
            return text
    for part in payload.get('parts') or []:
        text = _find_part_text(part, mime_type)
        if text:
            return text
    return None


def extract_body(payload: Dict[str, Any]) -> str:
    """Plain-text body, falling back to HTML converted to Markdown, else ''."""
    plain = _find_part_text(payload, 'text/plain')
    if plain:
        return plain
    html = _find_part_text(payload, 'text/html')
    if html:
        logger.debug("No text/plain part found, converting text/html body")
        return html_to_markdown(html)
    return ''


def parse_gmail_message(message: Dict[str, Any]) -> ParsedMessage:
    payload = message.get('payload') or {}
    headers = extract_headers(payload)
    internal_date = message.get('internalDate')
    return ParsedMessage(
        id=message['id'],
        thread_id=message.get('threadId'),
        sender=headers.get('from', ''),
        subject=headers.get('subject', ''),
        body=extract_body(payload),
        label_ids=list(message.get('labelIds') or []),
        internal_date=int(internal_date) if internal_date else None,
    )
