"""
Utility functions for phone numbers, channel prefixes and webhook signatures.
"""

import base64
import hmac
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Mapping, Optional, Tuple

from app.errors import Err, ErrorKind, Ok, Result
from app.models import Channel

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"
_WHATSAPP_PREFIX_RE = re.compile(r"^whatsapp:", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")


# =============================================================================
# Phone Numbers
# =============================================================================

def format_phone_number(phone_number: str, default_country_code: str = "+1") -> Result:
    """
    Format a phone number to E.164.

    - 10 digits: US number without country code, +1 is added
    - 11 digits starting with 1: US number, + is added
    - leading + with at least 10 digits: kept (punctuation removed)

    Returns:
        Ok(e164) or Err(VALIDATION) for anything else.
    """
    if not phone_number or not phone_number.strip():
        return Err(ErrorKind.VALIDATION, "Phone number is required")

    digits = _NON_DIGITS.sub("", phone_number)

    if len(digits) == 10:
        return Ok(f"{default_country_code}{digits}")
    if len(digits) == 11 and digits.startswith("1"):
        return Ok(f"+{digits}")
    if phone_number.strip().startswith("+") and len(digits) >= 10:
        return Ok(f"+{digits}")

    return Err(ErrorKind.VALIDATION, f"Invalid phone number format: {phone_number}")


def normalize_phone_for_lookup(phone_number: str) -> str:
    """E.164 form when the number can be formatted, otherwise the input unchanged."""
    result = format_phone_number(phone_number)
    return result.value if result.ok else phone_number


# =============================================================================
# Channels
# =============================================================================

def strip_channel_prefix(address: str) -> str:
    """Remove the provider's 'whatsapp:' marker from an endpoint."""
    return _WHATSAPP_PREFIX_RE.sub("", address or "")


def detect_channel(*addresses: str) -> str:
    """A 'whatsapp:' marker on any endpoint means WhatsApp, otherwise SMS."""
    for address in addresses:
        if address and _WHATSAPP_PREFIX_RE.match(address):
            return Channel.WHATSAPP
    return Channel.SMS


def address_for_channel(phone_number: str, channel: str) -> str:
    bare = strip_channel_prefix(phone_number)
    return f"{WHATSAPP_PREFIX}{bare}" if channel == Channel.WHATSAPP else bare


# =============================================================================
# Time
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_clock_time(value: str) -> Optional[Tuple[int, int]]:
    """(hours, minutes) from 'HH:MM[:SS]' or an ISO datetime, None if unparseable."""
    if not value:
        return None

    if "T" in value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc)
        return parsed.hour, parsed.minute

    parts = value.split(":")
    if len(parts) < 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return hours, minutes


def minute_window(now: datetime) -> str:
    """Rate-limit bucket key for the UTC minute containing `now`."""
    return f"{now.year}-{now.month}-{now.day}-{now.hour}-{now.minute}"


# =============================================================================
# Webhook Signatures
# =============================================================================

def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """
    Twilio request signature: base64 HMAC-SHA1 over the full URL followed by
    every form parameter name and value, sorted by name.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify the X-Twilio-Signature header of a webhook request.

    Args:
        url: Full request URL as configured in the provider console
        params: Form parameters of the request
        signature: Value of the X-Twilio-Signature header
        auth_token: Provider auth token

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False

    expected_signature = compute_twilio_signature(url, params, auth_token)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
