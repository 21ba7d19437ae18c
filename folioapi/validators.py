"""FOLIO API VALIDATORS"""

import ipaddress
import re
import unicodedata

import bleach
from dateutil import parser as date_parser

from folioapi.errors import ValidationError
from folioapi.models.audit_event import EVENT_TYPES
from folioapi.models.auth_attempt import OUTCOMES
from folioapi.utils.durations import to_naive_utc

IDENTIFIER_REGEX = re.compile(r"^[A-Za-z0-9\.\+_@-]{1,255}$")
PARTITION_REGEX = re.compile(r"^(global|identifier:.{1,255})$")
MAX_PER_PAGE = 500
MAX_REASON_LENGTH = 500


def sanitize_text(text, max_length=None):
    """Strip markup from free text, keeping international characters."""
    if not text:
        return text

    text = bleach.clean(str(text).strip(), tags=[], strip=True)
    text = unicodedata.normalize("NFC", text)
    if max_length and len(text) > max_length:
        text = text[:max_length].strip()
    return text


def validate_identifier(identifier, field="identifier"):
    """Accept an account identifier (usually an email) or ``ip:<address>``."""
    if not identifier or not isinstance(identifier, str):
        raise ValidationError("Identifier is required", field)
    identifier = identifier.strip()

    if identifier.startswith("ip:"):
        try:
            ipaddress.ip_address(identifier[3:])
        except ValueError:
            raise ValidationError("Invalid IP identifier", field) from None
        return identifier

    if not IDENTIFIER_REGEX.match(identifier):
        raise ValidationError("Invalid identifier format", field)
    return identifier.lower()


def validate_partition(partition):
    if partition is None or partition == "":
        return "global"
    if not PARTITION_REGEX.match(partition):
        raise ValidationError("Invalid audit partition", "partition")
    return partition


def parse_timestamp(value, field):
    """ISO 8601 timestamp to naive UTC; None passes through."""
    if value is None or value == "":
        return None
    try:
        return to_naive_utc(date_parser.isoparse(value))
    except (ValueError, OverflowError):
        raise ValidationError(f"{field} must be an ISO 8601 timestamp", field) from None


def parse_sequence(value, field):
    if value is None or value == "":
        return None
    try:
        sequence = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field) from None
    if sequence < 1:
        raise ValidationError(f"{field} must be >= 1", field)
    return sequence


def parse_sequence_range(from_value, to_value):
    from_sequence = parse_sequence(from_value, "from")
    to_sequence = parse_sequence(to_value, "to")
    if (
        from_sequence is not None
        and to_sequence is not None
        and from_sequence > to_sequence
    ):
        raise ValidationError("from must not be greater than to", "from")
    return from_sequence, to_sequence


def parse_pagination(page, per_page, default_per_page=50):
    try:
        page = int(page) if page not in (None, "") else 1
        per_page = int(per_page) if per_page not in (None, "") else default_per_page
    except (TypeError, ValueError):
        raise ValidationError("page and per_page must be integers", "page") from None
    if page < 1:
        raise ValidationError("page must be >= 1", "page")
    if per_page < 1 or per_page > MAX_PER_PAGE:
        raise ValidationError(
            f"per_page must be between 1 and {MAX_PER_PAGE}", "per_page"
        )
    return page, per_page


def validate_outcome(outcome):
    if outcome in (None, ""):
        return None
    if outcome not in OUTCOMES:
        raise ValidationError(
            f"outcome must be one of {', '.join(OUTCOMES)}", "outcome"
        )
    return outcome


def validate_event_type(event_type):
    if event_type in (None, ""):
        return None
    if event_type not in EVENT_TYPES:
        raise ValidationError("Unknown audit event type", "event_type")
    return event_type


def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def validate_reason(reason):
    if reason is None:
        return None
    if not isinstance(reason, str):
        raise ValidationError("reason must be a string", "reason")
    return sanitize_text(reason, max_length=MAX_REASON_LENGTH) or None
