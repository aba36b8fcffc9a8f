"""
Pure validation predicates used by the normalizer and the action planner.

Nothing in this module performs I/O or keeps state; the current time is always
passed in by the caller.
"""

import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from ad_reconcile.engine.models import Entity

# local@domain.tld: one '@', no whitespace, dotted domain with a 2+ letter TLD
EMAIL_PATTERN = re.compile(r"[^@\s]+@(?:[A-Za-z0-9-]+\.)+[A-Za-z]{2,}")

_TRUE_STRINGS = {'true', 'yes', '1', 'on'}
_FALSE_STRINGS = {'false', 'no', '0', 'off', ''}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_active(subject: Union[Entity, Mapping[str, Any]], now: datetime) -> bool:
    """
    Decide whether an account is eligible for action.

    An account is inactive when it carries a true ``disabled`` flag, or an
    ``expires`` timestamp strictly earlier than ``now``. No expiration means
    the account never expires.

    Args:
        subject: Entity or raw attribute mapping
        now: Reference time for the expiration check

    Returns:
        True if the account is active
    """
    attributes = subject.attributes if isinstance(subject, Entity) else subject

    if attributes.get('disabled') is True:
        return False

    expires = attributes.get('expires')
    if expires is not None and _as_utc(expires) < _as_utc(now):
        return False

    return True


def matches_pattern(value: Any, pattern: Optional[str]) -> bool:
    """
    Whole-string regex match.

    A partial match never passes. An empty pattern imposes no constraint, and
    an empty or missing value never matches a non-empty pattern.
    """
    if not pattern:
        return True
    if value is None:
        return False

    text = normalize_value(value)
    if not text:
        return False

    return re.fullmatch(pattern, text) is not None


def is_valid_email(value: Any) -> bool:
    """Return True if value has the shape ``local@domain.tld``."""
    if not isinstance(value, str):
        return False
    return EMAIL_PATTERN.fullmatch(value.strip()) is not None


def normalize_value(value: Any) -> str:
    """Canonical string form used when comparing source and target values."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if isinstance(value, (list, tuple)):
        return ','.join(normalize_value(item) for item in value)
    return str(value).strip()


def parse_bool(value: Any) -> Optional[bool]:
    """Coerce a flag value to bool; returns None if it is not recognizable."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None
