"""
Entity normalizer.

Projects raw source or target records (dictionaries produced by the LDAP client
or a target API module) into Entities with a case-normalized comparison key.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ad_reconcile.engine.models import (
    Action, Entity, MalformedRecordError, Origin, Result, Status,
    REASON_MALFORMED_RECORD, utc_now
)
from ad_reconcile.engine.validator import is_active, is_valid_email, parse_bool

logger = logging.getLogger(__name__)

KEY_FORMATS = ('email', 'hostname', None)


def normalize_key(value: Any) -> str:
    """Case-normalize a comparison key."""
    if value is None:
        return ''
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ''
    return str(value).strip().lower()


class EntityNormalizer:
    """
    Turns raw records into Entities.

    The ``disabled`` and ``expires`` attributes are the only keys with a fixed
    meaning; they are coerced here so downstream validation can rely on their
    types.
    """

    def __init__(self, key_field: str, id_field: Optional[str] = None,
                 key_format: Optional[str] = None,
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize normalizer.

        Args:
            key_field: Raw record field holding the comparison key
            id_field: Raw record field holding the target system's own id
            key_format: Optional key shape check ('email' or 'hostname')
            clock: Time source for the eligibility check
        """
        if key_format not in KEY_FORMATS:
            raise ValueError(f"Unsupported key format: {key_format}")

        self.key_field = key_field
        self.id_field = id_field
        self.key_format = key_format
        self.clock = clock

    def normalize(self, raw_record: Dict[str, Any], origin: Origin) -> Entity:
        """
        Normalize one raw record.

        Raises:
            MalformedRecordError: If the key is missing, blank or badly shaped,
                or a known attribute carries an unusable value
        """
        key = normalize_key(raw_record.get(self.key_field))
        if not key:
            raise MalformedRecordError(f"missing key field '{self.key_field}'")

        if self.key_format == 'email' and not is_valid_email(key):
            raise MalformedRecordError(f"key '{key}' is not a valid email address")
        if self.key_format == 'hostname' and any(ch.isspace() for ch in key):
            raise MalformedRecordError(f"key '{key}' is not a valid hostname")

        attributes = dict(raw_record)

        if attributes.get('disabled') in (None, ''):
            attributes.pop('disabled', None)
        else:
            disabled = parse_bool(attributes['disabled'])
            if disabled is None:
                raise MalformedRecordError(f"invalid disabled flag {attributes['disabled']!r}")
            attributes['disabled'] = disabled

        if 'expires' in attributes:
            attributes['expires'] = self._parse_expires(attributes['expires'])

        entity_id = None
        if self.id_field and raw_record.get(self.id_field) not in (None, ''):
            entity_id = str(raw_record[self.id_field])

        return Entity(
            key=key,
            attributes=attributes,
            origin=origin,
            eligible=is_active(attributes, self.clock()),
            entity_id=entity_id
        )

    def normalize_all(self, records: List[Dict[str, Any]],
                      origin: Origin) -> Tuple[List[Entity], List[Result]]:
        """
        Normalize a collection, dropping malformed records.

        Returns:
            Tuple of (entities, skipped results for dropped records)
        """
        entities = []
        results = []
        # A malformed source record would have been a create, a target one a removal
        action = Action.CREATE if origin is Origin.SOURCE else Action.REMOVE

        for raw_record in records:
            try:
                entities.append(self.normalize(raw_record, origin))
            except MalformedRecordError as e:
                subject = self._describe(raw_record)
                logger.warning(f"Dropping malformed {origin.value} record {subject}: {e}")
                results.append(Result(
                    subject_key=subject,
                    action=action,
                    status=Status.SKIPPED,
                    detail=f"{REASON_MALFORMED_RECORD}: {e}",
                    timestamp=self.clock()
                ))

        logger.debug(f"Normalized {len(entities)} {origin.value} entities, dropped {len(results)}")
        return entities, results

    def _parse_expires(self, value: Any) -> Optional[datetime]:
        if value in (None, ''):
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
            except ValueError:
                raise MalformedRecordError(f"invalid expiration timestamp {value!r}")
        raise MalformedRecordError(f"invalid expiration timestamp {value!r}")

    def _describe(self, raw_record: Dict[str, Any]) -> str:
        """Best-effort label for a record that has no usable key."""
        for field_name in ('dn', 'name', 'userName', self.id_field or 'id', 'id'):
            value = raw_record.get(field_name)
            if value not in (None, ''):
                return str(value)
        return '<unknown>'
