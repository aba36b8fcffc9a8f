"""
GitHub organization SCIM integration module.

This module implements TargetAPIBase for GitHub's SCIM v2 endpoint for
organizations. It provisions, deprovisions and updates organization members
keyed by their primary email address.
"""

import logging
from typing import Dict, List, Any
from .base import TargetAPIBase, TargetAPIError

logger = logging.getLogger(__name__)

SCIM_USER_SCHEMA = 'urn:ietf:params:scim:schemas:core:2.0:User'
SCIM_PATCH_SCHEMA = 'urn:ietf:params:scim:api:messages:2.0:PatchOp'

# Flat attribute name -> SCIM PATCH path
ATTRIBUTE_PATHS = {
    'givenName': 'name.givenName',
    'familyName': 'name.familyName',
    'displayName': 'displayName',
    'userName': 'userName',
    'externalId': 'externalId',
    'active': 'active',
}


class GitHubSCIMAPI(TargetAPIBase):
    """
    GitHub SCIM API client implementation.

    Raw records produced by fetch_entities carry ``id``, ``userName``,
    ``email``, ``givenName``, ``familyName``, ``displayName``, ``externalId``
    and ``active``.
    """

    content_type = 'application/scim+json'
    accept = 'application/scim+json'

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)

        self.organization = config.get('organization')
        if not self.organization:
            raise TargetAPIError(f"GitHub SCIM target {self.name} requires 'organization'")

        self.page_size = config.get('page_size', 100)
        self.users_path = f"/scim/v2/organizations/{self.organization}/Users"

        logger.info(f"Initialized GitHub SCIM client for organization {self.organization}")

    def fetch_entities(self) -> List[Dict[str, Any]]:
        """Fetch every provisioned SCIM user, following startIndex pagination."""
        records = []
        start_index = 1

        while True:
            response = self.request('GET', self.users_path,
                                    params={'startIndex': start_index, 'count': self.page_size})
            resources = response.get('Resources') or []
            records.extend(self._flatten_user(user) for user in resources)

            total = int(response.get('totalResults', len(records)))
            logger.debug(f"Fetched {len(records)}/{total} SCIM users from {self.organization}")
            if not resources or len(records) >= total:
                break
            start_index += len(resources)

        logger.info(f"Retrieved {len(records)} SCIM users from {self.organization}")
        return records

    def _flatten_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        emails = user.get('emails') or []
        primary = next((e for e in emails if e.get('primary')), emails[0] if emails else {})
        name = user.get('name') or {}
        return {
            'id': user.get('id'),
            'userName': user.get('userName'),
            'email': primary.get('value') or user.get('userName'),
            'givenName': name.get('givenName'),
            'familyName': name.get('familyName'),
            'displayName': user.get('displayName'),
            'externalId': user.get('externalId'),
            'active': user.get('active', True),
        }

    def create_entity(self, key: str, attributes: Dict[str, Any]) -> str:
        """Provision a SCIM user whose primary email is ``key``."""
        payload = {
            'schemas': [SCIM_USER_SCHEMA],
            'userName': attributes.get('userName') or key,
            'name': {
                'givenName': attributes.get('givenName') or '',
                'familyName': attributes.get('familyName') or '',
            },
            'emails': [{'value': key, 'type': 'work', 'primary': True}],
            'active': True,
        }
        for optional in ('displayName', 'externalId'):
            if attributes.get(optional):
                payload[optional] = attributes[optional]

        response = self.request('POST', self.users_path, body=payload)
        user_id = response.get('id')
        if not user_id:
            raise TargetAPIError(f"SCIM create response for {key} missing id")

        logger.info(f"Provisioned SCIM user {key} with id {user_id}")
        return str(user_id)

    def remove_entity(self, entity_id: str) -> None:
        """Deprovision a SCIM user, removing them from the organization."""
        self.request('DELETE', f"{self.users_path}/{entity_id}")
        logger.info(f"Deprovisioned SCIM user {entity_id}")

    def update_entity(self, entity_id: str, attribute: str, value: Any) -> None:
        """Replace one attribute with a SCIM PatchOp."""
        path = ATTRIBUTE_PATHS.get(attribute)
        if not path:
            raise TargetAPIError(f"Attribute '{attribute}' is not supported by GitHub SCIM")

        payload = {
            'schemas': [SCIM_PATCH_SCHEMA],
            'Operations': [{'op': 'replace', 'path': path, 'value': value}],
        }
        self.request('PATCH', f"{self.users_path}/{entity_id}", body=payload)
        logger.info(f"Updated SCIM user {entity_id}: {path}")
