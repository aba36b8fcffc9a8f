"""
GLPI asset-management integration module.

This module implements TargetAPIBase for the GLPI REST API (apirest.php). It keeps
GLPI inventory items (computers by default) in line with AD computer accounts,
keyed by item name.
"""

import logging
from typing import Dict, List, Any, Optional
from .base import TargetAPIBase, TargetAPIError, TargetAuthenticationError
from ad_reconcile.logging_setup import audit_logger

logger = logging.getLogger(__name__)


class GLPIAPI(TargetAPIBase):
    """
    GLPI REST API client implementation.

    Authentication is a session handshake: ``initSession`` with a user token
    (or Basic credentials) and optional application token, then every call
    carries the ``Session-Token`` header until ``killSession``.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)

        self.itemtype = config.get('itemtype', 'Computer')
        self.page_size = config.get('page_size', 100)
        self.force_purge = config.get('force_purge', False)
        self.app_token = self.auth_config.get('app_token')
        self.session_token: Optional[str] = None

        if self.app_token:
            self.auth_headers['App-Token'] = self.app_token

        logger.info(f"Initialized GLPI client for {self.itemtype} items at {self.base_url}")

    def authenticate(self) -> bool:
        """Open a GLPI API session."""
        headers = {}
        user_token = self.auth_config.get('user_token')
        if user_token:
            headers['Authorization'] = f"user_token {user_token}"
        elif 'Authorization' not in self.auth_headers:
            logger.error(f"GLPI target {self.name} has neither user_token nor basic credentials")
            return False

        try:
            response = self.request('GET', '/initSession', headers=headers)
        except TargetAuthenticationError as e:
            logger.error(f"GLPI session refused for {self.name}: {e}")
            audit_logger.log_authentication_attempt(self.name, 'glpi-api', False)
            return False

        self.session_token = response.get('session_token')
        if not self.session_token:
            raise TargetAPIError(f"GLPI initSession response missing session_token for {self.name}")

        # Session replaces the login credentials for all further calls
        self.auth_headers.pop('Authorization', None)
        self.auth_headers['Session-Token'] = self.session_token
        audit_logger.log_authentication_attempt(self.name, 'glpi-api', True)
        logger.info(f"Opened GLPI session for {self.name}")
        return True

    def close_connection(self):
        """Kill the GLPI session, then close the HTTP connection."""
        if self.session_token:
            token = self.session_token
            self.session_token = None
            try:
                self.request('GET', '/killSession')
                logger.debug(f"Closed GLPI session for {self.name}")
            except TargetAPIError as e:
                logger.warning(f"Failed to close GLPI session for {self.name}: {e}")
            finally:
                if self.auth_headers.get('Session-Token') == token:
                    del self.auth_headers['Session-Token']
        super().close_connection()

    def fetch_entities(self) -> List[Dict[str, Any]]:
        """Fetch every item of the configured itemtype, one range at a time."""
        records = []
        start = 0

        while True:
            end = start + self.page_size - 1
            try:
                page = self.request('GET', f"/{self.itemtype}/",
                                    params={'range': f"{start}-{end}", 'expand_dropdowns': 'false'})
            except TargetAPIError as e:
                # GLPI rejects a range starting past the last item
                if e.status_code == 400 and 'ERROR_RANGE_EXCEED_TOTAL' in str(e):
                    break
                raise

            if not isinstance(page, list):
                raise TargetAPIError(f"Unexpected GLPI listing response for {self.itemtype}: {page!r}")

            records.extend(page)
            if len(page) < self.page_size:
                break
            start += self.page_size

        logger.info(f"Retrieved {len(records)} {self.itemtype} items from GLPI")
        return records

    def create_entity(self, key: str, attributes: Dict[str, Any]) -> str:
        """Create an item named after ``key`` unless a name is mapped."""
        item = dict(attributes)
        item.setdefault('name', key)

        response = self.request('POST', f"/{self.itemtype}/", body={'input': item})
        item_id = response.get('id') if isinstance(response, dict) else None
        if not item_id:
            raise TargetAPIError(f"GLPI create response for {key} missing id: {response!r}")

        logger.info(f"Created GLPI {self.itemtype} {key} with id {item_id}")
        return str(item_id)

    def remove_entity(self, entity_id: str) -> None:
        """Delete an item; moved to the trash unless force_purge is set."""
        params = {'force_purge': 'true'} if self.force_purge else None
        response = self.request('DELETE', f"/{self.itemtype}/{entity_id}", params=params)
        self._check_item_status(response, entity_id, 'delete')
        logger.info(f"Removed GLPI {self.itemtype} {entity_id} (purge={self.force_purge})")

    def update_entity(self, entity_id: str, attribute: str, value: Any) -> None:
        response = self.request('PUT', f"/{self.itemtype}/{entity_id}",
                                body={'input': {attribute: value}})
        self._check_item_status(response, entity_id, 'update')
        logger.info(f"Updated GLPI {self.itemtype} {entity_id}: {attribute}")

    def _check_item_status(self, response: Any, entity_id: str, operation: str):
        """GLPI answers item operations with [{"<id>": bool, "message": str}]."""
        statuses = response if isinstance(response, list) else [response]
        for status in statuses:
            if isinstance(status, dict) and status.get(str(entity_id)) is False:
                raise TargetAPIError(
                    f"GLPI refused to {operation} {self.itemtype} {entity_id}: {status.get('message', '')}")
