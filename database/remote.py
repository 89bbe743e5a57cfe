"""
Client for the Google Apps Script web app that fronts the spreadsheet.

GET  <url>?action=sync        -> {"status": "success", "data": {<Sheet>: [rows...]}}
POST <url>  (text/plain JSON) -> {"action": create|update|delete, "sheet", "payload", "id"}

POST bodies are sent as text/plain so the script never sees a CORS preflight;
the script answers with a redirect whose body we do not rely on.
"""

import json
import logging
import time

import requests

logger = logging.getLogger(__name__)

SHEETS = ('Settings', 'Students', 'Packets', 'Questions', 'Exams', 'Results')
ACTIONS = ('create', 'update', 'delete')


class RemoteError(Exception):
    """The spreadsheet backend could not be reached or answered with an error."""


class AppsScriptClient:
    """Thin wrapper around one requests.Session bound to the script URL."""

    def __init__(self, url, timeout=15, session=None):
        url = (url or '').strip()
        # Trailing slash breaks the /exec endpoint
        if len(url) > 1 and url.endswith('/'):
            url = url[:-1]
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    @property
    def configured(self):
        return bool(self.url)

    def fetch_all(self):
        """Download every sheet. Returns a dict keyed by sheet name."""
        if not self.configured:
            raise RemoteError('No Apps Script URL configured')
        try:
            resp = self.http.get(
                self.url,
                params={'action': 'sync', 't': int(time.time() * 1000)},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            raise RemoteError(f'Sync request failed: {e}') from e
        except ValueError as e:
            raise RemoteError('Sync response is not JSON (is the web app shared with "Anyone"?)') from e

        if body.get('status') != 'success' or not isinstance(body.get('data'), dict):
            raise RemoteError(f"Sync rejected: {body.get('message', 'unknown error')}")
        return body['data']

    def send(self, action, sheet, payload, record_id=None):
        """Push one create/update/delete. Raises RemoteError on transport failure."""
        if action not in ACTIONS:
            raise ValueError(f'Unknown action {action!r}')
        if sheet not in SHEETS:
            raise ValueError(f'Unknown sheet {sheet!r}')
        if not self.configured:
            return
        body = json.dumps({'action': action, 'sheet': sheet, 'payload': payload, 'id': record_id})
        try:
            resp = self.http.post(
                self.url,
                data=body.encode('utf-8'),
                headers={'Content-Type': 'text/plain;charset=utf-8'},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise RemoteError(f'{action} {sheet}/{record_id} failed: {e}') from e

    def close(self):
        self.http.close()
