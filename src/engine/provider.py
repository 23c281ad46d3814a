"""Remote resource-management API client.

The executor consumes the Provider protocol. HttpProvider implements it
over a small JSON protocol:

    POST   /resources          {kind, attributes}  -> {id, status, attributes, error}
    GET    /resources/{id}                          -> {id, status, attributes, error}
    PUT    /resources/{id}     {attributes}         -> {id, status, attributes, error}
    DELETE /resources/{id}                          -> {id, status} (404 counts as deleted)

Mutating calls carry an Idempotency-Key header so a retried request does
not create a second resource. Operations may be asynchronous: a non-terminal
status is polled on GET /resources/{id} until it is one of TERMINAL_STATUSES.
Only timeouts on reads and polls are retried, with bounded exponential
backoff.
"""

import logging
import time
import uuid
from typing import Optional, Protocol, runtime_checkable

import requests
import urllib3

from common import poll_until, retry_with_backoff
from engine.errors import NotFoundError, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {'succeeded', 'failed', 'canceled', 'deleted'}
FAILED_STATUSES = {'failed', 'canceled'}


@runtime_checkable
class Provider(Protocol):
    """Capability the executor uses to change remote resources."""

    def create(self, kind: str, attributes: dict, token: str) -> dict:
        """Create a resource; returns its attributes including 'id'."""

    def read(self, resource_id: str) -> dict:
        """Return current attributes; raises NotFoundError if gone."""

    def update(self, resource_id: str, attributes: dict, token: str) -> dict:
        """Update a resource in place; returns its attributes including 'id'."""

    def delete(self, resource_id: str, token: str) -> None:
        """Delete a resource; succeeds if it is already gone."""


class HttpProvider:
    """Provider speaking the JSON resource protocol over requests."""

    def __init__(
        self,
        endpoint: str,
        token: str,
        insecure: bool = False,
        request_timeout: float = 30,
        poll_interval: float = 2,
        poll_timeout: float = 600,
        read_retries: int = 4,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client.

        Args:
            endpoint: Base URL (e.g., https://api.example.test)
            token: Bearer token
            insecure: Skip TLS verification (self-signed endpoints)
            request_timeout: Per-request timeout in seconds
            poll_interval: Seconds between status polls
            poll_timeout: Give up waiting for a terminal status after this long
            read_retries: Attempts for reads and polls that time out
            session: Optional preconfigured session (tests)
        """
        self.endpoint = endpoint.rstrip('/')
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.read_retries = read_retries
        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f'Bearer {token}'
        self.session.headers['Accept'] = 'application/json'
        if insecure:
            # Suppress SSL warnings for self-signed certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self.session.verify = False

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, token: Optional[str] = None,
                 body: Optional[dict] = None) -> requests.Response:
        headers = {'Idempotency-Key': token} if token else {}
        url = f"{self.endpoint}{path}"
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(method, url, json=body, headers=headers,
                                        timeout=self.request_timeout)
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(f"Timeout on {method} {path}") from e
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"Cannot connect to {self.endpoint}: {e}", code='E402') from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {url} failed: {e}") from e

    def _check(self, resp: requests.Response, what: str, resource_id: str = '') -> dict:
        status = resp.status_code
        if status == 404:
            raise NotFoundError(resource_id or what)
        if status in (401, 403):
            raise ProviderError(f"{what}: credentials rejected ({status})", code='E401', status=status)
        if status in (408, 504):
            raise TransientProviderError(f"{what}: provider timed out ({status})")
        if status >= 400:
            raise ProviderError(f"{what} rejected: {status} {self._error_text(resp)}", status=status)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"{what}: invalid JSON response", status=status) from e
        if not isinstance(data, dict):
            raise ProviderError(f"{what}: expected a JSON object", status=status)
        return data

    @staticmethod
    def _error_text(resp: requests.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(data, dict) and data.get('error'):
            return str(data['error'])
        return resp.text[:200]

    def _get(self, resource_id: str) -> dict:
        def _call() -> dict:
            resp = self._request('GET', f'/resources/{resource_id}')
            return self._check(resp, f"read {resource_id}", resource_id)
        return retry_with_backoff(_call, (TransientProviderError,), attempts=self.read_retries,
                                  description=f"read {resource_id}")

    def _wait(self, body: dict, what: str, gone_ok: bool = False) -> dict:
        """Poll until the operation reaches a terminal status."""
        status = body.get('status', 'succeeded')
        if status not in TERMINAL_STATUSES:
            resource_id = body.get('id')
            if not resource_id:
                raise ProviderError(f"{what}: pending response carries no id")

            def _fetch() -> dict:
                try:
                    return self._get(resource_id)
                except NotFoundError:
                    if gone_ok:
                        return {'id': resource_id, 'status': 'deleted'}
                    raise

            body = poll_until(
                _fetch,
                lambda b: b.get('status', 'succeeded') in TERMINAL_STATUSES,
                timeout=self.poll_timeout,
                interval=self.poll_interval,
                description=what,
            )
            if body is None:
                raise ProviderError(f"{what}: no terminal status after {self.poll_timeout}s", code='E406')
            status = body.get('status', 'succeeded')

        if status in FAILED_STATUSES:
            raise ProviderError(f"{what} {status}: {body.get('error') or 'no detail'}", code='E405')
        return body

    @staticmethod
    def _attributes(body: dict) -> dict:
        attributes = dict(body.get('attributes') or {})
        attributes['id'] = body['id']
        return attributes

    # -------------------------------------------------------------------------
    # Verbs
    # -------------------------------------------------------------------------

    def create(self, kind: str, attributes: dict, token: str) -> dict:
        what = f"create {kind}"
        start = time.time()
        body = self._check(self._request('POST', '/resources', token, {'kind': kind, 'attributes': attributes}), what)
        if 'id' not in body:
            raise ProviderError(f"{what}: response carries no id")
        body = self._wait(body, what)
        logger.debug(f"{what} -> {body['id']} in {time.time() - start:.1f}s")
        return self._attributes(body)

    def read(self, resource_id: str) -> dict:
        return self._attributes(self._get(resource_id))

    def update(self, resource_id: str, attributes: dict, token: str) -> dict:
        what = f"update {resource_id}"
        resp = self._request('PUT', f'/resources/{resource_id}', token, {'attributes': attributes})
        body = self._check(resp, what, resource_id)
        body.setdefault('id', resource_id)
        return self._attributes(self._wait(body, what))

    def delete(self, resource_id: str, token: str) -> None:
        what = f"delete {resource_id}"
        try:
            body = self._check(self._request('DELETE', f'/resources/{resource_id}', token), what, resource_id)
        except NotFoundError:
            logger.debug(f"{resource_id} already gone")
            return
        body.setdefault('id', resource_id)
        self._wait(body, what, gone_ok=True)


def request_token(run_id: str, address: str, action: str) -> str:
    """Deterministic idempotency token for one action of one run."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f'iac-engine:{run_id}:{address}:{action}'))

