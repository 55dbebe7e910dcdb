"""
OData v2 wire client used by the operation dispatcher, with CSRF token handling.
"""

import asyncio
import json
import re
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote, urlencode

import requests

from .constants import USER_AGENT
from .models import Destination, EntityType

# Key types written into the URL without quotes
UNQUOTED_KEY_TYPES = {
    'Edm.Byte', 'Edm.SByte', 'Edm.Int16', 'Edm.Int32', 'Edm.Int64',
    'Edm.Decimal', 'Edm.Double', 'Edm.Single',
}

# OData v2 literal prefixes, e.g. guid'...'
PREFIXED_KEY_TYPES = {
    'Edm.Guid': 'guid',
    'Edm.DateTime': 'datetime',
    'Edm.DateTimeOffset': 'datetimeoffset',
    'Edm.Time': 'time',
    'Edm.Binary': 'binary',
}


def encode_query_params(params):
    """Encode query parameters properly for OData compatibility.

    OData servers (especially SAP CAP backends) don't accept '+' for spaces
    in URL parameters. They require '%20' according to RFC 3986.
    """
    encoded = urlencode(params, doseq=True, safe='$')
    return encoded.replace('+', '%20')


def format_key_literal(value: Any, edm_type: str = 'Edm.String') -> str:
    """Render one key value as an OData v2 URL literal for its EDM type."""
    if edm_type == 'Edm.Boolean':
        return str(value).lower()
    if edm_type in UNQUOTED_KEY_TYPES:
        return quote(str(value), safe='')
    # Single quotes inside the value are doubled, then everything but the quotes is URL encoded
    escaped = quote(str(value).replace("'", "''"), safe="'")
    return PREFIXED_KEY_TYPES.get(edm_type, '') + "'" + escaped + "'"


def format_key_predicate(entity_type: EntityType, key_values: Dict[str, Any]) -> str:
    """Build the parenthesized key predicate for an entity URL.

    A single key becomes ``('value')``, ``(42)`` or ``(guid'...')`` depending on its
    type. Composite keys become ``(k1='a',k2=10)`` in declared key order.
    """
    types = {prop.name: prop.type for prop in entity_type.properties}
    if len(entity_type.keys) == 1:
        key_name = entity_type.keys[0]
        return '(' + format_key_literal(key_values[key_name], types.get(key_name, 'Edm.String')) + ')'
    key_parts = [f"{key_name}={format_key_literal(key_values[key_name], types.get(key_name, 'Edm.String'))}"
                 for key_name in entity_type.keys]
    return '(' + ','.join(key_parts) + ')'


def join_service_url(base_url: str, service_url: str) -> str:
    """Resolve a catalog service URL against the destination URL unless it is absolute."""
    if re.match(r'^https?://', service_url or ''):
        return service_url.rstrip('/')
    return f"{base_url.rstrip('/')}/{(service_url or '').lstrip('/')}".rstrip('/')


class EntityClient:
    """Performs single-entity-set CRUD calls against an OData v2 service.

    Every call opens its own ``requests.Session`` configured from the destination,
    so CSRF tokens and cookies never leak between callers with different users.
    """

    def __init__(self, verbose: bool = False, timeout: int = 30):
        self.verbose = verbose
        self.timeout = timeout

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Client VERBOSE] {message}", file=sys.stderr)

    def _new_session(self, destination: Destination) -> requests.Session:
        session = requests.Session()
        if destination.username and 'Authorization' not in destination.headers:
            session.auth = (destination.username, destination.password or '')
        session.headers.update({
            'Accept': 'application/json',
            'User-Agent': USER_AGENT,
            'Content-Type': 'application/json'
        })
        session.headers.update(destination.headers)
        return session

    def _fetch_csrf_token(self, session: requests.Session, service_root: str) -> Optional[str]:
        """Fetch CSRF token required by SAP OData services for modifying requests."""
        self._log_verbose(f"Fetching CSRF token from service root: {service_root}")
        try:
            response = session.get(service_root, headers={'X-CSRF-Token': 'Fetch'}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self._log_verbose(f"Failed to fetch CSRF token: {e}")
            return None

        csrf_token = None
        for header_name, header_value in response.headers.items():
            if header_name.lower() == 'x-csrf-token':
                csrf_token = header_value
                break

        if csrf_token and csrf_token.lower() not in ['fetch', 'required']:
            self._log_verbose(f"CSRF token fetched successfully: {csrf_token[:20]}...")
            return csrf_token
        self._log_verbose(f"No valid CSRF token from {service_root} (got: '{csrf_token}')")
        return None

    def _make_request(self, session: requests.Session, method: str, url: str, service_root: str,
                      requires_csrf: bool = False, params: Optional[Dict[str, Any]] = None,
                      **kwargs) -> requests.Response:
        """Send one request, handling CSRF fetch and a single refetch on validation failure."""
        headers = {}
        csrf_token = None
        if requires_csrf:
            csrf_token = self._fetch_csrf_token(session, service_root)
            if csrf_token:
                headers['X-CSRF-Token'] = csrf_token
            else:
                self._log_verbose("Failed to fetch CSRF token, proceeding without it")

        if params:
            encoded_params = encode_query_params(params)
            url = f"{url}&{encoded_params}" if '?' in url else f"{url}?{encoded_params}"

        self._log_verbose(f"Requesting: {method} {url}")
        response = session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)

        csrf_failed = (
            response.status_code == 403 and requires_csrf and
            ('csrf' in response.text.lower() or
             response.headers.get('x-csrf-token', '').lower() == 'required')
        )
        if csrf_failed:
            self._log_verbose("CSRF token validation failed, attempting to refetch...")
            csrf_token = self._fetch_csrf_token(session, service_root)
            if not csrf_token:
                error_detail = f"CSRF token required but refetch failed. Status: {response.status_code}"
                if response.text:
                    error_detail += f". Response: {response.text[:500]}"
                raise requests.exceptions.RequestException(error_detail, response=response)
            headers['X-CSRF-Token'] = csrf_token
            self._log_verbose("Retrying request with new CSRF token...")
            response = session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)

        return response

    def _parse_odata_error(self, response: requests.Response) -> str:
        """Extract the OData error message, falling back to the HTTP status line."""
        try:
            data = response.json()
        except ValueError:
            text = (response.text or '').strip()
            if text.startswith('<?xml'):
                match = re.search(r'<(?:message|Message)[^>]*>([^<]+)</(?:message|Message)>', text)
                if match:
                    return match.group(1)
            return text[:500] if text else f"HTTP {response.status_code}: {response.reason}"

        error = data.get('error') if isinstance(data, dict) else None
        if isinstance(error, dict):
            message = error.get('message')
            if isinstance(message, dict) and 'value' in message:
                return message['value']
            if isinstance(message, str):
                return message
            inner = error.get('innererror') or {}
            details = [str(d.get('message')) for d in inner.get('errordetails') or []
                       if isinstance(d, dict) and d.get('message')]
            if details:
                return "; ".join(details)
            return json.dumps(error)
        return f"HTTP {response.status_code}: {response.reason}"

    def _parse_odata_response(self, response: requests.Response) -> Any:
        """Unwrap the OData v2 ``d`` envelope, raising ValueError on HTTP errors."""
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as http_err:
            error_message = self._parse_odata_error(response)
            print(f"ERROR: OData HTTP Error: {response.status_code} {response.reason}. "
                  f"Message: {error_message}", file=sys.stderr)
            raise ValueError(f"OData request failed ({response.status_code}): {error_message}") from http_err

        if response.status_code == 204 or not response.content:
            return None

        try:
            data = response.json()
        except ValueError as e:
            print(f"ERROR: Non-JSON response received despite Accept header (Status: {response.status_code}).",
                  file=sys.stderr)
            raise ValueError(f"Failed to parse OData response: {e}") from e

        if isinstance(data, dict) and 'd' in data:
            data = data['d']
        if isinstance(data, dict) and isinstance(data.get('results'), list):
            return data['results']
        return data

    def _call(self, destination: Destination, service_url: str, method: str, entity_set: str,
              key_predicate: Optional[str] = None, params: Optional[Dict[str, Any]] = None,
              payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        service_root = join_service_url(destination.url, service_url)
        url = f"{service_root}/{entity_set}"
        if key_predicate is not None:
            url += key_predicate

        kwargs = {}
        if payload is not None:
            kwargs['json'] = payload
        requires_csrf = method != 'GET'

        with self._new_session(destination) as session:
            try:
                response = self._make_request(session, method, url, service_root,
                                              requires_csrf=requires_csrf, params=params, **kwargs)
            except requests.exceptions.RequestException as e:
                if e.response is not None:
                    error_details = self._parse_odata_error(e.response)
                    status_code = e.response.status_code
                else:
                    error_details = str(e)
                    status_code = 'N/A'
                print(f"ERROR: Error during {method} {url}: {e}", file=sys.stderr)
                raise ValueError(f"OData request failed ({status_code}): {error_details}") from e
            return response

    def _read(self, destination, service_url, entity_set, query_options=None) -> List[Any]:
        params = {'$format': 'json'}
        params.update(query_options or {})
        response = self._call(destination, service_url, 'GET', entity_set, params=params)
        results = self._parse_odata_response(response)
        if results is None:
            return []
        return results if isinstance(results, list) else [results]

    def _read_one(self, destination, service_url, entity_set, key_predicate, query_options=None) -> Any:
        params = {'$format': 'json'}
        params.update(query_options or {})
        response = self._call(destination, service_url, 'GET', entity_set,
                              key_predicate=key_predicate, params=params)
        return self._parse_odata_response(response)

    async def read(self, destination: Destination, service_url: str, entity_set: str,
                   query_options: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Read a collection, honoring $filter/$select/$expand/$orderby/$top/$skip."""
        return await asyncio.to_thread(self._read, destination, service_url, entity_set, query_options)

    async def read_one(self, destination: Destination, service_url: str, entity_set: str,
                       key_predicate: str, query_options: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._read_one, destination, service_url, entity_set, key_predicate,
                                       query_options)

    async def create(self, destination: Destination, service_url: str, entity_set: str,
                     payload: Dict[str, Any]) -> Any:
        response = await asyncio.to_thread(self._call, destination, service_url, 'POST', entity_set,
                                           None, None, payload)
        if response.status_code != 201:
            self._log_verbose(f"Warning: Create entity for {entity_set} returned status "
                              f"{response.status_code} (expected 201). Parsing response anyway.")
        return self._parse_odata_response(response)

    async def update(self, destination: Destination, service_url: str, entity_set: str,
                     key_predicate: str, payload: Dict[str, Any]) -> Union[Dict[str, Any], Any]:
        """Partial update via MERGE. 204 yields None; otherwise the returned entity.

        A 405 is reported like any other failure; the request is never retried as PUT.
        """
        response = await asyncio.to_thread(self._call, destination, service_url, 'MERGE', entity_set,
                                           key_predicate, None, payload)
        return self._parse_odata_response(response)

    async def delete(self, destination: Destination, service_url: str, entity_set: str,
                     key_predicate: str) -> None:
        response = await asyncio.to_thread(self._call, destination, service_url, 'DELETE', entity_set,
                                           key_predicate)
        self._parse_odata_response(response)
