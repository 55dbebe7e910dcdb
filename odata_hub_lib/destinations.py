"""
Destination resolution for discovery (technical user) and execution (end user) calls.

Destinations are looked up in the ``destinations`` / ``DESTINATIONS`` environment
variable first (a JSON list of ``{name, url, username, password}`` entries, handy for
local development) and then in the managed destination service bound through
``VCAP_SERVICES``.
"""

import json
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests

from .constants import DEFAULT_DESTINATION_NAME, USER_AGENT
from .errors import DestinationError
from .models import Destination

ENV_DESTINATION_VARS = ('destinations', 'DESTINATIONS')


def _timestamp() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]


class DestinationService:
    """Client for the managed destination service REST API."""

    def __init__(self, credentials: Dict[str, Any], verbose: bool = False, timeout: int = 30):
        missing = [k for k in ('uri', 'url', 'clientid', 'clientsecret') if not credentials.get(k)]
        if missing:
            raise ValueError(f"Destination service credentials are missing: {', '.join(missing)}")
        self.credentials = credentials
        self.verbose = verbose
        self.timeout = timeout

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            print(f"[{_timestamp()} DestinationService VERBOSE] {message}", file=sys.stderr)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None,
                         verbose: bool = False) -> Optional['DestinationService']:
        """Build a client from the ``destination`` binding in VCAP_SERVICES, if any."""
        environ = os.environ if environ is None else environ
        raw = environ.get('VCAP_SERVICES')
        if not raw:
            return None
        try:
            services = json.loads(raw)
        except json.JSONDecodeError as e:
            print(f"ERROR: VCAP_SERVICES is not valid JSON: {e}", file=sys.stderr)
            return None
        bindings = services.get('destination') or []
        if not bindings:
            if verbose:
                print(f"[{_timestamp()} DestinationService VERBOSE] No destination service binding found "
                      f"in VCAP_SERVICES. Continuing with environment-based destinations.", file=sys.stderr)
            return None
        return cls(bindings[0].get('credentials', {}), verbose=verbose)

    def _fetch_service_token(self, name: str) -> str:
        """Client credentials token for the destination service itself."""
        token_url = f"{self.credentials['url'].rstrip('/')}/oauth/token"
        self._log_verbose(f"Fetching destination service token from {token_url}")
        response = requests.post(
            token_url,
            data={'grant_type': 'client_credentials', 'client_id': self.credentials['clientid']},
            auth=(self.credentials['clientid'], self.credentials['clientsecret']),
            headers={'Accept': 'application/json', 'User-Agent': USER_AGENT},
            timeout=self.timeout
        )
        response.raise_for_status()
        try:
            token = response.json().get('access_token')
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise DestinationError(name, f"Destination service token response for '{name}' has no access_token")
        return token

    def resolve(self, name: str, user_token: Optional[str] = None) -> Optional[Destination]:
        """Look up a destination. Returns None when the service does not know the name."""
        service_token = self._fetch_service_token(name)
        url = (f"{self.credentials['uri'].rstrip('/')}"
               f"/destination-configuration/v1/destinations/{quote(name, safe='')}")
        headers = {
            'Authorization': f"Bearer {service_token}",
            'Accept': 'application/json',
            'User-Agent': USER_AGENT,
        }
        if user_token:
            # Principal propagation: the service exchanges the user token for the destination
            headers['X-user-token'] = user_token

        self._log_verbose(f"Requesting: GET {url} {'with' if user_token else 'without'} user token")
        response = requests.get(url, headers=headers, timeout=self.timeout)
        if response.status_code == 404:
            self._log_verbose(f"Destination '{name}' not found in destination service")
            return None
        response.raise_for_status()
        return self._to_destination(name, response.json(), user_token)

    def _to_destination(self, name: str, data: Dict[str, Any], user_token: Optional[str]) -> Destination:
        config = data.get('destinationConfiguration') or {}
        if not config.get('URL'):
            raise DestinationError(name, f"Destination '{name}' has no URL configured")

        headers = {}
        for token in data.get('authTokens') or []:
            if token.get('error'):
                raise DestinationError(name, f"Destination '{name}' token retrieval failed: {token['error']}")
            http_header = token.get('http_header') or {}
            if http_header.get('key') and http_header.get('value'):
                headers[http_header['key']] = http_header['value']
            elif token.get('value'):
                headers['Authorization'] = f"{token.get('type', 'Bearer')} {token['value']}"

        return Destination(
            name=config.get('Name', name),
            url=config['URL'],
            username=config.get('User'),
            password=config.get('Password'),
            headers=headers,
            credential_mode='user' if user_token else 'technical',
            source='destination-service'
        )


class CredentialResolver:
    """Resolves destinations for the discovery and execution roles.

    The end-user token is never stored here. Execution callers pass it with each
    call, so concurrent requests on behalf of different users cannot race.
    """

    def __init__(self, discovery_destination_name: Optional[str] = None,
                 execution_destination_name: Optional[str] = None,
                 destination_service: Optional[DestinationService] = None,
                 environ: Optional[Mapping[str, str]] = None, verbose: bool = False):
        self.environ = os.environ if environ is None else environ
        self.verbose = verbose
        default_name = self.environ.get('SAP_DESTINATION_NAME', DEFAULT_DESTINATION_NAME)
        self.discovery_destination_name = (discovery_destination_name
                                           or self.environ.get('SAP_DISCOVERY_DESTINATION_NAME')
                                           or default_name)
        self.execution_destination_name = (execution_destination_name
                                           or self.environ.get('SAP_EXECUTION_DESTINATION_NAME')
                                           or default_name)
        self.destination_service = destination_service

    @classmethod
    def from_environment(cls, discovery_destination_name: Optional[str] = None,
                         execution_destination_name: Optional[str] = None,
                         verbose: bool = False) -> 'CredentialResolver':
        return cls(
            discovery_destination_name=discovery_destination_name,
            execution_destination_name=execution_destination_name,
            destination_service=DestinationService.from_environment(verbose=verbose),
            verbose=verbose
        )

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            print(f"[{_timestamp()} Destinations VERBOSE] {message}", file=sys.stderr)

    def resolve_discovery(self) -> Destination:
        """Discovery always runs as the technical user."""
        self._log_verbose(f"Fetching discovery destination: {self.discovery_destination_name}")
        return self.resolve(self.discovery_destination_name, user_token=None)

    def resolve_execution(self, user_token: Optional[str] = None, use_user_token: bool = True) -> Destination:
        """Execution runs as the end user when a token is given and the caller did not opt out."""
        self._log_verbose(f"Fetching execution destination: {self.execution_destination_name}")
        return self.resolve(self.execution_destination_name, user_token if use_user_token else None)

    def _env_destinations(self) -> Optional[List[Dict[str, Any]]]:
        for var in ENV_DESTINATION_VARS:
            raw = self.environ.get(var)
            if not raw:
                continue
            try:
                destinations = json.loads(raw)
            except json.JSONDecodeError as e:
                self._log_verbose(f"Failed to load destinations from environment variable '{var}': {e}")
                return None
            if isinstance(destinations, list):
                return [d for d in destinations if isinstance(d, dict)]
            self._log_verbose(f"Environment variable '{var}' is not a JSON list, ignoring it")
            return None
        return None

    def _from_environment(self, name: str) -> Optional[Destination]:
        destinations = self._env_destinations()
        if not destinations:
            return None

        entry = next((d for d in destinations if d.get('name') == name), None)
        if entry is not None:
            self._log_verbose(f"Retrieved destination '{name}' from environment variable")
        elif len(destinations) == 1:
            entry = destinations[0]
            self._log_verbose(f"Using the only configured environment destination '{entry.get('name')}'")
        else:
            return None

        if not entry.get('url'):
            self._log_verbose(f"Environment destination '{entry.get('name')}' has no url, ignoring it")
            return None
        return Destination(
            name=entry.get('name') or name,
            url=entry['url'],
            username=entry.get('username'),
            password=entry.get('password'),
            credential_mode='technical',
            source='environment'
        )

    def resolve(self, name: str, user_token: Optional[str] = None) -> Destination:
        self._log_verbose(f"Fetching destination: {name} {'with' if user_token else 'without'} user token")
        destination = self._from_environment(name)
        if destination:
            return destination

        if self.destination_service is not None:
            try:
                destination = self.destination_service.resolve(name, user_token)
            except requests.exceptions.RequestException as e:
                print(f"ERROR: Failed to get destination '{name}': {e}", file=sys.stderr)
                raise DestinationError(name, f"Failed to get destination '{name}': {e}") from e
            if destination:
                self._log_verbose(f"Retrieved destination '{name}' from destination service")
                return destination

        raise DestinationError(name)
