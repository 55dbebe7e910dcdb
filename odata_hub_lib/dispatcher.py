"""
Validates and executes a single CRUD operation against one cataloged entity.
"""

import sys
from datetime import datetime
from typing import Any, Dict, Optional

from .client import EntityClient, format_key_predicate
from .destinations import CredentialResolver
from .errors import CapabilityError, MissingKeyPropertyError, ODataHubError, UpstreamError
from .models import EntityType, ExecuteRequest, ExecuteResult, Operation, ServiceCatalog

# Discrete request fields and the query option each one maps to
QUERY_OPTION_FIELDS = [
    ('filter_string', '$filter'),
    ('select_string', '$select'),
    ('expand_string', '$expand'),
    ('orderby_string', '$orderby'),
    ('top_number', '$top'),
    ('skip_number', '$skip'),
]

# Capability flag each write operation requires
REQUIRED_CAPABILITY = {
    Operation.CREATE: ('creatable', 'create'),
    Operation.UPDATE: ('updatable', 'update'),
    Operation.DELETE: ('deletable', 'delete'),
}


def _escape_quotes(value: Any) -> str:
    return str(value).replace("'", "''")


def build_key_value(entity: EntityType, parameters: Optional[Dict[str, Any]]) -> str:
    """Render the key of one entity from the supplied parameters.

    A single key yields the raw value as a string. Composite keys yield
    ``k1='v1',k2='v2'`` in declared key order, with quotes inside values doubled.
    """
    parameters = parameters or {}
    for key_name in entity.keys:
        if parameters.get(key_name) is None:
            raise MissingKeyPropertyError(
                key_name, entity.keys,
                f"Pass every key property of {entity.name} in 'parameters': {', '.join(entity.keys)}"
            )
    if len(entity.keys) == 1:
        return str(parameters[entity.keys[0]])
    return ",".join(f"{name}='{_escape_quotes(parameters[name])}'" for name in entity.keys)


def build_query_options(request: ExecuteRequest) -> Dict[str, Any]:
    """Map discrete fields to $-options, then let the legacy queryOptions object overwrite them."""
    options = {}
    for field_name, option in QUERY_OPTION_FIELDS:
        value = getattr(request, field_name)
        if value is not None and value != '':
            options[option] = value

    for name, value in (request.query_options or {}).items():
        if value is None:
            continue
        option = name if name.startswith("$") else f"${name}"
        options[option] = value
    return options


class OperationDispatcher:
    """Turns an ExecuteRequest into one EntityClient call. Never raises for domain failures."""

    def __init__(self, catalog: ServiceCatalog, resolver: CredentialResolver,
                 client: Optional[EntityClient] = None, verbose: bool = False):
        self.catalog = catalog
        self.resolver = resolver
        self.client = client or EntityClient(verbose=verbose)
        self.verbose = verbose

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Dispatcher VERBOSE] {message}", file=sys.stderr)

    build_key_value = staticmethod(build_key_value)
    build_query_options = staticmethod(build_query_options)

    @staticmethod
    def _check_capability(entity: EntityType, operation: Operation):
        required = REQUIRED_CAPABILITY.get(operation)
        if required is None:
            return
        flag, verb = required
        if not getattr(entity, flag):
            raise CapabilityError(
                f"Entity '{entity.name}' does not support {verb} operations",
                f"Supported operations for {entity.name}: {entity.capabilities_summary()}"
            )

    async def execute(self, request: ExecuteRequest, user_token: Optional[str] = None) -> ExecuteResult:
        """Run one operation on behalf of the caller identified by ``user_token``."""
        try:
            result, description = await self._execute(request, user_token)
        except ODataHubError as e:
            self._log_verbose(f"{e.error_type}: {e}")
            return ExecuteResult(success=False, error=str(e), error_type=e.error_type, suggestion=e.suggestion)
        return ExecuteResult(success=True, result=result, operation_description=description)

    async def _execute(self, request: ExecuteRequest, user_token: Optional[str]):
        operation = Operation.parse(request.operation)
        query_options = build_query_options(request)

        service = self.catalog.find_service(request.service_id)
        entity = service.find_entity(request.entity_name)
        self._check_capability(entity, operation)

        parameters = dict(request.parameters or {})
        key = key_predicate = None
        if operation in (Operation.READ_SINGLE, Operation.UPDATE, Operation.DELETE):
            key = build_key_value(entity, parameters)
            key_predicate = format_key_predicate(entity, parameters)

        destination = self.resolver.resolve_execution(user_token=user_token, use_user_token=request.use_user_token)
        entity_set = entity.set_name
        description = f"{operation.value} {entity.name} in {service.id}"
        if key is not None:
            description += f" with key {key}"
        self._log_verbose(f"Executing {description} as {destination.credential_mode} user")

        try:
            if operation == Operation.READ:
                result = await self.client.read(destination, service.url, entity_set, query_options)
            elif operation == Operation.READ_SINGLE:
                single_options = {k: v for k, v in query_options.items() if k in ('$select', '$expand')}
                result = await self.client.read_one(destination, service.url, entity_set, key_predicate,
                                                    single_options)
            elif operation == Operation.CREATE:
                result = await self.client.create(destination, service.url, entity_set, parameters)
            elif operation == Operation.UPDATE:
                payload = {k: v for k, v in parameters.items() if not entity.is_key(k)}
                result = await self.client.update(destination, service.url, entity_set, key_predicate, payload)
            else:
                await self.client.delete(destination, service.url, entity_set, key_predicate)
                result = {"message": f"Successfully deleted {entity.name} with key: {key}", "success": True}
        except ODataHubError:
            raise
        except Exception as e:
            print(f"ERROR: {description} failed: {e}", file=sys.stderr)
            raise UpstreamError(str(e)) from e

        return result, description
