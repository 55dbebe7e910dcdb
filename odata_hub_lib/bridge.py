"""
MCP server exposing catalog discovery and entity operations as two tools.
"""

import json
import os
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_headers

from .client import EntityClient
from .destinations import CredentialResolver
from .discovery import DiscoveryEngine
from .dispatcher import OperationDispatcher
from .errors import ODataHubError
from .models import CategoryTag, ExecuteRequest, Operation, ServiceCatalog

DISCOVER_TOOL = "discover-sap-data"
EXECUTE_TOOL = "execute-sap-operation"

DISCOVER_DESCRIPTION = f"""Search the SAP service catalog for services, entities and properties.

- query: free text matched against service ids, titles, descriptions, entity names and property names
- category: one of {', '.join(CategoryTag.values())}
- limit: number of ranked matches to keep (1-20, default 10)
- serviceId: return the entities of one service instead of searching
- serviceId + entityName: return the full schema of one entity

Search results come back as a mapping table with one row per property. Use the
'serviceId' and 'entityName' columns of a row when calling {EXECUTE_TOOL}."""

EXECUTE_DESCRIPTION = f"""Run one operation against an SAP entity found with {DISCOVER_TOOL}.

- operation: one of {', '.join(Operation.values())}
- parameters: key properties for read-single/update/delete, field values for create/update
- filterString, selectString, expandString, orderbyString, topNumber, skipNumber: OData query options for read
- queryOptions: legacy object of OData options; its entries replace the discrete fields above
- useUserToken: run as the calling user (default) or as the technical user when false"""

SYSTEM_INSTRUCTIONS = f"""# SAP OData Hub

This server reaches many SAP OData services through two tools.

== AUTHENTICATION ==
Discovery runs against a harvested catalog and the technical user. Data operations run
under the calling user's identity: send `Authorization: Bearer <token>` with every
HTTP request. Check sap://auth/status to see whether a token was received.

== WORKFLOW ==
1. {DISCOVER_TOOL} with a query to find candidate services, entities and properties.
2. {DISCOVER_TOOL} with serviceId + entityName to get the full schema of one entity.
3. {EXECUTE_TOOL} to read, create, update or delete data.

== RULES ==
- Pass the 'id' of a service as serviceId, never its title.
- Pass the 'name' of an entity as entityName, never its entity set.
- Supply every key property in 'parameters' for read-single, update and delete.
- Check the capabilities of an entity before create, update or delete.
- Prefer $select and $top on reads to keep responses small.
"""


class ODataHubBridge:
    """Registers the discovery and execution tools plus the catalog resources on a FastMCP server."""

    def __init__(self, catalog: ServiceCatalog, resolver: CredentialResolver, mcp_name: str = "odata-hub",
                 client: Optional[EntityClient] = None, strict_categories: bool = False, verbose: bool = False):
        self.catalog = catalog
        self.resolver = resolver
        self.verbose = verbose
        self.engine = DiscoveryEngine(catalog, strict_categories=strict_categories, verbose=verbose)
        self.dispatcher = OperationDispatcher(catalog, resolver, client=client, verbose=verbose)
        self.mcp = FastMCP(name=mcp_name, instructions=SYSTEM_INSTRUCTIONS)

        self._log_verbose("Registering MCP tools and resources...")
        self._register_tools()
        self._register_resources()
        self._log_verbose(f"Registered tools for a catalog of {len(catalog.services)} services.")

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Bridge VERBOSE] {message}", file=sys.stderr)

    def _current_user_token(self) -> Optional[str]:
        """Bearer token of the current HTTP request, else USER_JWT for local runs."""
        headers = get_http_headers(include_all=True)
        authorization = headers.get('authorization', '')
        if authorization.lower().startswith('bearer '):
            return authorization[7:].strip() or None
        return os.environ.get('USER_JWT') or None

    @staticmethod
    def _error_payload(error: ODataHubError) -> str:
        payload = {"error": str(error), "errorType": error.error_type}
        if error.suggestion:
            payload["suggestion"] = error.suggestion
        return json.dumps(payload, indent=2)

    # --- Tool implementations ---

    async def _impl_discover(self, query: Optional[str] = None, category: Optional[str] = None,
                             limit: Optional[int] = None, service_id: Optional[str] = None,
                             entity_name: Optional[str] = None) -> str:
        try:
            if service_id and entity_name:
                result: Dict[str, Any] = self.engine.describe_entity(service_id, entity_name)
            elif service_id:
                result = self.engine.describe_service(service_id)
            else:
                result = self.engine.discover(query=query, category=category, limit=limit).to_dict()
        except ODataHubError as e:
            return self._error_payload(e)
        return json.dumps(result, indent=2, default=str)

    async def _impl_execute(self, user_token: Optional[str] = None, **kwargs) -> str:
        request = ExecuteRequest(**kwargs)
        result = await self.dispatcher.execute(request, user_token=user_token)
        return json.dumps(result.to_dict(), indent=2, default=str)

    def _register_tools(self):
        bridge = self

        async def discover_sap_data(query: Optional[str] = None, category: Optional[str] = None,
                                    limit: Optional[int] = None, serviceId: Optional[str] = None,
                                    entityName: Optional[str] = None) -> str:
            try:
                return await bridge._impl_discover(query, category, limit, serviceId, entityName)
            except Exception as e:
                print(f"ERROR: Error in tool {DISCOVER_TOOL}: {e}", file=sys.stderr)
                if bridge.verbose:
                    traceback.print_exc(file=sys.stderr)
                return json.dumps({"error": f"Error in tool {DISCOVER_TOOL}: {e}"}, indent=2)

        async def execute_sap_operation(serviceId: str, entityName: str, operation: str,
                                        parameters: Optional[Dict[str, Any]] = None,
                                        filterString: Optional[str] = None, selectString: Optional[str] = None,
                                        expandString: Optional[str] = None, orderbyString: Optional[str] = None,
                                        topNumber: Optional[int] = None, skipNumber: Optional[int] = None,
                                        queryOptions: Optional[Dict[str, Any]] = None,
                                        useUserToken: bool = True) -> str:
            try:
                return await bridge._impl_execute(
                    user_token=bridge._current_user_token(),
                    service_id=serviceId, entity_name=entityName, operation=operation,
                    parameters=parameters or {}, filter_string=filterString, select_string=selectString,
                    expand_string=expandString, orderby_string=orderbyString, top_number=topNumber,
                    skip_number=skipNumber, query_options=queryOptions, use_user_token=useUserToken
                )
            except Exception as e:
                print(f"ERROR: Error in tool {EXECUTE_TOOL}: {e}", file=sys.stderr)
                if bridge.verbose:
                    traceback.print_exc(file=sys.stderr)
                return json.dumps({"success": False, "error": f"Error in tool {EXECUTE_TOOL}: {e}"}, indent=2)

        self.mcp.tool(name=DISCOVER_TOOL, description=DISCOVER_DESCRIPTION)(discover_sap_data)
        self._log_verbose(f"Registered tool: {DISCOVER_TOOL}")
        self.mcp.tool(name=EXECUTE_TOOL, description=EXECUTE_DESCRIPTION)(execute_sap_operation)
        self._log_verbose(f"Registered tool: {EXECUTE_TOOL}")

    # --- Resources ---

    def auth_status(self) -> Dict[str, Any]:
        has_token = self._current_user_token() is not None
        return {
            "authenticated": has_token,
            "discovery": f"technical user via destination '{self.resolver.discovery_destination_name}'",
            "execution": (f"calling user via destination '{self.resolver.execution_destination_name}'"
                          if has_token else
                          f"technical user via destination '{self.resolver.execution_destination_name}'"),
            "message": ("Operations run under your identity." if has_token else
                        "No bearer token received. Send 'Authorization: Bearer <token>' to run as yourself."),
        }

    def _register_resources(self):
        bridge = self

        @self.mcp.resource("sap://services", name="sap-services", mime_type="application/json")
        def services() -> str:
            """All cataloged services with their categories and entity counts."""
            return json.dumps(bridge.engine.catalog_overview(), indent=2)

        @self.mcp.resource("sap://service/{service_id}/metadata", name="sap-service-metadata",
                           mime_type="application/json")
        def service_metadata(service_id: str) -> str:
            """Entities and capabilities of one cataloged service."""
            try:
                return json.dumps(bridge.engine.describe_service(service_id), indent=2)
            except ODataHubError as e:
                return bridge._error_payload(e)

        @self.mcp.resource("sap://system/instructions", name="system-instructions", mime_type="text/markdown")
        def system_instructions() -> str:
            """How to use the discovery and execution tools."""
            return SYSTEM_INSTRUCTIONS

        @self.mcp.resource("sap://auth/status", name="authentication-status", mime_type="application/json")
        def authentication_status() -> str:
            """Whether a user token accompanies the current request."""
            return json.dumps(bridge.auth_status(), indent=2)

        self._log_verbose("Registered resources: sap://services, sap://service/{service_id}/metadata, "
                          "sap://system/instructions, sap://auth/status")

    def run(self, transport: str = "stdio", host: str = "127.0.0.1", port: int = 8000):
        """Run the MCP server."""
        self._log_verbose(f"Starting OData hub '{self.mcp.name}' with {len(self.catalog.services)} services "
                          f"over {transport}")
        if not self.catalog.services:
            self._log_verbose("Warning: The service catalog is empty. Discovery will return no results.")
        if transport == "stdio":
            self.mcp.run()
        else:
            self.mcp.run(transport="sse" if transport == "sse" else "streamable-http", host=host, port=port)
