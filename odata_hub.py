#!/usr/bin/env python3
"""
OData Hub MCP server.

Serves many SAP OData v2 services through two MCP tools: a relevance search over a
harvested service catalog and a dispatcher for single-entity CRUD operations.
"""

import argparse
import os
import signal
import sys
import traceback
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from odata_hub_lib import CatalogHarvester, CredentialResolver, ODataHubBridge
from odata_hub_lib.bridge import DISCOVER_DESCRIPTION, DISCOVER_TOOL, EXECUTE_DESCRIPTION, EXECUTE_TOOL
from odata_hub_lib.constants import GATEWAY_CATALOG_PATH

# Load environment variables from .env file
load_dotenv()


def parse_service_list(value: Optional[str]) -> Optional[List[str]]:
    """Split a comma-separated list of service paths. Empty input means 'use the gateway catalog'."""
    if not value:
        return None
    services = [s.strip() for s in value.split(',') if s.strip()]
    return services or None


def parse_http_addr(http_addr: str) -> Tuple[str, int]:
    """Parse 'host:port', ':port' or 'port' into a (host, port) pair."""
    addr_parts = http_addr.split(":")
    if len(addr_parts) == 2 and addr_parts[0]:
        return addr_parts[0], int(addr_parts[1])
    if len(addr_parts) == 2:
        return "0.0.0.0", int(addr_parts[1])
    try:
        return "0.0.0.0", int(http_addr)
    except ValueError:
        return "0.0.0.0", 8080


def print_trace_info(bridge: ODataHubBridge):
    """Print the catalog, destinations and tools the hub would serve."""
    overview = bridge.engine.catalog_overview()
    print("=" * 80)
    print("OData Hub Trace Information")
    print("=" * 80)

    print(f"\nMCP Name: {bridge.mcp.name}")
    print(f"Discovery Destination: {bridge.resolver.discovery_destination_name}")
    print(f"Execution Destination: {bridge.resolver.execution_destination_name}")
    print(f"Managed Destination Service: {'bound' if bridge.resolver.destination_service else 'not bound'}")
    print(f"Strict Categories: {bridge.engine.strict_categories}")

    print(f"\nCatalog Summary:")
    print(f"   - Services: {overview['totalServices']}")
    print(f"   - Categories: {', '.join(overview['categories']) or 'none'}")
    for service in overview['services']:
        print(f"   - {service['id']}: {service['entityCount']} entities "
              f"[{', '.join(service['categories'])}] {service['title']}")

    print(f"\nRegistered MCP Tools (2 total):")
    for name, description in ((DISCOVER_TOOL, DISCOVER_DESCRIPTION), (EXECUTE_TOOL, EXECUTE_DESCRIPTION)):
        print(f"\nTool: {name}")
        for line in description.split('\n'):
            print(f"      {line}")

    print("\n" + "=" * 80)
    print("Trace complete - OData hub initialized successfully but not started")
    print("Use without --trace to start the actual MCP server")
    print("=" * 80)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="OData Hub MCP server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    # Catalog sources
    parser.add_argument("--catalog-file", help="JSON service catalog to load instead of harvesting "
                                               "(overrides ODATA_CATALOG_FILE env var)")
    parser.add_argument("--services", help="Comma-separated service paths to harvest, e.g. "
                                           "'/sap/opu/odata/sap/API_BUSINESS_PARTNER' (overrides ODATA_SERVICES env var)")
    parser.add_argument("--catalog-service-path", default=GATEWAY_CATALOG_PATH,
                        help="Gateway catalog service used when no service list is given")
    # Destinations
    parser.add_argument("--destination", help="Destination for both discovery and execution "
                                              "(overrides SAP_DESTINATION_NAME env var)")
    parser.add_argument("--discovery-destination", help="Destination used with the technical user for discovery")
    parser.add_argument("--execution-destination", help="Destination used with the calling user for operations")
    # Behaviour
    parser.add_argument("--strict-categories", action="store_true",
                        help="Reject unknown discovery categories instead of searching all categories")
    parser.add_argument("-v", "--verbose", "--debug", dest="verbose", action="store_true",
                        help="Enable verbose output to stderr")
    parser.add_argument("--trace", action="store_true",
                        help="Load the catalog, print the hub configuration and tools, then exit")
    # Transport options
    parser.add_argument("--transport", choices=["stdio", "sse", "http"], default="stdio",
                        help="Transport type: 'stdio' (default), 'sse' or 'http' (streamable HTTP)")
    parser.add_argument("--http-addr", default=":8080", help="HTTP server address (used with --transport sse/http)")

    args = parser.parse_args()

    # --- Configuration Handling ---
    # Priority: CLI flags > Environment Variables > .env file
    catalog_file = args.catalog_file or os.getenv("ODATA_CATALOG_FILE")
    services = parse_service_list(args.services or os.getenv("ODATA_SERVICES"))
    if args.verbose:
        if catalog_file:
            print(f"[VERBOSE] Using service catalog file: {catalog_file}", file=sys.stderr)
        elif services:
            print(f"[VERBOSE] Harvesting {len(services)} configured services", file=sys.stderr)
        else:
            print(f"[VERBOSE] Harvesting services from gateway catalog {args.catalog_service_path}", file=sys.stderr)

    # Handle SIGINT (Ctrl+C) and SIGTERM gracefully
    def signal_handler(sig, frame):
        print(f"\n{signal.Signals(sig).name} received, shutting down server...", file=sys.stderr)
        sys.exit(0)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        resolver = CredentialResolver.from_environment(
            discovery_destination_name=args.discovery_destination or args.destination,
            execution_destination_name=args.execution_destination or args.destination,
            verbose=args.verbose
        )
        harvester = CatalogHarvester(resolver, verbose=args.verbose,
                                     catalog_service_path=args.catalog_service_path)
        catalog = harvester.load_catalog(catalog_file=catalog_file, services=services)

        bridge = ODataHubBridge(
            catalog,
            resolver,
            strict_categories=args.strict_categories,
            verbose=args.verbose
        )

        if args.trace:
            print_trace_info(bridge)
            sys.exit(0)

        if args.transport == "stdio":
            if args.verbose:
                print("[VERBOSE] Using stdio transport", file=sys.stderr)
            bridge.run()
        else:
            host, port = parse_http_addr(args.http_addr)
            if args.verbose:
                print(f"[VERBOSE] Starting {args.transport} transport on {host}:{port}", file=sys.stderr)
            bridge.run(transport=args.transport, host=host, port=port)
    except Exception as e:
        print(f"\n--- FATAL ERROR ---", file=sys.stderr)
        print(f"An unexpected error occurred during startup or runtime: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        print("-------------------", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
