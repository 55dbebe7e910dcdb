"""
OData Hub Library - discovery and execution across many OData v2 services over MCP.
"""

from .models import (
    CategoryTag,
    Destination,
    DiscoveryResult,
    EntityType,
    ExecuteRequest,
    ExecuteResult,
    MappingRow,
    MatchRecord,
    Operation,
    Property,
    Service,
    ServiceCatalog
)
from .errors import (
    CapabilityError,
    DestinationError,
    MissingKeyPropertyError,
    NotFoundError,
    ODataHubError,
    UpstreamError,
    ValidationError
)
from .categorizer import Categorizer, categorize
from .destinations import CredentialResolver, DestinationService
from .discovery import DiscoveryEngine
from .client import EntityClient
from .dispatcher import OperationDispatcher, build_key_value
from .metadata_parser import CatalogHarvester, MetadataParser
from .bridge import ODataHubBridge

__all__ = [
    'CategoryTag',
    'Destination',
    'DiscoveryResult',
    'EntityType',
    'ExecuteRequest',
    'ExecuteResult',
    'MappingRow',
    'MatchRecord',
    'Operation',
    'Property',
    'Service',
    'ServiceCatalog',
    'CapabilityError',
    'DestinationError',
    'MissingKeyPropertyError',
    'NotFoundError',
    'ODataHubError',
    'UpstreamError',
    'ValidationError',
    'Categorizer',
    'categorize',
    'CredentialResolver',
    'DestinationService',
    'DiscoveryEngine',
    'EntityClient',
    'OperationDispatcher',
    'build_key_value',
    'CatalogHarvester',
    'MetadataParser',
    'ODataHubBridge'
]
