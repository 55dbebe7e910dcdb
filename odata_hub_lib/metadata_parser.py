"""
Builds the service catalog: parses OData v2 $metadata documents and harvests the
services exposed by a gateway, or loads a previously saved catalog file.
"""

import json
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import requests
from lxml import etree
from pydantic import ValidationError as ModelValidationError

from .constants import GATEWAY_CATALOG_PATH, SAP_NAMESPACE, USER_AGENT
from .destinations import CredentialResolver
from .models import Destination, EntityType, Property, Service, ServiceCatalog


def _local(tag: str) -> str:
    return f"*[local-name()='{tag}']"


class MetadataParser:
    """Parses entity types, keys and entity-set capabilities out of a $metadata document."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        # No DTD or network access while parsing documents fetched from remote systems
        self._xml_parser = etree.XMLParser(resolve_entities=False, no_network=True)

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Parser VERBOSE] {message}", file=sys.stderr)

    def parse(self, content: bytes) -> List[EntityType]:
        """Return the addressable entity types (those exposed through an entity set)."""
        root = etree.fromstring(content, parser=self._xml_parser)
        entity_sets = self._parse_entity_sets(root)

        entity_types = []
        for schema in root.xpath(f'//{_local("Schema")}'):
            namespace = schema.get('Namespace')
            for et_elem in schema.xpath(f'./{_local("EntityType")}'):
                name = et_elem.get('Name')
                if not name:
                    continue
                entity_set = entity_sets.get(name)
                if entity_set is None:
                    self._log_verbose(f"Skipping entity type {name}: no entity set exposes it")
                    continue
                try:
                    entity_types.append(self._parse_entity_type(et_elem, name, namespace, entity_set))
                except ModelValidationError as e:
                    print(f"ERROR: Skipping entity type {name}: {e.errors()[0]['msg']}", file=sys.stderr)

        self._log_verbose(f"Parsing complete. Found {len(entity_types)} entity types.")
        return entity_types

    def _parse_entity_type(self, et_elem, name: str, namespace: Optional[str],
                           entity_set: Dict[str, Any]) -> EntityType:
        keys = [ref.get('Name') for ref in et_elem.xpath(f'./{_local("Key")}/{_local("PropertyRef")}')
                if ref.get('Name')]

        properties = []
        for prop_elem in et_elem.xpath(f'./{_local("Property")}'):
            prop_name = prop_elem.get('Name')
            prop_type = prop_elem.get('Type')
            if not prop_name or not prop_type:
                continue
            max_length = prop_elem.get('MaxLength')
            properties.append(Property(
                name=prop_name,
                type=prop_type,
                nullable=prop_elem.get('Nullable', 'true').lower() == 'true',
                max_length=int(max_length) if max_length and max_length.isdigit() else None
            ))

        return EntityType(
            name=name,
            entity_set=entity_set['name'],
            namespace=namespace,
            keys=keys,
            properties=properties,
            creatable=entity_set['creatable'],
            updatable=entity_set['updatable'],
            deletable=entity_set['deletable']
        )

    def _parse_entity_sets(self, root) -> Dict[str, Dict[str, Any]]:
        """Map entity type name to its first entity set and the SAP capability annotations."""
        entity_sets = {}
        for es_elem in root.xpath(f'//{_local("EntityContainer")}/{_local("EntitySet")}'):
            name = es_elem.get('Name')
            entity_type_fqn = es_elem.get('EntityType')
            if not name or not entity_type_fqn:
                continue
            entity_type_name = entity_type_fqn.split('.')[-1]
            if entity_type_name in entity_sets:
                continue
            entity_sets[entity_type_name] = {
                'name': name,
                'creatable': es_elem.get(f'{{{SAP_NAMESPACE}}}creatable', 'true').lower() == 'true',
                'updatable': es_elem.get(f'{{{SAP_NAMESPACE}}}updatable', 'true').lower() == 'true',
                'deletable': es_elem.get(f'{{{SAP_NAMESPACE}}}deletable', 'true').lower() == 'true',
            }
        return entity_sets


class CatalogHarvester:
    """Produces the immutable ServiceCatalog once at startup."""

    def __init__(self, resolver: Optional[CredentialResolver] = None, verbose: bool = False,
                 catalog_service_path: str = GATEWAY_CATALOG_PATH, timeout: int = 60):
        self.resolver = resolver
        self.verbose = verbose
        self.catalog_service_path = catalog_service_path
        self.timeout = timeout
        self.parser = MetadataParser(verbose=verbose)

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Harvester VERBOSE] {message}", file=sys.stderr)

    def load_catalog(self, catalog_file: Optional[str] = None,
                     services: Optional[Sequence[str]] = None) -> ServiceCatalog:
        """Load from a catalog file when given, else harvest from the discovery destination."""
        if catalog_file:
            return self.load_catalog_file(catalog_file)
        return self.harvest(services)

    def load_catalog_file(self, path: str) -> ServiceCatalog:
        self._log_verbose(f"Loading service catalog from {path}")
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if isinstance(data, list):
            data = {'services': data}
        catalog = ServiceCatalog.model_validate(data)
        self._log_verbose(f"Loaded {len(catalog.services)} services from catalog file")
        return catalog

    def _new_session(self, destination: Destination) -> requests.Session:
        session = requests.Session()
        if destination.username:
            session.auth = (destination.username, destination.password or '')
        session.headers.update({'User-Agent': USER_AGENT})
        session.headers.update(destination.headers)
        return session

    def _absolute(self, destination: Destination, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path.rstrip('/')
        return f"{destination.url.rstrip('/')}/{path.lstrip('/')}".rstrip('/')

    def harvest(self, services: Optional[Sequence[str]] = None) -> ServiceCatalog:
        """Harvest services and their metadata using the technical discovery destination."""
        if self.resolver is None:
            raise ValueError("A credential resolver is required to harvest services from a destination")
        destination = self.resolver.resolve_discovery()

        with self._new_session(destination) as session:
            if services:
                entries = [self._entry_from_path(path) for path in services]
            else:
                entries = self._list_gateway_services(session, destination)

            harvested = []
            for entry in entries:
                service_url = self._absolute(destination, entry['url'])
                try:
                    entity_types = self._fetch_entity_types(session, service_url)
                except (requests.exceptions.RequestException, etree.XMLSyntaxError) as e:
                    print(f"ERROR: Skipping service {entry['id']}: could not read metadata: {e}", file=sys.stderr)
                    continue
                harvested.append(Service(entity_types=entity_types, **entry))
                self._log_verbose(f"Harvested {entry['id']} with {len(entity_types)} entity types")

        self._log_verbose(f"Harvested {len(harvested)} of {len(entries)} services")
        return ServiceCatalog(services=harvested)

    @staticmethod
    def _entry_from_path(path: str) -> Dict[str, Any]:
        # /sap/opu/odata/sap/API_BUSINESS_PARTNER;v=0002 -> API_BUSINESS_PARTNER
        service_id = path.rstrip('/').split('/')[-1].split(';')[0]
        return {'id': service_id, 'title': service_id, 'url': path}

    def _list_gateway_services(self, session: requests.Session, destination: Destination) -> List[Dict[str, Any]]:
        url = f"{self._absolute(destination, self.catalog_service_path)}/ServiceCollection"
        self._log_verbose(f"Requesting: GET {url}")
        response = session.get(url, params={'$format': 'json'}, headers={'Accept': 'application/json'},
                               timeout=self.timeout)
        response.raise_for_status()
        data = response.json().get('d', {})
        results = data.get('results', []) if isinstance(data, dict) else data

        entries = []
        for item in results:
            service_id = item.get('TechnicalServiceName') or item.get('ID')
            if not service_id or not item.get('ServiceUrl'):
                continue
            entries.append({
                'id': service_id,
                'title': item.get('Title') or service_id,
                'description': item.get('Description') or '',
                'url': item['ServiceUrl'],
                'version': item.get('TechnicalServiceVersion'),
            })
        self._log_verbose(f"Gateway catalog lists {len(entries)} services")
        return entries

    def _fetch_entity_types(self, session: requests.Session, service_url: str) -> List[EntityType]:
        metadata_url = f"{service_url}/$metadata"
        self._log_verbose(f"Fetching metadata from {metadata_url}...")
        response = session.get(metadata_url, headers={'Accept': 'application/xml'}, timeout=self.timeout)
        response.raise_for_status()
        return self.parser.parse(response.content)
