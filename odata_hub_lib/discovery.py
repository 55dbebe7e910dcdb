"""
Relevance search over the service catalog.

A free-text query is matched against service ids, titles and descriptions, entity
names and property names. Matching runs through a fixed sequence of increasingly
permissive tiers until one of them yields a result:

1. the whole query as one substring, within the requested category;
2. every whitespace separated word must occur (only for queries of two or more words);
3. tiers 1 and 2 again with the category widened to ``all``;
4. every service in the resolved category, ignoring the query.

The ranked matches are truncated to the requested limit and flattened into a
mapping table with one row per property of every retained entity.
"""

import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from .categorizer import Categorizer
from .constants import (
    DEFAULT_LIMIT,
    ENTITY_NAME_SCORE,
    MAX_LIMIT,
    PROPERTY_NAME_SCORE,
    SERVICE_DEFAULT_SCORE,
    SERVICE_DESCRIPTION_SCORE,
    SERVICE_ID_SCORE,
    SERVICE_TITLE_SCORE,
)
from .errors import ValidationError
from .models import (
    CategoryTag,
    DiscoveryResult,
    EntityType,
    MappingRow,
    MatchRecord,
    Service,
    ServiceCatalog,
)

MODE_COMBINED = "combined"
MODE_SEPARATED = "separated"
MODE_ALL_SERVICES = "all-services"


def normalize_limit(limit: Any) -> int:
    """Clamp a limit to [1, MAX_LIMIT]. Negative or non-integer values are rejected."""
    if limit is None:
        return DEFAULT_LIMIT
    if isinstance(limit, bool):
        raise ValidationError(f"Invalid limit: {limit}. Limit must be an integer between 1 and {MAX_LIMIT}.")
    if isinstance(limit, float) and limit.is_integer():
        limit = int(limit)
    if isinstance(limit, str) and limit.strip().lstrip('-').isdigit():
        limit = int(limit.strip())
    if not isinstance(limit, int):
        raise ValidationError(f"Invalid limit: {limit!r}. Limit must be an integer between 1 and {MAX_LIMIT}.")
    if limit < 0:
        raise ValidationError(f"Invalid limit: {limit}. Limit must not be negative.")
    return max(1, min(MAX_LIMIT, limit))


class DiscoveryEngine:
    """Searches an immutable service catalog and renders ranked mapping tables."""

    def __init__(self, catalog: ServiceCatalog, categorizer: Optional[Categorizer] = None,
                 strict_categories: bool = False, verbose: bool = False):
        self.catalog = catalog
        self.verbose = verbose
        self.strict_categories = strict_categories
        self.categorizer = categorizer or Categorizer(verbose=verbose)
        self.categorizer.categorize_catalog(catalog)

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Discovery VERBOSE] {message}", file=sys.stderr)

    # --- Matching ---

    @staticmethod
    def _field_matches(text: str, needle: str, words: List[str], separated: bool) -> bool:
        text = (text or '').lower()
        if separated:
            return all(word in text for word in words)
        return needle in text

    def _score_service(self, service: Service, needle: str, words: List[str], separated: bool) -> float:
        if self._field_matches(service.id, needle, words, separated):
            return SERVICE_ID_SCORE
        if self._field_matches(service.title, needle, words, separated):
            return SERVICE_TITLE_SCORE
        if self._field_matches(service.description, needle, words, separated):
            return SERVICE_DESCRIPTION_SCORE
        return 0.0

    def _match_entity(self, service: Service, entity: EntityType, needle: str, words: List[str],
                      separated: bool) -> Optional[MatchRecord]:
        score = 0.0
        if self._field_matches(entity.name, needle, words, separated):
            score = ENTITY_NAME_SCORE

        matched_properties = []
        for prop in entity.properties:
            if self._field_matches(prop.name, needle, words, separated):
                matched_properties.append(prop.name)
                if score == 0.0:
                    score = PROPERTY_NAME_SCORE

        if score == 0.0:
            return None

        if score >= ENTITY_NAME_SCORE:
            kind = "entity"
            reason = f"Entity '{entity.name}' matches '{needle}'"
        else:
            kind = "property"
            reason = f"Properties [{', '.join(matched_properties)}] match '{needle}'"
        return MatchRecord(
            kind=kind,
            score=score,
            service_id=service.id,
            service_title=service.title,
            entity_name=entity.name,
            matched_properties=matched_properties,
            reason=reason
        )

    def _search(self, query: str, category: CategoryTag, separated: bool) -> List[MatchRecord]:
        """One pass over the catalog in encounter order."""
        needle = query
        words = query.split()
        matches = []
        for service in self.catalog.services:
            if not self.categorizer.in_category(service, category):
                continue

            service_score = self._score_service(service, needle, words, separated) if query else 0.0
            if service_score > 0 or not query:
                matches.append(MatchRecord(
                    kind="service",
                    score=service_score or SERVICE_DEFAULT_SCORE,
                    service_id=service.id,
                    service_title=service.title,
                    reason=(f"Service matches '{needle}'" if service_score > 0
                            else f"Service in category '{category.value}'")
                ))

            if not query:
                continue
            for entity in service.entity_types:
                match = self._match_entity(service, entity, needle, words, separated)
                if match:
                    matches.append(match)
        return matches

    def _all_services(self, category: CategoryTag, query: str) -> List[MatchRecord]:
        return [
            MatchRecord(
                kind="service",
                score=SERVICE_DEFAULT_SCORE,
                service_id=service.id,
                service_title=service.title,
                reason=f"No match for '{query}'; listing services in category '{category.value}'"
            )
            for service in self.catalog.services
            if self.categorizer.in_category(service, category)
        ]

    def _run_tiers(self, query: str, category: CategoryTag) -> Tuple[List[MatchRecord], str]:
        """Tiers 1 and 2 for one category."""
        matches = self._search(query, category, separated=False)
        if matches:
            return matches, MODE_COMBINED
        if len(query.split()) >= 2:
            self._log_verbose(f"No combined match for '{query}' in '{category.value}', trying separated words")
            matches = self._search(query, category, separated=True)
            if matches:
                return matches, MODE_SEPARATED
        return [], MODE_COMBINED

    # --- Flattening ---

    def _rows_for_entity(self, service: Service, entity: EntityType) -> List[MappingRow]:
        summary = entity.capabilities_summary()
        return [
            MappingRow(
                service_id=service.id,
                service_name=service.title or service.id,
                entity_name=entity.name,
                entity_set=entity.set_name,
                property_name=prop.name,
                property_type=prop.type,
                is_key=entity.is_key(prop.name),
                nullable=prop.nullable,
                max_length=prop.max_length,
                capabilities_summary=summary
            )
            for prop in entity.properties
        ]

    def flatten(self, matches: List[MatchRecord]) -> List[MappingRow]:
        """One row per property of every retained entity; each entity is flattened once."""
        rows = []
        seen: Set[Tuple[str, str]] = set()
        for match in matches:
            service = self.catalog.get(match.service_id)
            if service is None:
                continue
            if match.entity_name is None:
                entities = service.entity_types
            else:
                entities = [e for e in service.entity_types if e.name == match.entity_name]
            for entity in entities:
                key = (service.id, entity.name)
                if key in seen:
                    continue
                seen.add(key)
                rows.extend(self._rows_for_entity(service, entity))
        return rows

    # --- Public API ---

    def discover(self, query: Optional[str] = None, category: Optional[str] = None,
                 limit: Any = None) -> DiscoveryResult:
        """Search the catalog. Never fails for lack of matches."""
        limit = normalize_limit(limit)
        requested = CategoryTag.parse(category, strict=self.strict_categories)
        if category and requested == CategoryTag.ALL and str(category).strip().lower() != CategoryTag.ALL.value:
            self._log_verbose(f"Unknown category '{category}' normalized to 'all'")
        query = (query or '').strip().lower()

        actual = requested
        used_category_fallback = False
        returned_all_services = False

        matches, mode = self._run_tiers(query, requested)

        if not matches and requested != CategoryTag.ALL:
            self._log_verbose(f"No match in category '{requested.value}', widening to 'all'")
            used_category_fallback = True
            actual = CategoryTag.ALL
            matches, mode = self._run_tiers(query, actual)

        if not matches and query:
            self._log_verbose(f"No match for '{query}', returning every service in '{actual.value}'")
            matches = self._all_services(actual, query)
            mode = MODE_ALL_SERVICES
            returned_all_services = True

        ranked = sorted(matches, key=lambda m: m.score, reverse=True)
        total_found = len(ranked)
        retained = ranked[:limit]
        mapping_table = self.flatten(retained)
        self._log_verbose(f"Query '{query}' in '{actual.value}': {total_found} matches, "
                          f"{len(retained)} retained, {len(mapping_table)} mapping rows")

        result = DiscoveryResult(
            query=query,
            requested_category=requested,
            actual_category=actual,
            total_found=total_found,
            used_category_fallback=used_category_fallback,
            returned_all_services=returned_all_services,
            match_mode=mode,
            matches=retained,
            mapping_table=mapping_table
        )
        result.guidance_text = self._guidance(result)
        return result

    def _guidance(self, result: DiscoveryResult) -> str:
        lines = []
        if result.returned_all_services:
            lines.append(f"No services, entities or properties matched '{result.query}'. "
                         f"Showing every service in category '{result.actual_category.value}' instead.")
            lines.append("Try a shorter or different search term, or pick an entity from the table below.")
        elif result.used_category_fallback:
            lines.append(f"Nothing matched in category '{result.requested_category.value}'; "
                         f"results are from all categories.")
        if result.match_mode == MODE_SEPARATED:
            lines.append(f"No entry contained '{result.query}' as a phrase; "
                         f"showing entries that contain every word.")
        if result.total_found > len(result.matches):
            lines.append(f"Showing {len(result.matches)} of {result.total_found} matches. "
                         f"Raise 'limit' (max {MAX_LIMIT}) or refine the query to see more.")

        if result.mapping_table:
            lines.append("== NEXT STEPS ==")
            lines.append("1. Pick a row and call 'execute-sap-operation' with its serviceId and entityName.")
            lines.append("2. Use rows with isKey=true as key parameters for read-single, update and delete.")
            lines.append("3. Check capabilitiesSummary before create, update or delete.")
            lines.append("IMPORTANT: Use the 'serviceId' field, NOT the service name, and the 'entityName' "
                         "field, NOT the 'entitySet'.")
        else:
            lines.append("The catalog has no services in this category. Valid categories: "
                         f"{', '.join(CategoryTag.values())}")
        return "\n".join(lines)

    def describe_service(self, service_id: str) -> Dict[str, Any]:
        """Service summary with the capabilities of every entity."""
        service = self.catalog.find_service(service_id)
        return {
            "service": {
                "id": service.id,
                "title": service.title,
                "description": service.description,
                "categories": self.categorizer.sorted_tags(service),
                "odataVersion": service.odata_version,
            },
            "entities": [
                {
                    "name": entity.name,
                    "entitySet": entity.entity_set,
                    "propertyCount": len(entity.properties),
                    "keyProperties": list(entity.keys),
                    "capabilities": entity.capabilities(),
                }
                for entity in service.entity_types
            ]
        }

    def describe_entity(self, service_id: str, entity_name: str) -> Dict[str, Any]:
        """Full schema of one entity."""
        entity = self.catalog.find_entity(service_id, entity_name)
        return {
            "entity": {
                "name": entity.name,
                "entitySet": entity.entity_set,
                "namespace": entity.namespace,
            },
            "capabilities": entity.capabilities(),
            "keyProperties": list(entity.keys),
            "properties": [
                {
                    "name": prop.name,
                    "type": prop.type,
                    "nullable": prop.nullable,
                    "maxLength": prop.max_length,
                    "isKey": entity.is_key(prop.name),
                }
                for prop in entity.properties
            ]
        }

    def catalog_overview(self) -> Dict[str, Any]:
        categories = []
        for service in self.catalog.services:
            for tag in self.categorizer.sorted_tags(service):
                if tag not in categories:
                    categories.append(tag)
        return {
            "totalServices": len(self.catalog.services),
            "categories": categories,
            "services": [
                {
                    "id": service.id,
                    "title": service.title,
                    "description": service.description,
                    "entityCount": len(service.entity_types),
                    "categories": self.categorizer.sorted_tags(service),
                }
                for service in self.catalog.services
            ]
        }
