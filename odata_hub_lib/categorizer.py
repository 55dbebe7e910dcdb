"""
Keyword based categorization of cataloged services into business areas.
"""

import sys
from datetime import datetime
from typing import Dict, FrozenSet

from .constants import CATEGORY_KEYWORDS
from .models import CategoryTag, Service, ServiceCatalog


def categorize(service: Service) -> FrozenSet[CategoryTag]:
    """Return the category tags of a service. Never empty: no keyword hit yields {ALL}."""
    fields = {
        'id': (service.id or '').lower(),
        'title': (service.title or '').lower(),
        'description': (service.description or '').lower(),
    }
    tags = set()
    for tag_name, keywords_by_field in CATEGORY_KEYWORDS.items():
        for field_name, keywords in keywords_by_field.items():
            if any(keyword in fields[field_name] for keyword in keywords):
                tags.add(CategoryTag(tag_name))
                break
    if not tags:
        tags.add(CategoryTag.ALL)
    return frozenset(tags)


class Categorizer:
    """Caches the tags of each service for the lifetime of the process."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self._tags: Dict[str, FrozenSet[CategoryTag]] = {}

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Categorizer VERBOSE] {message}", file=sys.stderr)

    def categorize_catalog(self, catalog: ServiceCatalog) -> Dict[str, FrozenSet[CategoryTag]]:
        for service in catalog.services:
            self.tags_for(service)
        self._log_verbose(f"Categorized {len(catalog.services)} services into categories")
        return dict(self._tags)

    def tags_for(self, service: Service) -> FrozenSet[CategoryTag]:
        tags = self._tags.get(service.id)
        if tags is None:
            tags = categorize(service)
            self._tags[service.id] = tags
        return tags

    def in_category(self, service: Service, category: CategoryTag) -> bool:
        """ALL admits every service; any other tag must be among the service's tags."""
        if category == CategoryTag.ALL:
            return True
        return category in self.tags_for(service)

    def sorted_tags(self, service: Service):
        order = CategoryTag.values()
        return sorted((t.value for t in self.tags_for(service)), key=order.index)
