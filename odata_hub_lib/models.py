"""
Data models for the service catalog, discovery results and operation requests.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import NotFoundError, ValidationError


class WireModel(BaseModel):
    """Base for models exchanged with MCP clients: camelCase on the wire, snake_case in code."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)


class CatalogModel(WireModel):
    """Catalog entries are facts harvested once at startup and never mutated."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class CategoryTag(str, Enum):
    BUSINESS_PARTNER = 'business-partner'
    SALES = 'sales'
    FINANCE = 'finance'
    PROCUREMENT = 'procurement'
    HR = 'hr'
    LOGISTICS = 'logistics'
    ALL = 'all'

    @classmethod
    def values(cls) -> List[str]:
        return [tag.value for tag in cls]

    @classmethod
    def parse(cls, value: Optional[str], strict: bool = False) -> 'CategoryTag':
        """Parse a category name. Unknown names become ALL unless strict."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.ALL
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            if strict:
                raise ValidationError(
                    f"Invalid category: {value}. Valid categories are: {', '.join(cls.values())}"
                )
            return cls.ALL


class Operation(str, Enum):
    READ = 'read'
    READ_SINGLE = 'read-single'
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'

    @classmethod
    def values(cls) -> List[str]:
        return [op.value for op in cls]

    @classmethod
    def parse(cls, value: Optional[str]) -> 'Operation':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid operation: {value}. Valid operations are: {', '.join(cls.values())}"
            )


class Property(CatalogModel):
    name: str
    type: str = "Edm.String"
    nullable: bool = True
    max_length: Optional[int] = None


class EntityType(CatalogModel):
    name: str
    entity_set: Optional[str] = None
    namespace: Optional[str] = None
    keys: List[str]
    properties: List[Property] = []
    creatable: bool = True
    updatable: bool = True
    deletable: bool = True

    @model_validator(mode='after')
    def _check_keys(self) -> 'EntityType':
        if not self.keys:
            raise ValueError(f"Entity type {self.name} has no key properties")
        names = {p.name for p in self.properties}
        unknown = [k for k in self.keys if k not in names]
        if unknown:
            raise ValueError(f"Key properties {unknown} of {self.name} are not declared properties")
        return self

    @property
    def readable(self) -> bool:
        return True

    @property
    def set_name(self) -> str:
        return self.entity_set or self.name

    def is_key(self, property_name: str) -> bool:
        return property_name in self.keys

    def capabilities(self) -> Dict[str, bool]:
        return {
            "readable": True,
            "creatable": self.creatable,
            "updatable": self.updatable,
            "deletable": self.deletable,
        }

    def capabilities_summary(self) -> str:
        flags = [("read", True), ("create", self.creatable), ("update", self.updatable), ("delete", self.deletable)]
        return ", ".join(f"{name}={'yes' if allowed else 'no'}" for name, allowed in flags)


class Service(CatalogModel):
    id: str
    title: str = ""
    description: str = ""
    url: str = ""
    version: Optional[str] = None
    odata_version: str = "2.0"
    entity_types: List[EntityType] = []

    def find_entity(self, entity_name: str) -> EntityType:
        """Look up an entity by its name; the entity set name is only used for the suggestion."""
        for entity in self.entity_types:
            if entity.name == entity_name:
                return entity

        available = ', '.join(e.name for e in self.entity_types) or 'none'
        suggestion = "Use the 'name' field from discovery results as entityName."
        by_set = next((e for e in self.entity_types if e.entity_set and e.entity_set == entity_name), None)
        if by_set:
            suggestion = (f"It looks like you used the 'entitySet' field instead of the 'name' field. "
                          f"Use this entityName instead: {by_set.name}")
        raise NotFoundError(
            f"Entity '{entity_name}' not found in service '{self.id}'. Available entities: {available}",
            suggestion
        )


class ServiceCatalog(CatalogModel):
    services: List[Service] = []

    def get(self, service_id: str) -> Optional[Service]:
        return next((s for s in self.services if s.id == service_id), None)

    def find_service(self, service_id: str) -> Service:
        """Exact id lookup. A title match only produces a corrective suggestion."""
        service = self.get(service_id)
        if service:
            return service

        needle = (service_id or '').lower()
        by_title = next((s for s in self.services if s.title and s.title.lower() == needle), None)
        if by_title:
            suggestion = (f"It looks like you used the 'title' field instead of the 'id' field. "
                          f"Use this serviceId instead: {by_title.id}")
        else:
            suggestion = ("Use 'discover-sap-data' to find available services and pass the 'id' field "
                          "from the results, not the 'title' field.")
        raise NotFoundError(f"Service not found: {service_id}", suggestion)

    def find_entity(self, service_id: str, entity_name: str) -> EntityType:
        return self.find_service(service_id).find_entity(entity_name)


class MatchRecord(WireModel):
    kind: str  # service | entity | property
    score: float = Field(ge=0.0, le=1.0)
    service_id: str
    service_title: str = ""
    entity_name: Optional[str] = None
    matched_properties: List[str] = []
    reason: str = ""


class MappingRow(WireModel):
    service_id: str
    service_name: str
    entity_name: str
    entity_set: str
    property_name: str
    property_type: str
    is_key: bool
    nullable: bool
    max_length: Optional[int] = None
    capabilities_summary: str


class DiscoveryResult(WireModel):
    query: str = ""
    requested_category: CategoryTag = CategoryTag.ALL
    actual_category: CategoryTag = CategoryTag.ALL
    total_found: int = 0
    used_category_fallback: bool = False
    returned_all_services: bool = False
    match_mode: str = "combined"
    matches: List[MatchRecord] = []
    mapping_table: List[MappingRow] = []
    guidance_text: str = ""


class ExecuteRequest(WireModel):
    service_id: str
    entity_name: str
    operation: str
    parameters: Dict[str, Any] = {}
    filter_string: Optional[str] = None
    select_string: Optional[str] = None
    expand_string: Optional[str] = None
    orderby_string: Optional[str] = None
    top_number: Optional[int] = None
    skip_number: Optional[int] = None
    query_options: Optional[Dict[str, Any]] = None
    use_user_token: bool = True


class ExecuteResult(WireModel):
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    suggestion: Optional[str] = None
    operation_description: Optional[str] = None


class Destination(WireModel):
    name: str
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    headers: Dict[str, str] = {}
    credential_mode: str = "technical"  # technical | user
    source: str = "environment"  # environment | destination-service
