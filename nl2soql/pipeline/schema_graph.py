from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple, Union


@dataclass(frozen=True)
class SchemaField:
    api_name: str
    label: str = ""
    type: str = "string"
    filterable: bool = True
    sortable: bool = True
    groupable: bool = True
    calculated: bool = False
    reference_to: Tuple[str, ...] = ()
    relationship_name: Optional[str] = None
    picklist_values: Tuple[str, ...] = ()
    description: str = ""

    @property
    def is_reference(self) -> bool:
        return self.type == "reference" or bool(self.reference_to)

    @property
    def is_polymorphic(self) -> bool:
        return self.is_reference and len(self.reference_to) > 1

    @property
    def is_picklist(self) -> bool:
        return self.type in {"picklist", "multipicklist"}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaField":
        return cls(
            api_name=data["api_name"],
            label=data.get("label") or data["api_name"],
            type=data.get("type", "string"),
            filterable=data.get("filterable", True),
            sortable=data.get("sortable", True),
            groupable=data.get("groupable", True),
            calculated=data.get("calculated", False),
            reference_to=tuple(data.get("reference_to") or ()),
            relationship_name=data.get("relationship_name"),
            picklist_values=tuple(data.get("picklist_values") or ()),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class ParentRelationship:
    field_api_name: str
    relationship_name: str
    target_object: str


@dataclass(frozen=True)
class ChildRelationship:
    relationship_name: str
    child_object: str
    field_api_name: str = ""


@dataclass(frozen=True)
class SchemaObject:
    api_name: str
    label: str = ""
    category: Optional[str] = None
    description: str = ""
    fields: Tuple[SchemaField, ...] = ()
    parent_relationships: Tuple[ParentRelationship, ...] = ()
    child_relationships: Tuple[ChildRelationship, ...] = ()
    record_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaObject":
        fields = tuple(SchemaField.from_dict(f) for f in data.get("fields", []))
        parents: List[ParentRelationship] = []
        for fld in fields:
            if fld.is_reference and fld.relationship_name:
                for target in fld.reference_to:
                    parents.append(ParentRelationship(fld.api_name, fld.relationship_name, target))
        children = tuple(
            ChildRelationship(
                relationship_name=c["relationship_name"],
                child_object=c["child_object"],
                field_api_name=c.get("field", ""),
            )
            for c in data.get("child_relationships", [])
        )
        return cls(
            api_name=data["api_name"],
            label=data.get("label") or data["api_name"],
            category=data.get("category"),
            description=data.get("description", ""),
            fields=fields,
            parent_relationships=tuple(parents),
            child_relationships=children,
            record_count=data.get("record_count"),
        )

    def field_names(self) -> List[str]:
        return [f.api_name for f in self.fields]

    def get_field(self, name: str) -> Optional[SchemaField]:
        lowered = name.lower()
        for fld in self.fields:
            if fld.api_name.lower() == lowered:
                return fld
        return None

    def has_field(self, name: str) -> bool:
        return self.get_field(name) is not None

    def parents_named(self, relationship_name: str) -> List[ParentRelationship]:
        lowered = relationship_name.lower()
        return [r for r in self.parent_relationships if r.relationship_name.lower() == lowered]

    def get_child(self, relationship_name: str) -> Optional[ChildRelationship]:
        lowered = relationship_name.lower()
        for rel in self.child_relationships:
            if rel.relationship_name.lower() == lowered:
                return rel
        return None

    def neighbors(self) -> Set[str]:
        related = {r.target_object for r in self.parent_relationships}
        related.update(c.child_object for c in self.child_relationships)
        related.discard(self.api_name)
        return related

    def summary(self) -> "ObjectSummary":
        return ObjectSummary(api_name=self.api_name, label=self.label, category=self.category)


@dataclass(frozen=True)
class ObjectSummary:
    api_name: str
    label: str = ""
    category: Optional[str] = None


@dataclass(frozen=True)
class InstanceRecord:
    object_type: str
    record_id: str
    name: str
    fields: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


class SchemaGraphClient(Protocol):
    """Read-only query surface over a tenant's object/field/relationship graph."""

    async def list_objects(self, tenant: Optional[str] = None) -> List[ObjectSummary]:
        ...

    async def get_object_detail(self, api_name: str, tenant: Optional[str] = None) -> Optional[SchemaObject]:
        ...

    async def get_field_embeddings(
        self, object_names: Sequence[str], tenant: Optional[str] = None
    ) -> Dict[str, List[float]]:
        ...

    async def search_instance_records(self, sosl: str, tenant: Optional[str] = None) -> List[InstanceRecord]:
        ...


_SOSL_FIND = re.compile(r"FIND\s*\{(?P<term>[^}]*)\}", re.IGNORECASE)
_SOSL_RETURNING = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)\s*\(([^)]*)\)")
_SOSL_LIMIT = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)


@dataclass
class _TenantSchema:
    objects: Dict[str, SchemaObject] = field(default_factory=dict)
    embeddings: Dict[str, List[float]] = field(default_factory=dict)
    records: List[InstanceRecord] = field(default_factory=list)


class InMemorySchemaGraph:
    """Schema graph held in memory, keyed by tenant (``None`` is the shared default)."""

    def __init__(self) -> None:
        self._tenants: Dict[Optional[str], _TenantSchema] = {None: _TenantSchema()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], tenant: Optional[str] = None) -> "InMemorySchemaGraph":
        graph = cls()
        graph.load(data, tenant=tenant)
        return graph

    @classmethod
    def from_json(cls, path: Union[Path, str], tenant: Optional[str] = None) -> "InMemorySchemaGraph":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")), tenant=tenant)

    def load(self, data: Dict[str, Any], tenant: Optional[str] = None) -> None:
        schema = _TenantSchema()
        for raw in data.get("objects", []):
            obj = SchemaObject.from_dict(raw)
            schema.objects[obj.api_name] = obj
        schema.embeddings = {k: list(v) for k, v in (data.get("embeddings") or {}).items()}
        schema.records = [
            InstanceRecord(
                object_type=r["type"],
                record_id=r["id"],
                name=r.get("name", r["id"]),
                fields={k: v for k, v in r.items() if k not in {"type", "id", "name"}},
            )
            for r in data.get("records", [])
        ]
        self._tenants[tenant] = schema

    def put_object(self, obj: SchemaObject, tenant: Optional[str] = None) -> None:
        self._tenants.setdefault(tenant, _TenantSchema()).objects[obj.api_name] = obj

    def _schema(self, tenant: Optional[str]) -> _TenantSchema:
        schema = self._tenants.get(tenant)
        return schema if schema is not None else _TenantSchema()

    def objects(self, tenant: Optional[str] = None) -> Dict[str, SchemaObject]:
        return dict(self._schema(tenant).objects)

    def neighbors(self, api_name: str, tenant: Optional[str] = None) -> Set[str]:
        obj = self._schema(tenant).objects.get(api_name)
        return obj.neighbors() if obj else set()

    async def list_objects(self, tenant: Optional[str] = None) -> List[ObjectSummary]:
        return [obj.summary() for obj in self._schema(tenant).objects.values()]

    async def get_object_detail(self, api_name: str, tenant: Optional[str] = None) -> Optional[SchemaObject]:
        objects = self._schema(tenant).objects
        if api_name in objects:
            return objects[api_name]
        lowered = api_name.lower()
        for name, obj in objects.items():
            if name.lower() == lowered:
                return obj
        return None

    async def get_field_embeddings(
        self, object_names: Sequence[str], tenant: Optional[str] = None
    ) -> Dict[str, List[float]]:
        embeddings = self._schema(tenant).embeddings
        return {name: embeddings[name] for name in object_names if name in embeddings}

    async def search_instance_records(self, sosl: str, tenant: Optional[str] = None) -> List[InstanceRecord]:
        find = _SOSL_FIND.search(sosl)
        if not find:
            return []
        words = [w.lower() for w in find.group("term").split() if w]
        returning = sosl[find.end() :]
        targets: Dict[str, int] = {}
        for obj_name, inner in _SOSL_RETURNING.findall(returning):
            limit_match = _SOSL_LIMIT.search(inner)
            targets[obj_name] = int(limit_match.group(1)) if limit_match else 200
        results: List[InstanceRecord] = []
        counts: Dict[str, int] = {}
        for record in self._schema(tenant).records:
            if record.object_type not in targets:
                continue
            if counts.get(record.object_type, 0) >= targets[record.object_type]:
                continue
            if _name_matches(words, record.name):
                results.append(record)
                counts[record.object_type] = counts.get(record.object_type, 0) + 1
        return results


def _name_matches(words: Iterable[str], name: str) -> bool:
    name_words = [w.lower() for w in re.split(r"\W+", name) if w]
    return all(any(nw.startswith(w) for nw in name_words) for w in words)


__all__ = [
    "SchemaField",
    "ParentRelationship",
    "ChildRelationship",
    "SchemaObject",
    "ObjectSummary",
    "InstanceRecord",
    "SchemaGraphClient",
    "InMemorySchemaGraph",
]
