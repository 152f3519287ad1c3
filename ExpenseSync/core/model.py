"""Entity and mutation types shared by the sync components.

Entities are plain dataclasses. Every payload that enters the system, whether it is
written straight to the remote store or queued for later, is validated and coerced
against :data:`ENTITY_SCHEMA` first, so downstream code only ever sees typed values.
"""
import dataclasses
import datetime
import enum
import re
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

from ..status import status

TEMP_ID_PREFIX: str = 'temp-'


class EntityKind(enum.StrEnum):
    """Entity kinds; the values double as remote collection and storage key names."""
    Expense = 'expenses'
    Category = 'categories'
    Budget = 'budgets'

    @property
    def label(self) -> str:
        return self.name


class Operation(enum.StrEnum):
    """Mutation operations."""
    Add = 'add'
    Update = 'update'
    Delete = 'delete'


def now() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def make_temp_id() -> str:
    """Return a new locally-generated temporary entity id."""
    return f'{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}'


def is_temp_id(entity_id: Optional[str]) -> bool:
    """Return True if the id was generated locally and not assigned by the remote store."""
    return bool(entity_id) and entity_id.startswith(TEMP_ID_PREFIX)


def is_valid_hex_color(value: str) -> bool:
    """Check if a string is a valid hexadecimal color in #RRGGBB format."""
    return bool(re.fullmatch(r'#[0-9A-Fa-f]{6}', value))


def to_datetime(value: Any) -> datetime.datetime:
    """Coerce a date, datetime or ISO 8601 string to an aware UTC datetime.

    Naive values are taken to be UTC.

    Raises:
        ValueError: If the value cannot be interpreted as a date.
    """
    if isinstance(value, datetime.datetime):
        dt = value
    elif isinstance(value, datetime.date):
        dt = datetime.datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        dt = datetime.datetime.fromisoformat(value)
    else:
        raise ValueError(f'Cannot interpret {value!r} as a date.')

    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def _optional_datetime(value: Any) -> Optional[datetime.datetime]:
    return to_datetime(value) if value is not None else None


def _isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclasses.dataclass
class Category:
    id: str
    name: str
    color: str
    icon: str

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Category':
        return cls(
            id=data.get('id', ''),
            name=data['name'],
            color=data['color'],
            icon=data['icon'],
        )


@dataclasses.dataclass
class Expense:
    id: str
    amount: float
    description: str
    category: Category
    date: datetime.datetime
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': self.amount,
            'description': self.description,
            'category': self.category.to_dict(),
            'date': _isoformat(self.date),
            'created_at': _isoformat(self.created_at),
            'updated_at': _isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Expense':
        return cls(
            id=data['id'],
            amount=float(data['amount']),
            description=data['description'],
            category=Category.from_dict(data['category']),
            date=to_datetime(data['date']),
            created_at=_optional_datetime(data.get('created_at')),
            updated_at=_optional_datetime(data.get('updated_at')),
        )


@dataclasses.dataclass
class Budget:
    id: str
    amount: float
    month: int
    year: int
    category_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Budget':
        return cls(
            id=data['id'],
            amount=float(data['amount']),
            month=int(data['month']),
            year=int(data['year']),
            category_id=data.get('category_id'),
        )


Entity = Union[Expense, Category, Budget]

ENTITY_TYPES: Dict[EntityKind, type] = {
    EntityKind.Expense: Expense,
    EntityKind.Category: Category,
    EntityKind.Budget: Budget,
}

# Writable fields per kind. Expense timestamps are assigned by the remote store.
ENTITY_SCHEMA: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {
    EntityKind.Expense: {
        'amount': {'type': float, 'required': True},
        'description': {'type': str, 'required': True},
        'category': {'type': Category, 'required': True},
        'date': {'type': datetime.datetime, 'required': True},
    },
    EntityKind.Category: {
        'name': {'type': str, 'required': True},
        'color': {'type': str, 'required': True, 'format': 'hexcolor'},
        'icon': {'type': str, 'required': True},
    },
    EntityKind.Budget: {
        'amount': {'type': float, 'required': True},
        'month': {'type': int, 'required': True, 'range': (1, 12)},
        'year': {'type': int, 'required': True},
        'category_id': {'type': str, 'required': False, 'nullable': True},
    },
}


def _coerce_field(kind: EntityKind, field: str, value: Any, specs: Dict[str, Any]) -> Any:
    _type = specs['type']

    if value is None:
        if specs.get('nullable'):
            return None
        raise ValueError(f'{kind.label} field "{field}" must not be empty.')

    if _type is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f'{kind.label} field "{field}" must be a number, got {type(value).__name__}.')
        return float(value)

    if _type is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f'{kind.label} field "{field}" must be an integer, got {type(value).__name__}.')
        low, high = specs.get('range', (None, None))
        if low is not None and not low <= value <= high:
            raise ValueError(f'{kind.label} field "{field}" must be between {low} and {high}, got {value}.')
        return value

    if _type is str:
        if not isinstance(value, str):
            raise TypeError(f'{kind.label} field "{field}" must be a string, got {type(value).__name__}.')
        if specs.get('format') == 'hexcolor' and not is_valid_hex_color(value):
            raise ValueError(f'{kind.label} field "{field}" must be a hex color (#RRGGBB), got "{value}".')
        return value

    if _type is datetime.datetime:
        return to_datetime(value)

    if _type is Category:
        if isinstance(value, Category):
            return dataclasses.replace(value)
        if isinstance(value, Mapping):
            return Category.from_dict(value)
        raise TypeError(f'{kind.label} field "{field}" must be a category, got {type(value).__name__}.')

    raise TypeError(f'Unsupported schema type {_type} for field "{field}".')


def coerce_payload(kind: EntityKind, payload: Mapping[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Validate a payload against the kind's schema and return typed values.

    Args:
        kind: The entity kind the payload belongs to.
        payload: Field values keyed by field name.
        partial: If True, required fields may be absent (update payloads).

    Returns:
        A new dict with coerced values (floats, aware datetimes, Category instances).

    Raises:
        status.PayloadInvalidException: If the payload has unknown or missing fields, or bad values.
    """
    if not isinstance(payload, Mapping):
        raise status.PayloadInvalidException(f'{kind.label} payload must be a mapping.')

    schema = ENTITY_SCHEMA[kind]
    unknown = set(payload) - set(schema)
    if unknown:
        raise status.PayloadInvalidException(f'Unknown {kind.label} fields: {sorted(unknown)}')
    if partial and not payload:
        raise status.PayloadInvalidException(f'{kind.label} update payload is empty.')

    coerced: Dict[str, Any] = {}
    for field, specs in schema.items():
        if field not in payload:
            if specs['required'] and not partial:
                raise status.PayloadInvalidException(f'{kind.label} payload missing "{field}".')
            continue
        try:
            coerced[field] = _coerce_field(kind, field, payload[field], specs)
        except (ValueError, TypeError, KeyError) as ex:
            raise status.PayloadInvalidException(str(ex)) from ex
    return coerced


def encode_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert a coerced payload to JSON-compatible values."""
    encoded: Dict[str, Any] = {}
    for field, value in payload.items():
        if isinstance(value, datetime.datetime):
            value = value.isoformat()
        elif isinstance(value, Category):
            value = value.to_dict()
        encoded[field] = value
    return encoded


def build_entity(kind: EntityKind, entity_id: str, fields: Mapping[str, Any],
                 created_at: Optional[datetime.datetime] = None,
                 updated_at: Optional[datetime.datetime] = None) -> Entity:
    """Create an entity from a complete, coerced payload."""
    if kind == EntityKind.Expense:
        return Expense(id=entity_id, created_at=created_at, updated_at=updated_at, **fields)
    return ENTITY_TYPES[kind](id=entity_id, **fields)


def merge_entity(entity: Entity, fields: Mapping[str, Any],
                 updated_at: Optional[datetime.datetime] = None) -> Entity:
    """Return a copy of the entity with a partial, coerced payload merged in."""
    changes = dict(fields)
    if isinstance(entity, Expense) and updated_at is not None:
        changes['updated_at'] = updated_at
    return dataclasses.replace(entity, **changes)


def entity_from_dict(kind: EntityKind, data: Mapping[str, Any]) -> Entity:
    return ENTITY_TYPES[kind].from_dict(data)


def sort_entities(kind: EntityKind, entities: List[Entity]) -> List[Entity]:
    """Order entities the way the remote store lists them.

    Expenses are newest first, categories by name, budgets newest period first.
    """
    if kind == EntityKind.Expense:
        return sorted(entities, key=lambda e: e.date, reverse=True)
    if kind == EntityKind.Category:
        return sorted(entities, key=lambda e: e.name.casefold())
    return sorted(entities, key=lambda e: (e.year, e.month), reverse=True)


@dataclasses.dataclass(frozen=True)
class PendingMutation:
    """A local change waiting to be replayed against the remote store.

    ``entity_id`` is absent for adds and ``payload`` is absent for deletes. Adds carry
    the temporary id of the optimistic entity they created in the local mirror.
    """
    operation: Operation
    kind: EntityKind
    entity_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    temp_id: Optional[str] = None
    mutation_id: str = dataclasses.field(default_factory=lambda: uuid.uuid4().hex)
    queued_at: datetime.datetime = dataclasses.field(default_factory=now)

    def __post_init__(self) -> None:
        if self.operation == Operation.Add:
            if self.entity_id is not None or self.payload is None or not self.temp_id:
                raise ValueError('Add mutations need a payload and a temp id, and no entity id.')
        elif self.operation == Operation.Update:
            if not self.entity_id or not self.payload:
                raise ValueError('Update mutations need an entity id and a payload.')
        elif self.operation == Operation.Delete:
            if not self.entity_id or self.payload is not None:
                raise ValueError('Delete mutations need an entity id and no payload.')

    @classmethod
    def add(cls, kind: EntityKind, payload: Mapping[str, Any]) -> 'PendingMutation':
        return cls(Operation.Add, kind, payload=coerce_payload(kind, payload), temp_id=make_temp_id())

    @classmethod
    def update(cls, kind: EntityKind, entity_id: str, payload: Mapping[str, Any]) -> 'PendingMutation':
        return cls(Operation.Update, kind, entity_id=entity_id, payload=coerce_payload(kind, payload, partial=True))

    @classmethod
    def delete(cls, kind: EntityKind, entity_id: str) -> 'PendingMutation':
        return cls(Operation.Delete, kind, entity_id=entity_id)

    @property
    def target_id(self) -> str:
        """The id of the entity this mutation touches in the local mirror."""
        return self.temp_id if self.operation == Operation.Add else self.entity_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mutation_id': self.mutation_id,
            'operation': self.operation.value,
            'kind': self.kind.value,
            'entity_id': self.entity_id,
            'payload': encode_payload(self.payload) if self.payload is not None else None,
            'temp_id': self.temp_id,
            'queued_at': self.queued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'PendingMutation':
        operation = Operation(data['operation'])
        kind = EntityKind(data['kind'])
        payload = data.get('payload')
        if payload is not None:
            payload = coerce_payload(kind, payload, partial=operation == Operation.Update)
        return cls(
            operation=operation,
            kind=kind,
            entity_id=data.get('entity_id'),
            payload=payload,
            temp_id=data.get('temp_id'),
            mutation_id=data['mutation_id'],
            queued_at=to_datetime(data['queued_at']),
        )
