"""Dictionary store interface and in-memory implementation."""
from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .models import DictionaryEntity, utcnow
from ..errors import NotFoundError


class DictionaryStore(ABC):
    """CRUD and full scans over dictionary entities, aliases included."""

    @abstractmethod
    def save_entity(self, entity: DictionaryEntity) -> DictionaryEntity:
        """Insert or replace an entity together with its aliases."""

    @abstractmethod
    def get_entity(self, entity_id: str) -> Optional[DictionaryEntity]: ...

    @abstractmethod
    def delete_entity(self, entity_id: str) -> None: ...

    @abstractmethod
    def list_entities(self, scope: Optional[str] = None) -> List[DictionaryEntity]: ...

    def find_by_global_id(self, global_id: str) -> Optional[DictionaryEntity]:
        for entity in self.list_entities():
            if entity.entity_id == global_id:
                return entity
        return None

    def find_by_name(self, scope: str, entity_type: str, canonical_name: str) -> Optional[DictionaryEntity]:
        for entity in self.list_entities(scope):
            if entity.entity_type == entity_type and entity.canonical_name == canonical_name:
                return entity
        return None


class InMemoryDictionaryStore(DictionaryStore):
    def __init__(self) -> None:
        self._entities: Dict[str, DictionaryEntity] = {}
        self._lock = threading.RLock()

    def save_entity(self, entity: DictionaryEntity) -> DictionaryEntity:
        for alias in entity.aliases:
            alias.entity_id = entity.id
        entity.updated_at = utcnow()
        with self._lock:
            self._entities[entity.id] = copy.deepcopy(entity)
        return entity

    def get_entity(self, entity_id: str) -> Optional[DictionaryEntity]:
        with self._lock:
            entity = self._entities.get(entity_id)
            return copy.deepcopy(entity) if entity is not None else None

    def delete_entity(self, entity_id: str) -> None:
        with self._lock:
            if self._entities.pop(entity_id, None) is None:
                raise NotFoundError("entity", entity_id)

    def list_entities(self, scope: Optional[str] = None) -> List[DictionaryEntity]:
        with self._lock:
            return [
                copy.deepcopy(entity)
                for entity in self._entities.values()
                if scope is None or entity.scope == scope
            ]
