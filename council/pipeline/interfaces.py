"""Interfaces of the engine's external collaborators, plus default adapters.

The engine only talks to prompt resolution, inference, storage and
retrieval through the protocols below. The in-process adapters here make the
engine runnable on its own; real deployments can pass their own.
"""

import copy
import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from council.pipeline.errors import StoreError
from council.pipeline.schema import GenerationConfig, OutputShape
from council.pipeline.tokens import substitute_tokens

logger = logging.getLogger(__name__)


class GenerationResult(BaseModel):
    """Text produced by an inference call."""
    text: str
    usage: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None


class StoreSnapshot(BaseModel):
    """Read-only view of a store used as step input."""
    store_id: str
    count: int = 0
    keys: List[str] = Field(default_factory=list)
    data: Any = None
    is_singleton: bool = False


class RetrievalHit(BaseModel):
    """One retrieval result."""
    store_id: str
    key: Optional[str] = None
    entry: Any = None
    score: float = 0.0

    def format(self) -> str:
        return f"[{self.store_id}] {json.dumps(self.entry, ensure_ascii=False, default=str)}"


@runtime_checkable
class PromptResolver(Protocol):
    def resolve(self, template: str, context: Mapping[str, Any], options: Optional[Dict[str, Any]] = None) -> str:
        ...


@runtime_checkable
class InferenceClient(Protocol):
    async def generate(
        self,
        prompt: str,
        generation_config: GenerationConfig,
        timeout: Optional[float] = None,
        system_prompt: Optional[str] = None,
        output_shape: Optional[OutputShape] = None,
    ) -> GenerationResult:
        ...


@runtime_checkable
class PersistentStore(Protocol):
    def read(self, store_id: str, key: Optional[str] = None) -> Any:
        ...

    def write(self, store_id: str, key: Optional[str], value: Any) -> None:
        ...

    def delete(self, store_id: str, key: str) -> None:
        ...

    def snapshot(self, store_id: str) -> StoreSnapshot:
        ...


@runtime_checkable
class RetrievalService(Protocol):
    async def retrieve(self, pipeline_id: str, query: str, limit: int = 5) -> List[RetrievalHit]:
        ...


class InMemoryStore:
    """Dictionary-backed store.

    A store is either keyed (``write(store_id, key, value)``) or a singleton
    (``write(store_id, None, value)``).
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None, singletons: Optional[List[str]] = None):
        self._data: Dict[str, Any] = {}
        self._singletons = set(singletons or [])
        for store_id, value in (initial or {}).items():
            self._data[store_id] = copy.deepcopy(value)

    def is_singleton(self, store_id: str) -> bool:
        return store_id in self._singletons

    def store_ids(self) -> List[str]:
        return sorted(self._data.keys())

    def read(self, store_id: str, key: Optional[str] = None) -> Any:
        if store_id not in self._data:
            raise StoreError(f"Unknown store: {store_id}")
        value = self._data[store_id]
        if key is None or self.is_singleton(store_id):
            return copy.deepcopy(value)
        if key not in value:
            raise StoreError(f"Entry '{key}' not found in store '{store_id}'")
        return copy.deepcopy(value[key])

    def write(self, store_id: str, key: Optional[str], value: Any) -> None:
        if key is None:
            self._singletons.add(store_id)
            self._data[store_id] = copy.deepcopy(value)
            return
        if self.is_singleton(store_id):
            raise StoreError(f"Store '{store_id}' is a singleton and has no keys")
        self._data.setdefault(store_id, {})[key] = copy.deepcopy(value)

    def delete(self, store_id: str, key: str) -> None:
        entries = self._data.get(store_id)
        if entries is None or self.is_singleton(store_id) or key not in entries:
            raise StoreError(f"Entry '{key}' not found in store '{store_id}'")
        del entries[key]

    def snapshot(self, store_id: str) -> StoreSnapshot:
        value = self._data.get(store_id)
        if self.is_singleton(store_id):
            return StoreSnapshot(
                store_id=store_id,
                count=0 if value is None else 1,
                keys=[],
                data=copy.deepcopy(value),
                is_singleton=True,
            )
        entries = value or {}
        return StoreSnapshot(
            store_id=store_id,
            count=len(entries),
            keys=list(entries.keys()),
            data=copy.deepcopy(entries),
            is_singleton=False,
        )


class StoreRetrievalService:
    """Keyword retrieval over store snapshots.

    ``pipelines`` maps a retrieval pipeline id to the stores it searches; an
    unknown id is treated as a store id.
    """

    MIN_TERM_LENGTH = 3

    def __init__(self, store: PersistentStore, pipelines: Optional[Dict[str, List[str]]] = None):
        self.store = store
        self.pipelines = dict(pipelines or {})

    def register_pipeline(self, pipeline_id: str, store_ids: List[str]):
        self.pipelines[pipeline_id] = list(store_ids)

    async def retrieve(self, pipeline_id: str, query: str, limit: int = 5) -> List[RetrievalHit]:
        store_ids = self.pipelines.get(pipeline_id, [pipeline_id])
        return self.search(store_ids, query, limit)

    def search(self, store_ids: List[str], query: str, limit: int = 5) -> List[RetrievalHit]:
        terms = [t for t in re.findall(r"\w+", (query or "").lower()) if len(t) >= self.MIN_TERM_LENGTH]
        hits: List[RetrievalHit] = []

        for store_id in store_ids:
            snapshot = self.store.snapshot(store_id)
            if snapshot.is_singleton:
                entries = [(None, snapshot.data)] if snapshot.data is not None else []
            else:
                entries = list((snapshot.data or {}).items())

            for key, entry in entries:
                haystack = json.dumps(entry, ensure_ascii=False, default=str).lower()
                score = sum(haystack.count(term) for term in terms) if terms else 0
                if terms and score == 0:
                    continue
                hits.append(RetrievalHit(store_id=store_id, key=key, entry=entry, score=float(score)))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]


class TokenPromptResolver:
    """Prompt resolver backed by in-process token substitution."""

    def resolve(self, template: str, context: Mapping[str, Any], options: Optional[Dict[str, Any]] = None) -> str:
        options = options or {}
        return substitute_tokens(
            template,
            context,
            preserve_unresolved=options.get("preserve_unresolved", True),
        )
