from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol
from uuid import UUID, uuid4

from app.models.module import ContentItem, Module, ModuleCounts


class ModuleCatalog(Protocol):
    async def get_module(self, module_id: UUID) -> Module | None: ...
    async def list_published_modules(self, course_id: UUID) -> list[Module]: ...
    async def get_content(self, content_id: UUID) -> ContentItem | None: ...
    async def list_published_content(self, module_id: UUID) -> list[ContentItem]: ...
    async def get_counts(
        self, module_ids: Iterable[UUID]
    ) -> dict[UUID, ModuleCounts]: ...


class InMemoryModuleCatalog:
    """Dict-backed catalog for dev and tests.

    Assignments are tracked only as (id, module, published) because the
    progress code needs nothing but their counts.
    """

    def __init__(self) -> None:
        self._modules: dict[UUID, Module] = {}
        self._content: dict[UUID, ContentItem] = {}
        self._assignments: dict[UUID, tuple[UUID, bool]] = {}

    def add_module(self, module: Module) -> None:
        if module.id in self._modules:
            raise ValueError("module already exists")
        self._modules[module.id] = module

    def add_content(self, item: ContentItem) -> None:
        if item.module_id not in self._modules:
            raise KeyError("module not found")
        self._content[item.id] = item

    def add_assignment(
        self,
        module_id: UUID,
        *,
        assignment_id: UUID | None = None,
        is_published: bool = True,
    ) -> UUID:
        if module_id not in self._modules:
            raise KeyError("module not found")
        assignment_id = assignment_id or uuid4()
        self._assignments[assignment_id] = (module_id, is_published)
        return assignment_id

    def clear(self) -> None:
        self._modules.clear()
        self._content.clear()
        self._assignments.clear()

    async def get_module(self, module_id: UUID) -> Module | None:
        return self._modules.get(module_id)

    async def list_published_modules(self, course_id: UUID) -> list[Module]:
        modules = [
            m
            for m in self._modules.values()
            if m.course_id == course_id and m.is_published
        ]
        return sorted(modules, key=lambda m: m.order_index)

    async def get_content(self, content_id: UUID) -> ContentItem | None:
        return self._content.get(content_id)

    async def list_published_content(self, module_id: UUID) -> list[ContentItem]:
        items = [
            c
            for c in self._content.values()
            if c.module_id == module_id and c.is_published
        ]
        return sorted(items, key=lambda c: c.order_index)

    async def get_counts(self, module_ids: Iterable[UUID]) -> dict[UUID, ModuleCounts]:
        wanted = set(module_ids)
        content: dict[UUID, int] = dict.fromkeys(wanted, 0)
        assignments: dict[UUID, int] = dict.fromkeys(wanted, 0)
        for item in self._content.values():
            if item.module_id in wanted and item.is_published:
                content[item.module_id] += 1
        for module_id, is_published in self._assignments.values():
            if module_id in wanted and is_published:
                assignments[module_id] += 1
        return {
            module_id: ModuleCounts(
                content_total=content[module_id],
                assignment_total=assignments[module_id],
            )
            for module_id in wanted
        }

    def assignment_module(self, assignment_id: UUID) -> UUID | None:
        entry = self._assignments.get(assignment_id)
        if entry is None or not entry[1]:
            return None
        return entry[0]
