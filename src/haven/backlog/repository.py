"""Read/write view of the PRD / Epic / Task backlog.

The orchestrator never parses artefact files itself. It talks to an
:class:`ArtefactRepository`, constructed once per process and passed to every
component that needs backlog data. :class:`InMemoryRepository` is the
reference implementation used by tests and by embedding applications that
load artefacts from their own storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, Protocol, runtime_checkable

from haven.backlog.ids import extract_epic_id, extract_prd_id, normalize_id
from haven.backlog.lexicon import NOT_STARTED, DRAFT, canonical_status
from haven.errors import UnknownEntityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Task:
    """A task as supplied by the artefact store.

    ``epic_id`` and ``prd_id`` are derived from ``parent`` (``"PRD-001 / E002"``)
    when not given explicitly. ``blocked_by`` keeps the raw entries; the graph
    builder extracts ids from them.
    """

    id: str
    title: str = ""
    status: str = NOT_STARTED
    blocked_by: tuple[str, ...] = ()
    parent: str | None = None
    epic_id: str | None = None
    prd_id: str | None = None
    assignee: str | None = None
    effort: str | None = None
    priority: str | None = None
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", normalize_id(self.id) or self.id)
        object.__setattr__(self, "status", canonical_status(self.status))
        object.__setattr__(self, "blocked_by", tuple(self.blocked_by))
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "epic_id", normalize_id(self.epic_id) or extract_epic_id(self.parent))
        object.__setattr__(self, "prd_id", normalize_id(self.prd_id) or extract_prd_id(self.parent))


@dataclass(frozen=True)
class Epic:
    id: str
    title: str = ""
    status: str = NOT_STARTED
    prd_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", normalize_id(self.id) or self.id)
        object.__setattr__(self, "status", canonical_status(self.status))
        object.__setattr__(self, "prd_id", normalize_id(self.prd_id))


@dataclass(frozen=True)
class Prd:
    id: str
    title: str = ""
    status: str = DRAFT

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", normalize_id(self.id) or self.id)
        object.__setattr__(self, "status", canonical_status(self.status))


@dataclass(frozen=True)
class Story:
    id: str
    title: str = ""
    parent: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", normalize_id(self.id) or self.id)


@runtime_checkable
class ArtefactRepository(Protocol):
    """Backlog access used by the graph, cascade and lifecycle components."""

    def get_task(self, task_id: str) -> Task | None: ...

    def get_epic(self, epic_id: str) -> Epic | None: ...

    def get_prd(self, prd_id: str) -> Prd | None: ...

    def get_story(self, story_id: str) -> Story | None: ...

    def list_tasks(self, epic_id: str | None = None, prd_id: str | None = None) -> list[Task]: ...

    def list_epics(self, prd_id: str | None = None) -> list[Epic]: ...

    def set_status(self, entity_id: str, status: str) -> None: ...

    def invalidate(self) -> None: ...


@dataclass
class InMemoryRepository:
    """Dictionary-backed repository with explicitly invalidated indexes."""

    tasks: dict[str, Task] = field(default_factory=dict)
    epics: dict[str, Epic] = field(default_factory=dict)
    prds: dict[str, Prd] = field(default_factory=dict)
    stories: dict[str, Story] = field(default_factory=dict)
    _tasks_by_epic: dict[str, list[str]] | None = field(default=None, init=False, repr=False)
    _epics_by_prd: dict[str, list[str]] | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_entities(
        cls,
        tasks: Iterable[Task] = (),
        epics: Iterable[Epic] = (),
        prds: Iterable[Prd] = (),
        stories: Iterable[Story] = (),
    ) -> InMemoryRepository:
        return cls(
            tasks={t.id: t for t in tasks},
            epics={e.id: e for e in epics},
            prds={p.id: p for p in prds},
            stories={s.id: s for s in stories},
        )

    def get_task(self, task_id: str) -> Task | None:
        return self.tasks.get(normalize_id(task_id) or task_id)

    def get_epic(self, epic_id: str) -> Epic | None:
        return self.epics.get(normalize_id(epic_id) or epic_id)

    def get_prd(self, prd_id: str) -> Prd | None:
        return self.prds.get(normalize_id(prd_id) or prd_id)

    def get_story(self, story_id: str) -> Story | None:
        return self.stories.get(normalize_id(story_id) or story_id)

    def _build_indexes(self) -> None:
        tasks_by_epic: dict[str, list[str]] = {}
        for task in self.tasks.values():
            if task.epic_id:
                tasks_by_epic.setdefault(task.epic_id, []).append(task.id)
        epics_by_prd: dict[str, list[str]] = {}
        for epic in self.epics.values():
            if epic.prd_id:
                epics_by_prd.setdefault(epic.prd_id, []).append(epic.id)
        self._tasks_by_epic = tasks_by_epic
        self._epics_by_prd = epics_by_prd

    def list_tasks(self, epic_id: str | None = None, prd_id: str | None = None) -> list[Task]:
        if epic_id is None and prd_id is None:
            return sorted(self.tasks.values(), key=lambda t: t.id)
        if self._tasks_by_epic is None:
            self._build_indexes()
        assert self._tasks_by_epic is not None
        if epic_id is not None:
            ids = self._tasks_by_epic.get(normalize_id(epic_id) or epic_id, [])
            tasks = [self.tasks[i] for i in ids]
        else:
            tasks = list(self.tasks.values())
        if prd_id is not None:
            wanted = normalize_id(prd_id)
            tasks = [t for t in tasks if t.prd_id == wanted]
        return sorted(tasks, key=lambda t: t.id)

    def list_epics(self, prd_id: str | None = None) -> list[Epic]:
        if prd_id is None:
            return sorted(self.epics.values(), key=lambda e: e.id)
        if self._epics_by_prd is None:
            self._build_indexes()
        assert self._epics_by_prd is not None
        ids = self._epics_by_prd.get(normalize_id(prd_id) or prd_id, [])
        return sorted((self.epics[i] for i in ids), key=lambda e: e.id)

    def add(self, entity: Task | Epic | Prd | Story) -> None:
        """Insert or replace an entity and drop derived indexes."""
        if isinstance(entity, Task):
            self.tasks[entity.id] = entity
        elif isinstance(entity, Epic):
            self.epics[entity.id] = entity
        elif isinstance(entity, Prd):
            self.prds[entity.id] = entity
        else:
            self.stories[entity.id] = entity
        self.invalidate()

    def set_status(self, entity_id: str, status: str) -> None:
        """Write a status to a task, epic or PRD.

        Raises:
            UnknownEntityError: If no entity has that id.
        """
        key = normalize_id(entity_id) or entity_id
        for table in (self.tasks, self.epics, self.prds):
            if key in table:
                table[key] = replace(table[key], status=status)  # type: ignore[arg-type]
                logger.debug("Status of %s set to %s", key, status)
                self.invalidate()
                return
        raise UnknownEntityError(key)

    def invalidate(self) -> None:
        self._tasks_by_epic = None
        self._epics_by_prd = None
