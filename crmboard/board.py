"""
Kanban board: drag lifecycle as an explicit state machine.

States:
  Idle                        nothing pressed
  Pressed(task, origin)       pointer down, not yet past the drag threshold
  Lifted(task, candidate)     just crossed the threshold, card follows the pointer
  Dragging(task, candidate)   moving over drop targets

  Idle     --down-->  Pressed
  Pressed  --move > threshold-->  Lifted(candidate)
  Pressed  --up-->    Idle  + OpenTask   (a click, not a drag)
  Lifted   --move-->  Dragging(candidate)
  Dragging --move-->  Dragging(candidate)
  Lifted   --up-->    Idle  + UpdateStatus when the target column differs
  Dragging --up-->    Idle  + UpdateStatus when the target column differs
  any      --cancel-> Idle

transition() is pure. BoardController owns the current state and issues the
single status write for a completed drag through TaskQueries.

Order inside a column is not persisted; dropping within the same column
never writes.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .query import MutationResult, TaskQueries
from .schema import Task, TaskFilters, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_DRAG_THRESHOLD = 8.0

COLUMNS = [
    (TaskStatus.TODO, "To Do"),
    (TaskStatus.IN_PROGRESS, "In Progress"),
    (TaskStatus.DONE, "Done"),
]


# ── Geometry ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    def corners(self) -> Tuple[Point, Point, Point, Point]:
        return (
            Point(self.left, self.top),
            Point(self.right, self.top),
            Point(self.left, self.bottom),
            Point(self.right, self.bottom),
        )

    def translate(self, dx: float, dy: float) -> "Rect":
        return Rect(self.left + dx, self.top + dy, self.width, self.height)

    def intersects(self, other: "Rect") -> bool:
        return (
            self.left < other.right and other.left < self.right
            and self.top < other.bottom and other.top < self.bottom
        )

    @classmethod
    def from_dict(cls, data: Mapping) -> "Rect":
        return cls(float(data["left"]), float(data["top"]), float(data["width"]), float(data["height"]))


@dataclass(frozen=True)
class DropTarget:
    """A column, or a card inside a column (task_id set)."""
    id: str
    status: TaskStatus
    rect: Rect
    task_id: Optional[str] = None


@dataclass(frozen=True)
class BoardLayout:
    targets: Tuple[DropTarget, ...] = ()
    threshold: float = DEFAULT_DRAG_THRESHOLD

    @classmethod
    def grid(cls, column_width: float = 300, column_height: float = 800, gap: float = 16,
             threshold: float = DEFAULT_DRAG_THRESHOLD) -> "BoardLayout":
        """Three side-by-side columns starting at the origin."""
        targets = tuple(
            DropTarget(
                id=status.value,
                status=status,
                rect=Rect(i * (column_width + gap), 0, column_width, column_height),
            )
            for i, (status, _) in enumerate(COLUMNS)
        )
        return cls(targets=targets, threshold=threshold)


def distance(a: Point, b: Point) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def nearest_corners(rect: Rect, targets: Iterable[DropTarget]) -> Optional[DropTarget]:
    """
    Among targets overlapping ``rect``, pick the one whose corners are closest
    on average to the rect's corners. First target wins ties.
    """
    best, best_score = None, math.inf
    corners = rect.corners()
    for target in targets:
        if not rect.intersects(target.rect):
            continue
        score = sum(distance(a, b) for a, b in zip(corners, target.rect.corners())) / 4
        if score < best_score:
            best, best_score = target, score
    return best


# ── States, events, effects ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Pressed:
    task_id: str
    origin: Point
    card_rect: Rect


@dataclass(frozen=True)
class Lifted:
    task_id: str
    origin: Point
    card_rect: Rect
    candidate: Optional[DropTarget] = None


@dataclass(frozen=True)
class Dragging:
    task_id: str
    origin: Point
    card_rect: Rect
    candidate: Optional[DropTarget] = None


BoardState = Union[Idle, Pressed, Lifted, Dragging]
IDLE = Idle()


@dataclass(frozen=True)
class PointerDown:
    task_id: str
    point: Point
    card_rect: Rect


@dataclass(frozen=True)
class PointerMove:
    point: Point


@dataclass(frozen=True)
class PointerUp:
    point: Optional[Point] = None


@dataclass(frozen=True)
class Cancel:
    reason: str = ""


BoardEvent = Union[PointerDown, PointerMove, PointerUp, Cancel]


@dataclass(frozen=True)
class UpdateStatus:
    task_id: str
    status: TaskStatus


@dataclass(frozen=True)
class OpenTask:
    task_id: str


Effect = Union[UpdateStatus, OpenTask]


@dataclass(frozen=True)
class Step:
    state: BoardState
    effect: Optional[Effect] = None


def _candidate_at(state: Union[Pressed, Lifted, Dragging], point: Point,
                  layout: BoardLayout) -> Optional[DropTarget]:
    dragged = state.card_rect.translate(point.x - state.origin.x, point.y - state.origin.y)
    return nearest_corners(dragged, layout.targets)


def transition(
    state: BoardState,
    event: BoardEvent,
    layout: BoardLayout,
    statuses: Mapping[str, TaskStatus],
) -> Step:
    """Next state and at most one effect for ``event``. No side effects."""
    if isinstance(event, Cancel):
        return Step(IDLE)

    if isinstance(state, Idle):
        if isinstance(event, PointerDown):
            return Step(Pressed(event.task_id, event.point, event.card_rect))
        return Step(state)

    if isinstance(state, Pressed):
        if isinstance(event, PointerMove):
            if distance(event.point, state.origin) > layout.threshold:
                candidate = _candidate_at(state, event.point, layout)
                return Step(Lifted(state.task_id, state.origin, state.card_rect, candidate))
            return Step(state)
        if isinstance(event, PointerUp):
            return Step(IDLE, OpenTask(state.task_id))
        return Step(state)

    if isinstance(state, (Lifted, Dragging)):
        if isinstance(event, PointerMove):
            candidate = _candidate_at(state, event.point, layout)
            return Step(Dragging(state.task_id, state.origin, state.card_rect, candidate))
        if isinstance(event, PointerUp):
            if event.point is not None:
                candidate = _candidate_at(state, event.point, layout)
            else:
                candidate = state.candidate
            current = statuses.get(state.task_id)
            if candidate is None or current is None or candidate.status == current:
                return Step(IDLE)
            return Step(IDLE, UpdateStatus(state.task_id, candidate.status))
        return Step(state)

    return Step(state)


# ── Derived view state ───────────────────────────────────────────────────────

def overlay_task_id(state: BoardState) -> Optional[str]:
    """Card currently drawn as the lifted overlay."""
    if isinstance(state, (Lifted, Dragging)):
        return state.task_id
    return None


def highlighted_column(state: BoardState) -> Optional[TaskStatus]:
    if isinstance(state, (Lifted, Dragging)) and state.candidate is not None:
        return state.candidate.status
    return None


def group_by_status(tasks: Iterable[Task]) -> Dict[TaskStatus, List[Task]]:
    columns: Dict[TaskStatus, List[Task]] = {status: [] for status, _ in COLUMNS}
    for task in tasks:
        columns[task.status].append(task)
    return columns


def board_stats(tasks: Iterable[Task], now: Optional[datetime] = None) -> Dict[str, int]:
    tasks = list(tasks)
    stats = {"total": len(tasks)}
    for status, _ in COLUMNS:
        stats[status.value] = sum(1 for t in tasks if t.status == status)
    stats["overdue"] = sum(1 for t in tasks if t.is_overdue(now))
    return stats


# ── Controller ───────────────────────────────────────────────────────────────

@dataclass
class DispatchResult:
    step: Step
    mutation: Optional[MutationResult] = None


@dataclass
class BoardController:
    """Holds the board state and runs the effects transition() asks for."""

    tasks: TaskQueries
    layout: BoardLayout = field(default_factory=BoardLayout.grid)
    state: BoardState = IDLE
    statuses: Dict[str, TaskStatus] = field(default_factory=dict)
    editing_task_id: Optional[str] = None

    def load(self, tasks: Iterable[Task]) -> None:
        """Take the task list from the latest read as the authoritative column map."""
        self.statuses = {t.id: t.status for t in tasks}

    async def refresh(self, filters: Optional[TaskFilters] = None) -> List[Task]:
        result = await self.tasks.list(filters)
        if result.ok:
            self.load(result.data)
            return result.data
        return []

    @property
    def overlay_task_id(self) -> Optional[str]:
        return overlay_task_id(self.state)

    async def dispatch(self, event: BoardEvent) -> DispatchResult:
        step = transition(self.state, event, self.layout, self.statuses)
        # Overlay state follows the transition immediately, before any write
        self.state = step.state

        if isinstance(step.effect, OpenTask):
            self.editing_task_id = step.effect.task_id
            return DispatchResult(step)

        if isinstance(step.effect, UpdateStatus):
            effect = step.effect
            logger.info(f"Moving task {effect.task_id} to {effect.status.value}")
            mutation = await self.tasks.update(effect.task_id, {"status": effect.status.value})
            if mutation.ok:
                self.statuses[effect.task_id] = mutation.data.status
            return DispatchResult(step, mutation)

        return DispatchResult(step)
