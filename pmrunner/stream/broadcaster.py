"""Real-time output broadcaster for supervised executions.

Provides:
- Fan-out of output chunks to live subscribers
- A bounded, time-windowed buffer for late joiners ("since sequence N")
- Per-task filtering and fail-closed stale chunk rejection

One instance is created by the application root and passed to every
ProcessSupervisor that should publish through it. All mutable state sits
behind a single re-entrant lock, so concurrent emits from different
executions never interleave and sequence numbers stay globally monotonic.
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from pmrunner.core.models import ActiveTaskInfo, OutputChunk, OutputStreamName, StaleContext

logger = logging.getLogger(__name__)

Subscriber = Callable[[OutputChunk], None]

# Phrases that mark output as leftover from an earlier run
STALE_TEXT_PATTERNS = (
    "previous session",
    "already cleaned up",
    "stale output",
    "background task finished earlier",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_stale(chunk: OutputChunk, context: StaleContext | None) -> bool:
    """Return True if the chunk must be hidden from the given context.

    Fail-closed: a chunk is shown only when it can be positively tied to the
    viewer's task and session. Chunks emitted without a session tag are
    accepted when the task matches.
    """
    if context is None:
        return True
    if not context.current_task_id and not context.current_session_id:
        return True

    if context.current_task_id and chunk.task_id != context.current_task_id:
        return True

    if (
        context.current_session_id
        and chunk.session_id
        and chunk.session_id != context.current_session_id
    ):
        return True

    created_at = context.task_created_at
    if created_at is not None:
        # Naive times are taken as local time
        if created_at.tzinfo is None:
            created_at = created_at.astimezone(timezone.utc)
        if chunk.timestamp < created_at:
            return True

    lower_text = chunk.text.lower()
    return any(pattern in lower_text for pattern in STALE_TEXT_PATTERNS)


class OutputBroadcaster:
    """Bounded output buffer with synchronous subscriber fan-out.

    USAGE (producer, one per execution):
        broadcaster.start_task(task.id)
        broadcaster.emit(task.id, "stdout", text)
        broadcaster.end_task(task.id, "COMPLETE")

    USAGE (consumer):
        unsubscribe = broadcaster.subscribe(callback)
        backlog = broadcaster.get_since(last_seen_sequence)
    """

    DEFAULT_MAX_BUFFER_SIZE = 1000
    DEFAULT_MAX_BUFFER_AGE = 300.0  # seconds

    def __init__(
        self,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        max_buffer_age: float = DEFAULT_MAX_BUFFER_AGE,
    ):
        if max_buffer_size < 1:
            raise ValueError("max_buffer_size must be at least 1")
        self.max_buffer_size = max_buffer_size
        self.max_buffer_age = timedelta(seconds=max_buffer_age)

        self._chunks: list[OutputChunk] = []
        self._subscribers: list[Subscriber] = []
        self._active_tasks: dict[str, ActiveTaskInfo] = {}
        self._sequence = 0
        self._session_id: str | None = None
        # RLock: a subscriber may read the buffer from inside its callback
        self._lock = threading.RLock()

    # --- Session ---

    def set_session_id(self, session_id: str | None) -> None:
        """Tag all subsequent emits with session_id."""
        with self._lock:
            self._session_id = session_id

    def get_session_id(self) -> str | None:
        with self._lock:
            return self._session_id

    # --- Producing ---

    def emit(
        self,
        task_id: str,
        stream: str,
        text: str,
        project_id: str | None = None,
    ) -> OutputChunk:
        """Append a chunk, trim the buffer and notify every subscriber."""
        with self._lock:
            now = _utcnow()
            self._sequence += 1
            chunk = OutputChunk(
                timestamp=now,
                task_id=task_id,
                session_id=self._session_id,
                project_id=project_id,
                stream=stream,
                text=text,
                sequence=self._sequence,
            )
            self._chunks.append(chunk)

            info = self._active_tasks.get(task_id)
            self._active_tasks[task_id] = ActiveTaskInfo(
                task_id=task_id,
                start_time=info.start_time if info else now,
                last_output_time=now,
            )

            self._trim_buffer(now)
            self._notify_subscribers(chunk)
            return chunk

    def start_task(self, task_id: str, project_id: str | None = None) -> None:
        """Record task start for active-task summaries."""
        with self._lock:
            now = _utcnow()
            self._active_tasks[task_id] = ActiveTaskInfo(
                task_id=task_id, start_time=now, last_output_time=now
            )
            self.emit(task_id, OutputStreamName.SYSTEM.value, "Task started", project_id)

    def end_task(
        self,
        task_id: str,
        final_status: str,
        project_id: str | None = None,
    ) -> None:
        """Write one synthetic state chunk and drop the task from the active set."""
        final_status = getattr(final_status, "value", final_status)
        if final_status == "AWAITING_RESPONSE":
            stream, message = OutputStreamName.STATE.value, "AWAITING_RESPONSE"
        elif final_status == "COMPLETE":
            stream, message = OutputStreamName.STATE.value, "COMPLETE"
        else:
            stream, message = OutputStreamName.ERROR.value, "ERROR"

        with self._lock:
            self.emit(task_id, stream, f"[state] {message}", project_id)
            self._active_tasks.pop(task_id, None)

    # --- Subscribing ---

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register subscriber; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # --- Queries ---

    def get_all(self) -> list[OutputChunk]:
        with self._lock:
            return list(self._chunks)

    def get_by_task_id(self, task_id: str) -> list[OutputChunk]:
        with self._lock:
            return [chunk for chunk in self._chunks if chunk.task_id == task_id]

    def get_since(self, sequence: int) -> list[OutputChunk]:
        """Chunks with a sequence number strictly greater than sequence."""
        with self._lock:
            return [chunk for chunk in self._chunks if chunk.sequence > sequence]

    def get_recent(self, count: int = 100) -> list[OutputChunk]:
        with self._lock:
            return self._chunks[-count:] if count > 0 else []

    def get_recent_for_task(self, task_id: str, count: int = 100) -> list[OutputChunk]:
        chunks = self.get_by_task_id(task_id)
        return chunks[-count:] if count > 0 else []

    def get_by_task_id_filtered(
        self,
        task_id: str,
        task_created_at: datetime | None = None,
    ) -> list[OutputChunk]:
        """Chunks for task_id that survive the stale filter in the current session."""
        with self._lock:
            context = StaleContext(
                current_task_id=task_id,
                current_session_id=self._session_id,
                task_created_at=task_created_at,
            )
            return [chunk for chunk in self._chunks if not is_stale(chunk, context)]

    def get_active_tasks(self) -> list[ActiveTaskInfo]:
        with self._lock:
            now = _utcnow()
            return [
                info.model_copy(
                    update={"duration_ms": int((now - info.start_time).total_seconds() * 1000)}
                )
                for info in self._active_tasks.values()
            ]

    # --- Maintenance ---

    def clear(self) -> None:
        """Drop every chunk and active task and restart sequence numbering."""
        with self._lock:
            self._chunks = []
            self._active_tasks.clear()
            self._sequence = 0

    def clear_task(self, task_id: str) -> None:
        with self._lock:
            self._chunks = [chunk for chunk in self._chunks if chunk.task_id != task_id]
            self._active_tasks.pop(task_id, None)

    def _trim_buffer(self, now: datetime) -> None:
        """Enforce the age bound, then the count bound. Caller holds the lock."""
        cutoff = now - self.max_buffer_age
        if self._chunks and self._chunks[0].timestamp < cutoff:
            self._chunks = [chunk for chunk in self._chunks if chunk.timestamp >= cutoff]

        if len(self._chunks) > self.max_buffer_size:
            self._chunks = self._chunks[-self.max_buffer_size :]

    def _notify_subscribers(self, chunk: OutputChunk) -> None:
        """Deliver chunk to every subscriber; one failure never stops the rest."""
        for subscriber in list(self._subscribers):
            try:
                subscriber(chunk)
            except Exception:
                logger.exception(f"Output subscriber {subscriber!r} failed on chunk {chunk.sequence}")
