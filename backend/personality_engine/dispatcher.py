"""
Request dispatcher: bounded-concurrency FIFO of chat and analysis work items.

All queue and rate-limiter mutations happen on the dispatcher loop. Public methods only
post events to its inbox, and running items report back the same way, so there is a
single writer for the queue, the active set and the limiter counters.
"""
from __future__ import annotations
import asyncio
import inspect
import json
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from .cancellation import CancellationToken, CancelledOperation
from .config import settings
from .errors import (
    AnalysisAborted,
    ErrorKind,
    QueueTerminationError,
    RetryableError,
    StageAborted,
    classify_error,
)
from .llm_client import TextGenerationClient
from .models import DeviceClass, PersonalityRecord, Post, Profile
from .observability import MetricsCollector
from .pipeline_orchestrator import AnalysisOptions, PipelineOrchestrator
from .queue_state import QueueStateError, QueueStateStore
from .rate_limiter import RateLimiter
from .utils.id_gen import work_item_id

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.MODEL_UNAVAILABLE}
RETRYABLE_MARKERS = ("network", "timeout", "econnrefused", "econnreset", "socket hang up", "429")

Callback = Callable[[Any], Any]


class WorkKind(str, Enum):
    CHAT = "chat"
    ANALYZE = "analyze"


@dataclass
class WorkItem:
    id: str
    kind: WorkKind
    payload: Dict[str, Any]
    identity: str
    on_complete: Optional[Callback] = None
    on_error: Optional[Callback] = None
    attempts: int = 0
    not_before: float = 0.0
    enqueued_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "identity": self.identity,
            "attempts": self.attempts,
            "enqueuedAt": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], on_complete: Optional[Callback] = None,
                  on_error: Optional[Callback] = None) -> "WorkItem":
        return cls(
            id=data["id"],
            kind=WorkKind(data["kind"]),
            payload=data.get("payload") or {},
            identity=data["identity"],
            on_complete=on_complete,
            on_error=on_error,
            attempts=int(data.get("attempts", 0)),
            enqueued_at=float(data.get("enqueuedAt", time.time())),
        )


def is_retryable(exc: BaseException) -> bool:
    """Network-class failures and throttling are retried; aborts never are."""
    if isinstance(exc, (AnalysisAborted, StageAborted, CancelledOperation, QueueTerminationError)):
        return False
    if classify_error(exc) in RETRYABLE_KINDS:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


class Dispatcher:
    def __init__(self, orchestrator: PipelineOrchestrator, client: TextGenerationClient,
                 rate_limiter: Optional[RateLimiter] = None, *,
                 max_concurrent: Optional[int] = None,
                 max_retries: Optional[int] = None,
                 base_delay: Optional[float] = None,
                 max_delay: Optional[float] = None,
                 jitter: Optional[float] = None,
                 state_store: Optional[QueueStateStore] = None,
                 device_class: Union[DeviceClass, str, None] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        self.orchestrator = orchestrator
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_concurrent = max_concurrent or settings.DISPATCH_MAX_CONCURRENT
        self.max_retries = settings.DISPATCH_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.DISPATCH_RETRY_BASE_DELAY_S if base_delay is None else base_delay
        self.max_delay = settings.DISPATCH_MAX_RETRY_DELAY_S if max_delay is None else max_delay
        self.jitter = settings.DISPATCH_RETRY_JITTER_S if jitter is None else jitter
        self.state_store = state_store
        self.device_class = DeviceClass(device_class or settings.DEVICE_CLASS)
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self.rng = rng or random.Random()

        self._pending: Deque[WorkItem] = deque()
        self._active: Dict[str, Tuple[WorkItem, CancellationToken, asyncio.Task]] = {}
        self._cleanup_handlers: List[Callable[[], Any]] = []
        self._callback_tasks: Set[asyncio.Future] = set()
        self._inbox: Optional[asyncio.Queue] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._shutdown_token: Optional[CancellationToken] = None
        self._closed = False

    # ---- Lifecycle ----
    async def start(self, on_restored_complete: Optional[Callback] = None,
                    on_restored_error: Optional[Callback] = None) -> int:
        """Start the dispatcher loop. Returns how many items were restored from a snapshot."""
        if self._loop_task is not None:
            raise RuntimeError("Dispatcher already started")
        self._inbox = asyncio.Queue()
        self._shutdown_token = CancellationToken("dispatcher")
        restored = 0
        if self.state_store is not None:
            try:
                for data in self.state_store.load():
                    item = WorkItem.from_dict(data, on_complete=on_restored_complete, on_error=on_restored_error)
                    self._pending.append(item)
                    restored += 1
            except (QueueStateError, KeyError, ValueError) as e:
                logger.error(f"Could not restore queue state: {e}")
        self._loop_task = asyncio.ensure_future(self._run())
        logger.info(f"Dispatcher started (max_concurrent={self.max_concurrent}, restored={restored})")
        return restored

    async def shutdown(self) -> None:
        """Abort in-flight items, persist the queue and run cleanup handlers."""
        if self._loop_task is None or self._closed:
            return
        done = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(("stop", done))
        await done
        await self._loop_task

    def add_cleanup_handler(self, handler: Callable[[], Any]) -> None:
        self._cleanup_handlers.append(handler)

    # ---- Public API ----
    def enqueue(self, kind: Union[WorkKind, str], payload: Dict[str, Any], identity: str,
                on_complete: Optional[Callback] = None, on_error: Optional[Callback] = None) -> str:
        if self._inbox is None:
            raise RuntimeError("Dispatcher not started")
        if self._closed:
            raise QueueTerminationError("Dispatcher is shut down")
        kind = WorkKind(kind)
        item = WorkItem(id=work_item_id(kind.value), kind=kind, payload=dict(payload), identity=identity,
                        on_complete=on_complete, on_error=on_error)
        self._inbox.put_nowait(("enqueue", item))
        return item.id

    async def submit(self, kind: Union[WorkKind, str], payload: Dict[str, Any], identity: str) -> Any:
        """Enqueue and wait for the item's result; failures are raised."""
        future = asyncio.get_running_loop().create_future()

        def complete(result):
            if not future.done():
                future.set_result(result)

        def fail(exc):
            if not future.done():
                future.set_exception(exc)

        self.enqueue(kind, payload, identity, on_complete=complete, on_error=fail)
        return await future

    def cancel(self, item_id: str) -> None:
        if self._inbox is not None and not self._closed:
            self._inbox.put_nowait(("cancel", item_id))

    def clear_queue(self) -> None:
        """Drop every pending item. In-flight items keep running."""
        if self._inbox is not None and not self._closed:
            self._inbox.put_nowait(("clear", None))

    @property
    def queue_length(self) -> int:
        return len(self._pending)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def remaining(self, identity: str) -> int:
        return self.rate_limiter.remaining(identity)

    def time_until_reset(self, identity: str) -> float:
        return self.rate_limiter.time_until_reset(identity)

    # ---- Loop ----
    async def _run(self) -> None:
        while True:
            self._dispatch_ready()
            timeout = self._next_wakeup()
            try:
                event = await asyncio.wait_for(self._inbox.get(), timeout=timeout)
            except asyncio.TimeoutError:
                continue
            if event[0] == "stop":
                try:
                    await self._shutdown()
                finally:
                    event[1].set_result(None)
                return
            self._handle(event)

    def _handle(self, event: Tuple) -> None:
        kind = event[0]
        if kind == "enqueue":
            item = event[1]
            self._pending.append(item)
            logger.info(f"Queued {item.kind.value} item {item.id} for {item.identity} ({len(self._pending)} pending)")
        elif kind == "done":
            self._finish(event[1], event[2])
        elif kind == "failed":
            self._fail(event[1], event[2])
        elif kind == "cancel":
            self._cancel(event[1])
        elif kind == "clear":
            dropped = list(self._pending)
            self._pending.clear()
            for item in dropped:
                self._invoke(item.on_error, QueueTerminationError("Queue cleared"))
            logger.info(f"Cleared {len(dropped)} pending items")

    def _next_wakeup(self) -> Optional[float]:
        """Seconds until a waiting item may become dispatchable; None to wait for an event."""
        if not self._pending or len(self._active) >= self.max_concurrent:
            return None
        now = self.clock()
        delays = []
        for item in self._pending:
            if item.not_before > now:
                delays.append(item.not_before - now)
            else:
                reset = self.rate_limiter.time_until_reset(item.identity)
                if reset > 0:
                    delays.append(reset)
        if not delays:
            return None
        return max(min(delays), 0.001)

    def _dispatch_ready(self) -> None:
        now = self.clock()
        for item in list(self._pending):
            if len(self._active) >= self.max_concurrent:
                break
            if item.not_before > now:
                continue
            if not self.rate_limiter.is_allowed(item.identity):
                continue
            self._pending.remove(item)
            self._start(item)

    def _start(self, item: WorkItem) -> None:
        self.rate_limiter.add_request(item.identity)
        item.attempts += 1
        token = CancellationToken.link(self._shutdown_token, name=item.id)
        task = asyncio.ensure_future(self._execute(item, token))
        self._active[item.id] = (item, token, task)
        logger.info(json.dumps({"event": "item_start", "item": item.id, "kind": item.kind.value,
                                "identity": item.identity, "attempt": item.attempts}))

    async def _execute(self, item: WorkItem, token: CancellationToken) -> None:
        try:
            if item.kind is WorkKind.CHAT:
                result = await self._run_chat(item, token)
            else:
                result = await self._run_analysis(item, token)
        except Exception as e:
            self._inbox.put_nowait(("failed", item.id, e))
        else:
            self._inbox.put_nowait(("done", item.id, result))
        finally:
            token.release()

    async def _run_chat(self, item: WorkItem, token: CancellationToken) -> Dict[str, str]:
        result = await token.guard(self.client.chat(
            item.payload.get("messages") or [],
            timeout=settings.timeout_for("chat", self.device_class.value),
            tuning=item.payload.get("tuning"),
        ))
        return {"role": "assistant", "content": result.text}

    async def _run_analysis(self, item: WorkItem, token: CancellationToken) -> Union[PersonalityRecord, Dict[str, str]]:
        payload = item.payload
        posts = [Post.model_validate(p) for p in payload.get("posts") or []]
        profile = Profile.model_validate(payload["profile"]) if payload.get("profile") else None

        def remember_job(job_id: str) -> None:
            # snapshots and requeues resume this job instead of starting over
            payload["jobId"] = job_id

        options = AnalysisOptions(
            identity=item.identity,
            job_id=payload.get("jobId"),
            run_id=item.id,
            regeneration_key=payload.get("regenerationKey"),
            prompt=payload.get("prompt"),
            context=payload.get("context"),
            signal=token,
            on_job=remember_job,
        )
        return await self.orchestrator.run_analysis(posts, profile, options)

    def _pop_active(self, item_id: str) -> Optional[WorkItem]:
        entry = self._active.pop(item_id, None)
        if entry is None:
            return None
        item = entry[0]
        self.rate_limiter.remove_request(item.identity)
        return item

    def _finish(self, item_id: str, result: Any) -> None:
        item = self._pop_active(item_id)
        if item is None:
            return
        self.metrics.record_item("completed")
        logger.info(json.dumps({"event": "item_end", "item": item.id, "status": "completed",
                                "attempts": item.attempts}))
        self._invoke(item.on_complete, result)

    def _fail(self, item_id: str, exc: BaseException) -> None:
        item = self._pop_active(item_id)
        if item is None:
            return
        retryable = is_retryable(exc)
        if retryable and item.attempts <= self.max_retries:
            delay = min(self.base_delay * (2 ** (item.attempts - 1)), self.max_delay) + self.rng.random() * self.jitter
            item.not_before = self.clock() + delay
            self._pending.append(item)
            self.metrics.record_item("requeued")
            logger.warning(f"Item {item.id} failed ({exc}); requeued in {delay:.1f}s "
                           f"(attempt {item.attempts}/{self.max_retries + 1})")
            return

        self.metrics.record_item("failed")
        logger.info(json.dumps({"event": "item_end", "item": item.id, "status": "failed",
                                "attempts": item.attempts, "error": str(exc)}))
        if retryable:
            exc = RetryableError(f"Item {item.id} failed after {item.attempts} attempts: {exc}",
                                 attempts=item.attempts, cause=exc)
        self._invoke(item.on_error, exc)

    def _cancel(self, item_id: str) -> None:
        for item in self._pending:
            if item.id == item_id:
                self._pending.remove(item)
                logger.info(f"Cancelled pending item {item_id}")
                self._invoke(item.on_error, CancelledOperation("cancelled by caller"))
                return
        entry = self._active.get(item_id)
        if entry is not None:
            logger.info(f"Cancelling active item {item_id}")
            entry[1].cancel("cancelled by caller")

    def _invoke(self, callback: Optional[Callback], arg: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)
        except Exception as e:
            logger.warning(f"Dispatcher callback failed: {e}")

    def _callback_done(self, task: asyncio.Future) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Dispatcher callback failed: {task.exception()}")

    async def _shutdown(self) -> None:
        self._closed = True
        active = list(self._active.values())
        logger.info(f"Dispatcher shutting down ({len(active)} active, {len(self._pending)} pending)")
        self._shutdown_token.cancel("dispatcher shutdown")
        if active:
            await asyncio.gather(*(task for _, _, task in active), return_exceptions=True)

        # Collect what the aborted items reported and anything enqueued meanwhile
        while not self._inbox.empty():
            event = self._inbox.get_nowait()
            if event[0] == "enqueue":
                self._pending.append(event[1])
            elif event[0] == "done":
                self._finish(event[1], event[2])

        aborted = [entry[0] for entry in self._active.values()]
        for item in aborted:
            self.rate_limiter.remove_request(item.identity)
        self._active.clear()
        pending = list(self._pending)
        self._pending.clear()

        for item in aborted + pending:
            self._invoke(item.on_error, QueueTerminationError())

        if self.state_store is not None:
            try:
                self.state_store.save([item.to_dict() for item in aborted + pending])
            except QueueStateError as e:
                logger.error(f"Could not persist queue state: {e}")

        for handler in self._cleanup_handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Cleanup handler failed: {e}")
        logger.info(f"Dispatcher stopped ({len(aborted)} aborted, {len(pending)} pending saved)")
