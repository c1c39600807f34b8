# prediction_store.py
# ------------------------------------------------------------------------------------
#  Local async job queue in front of the synchronous Ideogram API.
#
#  The upstream API has no job/polling endpoints, so predictions are queued
#  here and executed one at a time by a registered processor coroutine:
#
#     create() -> queued -> processing -> completed | failed
#                   \-> cancelled   (only while still queued)
#
#  Progress is simulated while the processor runs, terminal predictions are
#  swept after `cleanup_age` seconds, and nothing survives a restart.
# ------------------------------------------------------------------------------------

import asyncio
import logging
import math
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field

from constants import (
    CLEANUP_AGE,
    CLEANUP_INTERVAL,
    DEFAULT_NUM_IMAGES,
    DEFAULT_RENDERING_SPEED,
    ETA_BASE_SECONDS,
    ETA_PER_EXTRA_IMAGE,
    ETA_SPEED_MULTIPLIERS,
    MAX_QUEUE_SIZE,
    PREDICTION_TIMEOUT,
    PROGRESS_CEILING,
    PROGRESS_INTERVAL,
    PROGRESS_ON_START,
    PROGRESS_STEP,
    TERMINAL_STATUSES,
)
from errors import (
    InvalidTransitionError,
    PredictionNotFoundError,
    QueueFullError,
    classify_error,
    prediction_timeout_error,
)

logger = logging.getLogger(__name__)

PredictionStatus = Literal["queued", "processing", "completed", "failed", "cancelled"]
PredictionType = Literal["generate", "edit"]


class PredictionError(BaseModel):
    code: str
    message: str
    retryable: bool = False


class Prediction(BaseModel):
    id: str
    status: PredictionStatus = "queued"
    request: Dict[str, Any]
    type: PredictionType = "generate"
    webhook_url: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: int = 0
    eta_seconds: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[PredictionError] = None


class CancelOutcome(BaseModel):
    success: bool
    status: PredictionStatus
    message: str


class StoreStats(BaseModel):
    total: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


Processor = Callable[[Prediction], Awaitable[Any]]

# Legal status changes; terminal states have none.
_TRANSITIONS: Dict[str, Set[str]] = {
    "queued": {"processing", "cancelled"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}

_CANCEL_REFUSALS = {
    "processing": "Prediction is already being processed by the Ideogram API",
    "completed": "Prediction has already completed",
    "failed": "Prediction has already failed",
    "cancelled": "Prediction was already cancelled",
}

_STATUS_LABELS = {
    "queued": "Queued",
    "processing": "Processing",
    "completed": "Completed",
    "failed": "Failed",
    "cancelled": "Cancelled",
}

_UNSET: Any = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_prediction_id() -> str:
    return f"pred_{uuid.uuid4().hex[:16]}"


def estimate_eta(request: Dict[str, Any]) -> int:
    """Seconds a request is expected to take, from image count and speed tier."""
    num_images = request.get("num_images") or DEFAULT_NUM_IMAGES
    speed = request.get("rendering_speed") or DEFAULT_RENDERING_SPEED
    eta = ETA_BASE_SECONDS + (num_images - 1) * ETA_PER_EXTRA_IMAGE
    eta *= ETA_SPEED_MULTIPLIERS.get(speed, 1.0)
    # half-up, not banker's rounding
    return int(math.floor(eta + 0.5))


def is_terminal(prediction: Prediction) -> bool:
    return prediction.status in TERMINAL_STATUSES


def is_cancellable(prediction: Prediction) -> bool:
    return prediction.status == "queued"


def elapsed_seconds(prediction: Prediction, now: Optional[datetime] = None) -> int:
    """Seconds between start and completion (or now); 0 if never started."""
    if prediction.started_at is None:
        return 0
    end = prediction.completed_at or now or utcnow()
    return int(round((end - prediction.started_at).total_seconds()))


def format_status(status: str) -> str:
    return _STATUS_LABELS.get(status, status)


class PredictionStore:
    """
    In-memory registry and state machine for async predictions.

    All mutation goes through the store's methods; callers only ever get
    copies. At most one prediction is `processing` at a time: a busy flag
    guards the dispatch loop and each settled job posts the next check to the
    event loop instead of recursing.
    """

    def __init__(
        self,
        max_queue_size: int = MAX_QUEUE_SIZE,
        prediction_timeout: Optional[float] = PREDICTION_TIMEOUT,
        cleanup_age: float = CLEANUP_AGE,
        enable_auto_cleanup: bool = True,
        cleanup_interval: float = CLEANUP_INTERVAL,
        progress_interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._predictions: Dict[str, Prediction] = {}
        self._lock = threading.RLock()
        self._max_queue_size = max_queue_size
        self._prediction_timeout = prediction_timeout or None
        self._cleanup_age = cleanup_age
        self._enable_auto_cleanup = enable_auto_cleanup
        self._cleanup_interval = cleanup_interval
        self._progress_interval = progress_interval
        self._clock = clock

        self._processor: Optional[Processor] = None
        self._busy = False
        self._disposed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._progress_tasks: Dict[str, asyncio.Task] = {}
        self._job_tasks: Set[asyncio.Task] = set()

        self._ensure_auto_cleanup()
        logger.debug(
            "PredictionStore initialized max_queue_size=%d prediction_timeout=%s cleanup_age=%s",
            max_queue_size, self._prediction_timeout, cleanup_age,
        )

    # ---------- CRUD ----------

    def create(
        self,
        request: Dict[str, Any],
        type: PredictionType = "generate",
        webhook_url: Optional[str] = None,
    ) -> Prediction:
        with self._lock:
            if self._count("queued") >= self._max_queue_size:
                raise QueueFullError(self._max_queue_size)

            prediction = Prediction(
                id=new_prediction_id(),
                status="queued",
                request=dict(request),
                type=type,
                webhook_url=webhook_url,
                created_at=self._clock(),
                progress=0,
                eta_seconds=estimate_eta(request),
            )
            self._predictions[prediction.id] = prediction

        logger.info("Prediction created and queued id=%s type=%s", prediction.id, type)
        self._schedule_dispatch()
        return prediction.model_copy(deep=True)

    def get(self, prediction_id: str) -> Optional[Prediction]:
        with self._lock:
            prediction = self._predictions.get(prediction_id)
            return prediction.model_copy(deep=True) if prediction else None

    def get_or_raise(self, prediction_id: str) -> Prediction:
        prediction = self.get(prediction_id)
        if prediction is None:
            raise PredictionNotFoundError(prediction_id)
        return prediction

    def has(self, prediction_id: str) -> bool:
        with self._lock:
            return prediction_id in self._predictions

    def update(
        self,
        prediction_id: str,
        *,
        status: Optional[PredictionStatus] = None,
        progress: Optional[int] = None,
        eta_seconds: Optional[int] = None,
        result: Any = _UNSET,
        error: Union[PredictionError, Dict[str, Any], None] = None,
    ) -> Prediction:
        """
        Apply field changes under the transition rules.

        Supplying `result` completes the prediction and supplying `error`
        fails it. Re-applying an identical update is a no-op; any change to a
        terminal prediction, or an illegal status change, raises
        InvalidTransitionError.
        """
        with self._lock:
            current = self._predictions.get(prediction_id)
            if current is None:
                raise PredictionNotFoundError(prediction_id)

            target = status
            if result is not _UNSET:
                target = "completed"
            if error is not None:
                target = "failed"
            if (
                target is not None
                and target != current.status
                and target not in _TRANSITIONS[current.status]
            ):
                raise InvalidTransitionError(prediction_id, current.status, target)

            updated = current.model_copy(deep=True)
            now = self._clock()

            if target is not None and target != current.status:
                updated.status = target
                if target == "processing" and updated.started_at is None:
                    updated.started_at = now
                if target in TERMINAL_STATUSES:
                    updated.completed_at = now
                    updated.eta_seconds = None

            if progress is not None:
                progress = max(0, min(100, int(progress)))
                if updated.status == "processing":
                    progress = max(progress, updated.progress)
                updated.progress = progress

            if eta_seconds is not None and updated.status not in TERMINAL_STATUSES:
                updated.eta_seconds = eta_seconds

            if result is not _UNSET:
                updated.result = result
            if error is not None:
                updated.error = (
                    error if isinstance(error, PredictionError) else PredictionError(**error)
                )

            if updated.status == "completed":
                updated.progress = 100
                updated.eta_seconds = 0

            if updated == current:
                return current.model_copy(deep=True)
            if current.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(prediction_id, current.status, updated.status)

            self._predictions[prediction_id] = updated

        logger.debug(
            "Prediction updated id=%s status=%s progress=%d",
            prediction_id, updated.status, updated.progress,
        )
        return updated.model_copy(deep=True)

    def mark_processing(self, prediction_id: str) -> Prediction:
        return self.update(prediction_id, status="processing", progress=PROGRESS_ON_START)

    def mark_completed(self, prediction_id: str, result: Any) -> Prediction:
        prediction = self.update(prediction_id, result=result)
        logger.info(
            "Prediction completed id=%s images=%d", prediction_id, _image_count(result)
        )
        self._schedule_dispatch()
        return prediction

    def mark_failed(
        self, prediction_id: str, error: Union[PredictionError, Dict[str, Any]]
    ) -> Prediction:
        prediction = self.update(prediction_id, error=error)
        logger.warning(
            "Prediction failed id=%s code=%s message=%s",
            prediction_id, prediction.error.code, prediction.error.message,
        )
        self._schedule_dispatch()
        return prediction

    def cancel(self, prediction_id: str) -> CancelOutcome:
        """Cancel a queued prediction; anything else is reported, not raised."""
        with self._lock:
            current = self._predictions.get(prediction_id)
            if current is None:
                raise PredictionNotFoundError(prediction_id)
            if current.status != "queued":
                return CancelOutcome(
                    success=False,
                    status=current.status,
                    message=_CANCEL_REFUSALS[current.status],
                )
            self.update(prediction_id, status="cancelled")

        logger.info("Prediction cancelled id=%s", prediction_id)
        return CancelOutcome(
            success=True, status="cancelled", message="Prediction successfully cancelled"
        )

    def delete(self, prediction_id: str) -> bool:
        with self._lock:
            existed = self._predictions.pop(prediction_id, None) is not None
        if existed:
            logger.debug("Prediction deleted id=%s", prediction_id)
        return existed

    # ---------- Queries ----------

    def get_all(self) -> List[Prediction]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._predictions.values()]

    def get_by_status(self, status: PredictionStatus) -> List[Prediction]:
        with self._lock:
            return [
                p.model_copy(deep=True)
                for p in self._predictions.values()
                if p.status == status
            ]

    def get_next_queued(self) -> Optional[Prediction]:
        with self._lock:
            nxt = self._next_queued()
            return nxt.model_copy(deep=True) if nxt else None

    def get_stats(self) -> StoreStats:
        with self._lock:
            stats = StoreStats(total=len(self._predictions))
            for p in self._predictions.values():
                setattr(stats, p.status, getattr(stats, p.status) + 1)
            return stats

    @property
    def queued_count(self) -> int:
        with self._lock:
            return self._count("queued")

    @property
    def processing_count(self) -> int:
        with self._lock:
            return self._count("processing")

    # ---------- Processing ----------

    def set_processor(self, processor: Processor) -> None:
        self._processor = processor
        self._disposed = False
        logger.debug("Processor registered")
        self._schedule_dispatch()

    @property
    def is_busy(self) -> bool:
        return self._busy

    # ---------- Cleanup ----------

    def cleanup(self) -> int:
        """Delete terminal predictions that completed more than `cleanup_age` ago."""
        cutoff = self._clock() - timedelta(seconds=self._cleanup_age)
        removed = 0
        with self._lock:
            for prediction_id, p in list(self._predictions.items()):
                if p.status not in TERMINAL_STATUSES:
                    continue
                if p.completed_at is None or p.completed_at < cutoff:
                    del self._predictions[prediction_id]
                    removed += 1
        if removed:
            logger.info("Cleaned up old predictions removed=%d", removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            count = len(self._predictions)
            self._predictions.clear()
        logger.info("All predictions cleared count=%d", count)

    def stop_auto_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            _cancel_task(task)
            logger.debug("Auto cleanup stopped")

    def dispose(self) -> None:
        """Stop every timer, drop all predictions and detach the processor."""
        self._disposed = True
        self.stop_auto_cleanup()
        for task in list(self._progress_tasks.values()):
            _cancel_task(task)
        self._progress_tasks.clear()
        for task in list(self._job_tasks):
            _cancel_task(task)
        self._job_tasks.clear()
        self._busy = False
        self._processor = None
        self.clear()
        logger.debug("PredictionStore disposed")

    # ---------- Internals ----------

    def _count(self, status: str) -> int:
        return sum(1 for p in self._predictions.values() if p.status == status)

    def _next_queued(self) -> Optional[Prediction]:
        queued = [p for p in self._predictions.values() if p.status == "queued"]
        if not queued:
            return None
        # min() keeps insertion order for equal timestamps
        return min(queued, key=lambda p: p.created_at)

    def _current_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        self._loop = loop
        return loop

    def _schedule_dispatch(self) -> None:
        """Post a dispatch check to the event loop; never run it inline."""
        if self._disposed:
            return
        loop = self._current_loop()
        if loop is not None:
            self._ensure_auto_cleanup(loop)
            loop.call_soon(self._dispatch_next)
        elif self._loop is not None and self._loop.is_running():
            # called from a worker thread
            self._loop.call_soon_threadsafe(self._dispatch_next)

    def _dispatch_next(self) -> None:
        if self._processor is None or self._busy or self._disposed:
            return
        with self._lock:
            nxt = self._next_queued()
            if nxt is None:
                return
            self._busy = True
            try:
                prediction = self.mark_processing(nxt.id)
            except Exception:
                self._busy = False
                raise

        task = asyncio.get_running_loop().create_task(
            self._run(prediction, self._processor)
        )
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)

    async def _run(self, prediction: Prediction, processor: Processor) -> None:
        prediction_id = prediction.id
        self._start_progress(prediction_id)
        try:
            try:
                result = await self._call_with_deadline(prediction, processor)
            finally:
                self._stop_progress(prediction_id)
        except Exception as exc:
            self._settle(prediction_id, error=classify_error(exc))
        else:
            self._settle(prediction_id, result=result)
        finally:
            self._busy = False
            self._schedule_dispatch()

    async def _call_with_deadline(self, prediction: Prediction, processor: Processor) -> Any:
        """
        Await the processor under the store's own time limit.

        Only this deadline becomes a TIMEOUT failure; a TimeoutError raised by
        the processor itself propagates like any other error.
        """
        job = asyncio.ensure_future(processor(prediction))
        try:
            done, _ = await asyncio.wait({job}, timeout=self._prediction_timeout)
        except asyncio.CancelledError:
            job.cancel()
            raise
        if job not in done:
            job.cancel()
            raise prediction_timeout_error(prediction.id, self._prediction_timeout)
        return job.result()

    def _settle(self, prediction_id: str, result: Any = _UNSET, error: Any = None) -> None:
        try:
            if error is not None:
                self.mark_failed(prediction_id, error)
            else:
                self.mark_completed(prediction_id, result)
        except PredictionNotFoundError:
            logger.debug("Prediction %s removed before it settled", prediction_id)

    def _start_progress(self, prediction_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self._simulate_progress(prediction_id))
        self._progress_tasks[prediction_id] = task

    def _stop_progress(self, prediction_id: str) -> None:
        task = self._progress_tasks.pop(prediction_id, None)
        if task is not None:
            _cancel_task(task)

    async def _simulate_progress(self, prediction_id: str) -> None:
        """Nudge progress upward while the processor gives no feedback."""
        while True:
            await asyncio.sleep(self._progress_interval)
            with self._lock:
                current = self._predictions.get(prediction_id)
                if current is None or current.status != "processing":
                    return
                if current.progress < PROGRESS_CEILING:
                    self.update(
                        prediction_id,
                        progress=min(current.progress + PROGRESS_STEP, PROGRESS_CEILING),
                    )

    def _ensure_auto_cleanup(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if not self._enable_auto_cleanup or self._disposed or self._cleanup_task is not None:
            return
        loop = loop or self._current_loop()
        if loop is None:
            # started on the first dispatch made inside an event loop
            return
        self._cleanup_task = loop.create_task(self._sweep())
        logger.debug("Auto cleanup started interval=%ss", self._cleanup_interval)

    async def _sweep(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Prediction cleanup failed")


def _cancel_task(task: asyncio.Task) -> None:
    if task.done() or task.get_loop().is_closed():
        return
    task.cancel()


def _image_count(result: Any) -> int:
    if isinstance(result, dict):
        data = result.get("data")
        if isinstance(data, list):
            return len(data)
    return 0
