# tools.py
# ------------------------------------------------------------------------------------
#  Tool handlers behind the HTTP routes:
#   generate / edit               -> call Ideogram now, return images + cost
#   generate_async / edit_async   -> queue a prediction, return its id + ETA
#   get_prediction                -> poll a prediction
#   cancel_prediction             -> cancel while still queued
#  plus make_processor(), the coroutine the PredictionStore runs for each job.
# ------------------------------------------------------------------------------------

import logging
import time
from typing import Any, Dict, List, Optional, Union

from cost_calculator import CostEstimate, calculate_cost, calculate_edit_cost
from constants import ErrorCode
from errors import IdeogramError, missing_api_key_error, wrap_error
from ideogram_client import IdeogramClient
from prediction_store import Prediction, PredictionStore, format_status
from schemas import (
    AsyncQueuedOutput,
    CancelOutput,
    EditAsyncInput,
    EditInput,
    GenerateAsyncInput,
    GenerateInput,
    GenerateOutput,
    ImageOutput,
    PredictionCompletedOutput,
    PredictionErrorInfo,
    PredictionFailedOutput,
    PredictionPendingOutput,
)
from storage import StorageService

logger = logging.getLogger(__name__)

_CANCEL_LABELS = {
    "processing": "is already being processed by the Ideogram API and cannot be stopped",
    "completed": "has already completed successfully",
    "failed": "has already failed",
    "cancelled": "was already cancelled",
}

_CANCEL_REASONS = {
    "processing": "Cannot cancel - prediction is already being processed",
    "completed": "Cannot cancel - prediction already completed",
    "failed": "Cannot cancel - prediction already failed",
    "cancelled": "Prediction was already cancelled",
}

_CANCEL_HINTS = {
    "processing": "The job was already sent to the Ideogram API.",
    "completed": "Use get_prediction to retrieve the results.",
}

_SAVE_PREFIXES = {"generate": "generated", "edit": "edited"}


def images_from_result(result: Optional[Dict[str, Any]]) -> List[ImageOutput]:
    if not isinstance(result, dict):
        return []
    return [
        ImageOutput(**{k: v for k, v in item.items() if k in ImageOutput.model_fields})
        for item in result.get("data") or []
    ]


def cost_for(prediction_type: str, num_images: int, rendering_speed: Optional[str]) -> CostEstimate:
    if prediction_type == "edit":
        return calculate_edit_cost(num_images, rendering_speed)
    return calculate_cost(num_images, rendering_speed)


async def save_result_images(
    storage: Optional[StorageService], result: Dict[str, Any], prefix: str
) -> Dict[str, Any]:
    """Copy the (expiring) upstream image URLs into storage, annotating each item."""
    if storage is None or not storage.enabled:
        return result
    data = result.get("data") or []
    urls = [item["url"] for item in data if item.get("url")]
    if not urls:
        return result

    batch = await storage.download_images(urls, prefix=prefix)
    by_url = {saved.original_url: saved for saved in batch.saved}
    for item in data:
        saved = by_url.get(item.get("url"))
        if saved is not None:
            item["local_path"] = saved.file_path
            item["saved_url"] = saved.url
    if batch.failure_count:
        logger.warning("Some images failed to save failed=%d", batch.failure_count)
    return result


def make_processor(client: IdeogramClient, storage: Optional[StorageService] = None):
    """Build the coroutine the PredictionStore awaits for each prediction."""

    async def process(prediction: Prediction) -> Dict[str, Any]:
        params = dict(prediction.request)
        save = params.pop("save_locally", False)
        if prediction.type == "edit":
            result = await client.edit(**params)
        else:
            result = await client.generate(**params)
        if save:
            result = await save_result_images(storage, result, prefix=_SAVE_PREFIXES[prediction.type])
        return result

    return process


class Tools:
    def __init__(
        self,
        client: Optional[IdeogramClient],
        store: PredictionStore,
        storage: Optional[StorageService] = None,
    ):
        self.client = client
        self.store = store
        self.storage = storage

    def _require_client(self) -> IdeogramClient:
        if self.client is None:
            raise missing_api_key_error()
        return self.client

    # ---------- synchronous ----------

    async def generate(self, payload: GenerateInput) -> GenerateOutput:
        started = time.monotonic()
        logger.info(
            "tool=generate num_images=%d rendering_speed=%s aspect_ratio=%s",
            payload.num_images, payload.rendering_speed, payload.aspect_ratio,
        )
        try:
            result = await self._require_client().generate(**payload.upstream_params())
            if payload.save_locally:
                result = await save_result_images(self.storage, result, prefix="generated")
            images = images_from_result(result)
            out = GenerateOutput(
                created=_created(result),
                images=images,
                total_cost=calculate_cost(len(images), payload.rendering_speed),
                num_images=len(images),
            )
        except Exception as e:
            raise self._failed("generate", e, started) from e
        self._done("generate", started)
        return out

    async def edit(self, payload: EditInput) -> GenerateOutput:
        started = time.monotonic()
        logger.info("tool=edit num_images=%d model=%s", payload.num_images, payload.model)
        try:
            result = await self._require_client().edit(**payload.upstream_params())
            if payload.save_locally:
                result = await save_result_images(self.storage, result, prefix="edited")
            images = images_from_result(result)
            out = GenerateOutput(
                created=_created(result),
                images=images,
                total_cost=calculate_edit_cost(len(images)),
                num_images=len(images),
            )
        except Exception as e:
            raise self._failed("edit", e, started) from e
        self._done("edit", started)
        return out

    # ---------- async (queued) ----------

    def generate_async(self, payload: GenerateAsyncInput) -> AsyncQueuedOutput:
        return self._enqueue("generate", payload)

    def edit_async(self, payload: EditAsyncInput) -> AsyncQueuedOutput:
        return self._enqueue("edit", payload)

    def _enqueue(self, kind: str, payload: Union[GenerateAsyncInput, EditAsyncInput]) -> AsyncQueuedOutput:
        started = time.monotonic()
        tool = f"{kind}_async"
        logger.info("tool=%s num_images=%d", tool, payload.num_images)
        request = payload.upstream_params()
        request["save_locally"] = payload.save_locally
        try:
            prediction = self.store.create(request, type=kind, webhook_url=payload.webhook_url)
        except Exception as e:
            raise self._failed(tool, e, started) from e
        self._done(tool, started)
        return AsyncQueuedOutput(
            prediction_id=prediction.id,
            eta_seconds=prediction.eta_seconds if prediction.eta_seconds is not None else 30,
            message=(
                f"Image {'generation' if kind == 'generate' else 'edit'} queued successfully. "
                f'Use get_prediction with prediction_id "{prediction.id}" to check status '
                "and retrieve results."
            ),
        )

    # ---------- polling / cancel ----------

    def get_prediction(self, prediction_id: str):
        started = time.monotonic()
        try:
            prediction = self.store.get_or_raise(prediction_id)
        except Exception as e:
            raise self._failed("get_prediction", e, started) from e

        if prediction.status in ("queued", "processing"):
            out = PredictionPendingOutput(
                prediction_id=prediction.id,
                status=prediction.status,
                eta_seconds=prediction.eta_seconds,
                progress=prediction.progress,
                message=(
                    f"Prediction is {format_status(prediction.status).lower()}. "
                    "Please poll again in a few seconds."
                ),
            )
        elif prediction.status == "completed":
            images = images_from_result(prediction.result)
            num_images = len(images) or prediction.request.get("num_images") or 1
            out = PredictionCompletedOutput(
                prediction_id=prediction.id,
                created=prediction.created_at.isoformat(),
                completed_at=prediction.completed_at.isoformat() if prediction.completed_at else None,
                images=images,
                total_cost=cost_for(
                    prediction.type, num_images, prediction.request.get("rendering_speed")
                ),
                num_images=len(images),
            )
        else:
            out = _failed_output(prediction)

        logger.debug("tool=get_prediction id=%s status=%s", prediction.id, prediction.status)
        self._done("get_prediction", started)
        return out

    def cancel_prediction(self, prediction_id: str) -> CancelOutput:
        started = time.monotonic()
        try:
            outcome = self.store.cancel(prediction_id)
        except Exception as e:
            raise self._failed("cancel_prediction", e, started) from e
        self._done("cancel_prediction", started)

        if outcome.success:
            return CancelOutput(
                success=True,
                prediction_id=prediction_id,
                status="cancelled",
                message="Prediction successfully cancelled. No credits will be used.",
            )
        message = f"Cannot cancel this prediction because it {_CANCEL_LABELS[outcome.status]}."
        hint = _CANCEL_HINTS.get(outcome.status)
        return CancelOutput(
            success=False,
            prediction_id=prediction_id,
            status=outcome.status,
            reason=_CANCEL_REASONS[outcome.status],
            message=f"{message} {hint}" if hint else message,
        )

    def prediction_stats(self) -> Dict[str, Any]:
        return {"success": True, **self.store.get_stats().model_dump()}

    # ---------- logging helpers ----------

    @staticmethod
    def _done(tool: str, started: float) -> None:
        logger.info(
            "tool=%s success=true duration_ms=%d", tool, (time.monotonic() - started) * 1000
        )

    @staticmethod
    def _failed(tool: str, exc: Exception, started: float) -> IdeogramError:
        err = wrap_error(exc)
        logger.warning(
            "tool=%s success=false code=%s duration_ms=%d message=%s",
            tool, err.code, (time.monotonic() - started) * 1000, err.message,
        )
        return err


def _created(result: Dict[str, Any]) -> Optional[str]:
    created = result.get("created") if isinstance(result, dict) else None
    return str(created) if created is not None else None


def _failed_output(prediction: Prediction) -> PredictionFailedOutput:
    cancelled = prediction.status == "cancelled"
    if prediction.error is not None:
        error = PredictionErrorInfo(**prediction.error.model_dump())
    elif cancelled:
        error = PredictionErrorInfo(
            code=ErrorCode.CANCELLED, message="Prediction was cancelled by user", retryable=False
        )
    else:
        error = PredictionErrorInfo(
            code=ErrorCode.UNKNOWN_ERROR, message="Prediction failed with an unknown error", retryable=False
        )

    if cancelled:
        message = (
            "This prediction was cancelled. Create a new async request to try again."
        )
    else:
        hint = (
            "This error may be retryable."
            if error.retryable
            else "Please check your input and try again."
        )
        message = f"Prediction failed: {error.message}. {hint}"

    return PredictionFailedOutput(
        prediction_id=prediction.id,
        status=prediction.status,
        error=error,
        message=message,
    )
