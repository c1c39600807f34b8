import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import IdeogramError, rate_limit_error
from prediction_store import PredictionStore
from schemas import EditAsyncInput, EditInput, GenerateAsyncInput, GenerateInput
from storage import BatchSaveResult, SavedImage
from tools import Tools, images_from_result, make_processor, save_result_images

RESULT = {
    "created": "2024-01-01T00:00:00Z",
    "data": [
        {"url": "https://ideogram.ai/1.png", "seed": 1, "is_image_safe": True, "style_type": "AUTO"},
        {"url": "https://ideogram.ai/2.png", "seed": 2, "is_image_safe": True},
    ],
}


def fresh_result():
    return {"created": RESULT["created"], "data": [dict(item) for item in RESULT["data"]]}


@pytest.fixture
def store():
    s = PredictionStore(enable_auto_cleanup=False)
    yield s
    s.dispose()


@pytest.fixture
def client():
    c = MagicMock()
    c.generate = AsyncMock(side_effect=lambda **kw: fresh_result())
    c.edit = AsyncMock(side_effect=lambda **kw: fresh_result())
    return c


def fake_storage(saved_urls):
    storage = MagicMock()
    storage.enabled = True
    storage.download_images = AsyncMock(
        return_value=BatchSaveResult(
            saved=[
                SavedImage(
                    key=f"local/{i}.png",
                    filename=f"{i}.png",
                    url=f"http://localhost:8000/files/local/{i}.png",
                    original_url=url,
                    size_bytes=10,
                    mime_type="image/png",
                    file_path=f"/data/{i}.png",
                )
                for i, url in enumerate(saved_urls)
            ],
            total=len(RESULT["data"]),
            success_count=len(saved_urls),
            failure_count=len(RESULT["data"]) - len(saved_urls),
        )
    )
    return storage


# ---------- helpers ----------

def test_images_from_result_drops_unknown_fields():
    images = images_from_result(RESULT)
    assert [i.url for i in images] == ["https://ideogram.ai/1.png", "https://ideogram.ai/2.png"]
    assert images[0].seed == 1
    assert images_from_result(None) == []


@pytest.mark.asyncio
async def test_save_result_images_annotates_saved_items():
    storage = fake_storage(["https://ideogram.ai/2.png"])
    result = await save_result_images(storage, fresh_result(), prefix="generated")

    storage.download_images.assert_awaited_once_with(
        ["https://ideogram.ai/1.png", "https://ideogram.ai/2.png"], prefix="generated"
    )
    assert "saved_url" not in result["data"][0]
    assert result["data"][1]["saved_url"] == "http://localhost:8000/files/local/0.png"
    assert result["data"][1]["local_path"] == "/data/0.png"


@pytest.mark.asyncio
async def test_save_result_images_without_storage():
    result = fresh_result()
    assert await save_result_images(None, result, prefix="generated") is result


# ---------- synchronous tools ----------

@pytest.mark.asyncio
async def test_generate_returns_images_and_cost(client, store):
    tools = Tools(client, store)
    out = await tools.generate(GenerateInput(prompt="a fox", rendering_speed="QUALITY", save_locally=False))

    client.generate.assert_awaited_once_with(
        prompt="a fox",
        aspect_ratio="1x1",
        num_images=1,
        rendering_speed="QUALITY",
        magic_prompt="AUTO",
        style_type="AUTO",
    )
    assert out.success is True
    assert out.num_images == 2
    assert out.created == "2024-01-01T00:00:00Z"
    assert out.total_cost.credits_used == 0.4
    assert out.total_cost.pricing_tier == "QUALITY"


@pytest.mark.asyncio
async def test_generate_saves_when_requested(client, store):
    storage = fake_storage(["https://ideogram.ai/1.png", "https://ideogram.ai/2.png"])
    tools = Tools(client, store, storage)
    out = await tools.generate(GenerateInput(prompt="a fox"))

    storage.download_images.assert_awaited_once()
    assert [i.saved_url for i in out.images] == [
        "http://localhost:8000/files/local/0.png",
        "http://localhost:8000/files/local/1.png",
    ]


@pytest.mark.asyncio
async def test_generate_without_client(store):
    with pytest.raises(IdeogramError) as exc_info:
        await Tools(None, store).generate(GenerateInput(prompt="x"))
    assert exc_info.value.code == "MISSING_API_KEY"


@pytest.mark.asyncio
async def test_generate_wraps_unexpected_errors(client, store):
    original = ValueError("bad json")
    client.generate.side_effect = original
    with pytest.raises(IdeogramError) as exc_info:
        await Tools(client, store).generate(GenerateInput(prompt="x"))
    assert exc_info.value.code == "INTERNAL_ERROR"
    assert exc_info.value.__cause__ is original


@pytest.mark.asyncio
async def test_generate_passes_taxonomy_errors_through(client, store):
    original = rate_limit_error(3)
    client.generate.side_effect = original
    with pytest.raises(IdeogramError) as exc_info:
        await Tools(client, store).generate(GenerateInput(prompt="x"))
    assert exc_info.value is original
    assert exc_info.value.code == "RATE_LIMITED"


@pytest.mark.asyncio
async def test_edit_uses_edit_pricing(client, store):
    out = await Tools(client, store).edit(
        EditInput(prompt="hat", image="https://a/i.png", mask="https://a/m.png", save_locally=False)
    )
    client.edit.assert_awaited_once()
    assert out.total_cost.credits_used == 0.24


# ---------- queued tools ----------

def test_generate_async_queues_prediction(client, store):
    tools = Tools(client, store)
    out = tools.generate_async(
        GenerateAsyncInput(prompt="x", num_images=4, webhook_url="https://example.com/hook")
    )

    assert out.status == "queued"
    assert out.eta_seconds == 60
    assert out.prediction_id in out.message
    prediction = store.get(out.prediction_id)
    assert prediction.type == "generate"
    assert prediction.webhook_url == "https://example.com/hook"
    assert prediction.request["save_locally"] is True
    assert "webhook_url" not in prediction.request
    client.generate.assert_not_awaited()


def test_edit_async_queues_edit(client, store):
    out = Tools(client, store).edit_async(
        EditAsyncInput(prompt="x", image="https://a/i.png", mask="https://a/m.png")
    )
    assert store.get(out.prediction_id).type == "edit"
    assert "edit queued" in out.message


def test_enqueue_when_full(client):
    small = PredictionStore(max_queue_size=1, enable_auto_cleanup=False)
    tools = Tools(client, small)
    tools.generate_async(GenerateAsyncInput(prompt="x"))
    with pytest.raises(IdeogramError) as exc_info:
        tools.generate_async(GenerateAsyncInput(prompt="x"))
    assert exc_info.value.code == "QUEUE_FULL"
    small.dispose()


def test_get_prediction_pending(client, store):
    tools = Tools(client, store)
    queued = tools.generate_async(GenerateAsyncInput(prompt="x"))

    out = tools.get_prediction(queued.prediction_id)
    assert out.status == "queued"
    assert out.progress == 0
    assert out.eta_seconds == 30
    assert "queued" in out.message

    store.mark_processing(queued.prediction_id)
    out = tools.get_prediction(queued.prediction_id)
    assert out.status == "processing"
    assert out.progress == 10


def test_get_prediction_completed(client, store):
    tools = Tools(client, store)
    queued = tools.generate_async(GenerateAsyncInput(prompt="x", rendering_speed="TURBO", num_images=2))
    store.mark_processing(queued.prediction_id)
    store.mark_completed(queued.prediction_id, fresh_result())

    out = tools.get_prediction(queued.prediction_id)
    assert out.status == "completed"
    assert out.success is True
    assert out.num_images == 2
    assert out.total_cost.credits_used == 0.16
    assert out.completed_at is not None


def test_get_prediction_failed_and_cancelled(client, store):
    tools = Tools(client, store)
    failed = tools.generate_async(GenerateAsyncInput(prompt="x"))
    cancelled = tools.generate_async(GenerateAsyncInput(prompt="y"))
    store.mark_processing(failed.prediction_id)
    store.mark_failed(failed.prediction_id, {"code": "RATE_LIMITED", "message": "slow down", "retryable": True})
    store.cancel(cancelled.prediction_id)

    out = tools.get_prediction(failed.prediction_id)
    assert out.success is False
    assert out.status == "failed"
    assert out.error.code == "RATE_LIMITED"
    assert out.message == "Prediction failed: slow down. This error may be retryable."

    out = tools.get_prediction(cancelled.prediction_id)
    assert out.status == "cancelled"
    assert out.error.code == "CANCELLED"


def test_get_prediction_unknown(client, store):
    with pytest.raises(IdeogramError) as exc_info:
        Tools(client, store).get_prediction("pred_missing")
    assert exc_info.value.code == "PREDICTION_NOT_FOUND"


def test_cancel_prediction(client, store):
    tools = Tools(client, store)
    queued = tools.generate_async(GenerateAsyncInput(prompt="x"))
    busy = tools.generate_async(GenerateAsyncInput(prompt="y"))
    store.mark_processing(busy.prediction_id)

    out = tools.cancel_prediction(queued.prediction_id)
    assert out.success is True
    assert out.status == "cancelled"

    out = tools.cancel_prediction(busy.prediction_id)
    assert out.success is False
    assert out.status == "processing"
    assert out.reason == "Cannot cancel - prediction is already being processed"
    assert "already sent to the Ideogram API" in out.message

    out = tools.cancel_prediction(queued.prediction_id)
    assert out.success is False
    assert out.reason == "Prediction was already cancelled"


def test_prediction_stats(client, store):
    tools = Tools(client, store)
    tools.generate_async(GenerateAsyncInput(prompt="x"))
    stats = tools.prediction_stats()
    assert stats["success"] is True
    assert stats["total"] == 1
    assert stats["queued"] == 1


# ---------- processor ----------

@pytest.mark.asyncio
async def test_processor_dispatches_on_type(client, store):
    storage = fake_storage([])
    process = make_processor(client, storage)
    generate = store.create({"prompt": "x", "num_images": 1, "save_locally": False}, "generate")
    edit = store.create(
        {"prompt": "y", "image": "https://a/i.png", "mask": "https://a/m.png", "save_locally": True}, "edit"
    )

    await process(store.get(generate.id))
    client.generate.assert_awaited_once_with(prompt="x", num_images=1)
    storage.download_images.assert_not_awaited()

    await process(store.get(edit.id))
    client.edit.assert_awaited_once_with(prompt="y", image="https://a/i.png", mask="https://a/m.png")
    assert storage.download_images.await_args.kwargs["prefix"] == "edited"


@pytest.mark.asyncio
async def test_processor_errors_reach_the_store(client):
    client.generate.side_effect = rate_limit_error(10)
    store = PredictionStore(enable_auto_cleanup=False)
    store.set_processor(make_processor(client))
    created = store.create({"prompt": "x"}, "generate")

    for _ in range(200):
        if store.get(created.id).status == "failed":
            break
        await asyncio.sleep(0.01)
    assert store.get(created.id).error.code == "RATE_LIMITED"
    store.dispose()
