# schemas.py
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from constants import (
    ASPECT_RATIOS,
    NUM_IMAGES_MAX,
    NUM_IMAGES_MIN,
    PROMPT_MAX_LENGTH,
    SEED_MAX,
)
from cost_calculator import CostEstimate

RenderingSpeed = Literal["FLASH", "TURBO", "DEFAULT", "QUALITY"]
MagicPrompt = Literal["AUTO", "ON", "OFF"]
StyleType = Literal["AUTO", "GENERAL", "REALISTIC", "DESIGN", "FICTION"]
EditStyleType = Literal["AUTO", "GENERAL", "REALISTIC", "DESIGN", "FICTION", "RENDER_3D", "ANIME"]
Model = Literal["V_2", "V_2_TURBO"]


def _check_prompt(v: str) -> str:
    if not v.strip():
        raise ValueError("Prompt is required")
    return v


def _check_webhook(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    parsed = urlparse(v)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Invalid webhook URL")
    return v


# ---------- Inputs ----------

class GenerateInput(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=PROMPT_MAX_LENGTH, description="What to draw")
    negative_prompt: Optional[str] = Field(None, max_length=PROMPT_MAX_LENGTH)
    aspect_ratio: str = Field("1x1", description="e.g. 16x9 (16:9 is accepted)")
    num_images: int = Field(1, ge=NUM_IMAGES_MIN, le=NUM_IMAGES_MAX)
    seed: Optional[int] = Field(None, ge=0, le=SEED_MAX)
    rendering_speed: RenderingSpeed = "DEFAULT"
    magic_prompt: MagicPrompt = "AUTO"
    style_type: StyleType = "AUTO"
    save_locally: bool = Field(True, description="Copy results into storage")

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        return _check_prompt(v)

    @field_validator("aspect_ratio")
    @classmethod
    def validate_aspect_ratio(cls, v: str) -> str:
        v = v.replace(":", "x")
        if v not in ASPECT_RATIOS:
            raise ValueError(f"Supported ratios: {', '.join(ASPECT_RATIOS)}")
        return v

    def upstream_params(self) -> Dict[str, Any]:
        """Keyword arguments for IdeogramClient.generate."""
        return self.model_dump(exclude={"save_locally"}, exclude_none=True)


class GenerateAsyncInput(GenerateInput):
    webhook_url: Optional[str] = Field(None, description="Stored only, never called")

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_webhook(v)

    def upstream_params(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"save_locally", "webhook_url"}, exclude_none=True)


class EditInput(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=PROMPT_MAX_LENGTH)
    image: str = Field(..., min_length=1, description="http(s) URL or base64 data URL")
    mask: str = Field(..., min_length=1, description="Black = edit, white = keep")
    model: Model = "V_2"
    num_images: int = Field(1, ge=NUM_IMAGES_MIN, le=NUM_IMAGES_MAX)
    seed: Optional[int] = Field(None, ge=0, le=SEED_MAX)
    magic_prompt: MagicPrompt = "AUTO"
    style_type: EditStyleType = "AUTO"
    save_locally: bool = True

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        return _check_prompt(v)

    def upstream_params(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"save_locally"}, exclude_none=True)


class EditAsyncInput(EditInput):
    webhook_url: Optional[str] = None

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_webhook(v)

    def upstream_params(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"save_locally", "webhook_url"}, exclude_none=True)


# ---------- Outputs ----------

class ImageOutput(BaseModel):
    url: str
    seed: Optional[int] = None
    is_image_safe: Optional[bool] = None
    prompt: Optional[str] = None
    resolution: Optional[str] = None
    local_path: Optional[str] = None
    saved_url: Optional[str] = None


class GenerateOutput(BaseModel):
    success: bool = True
    created: Optional[str] = None
    images: List[ImageOutput]
    total_cost: CostEstimate
    num_images: int


class AsyncQueuedOutput(BaseModel):
    success: bool = True
    prediction_id: str
    status: Literal["queued"] = "queued"
    eta_seconds: int
    message: str


class PredictionPendingOutput(BaseModel):
    success: bool = True
    prediction_id: str
    status: Literal["queued", "processing"]
    eta_seconds: Optional[int] = None
    progress: int
    message: str


class PredictionCompletedOutput(BaseModel):
    success: bool = True
    prediction_id: str
    status: Literal["completed"] = "completed"
    created: str
    completed_at: Optional[str] = None
    images: List[ImageOutput]
    total_cost: CostEstimate
    num_images: int


class PredictionErrorInfo(BaseModel):
    code: str
    message: str
    retryable: bool = False


class PredictionFailedOutput(BaseModel):
    success: bool = False
    prediction_id: str
    status: Literal["failed", "cancelled"]
    error: PredictionErrorInfo
    message: str


class CancelOutput(BaseModel):
    success: bool
    prediction_id: str
    status: str
    message: str
    reason: Optional[str] = None
