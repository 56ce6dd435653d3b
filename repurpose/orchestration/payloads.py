"""
Per-task-type payload schemas.

A start request is validated here before any task row is written.
"""
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .models import TaskType


def _check_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        raise ValueError("must be an http(s) URL")
    return value


class TaskPayload(BaseModel):
    """Common fields. `source_url` defaults to the project's source media."""
    model_config = ConfigDict(extra="forbid")

    source_url: Optional[str] = Field(default=None)

    @field_validator("source_url")
    @classmethod
    def validate_source_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v)


class TranscriptionPayload(TaskPayload):
    """Transcription options."""
    language: Optional[str] = Field(default=None, min_length=2, max_length=5)


class ClipsPayload(TaskPayload):
    """Clip extraction options."""
    language: str = Field(default="en", min_length=2, max_length=5)
    aspect_ratio: Literal["9:16", "1:1", "4:5", "16:9"] = Field(default="9:16")
    clip_length: Literal[
        "auto", "ultra_short", "short", "medium", "long", "short_to_medium", "short_to_long"
    ] = Field(default="auto")
    max_clips: Optional[int] = Field(default=None, ge=1, le=50)
    subtitles: bool = Field(default=True)
    project_name: Optional[str] = Field(default=None, max_length=200)


class PersonaTrainingPayload(TaskPayload):
    """LoRA portrait training options."""
    images_url: str = Field(..., description="Zip archive of training photos")
    trigger_phrase: str = Field(..., min_length=1, max_length=100)
    steps: int = Field(default=2500, ge=100, le=10000)
    learning_rate: float = Field(default=0.00009, gt=0, le=0.01)
    multiresolution_training: bool = Field(default=True)
    subject_crop: bool = Field(default=True)

    @field_validator("images_url")
    @classmethod
    def validate_images_url(cls, v: str) -> str:
        return _check_url(v)


class ThumbnailItem(BaseModel):
    """One thumbnail to generate."""
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(..., min_length=1, max_length=2000)
    image_size: Literal["9:16", "16:9", "1:1"] = Field(default="16:9")
    output_format: Literal["png", "jpeg"] = Field(default="png")


class ThumbnailBatchPayload(TaskPayload):
    """Batch of thumbnails, one provider job per item."""
    items: List[ThumbnailItem] = Field(..., min_length=1)


PAYLOAD_SCHEMAS: Dict[TaskType, Type[TaskPayload]] = {
    TaskType.TRANSCRIPTION: TranscriptionPayload,
    TaskType.CLIPS: ClipsPayload,
    TaskType.PERSONA_TRAINING: PersonaTrainingPayload,
    TaskType.THUMBNAIL_BATCH: ThumbnailBatchPayload,
}


def parse_task_type(value: str) -> TaskType:
    """Resolve a task type name, raising ValidationError for unknown ones."""
    try:
        return TaskType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in TaskType)
        raise ValidationError(f"Unknown task type: {value}", detail=f"Expected one of: {allowed}")


def validate_payload(
    task_type: TaskType,
    payload: Optional[Dict[str, Any]],
    max_batch_items: int = 10,
) -> Dict[str, Any]:
    """
    Validate a start payload against its task type's schema.

    Returns:
        Normalized payload dict (defaults filled in, unset source_url omitted)

    Raises:
        ValidationError: On any schema violation
    """
    schema = PAYLOAD_SCHEMAS[TaskType(task_type)]
    try:
        model = schema.model_validate(payload or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise ValidationError(
            f"Invalid {TaskType(task_type).value} payload: {location}: {first.get('msg')}",
            detail=str(e),
        )

    if isinstance(model, ThumbnailBatchPayload) and len(model.items) > max_batch_items:
        raise ValidationError(
            f"Too many batch items: {len(model.items)}",
            detail=f"At most {max_batch_items} items per batch",
        )

    return model.model_dump(exclude_none=True)
