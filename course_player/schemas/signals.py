from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Signal(BaseModel):
    model_config = ConfigDict(frozen=True)


class MediaProgress(_Signal):
    kind: Literal["progress"] = "progress"
    fraction: float = Field(ge=0.0, le=1.0)
    position_seconds: float | None = Field(default=None, ge=0.0)


class MediaEnded(_Signal):
    kind: Literal["ended"] = "ended"
    position_seconds: float | None = Field(default=None, ge=0.0)


class MediaSeek(_Signal):
    kind: Literal["seek"] = "seek"
    target_fraction: float = Field(ge=0.0, le=1.0)
    position_seconds: float | None = Field(default=None, ge=0.0)


class PlaybackState(_Signal):
    kind: Literal["playback"] = "playback"
    playing: bool


class PdfPagesViewed(_Signal):
    kind: Literal["pdf_pages"] = "pdf_pages"
    total_pages: int = Field(gt=0)
    # page number -> visible ratio reported by the viewport observer
    pages: dict[int, float] = Field(default_factory=dict)
    current_page: int | None = None


class TextViewed(_Signal):
    kind: Literal["text_viewed"] = "text_viewed"


class ScormStatus(_Signal):
    kind: Literal["scorm_status"] = "scorm_status"
    status: str | None = None
    score: float | None = None
    success: str | None = None
    suspend_data: str | None = None


class QuizResult(_Signal):
    kind: Literal["quiz_result"] = "quiz_result"
    passed: bool
    percentage: float


Signal = Annotated[
    Union[MediaProgress, MediaEnded, MediaSeek, PlaybackState, PdfPagesViewed, TextViewed, ScormStatus, QuizResult],
    Field(discriminator="kind"),
]
