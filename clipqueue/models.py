"""Data models for jobs, plans, accounts and configuration."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle states."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchPolicy(str, Enum):
    """Ordering applied to pending jobs at dispatch time."""
    SEQUENTIAL = "sequential"
    PRIORITY = "priority"
    PARALLEL = "parallel"


class Quality(str, Enum):
    HD = "hd"
    FHD = "fhd"
    UHD_4K = "4k"


QUALITY_RANK = {Quality.HD: 1, Quality.FHD: 2, Quality.UHD_4K: 3}


class VisualStyle(str, Enum):
    ZOOM_IN = "zoom-in"
    ZOOM_OUT = "zoom-out"
    PAN_LEFT = "pan-left"
    PAN_RIGHT = "pan-right"
    FADE = "fade"
    ROTATE = "rotate"
    PARALLAX = "parallax"


class AiStyle(str, Enum):
    AUTO = "auto"
    CINEMATIC = "cinematic"
    NATURAL = "natural"
    ARTISTIC = "artistic"
    DYNAMIC = "dynamic"


class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    SQUARE = "1:1"


class MotionType(str, Enum):
    GENTLE = "gentle"
    SMOOTH = "smooth"
    DYNAMIC = "dynamic"
    CINEMATIC = "cinematic"


class MusicTrack(str, Enum):
    NONE = "none"
    UPBEAT = "upbeat"
    AMBIENT = "ambient"
    CINEMATIC = "cinematic"
    ELECTRONIC = "electronic"
    ACOUSTIC = "acoustic"
    EPIC = "epic"
    CUSTOM = "custom"


class Plan(str, Enum):
    """Subscription tiers."""
    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_PLUS_MONTHLY = "pro_plus_monthly"
    PRO_ANNUAL = "pro_annual"
    PRO_PLUS_ANNUAL = "pro_plus_annual"


class PlanFeatures(BaseModel):
    """What a plan tier allows. ``max_credits`` of None means unlimited."""
    max_credits: Optional[int]
    max_concurrent_jobs: int
    max_quality: Quality
    can_use_reference_images: bool
    can_upload_audio: bool
    has_watermark: bool

    @property
    def unlimited_credits(self) -> bool:
        return self.max_credits is None


_FREE = PlanFeatures(
    max_credits=2,
    max_concurrent_jobs=1,
    max_quality=Quality.HD,
    can_use_reference_images=False,
    can_upload_audio=False,
    has_watermark=True,
)
_PRO = PlanFeatures(
    max_credits=None,
    max_concurrent_jobs=3,
    max_quality=Quality.FHD,
    can_use_reference_images=True,
    can_upload_audio=True,
    has_watermark=False,
)
_PRO_PLUS = PlanFeatures(
    max_credits=None,
    max_concurrent_jobs=5,
    max_quality=Quality.UHD_4K,
    can_use_reference_images=True,
    can_upload_audio=True,
    has_watermark=False,
)

PLAN_FEATURES: Dict[Plan, PlanFeatures] = {
    Plan.FREE: _FREE,
    Plan.PRO_MONTHLY: _PRO,
    Plan.PRO_ANNUAL: _PRO,
    Plan.PRO_PLUS_MONTHLY: _PRO_PLUS,
    Plan.PRO_PLUS_ANNUAL: _PRO_PLUS,
}


def plan_features(plan: Plan) -> PlanFeatures:
    return PLAN_FEATURES.get(plan, _FREE)


class AssetRef(BaseModel):
    """Pointer to an uploaded asset (image or audio)."""
    id: str
    name: str = ""
    path: Optional[str] = None


class JobSettings(BaseModel):
    """Rendering settings chosen at submission time."""
    model_config = ConfigDict(extra="forbid")

    duration: int = Field(default=3, ge=1, le=10)
    style: VisualStyle = VisualStyle.ZOOM_IN
    ai_style: AiStyle = AiStyle.AUTO
    quality: Quality = Quality.HD
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    motion_type: MotionType = MotionType.GENTLE
    motion_intensity: int = Field(default=50, ge=10, le=100)
    prompt: str = Field(default="", max_length=2000)
    music: MusicTrack = MusicTrack.NONE
    custom_audio: Optional[AssetRef] = None
    batch_policy: Optional[BatchPolicy] = None  # scheduler default when unset

    @model_validator(mode="after")
    def _check_audio(self) -> "JobSettings":
        if self.music == MusicTrack.CUSTOM and self.custom_audio is None:
            raise ValueError("music 'custom' requires a custom_audio asset")
        if self.music != MusicTrack.CUSTOM and self.custom_audio is not None:
            raise ValueError("custom_audio is only allowed with music 'custom'")
        return self


class JobRequest(BaseModel):
    """A request to turn one source image into a video."""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    image: AssetRef
    reference_images: List[AssetRef] = Field(default_factory=list)
    settings: JobSettings = Field(default_factory=JobSettings)


class Job(BaseModel):
    """Job record."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    seq: int = 0
    image: AssetRef
    reference_images: List[AssetRef] = Field(default_factory=list)
    settings: JobSettings = Field(default_factory=JobSettings)
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    current_stage: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None
    credit_reserved: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: JobRequest) -> "Job":
        return cls(
            user_id=request.user_id,
            image=request.image,
            reference_images=list(request.reference_images),
            settings=request.settings.model_copy(deep=True),
        )

    @property
    def has_references(self) -> bool:
        return len(self.reference_images) > 0

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            id=self.id,
            user_id=self.user_id,
            status=self.status,
            progress=self.progress,
            current_stage=self.current_stage if self.status == JobStatus.PROCESSING else None,
            retry_count=self.retry_count,
            error=self.error,
            batch_policy=self.settings.batch_policy,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class JobSnapshot(BaseModel):
    """Read-only view of a job handed to callers."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    status: JobStatus
    progress: int
    current_stage: Optional[str] = None
    retry_count: int
    error: Optional[str] = None
    batch_policy: Optional[BatchPolicy] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobEvent(BaseModel):
    """State change emitted by the scheduler for presentation layers."""
    model_config = ConfigDict(frozen=True)

    kind: str  # "status" or "progress"
    job: JobSnapshot
    at: datetime = Field(default_factory=utcnow)


class Account(BaseModel):
    """Per-user plan and usage counters."""
    user_id: str
    plan: Plan = Plan.FREE
    credits_used: int = 0
    credits_reserved: int = 0
    total_videos: int = 0
    credits_reset_at: Optional[datetime] = None

    @property
    def features(self) -> PlanFeatures:
        return plan_features(self.plan)

    def remaining_credits(self, max_free_credits: int) -> Optional[int]:
        """Credits left to admit new jobs, or None when unlimited."""
        if self.features.unlimited_credits:
            return None
        return max(0, max_free_credits - self.credits_used - self.credits_reserved)


class Config(BaseModel):
    """Scheduler configuration persisted in the data directory."""
    max_retries: int = Field(default=3, ge=0)
    max_free_credits: int = Field(default=2, ge=0)
    stage_delay: float = Field(default=0.05, ge=0)  # seconds per stage weight unit
    auto_retry: bool = True
    default_batch_policy: BatchPolicy = BatchPolicy.PARALLEL
