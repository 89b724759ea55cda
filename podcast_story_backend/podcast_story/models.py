import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# --- Persisted status vocabulary (string values are an inter-process contract) ---

class StoryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SCRIPT_COMPLETED = "script_completed"
    AUDIO_COMPLETED = "audio_completed"  # ready for mixing/assembly
    DO_COMPLETED = "do_completed"  # rendered and uploaded, pre-CDN
    COMPLETED = "completed"
    SCRIPT_FAILED = "script_failed"
    AUDIO_FAILED = "audio_failed"
    VIDEO_FAILED = "video_failed"


class AudioStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ImageStatus(str, Enum):
    QUEUED = "queued"
    PENDING = "pending"
    PROCESSING = "processing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINAL_FAILED = "terminal_failed"


class AnchorStatus(str, Enum):
    NOT_NEEDED = "not_needed"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MusicStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AnchorType(str, Enum):
    CHARACTER = "character"
    SETTING = "setting"


class JobKind(str, Enum):
    AUDIO = "audio"
    IMAGE = "image"
    ANCHOR = "anchor"
    MUSIC = "music"


class ResponseKind(str, Enum):
    SCRIPT = "script"
    IMAGE = "image"
    ANCHOR = "anchor"
    VIDEO = "video"


IMAGE_NON_TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    ImageStatus.QUEUED.value,
    ImageStatus.PENDING.value,
    ImageStatus.PROCESSING.value,
    ImageStatus.GENERATING.value,
})
IMAGE_FAILED_STATUSES: FrozenSet[str] = frozenset({
    ImageStatus.FAILED.value,
    ImageStatus.TERMINAL_FAILED.value,
})

TERMINAL_STATUSES: Dict[JobKind, FrozenSet[str]] = {
    JobKind.AUDIO: frozenset({AudioStatus.COMPLETED.value, AudioStatus.FAILED.value}),
    JobKind.IMAGE: frozenset({ImageStatus.COMPLETED.value}) | IMAGE_FAILED_STATUSES,
    JobKind.ANCHOR: frozenset({
        AnchorStatus.NOT_NEEDED.value,
        AnchorStatus.COMPLETED.value,
        AnchorStatus.FAILED.value,
    }),
    JobKind.MUSIC: frozenset({MusicStatus.COMPLETED.value, MusicStatus.FAILED.value}),
}

# Forward-only story lifecycle. Anything not listed here is a backward or
# sideways write and is rejected by the registry.
STORY_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    StoryStatus.PENDING.value: frozenset({StoryStatus.PROCESSING.value, StoryStatus.SCRIPT_FAILED.value}),
    StoryStatus.PROCESSING.value: frozenset({StoryStatus.SCRIPT_COMPLETED.value, StoryStatus.SCRIPT_FAILED.value}),
    StoryStatus.SCRIPT_COMPLETED.value: frozenset({StoryStatus.AUDIO_COMPLETED.value, StoryStatus.AUDIO_FAILED.value}),
    StoryStatus.AUDIO_COMPLETED.value: frozenset({StoryStatus.DO_COMPLETED.value, StoryStatus.VIDEO_FAILED.value}),
    StoryStatus.DO_COMPLETED.value: frozenset({StoryStatus.COMPLETED.value, StoryStatus.VIDEO_FAILED.value}),
    StoryStatus.COMPLETED.value: frozenset(),
    StoryStatus.SCRIPT_FAILED.value: frozenset(),
    StoryStatus.AUDIO_FAILED.value: frozenset(),
    StoryStatus.VIDEO_FAILED.value: frozenset(),
}


def status_value(status) -> str:
    # registry rows hold raw values; accept either an enum member or its value
    return status.value if isinstance(status, Enum) else status


def can_transition(current: str, new: str) -> bool:
    return status_value(new) in STORY_TRANSITIONS.get(status_value(current), frozenset())


def is_terminal(kind: JobKind, status: str) -> bool:
    return status_value(status) in TERMINAL_STATUSES[JobKind(kind)]


# --- Registry records ---

class Record(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)


class Story(Record):
    id: str = Field(default_factory=_new_id)
    status: StoryStatus = StoryStatus.PENDING
    video: bool = True
    duration: int = 5
    style: str = "documentary"
    tone: str = "informative"
    speakers: str = "single"
    voices: List[str] = Field(default_factory=list)
    image_style: str = "realistic"
    prompt: str = ""
    title: Optional[str] = None
    transcript: Optional[str] = None
    response_id: Optional[str] = None
    audio_url: Optional[str] = None
    subtitles: Optional[dict] = None
    media_url: Optional[str] = None  # rendered mp4, or mixed mp3 for audio-only
    hls_url: Optional[str] = None
    cloudflare_id: Optional[str] = None
    ready_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class JobRecord(Record):
    kind: JobKind
    id: str = Field(default_factory=_new_id)
    story_id: str
    status: str
    media_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class AudioSegment(JobRecord):
    kind: JobKind = JobKind.AUDIO
    status: AudioStatus = AudioStatus.PENDING
    scene_id: str
    scene_number: int
    text_content: str = ""
    character_count: int = 0
    duration: Optional[float] = None


class ImageJob(JobRecord):
    kind: JobKind = JobKind.IMAGE
    status: ImageStatus = ImageStatus.PENDING
    scene_id: str
    scene_number: int
    shot_number: int
    duration: float
    prompt: str = ""
    anchor_uuids: List[str] = Field(default_factory=list)
    response_id: Optional[str] = None


class Anchor(JobRecord):
    kind: JobKind = JobKind.ANCHOR
    status: AnchorStatus = AnchorStatus.PENDING
    entity_uuid: str
    anchor_type: AnchorType
    name: str
    description: str = ""
    appearances: int = 1
    response_id: Optional[str] = None


class MusicTrack(JobRecord):
    kind: JobKind = JobKind.MUSIC
    status: MusicStatus = MusicStatus.PENDING
    prompt: str = ""
    duration_ms: int = 0


JOB_MODELS = {
    JobKind.AUDIO: AudioSegment,
    JobKind.IMAGE: ImageJob,
    JobKind.ANCHOR: Anchor,
    JobKind.MUSIC: MusicTrack,
}


class ResponseRecord(Record):
    """Maps an external correlation id (prediction, response, stream uid) to our rows."""
    response_id: str
    kind: ResponseKind
    story_id: str
    job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


# --- API and script models ---

class StoryRequest(BaseModel):
    story: str
    style: Literal["conversational", "narrative", "interview", "documentary", "educational"] = "documentary"
    speakers: Literal["single", "dual"] = "single"
    voices: List[str] = Field(min_length=1, max_length=2)
    tone: str = "informative"
    duration: int = Field(default=5, ge=1, le=60)
    image_style: Literal["realistic", "comic", "cartoon", "drawing", "watercolor", "noir", "sketch"] = "realistic"
    video: bool = True


class CaptionRequest(BaseModel):
    language: str = "en"


class DialogueInput(BaseModel):
    text: str
    voice_id: str


class EntityRef(BaseModel):
    name: str
    uuid: str


class Scene(BaseModel):
    id: str
    startTime: float = 0
    duration: float = 0
    wordCount: int = 0
    image_prompt: str = ""
    characters: List[EntityRef] = Field(default_factory=list)
    setting: Optional[EntityRef] = None
    inputs: List[DialogueInput]

    def entity_uuids(self) -> List[str]:
        uuids = [c.uuid for c in self.characters]
        if self.setting:
            uuids.append(self.setting.uuid)
        return uuids


class AnchorSpec(BaseModel):
    uuid: str
    name: str
    description: str = ""
    appearances: int = 1


class AnchorSet(BaseModel):
    characters: List[AnchorSpec] = Field(default_factory=list)
    settings: List[AnchorSpec] = Field(default_factory=list)


class ScriptMetadata(BaseModel):
    totalScenes: int = 0
    averageSceneDuration: float = 0
    totalWords: int = 0
    estimationMethod: str = ""
    speechStyle: str = ""
    imageStyle: str = "realistic"
    musicPrompt: str = ""
    anchors: AnchorSet = Field(default_factory=AnchorSet)
    themes: List[str] = Field(default_factory=list)


class PodcastScript(BaseModel):
    title: str
    totalDuration: float = 0
    estimatedWordsPerMinute: int = 160
    scenes: List[Scene]
    metadata: ScriptMetadata = Field(default_factory=ScriptMetadata)


class ShotPlan(BaseModel):
    shot: int
    duration: float
    prompt: str


class ImagesCompletion(BaseModel):
    acceptable: bool = False
    total: int = 0
    completed: int = 0
    failed: int = 0
    missing: int = 0
    nonTerminal: int = 0
    allAttempted: bool = False
    successRate: float = 0.0


class CompletionStatus(BaseModel):
    story_id: str
    status: Optional[str] = None
    audio: bool
    images: ImagesCompletion
    images_required: bool = True
    music: bool
    overall: bool


# --- Assembly graph state ---

class ShotAsset(BaseModel):
    url: str
    duration: float
    path: Optional[str] = None


class AssemblyState(BaseModel):
    story_id: str
    tmp_dir: str
    video: bool = True
    narration_url: Optional[str] = None
    music_url: Optional[str] = None
    shots: List[ShotAsset] = Field(default_factory=list)
    narration_path: Optional[str] = None
    music_path: Optional[str] = None
    duration: float = 0
    final_path: Optional[str] = None
    media_url: Optional[str] = None
