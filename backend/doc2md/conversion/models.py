"""Conversion data models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskKind(str, Enum):
    CONVERT = "convert"
    SUMMARIZE = "summarize"


class Route(str, Enum):
    DIRECT = "direct"
    CONVERT = "convert"
    ENCODE = "encode"


class MediaKind(str, Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    TEXT = "text"


@dataclass(frozen=True)
class FormatInfo:
    name: str
    extension: str
    kind: MediaKind
    # convert: Drive-native type the document is imported as
    import_as: Optional[str] = None
    # encode: container produced by ffmpeg
    output_format: Optional[str] = None
    output_media_type: Optional[str] = None


@dataclass(frozen=True)
class Classification:
    media_type: str
    supported: bool
    route: Optional[Route] = None
    info: Optional[FormatInfo] = None


@dataclass
class SourceFile:
    """Raw bytes read from the upload cache (or a synchronous upload) before preparation."""

    data: bytes
    media_type: str
    name: str


@dataclass
class PreparedFile:
    """AI-ingestible representation produced by the preparation pipeline."""

    data: bytes
    media_type: str
    name: str


@dataclass
class CacheMetadata:
    filename: str
    media_type: str
    size: int
    extra: dict = field(default_factory=dict)


@dataclass
class CacheEntry:
    entry_id: str
    locator: str
    metadata: CacheMetadata
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class ProgressTick:
    """One progress update from a long-running stage (encoder, preparation)."""

    percent: float
    eta: Optional[float] = None
    stage: str = "encoding"
