"""Pydantic data models for CineGenie Studio."""

from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AspectRatio(str, Enum):
    """Supported frame aspect ratios."""

    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    SQUARE = "1:1"
    CLASSIC = "4:3"
    CLASSIC_PORTRAIT = "3:4"


DEFAULT_ASPECT_RATIO = AspectRatio.LANDSCAPE


class AssetKind(str, Enum):
    """Kind of generated media attached to a scene."""

    IMAGE = "image"
    VIDEO = "video"

    @property
    def mime_type(self) -> str:
        return "image/png" if self is AssetKind.IMAGE else "video/mp4"

    @property
    def extension(self) -> str:
        return ".png" if self is AssetKind.IMAGE else ".mp4"


class SceneLocator(NamedTuple):
    """Position of a scene inside a document, as a pair of ordinals."""

    act_index: int
    scene_index: int


class Scene(BaseModel):
    """Represents a single shot in an act."""

    model_config = ConfigDict(populate_by_name=True)

    scene_number: int = Field(gt=0)
    location: str = ""
    time: str = ""
    action: str = ""
    visual_style: str = ""
    audio_style: str = ""
    generated_image_id: int | None = Field(default=None, alias="generatedImageId")
    generated_video_id: int | None = Field(default=None, alias="generatedVideoId")
    # UI-only state, never written to a store or an export
    is_generating_image: bool = Field(
        default=False,
        alias="isGeneratingImage",
        exclude=True,
    )
    is_generating_video: bool = Field(
        default=False,
        alias="isGeneratingVideo",
        exclude=True,
    )

    def asset_id(self, kind: AssetKind) -> int | None:
        if kind is AssetKind.IMAGE:
            return self.generated_image_id
        return self.generated_video_id

    def set_asset_id(self, kind: AssetKind, asset_id: int | None) -> None:
        if kind is AssetKind.IMAGE:
            self.generated_image_id = asset_id
        else:
            self.generated_video_id = asset_id

    def is_generating(self, kind: AssetKind) -> bool:
        if kind is AssetKind.IMAGE:
            return self.is_generating_image
        return self.is_generating_video

    def set_generating(self, kind: AssetKind, value: bool) -> None:
        if kind is AssetKind.IMAGE:
            self.is_generating_image = value
        else:
            self.is_generating_video = value


class Act(BaseModel):
    """Represents an act, an ordered group of scenes."""

    act_number: int = Field(gt=0)
    summary: str = ""
    scenes: list[Scene] = Field(default_factory=list)

    @field_validator("scenes")
    @classmethod
    def unique_scene_numbers(cls, scenes: list[Scene]) -> list[Scene]:
        numbers = [s.scene_number for s in scenes]
        if len(numbers) != len(set(numbers)):
            msg = "scene_number must be unique within an act"
            raise ValueError(msg)
        return scenes


class Setting(BaseModel):
    """Document-wide production settings."""

    model_config = ConfigDict(populate_by_name=True)

    default_aspect_ratio: AspectRatio = Field(
        default=DEFAULT_ASPECT_RATIO,
        alias="defaultAspectRatio",
    )


class ScriptDocument(BaseModel):
    """Represents the complete script: the root of every scene reference."""

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = None
    title: str
    logline: str = ""
    genre: list[str] = Field(default_factory=list)
    setting: Setting = Field(default_factory=Setting)
    acts: list[Act] = Field(default_factory=list)

    @field_validator("genre")
    @classmethod
    def dedupe_genres(cls, genre: list[str]) -> list[str]:
        """Keep the first occurrence of each genre, preserving display order."""
        return list(dict.fromkeys(genre))

    @field_validator("acts")
    @classmethod
    def unique_act_numbers(cls, acts: list[Act]) -> list[Act]:
        numbers = [a.act_number for a in acts]
        if len(numbers) != len(set(numbers)):
            msg = "act_number must be unique within a document"
            raise ValueError(msg)
        return acts

    def clone(self) -> "ScriptDocument":
        """Return a deep copy, transient flags included."""
        return self.model_copy(deep=True)

    def scene_at(self, locator: SceneLocator) -> Scene | None:
        """Resolve a locator against this snapshot; None when out of range."""
        act_index, scene_index = locator
        if not 0 <= act_index < len(self.acts):
            return None
        scenes = self.acts[act_index].scenes
        if not 0 <= scene_index < len(scenes):
            return None
        return scenes[scene_index]

    def locators(self) -> list[SceneLocator]:
        """All scene locators in reading order."""
        return [
            SceneLocator(act_index, scene_index)
            for act_index, act in enumerate(self.acts)
            for scene_index in range(len(act.scenes))
        ]

    def to_record(self) -> dict:
        """Serialize for storage and export (aliases, no transient flags)."""
        return self.model_dump(mode="json", by_alias=True)


class AssetRecord(BaseModel):
    """A stored binary payload owned by exactly one script."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    script_id: int = Field(alias="scriptId")
    kind: AssetKind
    mime_type: str = Field(alias="mimeType")
    data: bytes = Field(exclude=True, repr=False)


class ScriptGenerationConfig(BaseModel):
    """Configuration for script generation."""

    model: str = "gemini-2.5-flash"
    temperature: float = 0.8
    language: str = "en-US"
    length: str = "medium"


class ImageGenerationConfig(BaseModel):
    """Configuration for image generation."""

    model: str = "imagen-4.0-generate-001"
    retries: int = 2
    min_wait: int = 2
    max_wait: int = 10


class VideoGenerationConfig(BaseModel):
    """Configuration for video generation."""

    model: str = "veo-2.0-generate-001"
    poll_interval: float = 10.0
    max_poll_time: float = 600.0
