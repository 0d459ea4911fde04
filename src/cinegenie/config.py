"""Configuration management."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .errors import ConfigurationError, StoreError
from .models import ImageGenerationConfig, ScriptGenerationConfig, VideoGenerationConfig

logger = logging.getLogger(__name__)

API_KEY_ENV = "GEMINI_API_KEY"
API_KEY_FILE = "api_key"


class Settings(BaseModel):
    """Application settings, read from the environment."""

    data_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("CINEGENIE_DATA_DIR", str(Path.home() / ".cinegenie")),
        ),
        description="Directory holding the script and asset stores",
    )
    script_model: str = Field(
        default_factory=lambda: os.getenv("CINEGENIE_SCRIPT_MODEL", "gemini-2.5-flash"),
    )
    image_model: str = Field(
        default_factory=lambda: os.getenv(
            "CINEGENIE_IMAGE_MODEL",
            "imagen-4.0-generate-001",
        ),
    )
    video_model: str = Field(
        default_factory=lambda: os.getenv("CINEGENIE_VIDEO_MODEL", "veo-2.0-generate-001"),
    )
    retries: int = 2
    min_wait: int = 2
    max_wait: int = 10
    video_poll_interval: float = 10.0
    video_max_poll_time: float = 600.0

    @classmethod
    def load(cls) -> "Settings":
        """Load `.env` and build settings from the environment."""
        load_dotenv()
        return cls()

    def script_config(self, language: str = "en-US", length: str = "medium") -> ScriptGenerationConfig:
        return ScriptGenerationConfig(
            model=self.script_model,
            language=language,
            length=length,
        )

    def image_config(self) -> ImageGenerationConfig:
        return ImageGenerationConfig(
            model=self.image_model,
            retries=self.retries,
            min_wait=self.min_wait,
            max_wait=self.max_wait,
        )

    def video_config(self) -> VideoGenerationConfig:
        return VideoGenerationConfig(
            model=self.video_model,
            poll_interval=self.video_poll_interval,
            max_poll_time=self.video_max_poll_time,
        )


class ApiKeyHolder:
    """Single owner of the Gemini API key.

    The environment variable wins over the key file; `set` and `clear` only
    touch the key file under the data directory.
    """

    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / API_KEY_FILE
        self._key: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def value(self) -> str | None:
        return self._key

    @property
    def is_set(self) -> bool:
        return bool(self._key and self._key.strip())

    def load(self) -> str | None:
        key = os.getenv(API_KEY_ENV)
        if not key and self._path.exists():
            try:
                key = self._path.read_text(encoding="utf-8").strip()
            except OSError:
                logger.exception("Could not read API key file %s", self._path)
                key = None
        self._key = key or None
        return self._key

    def set(self, key: str | None) -> None:
        """Persist a new key, or remove the stored one when `key` is empty."""
        if not key:
            self.clear()
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(key.strip(), encoding="utf-8")
        except OSError as e:
            msg = f"Could not save API key: {e}"
            raise StoreError(msg) from e
        self._key = key.strip()

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
        self._key = None

    def require(self) -> str:
        if not self.is_set:
            msg = (
                "API Key is missing. "
                f"Set {API_KEY_ENV} env var or run `cinegenie config set-key`."
            )
            raise ConfigurationError(msg)
        return self._key
