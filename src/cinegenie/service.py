"""Service for interacting with the Google Gemini API."""

import json
import logging
import time

from google import genai
from google.genai import types
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .models import (
    DEFAULT_ASPECT_RATIO,
    AspectRatio,
    ImageGenerationConfig,
    ScriptDocument,
    ScriptGenerationConfig,
    VideoGenerationConfig,
)

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {"en-US": "English (US)", "vi-VN": "Vietnamese"}


def _language_name(language: str) -> str:
    return LANGUAGE_NAMES.get(language, language)


class GeminiService:
    """Service to interact with Google Gemini API."""

    def __init__(self, api_key: str) -> None:
        """Initialize the service with an API key."""
        if not api_key:
            msg = (
                "API Key is missing. "
                "Set GEMINI_API_KEY env var or pass it as an argument."
            )
            raise ValueError(msg)
        self.client = genai.Client(api_key=api_key)

    def generate_script(
        self,
        prompt: str,
        config: ScriptGenerationConfig | None = None,
    ) -> ScriptDocument:
        """Generate a full script from a logline prompt.

        Args:
            prompt: Logline, genres and desired length.
            config: Configuration for script generation.

        Returns:
            ScriptDocument: The generated script, not yet saved.

        Raises:
            RuntimeError: If the generation fails.

        """
        if config is None:
            config = ScriptGenerationConfig()
        instructions = (
            "You are a professional screenwriter.\n"
            f"Write the script in {_language_name(config.language)}.\n"
            f"Desired script length: {config.length}.\n"
            "Split the story into numbered acts, each with a summary and "
            "numbered scenes. For every scene describe the location, the time "
            "of day, the action, the visual style and the audio style."
        )

        try:
            response = self.client.models.generate_content(
                model=config.model,
                contents=[
                    types.Content(
                        parts=[
                            types.Part.from_text(text=instructions),
                            types.Part.from_text(text=prompt),
                        ],
                    ),
                ],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=ScriptDocument,
                    temperature=config.temperature,
                ),
            )

            script = None
            if hasattr(response, "parsed") and response.parsed:
                script = response.parsed
            else:
                script = ScriptDocument.model_validate_json(response.text)

        except Exception as e:
            msg = f"Failed to generate script: {e}"
            raise RuntimeError(msg) from e

        # ids are assigned by the store
        return script.model_copy(update={"id": None})

    def suggest_plot_points(
        self,
        prompt: str,
        language: str = "en-US",
        model: str = "gemini-2.5-flash",
    ) -> list[str]:
        """Suggest a handful of plot points for a logline."""
        instructions = (
            "Suggest 5 short, surprising plot points for this story idea. "
            f"Answer in {_language_name(language)} as a JSON array of strings."
        )
        try:
            response = self.client.models.generate_content(
                model=model,
                contents=[
                    types.Content(
                        parts=[
                            types.Part.from_text(text=instructions),
                            types.Part.from_text(text=prompt),
                        ],
                    ),
                ],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=list[str],
                ),
            )
            suggestions = json.loads(response.text)
        except Exception as e:
            msg = f"Failed to suggest plot points: {e}"
            raise RuntimeError(msg) from e
        return [str(s) for s in suggestions]

    def enhance_text(
        self,
        text: str,
        context: str,
        language: str = "en-US",
        model: str = "gemini-2.5-flash",
    ) -> str:
        """Rewrite a piece of the script to be more vivid, keeping its meaning."""
        prompt = (
            f"Improve this '{context}' of a movie script. Keep its meaning and "
            f"length, make it more cinematic. Answer in {_language_name(language)} "
            "with the rewritten text only.\n\n"
            f"{text}"
        )
        try:
            response = self.client.models.generate_content(
                model=model,
                contents=prompt,
            )
        except Exception as e:
            msg = f"Failed to enhance text: {e}"
            raise RuntimeError(msg) from e
        if not response.text:
            msg = "No text in response"
            raise RuntimeError(msg)
        return response.text.strip()

    def _generate_image_attempt(
        self,
        model_name: str,
        prompt: str,
        image_config: types.GenerateImagesConfig,
    ) -> bytes:
        response = self.client.models.generate_images(
            model=model_name,
            prompt=prompt,
            config=image_config,
        )

        if response.generated_images:
            image = response.generated_images[0].image
            if image and image.image_bytes:
                return image.image_bytes

        msg = "No image data in response"
        raise RuntimeError(msg)

    def generate_scene_image(
        self,
        prompt: str,
        aspect_ratio: AspectRatio = DEFAULT_ASPECT_RATIO,
        negative_prompt: str | None = None,
        config: ImageGenerationConfig | None = None,
    ) -> bytes:
        """Generate a still for a scene.

        Args:
            prompt: Text prompt for image generation.
            aspect_ratio: Frame aspect ratio.
            negative_prompt: Things to keep out of the image.
            config: Configuration for image generation.

        Returns:
            bytes: The PNG payload.

        Raises:
            RetryError: If generation fails after retries.

        """
        if config is None:
            config = ImageGenerationConfig()
        image_config = types.GenerateImagesConfig(
            number_of_images=1,
            aspect_ratio=AspectRatio(aspect_ratio).value,
            negative_prompt=negative_prompt or None,
            output_mime_type="image/png",
        )

        # reraise=True so the underlying exception is raised after retries
        retryer = Retrying(
            stop=stop_after_attempt(config.retries + 1),
            wait=wait_exponential(
                multiplier=2,
                min=config.min_wait,
                max=config.max_wait,
            ),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        )

        def _attempt() -> bytes:
            return self._generate_image_attempt(config.model, prompt, image_config)

        return retryer(_attempt)

    def generate_scene_video(
        self,
        prompt: str,
        aspect_ratio: AspectRatio = DEFAULT_ASPECT_RATIO,
        start_image: tuple[str, bytes] | None = None,
        config: VideoGenerationConfig | None = None,
    ) -> bytes:
        """Generate a short clip for a scene, optionally seeded with a still.

        Args:
            prompt: Text prompt for video generation.
            aspect_ratio: Frame aspect ratio.
            start_image: `(mime_type, data)` of the first frame, if any.
            config: Configuration for video generation.

        Returns:
            bytes: The MP4 payload.

        Raises:
            RuntimeError: If the operation fails or times out.

        """
        if config is None:
            config = VideoGenerationConfig()
        image = None
        if start_image is not None:
            mime_type, data = start_image
            image = types.Image(image_bytes=data, mime_type=mime_type)

        operation = self.client.models.generate_videos(
            model=config.model,
            prompt=prompt,
            image=image,
            config=types.GenerateVideosConfig(
                number_of_videos=1,
                aspect_ratio=AspectRatio(aspect_ratio).value,
            ),
        )

        started = time.monotonic()
        while not operation.done:
            if time.monotonic() - started > config.max_poll_time:
                msg = f"Operation timed out after {config.max_poll_time:.0f}s"
                raise RuntimeError(msg)
            logger.debug("Waiting for video operation %s", operation.name)
            time.sleep(config.poll_interval)
            operation = self.client.operations.get(operation)

        if operation.error:
            msg = f"Operation returned an error: {operation.error}"
            raise RuntimeError(msg)

        videos = operation.response.generated_videos if operation.response else None
        if not videos or videos[0].video is None:
            msg = "No video data in response"
            raise RuntimeError(msg)

        video = videos[0].video
        if video.video_bytes:
            return video.video_bytes
        return self.client.files.download(file=video)
