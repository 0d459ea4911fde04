"""Per-scene generation lifecycle for images and videos.

A request publishes an optimistic copy of the active script with the scene's
`isGenerating*` flag set, calls the generator, then either commits the new
asset or rolls back to the pre-request snapshot. Nothing serializes two
requests on the same scene: whichever finishes last publishes last. Commits
are saved one at a time, each on top of the latest published copy, so results
for different scenes compose.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .errors import GenerationError, StoreError
from .events import AssetEvents
from .models import (
    AspectRatio,
    AssetKind,
    ImageGenerationConfig,
    Scene,
    SceneLocator,
    ScriptDocument,
    VideoGenerationConfig,
)
from .service import GeminiService
from .session import ScriptSession
from .store import Database

logger = logging.getLogger(__name__)

NO_API_KEY_MESSAGE = "Set your API key before generating assets."

Produce = Callable[[ScriptDocument, Scene], Awaitable[tuple[bytes, str]]]


def default_image_prompt(scene: Scene) -> str:
    """Initial image prompt for a scene, before the user edits it."""
    return (
        f"{scene.action} "
        f"Location: {scene.location} ({scene.time}). "
        f"Visual style: {scene.visual_style}."
    ).strip()


def video_prompt(scene: Scene) -> str:
    return (
        "Cinematic shot for a movie scene. "
        f"Location: {scene.location} ({scene.time}). "
        f"Action: {scene.action}. "
        f"Visual style: {scene.visual_style}. "
        f"Audio style: {scene.audio_style}."
    )


class GenerationOrchestrator:
    """Drives optimistic update, commit and rollback of scene assets."""

    def __init__(
        self,
        session: ScriptSession,
        db: Database,
        events: AssetEvents,
        generator: GeminiService | None,
        image_config: ImageGenerationConfig | None = None,
        video_config: VideoGenerationConfig | None = None,
    ) -> None:
        self.session = session
        self.db = db
        self.events = events
        self.generator = generator
        self.image_config = image_config or ImageGenerationConfig()
        self.video_config = video_config or VideoGenerationConfig()
        self._save_lock = asyncio.Lock()

    async def generate_scene_image(
        self,
        locator: SceneLocator,
        prompt: str,
        negative_prompt: str = "",
        aspect_ratio: AspectRatio | None = None,
    ) -> bool:
        """Generate and attach an image. Returns True when it was committed."""

        async def produce(snapshot: ScriptDocument, scene: Scene) -> tuple[bytes, str]:
            ratio = aspect_ratio or snapshot.setting.default_aspect_ratio
            data = await self._call(
                self.generator.generate_scene_image,
                prompt,
                ratio,
                negative_prompt,
                self.image_config,
            )
            return data, AssetKind.IMAGE.mime_type

        return await self._run(AssetKind.IMAGE, locator, produce)

    async def generate_scene_video(
        self,
        locator: SceneLocator,
        aspect_ratio: AspectRatio | None = None,
    ) -> bool:
        """Generate and attach a video, seeded with the scene's image if any."""

        async def produce(snapshot: ScriptDocument, scene: Scene) -> tuple[bytes, str]:
            ratio = aspect_ratio or snapshot.setting.default_aspect_ratio
            start_image = await self._seed_frame(scene)
            data = await self._call(
                self.generator.generate_scene_video,
                video_prompt(scene),
                ratio,
                start_image,
                self.video_config,
            )
            return data, AssetKind.VIDEO.mime_type

        return await self._run(AssetKind.VIDEO, locator, produce)

    def cancel(self, locator: SceneLocator, kind: AssetKind) -> None:
        """Clear the generating flag without aborting the outstanding call.

        A late completion still commits or rolls back on its own.
        """
        script = self.session.active
        if script is None:
            return
        cancelled = script.clone()
        scene = cancelled.scene_at(locator)
        if scene is not None:
            scene.set_generating(kind, False)
        self.session.publish(cancelled)

    async def _run(
        self,
        kind: AssetKind,
        locator: SceneLocator,
        produce: Produce,
    ) -> bool:
        script = self.session.active
        if script is None or script.id is None:
            return False
        if script.scene_at(locator) is None:
            logger.warning("No scene at %s in script %d", locator, script.id)
            return False
        if self.generator is None:
            self.session.set_error(NO_API_KEY_MESSAGE)
            return False

        script_id = script.id
        snapshot = script.clone()

        optimistic = script.clone()
        optimistic.scene_at(locator).set_generating(kind, True)
        self.session.publish(optimistic)
        logger.info("Generating %s for script %d scene %s", kind.value, script_id, locator)

        try:
            data, mime_type = await produce(snapshot, snapshot.scene_at(locator))
            await self._commit(kind, locator, script_id, data, mime_type)
        except (GenerationError, StoreError) as e:
            logger.exception("Could not generate %s for scene %s", kind.value, locator)
            self._rollback(kind, locator, snapshot)
            if kind is AssetKind.VIDEO:
                self.session.set_error(f"Video generation failed: {e}")
            else:
                self.session.set_error(str(e) or "Could not generate image.")
            return False
        return True

    async def _commit(
        self,
        kind: AssetKind,
        locator: SceneLocator,
        script_id: int,
        data: bytes,
        mime_type: str,
    ) -> None:
        asset_id = await self.db.assets(kind).add(data, script_id, mime_type)
        try:
            async with self._save_lock:
                if self._is_active(script_id):
                    # resolve the latest copy only after every await
                    committed = _attach(self.session.active, kind, locator, asset_id)
                    self.session.publish(committed)
                else:
                    stored = await self.db.scripts.get(script_id)
                    if stored is None:
                        msg = f"Script {script_id} was deleted"
                        raise StoreError(msg)
                    committed = _attach(stored, kind, locator, asset_id)
                await self.db.scripts.update(committed)
                self.session.remember(committed)
        except StoreError:
            # drop the orphan before surfacing the save error
            await self.db.assets(kind).delete(asset_id)
            raise
        self.events.notify()
        logger.info("Committed %s %d to script %d", kind.value, asset_id, script_id)

    def _rollback(
        self,
        kind: AssetKind,
        locator: SceneLocator,
        snapshot: ScriptDocument,
    ) -> None:
        if not self._is_active(snapshot.id):
            return
        reverted = snapshot.clone()
        reverted.scene_at(locator).set_generating(kind, False)
        self.session.publish(reverted)

    def _is_active(self, script_id: int | None) -> bool:
        active = self.session.active
        return active is not None and active.id == script_id

    async def _seed_frame(self, scene: Scene) -> tuple[str, bytes] | None:
        """First frame for a video; a missing image just means no seed."""
        if scene.generated_image_id is None:
            return None
        try:
            record = await self.db.images.get(scene.generated_image_id)
        except StoreError:
            logger.warning(
                "Seed image %d unreadable, generating video without it",
                scene.generated_image_id,
            )
            return None
        if record is None or not record.data:
            return None
        return record.mime_type, record.data

    async def _call(self, fn: Callable[..., bytes], *args: object) -> bytes:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            raise GenerationError(str(e)) from e


def _attach(
    document: ScriptDocument,
    kind: AssetKind,
    locator: SceneLocator,
    asset_id: int,
) -> ScriptDocument:
    committed = document.clone()
    scene = committed.scene_at(locator)
    if scene is None:
        msg = f"Scene {locator} no longer exists"
        raise StoreError(msg)
    scene.set_asset_id(kind, asset_id)
    scene.set_generating(kind, False)
    return committed
