"""Active-document holder.

The active document is treated as an immutable value: every change publishes
a new deep copy, and observers only ever see whole snapshots.
"""

import logging
import re
from collections.abc import Callable
from typing import Any

from .errors import StoreError
from .models import SceneLocator, ScriptDocument
from .store import Database

logger = logging.getLogger(__name__)

Observer = Callable[[ScriptDocument | None], None]

_PATH_PART = re.compile(r"^(?P<name>[a-z_]+)(?:\[(?P<index>\d+)\])?$")
_READ_ONLY_FIELDS = {"id", "acts", "scenes", "setting"}


class ScriptSession:
    """Holds the saved script list, the active script and the selected scene."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self.scripts: list[ScriptDocument] = []
        self._active: ScriptDocument | None = None
        self.active_scene: SceneLocator | None = None
        self.error: str | None = None
        self._observers: list[Observer] = []

    @property
    def active(self) -> ScriptDocument | None:
        return self._active

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, document: ScriptDocument | None) -> None:
        """Swap the active document for `document` in a single assignment."""
        self._active = document
        if document is None:
            self.active_scene = None
        elif self.active_scene and document.scene_at(self.active_scene) is None:
            self.active_scene = None
        for observer in list(self._observers):
            observer(document)

    def set_error(self, message: str | None) -> None:
        if message:
            logger.warning("%s", message)
        self.error = message

    async def load(self) -> list[ScriptDocument]:
        """(Re)load the saved script list; the active script is left as is."""
        self.scripts = await self.db.scripts.list_all()
        return self.scripts

    async def reload(self) -> None:
        """Full state reload, as required after an import."""
        await self.load()
        if self._active is not None and self._active.id is not None:
            self.publish(await self.db.scripts.get(self._active.id))

    async def select(self, script_id: int) -> ScriptDocument | None:
        document = await self.db.scripts.get(script_id)
        if document is None:
            self.set_error(f"Script {script_id} not found.")
            return None
        self.active_scene = None
        self.publish(document)
        locators = document.locators()
        self.active_scene = locators[0] if locators else None
        return document

    def new(self) -> None:
        """Forget the active script so a new one can be created."""
        self.publish(None)
        self.error = None

    async def add(self, document: ScriptDocument) -> ScriptDocument:
        """Persist a brand new script and make it active."""
        script_id = await self.db.scripts.add(document)
        saved = document.model_copy(update={"id": script_id}, deep=True)
        self.scripts.append(saved)
        self.active_scene = None
        self.publish(saved)
        locators = saved.locators()
        self.active_scene = locators[0] if locators else None
        return saved

    async def save_active(self, document: ScriptDocument) -> None:
        """Persist `document` and publish it as the active script."""
        await self.db.scripts.update(document)
        self.remember(document)
        self.publish(document)

    def remember(self, document: ScriptDocument) -> None:
        for i, listed in enumerate(self.scripts):
            if listed.id == document.id:
                self.scripts[i] = document
                return
        self.scripts.append(document)

    def forget(self, script_id: int) -> None:
        """Drop a deleted script from the list and from the active slot."""
        self.scripts = [s for s in self.scripts if s.id != script_id]
        if self._active is not None and self._active.id == script_id:
            self.publish(None)

    async def update_field(self, path: str, value: Any) -> ScriptDocument:
        """Set a text field addressed by a path such as `acts[0].scenes[1].action`.

        Raises:
            ValueError: If there is no active script or the path is invalid.
            StoreError: If the script cannot be saved.

        """
        if self._active is None:
            msg = "No active script"
            raise ValueError(msg)
        document = self._active.clone()
        target: Any = document
        parts = path.split(".")
        for part in parts[:-1]:
            target = _step(target, part)
        name = parts[-1]
        if name in _READ_ONLY_FIELDS or name not in type(target).model_fields:
            msg = f"Cannot edit field '{path}'"
            raise ValueError(msg)
        setattr(target, name, value)
        document = ScriptDocument.model_validate(document.model_dump())
        _copy_flags(self._active, document)
        try:
            await self.save_active(document)
        except StoreError:
            logger.exception("Could not save edit to %s", path)
            raise
        return document

    def scene_position(self) -> tuple[int, int]:
        """1-based position of the selected scene and the total scene count."""
        if self._active is None:
            return 0, 0
        locators = self._active.locators()
        if self.active_scene not in locators:
            return 0, len(locators)
        return locators.index(self.active_scene) + 1, len(locators)

    def next_scene(self) -> SceneLocator | None:
        return self._move(1)

    def previous_scene(self) -> SceneLocator | None:
        return self._move(-1)

    def _move(self, step: int) -> SceneLocator | None:
        position, total = self.scene_position()
        if position == 0:
            return self.active_scene
        index = position - 1 + step
        if 0 <= index < total:
            self.active_scene = self._active.locators()[index]
        return self.active_scene


def _step(target: Any, part: str) -> Any:
    match = _PATH_PART.match(part)
    if match is None or match["name"] not in type(target).model_fields:
        msg = f"Invalid path segment '{part}'"
        raise ValueError(msg)
    value = getattr(target, match["name"])
    if match["index"] is not None:
        index = int(match["index"])
        if not 0 <= index < len(value):
            msg = f"Index out of range in '{part}'"
            raise ValueError(msg)
        value = value[index]
    return value


def _copy_flags(source: ScriptDocument, target: ScriptDocument) -> None:
    """Carry in-flight generation flags over a re-validated copy."""
    for locator in source.locators():
        old = source.scene_at(locator)
        new = target.scene_at(locator)
        if new is not None:
            new.is_generating_image = old.is_generating_image
            new.is_generating_video = old.is_generating_video


def append_suggestion(logline: str, suggestion: str) -> str:
    """Add a suggested plot point to a logline as a bullet."""
    return f"{logline}\n\n- {suggestion}".strip()
