"""Cascading deletes and reference cleanup between scripts and assets."""

import logging
from typing import NamedTuple

from .errors import StoreError
from .events import AssetEvents
from .models import AssetKind, SceneLocator, ScriptDocument
from .session import ScriptSession
from .store import Database

logger = logging.getLogger(__name__)


class DanglingReference(NamedTuple):
    """A scene reference whose record is missing or owned by another script."""

    locator: SceneLocator
    kind: AssetKind
    asset_id: int
    reason: str


def clear_references(document: ScriptDocument, kind: AssetKind, asset_id: int) -> bool:
    """Clear every scene reference to `asset_id` in place. True if any matched."""
    changed = False
    for act in document.acts:
        for scene in act.scenes:
            if scene.asset_id(kind) == asset_id:
                scene.set_asset_id(kind, None)
                changed = True
    return changed


class ConsistencyMaintainer:
    """Keeps scene references and stored assets pointing at each other."""

    def __init__(self, session: ScriptSession, db: Database, events: AssetEvents) -> None:
        self.session = session
        self.db = db
        self.events = events

    async def delete_scene_asset(self, locator: SceneLocator, kind: AssetKind) -> bool:
        """Delete the asset attached to a scene of the active script.

        Returns False without side effects when the scene has no such asset.
        """
        script = self.session.active
        if script is None:
            return False
        updated = script.clone()
        scene = updated.scene_at(locator)
        if scene is None or scene.asset_id(kind) is None:
            return False
        asset_id = scene.asset_id(kind)

        try:
            await self.db.assets(kind).delete(asset_id)
            scene.set_asset_id(kind, None)
            await self.session.save_active(updated)
        except StoreError:
            logger.exception("Could not delete scene %s %d", kind.value, asset_id)
            self.session.set_error(f"Could not delete the {kind.value} asset.")
            return False
        self.events.notify()
        return True

    async def delete_gallery_asset(
        self,
        kind: AssetKind,
        asset_id: int,
        script_id: int,
    ) -> bool:
        """Delete an asset picked from the gallery and repair its owner.

        The owning script is loaded from the store, whichever script is
        currently active.
        """
        try:
            await self.db.assets(kind).delete(asset_id)
            owner = await self.db.scripts.get(script_id)
            if owner is not None and clear_references(owner, kind, asset_id):
                await self.db.scripts.update(owner)
                self.session.remember(owner)
                logger.info("Cleared %s %d from script %d", kind.value, asset_id, script_id)
            self._repair_active(kind, asset_id)
        except StoreError:
            logger.exception("Could not delete %s %d from the gallery", kind.value, asset_id)
            self.session.set_error("Could not delete the asset from the gallery.")
            return False
        self.events.notify()
        return True

    def _repair_active(self, kind: AssetKind, asset_id: int) -> None:
        active = self.session.active
        if active is None:
            return
        repaired = active.clone()
        if clear_references(repaired, kind, asset_id):
            self.session.publish(repaired)

    async def delete_script(self, script_id: int) -> bool:
        """Delete a script together with every asset it owns."""
        try:
            for kind in AssetKind:
                store = self.db.assets(kind)
                for record in await store.list_for_script(script_id):
                    await store.delete(record.id)
            await self.db.scripts.delete(script_id)
        except StoreError:
            logger.exception("Could not delete script %d", script_id)
            self.session.set_error("Could not delete the script.")
            return False
        self.session.forget(script_id)
        self.events.notify()
        return True

    async def delete_active_script(self) -> bool:
        script = self.session.active
        if script is None or script.id is None:
            return False
        return await self.delete_script(script.id)

    async def clear_all(self) -> None:
        """Remove every script and asset."""
        await self.db.clear()
        self.session.scripts = []
        self.session.publish(None)
        self.events.notify()

    async def find_dangling_references(
        self,
        document: ScriptDocument,
    ) -> list[DanglingReference]:
        """Report references that break the script/asset invariant.

        Read only: nothing is repaired, matching the lenient read policy.
        """
        problems = []
        for locator in document.locators():
            scene = document.scene_at(locator)
            for kind in AssetKind:
                asset_id = scene.asset_id(kind)
                if asset_id is None:
                    continue
                record = await self.db.assets(kind).get(asset_id)
                if record is None:
                    problems.append(DanglingReference(locator, kind, asset_id, "missing"))
                elif record.script_id != document.id:
                    problems.append(
                        DanglingReference(locator, kind, asset_id, "foreign owner"),
                    )
        return problems
