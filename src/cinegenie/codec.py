"""Plain JSON export/import and ZIP bundles of scripts with their media."""

import io
import json
import logging
import re
import zipfile
from datetime import date

from pydantic import ValidationError

from .errors import ScriptImportError, StoreError
from .models import AssetKind, ScriptDocument
from .store import Database

logger = logging.getLogger(__name__)

SCRIPT_ENTRY = "script.json"
_BUNDLE_ENTRY = re.compile(r"^scene_(?P<act>\d+)_(?P<scene>\d+)(?P<ext>\.png|\.mp4)$")
_EXTENSION_KINDS = {kind.extension: kind for kind in AssetKind}


def export_filename(today: date | None = None) -> str:
    today = today or date.today()
    return f"cinegenie-scripts-{today.isoformat()}.json"


def bundle_filename(document: ScriptDocument) -> str:
    safe_title = re.sub(r"[^a-z0-9]", "_", document.title, flags=re.IGNORECASE).lower()
    return f"{safe_title or 'script'}.zip"


def bundle_entry_name(act_number: int, scene_number: int, kind: AssetKind) -> str:
    return f"scene_{act_number}_{scene_number}{kind.extension}"


def dumps_documents(documents: list[ScriptDocument]) -> str:
    """Serialize scripts as a pretty-printed JSON array, payloads excluded."""
    return json.dumps(
        [d.to_record() for d in documents],
        ensure_ascii=False,
        indent=2,
    )


async def export_plain(db: Database) -> str:
    """Every stored script as text.

    Asset references are kept but are meaningless in another data directory.
    """
    documents = await db.scripts.list_all()
    logger.info("Exporting %d script(s)", len(documents))
    return dumps_documents(documents)


async def export_bundle(db: Database, document: ScriptDocument) -> bytes:
    """ZIP archive of one script and the media attached to its scenes."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(
            SCRIPT_ENTRY,
            json.dumps(document.to_record(), ensure_ascii=False, indent=2),
        )
        for act in document.acts:
            for scene in act.scenes:
                for kind in AssetKind:
                    asset_id = scene.asset_id(kind)
                    if asset_id is None:
                        continue
                    record = await db.assets(kind).get(asset_id)
                    if record is None or not record.data:
                        logger.warning(
                            "Skipping missing %s %d in act %d scene %d",
                            kind.value,
                            asset_id,
                            act.act_number,
                            scene.scene_number,
                        )
                        continue
                    archive.writestr(
                        bundle_entry_name(act.act_number, scene.scene_number, kind),
                        record.data,
                    )
    return buffer.getvalue()


def _is_script_shaped(candidate: object) -> bool:
    return (
        isinstance(candidate, dict)
        and "title" in candidate
        and isinstance(candidate.get("acts"), list)
        and len(candidate["acts"]) > 0
    )


def parse_import(raw: bytes | str) -> list[ScriptDocument]:
    """Parse and validate an import file into new, unsaved scripts.

    Accepts a single script object or an array of them. The whole batch is
    rejected if any candidate is not script-shaped.

    Raises:
        ScriptImportError: If the file cannot be read or has the wrong shape.

    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        msg = f"The file could not be read: {e}"
        raise ScriptImportError(ScriptImportError.UNREADABLE, msg) from e

    candidates = data if isinstance(data, list) else [data]
    if not all(_is_script_shaped(c) for c in candidates):
        msg = "The file does not contain a valid script format."
        raise ScriptImportError(ScriptImportError.INVALID_SHAPE, msg)

    try:
        return [
            ScriptDocument.model_validate({k: v for k, v in c.items() if k != "id"})
            for c in candidates
        ]
    except ValidationError as e:
        msg = f"The file does not contain a valid script format: {e}"
        raise ScriptImportError(ScriptImportError.INVALID_SHAPE, msg) from e


async def import_plain(db: Database, raw: bytes | str) -> list[int]:
    """Insert every script in `raw` as a new record, or none of them.

    Callers must reload their state afterwards; nothing is merged into an
    in-memory view.
    """
    documents = parse_import(raw)
    if not documents:
        return []
    ids = await db.scripts.bulk_add(documents)
    logger.info("Imported %d script(s)", len(ids))
    return ids


async def import_bundle(db: Database, raw: bytes) -> int:
    """Insert a bundled script as a new record with fresh copies of its media.

    Scene references are rewritten to the new asset ids; references whose
    payload is not in the archive are dropped.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(raw)) as archive:
            script_raw = archive.read(SCRIPT_ENTRY)
            payloads = {
                name: archive.read(name)
                for name in archive.namelist()
                if _BUNDLE_ENTRY.match(name)
            }
    except (zipfile.BadZipFile, KeyError) as e:
        msg = f"The bundle could not be read: {e}"
        raise ScriptImportError(ScriptImportError.UNREADABLE, msg) from e

    documents = parse_import(script_raw)
    if len(documents) != 1:
        msg = "A bundle must contain exactly one script."
        raise ScriptImportError(ScriptImportError.INVALID_SHAPE, msg)
    document = documents[0]
    for act in document.acts:
        for scene in act.scenes:
            for kind in AssetKind:
                scene.set_asset_id(kind, None)

    script_id = await db.scripts.add(document)
    document = document.model_copy(update={"id": script_id})
    by_number = {
        (act.act_number, scene.scene_number): scene
        for act in document.acts
        for scene in act.scenes
    }
    try:
        for name, data in sorted(payloads.items()):
            match = _BUNDLE_ENTRY.match(name)
            scene = by_number.get((int(match["act"]), int(match["scene"])))
            if scene is None:
                logger.warning("No scene for bundle entry %s", name)
                continue
            kind = _EXTENSION_KINDS[match["ext"]]
            asset_id = await db.assets(kind).add(data, script_id, kind.mime_type)
            scene.set_asset_id(kind, asset_id)
        await db.scripts.update(document)
    except StoreError:
        logger.exception("Bundle import of script %d left incomplete", script_id)
        raise
    logger.info("Imported bundle as script %d with %d asset(s)", script_id, len(payloads))
    return script_id
