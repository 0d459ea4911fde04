"""Local keyed stores for script documents and generated assets.

Every store is a directory of records keyed by an integer id taken from a
per-store sequence, so ids are never reused after a delete. The stores know
nothing about each other; references between them are kept consistent by the
orchestrator and the maintainer.
"""

import asyncio
import json
import logging
import os
import shutil
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from .errors import StoreError
from .models import AssetKind, AssetRecord, ScriptDocument

logger = logging.getLogger(__name__)

SEQUENCE_FILE = "_sequence"


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("wb") as f:
        f.write(data)
    os.replace(tmp, path)


class _KeyedDirectory:
    """Directory-backed id allocation shared by both store kinds."""

    suffix = ".json"

    def __init__(self, root: Path) -> None:
        self.root = root

    def _ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, record_id: int) -> Path:
        return self.root / f"{record_id}{self.suffix}"

    def _ids(self) -> list[int]:
        if not self.root.exists():
            return []
        ids = []
        for p in self.root.glob(f"*{self.suffix}"):
            if p.stem.isdigit():
                ids.append(int(p.stem))
        return sorted(ids)

    def _next_id(self) -> int:
        self._ensure()
        seq_path = self.root / SEQUENCE_FILE
        next_id = 1
        if seq_path.exists():
            next_id = int(seq_path.read_text(encoding="utf-8").strip() or 1)
        ids = self._ids()
        if ids:
            next_id = max(next_id, ids[-1] + 1)
        _write_atomic(seq_path, str(next_id + 1).encode("utf-8"))
        return next_id

    def _clear(self) -> None:
        """Remove every record; the sequence survives so ids stay unique."""
        if not self.root.exists():
            return
        for p in self.root.iterdir():
            if p.name == SEQUENCE_FILE:
                continue
            if p.is_dir():
                shutil.rmtree(p)
            else:
                p.unlink()


class DocumentStore(_KeyedDirectory):
    """Persisted store of script documents, one JSON file per document."""

    def _read(self, doc_id: int) -> ScriptDocument | None:
        path = self._path(doc_id)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return ScriptDocument.model_validate_json(f.read())

    def _write(self, document: ScriptDocument) -> None:
        payload = json.dumps(document.to_record(), ensure_ascii=False, indent=2)
        _write_atomic(self._path(document.id), payload.encode("utf-8"))

    def _add(self, document: ScriptDocument) -> int:
        doc_id = self._next_id()
        self._write(document.model_copy(update={"id": doc_id}, deep=True))
        logger.info("Added script %d (%s)", doc_id, document.title)
        return doc_id

    async def get(self, doc_id: int) -> ScriptDocument | None:
        try:
            return await asyncio.to_thread(self._read, doc_id)
        except (OSError, ValidationError) as e:
            msg = f"Failed to read script {doc_id}: {e}"
            raise StoreError(msg) from e

    async def list_all(self) -> list[ScriptDocument]:
        def _list() -> list[ScriptDocument]:
            return [d for d in (self._read(i) for i in self._ids()) if d is not None]

        try:
            return await asyncio.to_thread(_list)
        except (OSError, ValidationError) as e:
            msg = f"Failed to list scripts: {e}"
            raise StoreError(msg) from e

    async def count(self) -> int:
        return len(await asyncio.to_thread(self._ids))

    async def add(self, document: ScriptDocument) -> int:
        """Insert `document` as a new record and return its id.

        Any id already on the document is ignored; the caller's object is not
        modified.
        """
        try:
            return await asyncio.to_thread(self._add, document)
        except (OSError, ValueError) as e:
            msg = f"Failed to add script: {e}"
            raise StoreError(msg) from e

    async def update(self, document: ScriptDocument) -> None:
        """Replace the stored document with the same id."""
        if document.id is None:
            msg = "Cannot update a script that was never saved"
            raise StoreError(msg)

        def _update() -> None:
            if not self._path(document.id).exists():
                msg = f"Script {document.id} does not exist"
                raise StoreError(msg)
            self._write(document)

        try:
            await asyncio.to_thread(_update)
        except OSError as e:
            msg = f"Failed to update script {document.id}: {e}"
            raise StoreError(msg) from e
        logger.debug("Updated script %d", document.id)

    async def delete(self, doc_id: int) -> None:
        try:
            await asyncio.to_thread(self._path(doc_id).unlink, missing_ok=True)
        except OSError as e:
            msg = f"Failed to delete script {doc_id}: {e}"
            raise StoreError(msg) from e
        logger.info("Deleted script %d", doc_id)

    async def bulk_add(
        self,
        documents: Iterable[ScriptDocument | dict],
    ) -> list[int]:
        """Insert every document as a new record, or none of them.

        All candidates are validated before the first insertion begins.
        """
        try:
            validated = [
                d if isinstance(d, ScriptDocument) else ScriptDocument.model_validate(d)
                for d in documents
            ]
        except ValidationError as e:
            msg = f"Invalid script in batch: {e}"
            raise StoreError(msg) from e

        def _bulk() -> list[int]:
            return [self._add(d) for d in validated]

        try:
            return await asyncio.to_thread(_bulk)
        except OSError as e:
            msg = f"Failed to add scripts: {e}"
            raise StoreError(msg) from e

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)


class AssetStore(_KeyedDirectory):
    """Persisted store of generated media of one kind.

    Each record is a `<id>.json` metadata file next to a `<id>.bin` payload.
    Records are immutable: there is no update operation.
    """

    def __init__(self, root: Path, kind: AssetKind) -> None:
        super().__init__(root)
        self.kind = kind

    def _blob_path(self, asset_id: int) -> Path:
        return self.root / f"{asset_id}.bin"

    def _read(self, asset_id: int) -> AssetRecord | None:
        meta_path = self._path(asset_id)
        blob_path = self._blob_path(asset_id)
        if not meta_path.exists() or not blob_path.exists():
            return None
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        return AssetRecord(
            id=asset_id,
            script_id=meta["scriptId"],
            kind=self.kind,
            mime_type=meta.get("mimeType", self.kind.mime_type),
            data=blob_path.read_bytes(),
        )

    def _add(self, data: bytes, script_id: int, mime_type: str) -> int:
        asset_id = self._next_id()
        _write_atomic(self._blob_path(asset_id), data)
        meta = {"id": asset_id, "scriptId": script_id, "mimeType": mime_type}
        _write_atomic(self._path(asset_id), json.dumps(meta).encode("utf-8"))
        return asset_id

    def _delete(self, asset_id: int) -> None:
        # metadata first: a record without it is already invisible
        self._path(asset_id).unlink(missing_ok=True)
        self._blob_path(asset_id).unlink(missing_ok=True)

    async def add(
        self,
        data: bytes,
        script_id: int,
        mime_type: str | None = None,
    ) -> int:
        try:
            asset_id = await asyncio.to_thread(
                self._add,
                data,
                script_id,
                mime_type or self.kind.mime_type,
            )
        except OSError as e:
            msg = f"Failed to store {self.kind.value}: {e}"
            raise StoreError(msg) from e
        logger.info(
            "Stored %s %d for script %d (%d bytes)",
            self.kind.value,
            asset_id,
            script_id,
            len(data),
        )
        return asset_id

    async def get(self, asset_id: int) -> AssetRecord | None:
        try:
            return await asyncio.to_thread(self._read, asset_id)
        except (OSError, ValueError, KeyError) as e:
            msg = f"Failed to read {self.kind.value} {asset_id}: {e}"
            raise StoreError(msg) from e

    async def delete(self, asset_id: int) -> None:
        """Delete a record; deleting an absent id is not an error."""
        try:
            await asyncio.to_thread(self._delete, asset_id)
        except OSError as e:
            msg = f"Failed to delete {self.kind.value} {asset_id}: {e}"
            raise StoreError(msg) from e
        logger.info("Deleted %s %d", self.kind.value, asset_id)

    async def list_all(self) -> list[AssetRecord]:
        def _list() -> list[AssetRecord]:
            return [r for r in (self._read(i) for i in self._ids()) if r is not None]

        try:
            return await asyncio.to_thread(_list)
        except (OSError, ValueError, KeyError) as e:
            msg = f"Failed to list {self.kind.value} assets: {e}"
            raise StoreError(msg) from e

    async def list_for_script(self, script_id: int) -> list[AssetRecord]:
        return [r for r in await self.list_all() if r.script_id == script_id]

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)


class Database:
    """The three independent stores under one data directory."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.scripts = DocumentStore(data_dir / "scripts")
        self.images = AssetStore(data_dir / "images", AssetKind.IMAGE)
        self.videos = AssetStore(data_dir / "videos", AssetKind.VIDEO)

    def assets(self, kind: AssetKind) -> AssetStore:
        return self.images if kind is AssetKind.IMAGE else self.videos

    async def list_assets(self) -> list[AssetRecord]:
        """Every stored image and video, newest first."""
        records = await self.images.list_all() + await self.videos.list_all()
        return sorted(records, key=lambda r: r.id, reverse=True)

    async def clear(self) -> None:
        await self.scripts.clear()
        await self.images.clear()
        await self.videos.clear()
        logger.info("Cleared all data in %s", self.data_dir)
