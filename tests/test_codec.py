import asyncio
import io
import json
import zipfile
from datetime import date

import pytest

from cinegenie.codec import (
    SCRIPT_ENTRY,
    bundle_filename,
    export_bundle,
    export_filename,
    export_plain,
    import_bundle,
    import_plain,
    parse_import,
)
from cinegenie.errors import ScriptImportError
from cinegenie.models import AssetKind
from cinegenie.store import Database
from conftest import make_script


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "source")


@pytest.fixture
def other_db(tmp_path):
    return Database(tmp_path / "target")


def _strip(record: dict) -> dict:
    """Drop identity and asset references, which are not portable."""
    record = json.loads(json.dumps(record))
    record.pop("id", None)
    for act in record["acts"]:
        for scene in act["scenes"]:
            scene.pop("generatedImageId", None)
            scene.pop("generatedVideoId", None)
    return record


def test_plain_round_trip(db, other_db):
    async def scenario():
        first_id = await db.scripts.add(make_script("First", acts=2, scenes=2))
        await db.scripts.add(make_script("Second"))
        first = await db.scripts.get(first_id)
        first.acts[1].scenes[0].generated_video_id = 12
        await db.scripts.update(first)

        text = await export_plain(db)
        await import_plain(other_db, text)
        return await db.scripts.list_all(), await other_db.scripts.list_all(), text

    originals, imported, text = asyncio.run(scenario())
    assert [_strip(d.to_record()) for d in imported] == [
        _strip(d.to_record()) for d in originals
    ]
    # pretty-printed array
    assert text.startswith("[\n  {")


def test_export_excludes_transient_flags(db):
    script = make_script()
    script.acts[0].scenes[0].is_generating_video = True
    asyncio.run(db.scripts.add(script))
    text = asyncio.run(export_plain(db))
    assert "isGenerating" not in text


def test_import_single_object_strips_id(db):
    asyncio.run(db.scripts.add(make_script("Existing")))
    record = make_script("Incoming").to_record()
    record["id"] = 1

    ids = asyncio.run(import_plain(db, json.dumps(record)))

    assert ids == [2]
    titles = [s.title for s in asyncio.run(db.scripts.list_all())]
    assert titles == ["Existing", "Incoming"]


def test_import_empty_array_is_noop(db):
    assert asyncio.run(import_plain(db, "[]")) == []
    assert asyncio.run(db.scripts.count()) == 0


def test_import_batch_is_atomic(db):
    asyncio.run(db.scripts.add(make_script("Existing")))
    batch = [
        make_script("A").to_record(),
        {"title": "No acts here"},
        make_script("C").to_record(),
    ]

    with pytest.raises(ScriptImportError) as excinfo:
        asyncio.run(import_plain(db, json.dumps(batch)))

    assert excinfo.value.reason == ScriptImportError.INVALID_SHAPE
    assert "valid script format" in str(excinfo.value)
    assert asyncio.run(db.scripts.count()) == 1


@pytest.mark.parametrize(
    "candidate",
    [
        {"title": "Empty", "acts": []},
        {"acts": [{"act_number": 1}]},
        ["not", "a", "script"],
        {"title": "Bad numbers", "acts": [{"act_number": 0}]},
    ],
)
def test_invalid_shapes_rejected(candidate):
    with pytest.raises(ScriptImportError) as excinfo:
        parse_import(json.dumps(candidate))
    assert excinfo.value.reason == ScriptImportError.INVALID_SHAPE


@pytest.mark.parametrize("raw", [b"\xff\xfe\x00garbage", "{not json"])
def test_unreadable_input(raw):
    with pytest.raises(ScriptImportError) as excinfo:
        parse_import(raw)
    assert excinfo.value.reason == ScriptImportError.UNREADABLE


def test_imported_flags_reset():
    record = make_script().to_record()
    record["acts"][0]["scenes"][0]["isGeneratingImage"] = True
    (document,) = parse_import(json.dumps(record))
    # the flag is accepted on input but never written back out
    assert "isGeneratingImage" not in document.to_record()["acts"][0]["scenes"][0]


def _bundled(db):
    async def scenario():
        script_id = await db.scripts.add(make_script("Noir: The Alley!", acts=2, scenes=1))
        document = await db.scripts.get(script_id)
        image_id = await db.images.add(b"PNG", script_id)
        video_id = await db.videos.add(b"MP4", script_id)
        document.acts[0].scenes[0].generated_image_id = image_id
        document.acts[0].scenes[0].generated_video_id = video_id
        document.acts[1].scenes[0].generated_image_id = 999
        await db.scripts.update(document)
        return document, await export_bundle(db, document)

    return asyncio.run(scenario())


def test_bundle_export_layout(db):
    document, data = _bundled(db)

    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = sorted(archive.namelist())
        assert names == ["scene_1_1.mp4", "scene_1_1.png", SCRIPT_ENTRY]
        assert archive.read("scene_1_1.png") == b"PNG"
        script = json.loads(archive.read(SCRIPT_ENTRY))
    assert script["title"] == "Noir: The Alley!"
    assert bundle_filename(document) == "noir__the_alley_.zip"


def test_bundle_round_trip_is_lossless(db, other_db):
    _, data = _bundled(db)

    script_id = asyncio.run(import_bundle(other_db, data))

    imported = asyncio.run(other_db.scripts.get(script_id))
    scene = imported.acts[0].scenes[0]
    image = asyncio.run(other_db.images.get(scene.generated_image_id))
    video = asyncio.run(other_db.videos.get(scene.generated_video_id))
    assert (image.data, image.script_id) == (b"PNG", script_id)
    assert (video.data, video.mime_type) == (b"MP4", AssetKind.VIDEO.mime_type)
    # the dangling reference in the source is not carried over
    assert imported.acts[1].scenes[0].generated_image_id is None


def test_bundle_import_rejects_garbage(other_db):
    with pytest.raises(ScriptImportError) as excinfo:
        asyncio.run(import_bundle(other_db, b"not a zip"))
    assert excinfo.value.reason == ScriptImportError.UNREADABLE
    assert asyncio.run(other_db.scripts.count()) == 0


def test_filenames():
    assert export_filename(date(2026, 1, 31)) == "cinegenie-scripts-2026-01-31.json"
    assert bundle_filename(make_script("")) == "script.zip"
