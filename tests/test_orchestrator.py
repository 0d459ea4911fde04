import asyncio
import json
import threading
from unittest.mock import MagicMock, patch

import pytest

from cinegenie.errors import StoreError
from cinegenie.models import AspectRatio, AssetKind, SceneLocator
from cinegenie.orchestrator import (
    NO_API_KEY_MESSAGE,
    GenerationOrchestrator,
    default_image_prompt,
    video_prompt,
)
from cinegenie.service import GeminiService
from conftest import make_script

FIRST = SceneLocator(0, 0)


@pytest.fixture
def generator():
    mock = MagicMock()
    mock.generate_scene_image.return_value = b"P"
    mock.generate_scene_video.return_value = b"VIDEO"
    return mock


@pytest.fixture
def orchestrator(studio, generator):
    return GenerationOrchestrator(studio.session, studio.db, studio.events, generator)


@pytest.fixture
def published(studio):
    snapshots = []
    studio.session.subscribe(snapshots.append)
    return snapshots


def test_noir_alley_scenario(studio, orchestrator, generator, published):
    async def scenario():
        saved = await studio.session.add(make_script())
        published.clear()
        ok = await orchestrator.generate_scene_image(
            FIRST,
            "noir alley",
            aspect_ratio=AspectRatio("16:9"),
        )
        return saved, ok, await studio.db.images.list_all(), await studio.db.scripts.get(saved.id)

    saved, ok, records, stored = asyncio.run(scenario())

    assert ok is True
    assert len(records) == 1
    assert records[0].script_id == saved.id
    assert records[0].data == b"P"
    assert stored.acts[0].scenes[0].generated_image_id == records[0].id

    active_scene = studio.session.active.acts[0].scenes[0]
    assert active_scene.generated_image_id == records[0].id
    assert active_scene.is_generating_image is False
    assert studio.notifications == [True]

    generator.generate_scene_image.assert_called_once_with(
        "noir alley",
        AspectRatio.LANDSCAPE,
        "",
        orchestrator.image_config,
    )
    # optimistic publish first, committed publish last
    assert published[0].acts[0].scenes[0].is_generating_image is True
    assert published[-1].acts[0].scenes[0].is_generating_image is False


def test_image_uses_document_aspect_ratio_by_default(studio, orchestrator, generator):
    script = make_script()
    script.setting.default_aspect_ratio = AspectRatio.SQUARE

    async def scenario():
        await studio.session.add(script)
        await orchestrator.generate_scene_image(FIRST, "p", "blurry")

    asyncio.run(scenario())
    args = generator.generate_scene_image.call_args.args
    assert args[1] is AspectRatio.SQUARE
    assert args[2] == "blurry"


def test_rollback_on_generator_failure(studio, orchestrator, generator, published, tmp_path):
    generator.generate_scene_image.side_effect = Exception("quota exceeded")

    async def scenario():
        saved = await studio.session.add(make_script())
        before = (await studio.db.scripts.get(saved.id)).to_record()
        published.clear()
        ok = await orchestrator.generate_scene_image(FIRST, "noir alley")
        after = await studio.db.scripts.get(saved.id)
        return saved, before, ok, after, await studio.db.images.list_all()

    saved, before, ok, after, records = asyncio.run(scenario())

    assert ok is False
    assert after.to_record() == before
    assert records == []
    assert studio.notifications == []
    assert studio.session.error == "quota exceeded"
    assert [p.acts[0].scenes[0].is_generating_image for p in published] == [True, False]
    assert studio.session.active.acts[0].scenes[0].is_generating_image is False

    raw = (tmp_path / "data" / "scripts" / f"{saved.id}.json").read_text()
    assert "isGeneratingImage" not in json.loads(raw)["acts"][0]["scenes"][0]


def test_rollback_when_persisting_fails(studio, orchestrator):
    async def scenario():
        await studio.session.add(make_script())
        with patch.object(studio.db.scripts, "update", side_effect=StoreError("disk full")):
            ok = await orchestrator.generate_scene_image(FIRST, "p")
        return ok, await studio.db.images.list_all()

    ok, records = asyncio.run(scenario())
    assert ok is False
    assert records == []
    assert studio.session.error == "disk full"
    assert studio.session.active.acts[0].scenes[0].generated_image_id is None


def test_refused_without_saved_script(studio, orchestrator, generator):
    assert asyncio.run(orchestrator.generate_scene_image(FIRST, "p")) is False
    studio.session.publish(make_script())
    assert asyncio.run(orchestrator.generate_scene_image(FIRST, "p")) is False
    generator.generate_scene_image.assert_not_called()


def test_refused_for_unknown_scene(studio, orchestrator, generator):
    async def scenario():
        await studio.session.add(make_script())
        return await orchestrator.generate_scene_image(SceneLocator(3, 0), "p")

    assert asyncio.run(scenario()) is False
    generator.generate_scene_image.assert_not_called()


def test_refused_without_generator(studio, published):
    orchestrator = GenerationOrchestrator(studio.session, studio.db, studio.events, None)

    async def scenario():
        await studio.session.add(make_script())
        published.clear()
        return await orchestrator.generate_scene_video(FIRST)

    assert asyncio.run(scenario()) is False
    assert studio.session.error == NO_API_KEY_MESSAGE
    assert published == []


def test_video_seeded_with_scene_image(studio, orchestrator, generator):
    async def scenario():
        saved = await studio.session.add(make_script())
        image_id = await studio.db.images.add(b"IMG", saved.id)
        await studio.session.update_field("acts[0].scenes[0].location", "Harbor")
        seeded = studio.session.active.clone()
        seeded.acts[0].scenes[0].generated_image_id = image_id
        await studio.session.save_active(seeded)
        ok = await orchestrator.generate_scene_video(FIRST)
        return ok, await studio.db.videos.list_all()

    ok, videos = asyncio.run(scenario())
    assert ok is True
    prompt, ratio, start_image, _ = generator.generate_scene_video.call_args.args
    assert "Location: Harbor (Night)" in prompt
    assert ratio is AspectRatio.LANDSCAPE
    assert start_image == ("image/png", b"IMG")
    assert videos[0].data == b"VIDEO"
    assert studio.session.active.acts[0].scenes[0].generated_video_id == videos[0].id


def test_video_proceeds_without_missing_seed(studio, orchestrator, generator):
    async def scenario():
        await studio.session.add(make_script())
        dangling = studio.session.active.clone()
        dangling.acts[0].scenes[0].generated_image_id = 404
        await studio.session.save_active(dangling)
        return await orchestrator.generate_scene_video(FIRST)

    assert asyncio.run(scenario()) is True
    assert generator.generate_scene_video.call_args.args[2] is None


def test_video_proceeds_when_seed_unreadable(studio, orchestrator, generator):
    async def scenario():
        await studio.session.add(make_script())
        seeded = studio.session.active.clone()
        seeded.acts[0].scenes[0].generated_image_id = 1
        await studio.session.save_active(seeded)
        with patch.object(studio.db.images, "get", side_effect=StoreError("corrupt")):
            return await orchestrator.generate_scene_video(FIRST)

    assert asyncio.run(scenario()) is True
    assert generator.generate_scene_video.call_args.args[2] is None


def test_video_failure_message(studio, orchestrator, generator):
    generator.generate_scene_video.side_effect = RuntimeError("timed out")

    async def scenario():
        await studio.session.add(make_script())
        return await orchestrator.generate_scene_video(FIRST)

    assert asyncio.run(scenario()) is False
    assert studio.session.error == "Video generation failed: timed out"
    assert studio.session.active.acts[0].scenes[0].is_generating_video is False


def _blocking(generator, payload=b"LATE"):
    release = threading.Event()

    def slow(*args):
        release.wait(5)
        return payload

    generator.generate_scene_image.side_effect = slow
    return release


def test_cancel_does_not_abort_late_success(studio, orchestrator, generator):
    release = _blocking(generator)

    async def scenario():
        await studio.session.add(make_script())
        task = asyncio.create_task(orchestrator.generate_scene_image(FIRST, "p"))
        await asyncio.sleep(0)
        generating = studio.session.active.acts[0].scenes[0].is_generating_image
        orchestrator.cancel(FIRST, AssetKind.IMAGE)
        cancelled = studio.session.active.acts[0].scenes[0].is_generating_image
        release.set()
        return generating, cancelled, await task

    generating, cancelled, ok = asyncio.run(scenario())
    assert generating is True
    assert cancelled is False
    # the late completion still attaches its asset
    assert ok is True
    assert studio.session.active.acts[0].scenes[0].generated_image_id is not None


def test_commit_keeps_concurrent_edits(studio, orchestrator, generator):
    release = _blocking(generator)

    async def scenario():
        await studio.session.add(make_script())
        task = asyncio.create_task(orchestrator.generate_scene_image(FIRST, "p"))
        await asyncio.sleep(0)
        await studio.session.update_field("title", "Edited meanwhile")
        release.set()
        await task

    asyncio.run(scenario())
    active = studio.session.active
    assert active.title == "Edited meanwhile"
    assert active.acts[0].scenes[0].generated_image_id is not None


def test_rollback_discards_concurrent_edits(studio, orchestrator, generator):
    release = threading.Event()

    def failing(*args):
        release.wait(5)
        raise RuntimeError("boom")

    generator.generate_scene_image.side_effect = failing

    async def scenario():
        await studio.session.add(make_script())
        task = asyncio.create_task(orchestrator.generate_scene_image(FIRST, "p"))
        await asyncio.sleep(0)
        studio.session.publish(studio.session.active.model_copy(update={"title": "Draft"}))
        release.set()
        return await task

    assert asyncio.run(scenario()) is False
    assert studio.session.active.title == "Noir"


def test_commit_after_switching_script(studio, orchestrator, generator):
    release = _blocking(generator)

    async def scenario():
        first = await studio.session.add(make_script("First"))
        task = asyncio.create_task(orchestrator.generate_scene_image(FIRST, "p"))
        await asyncio.sleep(0)
        second = await studio.session.add(make_script("Second"))
        release.set()
        ok = await task
        return first, second, ok, await studio.db.scripts.get(first.id)

    first, second, ok, stored_first = asyncio.run(scenario())
    assert ok is True
    assert studio.session.active.id == second.id
    assert studio.session.active.acts[0].scenes[0].generated_image_id is None
    assert stored_first.acts[0].scenes[0].generated_image_id is not None


def test_prompts_describe_the_scene():
    scene = make_script().acts[0].scenes[0]
    assert video_prompt(scene) == (
        "Cinematic shot for a movie scene. Location: Alley (Night). "
        "Action: Scene 1.1 action. Visual style: High contrast. Audio style: Rain."
    )
    assert default_image_prompt(scene).startswith("Scene 1.1 action")


def test_concurrent_commits_on_different_scenes(studio, orchestrator, generator):
    both_started = threading.Barrier(2)

    def together(*args):
        both_started.wait(5)
        return b"P"

    generator.generate_scene_image.side_effect = together
    second = SceneLocator(0, 1)

    async def scenario():
        saved = await studio.session.add(make_script(scenes=2))
        results = await asyncio.gather(
            orchestrator.generate_scene_image(FIRST, "first"),
            orchestrator.generate_scene_image(second, "second"),
        )
        return saved, results, await studio.db.images.list_all(), await studio.db.scripts.get(saved.id)

    saved, results, records, stored = asyncio.run(scenario())

    assert results == [True, True]
    assert sorted(r.id for r in records) == [1, 2]
    for document in (studio.session.active, stored):
        scenes = document.acts[0].scenes
        assert {scenes[0].generated_image_id, scenes[1].generated_image_id} == {1, 2}
    assert [s.is_generating_image for s in studio.session.active.acts[0].scenes] == [False, False]
    assert studio.notifications == [True, True]
    assert asyncio.run(studio.maintainer.find_dangling_references(stored)) == []


def test_video_service_error_is_prefixed_once(studio):
    with patch("cinegenie.service.genai.Client") as client:
        operation = MagicMock()
        operation.done = True
        operation.error = {"message": "blocked"}
        client.return_value.models.generate_videos.return_value = operation
        orchestrator = GenerationOrchestrator(
            studio.session,
            studio.db,
            studio.events,
            GeminiService(api_key="key"),
        )

        async def scenario():
            await studio.session.add(make_script())
            return await orchestrator.generate_scene_video(FIRST)

        assert asyncio.run(scenario()) is False

    assert studio.session.error.startswith("Video generation failed: Operation returned")
    assert studio.session.error.count("Video generation failed") == 1
