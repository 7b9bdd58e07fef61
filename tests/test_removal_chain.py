import asyncio
import json
import tempfile
import time
from pathlib import Path

import httpx
import pytest

import removal_chain
from animation_renderer import AnimationArtifact
from booth_errors import ChainAborted, RenderFailed
from conftest import FakeEditor, jpeg_bytes, write_image
from removal_chain import run_animation_job, run_removal_chain
from spaces_storage import InlineImageHost
from style_editor import StyleEditor

PHOTO_ID = 1700000000000


@pytest.fixture
def composite(settings) -> Path:
    settings.ensure_dirs()
    return write_image(settings.photo_dir / f"{PHOTO_ID}.jpg", (600, 1800), (240, 230, 210))


@pytest.fixture
def private_tmp(tmp_path, monkeypatch) -> Path:
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


@pytest.mark.anyio
@pytest.mark.parametrize("passes", [1, 2, 3])
async def test_full_chain_produces_passes_plus_one_frames(settings, composite, passes):
    editor = FakeEditor()

    frames = await run_removal_chain(editor, composite, "remove one", passes, settings.photo_dir, PHOTO_ID, pass_delay=0)

    assert len(frames) == passes + 1
    assert [frame.ordinal for frame in frames] == list(range(passes + 1))
    assert frames[0].path == composite
    for frame in frames[1:]:
        assert frame.path.name == f"{PHOTO_ID}_remove{frame.ordinal}.jpg"
        assert frame.path.exists()


@pytest.mark.anyio
async def test_each_pass_edits_previous_output(settings, composite):
    editor = FakeEditor()

    await run_removal_chain(editor, composite, "remove one", 3, settings.photo_dir, PHOTO_ID, pass_delay=0)

    sources = [source for source, _ in editor.edit_calls]
    assert sources == [
        f"mem://{composite.name}",
        f"mem://{PHOTO_ID}_remove1.jpg",
        f"mem://{PHOTO_ID}_remove2.jpg",
    ]
    # the final output is never re-uploaded
    assert editor.uploads == [composite.name, f"{PHOTO_ID}_remove1.jpg", f"{PHOTO_ID}_remove2.jpg"]


@pytest.mark.anyio
async def test_delay_only_between_passes(settings, composite, monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(removal_chain.asyncio, "sleep", fake_sleep)

    await run_removal_chain(FakeEditor(), composite, "remove", 3, settings.photo_dir, PHOTO_ID, pass_delay=1.5)

    assert delays == [1.5, 1.5]


@pytest.mark.anyio
async def test_failed_pass_aborts_chain(settings, composite):
    editor = FakeEditor(fail_on_edit=2)

    with pytest.raises(ChainAborted) as excinfo:
        await run_removal_chain(editor, composite, "remove", 3, settings.photo_dir, PHOTO_ID, pass_delay=0)

    assert excinfo.value.pass_number == 2
    assert excinfo.value.detail["error"] == "edit_failed"
    assert len(editor.edit_calls) == 2


@pytest.mark.anyio
async def test_slow_pass_times_out_as_chain_abort(settings, composite):
    class SlowEditor(FakeEditor):
        async def edit(self, source_ref, prompt):
            await asyncio.sleep(1)
            return await super().edit(source_ref, prompt)

    with pytest.raises(ChainAborted) as excinfo:
        await run_removal_chain(
            SlowEditor(), composite, "remove", 2, settings.photo_dir, PHOTO_ID, pass_delay=0, pass_timeout=0.05
        )

    assert excinfo.value.pass_number == 1


@pytest.mark.anyio
async def test_zero_passes_is_rejected(settings, composite):
    with pytest.raises(ValueError):
        await run_removal_chain(FakeEditor(), composite, "remove", 0, settings.photo_dir, PHOTO_ID)


@pytest.mark.anyio
async def test_second_pass_empty_response_leaves_no_animation(settings, composite, private_tmp):
    """Pass 1 succeeds, pass 2 gets an empty image list from the service."""
    edit_calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, content=jpeg_bytes((600, 1800), (90, 90, 90)))
        edit_calls["n"] += 1
        payload = json.loads(request.content)
        assert payload["prompt"] == "remove one person"
        if edit_calls["n"] % 2 == 1:
            return httpx.Response(200, json={"images": [{"url": "https://cdn.test/remove1.jpg"}]})
        return httpx.Response(200, json={"images": []})

    editor = StyleEditor(settings, InlineImageHost(), transport=httpx.MockTransport(handler))

    with pytest.raises(ChainAborted):
        await run_removal_chain(editor, composite, "remove one person", 2, settings.photo_dir, PHOTO_ID, pass_delay=0)

    artifact = await run_animation_job(editor, settings, composite, PHOTO_ID, "remove one person")

    assert artifact is None
    assert not (settings.photo_dir / f"{PHOTO_ID}.gif").exists()
    assert list(settings.photo_dir.glob("*_norm*")) == []
    assert list(private_tmp.iterdir()) == []


@pytest.mark.anyio
async def test_animation_job_renders_all_frames(settings, composite, private_tmp, monkeypatch):
    captured = {}

    async def fake_render(frames, graph, output_path, *, ffmpeg_binary, timeout):
        captured["frames"] = list(frames)
        captured["graph"] = graph
        captured["work_dir"] = frames[0].path.parent
        assert all(frame.path.exists() for frame in frames)
        output_path.write_bytes(b"GIF89a")
        return AnimationArtifact(
            path=output_path,
            frame_count=len(frames),
            duration_seconds=graph.total_duration,
            render_seconds=0.1,
            size_bytes=6,
        )

    monkeypatch.setattr(removal_chain, "render_animation", fake_render)

    artifact = await run_animation_job(FakeEditor(size=(300, 900)), settings, composite, PHOTO_ID, "remove")

    assert artifact is not None
    assert artifact.path == settings.photo_dir / f"{PHOTO_ID}.gif"
    assert len(captured["frames"]) == settings.removal_passes + 1
    assert captured["graph"].frame_count == settings.removal_passes + 1
    assert len(captured["graph"].transitions) == settings.removal_passes
    assert all((frame.width, frame.height) == (600, 1800) for frame in captured["frames"])
    assert not captured["work_dir"].exists()


@pytest.mark.anyio
async def test_animation_job_logs_render_failure(settings, composite, private_tmp, monkeypatch):
    async def failing_render(frames, graph, output_path, **kwargs):
        raise RenderFailed("ffmpeg exited with code 1.", returncode=1, stderr="boom")

    monkeypatch.setattr(removal_chain, "render_animation", failing_render)

    artifact = await run_animation_job(FakeEditor(), settings, composite, PHOTO_ID, "remove")

    assert artifact is None
    assert list(private_tmp.iterdir()) == []


@pytest.mark.anyio
async def test_normalizing_runs_off_the_event_loop(settings, composite, private_tmp, monkeypatch):
    real_normalize = removal_chain.normalize_frames

    def slow_normalize(frames, work_dir):
        time.sleep(0.3)
        return real_normalize(frames, work_dir)

    async def fake_render(frames, graph, output_path, **kwargs):
        output_path.write_bytes(b"GIF89a")
        return AnimationArtifact(
            path=output_path,
            frame_count=len(frames),
            duration_seconds=graph.total_duration,
            render_seconds=0.0,
            size_bytes=6,
        )

    monkeypatch.setattr(removal_chain, "normalize_frames", slow_normalize)
    monkeypatch.setattr(removal_chain, "render_animation", fake_render)
    ticks = []

    async def ticker():
        while True:
            ticks.append(time.perf_counter())
            await asyncio.sleep(0.01)

    task = asyncio.create_task(ticker())
    try:
        artifact = await run_animation_job(FakeEditor(), settings, composite, PHOTO_ID, "remove")
    finally:
        task.cancel()

    assert artifact is not None
    assert max(b - a for a, b in zip(ticks, ticks[1:])) < 0.2
