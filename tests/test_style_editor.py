import asyncio
import json

import httpx
import pytest

from booth_errors import EditFailed
from conftest import jpeg_bytes
from spaces_storage import InlineImageHost
from style_editor import StyleEditor, decode_data_uri, extract_image_url, fan_out_edits


def _editor(settings, handler):
    return StyleEditor(settings, InlineImageHost(), transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"images": [{"url": "https://cdn.test/a.jpg"}, {"url": "https://cdn.test/b.jpg"}]}, "https://cdn.test/a.jpg"),
        ({"images": ["https://cdn.test/plain.jpg"]}, "https://cdn.test/plain.jpg"),
        ({"data": {"images": [{"url": "https://cdn.test/wrapped.jpg"}]}}, "https://cdn.test/wrapped.jpg"),
        ({"images": []}, None),
        ({"images": None}, None),
        ({"images": [{"content_type": "image/jpeg"}]}, None),
        ({}, None),
        ([], None),
    ],
)
def test_extract_image_url(body, expected):
    assert extract_image_url(body) == expected


@pytest.mark.anyio
async def test_edit_sends_prompt_and_source(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"images": [{"url": "https://cdn.test/out.jpg"}]})

    result = await _editor(settings, handler).edit("https://cdn.test/in.jpg", "make it retro")

    assert result.image_ref == "https://cdn.test/out.jpg"
    assert result.prompt == "make it retro"
    assert seen["url"] == "https://edit.test/fal-ai/nano-banana/edit"
    assert seen["auth"] == "Key test-key"
    assert seen["payload"]["image_urls"] == ["https://cdn.test/in.jpg"]
    assert seen["payload"]["num_images"] == 1


@pytest.mark.anyio
async def test_empty_image_list_is_a_failure(settings):
    editor = _editor(settings, lambda request: httpx.Response(200, json={"images": []}))

    with pytest.raises(EditFailed) as excinfo:
        await editor.edit("https://cdn.test/in.jpg", "remove a person")

    assert excinfo.value.prompt == "remove a person"
    assert excinfo.value.detail == {"images": []}


@pytest.mark.anyio
async def test_http_error_carries_status_and_body(settings):
    body = {"detail": [{"loc": ["body", "image_urls"], "msg": "invalid url"}]}
    editor = _editor(settings, lambda request: httpx.Response(422, json=body))

    with pytest.raises(EditFailed) as excinfo:
        await editor.edit("https://cdn.test/in.jpg", "past")

    assert excinfo.value.status == 422
    assert excinfo.value.detail == body
    assert excinfo.value.to_detail("job-1")["status"] == 422


@pytest.mark.anyio
async def test_transport_error_becomes_edit_failed(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(EditFailed):
        await _editor(settings, handler).edit("https://cdn.test/in.jpg", "past")


@pytest.mark.anyio
async def test_empty_prompt_is_rejected_without_a_call(settings):
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(EditFailed):
        await _editor(settings, handler).edit("https://cdn.test/in.jpg", "   ")


@pytest.mark.anyio
async def test_upload_and_fetch_round_trip_inline(settings):
    editor = _editor(settings, lambda request: httpx.Response(404))
    data = jpeg_bytes()

    ref = await editor.upload(data, "photo.jpg")

    assert ref.startswith("data:image/jpeg;base64,")
    assert decode_data_uri(ref) == data
    assert await editor.fetch(ref) == data


@pytest.mark.anyio
async def test_fetch_failure_is_edit_failed(settings):
    editor = _editor(settings, lambda request: httpx.Response(404))

    with pytest.raises(EditFailed):
        await editor.fetch("https://cdn.test/gone.jpg")


@pytest.mark.anyio
async def test_fan_out_pairs_results_by_label(settings):
    async def handler(request: httpx.Request) -> httpx.Response:
        prompt = json.loads(request.content)["prompt"]
        # the past edit finishes last
        await asyncio.sleep(0.05 if prompt == "past" else 0)
        return httpx.Response(200, json={"images": [f"https://cdn.test/{prompt}.jpg"]})

    pair = await fan_out_edits(_editor(settings, handler), "https://cdn.test/in.jpg", "past", "future")

    assert pair.past.image_ref == "https://cdn.test/past.jpg"
    assert pair.future.image_ref == "https://cdn.test/future.jpg"


@pytest.mark.anyio
async def test_fan_out_runs_edits_concurrently(settings):
    in_flight = {"now": 0, "max": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        in_flight["now"] += 1
        in_flight["max"] = max(in_flight["max"], in_flight["now"])
        await asyncio.sleep(0.02)
        in_flight["now"] -= 1
        return httpx.Response(200, json={"images": ["https://cdn.test/out.jpg"]})

    await fan_out_edits(_editor(settings, handler), "https://cdn.test/in.jpg", "past", "future")

    assert in_flight["max"] == 2


@pytest.mark.anyio
@pytest.mark.parametrize("failing", ["past", "future"])
async def test_fan_out_fails_when_either_edit_fails(settings, failing):
    def handler(request: httpx.Request) -> httpx.Response:
        prompt = json.loads(request.content)["prompt"]
        if prompt == failing:
            return httpx.Response(200, json={"images": []})
        return httpx.Response(200, json={"images": ["https://cdn.test/ok.jpg"]})

    with pytest.raises(EditFailed) as excinfo:
        await fan_out_edits(_editor(settings, handler), "https://cdn.test/in.jpg", "past", "future")

    assert excinfo.value.prompt == failing
