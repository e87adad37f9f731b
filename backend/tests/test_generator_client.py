import base64
import hashlib
import json

import httpx
import pytest

from portrait_batch.core.cloudinary_client import ArtifactUploadError, CloudinaryClient, sign_params
from portrait_batch.core.generator_client import (
    GeminiVariationClient,
    GenerationError,
    GenerationTimeoutError,
    SourceImage,
    VariationRequest,
    build_variation_prompt,
    fetch_source_image,
)
from portrait_batch.models.variation import BreedCoatTarget, FormatTarget, OutfitTarget


def _request(target=None):
    return VariationRequest(
        source_image=SourceImage(data=b"source-bytes", mime_type="image/jpeg"),
        source_prompt="A beagle in a sailor hat",
        target=target or OutfitTarget(outfit_id="tuxedo"),
        source_attributes={"breed_id": "beagle", "coat_id": "tricolor"},
        labels={"beagle": "Beagle", "tricolor": "Tricolor", "tuxedo": "Tuxedo", "husky": "Husky"},
    )


def _image_response(data=b"png-bytes"):
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "Here is your image"},
                        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(data).decode()}},
                    ]
                }
            }
        ]
    }


def test_prompt_per_target_kind():
    breed = build_variation_prompt(_request(BreedCoatTarget(breed_id="husky", coat_id="grey")))
    outfit = build_variation_prompt(_request(OutfitTarget(outfit_id="tuxedo")))
    fmt = build_variation_prompt(_request(FormatTarget(format_id="square")))

    assert "change the breed to a husky with grey fur" in breed
    assert "Beagle with Tricolor fur" in breed
    assert "change the clothing/outfit to tuxedo" in outfit
    assert "for the square format" in fmt
    assert fmt.endswith("Original description: A beagle in a sailor hat")


def test_generate_sends_inline_image_and_returns_bytes():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_image_response())

    client = GeminiVariationClient(
        api_key="test-key",
        base_url="https://gemini.example.test/v1beta",
        model="image-model",
        transport=httpx.MockTransport(handler),
    )

    result = client.generate(_request())

    assert seen["url"] == "https://gemini.example.test/v1beta/models/image-model:generateContent"
    assert seen["key"] == "test-key"
    inline = seen["body"]["contents"][0]["parts"][1]["inline_data"]
    assert inline["mime_type"] == "image/jpeg"
    assert base64.b64decode(inline["data"]) == b"source-bytes"
    assert result.image_data == b"png-bytes"
    assert result.mime_type == "image/png"
    assert result.metadata["variation_type"] == "outfit"
    assert result.metadata["display_name"] == "Tuxedo outfit"


def test_generate_without_image_part_fails():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "no"}]}}]})
    )
    client = GeminiVariationClient(api_key="k", transport=transport)

    with pytest.raises(GenerationError, match="no image"):
        client.generate(_request())


@pytest.mark.parametrize(
    "body, message",
    [
        (["not", "an", "object"], "unexpected list body"),
        ({"candidates": [{"content": {"parts": [{"inlineData": {"data": 123}}]}}]}, "undecodable"),
        ({"candidates": [{"content": {"parts": [{"inlineData": "cG5n"}]}}]}, "malformed"),
        ({"candidates": "oops"}, "malformed"),
        ({"candidates": [{"content": {"parts": [{"inlineData": {"data": "not base64!"}}]}}]}, "undecodable"),
    ],
)
def test_generate_rejects_malformed_bodies(body, message):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
    client = GeminiVariationClient(api_key="k", transport=transport)

    with pytest.raises(GenerationError, match=message):
        client.generate(_request())


def test_generate_maps_http_errors():
    transport = httpx.MockTransport(lambda request: httpx.Response(429, text="quota exceeded"))
    client = GeminiVariationClient(api_key="k", transport=transport)

    with pytest.raises(GenerationError, match="429"):
        client.generate(_request())


def test_generate_maps_transport_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = GeminiVariationClient(api_key="k", timeout=1, transport=httpx.MockTransport(handler))

    with pytest.raises(GenerationTimeoutError):
        client.generate(_request())


def test_generate_requires_api_key(monkeypatch):
    from portrait_batch.core.config import settings

    monkeypatch.setattr(settings, "GEMINI_API_KEY", None)

    with pytest.raises(GenerationError, match="not configured"):
        GeminiVariationClient().generate(_request())


def test_fetch_source_image():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, content=b"jpeg", headers={"content-type": "image/jpeg; q=1"})
    )

    image = fetch_source_image("https://images.example.test/a.jpg", transport=transport)

    assert image.data == b"jpeg"
    assert image.mime_type == "image/jpeg"


def test_fetch_source_image_raises_on_missing_file():
    transport = httpx.MockTransport(lambda request: httpx.Response(404))

    with pytest.raises(httpx.HTTPStatusError):
        fetch_source_image("https://images.example.test/missing.jpg", transport=transport)


def test_sign_params_matches_cloudinary_scheme():
    params = {"timestamp": "1700000000", "public_id": "sample", "tags": ""}

    expected = hashlib.sha1(b"public_id=sample&timestamp=1700000000secret").hexdigest()

    assert sign_params(params, "secret") == expected


def test_upload_image_posts_signed_form():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(
            200,
            json={"public_id": "batch-abc", "secure_url": "https://cdn.example.test/batch-abc.png", "bytes": 9, "version": 3},
        )

    client = CloudinaryClient(
        cloud_name="demo",
        api_key="key",
        api_secret="secret",
        upload_url="https://upload.example.test/v1_1",
        transport=httpx.MockTransport(handler),
    )

    result = client.upload_image(b"png-bytes", "batch-abc.png", tags=["batch-generated"])

    assert seen["url"] == "https://upload.example.test/v1_1/demo/image/upload"
    assert b'name="signature"' in seen["body"]
    assert b"png-bytes" in seen["body"]
    assert result.public_id == "batch-abc"
    assert result.version == "3"


def test_upload_image_maps_errors():
    client = CloudinaryClient(
        cloud_name="demo",
        api_key="key",
        api_secret="secret",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="oops")),
    )

    with pytest.raises(ArtifactUploadError, match="500"):
        client.upload_image(b"x", "x.png")


def test_upload_requires_credentials():
    client = CloudinaryClient(cloud_name="", api_key="", api_secret="")

    with pytest.raises(ArtifactUploadError, match="not configured"):
        client.upload_image(b"x", "x.png")
