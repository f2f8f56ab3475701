import httpx
import pytest

from engine.errors import AuthError, BackendUnavailable, EmptyInput, GenerationError, NetworkError
from engine.tts import CloudTextToSpeech, GeneratedTextToSpeech, parse_output_format

from fakes import StubBackend

PCM = b"\x01\x00\x02\x00" * 12


def make_cloud(handler, api_key="secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CloudTextToSpeech(api_key=api_key, region="westus", voice="en-US-JennyNeural", client=client)


@pytest.mark.asyncio
async def test_cloud_posts_ssml_and_returns_pcm():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = request.content.decode()
        return httpx.Response(200, content=PCM)

    speech = await make_cloud(handler).synthesize("  fish & chips <now>  ")

    assert seen["url"] == "https://westus.tts.speech.microsoft.com/cognitiveservices/v1"
    assert seen["headers"]["Ocp-Apim-Subscription-Key"] == "secret"
    assert seen["headers"]["X-Microsoft-OutputFormat"] == "raw-24khz-16bit-mono-pcm"
    assert "fish &amp; chips &lt;now&gt;" in seen["body"]
    assert "name=\"en-US-JennyNeural\"" in seen["body"]
    assert speech.audio == PCM
    assert speech.metadata.sample_rate == 24000
    assert speech.metadata.text == "fish & chips <now>"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error",
    [(401, AuthError), (403, AuthError), (429, BackendUnavailable), (503, BackendUnavailable)],
)
async def test_cloud_maps_http_status(status, error):
    cloud = make_cloud(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(error):
        await cloud.synthesize("hello")


@pytest.mark.asyncio
async def test_cloud_maps_connection_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError):
        await make_cloud(handler).synthesize("hello")


@pytest.mark.asyncio
async def test_cloud_rejects_empty_text_before_any_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=PCM)

    with pytest.raises(EmptyInput):
        await make_cloud(handler).synthesize("   ")
    assert calls == []


@pytest.mark.asyncio
async def test_cloud_without_key_is_an_auth_error():
    cloud = make_cloud(lambda request: httpx.Response(200, content=PCM), api_key="")
    with pytest.raises(AuthError):
        await cloud.synthesize("hello")


@pytest.mark.asyncio
async def test_cloud_empty_body_is_unavailable():
    cloud = make_cloud(lambda request: httpx.Response(200, content=b""))
    with pytest.raises(BackendUnavailable):
        await cloud.synthesize("hello")


def test_parse_output_format():
    meta = parse_output_format("raw-48khz-16bit-mono-pcm")
    assert (meta.sample_rate, meta.channels, meta.sample_width) == (48000, 1, 2)

    with pytest.raises(BackendUnavailable):
        parse_output_format("audio-16khz-32kbitrate-mono-mp3")


class BrokenGenerator:
    async def reply(self, prompt):
        raise KeyError("message")

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_generation_errors_are_tagged_with_their_stage():
    speech = StubBackend()
    generated = GeneratedTextToSpeech(BrokenGenerator(), speech)

    with pytest.raises(GenerationError) as info:
        await generated.synthesize("hello")

    assert info.value.stage == "generation"
    assert speech.calls == []


@pytest.mark.asyncio
async def test_synthesis_errors_after_generation_keep_their_type():
    class Replying:
        async def reply(self, prompt):
            return "sure"

    speech = StubBackend(error=NetworkError("offline"))
    generated = GeneratedTextToSpeech(Replying(), speech)

    with pytest.raises(NetworkError) as info:
        await generated.synthesize("hello")
    assert info.value.stage == "synthesis"
    assert speech.calls == ["sure"]
