import pytest
import pytest_asyncio

from fakes import MemoryChatLog, RecordingOutput
from playback.controller import PlaybackController


@pytest.fixture
def output():
    return RecordingOutput()


@pytest_asyncio.fixture
async def controller(output):
    ctl = PlaybackController(output, capacity=8, fast_forward_seconds=2.0)
    ctl.start()
    yield ctl
    await ctl.close()


@pytest.fixture
def chat_log():
    return MemoryChatLog()
