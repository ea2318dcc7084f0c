import asyncio
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio

from llama_supervisor.core.config import DownloadConfig
from llama_supervisor.core.errors import (
    DownloadCorruptError,
    DownloadError,
    DownloadInterruptedError,
)
from llama_supervisor.services.download_service import (
    META_SUFFIX,
    TEMP_SUFFIX,
    ArtifactDownloader,
)
from llama_supervisor.services.metrics_service import MetricsService


HUB_URL = "https://huggingface.co/org/repo/resolve/main/model.gguf"
CDN_URL = "https://huggingface.co/cdn/blobs/model.gguf"

DATA = bytes(range(256)) * 40  # 10240 bytes


class BrokenStream(httpx.AsyncByteStream):
    """Sends a prefix, then fails like a dropped connection."""

    def __init__(self, prefix: bytes):
        self.prefix = prefix

    async def __aiter__(self):
        yield self.prefix
        raise httpx.ReadError("connection reset by peer")

    async def aclose(self) -> None:
        pass


class FakeHub:
    """Hugging Face style host: HEAD redirect to a CDN that honors Range."""

    def __init__(self, data: bytes = DATA):
        self.data = data
        self.head_length: Optional[int] = None
        self.head_status = 200
        self.get_status = 200
        self.honor_range = True
        self.break_after: Optional[int] = None
        self.refuse_connections = False
        self.requests: List[httpx.Request] = []

    def gets(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.refuse_connections and request.method == "GET":
            raise httpx.ConnectError("connection refused", request=request)

        if str(request.url) == HUB_URL:
            return httpx.Response(302, headers={"location": "/cdn/blobs/model.gguf"})

        if request.method == "HEAD":
            if self.head_status != 200:
                return httpx.Response(self.head_status)
            length = len(self.data) if self.head_length is None else self.head_length
            return httpx.Response(200, headers={"content-length": str(length)})

        if self.get_status != 200:
            return httpx.Response(self.get_status, text="not found")

        start = 0
        range_header = request.headers.get("range")
        if range_header and self.honor_range:
            start = int(range_header[len("bytes="):].rstrip("-"))

        body = self.data[start:]
        status = 206 if start else 200
        if self.break_after is not None:
            return httpx.Response(status, stream=BrokenStream(body[:self.break_after]))
        return httpx.Response(status, content=body)


@pytest.fixture
def hub() -> FakeHub:
    return FakeHub()


@pytest_asyncio.fixture
async def hub_client(hub):
    client = httpx.AsyncClient(transport=httpx.MockTransport(hub.handler))
    yield client
    await client.aclose()


@pytest.fixture
def downloader(models_dir, hub_client) -> ArtifactDownloader:
    return ArtifactDownloader(
        str(models_dir),
        DownloadConfig(chunk_size=1024),
        http_client=hub_client
    )


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


# =============================================================================
# Download
# =============================================================================

@pytest.mark.asyncio
async def test_download_follows_relative_redirect(downloader, hub, models_dir):
    progress = asyncio.Queue(maxsize=100)

    path = await downloader.download(HUB_URL, "model.gguf", progress)

    assert path == models_dir / "model.gguf"
    assert path.read_bytes() == DATA
    assert not (models_dir / ("model.gguf" + TEMP_SUFFIX)).exists()

    heads = [str(r.url) for r in hub.requests if r.method == "HEAD"]
    assert heads == [HUB_URL, CDN_URL]
    assert str(hub.gets()[0].url) == CDN_URL
    assert hub.gets()[0].headers["user-agent"] == "llama-supervisor/1.0"
    assert "range" not in hub.gets()[0].headers

    updates = drain(progress)
    assert updates[-1].percent == 100.0
    assert updates[-1].downloaded == len(DATA)
    assert updates[-1].resumed is False


@pytest.mark.asyncio
async def test_resume_from_partial_file(downloader, hub, models_dir):
    temp = models_dir / ("model.gguf" + TEMP_SUFFIX)
    temp.write_bytes(DATA[:4000])
    progress = asyncio.Queue(maxsize=100)

    path = await downloader.download(HUB_URL, "model.gguf", progress)

    assert path.read_bytes() == DATA
    assert hub.gets()[0].headers["range"] == "bytes=4000-"
    updates = drain(progress)
    assert updates[0].downloaded > 4000
    assert all(u.resumed for u in updates)


@pytest.mark.asyncio
async def test_server_ignoring_range_restarts(downloader, hub, models_dir):
    hub.honor_range = False
    temp = models_dir / ("model.gguf" + TEMP_SUFFIX)
    temp.write_bytes(b"x" * 4000)

    path = await downloader.download(HUB_URL, "model.gguf")

    assert path.read_bytes() == DATA


@pytest.mark.asyncio
async def test_oversized_temp_file_is_discarded(downloader, hub, models_dir):
    temp = models_dir / ("model.gguf" + TEMP_SUFFIX)
    temp.write_bytes(b"x" * (len(DATA) + 10))

    path = await downloader.download(HUB_URL, "model.gguf")

    assert path.read_bytes() == DATA
    assert "range" not in hub.gets()[0].headers


@pytest.mark.asyncio
async def test_complete_temp_file_is_renamed(downloader, hub, models_dir):
    temp = models_dir / ("model.gguf" + TEMP_SUFFIX)
    temp.write_bytes(DATA)
    progress = asyncio.Queue(maxsize=100)

    path = await downloader.download(HUB_URL, "model.gguf", progress)

    assert path.read_bytes() == DATA
    assert not temp.exists()
    assert hub.gets() == []
    update = progress.get_nowait()
    assert update.percent == 100.0
    assert update.resumed is True


@pytest.mark.asyncio
async def test_interrupted_stream_keeps_temp_and_resumes(downloader, hub, models_dir):
    hub.break_after = 3072

    with pytest.raises(DownloadInterruptedError) as exc_info:
        await downloader.download(HUB_URL, "model.gguf")

    temp = models_dir / ("model.gguf" + TEMP_SUFFIX)
    assert exc_info.value.downloaded == 3072
    assert exc_info.value.temp_path == str(temp)
    assert temp.read_bytes() == DATA[:3072]
    assert not (models_dir / "model.gguf").exists()

    hub.break_after = None
    path = await downloader.download(HUB_URL, "model.gguf")

    assert path.read_bytes() == DATA
    assert hub.gets()[-1].headers["range"] == "bytes=3072-"


@pytest.mark.asyncio
async def test_short_body_is_interrupted(downloader, hub, models_dir):
    hub.head_length = len(DATA) + 100

    with pytest.raises(DownloadInterruptedError):
        await downloader.download(HUB_URL, "model.gguf")

    assert (models_dir / ("model.gguf" + TEMP_SUFFIX)).exists()


@pytest.mark.asyncio
async def test_oversized_body_is_corrupt(downloader, hub, models_dir):
    hub.head_length = len(DATA) - 100

    with pytest.raises(DownloadCorruptError) as exc_info:
        await downloader.download(HUB_URL, "model.gguf")

    assert exc_info.value.size == len(DATA)
    assert exc_info.value.expected == len(DATA) - 100
    assert not (models_dir / ("model.gguf" + TEMP_SUFFIX)).exists()
    assert not (models_dir / "model.gguf").exists()


@pytest.mark.asyncio
async def test_http_error_status(downloader, hub):
    hub.get_status = 404

    with pytest.raises(DownloadError) as exc_info:
        await downloader.download(HUB_URL, "model.gguf")

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("filename", ["../escape.gguf", "sub/model.gguf", "..\\model.gguf", "..", ""])
async def test_file_name_must_stay_in_models_dir(downloader, hub, models_dir, filename):
    with pytest.raises(DownloadError):
        await downloader.download(HUB_URL, filename)

    assert hub.requests == []
    assert not (models_dir.parent / "escape.gguf").exists()


@pytest.mark.asyncio
async def test_unknown_length_uses_get_content_length(downloader, hub):
    hub.head_status = 405

    path = await downloader.download(HUB_URL, "model.gguf")

    assert path.read_bytes() == DATA


@pytest.mark.asyncio
async def test_connection_failure(downloader, hub):
    hub.refuse_connections = True

    with pytest.raises(DownloadError):
        await downloader.download(HUB_URL, "model.gguf")


@pytest.mark.asyncio
async def test_full_progress_queue_does_not_block(downloader):
    progress = asyncio.Queue(maxsize=1)

    path = await downloader.download(HUB_URL, "model.gguf", progress)

    assert path.exists()
    assert progress.qsize() == 1


@pytest.mark.asyncio
async def test_download_metrics(models_dir, hub_client):
    metrics = MetricsService()
    downloader = ArtifactDownloader(
        str(models_dir), DownloadConfig(chunk_size=1024), http_client=hub_client, metrics=metrics
    )

    await downloader.download(HUB_URL, "model.gguf")

    registry = metrics.registry
    assert registry.get_sample_value("supervisor_download_bytes_total") == len(DATA)
    assert registry.get_sample_value("supervisor_downloads_total", {"result": "success"}) == 1.0


# =============================================================================
# Cleanup / catalog
# =============================================================================

def test_cleanup_incomplete_downloads(models_dir):
    nested = models_dir / "library"
    nested.mkdir()
    (models_dir / "model.gguf.part1").write_bytes(b"x")
    (nested / "other.gguf.part").write_bytes(b"x")
    (models_dir / ("resume.gguf" + TEMP_SUFFIX)).write_bytes(b"x")

    broken = models_dir / "broken.gguf"
    broken.write_bytes(b"x" * 10)
    (models_dir / ("broken.gguf" + META_SUFFIX)).write_text("20")

    good = nested / "good.gguf"
    good.write_bytes(b"x" * 10)
    (nested / ("good.gguf" + META_SUFFIX)).write_text("10")

    removed = ArtifactDownloader(str(models_dir)).cleanup_incomplete_downloads()

    assert removed == 3
    assert not broken.exists()
    assert good.exists()
    assert (models_dir / ("resume.gguf" + TEMP_SUFFIX)).exists()
    assert list(models_dir.rglob("*" + META_SUFFIX)) == []


def test_cleanup_missing_directory(tmp_path):
    assert ArtifactDownloader(str(tmp_path / "nowhere")).cleanup_incomplete_downloads() == 0


def test_recommended_models(models_dir):
    recommended = ArtifactDownloader(str(models_dir)).list_recommended()

    assert {m.category for m in recommended} == {"chat", "code", "fast", "vision"}
    assert all(m.url.endswith(".gguf") for m in recommended)
