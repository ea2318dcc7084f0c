import json
import asyncio

import pytest
import pytest_asyncio

from llama_supervisor.core.config import VisionServerConfig
from llama_supervisor.core.errors import (
    HealthTimeoutError,
    ModelNotFoundError,
    StartFailedError,
    VisionDisabledError,
)
from llama_supervisor.core.events import VisionStateChanged
from llama_supervisor.core.vision_server import VisionServer, VisionState
from llama_supervisor.services.metrics_service import MetricsService

from conftest import GB, MB, make_model


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def vision_config(models_dir) -> VisionServerConfig:
    model = make_model(models_dir, "llava-v1.6-mistral-7b.gguf", 4 * GB)
    mmproj = make_model(models_dir, "mmproj-llava-f16.gguf", 600 * MB)
    return VisionServerConfig(
        model_path=str(model),
        mmproj_path=str(mmproj),
        ready_timeout_sec=1,
        poll_interval_sec=0.02,
        stop_timeout_sec=0.1,
        idle_timeout_sec=300,
    )


@pytest_asyncio.fixture
async def vision(vision_config, assets, vram, http_client, launcher):
    server = VisionServer(vision_config, assets=assets, vram=vram, http_client=http_client)
    yield server
    await server.stop()


# =============================================================================
# Startup
# =============================================================================

@pytest.mark.asyncio
async def test_ensure_running_starts_on_gpu(vision, vision_config, launcher):
    await vision.ensure_running()

    process = launcher.last
    assert process.arg("--model") == vision_config.model_path
    assert process.arg("--port") == "2024"
    assert process.arg("-ngl") == "99"
    assert process.arg("-c") == "8192"
    assert process.arg("--mmproj") == vision_config.mmproj_path
    assert "--flash-attn" in process.args
    assert "--main-gpu" not in process.args
    assert "CUDA_VISIBLE_DEVICES" not in process.env

    assert vision.state == VisionState.READY
    assert vision.cpu_only is False
    assert vision.last_used is not None


@pytest.mark.asyncio
async def test_ensure_running_reuses_ready_server(vision, launcher):
    await vision.ensure_running()
    await vision.ensure_running()

    assert len(launcher.launched) == 1


@pytest.mark.asyncio
async def test_state_events(vision):
    queue = vision.events.subscribe()

    await vision.ensure_running()
    await vision.stop()

    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    assert events == [
        VisionStateChanged("stopped", "starting"),
        VisionStateChanged("starting", "ready"),
        VisionStateChanged("ready", "stopping"),
        VisionStateChanged("stopping", "stopped"),
    ]


@pytest.mark.asyncio
async def test_low_vram_runs_cpu_only(vision, vram, launcher):
    # 4 GB model needs 5939 MB plus a 500 MB margin
    vram.free_mb = 6000

    await vision.ensure_running()

    process = launcher.last
    assert process.arg("-ngl") == "0"
    assert "--flash-attn" not in process.args
    assert process.env["CUDA_VISIBLE_DEVICES"] == ""
    assert vision.status().cpu_only is True


@pytest.mark.asyncio
async def test_unknown_vram_uses_gpu(vision, vram, launcher):
    vram.available = False

    await vision.ensure_running()

    assert launcher.last.arg("-ngl") == "99"


@pytest.mark.asyncio
async def test_main_gpu_flag(vision, vision_config, launcher):
    vision_config.main_gpu = 1

    await vision.ensure_running()

    assert launcher.last.arg("--main-gpu") == "1"


@pytest.mark.asyncio
async def test_disabled_server_raises(vision, vision_config, launcher):
    vision_config.enabled = False

    with pytest.raises(VisionDisabledError):
        await vision.ensure_running()
    assert launcher.launched == []


@pytest.mark.asyncio
async def test_missing_model_raises(vision, models_dir):
    vision.set_model_path(str(models_dir / "missing.gguf"))

    with pytest.raises(ModelNotFoundError) as exc_info:
        await vision.ensure_running()

    assert exc_info.value.role == "vision"
    assert vision.state == VisionState.STOPPED


@pytest.mark.asyncio
async def test_spawn_failure(vision, launcher):
    launcher.fail_with = FileNotFoundError("llama-server")

    with pytest.raises(StartFailedError):
        await vision.ensure_running()

    assert vision.state == VisionState.STOPPED


@pytest.mark.asyncio
async def test_readiness_timeout_stops_server(vision, vision_config, fake_server, launcher):
    vision_config.ready_timeout_sec = 0.2
    fake_server.ready = False

    with pytest.raises((HealthTimeoutError, StartFailedError)):
        await vision.ensure_running()

    await _until(lambda: vision.state == VisionState.STOPPED)
    assert launcher.last.returncode is not None


@pytest.mark.asyncio
async def test_exit_during_startup(vision, fake_server, launcher):
    fake_server.ready = False

    task = asyncio.create_task(vision.ensure_running())
    await _until(lambda: launcher.last is not None)
    launcher.last.exit(1)

    with pytest.raises(StartFailedError):
        await task
    assert vision.state == VisionState.STOPPED


@pytest.mark.asyncio
async def test_unexpected_exit_when_ready(vision, launcher):
    await vision.ensure_running()

    launcher.last.exit(139)

    await _until(lambda: vision.state == VisionState.STOPPED)
    assert vision.process is None


# =============================================================================
# Stop / idle eviction
# =============================================================================

@pytest.mark.asyncio
async def test_stop_escalates_to_kill(vision, launcher):
    launcher.ignore_terminate = True
    await vision.ensure_running()
    process = launcher.last

    await vision.stop()

    assert process.signals == ["TERM", "KILL"]
    assert vision.state == VisionState.STOPPED


@pytest.mark.asyncio
async def test_idle_timeout_stops_server(vision, launcher):
    vision.set_idle_timeout(0.05)
    await vision.ensure_running()
    process = launcher.last

    await _until(lambda: vision.state == VisionState.STOPPED)

    assert process.signals == ["TERM"]


@pytest.mark.asyncio
async def test_idle_timeout_rearms_while_requests_active(vision):
    vision.set_idle_timeout(0.05)
    await vision.ensure_running()
    vision.active_requests = 1

    await asyncio.sleep(0.2)
    assert vision.state == VisionState.READY

    vision.active_requests = 0
    await _until(lambda: vision.state == VisionState.STOPPED)


@pytest.mark.asyncio
async def test_zero_idle_timeout_disables_eviction(vision):
    vision.set_idle_timeout(0)
    await vision.ensure_running()

    await asyncio.sleep(0.1)

    assert vision.state == VisionState.READY
    assert vision.status().seconds_until_stop is None


@pytest.mark.asyncio
async def test_status_counts_down(vision):
    await vision.ensure_running()

    status = vision.status()

    assert status.ready is True
    assert status.running is True
    assert 0 < status.seconds_until_stop <= 300
    assert status.model_name == "llava-v1.6-mistral-7b.gguf"


# =============================================================================
# Analysis
# =============================================================================

@pytest.mark.asyncio
async def test_analyze_image(vision, vision_config, fake_server):
    result = await vision.analyze_image("aGVsbG8=")

    assert result.description == "This is an invoice from ACME."
    assert result.document_type == "invoice"
    assert result.model == "llava-v1.6-mistral-7b.gguf"

    body = json.loads(fake_server.requests_to("/v1/chat/completions")[-1].content)
    assert body["stream"] is False
    assert body["max_tokens"] == vision_config.max_tokens
    content = body["messages"][0]["content"]
    assert content[0]["type"] == "text"
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="

    assert vision.active_requests == 0
    assert vision._idle_task is not None


@pytest.mark.asyncio
async def test_analyze_image_custom_prompt(vision, fake_server):
    fake_server.completion_text = "A cat on a sofa."

    result = await vision.analyze_image("aGVsbG8=", prompt="What animal is this?")

    assert result.document_type is None
    body = json.loads(fake_server.requests_to("/v1/chat/completions")[-1].content)
    assert body["messages"][0]["content"][0]["text"] == "What animal is this?"


@pytest.mark.asyncio
async def test_analyze_image_releases_counter_on_error(vision, vision_config):
    vision_config.enabled = False

    with pytest.raises(VisionDisabledError):
        await vision.analyze_image("aGVsbG8=")

    assert vision.active_requests == 0


@pytest.mark.asyncio
async def test_concurrent_analyses_share_one_process(vision, launcher):
    results = await asyncio.gather(
        vision.analyze_image("aGVsbG8="),
        vision.analyze_image("aGVsbG8="),
        vision.analyze_image("aGVsbG8="),
    )

    assert len(results) == 3
    assert len(launcher.launched) == 1
    assert vision.active_requests == 0


@pytest.mark.asyncio
async def test_vision_metrics(vision_config, assets, vram, http_client):
    metrics = MetricsService()
    server = VisionServer(
        vision_config, assets=assets, vram=vram, http_client=http_client, metrics=metrics
    )
    try:
        await server.ensure_running()
        assert metrics.registry.get_sample_value("supervisor_vision_state") == 2.0
    finally:
        await server.stop()

    assert metrics.registry.get_sample_value("supervisor_vision_state") == 0.0
