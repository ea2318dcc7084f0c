from llama_supervisor.services.metrics_service import MetricsService


def sample(metrics: MetricsService, name: str, **labels):
    return metrics.registry.get_sample_value(name, labels or None)


def test_process_lifecycle():
    metrics = MetricsService()

    metrics.record_start(True)
    metrics.record_start(False)
    assert sample(metrics, "supervisor_process_starts_total", result="success") == 1.0
    assert sample(metrics, "supervisor_process_starts_total", result="failure") == 1.0
    assert sample(metrics, "supervisor_process_running") == 1.0

    metrics.record_stop()
    assert sample(metrics, "supervisor_process_running") == 0.0
    assert sample(metrics, "supervisor_process_stops_total") == 1.0


def test_failed_swap_has_no_duration():
    metrics = MetricsService()

    metrics.record_swap("vision", True, 12.5)
    metrics.record_swap("vision", False, 60.0)

    assert sample(metrics, "supervisor_model_swaps_total", role="vision", result="failure") == 1.0
    assert sample(metrics, "supervisor_model_swap_duration_seconds_count", role="vision") == 1.0
    assert sample(metrics, "supervisor_model_swap_duration_seconds_sum", role="vision") == 12.5


def test_unknown_vision_state_reads_as_stopped():
    metrics = MetricsService()

    metrics.set_vision_state("ready")
    assert sample(metrics, "supervisor_vision_state") == 2.0

    metrics.set_vision_state("exploded")
    assert sample(metrics, "supervisor_vision_state") == 0.0


def test_registries_are_independent():
    first, second = MetricsService(), MetricsService()

    first.set_vram_free(8000)

    assert sample(first, "supervisor_vram_free_mb") == 8000.0
    assert sample(second, "supervisor_vram_free_mb") == 0.0


def test_render():
    metrics = MetricsService()
    metrics.record_download_bytes(4096)
    metrics.record_download("success")

    text = metrics.render().decode()

    assert "supervisor_download_bytes_total 4096.0" in text
    assert 'supervisor_downloads_total{result="success"} 1.0' in text
