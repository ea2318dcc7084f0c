"""
llama-supervisor Runner

Command line entry point.

Commands:
    serve     Start the supervisor (chat model, watchdog, vision server)
              and run until SIGINT/SIGTERM
    download  Download a model file into the models directory (resumable)
    status    Probe llama-server health and print VRAM/model information
    models    List local models (or the recommended downloads)
"""

import sys
import json
import signal
import asyncio
import logging
import argparse
from pathlib import Path
from dataclasses import asdict

from llama_supervisor.core.config import AppConfig, load_config
from llama_supervisor.core.errors import SupervisorError
from llama_supervisor.core.logging_server import setup_logging
from llama_supervisor.core.runtime_assets import discover_runtime_assets
from llama_supervisor.core.supervisor import ProcessSupervisor
from llama_supervisor.lifecycle import shutdown_handler, startup_handler
from llama_supervisor.services.download_service import ArtifactDownloader, RECOMMENDED_MODELS
from llama_supervisor.services.vram_service import VRAMService
from llama_supervisor.utils.model_files import list_models


logger = logging.getLogger("runner")


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="llama.cpp local supervisor")
    parser.add_argument(
        '-c', '--config',
        type=str,
        default=None,
        help='Path to config JSON file (default: config.json or CONFIG_PATH env var)'
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the supervisor until interrupted")

    download = subparsers.add_parser("download", help="Download a model file")
    download.add_argument("url", help="Model URL")
    download.add_argument(
        "-f", "--filename",
        default=None,
        help="Target file name (default: last URL path segment)"
    )

    subparsers.add_parser("status", help="Show llama-server and VRAM status")

    models = subparsers.add_parser("models", help="List local models")
    models.add_argument(
        "--recommended",
        action="store_true",
        help="List recommended downloads instead"
    )

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve"
    return args


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def serve(config: AppConfig) -> None:
    container = await startup_handler(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, container.shutdown_event.set)

    logger.info("Supervisor running. Press Ctrl+C to stop.")
    try:
        await container.shutdown_event.wait()
    finally:
        await shutdown_handler(container)


async def download(config: AppConfig, url: str, filename: str) -> None:
    downloader = ArtifactDownloader(config.supervisor.models_dir, config.download)
    progress: asyncio.Queue = asyncio.Queue(maxsize=config.download.progress_queue_size)

    async def report() -> None:
        while True:
            update = await progress.get()
            sys.stdout.write(
                f"\r{update.filename}: {update.percent:5.1f}% "
                f"({update.downloaded // (1024 * 1024)} / {update.total // (1024 * 1024)} MB)"
            )
            sys.stdout.flush()

    reporter = asyncio.create_task(report())
    try:
        path = await downloader.download(url, filename, progress)
    finally:
        reporter.cancel()
        try:
            await reporter
        except asyncio.CancelledError:
            pass
        sys.stdout.write("\n")

    print(f"Saved to {path}")


async def status(config: AppConfig) -> None:
    assets = discover_runtime_assets(
        data_dir=config.supervisor.data_dir,
        binary_path=config.supervisor.binary_path,
        library_path=config.supervisor.library_path,
    )
    vram = VRAMService(config.supervisor.gpu_device_index)
    supervisor = ProcessSupervisor(config.supervisor, assets=assets, vram=vram)
    try:
        _print_json({
            "server": (await supervisor.status()).to_dict(),
            "vram": supervisor.vram_settings(),
        })
    finally:
        vram.shutdown()


def models(config: AppConfig, recommended: bool) -> None:
    if recommended:
        _print_json([asdict(m) for m in RECOMMENDED_MODELS])
        return

    for model in list_models(config.supervisor.models_dir):
        print(f"{model.size_gb:6.2f} GB  {model.name}  ({model.path})")


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except SupervisorError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        getattr(logging, config.logging.level),
        use_structured=config.logging.structured,
        log_dir=config.logging.log_dir
    )

    try:
        if args.command == "serve":
            asyncio.run(serve(config))
        elif args.command == "download":
            filename = args.filename or Path(args.url.split("?", 1)[0]).name
            asyncio.run(download(config, args.url, filename))
        elif args.command == "status":
            asyncio.run(status(config))
        elif args.command == "models":
            models(config, args.recommended)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except SupervisorError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
