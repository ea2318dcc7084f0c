"""
Artifact Download Service

Resumable downloads of model files (typically from Hugging Face) into
the models directory.

Components:
    - DownloadProgress: Progress snapshot pushed onto an asyncio.Queue
    - RecommendedModel / RECOMMENDED_MODELS: Curated starter models
    - ArtifactDownloader: HEAD probing, resume and integrity checks

Download Flow:
    1. HEAD with manual redirect following (Hugging Face answers 302 to a
       CDN). The final 200 gives Content-Length.
    2. Existing <file>.downloading temp file:
         larger than total  -> deleted, start over
         equal to total     -> renamed, done (resumed)
         smaller            -> resume with Range: bytes=<size>-
    3. A server ignoring the Range header (200 instead of 206) restarts
       the download from zero.
    4. Chunks are appended to the temp file. A broken connection keeps
       the temp file so the next call resumes.
    5. At EOF the size is checked against the total before the rename.

Usage:
    downloader = ArtifactDownloader(models_dir, DownloadConfig())
    progress = asyncio.Queue(maxsize=100)
    path = await downloader.download(url, "qwen2.5-7b.gguf", progress)
"""

import re
import asyncio
import logging
from pathlib import Path
from dataclasses import dataclass
from urllib.parse import urljoin
from typing import List, Optional, Tuple

import httpx

from ..core.config import DownloadConfig
from ..core.errors import DownloadCorruptError, DownloadError, DownloadInterruptedError
from .metrics_service import MetricsService


logger = logging.getLogger(__name__)


TEMP_SUFFIX = ".downloading"
META_SUFFIX = ".meta"
PART_FILE_PATTERN = re.compile(r"\.part\d*$")
REDIRECT_CODES = (301, 302, 303, 307, 308)

MB = 1024 * 1024


@dataclass
class DownloadProgress:
    downloaded: int
    total: int
    percent: float
    filename: str
    resumed: bool = False


@dataclass(frozen=True)
class RecommendedModel:
    name: str
    description: str
    size: str
    url: str
    filename: str
    category: str


RECOMMENDED_MODELS: Tuple[RecommendedModel, ...] = (
    RecommendedModel(
        name="Qwen2.5-7B-Instruct-Q5_K_M",
        description="Strong general-purpose chat model",
        size="5.2 GB",
        url="https://huggingface.co/bartowski/Qwen2.5-7B-Instruct-GGUF/resolve/main/"
            "Qwen2.5-7B-Instruct-Q5_K_M.gguf",
        filename="Qwen2.5-7B-Instruct-Q5_K_M.gguf",
        category="chat",
    ),
    RecommendedModel(
        name="Qwen2.5-Coder-7B-Instruct-Q4_K_M",
        description="Specialized in code generation",
        size="4.4 GB",
        url="https://huggingface.co/bartowski/Qwen2.5-Coder-7B-Instruct-GGUF/resolve/main/"
            "Qwen2.5-Coder-7B-Instruct-Q4_K_M.gguf",
        filename="qwen2.5-coder-7b-instruct-q4_k_m.gguf",
        category="code",
    ),
    RecommendedModel(
        name="Llama-3.2-3B-Instruct-Q4_K_M",
        description="Fast, compact model",
        size="2.0 GB",
        url="https://huggingface.co/bartowski/Llama-3.2-3B-Instruct-GGUF/resolve/main/"
            "Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        filename="Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        category="fast",
    ),
    RecommendedModel(
        name="LLaVA-v1.6-Mistral-7B-Q4_K_M",
        description="Vision model for image analysis",
        size="4.4 GB",
        url="https://huggingface.co/cjpais/llava-v1.6-mistral-7b-gguf/resolve/main/"
            "llava-v1.6-mistral-7b.Q4_K_M.gguf",
        filename="llava-v1.6-mistral-7b.Q4_K_M.gguf",
        category="vision",
    ),
)


def _offer(queue: Optional[asyncio.Queue], progress: DownloadProgress) -> None:
    """Non-blocking progress delivery; a full queue drops the update."""
    if queue is None:
        return
    try:
        queue.put_nowait(progress)
    except asyncio.QueueFull:
        logger.debug(f"[Download] Progress queue full, dropped {progress.percent:.1f}%")


class ArtifactDownloader:
    """
    Downloads model files with resume support.

    Attributes:
        models_dir: Destination directory
        config: Chunk size, redirect limit, timeouts, user agent
        http_client: Optional shared client (a dedicated one is used if None)
    """

    def __init__(
        self,
        models_dir: str,
        config: Optional[DownloadConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsService] = None
    ):
        self.models_dir = Path(models_dir)
        self.config = config or DownloadConfig()
        self.http_client = http_client
        self.metrics = metrics

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self.config.read_timeout_sec,
            connect=self.config.connect_timeout_sec
        )

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {"User-Agent": self.config.user_agent}
        if extra:
            headers.update(extra)
        return headers

    async def download(
        self,
        url: str,
        filename: str,
        progress: Optional[asyncio.Queue] = None
    ) -> Path:
        """
        Download url to models_dir/filename, resuming a previous attempt.

        Args:
            url: Source URL
            filename: Target file name inside models_dir
            progress: Optional queue receiving DownloadProgress updates

        Returns:
            Path of the finished file

        Raises:
            DownloadError: On unexpected HTTP status codes or a file name that
                is not a plain name inside models_dir
            DownloadInterruptedError: If the transfer stops early (temp kept)
            DownloadCorruptError: If more bytes arrived than expected
        """
        if not filename or filename in (".", "..") or Path(filename).name != filename or "\\" in filename:
            raise DownloadError(url, f"invalid file name {filename!r}")

        self.models_dir.mkdir(parents=True, exist_ok=True)

        if self.http_client is not None:
            return await self._download(self.http_client, url, filename, progress)

        async with httpx.AsyncClient(timeout=self._timeout()) as client:
            return await self._download(client, url, filename, progress)

    async def _resolve_target(self, client: httpx.AsyncClient, url: str) -> Tuple[str, int]:
        """Follow redirects with HEAD. Returns (final_url, total_size or 0)."""
        current = url
        for _ in range(self.config.max_redirects):
            try:
                response = await client.head(
                    current,
                    headers=self._headers(),
                    follow_redirects=False,
                    timeout=self._timeout()
                )
            except httpx.HTTPError as e:
                logger.warning(f"[Download] HEAD failed for {current}: {e}")
                return current, 0

            if response.status_code in REDIRECT_CODES:
                location = response.headers.get("location")
                if not location:
                    logger.warning(f"[Download] Redirect without Location at {current}")
                    return current, 0
                current = urljoin(current, location)
                logger.info(f"[Download] Redirect {response.status_code} -> {current}")
                continue

            if response.status_code == 200:
                total = int(response.headers.get("content-length") or 0)
                logger.info(f"[Download] Final URL {current} ({total / MB:.2f} MB)")
                return current, total

            logger.warning(f"[Download] HEAD {current} returned {response.status_code}")
            return current, 0

        logger.warning(f"[Download] More than {self.config.max_redirects} redirects for {url}")
        return current, 0

    async def _download(
        self,
        client: httpx.AsyncClient,
        url: str,
        filename: str,
        progress: Optional[asyncio.Queue]
    ) -> Path:
        dest_path = self.models_dir / filename
        temp_path = dest_path.with_name(dest_path.name + TEMP_SUFFIX)

        final_url, total = await self._resolve_target(client, url)
        if total <= 0:
            logger.warning("[Download] Content-Length unknown, resume disabled")

        offset = 0
        if total > 0 and temp_path.exists():
            partial = temp_path.stat().st_size
            if partial > total:
                logger.warning(
                    f"[Download] Temp file larger than expected ({partial} > {total}), deleting"
                )
                temp_path.unlink()
            elif partial == total:
                logger.info(f"[Download] {filename} already complete, renaming")
                temp_path.replace(dest_path)
                _offer(progress, DownloadProgress(total, total, 100.0, filename, resumed=True))
                if self.metrics:
                    self.metrics.record_download("success")
                return dest_path
            else:
                offset = partial
                logger.info(
                    f"[Download] Resuming {filename} at {offset / total * 100:.1f}% "
                    f"({offset / MB:.2f} of {total / MB:.2f} MB)"
                )

        headers = self._headers({"Range": f"bytes={offset}-"} if offset else None)
        downloaded = offset

        try:
            async with client.stream(
                "GET", final_url, headers=headers, follow_redirects=True, timeout=self._timeout()
            ) as response:
                if response.status_code not in (200, 206):
                    if self.metrics:
                        self.metrics.record_download("error")
                    raise DownloadError(
                        final_url, f"HTTP {response.status_code}", response.status_code
                    )

                if offset and response.status_code != 206:
                    logger.warning(
                        f"[Download] Server ignored Range (status {response.status_code}), "
                        "starting over"
                    )
                    offset = 0
                    downloaded = 0

                if total <= 0:
                    total = int(response.headers.get("content-length") or 0) + offset

                resumed = offset > 0
                downloaded = await self._write_stream(
                    response, temp_path, offset, total, filename, resumed, progress
                )
        except DownloadInterruptedError:
            if self.metrics:
                self.metrics.record_download("interrupted")
            raise
        except httpx.TransportError as e:
            if self.metrics:
                self.metrics.record_download("error")
            raise DownloadError(final_url, str(e)) from e

        return self._finish(final_url, temp_path, dest_path, downloaded, total, offset)

    async def _write_stream(
        self,
        response: httpx.Response,
        temp_path: Path,
        offset: int,
        total: int,
        filename: str,
        resumed: bool,
        progress: Optional[asyncio.Queue]
    ) -> int:
        downloaded = offset
        last_logged = -self.config.log_every_percent
        mode = "ab" if offset else "wb"

        logger.info(f"[Download] Downloading {filename} ({total / MB:.2f} MB)")

        with open(temp_path, mode) as out:
            try:
                async for chunk in response.aiter_bytes(self.config.chunk_size):
                    out.write(chunk)
                    downloaded += len(chunk)
                    if self.metrics:
                        self.metrics.record_download_bytes(len(chunk))

                    if total > 0:
                        percent = downloaded / total * 100
                        if int(percent) >= last_logged + self.config.log_every_percent:
                            last_logged = int(percent)
                            logger.info(
                                f"[Download] {filename}: {percent:.1f}% "
                                f"({downloaded / MB:.2f} / {total / MB:.2f} MB)"
                            )
                        _offer(progress, DownloadProgress(
                            downloaded, total, percent, filename, resumed
                        ))
            except httpx.TransportError as e:
                out.flush()
                logger.warning(
                    f"[Download] Interrupted after {downloaded} bytes, "
                    f"keeping {temp_path} for resume"
                )
                raise DownloadInterruptedError(
                    str(response.request.url), str(temp_path), downloaded, str(e)
                ) from e

        return downloaded

    def _finish(
        self,
        url: str,
        temp_path: Path,
        dest_path: Path,
        downloaded: int,
        total: int,
        offset: int
    ) -> Path:
        if total > 0 and downloaded < total:
            if self.metrics:
                self.metrics.record_download("interrupted")
            raise DownloadInterruptedError(
                url, str(temp_path), downloaded,
                f"stream ended at {downloaded} of {total} bytes"
            )

        if total > 0 and downloaded > total:
            temp_path.unlink(missing_ok=True)
            if self.metrics:
                self.metrics.record_download("corrupt")
            raise DownloadCorruptError(url, str(temp_path), downloaded, total)

        temp_path.replace(dest_path)
        if self.metrics:
            self.metrics.record_download("success")

        suffix = " (resumed)" if offset else ""
        logger.info(f"[Download] Saved {dest_path.name}{suffix} ({downloaded // MB} MB)")
        return dest_path

    def cleanup_incomplete_downloads(self) -> int:
        """
        Remove leftovers of broken downloads.

        Deletes *.part<N> files and model files whose .meta sidecar records
        a different size. Sidecars are always removed. .downloading files
        are kept because download() resumes them.

        Returns:
            Number of deleted files (sidecars not counted)
        """
        if not self.models_dir.is_dir():
            return 0

        removed = 0
        for path in sorted(self.models_dir.rglob("*")):
            if not path.is_file():
                continue

            if PART_FILE_PATTERN.search(path.name):
                path.unlink(missing_ok=True)
                logger.info(f"[Download] Removed partial file {path.name}")
                removed += 1
                continue

            if path.suffix != META_SUFFIX:
                continue

            target = path.with_name(path.name[:-len(META_SUFFIX)])
            try:
                expected = int(path.read_text().strip())
            except ValueError:
                expected = -1

            if target.is_file() and target.stat().st_size != expected:
                logger.warning(
                    f"[Download] {target.name} is {target.stat().st_size} bytes, "
                    f"expected {expected}. Removing"
                )
                target.unlink()
                removed += 1
            path.unlink(missing_ok=True)

        if removed:
            logger.info(f"[Download] Cleaned up {removed} incomplete download(s)")
        return removed

    def list_recommended(self) -> List[RecommendedModel]:
        return list(RECOMMENDED_MODELS)
