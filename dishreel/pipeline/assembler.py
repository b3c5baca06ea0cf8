"""
Final video assembly: ordered step-video URLs → one local mp4.

Uses ffmpeg's concat demuxer with stream copy (no re-encode), so all inputs
must share codec parameters, which clips from one video model do. The
concatenation tool and the downloader are injected, which lets tests run
without ffmpeg or the network.

Temp files for one attempt:
  step_{i}_{recipe_id}.mp4     downloaded inputs
  concat_list_{recipe_id}.txt  ffmpeg manifest
Output:
  final_{recipe_id}.mp4
"""

import re
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx

from .. import metrics
from ..errors import AssemblyError, StorageError
from .models import ConcatResult

logger = logging.getLogger(__name__)

Downloader = Callable[[str, Path], Awaitable[None]]


class ConcatTool:
    """Capability that joins the files listed in a concat manifest."""

    def available(self) -> bool:
        raise NotImplementedError

    async def concat(self, manifest_path: Path, output_path: Path) -> None:
        raise NotImplementedError


class FfmpegConcatTool(ConcatTool):
    def __init__(self, binary: str = "ffmpeg", timeout: float = 120):
        self.binary = binary
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    async def concat(self, manifest_path: Path, output_path: Path) -> None:
        cmd = [
            self.binary, "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", str(manifest_path),
            "-c", "copy",
            str(output_path),
        ]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise AssemblyError(f"ffmpeg concat timed out after {self.timeout:.0f}s") from e

        if process.returncode != 0:
            raise AssemblyError(f"ffmpeg concat failed: {stderr.decode(errors='replace')[-500:]}")


async def http_download(url: str, dest: Path, timeout: float = 120) -> None:
    """Stream `url` into `dest`."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", url) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
    except httpx.HTTPError as e:
        raise StorageError(f"Download failed for {url[:120]}: {e}") from e


def write_manifest(path: Path, inputs: list[Path]) -> None:
    lines = []
    for p in inputs:
        quoted = str(p.resolve()).replace("'", "'\\''")
        lines.append(f"file '{quoted}'")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _safe_id(recipe_id: str) -> str:
    return re.sub(r"[^\w.-]", "_", recipe_id)


class VideoAssembler:
    def __init__(self, work_dir: str, tool: ConcatTool, downloader: Optional[Downloader] = None):
        self.work_dir = Path(work_dir)
        self.tool = tool
        self._download = downloader or http_download

    def final_path(self, recipe_id: str) -> Path:
        return self.work_dir / f"final_{_safe_id(recipe_id)}.mp4"

    async def concatenate(self, urls: list[str], recipe_id: str) -> ConcatResult:
        valid = [u for u in urls if isinstance(u, str) and u.startswith("https://")]
        if len(valid) != len(urls):
            logger.warning(f"[{recipe_id}] dropped {len(urls) - len(valid)} non-https video URL(s)")
        if not valid:
            return ConcatResult(success=False, error="No valid video URLs to concatenate")

        if len(valid) == 1:
            return await self._single(valid[0], recipe_id)

        if not self.tool.available():
            return ConcatResult(success=False, error="Video concatenation tool (ffmpeg) is not available")

        return await self._concat_many(valid, recipe_id)

    async def _single(self, url: str, recipe_id: str) -> ConcatResult:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        final = self.final_path(recipe_id)
        try:
            await self._download(url, final)
        except Exception as e:
            logger.error(f"[{recipe_id}] single video download failed: {e}")
            final.unlink(missing_ok=True)
            return ConcatResult(success=False, error=f"Download failed: {e}")
        logger.info(f"[{recipe_id}] single step video, skipped concatenation")
        return ConcatResult(success=True, local_path=str(final), step_count=1)

    async def _concat_many(self, urls: list[str], recipe_id: str) -> ConcatResult:
        safe_id = _safe_id(recipe_id)
        final = self.final_path(recipe_id)
        created: list[Path] = []

        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)

            downloaded: list[Path] = []
            for i, url in enumerate(urls):
                path = self.work_dir / f"step_{i}_{safe_id}.mp4"
                created.append(path)
                try:
                    await self._download(url, path)
                    downloaded.append(path)
                except Exception as e:
                    logger.warning(f"[{recipe_id}] skipping step video {i + 1}/{len(urls)}: {e}")

            if not downloaded:
                return ConcatResult(success=False, error="Failed to download any step videos")

            if final.exists():
                final.unlink()

            if len(downloaded) == 1:
                downloaded[0].replace(final)
                return ConcatResult(success=True, local_path=str(final), step_count=1)

            manifest = self.work_dir / f"concat_list_{safe_id}.txt"
            created.append(manifest)
            write_manifest(manifest, downloaded)

            logger.info(f"[{recipe_id}] concatenating {len(downloaded)} step videos")
            await self.tool.concat(manifest, final)

            if not final.exists():
                raise AssemblyError("Concatenation finished but produced no output file")

            metrics.inc_counter("assembly.completed")
            return ConcatResult(success=True, local_path=str(final), step_count=len(downloaded))

        except Exception as e:
            logger.error(f"[{recipe_id}] video assembly failed: {e}", exc_info=True)
            metrics.inc_counter("assembly.failed")
            metrics.record_error("concatenate", type(e).__name__, str(e), recipe_id)
            final.unlink(missing_ok=True)
            return ConcatResult(success=False, error=str(e))

        finally:
            for path in created:
                path.unlink(missing_ok=True)
