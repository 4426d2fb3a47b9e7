"""Scene-change detection via ffmpeg's select/showinfo filters.

Runs ffmpeg with ``select='gt(scene,T)',showinfo`` so that every frame whose
scene score exceeds T is written as a JPEG and announced on stderr with its
``pts_time``. Stderr is consumed line by line, so detections are yielded
while ffmpeg is still decoding.
"""

import asyncio
import logging
import re
import shutil
import subprocess
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Optional

from reviw.tools.stabilizer import Detection

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FRAME_PATTERN = "frame_%05d.jpg"
STDERR_TAIL_LINES = 12
STREAM_LIMIT = 1024 * 1024
FILE_WAIT_RETRIES = 20
FILE_WAIT_INTERVAL = 0.05  # seconds

_RE_SHOWINFO = re.compile(r"\bn:\s*(\d+)\b.*?\bpts_time:\s*(-?\d+(?:\.\d+)?)")


class SceneDetectionError(Exception):
    """ffmpeg could not be started or exited with an error."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def resolve_ffmpeg(ffmpeg_path: str = "ffmpeg") -> Optional[str]:
    """Return the full path of the ffmpeg binary, or None if it is not installed."""
    return shutil.which(ffmpeg_path)


def frame_path(out_dir: Path, n: int) -> Path:
    """Path of the JPEG written for the n-th selected frame (0-based)."""
    return out_dir / f"frame_{n + 1:05d}.jpg"


def build_command(
    ffmpeg: str,
    video_path: str,
    out_dir: Path,
    threshold: float,
    width: int = 320,
) -> list[str]:
    """Build the ffmpeg command line for scene extraction."""
    vf = f"select='gt(scene,{threshold})',showinfo,scale='min({width},iw)':-2"
    return [
        ffmpeg, "-hide_banner", "-nostdin", "-nostats",
        "-loglevel", "info",
        "-i", str(video_path),
        "-an", "-sn", "-dn",
        "-vf", vf,
        "-fps_mode", "vfr",
        "-q:v", "3",
        str(out_dir / FRAME_PATTERN),
    ]


def parse_showinfo_line(line: str) -> Optional[tuple[int, float]]:
    """Extract (frame number, pts_time) from an ffmpeg showinfo line."""
    if "showinfo" not in line:
        return None
    m = _RE_SHOWINFO.search(line)
    if not m:
        return None
    return int(m.group(1)), float(m.group(2))


def _failure_message(returncode: int, tail: deque) -> str:
    detail = tail[-1] if tail else "no diagnostic output"
    return f"scene detection failed (ffmpeg exit {returncode}): {detail}"


async def _wait_for_file(path: Path) -> bool:
    """Wait until ffmpeg has written ``path``. Returns True if it appeared."""
    for _ in range(FILE_WAIT_RETRIES):
        try:
            if path.stat().st_size > 0:
                return True
        except OSError:
            pass
        await asyncio.sleep(FILE_WAIT_INTERVAL)
    return False


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

async def detect_scenes(
    video_path: str,
    out_dir: Path,
    threshold: float,
    ffmpeg: str = "ffmpeg",
    width: int = 320,
) -> AsyncIterator[Detection]:
    """Yield scene-change detections in timestamp order as ffmpeg finds them.

    A detection is held back until the next one is announced (or ffmpeg
    exits) so its JPEG is complete when it is yielded. Closing the generator
    early kills ffmpeg.

    Raises:
        SceneDetectionError: If ffmpeg cannot start or exits non-zero.
    """
    cmd = build_command(ffmpeg, video_path, out_dir, threshold, width)
    logger.debug("running %s", " ".join(cmd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as exc:
        raise SceneDetectionError(f"could not start ffmpeg: {exc}") from exc

    pending: Optional[Detection] = None
    tail: deque = deque(maxlen=STDERR_TAIL_LINES)

    async def ready(detection: Detection) -> bool:
        if await _wait_for_file(Path(detection.path)):
            return True
        logger.warning("frame %s never appeared, skipping", detection.path)
        return False

    try:
        async for raw in proc.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            parsed = parse_showinfo_line(line)
            if parsed is None:
                if line:
                    tail.append(line)
                continue
            n, pts_time = parsed
            detection = Detection(time=pts_time, path=str(frame_path(out_dir, n)))
            if pending is not None and await ready(pending):
                yield pending
            pending = detection

        returncode = await proc.wait()
        if returncode != 0:
            raise SceneDetectionError(_failure_message(returncode, tail))
        if pending is not None and await ready(pending):
            yield pending
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            logger.info("scene detection for %s stopped early", Path(video_path).name)
