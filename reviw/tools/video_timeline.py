"""Video timeline extraction: scene detection + stabilization, as an event stream.

``VideoTimelineExtractor.events`` is a lazy, single-pass async generator of
wire-ready event dicts:

    {"type": "thumbnail", "index": 0, "time": 1.52, "path": ..., "url": ...}
    {"type": "complete", "total": 3}
    {"type": "error", "message": "..."}
    {"type": "unavailable", "message": "..."}

It knows nothing about HTTP; the server frames each event for the client.
Per-stream frame output lives in a temp directory under the session's temp
dir and is removed when the stream ends for any reason, including the
consumer going away.
"""

import asyncio
import logging
import shutil
import tempfile
import uuid
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from reviw.config import ReviewConfig
from reviw.registry import CleanupRegistry, remove_tree
from reviw.session import Session
from reviw.tools.scene_detect import SceneDetectionError, detect_scenes, resolve_ffmpeg
from reviw.tools.stabilizer import Detection, FrameSimilarity, RunTracker, SimilarityCheck, Thumbnail

logger = logging.getLogger(__name__)

THUMB_ROUTE = "/timeline-thumbs"

# (video_path, out_dir) -> async iterator of detections
Detector = Callable[[str, Path], AsyncIterator[Detection]]


class VideoTimelineExtractor:
    """Streams stabilized thumbnails for videos referenced by one session.

    Args:
        session: Owning session; frames and thumbnails live in its temp dir.
        registry: Process cleanup registry (backstop for frame directories).
        config: Supplies thresholds, thumbnail width and the ffmpeg path.
        detector: Replacement detection source (tests); defaults to ffmpeg.
        is_similar: Replacement similarity check; defaults to FrameSimilarity.
    """

    def __init__(
        self,
        session: Session,
        registry: CleanupRegistry,
        config: ReviewConfig,
        detector: Optional[Detector] = None,
        is_similar: Optional[SimilarityCheck] = None,
    ):
        self.session = session
        self.registry = registry
        self.config = config
        self._detector = detector
        self._is_similar = is_similar

    def available(self) -> bool:
        """True when a scene-detection backend can be run."""
        return self._detector is not None or resolve_ffmpeg(self.config.ffmpeg_path) is not None

    def _detections(self, video_path: str, work_dir: Path) -> AsyncIterator[Detection]:
        if self._detector is not None:
            return self._detector(video_path, work_dir)
        return detect_scenes(
            video_path,
            work_dir,
            threshold=self.config.scene_threshold,
            ffmpeg=resolve_ffmpeg(self.config.ffmpeg_path) or self.config.ffmpeg_path,
            width=self.config.thumbnail_width,
        )

    def _publish(self, thumb: Thumbnail, stream_id: str) -> dict[str, Any]:
        """Copy a thumbnail out of the frame directory and build its event."""
        name = f"{stream_id}_{thumb.index:04d}{Path(thumb.path).suffix or '.jpg'}"
        dest = self.session.thumbs_dir / name
        event: dict[str, Any] = {"type": "thumbnail", "index": thumb.index, "time": thumb.time}
        try:
            shutil.copyfile(thumb.path, dest)
        except OSError as exc:
            logger.warning("could not keep thumbnail %s: %s", thumb.path, exc)
            event["path"] = thumb.path
            event["url"] = None
        else:
            event["path"] = str(dest)
            event["url"] = f"{THUMB_ROUTE}/{name}"
        return event

    @staticmethod
    def _discard(detection: Optional[Detection]) -> None:
        if detection is None:
            return
        try:
            Path(detection.path).unlink()
        except OSError:
            pass

    async def events(self, video_path: str) -> AsyncIterator[dict[str, Any]]:
        """Run extraction for one video and yield events as runs close."""
        if not self.available():
            yield {
                "type": "unavailable",
                "message": f"{self.config.ffmpeg_path} not found; use linear playback",
            }
            return

        stream_id = uuid.uuid4().hex[:8]
        self.session.temp_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"timeline-{stream_id}-", dir=self.session.temp_dir))
        unregister = self.registry.register_cleanup(partial(remove_tree, work_dir), name=f"timeline:{stream_id}")

        similarity = self._is_similar or FrameSimilarity(self.config.stable_threshold)
        tracker = RunTracker(similarity)
        detections = self._detections(video_path, work_dir)
        logger.info("timeline %s started for %s", stream_id, Path(video_path).name)

        try:
            async for detection in detections:
                previous = tracker.representative
                thumb = await asyncio.to_thread(tracker.push, detection)
                if thumb is not None:
                    yield self._publish(thumb, stream_id)
                if previous is not None and previous is not tracker.representative:
                    self._discard(previous)

            last = tracker.finish()
            if last is not None:
                yield self._publish(last, stream_id)
            logger.info(
                "timeline %s complete: %d thumbnails from %d detections",
                stream_id, tracker.emitted, tracker.detections,
            )
            yield {"type": "complete", "total": tracker.emitted}
        except SceneDetectionError as exc:
            logger.warning("timeline %s failed: %s", stream_id, exc)
            yield {"type": "error", "message": str(exc)}
        finally:
            await detections.aclose()
            remove_tree(work_dir)
            unregister()
