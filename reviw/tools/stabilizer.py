"""Frame stabilization for video timelines.

Scene detection at a low threshold reports every frame that changed at all,
which includes spinners, blinking cursors and animations. The stabilizer
groups consecutive detections into runs of mutually similar frames and
emits one thumbnail per run, taken from the run's *last* member, once the
run is closed by a dissimilar frame. Fluctuation that stays similar to
itself keeps replacing the representative and never produces its own
thumbnail; a real state change closes the run and yields the settled frame.

RunTracker is pure and synchronous and takes the similarity check as a
parameter.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COMPARE_SIZE = (64, 64)
SIGNATURE_CACHE_SIZE = 4


@dataclass(frozen=True)
class Detection:
    """A frame reported by scene detection."""

    time: float
    path: str
    score: Optional[float] = None


@dataclass(frozen=True)
class Thumbnail:
    """A closed run's representative, in emission order."""

    index: int
    time: float
    path: str


SimilarityCheck = Callable[[Detection, Detection], bool]


# ---------------------------------------------------------------------------
# Run tracking
# ---------------------------------------------------------------------------

class RunTracker:
    """Streaming run tracker.

    ``push`` returns a Thumbnail when the new detection closes the open run,
    ``finish`` closes the last run at end of input. Indices count from 0 and
    detections whose time does not advance are dropped, so both index and
    time increase strictly across everything this tracker emits.
    """

    def __init__(self, is_similar: SimilarityCheck):
        self._is_similar = is_similar
        self._representative: Optional[Detection] = None
        self._last_time: Optional[float] = None
        self._emitted = 0
        self.detections = 0
        self.dropped = 0

    @property
    def emitted(self) -> int:
        return self._emitted

    @property
    def representative(self) -> Optional[Detection]:
        return self._representative

    def push(self, detection: Detection) -> Optional[Thumbnail]:
        if self._last_time is not None and detection.time <= self._last_time:
            self.dropped += 1
            logger.debug("dropping out-of-order detection at %.3fs", detection.time)
            return None
        self._last_time = detection.time
        self.detections += 1

        current = self._representative
        if current is None:
            self._representative = detection
            return None
        if self._is_similar(current, detection):
            self._representative = detection
            return None

        self._representative = detection
        return self._emit(current)

    def finish(self) -> Optional[Thumbnail]:
        current = self._representative
        self._representative = None
        if current is None:
            return None
        return self._emit(current)

    def _emit(self, detection: Detection) -> Thumbnail:
        thumb = Thumbnail(index=self._emitted, time=detection.time, path=detection.path)
        self._emitted += 1
        return thumb


def stabilize(detections: Iterable[Detection], is_similar: SimilarityCheck) -> Iterator[Thumbnail]:
    """Lazily yield one thumbnail per closed run of similar detections."""
    tracker = RunTracker(is_similar)
    for detection in detections:
        thumb = tracker.push(detection)
        if thumb is not None:
            yield thumb
    last = tracker.finish()
    if last is not None:
        yield last


# ---------------------------------------------------------------------------
# Image similarity
# ---------------------------------------------------------------------------

def load_signature(path: str) -> Optional[np.ndarray]:
    """Load a frame as a small grayscale float array, or None if unreadable."""
    image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if image is None:
        return None
    small = cv2.resize(image, COMPARE_SIZE, interpolation=cv2.INTER_AREA)
    return small.astype(np.float32)


def signature_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """1.0 for identical signatures, 0.0 for fully inverted ones."""
    diff = float(np.mean(np.abs(a - b)))
    return 1.0 - diff / 255.0


class FrameSimilarity:
    """Similarity check on frame files, caching each frame's signature.

    Frames that cannot be read are treated as dissimilar so a broken frame
    never swallows a real state change.
    """

    def __init__(self, threshold: float):
        self.threshold = threshold
        self._cache: dict[str, Optional[np.ndarray]] = {}

    def signature(self, path: str) -> Optional[np.ndarray]:
        if path not in self._cache:
            while len(self._cache) >= SIGNATURE_CACHE_SIZE:
                self._cache.pop(next(iter(self._cache)))
            self._cache[path] = load_signature(path)
        return self._cache[path]

    def similarity(self, a: Detection, b: Detection) -> Optional[float]:
        sig_a = self.signature(a.path)
        sig_b = self.signature(b.path)
        if sig_a is None or sig_b is None:
            return None
        return signature_similarity(sig_a, sig_b)

    def __call__(self, a: Detection, b: Detection) -> bool:
        score = self.similarity(a, b)
        if score is None:
            logger.warning("unreadable frame comparing %s and %s", Path(a.path).name, Path(b.path).name)
            return False
        return score >= self.threshold
