"""Review server — one FastAPI app per reviewed file.

Endpoints:
    GET    /                      -> parsed document + existing comments
    GET    /healthz               -> "ok" once the listener accepts connections
    GET    /video-timeline?path=  -> SSE stream of stabilized video thumbnails
    GET    /timeline-thumbs/{name}-> a thumbnail emitted by /video-timeline
    POST   /comments              -> save (or replace) the comment at a target
    DELETE /comments              -> remove the comment at a target
    GET    /sse                   -> "reload" events when the file changes on disk
    POST   /exit                  -> submit comments + summary and end the session
    GET    /{path}                -> static assets next to the reviewed file
"""

import asyncio
import json
import logging
import mimetypes
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, StreamingResponse

from reviw import __version__
from reviw.annotations import (
    CommentIn,
    CommentStore,
    ExitRequest,
    InvalidTarget,
    TargetIn,
    build_feedback,
    render_feedback,
    resolve_target,
)
from reviw.config import ReviewConfig, get_config
from reviw.file_watcher import FileWatcher
from reviw.registry import CleanupRegistry
from reviw.session import Session
from reviw.tools.documents import STDIN_MARKER, ReviewDocument, load_document
from reviw.tools.video_timeline import THUMB_ROUTE, VideoTimelineExtractor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MEDIA_EXTENSIONS = {".mp4", ".mov", ".mkv", ".avi", ".webm", ".m4v"}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

HEARTBEAT_SECONDS = 25.0
RELOAD_DEBOUNCE_SECONDS = 0.15
SSE_RETRY_MS = 3000

ExitCallback = Callable[["ReviewState", dict[str, Any]], None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def error_response(status_code: int, error_msg: str, error_code: str):
    """Raise HTTPException with a consistent JSON error body."""
    raise HTTPException(
        status_code=status_code,
        detail={"status": "error", "error": error_msg, "code": error_code},
    )


def sse_event(data: Any) -> str:
    """Frame one server-sent event. Dicts are sent as JSON."""
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"data: {payload}\n\n"


def print_feedback(state: "ReviewState", feedback: dict[str, Any]) -> None:
    """Default exit handler: write the YAML to stdout and end the session."""
    sys.stdout.write(render_feedback(feedback))
    sys.stdout.flush()
    state.session.close()


# ---------------------------------------------------------------------------
# Per-app state
# ---------------------------------------------------------------------------

class ReviewState:
    """Everything one server instance owns: document, comments, session.

    Mutated only from request handlers and loop callbacks, all on the one
    event loop, so no locking is needed.
    """

    def __init__(
        self,
        document: ReviewDocument,
        session: Session,
        registry: CleanupRegistry,
        config: ReviewConfig,
        extractor: VideoTimelineExtractor,
        on_exit: ExitCallback,
        encoding: Optional[str] = None,
    ):
        self.document = document
        self.session = session
        self.registry = registry
        self.config = config
        self.extractor = extractor
        self.on_exit = on_exit
        self.encoding = encoding
        self.comments = CommentStore()
        self.sse_clients: set[asyncio.Queue] = set()
        self.exited = False
        self.watcher: Optional[FileWatcher] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._reload_handle: Optional[asyncio.TimerHandle] = None

    @property
    def base_dir(self) -> Optional[Path]:
        if self.document.path == STDIN_MARKER:
            return None
        return Path(self.document.path).parent

    def broadcast(self, message: Optional[str]) -> None:
        """Queue a message for every /sse client; None ends their streams."""
        for queue in list(self.sse_clients):
            queue.put_nowait(message)

    def reload(self) -> None:
        """Re-read the document from disk and tell clients to refresh."""
        self._reload_handle = None
        try:
            self.document = load_document(self.document.path, self.encoding)
        except OSError as exc:
            logger.warning("reload of %s failed: %s", self.document.title, exc)
            return
        logger.info("%s changed on disk, reloaded", self.document.title)
        self.broadcast("reload")

    def schedule_reload(self) -> None:
        """Called from the watcher thread; debounces onto the event loop."""
        if self.loop is None or self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self._debounce_reload)

    def _debounce_reload(self) -> None:
        if self._reload_handle is not None:
            self._reload_handle.cancel()
        self._reload_handle = self.loop.call_later(RELOAD_DEBOUNCE_SECONDS, self.reload)

    def start_watching(self) -> None:
        if self.base_dir is None or self.watcher is not None:
            return
        self.watcher = FileWatcher(self.document.path, self.schedule_reload)
        try:
            self.watcher.start()
        except OSError as exc:
            logger.warning("failed to start file watcher for %s: %s", self.document.title, exc)
            self.watcher = None

    def stop(self) -> None:
        """Stop background work and end open /sse streams."""
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        if self._reload_handle is not None:
            self._reload_handle.cancel()
            self._reload_handle = None
        self.broadcast(None)

    async def finish(self, feedback: dict[str, Any]) -> None:
        """Run on the loop after the /exit response has been sent."""
        self.stop()
        self.on_exit(self, feedback)


async def _reload_frames(state: ReviewState) -> AsyncIterator[str]:
    queue: asyncio.Queue = asyncio.Queue()
    state.sse_clients.add(queue)
    try:
        yield f"retry: {SSE_RETRY_MS}\n\n"
        while not state.exited:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                message = "ping"
            if message is None:
                break
            yield sse_event(message)
    finally:
        state.sse_clients.discard(queue)


async def _timeline_frames(request: Request, events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    try:
        async for event in events:
            if await request.is_disconnected():
                logger.info("timeline client disconnected, stopping extraction")
                break
            yield sse_event(event)
    finally:
        await events.aclose()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    document: ReviewDocument,
    session: Session,
    registry: CleanupRegistry,
    config: Optional[ReviewConfig] = None,
    on_exit: Optional[ExitCallback] = None,
    extractor: Optional[VideoTimelineExtractor] = None,
    encoding: Optional[str] = None,
    watch: bool = False,
) -> FastAPI:
    """Build the app serving one document.

    Args:
        document: The parsed review target.
        session: The session (lock + temp dir) this app owns.
        registry: Process cleanup registry.
        config: Runtime settings; the process config when omitted.
        on_exit: Called with the feedback mapping after /exit responds.
            Defaults to printing the YAML and closing the session.
        extractor: Timeline extractor; built from ``config`` when omitted.
        encoding: Encoding used to re-read the file on reload.
        watch: Reload the document when the file changes on disk.
    """
    config = config or get_config()
    extractor = extractor or VideoTimelineExtractor(session, registry, config)
    state = ReviewState(document, session, registry, config, extractor, on_exit or print_feedback, encoding)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.loop = asyncio.get_running_loop()
        if watch:
            state.start_watching()
        yield
        state.stop()

    app = FastAPI(title=f"reviw: {document.title}", version=__version__, lifespan=lifespan)
    app.state.review = state

    async def check_body_size(request: Request) -> None:
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > config.max_body_bytes:
            error_response(413, "payload too large", "INVALID_INPUT")

    def require_open() -> None:
        if state.exited or state.session.closed:
            error_response(409, "review session already submitted", "SESSION_CLOSED")

    # -----------------------------------------------------------------------
    # Document + comments
    # -----------------------------------------------------------------------

    @app.get("/")
    async def index():
        """Return the parsed document and the comments saved so far."""
        return JSONResponse(
            {
                "document": state.document.model_dump(mode="json"),
                "comments": state.comments.as_json(),
            },
            headers=NO_CACHE_HEADERS,
        )

    @app.get("/healthz")
    async def healthz():
        """Readiness probe for launchers."""
        return PlainTextResponse("ok")

    @app.post("/comments", dependencies=[Depends(check_body_size), Depends(require_open)])
    async def save_comment(req: CommentIn):
        """Save or replace the comment at a target. Blank text removes it."""
        try:
            location = resolve_target(state.document, req.target)
        except InvalidTarget as exc:
            error_response(400, str(exc), "INVALID_TARGET")
        comment = state.comments.save(req.target, req.text)
        return {
            "status": "ok",
            "target": req.target.model_dump(exclude_none=True),
            "location": location,
            "saved": comment is not None,
            "count": len(state.comments),
        }

    @app.delete("/comments", dependencies=[Depends(require_open)])
    async def delete_comment(req: TargetIn):
        """Remove the comment at a target, if any."""
        deleted = state.comments.delete(req.target)
        return {"status": "ok", "deleted": deleted, "count": len(state.comments)}

    @app.post("/exit", dependencies=[Depends(check_body_size), Depends(require_open)])
    async def exit_review(req: ExitRequest, background: BackgroundTasks):
        """Submit the final comment set and summary, then end the session."""
        state.comments.merge(req.comments)
        feedback = build_feedback(state.document, state.comments.all(), req.summary)
        state.exited = True
        logger.info(
            "review of %s submitted with %d comment(s)%s",
            state.document.title, len(feedback["comments"]),
            f" ({req.reason})" if req.reason else "",
        )
        background.add_task(state.finish, feedback)
        return {"status": "ok", "comments": len(feedback["comments"])}

    # -----------------------------------------------------------------------
    # Streams
    # -----------------------------------------------------------------------

    @app.get("/sse")
    async def reload_stream():
        """Server-sent "reload" events whenever the reviewed file changes."""
        return StreamingResponse(_reload_frames(state), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/video-timeline", dependencies=[Depends(require_open)])
    async def video_timeline(request: Request, path: str = Query(..., description="Absolute video path")):
        """Stream stabilized thumbnails for a video as server-sent events."""
        video = Path(path)
        if not video.is_absolute():
            error_response(400, f"path must be absolute: {path}", "INVALID_INPUT")
        if not video.is_file():
            error_response(400, f"file not found: {path}", "FILE_NOT_FOUND")
        if video.suffix.lower() not in MEDIA_EXTENSIONS:
            error_response(400, f"unsupported file extension: {video.suffix}", "INVALID_INPUT")
        events = state.extractor.events(str(video))
        return StreamingResponse(
            _timeline_frames(request, events),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get(THUMB_ROUTE + "/{name}")
    async def timeline_thumb(name: str):
        """Serve a thumbnail kept from an earlier /video-timeline stream."""
        if "/" in name or "\\" in name or ".." in name:
            error_response(403, "invalid thumbnail name", "FORBIDDEN")
        thumb = state.session.temp_dir / "thumbs" / name
        if not thumb.is_file():
            error_response(404, "thumbnail not found", "NOT_FOUND")
        return FileResponse(str(thumb), media_type="image/jpeg")

    # -----------------------------------------------------------------------
    # Static assets
    # -----------------------------------------------------------------------

    @app.get("/{asset_path:path}")
    async def static_asset(asset_path: str):
        """Serve images and other assets relative to the reviewed file."""
        if ".." in asset_path:
            error_response(403, "path traversal not allowed", "FORBIDDEN")
        base = state.base_dir
        if base is None:
            error_response(404, "not found", "NOT_FOUND")
        base = base.resolve()
        candidate = (base / asset_path).resolve()
        try:
            candidate.relative_to(base)
        except ValueError:
            error_response(403, "path outside the document directory", "FORBIDDEN")
        if not candidate.is_file():
            error_response(404, "not found", "NOT_FOUND")
        content_type, _ = mimetypes.guess_type(str(candidate))
        return FileResponse(str(candidate), media_type=content_type or "application/octet-stream")

    return app
