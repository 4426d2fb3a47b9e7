"""Run one review server per file on sequential ports, as a unit.

The supervisor acquires every session before binding anything (a lock
conflict must fail before any listener exists), binds one socket per file
starting at the base port, then serves all apps with uvicorn on a single
event loop. Each app's /exit hands its feedback back here; when the last
server stops, or on SIGINT/SIGTERM, the collected feedback is written to
stdout as YAML and the cleanup registry releases locks and temp dirs.
"""

import asyncio
import contextlib
import errno
import logging
import signal
import socket
import sys
import webbrowser
from dataclasses import dataclass
from typing import Any, Optional, TextIO

import uvicorn
from fastapi import FastAPI

from reviw.annotations import render_results
from reviw.config import ReviewConfig
from reviw.registry import CleanupRegistry
from reviw.server import ReviewState, create_app
from reviw.session import Session, open_session
from reviw.session_lock import SessionLockManager
from reviw.tools.documents import ReviewDocument, load_document

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_SECONDS = 2
PORT_CONFLICT_ERRNOS = {errno.EADDRINUSE, errno.EACCES}


class _SupervisedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the supervisor.

    Several servers share one loop, so per-server handlers would overwrite
    each other.
    """

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


def bind_listener(host: str, port: int, attempts: int) -> tuple[socket.socket, int]:
    """Bind a TCP socket at ``port`` or the next free port after it.

    Raises:
        OSError: If no port in the range could be bound.
    """
    for candidate in range(port, min(port + attempts, 65536)):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, candidate))
        except OSError as exc:
            sock.close()
            if exc.errno in PORT_CONFLICT_ERRNOS:
                logger.debug("port %d unavailable, trying next", candidate)
                continue
            raise
        return sock, candidate
    raise OSError(errno.EADDRINUSE, f"no free port in {port}-{port + attempts - 1}")


@dataclass
class ReviewInstance:
    """One file's server and everything bound to it."""

    path: str
    document: ReviewDocument
    session: Session
    app: Optional[FastAPI] = None
    server: Optional[uvicorn.Server] = None
    sock: Optional[socket.socket] = None
    port: int = 0
    done: bool = False

    @property
    def state(self) -> ReviewState:
        return self.app.state.review


class ReviewSupervisor:
    """Starts and stops the per-file servers together."""

    def __init__(
        self,
        config: ReviewConfig,
        registry: CleanupRegistry,
        lock_manager: SessionLockManager,
        encoding: Optional[str] = None,
        open_browser: bool = False,
        watch: bool = True,
        out: Optional[TextIO] = None,
    ):
        self.config = config
        self.registry = registry
        self.lock_manager = lock_manager
        self.encoding = encoding
        self.open_browser = open_browser
        self.watch = watch
        self.out = out
        self.instances: list[ReviewInstance] = []
        self.results: list[dict[str, Any]] = []
        self._written = False

    # -----------------------------------------------------------------------
    # Setup
    # -----------------------------------------------------------------------

    def prepare(self, paths: list[str]) -> None:
        """Acquire a session per path and parse each document once.

        Raises:
            AlreadyLocked: If any file is already under review.
            OSError: If a file cannot be read.
        """
        for path in paths:
            session = open_session(path, self.registry, self.lock_manager)
            document = load_document(path, self.encoding)
            self.instances.append(ReviewInstance(path=path, document=document, session=session))

    def bind(self, base_port: Optional[int] = None) -> None:
        """Bind one listener per instance on sequential ports."""
        next_port = base_port if base_port is not None else self.config.base_port
        for inst in self.instances:
            inst.sock, inst.port = bind_listener(self.config.host, next_port, self.config.max_port_attempts)
            inst.session.port = inst.port
            self.registry.register_cleanup(inst.sock.close, name=f"socket:{inst.port}")
            next_port = inst.port + 1

            inst.app = create_app(
                inst.document,
                inst.session,
                self.registry,
                config=self.config,
                on_exit=self._exit_handler(inst),
                encoding=self.encoding,
                watch=self.watch,
            )
            server_config = uvicorn.Config(
                inst.app,
                host=self.config.host,
                port=inst.port,
                log_config=None,
                log_level="warning",
                access_log=False,
                lifespan="on",
                timeout_graceful_shutdown=GRACEFUL_SHUTDOWN_SECONDS,
            )
            inst.server = _SupervisedServer(server_config)

    def start(self, paths: list[str], base_port: Optional[int] = None) -> None:
        """Lock every file, then bind its listener. Nothing is bound on a conflict."""
        self.prepare(paths)
        self.bind(base_port)

    # -----------------------------------------------------------------------
    # Exit handling
    # -----------------------------------------------------------------------

    def _exit_handler(self, inst: ReviewInstance):
        def on_exit(state: ReviewState, feedback: dict[str, Any]) -> None:
            self.results.append(feedback)
            state.session.close()
            inst.done = True
            inst.server.should_exit = True
            remaining = sum(1 for i in self.instances if not i.done)
            logger.info("Server for %s closed. (%d remaining)", inst.document.title, remaining)
        return on_exit

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        """Stop every server; used for SIGINT/SIGTERM."""
        if signum is not None:
            logger.info("received %s, shutting down", signal.Signals(signum).name)
        for inst in self.instances:
            if inst.app is not None:
                inst.state.stop()
            if inst.server is not None:
                inst.server.should_exit = True

    def write_results(self) -> None:
        """Write the collected feedback to stdout. Only the first call writes."""
        if self._written:
            return
        self._written = True
        out = self.out or sys.stdout
        logger.info("=== All comments received ===")
        out.write(render_results(self.results))
        out.flush()

    # -----------------------------------------------------------------------
    # Serving
    # -----------------------------------------------------------------------

    async def _announce(self, inst: ReviewInstance) -> None:
        while not inst.server.started and not inst.server.should_exit:
            await asyncio.sleep(0.05)
        if not inst.server.started:
            return
        url = f"http://localhost:{inst.port}"
        logger.info("Viewer started: %s  (file: %s)", url, inst.document.title)
        if self.open_browser:
            try:
                webbrowser.open(url)
            except webbrowser.Error as exc:
                logger.warning("failed to open browser, open %s manually: %s", url, exc)

    async def serve(self) -> None:
        """Serve every instance until all have exited or a signal arrives."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown, signum)
            except (NotImplementedError, RuntimeError):
                pass

        announcers = [asyncio.create_task(self._announce(inst)) for inst in self.instances]
        try:
            await asyncio.gather(*(inst.server.serve(sockets=[inst.sock]) for inst in self.instances))
        finally:
            for task in announcers:
                task.cancel()
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(signum)
                except (NotImplementedError, RuntimeError):
                    pass

    def run(self) -> int:
        """Serve, write the feedback, release everything. Returns an exit code."""
        logger.info("Starting servers for %d file(s)...", len(self.instances))
        try:
            asyncio.run(self.serve())
        finally:
            self.write_results()
            self.registry.run()
        return 0
