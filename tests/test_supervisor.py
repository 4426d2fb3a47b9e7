"""Tests for supervisor.py — port allocation and result collection, no serving."""

import io
import os
import socket

import pytest
import yaml
from fastapi.testclient import TestClient

from reviw.config import ReviewConfig
from reviw.registry import CleanupRegistry
from reviw.session_lock import AlreadyLocked, SessionLockManager
from reviw.supervisor import ReviewSupervisor, bind_listener


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def blocker():
    """A listening socket occupying an ephemeral port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture()
def registry():
    reg = CleanupRegistry()
    yield reg
    reg.run()


@pytest.fixture()
def files(tmp_path):
    a = tmp_path / "a.csv"
    a.write_text("x,y\n1,2\n", encoding="utf-8")
    b = tmp_path / "b.md"
    b.write_text("# Notes\nline two\n", encoding="utf-8")
    return [str(a), str(b)]


def _supervisor(tmp_path, registry, out=None):
    config = ReviewConfig(lock_dir=tmp_path / "locks", max_port_attempts=20)
    manager = SessionLockManager(config.lock_dir, registry)
    return ReviewSupervisor(config, registry, manager, watch=False, out=out)


# ---------------------------------------------------------------------------
# bind_listener
# ---------------------------------------------------------------------------

class TestBindListener:
    def test_skips_occupied_port(self, blocker):
        sock, port = bind_listener("127.0.0.1", blocker, 20)
        try:
            assert port > blocker
        finally:
            sock.close()

    def test_free_port_used_as_is(self, blocker):
        sock, port = bind_listener("127.0.0.1", blocker, 20)
        sock.close()
        again, port_again = bind_listener("127.0.0.1", port, 1)
        again.close()
        assert port_again == port

    def test_gives_up(self, blocker):
        with pytest.raises(OSError):
            bind_listener("127.0.0.1", blocker, 1)


# ---------------------------------------------------------------------------
# start / exit collection
# ---------------------------------------------------------------------------

class TestSupervisor:
    def test_sequential_ports(self, tmp_path, registry, files, blocker):
        sup = _supervisor(tmp_path, registry)
        sup.start(files, base_port=blocker)
        ports = [inst.port for inst in sup.instances]
        assert ports[0] > blocker
        assert ports[1] > ports[0]
        assert [inst.session.port for inst in sup.instances] == ports
        assert [inst.document.mode for inst in sup.instances] == ["csv", "markdown"]

    def test_lock_conflict_binds_nothing(self, tmp_path, registry, files):
        sup = _supervisor(tmp_path, registry)
        sup.lock_manager.acquire(files[1])
        with pytest.raises(AlreadyLocked) as exc_info:
            sup.start(files)
        assert exc_info.value.pid == os.getpid()
        assert all(inst.sock is None for inst in sup.instances)

    def test_exit_collects_and_writes_combined_yaml(self, tmp_path, registry, files, blocker):
        out = io.StringIO()
        sup = _supervisor(tmp_path, registry, out=out)
        sup.start(files, base_port=blocker)

        first, second = sup.instances
        TestClient(first.app).post("/exit", json={
            "comments": [{"target": {"row": 2, "col": 1}, "text": "check"}],
        })
        assert first.done and first.server.should_exit
        assert not second.done
        assert first.session.closed

        TestClient(second.app).post("/exit", json={"summary": "ok"})
        sup.write_results()
        sup.write_results()

        result = yaml.safe_load(out.getvalue())
        assert [f["file"] for f in result["files"]] == files
        assert result["files"][0]["comments"][0]["content"] == "check"
        assert result["files"][1]["summary"] == "ok"

    def test_single_file_output_is_flat(self, tmp_path, registry, files):
        out = io.StringIO()
        sup = _supervisor(tmp_path, registry, out=out)
        sup.start(files[:1])
        TestClient(sup.instances[0].app).post("/exit", json={})
        sup.write_results()
        assert yaml.safe_load(out.getvalue())["file"] == files[0]

    def test_request_shutdown(self, tmp_path, registry, files):
        sup = _supervisor(tmp_path, registry)
        sup.start(files)
        sup.request_shutdown()
        assert all(inst.server.should_exit for inst in sup.instances)

    def test_registry_releases_everything(self, tmp_path, files):
        registry = CleanupRegistry()
        sup = _supervisor(tmp_path, registry)
        sup.start(files)
        socks = [inst.sock for inst in sup.instances]
        registry.run()
        assert all(s.fileno() == -1 for s in socks)
        assert not any(sup.lock_manager.lock_path_for(f).exists() for f in files)
        assert all(not inst.session.temp_dir.exists() for inst in sup.instances)
