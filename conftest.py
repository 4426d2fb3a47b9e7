import shutil

import pytest

from reviw.config import reset_config_cache


def pytest_configure(config):
    """Register environment-aware pytest markers."""
    config.addinivalue_line("markers", "needs_ffmpeg: requires an ffmpeg binary on PATH")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose external tools are missing."""
    ffmpeg = shutil.which("ffmpeg")

    for item in items:
        if item.get_closest_marker("needs_ffmpeg") and ffmpeg is None:
            item.add_marker(pytest.mark.skip(reason="Requires ffmpeg on PATH"))


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.reviw."""
    monkeypatch.setenv("REVIW_CONFIG", str(tmp_path / "no-config.json"))
    monkeypatch.setenv("REVIW_LOCK_DIR", str(tmp_path / "locks"))
    reset_config_cache()
    yield
    reset_config_cache()
