import io
import tarfile

import pytest

import build_gdextension


@pytest.fixture
def commands(monkeypatch):
    """Record every external command instead of running it."""
    calls = []

    def fake_run_command(cmd, cwd=None, env=None):
        calls.append({"cmd": [str(c) for c in cmd], "cwd": cwd, "env": env})

    monkeypatch.setattr(build_gdextension, "run_command", fake_run_command)
    return calls


@pytest.fixture
def ffmpeg_tarball(tmp_path):
    """A small tar.xz shaped like a prebuilt FFmpeg release."""
    path = tmp_path / "release" / "ffmpeg-master-latest-linux64-lgpl-godot.tar.xz"
    path.parent.mkdir()
    payload = b"prebuilt libavcodec"
    with tarfile.open(path, "w:xz") as tf:
        info = tarfile.TarInfo("ffmpeg-master-latest-linux64-lgpl-godot/lib/libavcodec.a")
        info.size = len(payload)
        tf.addfile(info, io.BytesIO(payload))
    return path


@pytest.fixture
def make_config(tmp_path):
    def factory(**kwargs):
        kwargs.setdefault("root_dir", tmp_path)
        kwargs.setdefault("pause", False)
        return build_gdextension.BuildConfig(**kwargs)
    return factory
