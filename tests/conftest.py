"""
Shared fixtures: isolated app instances and a fake yt-dlp executable.
"""

import asyncio
import shlex
import sys
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

import main

# Stands in for yt-dlp: behaviour is picked with FAKE_YTDLP_MODE (ok, fail, hang).
FAKE_YTDLP_SCRIPT = r'''
import json
import os
import re
import sys
import time

args = sys.argv[1:]
mode = os.environ.get("FAKE_YTDLP_MODE", "ok")

if mode == "hang":
    time.sleep(60)
    sys.exit(0)

if mode == "fail":
    sys.stderr.write("WARNING: falling back to generic extractor\n")
    sys.stderr.write("ERROR: unsupported format\n")
    sys.exit(1)

if "--dump-json" in args:
    print(json.dumps({
        "id": "dQw4w9WgXcQ",
        "title": "Sample Video",
        "duration": 212,
        "uploader": "Sample Channel",
        "thumbnail": "https://example.com/thumb.jpg",
        "view_count": 1000,
        "upload_date": "20240101",
        "filesize": 4096,
        "formats": [],
    }))
    sys.exit(0)

template = args[args.index("-o") + 1]
ext = args[args.index("--audio-format") + 1] if "--extract-audio" in args else "mp4"
values = {"title": "Sample Video", "ext": ext}
target = re.sub(r"%\((\w+)\)[^a-zA-Z]*[a-zA-Z]", lambda m: values[m.group(1)], template)

for pct in ("0.0", "42.5", "100.0"):
    print(f"[download] {pct:>5}% of 10.00MiB at 1.00MiB/s ETA 00:01", flush=True)
with open(target, "wb") as fh:
    fh.write(b"fake media bytes")
sys.exit(0)
'''


@pytest.fixture
def fake_ytdlp(tmp_path: Path) -> str:
    """Command line that runs the fake yt-dlp script."""
    script = tmp_path / "fake_yt_dlp.py"
    script.write_text(FAKE_YTDLP_SCRIPT)
    return shlex.join([sys.executable, str(script)])


@pytest.fixture
def download_dir(tmp_path: Path) -> Path:
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def service_config(download_dir: Path, fake_ytdlp: str) -> main.ServiceConfig:
    return main.ServiceConfig(
        download_dir=download_dir,
        ytdlp_command=fake_ytdlp,
        download_timeout=20,
        info_timeout=20,
    )


@pytest.fixture
def store() -> main.JobStore:
    return main.JobStore()


@pytest.fixture
def app(service_config: main.ServiceConfig):
    return main.create_app(service_config, main.JanitorConfig(enabled=False))


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async client bound to a fresh app; running downloads are cancelled afterwards."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.controller.shutdown()


@pytest.fixture
def wait_for_terminal() -> Callable[..., Awaitable[main.Job]]:
    """Poll a store until the job reaches completed or error."""

    async def _wait(store: main.JobStore, job_id: str, timeout: float = 15.0) -> main.Job:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = store.get_status(job_id)
            if job is not None and job.is_terminal:
                return job
            if loop.time() > deadline:
                raise AssertionError(f"job {job_id} did not finish, last state: {job}")
            await asyncio.sleep(0.02)

    return _wait


@pytest.fixture
def sample_video_url() -> str:
    return "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
