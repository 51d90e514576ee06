import asyncio
import codecs
import contextlib
import contextvars
import datetime
import json
import logging
import os
import re
import shlex
import shutil
import signal
import sys
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.types import Receive, Scope, Send
from yt_dlp.version import __version__ as YT_DLP_VERSION

# ----------------------------
# Logging setup
# ----------------------------

_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Attach request_id to all log records for correlation."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get()
        return True


_log_handler = logging.StreamHandler(sys.stdout)
_log_handler.addFilter(RequestIdFilter())

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s",
    handlers=[_log_handler],
)
logger = logging.getLogger("yt-dlp-service")


# ----------------------------
# Settings
# ----------------------------

DOWNLOAD_DIR_ENV = "DOWNLOAD_DIR"
DEFAULT_DOWNLOAD_DIR = "/tmp/downloads"

YTDLP_COMMAND_ENV = "YTDLP_COMMAND"
DEFAULT_YTDLP_COMMAND = "yt-dlp"

DOWNLOAD_TIMEOUT_ENV = "DOWNLOAD_TIMEOUT"
INFO_TIMEOUT_ENV = "INFO_TIMEOUT"
AUDIO_FORMAT_ENV = "AUDIO_FORMAT"
COOKIES_FILE_ENV = "COOKIES_FILE"
STATUS_TTL_ENV = "STATUS_TTL_SECONDS"

# Janitor configuration environment variables
CLEANUP_ENABLED_ENV = "CLEANUP_ENABLED"
CLEANUP_INTERVAL_ENV = "CLEANUP_INTERVAL"
CLEANUP_MAX_AGE_ENV = "CLEANUP_MAX_AGE"
CLEANUP_EXTRA_DIRS_ENV = "CLEANUP_EXTRA_DIRS"


def _env_truthy(value: str | None, *, default: bool = False) -> bool:
    """Parse common truthy/falsey strings from environment variables."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _env_int(value: str | None, *, default: int) -> int:
    """Parse integer from environment variable with default."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(value: str | None, *, default: float) -> float:
    """Parse float from environment variable with default."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_paths(value: str | None) -> list[Path]:
    """Parse a comma separated list of directories."""
    if not value:
        return []
    return [Path(part.strip()) for part in value.split(",") if part.strip()]


class ServiceConfig(BaseModel):
    """
    Download service configuration loaded from environment variables.

    - download_dir: scratch directory holding artifacts until they are retrieved
    - ytdlp_command: command line used to invoke yt-dlp (shell-split)
    - download_timeout: wall-clock limit for one download attempt, in seconds
    - info_timeout: limit for a metadata lookup, in seconds
    - audio_format: target format when quality is "audio"
    - cookies_file: cookies.txt passed to every invocation (optional)
    - status_ttl: evict finished jobs older than this many seconds (0 disables)
    """

    download_dir: Path = Field(default=Path(DEFAULT_DOWNLOAD_DIR))
    ytdlp_command: str = Field(default=DEFAULT_YTDLP_COMMAND)
    download_timeout: float = Field(default=600.0, gt=0)
    info_timeout: float = Field(default=30.0, gt=0)
    audio_format: str = Field(default="mp3")
    cookies_file: str | None = Field(default=None)
    status_ttl: float = Field(default=0.0, ge=0)

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        cookies_file = os.getenv(COOKIES_FILE_ENV)
        if cookies_file:
            cookies_file = cookies_file.strip()
            if not Path(cookies_file).is_file():
                logger.warning("COOKIES_FILE points to non-existent file=%s", cookies_file)
                cookies_file = None
        cfg = cls(
            download_dir=Path(os.getenv(DOWNLOAD_DIR_ENV, DEFAULT_DOWNLOAD_DIR)),
            ytdlp_command=os.getenv(YTDLP_COMMAND_ENV, DEFAULT_YTDLP_COMMAND).strip()
            or DEFAULT_YTDLP_COMMAND,
            download_timeout=_env_float(os.getenv(DOWNLOAD_TIMEOUT_ENV), default=600.0),
            info_timeout=_env_float(os.getenv(INFO_TIMEOUT_ENV), default=30.0),
            audio_format=os.getenv(AUDIO_FORMAT_ENV, "mp3").strip() or "mp3",
            cookies_file=cookies_file or None,
            status_ttl=_env_float(os.getenv(STATUS_TTL_ENV), default=0.0),
        )
        logger.info(
            "Service config loaded download_dir=%s ytdlp_command=%s download_timeout=%s info_timeout=%s cookies_file_set=%s status_ttl=%s",
            cfg.download_dir,
            cfg.ytdlp_command,
            cfg.download_timeout,
            cfg.info_timeout,
            bool(cfg.cookies_file),
            cfg.status_ttl,
        )
        return cfg


class JanitorConfig(BaseModel):
    """Periodic cleanup of stale files in the download directory."""

    enabled: bool = Field(default=True)
    interval: float = Field(default=3600.0, gt=0, description="Seconds between sweeps")
    max_age: float = Field(default=3600.0, ge=0, description="Files older than this are deleted")
    extra_dirs: list[Path] = Field(
        default_factory=list,
        description="Additional directories holding expiring auxiliary files",
    )

    @classmethod
    def from_env(cls) -> "JanitorConfig":
        cfg = cls(
            enabled=_env_truthy(os.getenv(CLEANUP_ENABLED_ENV), default=True),
            interval=_env_int(os.getenv(CLEANUP_INTERVAL_ENV), default=3600),
            max_age=_env_int(os.getenv(CLEANUP_MAX_AGE_ENV), default=3600),
            extra_dirs=_env_paths(os.getenv(CLEANUP_EXTRA_DIRS_ENV)),
        )
        logger.info(
            "Janitor config loaded enabled=%s interval=%s max_age=%s extra_dirs=%s",
            cfg.enabled,
            cfg.interval,
            cfg.max_age,
            [str(d) for d in cfg.extra_dirs],
        )
        return cfg


# ----------------------------
# Domain models
# ----------------------------


class JobStatus(str, Enum):
    starting = "starting"
    downloading = "downloading"
    completed = "completed"
    error = "error"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.error})


class Job(BaseModel):
    id: str
    status: JobStatus = JobStatus.starting
    progress: float | None = None
    error: str | None = None
    url: str = ""
    quality: str = "best"
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def public_view(self) -> dict[str, Any]:
        """Status payload returned to polling clients."""
        data: dict[str, Any] = {"status": self.status.value}
        if self.progress is not None:
            data["progress"] = self.progress
        if self.error is not None:
            data["error"] = self.error
        return data


class DownloadRequest(BaseModel):
    url: str | None = None
    quality: str | None = Field(
        default="best",
        description="'best', 'audio', or an explicit yt-dlp format selector",
    )


class InfoRequest(BaseModel):
    url: str | None = None


class InvalidDownloadRequest(ValueError):
    """Raised when a download request is rejected before any job exists."""


class ToolUnavailableError(RuntimeError):
    """Raised when the yt-dlp executable cannot be located."""


# ----------------------------
# Status store
# ----------------------------


class JobStore:
    """
    In-memory job status records keyed by job id.

    One instance lives for the lifetime of the process and is shared by the
    download controller and the file endpoint. Records have no capacity bound;
    finished records are only dropped when their file is retrieved or, when a
    TTL is configured, by evict_expired().
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def create_job(self, url: str = "", quality: str = "best") -> str:
        job_id = str(uuid.uuid4())
        self._jobs[job_id] = Job(id=job_id, url=url, quality=quality)
        logger.info("Created job job_id=%s quality=%s url=%s", job_id, quality, url)
        return job_id

    def get_status(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def set_status(self, job_id: str, **fields: Any) -> Job:
        """Merge fields into the job record, creating it when absent.

        Finished jobs are immutable; updates to them are ignored.
        """
        current = self._jobs.get(job_id)
        if current is None:
            job = Job.model_validate({**fields, "id": job_id})
        elif current.is_terminal:
            logger.warning(
                "Ignoring update to finished job job_id=%s status=%s fields=%s",
                job_id,
                current.status.value,
                sorted(fields),
            )
            return current
        else:
            job = Job.model_validate(
                {**current.model_dump(), **fields, "id": job_id, "updated_at": time.time()}
            )
        self._jobs[job_id] = job
        logger.debug(
            "Updated job job_id=%s status=%s progress=%s", job_id, job.status.value, job.progress
        )
        return job

    def delete_status(self, job_id: str) -> Job | None:
        return self._jobs.pop(job_id, None)

    def claim_completed(self, job_id: str) -> Job | None:
        """Remove and return the job only if it is completed."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.completed:
            return None
        return self._jobs.pop(job_id)

    def evict_expired(self, max_age: float, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and now - job.updated_at > max_age
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info("Evicted expired jobs count=%d max_age=%s", len(expired), max_age)
        return expired

    def list_jobs(self) -> list[Job]:
        return list(self._jobs.values())


# ----------------------------
# Progress parsing
# ----------------------------

PROGRESS_PATTERN = re.compile(r"(\d+(?:\.\d+)?)%")


def parse_progress(text: str) -> float | None:
    """Return the first percentage in text, e.g. 42.5 for '[download]  42.5% of 10MiB'."""
    match = PROGRESS_PATTERN.search(text)
    if match is None:
        return None
    return float(match.group(1))


def apply_progress(job: Job, text: str) -> Job:
    """
    Advance a job with a line of tool output.

    Returns the same object when the line carries no percentage or the job has
    already finished. Otherwise the job moves to downloading; its progress is
    clamped to 0-100 and never goes backwards (yt-dlp restarts at 0% for the
    second stream of a merged video+audio download).
    """
    if job.is_terminal:
        return job
    value = parse_progress(text)
    if value is None:
        return job
    value = min(max(value, 0.0), 100.0)
    if job.status == JobStatus.downloading and job.progress is not None:
        value = max(value, job.progress)
    return job.model_copy(update={"status": JobStatus.downloading, "progress": value})


# ----------------------------
# Subprocess runner
# ----------------------------

MAX_ERROR_LENGTH = 1000
_STREAM_CHUNK_SIZE = 64 * 1024
_LINE_BREAK = re.compile(r"[\r\n]")


def summarize_stderr(stderr: str, returncode: int) -> str:
    """Human readable failure message from yt-dlp's stderr."""
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    errors = [line for line in lines if line.startswith("ERROR:")]
    if errors:
        message = "\n".join(errors)
    elif lines:
        message = "\n".join(lines)
    else:
        message = f"Process exited with code {returncode}"
    if len(message) > MAX_ERROR_LENGTH:
        message = message[: MAX_ERROR_LENGTH - 3] + "..."
    return message


class ToolError(Exception):
    """Base class for a failed yt-dlp invocation."""

    reason = "tool-error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ToolExitError(ToolError):
    reason = "nonzero-exit"

    def __init__(self, returncode: int, stderr: str):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(summarize_stderr(stderr, returncode))


class ToolTimeoutError(ToolError):
    reason = "timeout"

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Process timed out after {timeout:g} seconds")


class ToolSpawnError(ToolError):
    reason = "spawn-error"


async def _pump_stream(
    stream: asyncio.StreamReader,
    sink: list[str],
    on_line: Callable[[str], None] | None = None,
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        chunk = await stream.read(_STREAM_CHUNK_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            sink.append(text)
            if on_line is not None:
                *lines, pending = _LINE_BREAK.split(pending + text)
                for line in lines:
                    if line.strip():
                        on_line(line)
        if not chunk:
            break
    if on_line is not None and pending.strip():
        on_line(pending)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    # The child leads its own session; helpers it started (ffmpeg) share the group
    # and hold the output pipes open until they exit.
    with contextlib.suppress(ProcessLookupError):
        os.killpg(process.pid, signal.SIGKILL)
    await process.wait()


async def run_tool(
    command: Sequence[str],
    timeout: float,
    on_stdout: Callable[[str], None] | None = None,
) -> str:
    """
    Run an external command and return its stdout.

    Every failure is raised from the awaited coroutine as a ToolError:
    ToolSpawnError when the process cannot start, ToolTimeoutError when it
    outlives the timeout (the process is killed first), ToolExitError on a
    non-zero exit code. on_stdout receives each non-empty stdout line in order
    while the process runs. Cancelling the caller kills the process as well.
    """
    if not command:
        raise ToolSpawnError("Empty command")

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        logger.warning("Failed to spawn process executable=%s error=%s", command[0], exc)
        raise ToolSpawnError(f"Failed to start {command[0]}: {exc}") from exc

    assert process.stdout is not None and process.stderr is not None
    logger.debug("Spawned process pid=%s command=%s", process.pid, shlex.join(command))

    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []
    start = time.monotonic()
    try:
        await asyncio.wait_for(
            asyncio.gather(
                _pump_stream(process.stdout, stdout_chunks, on_stdout),
                _pump_stream(process.stderr, stderr_chunks),
                process.wait(),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        await _terminate(process)
        logger.warning("Process killed after timeout pid=%s timeout=%s", process.pid, timeout)
        raise ToolTimeoutError(timeout) from None
    except BaseException:
        await _terminate(process)
        raise

    elapsed_ms = int((time.monotonic() - start) * 1000)
    returncode = process.returncode
    logger.debug(
        "Process exited pid=%s returncode=%s elapsed_ms=%d", process.pid, returncode, elapsed_ms
    )
    if returncode != 0:
        raise ToolExitError(returncode if returncode is not None else -1, "".join(stderr_chunks))
    return "".join(stdout_chunks)


Runner = Callable[..., Awaitable[str]]


# ----------------------------
# yt-dlp invocation
# ----------------------------

OUTPUT_TEMPLATE = "{job_id}_%(title).150s.%(ext)s"


def resolve_tool_command(command_line: str) -> list[str] | None:
    """Turn the configured command line into an argv prefix, or None if unavailable."""
    parts = shlex.split(command_line)
    if not parts:
        return None
    executable = shutil.which(parts[0])
    if executable:
        return [executable, *parts[1:]]
    if parts == [DEFAULT_YTDLP_COMMAND]:
        # No console script on PATH; the installed yt_dlp package runs as a module.
        return [sys.executable, "-m", "yt_dlp"]
    return None


def quality_args(quality: str | None, audio_format: str) -> list[str]:
    selector = (quality or "").strip()
    if selector in ("", "best"):
        return []
    if selector == "audio":
        return ["--extract-audio", "--audio-format", audio_format]
    return ["-f", selector]


def build_download_args(job_id: str, url: str, quality: str | None, config: ServiceConfig) -> list[str]:
    output = config.download_dir / OUTPUT_TEMPLATE.format(job_id=job_id)
    args = ["-o", str(output)]
    args.extend(quality_args(quality, config.audio_format))
    # Artifacts keep the download time as mtime; the janitor ages files by it.
    args.extend(["--newline", "--no-playlist", "--no-mtime"])
    if config.cookies_file:
        args.extend(["--cookies", config.cookies_file])
    args.extend(["--", url])
    return args


INFO_FIELDS = ("title", "duration", "thumbnail", "uploader", "view_count", "upload_date", "filesize")
_VIDEO_ID_PATTERN = re.compile(r"(?:[?&]v=|youtu\.be/|/shorts/|/embed/)([A-Za-z0-9_-]{11})")


def placeholder_info(url: str) -> dict[str, Any]:
    """Best-effort metadata derived from the URL alone."""
    match = _VIDEO_ID_PATTERN.search(url)
    video_id = match.group(1) if match else None
    return {
        "title": f"Video {video_id}" if video_id else "Unknown video",
        "duration": None,
        "thumbnail": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg" if video_id else None,
        "uploader": "Unknown",
        "view_count": None,
        "upload_date": None,
        "filesize": None,
        "placeholder": True,
    }


async def fetch_info(url: str, config: ServiceConfig, runner: Runner | None = None) -> dict[str, Any]:
    runner = runner or run_tool
    command = resolve_tool_command(config.ytdlp_command)
    if command is None:
        logger.warning("yt-dlp unavailable for info lookup command=%s", config.ytdlp_command)
        return placeholder_info(url)

    start = time.monotonic()
    try:
        stdout = await runner(
            [*command, "--dump-json", "--no-download", "--no-playlist", "--", url],
            config.info_timeout,
        )
        lines = stdout.strip().splitlines()
        info = json.loads(lines[0]) if lines else None
        if not isinstance(info, dict):
            raise ValueError("yt-dlp did not print a JSON object")
    except (ToolError, ValueError) as exc:
        logger.warning("Info lookup failed, using placeholder url=%s error=%s", url, str(exc)[:200])
        return placeholder_info(url)

    logger.info(
        "Info lookup done url=%s elapsed_ms=%d", url, int((time.monotonic() - start) * 1000)
    )
    data = {field: info.get(field) for field in INFO_FIELDS}
    data["placeholder"] = False
    return data


# ----------------------------
# Download controller
# ----------------------------


class DownloadController:
    """
    Runs downloads in the background and records their outcome in a JobStore.

    Each download is one yt-dlp process watched by one asyncio task; the task
    handle is kept until the task finishes so shutdown can cancel it.
    """

    def __init__(self, store: JobStore, config: ServiceConfig, runner: Runner | None = None):
        self.store = store
        self.config = config
        self._runner = runner or run_tool
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def task_for(self, job_id: str) -> asyncio.Task[None] | None:
        return self._tasks.get(job_id)

    def start_download(self, url: str | None, quality: str | None = "best") -> str:
        """Validate the request, create a job and start it; returns the job id immediately."""
        url = (url or "").strip()
        if not url:
            raise InvalidDownloadRequest("URL is required")

        command = resolve_tool_command(self.config.ytdlp_command)
        if command is None:
            logger.error("yt-dlp executable not found command=%s", self.config.ytdlp_command)
            raise ToolUnavailableError("yt-dlp is not available on this server")

        quality = (quality or "").strip() or "best"
        job_id = self.store.create_job(url=url, quality=quality)
        argv = [*command, *build_download_args(job_id, url, quality, self.config)]

        task = asyncio.create_task(self._run(job_id, argv), name=f"download-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _task: self._tasks.pop(job_id, None))
        logger.info("Queued download job_id=%s quality=%s", job_id, quality)
        return job_id

    def _on_output(self, job_id: str, line: str) -> None:
        job = self.store.get_status(job_id)
        if job is None:
            return
        updated = apply_progress(job, line)
        if updated is not job:
            self.store.set_status(job_id, status=updated.status, progress=updated.progress)

    async def _run(self, job_id: str, argv: list[str]) -> None:
        logger.info("Download start job_id=%s command=%s", job_id, shlex.join(argv))
        start = time.monotonic()
        try:
            await self._runner(
                argv,
                self.config.download_timeout,
                on_stdout=lambda line: self._on_output(job_id, line),
            )
        except ToolTimeoutError:
            logger.warning(
                "Download timed out job_id=%s timeout=%s", job_id, self.config.download_timeout
            )
            self._fail(job_id, f"Download timed out after {self.config.download_timeout:g} seconds")
        except ToolError as exc:
            logger.warning(
                "Download failed job_id=%s reason=%s error=%s", job_id, exc.reason, exc.message[:200]
            )
            self._fail(job_id, exc.message)
        except asyncio.CancelledError:
            logger.info("Download cancelled job_id=%s", job_id)
            self._fail(job_id, "Download cancelled")
            raise
        except Exception as exc:
            logger.exception("Download crashed job_id=%s error=%s", job_id, exc)
            self._fail(job_id, str(exc) or exc.__class__.__name__)
        else:
            self.store.set_status(job_id, status=JobStatus.completed, progress=None)
            logger.info(
                "Download completed job_id=%s elapsed_ms=%d",
                job_id,
                int((time.monotonic() - start) * 1000),
            )

    def _fail(self, job_id: str, message: str) -> None:
        self.store.set_status(job_id, status=JobStatus.error, progress=None, error=message)

    async def shutdown(self) -> None:
        """Cancel every running download and wait for the processes to be reaped."""
        running = dict(self._tasks)
        if not running:
            return
        logger.info("Cancelling running downloads count=%d", len(running))
        for task in running.values():
            task.cancel()
        await asyncio.gather(*running.values(), return_exceptions=True)
        # A task cancelled before its first step never reaches _run's handlers.
        for job_id in running:
            job = self.store.get_status(job_id)
            if job is not None and not job.is_terminal:
                self._fail(job_id, "Download cancelled")


# ----------------------------
# Artifacts
# ----------------------------

_TEMPORARY_SUFFIXES = (".part", ".ytdl", ".temp")


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return 0.0


def find_artifact(directory: Path, job_id: str) -> Path | None:
    """Return the finished file produced for job_id (newest if several), or None."""
    if not directory.is_dir():
        logger.warning("Download directory missing dir=%s", directory)
        return None
    candidates = [
        p
        for p in directory.iterdir()
        if p.name.startswith(job_id) and not p.name.endswith(_TEMPORARY_SUFFIXES) and p.is_file()
    ]
    if not candidates:
        return None
    candidates.sort(key=_mtime, reverse=True)
    return candidates[0]


def artifact_display_name(path: Path, job_id: str) -> str:
    """Filename offered to the client: the artifact name without its '<id>_' prefix."""
    remainder = path.name[len(job_id) :]
    if remainder.startswith("_") and len(remainder) > 1 and not remainder.startswith("_."):
        return remainder[1:]
    return path.name


def remove_artifact(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
        logger.info("Cleaned up artifact path=%s", path)
    except OSError:
        logger.exception("Failed to remove artifact path=%s", path)


class OneShotFileResponse(FileResponse):
    """FileResponse that deletes its file once the stream ends, even if the client aborts."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # Runs under cancellation too, so the unlink is not awaited.
            remove_artifact(Path(self.path))


# ----------------------------
# Janitor
# ----------------------------


class Janitor:
    """Deletes files older than max_age_seconds from a set of directories.

    Only the filesystem is consulted; job records are left alone.
    """

    def __init__(self, directories: Sequence[Path], max_age_seconds: float):
        self.directories = list(directories)
        self.max_age_seconds = max_age_seconds

    def sweep(self, now: float | None = None) -> list[Path]:
        now = time.time() if now is None else now
        removed: list[Path] = []
        for directory in self.directories:
            try:
                entries = list(directory.iterdir())
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Janitor cannot list dir=%s error=%s", directory, exc)
                continue

            for path in entries:
                try:
                    if not path.is_file():
                        continue
                    age = now - path.stat().st_mtime
                    if age <= self.max_age_seconds:
                        continue
                    path.unlink()
                except FileNotFoundError:
                    logger.debug("Janitor skipped vanished file path=%s", path)
                    continue
                except OSError as exc:
                    logger.warning("Janitor failed to remove path=%s error=%s", path, exc)
                    continue
                removed.append(path)
                logger.info("Auto-cleaned file path=%s age_seconds=%d", path, int(age))
        return removed


# ----------------------------
# Async execution
# ----------------------------

MAX_WORKERS_ENV = "MAX_WORKERS"


def _pool_size(value: str | None) -> int:
    return max(1, _env_int(value, default=4))


# Filesystem scans and deletes run off the event loop on one shared pool.
_EXECUTOR = ThreadPoolExecutor(
    max_workers=_pool_size(os.getenv(MAX_WORKERS_ENV)),
    thread_name_prefix="fs-worker",
)


async def run_in_threadpool(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_EXECUTOR, lambda: func(*args, **kwargs))


async def maintenance_loop(
    janitor: Janitor, store: JobStore, interval: float, status_ttl: float = 0.0
) -> None:
    """Sweep stale files, then sleep; optionally evict finished jobs past their TTL."""
    while True:
        try:
            await run_in_threadpool(janitor.sweep)
        except Exception:
            logger.exception("Janitor sweep failed")
        if status_ttl > 0:
            store.evict_expired(status_ttl)
        await asyncio.sleep(interval)


# ----------------------------
# FastAPI
# ----------------------------

router = APIRouter()


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_controller(request: Request) -> DownloadController:
    return request.app.state.controller


def get_config(request: Request) -> ServiceConfig:
    return request.app.state.config


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    token = _request_id_ctx.set(request_id)
    start = time.monotonic()
    try:
        logger.info("Request start method=%s path=%s", request.method, request.url.path)
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Request end method=%s path=%s status=%d elapsed_ms=%d",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        _request_id_ctx.reset(token)


@router.get("/health", response_class=JSONResponse)
async def api_health(
    request: Request,
    store: JobStore = Depends(get_store),
    controller: DownloadController = Depends(get_controller),
):
    return {
        "status": "ok",
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "yt_dlp_version": YT_DLP_VERSION,
        "active_downloads": controller.active_count,
        "tracked_jobs": len(store),
    }


@router.post("/download", response_class=JSONResponse)
async def api_start_download(
    request: DownloadRequest,
    controller: DownloadController = Depends(get_controller),
):
    try:
        download_id = controller.start_download(request.url, request.quality)
    except InvalidDownloadRequest as exc:
        logger.info("Rejected download request error=%s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ToolUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"success": True, "downloadId": download_id, "message": "Download started"}


@router.get("/status/{download_id}", response_class=JSONResponse)
async def api_download_status(download_id: str, store: JobStore = Depends(get_store)):
    job = store.get_status(download_id)
    if job is None:
        logger.info("Job not found job_id=%s", download_id)
        raise HTTPException(status_code=404, detail="Download not found")
    return job.public_view()


@router.get("/file/{download_id}", response_class=OneShotFileResponse)
async def api_download_file(
    download_id: str,
    store: JobStore = Depends(get_store),
    config: ServiceConfig = Depends(get_config),
):
    """Stream a finished download once; the file and its job are removed afterwards."""
    job = store.get_status(download_id)
    if job is None or job.status != JobStatus.completed:
        logger.info(
            "File not ready job_id=%s status=%s", download_id, job.status.value if job else None
        )
        raise HTTPException(status_code=404, detail="File not ready")

    artifact = await run_in_threadpool(find_artifact, config.download_dir, download_id)
    if artifact is None:
        logger.warning("Completed job has no file job_id=%s", download_id)
        raise HTTPException(status_code=404, detail="File not found")

    # Claimed before streaming so a second request cannot serve the same file.
    if store.claim_completed(download_id) is None:
        raise HTTPException(status_code=404, detail="File not ready")

    filename = artifact_display_name(artifact, download_id)
    logger.info("Serving file job_id=%s name=%s path=%s", download_id, filename, artifact)
    return OneShotFileResponse(
        path=str(artifact),
        filename=filename,
        media_type="application/octet-stream",
    )


async def _info_response(url: str | None, config: ServiceConfig) -> dict[str, Any]:
    url = (url or "").strip()
    if not url:
        raise HTTPException(status_code=400, detail="URL is required")
    logger.info("Info request url=%s", url)
    return await fetch_info(url, config)


@router.get("/info", response_class=JSONResponse)
async def api_video_info(
    url: str | None = Query(None, description="Video URL"),
    config: ServiceConfig = Depends(get_config),
):
    return await _info_response(url, config)


@router.post("/info", response_class=JSONResponse)
async def api_video_info_post(request: InfoRequest, config: ServiceConfig = Depends(get_config)):
    return await _info_response(request.url, config)


def create_app(
    config: ServiceConfig | None = None,
    janitor_config: JanitorConfig | None = None,
) -> FastAPI:
    """Build the application with its own job store and download controller."""
    config = config or ServiceConfig.from_env()
    janitor_config = janitor_config or JanitorConfig.from_env()
    config.download_dir.mkdir(parents=True, exist_ok=True)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        maintenance: asyncio.Task[None] | None = None
        if janitor_config.enabled:
            janitor = Janitor(
                [config.download_dir, *janitor_config.extra_dirs], janitor_config.max_age
            )
            maintenance = asyncio.create_task(
                maintenance_loop(janitor, app.state.store, janitor_config.interval, config.status_ttl),
                name="janitor",
            )
        try:
            yield
        finally:
            if maintenance is not None:
                maintenance.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await maintenance
            await app.state.controller.shutdown()

    app = FastAPI(
        title="yt-dlp download service",
        description="Start yt-dlp downloads, poll their progress and fetch each file once",
        lifespan=lifespan,
    )
    store = JobStore()
    app.state.config = config
    app.state.store = store
    app.state.controller = DownloadController(store, config)
    app.state.started_at = time.monotonic()
    app.middleware("http")(request_logging_middleware)
    app.include_router(router)
    return app


app = create_app()


def start_api() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting uvicorn host=%s port=%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    logger.info("Starting yt-dlp download service...")
    start_api()
