from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import monotonic
from typing import Callable, Optional

from .errors import StorageError, TransferCancelled, classify_error
from .events import Completion, JobCancelled, JobFailed, JobFinished, JobProgress
from .models import ObjectEntry
from .preview import PreviewContent, detect_preview

logger = logging.getLogger(__name__)

PostFn = Callable[[Completion], None]


class JobKind(str, Enum):
    PREVIEW = "preview"
    DOWNLOAD = "download"
    UPLOAD = "upload"


class JobStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class PipelineJob:
    job_id: int
    kind: JobKind
    bucket: str
    key: str
    destination: Optional[Path] = None
    source: Optional[Path] = None
    total_bytes: Optional[int] = None
    bytes_done: int = 0
    status: JobStatus = JobStatus.RUNNING
    error: Optional[StorageError] = None
    preview: Optional[PreviewContent] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.status is JobStatus.RUNNING

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @property
    def percent(self) -> Optional[int]:
        if not self.total_bytes:
            return None
        return min(100, int(self.bytes_done * 100 / self.total_bytes))


class ProgressThrottle:
    """Lets through at most one progress update per interval, plus the last one."""

    def __init__(
        self,
        interval: float,
        total: Optional[int] = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._interval = interval
        self._total = total
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._last_value = -1

    def should_emit(self, value: int) -> bool:
        if value <= self._last_value:
            return False
        now = self._clock()
        final = self._total is not None and value >= self._total
        if (
            not final
            and self._last_emit is not None
            and now - self._last_emit < self._interval
        ):
            return False
        self._last_emit = now
        self._last_value = value
        return True


class Pipeline:
    """Preview, download and upload jobs; one running job per kind.

    Jobs are only mutated here, from the event loop, when completions are
    applied. Background tasks report back through ``post``.
    """

    def __init__(
        self,
        gateway,
        post: PostFn,
        preview_max_bytes: int = 16 * 1024,
        progress_interval: float = 0.2,
    ) -> None:
        self._gateway = gateway
        self._post = post
        self.preview_max_bytes = preview_max_bytes
        self.progress_interval = progress_interval
        self._jobs: dict[JobKind, PipelineJob] = {}
        self._by_id: dict[int, PipelineJob] = {}
        self._next_id = 0

    def job(self, kind: JobKind) -> Optional[PipelineJob]:
        return self._jobs.get(kind)

    def running(self, kind: JobKind) -> Optional[PipelineJob]:
        job = self._jobs.get(kind)
        if job is not None and job.is_running:
            return job
        return None

    def running_jobs(self) -> list[PipelineJob]:
        return [job for job in self._jobs.values() if job.is_running]

    def _new_job(self, kind: JobKind, bucket: str, key: str, **kwargs) -> PipelineJob:
        self.cancel(kind)
        self._next_id += 1
        job = PipelineJob(job_id=self._next_id, kind=kind, bucket=bucket, key=key, **kwargs)
        previous = self._jobs.get(kind)
        if previous is not None:
            self._by_id.pop(previous.job_id, None)
        self._jobs[kind] = job
        self._by_id[job.job_id] = job
        return job

    def _spawn(self, job: PipelineJob, coro) -> None:
        job.task = asyncio.get_running_loop().create_task(coro)

    def start_preview(self, entry: ObjectEntry) -> PipelineJob:
        job = self._new_job(
            JobKind.PREVIEW,
            entry.bucket,
            entry.key,
            total_bytes=min(entry.size, self.preview_max_bytes) or None,
        )
        logger.info("preview %s", job.uri)
        self._spawn(job, self._run_preview(job, entry.name))
        return job

    def start_download(self, entry: ObjectEntry, destination: Path) -> PipelineJob:
        previous = self._jobs.get(JobKind.DOWNLOAD)
        job = self._new_job(
            JobKind.DOWNLOAD,
            entry.bucket,
            entry.key,
            destination=Path(destination),
            total_bytes=entry.size,
        )
        logger.info("download %s -> %s", job.uri, destination)
        writer = previous.task if previous is not None else None
        self._spawn(job, self._run_download(job, writer))
        return job

    def start_upload(self, source: Path, bucket: str, key: str) -> PipelineJob:
        source = Path(source)
        try:
            total = source.stat().st_size
        except OSError:
            total = None
        job = self._new_job(
            JobKind.UPLOAD, bucket, key, source=source, total_bytes=total
        )
        logger.info("upload %s -> %s", source, job.uri)
        self._spawn(job, self._run_upload(job))
        return job

    def cancel(self, kind: JobKind) -> Optional[PipelineJob]:
        job = self.running(kind)
        if job is None:
            return None
        job.status = JobStatus.CANCELLED
        job.cancel_event.set()
        if kind is JobKind.PREVIEW:
            job.preview = None
            if job.task is not None:
                job.task.cancel()
        logger.info("cancelled %s of %s", kind.value, job.uri)
        return job

    def cancel_active(self) -> list[PipelineJob]:
        cancelled = []
        for kind in JobKind:
            job = self.cancel(kind)
            if job is not None:
                cancelled.append(job)
        return cancelled

    def apply(self, completion: Completion) -> Optional[PipelineJob]:
        job = self._by_id.get(getattr(completion, "job_id", -1))
        if job is None or not job.is_running:
            return None
        if isinstance(completion, JobProgress):
            if completion.bytes_done > job.bytes_done:
                job.bytes_done = completion.bytes_done
        elif isinstance(completion, JobFinished):
            job.status = JobStatus.DONE
            if isinstance(completion.result, PreviewContent):
                job.preview = completion.result
                job.bytes_done = len(completion.result.data)
            elif job.total_bytes is not None:
                job.bytes_done = job.total_bytes
        elif isinstance(completion, JobFailed):
            job.status = JobStatus.FAILED
            job.error = completion.error
        elif isinstance(completion, JobCancelled):
            job.status = JobStatus.CANCELLED
        else:
            return None
        return job

    def _progress_sink(self, job: PipelineJob) -> Callable[[int], None]:
        loop = asyncio.get_running_loop()
        throttle = ProgressThrottle(self.progress_interval, total=job.total_bytes)
        job_id = job.job_id

        def _sink(value: int) -> None:
            if throttle.should_emit(value):
                loop.call_soon_threadsafe(self._post, JobProgress(job_id, value))

        return _sink

    async def _run_preview(self, job: PipelineJob, name: str) -> None:
        try:
            prefix = await self._gateway.fetch_prefix(
                job.bucket, job.key, self.preview_max_bytes
            )
        except asyncio.CancelledError:
            return
        except Exception as exc:
            self._post(JobFailed(job.job_id, classify_error(exc)))
            return
        self._post(JobFinished(job.job_id, detect_preview(name, prefix)))

    async def _run_download(
        self, job: PipelineJob, writer: Optional[asyncio.Task] = None
    ) -> None:
        if writer is not None and not writer.done():
            # a cancelled download may still be flushing its last chunk
            await asyncio.wait({writer})
        if job.cancel_event.is_set():
            self._post(JobCancelled(job.job_id, "cancelled before start"))
            return
        try:
            path = await self._gateway.download_to(
                job.bucket,
                job.key,
                job.destination,
                self._progress_sink(job),
                job.cancel_event,
            )
        except TransferCancelled as exc:
            logger.info("download of %s aborted, partial file left at %s", job.uri, job.destination)
            self._post(JobCancelled(job.job_id, str(exc)))
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._post(JobFailed(job.job_id, classify_error(exc)))
            return
        self._post(JobFinished(job.job_id, path))

    async def _run_upload(self, job: PipelineJob) -> None:
        try:
            key = await self._gateway.upload(
                job.source,
                job.bucket,
                job.key,
                self._progress_sink(job),
                job.cancel_event,
            )
        except TransferCancelled as exc:
            self._post(JobCancelled(job.job_id, str(exc)))
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._post(JobFailed(job.job_id, classify_error(exc)))
            return
        self._post(JobFinished(job.job_id, key))

    async def wait_idle(self) -> None:
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def shutdown(self) -> None:
        for job in self.running_jobs():
            job.cancel_event.set()
            if job.task is not None:
                job.task.cancel()
