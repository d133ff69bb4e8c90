import asyncio
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from mediastore.chunking import ChunkPlan, UploadCandidate, compute_md5, plan_chunks, read_chunk, read_file
from mediastore.config import MIB, settings
from mediastore.errors import (
    ApiError,
    ChunkTransferError,
    UploadCancelled,
    UploadError,
    UploadFailed,
    UploadTimeout,
    ValidationRejected,
)
from mediastore.logs import log_event, upload_logger
from mediastore.models import UploadStatus
from mediastore.schemas import UploadProgress
from mediastore.storage_client import StorageClient
from mediastore.tracing import tracer


def _log(payload: dict, level: int = logging.INFO) -> None:
    log_event(upload_logger, payload, level)


class CancelToken:
    """Cancellation signal shared by every request of one upload run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UploadCancelled("upload cancelled")

    async def run(self, awaitable: Awaitable):
        """Await ``awaitable`` unless cancellation fires first, in which case abort it."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise UploadCancelled("upload cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise UploadCancelled("upload cancelled")

    async def sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise UploadCancelled("upload cancelled")


class ChunkState(str, enum.Enum):
    pending = "pending"
    in_flight = "in_flight"
    succeeded = "succeeded"
    failed = "failed"


@dataclass
class Reconciliation:
    lost: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    never_sent: list[int] = field(default_factory=list)

    @property
    def indexes(self) -> list[int]:
        return sorted(self.lost + self.failed + self.never_sent)


class ChunkLedger:
    """Per-upload chunk bookkeeping; never shared between uploads."""

    def __init__(self, count: int) -> None:
        self._states = [ChunkState.pending] * count

    def __len__(self) -> int:
        return len(self._states)

    def state(self, index: int) -> ChunkState:
        return self._states[index]

    def indexes(self, state: ChunkState) -> list[int]:
        return [i for i, current in enumerate(self._states) if current is state]

    @property
    def succeeded_count(self) -> int:
        return len(self.indexes(ChunkState.succeeded))

    def mark_in_flight(self, index: int) -> None:
        if self._states[index] is not ChunkState.pending:
            raise ValueError(f"chunk {index} is {self._states[index].value}, expected pending")
        self._states[index] = ChunkState.in_flight

    def mark_succeeded(self, index: int) -> None:
        self._states[index] = ChunkState.succeeded

    def mark_failed(self, index: int) -> None:
        if self._states[index] is ChunkState.succeeded:
            raise ValueError(f"chunk {index} already succeeded")
        self._states[index] = ChunkState.failed

    def mark_pending(self, index: int) -> None:
        if self._states[index] is ChunkState.succeeded:
            raise ValueError(f"chunk {index} already succeeded")
        self._states[index] = ChunkState.pending

    def apply_server_bitmap(self, bitmap: list[int]) -> None:
        for index, flag in enumerate(bitmap[: len(self._states)]):
            if flag:
                self._states[index] = ChunkState.succeeded

    def reconcile(self, bitmap: list[int]) -> Reconciliation:
        """Make the server bitmap authoritative and return what must be re-sent."""
        if len(bitmap) != len(self._states):
            _log(
                {"event": "bitmap_length_mismatch", "expected": len(self._states), "actual": len(bitmap)},
                logging.WARNING,
            )
        server_has = {i for i, flag in enumerate(bitmap[: len(self._states)]) if flag}
        missing = set(range(len(self._states))) - server_has
        result = Reconciliation()
        for index in sorted(missing):
            state = self._states[index]
            if state is ChunkState.succeeded:
                result.lost.append(index)
            elif state is ChunkState.failed:
                result.failed.append(index)
            else:
                result.never_sent.append(index)
            # The only path out of succeeded.
            self._states[index] = ChunkState.pending
        for index in server_has:
            self._states[index] = ChunkState.succeeded
        return result


class ProgressTracker:
    """Monotonic upload percentage; 100 is reserved for server-confirmed completion."""

    CAP = 99.0

    def __init__(self, listener: Callable[[float], None] | None = None) -> None:
        self.percent = 0.0
        self._listener = listener

    def _notify(self) -> None:
        if self._listener is not None:
            self._listener(self.percent)

    def _raise_to(self, value: float) -> None:
        value = min(value, self.CAP)
        if value > self.percent:
            self.percent = value
            self._notify()

    def update(self, uploaded: int, total: int) -> None:
        if total > 0:
            self._raise_to(uploaded / total * 100)

    def reconcile(self, server_percent: float) -> None:
        self._raise_to(server_percent)

    def complete(self) -> None:
        self.percent = 100.0
        self._notify()

    def reset(self) -> None:
        self.percent = 0.0
        self._notify()


class ChunkTransferLoop:
    def __init__(
        self,
        client: StorageClient,
        candidate: UploadCandidate,
        plan: ChunkPlan,
        file_id: str,
        ledger: ChunkLedger,
        progress: ProgressTracker,
        token: CancelToken,
        concurrency: int | None = None,
    ) -> None:
        self.client = client
        self.candidate = candidate
        self.plan = plan
        self.file_id = file_id
        self.ledger = ledger
        self.progress = progress
        self.token = token
        self.concurrency = max(1, concurrency or settings.upload_chunk_concurrency)

    async def run(self, indexes: list[int] | None = None) -> None:
        if indexes is None:
            indexes = self.ledger.indexes(ChunkState.pending)
        for start in range(0, len(indexes), self.concurrency):
            self.token.raise_if_cancelled()
            await self._run_batch(indexes[start : start + self.concurrency])

    async def _run_batch(self, batch: list[int]) -> None:
        tasks = [asyncio.create_task(self._send(index)) for index in batch]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        errors = [task.exception() for task in done if not task.cancelled() and task.exception() is not None]
        if not errors:
            return
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for error in errors:
            if isinstance(error, UploadCancelled):
                raise error
        failed = [index for index in batch if self.ledger.state(index) is ChunkState.failed]
        raise ChunkTransferError(failed, errors[0]) from errors[0]

    async def _send(self, index: int) -> None:
        chunk = self.plan[index]
        self.ledger.mark_in_flight(index)
        try:
            data = await self.token.run(read_chunk(self.candidate, chunk))
            await self.token.run(self.client.upload_chunk(self.file_id, index, self.plan.count, data))
        except (UploadCancelled, asyncio.CancelledError):
            self.ledger.mark_pending(index)
            raise
        except (ApiError, OSError) as exc:
            self.ledger.mark_failed(index)
            _log(
                {"event": "chunk_failed", "file_id": self.file_id, "chunk": index, "detail": str(exc)},
                logging.WARNING,
            )
            raise
        self.ledger.mark_succeeded(index)
        self.progress.update(self.ledger.succeeded_count, self.plan.count)


class ProgressPoller:
    def __init__(
        self,
        client: StorageClient,
        transfer: ChunkTransferLoop,
        progress: ProgressTracker,
        token: CancelToken,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.client = client
        self.transfer = transfer
        self.ledger = transfer.ledger
        self.progress = progress
        self.token = token
        self.interval = settings.upload_poll_interval_seconds if interval is None else interval
        self.max_attempts = max_attempts or settings.upload_poll_max_attempts

    async def wait(self, file_id: str) -> UploadProgress:
        for attempt in range(1, self.max_attempts + 1):
            self.token.raise_if_cancelled()
            await self.token.sleep(self.interval)
            try:
                status = await self.token.run(self.client.get_upload_progress(file_id))
            except ApiError as exc:
                if not exc.transient:
                    raise
                _log(
                    {"event": "poll_error", "file_id": file_id, "attempt": attempt, "detail": exc.message},
                    logging.WARNING,
                )
                continue

            _log({"event": "poll_tick", "file_id": file_id, "attempt": attempt, "status": status.status})
            if status.status == UploadStatus.completed.value:
                self.progress.complete()
                return status
            if status.status == UploadStatus.failed.value:
                raise UploadFailed(status.error_message or "upload failed on the server")
            # A terminal answer wins over a cancel that landed mid-poll; anything else stops here.
            self.token.raise_if_cancelled()
            self.progress.reconcile(status.progress)
            if status.status == UploadStatus.uploading.value:
                await self._resend_missing(file_id, status, attempt)
        raise UploadTimeout(f"upload {file_id} did not complete within {self.max_attempts} polls")

    async def _resend_missing(self, file_id: str, status: UploadProgress, attempt: int) -> None:
        missing = self.ledger.reconcile(status.chunks)
        if not missing.indexes:
            return
        _log(
            {
                "event": "reconcile",
                "file_id": file_id,
                "attempt": attempt,
                "lost": missing.lost,
                "failed": missing.failed,
                "never_sent": missing.never_sent,
            }
        )
        try:
            await self.transfer.run(missing.indexes)
        except ChunkTransferError as exc:
            if not exc.transient:
                raise
            _log(
                {"event": "resend_failed", "file_id": file_id, "attempt": attempt, "chunks": exc.failed_indexes},
                logging.WARNING,
            )


@dataclass
class Notice:
    level: str
    message: str
    name: str | None = None


@dataclass
class Selection:
    images: list[UploadCandidate] = field(default_factory=list)
    video: UploadCandidate | None = None
    notices: list[Notice] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class UploadReport:
    status: str = "pending"
    notices: list[Notice] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _format_limit(limit: int) -> str:
    if limit >= 1024 * MIB and limit % (1024 * MIB) == 0:
        return f"{limit // (1024 * MIB)}GB"
    return f"{limit // MIB}MB"


class UploadOrchestrator:
    def __init__(
        self,
        client: StorageClient,
        on_progress: Callable[[float], None] | None = None,
        on_notice: Callable[[Notice], None] | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        poll_max_attempts: int | None = None,
        max_image_size: int | None = None,
        max_video_size: int | None = None,
    ) -> None:
        self.client = client
        self.progress = ProgressTracker(on_progress)
        self.on_notice = on_notice
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.max_image_size = max_image_size or settings.max_image_size_bytes
        self.max_video_size = max_video_size or settings.max_video_size_bytes

    def _emit(self, notices: list[Notice], level: str, message: str, name: str | None = None) -> None:
        notice = Notice(level=level, message=message, name=name)
        notices.append(notice)
        if self.on_notice is not None:
            self.on_notice(notice)

    def validate(self, candidate: UploadCandidate, has_video: bool = False) -> None:
        mime_class = candidate.mime_class
        if mime_class is None:
            raise ValidationRejected(candidate.name, "unsupported file type, only images and videos are accepted")
        if mime_class == "image" and candidate.size > self.max_image_size:
            raise ValidationRejected(candidate.name, f"image exceeds the {_format_limit(self.max_image_size)} limit")
        if mime_class == "video":
            if candidate.size > self.max_video_size:
                raise ValidationRejected(candidate.name, f"video exceeds the {_format_limit(self.max_video_size)} limit")
            if has_video:
                raise ValidationRejected(candidate.name, "only one video can be uploaded at a time")

    def select_files(self, items: Iterable[str | Path | UploadCandidate], folder_id: str = "") -> Selection:
        selection = Selection()
        for item in items:
            try:
                candidate = item if isinstance(item, UploadCandidate) else UploadCandidate.from_path(item, folder_id)
            except OSError as exc:
                name = Path(str(item)).name
                selection.skipped.append(name)
                self._emit(selection.notices, "warning", f"{name}: cannot read file ({exc.strerror or exc})", name)
                continue
            try:
                self.validate(candidate, has_video=selection.video is not None)
            except ValidationRejected as exc:
                selection.skipped.append(candidate.name)
                self._emit(selection.notices, "warning", str(exc), candidate.name)
                continue
            if candidate.mime_class == "video":
                selection.video = candidate
            else:
                selection.images.append(candidate)
        return selection

    async def upload_images(
        self,
        images: list[UploadCandidate],
        folder_id: str,
        token: CancelToken | None = None,
        report: UploadReport | None = None,
    ) -> UploadReport:
        token = token or CancelToken()
        report = report if report is not None else UploadReport()
        self.progress.reset()
        for position, candidate in enumerate(images, start=1):
            token.raise_if_cancelled()
            try:
                await self._upload_image(candidate, folder_id, token, report)
            except UploadCancelled:
                raise
            except ValidationRejected as exc:
                report.skipped.append(candidate.name)
                self._emit(report.notices, "warning", str(exc), candidate.name)
            except (UploadError, OSError) as exc:
                report.failed.append(candidate.name)
                self._emit(report.notices, "error", f"{candidate.name}: {exc}", candidate.name)
            self.progress.update(position, len(images))
        return report

    async def _upload_image(
        self, candidate: UploadCandidate, folder_id: str, token: CancelToken, report: UploadReport
    ) -> None:
        self.validate(candidate)
        md5 = await token.run(compute_md5(candidate))
        check = await token.run(self.client.check_file_exists(candidate.name, candidate.size, folder_id, md5))
        _log({"event": "dedup_check", "name": candidate.name, "exists": check.exists, "file_id": check.file_id})
        if check.exists:
            report.uploaded.append(candidate.name)
            self._emit(report.notices, "success", f"{candidate.name}: instant upload, file already exists", candidate.name)
            return

        data = await token.run(read_file(candidate))
        result = await token.run(
            self.client.upload_images([(candidate.name, data, candidate.mime_type)], folder_id)
        )
        outcome = result.files[0] if result.files else None
        if outcome is None or not outcome.success:
            raise UploadFailed(outcome.error if outcome and outcome.error else "upload rejected by the server")
        report.uploaded.append(candidate.name)
        self._emit(report.notices, "success", f"{candidate.name}: uploaded", candidate.name)

    async def upload_video(
        self,
        candidate: UploadCandidate,
        folder_id: str,
        token: CancelToken | None = None,
        report: UploadReport | None = None,
    ) -> UploadReport:
        token = token or CancelToken()
        report = report if report is not None else UploadReport()
        with tracer.start_as_current_span("upload_video") as span:
            span.set_attribute("mediastore.file_name", candidate.name)
            span.set_attribute("mediastore.file_size", candidate.size)
            return await self._upload_video(candidate, folder_id, token, report)

    async def _upload_video(
        self, candidate: UploadCandidate, folder_id: str, token: CancelToken, report: UploadReport
    ) -> UploadReport:
        self.progress.reset()
        self.validate(candidate)

        md5 = await token.run(compute_md5(candidate))
        check = await token.run(self.client.check_file_exists(candidate.name, candidate.size, folder_id, md5))
        _log({"event": "dedup_check", "name": candidate.name, "exists": check.exists, "file_id": check.file_id})
        if check.exists:
            self.progress.complete()
            report.uploaded.append(candidate.name)
            self._emit(report.notices, "success", f"{candidate.name}: instant upload, file already exists", candidate.name)
            return report

        if check.chunk_size <= 0:
            raise ApiError("server did not provide a chunk size")
        plan = plan_chunks(candidate.size, check.chunk_size)
        if check.chunk_count and check.chunk_count != plan.count:
            _log(
                {"event": "chunk_count_mismatch", "file_id": check.file_id, "server": check.chunk_count, "local": plan.count},
                logging.WARNING,
            )

        init = await token.run(
            self.client.init_upload(check.file_id, candidate.name, candidate.size, folder_id, md5, candidate.mime_type)
        )
        ledger = ChunkLedger(plan.count)
        ledger.apply_server_bitmap(init.chunks)
        self.progress.update(ledger.succeeded_count, plan.count)
        _log(
            {
                "event": "upload_started",
                "file_id": check.file_id,
                "name": candidate.name,
                "chunk_count": plan.count,
                "resumed_chunks": ledger.succeeded_count,
            }
        )

        transfer = ChunkTransferLoop(
            self.client, candidate, plan, check.file_id, ledger, self.progress, token, self.concurrency
        )
        try:
            await transfer.run()
        except ChunkTransferError as exc:
            if not exc.transient:
                raise
            _log(
                {"event": "chunk_batch_failed", "file_id": check.file_id, "chunks": exc.failed_indexes},
                logging.WARNING,
            )

        poller = ProgressPoller(
            self.client, transfer, self.progress, token, self.poll_interval, self.poll_max_attempts
        )
        await poller.wait(check.file_id)
        report.uploaded.append(candidate.name)
        self._emit(report.notices, "success", f"{candidate.name}: uploaded", candidate.name)
        return report

    async def run(
        self,
        items: Selection | Iterable[str | Path | UploadCandidate],
        folder_id: str,
        token: CancelToken | None = None,
    ) -> UploadReport:
        """Upload a selection into ``folder_id``; every outcome ends up in the report."""
        token = token or CancelToken()
        report = UploadReport()
        if not folder_id:
            report.status = "failed"
            self._emit(report.notices, "error", "choose a target folder before uploading")
            return report

        selection = items if isinstance(items, Selection) else self.select_files(items, folder_id)
        report.notices.extend(selection.notices)
        report.skipped.extend(selection.skipped)
        if not selection.images and selection.video is None:
            report.status = "empty"
            self._emit(report.notices, "warning", "no files to upload")
            return report

        try:
            if selection.images:
                await self.upload_images(selection.images, folder_id, token, report)
            if selection.video is not None:
                await self.upload_video(selection.video, folder_id, token, report)
        except UploadCancelled:
            report.status = "cancelled"
            self._emit(report.notices, "info", "upload cancelled")
        except UploadTimeout as exc:
            report.status = "timeout"
            self._emit(report.notices, "error", f"upload timed out waiting for the server to finish: {exc}")
        except (UploadError, OSError) as exc:
            report.status = "failed"
            self._emit(report.notices, "error", f"upload failed: {exc}")
        else:
            if not report.failed:
                report.status = "success"
            else:
                report.status = "partial" if report.uploaded else "failed"
            if report.uploaded:
                self.client.cache.invalidate_folder(folder_id)
                self._emit(report.notices, "success", f"{len(report.uploaded)} file(s) uploaded")
        finally:
            self.progress.reset()
        _log({"event": "upload_finished", "status": report.status, "uploaded": report.uploaded})
        return report
