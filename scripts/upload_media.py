import argparse
import asyncio
import json
import os
import signal

from mediastore.config import settings
from mediastore.errors import ApiError
from mediastore.http_client import ApiClient
from mediastore.session import AuthSession
from mediastore.storage_client import StorageClient
from mediastore.tracing import setup_tracing
from mediastore.uploader import CancelToken, Notice, UploadOrchestrator


def _print_progress(percent: float) -> None:
    print(f"\rprogress: {percent:6.2f}%", end="", flush=True)


def _print_notice(notice: Notice) -> None:
    print(f"\n[{notice.level}] {notice.message}")


async def _run(args: argparse.Namespace) -> dict:
    setup_tracing(service_name=f"{settings.tracing_service_name}-uploader")
    token = CancelToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:
        pass

    async with ApiClient(AuthSession(), base_url=args.base_url) as api:
        await api.login(args.username, args.password)
        orchestrator = UploadOrchestrator(
            StorageClient(api),
            on_progress=None if args.quiet else _print_progress,
            on_notice=_print_notice,
            concurrency=args.concurrency,
        )
        report = await orchestrator.run(args.paths, args.folder_id, token)

    return {
        "status": report.status,
        "uploaded": report.uploaded,
        "skipped": report.skipped,
        "failed": report.failed,
        "notices": [{"level": n.level, "message": n.message} for n in report.notices],
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload images or one video into a mediastore folder.")
    parser.add_argument("paths", nargs="+", help="Image files and at most one video file")
    parser.add_argument("--folder-id", required=True, help="Target folder id")
    parser.add_argument("--base-url", default=settings.api_base_url, help="API base URL, including /api")
    parser.add_argument("--username", default=os.getenv("MEDIASTORE_USERNAME", "admin"))
    parser.add_argument("--password", default=os.getenv("MEDIASTORE_PASSWORD", "admin"))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Chunk uploads in flight per batch. Defaults to UPLOAD_CHUNK_CONCURRENCY.",
    )
    parser.add_argument("--quiet", action="store_true", help="Do not print progress updates")
    parser.add_argument("--output", default="", help="Optional path to write the JSON report")
    args = parser.parse_args()

    try:
        summary = asyncio.run(_run(args))
    except ApiError as exc:
        print(f"error: {exc}")
        return 2

    print("\nUpload summary:")
    for key in ("status", "uploaded", "skipped", "failed"):
        print(f"- {key}: {summary[key]}")

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"\nWrote report to {args.output}")

    return 0 if summary["status"] in {"success", "cancelled"} else 1


if __name__ == "__main__":
    raise SystemExit(main())
