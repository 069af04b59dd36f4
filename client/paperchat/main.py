import argparse
import asyncio
import logging
import os
import sys
from paperchat.core.config import get_settings
from paperchat.core.errors import PaperChatError
from paperchat.models import MessageKind, TaskStatus
from paperchat.services import (
    ApiClient, AppStore, LibraryService, QueryService, UploadService,
    build_citation_check_map, load_local_files,
)

settings = get_settings()

_log_level = os.getenv("LOG_LEVEL", "DEBUG" if settings.debug else "INFO").upper()
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETE, TaskStatus.ERROR)


async def run_ask(args: argparse.Namespace) -> int:
    api = ApiClient(settings)
    store = AppStore(settings)
    if args.top_k is not None:
        store.set_query_options(top_k=args.top_k)
    if args.web_search:
        store.set_query_options(enable_web_search=True)
    service = QueryService(api, store, LibraryService(api, store, settings))

    message = await service.submit_query(args.question)
    if message is None:
        print("Nothing to ask.", file=sys.stderr)
        return 1

    print(message.content)
    if message.kind == MessageKind.RESPONSE and message.content.startswith("Error: "):
        return 1

    checks = build_citation_check_map(message.metadata.citation_checks if message.metadata else [])
    if checks:
        print()
        for citation_id, check in sorted(checks.items()):
            flag = "ok" if check.is_valid else "unverified"
            print(f"[Source {citation_id}] {flag} ({check.confidence:.2f}) {check.claim}")
    if message.metadata and message.metadata.latency is not None:
        logger.info("Answered in %.0f ms", message.metadata.latency)
    return 0


async def run_upload(args: argparse.Namespace) -> int:
    api = ApiClient(settings)
    store = AppStore(settings)
    service = UploadService(api, store, settings=settings)

    files = await load_local_files(args.files)
    outcome = await service.start_batch_upload(
        files, on_stream_error=lambda e: logger.error("Progress stream lost: %s", e)
    )
    if outcome is None:
        return 1
    if outcome.batch is None:
        print(outcome.message)
        return 0

    if outcome.partition.duplicate_count:
        print(f"Skipped {outcome.partition.duplicate_count} duplicate(s)")
    if args.wait and service.listener is not None:
        await service.listener.wait()

    batch = outcome.batch
    for task in batch.tasks:
        line = f"{task.filename}: {task.status.value}"
        if task.error_message:
            line += f" ({task.error_message})"
        print(line)
    await service.clear_batch()
    return 1 if batch.count(TaskStatus.ERROR) else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="paperchat", description=settings.app_name)
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Ask a question about your library")
    ask.add_argument("question")
    ask.add_argument("--top-k", type=int, default=None)
    ask.add_argument("--web-search", action="store_true")
    ask.set_defaults(handler=run_ask)

    upload = sub.add_parser("upload", help="Upload PDFs into your library")
    upload.add_argument("files", nargs="+")
    upload.add_argument("--no-wait", dest="wait", action="store_false", help="Return once processing has started")
    upload.set_defaults(handler=run_upload)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(args.handler(args))
    except PaperChatError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
