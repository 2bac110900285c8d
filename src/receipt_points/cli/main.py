from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Awaitable, Callable, Sequence

from ..domain.errors import PipelineError
from ..logging import get_logger
from ..orchestrator import ReceiptTracker, build_tracker_config, log_environment_banner
from ..paths import expand_abs

LOG = get_logger("cli-main")


def _add_tracker_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--scan-host", help="Override scan service base URL (defaults to env/.env)")
    p.add_argument("--motor-host", help="Override reward engine base URL (defaults to env/.env)")
    p.add_argument("--token", help="Bearer token for the reward engine (overrides env/.env)")
    p.add_argument(
        "--state-file",
        help="Snapshot file for entries (default: var/state/entries.json at repo root)",
    )
    p.add_argument("--timeout", type=float, help="HTTP timeout in seconds for service requests")


def _tracker(ns: argparse.Namespace) -> ReceiptTracker:
    # Read .env from the current working directory
    config = build_tracker_config(ns, script_dir=os.getcwd())
    return ReceiptTracker(config)


def _run(ns: argparse.Namespace, action: Callable[[ReceiptTracker], Awaitable[int]], *, resume: bool) -> int:
    async def _main() -> int:
        tracker = _tracker(ns)
        await tracker.open(resume=resume)
        try:
            return await action(tracker)
        finally:
            await tracker.close()

    return asyncio.run(_main())


def _print_entry(entry) -> None:
    print(json.dumps(entry.to_dict(), ensure_ascii=False))


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..api import create_app
    import uvicorn

    log_environment_banner()
    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]

    app = create_app(_tracker(ns), allow_origins=allow_origins)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def _handle_submit(ns: argparse.Namespace) -> int:
    path = expand_abs(ns.image)
    if not os.path.isfile(path):
        LOG.error(f"Image not found: {path}")
        return 2
    with open(path, "rb") as fh:
        raw = fh.read()

    async def _submit(tracker: ReceiptTracker) -> int:
        try:
            entry = await tracker.submit(raw)
        except PipelineError as exc:
            LOG.error(f"Submission failed: {exc}")
            return 1
        if not ns.no_wait:
            await tracker.wait_idle()
            entry = tracker.store.get(entry.id) or entry
        _print_entry(entry)
        return 0

    # with --no-wait the snapshot keeps the entry processing; `serve` resumes it
    return _run(ns, _submit, resume=False)


def _handle_list(ns: argparse.Namespace) -> int:
    async def _list(tracker: ReceiptTracker) -> int:
        for entry in tracker.store.entries():
            _print_entry(entry)
        return 0

    return _run(ns, _list, resume=False)


def _handle_control(name: str) -> Callable[[argparse.Namespace], int]:
    def handler(ns: argparse.Namespace) -> int:
        async def _control(tracker: ReceiptTracker) -> int:
            try:
                entry = getattr(tracker.controller, name)(ns.id)
            except PipelineError as exc:
                LOG.error(f"{name} failed for {ns.id}: {exc}")
                return 1
            await tracker.wait_idle()
            entry = tracker.store.get(entry.id) or entry
            _print_entry(entry)
            return 0

        return _run(ns, _control, resume=False)

    return handler


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"Unified CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="receipt-points",
        description="Track receipt photos through OCR and reward points.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the status API and resume pending entries.")
    _add_tracker_args(serve)
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8002)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)

    submit = subparsers.add_parser("submit", help="Submit a receipt photo and follow it to the end.")
    _add_tracker_args(submit)
    submit.add_argument("--image", required=True, help="Path to the receipt photo")
    submit.add_argument("--no-wait", action="store_true", help="Return once OCR polling has been scheduled")
    submit.set_defaults(handler=_handle_submit)

    list_cmd = subparsers.add_parser("list", help="Print persisted entries, newest first, one JSON per line.")
    _add_tracker_args(list_cmd)
    list_cmd.set_defaults(handler=_handle_list)

    for command, method, help_text in (
        ("delete", "delete_entry", "Delete an entry and stop its work."),
        ("retry-ocr", "retry_ocr", "Poll OCR again for a failed or invalid entry."),
        ("retry-points", "retry_points", "Poll or request points again for a valid entry."),
    ):
        sub = subparsers.add_parser(command, help=help_text)
        _add_tracker_args(sub)
        sub.add_argument("--id", required=True, help="Entry id")
        sub.set_defaults(handler=_handle_control(method))

    args = parser.parse_args(provided)
    code = args.handler(args)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
