"""CLI for the chunked uploader: python -m chibi_upload.client FILE ENDPOINT"""
import argparse
import asyncio
import logging
import sys

from chibi_upload.client.uploader import SessionState, upload_file
from chibi_upload.core.exceptions import UploadError


def _print_progress(session_id, progress):
    print(f"  {session_id[:8]} {progress}%")


def _print_retry(session_id, retry):
    print(f"  {session_id[:8]} {retry['message']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Upload a file in chunks.")
    parser.add_argument("file")
    parser.add_argument("endpoint")
    parser.add_argument("--method", default="POST", choices=["POST", "PUT"])
    parser.add_argument("--chunk-size", type=int, default=90 * 10**6)
    parser.add_argument("--max-file-size", type=int, default=1 * 10**9)
    parser.add_argument("--parallel", type=int, default=3)
    parser.add_argument("--retries", type=int, default=5)
    parser.add_argument("--delay", type=float, default=3)
    parser.add_argument("--debug", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.debug else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        outcome = asyncio.run(upload_file(
            args.file,
            args.endpoint,
            method=args.method,
            chunk_size=args.chunk_size,
            max_file_size=args.max_file_size,
            max_parallel_uploads=args.parallel,
            retries=args.retries,
            delay_before_retry=args.delay,
            debug=args.debug,
            on_progress=_print_progress,
            on_retry=_print_retry,
        ))
    except (UploadError, OSError) as e:
        print(f"Upload failed: {e}", file=sys.stderr)
        return 2

    if outcome.state is SessionState.COMPLETED:
        url = (outcome.response or {}).get("url")
        print(f"Upload completed: {url or outcome.session_id}")
        return 0

    print(f"Upload failed: {outcome.error.message if outcome.error else outcome.state.value}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
