"""
Manual test harness: scan files with a clamd daemon.

Usage:
  clamav-stream-scan clam://localhost:3310/ file1 [file2 ...] --count 3
Prints one "result=... file=... info=..." line for each scan; exits 1
if any scan did not get a verdict from clamd.
"""
import argparse
import logging
import sys

from .clamd import ClamScanner, InvalidEndpoint, ScanVerdict


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scan files with clamd STREAM command.")
    parser.add_argument("url", help="clamd url, like clam://localhost:3310/")
    parser.add_argument("files", nargs="+", help="Files to scan.")
    parser.add_argument("--count", type=int, default=1, help="Scan each file this many times.")
    parser.add_argument("--timeout", type=float, default=300, help="Timeout in seconds of each socket operation.")
    parser.add_argument("--verbose", action="store_true", help="Log the protocol exchange.")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    scanner = ClamScanner()
    try:
        scanner.configure(args.url, timeout=args.timeout)
    except InvalidEndpoint as e:
        print(f"Invalid clamd url: {e}", file=sys.stderr)
        return 2

    errors = 0
    for _ in range(args.count):
        for path in args.files:
            try:
                with open(path, "rb") as fh:
                    verdict, info = scanner.scan(fh)
            except OSError as e:
                verdict, info = ScanVerdict.ERROR, f"cannot read file: {e}"
            if verdict == ScanVerdict.ERROR:
                errors += 1
            print(f"result={verdict.value} file={path} info={info}")

    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
