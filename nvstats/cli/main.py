"""
CLI entry point — nvstats command dispatcher.

  nvstats [report]    →  cli/report.py   (per-GPU voltage / hotspot / memory)
  nvstats interfaces  →  cli/report.py   (which NVAPI interfaces resolve)

Usage examples:
    nvstats
    nvstats report --json
    nvstats report --gpu 1 --no-nvml
    nvstats --log-dir logs -v report
    nvstats interfaces --library /usr/lib/x86_64-linux-gnu/libnvidia-api.so.1

Exit code is 0 once the per-GPU report is reached (per-field read errors
included), 1 if the driver can't be loaded, initialized or enumerated.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime


# ── Logging tee ─────────────────────────────────────────────────────────────
class _Tee:
    """Write to both a file and the original stream."""
    def __init__(self, stream, log_file):
        self._stream = stream
        self._log = log_file

    def write(self, data):
        self._stream.write(data)
        self._log.write(data)

    def flush(self):
        self._stream.flush()
        self._log.flush()

    def __getattr__(self, name):
        return getattr(self._stream, name)


def _init_log(log_dir: str, command: str):
    """Tee stdout/stderr into <log_dir>/<command>_<timestamp>.log.

    Returns (log_path, open file).
    """
    os.makedirs(log_dir, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(log_dir, f"{command}_{stamp}.log")
    log_file = open(log_path, "w", encoding="utf-8")
    sys.stdout = _Tee(sys.stdout, log_file)
    sys.stderr = _Tee(sys.stderr, log_file)
    return log_path, log_file


def _init_logging(verbose: bool) -> logging.StreamHandler:
    root = logging.getLogger("nvstats")
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root.handlers[:] = [handler]
    return handler


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    p = argparse.ArgumentParser(
        prog="nvstats",
        description="NVIDIA GPU stats reader — voltage, hotspot and memory temperature via NVAPI",
    )
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    p.add_argument("--log-dir", default=None, metavar="DIR",
                   help="Also write all output to DIR/<command>_<timestamp>.log")
    sub = p.add_subparsers(dest="command", help="Command to run (default: report)")

    # Options shared by every subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--library", "-L", default=None, metavar="PATH",
                        help="NVAPI module to load (default: platform driver library)")

    rep = sub.add_parser("report", parents=[common], help="Per-GPU telemetry report")
    rep.add_argument("--json", action="store_true", help="Output as JSON")
    rep.add_argument("--gpu", "-g", type=int, default=None, help="Only this GPU index")
    rep.add_argument("--no-nvml", action="store_true",
                     help="Skip the NVML core-temperature cross-reference")

    sub.add_parser("interfaces", parents=[common], help="List NVAPI interfaces and whether they resolve")

    return p


def main(argv: list[str] | None = None) -> int:
    """Parse args and dispatch to the correct subcommand handler.

    Returns 0 on success, non-zero on error.
    """
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(argv)

    # No subcommand given — run the default report
    if args.command is None:
        args = parser.parse_args(argv + ["report"])

    saved = sys.stdout, sys.stderr
    log_file = None
    if args.log_dir:
        log_path, log_file = _init_log(args.log_dir, args.command)
        ts = datetime.now().strftime("[%Y-%m-%d %H:%M:%S]")
        print(f"{ts} nvstats {args.command} — log: {log_path}", file=sys.stderr)
    handler = _init_logging(args.verbose)

    try:
        # Deferred imports: each subcommand only imports what it needs.
        if args.command == "report":
            from nvstats.cli.report import cmd_report
            return cmd_report(args)

        elif args.command == "interfaces":
            from nvstats.cli.report import cmd_interfaces
            return cmd_interfaces(args)

        else:
            parser.print_help()
            return 1
    finally:
        if log_file is not None:
            sys.stdout, sys.stderr = saved
            # Records logged after this (atexit NVML shutdown) must not hit the closed file
            handler.setStream(sys.stderr)
            log_file.close()


if __name__ == "__main__":
    sys.exit(main())
