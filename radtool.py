#!/usr/bin/env python3
"""
Inspect, convert and check RAD files.

Examples:
  radtool view reads.rad --limit 20
  radtool convert reads.rad classes.reqm --workers 8
  radtool convert reads.rad classes.mtx --format mtx --with-labels
  radtool validate reads.rad --collect-errors; echo $?

validate exits 0 for a well-formed file and otherwise with the code of the
error kind found (BadMagic 10, UnsupportedVersion 11, TruncatedHeader 12,
TruncatedChunk 13, LengthMismatch 14, CorruptRecord 15, DimensionMismatch 16,
UnknownType 20, DuplicateTagName 21, SchemaTooShort 22, anything else 1).
"""

from __future__ import annotations

import argparse
import logging
import sys
from functools import partial
from typing import Optional, TextIO

from radlib.engine.parallel import EngineOptions, ErrorPolicy, ParallelDecodeEngine
from radlib.errors import RadError
from radlib.formats import eq_matrix
from radlib.formats.chunk import Chunk
from radlib.formats.rad import read_header
from radlib.models.eqclass import EqClassCollection
from radlib.models.record import Record

logger = logging.getLogger("radtool")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--workers", type=int, default=1, help="Decode worker threads.")
    common.add_argument("--unordered", action="store_true",
                        help="Deliver chunks as they complete instead of in file order.")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")

    p = argparse.ArgumentParser(description="Inspect, convert and validate RAD record streams.")
    sub = p.add_subparsers(dest="command", required=True)

    v = sub.add_parser("view", parents=[common], help="Print decoded records as TSV.")
    v.add_argument("path", help="RAD file.")
    v.add_argument("--limit", type=int, default=None, help="Stop after this many records.")

    c = sub.add_parser("convert", parents=[common], help="Aggregate records into an equivalence-class matrix.")
    c.add_argument("path", help="RAD file.")
    c.add_argument("out", help="Output matrix path.")
    c.add_argument("--format", choices=["reqm", "mtx"], default="reqm",
                   help="Binary REQM matrix or MatrixMarket text.")
    c.add_argument("--with-labels", action="store_true",
                   help="Keep mapping labels (one column block per USA class).")

    k = sub.add_parser("validate", parents=[common], help="Structural check of every chunk and record.")
    k.add_argument("path", help="RAD file.")
    k.add_argument("--collect-errors", action="store_true",
                   help="Report every failing chunk instead of stopping at the first.")
    return p.parse_args(argv)

# =========================
# Per-chunk callbacks (module level so a process pool can pickle them)
# =========================

def _count_records(chunk: Chunk) -> int:
    n = 0
    for _ in chunk.records(borrow=True):
        n += 1
    return n


def _chunk_classes(chunk: Chunk, *, with_labels: bool) -> EqClassCollection:
    return EqClassCollection.from_records(chunk.records(borrow=True), chunk.header.ref_count, with_labels=with_labels)

# =========================
# Commands
# =========================

def _format_record(index: int, rec: Record) -> str:
    maps = ",".join(f"{m.ref_id}:{m.label}" for m in rec.mappings) or "-"
    tags = ";".join(f"{k}={v}" for k, v in rec.tags.items()) or "-"
    bc = rec.barcode.decode("ascii", "backslashreplace")
    umi = rec.umi.decode("ascii", "backslashreplace")
    return f"{index}\t{bc}\t{umi}\t{rec.flags}\t{maps}\t{tags}\n"


def cmd_view(args: argparse.Namespace, engine: ParallelDecodeEngine, out: TextIO) -> int:
    shown = 0
    for outcome in engine.imap(args.path):
        for rec in outcome.value:
            if args.limit is not None and shown >= args.limit:
                return 0
            out.write(_format_record(outcome.index, rec))
            shown += 1
    return 0


def cmd_convert(args: argparse.Namespace, engine: ParallelDecodeEngine) -> int:
    total: Optional[EqClassCollection] = None
    callback = partial(_chunk_classes, with_labels=args.with_labels)
    for outcome in engine.imap(args.path, callback):
        if total is None:
            total = outcome.value
        else:
            total.merge(outcome.value)
    if total is None:
        logger.warning("%s holds no chunks; writing an empty matrix", args.path)
        total = EqClassCollection(read_header(args.path).ref_count, args.with_labels)

    matrix = total.to_matrix()
    if args.format == "mtx":
        matrix.write_mtx(args.out)
    else:
        eq_matrix.encode(matrix, sink=args.out)
    logger.info("%d class(es) over %d column(s), %d unmapped read(s) -> %s",
                matrix.n_rows, matrix.n_cols, total.unmapped, args.out)
    return 0


def cmd_validate(args: argparse.Namespace, engine: ParallelDecodeEngine) -> int:
    result = engine.process(args.path, _count_records)
    for failed in result.errors:
        logger.error("%s", failed.error)
    if result.errors:
        return result.errors[0].error.exit_code
    logger.info("%s: OK, %d chunk(s), %d record(s)", args.path, result.delivered, sum(result.results))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    policy = ErrorPolicy.COLLECT if getattr(args, "collect_errors", False) else ErrorPolicy.FAIL_FAST
    try:
        opts = EngineOptions(workers=args.workers, ordered=not args.unordered, error_policy=policy)
    except ValueError as exc:
        logger.error("%s", exc)
        return 1
    engine = ParallelDecodeEngine(opts)

    try:
        if args.command == "view":
            return cmd_view(args, engine, sys.stdout)
        if args.command == "convert":
            return cmd_convert(args, engine)
        return cmd_validate(args, engine)
    except RadError as exc:
        logger.error("%s", exc)
        return exc.exit_code
    except (OSError, ValueError) as exc:
        logger.error("%s: %s", args.path, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
