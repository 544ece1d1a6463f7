#!/usr/bin/env python3
"""
xcheck — offline consistency checker for xv6 filesystem images.

Usage:
    xcheck fs.img
    xcheck fs.img --verbose
    xcheck fs.img --max-depth 64

Prints nothing and exits 0 when the image is consistent.  Otherwise
prints one line naming the first violation found and exits 1.
"""

from __future__ import annotations

import argparse
import sys

from fsck import DEFAULT_MAX_DEPTH, check_image
from xv6fs import XcheckError

USAGE = "usage: xcheck <filesystem_image>"


class _ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors on stdout with exit status 1."""

    def error(self, message):
        print(USAGE)
        sys.exit(1)


def _print_summary(path, summary):
    lay = summary.layout
    sb = lay.sb
    print(f"{path}: size={sb.size} nblocks={sb.nblocks} "
          f"ninodes={sb.ninodes} nlog={sb.nlog}", file=sys.stderr)
    print(f"  inode blocks {lay.inode_blocks} at {sb.inodestart}, "
          f"bitmap blocks {lay.bitmap_blocks} at {sb.bmapstart}, "
          f"data [{lay.data_start}, {lay.data_end})", file=sys.stderr)
    print(f"  {summary.directories} dirs, {summary.files} files, "
          f"{summary.devices} devices, depth {summary.max_depth}, "
          f"{summary.blocks_in_use}/{sb.nblocks} data blocks in use",
          file=sys.stderr)


def main(argv=None) -> int:
    parser = _ArgumentParser(
        prog="xcheck",
        description="Check an xv6 filesystem image for consistency",
    )
    parser.add_argument("image", help="Filesystem image path")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH,
                        metavar="N",
                        help=f"Maximum directory nesting "
                             f"(default: {DEFAULT_MAX_DEPTH})")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Print a geometry summary to stderr on success")
    args = parser.parse_args(argv)

    try:
        summary = check_image(args.image, max_depth=args.max_depth)
    except XcheckError as e:
        print(f"ERROR: {e}")
        return 1

    if args.verbose:
        _print_summary(args.image, summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
