"""
fsck.py — consistency checker for xv6 filesystem images.

Three passes over a read-only image:

  1. Directory walk   Depth-first from the root.  Counts how many
                      directory entries name each inode and how many
                      inode address slots name each data block,
                      validating directory structure and block ranges on
                      the way.  Files and devices have their blocks
                      walked as they are reached.
  2. Inode scan       Every inode from 2 up: free inodes must be
                      unreferenced, live inodes referenced exactly
                      nlink times (directories once), and every block
                      they declare (the root's included) marked in use
                      in the bitmap.
  3. Bitmap scan      A data block is marked in use exactly when it is
                      referenced.

The first violation raises an XcheckError subclass; nothing is repaired
and nothing after the first failure is checked.

Usage:
  from fsck import check_image
  summary = check_image("fs.img")
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from xv6fs import (
    BSIZE, ROOTINO, IPB, DPB, BPB,
    T_DIR, T_FILE, T_DEV, T_FREE,
    BlockReader, Dinode, DirEntry, Layout,
    decode_superblock, decode_inode, decode_dirent, decode_addrs,
    compute_layout, bitmap_get,
    ApplicationError, BadBlockPointer, BadInodeReference, BadRootDirectory,
    BitmapBlockFreedButUsed, BitmapBlockUsedButFree, DirectoryTooDeep,
    DuplicateBlockUse, DuplicateDirectoryLink, InvalidInodeType,
    LayoutError, LinkCountMismatch, MalformedDirectory, OrphanedLiveReference,
    UnreferencedLiveInode,
)

DEFAULT_MAX_DEPTH = 512


@dataclass
class CheckSummary:
    """Counts gathered by a successful check."""
    layout: Layout
    directories: int = 0
    files: int = 0
    devices: int = 0
    max_depth: int = 0
    blocks_in_use: int = 0


# ── Checking context ───────────────────────────────────────────────────

class CheckContext:
    """Everything one check run owns: the image, its geometry and the two
    reference-count tables."""

    def __init__(self, reader: BlockReader, layout: Layout,
                 max_depth: int = DEFAULT_MAX_DEPTH):
        self.reader = reader
        self.layout = layout
        self.max_depth = max_depth
        self.inode_refs = [0] * layout.ninodes
        self.block_refs = [0] * layout.nblocks
        self.summary = CheckSummary(layout)
        self._bitmap: bytes | None = None

    @classmethod
    def open(cls, reader: BlockReader,
             max_depth: int = DEFAULT_MAX_DEPTH) -> "CheckContext":
        """Read the superblock from *reader* and size the tables from it."""
        if reader.total < 2:
            raise LayoutError(
                f"image too small for a superblock ({reader.total} blocks)")
        sb = decode_superblock(reader.read_block(1))
        layout = compute_layout(sb)
        if sb.size > reader.total:
            raise LayoutError(
                f"superblock declares {sb.size} blocks but image holds "
                f"{reader.total}")
        return cls(reader, layout, max_depth)

    # ── block and inode access ─────────────────────────────────────

    def block(self, bn: int) -> bytes:
        return self.reader.read_block(bn)

    def inode(self, inum: int) -> Dinode:
        if not 0 < inum < self.layout.ninodes:
            raise BadInodeReference(
                f"inode number {inum} outside [1, {self.layout.ninodes})")
        blk = self.block(self.layout.inode_block(inum))
        return decode_inode(blk, inum % IPB)

    # ── block bookkeeping ──────────────────────────────────────────

    def check_pointer(self, bn: int, kind: str, inum: int):
        if not self.layout.in_data_region(bn):
            raise BadBlockPointer(
                f"bad {kind} address in inode {inum}: block {bn} outside "
                f"data region [{self.layout.data_start}, "
                f"{self.layout.data_end})")

    def claim(self, bn: int, kind: str, inum: int):
        """Validate *bn* and count one more reference to it."""
        self.check_pointer(bn, kind, inum)
        idx = bn - self.layout.data_start
        self.block_refs[idx] += 1
        if self.block_refs[idx] > 1:
            raise DuplicateBlockUse(
                f"{kind} address used more than once: block {bn} "
                f"(inode {inum})")

    # ── bitmap ─────────────────────────────────────────────────────

    @property
    def bitmap(self) -> bytes:
        if self._bitmap is None:
            start = self.layout.sb.bmapstart
            self._bitmap = b"".join(
                self.block(start + i)
                for i in range(self.layout.bitmap_blocks))
        return self._bitmap

    def in_use(self, bn: int) -> bool:
        chunk = bn // BPB * BSIZE
        return bitmap_get(self.bitmap[chunk : chunk + BSIZE], bn)


# ── Directory walk ─────────────────────────────────────────────────────

def _directory_entries(ctx: CheckContext, dip: Dinode,
                       inum: int) -> Iterator[DirEntry]:
    """Yield the live entries of directory *inum*, past '.' and '..'.

    Each data block is claimed when the walk reaches it, so blocks are
    counted in the same order a recursive descent would count them.
    """
    if dip.type != T_DIR:
        raise ApplicationError(
            f"directory walk called on non-directory inode {inum} "
            f"(type {dip.type_name})")
    if dip.direct[0] == 0:
        raise MalformedDirectory(
            f"directory not properly formatted: inode {inum} has no data "
            f"blocks for '.' and '..'")
    for i, bp in enumerate(dip.direct):
        if bp == 0:
            break
        ctx.claim(bp, "direct", inum)
        buf = ctx.block(bp)
        slot = 0
        if i == 0:
            dot = decode_dirent(buf, 0)
            if dot.name != "." or dot.inum != inum:
                raise MalformedDirectory(
                    f"directory not properly formatted: inode {inum} "
                    f"entry 0 is {dot.name!r} -> {dot.inum}, expected "
                    f"'.' -> {inum}")
            dotdot = decode_dirent(buf, 1)
            if dotdot.name != "..":
                raise MalformedDirectory(
                    f"directory not properly formatted: inode {inum} "
                    f"entry 1 is {dotdot.name!r}, expected '..'")
            slot = 2
        while slot < DPB:
            de = decode_dirent(buf, slot)
            slot += 1
            if de.free:
                break
            yield de


def check_root(ctx: CheckContext) -> Dinode:
    """Inode 1 must be a directory whose '.' and '..' both name itself."""
    root = ctx.inode(ROOTINO)
    if root.type != T_DIR:
        raise BadRootDirectory(
            f"root directory does not exist: inode {ROOTINO} has type "
            f"{root.type_name}")
    bp = root.direct[0]
    if bp == 0:
        raise BadRootDirectory("root directory does not exist: no data blocks")
    ctx.check_pointer(bp, "direct", ROOTINO)
    buf = ctx.block(bp)
    for slot, name in ((0, "."), (1, "..")):
        de = decode_dirent(buf, slot)
        if de.name != name or de.inum != ROOTINO:
            raise BadRootDirectory(
                f"root directory is not its own parent: entry {slot} is "
                f"{de.name!r} -> {de.inum}")
    return root


def walk_directories(ctx: CheckContext):
    """Walk the tree from the root, filling in both reference tables.

    Depth-first and pre-order, driven by an explicit stack of entry
    iterators rather than recursion.
    """
    root = check_root(ctx)
    ctx.inode_refs[ROOTINO] = 1
    ctx.summary.directories += 1
    stack = [_directory_entries(ctx, root, ROOTINO)]
    while stack:
        de = next(stack[-1], None)
        if de is None:
            stack.pop()
            continue
        ip = ctx.inode(de.inum)
        if not ip.valid_type:
            raise InvalidInodeType(
                f"invalid inode type {ip.type} for inode {de.inum} "
                f"(entry {de.name!r})")
        ctx.inode_refs[de.inum] += 1
        if ip.type == T_DIR:
            if ctx.inode_refs[de.inum] > 1:
                raise DuplicateDirectoryLink(
                    f"directory appears more than once in file system: "
                    f"inode {de.inum} (entry {de.name!r})")
            if len(stack) > ctx.max_depth:
                raise DirectoryTooDeep(
                    f"directory nesting exceeds {ctx.max_depth} levels at "
                    f"inode {de.inum} (entry {de.name!r})")
            stack.append(_directory_entries(ctx, ip, de.inum))
            ctx.summary.directories += 1
            ctx.summary.max_depth = max(ctx.summary.max_depth, len(stack) - 1)
        elif ctx.inode_refs[de.inum] == 1:
            walk_file(ctx, ip, de.inum)


# ── File block walk ────────────────────────────────────────────────────

def walk_file(ctx: CheckContext, ip: Dinode, inum: int):
    """Claim every block a file or device inode addresses."""
    if ip.type not in (T_FILE, T_DEV):
        raise ApplicationError(
            f"file walk called on non-file inode {inum} "
            f"(type {ip.type_name})")
    if ip.type == T_FILE:
        ctx.summary.files += 1
    else:
        ctx.summary.devices += 1

    for bp in ip.direct:
        if bp == 0:
            break
        ctx.claim(bp, "direct", inum)

    ibp = ip.indirect
    if ibp == 0:
        return
    ctx.claim(ibp, "indirect block", inum)
    for bp in decode_addrs(ctx.block(ibp)):
        if bp == 0:
            return
        ctx.claim(bp, "indirect", inum)


# ── Final scans ────────────────────────────────────────────────────────

def _declared_blocks(ctx: CheckContext, ip: Dinode) -> Iterator[int]:
    """Every block address inode *ip* declares, in on-disk order."""
    for bp in ip.direct:
        if bp == 0:
            break
        yield bp
    if ip.indirect == 0:
        return
    yield ip.indirect
    if ip.type == T_DIR:
        return
    for bp in decode_addrs(ctx.block(ip.indirect)):
        if bp == 0:
            return
        yield bp


def _check_declared(ctx: CheckContext, ip: Dinode, inum: int):
    for bp in _declared_blocks(ctx, ip):
        ctx.check_pointer(bp, "declared", inum)
        if not ctx.in_use(bp):
            raise BitmapBlockFreedButUsed(
                f"address used by inode but marked free in bitmap: "
                f"block {bp} (inode {inum})")


def scan_inodes(ctx: CheckContext):
    """Compare every non-root inode against the counts from the walk.

    The root's reference count is fixed by the walk, so only its declared
    blocks are checked against the bitmap.
    """
    _check_declared(ctx, ctx.inode(ROOTINO), ROOTINO)
    for inum in range(ROOTINO + 1, ctx.layout.ninodes):
        ip = ctx.inode(inum)
        refs = ctx.inode_refs[inum]
        if ip.type == T_FREE:
            if refs != 0:
                raise OrphanedLiveReference(
                    f"inode referred to in directory but marked free: "
                    f"inode {inum} ({refs} references)")
            continue
        if not ip.valid_type:
            raise InvalidInodeType(f"bad inode: inode {inum} has type {ip.type}")
        if refs == 0:
            raise UnreferencedLiveInode(
                f"inode marked use but not found in a directory: inode {inum}")
        if ip.type == T_DIR and refs != 1:
            raise DuplicateDirectoryLink(
                f"directory appears more than once in file system: "
                f"inode {inum} ({refs} references)")
        if ip.nlink != refs:
            raise LinkCountMismatch(
                f"bad reference count for file: inode {inum} has nlink "
                f"{ip.nlink} but {refs} directory references")
        _check_declared(ctx, ip, inum)


def scan_bitmap(ctx: CheckContext) -> int:
    """The bitmap must mark exactly the referenced data blocks in use.
    Returns the number of blocks in use."""
    used = 0
    start = ctx.layout.data_start
    for bn in range(start, ctx.layout.data_end):
        if not ctx.in_use(bn):
            if ctx.block_refs[bn - start] > 0:
                raise BitmapBlockFreedButUsed(
                    f"address used by inode but marked free in bitmap: "
                    f"block {bn}")
            continue
        if ctx.block_refs[bn - start] == 0:
            raise BitmapBlockUsedButFree(
                f"bitmap marks block in use but it is not in use: "
                f"block {bn}")
        used += 1
    return used


# ── Driver ─────────────────────────────────────────────────────────────

def run_checks(ctx: CheckContext) -> CheckSummary:
    walk_directories(ctx)
    scan_inodes(ctx)
    ctx.summary.blocks_in_use = scan_bitmap(ctx)
    return ctx.summary


def check_image(path: str | Path,
                max_depth: int = DEFAULT_MAX_DEPTH) -> CheckSummary:
    """Check the image at *path*.  Raises the first XcheckError found."""
    with BlockReader(path) as reader:
        ctx = CheckContext.open(reader, max_depth=max_depth)
        return run_checks(ctx)
