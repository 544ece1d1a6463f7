"""
xv6fs.py — on-disk format of the xv6 filesystem, as read by xcheck.

Decodes the superblock, inodes, directory entries and the free-space
bitmap from raw 512-byte blocks, and derives the filesystem geometry.
All fields are unsigned little-endian; every record is decoded at an
explicit offset with struct, never by overlaying host memory.

Disk layout (blocks of 512 bytes):
    Block 0            Boot block (ignored)
    Block 1            Superblock
    Blocks 2..         Log          (nlog blocks)
    inodestart..       Inode table  (ninodes / IPB, rounded up)
    bmapstart..        Free bitmap  (size / BPB, rounded up)
    data_start..       Data region  (nblocks blocks)

Superblock (block 1):
    +0   size        u32   total blocks in the image
    +4   nblocks     u32   data blocks
    +8   ninodes     u32
    +12  nlog        u32
    +16  logstart    u32
    +20  inodestart  u32
    +24  bmapstart   u32

Inode (64 bytes, 8 per block):
    +0   type        u16   0=free 1=dir 2=file 3=device
    +2   major       u16
    +4   minor       u16
    +6   nlink       u16
    +8   size        u32
    +12  addrs[13]   u32   12 direct + 1 indirect

Directory entry (16 bytes, 32 per block):
    +0   inum        u16   0 terminates the block
    +2   name[14]    NUL padded

Bitmap:
    Bit (b % 8) of byte (b % BPB) / 8 in block bmapstart + b / BPB is set
    when block b is in use.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field
from pathlib import Path

# ── Constants ──────────────────────────────────────────────────────────

BSIZE = 512
ROOTINO = 1

NDIRECT = 12
NINDIRECT = BSIZE // 4
MAXFILE = NDIRECT + NINDIRECT

DINODE_SIZE = 64
IPB = BSIZE // DINODE_SIZE

DIRSIZ = 14
DIRENT_SIZE = 16
DPB = BSIZE // DIRENT_SIZE

BPB = BSIZE * 8

# Inode types
T_FREE = 0
T_DIR  = 1
T_FILE = 2
T_DEV  = 3

T_NAMES = {T_FREE: "free", T_DIR: "dir", T_FILE: "file", T_DEV: "dev"}

_SUPERBLOCK = struct.Struct("<7I")
_DINODE = struct.Struct(f"<4HI{NDIRECT + 1}I")
_DIRENT = struct.Struct(f"<H{DIRSIZ}s")
_ADDR = struct.Struct("<I")


# ── Errors ─────────────────────────────────────────────────────────────

class XcheckError(Exception):
    """Base for every inconsistency or failure the checker reports."""
    pass

class ImageIOError(XcheckError):
    pass

class LayoutError(XcheckError):
    pass

class BadBlockPointer(XcheckError):
    pass

class BadInodeReference(XcheckError):
    pass

class DuplicateBlockUse(XcheckError):
    pass

class DuplicateDirectoryLink(XcheckError):
    pass

class MalformedDirectory(XcheckError):
    pass

class BadRootDirectory(MalformedDirectory):
    pass

class InvalidInodeType(XcheckError):
    pass

class UnreferencedLiveInode(XcheckError):
    pass

class OrphanedLiveReference(XcheckError):
    pass

class LinkCountMismatch(XcheckError):
    pass

class BitmapBlockFreedButUsed(XcheckError):
    pass

class BitmapBlockUsedButFree(XcheckError):
    pass

class DirectoryTooDeep(XcheckError):
    pass

class ApplicationError(XcheckError):
    """A component was handed an inode of the wrong kind."""
    pass


# ── Data classes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Superblock:
    size: int
    nblocks: int
    ninodes: int
    nlog: int
    logstart: int
    inodestart: int
    bmapstart: int

    def pack(self) -> bytes:
        return _SUPERBLOCK.pack(self.size, self.nblocks, self.ninodes,
                                self.nlog, self.logstart, self.inodestart,
                                self.bmapstart)


@dataclass
class Dinode:
    """One 64-byte on-disk inode."""
    type: int = T_FREE
    major: int = 0
    minor: int = 0
    nlink: int = 0
    size: int = 0
    addrs: list[int] = field(default_factory=lambda: [0] * (NDIRECT + 1))

    @property
    def type_name(self) -> str:
        return T_NAMES.get(self.type, f"?{self.type}")

    @property
    def valid_type(self) -> bool:
        return T_DIR <= self.type <= T_DEV

    @property
    def direct(self) -> list[int]:
        return self.addrs[:NDIRECT]

    @property
    def indirect(self) -> int:
        return self.addrs[NDIRECT]

    def pack(self) -> bytes:
        return _DINODE.pack(self.type, self.major, self.minor, self.nlink,
                            self.size, *self.addrs)


@dataclass(frozen=True)
class DirEntry:
    """One 16-byte directory entry."""
    inum: int
    name: str

    @property
    def free(self) -> bool:
        return self.inum == 0


@dataclass(frozen=True)
class Layout:
    """Geometry derived from the superblock."""
    sb: Superblock
    inode_blocks: int
    bitmap_blocks: int
    data_start: int

    @property
    def ninodes(self) -> int:
        return self.sb.ninodes

    @property
    def nblocks(self) -> int:
        return self.sb.nblocks

    @property
    def data_end(self) -> int:
        """One past the last data block."""
        return self.data_start + self.sb.nblocks

    def in_data_region(self, bn: int) -> bool:
        return self.data_start <= bn < self.data_end

    def inode_block(self, inum: int) -> int:
        return self.sb.inodestart + inum // IPB


# ── Decoders ───────────────────────────────────────────────────────────

def _ceil_div(n: int, d: int) -> int:
    return (n + d - 1) // d


def decode_superblock(block: bytes) -> Superblock:
    return Superblock(*_SUPERBLOCK.unpack_from(block, 0))


def decode_inode(block: bytes, slot: int) -> Dinode:
    """Decode inode slot *slot* (0..IPB-1) of an inode-table block."""
    assert 0 <= slot < IPB, f"inode slot {slot} out of range"
    fields = _DINODE.unpack_from(block, slot * DINODE_SIZE)
    return Dinode(*fields[:5], addrs=list(fields[5:]))


def decode_dirent(block: bytes, slot: int) -> DirEntry:
    """Decode directory entry *slot* (0..DPB-1) of a directory block."""
    assert 0 <= slot < DPB, f"dirent slot {slot} out of range"
    inum, raw = _DIRENT.unpack_from(block, slot * DIRENT_SIZE)
    name = raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")
    return DirEntry(inum, name)


def encode_dirent(inum: int, name: str) -> bytes:
    name_bytes = name.encode("ascii")
    if len(name_bytes) > DIRSIZ:
        raise ValueError(f"Name too long: {name!r} (max {DIRSIZ})")
    return _DIRENT.pack(inum, name_bytes)


def decode_addrs(block: bytes) -> list[int]:
    """Decode an indirect block into its NINDIRECT block addresses."""
    return [a for (a,) in _ADDR.iter_unpack(block[:NINDIRECT * 4])]


def compute_layout(sb: Superblock) -> Layout:
    """Derive the geometry, rejecting superblocks that cannot describe a
    usable filesystem."""
    if sb.ninodes == 0:
        raise LayoutError("superblock declares zero inodes")
    if sb.size == 0 or sb.nblocks == 0:
        raise LayoutError(
            f"superblock declares an empty filesystem "
            f"(size={sb.size} nblocks={sb.nblocks})")
    inode_blocks = _ceil_div(sb.ninodes, IPB)
    bitmap_blocks = _ceil_div(sb.size, BPB)
    if sb.inodestart < 2 + sb.nlog:
        raise LayoutError(
            f"inode table at block {sb.inodestart} overlaps the superblock "
            f"or log ({sb.nlog} blocks)")
    if sb.inodestart + inode_blocks > sb.bmapstart:
        raise LayoutError(
            f"inode table ({inode_blocks} blocks at {sb.inodestart}) "
            f"overlaps bitmap at block {sb.bmapstart}")
    if sb.nblocks >= sb.size:
        raise LayoutError(
            f"superblock declares {sb.nblocks} data blocks in a "
            f"{sb.size}-block filesystem")
    data_start = sb.size - sb.nblocks
    if data_start < sb.bmapstart + bitmap_blocks:
        raise LayoutError(
            f"data region at block {data_start} overlaps bitmap "
            f"({bitmap_blocks} blocks at {sb.bmapstart})")
    return Layout(sb, inode_blocks, bitmap_blocks, data_start)


# ── Bitmap helpers ─────────────────────────────────────────────────────

def bitmap_get(bmap: bytes, bn: int) -> bool:
    """Return True if block *bn* is marked in use in *bmap* (one block's
    worth of bitmap, so *bn* is taken modulo BPB)."""
    byte_idx, bit_idx = divmod(bn % BPB, 8)
    return bool(bmap[byte_idx] & (1 << bit_idx))


def bitmap_set(bmap: bytearray, bn: int):
    byte_idx, bit_idx = divmod(bn % BPB, 8)
    bmap[byte_idx] |= (1 << bit_idx)


def bitmap_clear(bmap: bytearray, bn: int):
    byte_idx, bit_idx = divmod(bn % BPB, 8)
    bmap[byte_idx] &= ~(1 << bit_idx) & 0xFF


# ── Block I/O ──────────────────────────────────────────────────────────

class BlockReader:
    """Read-only, block-addressed access to an image file.

    The only place in the checker that turns block numbers into byte
    offsets.  Use as a context manager so the file is closed on every
    exit path.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        try:
            self._f = open(self.path, "rb")
        except OSError as e:
            raise ImageIOError(f"invalid image file: {path}: {e.strerror}") from e
        self.total = os.fstat(self._f.fileno()).st_size // BSIZE

    def read_block(self, bn: int) -> bytes:
        """Return block *bn* as BSIZE bytes."""
        if bn < 0 or bn >= self.total:
            raise ImageIOError(
                f"block {bn} outside image ({self.total} blocks)")
        try:
            self._f.seek(bn * BSIZE)
            data = self._f.read(BSIZE)
        except OSError as e:
            raise ImageIOError(f"read of block {bn} failed: {e}") from e
        if len(data) != BSIZE:
            raise ImageIOError(
                f"short read of block {bn} ({len(data)} of {BSIZE} bytes)")
        return data

    def close(self):
        self._f.close()

    def __enter__(self) -> "BlockReader":
        return self

    def __exit__(self, *exc):
        self.close()
