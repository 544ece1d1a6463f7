"""
mkfs.py — xv6 filesystem image builder.

Creates, formats and populates xv6 images from Python.  The test suite
uses it to build consistent images and then corrupt them one field at a
time; from the command line it builds images for xcheck.

Geometry matches xv6's own mkfs: the inode table and bitmap are sized
with one spare block each, and blocks are handed out in order from the
start of the data region.

    fs = XV6FS()
    fs.format()
    fs.mkdir("/", "bin")
    fs.create_file("/bin", "hello", b"hi\\n")
    fs.save("fs.img")
"""

from __future__ import annotations

import os
from pathlib import Path

from xv6fs import (
    BSIZE, ROOTINO, NDIRECT, MAXFILE, IPB, DPB, BPB,
    DINODE_SIZE, DIRENT_SIZE, DIRSIZ, T_DIR, T_FILE, T_DEV, T_FREE, T_NAMES,
    Superblock, Dinode, DirEntry,
    decode_superblock, decode_inode, decode_dirent, decode_addrs,
    encode_dirent, bitmap_get, bitmap_set, bitmap_clear,
)

# ── Constants ──────────────────────────────────────────────────────────

FSSIZE = 1000       # blocks
NINODES = 200
LOGSIZE = 30


class XV6FS:
    """In-memory xv6 filesystem image."""

    def __init__(self, data: bytearray | None = None, size: int = FSSIZE,
                 ninodes: int = NINODES, nlog: int = LOGSIZE):
        if data is not None:
            self.img = bytearray(data)
            self.sb = decode_superblock(self.block(1))
        else:
            self.img = bytearray(size * BSIZE)
            nbitmap = size // BPB + 1
            ninodeblocks = ninodes // IPB + 1
            nmeta = 2 + nlog + ninodeblocks + nbitmap
            if nmeta >= size:
                raise ValueError(f"{size} blocks too small for metadata")
            self.sb = Superblock(
                size=size, nblocks=size - nmeta, ninodes=ninodes, nlog=nlog,
                logstart=2, inodestart=2 + nlog,
                bmapstart=2 + nlog + ninodeblocks)
        self.total = len(self.img) // BSIZE
        self._freeinode = ROOTINO
        self._freeblock = self.data_start

    @property
    def data_start(self) -> int:
        return self.sb.size - self.sb.nblocks

    # ── block I/O ──────────────────────────────────────────────────

    def block(self, bn: int) -> bytearray:
        off = bn * BSIZE
        return self.img[off : off + BSIZE]

    def write_block(self, bn: int, data: bytes | bytearray, offset: int = 0):
        off = bn * BSIZE + offset
        self.img[off : off + len(data)] = data

    # ── bitmap ─────────────────────────────────────────────────────

    def _bmap_block(self, bn: int) -> int:
        return self.sb.bmapstart + bn // BPB

    def get_bit(self, bn: int) -> bool:
        return bitmap_get(self.block(self._bmap_block(bn)), bn)

    def set_bit(self, bn: int):
        bmap = self.block(self._bmap_block(bn))
        bitmap_set(bmap, bn)
        self.write_block(self._bmap_block(bn), bmap)

    def clear_bit(self, bn: int):
        bmap = self.block(self._bmap_block(bn))
        bitmap_clear(bmap, bn)
        self.write_block(self._bmap_block(bn), bmap)

    def balloc(self) -> int:
        """Allocate and zero the next free data block."""
        for bn in range(self._freeblock, self.sb.size):
            if not self.get_bit(bn):
                self.set_bit(bn)
                self.write_block(bn, bytes(BSIZE))
                self._freeblock = bn + 1
                return bn
        raise RuntimeError("Out of data blocks")

    # ── inodes ─────────────────────────────────────────────────────

    def read_inode(self, inum: int) -> Dinode:
        return decode_inode(self.block(self.sb.inodestart + inum // IPB),
                            inum % IPB)

    def write_inode(self, inum: int, din: Dinode):
        self.write_block(self.sb.inodestart + inum // IPB, din.pack(),
                         offset=(inum % IPB) * DINODE_SIZE)

    def ialloc(self, itype: int) -> int:
        for inum in range(self._freeinode, self.sb.ninodes):
            if self.read_inode(inum).type == T_FREE:
                self.write_inode(inum, Dinode(type=itype, nlink=1))
                self._freeinode = inum + 1
                return inum
        raise RuntimeError(f"Out of inodes ({self.sb.ninodes})")

    def append(self, inum: int, data: bytes | bytearray):
        """Append *data* to inode *inum*, allocating blocks as needed."""
        din = self.read_inode(inum)
        off = din.size
        pos = 0
        while pos < len(data):
            fbn = off // BSIZE
            if fbn >= MAXFILE:
                raise RuntimeError(f"File too big for inode {inum}")
            if fbn < NDIRECT:
                if din.addrs[fbn] == 0:
                    din.addrs[fbn] = self.balloc()
                bn = din.addrs[fbn]
            else:
                if din.indirect == 0:
                    din.addrs[NDIRECT] = self.balloc()
                addrs = decode_addrs(self.block(din.indirect))
                slot = fbn - NDIRECT
                if addrs[slot] == 0:
                    addrs[slot] = self.balloc()
                    self.write_block(din.indirect,
                                     addrs[slot].to_bytes(4, "little"),
                                     offset=slot * 4)
                bn = addrs[slot]
            n = min(len(data) - pos, (fbn + 1) * BSIZE - off)
            self.write_block(bn, data[pos : pos + n], offset=off % BSIZE)
            off += n
            pos += n
        din.size = off
        self.write_inode(inum, din)

    def read_data(self, inum: int) -> bytes:
        din = self.read_inode(inum)
        blocks = [a for a in din.direct if a]
        if din.indirect:
            blocks += [a for a in decode_addrs(self.block(din.indirect)) if a]
        data = b"".join(bytes(self.block(bn)) for bn in blocks)
        return data[:din.size]

    # ── directories ────────────────────────────────────────────────

    def add_entry(self, dir_inum: int, name: str, inum: int):
        """Append a raw directory entry; no link counts are touched."""
        self.append(dir_inum, encode_dirent(inum, name))

    def list_dir(self, dir_inum: int) -> list[DirEntry]:
        data = self.read_data(dir_inum)
        entries = []
        for i in range(len(data) // DIRENT_SIZE):
            blk, slot = divmod(i, DPB)
            de = decode_dirent(data[blk * BSIZE : (blk + 1) * BSIZE], slot)
            if not de.free:
                entries.append(de)
        return entries

    def lookup(self, dir_inum: int, name: str) -> int | None:
        for de in self.list_dir(dir_inum):
            if de.name == name:
                return de.inum
        return None

    def resolve_path(self, path: str) -> int:
        """Resolve an absolute path to an inode number."""
        inum = ROOTINO
        for part in [p for p in path.split("/") if p]:
            if self.read_inode(inum).type != T_DIR:
                raise NotADirectoryError(f"Not a directory: {part!r}")
            child = self.lookup(inum, part)
            if child is None:
                raise FileNotFoundError(f"No such file or directory: {path!r}")
            inum = child
        return inum

    def _parent(self, parent: int | str) -> int:
        inum = self.resolve_path(parent) if isinstance(parent, str) else parent
        if self.read_inode(inum).type != T_DIR:
            raise NotADirectoryError(f"Not a directory: inode {inum}")
        return inum

    def _check_name(self, dir_inum: int, name: str):
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Bad name: {name!r}")
        if len(name.encode("ascii")) > DIRSIZ:
            raise ValueError(f"Name too long: {name!r} (max {DIRSIZ})")
        if self.lookup(dir_inum, name) is not None:
            raise FileExistsError(f"Already exists: {name!r}")

    # ── public API ─────────────────────────────────────────────────

    def format(self):
        """Write a fresh filesystem holding only the root directory."""
        self.img[:] = bytes(len(self.img))
        self._freeinode = ROOTINO
        self._freeblock = self.data_start
        self.write_block(1, self.sb.pack())
        for bn in range(self.data_start):
            self.set_bit(bn)
        root = self.ialloc(T_DIR)
        assert root == ROOTINO
        self.add_entry(root, ".", root)
        self.add_entry(root, "..", root)

    def mkdir(self, parent: int | str, name: str) -> int:
        pinum = self._parent(parent)
        self._check_name(pinum, name)
        inum = self.ialloc(T_DIR)
        self.add_entry(inum, ".", inum)
        self.add_entry(inum, "..", pinum)
        self.add_entry(pinum, name, inum)
        return inum

    def create_file(self, parent: int | str, name: str,
                    data: bytes | bytearray = b"", itype: int = T_FILE,
                    major: int = 0, minor: int = 0) -> int:
        pinum = self._parent(parent)
        self._check_name(pinum, name)
        inum = self.ialloc(itype)
        if itype == T_DEV:
            din = self.read_inode(inum)
            din.major, din.minor = major, minor
            self.write_inode(inum, din)
        if data:
            self.append(inum, data)
        self.add_entry(pinum, name, inum)
        return inum

    def link(self, parent: int | str, name: str, inum: int):
        """Hard-link an existing file under a new name."""
        pinum = self._parent(parent)
        din = self.read_inode(inum)
        if din.type == T_DIR:
            raise IsADirectoryError(f"Cannot link directory inode {inum}")
        self._check_name(pinum, name)
        self.add_entry(pinum, name, inum)
        din.nlink += 1
        self.write_inode(inum, din)

    def info(self) -> dict:
        sb = self.sb
        used = sum(1 for bn in range(self.data_start, sb.size)
                   if self.get_bit(bn))
        inodes = sum(1 for i in range(ROOTINO, sb.ninodes)
                     if self.read_inode(i).type != T_FREE)
        return {
            "size": sb.size,
            "nblocks": sb.nblocks,
            "ninodes": sb.ninodes,
            "nlog": sb.nlog,
            "inodestart": sb.inodestart,
            "bmapstart": sb.bmapstart,
            "data_start": self.data_start,
            "inodes_used": inodes,
            "blocks_used": used,
        }

    # ── serialisation ──────────────────────────────────────────────

    def save(self, path: str | Path):
        Path(path).write_bytes(self.img)

    @classmethod
    def load(cls, path: str | Path) -> "XV6FS":
        return cls(bytearray(Path(path).read_bytes()))


def format_image(path: str | Path, size: int = FSSIZE,
                 ninodes: int = NINODES, nlog: int = LOGSIZE) -> XV6FS:
    """Create and format a new image at *path*."""
    fs = XV6FS(size=size, ninodes=ninodes, nlog=nlog)
    fs.format()
    fs.save(path)
    return fs


# ── CLI ────────────────────────────────────────────────────────────────

def main():
    import argparse

    parser = argparse.ArgumentParser(
        prog="xv6-mkfs",
        description="xv6 filesystem image builder",
    )
    sub = parser.add_subparsers(dest="cmd")

    p_fmt = sub.add_parser("format", help="Create a blank formatted image")
    p_fmt.add_argument("-o", "--output", default="fs.img",
                       help="Output path (default: fs.img)")
    p_fmt.add_argument("--size", type=int, default=FSSIZE,
                       help=f"Total blocks (default: {FSSIZE})")
    p_fmt.add_argument("--ninodes", type=int, default=NINODES,
                       help=f"Inode count (default: {NINODES})")
    p_fmt.add_argument("--nlog", type=int, default=LOGSIZE,
                       help=f"Log blocks (default: {LOGSIZE})")

    p_mkdir = sub.add_parser("mkdir", help="Create a directory")
    p_mkdir.add_argument("image", help="Image path")
    p_mkdir.add_argument("name", help="Directory name")
    p_mkdir.add_argument("-p", "--path", default="/",
                         help="Parent path (default: /)")

    p_inj = sub.add_parser("inject", help="Copy a host file into an image")
    p_inj.add_argument("image", help="Image path")
    p_inj.add_argument("file", help="File to inject")
    p_inj.add_argument("-n", "--name", default=None,
                       help="Name in image (default: basename of file)")
    p_inj.add_argument("-p", "--path", default="/",
                       help="Directory path (default: /)")

    p_ls = sub.add_parser("ls", help="List a directory")
    p_ls.add_argument("image", help="Image path")
    p_ls.add_argument("path", nargs="?", default="/",
                      help="Directory path (default: /)")

    p_info = sub.add_parser("info", help="Show superblock info")
    p_info.add_argument("image", help="Image path")

    args = parser.parse_args()

    if args.cmd is None:
        parser.print_help()
        return

    if args.cmd == "format":
        format_image(args.output, size=args.size, ninodes=args.ninodes,
                     nlog=args.nlog)
        print(f"Formatted {args.output} ({args.size} blocks, "
              f"{args.ninodes} inodes)")

    elif args.cmd == "mkdir":
        fs = XV6FS.load(args.image)
        inum = fs.mkdir(args.path, args.name)
        fs.save(args.image)
        print(f"Created directory '{args.name}' (inode {inum})")

    elif args.cmd == "inject":
        name = args.name or os.path.basename(args.file)
        with open(args.file, "rb") as f:
            data = f.read()
        fs = XV6FS.load(args.image)
        inum = fs.create_file(args.path, name, data)
        fs.save(args.image)
        print(f"Injected '{name}' ({len(data)} bytes, inode {inum})")

    elif args.cmd == "ls":
        fs = XV6FS.load(args.image)
        inum = fs.resolve_path(args.path)
        print(f"{'Name':<16} {'Type':<5} {'Inode':>5} {'Links':>5} {'Size':>8}")
        print("-" * 44)
        for de in fs.list_dir(inum):
            din = fs.read_inode(de.inum)
            tname = T_NAMES.get(din.type, f"?{din.type}")
            print(f"{de.name:<16} {tname:<5} {de.inum:>5} {din.nlink:>5} "
                  f"{din.size:>8}")

    elif args.cmd == "info":
        fs = XV6FS.load(args.image)
        for k, v in fs.info().items():
            print(f"  {k}: {v}")


if __name__ == "__main__":
    main()
