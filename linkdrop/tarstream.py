"""
Lazy tar archive of a directory tree.

Output is produced as the consumer pulls it: one header block, then the file
contents in fixed-size chunks, so memory use is bounded by ``chunk_size``
regardless of how large the tree is. Nothing is written to disk.
"""

import logging
import os
import stat
import tarfile
from collections.abc import Iterator
from pathlib import Path

logger = logging.getLogger(__name__)

BLOCKSIZE = tarfile.BLOCKSIZE
RECORDSIZE = tarfile.RECORDSIZE
DEFAULT_CHUNK_SIZE = 64 * 1024

NUL = b"\0"


def stream_tar(
    directory: str | Path,
    arcroot: str = "",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Iterator[bytes]:
    """
    Yield a complete tar archive of ``directory``.

    Member names are relative to ``directory``, prefixed with ``arcroot`` when
    given. Symlinks, special files and entries that cannot be read are left out.
    """
    root = Path(directory)
    written = 0
    for block in _members(root, arcroot.strip("/"), chunk_size):
        written += len(block)
        yield block

    # End of archive: two zero blocks, then pad to a full record like tarfile does.
    trailer = BLOCKSIZE * 2
    written += trailer
    yield NUL * (trailer + (-written) % RECORDSIZE)


def _members(root: Path, arcroot: str, chunk_size: int) -> Iterator[bytes]:
    if arcroot:
        try:
            st = root.stat()
        except OSError as exc:
            logger.warning("cannot stat %s, archive will be empty: %s", root, exc)
            return
        yield _header(arcroot, st, tarfile.DIRTYPE)

    stack: list[tuple[Path, str]] = [(root, arcroot)]
    while stack:
        current, prefix = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            logger.warning("skipping unreadable directory %s: %s", current, exc)
            continue

        subdirs: list[tuple[Path, str]] = []
        for entry in entries:
            arcname = f"{prefix}/{entry.name}" if prefix else entry.name
            try:
                if entry.is_symlink():
                    logger.warning("skipping symlink %s", entry.path)
                    continue
                st = entry.stat(follow_symlinks=False)
            except OSError as exc:
                logger.warning("skipping %s: %s", entry.path, exc)
                continue

            if stat.S_ISDIR(st.st_mode):
                yield _header(arcname, st, tarfile.DIRTYPE)
                subdirs.append((Path(entry.path), arcname))
            elif stat.S_ISREG(st.st_mode):
                yield from _file_member(Path(entry.path), arcname, chunk_size)
            else:
                logger.warning("skipping special file %s", entry.path)

        # Reversed so the pop order matches the sorted listing.
        stack.extend(reversed(subdirs))


def _file_member(path: Path, arcname: str, chunk_size: int) -> Iterator[bytes]:
    try:
        f = open(path, "rb")
    except OSError as exc:
        logger.warning("skipping unreadable file %s: %s", path, exc)
        return

    with f:
        st = os.fstat(f.fileno())
        if not stat.S_ISREG(st.st_mode):
            logger.warning("skipping %s: no longer a regular file", path)
            return

        size = st.st_size
        yield _header(arcname, st, tarfile.REGTYPE, size)

        # The header promised `size` bytes; never write more or fewer.
        remaining = size
        while remaining:
            try:
                chunk = f.read(min(chunk_size, remaining))
            except OSError as exc:
                logger.warning("read error in %s, zero-filling the rest: %s", path, exc)
                break
            if not chunk:
                logger.warning("%s shrank while archiving, zero-filling %d bytes", path, remaining)
                break
            remaining -= len(chunk)
            yield chunk

        while remaining:
            n = min(chunk_size, remaining)
            remaining -= n
            yield NUL * n

        pad = (-size) % BLOCKSIZE
        if pad:
            yield NUL * pad


def _header(arcname: str, st: os.stat_result, type_: bytes, size: int = 0) -> bytes:
    info = tarfile.TarInfo(arcname)
    info.type = type_
    info.size = size
    info.mode = stat.S_IMODE(st.st_mode)
    info.mtime = int(st.st_mtime)
    return info.tobuf(tarfile.PAX_FORMAT, tarfile.ENCODING, "surrogateescape")
