from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest

from linkdrop.registry import ShareRegistry


@pytest.fixture
def registry() -> ShareRegistry:
    return ShareRegistry(token_length=8)


@pytest.fixture
def share_tree(tmp_path: Path) -> Path:
    root = tmp_path / "shared"
    (root / "a" / "b").mkdir(parents=True)
    (root / "a" / "1.txt").write_bytes(b"first file\n")
    (root / "a" / "b" / "2.txt").write_bytes(b"second" * 1000)
    (root / "empty").mkdir()
    return root


def read_tar(data: bytes) -> dict[str, bytes | None]:
    """Member name -> content (None for directories)."""
    out: dict[str, bytes | None] = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
        for member in tar.getmembers():
            if member.isdir():
                out[member.name] = None
            else:
                out[member.name] = tar.extractfile(member).read()
    return out
