from __future__ import annotations

import threading
from pathlib import Path

import pytest

from linkdrop import registry as registry_module
from linkdrop.errors import InvalidPathError, TokenSpaceExhausted
from linkdrop.registry import ResourceKind, ShareRegistry


def test_register_then_resolve_round_trip(registry: ShareRegistry, tmp_path: Path) -> None:
    f = tmp_path / "report.pdf"
    f.write_bytes(b"%PDF")

    file_token = registry.register(f, ResourceKind.FILE)
    dir_token = registry.register(tmp_path, ResourceKind.DIRECTORY)

    file_res = registry.resolve(file_token)
    dir_res = registry.resolve(dir_token)
    assert file_res.path == f.resolve()
    assert file_res.kind is ResourceKind.FILE
    assert file_res.name == "report.pdf"
    assert dir_res.path == tmp_path.resolve()
    assert dir_res.is_directory



def test_snapshot_keeps_registration_order(registry: ShareRegistry, share_tree: Path) -> None:
    paths = [share_tree / "empty", share_tree / "a" / "1.txt", share_tree / "a"]
    tokens = [registry.register(p) for p in paths]

    snapshot = registry.snapshot()
    assert [r.token for r in snapshot] == tokens
    assert [r.path for r in snapshot] == [p.resolve() for p in paths]
    assert len(registry) == 3
    assert tokens[0] in registry

    snapshot.clear()
    assert len(registry.snapshot()) == 3

def test_register_infers_kind(registry: ShareRegistry, share_tree: Path) -> None:
    token = registry.register(share_tree / "a" / "1.txt")

    assert registry.resolve(token).kind is ResourceKind.FILE


def test_register_relative_path_is_stored_absolute(registry: ShareRegistry, share_tree: Path, monkeypatch) -> None:
    monkeypatch.chdir(share_tree)

    token = registry.register("a")

    assert registry.resolve(token).path == (share_tree / "a").resolve()


def test_register_missing_path_fails(registry: ShareRegistry, tmp_path: Path) -> None:
    with pytest.raises(InvalidPathError):
        registry.register(tmp_path / "nope.txt")
    assert len(registry) == 0


def test_register_kind_mismatch_fails(registry: ShareRegistry, share_tree: Path) -> None:
    with pytest.raises(InvalidPathError):
        registry.register(share_tree, ResourceKind.FILE)


def test_resolve_unknown_token_returns_none(registry: ShareRegistry) -> None:
    assert registry.resolve("doesnotexist") is None
    assert registry.resolve("") is None
    assert "doesnotexist" not in registry


def test_collision_is_retried(registry: ShareRegistry, share_tree: Path, monkeypatch) -> None:
    issued = iter(["AAAAAAAA", "AAAAAAAA", "BBBBBBBB"])
    monkeypatch.setattr(registry_module.tokens, "generate", lambda length: next(issued))

    first = registry.register(share_tree / "a" / "1.txt")
    second = registry.register(share_tree / "a" / "b" / "2.txt")

    assert (first, second) == ("AAAAAAAA", "BBBBBBBB")
    assert registry.resolve(first).name == "1.txt"
    assert registry.resolve(second).name == "2.txt"


def test_exhausted_token_space_raises(share_tree: Path, monkeypatch) -> None:
    reg = ShareRegistry(token_length=1, max_attempts=5)
    monkeypatch.setattr(registry_module.tokens, "generate", lambda length: "x")
    reg.register(share_tree)

    with pytest.raises(TokenSpaceExhausted):
        reg.register(share_tree)
    assert len(reg) == 1


def test_concurrent_registration_yields_unique_tokens(share_tree: Path) -> None:
    # Length 2 makes collisions likely, so the retry path is exercised under contention.
    reg = ShareRegistry(token_length=2)
    results: list[str] = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        for _ in range(25):
            token = reg.register(share_tree / "a" / "1.txt")
            with lock:
                results.append(token)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 200
    assert len(set(results)) == 200
    assert len(reg) == 200
    assert all(reg.resolve(token) is not None for token in results)


def test_zero_token_length_rejected() -> None:
    with pytest.raises(ValueError):
        ShareRegistry(token_length=0)
