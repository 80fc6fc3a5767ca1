from __future__ import annotations

import os
import socket
from pathlib import Path

import pytest
import requests

from linkdrop.config import Settings
from linkdrop.errors import InvalidPathError, ListenerBindError, PortMappingError
from linkdrop.portmap import PortForwarder, PortMapping
from linkdrop.session import ShareSession

from conftest import read_tar

LOCAL = Settings(host="127.0.0.1", port=0, port_forwarding=False)


class StaticForwarder(PortForwarder):
    """Pretends the gateway mapped the port without touching the network."""

    def __init__(self, mapping: PortMapping | None) -> None:
        super().__init__()
        self._static = mapping
        self.closed = False

    def open(self, internal_port: int) -> PortMapping | None:
        if self._static is None:
            return None
        mapping = PortMapping(internal_port, self._static.external_port, "127.0.0.1", 0, self._static.external_ip)
        with self._lock:
            self._mapping = mapping
        return mapping

    def close(self) -> None:
        super().close()
        self.closed = True


@pytest.fixture
def report(tmp_path: Path) -> tuple[Path, bytes]:
    payload = os.urandom(10240)
    path = tmp_path / "report.pdf"
    path.write_bytes(payload)
    return path, payload


def test_serves_registered_file_over_http(report) -> None:
    path, payload = report
    with ShareSession(LOCAL, [path]) as session:
        (link,) = session.links()
        assert link.local_url == f"http://127.0.0.1:{session.port}/{link.token}"

        resp = requests.get(link.local_url, timeout=5)

    assert resp.status_code == 200
    assert resp.content == payload
    assert resp.headers["Content-Length"] == "10240"


def test_directory_uses_chunked_transfer(share_tree: Path) -> None:
    with ShareSession(LOCAL, [share_tree]) as session:
        (link,) = session.links()
        resp = requests.get(link.local_url, timeout=5)

    assert resp.status_code == 200
    assert resp.headers.get("Transfer-Encoding") == "chunked"
    assert read_tar(resp.content)["shared/a/b/2.txt"] == b"second" * 1000


def test_unknown_token_is_404(report) -> None:
    with ShareSession(LOCAL, [report[0]]) as session:
        resp = requests.get(f"http://127.0.0.1:{session.port}/zzzzzzzz", timeout=5)

    assert resp.status_code == 404
    assert resp.content == b""


def test_links_keep_input_order(report, share_tree: Path) -> None:
    with ShareSession(LOCAL, [share_tree, report[0]]) as session:
        links = session.links()

    assert [link.path for link in links] == [share_tree.resolve(), report[0].resolve()]
    assert len({link.token for link in links}) == 2


def test_failed_forwarding_keeps_local_serving(report) -> None:
    def no_gateway(timeout, session):
        raise PortMappingError("no UPnP internet gateway answered")

    forwarder = PortForwarder(discover=no_gateway, timeout=0.1)
    with ShareSession(Settings(host="127.0.0.1", port=0), [report[0]], forwarder=forwarder) as session:
        assert session.wait_for_forwarding(5) is None
        (link,) = session.links()
        assert link.external_url is None
        assert session.registry.resolve(link.token) is not None
        assert requests.get(link.local_url, timeout=5).content == report[1]


def test_successful_forwarding_adds_external_url(report) -> None:
    forwarder = StaticForwarder(PortMapping(0, 40123, "", 0, "203.0.113.7"))
    with ShareSession(Settings(host="127.0.0.1", port=0), [report[0]], forwarder=forwarder) as session:
        mapping = session.wait_for_forwarding(5)
        (link,) = session.links()

    assert mapping.external_port == 40123
    assert link.external_url == f"http://203.0.113.7:40123/{link.token}"
    assert forwarder.closed


def test_forwarding_callback_runs_once_settled(report) -> None:
    forwarder = StaticForwarder(PortMapping(0, 40123, "", 0, "203.0.113.7"))
    outcomes = []
    with ShareSession(Settings(host="127.0.0.1", port=0), [report[0]], forwarder=forwarder) as session:
        session.wait_for_forwarding(5)
        assert session.forwarding_settled
        session.on_forwarding(outcomes.append)

    assert [m.external_port for m in outcomes] == [40123]


def test_port_in_use_is_fatal(report) -> None:
    with socket.create_server(("127.0.0.1", 0)) as taken:
        port = taken.getsockname()[1]
        session = ShareSession(Settings(host="127.0.0.1", port=port, port_forwarding=False), [report[0]])

        with pytest.raises(ListenerBindError):
            session.start()


def test_invalid_path_is_fatal_and_releases_port(tmp_path: Path) -> None:
    with socket.create_server(("127.0.0.1", 0)) as taken:
        port = taken.getsockname()[1]
    session = ShareSession(Settings(host="127.0.0.1", port=port, port_forwarding=False), [tmp_path / "missing"])

    with pytest.raises(InvalidPathError):
        session.start()
    session.stop()

    with socket.create_server(("127.0.0.1", port)):
        pass


def test_client_disconnect_does_not_affect_other_downloads(tmp_path: Path) -> None:
    (tmp_path / "big").mkdir()
    (tmp_path / "big" / "blob.bin").write_bytes(os.urandom(2_000_000))

    with ShareSession(LOCAL, [tmp_path / "big"]) as session:
        (link,) = session.links()
        with requests.get(link.local_url, stream=True, timeout=5) as partial:
            next(partial.iter_content(4096))

        full = requests.get(link.local_url, timeout=10)

    assert full.status_code == 200
    assert len(read_tar(full.content)["big/blob.bin"]) == 2_000_000


def test_stop_is_idempotent(report) -> None:
    session = ShareSession(LOCAL, [report[0]])
    session.start()
    session.stop()
    session.stop()

    assert not session.running
