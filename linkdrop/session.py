import logging
import socket
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path

from werkzeug.serving import BaseWSGIServer, make_server

from linkdrop.app import create_app
from linkdrop.config import Settings
from linkdrop.errors import ListenerBindError
from linkdrop.netinfo import preferred_host, url_host
from linkdrop.portmap import PortForwarder, PortMapping
from linkdrop.registry import Resource, ShareRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareLink:
    resource: Resource
    local_url: str
    external_url: str | None = None

    @property
    def path(self) -> Path:
        return self.resource.path

    @property
    def token(self) -> str:
        return self.resource.token


def _forwarding_outcome(future: Future) -> PortMapping | None:
    if future.cancelled():
        return None
    exc = future.exception()
    if exc is not None:
        logger.error("Port forwarding failed unexpectedly, sharing on the local network only", exc_info=exc)
        return None
    return future.result()


def bind_listener(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        return socket.create_server((host, port), family=family)
    except OSError as exc:
        raise ListenerBindError(host, port, exc) from exc


class ShareSession:
    """
    Owns the registry, the HTTP listener and the port mapping for one run.

    Startup order: bind, register every path, start serving, then ask the
    gateway for a mapping in the background. Requests queue on the bound
    socket until registration is done, so no token is ever resolved early.
    """

    def __init__(self, settings: Settings, paths, forwarder: PortForwarder | None = None) -> None:
        self.settings = settings
        self.paths = [Path(p) for p in paths]
        self.registry = ShareRegistry(settings.token_length)
        self.forwarder = forwarder or PortForwarder(
            enabled=settings.port_forwarding,
            timeout=settings.upnp_timeout,
            lease_duration=settings.lease_duration,
        )
        self.port = 0
        self._local_host = ""
        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None
        self._forwarding: Future | None = None
        self._stopped = threading.Event()

    def __enter__(self) -> "ShareSession":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._server is not None and not self._stopped.is_set()

    def start(self) -> list[ShareLink]:
        host = self.settings.host
        sock = bind_listener(host, self.settings.port)
        try:
            self.port = sock.getsockname()[1]
            for path in self.paths:
                self.registry.register(path)
            app = create_app(self.registry, self.settings.not_found_file)
            # werkzeug duplicates the descriptor, so ours can be closed right away.
            self._server = make_server(host, self.port, app, threaded=True, fd=sock.fileno())
        finally:
            sock.close()

        self._local_host = url_host(preferred_host(host))
        self._thread = threading.Thread(target=self._server.serve_forever, name="linkdrop-http", daemon=True)
        self._thread.start()
        logger.info("Server starting on http://%s:%d/", self._local_host, self.port)

        self._forwarding = self.forwarder.start(self.port)
        return self.links()

    def links(self) -> list[ShareLink]:
        mapping = self.forwarder.mapping
        out = []
        for resource in self.registry.snapshot():
            token = resource.token
            external = None
            if mapping and mapping.external_ip:
                external = f"http://{url_host(mapping.external_ip)}:{mapping.external_port}/{token}"
            out.append(ShareLink(resource, f"http://{self._local_host}:{self.port}/{token}", external))
        return out

    @property
    def forwarding_settled(self) -> bool:
        return self._forwarding is None or self._forwarding.done()

    def wait_for_forwarding(self, timeout: float | None = None) -> PortMapping | None:
        """The mapping, or None if forwarding failed or has not settled within ``timeout``."""
        if self._forwarding is None:
            return None
        try:
            self._forwarding.exception(timeout)
        except TimeoutError:
            return None
        return _forwarding_outcome(self._forwarding)

    def on_forwarding(self, callback: Callable[[PortMapping | None], None]) -> None:
        """
        Call ``callback`` once with the forwarding outcome.

        Runs right away if forwarding has already settled, otherwise on the
        forwarder's thread when it does, however long the gateway takes.
        """
        if self._forwarding is None:
            callback(None)
            return
        self._forwarding.add_done_callback(lambda future: callback(_forwarding_outcome(future)))

    def serve_forever(self) -> None:
        try:
            while not self._stopped.wait(0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        if self._server is not None:
            # Stops accepting; transfers already running finish on their own threads.
            self._server.shutdown()
        self.forwarder.close()
        if self._thread is not None:
            self._thread.join()
        logger.info("Server stopped")
