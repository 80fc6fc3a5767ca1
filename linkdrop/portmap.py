"""
Best-effort UPnP port forwarding.

The gateway is found with an SSDP M-SEARCH, its description document names the
WAN connection service, and the mapping itself is a SOAP call against that
service's control URL. Any failure leaves the share reachable on the LAN only.
"""

import logging
import socket
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit
from xml.etree import ElementTree as ET
from xml.etree.ElementTree import Element, SubElement, tostring

import requests

from linkdrop.errors import PortMappingError, UPnPError
from linkdrop.netinfo import outbound_ip

logger = logging.getLogger(__name__)

SSDP_ADDR = ("239.255.255.250", 1900)
SEARCH_TARGETS = (
    "urn:schemas-upnp-org:device:InternetGatewayDevice:1",
    "urn:schemas-upnp-org:device:InternetGatewayDevice:2",
    "urn:schemas-upnp-org:service:WANIPConnection:1",
    "urn:schemas-upnp-org:service:WANIPConnection:2",
    "urn:schemas-upnp-org:service:WANPPPConnection:1",
)
# Preference order when a device exposes more than one.
WAN_SERVICES = (
    "urn:schemas-upnp-org:service:WANIPConnection:2",
    "urn:schemas-upnp-org:service:WANIPConnection:1",
    "urn:schemas-upnp-org:service:WANPPPConnection:1",
)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING = "http://schemas.xmlsoap.org/soap/encoding/"

ERR_NO_SUCH_ENTRY = 714
ERR_CONFLICT = 718
ERR_ONLY_PERMANENT_LEASES = 725

DEFAULT_TIMEOUT = 3.0
DEFAULT_LEASE = 3600
DEFAULT_DESCRIPTION = "linkdrop"

ET.register_namespace("s", SOAP_ENV_NS)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


# ----------------------------
# SSDP discovery
# ----------------------------

def build_search_request(search_target: str, mx: int = 2) -> bytes:
    lines = [
        "M-SEARCH * HTTP/1.1",
        f"HOST: {SSDP_ADDR[0]}:{SSDP_ADDR[1]}",
        'MAN: "ssdp:discover"',
        f"MX: {mx}",
        f"ST: {search_target}",
        "",
        "",
    ]
    return "\r\n".join(lines).encode("ascii")


def parse_ssdp_response(data: bytes) -> dict[str, str]:
    """Headers of an SSDP reply, keys lowercased. Empty for anything that isn't a 200."""
    text = data.decode("utf-8", "replace")
    lines = text.split("\r\n") if "\r\n" in text else text.split("\n")
    if not lines or not lines[0].upper().startswith("HTTP/") or " 200" not in lines[0]:
        return {}
    headers: dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return headers


def iter_ssdp_locations(timeout: float = DEFAULT_TIMEOUT) -> Iterator[str]:
    """Yield description URLs of responding gateways until ``timeout`` runs out."""
    deadline = time.monotonic() + timeout
    seen: set[str] = set()
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as exc:
        raise PortMappingError(f"cannot open SSDP socket: {exc}") from exc

    with sock:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        mx = max(1, int(timeout))
        try:
            for target in SEARCH_TARGETS:
                sock.sendto(build_search_request(target, mx), SSDP_ADDR)
        except OSError as exc:
            raise PortMappingError(f"SSDP search failed: {exc}") from exc

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            sock.settimeout(remaining)
            try:
                data, addr = sock.recvfrom(65536)
            except socket.timeout:
                return
            except OSError as exc:
                raise PortMappingError(f"SSDP receive failed: {exc}") from exc

            location = parse_ssdp_response(data).get("location")
            if location and location not in seen:
                seen.add(location)
                logger.debug("SSDP reply from %s: %s", addr[0], location)
                yield location


# ----------------------------
# Device description
# ----------------------------

@dataclass(frozen=True)
class Gateway:
    location: str
    control_url: str
    service_type: str

    @property
    def host(self) -> str:
        return urlsplit(self.control_url).hostname or urlsplit(self.location).hostname or ""


def parse_description(document: bytes, location: str) -> Gateway | None:
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise PortMappingError(f"malformed device description at {location}: {exc}") from exc

    base = location
    found: dict[str, str] = {}
    for el in root.iter():
        name = _local(el.tag)
        if name == "URLBase" and (el.text or "").strip():
            base = el.text.strip()
        elif name == "service":
            fields = {_local(child.tag): (child.text or "").strip() for child in el}
            service_type = fields.get("serviceType", "")
            if service_type in WAN_SERVICES and fields.get("controlURL"):
                found.setdefault(service_type, fields["controlURL"])

    for service_type in WAN_SERVICES:
        if service_type in found:
            return Gateway(location, urljoin(base, found[service_type]), service_type)
    return None


def discover_gateway(timeout: float = DEFAULT_TIMEOUT, session: requests.Session | None = None) -> Gateway:
    session = session or requests.Session()
    for location in iter_ssdp_locations(timeout):
        try:
            resp = session.get(location, timeout=timeout)
            resp.raise_for_status()
            gateway = parse_description(resp.content, location)
        except (requests.RequestException, PortMappingError) as exc:
            logger.debug("Ignoring %s: %s", location, exc)
            continue
        if gateway:
            logger.debug("Using gateway service %s at %s", gateway.service_type, gateway.control_url)
            return gateway
    raise PortMappingError("no UPnP internet gateway answered")


# ----------------------------
# SOAP control
# ----------------------------

def build_soap_envelope(service_type: str, action: str, arguments: list[tuple[str, object]]) -> bytes:
    ET.register_namespace("u", service_type)
    envelope = Element(f"{{{SOAP_ENV_NS}}}Envelope", {f"{{{SOAP_ENV_NS}}}encodingStyle": SOAP_ENCODING})
    body = SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    call = SubElement(body, f"{{{service_type}}}{action}")
    for name, value in arguments:
        SubElement(call, name).text = str(value)
    return tostring(envelope, encoding="utf-8", xml_declaration=True)


def parse_soap_response(status_code: int, content: bytes, action: str) -> dict[str, str]:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise PortMappingError(f"{action}: unreadable response (HTTP {status_code})") from exc

    for el in root.iter():
        if _local(el.tag) == "UPnPError":
            fields = {_local(child.tag): (child.text or "").strip() for child in el}
            try:
                code = int(fields.get("errorCode", ""))
            except ValueError:
                code = 0
            raise UPnPError(code, fields.get("errorDescription", ""))

    if status_code != 200:
        raise PortMappingError(f"{action}: HTTP {status_code}")

    for el in root.iter():
        if _local(el.tag) == f"{action}Response":
            return {_local(child.tag): (child.text or "").strip() for child in el}
    raise PortMappingError(f"{action}: response has no {action}Response element")


class UPnPClient:
    def __init__(self, gateway: Gateway, session: requests.Session | None = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.gateway = gateway
        self._session = session or requests.Session()
        self._timeout = timeout

    def call(self, action: str, arguments: list[tuple[str, object]] | None = None) -> dict[str, str]:
        service_type = self.gateway.service_type
        body = build_soap_envelope(service_type, action, arguments or [])
        headers = {
            "Content-Type": 'text/xml; charset="utf-8"',
            "SOAPAction": f'"{service_type}#{action}"',
        }
        try:
            resp = self._session.post(self.gateway.control_url, data=body, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise PortMappingError(f"{action} failed: {exc}") from exc
        return parse_soap_response(resp.status_code, resp.content, action)

    def external_ip(self) -> str:
        return self.call("GetExternalIPAddress").get("NewExternalIPAddress", "")

    def add_port_mapping(
        self,
        external_port: int,
        internal_port: int,
        internal_client: str,
        lease_duration: int,
        description: str = DEFAULT_DESCRIPTION,
        protocol: str = "TCP",
    ) -> None:
        self.call(
            "AddPortMapping",
            [
                ("NewRemoteHost", ""),
                ("NewExternalPort", external_port),
                ("NewProtocol", protocol),
                ("NewInternalPort", internal_port),
                ("NewInternalClient", internal_client),
                ("NewEnabled", 1),
                ("NewPortMappingDescription", description),
                ("NewLeaseDuration", lease_duration),
            ],
        )

    def delete_port_mapping(self, external_port: int, protocol: str = "TCP") -> None:
        self.call(
            "DeletePortMapping",
            [
                ("NewRemoteHost", ""),
                ("NewExternalPort", external_port),
                ("NewProtocol", protocol),
            ],
        )


# ----------------------------
# Forwarder (owns the mapping lifecycle)
# ----------------------------

@dataclass(frozen=True)
class PortMapping:
    internal_port: int
    external_port: int
    internal_client: str
    lease_duration: int
    external_ip: str | None = None
    protocol: str = "TCP"


class PortForwarder:
    def __init__(
        self,
        enabled: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        lease_duration: int = DEFAULT_LEASE,
        description: str = DEFAULT_DESCRIPTION,
        session: requests.Session | None = None,
        discover=discover_gateway,
        max_port_attempts: int = 8,
        renew_interval: float | None = None,
    ) -> None:
        self.enabled = enabled
        self.timeout = timeout
        self.lease_duration = lease_duration
        self.description = description
        self.max_port_attempts = max_port_attempts
        self._renew_interval = renew_interval
        self._session = session or requests.Session()
        self._discover = discover
        self._client: UPnPClient | None = None
        self._mapping: PortMapping | None = None
        # Last mapping whose renewal failed; the gateway may still hold it until shutdown.
        self._stale: PortMapping | None = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._renewer: threading.Thread | None = None

    @property
    def mapping(self) -> PortMapping | None:
        with self._lock:
            return self._mapping

    def start(self, internal_port: int) -> "Future[PortMapping | None]":
        """Run ``open`` in the background; the future resolves once, to the mapping or None."""
        if not self.enabled:
            future: Future = Future()
            future.set_result(None)
            return future
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="linkdrop-upnp")
        return self._executor.submit(self.open, internal_port)

    def open(self, internal_port: int) -> PortMapping | None:
        if not self.enabled:
            return None
        try:
            mapping = self._create(internal_port)
        except PortMappingError as exc:
            logger.warning("Port forwarding unavailable, sharing on the local network only. %s", exc)
            return None

        with self._lock:
            self._mapping = mapping
        logger.info(
            "Port forwarding active: %s:%d -> %s:%d (lease %s)",
            mapping.external_ip or "?",
            mapping.external_port,
            mapping.internal_client,
            mapping.internal_port,
            f"{mapping.lease_duration}s" if mapping.lease_duration else "permanent",
        )

        if mapping.lease_duration:
            self._renewer = threading.Thread(
                target=self._renew_loop, args=(mapping,), name="linkdrop-upnp-renew", daemon=True
            )
            self._renewer.start()
        return mapping

    def _create(self, internal_port: int) -> PortMapping:
        gateway = self._discover(self.timeout, self._session)
        client = UPnPClient(gateway, self._session, self.timeout)
        internal_client = outbound_ip(gateway.host)

        lease = self.lease_duration
        external_port = internal_port
        attempts = 0
        while True:
            try:
                client.add_port_mapping(external_port, internal_port, internal_client, lease, self.description)
                break
            except UPnPError as exc:
                if exc.code == ERR_ONLY_PERMANENT_LEASES and lease:
                    logger.debug("Gateway only supports permanent leases")
                    lease = 0
                    continue
                attempts += 1
                if exc.code != ERR_CONFLICT or attempts >= self.max_port_attempts:
                    raise
                logger.debug("External port %d is taken, trying the next one", external_port)
                external_port = external_port + 1 if external_port < 65535 else 1024

        try:
            external_ip = client.external_ip() or None
        except PortMappingError as exc:
            logger.warning("Could not read the gateway's external address. %s", exc)
            external_ip = None

        self._client = client
        return PortMapping(
            internal_port=internal_port,
            external_port=external_port,
            internal_client=internal_client,
            lease_duration=lease,
            external_ip=external_ip,
        )

    def _renew_loop(self, mapping: PortMapping) -> None:
        interval = self._renew_interval or max(mapping.lease_duration / 2, 1)
        while not self._stop.wait(interval):
            try:
                self._client.add_port_mapping(
                    mapping.external_port,
                    mapping.internal_port,
                    mapping.internal_client,
                    mapping.lease_duration,
                    self.description,
                )
            except PortMappingError as exc:
                logger.warning("Port mapping renewal failed, external link may stop working. %s", exc)
                with self._lock:
                    if self._mapping is mapping:
                        self._mapping = None
                        self._stale = mapping
                return
            logger.debug("Renewed port mapping on external port %d", mapping.external_port)

    def close(self) -> None:
        self._stop.set()
        if self._executor:
            # Discovery is bounded by `timeout`; wait so a late mapping is still released.
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._renewer:
            self._renewer.join(self.timeout)
            self._renewer = None

        with self._lock:
            mapping = self._mapping or self._stale
            self._mapping = self._stale = None
        if mapping is None or self._client is None:
            return
        try:
            self._client.delete_port_mapping(mapping.external_port, mapping.protocol)
        except PortMappingError as exc:
            logger.warning("Could not release port mapping on external port %d. %s", mapping.external_port, exc)
            return
        logger.info("Released port mapping on external port %d", mapping.external_port)
