import fcntl
import os
import socket
import struct

SIOCGIFADDR = 0x8915
SYS_NET = "/sys/class/net"
WILDCARD_HOSTS = ("", "0.0.0.0", "::")


def format_bytes(num: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    size = float(num)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{num} B"


def iface_ipv4(ifname: str) -> str | None:
    """IPv4 address of a Linux interface, or None if it has none."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            ifreq = struct.pack("256s", ifname.encode("utf-8")[:15])
            res = fcntl.ioctl(s.fileno(), SIOCGIFADDR, ifreq)
        return socket.inet_ntoa(res[20:24])
    except OSError:
        return None


def _interface_names() -> list[str]:
    try:
        return sorted(os.listdir(SYS_NET))
    except OSError:
        return []


def _ipv4s_by_prefix(names: list[str], prefix: str) -> list[str]:
    out = []
    for ifname in names:
        if ifname.startswith(prefix):
            ip = iface_ipv4(ifname)
            if ip and not ip.startswith("127."):
                out.append(ip)
    return out


def outbound_ip(target: str = "8.8.8.8", port: int = 80) -> str:
    """Local address the kernel would use to reach ``target``. No packets are sent."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((target, port))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def lan_addresses(bound_host: str) -> list[str]:
    """Addresses worth printing in share URLs, best first (tun, eth, others, default route)."""
    if bound_host not in WILDCARD_HOSTS:
        return [bound_host]

    names = _interface_names()
    tun = _ipv4s_by_prefix(names, "tun")
    eth = _ipv4s_by_prefix(names, "eth")
    others: list[str] = []
    for ifname in names:
        if ifname == "lo" or ifname.startswith(("tun", "eth")):
            continue
        ip = iface_ipv4(ifname)
        if ip and not ip.startswith("127.") and ip not in tun and ip not in eth:
            others.append(ip)

    ips = tun + eth + others
    if not ips:
        ips = [outbound_ip()]
    return ips


def preferred_host(bound_host: str) -> str:
    return lan_addresses(bound_host)[0]


def url_host(host: str) -> str:
    return f"[{host}]" if ":" in host else host
