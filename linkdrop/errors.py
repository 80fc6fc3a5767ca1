class LinkdropError(Exception):
    """Base class for every error raised by linkdrop."""


# ----------------------------
# Fatal (startup)
# ----------------------------

class InvalidPathError(LinkdropError):
    def __init__(self, path, reason: str = "path does not exist") -> None:
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason


class ListenerBindError(LinkdropError):
    def __init__(self, host: str, port: int, cause: OSError) -> None:
        super().__init__(f"cannot bind {host}:{port} ({cause.strerror or cause})")
        self.host = host
        self.port = port
        self.cause = cause


class TokenSpaceExhausted(LinkdropError):
    pass


class ConfigError(LinkdropError):
    pass


# ----------------------------
# Soft (port forwarding)
# ----------------------------

class PortMappingError(LinkdropError):
    pass


class UPnPError(PortMappingError):
    """SOAP fault returned by the gateway."""

    def __init__(self, code: int, description: str = "") -> None:
        super().__init__(f"UPnP error {code}: {description or 'unknown'}")
        self.code = code
        self.description = description
