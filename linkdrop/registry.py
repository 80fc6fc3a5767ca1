import enum
import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from linkdrop import tokens
from linkdrop.errors import InvalidPathError, TokenSpaceExhausted

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 64


class ResourceKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class Resource:
    token: str
    path: Path
    kind: ResourceKind

    @property
    def name(self) -> str:
        return self.path.name or "download"

    @property
    def is_directory(self) -> bool:
        return self.kind is ResourceKind.DIRECTORY


def detect_kind(path: Path) -> ResourceKind:
    if path.is_dir():
        return ResourceKind.DIRECTORY
    if path.is_file():
        return ResourceKind.FILE
    if not path.exists():
        raise InvalidPathError(path)
    raise InvalidPathError(path, "not a regular file or directory")


class ShareRegistry:
    """Thread-safe token -> Resource map. Tokens are never reused or removed."""

    def __init__(self, token_length: int, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        if isinstance(token_length, bool) or not isinstance(token_length, int) or token_length < 1:
            raise ValueError(f"token length must be a positive integer, got {token_length!r}")
        self.token_length = token_length
        self._max_attempts = max_attempts
        self._map: dict[str, Resource] = {}
        self._lock = threading.Lock()

    def register(self, path: str | Path, kind: ResourceKind | None = None) -> str:
        p = Path(path).expanduser().resolve()
        actual = detect_kind(p)
        if kind is not None and kind is not actual:
            raise InvalidPathError(p, f"expected a {kind.value}, found a {actual.value}")

        with self._lock:
            for _ in range(self._max_attempts):
                token = tokens.generate(self.token_length)
                if token not in self._map:
                    self._map[token] = Resource(token=token, path=p, kind=actual)
                    break
                logger.debug("token collision on %s, regenerating", token)
            else:
                raise TokenSpaceExhausted(
                    f"no free token of length {self.token_length} after {self._max_attempts} attempts"
                )

        logger.debug("registered %s %s -> %s", actual.value, p, token)
        return token

    def resolve(self, token: str) -> Resource | None:
        with self._lock:
            return self._map.get(token)

    def snapshot(self) -> list[Resource]:
        with self._lock:
            return list(self._map.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._map)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._map
