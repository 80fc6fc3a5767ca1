import logging
import tomllib
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, StrictBool, StrictInt, ValidationError

from linkdrop.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = "linkdrop.toml"

DEFAULT_CONFIG_TEXT = """\
# linkdrop settings. Command-line flags take precedence over this file.

# Port the HTTP server binds to.
port = {port}

# Length of the random part of every share link.
token_length = {token_length}

# Try to open the port on the router through UPnP.
port_forwarding = {port_forwarding}

# Optional HTML file served as the body of 404 responses.
# not_found_file = "404.html"
"""


class Settings(BaseModel):
    """Runtime settings: defaults, overridden by the TOML file, overridden by CLI flags."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = "0.0.0.0"  # noqa: S104
    port: StrictInt = Field(default=1024, ge=0, le=65535)
    token_length: StrictInt = Field(default=8, ge=1, le=255)
    not_found_file: str | None = None
    port_forwarding: StrictBool = True
    upnp_timeout: PositiveFloat = 3.0
    lease_duration: StrictInt = Field(default=3600, ge=0)

    def merged(self, **overrides) -> "Settings":
        """Copy with every non-None override applied, validated again."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return parse_settings(data)


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'settings'}: {err['msg']}" for err in exc.errors()
    )


def parse_settings(data: dict) -> Settings:
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid settings: {_describe(exc)}") from exc


def write_default_settings(path: Path, settings: Settings | None = None) -> None:
    settings = settings or Settings()
    path.write_text(
        DEFAULT_CONFIG_TEXT.format(
            port=settings.port,
            token_length=settings.token_length,
            port_forwarding=str(settings.port_forwarding).lower(),
        ),
        encoding="utf-8",
    )


def load_settings(path: str | Path = CONFIG_FILE, create: bool = True) -> Settings:
    """
    Read settings from a TOML file.

    A missing or unreadable file means defaults (and, if ``create`` is set and the
    file is simply missing, a default file is written next to it). A file that
    exists but can't be parsed is an error: silently ignoring it would hide typos.
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        logger.info("Config %s not found, using defaults", path)
        if create:
            try:
                write_default_settings(path)
            except OSError as exc:
                logger.warning("Cannot write default config. %s", exc)
            else:
                logger.info("Default config written to %s", path)
        return Settings()
    except OSError as exc:
        logger.warning("Config is unreadable. Using default config. %s", exc)
        return Settings()

    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(
            f"{path} is corrupted or not in the right format. Please fix or delete it and restart. {exc}"
        ) from exc

    return parse_settings(data)
