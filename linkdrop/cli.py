#!/usr/bin/env python3
import argparse
import logging
import signal
import sys
from pathlib import Path

from linkdrop import __version__
from linkdrop.config import CONFIG_FILE, load_settings
from linkdrop.errors import LinkdropError
from linkdrop.netinfo import format_bytes
from linkdrop.portmap import PortMapping
from linkdrop.session import ShareLink, ShareSession

logger = logging.getLogger("linkdrop")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def describe(link: ShareLink) -> str:
    resource = link.resource
    if resource.is_directory:
        return "directory, streamed as .tar"
    try:
        return f"file, {format_bytes(resource.path.stat().st_size)}"
    except OSError:
        return "file"


def print_share_links(links: list[ShareLink]) -> None:
    print("\n=== Shared paths ===")
    for link in links:
        print(f"{link.path} ({describe(link)})")
        print(f"  Local:  {link.local_url}")
    print()


def print_external_links(links: list[ShareLink], mapping: PortMapping | None) -> None:
    print("=== Internet ===")
    if mapping is None:
        print("Port forwarding unavailable; links work on the local network only.")
    elif not mapping.external_ip:
        print(f"Router forwards external port {mapping.external_port}, but did not report its public address.")
    else:
        for link in links:
            print(f"{link.path}")
            print(f"  Public: {link.external_url}")
        if links:
            name = links[0].resource.name + (".tar" if links[0].resource.is_directory else "")
            print("\nDownload from another machine:")
            print(f'  curl -L -o "{name}" "{links[0].external_url}"')
    print()


def report_external_links(session: ShareSession, mapping: PortMapping | None) -> None:
    if not session.running:
        return
    print_external_links(session.links(), mapping)
    sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="linkdrop",
        description="Share files and directories over HTTP through short random links.",
    )
    parser.add_argument("paths", nargs="+", metavar="PATH", help="File or directory to share")
    parser.add_argument("--host", default=None, help="Address to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (default: 1024)")
    parser.add_argument("--token-length", type=int, default=None, help="Length of the random link part (default: 8)")
    parser.add_argument("--config", default=CONFIG_FILE, help=f"Settings file (default: ./{CONFIG_FILE})")
    parser.add_argument("--not-found-file", default=None, help="HTML file served with 404 responses")
    parser.add_argument("--no-upnp", action="store_true", help="Do not ask the router to forward the port")
    parser.add_argument("--upnp-timeout", type=float, default=None, help="Seconds to wait for a UPnP gateway")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = load_settings(args.config).merged(
            host=args.host,
            port=args.port,
            token_length=args.token_length,
            not_found_file=args.not_found_file,
            upnp_timeout=args.upnp_timeout,
            port_forwarding=False if args.no_upnp else None,
        )
    except LinkdropError as exc:
        raise SystemExit(f"Error: {exc}")

    for raw in args.paths:
        target = Path(raw).expanduser()
        if not target.exists():
            raise SystemExit(f"Error: path does not exist: {target.resolve()}")

    logger.info("Initializing linkdrop %s...", __version__)
    session = ShareSession(settings, args.paths)
    try:
        links = session.start()
    except LinkdropError as exc:
        session.stop()
        raise SystemExit(f"Error: {exc}")

    signal.signal(signal.SIGTERM, lambda signum, frame: session.stop())

    print_share_links(links)
    try:
        # Most gateways answer quickly; waiting a little keeps the common case in one report.
        session.wait_for_forwarding(settings.upnp_timeout)
    except KeyboardInterrupt:
        session.stop()
        return
    if not session.forwarding_settled:
        print("=== Internet ===")
        print("Still negotiating port forwarding with the router; public links will follow.\n")
        sys.stdout.flush()
    session.on_forwarding(lambda mapping: report_external_links(session, mapping))

    session.serve_forever()


if __name__ == "__main__":
    main()
