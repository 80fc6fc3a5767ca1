import logging
import unicodedata
from pathlib import Path
from urllib.parse import quote

from flask import Flask, Response, abort, request, send_file
from werkzeug.datastructures import Headers

from linkdrop.registry import Resource, ShareRegistry
from linkdrop.tarstream import stream_tar

logger = logging.getLogger(__name__)

TAR_MIMETYPE = "application/x-tar"


def attachment_headers(filename: str) -> Headers:
    """Content-Disposition for a download, with an RFC 5987 form for non-ASCII names."""
    headers = Headers()
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        simple = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
        quoted = quote(filename, safe="!#$&+-.^_`|~")
        names = {"filename": simple or "download", "filename*": f"UTF-8''{quoted}"}
    else:
        names = {"filename": filename}
    headers.set("Content-Disposition", "attachment", **names)
    return headers


def _load_not_found_page(not_found_file: str | Path | None) -> bytes:
    if not not_found_file:
        return b""
    try:
        return Path(not_found_file).read_bytes()
    except OSError as exc:
        logger.warning("Not-found page %s is unreadable, using an empty body: %s", not_found_file, exc)
        return b""


def create_app(registry: ShareRegistry, not_found_file: str | Path | None = None) -> Flask:
    app = Flask(__name__)
    app.extensions["linkdrop.registry"] = registry
    not_found_page = _load_not_found_page(not_found_file)

    def deliver_file(resource: Resource):
        try:
            return send_file(
                resource.path,
                as_attachment=True,
                download_name=resource.name,
                conditional=False,
                etag=False,
            )
        except OSError as exc:
            logger.warning("Could not deliver file registered %s -> %s. %s", resource.token, resource.path, exc)
            abort(404)

    def deliver_directory(resource: Resource) -> Response:
        body = stream_tar(resource.path, arcroot=resource.name)
        # No Content-Length: the HTTP/1.1 server falls back to chunked encoding.
        return Response(body, mimetype=TAR_MIMETYPE, headers=attachment_headers(f"{resource.name}.tar"))

    @app.route("/<token>", methods=["GET"], endpoint="share_download", provide_automatic_options=False)
    def share_download(token):
        resource = registry.resolve(token)
        if resource is None:
            logger.debug("Unknown token %r from %s", token, request.remote_addr)
            abort(404)

        logger.info("Received path: %s from %s", token, request.remote_addr)
        if resource.is_directory:
            return deliver_directory(resource)
        return deliver_file(resource)

    @app.errorhandler(404)
    @app.errorhandler(405)
    def not_found(_error):
        if not_found_page:
            return Response(not_found_page, status=404, mimetype="text/html")
        return Response(b"", status=404)

    return app
