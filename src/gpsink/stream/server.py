# src/gpsink/stream/server.py
"""Pull endpoint serving aggregated chunks to an external loader.

Each GET on the configured path opens one PullSession. The response is
streamed over HTTP/1.0 without chunked transfer encoding and the
connection closes after the body, which is the framing the loader's
external-table protocol expects.
"""

import socket
import threading
from functools import partial

from flask import Flask, Response
from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

from gpsink.contracts.errors import SessionConflictError
from gpsink.core.config import WindowSettings
from gpsink.core.logging import get_logger
from gpsink.stream.aggregator import StreamAggregator
from gpsink.stream.session import PullSession

logger = get_logger(__name__)

PROTOCOL_VERSION = "1.0.0"

PROTOCOL_HEADERS = {
    "Expires": "0",
    "X-GPFDIST-VERSION": PROTOCOL_VERSION,
    "X-GP-PROTO": "1",
    "Cache-Control": "no-cache",
    "Connection": "close",
}


class _ProtocolRequestHandler(WSGIRequestHandler):
    """HTTP/1.0 handler that emits the Connection header once.

    Setting protocol_version on the class keeps the threaded server from
    upgrading to HTTP/1.1, so responses are never chunked.
    """

    protocol_version = "HTTP/1.0"

    def send_response(self, code: int, message: str | None = None) -> None:
        self._connection_header_sent = False
        super().send_response(code, message)

    def send_header(self, keyword: str, value: str) -> None:
        if keyword.lower() == "connection":
            if self._connection_header_sent:
                return
            self._connection_header_sent = True
        super().send_header(keyword, value)


def local_address() -> str:
    """Address of this host as other machines are likely to reach it."""
    return socket.gethostbyname(socket.gethostname())


class ProtocolServer:
    """Flask app plus a threaded werkzeug server for one aggregator.

    Example:
        server = ProtocolServer(aggregator, window, path="/data")
        server.start(port=0)
        server.location  # "gpfdist://10.0.0.5:41817/data"
        server.stop()
    """

    def __init__(
        self,
        aggregator: StreamAggregator,
        window: WindowSettings,
        *,
        path: str = "/data",
        bind_host: str = "0.0.0.0",
        advertised_host: str | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._window = window
        self.path = path
        self.bind_host = bind_host
        self._advertised_host = advertised_host
        self.sessions_completed = 0
        self.sessions_failed = 0
        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None

        self.app = Flask(__name__)
        self.app.add_url_rule(path, "pull", self._pull, methods=["GET"])

    @property
    def port(self) -> int | None:
        """Bound port, or None when not serving."""
        if self._server is None:
            return None
        return self._server.port

    @property
    def location(self) -> str | None:
        """External table location for the loader, or None when not serving."""
        if self._server is None:
            return None
        host = self._advertised_host or local_address()
        return f"gpfdist://{host}:{self._server.port}{self.path}"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _pull(self) -> Response:
        try:
            subscription = self._aggregator.subscribe()
        except SessionConflictError as e:
            logger.warning(
                "Rejected pull session", stream=self._aggregator.name, reason=str(e)
            )
            return Response(str(e), status=409, content_type="text/plain")

        session = PullSession(
            subscription,
            batch_count=self._window.batch_count,
            batch_timeout_seconds=self._window.batch_timeout_seconds,
            stream=self._aggregator.name,
        )
        logger.debug("Pull session started", stream=session.stream)
        response = Response(
            session.frames(),
            status=200,
            headers=PROTOCOL_HEADERS,
            content_type="text/plain",
        )
        response.call_on_close(partial(self._finish, session))
        return response

    def _finish(self, session: PullSession) -> None:
        session.close()
        if session.aborted or not session.sentinels_emitted:
            self.sessions_failed += 1
            logger.error(
                "Load session failed: client went away mid-stream",
                stream=session.stream,
                chunks=session.chunks_sent,
                events=session.events_sent,
            )
            return
        self.sessions_completed += 1
        logger.info(
            "Load session complete",
            stream=session.stream,
            chunks=session.chunks_sent,
            events=session.events_sent,
            bytes=session.bytes_sent,
        )

    def start(self, port: int = 0) -> int:
        """Bind port (0 picks a free one) and serve in a daemon thread.

        Returns:
            The bound port

        Raises:
            OSError: Port could not be bound
        """
        if self._server is not None:
            raise RuntimeError("Protocol server already started")
        # Bind here so a busy port surfaces as OSError; werkzeug exits the
        # process when it fails to bind on its own.
        listener = socket.create_server((self.bind_host, port))
        try:
            self._server = make_server(
                self.bind_host,
                listener.getsockname()[1],
                self.app,
                threaded=True,
                request_handler=_ProtocolRequestHandler,
                fd=listener.fileno(),
            )
        finally:
            listener.close()
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"gpsink-http-{self._aggregator.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Protocol server listening",
            stream=self._aggregator.name,
            host=self.bind_host,
            port=self._server.port,
            path=self.path,
        )
        return self._server.port

    def stop(self) -> None:
        """Stop serving and release the port. Idempotent."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        logger.info(
            "Protocol server stopped",
            stream=self._aggregator.name,
            completed=self.sessions_completed,
            failed=self.sessions_failed,
        )
        self._server = None
        self._thread = None
