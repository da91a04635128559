import logging
import os
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIServer, make_server

from latex_sandbox_server.app import application
from latex_sandbox_server.sandbox import cleanup_pending_sandboxes
from sandbox_utils import positive_int

logger = logging.getLogger(__name__)


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


def main() -> None:
    host = os.environ.get("HOST", "0.0.0.0")
    port = positive_int(os.environ.get("PORT"), default=3001, maximum=65535)
    with make_server(host, port, application, server_class=_ThreadingWSGIServer) as server:
        logger.info("LaTeX sandbox server listening host=%s port=%s", host, port)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down")
        finally:
            application.shutdown()
            cleanup_pending_sandboxes()


if __name__ == "__main__":
    main()
