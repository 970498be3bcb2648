"""
Read-only static file server for a content source.
"""
import logging
import posixpath
import threading
from urllib.parse import quote

from flask import Flask, abort, redirect, render_template_string, request, send_file
from werkzeug.serving import make_server

from config import LOCAL_HOST
from core.capability import gate
from core.content_source import FILE, ContentSource
from core.security import sanitize_name

logger = logging.getLogger(__name__)

INDEX_FILE = 'index.html'

LISTING_TEMPLATE = """<!doctype html>
<meta name="referrer" content="no-referrer">
<pre>
{% for name, is_dir in entries -%}
<a href="{{ name | urlquote }}{{ '/' if is_dir }}">{{ name }}{{ '/' if is_dir }}</a>
{% endfor -%}
</pre>
"""


def create_app(source: ContentSource, slug: str = '') -> Flask:
    """
    Build the Flask app serving ``source``, gated by ``slug``.

    Only GET and HEAD are answered. Directories serve their index.html,
    otherwise a listing where the source allows one.
    """
    app = Flask(__name__)
    app.config['DEBUG'] = False
    app.jinja_env.filters['urlquote'] = lambda s: quote(s, safe='')

    def _send(name):
        local = source.local_path(name)
        if local is not None:
            return send_file(local, conditional=True)
        return send_file(source.open(name), download_name=posixpath.basename(name),
                         conditional=True)

    @app.route('/', defaults={'subpath': ''}, methods=['GET', 'HEAD'])
    @app.route('/<path:subpath>', methods=['GET', 'HEAD'])
    def serve(subpath):
        name = sanitize_name(request.path)
        if name is None:
            abort(404)

        kind = source.kind(name)
        if kind is None:
            logger.debug("Not found: %r", name)
            abort(404)

        trailing = request.path.endswith('/')
        basename = posixpath.basename(name)

        if kind == FILE:
            if trailing:
                return redirect('../' + quote(basename), code=301)
            return _send(name)

        if name and not trailing:
            return redirect(quote(basename) + '/', code=301)

        index = posixpath.join(name, INDEX_FILE) if name else INDEX_FILE
        if source.kind(index) == FILE:
            return _send(index)

        if not source.listing_allowed:
            abort(404)
        return render_template_string(LISTING_TEMPLATE, entries=source.listdir(name))

    @app.errorhandler(404)
    def not_found(e):
        return "404 page not found\n", 404, {'Content-Type': 'text/plain; charset=utf-8'}

    @app.errorhandler(405)
    def method_not_allowed(e):
        return "405 method not allowed\n", 405, {'Content-Type': 'text/plain; charset=utf-8'}

    app.wsgi_app = gate(app.wsgi_app, slug)
    return app


class GatewayServer:
    """Serves a WSGI app on an already listening socket."""

    def __init__(self, app, listener):
        # Request lines carry the slug
        logging.getLogger('werkzeug').setLevel(logging.ERROR)
        self._server = make_server(LOCAL_HOST, 0, app, threaded=True, fd=listener.fileno())
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._started = False

    def serve_forever(self):
        """Serve until shutdown(). Errors from the accept loop propagate."""
        with self._lock:
            if self._stopping.is_set():
                self._server.server_close()
                return
            self._started = True
        try:
            self._server.serve_forever()
        finally:
            self._server.server_close()

    def shutdown(self):
        with self._lock:
            if self._stopping.is_set():
                return
            self._stopping.set()
            started = self._started
        # socketserver's shutdown() waits for a loop that is running
        if started:
            self._server.shutdown()

    def close(self):
        """Shut down and free the server socket, whether or not it served."""
        self.shutdown()
        with self._lock:
            started = self._started
        if not started:
            self._server.server_close()
