"""
Development and preview HTTP server with push-based live reload.
"""
from __future__ import annotations

import argparse
import hashlib
import http.server
import mimetypes
import os
import pathlib
import queue
import threading
import typing

from .errors import ServerBindError
from .pretty_utils import print_with_style

if typing.TYPE_CHECKING:
    from collections.abc import Sequence
    from socketserver import _AfInetAddress


INDEX_FILE = 'index.html'
# Default used by nginx
DEFAULT_MIME_TYPE = 'application/octet-stream'
DEFAULT_PORT = 9000
RELOAD_PATH = '/__sardine__/reload'
RELOAD_KINDS = ('full', 'css')
# Idle reload streams send a comment this often, noticing viewers who left.
KEEPALIVE_INTERVAL = 15.0

RELOAD_SCRIPT = '''<script>
(function () {
  var source = new EventSource('%s');
  source.onmessage = function (event) {
    if (event.data === 'css') {
      var links = document.querySelectorAll('link[rel="stylesheet"]');
      for (var i = 0; i < links.length; i++) {
        var url = new URL(links[i].href);
        url.searchParams.set('sardine', Date.now());
        links[i].href = url.toString();
      }
    } else {
      window.location.reload();
    }
  };
})();
</script>''' % RELOAD_PATH

_CLOSE = object()


class ReloadListener:
    """
    One connected viewer's queue of pending reload messages.
    """
    def __init__(self):
        self.messages: queue.Queue[str | object] = queue.Queue()

    def push(self, kind: str):
        self.messages.put(kind)

    def close(self):
        self.messages.put(_CLOSE)

    def get(self, timeout: float | None = None) -> str | None:
        """
        Return the next message, None once closed; raises `queue.Empty` on
        timeout.
        """
        message = self.messages.get(timeout=timeout)
        return None if message is _CLOSE else typing.cast(str, message)


class ThreadedHTTPServer(http.server.ThreadingHTTPServer):
    """
    A simple HTTP server that handles each request in a separate thread and
    knows the session it serves.
    """
    daemon_threads = True
    RequestHandlerClass: typing.Type[Handler]

    def __init__(self,
                 server_address: _AfInetAddress,
                 session: ServerSession,
                 bind_and_activate: bool = True) -> None:
        super().__init__(server_address, Handler, bind_and_activate)
        self.session = session

    def finish_request(self, request, client_address) -> None:
        self.RequestHandlerClass(request, client_address, self, directory=str(self.session.roots[0]))


class Handler(http.server.SimpleHTTPRequestHandler):
    server: ThreadedHTTPServer

    def log_message(self, format, *args):
        # Keep the console for build output.
        pass

    def get_etag(self, file_path: pathlib.Path):
        """
        Generate an etag for a file based on its path and modification time.
        """
        mtime = os.path.getmtime(file_path)
        file_size = os.path.getsize(file_path)
        file_info = f"{file_path}-{file_size}-{mtime}-{self.server.session.live_reload}"
        return hashlib.md5(file_info.encode('utf-8')).hexdigest()

    def find_file(self) -> pathlib.Path | None:
        """
        Resolve the request path against each served root in turn, returning
        the first existing file. Raises PermissionError for paths outside the
        roots.
        """
        for root in self.server.session.roots:
            self.directory = str(root)
            file_path = pathlib.Path(self.translate_path(self.path))
            if file_path.is_dir():
                file_path /= INDEX_FILE
            # self.translate_path() should discard any suspicious path
            # components, but it's better to be safe.
            if not file_path.resolve().is_relative_to(root.resolve()):
                raise PermissionError(self.path)
            if file_path.is_file():
                return file_path
        return None

    def do_GET(self):
        if self.path.split('?', 1)[0] == RELOAD_PATH:
            return self.stream_reloads()
        self.send_file(body=True)

    def do_HEAD(self):
        self.send_file(body=False)

    def send_file(self, body: bool):
        """
        Respond with the requested file from the first root holding it,
        leaving the content out when @body is False.
        """
        try:
            file_path = self.find_file()
        except PermissionError:
            return self.send_error(403, f'Forbidden: {self.path}')
        if file_path is None:
            return self.send_error(404, f'File Not Found: {self.path}')

        etag = self.get_etag(file_path)
        # Check if the client already has the file
        if self.headers.get('If-None-Match') == etag:
            self.send_response(304)
            self.end_headers()
            return

        mime_type, _enc = mimetypes.guess_type(file_path)
        mime_type = mime_type or DEFAULT_MIME_TYPE
        contents = file_path.read_bytes()
        if mime_type == 'text/html' and self.server.session.live_reload:
            contents = inject_reload_script(contents)

        self.send_response(200)
        self.send_header('Content-type', mime_type)
        self.send_header('Content-Length', str(len(contents)))
        self.send_header('ETag', etag)
        self.send_header('Cache-Control', 'no-cache')
        self.end_headers()
        if body:
            self.wfile.write(contents)

    def stream_reloads(self):
        """
        Hold the connection open as a server-sent event stream, forwarding
        reload notifications until the viewer leaves or the session stops.
        """
        session = self.server.session
        if not session.live_reload:
            return self.send_error(404, 'Live reload is disabled')

        self.send_response(200)
        self.send_header('Content-type', 'text/event-stream')
        self.send_header('Cache-Control', 'no-cache')
        self.end_headers()
        self.close_connection = True

        listener = session.subscribe()
        try:
            self.wfile.write(b': connected\n\n')
            self.wfile.flush()
            while True:
                try:
                    kind = listener.get(timeout=KEEPALIVE_INTERVAL)
                except queue.Empty:
                    self.wfile.write(b': keepalive\n\n')
                    self.wfile.flush()
                    continue
                if kind is None:
                    break
                self.wfile.write(f'data: {kind}\n\n'.encode('utf-8'))
                self.wfile.flush()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            session.unsubscribe(listener)


def inject_reload_script(body: bytes) -> bytes:
    """
    Insert the live reload client before `</body>`, or append it when there
    is no body end tag.
    """
    script = RELOAD_SCRIPT.encode('utf-8')
    index = body.lower().rfind(b'</body>')
    if index == -1:
        return body + script
    return body[:index] + script + body[index:]


class ServerSession:
    """
    A running (or runnable) server over @roots. The session owns its listening
    socket and every connected reload listener: `stop()`, or leaving a `with`
    block, releases them all.
    """
    def __init__(self,
                 roots: Sequence[str | pathlib.Path],
                 port: int = DEFAULT_PORT,
                 host: str = 'localhost',
                 live_reload: bool = True):
        if not roots:
            raise ValueError('ServerSession needs at least one root directory')
        self.roots = [pathlib.Path(r) for r in roots]
        self.host = host
        self.requested_port = port
        self.live_reload = live_reload
        self._listeners: set[ReloadListener] = set()
        self._lock = threading.Lock()
        self._httpd: ThreadedHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.stop()

    @property
    def running(self):
        return self._httpd is not None

    @property
    def port(self) -> int:
        """
        The bound port once started; the requested one before.
        """
        if self._httpd:
            return self._httpd.server_address[1]
        return self.requested_port

    @property
    def url(self):
        return f'http://{self.host}:{self.port}/'

    def start(self):
        if self._httpd:
            return
        try:
            httpd = ThreadedHTTPServer((self.host, self.requested_port), self)
        except OSError as e:
            raise ServerBindError(self.host, self.requested_port, e) from e
        self._httpd = httpd
        self._thread = threading.Thread(target=httpd.serve_forever, name='sardine-server', daemon=True)
        self._thread.start()
        print_with_style(f'Serving {", ".join(map(str, self.roots))} at {self.url}', style='green')

    def stop(self):
        if not self._httpd:
            return
        with self._lock:
            listeners = list(self._listeners)
            self._listeners.clear()
        for listener in listeners:
            listener.close()
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread:
            self._thread.join()
        self._httpd = None
        self._thread = None

    def subscribe(self) -> ReloadListener:
        listener = ReloadListener()
        with self._lock:
            self._listeners.add(listener)
        return listener

    def unsubscribe(self, listener: ReloadListener):
        with self._lock:
            self._listeners.discard(listener)

    @property
    def listener_count(self):
        with self._lock:
            return len(self._listeners)

    def notify(self, kind: str = 'full') -> int:
        """
        Push a reload of @kind ('full' or 'css') to every connected viewer,
        returning how many were notified.
        """
        if kind not in RELOAD_KINDS:
            raise ValueError(f'Unknown reload kind {kind!r}')
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener.push(kind)
        return len(listeners)

    def serve_forever(self):
        """
        Start if needed and block until interrupted.
        """
        self.start()
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()


def main(arguments: list[str] | None = None):
    parser = argparse.ArgumentParser(description='Serve directories over HTTP.')
    parser.add_argument('-p', '--port',
                        help='port to serve from',
                        type=int,
                        default=DEFAULT_PORT)
    parser.add_argument('-d', '--directory',
                        help='directory to serve; may be repeated, earlier ones take precedence',
                        type=pathlib.Path,
                        action='append',
                        dest='directories')
    parser.add_argument('--live-reload',
                        help='inject the live reload client into HTML pages',
                        action=argparse.BooleanOptionalAction,
                        default=False)
    args = parser.parse_args(arguments)
    ServerSession(args.directories or [pathlib.Path('.')], args.port, live_reload=args.live_reload).serve_forever()


if __name__ == '__main__':
    main()
