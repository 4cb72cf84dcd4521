"""
Fleet Coordinator — Worker Channel Transport
Newline-delimited JSON over TCP. One daemon thread accepts connections and
one thread per connection feeds frames to Coordinator.serve_channel().

Wire format: each frame is a single JSON object terminated by "\\n".
"""

import json
import logging
import socket
import threading
from typing import Optional

from fleetcoord.config import CHANNEL_HOST, CHANNEL_MAX_LINE, CHANNEL_PORT

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


class SocketChannel:
    """One worker connection. Iterating yields raw frames until the peer closes."""

    def __init__(self, conn: socket.socket, max_line: int = CHANNEL_MAX_LINE):
        self._conn = conn
        self._max_line = max_line
        self._send_lock = threading.Lock()
        self._closed = False

    def __iter__(self):
        buf = b""
        discarding = False
        while not self._closed:
            try:
                chunk = self._conn.recv(RECV_SIZE)
            except OSError:
                if self._closed:
                    return
                raise
            if not chunk:
                return
            buf += chunk
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                if discarding:
                    # Tail of an oversized frame
                    discarding = False
                    continue
                if len(line) > self._max_line:
                    logger.warning(f"[CHANNEL] Frame over {self._max_line} bytes dropped")
                    continue
                line = line.strip()
                if line:
                    yield line
            if len(buf) > self._max_line:
                logger.warning(f"[CHANNEL] Frame over {self._max_line} bytes dropped")
                buf = b""
                discarding = True

    def send(self, payload: dict):
        data = (json.dumps(payload) + "\n").encode("utf-8")
        with self._send_lock:
            self._conn.sendall(data)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._conn.close()


class ChannelServer:
    """TCP listener handing each worker connection to the coordinator."""

    def __init__(self, coordinator, host: str = CHANNEL_HOST, port: int = CHANNEL_PORT,
                 max_line: int = CHANNEL_MAX_LINE):
        self._coordinator = coordinator
        self._host = host
        self._port = port
        self._max_line = max_line
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def address(self):
        """Bound (host, port); useful when started on port 0."""
        if self._sock is None:
            return (self._host, self._port)
        return self._sock.getsockname()[:2]

    def start(self) -> bool:
        if self._running:
            return True
        try:
            self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._sock.bind((self._host, self._port))
            self._sock.listen(64)
            self._sock.settimeout(1.0)
        except OSError as e:
            logger.error(f"[CHANNEL] Failed to listen on {self._host}:{self._port}: {e}")
            if self._sock:
                self._sock.close()
                self._sock = None
            return False
        self._running = True
        self._thread = threading.Thread(target=self._accept_loop, name="fleet-accept", daemon=True)
        self._thread.start()
        host, port = self.address
        logger.info(f"[CHANNEL] Listening for workers on {host}:{port}")
        return True

    def stop(self):
        self._running = False
        if self._sock:
            self._sock.close()
        if self._thread:
            self._thread.join(timeout=3)
        logger.info("[CHANNEL] Listener stopped")

    def _accept_loop(self):
        while self._running:
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            channel = SocketChannel(conn, self._max_line)
            thread = threading.Thread(
                target=self._coordinator.serve_channel,
                args=(channel, f"{addr[0]}:{addr[1]}"),
                daemon=True,
            )
            thread.start()
