import collections
import errno
import os
import socket
import struct
import threading

import pytest

from clamav_scan_service import app


class FakeClamd:
    """In-process clamd speaking just enough of the protocol for tests.

    Replies are queued with ``reply``; every connection consumes one
    reply, closes the socket and is recorded in ``requests``.
    """
    def __init__(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(8)
        self.server.settimeout(0.1)
        self.host, self.port = self.server.getsockname()
        self.replies = collections.deque()
        self.requests = []
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def reply(self, *responses: bytes) -> None:
        self.replies.extend(responses)

    def stop(self) -> None:
        self._stopped.set()
        self._thread.join(2)
        self.server.close()

    def _serve(self):
        while not self._stopped.is_set():
            try:
                conn, _ = self.server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                conn.settimeout(2)
                try:
                    self._handle(conn)
                except (EOFError, OSError):
                    # reachability probes connect and hang up
                    pass

    def _handle(self, conn):
        command = _recv_command(conn)
        chunks = []
        if command[1:].startswith(b"INSTREAM"):
            while True:
                (length,) = struct.unpack("!L", _recv_exact(conn, 4))
                chunks.append(length)
                if length == 0:
                    break
                chunks.append(_recv_exact(conn, length))
        self.requests.append({"command": command, "stream": chunks})
        response = self.replies.popleft() if self.replies else b""
        conn.sendall(response)


def _recv_exact(conn, n):
    buf = bytearray()
    while len(buf) < n:
        chunk = conn.recv(n - len(buf))
        if not chunk:
            raise EOFError("connection closed")
        buf.extend(chunk)
    return bytes(buf)


def _recv_command(conn):
    prefix = _recv_exact(conn, 1)
    terminator = b"\x00" if prefix == b"z" else b"\n"
    buf = bytearray(prefix)
    while True:
        b = _recv_exact(conn, 1)
        buf.extend(b)
        if b == terminator:
            return bytes(buf)


@pytest.fixture()
def fake_clamd():
    try:
        fake = FakeClamd()
    except OSError as e:
        if e.errno in (errno.EPERM, errno.EACCES):
            pytest.skip("Socket bind not permitted in this environment.")
        raise

    yield fake

    fake.stop()


@pytest.fixture()
def closed_port():
    """A local TCP port nobody listens on.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture()
def test_app(fake_clamd):
    app.config.update({
        "TESTING": True,
        "CLAMD_HOST": fake_clamd.host,
        "CLAMD_PORT": fake_clamd.port,
        "INCLUDE_RAW_DATA": "false",
    })

    yield app

    # clean up / reset resources here
    for key in ("CLAMD_HOST", "CLAMD_PORT", "INCLUDE_RAW_DATA"):
        app.config.pop(key, None)


@pytest.fixture()
def client(test_app):
    return test_app.test_client()


@pytest.fixture()
def clamd_socket_path():
    """Socket of a real clamd daemon, tests are skipped without it.
    """
    path = os.environ.get("CLAMAV_TEST_SOCKET_PATH")
    if not path:
        pytest.skip("CLAMAV_TEST_SOCKET_PATH not set, no clamd available")
    return path
