"""Fixtures shared by the coirc tests: an in-memory socket and a connected client."""

from collections import deque

import pytest

import coirc


class FakeSocket:
    """Stands in for a connected TCP socket.

    Chunks queued with feed() are returned by recv() one at a time; once the
    queue is empty recv() behaves like a non-blocking socket with no data.
    """

    def __init__(self):
        self.inbound = deque()
        self.sent = []
        self.capacity = None
        self.send_error = None
        self.timeout = None
        self.closed = False
        self.shut = False

    def feed(self, data):
        if isinstance(data, str):
            data = data.encode('utf-8')
        self.inbound.append(data)

    def recv(self, size):
        if not self.inbound:
            raise BlockingIOError("no data")
        item = self.inbound.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    def send(self, data):
        """Accepts at most ``capacity`` bytes, like a socket with a full send buffer."""
        if self.send_error is not None:
            raise self.send_error
        if self.capacity is None:
            taken = len(data)
        elif self.capacity == 0:
            raise BlockingIOError("send buffer full")
        else:
            taken = min(len(data), self.capacity)
            self.capacity -= taken
        self.sent.append(bytes(data[:taken]))
        return taken

    def settimeout(self, value):
        self.timeout = value

    def shutdown(self, how):
        self.shut = True

    def close(self):
        self.closed = True

    @property
    def lines(self):
        return [chunk.decode('utf-8') for chunk in self.sent]


@pytest.fixture
def scheduler():
    return coirc.Scheduler()


@pytest.fixture
def sockets(monkeypatch):
    """Patches socket.create_connection; every call hands out a new FakeSocket."""
    created = []

    def create_connection(address):
        sock = FakeSocket()
        created.append(sock)
        return sock

    monkeypatch.setattr(coirc.socket, 'create_connection', create_connection)
    return created


@pytest.fixture
def make_client(scheduler, sockets):
    """Returns a factory for connected clients and their fake sockets."""

    def factory(nick='bot', **config):
        conn = scheduler.create(dict(config, nick=nick))
        ok, err = conn.connect('irc.example.com')
        assert ok and err is None
        sock = sockets[-1]
        sock.sent.clear()
        return conn, sock

    return factory
