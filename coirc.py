# coirc.py
import contextlib
import logging
import re
import socket
from enum import Enum
from typing import (Any, Callable, Dict, List, Mapping, NamedTuple, Optional,
                    Tuple, Union)

# --- Basic Configuration ---

DEFAULT_PORT = 6667
DEFAULT_USERNAME = "coirc"
DEFAULT_REALNAME = "coirc owns"
READ_SIZE = 4096

# When set, every received line is logged at INFO instead of DEBUG.
debug = False

log = logging.getLogger(__name__)


# --- Errors ---

class IRCError(Exception):
    """Base class for every error raised by this module."""


class ConfigError(IRCError):
    """A required field was missing when creating a connection."""


class AccessDenied(IRCError):
    """An operation was called in a mode that does not allow it."""

    def __init__(self, operation: str, mode: 'Mode'):
        super().__init__(f"'{operation}' is not accessible while the connection is {mode.value}")
        self.operation = operation
        self.mode = mode


class ConnectionClosed(AccessDenied):
    """The connection has been shut down and its transport released."""


class ConnectError(IRCError):
    """Opening the transport failed. Returned by connect(), never raised."""

    def __init__(self, host: str, port: int, error: OSError):
        super().__init__(f"Could not connect to {host}:{port}: {error}")
        self.host = host
        self.port = port
        self.error = error


class ConnectionFault(IRCError):
    """A condition that ended one connection while it was being scheduled."""

    def __init__(self, connection: 'Connection', message: Optional[str]):
        super().__init__(message)
        self.connection = connection
        self.message = message


class TransportFault(ConnectionFault):
    """Reading from the socket failed for a reason other than 'no data yet'."""


class ProtocolFatal(ConnectionFault):
    """The server sent ERROR and closed the link."""


class HookNotFound(IRCError, LookupError):
    def __init__(self, event: str, hook_id: Any):
        super().__init__(f"hook ID {hook_id!r} not found for {event}")
        self.event = event
        self.hook_id = hook_id


class TickError(IRCError):
    """Raised at the end of a tick in which one or more connections faulted.

    Every connection in the registry has still been resumed when this is
    raised; ``faults`` holds one ConnectionFault per failed connection and
    ``should_continue`` is what tick() would have returned.
    """

    def __init__(self, faults: List[ConnectionFault], should_continue: bool):
        super().__init__("; ".join(f"{f.connection.nick}: {f}" for f in faults))
        self.faults = faults
        self.should_continue = should_continue


# --- Message Parsing ---

_USER_PREFIX = re.compile(r"(.*)!(.*)@(.*)")


class Prefix(NamedTuple):
    """The decoded actor of a message.

    A ``nick!user@host`` prefix fills nick, user and host; anything else is a
    server name and only ``server`` is set.
    """
    nick: Optional[str] = None
    user: Optional[str] = None
    host: Optional[str] = None
    server: Optional[str] = None


def parse_prefix(prefix: Optional[str]) -> Prefix:
    if prefix is None:
        return Prefix()
    match = _USER_PREFIX.fullmatch(prefix)
    if match is None:
        return Prefix(server=prefix)
    return Prefix(*match.groups())


class Message(NamedTuple):
    """Represents a parsed IRC message."""
    prefix: Optional[str]
    command: str
    params: List[str]

    @classmethod
    def parse(cls, line: str) -> 'Message':
        """Parses a raw IRC line (without CRLF) into a Message object.

        The trailing parameter starts at the first colon found after the
        first character; everything behind it is kept verbatim.
        """
        trailing = None
        marker = line.find(':', 1)
        if marker != -1:
            trailing = line[marker + 1:]
            line = line[:marker - 1]

        prefix = None
        if line.startswith(':'):
            prefix, _, line = line[1:].partition(' ')

        tokens = line.split()
        command = tokens[0] if tokens else ''
        params = tokens[1:]
        if trailing is not None:
            params.append(trailing)
        return cls(prefix, command, params)

    @property
    def actor(self) -> Prefix:
        return parse_prefix(self.prefix)


# --- Command Dispatch ---

Handler = Callable[['Connection', Message], None]

HANDLERS: Dict[str, Handler] = {}


def handler(command: str) -> Callable[[Handler], Handler]:
    """Registers a built-in reaction for a protocol command."""
    def decorator(func: Handler) -> Handler:
        HANDLERS[command.upper()] = func
        return func
    return decorator


def _args(message: Message, count: int) -> List[Optional[str]]:
    # Missing parameters are passed on as None.
    params: List[Optional[str]] = list(message.params[:count])
    return params + [None] * (count - len(params))


@handler('PING')
def _handle_ping(conn: 'Connection', message: Message) -> None:
    query = message.params[0] if message.params else ''
    conn.send("PONG :%s", query)


@handler('001')
def _handle_welcome(conn: 'Connection', message: Message) -> None:
    conn.invoke('OnConnect')


@handler('PRIVMSG')
def _handle_privmsg(conn: 'Connection', message: Message) -> None:
    channel, text = _args(message, 2)
    conn.invoke('OnChat', message.actor, channel, text)


@handler('NOTICE')
def _handle_notice(conn: 'Connection', message: Message) -> None:
    channel, text = _args(message, 2)
    conn.invoke('OnNotice', message.actor, channel, text)


@handler('JOIN')
def _handle_join(conn: 'Connection', message: Message) -> None:
    channel, = _args(message, 1)
    conn.invoke('OnJoin', message.actor, channel)


@handler('PART')
def _handle_part(conn: 'Connection', message: Message) -> None:
    channel, reason = _args(message, 2)
    conn.invoke('OnPart', message.actor, channel, reason)


@handler('ERROR')
def _handle_error(conn: 'Connection', message: Message) -> None:
    reason, = _args(message, 1)
    conn.invoke('OnDisconnect', reason, True)
    if conn.mode is Mode.FULL:
        conn.shutdown()
    raise ProtocolFatal(conn, reason)


# --- Connection ---

class Mode(Enum):
    RESTRICTED = "restricted"
    FULL = "full"
    INERT = "inert"


class Connection:
    """One IRC session, advanced by a Scheduler.

    A new connection is RESTRICTED: only hook(), unhook() and connect() may be
    called. A successful connect() makes it FULL and registers it with its
    scheduler. shutdown() (directly, through disconnect(), a server ERROR or a
    transport failure) makes it INERT for good.
    """

    def __init__(
        self,
        scheduler: 'Scheduler',
        nick: Optional[str] = None,
        username: Optional[str] = None,
        realname: Optional[str] = None,
    ):
        if not nick:
            raise ConfigError("Field 'nick' is required")
        self.scheduler = scheduler
        self.nick = nick
        self.username = username or DEFAULT_USERNAME
        self.realname = realname or DEFAULT_REALNAME

        self.mode = Mode.RESTRICTED
        # Registry index; only set while FULL.
        self.index: Optional[int] = None
        self._socket: Optional[socket.socket] = None
        self._buffer = b''
        # Outbound bytes the socket has not accepted yet.
        self._outbox = bytearray()
        # Set by a failed send; the next resume() turns it into a TransportFault.
        self._broken: Optional[OSError] = None
        self._hooks: Dict[str, Dict[Any, Callable[..., Any]]] = {}

    @classmethod
    def from_config(cls, scheduler: 'Scheduler', config: Mapping[str, Any]) -> 'Connection':
        return cls(
            scheduler,
            nick=config.get('nick'),
            username=config.get('username'),
            realname=config.get('realname'),
        )

    def __repr__(self) -> str:
        return f"<Connection nick={self.nick!r} mode={self.mode.value}>"

    def _require(self, operation: str, *modes: Mode) -> None:
        if self.mode in modes:
            return
        if self.mode is Mode.INERT:
            raise ConnectionClosed(operation, self.mode)
        raise AccessDenied(operation, self.mode)

    # --- Lifecycle ---

    def connect(self, host: str, port: int = DEFAULT_PORT) -> Tuple[bool, Optional[ConnectError]]:
        """Opens the transport and registers with the server.

        Returns ``(True, None)`` on success. On failure returns
        ``(False, ConnectError)`` and the connection stays RESTRICTED, so the
        call may be retried.
        """
        self._require('connect', Mode.RESTRICTED)
        log.info(f"Connecting to {host}:{port} as {self.nick}...")
        try:
            sock = socket.create_connection((host, port))
        except OSError as e:
            log.error(f"Connection failed: {e}")
            return False, ConnectError(host, port, e)

        self._socket = sock
        try:
            self._write(f"USER {self.username} 0 * :{self.realname}")
            self._write(f"NICK {self.nick}")
        except OSError as e:
            log.error(f"Registration failed: {e}")
            self._socket = None
            self._outbox.clear()
            self._broken = None
            sock.close()
            return False, ConnectError(host, port, e)

        sock.settimeout(0)
        self.index = self.scheduler.register(self)
        self.mode = Mode.FULL
        log.info("Connection successful.")
        return True, None

    def disconnect(self, message: str = "Bye!") -> None:
        """Quits with ``message`` and shuts the connection down."""
        self._require('disconnect', Mode.FULL)
        self.invoke('OnDisconnect', message, False)
        if self.mode is not Mode.FULL:
            return
        try:
            self._write(f"QUIT :{message}")
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Closes the socket and removes the connection from its scheduler."""
        self._require('shutdown', Mode.FULL)
        sock, self._socket = self._socket, None
        self.mode = Mode.INERT
        self.scheduler.unregister(self.index)
        self.index = None
        self._buffer = b''
        self._outbox.clear()
        self._broken = None
        try:
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
        finally:
            sock.close()
        log.info(f"Disconnected {self.nick}.")

    # --- Hooks ---

    def hook(self, event: str, hook_id: Any, callback: Optional[Callable[..., Any]] = None) -> None:
        """Registers ``callback`` for ``event`` under ``hook_id``.

        An existing callback with the same id is replaced. When ``callback``
        is omitted, ``hook_id`` is the callback and serves as its own id.
        """
        self._require('hook', Mode.RESTRICTED, Mode.FULL)
        if callback is None:
            callback = hook_id
        self._hooks.setdefault(event, {})[hook_id] = callback

    def unhook(self, event: str, hook_id: Any) -> None:
        self._require('unhook', Mode.RESTRICTED, Mode.FULL)
        hooks = self._hooks.get(event, {})
        if hook_id not in hooks:
            raise HookNotFound(event, hook_id)
        del hooks[hook_id]

    def on(self, event: str, hook_id: Any = None) -> Callable:
        """
        A decorator to register a hook for an event.

        Example:
            @conn.on('OnChat')
            def on_chat(actor, channel, text):
                print(f"[{channel}] {actor.nick}: {text}")
        """
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.hook(event, func if hook_id is None else hook_id, func)
            return func
        return decorator

    def invoke(self, event: str, *args: Any) -> None:
        """Calls every callback registered for ``event``, in no particular order."""
        self._require('invoke', Mode.FULL)
        for hook_id, callback in list(self._hooks.get(event, {}).items()):
            try:
                callback(*args)
            except ConnectionFault:
                raise
            except Exception:
                log.exception(f"Hook {hook_id!r} for {event} failed")

    # --- Scheduling ---

    def handle(self, message: Message) -> None:
        """Runs the built-in reaction for ``message``, if there is one."""
        self._require('handle', Mode.FULL)
        reaction = HANDLERS.get(message.command.upper())
        if reaction is not None:
            reaction(self, message)

    def resume(self) -> bool:
        """Performs one step: reads at most one line and dispatches it.

        Pending output is flushed first. Returns True when the connection has
        terminated. A read or write error, including one hit by a hook while
        sending, shuts the connection down and raises TransportFault; a
        server ERROR raises ProtocolFatal.
        """
        self._require('resume', Mode.FULL)
        try:
            self._check_transport()
            self._flush()
            line = self._read_line()
            if line is None:
                return False

            log.log(logging.INFO if debug else logging.DEBUG, f"<- {line}")
            self.handle(Message.parse(line))
            if self.mode is Mode.FULL:
                self._check_transport()
        except OSError as e:
            log.error(f"Transport error on {self.nick}: {e}")
            if self.mode is Mode.FULL:
                self.shutdown()
            raise TransportFault(self, str(e)) from e
        return self.mode is not Mode.FULL

    def _check_transport(self) -> None:
        if self._broken is not None:
            raise self._broken

    def _read_line(self) -> Optional[str]:
        if b'\n' not in self._buffer:
            try:
                data = self._socket.recv(READ_SIZE)
            except BlockingIOError:
                return None
            if not data:
                raise ConnectionResetError("Connection closed by peer")
            self._buffer += data
            if b'\n' not in self._buffer:
                return None

        raw, self._buffer = self._buffer.split(b'\n', 1)
        return raw.rstrip(b'\r').decode('utf-8', errors='replace')

    # --- Public API Methods ---

    def _write(self, line: str) -> None:
        self._outbox += line.encode('utf-8') + b'\r\n'
        log.debug(f"-> {line}")
        self._flush()

    def _flush(self) -> None:
        # Whatever the socket does not take now stays queued for resume().
        while self._outbox:
            try:
                sent = self._socket.send(self._outbox)
            except BlockingIOError:
                return
            except OSError as e:
                self._broken = e
                raise
            del self._outbox[:sent]

    def send(self, fmt: str, *args: Any) -> None:
        """Sends one raw line; ``fmt`` is %-formatted when args are given."""
        self._require('send', Mode.FULL)
        self._write(fmt % args if args else fmt)

    def send_chat(self, channel: str, fmt: str, *args: Any) -> None:
        self._require('send_chat', Mode.FULL)
        text = fmt % args if args else fmt
        self._write(f"PRIVMSG {channel} :{text}")

    def join(self, channel: str) -> None:
        self._require('join', Mode.FULL)
        self._write(f"JOIN {channel}")

    def part(self, channel: str) -> None:
        self._require('part', Mode.FULL)
        self._write(f"PART {channel}")


# --- Scheduler ---

class Scheduler:
    """Owns the registry of connected connections and drives them.

    The host calls tick() repeatedly, from a plain loop or a timer; each call
    resumes every registered connection exactly once.
    """

    def __init__(self):
        self._connections: Dict[int, Connection] = {}
        self._next_index = 0

    def __len__(self) -> int:
        return len(self._connections)

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def create(self, config: Mapping[str, Any]) -> Connection:
        return Connection.from_config(self, config)

    def register(self, connection: Connection) -> int:
        self._next_index += 1
        self._connections[self._next_index] = connection
        return self._next_index

    def unregister(self, index: Optional[int]) -> None:
        self._connections.pop(index, None)

    def tick(self) -> bool:
        """Resumes every registered connection once.

        Connections registered during the tick wait for the next one, and
        connections shut down during the tick are not resumed. Returns False
        once every connection has terminated.
        """
        faults: List[ConnectionFault] = []
        for connection in list(self._connections.values()):
            if connection.mode is not Mode.FULL:
                continue
            try:
                connection.resume()
            except ConnectionFault as e:
                faults.append(e)

        should_continue = bool(self._connections)
        if faults:
            raise TickError(faults, should_continue)
        return should_continue


# --- Text Decoration ---

BOLD = '\x02'
UNDERLINE = '\x1f'
COLOR = '\x03'

COLORS = {
    'black': 1,
    'blue': 2,
    'green': 3,
    'red': 4,
    'lightred': 5,
    'purple': 6,
    'brown': 7,
    'yellow': 8,
    'lightgreen': 9,
    'navy': 10,
    'cyan': 11,
    'lightblue': 12,
    'violet': 13,
    'gray': 14,
    'lightgray': 15,
    'white': 16,
}


def bold(text: str) -> str:
    return f"{BOLD}{text}{BOLD}"


def underline(text: str) -> str:
    return f"{UNDERLINE}{text}{UNDERLINE}"


def color(text: str, colour: Union[int, str]) -> str:
    """Wraps text in a colour code, given as a number or a COLORS name."""
    if isinstance(colour, str):
        if colour not in COLORS:
            raise ValueError(f"Invalid color '{colour}'")
        colour = COLORS[colour]
    return f"{COLOR}{colour}{text}{COLOR}"
