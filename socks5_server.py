import logging
import socket
import threading

from socks5_backends import PassThroughBackend, join_host_port, split_host_port
from socks5_protocol import (CMD_CONNECT, NO_ACCEPTABLE_METHODS, NO_AUTH_REQUIRED, VER,
                             Address, BadVersion, Msg, NoAcceptableMethods, ReplyCode,
                             Socks5Error, ZERO_ADDRESS, read_exact, reply_code)

RELAY_BUFSIZE = 4096


def negotiate_auth(conn) -> int:
    """Method negotiation; only NO AUTHENTICATION REQUIRED is ever selected."""
    ver, nmethods = read_exact(conn, 2)
    if ver != VER:
        raise BadVersion(f'unexpected version number {ver} in greeting (expected 5)')
    methods = read_exact(conn, nmethods)
    if NO_AUTH_REQUIRED in methods:
        conn.sendall(bytes([VER, NO_AUTH_REQUIRED]))
        return NO_AUTH_REQUIRED
    conn.sendall(bytes([VER, NO_ACCEPTABLE_METHODS]))
    raise NoAcceptableMethods(f'client offered methods {methods.hex()} without NO AUTHENTICATION REQUIRED')


def make_reply(remote, err=None) -> Msg:
    """Build the reply to a CONNECT: the backend connection's local endpoint, or a zeroed failure."""
    if err is not None:
        return Msg(reply_code(err), ZERO_ADDRESS, 0)
    sockname = remote.getsockname()
    if isinstance(sockname, tuple) and len(sockname) >= 2:
        host, port = sockname[:2]
    else:
        # not an IP endpoint (e.g. AF_UNIX); reply with an empty domain name
        host, port = '', 0
    return Msg(ReplyCode.SUCCESS, Address.from_host(host), port)


def _close(sock):
    try:
        sock.close()
    except OSError:
        pass


def _pipe(src, dst, counts, index):
    try:
        while True:
            data = src.recv(RELAY_BUFSIZE)
            if not data:
                break
            dst.sendall(data)
            counts[index] += len(data)
    except OSError:
        pass
    finally:
        # let the other side see end of stream; the opposite direction keeps draining
        try:
            dst.shutdown(socket.SHUT_WR)
        except OSError:
            pass


def relay(client, remote):
    """Copy both directions until each reaches end of stream; returns (sent, received) byte counts."""
    counts = [0, 0]
    t = threading.Thread(target=_pipe, args=(remote, client, counts, 1), daemon=True)
    t.start()
    _pipe(client, remote, counts, 0)
    t.join()
    return counts[0], counts[1]


class Socks5Server:
    def __init__(self, backend=None, host='localhost', port=1080, logger=None, log_level=None):
        self.backend = backend if backend is not None else PassThroughBackend()
        self.host = host
        self.port = int(port)
        self._stopped = False
        self._sock = None
        # logger may be a callable for embedding applications; stdlib logging is always used
        self.logger = logger
        self._logger = logging.getLogger('Socks5Server')
        if log_level is not None:
            self._logger.setLevel(log_level)

    def _log(self, message: str, level=logging.INFO):
        self._logger.log(level, message)
        if self.logger:
            try:
                self.logger(message)
            except Exception:
                self._logger.debug('logger callable failed', exc_info=True)

    def bind(self):
        self._sock = socket.socket(socket.AF_INET6 if ':' in self.host else socket.AF_INET,
                                   socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((self.host, self.port))
        self._sock.listen(128)
        self.port = self._sock.getsockname()[1]
        return self.host, self.port

    def start(self):
        if self._sock is None:
            self.bind()
        self._log(f'SOCKS5 server started on {join_host_port(self.host, self.port)}')
        self.serve(self._sock)

    def serve(self, listener):
        """Accept connections until stopped; an accept error while running is fatal."""
        while not self._stopped:
            try:
                conn, addr = listener.accept()
            except OSError as e:
                if self._stopped:
                    break
                self._log(f'Accept error: {e}', logging.ERROR)
                raise
            t = threading.Thread(target=self.handle_client, args=(conn,), daemon=True)
            t.start()

    def stop(self):
        self._stopped = True
        if self._sock is not None:
            try:
                # wakes up a thread blocked in accept()
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            _close(self._sock)
        self._log('SOCKS5 server stopped')

    def handle_client(self, conn):
        try:
            peer = conn.getpeername()
        except OSError:
            peer = None
        self._log(f'Accepted connection from {peer}')
        try:
            negotiate_auth(conn)
            self.handle_request(conn)
        except (Socks5Error, OSError) as e:
            self._log(f'Error handling client {peer}: {e}', logging.WARNING)
        except Exception:
            self._logger.exception(f'Unexpected error handling client {peer}')
        finally:
            _close(conn)

    def handle_request(self, conn):
        req = Msg.read_from(conn)
        if req.code != CMD_CONNECT:
            Msg(ReplyCode.CMD_NOT_SUPPORTED).write_to(conn)
            self._log(f'Command not supported: {req.code:#04x}')
            return

        target = join_host_port(req.addr, req.port)
        remote = None
        err = None
        try:
            remote = self.backend.dial('tcp', target)
        except Exception as e:
            err = e
        try:
            rep = make_reply(remote, err)
            rep.write_to(conn)
            if err is not None:
                self._log(f'Error connecting to {target}: {err} (reply {rep.code:#04x})')
                return
            self._log(f'CONNECT {target} bound at {join_host_port(rep.addr, rep.port)}')
            sent, received = relay(conn, remote)
            self._log(f'Relay to {target} finished: {sent} bytes sent, {received} bytes received')
        finally:
            if remote is not None:
                _close(remote)


def listen_and_serve(backend, address):
    """Listen on "host:port" and serve until an accept error occurs."""
    host, port = split_host_port(address)
    server = Socks5Server(backend, host=host, port=port)
    server.start()
