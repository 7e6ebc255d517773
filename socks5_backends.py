import collections
import errno
import ipaddress
import logging
import socket
import threading

import socks

from socks5_protocol import ReplyCode, ReplyError

_logger = logging.getLogger('Socks5Backend')

_FAMILIES = {
    'tcp': socket.AF_UNSPEC,
    'tcp4': socket.AF_INET,
    'tcp6': socket.AF_INET6,
}

_ERRNO_REPLIES = {
    errno.ECONNREFUSED: ReplyCode.CONNECTION_REFUSED,
    errno.EHOSTUNREACH: ReplyCode.HOST_UNREACHABLE,
    errno.ENETUNREACH: ReplyCode.NETWORK_UNREACHABLE,
    errno.ETIMEDOUT: ReplyCode.HOST_UNREACHABLE,
}


def join_host_port(host, port) -> str:
    """Format host and port as "host:port", bracketing IPv6 literals."""
    host = str(host)
    if ':' in host:
        return f'[{host}]:{int(port)}'
    return f'{host}:{int(port)}'


def split_host_port(address: str):
    """Parse "host:port" / "[v6]:port" into (host, port)."""
    if address.startswith('['):
        end = address.find(']')
        if end == -1 or address[end + 1:end + 2] != ':':
            raise ValueError(f'invalid address: {address!r}')
        host, port = address[1:end], address[end + 2:]
    else:
        host, sep, port = address.rpartition(':')
        if not sep or ':' in host:
            raise ValueError(f'invalid address: {address!r}')
    try:
        port = int(port)
    except ValueError:
        raise ValueError(f'invalid port in address: {address!r}') from None
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f'port out of range in address: {address!r}')
    return host, port


def host_in_list(host: str, entries) -> bool:
    """True if host matches an entry: domain (or parent domain), IP literal or CIDR network."""
    if not entries:
        return False
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        addr = None
    h = host.lower().rstrip('.')
    for entry in entries:
        entry = str(entry).strip()
        if not entry:
            continue
        if '/' in entry:
            try:
                net = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                _logger.warning(f'Ignoring invalid network in host list: {entry}')
                continue
            if addr is not None and addr in net:
                return True
            continue
        try:
            if addr is not None and addr == ipaddress.ip_address(entry):
                return True
            continue
        except ValueError:
            pass
        e = entry.lower().rstrip('.')
        if h == e or h.endswith('.' + e):
            return True
    return False


def _check_network(network):
    try:
        return _FAMILIES[network]
    except KeyError:
        raise ValueError(f'unsupported network: {network!r}') from None


class Backend:
    """Opens outbound byte-stream connections on behalf of the server.

    ``dial`` may be called from many connection threads at once.
    """

    def dial(self, network: str, address: str):
        raise NotImplementedError


class PassThroughBackend(Backend):
    """Connects through the local network stack."""

    def __init__(self, connect_timeout=10.0):
        self.connect_timeout = connect_timeout

    def dial(self, network, address):
        family = _check_network(network)
        host, port = split_host_port(address)
        try:
            sock = self._connect(family, host, port)
        except socket.gaierror as e:
            raise ReplyError(ReplyCode.HOST_UNREACHABLE, f'cannot resolve {host}: {e}') from e
        except socket.timeout as e:
            raise ReplyError(ReplyCode.HOST_UNREACHABLE, f'timed out connecting to {address}') from e
        except OSError as e:
            code = _ERRNO_REPLIES.get(e.errno)
            if code is None:
                raise
            raise ReplyError(code, f'{address}: {e.strerror}') from e
        sock.settimeout(None)
        _logger.debug(f'Direct connect success to {address}')
        return sock

    def _connect(self, family, host, port):
        if family == socket.AF_UNSPEC:
            return socket.create_connection((host, port), timeout=self.connect_timeout)
        err = None
        for af, socktype, proto, _, sa in socket.getaddrinfo(host, port, family, socket.SOCK_STREAM):
            s = socket.socket(af, socktype, proto)
            try:
                s.settimeout(self.connect_timeout)
                s.connect(sa)
                return s
            except OSError as e:
                err = e
                s.close()
        if err is None:
            raise socket.gaierror(f'no {family.name} address for {host}')
        raise err


def _upstream_reply(exc):
    # PySocks reports the upstream REP byte as the "0x05: ..." prefix of a SOCKS5Error,
    # possibly wrapped in a GeneralProxyError
    while exc is not None:
        if isinstance(exc, socks.SOCKS5Error):
            try:
                return ReplyCode(int(exc.msg.split(':', 1)[0], 16))
            except ValueError:
                return None
        exc = getattr(exc, 'socket_err', None)
    return None


class UpstreamSocksBackend(Backend):
    """Chains every connection through an upstream SOCKS5 proxy."""

    def __init__(self, host='localhost', port=1080, connect_timeout=10.0, rdns=True):
        self.host = host
        self.port = int(port)
        self.connect_timeout = connect_timeout
        self.rdns = rdns

    def dial(self, network, address):
        _check_network(network)
        host, port = split_host_port(address)
        sock = socks.socksocket()
        sock.set_proxy(socks.SOCKS5, self.host, self.port, rdns=self.rdns)
        sock.settimeout(self.connect_timeout)
        try:
            sock.connect((host, port))
        except socks.ProxyError as e:
            sock.close()
            code = _upstream_reply(e)
            if code is None:
                raise
            raise ReplyError(code, f'upstream {self.host}:{self.port} refused {address}: {code.description}') from e
        sock.settimeout(None)
        _logger.debug(f'Connected to {address} via upstream {self.host}:{self.port}')
        return sock


class RulesetBackend(Backend):
    """Filters destinations by host lists before delegating to another backend."""

    def __init__(self, inner, allow_list=None, deny_list=None):
        self.inner = inner
        self.allow_list = list(allow_list or [])
        self.deny_list = list(deny_list or [])

    def allowed(self, host):
        if host_in_list(host, self.deny_list):
            return False
        if self.allow_list:
            return host_in_list(host, self.allow_list)
        return True

    def dial(self, network, address):
        host, _ = split_host_port(address)
        if not self.allowed(host):
            _logger.info(f'Connection to {address} denied by ruleset')
            raise ReplyError(ReplyCode.CONNECTION_NOT_ALLOWED)
        return self.inner.dial(network, address)


class CannedBackend(Backend):
    """Hands out pre-arranged connections or errors, recording every dial.

    Each entry of ``results`` is either a connection object to return or an
    exception instance to raise; they are consumed in order.
    """

    def __init__(self, results=()):
        self._results = collections.deque(results)
        self._lock = threading.Lock()
        self.dials = []

    def add(self, result):
        with self._lock:
            self._results.append(result)

    def dial(self, network, address):
        with self._lock:
            self.dials.append((network, address))
            if not self._results:
                raise ReplyError(ReplyCode.HOST_UNREACHABLE, f'no canned connection for {address}')
            result = self._results.popleft()
        if isinstance(result, BaseException):
            raise result
        return result


def backend_from_config(config):
    """Build the backend described by a configuration dict (see socks5_config)."""
    kind = config.get('backend', 'direct')
    timeout = float(config.get('connect_timeout', 10.0))
    if kind == 'direct':
        backend = PassThroughBackend(connect_timeout=timeout)
    elif kind == 'socks5':
        backend = UpstreamSocksBackend(config.get('upstream_host', 'localhost'),
                                       config.get('upstream_port', 1080),
                                       connect_timeout=timeout)
    else:
        raise ValueError(f'unknown backend: {kind!r}')
    allow_list = config.get('allow_list') or []
    deny_list = config.get('deny_list') or []
    if allow_list or deny_list:
        backend = RulesetBackend(backend, allow_list=allow_list, deny_list=deny_list)
    return backend
