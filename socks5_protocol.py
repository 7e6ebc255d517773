"""SOCKS5 (RFC 1928) message framing.

Addresses and request/reply messages are read from and written to a
connected socket (anything with ``recv`` and ``sendall``). Reading always
consumes exactly the bytes of the field being decoded, nothing more.
"""
import enum
import ipaddress
import struct
from typing import NamedTuple, Union

VER = 5

# authentication methods
NO_AUTH_REQUIRED = 0x00
GSSAPI = 0x01
USERNAME_PASSWORD = 0x02
NO_ACCEPTABLE_METHODS = 0xFF

# request commands
CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03

# address types
ATYP_IPV4 = 0x01
ATYP_DOMAINNAME = 0x03
ATYP_IPV6 = 0x04

MAX_DOMAIN_LENGTH = 255


class ReplyCode(enum.IntEnum):
    SUCCESS = 0x00
    GENERAL_SERVER_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    CMD_NOT_SUPPORTED = 0x07
    ATYP_NOT_SUPPORTED = 0x08

    @property
    def description(self):
        return _REPLY_DESCRIPTIONS[self]


_REPLY_DESCRIPTIONS = {
    ReplyCode.SUCCESS: 'succeeded',
    ReplyCode.GENERAL_SERVER_FAILURE: 'general SOCKS server failure',
    ReplyCode.CONNECTION_NOT_ALLOWED: 'connection not allowed by ruleset',
    ReplyCode.NETWORK_UNREACHABLE: 'network unreachable',
    ReplyCode.HOST_UNREACHABLE: 'host unreachable',
    ReplyCode.CONNECTION_REFUSED: 'connection refused',
    ReplyCode.TTL_EXPIRED: 'TTL expired',
    ReplyCode.CMD_NOT_SUPPORTED: 'command not supported',
    ReplyCode.ATYP_NOT_SUPPORTED: 'address type not supported',
}


class Socks5Error(Exception):
    msg = 'SOCKS5 protocol error'

    def __init__(self, msg=None):
        super().__init__(msg or self.msg)


class BadVersion(Socks5Error):
    msg = 'unexpected version number (expected 5)'


class BadReserved(Socks5Error):
    msg = 'reserved field was not zero'


class UnsupportedAddressType(Socks5Error):
    msg = 'unsupported address type'


class StringTooLong(Socks5Error):
    msg = 'string too long (max 255 bytes)'


class ShortRead(Socks5Error):
    msg = 'connection closed in the middle of a field'


class NoAcceptableMethods(Socks5Error):
    msg = 'client did not offer NO AUTHENTICATION REQUIRED'


class ReplyError(Socks5Error):
    """A failure that has its own reply code on the wire."""

    def __init__(self, code, msg=None):
        self.code = ReplyCode(code)
        super().__init__(msg or self.code.description)


def reply_code(err) -> int:
    """Map an outcome to the REP byte: None is success, unknown errors are general failures."""
    if err is None:
        return ReplyCode.SUCCESS.value
    if isinstance(err, ReplyError):
        return err.code.value
    if isinstance(err, ReplyCode):
        return err.value
    return ReplyCode.GENERAL_SERVER_FAILURE.value


def read_exact(sock, n: int) -> bytes:
    """Read exactly n bytes, looping over short reads."""
    buf = b''
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ShortRead(f'connection closed after {len(buf)} of {n} bytes')
        buf += chunk
    return buf


class Address(NamedTuple):
    atyp: int
    host: Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str]

    @classmethod
    def from_host(cls, host: str) -> 'Address':
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return cls(ATYP_DOMAINNAME, host)
        if len(ip.packed) == 4:
            return cls(ATYP_IPV4, ip)
        return cls(ATYP_IPV6, ip)

    @classmethod
    def read_from(cls, sock) -> 'Address':
        atyp = read_exact(sock, 1)[0]
        if atyp == ATYP_IPV4:
            return cls(atyp, ipaddress.IPv4Address(read_exact(sock, 4)))
        if atyp == ATYP_IPV6:
            return cls(atyp, ipaddress.IPv6Address(read_exact(sock, 16)))
        if atyp == ATYP_DOMAINNAME:
            length = read_exact(sock, 1)[0]
            name = read_exact(sock, length)
            return cls(atyp, name.decode('utf-8', 'surrogateescape'))
        raise UnsupportedAddressType(f'unsupported address type {atyp:#04x}')

    def pack(self) -> bytes:
        if self.atyp == ATYP_DOMAINNAME:
            name = self.host.encode('utf-8', 'surrogateescape')
            if len(name) > MAX_DOMAIN_LENGTH:
                raise StringTooLong(f'domain name is {len(name)} bytes (max 255)')
            return bytes([self.atyp, len(name)]) + name
        if self.atyp == ATYP_IPV4:
            return bytes([self.atyp]) + ipaddress.IPv4Address(self.host).packed
        if self.atyp == ATYP_IPV6:
            return bytes([self.atyp]) + ipaddress.IPv6Address(self.host).packed
        raise UnsupportedAddressType(f'unsupported address type {self.atyp:#04x}')

    def write_to(self, sock) -> int:
        data = self.pack()
        sock.sendall(data)
        return len(data)

    def __str__(self):
        return str(self.host)


ZERO_ADDRESS = Address(ATYP_IPV4, ipaddress.IPv4Address(0))


class Msg(NamedTuple):
    """A request (code is CMD) or a reply (code is REP); both share one layout."""
    code: int
    addr: Address = ZERO_ADDRESS
    port: int = 0

    @classmethod
    def read_from(cls, sock) -> 'Msg':
        ver, code, rsv = read_exact(sock, 3)
        if ver != VER:
            raise BadVersion(f'unexpected version number {ver} (expected 5)')
        if rsv != 0:
            raise BadReserved(f'reserved field was {rsv:#04x}')
        addr = Address.read_from(sock)
        port, = struct.unpack('>H', read_exact(sock, 2))
        return cls(code, addr, port)

    def pack(self) -> bytes:
        return bytes([VER, self.code, 0]) + self.addr.pack() + struct.pack('>H', self.port)

    def write_to(self, sock) -> int:
        # encode every field first so an oversized name fails before any I/O
        fields = (bytes([VER, self.code, 0]), self.addr.pack(), struct.pack('>H', self.port))
        written = 0
        for field in fields:
            sock.sendall(field)
            written += len(field)
        return written
