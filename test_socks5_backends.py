import errno
import socket

import pytest

from socks5_backends import (Backend, CannedBackend, PassThroughBackend, RulesetBackend,
                             UpstreamSocksBackend, backend_from_config, host_in_list,
                             join_host_port, split_host_port)
from socks5_protocol import ReplyCode, ReplyError


@pytest.mark.parametrize('host, port, expected', [
    ('example.com', 80, 'example.com:80'),
    ('127.0.0.1', 1080, '127.0.0.1:1080'),
    ('::1', 443, '[::1]:443'),
    ('', 1080, ':1080'),
])
def test_join_and_split_host_port(host, port, expected):
    assert join_host_port(host, port) == expected
    assert split_host_port(expected) == (host, port)


@pytest.mark.parametrize('address', ['example.com', '::1:80', '[::1]80', 'host:http', 'host:70000'])
def test_split_host_port_rejects(address):
    with pytest.raises(ValueError):
        split_host_port(address)


def test_host_in_list():
    entries = ['example.com', '10.0.0.0/8', '192.168.1.1', '2001:db8::/32', '']
    assert host_in_list('example.com', entries)
    assert host_in_list('WWW.Example.com', entries)
    assert not host_in_list('badexample.com', entries)
    assert host_in_list('10.20.30.40', entries)
    assert host_in_list('192.168.1.1', entries)
    assert not host_in_list('192.168.1.2', entries)
    assert host_in_list('2001:db8::1', entries)
    assert not host_in_list('anything', [])


def test_base_backend_is_abstract():
    with pytest.raises(NotImplementedError):
        Backend().dial('tcp', 'example.com:80')


def test_pass_through_connects(origin_server):
    backend = PassThroughBackend(connect_timeout=5.0)
    sock = backend.dial('tcp', join_host_port('127.0.0.1', origin_server))
    try:
        assert sock.gettimeout() is None
        assert sock.getpeername() == ('127.0.0.1', origin_server)
    finally:
        sock.close()


def test_pass_through_tcp4(origin_server):
    sock = PassThroughBackend().dial('tcp4', f'127.0.0.1:{origin_server}')
    try:
        assert sock.family == socket.AF_INET
    finally:
        sock.close()


def test_pass_through_refused(closed_port):
    with pytest.raises(ReplyError) as excinfo:
        PassThroughBackend().dial('tcp', f'127.0.0.1:{closed_port}')
    assert excinfo.value.code == ReplyCode.CONNECTION_REFUSED


def test_pass_through_unresolvable():
    with pytest.raises(ReplyError) as excinfo:
        PassThroughBackend().dial('tcp', 'does-not-exist.invalid:80')
    assert excinfo.value.code == ReplyCode.HOST_UNREACHABLE


def test_unknown_network():
    with pytest.raises(ValueError):
        PassThroughBackend().dial('udp', '127.0.0.1:53')


def test_ruleset_denies_without_dialing():
    inner = CannedBackend(['conn'])
    backend = RulesetBackend(inner, deny_list=['blocked.example'])
    with pytest.raises(ReplyError) as excinfo:
        backend.dial('tcp', 'www.blocked.example:443')
    assert excinfo.value.code == ReplyCode.CONNECTION_NOT_ALLOWED
    assert inner.dials == []
    assert backend.dial('tcp', 'fine.example:443') == 'conn'


def test_ruleset_allow_list():
    backend = RulesetBackend(CannedBackend(['conn']), allow_list=['10.0.0.0/8'])
    assert not backend.allowed('192.168.0.1')
    assert backend.allowed('10.1.1.1')
    with pytest.raises(ReplyError):
        backend.dial('tcp', '192.168.0.1:22')
    assert backend.dial('tcp', '10.1.1.1:22') == 'conn'


def test_canned_backend():
    err = ReplyError(ReplyCode.TTL_EXPIRED)
    backend = CannedBackend(['first', err])
    assert backend.dial('tcp', 'a:1') == 'first'
    with pytest.raises(ReplyError) as excinfo:
        backend.dial('tcp', 'b:2')
    assert excinfo.value is err
    with pytest.raises(ReplyError):
        backend.dial('tcp', 'c:3')
    assert backend.dials == [('tcp', 'a:1'), ('tcp', 'b:2'), ('tcp', 'c:3')]


def test_backend_from_config():
    assert isinstance(backend_from_config({'backend': 'direct'}), PassThroughBackend)

    backend = backend_from_config({'backend': 'socks5', 'upstream_host': 'proxy.lan',
                                   'upstream_port': '9050', 'connect_timeout': 3})
    assert isinstance(backend, UpstreamSocksBackend)
    assert (backend.host, backend.port, backend.connect_timeout) == ('proxy.lan', 9050, 3.0)

    backend = backend_from_config({'backend': 'direct', 'deny_list': ['example.com']})
    assert isinstance(backend, RulesetBackend)
    assert isinstance(backend.inner, PassThroughBackend)

    with pytest.raises(ValueError):
        backend_from_config({'backend': 'carrier-pigeon'})


def test_pass_through_kernel_timeout(monkeypatch):
    def timed_out(address, timeout=None):
        raise OSError(errno.ETIMEDOUT, 'Connection timed out')

    monkeypatch.setattr(socket, 'create_connection', timed_out)
    with pytest.raises(ReplyError) as excinfo:
        PassThroughBackend().dial('tcp', '192.0.2.1:80')
    assert excinfo.value.code == ReplyCode.HOST_UNREACHABLE
