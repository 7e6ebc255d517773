# main.py - SOCKS5 server entry point
import argparse
import logging
import sys

from socks5_backends import backend_from_config, split_host_port
from socks5_config import load_config
from socks5_server import Socks5Server


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='SOCKS5 server (CONNECT, no authentication)')
    parser.add_argument('-c', '--config', help='JSON config file (default: ./config.json)')
    parser.add_argument('--addr', metavar='HOST:PORT', help='address to listen on, e.g. ":1080"')
    parser.add_argument('--backend', choices=('direct', 'socks5'), help='how outbound connections are made')
    parser.add_argument('--upstream', metavar='HOST:PORT', help='upstream SOCKS5 proxy for --backend socks5')
    parser.add_argument('--log-level', help='logging level (DEBUG, INFO, WARNING, ...)')
    return parser.parse_args(argv)


def build_config(args) -> dict:
    """Config file values overridden by whatever was given on the command line."""
    cfg = load_config(args.config)
    if args.addr:
        cfg['listen_host'], cfg['listen_port'] = split_host_port(args.addr)
    if args.backend:
        cfg['backend'] = args.backend
    if args.upstream:
        cfg['upstream_host'], cfg['upstream_port'] = split_host_port(args.upstream)
    if args.log_level:
        cfg['log_level'] = args.log_level.upper()
    return cfg


def main(argv=None):
    args = parse_args(argv)
    try:
        cfg = build_config(args)
        logging.basicConfig(level=cfg['log_level'],
                            format='%(asctime)s - %(levelname)s - %(message)s')
        backend = backend_from_config(cfg)
    except ValueError as e:
        print(f'Configuration error: {e}', file=sys.stderr)
        return 2

    server = Socks5Server(backend, host=cfg['listen_host'], port=cfg['listen_port'])
    try:
        server.start()
    except KeyboardInterrupt:
        print("\nShutting down SOCKS5 server...")
        server.stop()
    except OSError as e:
        logging.getLogger('Socks5Server').error(f'Server error: {e}')
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
