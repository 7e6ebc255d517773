import json
import logging
from pathlib import Path

_logger = logging.getLogger('Socks5Config')

DEFAULT_CONFIG_PATH = Path('config.json')

DEFAULT_CONFIG = {
    'listen_host': 'localhost',
    'listen_port': 1080,
    # "direct" dials through the local network stack, "socks5" through an upstream proxy
    'backend': 'direct',
    'upstream_host': 'localhost',
    'upstream_port': 1081,
    'connect_timeout': 10.0,
    'allow_list': [],
    'deny_list': [],
    'log_level': 'INFO',
}

_INT_KEYS = ('listen_port', 'upstream_port')


def load_config(path=None) -> dict:
    """Load a JSON config file over the defaults; a missing file yields the defaults."""
    cfg = dict(DEFAULT_CONFIG)
    p = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not p.exists():
        _logger.debug(f'No config file at {p.resolve()}, using defaults')
        return cfg
    data = json.loads(p.read_text(encoding='utf-8'))
    if not isinstance(data, dict):
        raise ValueError(f'{p}: expected a JSON object')
    for key, value in data.items():
        if key not in DEFAULT_CONFIG:
            _logger.warning(f'{p}: ignoring unknown config key {key!r}')
            continue
        cfg[key] = value
    for key in _INT_KEYS:
        cfg[key] = int(cfg[key])
    cfg['connect_timeout'] = float(cfg['connect_timeout'])
    cfg['log_level'] = str(cfg['log_level']).upper()
    _logger.info(f'Loaded config from {p.resolve()}')
    return cfg


def save_config(cfg, path=None):
    p = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    data = {key: cfg.get(key, default) for key, default in DEFAULT_CONFIG.items()}
    p.write_text(json.dumps(data, indent=2), encoding='utf-8')
    return p
