"""
Configuration loading.

The console reads a YAML file (see alumchat.example.yaml) and merges it over
DEFAULT_CONFIG. ClientSettings is the typed view the client core uses.
"""

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    'xmpp': {
        'domain': 'alumchat.xyz',
        'host': 'alumchat.xyz',
        'port': 5222,
        'conference_domain': 'conference.alumchat.xyz',
        'resource': None,
        'sasl_mech': None,
        'connect_timeout': 15.0,
        'verify_certificate': True,
        'proxy': {
            'type': None,
            'host': None,
            'port': None,
            'username': None,
            'password': None,
        },
    },
    'presence': {
        'probe_timeout': 2.0,
        'settle_delay': 0.5,
    },
    'groups': {
        'join_timeout': 10.0,
        'history_max': 50,
        'display_length': 40,
    },
    'files': {
        'block_size': 4096,
        'download_dir': 'downloads',
        'auto_accept': True,
        'open_timeout': 30.0,
    },
    'logging': {
        'level': 'INFO',
        'console': {'enabled': True},
        'file': {'enabled': False, 'path': 'logs/alumchat.log'},
        'xml': {'enabled': False, 'path': 'logs/xmpp-protocol.log'},
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load YAML config file merged over the defaults.

    Args:
        config_path: Path to the YAML file, or None for defaults only

    Raises:
        FileNotFoundError: config_path given but missing
        ValueError: File content is not a mapping
    """
    if config_path is None:
        config = copy.deepcopy(DEFAULT_CONFIG)
        config['_config_dir'] = Path.cwd()
        return config

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file, 'r') as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    config = _merge(DEFAULT_CONFIG, loaded)
    # Store config directory for relative paths
    config['_config_dir'] = config_file.parent.absolute()
    return config


def build_proxy_url(proxy: Optional[Dict[str, Any]]) -> Optional[str]:
    """Proxy URL for python-socks from the proxy section, or None if not configured."""
    if not proxy:
        return None
    proxy_type = (proxy.get('type') or '').lower()
    host = proxy.get('host')
    port = proxy.get('port')
    if not all([proxy_type, host, port]):
        return None
    if proxy_type not in ('http', 'socks5'):
        raise ValueError(f"Unknown proxy type: {proxy_type}")
    username = proxy.get('username')
    password = proxy.get('password')
    if username and password:
        return f"{proxy_type}://{username}:{password}@{host}:{port}"
    return f"{proxy_type}://{host}:{port}"


@dataclass
class ClientSettings:
    """Typed client settings. Defaults match DEFAULT_CONFIG."""
    domain: str = 'alumchat.xyz'
    host: Optional[str] = 'alumchat.xyz'
    port: int = 5222
    conference_domain: str = 'conference.alumchat.xyz'
    resource: Optional[str] = None
    sasl_mech: Optional[str] = None
    connect_timeout: float = 15.0
    verify_certificate: bool = True
    proxy_url: Optional[str] = None
    probe_timeout: float = 2.0
    settle_delay: float = 0.5
    join_timeout: float = 10.0
    history_max: int = 50
    display_length: int = 40
    block_size: int = 4096
    download_dir: Path = Path('downloads')
    auto_accept_files: bool = True
    open_timeout: float = 30.0

    def __post_init__(self):
        if not self.domain:
            raise ValueError("xmpp.domain is required")
        if not 0 < int(self.port) < 65536:
            raise ValueError(f"Invalid port: {self.port}")
        if self.probe_timeout <= 0 or self.settle_delay < 0:
            raise ValueError("presence.probe_timeout must be > 0 and settle_delay >= 0")
        if not 0 < int(self.block_size) <= 65535:
            raise ValueError(f"files.block_size must be in 1..65535, got {self.block_size}")
        if self.open_timeout <= 0:
            raise ValueError("files.open_timeout must be > 0")
        if self.display_length <= 0:
            raise ValueError("groups.display_length must be > 0")

    @property
    def conference_marker(self) -> str:
        """Leading label of the MUC service domain ('conference' for conference.alumchat.xyz)."""
        return self.conference_domain.split('.', 1)[0]

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ClientSettings':
        xmpp = config.get('xmpp', {})
        presence = config.get('presence', {})
        groups = config.get('groups', {})
        files = config.get('files', {})

        download_dir = Path(files.get('download_dir', 'downloads'))
        if not download_dir.is_absolute():
            download_dir = Path(config.get('_config_dir', Path.cwd())) / download_dir

        domain = xmpp.get('domain', cls.domain)
        return cls(
            domain=domain,
            host=xmpp.get('host') or domain,
            port=int(xmpp.get('port', 5222)),
            conference_domain=xmpp.get('conference_domain') or f"conference.{domain}",
            resource=xmpp.get('resource'),
            sasl_mech=xmpp.get('sasl_mech'),
            connect_timeout=float(xmpp.get('connect_timeout', 15.0)),
            verify_certificate=bool(xmpp.get('verify_certificate', True)),
            proxy_url=build_proxy_url(xmpp.get('proxy')),
            probe_timeout=float(presence.get('probe_timeout', 2.0)),
            settle_delay=float(presence.get('settle_delay', 0.5)),
            join_timeout=float(groups.get('join_timeout', 10.0)),
            history_max=int(groups.get('history_max', 50)),
            display_length=int(groups.get('display_length', 40)),
            block_size=int(files.get('block_size', 4096)),
            download_dir=download_dir,
            auto_accept_files=bool(files.get('auto_accept', True)),
            open_timeout=float(files.get('open_timeout', 30.0)),
        )
