"""Tests for config loading, client settings and logging setup."""

import logging
import logging.handlers
from pathlib import Path

import pytest

from alumchat.config import DEFAULT_CONFIG, ClientSettings, build_proxy_url, load_config
from alumchat.logger import setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    xml_logger = logging.getLogger('slixmpp.xmlstream.xmlstream')
    saved = (root.level, list(root.handlers), xml_logger.level, list(xml_logger.handlers),
             xml_logger.propagate)
    yield
    for handler in root.handlers + xml_logger.handlers:
        if handler not in saved[1] and handler not in saved[3]:
            handler.close()
    root.setLevel(saved[0])
    root.handlers[:] = saved[1]
    xml_logger.setLevel(saved[2])
    xml_logger.handlers[:] = saved[3]
    xml_logger.propagate = saved[4]


class TestLoadConfig:

    def test_defaults(self):
        config = load_config()
        assert config['xmpp']['domain'] == 'alumchat.xyz'
        assert config['_config_dir'] == Path.cwd()

    def test_file_merged_over_defaults(self, tmp_path):
        path = tmp_path / 'alumchat.yaml'
        path.write_text("xmpp:\n  port: 5223\npresence:\n  probe_timeout: 5\n")
        config = load_config(str(path))

        assert config['xmpp']['port'] == 5223
        assert config['xmpp']['domain'] == 'alumchat.xyz'
        assert config['presence']['probe_timeout'] == 5
        assert config['presence']['settle_delay'] == 0.5
        assert config['_config_dir'] == tmp_path.absolute()
        assert DEFAULT_CONFIG['xmpp']['port'] == 5222

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / 'missing.yaml'))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'alumchat.yaml'
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'alumchat.yaml'
        path.write_text("")
        assert load_config(str(path))['files']['block_size'] == 4096


class TestProxyUrl:

    def test_not_configured(self):
        assert build_proxy_url(DEFAULT_CONFIG['xmpp']['proxy']) is None
        assert build_proxy_url(None) is None

    def test_with_credentials(self):
        proxy = {'type': 'SOCKS5', 'host': '127.0.0.1', 'port': 1080,
                 'username': 'u', 'password': 'p'}
        assert build_proxy_url(proxy) == 'socks5://u:p@127.0.0.1:1080'

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            build_proxy_url({'type': 'ftp', 'host': 'h', 'port': 1})


class TestClientSettings:

    def test_from_defaults(self):
        settings = ClientSettings.from_config(load_config())
        assert settings.host == 'alumchat.xyz'
        assert settings.conference_domain == 'conference.alumchat.xyz'
        assert settings.conference_marker == 'conference'
        assert settings.download_dir == Path.cwd() / 'downloads'
        assert settings.proxy_url is None

    def test_relative_paths_follow_config_file(self, tmp_path):
        path = tmp_path / 'alumchat.yaml'
        path.write_text("xmpp:\n  domain: example.org\n  host: null\nfiles:\n  download_dir: inbox\n")
        settings = ClientSettings.from_config(load_config(str(path)))

        assert settings.host == 'example.org'
        assert settings.download_dir == tmp_path.absolute() / 'inbox'

    def test_conference_domain_derived_from_domain(self):
        config = load_config()
        config['xmpp']['domain'] = 'example.org'
        config['xmpp']['conference_domain'] = None
        assert ClientSettings.from_config(config).conference_domain == 'conference.example.org'

    @pytest.mark.parametrize('field,value', [
        ('port', 0),
        ('probe_timeout', 0),
        ('settle_delay', -1),
        ('block_size', 70000),
        ('open_timeout', 0),
        ('display_length', 0),
        ('domain', ''),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValueError):
            ClientSettings(**{field: value})


class TestLogging:

    def test_console_only(self, restore_logging):
        setup_logging(load_config(), 'debug')
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger('slixmpp.xmlstream.xmlstream').level == logging.WARNING

    def test_file_and_xml_logs(self, tmp_path, restore_logging):
        config = load_config()
        config['_config_dir'] = tmp_path
        config['logging']['console']['enabled'] = False
        config['logging']['file']['enabled'] = True
        config['logging']['xml']['enabled'] = True
        setup_logging(config)

        root = logging.getLogger()
        assert isinstance(root.handlers[0], logging.handlers.RotatingFileHandler)
        assert (tmp_path / 'logs').is_dir()
        xml_logger = logging.getLogger('slixmpp.xmlstream.xmlstream')
        assert xml_logger.propagate is False
        assert xml_logger.level == logging.DEBUG
