"""
Logging setup for the console client.

Console output, an optional rotating log file, and an optional raw XML
protocol log fed by slixmpp's stream logger.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _resolve(path: str, config_dir: Path) -> Path:
    log_file = Path(path)
    if not log_file.is_absolute():
        log_file = config_dir / log_file
    log_file.parent.mkdir(parents=True, exist_ok=True)
    return log_file


def setup_logging(config: dict, level_override: Optional[str] = None) -> None:
    """Setup logging from config."""
    logging_config = config.get('logging', {})
    level_str = level_override or logging_config.get('level', 'INFO')
    level = getattr(logging, level_str.upper(), logging.INFO)

    config_dir = Path(config.get('_config_dir', Path.cwd()))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_config = logging_config.get('console', {})
    if console_config.get('enabled', True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    file_config = logging_config.get('file', {})
    if file_config.get('enabled', False):
        log_file = _resolve(file_config.get('path', 'logs/alumchat.log'), config_dir)
        # Rotating file handler (10MB per file, keep 5 backups)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # XML/Protocol logging
    xml_config = logging_config.get('xml', {})
    xml_logger = logging.getLogger('slixmpp.xmlstream.xmlstream')
    if xml_config.get('enabled', False):
        xml_log_file = _resolve(xml_config.get('path', 'logs/xmpp-protocol.log'), config_dir)
        xml_logger.setLevel(logging.DEBUG)
        xml_handler = logging.FileHandler(xml_log_file, encoding='utf-8')
        xml_handler.setLevel(logging.DEBUG)
        xml_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
        xml_logger.addHandler(xml_handler)
        xml_logger.propagate = False
    else:
        # Keep raw stanzas out of the console
        xml_logger.setLevel(logging.WARNING)
