"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Transfer pacing
CHUNK_SIZE = 16384
HIGH_WATER_MARK = 2 * 1024 * 1024  # 2,097,152 bytes
LOW_WATER_MARK = 512 * 1024

# Signaling
BROADCAST_PORT = 8470


@dataclass
class Config:
    """
    Endpoint Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (ORBIT_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    port: int = 0  # 0 = ephemeral port for the channel listener
    broadcast_port: int = BROADCAST_PORT

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./orbit_data'))
    download_dir: Optional[Path] = None  # Defaults to data_dir/received

    # Pacing (bytes)
    high_water_mark: int = HIGH_WATER_MARK
    low_water_mark: int = LOW_WATER_MARK

    # Timeouts (seconds)
    negotiation_timeout: float = 30.0
    connect_timeout: float = 5.0

    # History
    history_limit: int = 50

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        if self.low_water_mark >= self.high_water_mark:
            raise ValueError(
                f"low_water_mark ({self.low_water_mark}) must be below "
                f"high_water_mark ({self.high_water_mark})"
            )

    @property
    def received_dir(self) -> Path:
        """Directory where completed inbound payloads are written."""
        if self.download_dir is not None:
            return Path(self.download_dir)
        return Path(self.data_dir) / 'received'

    @property
    def history_path(self) -> Path:
        return Path(self.data_dir) / 'history.db'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('ORBIT_HOST', config.host)
        config.port = int(os.getenv('ORBIT_PORT', config.port))
        config.broadcast_port = int(os.getenv('ORBIT_BROADCAST_PORT', config.broadcast_port))

        # Storage
        data_dir = os.getenv('ORBIT_DATA_DIR')
        if data_dir:
            config.data_dir = Path(data_dir)
        download_dir = os.getenv('ORBIT_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Timeouts
        config.negotiation_timeout = float(
            os.getenv('ORBIT_NEGOTIATION_TIMEOUT', config.negotiation_timeout)
        )
        config.connect_timeout = float(
            os.getenv('ORBIT_CONNECT_TIMEOUT', config.connect_timeout)
        )

        # Logging
        config.log_level = os.getenv('ORBIT_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)
        config.broadcast_port = data.get('broadcast_port', config.broadcast_port)

        # Storage
        if 'data_dir' in data:
            config.data_dir = Path(data['data_dir'])
        if data.get('download_dir'):
            config.download_dir = Path(data['download_dir'])

        # Pacing
        config.high_water_mark = data.get('high_water_mark', config.high_water_mark)
        config.low_water_mark = data.get('low_water_mark', config.low_water_mark)
        if config.low_water_mark >= config.high_water_mark:
            raise ValueError("low_water_mark must be below high_water_mark")

        # Timeouts
        config.negotiation_timeout = data.get('negotiation_timeout', config.negotiation_timeout)
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)

        config.history_limit = data.get('history_limit', config.history_limit)
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'broadcast_port': self.broadcast_port,
            'data_dir': str(self.data_dir),
            'download_dir': str(self.download_dir) if self.download_dir else None,
            'high_water_mark': self.high_water_mark,
            'low_water_mark': self.low_water_mark,
            'negotiation_timeout': self.negotiation_timeout,
            'connect_timeout': self.connect_timeout,
            'history_limit': self.history_limit,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    config = Config()

    if config_path and config_path.exists():
        config = Config.from_file(config_path)
        logger.debug(f"Loaded config file {config_path}")

    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in ['host', 'port', 'broadcast_port', 'data_dir', 'download_dir',
                'negotiation_timeout', 'connect_timeout', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config
