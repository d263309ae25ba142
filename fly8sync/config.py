"""
Sync Layer Configuration Management
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any

from dotenv import load_dotenv


@dataclass
class PollingOptions:
    """Background refresh cadence for one class of queries"""
    interval: float = 30.0  # seconds
    enabled: bool = True


def default_polling() -> Dict[str, PollingOptions]:
    return {
        "stats": PollingOptions(interval=30.0),
        "lists": PollingOptions(interval=30.0),
        "today": PollingOptions(interval=60.0),  # lower volatility
        "notifications": PollingOptions(interval=30.0),
    }


@dataclass
class SyncConfig:
    """Configuration for the Fly8 live dashboard layer"""

    # API settings
    api_base_url: str = "http://localhost:4000"
    socket_url: Optional[str] = None
    request_timeout: float = 30.0

    # Event channel
    transports: List[str] = field(default_factory=lambda: ["websocket", "polling"])
    reconnection_attempts: int = 5
    reconnection_delay: float = 1.0
    reconnection_delay_max: float = 5.0

    # Cache
    gc_time: float = 300.0  # 5 minutes
    max_cache_entries: int = 500

    # Polling
    polling_enabled: bool = True
    polling: Dict[str, PollingOptions] = field(default_factory=default_polling)

    # Views
    search_debounce: float = 0.5
    page_size: int = 10

    # Logging
    log_level: str = "INFO"
    environment: str = "development"

    # Paths
    config_dir: str = field(default_factory=lambda: str(Path.home() / ".fly8sync"))
    session_file: str = "session.json"

    def __post_init__(self):
        if not self.socket_url:
            self.socket_url = self.api_base_url

        # Polling entries loaded from JSON arrive as plain dicts
        self.polling = {
            name: opts if isinstance(opts, PollingOptions) else PollingOptions(**opts)
            for name, opts in self.polling.items()
        }

        if not os.path.isabs(self.session_file):
            self.session_file = str(Path(self.config_dir) / self.session_file)

    def polling_for(self, profile: str) -> Optional[PollingOptions]:
        """Get polling options for a profile, None when polling is off"""
        if not self.polling_enabled:
            return None
        options = self.polling.get(profile)
        if options is None or not options.enabled:
            return None
        return options

    def load_from_file(self, config_path: str) -> None:
        """Load configuration from JSON file"""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
                for key, value in data.items():
                    if key == "polling" and isinstance(value, dict):
                        for name, opts in value.items():
                            self.polling[name] = PollingOptions(**opts)
                    elif hasattr(self, key):
                        setattr(self, key, value)

    def save_to_file(self, config_path: Optional[str] = None) -> None:
        """Save configuration to JSON file"""
        path = Path(config_path or (Path(self.config_dir) / "config.json"))
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def load_default(cls) -> "SyncConfig":
        """Load default configuration from user config directory"""
        load_dotenv()

        config = cls(config_dir=os.environ.get("FLY8_CONFIG_DIR") or str(Path.home() / ".fly8sync"))
        default_config_path = Path(config.config_dir) / "config.json"
        if default_config_path.exists():
            config.load_from_file(str(default_config_path))

        # Override with environment variables
        config._load_from_env()

        return config

    def _load_from_env(self) -> None:
        """Load configuration from environment variables"""
        env_mappings = {
            "FLY8_API_URL": "api_base_url",
            "FLY8_SOCKET_URL": "socket_url",
            "FLY8_REQUEST_TIMEOUT": ("request_timeout", float),
            "FLY8_RECONNECTION_ATTEMPTS": ("reconnection_attempts", int),
            "FLY8_RECONNECTION_DELAY": ("reconnection_delay", float),
            "FLY8_LOG_LEVEL": "log_level",
            "FLY8_ENVIRONMENT": "environment",
            "FLY8_POLLING_ENABLED": ("polling_enabled", lambda x: x.lower() == "true"),
        }

        for env_var, mapping in env_mappings.items():
            value = os.environ.get(env_var)
            if value:
                if isinstance(mapping, tuple):
                    attr, converter = mapping
                    setattr(self, attr, converter(value))
                else:
                    setattr(self, mapping, value)

        # Socket follows the API host unless set explicitly
        if os.environ.get("FLY8_API_URL") and not os.environ.get("FLY8_SOCKET_URL"):
            self.socket_url = self.api_base_url

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary"""
        return asdict(self)
