import json
import sys
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# env variable -> (config key, converter)
ENV_OVERRIDES = {
    'HOST': ('server.host', str),
    'PORT': ('server.port', int),
    'FRONTEND_ORIGIN': ('server.allowed_origin', str),
    'SCRAPER_API_KEY': ('relay.api_key', str),
    'SCRAPER_API_URL': ('relay.endpoint', str),
    'HIGH_COURT_URL': ('upstream.high_court_url', str),
    'DISTRICT_COURT_URL': ('upstream.district_court_url', str),
    'LOG_LEVEL': ('logging.level', str),
    'LOG_FILE': ('logging.file', str),
}

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def is_source_checkout() -> bool:
    return not getattr(sys, 'frozen', False) and (PROJECT_ROOT / 'pyproject.toml').exists()


def get_app_data_dir() -> Path:
    """
    Where logs go: ``app_data/`` inside a source checkout, otherwise the
    user's config directory. Nothing is created here; ``setup_logging`` makes
    the directory when it opens the log file.
    """
    if is_source_checkout():
        return PROJECT_ROOT / 'app_data'
    return Path.home() / '.config' / 'ecourts_relay'


class ConfigManager:
    """
    Layered configuration: built-in defaults, then an optional JSON file,
    then environment variables (``.env`` is loaded first if present).

    Args:
        config_path: JSON file to merge over the defaults. Falls back to the
            ``RELAY_CONFIG`` environment variable.
        load_env: read ``.env`` and apply :data:`ENV_OVERRIDES`.
    """

    def __init__(self, config_path: Optional[Path] = None, load_env: bool = True):
        if load_env:
            self._load_dotenv()

        if config_path is None and os.getenv('RELAY_CONFIG'):
            config_path = Path(os.environ['RELAY_CONFIG'])
        self.config_path = Path(config_path) if config_path else None

        self.config = self._load_config()
        if load_env:
            self._apply_env_overrides()

    @staticmethod
    def _load_dotenv():
        env_path = PROJECT_ROOT / '.env'
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)
        else:
            load_dotenv()

    def _get_default_config(self) -> dict:
        """Built-in defaults"""
        return {
            'server': {
                'host': '0.0.0.0',
                'port': 3000,
                'allowed_origin': 'https://verdant-cucurucho-13134b.netlify.app',
            },

            'relay': {
                'api_key': '',
                'endpoint': 'https://api.scraperapi.com/',
                'account_url': 'https://api.scraperapi.com/account',
                'timeout': 60,
            },

            'upstream': {
                'high_court_url': 'https://hcservices.ecourts.gov.in',
                'district_court_url': 'https://lucknow.dcourts.gov.in',
                'timeout': 20,
                'connect_timeout': 10,
            },

            'logging': {
                'level': 'INFO',
                'file': str(get_app_data_dir() / 'logs' / 'ecourts_relay.log'),
                'max_bytes': 5 * 1024 * 1024,
                'backup_count': 5,
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Defaults with the JSON file merged over them"""
        default_config = self._get_default_config()

        if not self.config_path:
            return default_config

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
            return self._deep_merge(default_config, loaded_config)
        except FileNotFoundError:
            logger.warning(f"⚠️ Config file not found: {self.config_path}, using defaults")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"❌ Failed to load config {self.config_path}: {e}")

        return default_config

    def _apply_env_overrides(self):
        for env_name, (key, convert) in ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or raw.strip() == '':
                continue
            try:
                self.set(key, convert(raw.strip()))
            except ValueError:
                logger.error(f"❌ Invalid value for {env_name}: {raw!r}, keeping {self.get(key)!r}")

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Recursive dict merge, ``update`` wins"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Value by dotted key, e.g. ``server.port``"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """Sets a value by dotted key, creating missing sections"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value


# Process-wide instance
_config_instance = None


def get_config(config_path: Optional[Path] = None) -> ConfigManager:
    """Returns the process-wide ConfigManager, building it on first use"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager(config_path)
    return _config_instance
