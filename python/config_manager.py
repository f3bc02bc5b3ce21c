"""
Configuration Management Module
Loads and validates configuration from config.yaml, then applies
environment variable overrides for secrets and deployment-specific values.
"""

import os
import yaml
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class ScreeningConfig:
    """Sanctions screening provider settings"""
    api_key: Optional[str] = None
    base_url: str = "https://api.complyadvantage.com"
    hit_threshold: float = 0.85
    fuzziness: float = 0.6
    search_profile: str = "sanctions"
    timeout: float = 15.0
    top_matches: int = 3

    @property
    def demo(self) -> bool:
        return not self.api_key


@dataclass
class VerificationConfig:
    """KYB verification provider settings"""
    app_token: Optional[str] = None
    secret_key: Optional[str] = None
    base_url: str = "https://api.sumsub.com"
    level_name: str = "basic-kyb-level"
    token_ttl_seconds: int = 1800
    timeout: float = 15.0

    @property
    def demo(self) -> bool:
        return not (self.app_token and self.secret_key)


@dataclass
class RegistryConfig:
    """On-chain credential registry settings"""
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None
    factory_address: Optional[str] = None
    admin_private_key: Optional[str] = None
    request_timeout: float = 30.0
    receipt_timeout: float = 120.0
    health_cache_ttl: float = 60.0

    @property
    def enabled(self) -> bool:
        return bool(self.rpc_url and self.factory_address and self.admin_private_key)


@dataclass
class RetryConfig:
    """Retry policy for transient provider failures"""
    max_attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 10.0
    lock_timeout: Optional[float] = 300.0


@dataclass
class AuthConfig:
    """Shared secrets protecting privileged endpoints"""
    admin_api_key: Optional[str] = None
    cron_secret: Optional[str] = None


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    security_log_dir: str = "logs"
    security_log_to_file: bool = True


@dataclass
class ApiConfig:
    """HTTP server configuration"""
    host: str = "127.0.0.1"
    port: int = 8000


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


# Environment variable -> (section, attribute)
ENV_OVERRIDES = {
    "COMPLY_ADVANTAGE_API_KEY": ("screening", "api_key"),
    "SUMSUB_APP_TOKEN": ("verification", "app_token"),
    "SUMSUB_SECRET_KEY": ("verification", "secret_key"),
    "PLATFORM_ADMIN_API_KEY": ("auth", "admin_api_key"),
    "CRON_SECRET": ("auth", "cron_secret"),
    "PLATFORM_ADMIN_PRIVATE_KEY": ("registry", "admin_private_key"),
    "FACTORY_CONTRACT_ADDRESS": ("registry", "factory_address"),
    "CHAIN_RPC_URL": ("registry", "rpc_url"),
    "CHAIN_ID": ("registry", "chain_id"),
    "LOG_LEVEL": ("logging", "level"),
}


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
            environ: Environment mapping (defaults to os.environ)
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._environ = os.environ if environ is None else environ
        self._raw_config: Dict[str, Any] = {}
        self.screening: ScreeningConfig = ScreeningConfig()
        self.verification: VerificationConfig = VerificationConfig()
        self.registry: RegistryConfig = RegistryConfig()
        self.retry: RetryConfig = RetryConfig()
        self.auth: AuthConfig = AuthConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.api: ApiConfig = ApiConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.info(f"Config file not found at {self.config_path}, using defaults")
        self._apply_env_overrides()
        self._validate()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_screening()
        self._parse_verification()
        self._parse_registry()
        self._parse_retry()
        self._parse_auth()
        self._parse_logging()
        self._parse_api()

    def _parse_screening(self) -> None:
        """Parse screening provider configuration"""
        cfg = self._raw_config.get('screening') or {}
        defaults = ScreeningConfig()
        self.screening = ScreeningConfig(
            api_key=cfg.get('api_key'),
            base_url=cfg.get('base_url', defaults.base_url),
            hit_threshold=float(cfg.get('hit_threshold', defaults.hit_threshold)),
            fuzziness=float(cfg.get('fuzziness', defaults.fuzziness)),
            search_profile=cfg.get('search_profile', defaults.search_profile),
            timeout=float(cfg.get('timeout', defaults.timeout)),
            top_matches=int(cfg.get('top_matches', defaults.top_matches))
        )

    def _parse_verification(self) -> None:
        """Parse verification provider configuration"""
        cfg = self._raw_config.get('verification') or {}
        defaults = VerificationConfig()
        self.verification = VerificationConfig(
            app_token=cfg.get('app_token'),
            secret_key=cfg.get('secret_key'),
            base_url=cfg.get('base_url', defaults.base_url),
            level_name=cfg.get('level_name', defaults.level_name),
            token_ttl_seconds=int(cfg.get('token_ttl_seconds', defaults.token_ttl_seconds)),
            timeout=float(cfg.get('timeout', defaults.timeout))
        )

    def _parse_registry(self) -> None:
        """Parse on-chain registry configuration"""
        cfg = self._raw_config.get('registry') or {}
        defaults = RegistryConfig()
        chain_id = cfg.get('chain_id')
        self.registry = RegistryConfig(
            rpc_url=cfg.get('rpc_url'),
            chain_id=int(chain_id) if chain_id is not None else None,
            factory_address=cfg.get('factory_address'),
            admin_private_key=cfg.get('admin_private_key'),
            request_timeout=float(cfg.get('request_timeout', defaults.request_timeout)),
            receipt_timeout=float(cfg.get('receipt_timeout', defaults.receipt_timeout)),
            health_cache_ttl=float(cfg.get('health_cache_ttl', defaults.health_cache_ttl))
        )

    def _parse_retry(self) -> None:
        """Parse retry configuration"""
        cfg = self._raw_config.get('retry') or {}
        defaults = RetryConfig()
        lock_timeout = cfg.get('lock_timeout', defaults.lock_timeout)
        self.retry = RetryConfig(
            max_attempts=int(cfg.get('max_attempts', defaults.max_attempts)),
            min_wait=float(cfg.get('min_wait', defaults.min_wait)),
            max_wait=float(cfg.get('max_wait', defaults.max_wait)),
            lock_timeout=float(lock_timeout) if lock_timeout is not None else None
        )

    def _parse_auth(self) -> None:
        """Parse authentication configuration"""
        cfg = self._raw_config.get('auth') or {}
        self.auth = AuthConfig(
            admin_api_key=cfg.get('admin_api_key'),
            cron_secret=cfg.get('cron_secret')
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging') or {}
        defaults = LoggingConfig()
        self.logging = LoggingConfig(
            level=cfg.get('level', defaults.level),
            format=cfg.get('format', defaults.format),
            security_log_dir=cfg.get('security_log_dir', defaults.security_log_dir),
            security_log_to_file=cfg.get('security_log_to_file', defaults.security_log_to_file)
        )

    def _parse_api(self) -> None:
        """Parse HTTP server configuration"""
        cfg = self._raw_config.get('api') or {}
        defaults = ApiConfig()
        self.api = ApiConfig(
            host=cfg.get('host', defaults.host),
            port=int(cfg.get('port', defaults.port))
        )

    def _apply_env_overrides(self) -> None:
        """Environment variables win over file values; empty strings are ignored"""
        for env_name, (section_name, attr) in ENV_OVERRIDES.items():
            value = self._environ.get(env_name)
            if value is None or value.strip() == "":
                continue
            section = getattr(self, section_name)
            if attr == "chain_id":
                try:
                    value = int(value)
                except ValueError:
                    raise ConfigurationError(f"{env_name} must be an integer, got {value!r}")
            setattr(section, attr, value.strip() if isinstance(value, str) else value)

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary, secrets reported only as present/absent"""
        return {
            'screening': {
                'demo': self.screening.demo,
                'base_url': self.screening.base_url,
                'hit_threshold': self.screening.hit_threshold,
                'fuzziness': self.screening.fuzziness
            },
            'verification': {
                'demo': self.verification.demo,
                'base_url': self.verification.base_url,
                'level_name': self.verification.level_name
            },
            'registry': {
                'enabled': self.registry.enabled,
                'rpc_url': self.registry.rpc_url,
                'chain_id': self.registry.chain_id,
                'factory_address': self.registry.factory_address
            },
            'retry': {
                'max_attempts': self.retry.max_attempts,
                'min_wait': self.retry.min_wait,
                'max_wait': self.retry.max_wait
            },
            'auth': {
                'admin_api_key_set': bool(self.auth.admin_api_key),
                'cron_secret_set': bool(self.auth.cron_secret)
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        if not 0.0 < self.screening.hit_threshold <= 1.0:
            raise ConfigurationError(
                f"screening.hit_threshold must be in (0, 1], got {self.screening.hit_threshold}"
            )
        if not 0.0 <= self.screening.fuzziness <= 1.0:
            raise ConfigurationError(
                f"screening.fuzziness must be in [0, 1], got {self.screening.fuzziness}"
            )
        if self.retry.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be at least 1")
        if self.retry.min_wait < 0 or self.retry.max_wait < self.retry.min_wait:
            raise ConfigurationError("retry waits must satisfy 0 <= min_wait <= max_wait")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Unknown logging level: {self.logging.level}")
        if self.registry.factory_address and not self.registry.factory_address.startswith("0x"):
            raise ConfigurationError("registry.factory_address must be a 0x-prefixed address")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
