# redirect_operator/config.py
import yaml
import os
import socket
import uuid
import logging
from typing import Dict, List, Any, Optional

from dotenv import load_dotenv

CONFIG_FILE_NAME = 'redirect_operator.yaml'
CONFIG_PATH_ENV = 'REDIRECT_OPERATOR_CONFIG'

DEFAULT_SELF_NAMESPACE = 'redirect-operator'
DEFAULT_SELF_SERVICE_NAME = 'redirect-operator'
DEFAULT_REDIRECT_PORT = 8080
DEFAULT_OPS_PORT = 9880
DEFAULT_LEASE_NAME = 'redirect-operator-lock'

logger = logging.getLogger(__name__)


class AppConfig:
    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        # Tests hand in their own environment; the process uses os.environ (after .env is loaded)
        if environ is None:
            load_dotenv()
            environ = os.environ
        self._env = environ
        self._config_path = config_path or self._env.get(CONFIG_PATH_ENV) or os.path.join(os.getcwd(), CONFIG_FILE_NAME)
        self._raw_config: Dict[str, Any] = self._load_config_from_file()

        self._configure_logging()
        self._validate_lease_timings()

    def _load_config_from_file(self) -> Dict[str, Any]:
        try:
            with open(self._config_path, 'r') as f:
                config_data = yaml.safe_load(f)
                logger.info(f"Successfully loaded configuration from {self._config_path}")
                return config_data or {}
        except FileNotFoundError:
            logger.info(f"Configuration file not found at {self._config_path}. Using environment variables and defaults.")
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file {self._config_path}: {e}")
            return {}

    def _configure_logging(self):
        log_level_str = self._env.get('LOG_LEVEL', self._raw_config.get('log_level', 'INFO')).upper()
        numeric_level = getattr(logging, log_level_str, logging.INFO)
        logging.basicConfig(level=numeric_level,
                            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logger.debug(f"Logging level set to {log_level_str}")

    def _validate_lease_timings(self):
        duration = self.get_lease_duration_seconds()
        renew = self.get_lease_renew_interval_seconds()
        if not (0 < renew < duration):
            logger.error(f"Invalid leader election timings: renew={renew}s, lease_duration={duration}s")
            raise ValueError("Invalid leader election timings: ensure 0 < renew_interval < lease_duration.")

    def _section(self, name: str) -> Dict[str, Any]:
        return self._raw_config.get(name, {}) or {}

    def _get_number(self, env_name: Optional[str], section: str, key: str, default, cast=int):
        if env_name:
            env_value = self._env.get(env_name)
            if env_value:
                try:
                    return cast(env_value)
                except ValueError:
                    logger.warning(f"Invalid {env_name} environment variable: {env_value}. Falling back to config.")
        value = self._section(section).get(key)
        if value is None:
            return default
        try:
            return cast(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for {section}.{key} in {self._config_path}: {value!r}. Using {default}.")
            return default

    def get(self, key: str, default: Any = None) -> Any:
        """Get a top-level configuration value."""
        return self._raw_config.get(key, default)

    # --- Kubernetes scope ---
    def get_watch_namespace(self) -> Optional[str]:
        """Namespace to watch for Redirects, or None for all namespaces."""
        if 'WATCH_NAMESPACE' in self._env:
            return self._env['WATCH_NAMESPACE']
        return self._raw_config.get('watch_namespace')

    def get_self_namespace(self) -> str:
        return self._env.get('SELF_NAMESPACE', self._raw_config.get('self_namespace', DEFAULT_SELF_NAMESPACE))

    def get_self_service_name(self) -> str:
        return self._env.get('SELF_SERVICE_NAME', self._raw_config.get('self_service_name', DEFAULT_SELF_SERVICE_NAME))

    # --- HTTP listeners ---
    def get_listen_host(self) -> str:
        return self._env.get('LISTEN_HOST', self._section('http').get('host', '0.0.0.0'))

    def get_redirect_port(self) -> int:
        return self._get_number('REDIRECT_PORT', 'http', 'redirect_port', DEFAULT_REDIRECT_PORT)

    def get_ops_port(self) -> int:
        return self._get_number('OPS_PORT', 'http', 'ops_port', DEFAULT_OPS_PORT)

    # --- Leader election ---
    def get_lease_backend(self) -> str:
        return self._env.get('LEASE_BACKEND', self._section('leader_election').get('backend', 'kubernetes')).lower()

    def get_lease_name(self) -> str:
        return self._env.get('LEASE_NAME', self._section('leader_election').get('lease_name', DEFAULT_LEASE_NAME))

    def get_lease_namespace(self) -> str:
        return self._env.get('LEASE_NAMESPACE', self._section('leader_election').get('namespace') or self.get_self_namespace())

    def get_identity(self) -> str:
        identity = self._env.get('POD_NAME') or self._section('leader_election').get('identity')
        if not identity:
            identity = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
            logger.info(f"No POD_NAME configured, using generated leader identity {identity}")
            # Cache so every component agrees on the same identity
            self._section_or_create('leader_election')['identity'] = identity
        return identity

    def _section_or_create(self, name: str) -> Dict[str, Any]:
        if not isinstance(self._raw_config.get(name), dict):
            self._raw_config[name] = {}
        return self._raw_config[name]

    def get_lease_duration_seconds(self) -> float:
        return self._get_number('LEASE_DURATION_SECONDS', 'leader_election', 'lease_duration_seconds', 15.0, cast=float)

    def get_lease_renew_interval_seconds(self) -> float:
        return self._get_number('LEASE_RENEW_INTERVAL_SECONDS', 'leader_election', 'renew_interval_seconds', 5.0, cast=float)

    def get_lease_retry_interval_seconds(self) -> float:
        return self._get_number(None, 'leader_election', 'retry_interval_seconds', 2.0, cast=float)

    def get_max_renew_failures(self) -> int:
        return self._get_number(None, 'leader_election', 'max_renew_failures', 3)

    def get_etcd_endpoints(self) -> List[str]:
        # Prioritize environment variable, then config file, then default
        etcd_env = self._env.get('ETCD_ENDPOINTS')
        if etcd_env:
            return [ep.strip() for ep in etcd_env.split(',') if ep.strip()]

        etcd_config = self._section('etcd').get('endpoints')
        if etcd_config:
            return etcd_config

        return ['http://localhost:2379']

    # --- Controller ---
    def get_api_timeout_seconds(self) -> float:
        return self._get_number('API_TIMEOUT_SECONDS', 'controller', 'api_timeout_seconds', 10.0, cast=float)

    def get_reconcile_concurrency(self) -> int:
        return max(1, self._get_number(None, 'controller', 'concurrency', 2))

    def get_requeue_seconds(self) -> float:
        return self._get_number(None, 'controller', 'requeue_seconds', 300.0, cast=float)

    def get_error_requeue_seconds(self) -> float:
        return self._get_number(None, 'controller', 'error_requeue_seconds', 1.0, cast=float)
