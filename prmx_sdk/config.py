"""
Network and submission configuration for the PRMX SDK.
"""
import importlib.resources
import json
import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "local"

_SETTINGS_ENV = {
    "max_attempts": "PRMX_MAX_ATTEMPTS",
    "attempt_timeout": "PRMX_ATTEMPT_TIMEOUT",
    "base_delay": "PRMX_BASE_DELAY",
    "delay_increment": "PRMX_DELAY_INCREMENT",
}


class NetworkConfig:
    """Packaged network definitions with environment overrides"""

    _networks_cache: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        """
        Load network definitions from the packaged networks.json.

        Returns:
            Mapping of network name to its settings
        """
        if cls._networks_cache is not None:
            return cls._networks_cache

        resource = importlib.resources.files("prmx_sdk").joinpath("networks.json")
        with resource.open("r", encoding="utf-8") as f:
            cls._networks_cache = json.load(f)
        return cls._networks_cache

    @classmethod
    def default_network(cls) -> str:
        return os.environ.get("PRMX_NETWORK", DEFAULT_NETWORK)

    @classmethod
    def get_network(cls, network: Optional[str] = None) -> Dict[str, Any]:
        """
        Get the settings of one network.

        Args:
            network: Network name, defaults to $PRMX_NETWORK or "local"

        Raises:
            ValueError: If the network is not defined
        """
        network = network or cls.default_network()
        networks = cls.load_networks()
        if network not in networks:
            available = ", ".join(sorted(networks))
            raise ValueError(f"Unknown network: {network}. Available networks: {available}")
        return networks[network]

    @staticmethod
    def _env_prefix(network: str) -> str:
        return network.upper().replace("-", "_")

    @classmethod
    def get_ws_url(cls, network: Optional[str] = None, override: Optional[str] = None) -> str:
        """
        Resolve the node websocket URL.

        Precedence: ``override``, $PRMX_WS_ENDPOINT, ${NETWORK}_WS_URL, then
        networks.json.
        """
        if override:
            return override
        network = network or cls.default_network()
        env_url = os.environ.get("PRMX_WS_ENDPOINT") or os.environ.get(f"{cls._env_prefix(network)}_WS_URL")
        if env_url:
            return env_url
        return cls.get_network(network)["ws"]

    @classmethod
    def get_health_url(cls, network: Optional[str] = None, override: Optional[str] = None) -> str:
        """
        Resolve the oracle service base URL used for health checks.

        Precedence: ``override``, $PRMX_HEALTH_URL, ${NETWORK}_HEALTH_URL, then
        networks.json.
        """
        if override:
            return override
        network = network or cls.default_network()
        env_url = os.environ.get("PRMX_HEALTH_URL") or os.environ.get(f"{cls._env_prefix(network)}_HEALTH_URL")
        if env_url:
            return env_url
        return cls.get_network(network)["health"]

    @classmethod
    def get_ss58_format(cls, network: Optional[str] = None) -> int:
        return int(cls.get_network(network).get("ss58Format", 42))


class SubmissionSettings(BaseModel):
    """Retry and timeout policy of the submission engine"""
    max_attempts: int = Field(default=15, ge=1)
    attempt_timeout: float = Field(default=30.0, gt=0)
    base_delay: float = Field(default=3.0, ge=0)
    delay_increment: float = Field(default=1.0, ge=0)
    sentinel_threshold: int = Field(default=9 * 10 ** 18, gt=0)

    @classmethod
    def from_env(cls, **overrides: Any) -> "SubmissionSettings":
        """
        Build settings from PRMX_* environment variables.

        Keyword arguments take precedence over the environment.

        Raises:
            pydantic.ValidationError: If a value is out of range or not a number
        """
        values: Dict[str, Any] = {}
        for field, env_name in _SETTINGS_ENV.items():
            if env_name in os.environ:
                values[field] = os.environ[env_name]
        values.update({k: v for k, v in overrides.items() if v is not None})
        settings = cls.model_validate(values)
        logger.debug(f"Submission settings: {settings}")
        return settings
