"""
Registry of third-party API configurations.

Configurations are keyed by (tenant, API name); a configuration without a
tenant is the default every tenant falls back to.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConfigNotFoundError, ValidationError
from shared.logging import get_logger

from service_core.app.gateway.models import APIConfig

DEFAULT_DATA_FILE = Path(__file__).resolve().parent / "data" / "default_apis.json"


class APIConfigRegistry:
    """Per-tenant API configurations with tenant-less defaults."""

    def __init__(self):
        self._configs: Dict[Tuple[Optional[str], str], APIConfig] = {}
        self.logger = get_logger("core.gateway.registry")

    def register(self, config: APIConfig) -> None:
        self._configs[(config.tenant, config.name)] = config
        self.logger.info("API registered", api=config.name, tenant_id=config.tenant or "default")

    def unregister(self, api_name: str, tenant_id: Optional[str] = None) -> bool:
        removed = self._configs.pop((tenant_id, api_name), None) is not None
        if removed:
            self.logger.info("API unregistered", api=api_name, tenant_id=tenant_id or "default")
        return removed

    def resolve(self, tenant_id: Optional[str], api_name: str) -> Optional[APIConfig]:
        """Tenant configuration, else the default, else ``None``."""
        return self._configs.get((tenant_id, api_name)) or self._configs.get((None, api_name))

    def require(self, tenant_id: Optional[str], api_name: str) -> APIConfig:
        config = self.resolve(tenant_id, api_name)
        if config is None:
            raise ConfigNotFoundError(api_name, tenant_id)
        return config

    def list(self, tenant_id: Optional[str] = None) -> List[APIConfig]:
        """Configurations visible to ``tenant_id`` (tenant overrides win)."""
        visible: Dict[str, APIConfig] = {}
        for (config_tenant, name), config in sorted(self._configs.items(), key=lambda item: (item[0][0] is not None, item[0][1])):
            if config_tenant is None or config_tenant == tenant_id:
                visible[name] = config
        return [visible[name] for name in sorted(visible)]

    def load_file(self, path: Union[str, Path]) -> int:
        """Register every configuration in a JSON file. Returns how many loaded.

        The file holds a list of configurations or ``{"apis": [...]}``.
        Invalid entries are logged and skipped.
        """
        config_path = Path(path)
        if not config_path.exists():
            self.logger.warning("API configuration file not found", path=str(config_path))
            return 0

        try:
            payload: Any = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ValidationError(f"Cannot read API configuration file: {e}", {"path": str(config_path)}) from e

        entries = payload.get("apis", []) if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            raise ValidationError("API configuration file must hold a list", {"path": str(config_path)})

        loaded = 0
        for index, entry in enumerate(entries):
            try:
                self.register(APIConfig.model_validate(entry))
            except PydanticValidationError as e:
                self.logger.error("Skipping invalid API configuration", path=str(config_path), index=index, error=str(e))
                continue
            loaded += 1
        return loaded

    @classmethod
    def with_defaults(cls) -> "APIConfigRegistry":
        registry = cls()
        registry.load_file(DEFAULT_DATA_FILE)
        return registry
