"""YAML configuration loader."""
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from tillstand.config.schema import TillstandFile
from tillstand.core.errors import ConfigValidationError
from tillstand.core.logger import get_logger
from tillstand.models.instance import AppSpec, InstanceSpec, VMSpec

logger = get_logger(__name__)


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as one ``path: message`` line each."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        message = item["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        lines.append(f"  {location}: {message}")
    return "Invalid configuration:\n" + "\n".join(lines)


class ConfigLoader:
    """Loads tillstand.yml and turns it into resource specs."""

    def __init__(self, config_path: str = "tillstand.yml"):
        self.config_path = Path(config_path)
        self.raw_config: Optional[Dict[str, Any]] = None
        self.config: Optional[TillstandFile] = None

    def load(self) -> TillstandFile:
        """Load and validate the YAML file.

        Raises:
            FileNotFoundError: Config file is missing
            ConfigValidationError: YAML is malformed or fails validation
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        try:
            with open(self.config_path) as f:
                self.raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Cannot parse {self.config_path}: {e}") from e

        if not self.raw_config:
            raise ConfigValidationError(f"Config file is empty: {self.config_path}")
        if not isinstance(self.raw_config, dict):
            raise ConfigValidationError("Config root must be a mapping with vms, containers and apps")

        try:
            self.config = TillstandFile.model_validate(self.raw_config)
        except ValidationError as e:
            raise ConfigValidationError(format_validation_error(e)) from e

        logger.debug(
            f"Loaded {len(self.config.vms)} VMs, {len(self.config.containers)} containers, "
            f"{len(self.config.apps)} apps from {self.config_path}"
        )
        return self.config

    def _ensure_loaded(self) -> TillstandFile:
        if self.config is None:
            self.load()
        return self.config

    def vm_specs(self) -> List[VMSpec]:
        return [VMSpec.from_dict(vm.model_dump()) for vm in self._ensure_loaded().vms]

    def container_specs(self) -> List[InstanceSpec]:
        return [
            InstanceSpec.from_dict(container.model_dump())
            for container in self._ensure_loaded().containers
        ]

    def app_specs(self) -> List[AppSpec]:
        return [AppSpec.from_dict(app.model_dump()) for app in self._ensure_loaded().apps]

    def specs(self) -> Dict[str, list]:
        """All desired specs keyed by resource kind."""
        return {
            "vm": self.vm_specs(),
            "instance": self.container_specs(),
            "app": self.app_specs(),
        }
