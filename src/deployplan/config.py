# config.py
from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from .errors import ConfigurationError


class TargetScope(str, Enum):
    MANAGEMENT_GROUP = "management-group"
    SUBSCRIPTION = "subscription"


class ProductRegion(str, Enum):
    US_1 = "US-1"
    US_2 = "US-2"
    EU_1 = "EU-1"
    US_GOV_1 = "US-GOV-1"


class Configuration(BaseModel):
    """
    Settings for one deployment run. Immutable once built.

    Extra keys are kept so that custom plans can declare their own feature
    flags and read them from conditions or ConfigRef inputs.
    """
    model_config = ConfigDict(frozen=True, extra="allow", use_enum_values=False)

    scope: TargetScope = TargetScope.MANAGEMENT_GROUP
    management_group_id: Optional[str] = None
    subscription_id: Optional[str] = None
    resource_group_name: str = "cs-integration-rg"
    location: str = "westus"
    product_region: ProductRegion = ProductRegion.US_1

    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None

    assign_permissions: bool = True
    deploy_ioa: bool = True
    deploy_activity_log_diagnostics: bool = True
    deploy_entra_log_diagnostics: bool = True
    deploy_activity_log_policy: bool = True
    deploy_realtime_visibility: bool = False

    tags: Dict[str, str] = Field(default_factory=dict)

    # ---- lookup used by conditions and ConfigRef inputs ----

    def has_field(self, name: str) -> bool:
        return name in type(self).model_fields or name in (self.model_extra or {})

    def get(self, name: str) -> Any:
        """Raw value of a field (secrets stay wrapped)."""
        if name in type(self).model_fields:
            return getattr(self, name)
        extra = self.model_extra or {}
        if name in extra:
            return extra[name]
        raise KeyError(name)

    def resolve(self, name: str) -> Any:
        """Value of a field as handed to a provisioner (secrets unwrapped, enums as str)."""
        value = self.get(name)
        if isinstance(value, SecretStr):
            return value.get_secret_value()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return dict(value)
        return value

    def target_id(self, scope: str) -> Optional[str]:
        """Identifier of the hierarchy node a step at `scope` deploys to."""
        if scope == "management-group":
            return self.management_group_id
        if scope == "subscription":
            return self.subscription_id
        if scope == "resource-group":
            return self.resource_group_name
        return None

    @classmethod
    def field_domains(cls, config: Optional["Configuration"] = None) -> Dict[str, List[Any]]:
        """
        Finite value sets of boolean and enum fields, used to prove
        implications between conditions.
        """
        out: Dict[str, List[Any]] = {}
        for name, info in cls.model_fields.items():
            ann = info.annotation
            if ann is bool:
                out[name] = [True, False]
            elif isinstance(ann, type) and issubclass(ann, Enum):
                out[name] = [m.value for m in ann]
        # custom flags declared as booleans in the given configuration
        if config is not None:
            for name, value in (config.model_extra or {}).items():
                if isinstance(value, bool):
                    out[name] = [True, False]
        return out

    def redacted(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        for key in ("client_secret",):
            if data.get(key):
                data[key] = "***"
        return data


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def parse_override(item: str) -> tuple[str, Any]:
    """Parse KEY=VALUE; VALUE is read as a YAML scalar (true, 3, "x")."""
    if "=" not in item:
        raise ConfigurationError(f"Invalid override {item!r}; expected KEY=VALUE")
    key, raw = item.split("=", 1)
    key = key.strip().replace("-", "_")
    if not key:
        raise ConfigurationError(f"Invalid override {item!r}; empty key")
    try:
        value = yaml.safe_load(raw) if raw.strip() else ""
    except yaml.YAMLError:
        value = raw
    return key, value


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            data = json.loads(text) if text.strip() else {}
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not parse configuration file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
    return data


def load_configuration(
    path: str | Path | None = None,
    overrides: Sequence[str] | Dict[str, Any] | None = None,
) -> Configuration:
    """
    Build a Configuration from an optional YAML/JSON file plus overrides.

    overrides may be KEY=VALUE strings (as given on the command line) or a dict.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        data.update(_read_file(Path(path).expanduser()))

    if overrides:
        if isinstance(overrides, dict):
            data.update(overrides)
        else:
            for item in overrides:
                key, value = parse_override(item)
                data[key] = value

    try:
        return Configuration(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration:\n{e}") from e
