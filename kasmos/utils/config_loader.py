"""
Configuration Loader Module

Locates the kasmos configuration directory, loads config.yaml/config.json
with environment variable substitution, validates it against a schema and
exposes the result as a typed KasmosConfig.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..core.errors import ValidationError
from .file_utils import FileUtils

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "KASMOS_CONFIG_DIR"
CONFIG_NAME = "config"
STATE_FILE_NAME = "instances.json"
LEGACY_CONFIG_DIRS = (".klique", ".hivemind")

_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)')


def get_config_dir() -> Path:
    """
    Directory holding kasmos configuration and state.

    Honors $KASMOS_CONFIG_DIR, otherwise ~/.config/kasmos. On first use a
    legacy ~/.klique or ~/.hivemind directory is moved into place; if that
    move fails the legacy directory is used as-is.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()

    home = Path.home()
    config_dir = home / ".config" / "kasmos"
    if config_dir.exists():
        return config_dir

    for legacy_name in LEGACY_CONFIG_DIRS:
        legacy_dir = home / legacy_name
        if not legacy_dir.exists():
            continue
        try:
            config_dir.parent.mkdir(parents=True, exist_ok=True)
            legacy_dir.rename(config_dir)
        except OSError as e:
            logger.error("failed to migrate %s to %s: %s", legacy_dir, config_dir, e)
            return legacy_dir
        logger.info("migrated configuration from %s to %s", legacy_dir, config_dir)
        return config_dir

    return config_dir


@dataclass
class ConfigValidationRule:
    """Configuration validation rule."""
    field_path: str
    required: bool = True
    field_type: Union[type, tuple] = str
    default_value: Any = None
    allowed_values: Optional[List[Any]] = None
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None


@dataclass
class ConfigSchema:
    """Configuration schema definition."""
    name: str
    version: str
    rules: List[ConfigValidationRule] = field(default_factory=list)

    def add_rule(self, **kwargs) -> 'ConfigSchema':
        """Add validation rule."""
        self.rules.append(ConfigValidationRule(**kwargs))
        return self


class ConfigLoader:
    """
    Configuration loader with validation and schema support.

    Features:
    - JSON and YAML configuration support
    - Schema validation with detailed error reporting
    - Environment variable substitution
    - Default value handling
    """

    def __init__(self, config_dir: Path):
        """
        Initialize config loader.

        Args:
            config_dir: Directory containing configuration files
        """
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self._config_cache: Dict[str, Dict[str, Any]] = {}
        self._schemas: Dict[str, ConfigSchema] = {}
        self.last_errors: List[str] = []
        self._initialize_builtin_schemas()

    def load_config(self,
                    config_name: str,
                    schema_name: Optional[str] = None,
                    use_cache: bool = True,
                    required: bool = True) -> Optional[Dict[str, Any]]:
        """
        Load configuration file with optional schema validation.

        Args:
            config_name: Name of config file (without extension)
            schema_name: Name of schema to validate against
            use_cache: Whether to use cached config
            required: Whether config file is required

        Returns:
            Dict containing configuration or None if not found/invalid
        """
        if use_cache and config_name in self._config_cache:
            return self._config_cache[config_name]

        config_data = None
        yaml_path = self.config_dir / f"{config_name}.yaml"
        yml_path = self.config_dir / f"{config_name}.yml"
        json_path = self.config_dir / f"{config_name}.json"

        if yaml_path.exists():
            config_data = FileUtils.read_yaml(yaml_path)
        elif yml_path.exists():
            config_data = FileUtils.read_yaml(yml_path)
        elif json_path.exists():
            config_data = FileUtils.read_json(json_path)

        if config_data is None:
            if required:
                logger.error("required config not found: %s", config_name)
                return None
            config_data = {}

        if not isinstance(config_data, dict):
            self.last_errors = [f"{config_name} must contain a mapping"]
            logger.error("config %s is not a mapping", config_name)
            return None

        config_data = self._substitute_environment_variables(config_data)

        if schema_name and not self.validate_config(config_data, schema_name):
            logger.error("config validation failed for %s", config_name)
            return None

        if use_cache:
            self._config_cache[config_name] = config_data

        logger.debug("loaded config %s", config_name)
        return config_data

    def register_schema(self, schema: ConfigSchema) -> None:
        self._schemas[schema.name] = schema

    def validate_config(self, config_data: Dict[str, Any], schema_name: str) -> bool:
        """
        Validate configuration against schema, filling in defaults.

        Validation messages are kept on last_errors.

        Args:
            config_data: Configuration to validate
            schema_name: Name of schema to validate against

        Returns:
            bool: True if validation passed
        """
        if schema_name not in self._schemas:
            self.last_errors = [f"Schema not found: {schema_name}"]
            return False

        schema = self._schemas[schema_name]
        validation_errors = []

        for rule in schema.rules:
            value = self._get_nested_value(config_data, rule.field_path)

            if value is None:
                if rule.required:
                    validation_errors.append(f"Required field missing: {rule.field_path}")
                elif rule.default_value is not None:
                    self._set_nested_value(config_data, rule.field_path, rule.default_value)
                continue

            # bool is an int subclass; keep the two apart
            wants_bool = rule.field_type is bool
            if (not isinstance(value, rule.field_type)
                    or (not wants_bool and isinstance(value, bool))):
                type_name = getattr(rule.field_type, "__name__", str(rule.field_type))
                validation_errors.append(
                    f"Field {rule.field_path} must be {type_name}, got {type(value).__name__}"
                )
                continue

            if rule.allowed_values and value not in rule.allowed_values:
                validation_errors.append(
                    f"Field {rule.field_path} must be one of {rule.allowed_values}, got {value}"
                )

            if rule.min_value is not None and value < rule.min_value:
                validation_errors.append(
                    f"Field {rule.field_path} must be >= {rule.min_value}, got {value}"
                )

            if rule.max_value is not None and value > rule.max_value:
                validation_errors.append(
                    f"Field {rule.field_path} must be <= {rule.max_value}, got {value}"
                )

        self.last_errors = validation_errors
        for error in validation_errors:
            logger.error("config %s: %s", schema_name, error)
        return not validation_errors

    def _get_nested_value(self, data: Dict[str, Any], path: str) -> Any:
        """Get nested value using dot notation."""
        current = data
        for key in path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return None
        return current

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set nested value using dot notation."""
        keys = path.split('.')
        current = data
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _substitute_environment_variables(self, data: Any) -> Any:
        """Recursively substitute ${VAR} and $VAR in string values."""
        if isinstance(data, dict):
            return {k: self._substitute_environment_variables(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._substitute_environment_variables(item) for item in data]
        elif isinstance(data, str):
            def replace_env_var(match):
                var_name = match.group(1) or match.group(2)
                return os.environ.get(var_name, match.group(0))
            return _ENV_PATTERN.sub(replace_env_var, data)
        return data

    def _initialize_builtin_schemas(self) -> None:
        schema = ConfigSchema("kasmos", "1.0")
        schema.add_rule(
            field_path="default_program",
            required=False,
            field_type=str,
            default_value="claude"
        ).add_rule(
            field_path="auto_yes",
            required=False,
            field_type=bool,
            default_value=False
        ).add_rule(
            field_path="branch_prefix",
            required=False,
            field_type=str,
            default_value=""
        ).add_rule(
            field_path="metadata_tick_ms",
            required=False,
            field_type=int,
            default_value=500,
            min_value=100,
            max_value=10000
        ).add_rule(
            field_path="worker_pool_size",
            required=False,
            field_type=int,
            default_value=4,
            min_value=1,
            max_value=64
        ).add_rule(
            field_path="resource_backend",
            required=False,
            field_type=str,
            default_value="pgrep",
            allowed_values=["pgrep", "psutil"]
        ).add_rule(
            field_path="logging.level",
            required=False,
            field_type=str,
            default_value="INFO",
            allowed_values=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        ).add_rule(
            field_path="logging.file",
            required=False,
            field_type=str,
            default_value=""
        )
        self.register_schema(schema)


@dataclass
class KasmosConfig:
    """Typed view of the validated kasmos configuration."""
    default_program: str = "claude"
    auto_yes: bool = False
    branch_prefix: str = ""
    metadata_tick_ms: int = 500
    worker_pool_size: int = 4
    resource_backend: str = "pgrep"
    log_level: str = "INFO"
    log_file: str = ""
    config_dir: str = ""

    @property
    def state_file(self) -> Path:
        return Path(self.config_dir) / STATE_FILE_NAME

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_dir: str = "") -> "KasmosConfig":
        logging_section = data.get("logging") or {}
        return cls(
            default_program=data.get("default_program", "claude"),
            auto_yes=data.get("auto_yes", False),
            branch_prefix=data.get("branch_prefix", ""),
            metadata_tick_ms=data.get("metadata_tick_ms", 500),
            worker_pool_size=data.get("worker_pool_size", 4),
            resource_backend=data.get("resource_backend", "pgrep"),
            log_level=logging_section.get("level", "INFO"),
            log_file=logging_section.get("file", ""),
            config_dir=config_dir,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("config_dir")
        data["logging"] = {"level": data.pop("log_level"), "file": data.pop("log_file")}
        return data

    @classmethod
    def load(cls, config_dir: Optional[Path] = None) -> "KasmosConfig":
        """
        Load and validate configuration from the config directory.

        Raises:
            ValidationError: The configuration file is invalid
        """
        config_dir = Path(config_dir) if config_dir is not None else get_config_dir()
        loader = ConfigLoader(config_dir)
        data = loader.load_config(CONFIG_NAME, schema_name="kasmos", required=False)
        if data is None:
            raise ValidationError(
                f"invalid configuration in {config_dir}: " + "; ".join(loader.last_errors))
        return cls.from_dict(data, config_dir=str(config_dir))

    def dumps(self) -> str:
        """Configuration rendered as JSON for display."""
        return json.dumps(self.to_dict(), indent=2)
