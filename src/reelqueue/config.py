import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union
from .models import ReelQueueConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "DATABASE_URL": "store.database_url",
    "QUEUE_DB_PATH": "queue.db_path",
    "QUEUE_NAME": "queue.name",
    "OPENAI_API_KEY": "analysis.api_key",
    "LOG_LEVEL": "logging.level",
    "LOG_FORMAT": "logging.format",
}


def get_config_value(config: Union[ReelQueueConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: ReelQueueConfig model or dict
        path: Dot-separated path like "queue.db_path"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, ReelQueueConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Build a nested override dict from the process environment."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        section, key = path.split(".")
        overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> ReelQueueConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic ReelQueueConfig model.

    Raises:
        pydantic.ValidationError: If the merged values are invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML (or an explicit file)
    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    if config_path is None:
        config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Merge environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate, then apply CLI overrides
    config = ReelQueueConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
