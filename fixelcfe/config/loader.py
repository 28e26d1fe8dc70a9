"""Reading, merging and saving command configurations.

A run's parameters come from three layers: dataclass defaults, an
optional YAML/JSON file given with ``--config``, and command-line options.
The layers are merged as dictionaries and turned into the command's
config dataclass by :func:`config_from_dict`.
"""

from dataclasses import asdict, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Type, TypeVar, Union
import json

import yaml

from fixelcfe.io.writers import save_json
from fixelcfe.utils.exceptions import ConfigurationError

ConfigType = TypeVar('ConfigType')

_PARSERS = {
    ".json": json.load,
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
}


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a configuration mapping from a ``.json``, ``.yaml`` or ``.yml`` file.

    An empty file gives an empty dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: For another extension, or if the file does not
            hold a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    parser = _PARSERS.get(path.suffix.lower())
    if parser is None:
        raise ConfigurationError(
            f"Unsupported configuration file format '{path.suffix}' "
            f"(expected one of {', '.join(_PARSERS)})"
        )

    with path.open() as f:
        data = parser(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping, got {type(data).__name__}"
        )
    return data


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``base`` updated with ``override``, merging nested sections.

    Neither input is modified.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = merge_configs(current, value)
        merged[key] = value
    return merged


def _coerce(value: Any, field_type: Any) -> Any:
    type_name = str(field_type)
    if is_dataclass(field_type) and isinstance(value, dict):
        return config_from_dict(value, field_type)
    if 'Path' not in type_name:
        return value
    if isinstance(value, list) and type_name.startswith('typing.List'):
        return [Path(item) if isinstance(item, str) else item for item in value]
    if isinstance(value, str):
        return Path(value)
    return value


def config_from_dict(data: Dict[str, Any], config_class: Type[ConfigType]) -> ConfigType:
    """Build a config dataclass from a dictionary.

    Keys that are not fields of ``config_class`` are ignored. Nested
    sections (``cfe``, ``permutation``) become their own dataclasses and
    path strings become :class:`~pathlib.Path` objects.

    Raises:
        ConfigurationError: If ``config_class`` is not a dataclass.
    """
    if not is_dataclass(config_class):
        raise ConfigurationError(f"{config_class} is not a configuration dataclass")

    values = {
        config_field.name: _coerce(data[config_field.name], config_field.type)
        for config_field in fields(config_class)
        if config_field.name in data
    }
    return config_class(**values)


def save_config(config: Any, path: Union[str, Path]) -> Path:
    """Save a config dataclass (or plain dictionary) as JSON next to the results."""
    if is_dataclass(config) and not isinstance(config, type):
        config = asdict(config)
    elif not isinstance(config, dict):
        raise TypeError(f"Expected dict or dataclass, got {type(config)}")
    return save_json(config, path)
