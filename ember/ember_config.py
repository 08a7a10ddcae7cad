"""
Engine limits and switches.
"""
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml


@dataclass(frozen=True)
class EngineConfig:
    # Deepest allowed nesting of script function calls and `eval`.
    max_call_levels: int = 64
    # `call` and `curry` are registered for every arity up to this many arguments.
    max_variadic_args: int = 16
    # Reading an undeclared variable is an error; when off it yields ().
    strict_variables: bool = True

    def __post_init__(self):
        if self.max_call_levels < 1:
            raise ValueError("max_call_levels must be at least 1")
        if self.max_variadic_args < 0:
            raise ValueError("max_variadic_args cannot be negative")

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> 'EngineConfig':
        """Builds a config from a mapping, ignoring unknown keys."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        kwargs = {k.replace('-', '_'): v for k, v in data.items() if k.replace('-', '_') in known}
        return cls(**kwargs).with_env()

    @classmethod
    def from_yaml(cls, source: Union[str, Path]) -> 'EngineConfig':
        """
        Loads a config from a YAML file path or a YAML string. The document
        may hold the settings at top level or under an `engine:` key.
        """
        if isinstance(source, Path) or (isinstance(source, str) and '\n' not in source and Path(source).is_file()):
            text = Path(source).read_text(encoding='utf-8')
        else:
            text = source
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError("engine config must be a YAML mapping")
        if isinstance(data.get('engine'), dict):
            data = data['engine']
        return cls.from_mapping(data)

    def with_env(self) -> 'EngineConfig':
        """Applies the EMBER_MAX_CALL_LEVELS override, if set."""
        raw = os.environ.get("EMBER_MAX_CALL_LEVELS")
        if raw is None or not raw.strip():
            return self
        try:
            levels = int(raw)
        except ValueError:
            raise ValueError(f"EMBER_MAX_CALL_LEVELS must be an integer, got {raw!r}")
        return replace(self, max_call_levels=levels)
