from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from devenv.core.errors import ConfigurationError

M = TypeVar("M", bound=BaseModel)

# ${VAR} or ${VAR:-default}
_ENV_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")


def load_yaml(path: Path) -> Dict[str, Any]:
    """
    Load a YAML manifest. Returns {} for empty files.
    """
    if not path.exists():
        raise ConfigurationError(f"manifest not found: {path}", code="E_MANIFEST_MISSING")
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path}: invalid YAML: {e}", code="E_MANIFEST_YAML") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{path}: top level must be a mapping, got {type(data).__name__}",
            code="E_MANIFEST_SHAPE",
        )
    return data


def expand_env(value: Any, env: Optional[Mapping[str, str]] = None) -> Any:
    """
    Recursively substitute ${VAR} / ${VAR:-default} in strings.
    An unset variable without a default is a configuration error, never an empty string.
    """
    env = os.environ if env is None else env

    if isinstance(value, str):
        def repl(m: "re.Match[str]") -> str:
            name, default = m.group(1), m.group(2)
            got = env.get(name)
            if got not in (None, ""):
                return got
            if default is not None:
                return default
            raise ConfigurationError(
                f"required environment variable {name} is not set",
                code="E_MISSING_ENV",
                meta={"variable": name},
            )
        return _ENV_RE.sub(repl, value)
    if isinstance(value, list):
        return [expand_env(v, env) for v in value]
    if isinstance(value, dict):
        return {k: expand_env(v, env) for k, v in value.items()}
    return value


def parse_model(model: Type[M], data: Dict[str, Any], *, source: str = "<manifest>") -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{source}: {e}", code="E_MANIFEST_INVALID") from e


def load_manifest(model: Type[M], path: str | Path, *, env: Optional[Mapping[str, str]] = None) -> M:
    p = Path(path).expanduser()
    raw = load_yaml(p)
    return parse_model(model, expand_env(raw, env), source=str(p))
