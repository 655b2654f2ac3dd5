from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Callable

import yaml

ROOT_ENV_VAR = "SFR_DATA_ROOT"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "school_finance_reform.yaml"
# ${paths.raw_dir} or $name
_REFERENCE = re.compile(r"\$\{([\w.]+)\}|\$(\w+)")
_MAX_PASSES = 5


def resolve_root(data: dict[str, Any]) -> str:
    """Data root: $SFR_DATA_ROOT if set, else the `root` key of the config."""
    env_root = os.environ.get(ROOT_ENV_VAR)
    if env_root:
        return env_root
    root = data.get("root")
    if root is None or str(root).strip() == "":
        raise ValueError(f"Set {ROOT_ENV_VAR} or a top-level `root` key in the config.")
    return os.path.expanduser(str(root))


def _get_dotted(data: dict[str, Any], dotted: str) -> Any:
    node: Any = data
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _map_strings(obj: Any, fn: Callable[..., str], *args: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _map_strings(v, fn, *args) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_map_strings(v, fn, *args) for v in obj]
    return fn(obj, *args) if isinstance(obj, str) else obj


def _substitute_root(text: str, root: str) -> str:
    return os.path.expanduser(text.replace("{root}", root))


def _expand_references(text: str, data: dict[str, Any]) -> str:
    def _value(match: re.Match) -> str:
        target = _get_dotted(data, match.group(1) or match.group(2))
        if target is None or isinstance(target, (dict, list)):
            return match.group(0)
        return str(target)

    return _REFERENCE.sub(_value, text)


def load_config(path: str | Path | None = None) -> dict[str, Any]:
    cfg_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config not found: {cfg_path}")
    data = yaml.safe_load(cfg_path.read_text()) or {}
    root = resolve_root(data)
    data = _map_strings(data, _substitute_root, root)
    data["root"] = root
    # References can point at other references; expand until stable.
    for _ in range(_MAX_PASSES):
        expanded = _map_strings(data, _expand_references, data)
        if expanded == data:
            break
        data = expanded
    return data


def get_cfg_section(cfg: dict[str, Any], name: str) -> dict[str, Any]:
    section = cfg.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping.")
    return section


def resolve_path(paths_cfg: dict, key: str) -> Path:
    value = paths_cfg.get(key)
    if value is None or str(value).strip().lower() in {"", "none", "null"}:
        raise ValueError(f"Config paths.{key} must be set.")
    return Path(value)


def optional_path(paths_cfg: dict, key: str) -> Path | None:
    value = paths_cfg.get(key)
    if value is None or str(value).strip().lower() in {"", "none", "null"}:
        return None
    return Path(value)
