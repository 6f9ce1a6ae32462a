import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Union

import yaml

from .fetch import DEFAULT_TIMEOUT, DEFAULT_USER_AGENT
from .images import DEFAULT_QUALITY
from .ledger import LEDGER_FILENAME

ConfigValue = Union[str, int, float, bool, List[str]]

CONFIG_SECTIONS = ("crawl", "fetch", "output", "general")


@dataclass
class Settings:
    # Crawl
    max_depth: int = 3  # 0 = unlimited
    max_concurrency: int = 10
    ignore_robots: bool = False

    # Fetch
    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = DEFAULT_TIMEOUT
    only_resources: Optional[FrozenSet[str]] = None

    # Output
    convert_to_webp: bool = False
    webp_quality: int = DEFAULT_QUALITY
    clear_ledger: bool = False
    ledger_name: str = LEDGER_FILENAME

    def depth_allowed(self, depth: int) -> bool:
        return self.max_depth == 0 or depth <= self.max_depth


def load_config_file(path: str) -> Dict[str, ConfigValue]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Dict[str, ConfigValue]) -> Dict[str, ConfigValue]:
    """Merge the known sections into one flat dict of option names."""
    flat: Dict[str, ConfigValue] = {
        k.replace("-", "_"): v for k, v in cfg.items() if not isinstance(v, dict)
    }
    for section in CONFIG_SECTIONS:
        values = cfg.get(section)
        if isinstance(values, dict):
            flat.update({k.replace("-", "_"): v for k, v in values.items()})
    return flat
