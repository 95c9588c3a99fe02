"""Load the topology YAML file from disk."""

import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from deployment_engine.core.errors import ConfigError
from deployment_engine.topology.models import Topology
from deployment_engine.topology.resolver import resolve

logger = logging.getLogger(__name__)


def load_raw_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML mapping from disk."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"configuration file not found: {path}", entity="config")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}", entity="config") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file must contain a mapping: {path}", entity="config")

    return data


def load_topology(path: Union[str, Path]) -> Topology:
    topology = resolve(load_raw_config(path))
    logger.info(
        f"[config] resolved project '{topology.project}' with "
        f"{len(topology.enabled_environments())} enabled environment(s)"
    )
    return topology
