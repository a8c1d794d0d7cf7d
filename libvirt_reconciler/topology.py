"""
Loading desired states from YAML topology files.

A topology file has the shape of ``DesiredState``. Domain items may also be
given as profile references, which are expanded through the generator::

    domains:
      mode: managed
      items:
        - profile: server
          name: DC01
          volume: dc01.qcow2
          extra_interfaces:
            - network: default
              model: e1000e
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from .exceptions import ConfigurationError
from .generator import ProfileGenerator, ProfileParams
from .logging import get_logger
from .models import DesiredState


logger = get_logger(__name__)


def desired_state_from_dict(data: Dict[str, Any], generator: Optional[ProfileGenerator] = None) -> DesiredState:
    """Build a desired state from plain data, expanding profile references."""
    if not isinstance(data, dict):
        raise ConfigurationError("Topology must be a mapping of kinds")

    generator = generator or ProfileGenerator()
    data = dict(data)

    domains = data.get("domains")
    if isinstance(domains, dict) and isinstance(domains.get("items"), list):
        items = []
        for item in domains["items"]:
            if isinstance(item, dict) and "profile" in item:
                item = dict(item)
                profile = item.pop("profile")
                try:
                    params = ProfileParams.model_validate(item)
                except ValidationError as e:
                    raise ConfigurationError(
                        f"Invalid parameters for profile {profile}: {e}",
                        details={"errors": e.errors(include_url=False)},
                    )
                item = generator.expand(profile, params)
            items.append(item)
        data["domains"] = {**domains, "items": items}

    try:
        return DesiredState.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid topology: {e}",
            details={"errors": e.errors(include_url=False)},
        )


def load_desired_state(path: str, generator: Optional[ProfileGenerator] = None) -> DesiredState:
    """Load a desired state from a YAML topology file."""
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Topology file not found: {path}")

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    desired = desired_state_from_dict(data, generator)
    logger.debug(
        f"Loaded topology {path}: {len(desired.managed_networks())} networks, "
        f"{len(desired.managed_pools())} pools, {len(desired.managed_domains())} domains"
    )
    return desired
