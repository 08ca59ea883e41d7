"""
Registry override for tool servers that need privileged containers.

The gateway reads extra registry entries from a YAML file passed with
--additional-registry / --additional-config. Each privileged server gets
docker run options that grant privileged mode and the host docker socket.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml

from config import GATEWAY_CONFIG_DIR, GATEWAY_OVERRIDE_FILENAME, PRIVILEGED_RUN_OPTIONS

logger = logging.getLogger(__name__)


def build_override(servers: Iterable[str]) -> dict:
    return {
        "registry": {
            name: {"dockerRunOptions": list(PRIVILEGED_RUN_OPTIONS)}
            for name in sorted(servers)
        }
    }


def write_override(servers: Iterable[str], config_dir: Optional[Path] = None) -> Optional[Path]:
    """Write the override file. Returns None when there is nothing privileged."""
    servers = sorted(set(servers))
    if not servers:
        return None
    directory = Path(config_dir) if config_dir else GATEWAY_CONFIG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / GATEWAY_OVERRIDE_FILENAME
    path.write_text(yaml.safe_dump(build_override(servers), default_flow_style=False, sort_keys=True))
    logger.info("Wrote privileged registry override for %s at %s", ", ".join(servers), path)
    return path


def override_args(path: Optional[Path]) -> list[str]:
    if path is None:
        return []
    return ["--additional-registry", str(path), "--additional-config", str(path)]


def remove_override(path: Optional[Path]):
    if path is None:
        return
    try:
        path.unlink()
        logger.info("Deleted gateway override: %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not delete gateway override %s: %s", path, e)
