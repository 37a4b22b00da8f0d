"""Device identity and platform defaults."""

import platform
import uuid
from pathlib import Path

from simple_analytics.utils.logging import setup_logging

logger = setup_logging("device-identity")


def default_platform() -> str:
    system = platform.system()
    if system == "Darwin":
        return "macOS"
    return system or "Unknown"


def default_system_version() -> str:
    if platform.system() == "Darwin":
        mac_version = platform.mac_ver()[0]
        if mac_version:
            return mac_version
    return platform.release() or "Unknown"


def load_or_create_device_id(path: str | Path) -> str:
    """Return the installation's device identifier, generating it on first use.

    The identifier is never rotated. If the file cannot be written the
    generated id is still returned and used for this run.
    """
    id_path = Path(path).expanduser()
    try:
        existing = id_path.read_text().strip()
    except FileNotFoundError:
        existing = ""
    except OSError as e:
        logger.warning("device_id_read_failed", path=str(id_path), error=str(e))
        existing = ""
    if existing:
        return existing

    identifier = str(uuid.uuid4()).upper()
    try:
        id_path.parent.mkdir(parents=True, exist_ok=True)
        id_path.write_text(identifier)
        logger.info("device_id_created", path=str(id_path))
    except OSError as e:
        logger.warning("device_id_write_failed", path=str(id_path), error=str(e))
    return identifier
