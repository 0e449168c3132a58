"""OS identity detection from /etc/os-release."""

import logging
import shlex
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("hostupgrade.os_release")

OS_RELEASE_PATH = Path("/etc/os-release")


def read_os_release(path: Path = OS_RELEASE_PATH) -> Dict[str, str]:
    """Parse an os-release file into a dict.

    Returns:
        Key/value pairs with shell quoting removed, empty dict if unreadable
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning(f"Cannot read {path}: {e}")
        return {}

    data: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        data[key.strip()] = parts[0] if parts else ""
    return data


def current_os_id(path: Path = OS_RELEASE_PATH) -> Optional[str]:
    return read_os_release(path).get("ID")


def current_version_string(path: Path = OS_RELEASE_PATH) -> Optional[str]:
    """Current Ubuntu VERSION_ID (e.g. "24.04"), None when not Ubuntu."""
    data = read_os_release(path)
    if data.get("ID") != "ubuntu":
        return None
    return data.get("VERSION_ID") or None


def current_codename(path: Path = OS_RELEASE_PATH) -> Optional[str]:
    data = read_os_release(path)
    return data.get("VERSION_CODENAME") or data.get("UBUNTU_CODENAME") or None
