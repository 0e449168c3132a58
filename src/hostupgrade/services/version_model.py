"""Release version model and upgrade path computation.

The release graph is a data table, not code. When Ubuntu ships a new
release or one goes end-of-life, update DEFAULT_RELEASE_GRAPH (and bump
its revision) rather than adding conditionals here.

    22.04 ──► 24.04 ──► 25.04 ──► 25.10
                 └── 24.10 (EOL, skipped)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from hostupgrade.models.errors import NoPathError, ParseError

Version = Tuple[int, int]

_VERSION_RE = re.compile(r"^\s*(\d+)\.(\d+)(?:\.(\d+))?\s*$")


@dataclass(frozen=True)
class ReleaseGraph:
    """Versioned successor table for supported releases."""

    revision: str
    successors: Dict[str, str] = field(default_factory=dict)

    def successor_of(self, version: Version) -> Optional[Version]:
        for source, target in self.successors.items():
            if normalize_version(source) == version:
                return normalize_version(target)
        return None


DEFAULT_RELEASE_GRAPH = ReleaseGraph(
    revision="2025.10",
    successors={
        "22.04": "24.04",  # LTS to LTS
        "24.04": "25.04",  # 24.10 is EOL
        "24.10": "25.04",
        "25.04": "25.10",
    },
)


def normalize_version(raw: str) -> Version:
    """Normalize "24.04", "24.4" or "24.04.1" to (24, 4).

    Raises:
        ParseError: If raw is not major.minor[.patch]
    """
    if not isinstance(raw, str):
        raise ParseError(f"Version must be a string, got {type(raw).__name__}")
    match = _VERSION_RE.match(raw)
    if not match:
        raise ParseError(f"Invalid version identifier: {raw!r}")
    return int(match.group(1)), int(match.group(2))


def version_number(raw: str) -> int:
    """Comparable integer, e.g. "25.10" -> 2510."""
    major, minor = normalize_version(raw)
    return major * 100 + minor


def format_version(version: Version) -> str:
    return f"{version[0]}.{version[1]:02d}"


def compare(a: str, b: str) -> int:
    """Return -1, 0 or 1 as a is lower than, equal to or greater than b."""
    left, right = version_number(a), version_number(b)
    return (left > right) - (left < right)


def is_lts(version: str) -> bool:
    major, minor = normalize_version(version)
    return minor == 4 and major % 2 == 0


def next_lts(version: str) -> str:
    """Next LTS after version (24.04 -> 26.04, 25.10 -> 26.04)."""
    major, minor = normalize_version(version)
    if minor == 4 and major % 2 == 0:
        return format_version((major + 2, 4))
    return format_version(((major // 2 + 1) * 2, 4))


_NEW_RELEASE_RE = re.compile(r"New release '([^']+)' available")


def parse_release_probe(output: str) -> Optional[str]:
    """Extract the offered version from `do-release-upgrade -c` output.

    Handles "New release '24.10' available." and
    "New release '24.04.1 LTS' available."
    """
    match = _NEW_RELEASE_RE.search(output or "")
    if not match:
        return None
    version = re.search(r"\d+\.\d+", match.group(1))
    if not version:
        return None
    return format_version(normalize_version(version.group(0)))


class VersionModel:
    """Upgrade path computation over an injected ReleaseGraph."""

    def __init__(
        self,
        graph: ReleaseGraph = DEFAULT_RELEASE_GRAPH,
        release_probe: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
    ):
        """Initialize version model.

        Args:
            graph: Successor table (defaults to DEFAULT_RELEASE_GRAPH)
            release_probe: Async callable returning the release the host's
                upgrader would offer, or None when unavailable
        """
        self.logger = logging.getLogger("hostupgrade.version_model")
        self.graph = graph
        self.release_probe = release_probe

    def next_hop(self, current: str) -> str:
        """Successor of current in the release graph.

        Raises:
            NoPathError: If current has no known successor
        """
        successor = self.graph.successor_of(normalize_version(current))
        if successor is None:
            raise NoPathError(
                f"No known upgrade from {current} (release graph {self.graph.revision})"
            )
        return format_version(successor)

    def compute_path(self, current: str, target: str) -> List[str]:
        """Ordered list of versions to pass through to reach target.

        Returns an empty list when current is at or above target.

        Raises:
            NoPathError: If any intermediate step is undefined
        """
        path: List[str] = []
        target_num = version_number(target)
        check = format_version(normalize_version(current))

        while version_number(check) < target_num:
            successor = self.next_hop(check)
            if compare(successor, check) <= 0:
                raise NoPathError(f"Release graph loops back at {check} -> {successor}")
            check = successor
            path.append(check)

        return path

    async def next_available_upgrade(self, current: str, expected: Optional[str] = None) -> str:
        """Release the host would upgrade to next.

        The host's probe is authoritative when it answers; the release graph
        is the fallback. A probe answer past the expectation means an EOL
        release was skipped upstream. An answer before it is accepted only if
        it still moves forward from current.

        Raises:
            NoPathError: If the answer is a downgrade/no-op or nothing is known
        """
        if expected is None:
            expected = self.next_hop(current)

        offered: Optional[str] = None
        if self.release_probe is not None:
            try:
                offered = await self.release_probe()
            except Exception as e:
                self.logger.warning(f"Release probe failed: {e}")
                offered = None

        if not offered:
            self.logger.info(f"Release probe unavailable, using release graph: {expected}")
            return format_version(normalize_version(expected))

        if compare(offered, expected) == 0:
            return format_version(normalize_version(offered))

        if compare(offered, expected) > 0:
            self.logger.warning(
                f"Skipping EOL release: expected {expected}, upgrading to {offered}"
            )
            return offered

        if compare(offered, current) > 0:
            self.logger.warning(
                f"Offered version {offered} is lower than expected {expected}, "
                f"but is a valid upgrade from {current}. Proceeding."
            )
            return offered

        raise NoPathError(
            f"Unexpected downgrade/same target: {offered} "
            f"(current: {current}, expected: {expected})"
        )
