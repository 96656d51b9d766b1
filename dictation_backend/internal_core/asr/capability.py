from __future__ import annotations

"""
Static platform-support checks for transcription providers.

Design intent:
- Decide once, from architecture and OS facts, whether an engine can run here.
- Return a tagged result with a human-readable reason instead of a bare bool.
- Never touch model state; availability is not a transient condition.
"""

import platform
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

_ARCH_ALIASES = {
    "aarch64": "arm64",
    "arm64e": "arm64",
    "armv8": "arm64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "i386": "x86",
    "i686": "x86",
}

_VERSION_PART_RE = re.compile(r"\d+")


def normalize_arch(machine: str) -> str:
    key = (machine or "").strip().lower()
    return _ARCH_ALIASES.get(key, key)


def parse_version(text: str) -> Tuple[int, ...]:
    """Parse "15.1.2" into (15, 1, 2); stops at the first non-numeric component."""
    parts: list[int] = []
    for raw in (text or "").strip().split("."):
        match = _VERSION_PART_RE.match(raw)
        if not match:
            break
        parts.append(int(match.group(0)))
    return tuple(parts)


def version_at_least(actual: Tuple[int, ...], minimum: Tuple[int, ...]) -> bool:
    if not minimum:
        return True
    if not actual:
        return False
    width = max(len(actual), len(minimum))
    padded_actual = actual + (0,) * (width - len(actual))
    padded_min = minimum + (0,) * (width - len(minimum))
    return padded_actual >= padded_min


@dataclass(frozen=True)
class PlatformFacts:
    machine: str
    system: str
    os_version: str

    @property
    def arch_family(self) -> str:
        return normalize_arch(self.machine)


def detect_platform() -> PlatformFacts:
    system = platform.system()
    if system == "Darwin":
        # platform.release() is the Darwin kernel version, not the macOS version.
        version = platform.mac_ver()[0]
    else:
        version = platform.release()
    return PlatformFacts(machine=platform.machine(), system=system, os_version=version)


@dataclass(frozen=True)
class CapabilityRequirements:
    # Empty sets mean "any".
    arch_families: FrozenSet[str] = field(default_factory=frozenset)
    systems: FrozenSet[str] = field(default_factory=frozenset)
    min_os_version: Tuple[int, ...] = ()
    # When set, min_os_version only applies on this system (e.g. "Darwin").
    min_os_system: str = ""


@dataclass(frozen=True)
class EngineSupport:
    supported: bool
    reason: str = ""


SUPPORTED = EngineSupport(supported=True)


class CapabilityGate:
    def __init__(
        self,
        requirements: CapabilityRequirements,
        facts: Optional[PlatformFacts] = None,
    ) -> None:
        self._requirements = requirements
        self._facts = facts if facts is not None else detect_platform()

    @property
    def facts(self) -> PlatformFacts:
        return self._facts

    @property
    def requirements(self) -> CapabilityRequirements:
        return self._requirements

    def evaluate(self) -> EngineSupport:
        req = self._requirements
        facts = self._facts

        if req.arch_families:
            allowed = {normalize_arch(a) for a in req.arch_families}
            if facts.arch_family not in allowed:
                return EngineSupport(
                    False,
                    f"requires {'/'.join(sorted(allowed))}; this machine is {facts.arch_family or 'unknown'}",
                )
        if req.systems and facts.system not in req.systems:
            return EngineSupport(
                False,
                f"requires {'/'.join(sorted(req.systems))}; this machine runs {facts.system or 'unknown'}",
            )
        if req.min_os_version and (not req.min_os_system or req.min_os_system == facts.system):
            actual = parse_version(facts.os_version)
            if not version_at_least(actual, req.min_os_version):
                wanted = ".".join(str(p) for p in req.min_os_version)
                return EngineSupport(
                    False,
                    f"requires OS version {wanted} or later; found {facts.os_version or 'unknown'}",
                )
        return SUPPORTED

    def is_available(self) -> bool:
        return self.evaluate().supported
