"""Boundary parsing of manifest-style policy mappings.

Turns already-decoded manifest values (``{"major": 17, "rolling": "minor"}``,
``{"version": "17.0.6"}``) into policies and dependency specs. A policy
without an explicit major is rejected here so it never reaches the resolver.
"""

from typing import Any, Mapping, Optional

from constants import RollingModes
from errors import PolicyValidationError

from .models import DependencySpec, Fixed, RollingMajor, RollingMinor, RollingPatch, UpdatePolicy, Version


def _as_int(data: Mapping[str, Any], key: str, context: str) -> Optional[int]:
    """Read an optional non-negative int (ints or digit strings)."""
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise PolicyValidationError(f"{context}: '{key}' must be an integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise PolicyValidationError(f"{context}: '{key}' must be a non-negative integer, got {value!r}")
    return value


def _rolling_mode(raw: Any, context: str) -> RollingModes:
    """Normalize the 'rolling' keyword; absent means fixed."""
    if raw is None or raw is False:
        return RollingModes.FIXED
    token = str(raw).strip().lower()
    if token in ("none", "no", "exact"):
        return RollingModes.FIXED
    try:
        return RollingModes(token)
    except ValueError as e:
        allowed = ", ".join(m.value for m in RollingModes)
        raise PolicyValidationError(f"{context}: unknown rolling mode '{raw}' (expected one of {allowed})") from e


def policy_from_mapping(data: Mapping[str, Any], current: Optional[Version] = None,
                        context: str = "policy") -> UpdatePolicy:
    """Build an UpdatePolicy from a manifest mapping.

    Accepted keys: ``version`` (full "x.y.z"), ``major``, ``minor``, ``patch``
    and ``rolling`` (fixed/patch/minor/major).

    Args:
        data: Decoded manifest value.
        current: Currently active version, used to fill a missing minor for
            rolling-patch policies when it shares the major.
        context: Label used in error messages.

    Returns:
        UpdatePolicy: The parsed policy.

    Raises:
        PolicyValidationError: On a missing major or malformed values.
    """
    if not isinstance(data, Mapping):
        raise PolicyValidationError(f"{context}: expected a mapping, got {type(data).__name__}")

    mode = _rolling_mode(data.get("rolling"), context)
    full = data.get("version")
    if full is not None:
        parsed = Version.parse(str(full))
        major, minor, patch = parsed.major, parsed.minor, parsed.patch
    else:
        major = _as_int(data, "major", context)
        minor = _as_int(data, "minor", context)
        patch = _as_int(data, "patch", context)

    if major is None:
        raise PolicyValidationError(f"{context}: an explicit major version is required")

    if mode is RollingModes.MAJOR:
        return RollingMajor(major)
    if mode is RollingModes.MINOR:
        return RollingMinor(major)
    if mode is RollingModes.PATCH:
        if minor is None:
            minor = current.minor if current is not None and current.major == major else 0
        return RollingPatch(major, minor)
    if minor is None or patch is None:
        raise PolicyValidationError(f"{context}: a fixed policy needs major, minor and patch")
    return Fixed(major, minor, patch)


def spec_from_mapping(name: str, data: Any, current: Optional[Version] = None) -> DependencySpec:
    """Build a DependencySpec for ``name``.

    ``data`` may be a mapping (see ``policy_from_mapping``, plus an optional
    ``minimum`` version string) or a plain "x.y.z" string meaning fixed.
    """
    context = f"dependency '{name}'"
    if isinstance(data, str):
        data = {"version": data}
    policy = policy_from_mapping(data, current=current, context=context)
    minimum = data.get("minimum") if isinstance(data, Mapping) else None
    return DependencySpec(name=name, policy=policy, minimum=Version.parse(minimum) if minimum else None)


def specs_from_manifest(deps: Mapping[str, Any], current: Optional[Mapping[str, Version]] = None) -> list:
    """Build specs for a whole ``{name: policy}`` table, sorted by name."""
    current = current or {}
    return [spec_from_mapping(name, deps[name], current.get(name)) for name in sorted(deps)]
