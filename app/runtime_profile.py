from __future__ import annotations

from collections.abc import Mapping
import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool = False, environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    raw = env.get(name)
    if raw is None:
        return default
    return _as_bool(raw)


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    return env_flag("SF_REQUIRE_TRUESTACK", False, environ)


def trust_tenant_header(environ: Mapping[str, str] | None = None) -> bool:
    """``x-tenant-id`` is only honoured when the deployment opts in."""
    return env_flag("SF_TRUST_TENANT_HEADER", True, environ)
