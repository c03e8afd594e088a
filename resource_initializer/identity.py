from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping


def build_payload(config: Mapping[str, Any] | None) -> str:
    """Serialize the invocation payload exactly as the handler receives it."""
    return json.dumps({"params": {"config": dict(config or {})}}, separators=(",", ":"))


def function_hash(code_hash: str, **properties: Any) -> str:
    """Hash of a deployed function: its image asset hash plus its settings.

    ``properties`` must be synth-time constants (names, sizes, enum names,
    construct paths); unresolved tokens would make the hash unstable.
    """
    canonical = json.dumps(properties, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5((code_hash + canonical).encode("utf-8")).hexdigest()


def identity_token(fn_hash: str, payload: str) -> str:
    return hashlib.md5((fn_hash + payload).encode("utf-8")).hexdigest()


def physical_resource_id(construct_id: str, token: str) -> str:
    return f"{construct_id}-AwsSdkCall-{token}"
