"""Content fingerprint of the Dex ConfigMap, used to roll the deployment."""

import hashlib
import json
from typing import Any


def fingerprint(config_map: dict[str, Any] | None) -> str | None:
    """
    Digest of a ConfigMap's content.

    Only ``data`` and ``binaryData`` are hashed, in a canonical JSON form, so
    server-managed metadata never changes the result.

    Returns:
        Hex sha256 digest, or None when the ConfigMap does not exist yet
    """
    if config_map is None:
        return None
    content = {
        "data": config_map.get("data") or {},
        "binaryData": config_map.get("binaryData") or {},
    }
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()
