from __future__ import annotations

from typing import Any

from scancore import bundles
from scancore.loader import PolicyLoader


def run(payload: dict[str, Any]) -> dict[str, Any]:
    loader = PolicyLoader()
    entries = []
    for key in bundles.available_bundles():
        policies = loader.load(key)
        entries.append(
            {
                "name": key,
                "policies": [
                    {
                        "name": policy.name,
                        "category": policy.category,
                        "severity": policy.severity,
                        "rules": [rule.name for rule in policy.rules],
                    }
                    for policy in policies
                ],
            }
        )
    return {"bundles": entries}
