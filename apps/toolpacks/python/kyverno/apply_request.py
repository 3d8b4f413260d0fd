"""``kyverno.apply.request``: apply policy sources to explicitly queried resources."""

from __future__ import annotations

from typing import Any

from scancore.cancellation import current_token
from scancore.schemas import ApplyRequest

from . import runtime

# Older clients send the path-oriented field names.
_ALIASES = {"policyPaths": "policySources", "kubeconfigPath": "targetCredential"}


def run(payload: dict[str, Any]) -> dict[str, Any]:
    normalised = dict(payload)
    for legacy, current in _ALIASES.items():
        if legacy in normalised:
            value = normalised.pop(legacy)
            normalised.setdefault(current, value)
    if not normalised.get("targetCredential"):
        normalised.pop("targetCredential", None)

    request = ApplyRequest.parse(normalised)
    response = runtime.engine().apply(request, cancel=current_token())
    return response.to_dict()
