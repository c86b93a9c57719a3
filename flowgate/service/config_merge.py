from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from flowgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfigConflict:
    key: str
    local_value: Any
    upstream_value: Any


def _serialize(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class ConfigMerger:
    """Overlay a locally built chatbot config on the upstream one.

    Local values win on collisions. Conflicts are logged for observability and
    never change the merge result.
    """

    def detect_conflicts(
        self,
        local: Mapping[str, Any],
        upstream: Mapping[str, Any],
        tenant_label: str,
    ) -> List[ConfigConflict]:
        conflicts: List[ConfigConflict] = []
        for key in local.keys() & upstream.keys():
            local_value = local[key]
            upstream_value = upstream[key]
            if _serialize(local_value) == _serialize(upstream_value):
                continue
            conflicts.append(ConfigConflict(key, local_value, upstream_value))
            logger.warning(
                "config_conflict",
                tenant=tenant_label,
                key=key,
                local_value=_serialize(local_value),
                upstream_value=_serialize(upstream_value),
                resolution="local",
            )
        return sorted(conflicts, key=lambda conflict: conflict.key)

    def merge(
        self,
        local: Mapping[str, Any],
        upstream: Mapping[str, Any],
        tenant_label: str,
    ) -> Dict[str, Any]:
        conflicts = self.detect_conflicts(local, upstream, tenant_label)
        merged = {**upstream, **local}
        logger.info(
            "config_merged",
            tenant=tenant_label,
            conflicts=len(conflicts),
            keys=sorted(merged.keys()),
        )
        return merged
