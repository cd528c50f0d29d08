"""Helpers over Kubernetes pod and node objects in their JSON form."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping

from mluplugin.constants import (
    MLU_MEM_LOCK,
    MLU_MEM_RESOURCE_ASSIGNED,
    MLU_MEM_RESOURCE_ASSUME_TIME,
    MLU_MEM_RESOURCE_NAME,
    MLU_MEM_SPLIT_INDEX,
    MLU_RESOURCE_COUNT,
)

log = logging.getLogger(__name__)

_UINT = re.compile(r"[0-9]+")
_INT = re.compile(r"[+-]?[0-9]+")
_UINT64_MAX = 2**64 - 1


def _metadata(pod: Mapping) -> Mapping:
    return pod.get("metadata") or {}


def _annotations(pod: Mapping) -> Mapping:
    return _metadata(pod).get("annotations") or {}


def _uses_mlu_memory(container: Mapping) -> bool:
    limits = (container.get("resources") or {}).get("limits") or {}
    return MLU_MEM_RESOURCE_NAME in limits


def requests_mlu_memory(pod: Mapping) -> bool:
    """Whether any regular container of ``pod`` limits MLU memory."""
    containers = (pod.get("spec") or {}).get("containers") or []
    return any(_uses_mlu_memory(c) for c in containers)


def is_mlu_memory_assumed_pod(pod: Mapping) -> bool:
    """Whether ``pod`` was assumed by the scheduler but not yet assigned memory."""
    if not requests_mlu_memory(pod):
        return False
    annotations = _annotations(pod)
    if MLU_MEM_RESOURCE_ASSUME_TIME not in annotations:
        return False
    return annotations.get(MLU_MEM_RESOURCE_ASSIGNED) == "false"


def assume_time_from_annotation(pod: Mapping) -> int:
    """The assume timestamp of ``pod``, or 0 when absent or malformed."""
    value = _annotations(pod).get(MLU_MEM_RESOURCE_ASSUME_TIME)
    if value is None:
        return 0
    if not _UINT.fullmatch(value) or int(value) > _UINT64_MAX:
        log.warning("Failed to parse assume Timestamp %s", value)
        return 0
    return int(value)


def index_from_annotation(pod: Mapping) -> int:
    """The split device index recorded on ``pod``; ValueError if missing or bad."""
    annotations = _annotations(pod)
    if MLU_MEM_SPLIT_INDEX not in annotations:
        raise ValueError(f"pod annotation {MLU_MEM_SPLIT_INDEX} not found")
    value = annotations[MLU_MEM_SPLIT_INDEX]
    if not _INT.fullmatch(value):
        raise ValueError(f"strconv value {value}, invalid syntax")
    index = int(value)
    if index < 0:
        raise ValueError(f"index {index} less than 0")
    return index


def container_count_with_mlu(pod: Mapping) -> int:
    """Number of init and regular containers of ``pod`` that limit MLU memory."""
    spec = pod.get("spec") or {}
    metadata = _metadata(pod)
    count = 0
    for container in spec.get("initContainers") or []:
        if _uses_mlu_memory(container):
            count += 1
            log.info(
                "namespace %s pod %s init container %s uses mlu-mem, just allocate "
                "the mlu and ignore memory limit",
                metadata.get("namespace"),
                metadata.get("name"),
                container.get("name"),
            )
    count += sum(1 for c in spec.get("containers") or [] if _uses_mlu_memory(c))
    return count


def unique_pods(pods: Iterable[Mapping]) -> list[Mapping]:
    """Drop pods whose UID was already seen, keeping first occurrences."""
    seen: set = set()
    result = []
    for pod in pods:
        uid = _metadata(pod).get("uid")
        if uid in seen:
            continue
        seen.add(uid)
        result.append(pod)
    return result


def candidate_pods(pods: Iterable[Mapping]) -> list[Mapping]:
    """Assumed MLU-memory pods, oldest assume time first."""
    candidates = [pod for pod in pods if is_mlu_memory_assumed_pod(pod)]
    return sorted(candidates, key=assume_time_from_annotation)


def mlu_count_patch(count: int) -> bytes:
    """Strategic-merge patch recording the MLU count on the node."""
    patch = {"metadata": {"annotations": {MLU_RESOURCE_COUNT: str(count)}}}
    return json.dumps(patch, separators=(",", ":")).encode()


def release_node_lock(annotations: Mapping[str, str] | None) -> dict[str, str] | None:
    """Node annotations with the memory lock removed.

    Returns None when the lock is already released and no update is needed.
    """
    if annotations is None:
        return {}
    if MLU_MEM_LOCK not in annotations:
        log.info("Lock is released, No Need to update node")
        return None
    log.info("node lock timestamp %s", annotations[MLU_MEM_LOCK])
    return {key: value for key, value in annotations.items() if key != MLU_MEM_LOCK}