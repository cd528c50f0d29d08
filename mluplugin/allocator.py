"""Choosing which MLU devices a container receives, based on MLULink topology."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence

from mluplugin.cndev import Device
from mluplugin.cntopo import Cntopo, Ring
from mluplugin.constants import BEST_EFFORT, RESTRICTED

log = logging.getLogger(__name__)


class AllocationError(RuntimeError):
    """Raised when no device set satisfies the requested size and policy."""


def _contains_all(group: Iterable[int], devices: Iterable[int]) -> bool:
    members = set(group)
    return all(device in members for device in devices)


def _split_by(available: Sequence[int], devs: Mapping[str, Device], key) -> list[list[int]]:
    wanted = set(available)
    buckets: dict[str, list[int]] = {}
    for dev in devs.values():
        if dev.slot in wanted:
            buckets.setdefault(key(dev), []).append(dev.slot)
    log.info("available devices separated: %s", buckets)
    result = sorted(buckets.values(), key=len)
    log.info("sorted available devices separated: %s", result)
    return result


def split_by_boards(available: Sequence[int], devs: Mapping[str, Device]) -> list[list[int]]:
    """Group available slots by board serial number, smallest group first."""
    return _split_by(available, devs, lambda dev: dev.sn)


def split_by_mother_boards(
    available: Sequence[int], devs: Mapping[str, Device]
) -> list[list[int]]:
    """Group available slots by mother board serial, smallest group first."""
    return _split_by(available, devs, lambda dev: dev.mother_board)


def _take_from(pools: Iterable[Iterable[int]], size: int) -> list[int] | None:
    """Fill ``size`` distinct devices from the pools in order, or None if short."""
    allocated: list[int] = []
    for pool in pools:
        for device in pool:
            if device in allocated:
                continue
            allocated.append(device)
            if len(allocated) == size:
                return allocated
    return None


def _best_candidates(rings: list[Ring]) -> list[Ring]:
    best = rings[0].non_conflict_ring_num
    return [ring for ring in rings if ring.non_conflict_ring_num == best] if not any(
        ring.non_conflict_ring_num < best for ring in rings
    ) else rings[: next(i for i, r in enumerate(rings) if r.non_conflict_ring_num < best)]


class Allocator(ABC):
    """Picks ``size`` devices out of the available slots."""

    def __init__(self, policy: str, devs: Mapping[str, Device], topology=None):
        self.policy = policy
        self.devs = devs
        self.topology = topology if topology is not None else Cntopo()

    def _sorted_rings(self, available: Sequence[int], size: int) -> list[Ring]:
        rings = self.topology.get_rings(available, size)
        return sorted(rings, key=lambda ring: ring.non_conflict_ring_num, reverse=True)

    def _check_no_rings(self, size: int, message: str) -> None:
        log.info("found no rings")
        if self.policy != BEST_EFFORT and not self._size_always_fails_to_form_ring(size):
            raise AllocationError(message)

    @abstractmethod
    def _size_always_fails_to_form_ring(self, size: int) -> bool:
        """Whether no ring of ``size`` devices can exist on this hardware."""

    @abstractmethod
    def allocate(self, available, required, size) -> list[int]:
        """Return the slots to allocate; raise AllocationError if impossible."""


class DefaultAllocator(Allocator):
    """Allocator for cards without a special interconnect layout."""

    def _size_always_fails_to_form_ring(self, size: int) -> bool:
        return size % 2 == 1

    def allocate(self, available, required, size) -> list[int]:
        available = list(available)
        rings = self._sorted_rings(available, size)
        if not rings:
            self._check_no_rings(size, f"mode {self.policy} found no rings")
            if size > len(available):
                raise AllocationError(
                    f"requested {size} devices, only {len(available)} available"
                )
            return available[:size]
        return list(rings[0].ordinals)


class SpiderAllocator(Allocator):
    """Allocator for MLU290 and MLU370-M8 machines, preferring one mother board."""

    def _size_always_fails_to_form_ring(self, size: int) -> bool:
        return size <= 1 or size > 8

    def allocate(self, available, required, size) -> list[int]:
        available = list(available)
        rings = self._sorted_rings(available, size)
        mother_boards = split_by_mother_boards(available, self.devs)

        if not rings:
            self._check_no_rings(size, f"mode {self.policy} found no rings")
            allocated = _take_from(mother_boards, size)
            if allocated is None:
                raise AllocationError("finished allocating from all mother boards, not enough devices")
            return allocated

        best = rings[0].non_conflict_ring_num
        if self.policy == RESTRICTED and size in (2, 4) and best < size:
            raise AllocationError(
                f"mode {self.policy}, max non-conflict ring num {best}"
            )

        candidates = _best_candidates(rings)
        for board in mother_boards:
            for candidate in candidates:
                if _contains_all(board, candidate.ordinals):
                    return list(candidate.ordinals)
        return list(candidates[0].ordinals)


class BoardAllocator(Allocator):
    """Allocator for MLU370-X8 machines: two cards per board, two CPU groups."""

    def __init__(self, policy: str, devs: Mapping[str, Device], topology=None, groups=None):
        super().__init__(policy, devs, topology)
        if groups is not None and (len(groups) != 2 or len(groups[0]) != 8):
            log.warning("unexpected groups: %s", groups)
            groups = None
        self.groups = [list(group) for group in groups] if groups is not None else None

    def _size_always_fails_to_form_ring(self, size: int) -> bool:
        return size > 8 or size <= 1 or size % 2 == 1

    def _filter_available_by_group(self, available: Sequence[int]) -> list[list[int]] | None:
        if self.groups is None or len(self.groups) != 2:
            log.info("failed to filter %s by group %s", available, self.groups)
            return None
        first, second = [], []
        for dev in available:
            if dev in self.groups[0]:
                first.append(dev)
            elif dev in self.groups[1]:
                second.append(dev)
            else:
                log.info("dev %s not in groups %s, ignore when allocating", dev, self.groups)
                return None
        if len(first) > len(second):
            first, second = second, first
        return [first, second]

    def allocate(self, available, required, size) -> list[int]:
        available = list(available)
        rings = self._sorted_rings(available, size)
        boards = split_by_boards(available, self.devs)
        groups = self._filter_available_by_group(available)
        log.info("available devs filtered by group: %s", groups)

        if not rings:
            self._check_no_rings(size, f"mode {self.policy} found no rings for size {size}")
            pools: list[list[int]] = []
            if groups is None:
                pools.extend(boards)
            else:
                for group in groups:
                    pools.extend(board for board in boards if _contains_all(group, board))
            pools.append(available)
            allocated = _take_from(pools, size)
            if allocated is None:
                raise AllocationError("allocated from all available devices, not enough devices")
            return allocated

        best = rings[0].non_conflict_ring_num
        if self.policy == RESTRICTED and size == 2 and best < 2:
            raise AllocationError(
                f"mode {self.policy}, max non-conflict ring num {best}"
            )

        candidates = _best_candidates(rings)
        for group in groups or []:
            for candidate in candidates:
                if _contains_all(group, candidate.ordinals):
                    return list(candidate.ordinals)
        return list(candidates[0].ordinals)


def new_allocator(policy, devs, model, topology=None, groups=None) -> Allocator:
    """Choose the allocator suited to the card ``model``."""
    if "MLU290" in model or model == "MLU370-M8":
        return SpiderAllocator(policy, devs, topology)
    if model == "MLU370-X8":
        return BoardAllocator(policy, devs, topology, groups)
    return DefaultAllocator(policy, devs, topology)