"""Allocation responses and device bookkeeping of the MLU device plugin."""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from mluplugin.allocator import AllocationError, Allocator
from mluplugin.cndev import Device
from mluplugin.cntopo import CntopoError
from mluplugin.constants import (
    MLU_CMSG_DEVICE_NAME,
    MLU_COMMU_DEVICE_NAME,
    MLU_DEVICE_NAME,
    MLU_IPCM_DEVICE_NAME,
    MLU_LINK_POLICY_UNSATISFIED,
    MLU_MEM_RESOURCE_NAME,
    MLU_MEM_SPLIT_ENABLE,
    MLU_MEM_SPLIT_INDEX,
    MLU_MEM_SPLIT_LIMIT,
    MLU_MONITOR_DEVICE_NAME,
    MLU_MSGQ_DEVICE_NAME,
    MLU_RESOURCE_COUNT,
    MLU_RPC_DEVICE_NAME,
    MLU_RPMSG_DIR,
    MLU_SHARE,
    MLU_SPLIT_DEVICE_NAME,
    MLU_UART_CONSOLE_DEVICE_NAME,
    RETRIES,
    SERVER_SOCK,
    SRIOV,
    TOPOLOGY_AWARE,
)
from mluplugin.devices import DeviceList, Health, PluginDevice
from mluplugin.options import Options

log = logging.getLogger(__name__)

_DEVICE_INDEX = re.compile(re.escape(MLU_DEVICE_NAME) + r"([+-]?[0-9]+)")
_RESOURCE_PREFIX = "cambricon.com/"


@dataclass
class Mount:
    """A host path mounted into the container."""

    container_path: str
    host_path: str
    read_only: bool = False


@dataclass
class DeviceSpec:
    """A host device node exposed inside the container."""

    container_path: str
    host_path: str
    permissions: str = "rw"


@dataclass
class ContainerAllocateResponse:
    """What one container receives: environment, mounts and device nodes."""

    envs: dict[str, str] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    devices: list[DeviceSpec] = field(default_factory=list)

    def add_device(self, host_path: str, container_path: str) -> None:
        """Expose ``host_path`` at ``container_path`` with read-write access."""
        self.devices.append(
            DeviceSpec(container_path=container_path, host_path=host_path, permissions="rw")
        )


def resource_name_for(model: str, enable_device_type: bool, mode: str) -> str:
    """Name of the extended resource the plugin registers with the kubelet."""
    resource_name = MLU_RESOURCE_COUNT
    if enable_device_type:
        if not model:
            raise ValueError("device type enabled, but got empty device model from cndev")
        lowered = model.lower()
        if lowered == "mlu270-x5k":
            resource_name = _RESOURCE_PREFIX + lowered
        else:
            resource_name = _RESOURCE_PREFIX + lowered.split("-")[0]
    if mode == MLU_SHARE:
        resource_name = MLU_MEM_RESOURCE_NAME
    return resource_name


def link_policy_annotation(
    annotations: Mapping[str, str] | None,
    size: int,
    policy: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Node annotations recording (or clearing, when size is 0) an unsatisfied link policy."""
    result = dict(annotations or {})
    if size == 0:
        result.pop(MLU_LINK_POLICY_UNSATISFIED, None)
    else:
        stamp = int(time.time()) if timestamp is None else int(timestamp)
        result[MLU_LINK_POLICY_UNSATISFIED] = f"{size}-{policy}-{stamp}"
    return result


class MLUDevicePlugin:
    """State of the device plugin: advertised devices and how they are handed out."""

    def __init__(
        self,
        options: Options,
        devs: Sequence[PluginDevice],
        devs_info: Mapping[str, Device],
        device_list: DeviceList | None = None,
        allocator: Allocator | None = None,
        socket: str = SERVER_SOCK,
        on_link_policy_unsatisfied: Callable[[int], None] | None = None,
        retry_delay: float = 0.1,
    ):
        if options.cnmon_path and not PurePosixPath(options.cnmon_path).is_absolute():
            raise ValueError(f"invalid cnmon path: {options.cnmon_path}")
        self.options = options
        self.devs = list(devs)
        self.devs_info = dict(devs_info)
        self.device_list = device_list if device_list is not None else DeviceList()
        self.allocator = allocator
        self.socket = socket
        self.on_link_policy_unsatisfied = on_link_policy_unsatisfied
        self.retry_delay = retry_delay

    def preferred_allocation_available(self) -> bool:
        """Whether the kubelet may ask for a preferred allocation."""
        return self.options.mode == TOPOLOGY_AWARE

    def prepare_response(self, uuids: Sequence[str]) -> ContainerAllocateResponse:
        """Mounts and device nodes for a container receiving ``uuids``."""
        resp = ContainerAllocateResponse()
        resp.mounts.append(Mount(container_path=MLU_RPMSG_DIR, host_path=MLU_RPMSG_DIR))
        if self.options.cnmon_path:
            resp.mounts.append(
                Mount(
                    container_path=self.options.cnmon_path,
                    host_path=self.options.cnmon_path,
                    read_only=True,
                )
            )
        dl = self.device_list
        if dl.has_split_dev:
            resp.add_device(MLU_SPLIT_DEVICE_NAME, MLU_SPLIT_DEVICE_NAME)

        devpaths = self.uuid_to_path(uuids)

        if dl.has_ctrl_dev:
            resp.add_device(MLU_MONITOR_DEVICE_NAME, MLU_MONITOR_DEVICE_NAME)

        for position, devpath in enumerate(devpaths):
            if self.options.mode == SRIOV:
                vfid = devpath.split(MLU_DEVICE_NAME)[1]
                if dl.has_commu_dev:
                    resp.add_device(
                        MLU_COMMU_DEVICE_NAME + vfid, f"{MLU_COMMU_DEVICE_NAME}{position}"
                    )
                resp.add_device(devpath, f"{MLU_DEVICE_NAME}{position}")
                continue

            match = _DEVICE_INDEX.match(devpath)
            if match is None:
                log.warning("Failed to get device index for device path %s", devpath)
                continue
            index = int(match.group(1))
            if dl.has_msgq_dev:
                resp.add_device(
                    f"{MLU_MSGQ_DEVICE_NAME}:{index}", f"{MLU_MSGQ_DEVICE_NAME}:{position}"
                )
            if dl.has_rpc_dev:
                resp.add_device(
                    f"{MLU_RPC_DEVICE_NAME}:{index}", f"{MLU_RPC_DEVICE_NAME}:{position}"
                )
            if dl.has_cmsg_dev:
                resp.add_device(
                    f"{MLU_CMSG_DEVICE_NAME}{index}", f"{MLU_CMSG_DEVICE_NAME}{position}"
                )
            if dl.has_commu_dev:
                resp.add_device(
                    f"{MLU_COMMU_DEVICE_NAME}{index}", f"{MLU_COMMU_DEVICE_NAME}{position}"
                )
            if dl.has_ipcm_dev:
                resp.add_device(
                    f"{MLU_IPCM_DEVICE_NAME}{index}", f"{MLU_IPCM_DEVICE_NAME}{position}"
                )
            if dl.has_uart_console_dev and self.options.enable_console:
                resp.add_device(
                    f"{MLU_UART_CONSOLE_DEVICE_NAME}{index}",
                    f"{MLU_UART_CONSOLE_DEVICE_NAME}{position}",
                )
            resp.add_device(devpath, f"{MLU_DEVICE_NAME}{position}")
        return resp

    def device_uuid_by_index(self, index: int) -> str | None:
        """UUID of the first device in ``index``'s slot, or None."""
        return next(
            (uuid for uuid, info in self.devs_info.items() if info.slot == index), None
        )

    def device_index_by_uuid(self, uuid: str) -> int | None:
        """Slot of the device with ``uuid``, or None."""
        info = self.devs_info.get(uuid)
        return None if info is None else info.slot

    def uuid_to_path(self, uuids: Iterable[str]) -> list[str]:
        """Host device paths of ``uuids``; KeyError for an unknown id."""
        return [self._info(uuid).path for uuid in uuids]

    def slots(self, ids: Iterable[str]) -> list[int]:
        """Slots of the devices with ``ids``; KeyError for an unknown id."""
        return [self._info(device_id).slot for device_id in ids]

    def _info(self, uuid: str) -> Device:
        try:
            return self.devs_info[uuid]
        except KeyError:
            raise KeyError(f"unknown device {uuid}") from None

    def _update_link_annotation(self, size: int) -> None:
        if self.on_link_policy_unsatisfied is None:
            return
        for attempt in range(RETRIES + 1):
            try:
                self.on_link_policy_unsatisfied(size)
                return
            except Exception as exc:
                if attempt == RETRIES:
                    log.warning("updateNodeMLULinkAnnotation err: %s", exc)
                    return
                log.info(
                    "createAnnotationWithTimestamp err: %s, retried times: %d",
                    exc,
                    attempt + 1,
                )
                time.sleep(self.retry_delay)

    def preferred_allocated_device_uuids(
        self, available: Sequence[int], required: Sequence[int], size: int
    ) -> list[str]:
        """UUIDs of the preferred ``size`` devices among the ``available`` slots."""
        if required:
            log.info("required device slice not empty, ignore it. %s", list(required))
        if self.allocator is None:
            raise AllocationError("no allocator configured")
        log.info("available devs: %s, size %d", list(available), size)
        try:
            slots = self.allocator.allocate(available, required, size)
        except (AllocationError, CntopoError):
            self._update_link_annotation(size)
            raise
        log.info("preferred devices %s", slots)
        uuids = []
        for slot in slots:
            uuid = self.device_uuid_by_index(slot)
            if uuid is None:
                raise LookupError(f"uuid not found for dev {slot}")
            uuids.append(uuid)
        return uuids

    def preferred_allocation(
        self, requests: Iterable[tuple[Sequence[str], Sequence[str], int]]
    ) -> list[list[str]]:
        """Preferred device ids for each (available ids, must-include ids, size) request."""
        responses = []
        for available_ids, must_include_ids, size in requests:
            available = self.slots(available_ids)
            required = self.slots(must_include_ids)
            responses.append(
                self.preferred_allocated_device_uuids(available, required, int(size))
            )
        return responses

    def split_env(self, uuids: Sequence[str], used_mem: int) -> dict[str, str]:
        """Environment enabling memory split for ``uuids`` with ``used_mem`` MiB."""
        indexes = []
        for uuid in uuids:
            index = self.device_index_by_uuid(uuid)
            if index is None:
                raise LookupError(f"device uuid {uuid} not found")
            indexes.append(str(index))
        return {
            MLU_MEM_SPLIT_ENABLE: "1",
            MLU_MEM_SPLIT_INDEX: ",".join(indexes),
            MLU_MEM_SPLIT_LIMIT: str(used_mem // 1024),
        }

    def cleanup(self) -> None:
        """Remove the plugin socket if it exists."""
        try:
            os.remove(self.socket)
        except FileNotFoundError:
            pass

    def update_health(self, device: PluginDevice) -> list[PluginDevice]:
        """Record the health of ``device`` and return the advertised list."""
        for dev in self.devs:
            if dev.id == device.id:
                dev.health = Health(device.health)
                break
        return list(self.devs)