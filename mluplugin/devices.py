"""Device lists exposed to the kubelet and their health tracking."""

from __future__ import annotations

import glob
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from mluplugin.cndev import Device
from mluplugin.constants import (
    ENV_SHARE,
    MLU_CMSG_DEVICE_NAME,
    MLU_COMMU_DEVICE_NAME,
    MLU_IPCM_DEVICE_NAME,
    MLU_MONITOR_DEVICE_NAME,
    MLU_MSGQ_DEVICE_NAME,
    MLU_RPC_DEVICE_NAME,
    MLU_SHARE,
    MLU_SPLIT_DEVICE_NAME,
    MLU_UART_CONSOLE_DEVICE_NAME,
    SRIOV,
)

log = logging.getLogger(__name__)


class Health(str, Enum):
    """Health state reported to the kubelet."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass
class PluginDevice:
    """A device as advertised to the kubelet."""

    id: str
    health: Health = Health.HEALTHY


def host_device_exists_with_prefix(prefix: str) -> bool:
    """Whether any host path starts with ``prefix``."""
    try:
        matches = glob.glob(prefix + "*")
    except (OSError, ValueError) as exc:
        log.warning("failed to know if host device with prefix exists, err: %s", exc)
        return False
    return len(matches) > 0


@dataclass(frozen=True)
class DeviceList:
    """Which auxiliary device nodes exist on the host."""

    has_ctrl_dev: bool = False
    has_msgq_dev: bool = False
    has_rpc_dev: bool = False
    has_cmsg_dev: bool = False
    has_ipcm_dev: bool = False
    has_commu_dev: bool = False
    has_uart_console_dev: bool = False
    has_split_dev: bool = False

    @classmethod
    def from_host(cls) -> "DeviceList":
        """Probe ``/dev`` for the auxiliary device nodes."""
        return cls(
            has_ctrl_dev=host_device_exists_with_prefix(MLU_MONITOR_DEVICE_NAME),
            has_msgq_dev=host_device_exists_with_prefix(MLU_MSGQ_DEVICE_NAME),
            has_rpc_dev=host_device_exists_with_prefix(MLU_RPC_DEVICE_NAME),
            has_cmsg_dev=host_device_exists_with_prefix(MLU_CMSG_DEVICE_NAME),
            has_ipcm_dev=host_device_exists_with_prefix(MLU_IPCM_DEVICE_NAME),
            has_commu_dev=host_device_exists_with_prefix(MLU_COMMU_DEVICE_NAME),
            has_uart_console_dev=host_device_exists_with_prefix(MLU_UART_CONSOLE_DEVICE_NAME),
            has_split_dev=host_device_exists_with_prefix(MLU_SPLIT_DEVICE_NAME),
        )


def generate_fake_devs(
    origin: Device, num: int, sriov_enabled: bool
) -> tuple[list[PluginDevice], dict[str, Device]]:
    """Split one physical device into ``num`` virtual ones."""
    devs: list[PluginDevice] = []
    infos: dict[str, Device] = {}
    for n in range(1, num + 1):
        if sriov_enabled:
            path = f"{origin.path}vf{n}"
            uuid = f"{origin.uuid}--fake--{n}"
        else:
            path = origin.path
            uuid = f"{origin.uuid}-_-{n}"
        infos[uuid] = Device(slot=origin.slot, uuid=uuid, path=path)
        devs.append(PluginDevice(id=uuid, health=Health.HEALTHY))
    return devs, infos


def get_devices(
    mode: str,
    fake_num: int,
    devices: Iterable[Device],
    memory_of: Callable[[int], int] | None = None,
) -> tuple[list[PluginDevice], dict[str, Device]]:
    """Build the advertised device list and the id-to-device map for ``mode``.

    ``memory_of`` maps a slot to its memory in MiB and is needed in mlu-share mode.
    """
    devs: list[PluginDevice] = []
    infos: dict[str, Device] = {}
    for device in devices:
        if mode == ENV_SHARE:
            if fake_num < 1:
                raise ValueError(f"invalid env-share number {fake_num}")
            fakes, fake_infos = generate_fake_devs(device, fake_num, False)
            devs.extend(fakes)
            infos.update(fake_infos)
            infos[device.uuid] = device
        elif mode == SRIOV:
            device.enable_sriov(fake_num)
            fakes, fake_infos = generate_fake_devs(device, fake_num, True)
            devs.extend(fakes)
            infos.update(fake_infos)
        elif mode == MLU_SHARE:
            if memory_of is None:
                raise ValueError("mlu-share mode needs the device memory")
            count = memory_of(device.slot) // 1024
            fakes, fake_infos = generate_fake_devs(device, count, False)
            devs.extend(fakes)
            infos.update(fake_infos)
        else:
            infos[device.uuid] = device
            devs.append(PluginDevice(id=device.uuid, health=Health.HEALTHY))
    return devs, infos


def device_exists(devs: Sequence[PluginDevice], device_id: str) -> bool:
    """Whether a device with ``device_id`` is in ``devs``."""
    return any(dev.id == device_id for dev in devs)


def watch_health(
    devices: Iterable[Device],
    probe: Callable[[Device], int],
    stop,
    interval: float = 1.0,
) -> Iterator[PluginDevice]:
    """Yield health changes of ``devices`` until ``stop`` is set.

    ``probe`` returns the card health code; 0 or an exception means unhealthy.
    """
    watched = list(devices)
    unhealthy: set[str] = set()
    while not stop.is_set():
        for device in watched:
            try:
                code = probe(device)
            except Exception:
                log.warning(
                    "Failed to get Device %s healthy status, set it as unhealthy",
                    device.uuid,
                )
                code = 0
            if code == 0 and device.uuid not in unhealthy:
                unhealthy.add(device.uuid)
                yield PluginDevice(id=device.uuid, health=Health.UNHEALTHY)
            elif device.uuid in unhealthy:
                unhealthy.discard(device.uuid)
                yield PluginDevice(id=device.uuid, health=Health.HEALTHY)
        if stop.wait(interval):
            break