"""MLU device descriptions and SR-IOV control through sysfs."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_SYSFS_ROOT = Path("/sys/bus/pci/devices")
_SETTLE_SECONDS = 1.0


class SriovError(RuntimeError):
    """Raised when SR-IOV virtual functions cannot be inspected or configured."""


@dataclass(frozen=True)
class PCIe:
    """PCIe address of a device."""

    domain: int
    bus: int
    device: int
    function: int


@dataclass
class Device:
    """One MLU card as seen by the plugin."""

    slot: int
    uuid: str = ""
    sn: str = ""
    path: str = ""
    mother_board: str = ""
    pcie: PCIe | None = None
    sysfs_root: Path = field(default=DEFAULT_SYSFS_ROOT, repr=False, compare=False)

    def pcie_id(self) -> str:
        """Return the sysfs PCIe id, e.g. ``0000:03:0f.1``."""
        if self.pcie is None:
            raise SriovError("device has no PCIe info")
        p = self.pcie
        return f"{p.domain:04x}:{p.bus:02x}:{p.device:02x}.{p.function:x}"

    def validate_sriov_num(self, num: int) -> None:
        """Check that ``num`` virtual functions are supported by the device."""
        pcie_id = self.pcie_id()
        maximum = read_num_from_file(Path(self.sysfs_root) / pcie_id / "sriov_totalvfs")
        if num < 1 or num > maximum:
            raise SriovError(
                f"invalid sriov number {num}, maximum: {maximum}, minimum: 1"
            )

    def enable_sriov(self, num: int) -> None:
        """Configure the device to expose ``num`` virtual functions."""
        self.validate_sriov_num(num)
        pcie_id = self.pcie_id()
        current = read_num_from_file(Path(self.sysfs_root) / pcie_id / "sriov_numvfs")
        if current == num:
            log.info("sriov already enabled, pass")
            return
        if current != 0:
            try:
                set_sriov_num(pcie_id, 0, self.sysfs_root)
            except SriovError as exc:
                raise SriovError(
                    f"failed to set sriov num to 0, pcie: {pcie_id} now: {current}"
                ) from exc
        set_sriov_num(pcie_id, num, self.sysfs_root)


def read_num_from_file(path) -> int:
    """Read a decimal integer from a file, ignoring surrounding newlines."""
    text = Path(path).read_text().strip("\n")
    return int(text)


def set_sriov_num(pcie_id: str, num: int, sysfs_root=DEFAULT_SYSFS_ROOT) -> None:
    """Write the number of virtual functions and verify it took effect."""
    path = Path(sysfs_root) / pcie_id / "sriov_numvfs"
    try:
        path.write_text(f"{num}\n")
    except OSError as exc:
        raise SriovError(f"echo {num} to file {path}, err: {exc}") from exc
    time.sleep(_SETTLE_SECONDS)
    try:
        got = read_num_from_file(path)
    except (OSError, ValueError) as exc:
        raise SriovError(
            f"the number of VFs is not expected. err: {exc}, expected: {num}"
        ) from exc
    if got != num:
        raise SriovError(
            f"the number of VFs is not expected. got: {got}, expected: {num}"
        )