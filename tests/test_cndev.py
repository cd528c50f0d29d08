from unittest import mock

import pytest

from mluplugin.cndev import (
    PCIe,
    Device,
    SriovError,
    read_num_from_file,
    set_sriov_num,
)

PCIE_ID = "0000:03:0f.1"


def _device(sysfs_root):
    return Device(slot=0, pcie=PCIe(domain=0, bus=3, device=15, function=1), sysfs_root=sysfs_root)


@pytest.fixture
def sysfs(tmp_path):
    dev_dir = tmp_path / PCIE_ID
    dev_dir.mkdir()
    (dev_dir / "sriov_totalvfs").write_text("4\n")
    (dev_dir / "sriov_numvfs").write_text("0\n")
    return tmp_path


def test_pcie_id():
    d = Device(slot=0, pcie=PCIe(domain=0, bus=3, device=15, function=1))
    assert d.pcie_id() == "0000:03:0f.1"


def test_pcie_id_wide_fields_not_padded_further():
    d = Device(slot=0, pcie=PCIe(domain=1, bus=0x1A, device=3, function=0))
    assert d.pcie_id() == "0001:1a:03.0"


def test_pcie_id_without_pcie_info():
    with pytest.raises(SriovError):
        Device(slot=0).pcie_id()


def test_read_num_from_file(tmp_path):
    path = tmp_path / "device_plugin_cndev_ut"
    path.write_text("4\n")
    assert read_num_from_file(path) == 4


def test_read_num_from_file_invalid(tmp_path):
    path = tmp_path / "bad"
    path.write_text("four\n")
    with pytest.raises(ValueError):
        read_num_from_file(path)


def test_validate_sriov_num_bounds(sysfs):
    d = _device(sysfs)
    d.validate_sriov_num(4)
    with pytest.raises(SriovError):
        d.validate_sriov_num(5)
    with pytest.raises(SriovError):
        d.validate_sriov_num(0)


def test_set_sriov_num_writes_value(sysfs):
    with mock.patch("mluplugin.cndev.time.sleep") as sleep:
        set_sriov_num(PCIE_ID, 3, sysfs)
    assert read_num_from_file(sysfs / PCIE_ID / "sriov_numvfs") == 3
    assert sleep.call_count == 1


def test_set_sriov_num_unwritable(tmp_path):
    (tmp_path / PCIE_ID / "sriov_numvfs").mkdir(parents=True)
    with mock.patch("mluplugin.cndev.time.sleep"):
        with pytest.raises(SriovError):
            set_sriov_num(PCIE_ID, 2, tmp_path)


def test_enable_sriov_resets_then_sets(sysfs):
    (sysfs / PCIE_ID / "sriov_numvfs").write_text("2\n")
    with mock.patch("mluplugin.cndev.time.sleep") as sleep:
        _device(sysfs).enable_sriov(3)
    assert read_num_from_file(sysfs / PCIE_ID / "sriov_numvfs") == 3
    assert sleep.call_count == 2


def test_enable_sriov_already_enabled(sysfs):
    (sysfs / PCIE_ID / "sriov_numvfs").write_text("2\n")
    with mock.patch("mluplugin.cndev.time.sleep") as sleep:
        _device(sysfs).enable_sriov(2)
    assert sleep.call_count == 0
    assert read_num_from_file(sysfs / PCIE_ID / "sriov_numvfs") == 2


def test_enable_sriov_rejects_too_many(sysfs):
    with pytest.raises(SriovError):
        _device(sysfs).enable_sriov(5)
    assert read_num_from_file(sysfs / PCIE_ID / "sriov_numvfs") == 0