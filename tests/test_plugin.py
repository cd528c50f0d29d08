import pytest

from mluplugin.allocator import AllocationError
from mluplugin.cndev import Device
from mluplugin.constants import (
    MLU_COMMU_DEVICE_NAME,
    MLU_DEVICE_NAME,
    MLU_LINK_POLICY_UNSATISFIED,
    MLU_MEM_RESOURCE_NAME,
    MLU_MEM_SPLIT_ENABLE,
    MLU_MEM_SPLIT_INDEX,
    MLU_MEM_SPLIT_LIMIT,
    MLU_MONITOR_DEVICE_NAME,
    MLU_MSGQ_DEVICE_NAME,
    MLU_RESOURCE_COUNT,
    MLU_RPMSG_DIR,
    MLU_SPLIT_DEVICE_NAME,
    MLU_UART_CONSOLE_DEVICE_NAME,
    MLU_SHARE,
    SRIOV,
    TOPOLOGY_AWARE,
)
from mluplugin.devices import DeviceList, Health, PluginDevice
from mluplugin.options import Options
from mluplugin.plugin import (
    ContainerAllocateResponse,
    DeviceSpec,
    MLUDevicePlugin,
    Mount,
    link_policy_annotation,
    resource_name_for,
)


class FakeAllocator:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def allocate(self, available, required, size):
        self.calls.append((list(available), list(required), size))
        if self.error is not None:
            raise self.error
        return self.result


def _infos():
    return {
        f"MLU-{i}": Device(slot=i, uuid=f"MLU-{i}", path=f"{MLU_DEVICE_NAME}{i}")
        for i in range(4)
    }


def _plugin(options=None, device_list=None, **kwargs):
    infos = _infos()
    devs = [PluginDevice(id=uuid) for uuid in infos]
    return MLUDevicePlugin(options or Options(), devs, infos, device_list, **kwargs)


def test_add_device_uses_rw():
    resp = ContainerAllocateResponse()
    resp.add_device("/dev/a", "/dev/b")
    assert resp.devices == [DeviceSpec(container_path="/dev/b", host_path="/dev/a", permissions="rw")]


def test_preferred_allocation_available_only_in_topology_mode():
    assert _plugin(Options(mode=TOPOLOGY_AWARE)).preferred_allocation_available() is True
    assert _plugin(Options()).preferred_allocation_available() is False


def test_prepare_response_minimal():
    resp = _plugin().prepare_response(["MLU-2", "MLU-0"])
    assert resp.mounts == [Mount(container_path=MLU_RPMSG_DIR, host_path=MLU_RPMSG_DIR)]
    assert [(d.host_path, d.container_path) for d in resp.devices] == [
        (f"{MLU_DEVICE_NAME}2", f"{MLU_DEVICE_NAME}0"),
        (f"{MLU_DEVICE_NAME}0", f"{MLU_DEVICE_NAME}1"),
    ]


def test_prepare_response_with_auxiliary_devices_and_cnmon():
    device_list = DeviceList(
        has_ctrl_dev=True,
        has_msgq_dev=True,
        has_commu_dev=True,
        has_uart_console_dev=True,
        has_split_dev=True,
    )
    options = Options(cnmon_path="/usr/bin/cnmon", enable_console=True)
    resp = _plugin(options, device_list).prepare_response(["MLU-3"])
    assert resp.mounts[1] == Mount("/usr/bin/cnmon", "/usr/bin/cnmon", read_only=True)
    assert [(d.host_path, d.container_path) for d in resp.devices] == [
        (MLU_SPLIT_DEVICE_NAME, MLU_SPLIT_DEVICE_NAME),
        (MLU_MONITOR_DEVICE_NAME, MLU_MONITOR_DEVICE_NAME),
        (f"{MLU_MSGQ_DEVICE_NAME}:3", f"{MLU_MSGQ_DEVICE_NAME}:0"),
        (f"{MLU_COMMU_DEVICE_NAME}3", f"{MLU_COMMU_DEVICE_NAME}0"),
        (f"{MLU_UART_CONSOLE_DEVICE_NAME}3", f"{MLU_UART_CONSOLE_DEVICE_NAME}0"),
        (f"{MLU_DEVICE_NAME}3", f"{MLU_DEVICE_NAME}0"),
    ]


def test_prepare_response_console_needs_option():
    device_list = DeviceList(has_uart_console_dev=True)
    resp = _plugin(Options(), device_list).prepare_response(["MLU-1"])
    assert all(MLU_UART_CONSOLE_DEVICE_NAME not in d.host_path for d in resp.devices)
    assert len(resp.devices) == 1


def test_prepare_response_sriov():
    infos = {"MLU-0--fake--2": Device(slot=0, uuid="MLU-0--fake--2", path=f"{MLU_DEVICE_NAME}0vf2")}
    plugin = MLUDevicePlugin(
        Options(mode=SRIOV),
        [PluginDevice(id="MLU-0--fake--2")],
        infos,
        DeviceList(has_commu_dev=True),
    )
    resp = plugin.prepare_response(["MLU-0--fake--2"])
    assert [(d.host_path, d.container_path) for d in resp.devices] == [
        (f"{MLU_COMMU_DEVICE_NAME}0vf2", f"{MLU_COMMU_DEVICE_NAME}0"),
        (f"{MLU_DEVICE_NAME}0vf2", f"{MLU_DEVICE_NAME}0"),
    ]


def test_prepare_response_skips_unparsable_path():
    infos = {"X": Device(slot=0, uuid="X", path="/dev/other0")}
    plugin = MLUDevicePlugin(Options(), [PluginDevice(id="X")], infos)
    assert plugin.prepare_response(["X"]).devices == []


def test_uuid_index_lookups():
    plugin = _plugin()
    assert plugin.device_uuid_by_index(2) == "MLU-2"
    assert plugin.device_uuid_by_index(9) is None
    assert plugin.device_index_by_uuid("MLU-3") == 3
    assert plugin.device_index_by_uuid("missing") is None


def test_slots_and_paths():
    plugin = _plugin()
    assert plugin.slots(["MLU-1", "MLU-3"]) == [1, 3]
    assert plugin.uuid_to_path(["MLU-0"]) == [f"{MLU_DEVICE_NAME}0"]
    with pytest.raises(KeyError):
        plugin.slots(["missing"])


def test_preferred_allocation_maps_slots_to_uuids():
    allocator = FakeAllocator(result=[2, 3])
    plugin = _plugin(allocator=allocator)
    result = plugin.preferred_allocation([(["MLU-0", "MLU-2", "MLU-3"], [], 2)])
    assert result == [["MLU-2", "MLU-3"]]
    assert allocator.calls == [([0, 2, 3], [], 2)]


def test_preferred_allocation_failure_updates_annotation():
    sizes = []
    plugin = _plugin(
        allocator=FakeAllocator(error=AllocationError("no rings")),
        on_link_policy_unsatisfied=sizes.append,
    )
    with pytest.raises(AllocationError):
        plugin.preferred_allocated_device_uuids([0, 1], [], 2)
    assert sizes == [2]


def test_preferred_allocation_unknown_slot():
    plugin = _plugin(allocator=FakeAllocator(result=[7]))
    with pytest.raises(LookupError):
        plugin.preferred_allocated_device_uuids([0, 7], [], 1)


def test_split_env():
    env = _plugin().split_env(["MLU-1", "MLU-3"], 4096)
    assert env[MLU_MEM_SPLIT_ENABLE] == "1"
    assert env[MLU_MEM_SPLIT_INDEX] == "1,3"
    assert env[MLU_MEM_SPLIT_LIMIT] == "4"
    with pytest.raises(LookupError):
        _plugin().split_env(["nope"], 1024)


def test_cleanup_removes_socket(tmp_path):
    sock = tmp_path / "plugin.sock"
    sock.write_text("")
    plugin = _plugin(socket=str(sock))
    plugin.cleanup()
    assert not sock.exists()
    plugin.cleanup()
    assert not sock.exists()


def test_update_health():
    plugin = _plugin()
    devs = plugin.update_health(PluginDevice(id="MLU-1", health=Health.UNHEALTHY))
    assert [d.health for d in devs] == [
        Health.HEALTHY, Health.UNHEALTHY, Health.HEALTHY, Health.HEALTHY
    ]


def test_relative_cnmon_path_rejected():
    with pytest.raises(ValueError):
        _plugin(Options(cnmon_path="bin/cnmon"))


def test_resource_name_for():
    assert resource_name_for("", False, "default") == MLU_RESOURCE_COUNT
    assert resource_name_for("MLU270-X5K", True, "default") == "cambricon.com/mlu270-x5k"
    assert resource_name_for("MLU370-X8", True, "default") == "cambricon.com/mlu370"
    assert resource_name_for("MLU370-X8", True, MLU_SHARE) == MLU_MEM_RESOURCE_NAME
    with pytest.raises(ValueError):
        resource_name_for("", True, "default")


def test_link_policy_annotation_set_and_clear():
    original = {"other": "x"}
    marked = link_policy_annotation(original, 2, "guaranteed", 123)
    assert marked == {"other": "x", MLU_LINK_POLICY_UNSATISFIED: "2-guaranteed-123"}
    assert original == {"other": "x"}
    assert link_policy_annotation(marked, 0, "guaranteed") == {"other": "x"}