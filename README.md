# mluplugin

Building blocks for a Kubernetes device plugin that exposes Cambricon MLU
accelerators to containers. The package covers the parts of a plugin that
decide *what* a container gets; it works on plain Python values and leaves
the transport (gRPC, the Kubernetes API) to the caller.

## Modules

- **`mluplugin.constants`**: device node paths, annotation keys, resource
  names, the plugin modes (`default`, `sriov`, `env-share`, `topology-aware`,
  `mlu-share`) and the MLULink policies (`best-effort`, `restricted`,
  `guaranteed`).
- **`mluplugin.cndev`**: the `Device` record (slot, UUID, board serial,
  mother-board serial, device path, optional `PCIe` address).
  `Device.pcie_id()` formats the address as `0000:03:0f.1`;
  `Device.validate_sriov_num()` and `Device.enable_sriov()` check and set the
  number of SR-IOV virtual functions through the `sriov_totalvfs` and
  `sriov_numvfs` files under the sysfs root (default
  `/sys/bus/pci/devices`). `set_sriov_num` writes the count, waits a second
  and reads it back; `read_num_from_file` reads a decimal number from a file.
  Failures raise `SriovError`.
- **`mluplugin.cntopo`**: `Cntopo.get_rings(available, size)` writes a
  request file, runs `cntopo find` and returns `Ring` objects (ordinals and
  non-conflict ring count). `build_input` and `parse_output` expose the two
  JSON formats on their own. Failures raise `CntopoError`.
- **`mluplugin.allocator`**: `DefaultAllocator`, `SpiderAllocator` (MLU290
  and MLU370-M8 machines, preferring one mother board) and `BoardAllocator`
  (MLU370-X8 machines, preferring one board and one CPU group) implement
  `allocate(available, required, size)` under the configured policy.
  `new_allocator(policy, devs, model, topology, groups)` picks one by card
  model. `split_by_boards` and `split_by_mother_boards` group available slots,
  smallest group first. Unsatisfiable requests raise `AllocationError`.
- **`mluplugin.devices`**: `get_devices` builds the advertised
  `PluginDevice` list and the id-to-`Device` map for a mode (one entry per
  card, `env-share` and `mlu-share` fakes, or SR-IOV virtual functions);
  `generate_fake_devs` splits one card. `DeviceList.from_host()` probes
  `/dev` for auxiliary device nodes. `watch_health(devices, probe, stop,
  interval)` is a generator yielding a `PluginDevice` each time a card moves
  between `Health.HEALTHY` and `Health.UNHEALTHY`, until the `stop` event is
  set. `device_exists` looks up an id.
- **`mluplugin.podutils`**: helpers over pods and nodes in their JSON
  (dictionary) form: `requests_mlu_memory`, `is_mlu_memory_assumed_pod`,
  `assume_time_from_annotation`, `index_from_annotation`,
  `container_count_with_mlu`, `candidate_pods` (assumed pods, oldest first),
  `unique_pods`, `mlu_count_patch` (strategic-merge patch bytes) and
  `release_node_lock` (annotations without the memory lock, or `None` when
  nothing needs updating).
- **`mluplugin.plugin`**: `MLUDevicePlugin` holds the advertised devices and
  turns a list of UUIDs into a `ContainerAllocateResponse` of `Mount` and
  `DeviceSpec` entries (`prepare_response`). It also computes preferred
  allocations (`preferred_allocation`, `preferred_allocated_device_uuids`),
  retrying an optional `on_link_policy_unsatisfied` callback when allocation
  fails, builds the memory-split environment (`split_env`), records health
  changes (`update_health`) and removes its socket file (`cleanup`).
  `resource_name_for` derives the extended resource name, and
  `link_policy_annotation` builds node annotations that record or clear an
  unsatisfied link policy.
- **`mluplugin.options`**: `parse_flags(argv, environ)` reads the plugin
  flags (`--mode`, `--mlulink-policy`, `--virtualization-num`,
  `--disable-health-check`, `--node-name`, `--enable-console`,
  `--enable-device-type`, `--cnmon-path`, `--socket-path`) and the
  `VIRTUALIZATION_NUM`, `NODE_NAME` and `DP_DISABLE_HEALTHCHECKS` variables
  into a frozen `Options` value. Invalid arguments exit with status 1.

## Example: choosing cards on a board machine

```python
from mluplugin.allocator import BoardAllocator
from mluplugin.cndev import Device
from mluplugin.cntopo import Ring


class FixedRings:
    def get_rings(self, available, size):
        return [Ring(ordinals=[0, 1], non_conflict_ring_num=2)]


devs = {
    f"MLU-{slot}": Device(slot=slot, uuid=f"MLU-{slot}", sn=f"sn-{slot // 2}")
    for slot in range(16)
}
groups = [list(range(8)), list(range(8, 16))]
allocator = BoardAllocator("best-effort", devs, FixedRings(), groups)
print(allocator.allocate([0, 1, 4], [], 2))  # [0, 1]
```

Any object with a `get_rings(available, size)` method returning `Ring`
objects can stand in for `Cntopo`.

## Example: the resource name

```python
from mluplugin.plugin import resource_name_for

print(resource_name_for("MLU370-X8", True, "default"))  # cambricon.com/mlu370
print(resource_name_for("MLU370-X8", True, "mlu-share"))  # cambricon.com/mlumem
```

## What the package does not do

- It does not query the MLU driver library: device counts, models, memory,
  UUIDs, serials and health codes must be supplied by the caller as `Device`
  records and callables.
- It runs no gRPC server and does not register with the kubelet.
- It has no Kubernetes API client: pod lists, node patches and annotation
  updates are computed as data for the caller to send.
- It installs no command; `parse_flags` is a function to call from your own
  entry point.

## Requirements

Python 3.10 or later, no third-party dependencies. Ring discovery needs the
`cntopo` executable on the host, and SR-IOV management needs write access to
the sysfs PCI device directory.