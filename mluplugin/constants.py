"""Names, paths and modes shared by the MLU device plugin."""

DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
SERVER_SOCK = DEVICE_PLUGIN_PATH + "cambricon.sock"
MLU_LINK_POLICY_UNSATISFIED = "mluLinkPolicyUnsatisfied"
RETRIES = 5

BEST_EFFORT = "best-effort"
RESTRICTED = "restricted"
GUARANTEED = "guaranteed"

DEFAULT_MODE = "default"
SRIOV = "sriov"
ENV_SHARE = "env-share"
TOPOLOGY_AWARE = "topology-aware"
MLU_SHARE = "mlu-share"

MODES = (DEFAULT_MODE, SRIOV, ENV_SHARE, TOPOLOGY_AWARE, MLU_SHARE)
LINK_POLICIES = (BEST_EFFORT, RESTRICTED, GUARANTEED)

MLU_MONITOR_DEVICE_NAME = "/dev/cambricon_ctl"
MLU_DEVICE_NAME = "/dev/cambricon_dev"
MLU_MSGQ_DEVICE_NAME = "/dev/cambr-msgq"
MLU_RPC_DEVICE_NAME = "/dev/cambr-rpc"
MLU_CMSG_DEVICE_NAME = "/dev/cmsg_ctrl"
MLU_IPCM_DEVICE_NAME = "/dev/cambricon_ipcm"
MLU_COMMU_DEVICE_NAME = "/dev/commu"
MLU_UART_CONSOLE_DEVICE_NAME = "/dev/ttyMS"
MLU_RPMSG_DIR = "/dev/cambricon/"
MLU_SPLIT_DEVICE_NAME = "/dev/cambricon-split"

MLU_MEM_RESOURCE_NAME = "cambricon.com/mlumem"
MLU_RESOURCE_COUNT = "cambricon.com/mlunum"
MLU_MEM_RESOURCE_ASSUME_TIME = "CAMBRICON_MEM_ASSUME_TIME"
MLU_MEM_RESOURCE_ASSIGNED = "CAMBRICON_MEM_ASSIGHED"
MLU_MEM_SPLIT_LIMIT = "CAMBRICON_SPLIT_MEMS"
MLU_MEM_SPLIT_INDEX = "CAMBRICON_SPLIT_VISIBLE_DEVICES"
MLU_MEM_SPLIT_ENABLE = "CAMBRICON_SPLIT_ENABLE"
MLU_MEM_LOCK = "cambricon.com/mlu-mem.lock"
MLU_MEM_BINARY_PATH = "/usr/bin/smlu-containerd"