from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import temptools

CLUSTER_LOCK = ".cluster.lock"
GENESIS_ARTIFACTS_DIRNAME = "genesis-artifacts"
VALIDATORS_DIRNAME = "validators"
ROOT_KEYS_FILENAME = "root-account-private-keys.yaml"
MEMBER_KEYS_FILENAME = "private-keys.yaml"

# Paths inside the validator container
CONTAINER_DATA_DIR = "/opt/aptos/var/data"
CONTAINER_GENESIS_DIR = "/opt/aptos/genesis-artifacts"
CONTAINER_IDENTITY_DIR = "/opt/aptos/var/identity"

# Number of container log lines attached to startup errors
LOG_TAIL_LINES = 50


def get_cluster_lock_file() -> str:
    """Return lock file that serializes cluster start and teardown across processes."""
    return f"{temptools.get_basetemp()}/{CLUSTER_LOCK}"


def get_cluster_label(name: str) -> str:
    return f"{configuration.CLUSTER_LABEL}={name}"


def get_network_name(name: str) -> str:
    return f"{name}-net"


def get_container_name(name: str, index: int) -> str:
    return f"{name}-validator-{index}"


def get_volume_name(name: str, index: int) -> str:
    return f"{name}-validator-{index}-data"
