"""Testnet and test environment configuration."""

import ipaddress
import os
import pathlib as pl

LAUNCH_PATH = pl.Path.cwd()

IS_XDIST = bool(os.environ.get("PYTEST_XDIST_TESTRUNUID"))

# Well-known identity of the cluster. Used as a prefix for names of containers, volumes and
# the network, and as a value of the cluster label. Stale resources from a crashed run are found
# by this identity.
TESTNET_NAME = os.environ.get("TESTNET_NAME") or "ephemeral-testnet"
CLUSTER_LABEL = "ephemeral_testnet.cluster"

VALIDATOR_IMAGE_REPO = os.environ.get("VALIDATOR_IMAGE_REPO") or "zapatos-testnet/validator"
IMAGE_TAG = os.environ.get("IMAGE_TAG") or "latest"
VALIDATOR_IMAGE = f"{VALIDATOR_IMAGE_REPO}:{IMAGE_TAG}"

DOCKER_BIN = os.environ.get("DOCKER_BIN") or "docker"
APTOS_BIN = os.environ.get("APTOS_BIN") or "aptos"

# Directory with genesis artifacts and the key material of validator and root accounts
GENESIS_DIR = (
    pl.Path(os.environ.get("GENESIS_DIR") or LAUNCH_PATH / "docker-testnet" / "config")
    .expanduser()
    .resolve()
)

# Chain id reported by local test networks
CHAIN_ID = int(os.environ.get("CHAIN_ID") or 4)

BASE_IP = os.environ.get("BASE_IP") or "172.19.0.10"
SUBNET = os.environ.get("SUBNET") or "172.19.0.0/16"
if ipaddress.ip_address(BASE_IP) not in ipaddress.ip_network(SUBNET):
    msg = f"BASE_IP '{BASE_IP}' is not part of SUBNET '{SUBNET}'"
    raise RuntimeError(msg)

# Make sure the ports don't overlap with ephemeral port range. It's usually 32768 to 60999.
# See `cat /proc/sys/net/ipv4/ip_local_port_range`.
BASE_API_PORT = int(os.environ.get("BASE_API_PORT") or 8080)
BASE_PEER_PORT = int(os.environ.get("BASE_PEER_PORT") or 6180)
BASE_METRICS_PORT = int(os.environ.get("BASE_METRICS_PORT") or 9101)

# Ports the validator listens on inside its container
CONTAINER_API_PORT = 8080
CONTAINER_PEER_PORT = 6180
CONTAINER_METRICS_PORT = 9101

MIN_MEMBERS = 1
MAX_MEMBERS = 7

# The port blocks of neighbouring bases must not overlap for any member
_bases = sorted((BASE_API_PORT, BASE_PEER_PORT, BASE_METRICS_PORT))
if any(b - a < MAX_MEMBERS for a, b in zip(_bases, _bases[1:])):
    msg = f"Port bases {_bases} are closer than {MAX_MEMBERS} ports to each other"
    raise RuntimeError(msg)

READY_TIMEOUT = float(os.environ.get("READY_TIMEOUT") or 120)
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL") or 1)
HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT") or 3)
ENGINE_TIMEOUT = float(os.environ.get("ENGINE_TIMEOUT") or 300)
STOP_TIMEOUT = int(os.environ.get("STOP_TIMEOUT") or 30)

# Max spread of block heights across members that still counts as "in sync"
SYNC_TOLERANCE = int(os.environ.get("SYNC_TOLERANCE") or 10)
if SYNC_TOLERANCE < 0:
    msg = f"Invalid SYNC_TOLERANCE '{SYNC_TOLERANCE}': must be >= 0"
    raise RuntimeError(msg)

# Used by the pytest fixtures
TESTNET_SIZE = int(os.environ.get("TESTNET_SIZE") or 4)
BOOTSTRAP_AMOUNT = int(os.environ.get("BOOTSTRAP_AMOUNT") or 100_000_000_000)

# Cluster is kept running after tests finish
KEEP_CLUSTER_RUNNING = bool(os.environ.get("KEEP_CLUSTER_RUNNING"))

DEBUG_TESTNET = (os.environ.get("DEBUG_TESTNET") or "") in ("1", "true")
