"""Bridgenet constants and enumerations."""

from enum import Enum


class EnvironmentState(Enum):
    """Lifecycle state of a shared environment."""

    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"


class ResourceKind(Enum):
    """Kinds of resources an environment allocates."""

    CONTAINER = "container"
    ENCLAVE = "enclave"
    NETWORK = "network"
    PROCESS = "process"


# Directories
BRIDGENET_DIR = ".bridgenet"
CONFIG_FILE = f"{BRIDGENET_DIR}/config.yaml"
TMP_DIR = "tmp"
LOGS_DIR = f"{BRIDGENET_DIR}/logs"
BATCH_LOG_DIR = f"{TMP_DIR}/e2e-test-logs"

# Environment variables
ENV_REUSE_ENVIRONMENT = "BRIDGENET_REUSE_ENVIRONMENT"
ENV_ENVIRONMENT_ID = "BRIDGENET_ENVIRONMENT_ID"
ENV_RUN_ID = "BRIDGENET_RUN_ID"

# Container labels
LABEL_ENV = "bridgenet.env"
LABEL_RUN = "bridgenet.run"
LABEL_ROLE = "bridgenet.role"

# Endpoint keys
ENDPOINT_CHAIN_A = "chain_a"
ENDPOINT_CHAIN_A_HTTP = "chain_a_http"
ENDPOINT_CHAIN_B = "chain_b"
ENDPOINT_CHAIN_B_WS = "chain_b_ws"
ENDPOINT_CHAIN_B_CL = "chain_b_cl"
REQUIRED_ENDPOINTS = (ENDPOINT_CHAIN_A, ENDPOINT_CHAIN_B)

# Defaults
DEFAULT_WAIT_TIMEOUT_SECONDS = 30.0
DEFAULT_LOCK_POLL_SECONDS = 2.0
DEFAULT_LOCK_DEADLINE_SECONDS = 20 * 60.0
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_TASK_TIMEOUT_SECONDS = 15 * 60.0
DEFAULT_TERMINATE_GRACE_SECONDS = 5.0
DEFAULT_TASK_PATTERN = "test_*.py"
DEFAULT_SUITES_DIR = "suites"
DEFAULT_SHARED_ENV_ID = "shared-test"

CHAIN_A_AUTHORITIES = ("alice", "bob")
CHAIN_A_RPC_PORT = 9944
RELAYER_KINDS = ("beefy", "beacon", "execution", "solochain")
