# Where: iter_e2e/harness/constants.py
# What: Shared names, endpoints and defaults for iter-service test environments.
# Why: Keep magic strings out of orchestration code so suites agree on them.

SERVICE_NAME = "iter-service"
SERVICE_BINARY = "iter-service"

# Local port allocation
PORT_BASE = 19000
PORT_PROBE_ATTEMPTS = 100
PORT_MAX = 65535
LOOPBACK_HOST = "127.0.0.1"

# Service endpoints
HEALTH_PATH = "/health"
VERSION_PATH = "/version"
PROJECTS_PATH = "/projects"
INDEX_STATUS_PATH = "/api/index-status"
MCP_RPC_PATH = "/mcp/v1"
MCP_SSE_PATH = "/mcp/sse"
WEB_ROOT_PATH = "/web/"
WEB_INDEX_STATUS_PATH = "/web/index-status"

JSONRPC_VERSION = "2.0"
EXPECTED_TOOLS = ("list_projects", "search", "get_dependencies", "get_dependents")

# Results layout
RESULTS_DIR_NAME = "results"
DATA_DIR_NAME = "data"
CONFIG_FILE_NAME = "config.toml"
TEST_LOG_NAME = "test.log"
SERVICE_LOG_NAME = "service.log"
SUMMARY_JSON_NAME = "summary.json"
SUMMARY_MD_NAME = "SUMMARY.md"
REQUIRED_UI_SCREENSHOTS = ("01-before", "02-after")

KIND_API = "api"
KIND_MCP = "mcp"
KIND_UI = "ui"
KIND_SERVICE = "service"
KINDS = (KIND_API, KIND_MCP, KIND_UI, KIND_SERVICE)

# Container topology
CONTAINER_SERVICE_PORT = 19000
PRIMARY_ALIAS = "iter"
DRIVER_ALIAS = "claude"
PRIMARY_IMAGE = "iter-test:latest"
DRIVER_IMAGE = "claude-test:latest"
PRIMARY_DOCKERFILE = "tests/docker/Dockerfile.iter"
DRIVER_DOCKERFILE = "tests/docker/Dockerfile.claude"
DRIVER_HOME = "/home/testuser"
DRIVER_USER = "testuser"
DRIVER_CREDENTIALS_PATH = f"{DRIVER_HOME}/.claude/.credentials.json"
DRIVER_RESULTS_PATH = f"{DRIVER_HOME}/results"
CONTAINER_PROJECTS_ROOT = "/data/projects"
NETWORK_PREFIX = "iter-e2e"
MANAGED_LABEL = "com.iter-e2e.managed"
RUN_LABEL = "com.iter-e2e.run"
EXEC_TIMEOUT_EXIT_CODE = 124

# Environment variables
ENV_BASE_URL = "ITER_BASE_URL"
ENV_DOCKER = "TEST_DOCKER"
ENV_API_CREDENTIAL = "GOOGLE_GEMINI_API_KEY"
ENV_SERVICE_BIN = "ITER_SERVICE_BIN"
ENV_SERVICE_CONFIG = "ITER_CONFIG"
ENV_SERVICE_DATA_DIR = "ITER_DATA_DIR"
ENV_LOG_LEVEL = "LOG_LEVEL"
