"""Slack Gateway Conventions - IMMUTABLE

Canonical names, paths, header names and key layouts that every part of
the gateway agrees on. These values are NOT configurable; tunables such
as the thread timeout or the edit interval live in gateway.yaml instead.
"""

# --- The Root ---
GATEWAY_HOME = "~/.slack-gateway"

# --- Configuration ---
GATEWAY_CONFIG_FILENAME = "gateway.yaml"
KEYS_FILENAME = "keys.yaml"

# --- Local persistence (disk tier) ---
DATA_DIR = "data"  # relative to GATEWAY_HOME
TENANTS_FILENAME = "tenants.json"
THREADS_FILENAME = "threads.json"

# --- Server ---
SERVER_LOG_FILE = "server.log"
SERVER_DEFAULT_PORT = 8420

# --- Slack request signing ---
SIGNATURE_HEADER = "x-slack-signature"
TIMESTAMP_HEADER = "x-slack-request-timestamp"
SIGNATURE_VERSION = "v0"
REPLAY_WINDOW_SECONDS = 300

# --- Key layout (shared by the memory, disk and Redis stores) ---
TENANT_KEY_PREFIX = "tenant:"
TENANT_INDEX_PREFIX = "tenant-by-team:"
THREAD_KEY_PREFIX = "slack:thread:"
CHANNEL_LATEST_PREFIX = "slack:channel:"
REDIS_KEY_PREFIX = "slack-gateway:"

# --- Event bus ---
EVENT_SOURCE = "slack-gateway"
GENERATE_EVENT_TYPE = "operator.generate"
COMPLETED_EVENT_TYPE = "operator.text.completed"
PASSTHROUGH_EVENT_PREFIX = "slack."
