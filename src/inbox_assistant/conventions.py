"""Inbox Assistant Conventions

Canonical names, paths, and wire constants that every part of the
assistant agrees on. These values are NOT configurable; anything a user
may want to change lives in assistant.yaml (see schema.py).

Things that CAN be configured (via assistant.yaml):
- inference server URL and model
- upstream timeouts
- inbox page size and base search query

Things that CANNOT be configured (defined HERE):
- directory structure within ~/.inbox-assistant/
- file names
- the sentinel conversation key and the stream error marker
"""

# --- The Root ---
ASSISTANT_HOME = "~/.inbox-assistant"

# --- Configuration ---
CONFIG_FILENAME = "assistant.yaml"
KEYS_FILENAME = "keys.yaml"
# Full paths: ~/.inbox-assistant/assistant.yaml, ~/.inbox-assistant/keys.yaml

# --- Server ---
SERVER_DIR = "server"  # relative to ASSISTANT_HOME
SERVER_LOG_FILE = "server.log"
SERVER_DEFAULT_PORT = 8410

# --- Inference upstream (Ollama) ---
DEFAULT_INFERENCE_URL = "http://localhost:11434"
DEFAULT_INFERENCE_MODEL = "llama3.2-vision:latest"
INFERENCE_CHAT_PATH = "/api/chat"

# --- Relay stream ---
# Emitted once into the outbound stream when the upstream connection breaks
# after streaming has started.
STREAM_ERROR_MARKER = "\n[stream error]\n"
RELAY_MEDIA_TYPE = "text/plain; charset=utf-8"

# --- Conversations ---
# Context key used when no email is open.
DEFAULT_CONTEXT_KEY = "__no_email__"

# --- Google / Gmail ---
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # noqa: S105
GMAIL_BASE_QUERY = "-category:promotions -category:social"
GMAIL_PAGE_SIZE = 20
ACCESS_TOKEN_DEFAULT_TTL = 3600  # seconds, when Google omits expires_in
