"""
Configuration — centralized settings for the entire backend.
All user-configurable values come from profile.yaml via get_profile().
Protocol constants remain as code constants.
"""

from profile import get_profile

_profile = get_profile()

# ── Identity ──
SYSTEM_NAME = _profile.system.name
BASE_SYSTEM_PROMPT = _profile.system.base_prompt

# ── Inference Endpoint ──
INFERENCE_URL = _profile.inference.endpoint_url
DEFAULT_MODEL = _profile.inference.default_model
COMPLETION_TIMEOUT = _profile.inference.timeout_seconds
DEFAULT_CONTEXT_SIZE = _profile.inference.default_context
NATIVE_TOOL_CALLS = _profile.inference.native_tool_calls

# ── Tool Gateway ──
GATEWAY_COMMAND = list(_profile.gateway.command)
GATEWAY_READY_SENTINEL = _profile.gateway.ready_sentinel
GATEWAY_READY_PHRASES = tuple(_profile.gateway.ready_phrases)
GATEWAY_PROGRESS_PHRASES = tuple(_profile.gateway.progress_phrases)
GATEWAY_READY_TIMEOUT = _profile.gateway.ready_timeout_seconds
GATEWAY_POLL_INTERVAL = _profile.gateway.poll_interval_seconds
GATEWAY_STOP_GRACE = _profile.gateway.stop_grace_seconds
GATEWAY_REQUEST_TIMEOUT = _profile.gateway.request_timeout_seconds
GATEWAY_CONFIG_DIR = _profile.gateway_config_dir()
GATEWAY_OVERRIDE_FILENAME = "mcp-privileged-shared.yaml"
PRIVILEGED_RUN_OPTIONS = [
    "--privileged",
    "-v /var/run/docker.sock:/var/run/docker.sock",
]

# ── MCP Protocol ──
MCP_CLIENT_INFO = {"name": "relay", "version": "1.0.0"}

# ── Context Budget ──
HISTORY_BUDGET_RATIO = _profile.context.history_ratio
MIN_RECOMMENDED_CONTEXT = _profile.context.min_recommended_context
RECOMMENDED_CONTEXT_MULTIPLIER = _profile.context.recommended_multiplier
RECOMMENDED_CONTEXT_ROUNDING = _profile.context.round_to

# ── Prefix Cache ──
CACHE_TTL_SECONDS = _profile.cache.ttl_seconds
CACHE_MAX_ENTRIES = _profile.cache.max_entries
CACHE_PREFIX_TURNS = _profile.cache.prefix_turns

# ── Cancellation ──
AI_CALL_SUFFIX = "ai-call"
PROCESS_KILL_GRACE = 1.0

# ── Web ──
WEB_HOST = _profile.web.host
WEB_PORT = _profile.web.port
CORS_ORIGINS = list(_profile.web.cors_origins)
