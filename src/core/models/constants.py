from __future__ import annotations

USER_ROLE_USER = "user"
USER_ROLE_ADMIN = "admin"
USER_ROLES = (USER_ROLE_USER, USER_ROLE_ADMIN)

ACCENT_COLORS = (
    "pink",
    "red",
    "orange",
    "yellow",
    "green",
    "cyan",
    "blue",
    "purple",
    "gray",
)

ENTITY_STATUS_ACTIVE = "active"
ENTITY_STATUS_INACTIVE = "inactive"
ENTITY_STATUSES = (ENTITY_STATUS_ACTIVE, ENTITY_STATUS_INACTIVE)

PROVIDER_TYPES = (
    "anthropic",
    "azure",
    "bedrock",
    "google",
    "groq",
    "mistral",
    "ollama",
    "openai",
    "openai_compatible",
    "openrouter",
    "vllm",
)

MODEL_TYPE_INFERENCE = "inference"
MODEL_TYPES = (MODEL_TYPE_INFERENCE, "embedding", "rerank")

AGENT_STRATEGIES = ("react", "chain_of_thought", "tree_of_thoughts", "direct")
TEAM_AGGREGATION_STRATEGIES = ("last", "merge", "vote")

TOPOLOGIES = ("pipeline", "parallel", "debate", "hierarchical", "round_robin")

RUN_STATUS_PENDING = "pending"
RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"
RUN_STATUS_CANCELLED = "cancelled"
RUN_STATUSES = (
    RUN_STATUS_PENDING,
    RUN_STATUS_RUNNING,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_CANCELLED,
)
RUN_CANCELLABLE_STATUSES = {RUN_STATUS_PENDING, RUN_STATUS_RUNNING}
RUN_FINAL_STATUSES = {RUN_STATUS_COMPLETED, RUN_STATUS_FAILED, RUN_STATUS_CANCELLED}

RUN_DEFAULT_TIMEOUT_MS = 1_800_000
RUN_DEFAULT_MAX_ITERATIONS = 50

RUN_LOG_LEVELS = ("debug", "info", "warn", "error")

INGEST_JOB_STATES = ("available", "executing", "completed", "discarded", "retryable")
EMBEDDING_STATUSES = ("success", "error")

CONVERSATION_STATUS_ACTIVE = "active"
CONVERSATION_STATUS_ARCHIVED = "archived"

MESSAGE_ROLE_USER = "user"
MESSAGE_ROLE_ASSISTANT = "assistant"

MESSAGE_STATUS_STREAMING = "streaming"
MESSAGE_STATUS_COMPLETE = "complete"
MESSAGE_STATUS_FAILED = "failed"

TOOL_CALL_STATUS_PENDING = "pending"
TOOL_CALL_STATUS_APPROVED = "approved"
TOOL_CALL_STATUS_REJECTED = "rejected"
TOOL_CALL_STATUS_COMPLETED = "completed"
TOOL_CALL_STATUS_FAILED = "failed"
TOOL_CALL_DECIDED_STATUSES = {TOOL_CALL_STATUS_APPROVED, TOOL_CALL_STATUS_REJECTED}
