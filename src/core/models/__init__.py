from __future__ import annotations

from .constants import *  # noqa: F403
from .accounts import Group, GroupMembership, Invitation, ServerSettings, User
from .llm import LLMModel, LLMProvider, UsageRecord
from .studio import (
    Agent,
    AgentTool,
    MCPServer,
    Run,
    RunLog,
    RunTask,
    Schedule,
    Team,
    TeamMember,
)
from .rag import Chunk, DataSource, Document, EmbeddingRequest, IngestJob
from .chat import ChatMessage, Conversation, ToolCall
