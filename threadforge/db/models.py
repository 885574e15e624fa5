"""
Data models (dataclasses) for ThreadForge.
These are plain Python objects used across the DB, core, MCP, and API layers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Agent:
    id: str
    owner_id: str
    name: str                      # "<provider>-<model>-<hex>" for leads, "<type>-<hex>" for sub-agents
    display_name: str
    description: str
    provider: str                  # openai | anthropic | gemini
    model_name: str
    system_prompt: Optional[str]
    thread_id: Optional[str]       # the one thread this agent owns
    parent_thread_id: Optional[str]  # set iff this is a delegated sub-agent
    is_active: bool
    created_at: datetime

    @property
    def is_sub_agent(self) -> bool:
        return self.parent_thread_id is not None


@dataclass
class Thread:
    id: str
    agent_id: str
    title: str
    status: str          # active | archived
    message_count: int
    last_message_at: Optional[datetime]
    created_at: datetime


@dataclass
class Message:
    id: str
    thread_id: str
    role: str            # user | assistant | system | tool
    content: str
    tool_name: Optional[str]  # progress | thinking for tool-role side-channel records
    state: str           # complete | streaming | partial
    token_count: int
    seq: int             # monotonically increasing bus-wide sequence number
    created_at: datetime
