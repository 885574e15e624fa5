"""
Registry of sub-agent types a lead agent may delegate to.

Unknown type tags are accepted: the agent keeps the tag in its name and falls
back to the generic label and color.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class AgentType:
    tag: str
    label: str
    short_label: str
    color: str
    prompt: str


DEFAULT_TYPE = "default"

_TYPES = [
    AgentType(
        "systemDesigner", "Systems Designer", "Systems", "#00d4ff",
        "You are a game systems designer. Design core loops, progression and the rules "
        "that tie mechanics together. Be concrete and state trade-offs.",
    ),
    AgentType(
        "balancingDesigner", "Balancing Designer", "Balancing", "#f59e0b",
        "You are a game balancing designer. Work with numbers: curves, costs, rates and "
        "tables. Show the formulas you use.",
    ),
    AgentType(
        "levelDesigner", "Level Designer", "Level", "#34d399",
        "You are a level designer. Describe layouts, pacing, encounters and player "
        "guidance for the spaces you are asked about.",
    ),
    AgentType(
        "narrativeDesigner", "Narrative Designer", "Narrative", "#a78bfa",
        "You are a narrative designer. Write story beats, characters, dialogue and lore "
        "that support the gameplay.",
    ),
    AgentType(
        "combatDesigner", "Combat Designer", "Combat", "#ef4444",
        "You are a combat designer. Define abilities, enemy behaviour, timings and the "
        "feel of moment-to-moment fights.",
    ),
    AgentType(
        "technicalDesigner", "Technical Designer", "Technical", "#6366f1",
        "You are a technical designer. Turn design intent into data schemas, scripting "
        "hooks and implementation notes for engineers.",
    ),
    AgentType(
        "juniorDesigner", "Junior Designer", "Junior", "#94a3b8",
        "You are a junior game designer. Handle focused, well-scoped tasks and ask for "
        "clarification in your answer when the brief is ambiguous.",
    ),
    AgentType(
        DEFAULT_TYPE, "General Agent", "General", "#64748b",
        "You are a helpful specialist agent. Complete the delegated task thoroughly and "
        "report the result clearly.",
    ),
]

AGENT_TYPES: dict[str, AgentType] = {t.tag: t for t in _TYPES}


def resolve(tag: str | None) -> AgentType:
    """Return the registered type for ``tag``, or the default type."""
    return AGENT_TYPES.get(tag or DEFAULT_TYPE, AGENT_TYPES[DEFAULT_TYPE])


def type_from_name(agent_name: str) -> str:
    """Recover the type tag from a sub-agent name such as ``levelDesigner-a1b2c3d4``."""
    if not agent_name:
        return DEFAULT_TYPE
    head, sep, _ = agent_name.rpartition("-")
    return head if sep and head else DEFAULT_TYPE


def describe(tag: str | None) -> dict:
    t = resolve(tag)
    return {"type": tag or DEFAULT_TYPE, "label": t.label, "short_label": t.short_label, "color": t.color}
