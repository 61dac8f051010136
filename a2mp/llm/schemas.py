"""
Pydantic schemas for structured model output.

The model is prompted with camelCase keys; everything is stored and served
snake_case (`model_dump()`), with aliases accepted on input.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel

NO_PLEASANTRIES_RULE = "Do not use pleasantries or greetings. Be direct and task-focused."
MAX_PROFILE_ITEMS = 4

WHITEBOARD_CATEGORIES = ("key_facts", "decisions", "action_items")


def _clean_items(value):
    """Coerce a list of loose items to non-empty strings"""
    if value is None:
        return value
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ValueError("expected a list")
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


class _ModelOutput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MCP(_ModelOutput):
    """Model-Context-Profile of a persona"""
    identity: str = Field(min_length=1)
    objectives: list[str] = Field(min_length=1)
    rules: list[str] = Field(min_length=1)
    output_format: str = Field(min_length=1)
    tools: list[str] = Field(default_factory=list)

    @field_validator("objectives", "rules", "tools", mode="before")
    @classmethod
    def _strings(cls, value):
        return _clean_items(value)

    @field_validator("identity", "output_format")
    @classmethod
    def _not_blank(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("profile field is blank")
        return value

    @field_validator("objectives")
    @classmethod
    def _limit_objectives(cls, value):
        return value[:MAX_PROFILE_ITEMS]

    @field_validator("rules")
    @classmethod
    def _first_rule_fixed(cls, value):
        rest = [rule for rule in value if rule != NO_PLEASANTRIES_RULE]
        return [NO_PLEASANTRIES_RULE] + rest[:MAX_PROFILE_ITEMS - 1]


class GeneratedPersona(_ModelOutput):
    name: str = Field(min_length=1)
    mcp: MCP

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("persona name is blank")
        return value


class Whiteboard(_ModelOutput):
    key_facts: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)

    @field_validator("key_facts", "decisions", "action_items", mode="before")
    @classmethod
    def _strings(cls, value):
        return _clean_items(value) or []


class WhiteboardUpdate(_ModelOutput):
    """
    Partial whiteboard change proposed by the moderator.

    Categories listed in `replace` overwrite the stored list; the others are
    appended to it.
    """
    key_facts: Optional[list[str]] = None
    decisions: Optional[list[str]] = None
    action_items: Optional[list[str]] = None
    replace: list[str] = Field(default_factory=list)

    @field_validator("key_facts", "decisions", "action_items", mode="before")
    @classmethod
    def _strings(cls, value):
        return _clean_items(value)

    @field_validator("replace", mode="before")
    @classmethod
    def _known_categories(cls, value):
        items = _clean_items(value) or []
        normalized = []
        for item in items:
            snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in item)
            if snake in WHITEBOARD_CATEGORIES and snake not in normalized:
                normalized.append(snake)
        return normalized

    def is_empty(self) -> bool:
        return not any(getattr(self, category) for category in WHITEBOARD_CATEGORIES) and not self.replace


class SpeakerDecision(_ModelOutput):
    next_speaker: str = Field(min_length=1)
    moderator_notes: str = ""
    whiteboard_update: Optional[WhiteboardUpdate] = None

    @field_validator("next_speaker")
    @classmethod
    def _strip_speaker(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("next speaker is blank")
        return value

    @field_validator("moderator_notes", mode="before")
    @classmethod
    def _notes(cls, value):
        return "" if value is None else str(value)

    @property
    def is_none(self) -> bool:
        return self.next_speaker.lower() == "none"


class ConclusionCheck(_ModelOutput):
    conclude: StrictBool
    reason: str = ""


class GraphNode(_ModelOutput):
    id: str
    label: str = ""
    turns: int = 0


class GraphEdge(_ModelOutput):
    source: str
    target: str
    weight: int = 1


class ConversationGraph(_ModelOutput):
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


class MeetingSummary(_ModelOutput):
    summary: str = "No summary available"
    highlights: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)
    visual_map: ConversationGraph = Field(default_factory=ConversationGraph)

    @field_validator("highlights", "decisions", "action_items", mode="before")
    @classmethod
    def _strings(cls, value):
        return _clean_items(value) or []

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, value):
        text = "" if value is None else str(value).strip()
        return text or "No summary available"

    @field_validator("visual_map", mode="before")
    @classmethod
    def _graph(cls, value):
        # The stored graph is rebuilt from the transcript; tolerate anything here
        if not isinstance(value, dict):
            return {}
        nodes = value.get("nodes") if isinstance(value.get("nodes"), list) else []
        edges = value.get("edges") if isinstance(value.get("edges"), list) else []
        return {
            "nodes": [n for n in nodes if isinstance(n, dict) and "id" in n],
            "edges": [e for e in edges if isinstance(e, dict) and "source" in e and "target" in e],
        }
