from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    CREDITS_RESERVED = "credits_reserved"
    PLAN_CREATED = "plan_created"
    AGENT_STARTED = "agent_started"
    AGENT_COMPLETED = "agent_completed"
    SEARCH_RESULT = "search_result"
    SOURCES_COLLECTED = "sources_collected"
    EXTRACTION_COMPLETED = "extraction_completed"
    GAPS_IDENTIFIED = "gaps_identified"
    SYNTHESIS_STARTED = "synthesis_started"
    SYNTHESIS_PROGRESS = "synthesis_progress"
    RELATED_SEARCHES = "related_searches"
    RESEARCH_COMPLETE = "research_complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.RESEARCH_COMPLETE, EventType.ERROR})


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        if self.event is EventType.ERROR:
            return bool(self.data.get("fatal", True))
        return self.event in TERMINAL_EVENTS

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"
