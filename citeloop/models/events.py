from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    AGENT_STARTED = "agent_started"
    AGENT_COMPLETED = "agent_completed"
    ROUND_STARTED = "round_started"
    ROUND_COMPLETED = "round_completed"
    TASKS_PLANNED = "tasks_planned"
    SEARCH_RESULT = "search_result"
    SYNTHESIS_STARTED = "synthesis_started"
    DRAFT_CREATED = "draft_created"
    QUALITY_CHECKED = "quality_checked"
    ROUTE_DECIDED = "route_decided"
    RESEARCH_COMPLETE = "research_complete"
    ERROR = "error"


@dataclass
class PipelineEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"
