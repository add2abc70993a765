"""plan_task tool: break a task into a fixed sequence of pending steps."""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field

_STEPS = (
    "Analyze requirements and current implementation",
    "Design solution architecture",
    "Implement core functionality",
    "Verify changes with tests",
    "Document changes",
)


class PlanTaskParams(BaseModel):
    task: str = Field(min_length=1)
    context: str = ""


DEFINITION: dict[str, Any] = {
    "name": "plan_task",
    "description": "Create a step-by-step plan for a complex task before working on it.",
    "parameters": {
        "type": "object",
        "properties": {
            "task": {"type": "string", "description": 'The task to plan (e.g. "Add dark mode to the app")'},
            "context": {"type": "string", "description": "Additional context about the project. Optional."},
        },
        "required": ["task"],
    },
}


async def handle(params: PlanTaskParams) -> dict[str, Any]:
    now_ms = int(time.time() * 1000)
    steps = [
        {"id": f"step-{i}", "description": description, "status": "pending"}
        for i, description in enumerate(_STEPS, start=1)
    ]
    return {
        "plan": {
            "id": f"task-{now_ms}",
            "title": params.task,
            "context": params.context,
            "steps": steps,
            "current_step": 0,
            "status": "pending",
        },
        "message": "Task plan created",
    }
