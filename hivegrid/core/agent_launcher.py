"""Command line and environment for agent CLI processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from hivegrid.config import AgentsConfig, config
from hivegrid.constants import (
    ENV_AGENT_ID,
    ENV_CONTEXT,
    ENV_PARENT_ID,
    ENV_TOOL_CONFIG,
    ENV_WORKTREE,
)
from hivegrid.core.context import ORCHESTRATOR_SYSTEM_PROMPT, WORKER_SYSTEM_PROMPT
from hivegrid.core.models import CellType


@dataclass
class LaunchSpec:
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


def select_model(cell_type: CellType, requested: Optional[str] = None, agents: Optional[AgentsConfig] = None) -> str:
    agents = agents or config.agents
    if requested:
        return requested
    return agents.worker_model if cell_type == "worker" else agents.orchestrator_model


def default_worker_prompt(task: str, parent_id: str, task_details: Optional[str] = None) -> str:
    details = f"\n\nAdditional context:\n{task_details}" if task_details else ""
    return (
        f"You are a worker agent. Execute this task:\n\n{task}{details}\n\n"
        "When complete:\n"
        f'1. Call report_result with parentId="{parent_id}" and your findings\n'
        '2. Call report_status with state="done"\n\n'
        "Work autonomously. Do not ask questions."
    )


def select_prompt(
    cell_type: CellType,
    initial_prompt: Optional[str] = None,
    instructions: Optional[str] = None,
    task: Optional[str] = None,
    task_details: Optional[str] = None,
    parent_id: Optional[str] = None,
) -> Optional[str]:
    """Pick the first user message for the agent.

    Workers take explicit instructions from their orchestrator first, then a
    prompt synthesized from the task; everything else falls back to the
    observer-supplied initial prompt.
    """
    if cell_type == "worker":
        if instructions:
            return instructions
        if task and parent_id:
            return default_worker_prompt(task, parent_id, task_details)
    return initial_prompt


def system_prompt_for(cell_type: CellType) -> Optional[str]:
    if cell_type == "orchestrator":
        return ORCHESTRATOR_SYSTEM_PROMPT
    if cell_type == "worker":
        return WORKER_SYSTEM_PROMPT
    return None


def build_agent_launch(
    agent_id: str,
    cell_type: CellType,
    workspace_path: str,
    *,
    context_path: Optional[str] = None,
    tool_config_path: Optional[str] = None,
    parent_id: Optional[str] = None,
    model: Optional[str] = None,
    initial_prompt: Optional[str] = None,
    instructions: Optional[str] = None,
    task: Optional[str] = None,
    task_details: Optional[str] = None,
    base_env: Optional[dict[str, str]] = None,
    agents: Optional[AgentsConfig] = None,
) -> LaunchSpec:
    """Assemble argv and env for an orchestrator or worker process."""
    agents = agents or config.agents

    args: list[str] = []
    prompt = select_prompt(cell_type, initial_prompt, instructions, task, task_details, parent_id)
    if prompt:
        args.append(prompt)
    args += ["--model", select_model(cell_type, model, agents)]
    args += ["--allowedTools", agents.allowed_tools]
    if tool_config_path:
        args += ["--mcp-config", tool_config_path]
    system_prompt = system_prompt_for(cell_type)
    if system_prompt:
        args += ["--append-system-prompt", system_prompt]

    env = dict(base_env or {})
    env[ENV_AGENT_ID] = agent_id
    env[ENV_WORKTREE] = workspace_path
    if context_path:
        env[ENV_CONTEXT] = context_path
    if tool_config_path:
        env[ENV_TOOL_CONFIG] = tool_config_path
    if parent_id:
        env[ENV_PARENT_ID] = parent_id

    return LaunchSpec(command=agents.command, args=args, env=env)
