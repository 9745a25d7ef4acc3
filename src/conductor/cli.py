from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

import click

from conductor.backends import AgentBackend, CommandBackend, ResilientBackend, RetryPolicy
from conductor.config import ConductorConfig, load_config, save_config
from conductor.decomposer import HeuristicProposer, PlannerProposer, TaskDecomposer
from conductor.dispatch import DispatchScheduler
from conductor.errors import DecompositionError
from conductor.gateway import (
    AuditLog,
    HookRegistry,
    PermissionDecider,
    RuleTable,
    ToolGateway,
    ToolRegistry,
    WorkspaceFileTool,
)
from conductor.logging_utils import log_event, setup_logging
from conductor.loop import EvaluatorOptimizerLoop
from conductor.models import Task, ToolCallDecision, ToolCallRequest
from conductor.orchestrator import Orchestrator
from conductor.roles import CriticAgent, GeneratorAgent, PlannerAgent
from conductor.state import PersistentMemory, StateStore
from conductor.worker import ArtifactWriter, EvaluatedWorker, WorkerUnit

logger = logging.getLogger("conductor.cli")


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: ConductorConfig
    state: StateStore
    memory: PersistentMemory
    gateway: ToolGateway
    orchestrator: Orchestrator


class ConsoleDecider:
    """Asks the operator on the terminal for calls no rule or mode settled."""

    async def decide(self, request: ToolCallRequest) -> ToolCallDecision:
        prompt = (
            f"{request.requesting_worker_id} wants {request.tool_name} "
            f"{json.dumps(request.input, ensure_ascii=False, sort_keys=True)}. Allow?"
        )
        approved = await asyncio.to_thread(click.confirm, prompt, default=False)
        if approved:
            return ToolCallDecision.allow()
        return ToolCallDecision.deny("rejected by operator")


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _state_dir(root: Path, config: ConductorConfig) -> Path:
    directory = Path(config.state.directory)
    if not directory.is_absolute():
        directory = root / directory
    return directory


def _record_event(state: StateStore, event: dict[str, Any]) -> None:
    log_event(logger, event)
    state.record_event(event)


def build_backend(config: ConductorConfig, root: Path, state: StateStore) -> ResilientBackend:
    chain: list[tuple[str, AgentBackend]] = []
    for command in (config.backend.primary_command, config.backend.fallback_command):
        if command:
            backend = CommandBackend(command, working_directory=root)
            chain.append((backend.name, backend))
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(chain, retry_policy=policy, event_hook=partial(_record_event, state))


def build_gateway(
    config: ConductorConfig,
    root: Path,
    state: StateStore,
    *,
    decider: PermissionDecider | None = None,
) -> ToolGateway:
    registry = ToolRegistry([WorkspaceFileTool(root), WorkspaceFileTool(root, write=True)])
    return ToolGateway(
        registry,
        rules=RuleTable.from_patterns(allow=config.gateway.allow, deny=config.gateway.deny),
        mode=config.gateway.permission_mode,
        decider=decider,
        hooks=HookRegistry(timeout_seconds=config.gateway.hook_timeout_seconds),
        audit=AuditLog(state, limit=config.state.audit_limit),
        callback_timeout_seconds=config.gateway.callback_timeout_seconds,
        event_hook=partial(_record_event, state),
    )


def build_runtime(
    root: Path, config_path: Path, *, decider: PermissionDecider | None = None
) -> Runtime:
    config = load_config(config_path)
    state = StateStore(_state_dir(root, config))
    memory = PersistentMemory(state)
    event_hook = partial(_record_event, state)

    backend = build_backend(config, root, state)
    gateway = build_gateway(config, root, state, decider=decider)
    loop = EvaluatorOptimizerLoop(
        config.loop.max_iterations,
        history_window=config.loop.history_window,
        max_feedback_chars=config.loop.max_feedback_chars,
        stop_on_regression=config.loop.stop_on_regression,
        evaluator_timeout_seconds=config.loop.evaluator_timeout_seconds,
        event_hook=event_hook,
    )
    refine = EvaluatedWorker(
        loop,
        lambda _context: GeneratorAgent(backend),
        CriticAgent(backend, pass_threshold=config.loop.pass_threshold),
    )
    worker = WorkerUnit({"modify": ArtifactWriter(refine)}, default_handler=refine)
    scheduler = DispatchScheduler(
        worker,
        gateway,
        max_parallel=config.dispatch.max_parallel_workers,
        fail_fast=config.dispatch.fail_fast,
        worker_timeout_seconds=config.dispatch.worker_timeout_seconds,
        max_attempts=config.dispatch.worker_max_attempts,
        retry_backoff_seconds=config.dispatch.worker_retry_backoff_seconds,
        event_hook=event_hook,
    )
    decomposer = TaskDecomposer(
        PlannerProposer(PlannerAgent(backend)),
        max_attempts=config.decomposer.max_attempts,
        max_subtasks=config.decomposer.max_subtasks,
        event_hook=event_hook,
    )
    orchestrator = Orchestrator(
        decomposer,
        scheduler,
        loop,
        state=state,
        persistent=memory,
        max_transcript_items=config.memory.max_transcript_items,
        summarize_on_teardown=config.memory.summarize_on_teardown,
        event_hook=event_hook,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        state=state,
        memory=memory,
        gateway=gateway,
        orchestrator=orchestrator,
    )


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """Conductor CLI."""
    setup_logging(logging.INFO if verbose else logging.WARNING)


@cli.command("init")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)

    state_dir = _state_dir(root, config)
    state_dir.mkdir(parents=True, exist_ok=True)
    state = StateStore(state_dir)
    if not state.get_runs():
        state.set_json("runs", {"runs": {}})

    click.echo(f"Initialized Conductor in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state_dir}")
    click.echo(f"Permission mode: {config.gateway.permission_mode}")


@cli.command("plan")
@click.argument("goal")
@click.option(
    "--resource",
    "resources",
    multiple=True,
    help="Known resource key that counts as a claim when named in the goal.",
)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def plan_command(goal: str, resources: tuple[str, ...], config_value: str) -> None:
    """Decompose GOAL with the heuristic proposer and print the subtasks."""
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    decomposer = TaskDecomposer(
        HeuristicProposer(),
        max_attempts=config.decomposer.max_attempts,
        max_subtasks=config.decomposer.max_subtasks,
    )
    task = Task(goal=goal, constraints={"resources": list(resources)})
    try:
        subtasks = asyncio.run(decomposer.decompose(task))
    except DecompositionError as exc:
        click.echo(json.dumps({"error": exc.reason, "detail": exc.detail}, ensure_ascii=False))
        raise SystemExit(1) from exc
    click.echo(
        json.dumps([subtask.to_record() for subtask in subtasks], ensure_ascii=False, indent=2)
    )


@cli.command("run")
@click.argument("goal")
@click.option("--time-budget", "time_budget", type=float, default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def run_command(goal: str, time_budget: float | None, config_value: str) -> None:
    """Decompose GOAL with the planner backend and dispatch its subtasks."""
    root = Path.cwd().resolve()
    runtime = build_runtime(
        root, _resolve_config_path(root, config_value), decider=ConsoleDecider()
    )
    task = Task(
        goal=goal,
        max_iterations=runtime.config.loop.max_iterations,
        time_budget_seconds=time_budget,
    )
    outcome = asyncio.run(runtime.orchestrator.run(task))
    click.echo(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2))
    if not outcome.succeeded:
        raise SystemExit(1)


@cli.command("check")
@click.argument("tool_name")
@click.option("--input", "input_value", default="{}", show_default=True)
@click.option("--worker", "worker_id", default="cli", show_default=True)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def check_command(tool_name: str, input_value: str, worker_id: str, config_value: str) -> None:
    """Print the gateway decision for a tool call without running it."""
    try:
        tool_input = json.loads(input_value)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"--input is not valid JSON: {exc}") from exc
    if not isinstance(tool_input, dict):
        raise click.ClickException("--input must be a JSON object.")

    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    gateway = build_gateway(config, root, StateStore(_state_dir(root, config)))
    request = ToolCallRequest(
        tool_name=tool_name, input=tool_input, requesting_worker_id=worker_id
    )
    decision = asyncio.run(gateway.invoke(request))
    click.echo(json.dumps(decision.to_dict(), ensure_ascii=False, indent=2))


@cli.command("audit")
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--worker", "worker_id", default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def audit_command(limit: int, worker_id: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    records = StateStore(_state_dir(root, config)).get_records("audit", "records")
    if worker_id:
        records = [record for record in records if record.get("workerId") == worker_id]
    if not records:
        click.echo("No tool calls recorded.")
        return
    click.echo(json.dumps(records[-limit:] if limit > 0 else records, ensure_ascii=False, indent=2))


@cli.command("memory")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def memory_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    entries = PersistentMemory(StateStore(_state_dir(root, config))).all()
    click.echo(json.dumps(entries, ensure_ascii=False, indent=2, sort_keys=True))


@cli.command("runs")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def runs_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    runs = StateStore(_state_dir(root, config)).get_runs()
    if not runs:
        click.echo("No runs recorded.")
        return
    for run_id, record in sorted(runs.items()):
        click.echo(f"{run_id} {record.get('status', '?'):<20} {record.get('goal', '')}")
