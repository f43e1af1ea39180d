"""
Task Scheduler - Interactive CLI entry point.
任务调度器 —— 交互式命令行入口。

Plans a goal with the LLM, then executes the plan through the dependency
scheduler with a rich console UI showing each phase: the plan table,
execution rounds, per-task validation and repair, and the final summary.
使用 LLM 规划目标，再交给依赖调度器执行，Rich 控制台 UI 实时展示每个阶段：
计划表、执行轮次、逐任务验证与修复、最终汇总。
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

import config
from agents.orchestrator import OrchestratorAgent
from dag.errors import CyclicDependencyError
from llm.client import LLMClient
from schema import ExecutionResult, RunSummary, TaskPlan, ValidationResult

console = Console()


def _preview(output: Any, limit: int = 500) -> str:
    if isinstance(output, dict) and "summary" in output:
        steps = output.get("steps") or []
        lines = [str(output["summary"])]
        lines += [f"- {s.get('step_id', '?')}: {str(s.get('output') or s.get('error') or '')[:200]}" for s in steps]
        return "\n".join(lines)[:limit]
    if isinstance(output, str):
        return output[:limit]
    return json.dumps(output, ensure_ascii=False, default=str)[:limit]


# ======================================================================
# Rendering helpers
# 渲染辅助方法
# ======================================================================

def _plan_table(plan: TaskPlan) -> Table:
    table = Table(title=f"Plan {plan.id}", border_style="cyan", show_lines=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Description", style="white")
    table.add_column("Priority", style="magenta", width=9)
    table.add_column("Steps", justify="right", width=6)
    table.add_column("Deps", style="dim")
    for t in plan.tasks:
        deps = ", ".join(t.dependencies) if t.dependencies else "-"
        table.add_row(t.id, t.description, t.priority.name.lower(), str(len(t.steps)), deps)
    return table


def _summary_table(summary: RunSummary) -> Table:
    style = "green" if summary.success else "red"
    table = Table(
        title=f"[{style}]Run {'succeeded' if summary.success else 'finished with failures'}[/{style}]",
        border_style=style,
    )
    table.add_column("Task", style="cyan")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    for r in summary.results:
        outcome = "[green]completed[/green]" if r.success else f"[red]failed[/red] {r.error or ''}"
        table.add_row(r.task_id, outcome, str(r.attempts), f"{r.duration_ms:.0f}ms")
    for tid in summary.blocked_task_ids:
        table.add_row(tid, "[dim]blocked (prerequisite failed)[/dim]", "0", "-")
    table.caption = (
        f"{summary.completed_tasks}/{summary.total_tasks} completed, "
        f"{summary.failed_tasks} failed, {len(summary.blocked_task_ids)} blocked "
        f"in {summary.duration_ms / 1000:.1f}s"
    )
    return table


# ======================================================================
# UI Event Handler - Pretty-prints pipeline events
# UI 事件处理器 —— 美化打印流水线事件
# ======================================================================

def on_event(event: str, data: Any) -> None:
    """
    Render orchestrator and controller events.
    渲染来自 Orchestrator 和 ExecutionController 的事件。
    """

    if event == "goal":
        console.print()
        console.print(Panel(f"[bold]{data['goal']}[/bold]", title="[bold blue]New Goal[/bold blue]", border_style="blue"))

    elif event == "phase":
        console.print(f"\n[bold cyan]>>> {data}[/bold cyan]")

    elif event == "plan":
        plan: TaskPlan = data
        if plan.summary:
            console.print(f"  [dim]{plan.summary}[/dim]")
        console.print(_plan_table(plan))

    elif event == "plan_created":
        console.print(f"  [dim]{data['task_count']} tasks in {len(data['layers'])} layers[/dim]")

    elif event == "layer_start":
        ids = data["task_ids"]
        parallel_note = " (parallel)" if len(ids) > 1 else ""
        console.print(
            f"\n  [bold yellow]--- Round {data['round']} ---[/bold yellow] "
            f"{len(ids)} tasks{parallel_note}: [cyan]{', '.join(ids)}[/cyan]"
        )

    elif event == "task_started":
        console.print(f"    [yellow]>> {data['task_id']}[/yellow] started")

    elif event == "validation_complete":
        v: ValidationResult = data["validation"]
        if not v.valid:
            score = f" score={v.score:g}" if v.score is not None else ""
            console.print(
                f"    [red]!! {data['task_id']} invalid (attempt {data['attempt']}){score}:[/red] "
                f"{'; '.join(v.issues)[:200]}"
            )

    elif event == "repair_attempt":
        console.print(f"    [magenta]~~ {data['task_id']} repaired, retrying (attempt {data['attempt'] + 1})[/magenta]")

    elif event == "task_completed":
        r: ExecutionResult = data["result"]
        console.print(f"    [green]<< {data['task_id']} completed[/green] [dim]({r.attempts} attempt(s))[/dim]")
        console.print(Panel(_preview(r.output), title=f"{data['task_id']} Output", border_style="green"))

    elif event == "task_failed":
        r: ExecutionResult = data["result"]
        console.print(f"    [red]<< {data['task_id']} FAILED[/red] [dim]({r.attempts} attempt(s))[/dim]")
        console.print(Panel(r.error or _preview(r.output), title=f"{data['task_id']} Error", border_style="red"))

    elif event == "run_failed":
        console.print(f"  [red]Run refused: circular dependency between {', '.join(data['cycle_nodes'])}[/red]")

    elif event == "run_complete":
        console.print()
        console.print(_summary_table(data["summary"]))


# ======================================================================
# Main
# 主函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统；verbose=True 时启用 DEBUG 级别。
    同时抑制 httpx/openai/httpcore 的低优先级日志，减少噪音。
    """
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def _run_goal(orchestrator: OrchestratorAgent, goal: str) -> RunSummary | None:
    try:
        return await orchestrator.run(goal)
    except CyclicDependencyError as exc:
        console.print(f"\n[red]Plan rejected: {exc}[/red]")
    except Exception as exc:
        console.print(f"\n[red]Error: {exc}[/red]")
        logging.getLogger(__name__).debug("Unhandled error", exc_info=True)
    return None


async def run_interactive() -> None:
    """
    Interactive multi-turn loop. Each goal gets a fresh run on the same orchestrator.
    多轮交互循环；每个目标都在同一个 Orchestrator 上开始一次新的运行。
    """
    console.print(Panel(
        "[bold]Task Scheduler[/bold] - dependency-aware execution with validation and repair\n\n"
        "  [cyan]1.[/cyan] The planner decomposes your goal into dependent tasks\n"
        "  [cyan]2.[/cyan] Independent tasks run concurrently "
        f"(max {config.MAX_CONCURRENT_TASKS} at a time)\n"
        "  [cyan]3.[/cyan] Every result is validated; invalid results are repaired and retried "
        f"(up to {config.MAX_RETRIES} times)\n"
        "  [cyan]4.[/cyan] Tasks whose prerequisites failed are reported as blocked\n\n"
        "Type your goal and press Enter. Type [bold]quit[/bold] to exit.",
        title="[bold blue]Welcome[/bold blue]",
        border_style="blue",
    ))

    orchestrator = OrchestratorAgent(llm_client=LLMClient(), on_event=on_event)

    while True:
        console.print()
        try:
            user_input = console.input("[bold blue]You > [/bold blue]").strip()
        except (EOFError, KeyboardInterrupt):
            break

        if not user_input:
            continue
        if user_input.lower() in ("quit", "exit", "q"):
            console.print("[dim]Goodbye![/dim]")
            break

        await _run_goal(orchestrator, user_input)


async def run_single(goal: str) -> int:
    """
    Run a single goal (non-interactive mode). Returns a process exit code.
    运行单个目标（非交互模式），返回进程退出码。
    """
    orchestrator = OrchestratorAgent(llm_client=LLMClient(), on_event=on_event)
    summary = await _run_goal(orchestrator, goal)
    return 0 if summary is not None and summary.success else 1


def main() -> None:
    """
    程序入口：
    - 有位置参数：单目标模式（python main.py "目标"）
    - 无位置参数：交互模式（python main.py）
    - -v / --verbose：启用调试日志
    """
    verbose = "--verbose" in sys.argv or "-v" in sys.argv
    setup_logging(verbose)

    args = [a for a in sys.argv[1:] if not a.startswith("-")]
    if args:
        sys.exit(asyncio.run(run_single(" ".join(args))))
    else:
        asyncio.run(run_interactive())


if __name__ == "__main__":
    main()
