from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from gacha.agent.base import PageAutomationAgent
from gacha.agent.dryrun import load_agent
from gacha.config import (
    ALLOWED_UI_PLACEMENTS,
    ProjectConfigError,
    Settings,
    initialize_project_config,
    load_settings,
    project_config_exists,
    resolve_project_config_root,
    set_task_delay,
    set_ui_placement,
)
from gacha.history.store import ChatHistoryStore
from gacha.protocol.messages import StateUpdate
from gacha.runtime import BatchSession, build_event_log
from gacha.task.types import AspectRatio, TaskStatus
from gacha.ui.render import (
    render_notice,
    render_notification,
    render_session,
    render_sessions,
    render_state,
)

app = typer.Typer(
    no_args_is_help=True,
    help="gacha 批量生图编排 (Batch image generation orchestrator)",
)
settings_app = typer.Typer(help="设置管理 (Settings)")
history_app = typer.Typer(help="聊天记录 (Chat history)")
app.add_typer(settings_app, name="settings")
app.add_typer(history_app, name="history")


def _missing_config_message() -> str:
    return render_notice(
        "error",
        "当前目录缺少项目配置目录：{0}，请先执行 `gacha init`。".format(resolve_project_config_root()),
        "Missing project config directory. Run `gacha init` first.",
    )


def _require_project_config() -> None:
    if project_config_exists():
        return
    typer.echo(_missing_config_message(), err=True)
    raise typer.Exit(code=2)


def _read_prompts(prompts: List[str], prompt_file: Optional[Path]) -> List[str]:
    collected = [item for item in prompts if item.strip()]
    if prompt_file is not None:
        try:
            text = prompt_file.read_text(encoding="utf-8")
        except OSError as exc:
            typer.echo(
                render_notice(
                    "error",
                    "无法读取提示词文件：{0}".format(prompt_file),
                    "Cannot read prompt file: {0}".format(exc),
                ),
                err=True,
            )
            raise typer.Exit(code=2)
        collected.extend(line for line in text.splitlines() if line.strip())
    return collected


async def _run_session(
    session: BatchSession,
    prompts: List[str],
    quantity: int,
    ratio: str,
) -> int:
    stream = sys.stdout
    await session.open()
    observer = session.observe(lambda item, state: render_notification(item, state, stream))
    try:
        try:
            result = await session.run_batch(prompts, quantity=quantity, aspect_ratio=ratio)
        except asyncio.CancelledError:
            await session.stop()
            raise
        finally:
            observer.cancel()

        if not result.success:
            typer.echo(render_notice("error", result.message, result.code or None), err=True)
            return 1

        state = session.ui.state or StateUpdate.from_state(session.controller.queue.snapshot())
        render_state(state, stream)
        if state.tasks and all(task.status == TaskStatus.SUCCEEDED for task in state.tasks):
            return 0
        return 1
    finally:
        await session.close()


def _execute_batch(
    *,
    prompts: List[str],
    quantity: int,
    ratio: str,
    delay: Optional[int],
    agent_spec: str,
    step_ms: int,
    record_history: bool,
) -> int:
    settings = load_settings(delay_seconds=delay)
    try:
        agent = _load_agent(agent_spec, step_ms)
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        typer.echo(render_notice("error", "无法加载 agent：{0}".format(agent_spec), str(exc)), err=True)
        return 2

    history = ChatHistoryStore(settings.history_db) if record_history else None
    session = BatchSession(
        settings,
        agent,
        event_log=build_event_log(settings),
        history=history,
    )
    try:
        return asyncio.run(_run_session(session, prompts, quantity, ratio))
    except KeyboardInterrupt:
        typer.echo(render_notice("warn", "已中断，队列已清空。", "Interrupted, queue cleared."), err=True)
        return 130
    finally:
        if history is not None:
            history.close()


def _load_agent(agent_spec: str, step_ms: int) -> PageAutomationAgent:
    if agent_spec.strip() == "dryrun":
        return load_agent("dryrun", options={"step_delay_ms": step_ms})
    return load_agent(agent_spec)


def _doctor_report(settings: Settings) -> Dict[str, Any]:
    event_log = build_event_log(settings)
    history_sessions = 0
    if settings.history_db.exists():
        store = ChatHistoryStore(settings.history_db)
        try:
            history_sessions = len(store.list_sessions())
        finally:
            store.close()
    return {
        "config_root": str(settings.config_root),
        "queue": {"delay_seconds": settings.delay_seconds},
        "ui": {"placement": settings.ui_placement},
        "link": settings.link.as_dict(),
        "logs": event_log.status(),
        "history": {"db": str(settings.history_db), "sessions": history_sessions},
    }


@app.callback()
def main(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is not None and ctx.invoked_subcommand != "init":
        _require_project_config()


@app.command("init")
def init_cmd(
    force: bool = typer.Option(
        False,
        "--force",
        help="重建 .gacha_config（会先删除已有目录） (Recreate config directory)",
    ),
) -> None:
    try:
        config_root = initialize_project_config(force=force)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)

    typer.echo(
        render_notice(
            "success",
            "项目配置初始化完成：{0}".format(config_root),
            "Initialized project config at: {0}".format(config_root),
        )
    )


@app.command("run")
def run_cmd(
    prompts: List[str] = typer.Argument(None, help="提示词，每个参数一条 (One prompt per argument)"),
    prompt_file: Optional[Path] = typer.Option(None, "--file", help="每行一条提示词 (One prompt per line)"),
    quantity: int = typer.Option(1, "--quantity", help="每条生成数量 (Images per prompt)"),
    ratio: str = typer.Option("1:1", "--ratio", help="宽高比：1:1|2:3|3:2 (Aspect ratio)"),
    delay: Optional[int] = typer.Option(None, "--delay", help="任务间隔秒数 (Seconds between tasks)"),
    agent_spec: str = typer.Option("dryrun", "--agent", help="dryrun 或 module:factory (Agent)"),
    step_ms: int = typer.Option(50, "--step-ms", help="dryrun 每步耗时毫秒 (Dry-run step delay)"),
    no_history: bool = typer.Option(False, "--no-history", help="不记录聊天记录 (Skip chat history)"),
) -> None:
    """执行一批生成任务 (Run one batch)."""
    collected = _read_prompts(list(prompts or []), prompt_file)
    if not collected:
        typer.echo(render_notice("error", "请提供至少一条提示词。", "At least one prompt is required."), err=True)
        raise typer.Exit(code=2)
    if AspectRatio.parse(ratio) is None:
        typer.echo(
            render_notice("error", "不支持的宽高比：{0}".format(ratio), "Unsupported aspect ratio: {0}".format(ratio)),
            err=True,
        )
        raise typer.Exit(code=2)
    if delay is not None and delay < 0:
        typer.echo(render_notice("error", "任务间隔不能为负数。", "Delay must not be negative."), err=True)
        raise typer.Exit(code=2)

    exit_code = _execute_batch(
        prompts=collected,
        quantity=quantity,
        ratio=ratio,
        delay=delay,
        agent_spec=agent_spec,
        step_ms=step_ms,
        record_history=not no_history,
    )
    raise typer.Exit(code=exit_code)


@app.command("doctor")
def doctor_cmd() -> None:
    settings = load_settings()
    typer.echo(json.dumps(_doctor_report(settings), ensure_ascii=True, indent=2))


@settings_app.command("show")
def settings_show_cmd() -> None:
    settings = load_settings()
    typer.echo("delay_seconds={0}".format(settings.delay_seconds))
    typer.echo("ui_placement={0}".format(settings.ui_placement))
    for key, value in settings.link.as_dict().items():
        typer.echo("link.{0}={1}".format(key, value))


@settings_app.command("delay")
def settings_delay_cmd(
    seconds: int = typer.Argument(..., help="任务间隔秒数 (Seconds between tasks)"),
) -> None:
    try:
        saved = set_task_delay(seconds)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "任务间隔已设为 {0} 秒。".format(saved), "Task delay set to {0}s.".format(saved)))


@settings_app.command("placement")
def settings_placement_cmd(
    mode: str = typer.Argument(..., help="|".join(ALLOWED_UI_PLACEMENTS)),
) -> None:
    try:
        saved = set_ui_placement(mode)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "界面模式已设为 {0}。".format(saved), "UI placement set to {0}.".format(saved)))


@history_app.command("list")
def history_list_cmd() -> None:
    settings = load_settings()
    store = ChatHistoryStore(settings.history_db)
    try:
        render_sessions(store.list_sessions(), sys.stdout)
    finally:
        store.close()


@history_app.command("show")
def history_show_cmd(
    session_id: str = typer.Argument(..., help="会话 ID (Session ID)"),
) -> None:
    settings = load_settings()
    store = ChatHistoryStore(settings.history_db)
    try:
        session = store.get_session(session_id)
        if session is None:
            typer.echo(render_notice("error", "未找到会话：{0}".format(session_id), "Session not found."), err=True)
            raise typer.Exit(code=2)
        render_session(session, sys.stdout)
    finally:
        store.close()


@history_app.command("delete")
def history_delete_cmd(
    session_id: str = typer.Argument(..., help="会话 ID (Session ID)"),
) -> None:
    settings = load_settings()
    store = ChatHistoryStore(settings.history_db)
    try:
        deleted = store.delete_session(session_id)
    finally:
        store.close()
    if not deleted:
        typer.echo(render_notice("error", "未找到会话：{0}".format(session_id), "Session not found."), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "已删除会话 {0}。".format(session_id), "Deleted session {0}.".format(session_id)))


if __name__ == "__main__":
    app()
