"""
CLI 命令模块 - chatgate 的命令行命令定义。

本模块使用 Typer 框架定义 chatgate 的 CLI 命令体系：
- onboard：生成默认配置文件
- status：查看配置与会话存储状态
- sessions：会话管理（列表、查看、删除）

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（表格、颜色）
"""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from chatgate import __logo__, __version__

app = typer.Typer(
    name="chatgate",
    help=f"{__logo__} chatgate - session and batching core for chat gateways",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    """当用户传入 --version/-v 参数时，打印版本号并退出。"""
    if value:
        console.print(f"{__logo__} chatgate v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """chatgate CLI 根命令回调。"""
    pass


def _store():
    """按当前配置打开会话存储。"""
    from chatgate.config.loader import load_config
    from chatgate.session.store import JsonlSessionStore

    return JsonlSessionStore(load_config().sessions_path)


# ============================================================================
# Onboard / Status
# ============================================================================


@app.command()
def onboard():
    """在 ~/.chatgate/config.json 生成默认配置。"""
    from chatgate.config.loader import get_config_path, save_config
    from chatgate.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print(f"[green]✓[/green] Sessions will be stored in {config.sessions_path}")


@app.command()
def status():
    """显示配置、批处理模式、会话作用域和重置策略。"""
    from chatgate.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()
    sessions_path = config.sessions_path

    console.print(f"{__logo__} chatgate Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Sessions: {sessions_path} {'[green]✓[/green]' if sessions_path.exists() else '[red]✗[/red]'}")

    b = config.batching
    console.print(f"Batching: {b.mode} (debounce {b.debounce_ms}ms, max batch {b.max_batch_size}, max wait {b.max_wait_ms}ms)")

    s = config.session
    reset = s.reset.mode
    if reset in ("idle", "both"):
        reset += f", idle {s.reset.idle_minutes}m"
    if s.reset.mode in ("daily", "both"):
        reset += f", daily at {s.reset.at_hour:02d}:00"
    console.print(f"Scope: {s.dm_scope}")
    console.print(f"Reset: {reset}  triggers: {', '.join(s.reset_triggers) or '-'}")
    if s.cleanup.enabled:
        console.print(f"Cleanup: max age {s.cleanup.max_age_days}d, idle {s.cleanup.idle_days}d")
    else:
        console.print("Cleanup: [dim]disabled[/dim]")


# ============================================================================
# Session Commands
# ============================================================================


sessions_app = typer.Typer(help="Manage persisted sessions")
app.add_typer(sessions_app, name="sessions")


@sessions_app.command("list")
def sessions_list(
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum sessions to show"),
):
    """列出已持久化的会话（最近更新的在前）。"""
    from chatgate.session.models import Session

    records = asyncio.run(_store().list_all())
    if not records:
        console.print("No sessions.")
        return

    table = Table(title="Sessions")
    table.add_column("Key", style="cyan")
    table.add_column("ID", no_wrap=True)
    table.add_column("Turns", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")

    for record in records[:limit]:
        session = Session.from_record(record)
        table.add_row(
            session.key,
            session.id,
            str(len(session.history)),
            str(session.message_count),
            session.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@sessions_app.command("show")
def sessions_show(
    key: str = typer.Argument(..., help="Session key"),
    turns: int = typer.Option(10, "--turns", "-t", help="Recent turns to show"),
):
    """显示一个会话的摘要和最近几轮对话。"""
    from chatgate.session.models import Session
    from chatgate.utils.helpers import truncate_string

    record = asyncio.run(_store().get(key))
    if record is None:
        console.print(f"[red]Session {key} not found[/red]")
        raise typer.Exit(1)

    session = Session.from_record(record)
    console.print(f"[bold]{session.key}[/bold] ({session.id})")
    console.print(f"Created: {session.created_at:%Y-%m-%d %H:%M}  Last activity: {session.last_activity:%Y-%m-%d %H:%M}")
    if session.checkpoint:
        console.print(f"Checkpoint: {len(session.checkpoint.history)} turns saved at {session.checkpoint.saved_at:%Y-%m-%d %H:%M}")
    if session.context_summary:
        console.print("\n[dim]Summary:[/dim]")
        console.print(session.context_summary)

    console.print()
    for turn in session.history[-turns:]:
        style = "green" if turn.role == "user" else "blue"
        console.print(f"[{style}]{turn.role}[/{style}] {truncate_string(turn.content, 200)}")


@sessions_app.command("delete")
def sessions_delete(
    key: str = typer.Argument(..., help="Session key"),
):
    """删除一个已持久化的会话。"""
    if asyncio.run(_store().delete(key)):
        console.print(f"[green]✓[/green] Deleted session {key}")
    else:
        console.print(f"[red]Session {key} not found[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
