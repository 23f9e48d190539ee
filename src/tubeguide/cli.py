"""TubeGuide CLI 入口

提供命令行操作接口：单次提问、交互对话、会话历史与摘要管理。
"""

import asyncio
import json
import sys
from typing import Any

import typer
from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from tubeguide.core.exceptions import TubeGuideError

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

app = typer.Typer(
    name="tubeguide",
    help="TubeGuide - London Underground 智能问答",
    add_completion=False,
)
console = Console()


def configure_logging(verbose: bool) -> None:
    """默认只输出 WARNING 以上日志，verbose 模式下输出 DEBUG"""
    logger.remove()
    if verbose:
        logger.add(sys.stderr, level="DEBUG", format=LOG_FORMAT)
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/dim]", highlight=False, end=""),
            level="WARNING",
            format="{message}\n",
        )


def create_guide():
    """创建应用实例，配置错误时退出"""
    from tubeguide.app import TubeGuide

    try:
        return TubeGuide()
    except TubeGuideError as e:
        console.print(f"[red]错误: {e}[/red]")
        raise typer.Exit(1)


def render_result(result: dict[str, Any], show_meta: bool = False) -> None:
    """渲染一次回答"""
    color = result["metadata"].get("line_color", "blue")
    title = f"[bold]{result['handler_id']}[/bold] · confidence {result['confidence']:.2f}"
    console.print(Panel(
        Markdown(result["response"]),
        title=title,
        border_style=color,
        padding=(1, 2),
    ))
    if result.get("collaborative"):
        console.print(f"[dim]协作专家: {', '.join(result['handlers_used'])}[/dim]")
    if result.get("is_fallback"):
        reason = result["metadata"].get("fallback_reason", "unknown")
        console.print(f"[yellow]回退响应: {reason}[/yellow]")
    if show_meta:
        console.print(f"[dim]阶段: {' → '.join(result['metadata']['stage_trace'])}[/dim]")
        console.print(f"[dim]耗时: {result['metadata']['processing_time_ms']} ms[/dim]")
    console.print(f"[dim]线程: {result['thread_id']}[/dim]")


@app.command()
def ask(
    query: str = typer.Argument(..., help="查询问题"),
    thread_id: str = typer.Option(None, "--thread", "-t", help="会话线程（默认新建）"),
    location: str = typer.Option(None, "--location", "-l", help="当前位置"),
    confirm: str = typer.Option(None, "--confirm", "-c", help="对多步骤行程的确认答复（yes/no）"),
    handler: str = typer.Option(None, "--handler", help="等待确认的专家（与 --confirm 一起使用，跳过重新分类）"),
    as_json: bool = typer.Option(False, "--json", help="以 JSON 输出完整结果"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细模式：显示 DEBUG 日志"),
):
    """单次提问"""
    configure_logging(verbose)
    context = {"location": location} if location else None

    async def run_ask():
        async with create_guide() as guide:
            with console.status("思考中..."):
                return await guide.process(
                    query,
                    thread_id=thread_id,
                    context=context,
                    confirmation=confirm,
                    confirmed_handler=handler,
                )

    result = asyncio.run(run_ask())
    if as_json:
        console.print_json(json.dumps(result, ensure_ascii=False, default=str))
        return
    render_result(result, show_meta=verbose)
    if result.get("rejected"):
        raise typer.Exit(1)


@app.command()
def chat(
    thread_id: str = typer.Option(None, "--thread", "-t", help="会话线程（默认新建）"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细模式：显示 DEBUG 日志"),
):
    """交互对话

    多步骤行程会先给出路线并请求确认，直接回答 yes / no 即可。
    """
    configure_logging(verbose)

    async def run_chat():
        async with create_guide() as guide:
            current_thread = thread_id
            pending_query: str | None = None
            pending_handler: str | None = None
            console.print("[bold]TubeGuide[/bold]")
            console.print("输入问题进行对话，输入 'exit' 退出\n")

            while True:
                try:
                    user_input = console.input("[bold green]❯ [/bold green]")
                except (KeyboardInterrupt, EOFError):
                    break

                if user_input.lower() in ("exit", "quit", "q"):
                    break
                if not user_input.strip():
                    continue

                if pending_query is not None:
                    query, confirmation, handler = pending_query, user_input, pending_handler
                else:
                    query, confirmation, handler = user_input, None, None

                with console.status("思考中..."):
                    result = await guide.process(
                        query,
                        thread_id=current_thread,
                        confirmation=confirmation,
                        confirmed_handler=handler,
                    )
                current_thread = result["thread_id"]
                awaiting = result["awaiting_confirmation"]
                pending_query = query if awaiting else None
                pending_handler = result["handler_id"] if awaiting else None

                console.print()
                render_result(result, show_meta=verbose)
                console.print()

        console.print("[dim]再见![/dim]")

    asyncio.run(run_chat())


@app.command()
def history(
    thread_id: str = typer.Argument(..., help="会话线程"),
    limit: int = typer.Option(50, "--limit", "-n", help="最近消息条数"),
    enrich: bool = typer.Option(False, "--enrich", "-e", help="同时显示会话摘要"),
):
    """查看会话历史"""
    configure_logging(False)

    async def run_history():
        async with create_guide() as guide:
            return await guide.history(thread_id, limit=limit, enrich=enrich)

    result = asyncio.run(run_history())
    messages = result["recent_messages"] if enrich else result

    if enrich and result["summaries"]:
        for summary in result["summaries"]:
            console.print(Panel(
                summary["summary"],
                title=f"摘要 · {summary['message_count']} 条消息",
                subtitle=", ".join(summary["topics"]),
                border_style="magenta",
            ))

    if not messages:
        console.print("[yellow]该线程暂无消息[/yellow]")
        return

    table = Table(title=f"会话 {thread_id}")
    table.add_column("时间", style="dim")
    table.add_column("角色", style="cyan")
    table.add_column("专家", style="green")
    table.add_column("内容")
    for message in messages:
        table.add_row(
            message["created_at"][:19],
            message["role"],
            message.get("handler_id") or "",
            message["content"][:120],
        )
    console.print(table)
    if enrich:
        console.print(f"[dim]共 {result['total_messages']} 条消息[/dim]")


@app.command()
def insights(
    thread_id: str = typer.Argument(..., help="会话线程"),
):
    """查看会话洞察（由摘要聚合）"""
    configure_logging(False)

    async def run_insights():
        async with create_guide() as guide:
            return await guide.insights(thread_id)

    result = asyncio.run(run_insights())
    if result is None:
        console.print("[yellow]该线程暂无摘要[/yellow]")
        return

    table = Table(title=f"会话洞察 · {thread_id}")
    table.add_column("主题", style="cyan")
    table.add_column("次数", justify="right")
    for item in result["top_topics"]:
        table.add_row(item["topic"], str(item["count"]))
    console.print(table)
    console.print(f"整体情绪: [bold]{result['overall_sentiment']}[/bold]")
    console.print(
        f"摘要数: {result['summary_count']}，已摘要消息: {result['messages_summarized']}"
    )


@app.command()
def summarize(
    thread_id: str = typer.Argument(..., help="会话线程"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细模式：显示 DEBUG 日志"),
):
    """立即为未摘要的消息生成摘要"""
    configure_logging(verbose)

    async def run_summarize():
        async with create_guide() as guide:
            with console.status("生成摘要..."):
                return await guide.trigger_summary(thread_id)

    summary_id = asyncio.run(run_summarize())
    if summary_id is None:
        console.print("[yellow]没有需要摘要的消息[/yellow]")
    else:
        console.print(f"[green]✓ 已创建摘要 {summary_id}[/green]")


@app.command()
def health():
    """健康检查"""
    configure_logging(False)

    async def run_health():
        async with create_guide() as guide:
            return await guide.health(), guide.info()

    status, info = asyncio.run(run_health())
    style = "green" if status["status"] == "healthy" else "red"
    console.print(f"[{style}]状态: {status['status']}[/{style}]")

    table = Table(title=f"TubeGuide {info['version']}")
    table.add_column("专家", style="cyan")
    table.add_column("名称", style="green")
    table.add_column("颜色")
    for specialist in info["specialists"]:
        table.add_row(
            specialist["id"],
            specialist["name"],
            f"[{specialist['color']}]■[/] {specialist['color']}",
        )
    console.print(table)
    if status["status"] != "healthy":
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
