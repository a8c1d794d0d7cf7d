"""
命令行接口模块

提供了 libvirt-reconciler 的命令行界面，支持：
- 应用期望状态（apply）和预览变更（plan）
- 拓扑校验与 XML 渲染
- 配置管理
- Libvirt 连接检查
"""

import asyncio
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from typing_extensions import Annotated

from .config import Config
from .exceptions import ConfigurationError, ReconcilerError, TopologyValidationError
from .generator import ProfileGenerator
from .logging import configure_logging, get_logger
from .models import DesiredState, Outcome, ReconcileReport, ValidationIssue
from .topology import load_desired_state
from .validation import validate as validate_topology
from .xml_templates import render_domain, render_network, render_pool, render_volume

# 创建 Typer 应用实例
app = typer.Typer(
    name="libvirt-reconciler",
    help="🧩 Libvirt Reconciler - 声明式虚拟化基础设施编译与调和工具",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

# Rich Console 用于美化输出
console = Console()

# 各结果对应的显示样式
OUTCOME_STYLES = {
    Outcome.CREATED: "green",
    Outcome.UPDATED: "yellow",
    Outcome.UNCHANGED: "dim",
    Outcome.DELETED: "magenta",
    Outcome.SKIPPED_UNMANAGED: "blue",
    Outcome.FAILED: "bold red",
    Outcome.CANCELLED: "red",
}

TopologyOption = Annotated[
    Path,
    typer.Option(
        "--file", "-f",
        help="拓扑文件路径 (YAML 格式)",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    )
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config", "-c",
        help="配置文件路径 (YAML 格式)",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    )
]


def version_callback(value: bool):
    """显示版本信息并退出"""
    if value:
        from . import __version__
        console.print(f"[bold green]libvirt-reconciler[/bold green] version [bold blue]{__version__}[/bold blue]")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version", "-V",
            callback=version_callback,
            help="显示版本信息并退出"
        )
    ] = None,
):
    """
    🧩 Libvirt Reconciler

    将网络、存储池、卷和虚拟机的声明式描述编译为 libvirt XML，
    并以最少的操作将其应用到运行中的 libvirt 守护进程。
    """
    pass


@app.command()
def apply(
    file: TopologyOption,
    config: ConfigOption = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="只报告将要执行的变更，不做修改"
        )
    ] = False,
    libvirt_uri: Annotated[
        Optional[str],
        typer.Option(
            "--uri",
            help="Libvirt 连接 URI (例如: qemu:///system)"
        )
    ] = None,
    readonly: Annotated[
        bool,
        typer.Option(
            "--readonly",
            help="使用只读模式连接 libvirt（隐含 --dry-run）"
        )
    ] = False,
    max_workers: Annotated[
        Optional[int],
        typer.Option(
            "--max-workers", "-j",
            help="网络和存储池的最大并发数",
            min=1,
            max=32,
        )
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option(
            "--log-level", "-l",
            help="日志级别",
        )
    ] = None,
    log_file: Annotated[
        Optional[Path],
        typer.Option(
            "--log-file",
            help="日志文件路径"
        )
    ] = None,
):
    """
    🚀 应用期望状态

    校验拓扑文件，比较期望状态与 libvirt 中的实际状态，
    并执行必要的创建、更新和删除操作。
    """
    app_config = _load_config(
        config_file=config,
        libvirt_uri=libvirt_uri,
        readonly=readonly,
        dry_run=dry_run,
        max_workers=max_workers,
        log_level=log_level,
        log_file=log_file,
    )
    report = asyncio.run(_async_apply(file, app_config))
    raise typer.Exit(code=report.exit_code)


@app.command()
def plan(
    file: TopologyOption,
    config: ConfigOption = None,
    libvirt_uri: Annotated[
        Optional[str],
        typer.Option(
            "--uri",
            help="Libvirt 连接 URI"
        )
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option(
            "--log-level", "-l",
            help="日志级别",
        )
    ] = None,
):
    """
    🔍 预览变更

    与 apply --dry-run 相同：读取实际状态并报告将要发生的变更。
    """
    app_config = _load_config(
        config_file=config,
        libvirt_uri=libvirt_uri,
        dry_run=True,
        log_level=log_level,
    )
    report = asyncio.run(_async_apply(file, app_config))
    raise typer.Exit(code=report.exit_code)


async def _async_apply(file: Path, app_config: Config) -> ReconcileReport:
    """异步执行一次调和"""
    from .libvirt_client import LibvirtClient
    from .reconciler import Reconciler

    logging_manager = configure_logging(app_config)
    logger = get_logger(__name__)

    try:
        desired = load_desired_state(str(file), ProfileGenerator(app_config.generator))

        async with LibvirtClient(app_config) as client:
            report = await Reconciler(client, app_config).apply(desired)

        _display_report(report)
        return report

    except TopologyValidationError as e:
        logger.error("拓扑校验失败: {}", e.message)
        _display_issues(e.issues)
        raise typer.Exit(code=1)
    except ConfigurationError as e:
        logger.error("配置错误: {}", e.message)
        console.print(f"[red]❌ 配置错误: {e.message}[/red]")
        raise typer.Exit(code=1)
    except ReconcilerError as e:
        logger.critical("Libvirt 操作失败: {}", e.message)
        console.print(f"[red]❌ Libvirt 操作失败: {e.message}[/red]")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        logger.info("收到中断信号，正在退出...")
        console.print("\n[yellow]⚠️  收到中断信号，正在退出...[/yellow]")
        raise typer.Exit(code=130)
    finally:
        logging_manager.cleanup()


@app.command()
def validate(
    file: TopologyOption,
    config: ConfigOption = None,
):
    """
    ✅ 校验拓扑文件

    检查名称唯一性、引用完整性和地址规划，不连接 libvirt。
    """
    app_config = _load_config(config_file=config)
    desired = _load_topology(file, app_config)

    issues = validate_topology(desired)
    if issues:
        _display_issues(issues)
        raise typer.Exit(code=1)

    table = Table(title="📋 拓扑校验结果", show_header=True, header_style="bold magenta")
    table.add_column("类型", style="cyan", no_wrap=True)
    table.add_column("模式", style="white")
    table.add_column("资源", style="green")

    for kind, state, names in (
        ("网络", desired.networks, [n.name for n in desired.managed_networks()]),
        ("存储池", desired.pools, [p.name for p in desired.managed_pools()]),
        ("虚拟机", desired.domains, [d.name for d in desired.managed_domains()]),
    ):
        table.add_row(kind, state.mode, ", ".join(names) or "-")

    console.print(table)
    console.print("[bold green]✅ 拓扑校验成功！[/bold green]")


@app.command()
def render(
    file: TopologyOption,
    config: ConfigOption = None,
    output_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--output-dir", "-o",
            help="将 XML 写入此目录，而不是打印到终端",
            file_okay=False,
            dir_okay=True,
        )
    ] = None,
):
    """
    📝 渲染 libvirt XML

    输出拓扑中每个受管资源的 libvirt XML 定义。
    """
    app_config = _load_config(config_file=config)
    desired = _load_topology(file, app_config)

    documents = []
    for network in desired.managed_networks():
        documents.append((f"network-{network.name}", render_network(network)))
    for pool in desired.managed_pools():
        documents.append((f"pool-{pool.name}", render_pool(pool)))
        for entry in pool.volumes:
            if entry.present:
                documents.append((f"volume-{pool.name}-{entry.name}", render_volume(entry.volume)))
    for domain in desired.managed_domains():
        documents.append((f"domain-{domain.name}", render_domain(domain)))

    if output_dir is not None:
        output_dir.mkdir(parents=True, exist_ok=True)
        for name, document in documents:
            path = output_dir / f"{name}.xml"
            path.write_text(document + "\n", encoding="utf-8")
            console.print(f"✅ 已写入: [bold blue]{path}[/bold blue]")
        return

    for name, document in documents:
        console.print(Panel(Syntax(document, "xml"), title=name, border_style="cyan"))


@app.command()
def check_libvirt(
    uri: Annotated[
        Optional[str],
        typer.Option(
            "--uri",
            help="Libvirt 连接 URI"
        )
    ] = None,
):
    """
    🔍 检查 Libvirt 连接

    测试与 libvirt 守护进程的连接，并列出网络、存储池和虚拟机。
    """
    from .libvirt_client import LibvirtClient

    app_config = _load_config(config_file=None, libvirt_uri=uri, readonly=True)
    console.print(f"[blue]🔍 正在检查 Libvirt 连接: {app_config.libvirt.uri}[/blue]")

    async def check_connection():
        async with LibvirtClient(app_config) as client:
            networks = await client.list_networks()
            pools = await client.list_pools()
            domains = await client.list_domains()

        table = Table(title="🖥️  Libvirt 连接状态", show_header=True, header_style="bold blue")
        table.add_column("项目", style="cyan", no_wrap=True)
        table.add_column("值", style="green")

        table.add_row("连接 URI", app_config.libvirt.uri)
        table.add_row("连接状态", "✅ 已连接")
        table.add_row("网络", ", ".join(networks) or "-")
        table.add_row("存储池", ", ".join(pools) or "-")
        table.add_row("虚拟机", ", ".join(domains) or "-")

        console.print(table)

    try:
        asyncio.run(check_connection())
    except ReconcilerError as e:
        console.print(f"[red]❌ Libvirt 连接检查失败: {e.message}[/red]")
        raise typer.Exit(code=1)

    console.print("[bold green]✅ Libvirt 连接检查成功！[/bold green]")


@app.command()
def generate_config(
    output: Annotated[
        Path,
        typer.Option(
            "--output", "-o",
            help="输出配置文件路径"
        )
    ] = Path("config.yaml"),
):
    """
    📝 生成示例配置文件

    生成一个包含所有可配置选项的示例配置文件。
    """
    try:
        config = Config()
        config.to_yaml_file(str(output))
        console.print(f"✅ 已生成示例配置文件: [bold blue]{output}[/bold blue]")
        console.print("请根据需要编辑配置文件后使用。")
    except OSError as e:
        console.print(f"[red]❌ 生成配置文件失败: {e}[/red]")
        raise typer.Exit(code=1)


def _load_config(
    config_file: Optional[Path],
    libvirt_uri: Optional[str] = None,
    readonly: bool = False,
    dry_run: bool = False,
    max_workers: Optional[int] = None,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
) -> Config:
    """从各种来源加载和合并配置（命令行参数优先级最高）"""
    try:
        app_config = Config.load(str(config_file) if config_file else None)
    except (ValueError, OSError) as e:
        console.print(f"[red]❌ 配置加载失败: {e}[/red]")
        raise typer.Exit(code=1)

    # 应用命令行覆盖
    if libvirt_uri:
        app_config.libvirt.uri = libvirt_uri

    if readonly:
        app_config.libvirt.readonly = True

    if dry_run:
        app_config.reconcile.dry_run = True

    if max_workers:
        app_config.reconcile.max_workers = max_workers

    if log_level:
        app_config.logging.level = log_level.upper()

    if log_file:
        app_config.logging.file = str(log_file)

    return app_config


def _load_topology(file: Path, app_config: Config) -> DesiredState:
    """加载拓扑文件，失败时退出"""
    try:
        return load_desired_state(str(file), ProfileGenerator(app_config.generator))
    except ConfigurationError as e:
        console.print(f"[red]❌ 拓扑加载失败: {e.message}[/red]")
        raise typer.Exit(code=1)


def _display_issues(issues: List[ValidationIssue]) -> None:
    """显示校验问题"""
    table = Table(title="❌ 拓扑校验失败", show_header=True, header_style="bold red")
    table.add_column("类型", style="cyan", no_wrap=True)
    table.add_column("名称", style="white")
    table.add_column("代码", style="yellow")
    table.add_column("说明", style="red")

    for issue in issues:
        table.add_row(issue.kind.value, issue.name, issue.code, issue.message)

    console.print(table)


def _display_report(report: ReconcileReport) -> None:
    """显示调和报告"""
    title = "📊 调和结果（预览）" if report.dry_run else "📊 调和结果"
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("类型", style="cyan", no_wrap=True)
    table.add_column("名称", style="white")
    table.add_column("结果", justify="center")
    table.add_column("说明", style="white")

    for result in report.results:
        style = OUTCOME_STYLES.get(result.outcome, "white")
        notes = list(result.details)
        if result.outcome == Outcome.FAILED:
            notes.insert(0, f"{result.error_kind.value if result.error_kind else 'error'} "
                            f"({result.operation}): {result.reason}")
        table.add_row(
            result.kind.value,
            result.name,
            f"[{style}]{result.outcome.value}[/{style}]",
            "; ".join(notes),
        )

    console.print(table)

    summary = ", ".join(f"{outcome}: {count}" for outcome, count in sorted(report.counts().items()))
    border = "green" if report.success else "red"
    status = "✅ 成功" if report.success else "❌ 存在失败或取消的资源"
    console.print(Panel.fit(f"{status}\n{summary or '无资源'}", title="摘要", border_style=border))


def main_cli():
    """主入口点"""
    app()


if __name__ == '__main__':
    main_cli()
