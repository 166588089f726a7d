"""
NetPilot 命令行入口模块。

提供 CLI 命令：run（前台运行流水线）、check（验证启动配置文件）、
next-run（预览 cron 表达式的下次执行时间）和 audit（查看最近的审计日志）。
"""
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

import click

from netpilot import __version__
from netpilot.bootstrap import load_bootstrap
from netpilot.core.config import settings as default_settings
from netpilot.core.exceptions import BusinessError
from netpilot.models.alert import OPERATORS
from netpilot.services.audit import AuditLogger
from netpilot.services.cron import CronExpression, validate_cron


@click.group(invoke_without_command=True)
@click.option("--data-dir", "-d", default=None, help="Data directory (overrides NETPILOT_DATA_DIR)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, data_dir, verbose):
    """NetPilot - 网络设备自治运维流水线。"""
    ctx.ensure_object(dict)
    cfg = default_settings
    if data_dir:
        cfg = cfg.model_copy(update={"data_dir": Path(data_dir)})
    ctx.obj["settings"] = cfg

    level = logging.DEBUG if verbose else getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if ctx.invoked_subcommand is None:
        click.echo(f"NetPilot v{__version__}")
        click.echo(f"Data dir: {cfg.data_dir}")
        click.echo("Use --help for available commands")


async def _run_pipeline(cfg, bootstrap_path):
    logger = logging.getLogger("netpilot")
    from netpilot.main import build_pipeline

    pipeline = build_pipeline(cfg)
    if bootstrap_path:
        created = await pipeline.apply_bootstrap(load_bootstrap(bootstrap_path))
        logger.info(f"Bootstrap: {created}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    # 注册信号处理，优雅关闭
    def _shutdown(sig):
        logger.info(f"Received {sig.name}, shutting down...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    await pipeline.start()
    try:
        await stop_event.wait()
    finally:
        await pipeline.stop()


@cli.command()
@click.option("--bootstrap", "-b", default=None, help="Bootstrap YAML (channels, rules, tasks, patterns)")
@click.pass_context
def run(ctx, bootstrap):
    """以前台模式运行流水线。"""
    logger = logging.getLogger("netpilot")
    cfg = ctx.obj["settings"]

    logger.info(f"Starting NetPilot v{__version__}")
    logger.info(f"Data dir: {cfg.data_dir}")
    logger.info(f"Device dry-run: {'enabled' if cfg.device_dry_run else 'disabled'}")
    logger.info(f"AI analysis: {'enabled' if cfg.ai_enabled else 'disabled'}")

    try:
        asyncio.run(_run_pipeline(cfg, bootstrap))
    except (FileNotFoundError, BusinessError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except Exception:
        logger.exception("Pipeline crashed")
        sys.exit(1)


@cli.command()
@click.argument("path")
def check(path):
    """验证启动配置文件是否正确。"""
    try:
        cfg = load_bootstrap(path)
    except (FileNotFoundError, BusinessError) as e:
        click.echo(f"❌ Config error: {e}", err=True)
        sys.exit(1)

    problems = []
    for task in cfg.tasks:
        if not validate_cron(task.cron):
            problems.append(f"task '{task.name}': invalid cron '{task.cron}'")
    for rule in cfg.rules:
        if rule.operator not in OPERATORS:
            problems.append(f"rule '{rule.name}': unknown operator '{rule.operator}'")
        unknown = [c for c in rule.channels if c not in {ch.name for ch in cfg.channels}]
        if unknown:
            problems.append(f"rule '{rule.name}': unknown channels {', '.join(unknown)}")
    for pattern in cfg.patterns:
        if not pattern.remediation_script.strip():
            problems.append(f"pattern '{pattern.name}': empty remediation script")
        for cond in pattern.conditions:
            if cond.operator not in OPERATORS:
                problems.append(f"pattern '{pattern.name}': unknown operator '{cond.operator}'")

    if problems:
        for problem in problems:
            click.echo(f"❌ {problem}", err=True)
        sys.exit(1)

    click.echo(f"✅ Config OK: {path}")
    click.echo(f"   Channels: {len(cfg.channels)}")
    click.echo(f"   Rules: {len(cfg.rules)}")
    click.echo(f"   Tasks: {len(cfg.tasks)}")
    click.echo(f"   Patterns: {len(cfg.patterns)}")


@cli.command("next-run")
@click.argument("expr")
@click.option("--count", "-n", default=5, show_default=True, help="Number of upcoming runs")
def next_run_cmd(expr, count):
    """预览 cron 表达式接下来的执行时间。"""
    try:
        cron = CronExpression(expr)
    except BusinessError as e:
        click.echo(f"❌ {e.message}" + (f" ({e.detail})" if e.detail else ""), err=True)
        sys.exit(1)

    current = datetime.now().astimezone()
    for _ in range(count):
        current = cron.next_run(current)
        if current is None:
            click.echo("(no match within one year)")
            break
        click.echo(current.isoformat(timespec="minutes"))


@cli.command()
@click.option("--action", default=None, help="Filter by action")
@click.option("--actor", default=None, type=click.Choice(["system", "user"]), help="Filter by actor")
@click.option("--limit", default=20, show_default=True, help="Max entries")
@click.pass_context
def audit(ctx, action, actor, limit):
    """查看最近的审计日志。"""
    cfg = ctx.obj["settings"]
    entries = asyncio.run(AuditLogger(cfg.data_dir).query(action=action, actor=actor, limit=limit))
    if not entries:
        click.echo("No audit entries")
        return
    for entry in entries:
        trigger = entry.details.trigger or "-"
        status = "ERROR" if entry.details.error else "ok"
        click.echo(f"{entry.timestamp.isoformat(timespec='seconds')}  {entry.action:<20} {entry.actor:<6} {trigger}  {status}")


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
