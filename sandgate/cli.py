"""
CLI for sandgate.

Provides the hook entry points the agent runtime calls, plus commands
for inspecting the policy and the audit log.
"""

import json
import shutil
import sys
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from sandgate.audit import AuditLogger, iter_records, is_sensitive, SENSITIVE_PREFIX
from sandgate.config import GateConfig
from sandgate.engine import DecisionEngine
from sandgate.errors import ConfigError
from sandgate.hooks import run_post_tool, run_pre_tool
from sandgate.logging_utils import setup_logging
from sandgate.policy import Policy, load_file


console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
SETTINGS_PATH = Path.home() / ".claude" / "settings.json"
HOOK_MARKER = "# sandgate"


def get_config() -> GateConfig:
    """Load configuration from environment, exiting on error."""
    try:
        return GateConfig.from_env()
    except ValueError as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(EXIT_CONFIG_ERROR)


def get_policy(config: GateConfig, policy_path: Optional[str] = None) -> Policy:
    """Load the policy, exiting on ConfigError. Never serve a partial policy."""
    try:
        if policy_path:
            return load_file(policy_path)
        return config.load_policy()
    except ConfigError as e:
        err_console.print(f"[red]Policy error:[/red] {e}")
        sys.exit(EXIT_CONFIG_ERROR)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """sandgate - policy gate for coding agent tool calls."""
    config = get_config()
    setup_logging(verbose, log_dir=config.log_dir, debug_file=config.debug)
    ctx.obj = config


# ---------------------------------------------------------------------------
# Hook entry points
# ---------------------------------------------------------------------------


@main.command(name="pre-tool")
@click.option("--policy", "policy_path", type=click.Path(dir_okay=False), help="Policy file (overrides SANDGATE_POLICY)")
@click.pass_obj
def pre_tool(config: GateConfig, policy_path: Optional[str]):
    """
    Decide on one tool invocation read from stdin.

    Exit 0 = allow (or ask, with a JSON decision on stdout), exit 1 = deny
    with the reason on stderr.
    """
    policy = get_policy(config, policy_path)
    engine = DecisionEngine(policy)
    audit = AuditLogger.for_directory(config.log_dir)

    result = run_pre_tool(sys.stdin.read(), engine, audit)
    if result.stdout:
        click.echo(result.stdout)
    if result.stderr:
        click.echo(result.stderr, err=True)
    sys.exit(result.exit_code)


@main.command(name="post-tool")
@click.option("--policy", "policy_path", type=click.Path(dir_okay=False), help="Policy file (overrides SANDGATE_POLICY)")
@click.pass_obj
def post_tool(config: GateConfig, policy_path: Optional[str]):
    """Record the outcome of an executed tool invocation read from stdin."""
    policy = get_policy(config, policy_path)
    engine = DecisionEngine(policy)
    audit = AuditLogger.for_directory(config.log_dir)
    result = run_post_tool(sys.stdin.read(), engine, audit)
    sys.exit(result.exit_code)


@main.command()
@click.option("--days", "-d", type=int, help="Retention window (defaults to the policy's)")
@click.pass_obj
def sweep(config: GateConfig, days: Optional[int]):
    """Delete audit log segments older than the retention window."""
    if days is None:
        days = get_policy(config).settings.retention_days
    if days < 1:
        err_console.print("[red]Error:[/red] --days must be at least 1")
        sys.exit(EXIT_CONFIG_ERROR)
    deleted = AuditLogger.for_directory(config.log_dir).sweep(days)
    for path in deleted:
        console.print(f"[green][OK][/green] Removed {path.name}")
    if not deleted:
        console.print(f"[dim]Nothing older than {days} days in {config.log_dir}[/dim]")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@main.group()
def policy():
    """Validate or display the policy document."""
    pass


@policy.command(name="validate")
@click.argument("path", type=click.Path(dir_okay=False))
def policy_validate(path: str):
    """Load PATH and report problems (exit 2 on error)."""
    try:
        loaded = load_file(path)
    except ConfigError as e:
        err_console.print(f"[red][FAIL][/red] {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    counts = loaded.rules.counts()
    console.print(
        f"[green][OK][/green] {len(loaded.rules)} rules "
        f"({counts['deny']} deny, {counts['ask']} ask, {counts['allow']} allow)"
    )


@policy.command(name="show")
@click.option("--policy", "policy_path", type=click.Path(dir_okay=False), help="Policy file (overrides SANDGATE_POLICY)")
@click.pass_obj
def policy_show(config: GateConfig, policy_path: Optional[str]):
    """Print the active rules and settings."""
    loaded = get_policy(config, policy_path)
    console.print(f"[dim]Source: {loaded.source}[/dim]\n")

    table = Table(title="Rules (deny > ask > allow, first match wins)")
    table.add_column("#", justify="right")
    table.add_column("Mode")
    table.add_column("Tool")
    table.add_column("Pattern")
    table.add_column("Reason")
    colors = {"deny": "red", "ask": "yellow", "allow": "green"}
    for rule in loaded.rules:
        color = colors[rule.mode.value]
        table.add_row(str(rule.index), f"[{color}]{rule.mode.value}[/{color}]", rule.tool, rule.pattern, rule.reason)
    console.print(table)

    s = loaded.settings
    console.print(f"\nauto-allow when sandboxed: [bold]{s.auto_allow_when_sandboxed}[/bold]")
    console.print(f"retention: {s.retention_days} days")
    console.print(f"max read: {s.max_read_bytes} bytes")
    console.print(f"permitted edit roots: {', '.join(s.permitted_edit_roots)}")


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def _records_table(records, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Time")
    table.add_column("Session")
    table.add_column("Tool")
    table.add_column("Phase")
    table.add_column("Verdict")
    table.add_column("Subject")
    for r in records:
        subject = r.parameters.get("command") or r.parameters.get("file_path") or r.parameters.get("filePath") or ""
        verdict = r.verdict.outcome.value
        if r.phase == "outcome" and r.execution_success is False:
            verdict += " (failed)"
        table.add_row(r.timestamp, r.session_id[:8], r.tool, r.phase, verdict, str(subject)[:80])
    return table


@main.group()
def audit():
    """Inspect the audit log."""
    pass


@audit.command(name="tail")
@click.option("--limit", "-n", default=20, help="Number of records to show")
@click.pass_obj
def audit_tail(config: GateConfig, limit: int):
    """Show the most recent audit records."""
    segments = AuditLogger.for_directory(config.log_dir).sink.segments()
    if not segments:
        console.print(f"[yellow]No audit log in {config.log_dir}[/yellow]")
        return
    records = []
    for segment in reversed(segments):
        records = list(iter_records(segment)) + records
        if len(records) >= limit:
            break
    console.print(_records_table(records[-limit:], f"Last {min(limit, len(records))} records"))


@audit.command(name="sensitive")
@click.option("--limit", "-n", default=50, help="Number of alerts to show")
@click.pass_obj
def audit_sensitive(config: GateConfig, limit: int):
    """List sensitive-operation alerts (push, publish, registry login)."""
    path = config.log_dir / f"{SENSITIVE_PREFIX}.jsonl"
    if not path.exists():
        console.print("[dim]No sensitive operations recorded[/dim]")
        return
    records = [r for r in iter_records(path) if is_sensitive(r)]
    console.print(_records_table(records[-limit:], "Sensitive operations"))


# ---------------------------------------------------------------------------
# Install / uninstall hooks in the agent runtime settings
# ---------------------------------------------------------------------------


def _hook_command(subcommand: str) -> str:
    # Use forward slashes for the command (works on Windows too)
    exe = shutil.which("sandgate")
    if exe:
        base = str(Path(exe)).replace("\\", "/")
    else:
        python_path = str(Path(sys.executable)).replace("\\", "/")
        base = f"{python_path} -m sandgate"
    return f"{base} {subcommand} {HOOK_MARKER}"


def install_hooks(settings: dict) -> bool:
    """Add PreToolUse/PostToolUse entries. Returns True if settings changed.

    >>> s = {}
    >>> install_hooks(s), install_hooks(s)
    (True, False)
    >>> sorted(s["hooks"])
    ['PostToolUse', 'PreToolUse']
    """
    changed = False
    hooks = settings.setdefault("hooks", {})
    for event, subcommand in (("PreToolUse", "pre-tool"), ("PostToolUse", "post-tool")):
        entries = hooks.setdefault(event, [])
        command = _hook_command(subcommand)
        for entry in entries:
            if HOOK_MARKER in str(entry):
                current = [h.get("command") for h in entry.get("hooks", [])]
                if current != [command]:
                    entry["hooks"] = [{"type": "command", "command": command, "timeout": 30}]
                    changed = True
                break
        else:
            entries.append({
                "matcher": "*",
                "hooks": [{"type": "command", "command": command, "timeout": 30}],
            })
            changed = True
    return changed


def remove_hooks(settings: dict) -> bool:
    """Remove our hook entries. Returns True if anything was removed."""
    modified = False
    for event in ("PreToolUse", "PostToolUse"):
        entries = settings.get("hooks", {}).get(event)
        if not entries:
            continue
        kept = [h for h in entries if HOOK_MARKER not in str(h)]
        if len(kept) < len(entries):
            settings["hooks"][event] = kept
            modified = True
    return modified


def _read_settings(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        err_console.print(f"[red][FAIL][/red] {path} is not valid JSON: {e}")
        sys.exit(1)


@main.command()
@click.option("--settings", "settings_file", type=click.Path(dir_okay=False), help="Settings file to modify")
def install(settings_file: Optional[str]):
    """Register sandgate as PreToolUse/PostToolUse hooks."""
    path = Path(settings_file) if settings_file else SETTINGS_PATH
    settings = _read_settings(path)
    if not install_hooks(settings):
        console.print("[yellow][-][/yellow] sandgate hooks already configured")
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
    console.print(f"[green][OK][/green] Installed sandgate hooks in {path}")


@main.command()
@click.option("--settings", "settings_file", type=click.Path(dir_okay=False), help="Settings file to modify")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def uninstall(settings_file: Optional[str], yes: bool):
    """Remove sandgate hooks from the settings file."""
    path = Path(settings_file) if settings_file else SETTINGS_PATH
    if not path.exists():
        console.print("[dim]No settings file, nothing to remove[/dim]")
        return
    if not yes and not click.confirm(f"Remove sandgate hooks from {path}?"):
        console.print("Cancelled")
        return
    settings = _read_settings(path)
    if remove_hooks(settings):
        path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
        console.print("[green][OK][/green] Removed sandgate hooks")
    else:
        console.print("[yellow][-][/yellow] No sandgate hooks found")


if __name__ == "__main__":
    main()
