"""
Command-line interface for aire

Provides CLI commands for:
- Running the engine: aire run --config aire.yml
- Taking one reading: aire sample
- Checking rules against a saved snapshot: aire evaluate --snapshot-file snap.json
- Listing playbooks: aire playbooks
- Managing configuration: aire config --show
"""

import asyncio
import json
import signal

import click
import yaml
from pydantic import ValidationError

from . import __version__
from .config import AireConfig, get_config, set_config
from .engine import ResponseEngine
from .errors import ConfigurationError
from .models import Snapshot
from .observability import initialize_observability, shutdown_observability
from .observability.metrics import get_metrics
from .rules import RuleEngine
from .sampler import MetricSampler


@click.group()
@click.version_option(version=__version__, prog_name="aire")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="YAML configuration file (default: aire.yml if present)",
)
@click.pass_context
def cli(ctx: click.Context, config_path):
    """aire - automated incident response engine"""
    if config_path:
        try:
            set_config(AireConfig.load_from_file(config_path))
        except (ConfigurationError, ValidationError) as e:
            raise click.ClickException(f"Invalid configuration: {e}") from e


async def _run_engine(config: AireConfig, once: bool) -> None:
    metrics = initialize_observability(config.telemetry) or get_metrics()
    engine = ResponseEngine.from_config(config, metrics=metrics)

    if once:
        try:
            snapshot = await engine.tick()
            await engine.wait_idle()
            status = await engine.get_status()
        finally:
            await engine.stop()
        click.echo(f"Sampled at {snapshot.timestamp.isoformat()} (degraded={snapshot.degraded})")
        click.echo(f"System status: {status['status']}")
        click.echo(f"Active alerts: {status['active_alerts']}")
        for alert in status["alerts"]:
            click.echo(f"  - [{alert['severity']}] {alert['title']}: {alert['message']}")
        click.echo(f"Active incidents: {status['active_incidents']}")
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.request_shutdown)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass
    await engine.run_forever()


@cli.command()
@click.option("--once", is_flag=True, help="Run a single sampling tick and exit")
def run(once: bool):
    """Start the response engine"""
    config = get_config()
    try:
        asyncio.run(_run_engine(config, once))
    except KeyboardInterrupt:
        click.echo("Interrupted")
    finally:
        shutdown_observability()


@cli.command()
def sample():
    """Take one snapshot and print it as JSON"""
    config = get_config()

    async def _sample() -> Snapshot:
        sampler = MetricSampler(config.sampler)
        try:
            return await sampler.sample()
        finally:
            await sampler.close()

    snapshot = asyncio.run(_sample())
    click.echo(json.dumps(snapshot.to_dict(), indent=2, default=str))


@cli.command()
@click.option(
    "--snapshot-file",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="JSON file containing a snapshot",
)
def evaluate(snapshot_file: str):
    """Evaluate the configured alert rules against a snapshot"""
    config = get_config()
    try:
        with open(snapshot_file, encoding="utf-8") as f:
            snapshot = Snapshot.model_validate(json.load(f))
    except (json.JSONDecodeError, ValidationError) as e:
        raise click.ClickException(f"Invalid snapshot: {e}") from e

    rules = {rule.id: rule for rule in config.rules}
    intents = RuleEngine().evaluate(snapshot, rules.values())

    click.echo(f"Evaluated {len(rules)} rules against {snapshot_file}")
    if not intents:
        click.echo("No rules triggered")
        return
    for intent in intents:
        rule = rules[intent.rule_id]
        click.echo(
            f"  TRIGGERED {rule.id} [{intent.severity}] "
            f"{rule.metric}={intent.value:g} {rule.condition} {rule.threshold:g}"
        )


@cli.command()
def playbooks():
    """List configured playbooks and their actions"""
    config = get_config()
    actions = {a.id: a for a in config.response_actions}

    for playbook in sorted(config.playbooks, key=lambda p: p.priority):
        state = "" if playbook.enabled else " (disabled)"
        click.echo(f"{playbook.priority} {playbook.id} - {playbook.name}{state}")
        click.echo(f"  triggers: {', '.join(playbook.triggers.alerts) or '-'}")
        for condition in playbook.triggers.conditions:
            click.echo(f"  when: {condition}")
        for i, action_id in enumerate(playbook.actions, 1):
            action = actions.get(action_id)
            if action is None:
                click.echo(f"  {i}. {action_id} (not configured)")
                continue
            mode = "automated" if action.automated else "manual"
            click.echo(f"  {i}. {action.id} [{action.type}, {mode}]")


@cli.command()
@click.option("--show", is_flag=True, help="Show current configuration")
@click.option("--format", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
def config(show: bool, format: str):
    """Manage aire configuration"""
    if not show:
        click.echo("Use --show to display current configuration")
        click.echo("Available options:")
        click.echo("  --show          Show current configuration")
        click.echo("  --format yaml   Output in YAML format (default)")
        click.echo("  --format json   Output in JSON format")
        return

    config_dict = get_config().model_dump(mode="json")
    if format == "yaml":
        click.echo(yaml.safe_dump(config_dict, default_flow_style=False, indent=2, sort_keys=False))
    else:
        click.echo(json.dumps(config_dict, indent=2))


def main():
    """Entry point for the CLI"""
    cli()


if __name__ == "__main__":
    main()
