"""Click CLI for inspecting rate-limit rules and the admission audit log."""

from __future__ import annotations

import json
from pathlib import Path

import click

from src.audit.logger import summarize_audit_log
from src.ratelimit.rules import RULES, match_rule


@click.group()
def cli() -> None:
    """Essay-marking admission gateway CLI."""


@cli.command()
def rules() -> None:
    """List rate-limit rules in priority order."""
    output = []
    for priority, rule in enumerate(RULES, start=1):
        item: dict[str, object] = {
            "priority": priority,
            "endpoint_class": rule.endpoint_class.value,
            "window_ms": rule.config.window_ms,
            "max_requests": rule.config.max_requests,
        }
        if rule.anonymous_config is not None:
            item["anonymous_max_requests"] = rule.anonymous_config.max_requests
        output.append(item)
    click.echo(json.dumps(output, indent=2))


@cli.command()
@click.argument("path")
@click.option("--method", default="GET", help="HTTP method of the request.")
@click.option("--authenticated", is_flag=True, help="Classify as a signed-in caller.")
def classify(path: str, method: str, authenticated: bool) -> None:
    """Show which rate-limit rule a request path falls under."""
    rule = match_rule(path, method)
    if rule is None:
        click.echo(json.dumps({"path": path, "rate_limited": False}, indent=2))
        return
    config = rule.config_for(authenticated)
    principal_kind = "user" if authenticated else "ip"
    click.echo(json.dumps({
        "path": path,
        "rate_limited": True,
        "endpoint_class": rule.endpoint_class.value,
        "key_prefix": f"{rule.endpoint_class.value}:{principal_kind}",
        "window_ms": config.window_ms,
        "max_requests": config.max_requests,
    }, indent=2))


@cli.group("audit")
def audit_group() -> None:
    """Inspect the admission audit log."""


@audit_group.command("summary")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False))
def audit_summary(log_path: str) -> None:
    """Count logged rejections by event type and endpoint class."""
    click.echo(json.dumps(summarize_audit_log(Path(log_path)), indent=2, sort_keys=True))
