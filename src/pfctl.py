#!/usr/bin/env python3
"""
CLI tool for the Port Forwarding Operator
Inspect router rules and apply desired-address documents by hand
"""

import asyncio
import json
from typing import Dict, List

import click
import yaml
from tabulate import tabulate

from config import ForwardingConfig, RouterConfig
from forwarding.address import Address, ScopeKey
from forwarding.reconciler import Reconciler, ReconcileSummary
from stores.base import RuleStoreError
from stores.unifi import UniFiRuleStore
from validation import load_addresses


def _build_store() -> UniFiRuleStore:
    try:
        router = RouterConfig.from_env()
    except ValueError as e:
        raise click.ClickException(str(e))
    return UniFiRuleStore(
        controller_url=router.url,
        username=router.username,
        password=router.password,
        default_site=router.default_site,
        site_option=router.site_option,
        verify_ssl=router.verify_ssl,
        timeout=router.timeout,
    )


def _load_file(filename: str):
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


def _group_by_scope(addresses: List[Address]) -> Dict[ScopeKey, List[Address]]:
    groups: Dict[ScopeKey, List[Address]] = {}
    for address in addresses:
        groups.setdefault(address.options, []).append(address)
    return groups


def _rows(addresses: List[Address]) -> List[list]:
    return [
        [a.name, a.port, a.ip, a.source_range or "any", str(a.options)]
        for a in addresses
    ]


async def _list(store: UniFiRuleStore, scope: ScopeKey) -> List[Address]:
    try:
        return await store.list_rules(scope)
    finally:
        await store.close()


async def _reconcile(
    store: UniFiRuleStore, prefix: str, addresses: List[Address], delete: bool
) -> ReconcileSummary:
    reconciler = Reconciler(rule_prefix=prefix, store=store)
    total = ReconcileSummary()
    try:
        for group in _group_by_scope(addresses).values():
            if delete:
                summary = await reconciler.delete_addresses(group)
            else:
                summary = await reconciler.create_addresses(group)
            total.deleted.extend(summary.deleted)
            total.created.extend(summary.created)
    finally:
        await store.close()
    return total


def _echo_summary(summary: ReconcileSummary) -> None:
    if not summary.has_changes:
        click.echo("No changes needed")
        return
    rows = [["deleted"] + row for row in _rows(summary.deleted)]
    rows += [["created"] + row for row in _rows(summary.created)]
    click.echo(
        tabulate(
            rows,
            headers=["Action", "Name", "Port", "IP", "Source", "Scope"],
            tablefmt="grid",
        )
    )


@click.group()
def cli():
    """Port Forwarding Operator CLI - manage router port forwarding rules"""
    pass


@cli.command()
@click.option("--site", default=None, help="Router site (default partition if unset)")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
def rules(site, output):
    """List port forwarding rules on the router"""
    store = _build_store()
    scope = ScopeKey.from_mapping({store.site_option: site} if site else None)

    try:
        addresses = asyncio.run(_list(store, scope))
    except RuleStoreError as e:
        raise click.ClickException(str(e))

    if output == "table":
        click.echo(
            tabulate(
                _rows(addresses),
                headers=["Name", "Port", "IP", "Source", "Scope"],
                tablefmt="grid",
            )
        )
        return

    data = [
        {
            "name": a.name,
            "port": a.port,
            "ip": a.ip,
            "source_range": a.source_range,
            "options": a.options.as_dict(),
        }
        for a in addresses
    ]
    if output == "yaml":
        click.echo(yaml.dump(data, default_flow_style=False))
    else:
        click.echo(json.dumps(data, indent=2))


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--prefix", default=None, help="Rule name prefix (default: RULE_PREFIX)")
def apply(filename, prefix):
    """Create or update rules from a YAML/JSON address document"""
    try:
        addresses = load_addresses(_load_file(filename))
    except ValueError as e:
        raise click.ClickException(str(e))

    store = _build_store()
    prefix = prefix if prefix is not None else ForwardingConfig.from_env().rule_prefix

    try:
        summary = asyncio.run(_reconcile(store, prefix, addresses, delete=False))
    except RuleStoreError as e:
        raise click.ClickException(str(e))

    _echo_summary(summary)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--prefix", default=None, help="Rule name prefix (default: RULE_PREFIX)")
@click.confirmation_option(prompt="Are you sure you want to delete these rules?")
def delete(filename, prefix):
    """Delete the rules described by a YAML/JSON address document"""
    try:
        addresses = load_addresses(_load_file(filename))
    except ValueError as e:
        raise click.ClickException(str(e))

    store = _build_store()
    prefix = prefix if prefix is not None else ForwardingConfig.from_env().rule_prefix

    try:
        summary = asyncio.run(_reconcile(store, prefix, addresses, delete=True))
    except RuleStoreError as e:
        raise click.ClickException(str(e))

    _echo_summary(summary)


if __name__ == "__main__":
    cli()
