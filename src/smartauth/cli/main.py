#!/usr/bin/env python3
"""
smartauth CLI

Off-chain tooling for account operators:
- Compute operation hashes for signing
- Build session trees and proofs from a leaf file
- Compute the recovery control message hash for an account
- Serve the bundler JSON-RPC API on a fresh in-memory ledger
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, List

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from smartauth.core import config
from smartauth.core.contracts.account_recovery import control_message_hash
from smartauth.core.exceptions import SmartAuthError
from smartauth.core.operation import UserOperation
from smartauth.wallet.sessions import SessionLeaf, SessionTree

logger = logging.getLogger(__name__)
console = Console()


def _handle_cli_error(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler."""
    logger.error("CLI error: %s", exc, exc_info=True)
    console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(exit_code)


def _load_json(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read {path}: {exc}")


def _hex_bytes(value: str) -> bytes:
    text = value[2:] if value.lower().startswith("0x") else value
    return bytes.fromhex(text)


def _load_leaves(path: str) -> List[SessionLeaf]:
    raw = _load_json(path)
    if not isinstance(raw, list) or not raw:
        raise click.ClickException("Leaf file must contain a non-empty JSON list")
    try:
        return [
            SessionLeaf(
                valid_until=int(item.get("validUntil", 0)),
                valid_after=int(item.get("validAfter", 0)),
                svm=item["svm"],
                session_key_data=_hex_bytes(item.get("sessionKeyData", "0x")),
            )
            for item in raw
        ]
    except (KeyError, TypeError, ValueError, AttributeError, SmartAuthError) as exc:
        raise click.ClickException(f"Invalid leaf entry: {exc}")


@click.group()
@click.option("--json-output", "json_output", is_flag=True, help="Print machine-readable JSON")
@click.pass_context
def cli(ctx: click.Context, json_output: bool) -> None:
    """smartauth account authorization tooling."""
    ctx.ensure_object(dict)
    ctx.obj["json_output"] = json_output


@cli.command("op-hash")
@click.argument("op_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--entry-point", default=config.ENTRY_POINT_ADDRESS, show_default=True)
@click.option("--chain-id", default=config.CHAIN_ID, type=int, show_default=True)
@click.pass_context
def op_hash(ctx: click.Context, op_file: str, entry_point: str, chain_id: int) -> None:
    """
    Compute the hash an operation's signers sign.

    OP_FILE holds the operation as JSON-RPC camelCase hex fields.
    """
    try:
        op = UserOperation.from_dict(_load_json(op_file))
        digest = "0x" + op.hash(entry_point, chain_id).hex()
    except SmartAuthError as exc:
        _handle_cli_error(exc)
        return

    if ctx.obj.get("json_output"):
        click.echo(json.dumps({"userOpHash": digest, "chainId": chain_id, "entryPoint": entry_point}))
        return
    console.print(Panel(
        f"Sender: {op.sender}\n"
        f"Nonce key: {op.nonce_key}  sequence: {op.nonce_sequence}\n"
        f"Chain: {chain_id}\n"
        f"[bold]{digest}[/]",
        title="[cyan]UserOperation hash",
        border_style="cyan",
    ))


@cli.command("session-tree")
@click.argument("leaf_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def session_tree(ctx: click.Context, leaf_file: str) -> None:
    """Build the session Merkle tree and print its root and leaf hashes."""
    leaves = _load_leaves(leaf_file)
    tree = SessionTree(leaves)
    root = "0x" + tree.root.hex()

    if ctx.obj.get("json_output"):
        click.echo(json.dumps({
            "root": root,
            "leaves": ["0x" + leaf.leaf_hash().hex() for leaf in leaves],
        }, indent=2))
        return

    table = Table(title=f"Session tree ({len(tree)} leaves)")
    table.add_column("#", justify="right")
    table.add_column("Window")
    table.add_column("Module")
    table.add_column("Leaf hash")
    for i, leaf in enumerate(leaves):
        table.add_row(
            str(i),
            f"{leaf.valid_after or '-'} .. {leaf.valid_until or '-'}",
            leaf.svm,
            "0x" + leaf.leaf_hash().hex(),
        )
    console.print(table)
    console.print(f"[bold green]Root:[/] {root}")


@cli.command("session-proof")
@click.argument("leaf_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--index", required=True, type=int, help="Leaf index in the file")
@click.pass_context
def session_proof(ctx: click.Context, leaf_file: str, index: int) -> None:
    """Print the Merkle proof of one session leaf."""
    leaves = _load_leaves(leaf_file)
    if not 0 <= index < len(leaves):
        raise click.ClickException(f"Index {index} out of range (0..{len(leaves) - 1})")
    tree = SessionTree(leaves)
    proof = ["0x" + node.hex() for node in tree.proof_for(leaves[index])]

    if ctx.obj.get("json_output"):
        click.echo(json.dumps({"root": "0x" + tree.root.hex(), "index": index, "proof": proof}, indent=2))
        return
    console.print(f"[bold]Root:[/] 0x{tree.root.hex()}")
    for node in proof:
        console.print(f"  {node}")


@cli.command("control-hash")
@click.argument("account")
@click.pass_context
def control_hash(ctx: click.Context, account: str) -> None:
    """Hash a guardian signs to guard ACCOUNT."""
    try:
        digest = "0x" + control_message_hash(account).hex()
    except SmartAuthError as exc:
        _handle_cli_error(exc)
        return
    if ctx.obj.get("json_output"):
        click.echo(json.dumps({"account": account, "controlHash": digest}))
        return
    console.print(f"[bold]Control hash:[/] {digest}")


@cli.command("serve")
@click.option("--host", default=config.RPC_HOST, show_default=True)
@click.option("--port", default=config.RPC_PORT, type=int, show_default=True)
@click.option("--chain-id", default=config.CHAIN_ID, type=int, show_default=True)
def serve(host: str, port: int, chain_id: int) -> None:
    """Serve the bundler JSON-RPC API over a fresh in-memory ledger."""
    from smartauth.bundler.rpc import create_app
    from smartauth.core.contracts.entry_point import EntryPoint
    from smartauth.core.ledger import Ledger
    from smartauth.core.logging_config import setup_logging

    setup_logging(
        name="smartauth",
        log_file=config.LOG_FILE,
        level=config.LOG_LEVEL,
        environment=config.ENVIRONMENT,
    )
    ledger = Ledger(chain_id=chain_id)
    entry_point = EntryPoint(ledger)
    app = create_app(ledger, entry_point)
    logger.info(
        "Bundler RPC starting",
        extra={"event": "bundler.starting", "host": host, "port": port, "chain_id": chain_id},
    )
    app.run(host=host, port=port)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
