#!/usr/bin/env python3
"""
nearledger command line interface

Sign in with a Ledger, then send NEAR transfers, contract calls and NEP-413
messages signed on the device. Prompts the wallet would show in a browser
are rendered in the terminal.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from html.parser import HTMLParser
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from nearledger.core.config import LOG_LEVEL, LedgerSettings, NetworkType
from nearledger.core.exceptions import LedgerWalletError, UserCancelledPromptError
from nearledger.core.logging_config import setup_logging
from nearledger.core.prompts import ClickHandler, FormValues
from nearledger.core.storage import JsonFileStorage
from nearledger.core.transport import DeviceDescriptor
from nearledger.core.wallet import LedgerWallet

logger = logging.getLogger(__name__)

# Command output goes to stdout, prompts to stderr
console = Console()
prompt_console = Console(stderr=True)

YOCTO_PER_NEAR = 10 ** 24


def _cli_fail(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler for consistent messaging."""
    if isinstance(exc, UserCancelledPromptError):
        console.print(f"[yellow]{exc.message}[/]")
        sys.exit(exit_code)
    logger.error("CLI error: %s", exc, exc_info=True, extra={"event": "cli.error"})
    message = exc.message if isinstance(exc, LedgerWalletError) else str(exc)
    console.print(f"[bold red]Error:[/] {message}")
    sys.exit(exit_code)


def parse_near_amount(amount: str) -> int:
    """Convert a NEAR amount such as ``"1.5"`` to yoctoNEAR."""
    try:
        value = Decimal(amount.strip())
    except InvalidOperation as exc:
        raise click.BadParameter(f"{amount!r} is not a NEAR amount") from exc
    if value < 0:
        raise click.BadParameter("Amount must not be negative")
    yocto = value * YOCTO_PER_NEAR
    if yocto != yocto.to_integral_value():
        raise click.BadParameter("NEAR amounts have at most 24 decimal places")
    return int(yocto)


# ============================================================================
# Terminal prompt surface
# ============================================================================


class _MarkupParser(HTMLParser):
    """Pulls the title, text, input and buttons out of prompt markup."""

    def __init__(self):
        super().__init__()
        self.title = ""
        self.paragraphs: List[str] = []
        self.errors: List[str] = []
        self.inputs: List[Dict[str, str]] = []
        self.buttons: List[tuple[str, str]] = []
        self._tag: Optional[str] = None
        self._attrs: Dict[str, str] = {}
        self._text: List[str] = []

    def handle_starttag(self, tag, attrs):
        attributes = {key: value or "" for key, value in attrs}
        if tag == "input":
            self.inputs.append(attributes)
            return
        if tag in ("h1", "p", "button"):
            self._tag, self._attrs, self._text = tag, attributes, []

    def handle_data(self, data):
        if self._tag is not None:
            self._text.append(data)

    def handle_endtag(self, tag):
        if tag != self._tag:
            return
        text = "".join(self._text).strip()
        if tag == "h1":
            self.title = text
        elif tag == "button":
            self.buttons.append((self._attrs.get("id", ""), text))
        elif "prompt-error" in self._attrs.get("class", ""):
            self.errors.append(text)
        else:
            self.paragraphs.append(text)
        self._tag = None


class TerminalPromptSurface:
    """
    Renders prompt markup as a rich panel and turns terminal answers into
    clicks. Input elements are asked for first, then the button to press.
    """

    def __init__(self, output: Console = prompt_console):
        self._console = output
        self._parsed: Optional[_MarkupParser] = None
        self._handlers: Dict[str, ClickHandler] = {}
        self._pending: Optional[asyncio.Task] = None

    async def show(self, markup: str) -> None:
        parser = _MarkupParser()
        parser.feed(markup)
        parser.close()
        self._parsed = parser
        self._handlers = {}

        body = "\n\n".join(parser.paragraphs)
        for error in parser.errors:
            body += f"\n\n[bold red]{error}[/]"
        self._console.print(Panel(body, title=f"[bold cyan]{parser.title}", border_style="cyan"))

    async def hide(self) -> None:
        self._parsed = None
        self._handlers = {}

    def on_click(self, element_id: str, handler: ClickHandler) -> None:
        self._handlers[element_id] = handler
        if self._pending is None or self._pending.done():
            # Wait until every handler for this content is registered
            self._pending = asyncio.get_running_loop().create_task(self._ask())

    def _read_answers(self, parsed: _MarkupParser) -> tuple[str, FormValues]:
        values: FormValues = {}
        for element in parsed.inputs:
            label = element.get("placeholder") or element.get("id", "value")
            if element.get("value"):
                answer = Prompt.ask(label, default=element["value"], console=self._console)
            else:
                answer = Prompt.ask(label, console=self._console)
            values[element["id"]] = answer or ""

        buttons = [(element_id, label) for element_id, label in parsed.buttons if element_id in self._handlers]
        if len(buttons) == 1:
            return buttons[0][0], values
        labels = {label.lower(): element_id for element_id, label in buttons}
        answer = Prompt.ask(
            "Choose",
            choices=list(labels),
            default=buttons[-1][1].lower(),
            console=self._console,
        )
        return labels[answer], values

    async def _ask(self) -> None:
        await asyncio.sleep(0)
        parsed = self._parsed
        if parsed is None or not parsed.buttons:
            return
        element_id, values = await asyncio.to_thread(self._read_answers, parsed)
        handler = self._handlers.get(element_id)
        if handler is None or parsed is not self._parsed:
            return
        result = handler(values)
        if inspect.isawaitable(result):
            await result


async def terminal_device_chooser(devices: Sequence[DeviceDescriptor]) -> Optional[DeviceDescriptor]:
    if len(devices) <= 1:
        return devices[0] if devices else None

    table = Table(title="Ledger devices", box=box.ROUNDED)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Device", style="green")
    table.add_column("Path", style="dim")
    for index, device in enumerate(devices, start=1):
        table.add_row(str(index), device.product, device.path)
    prompt_console.print(table)

    choices = [str(index) for index in range(1, len(devices) + 1)] + ["cancel"]
    answer = await asyncio.to_thread(
        Prompt.ask, "Use device", choices=choices, default="1", console=prompt_console
    )
    if answer == "cancel":
        return None
    return devices[int(answer) - 1]


# ============================================================================
# Helpers
# ============================================================================


def _default_wallet_factory(settings: LedgerSettings) -> LedgerWallet:
    return LedgerWallet(
        TerminalPromptSurface(),
        settings=settings,
        storage=JsonFileStorage(settings.storage_path),
        chooser=terminal_device_chooser,
    )


def _run(ctx: click.Context, operation: Callable[[LedgerWallet], Awaitable[Any]]) -> Any:
    """Run one wallet operation, always releasing the device afterwards."""
    wallet = ctx.obj["wallet_factory"](ctx.obj["settings"])

    async def runner() -> Any:
        try:
            return await operation(wallet)
        finally:
            await wallet.disconnect()

    try:
        return asyncio.run(runner())
    except (LedgerWalletError, ValueError, KeyError) as exc:
        _cli_fail(exc)


def _print_result(ctx: click.Context, title: str, data: Any) -> None:
    if ctx.obj["json_output"]:
        click.echo(json.dumps(data, indent=2))
        return
    table = Table(show_header=False, box=box.ROUNDED)
    for key, value in data.items():
        table.add_row(f"[bold cyan]{key}", value if isinstance(value, str) else json.dumps(value))
    console.print(Panel(table, title=f"[bold green]{title}", border_style="green"))


def _print_outcome(ctx: click.Context, result: Any) -> None:
    if ctx.obj["json_output"]:
        click.echo(json.dumps(result, indent=2))
        return
    outcome = result.get("transaction_outcome", {}) if isinstance(result, dict) else {}
    status = result.get("status", {}) if isinstance(result, dict) else {}
    table = Table(show_header=False, box=box.ROUNDED)
    table.add_row("[bold cyan]Transaction", str(outcome.get("id", "unknown")))
    if "Failure" in status:
        table.add_row("[bold red]Status", json.dumps(status["Failure"]))
    else:
        table.add_row("[bold green]Status", "Success")
    console.print(Panel(table, title="[bold green]Transaction sent", border_style="green"))


# ============================================================================
# CLI Group
# ============================================================================


@click.group()
@click.option(
    "--network",
    type=click.Choice([network.value for network in NetworkType]),
    help="NEAR network (defaults to NEARLEDGER_NETWORK or mainnet)",
)
@click.option(
    "--storage",
    type=click.Path(dir_okay=False),
    help="Account storage file (defaults to NEARLEDGER_STORAGE_PATH)",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=LOG_LEVEL,
    show_default=True,
    help="Logging level",
)
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write JSON logs to this file")
@click.pass_context
def cli(
    ctx: click.Context,
    network: Optional[str],
    storage: Optional[str],
    json_output: bool,
    log_level: str,
    log_file: Optional[str],
):
    """
    Ledger signing for NEAR accounts.

    The private key never leaves the device: every transaction and message
    is reviewed and approved on the Ledger.
    """
    ctx.ensure_object(dict)
    setup_logging(level=log_level, log_file=log_file)

    try:
        settings = LedgerSettings.from_env()
    except LedgerWalletError as exc:
        _cli_fail(exc)
    if network:
        settings.network = NetworkType(network)
    if storage:
        settings.storage_path = storage

    ctx.obj["settings"] = settings
    ctx.obj["json_output"] = json_output
    ctx.obj.setdefault("wallet_factory", _default_wallet_factory)


@cli.command("sign-in")
@click.option("--path", "derivation_path", help="Derivation path, e.g. 44'/397'/0'/0'/1'")
@click.pass_context
def sign_in(ctx: click.Context, derivation_path: Optional[str]):
    """Bind the Ledger key to a NEAR account"""
    accounts = _run(ctx, lambda wallet: wallet.sign_in(derivation_path=derivation_path))
    _print_result(ctx, "Signed in", accounts[0])


@cli.command("sign-out")
@click.pass_context
def sign_out(ctx: click.Context):
    """Forget the stored account"""
    _run(ctx, lambda wallet: wallet.sign_out())
    if ctx.obj["json_output"]:
        click.echo(json.dumps({"signedOut": True}))
    else:
        console.print("[green]Signed out[/]")


@cli.command("accounts")
@click.pass_context
def accounts(ctx: click.Context):
    """Show the signed-in account"""
    stored = _run(ctx, lambda wallet: wallet.get_accounts())
    if ctx.obj["json_output"]:
        click.echo(json.dumps(stored, indent=2))
        return
    if not stored:
        console.print("[yellow]No account signed in[/]")
        return

    table = Table(title="Ledger accounts", box=box.ROUNDED)
    table.add_column("Account", style="cyan")
    table.add_column("Public key", style="green")
    for account in stored:
        table.add_row(account["accountId"], account["publicKey"])
    console.print(table)


@cli.command("transfer")
@click.argument("receiver")
@click.argument("amount")
@click.pass_context
def transfer(ctx: click.Context, receiver: str, amount: str):
    """Send AMOUNT NEAR to RECEIVER"""
    deposit = parse_near_amount(amount)
    actions = [{"type": "Transfer", "params": {"deposit": str(deposit)}}]
    result = _run(ctx, lambda wallet: wallet.sign_and_send_transaction(receiver, actions))
    _print_outcome(ctx, result)


@cli.command("call")
@click.argument("receiver")
@click.argument("method")
@click.option("--args", "args_json", default="{}", show_default=True, help="JSON arguments")
@click.option("--gas", type=click.IntRange(min=1), help="Gas to attach (default 30 Tgas)")
@click.option("--deposit", default="0", show_default=True, help="NEAR to attach")
@click.pass_context
def call(
    ctx: click.Context,
    receiver: str,
    method: str,
    args_json: str,
    gas: Optional[int],
    deposit: str,
):
    """Call METHOD on contract RECEIVER"""
    try:
        args = json.loads(args_json)
    except ValueError as exc:
        raise click.BadParameter(f"--args must be JSON: {exc}") from exc

    params = {"methodName": method, "args": args, "deposit": str(parse_near_amount(deposit))}
    if gas is not None:
        params["gas"] = str(gas)
    actions = [{"type": "FunctionCall", "params": params}]
    result = _run(ctx, lambda wallet: wallet.sign_and_send_transaction(receiver, actions))
    _print_outcome(ctx, result)


@cli.command("sign-message")
@click.argument("message")
@click.option("--recipient", required=True, help="Who the signed message is for")
@click.option("--nonce", "nonce_hex", help="32-byte nonce as hex (default all zeros)")
@click.pass_context
def sign_message(ctx: click.Context, message: str, recipient: str, nonce_hex: Optional[str]):
    """Sign a NEP-413 off-chain MESSAGE"""
    nonce = None
    if nonce_hex:
        try:
            nonce = bytes.fromhex(nonce_hex)
        except ValueError as exc:
            raise click.BadParameter(f"--nonce must be hex: {exc}") from exc
        if len(nonce) != 32:
            raise click.BadParameter("--nonce must be exactly 32 bytes")

    signed = _run(ctx, lambda wallet: wallet.sign_message(message, recipient, nonce=nonce))
    _print_result(ctx, "Message signed", signed)


# ============================================================================
# Main Entry Point
# ============================================================================


def main():
    """Main CLI entry point"""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()
