"""
Prompt surface capability and the markup each interactive step renders.

The wallet never draws anything itself. It hands small HTML fragments to an
injected ``PromptSurface`` and waits for clicks on the element ids below. A
browser host can inject the fragments into a page; the CLI renders them as
terminal text.
"""

from __future__ import annotations

from html import escape
from typing import Awaitable, Callable, Dict, Optional, Protocol, Union

CONNECT_BUTTON = "connectLedgerBtn"
CONFIRM_BUTTON = "confirmBtn"
CANCEL_BUTTON = "cancelBtn"
RETRY_BUTTON = "retryBtn"
ACCOUNT_ID_INPUT = "accountIdInput"

FormValues = Dict[str, str]
ClickHandler = Callable[[FormValues], Union[None, Awaitable[None]]]


class PromptSurface(Protocol):
    """
    Minimal UI capability.

    ``show`` replaces whatever is displayed and drops handlers registered for
    the previous content. Handlers receive the current value of every input
    element, keyed by element id.
    """

    async def show(self, markup: str) -> None:
        ...

    async def hide(self) -> None:
        ...

    def on_click(self, element_id: str, handler: ClickHandler) -> None:
        ...


def _container(title: str, body: str) -> str:
    return f'<div class="prompt-container"><h1>{escape(title)}</h1>{body}</div>'


def _buttons(*buttons: tuple[str, str]) -> str:
    rendered = "".join(
        f'<button id="{element_id}">{escape(label)}</button>' for element_id, label in buttons
    )
    return f'<div class="prompt-actions">{rendered}</div>'


def connect_prompt() -> str:
    return _container(
        "Connect Ledger",
        "<p>Connect your Ledger over USB, unlock it and open the NEAR app.</p>"
        + _buttons((CANCEL_BUTTON, "Cancel"), (CONNECT_BUTTON, "Connect Ledger")),
    )


def approval_prompt(action: str) -> str:
    """Shown while the device waits for the user to approve ``action``."""
    return _container(
        "Confirm on your Ledger",
        f"<p>Review and approve {escape(action)} on your Ledger device.</p>",
    )


def account_id_prompt(suggested_account_id: str = "", error: Optional[str] = None) -> str:
    error_html = f'<p class="prompt-error" role="alert">{escape(error)}</p>' if error else ""
    return _container(
        "Enter Account ID",
        "<p>Ledger provides your public key. Enter the NEAR account ID that this "
        "key has full access to.</p>"
        f'<input type="text" id="{ACCOUNT_ID_INPUT}" placeholder="example.near" '
        f'value="{escape(suggested_account_id, quote=True)}" />'
        + error_html
        + _buttons((CANCEL_BUTTON, "Cancel"), (CONFIRM_BUTTON, "Confirm")),
    )


def error_prompt(message: str) -> str:
    return _container(
        "Something went wrong",
        f'<p class="prompt-error" role="alert">{escape(message)}</p>'
        + _buttons((CANCEL_BUTTON, "Cancel"), (RETRY_BUTTON, "Retry")),
    )
