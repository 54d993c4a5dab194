"""Callback structs exposed to collaborators (drivers, UI).

Each component publishes a fixed set of typed notifications. Callers pass a
fresh struct when they create a session or bind a peer link; any field left
as ``None`` is simply not notified. Callbacks may be plain functions or
coroutine functions.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from loguru import logger

if TYPE_CHECKING:
    from aiortc import RTCDataChannel

    from raas_rtc.peer.link import PeerLink
    from raas_rtc.peer.media import MediaStream

CallbackResult = Union[None, Awaitable[None]]


@dataclass
class SessionCallbacks:
    """Notifications emitted by a SignalingSession.

    Attributes:
        on_peer_connected: A new PeerLink is available. For the Answerer this
            fires once the answer has been sent; for the Offerer once the
            control channel is ready.
        on_signaling_disconnect: The rendezvous channel closed.
        on_signaling_error: A transport or negotiation error occurred.
    """

    on_peer_connected: Optional[Callable[["PeerLink"], CallbackResult]] = None
    on_signaling_disconnect: Optional[Callable[[], CallbackResult]] = None
    on_signaling_error: Optional[Callable[[Exception], CallbackResult]] = None


@dataclass
class PeerLinkCallbacks:
    """Notifications emitted by a PeerLink."""

    on_remote_stream_added: Optional[Callable[["MediaStream"], CallbackResult]] = None
    on_local_stream_added: Optional[Callable[["MediaStream"], CallbackResult]] = None
    on_remote_data_channel_opened: Optional[
        Callable[["RTCDataChannel"], CallbackResult]
    ] = None
    on_local_data_channel_opened: Optional[
        Callable[["RTCDataChannel"], CallbackResult]
    ] = None
    on_closed: Optional[Callable[["PeerLink"], CallbackResult]] = None


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error(f"Callback task failed: {exc}")


def dispatch(callback: Optional[Callable[..., Any]], *args) -> Optional[asyncio.Task]:
    """Invoke a collaborator callback without letting it break the caller.

    Coroutine callbacks are scheduled on the running loop and the task is
    returned. Exceptions raised by the callback are logged.

    Args:
        callback: The callback to invoke, or None.
        *args: Arguments forwarded to the callback.

    Returns:
        The scheduled task for coroutine callbacks, otherwise None.
    """
    if callback is None:
        return None
    try:
        result = callback(*args)
    except Exception as e:
        logger.exception(f"Callback {getattr(callback, '__name__', callback)} failed: {e}")
        return None
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        task.add_done_callback(_log_task_failure)
        return task
    return None


async def invoke(callback: Optional[Callable[..., Any]], *args) -> None:
    """Invoke a callback and wait for it, logging any exception.

    Used by transports that must finish handling one message before
    delivering the next.
    """
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.exception(f"Handler {getattr(callback, '__name__', callback)} failed: {e}")
