"""Websocket ``logsSubscribe`` stream with reconnect."""
import asyncio
import inspect
import json
from typing import Any, Callable, Optional

import structlog
import websockets
from websockets.exceptions import ConnectionClosed

from ledger_mirror.models import LogBatch

logger = structlog.get_logger()

INITIAL_BACKOFF = 0.5
MAX_BACKOFF = 30.0


class LogStream:
    """One long-lived log subscription, owned by a single asyncio task.

    The websocket lives inside an ``async with`` block in that task, so
    cancelling the task always closes the connection, including while a
    notification is being delivered.
    """

    def __init__(
        self,
        ws_url: str,
        program_id: str,
        callback: Callable[[LogBatch], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
        commitment: str = "confirmed",
    ):
        self.ws_url = ws_url
        self.program_id = program_id
        self.callback = callback
        self.on_error = on_error
        self.commitment = commitment
        self.subscription_id: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"logs:{self.program_id}")

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        backoff = INITIAL_BACKOFF
        while True:
            try:
                async with websockets.connect(self.ws_url, ping_interval=20, ping_timeout=20, close_timeout=5) as ws:
                    await self._subscribe(ws)
                    logger.info("logs_stream_connected", program=self.program_id, subscription=self.subscription_id)
                    backoff = INITIAL_BACKOFF
                    async for raw in ws:
                        await self._dispatch(raw)
                raise ConnectionError("log stream closed by server")
            except asyncio.CancelledError:
                raise
            except (ConnectionClosed, OSError, ValueError) as e:
                logger.warning("logs_stream_disconnected", program=self.program_id, error=str(e), retry_in=backoff)
                self._report(e)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, MAX_BACKOFF)

    async def _subscribe(self, ws) -> None:
        await ws.send(json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [{"mentions": [self.program_id]}, {"commitment": self.commitment}],
        }))
        ack = json.loads(await ws.recv())
        if "error" in ack:
            raise ValueError(f"logsSubscribe rejected: {ack['error']}")
        self.subscription_id = ack.get("result")

    async def _dispatch(self, raw: Any) -> None:
        msg = json.loads(raw)
        if msg.get("method") != "logsNotification":
            return

        value = ((msg.get("params") or {}).get("result") or {}).get("value") or {}
        context = ((msg.get("params") or {}).get("result") or {}).get("context") or {}
        batch = LogBatch(
            signature=value.get("signature", ""),
            logs=list(value.get("logs") or []),
            slot=context.get("slot"),
            err=value.get("err"),
        )

        try:
            result = self.callback(batch)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("logs_callback_failed", signature=batch.signature, error=str(e))

    def _report(self, error: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.error("logs_error_callback_failed", error=str(e))
