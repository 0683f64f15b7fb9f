"""
Webhook listener used by push-based adapters.

Each listener owns a small FastAPI app served by an embedded uvicorn
server on its own port. A request is handled in two phases:

1. Read the raw body and verify its HMAC signature. A mismatch is answered
   with 403 and the body is never parsed.
2. Answer 200 at once, then hand the body to the adapter's parser in a
   background task so the platform never waits on our processing.
"""

import asyncio
import base64
import contextlib
import hashlib
import hmac
import logging
import socket
from collections.abc import Awaitable, Callable, Mapping

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.background import BackgroundTask

from src.ingestion.errors import SignatureVerificationError
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

VerifyRequest = Callable[[bytes, Mapping[str, str]], None]
HandleBody = Callable[[bytes], Awaitable[None]]


def compute_signature(secret: str, body: bytes, encoding: str = "hex") -> str:
    """HMAC-SHA256 of ``body`` keyed by ``secret``, as hex or base64."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def verify_signature(
    secret: str,
    body: bytes,
    signature: str | None,
    encoding: str = "hex",
) -> None:
    """
    Check a platform-supplied signature against the raw request body.

    Raises:
        SignatureVerificationError: If the signature is missing or wrong
    """
    if not signature:
        raise SignatureVerificationError("missing signature header")
    expected = compute_signature(secret, body, encoding)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8")):
        raise SignatureVerificationError("signature mismatch")


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class WebhookListener:
    """
    HTTP endpoint receiving signed platform callbacks.

    Usage:
        listener = WebhookListener("line", "/webhook", 3400, verify, handle)
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(
        self,
        adapter_type: str,
        path: str,
        port: int,
        verify: VerifyRequest,
        handle: HandleBody,
        host: str = "0.0.0.0",
    ):
        self.adapter_type = adapter_type
        self.path = path if path.startswith("/") else f"/{path}"
        self.port = port
        self.host = host
        self._verify = verify
        self._handle = handle
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None
        self._socket: socket.socket | None = None
        self.app = self._build_app()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _build_app(self) -> FastAPI:
        app = FastAPI(
            title=f"{self.adapter_type} webhook",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        metrics = get_metrics()

        @app.post(self.path)
        async def receive(request: Request) -> PlainTextResponse:
            body = await request.body()
            try:
                self._verify(body, request.headers)
            except SignatureVerificationError as e:
                logger.warning(f"{self.adapter_type} webhook rejected: {e}")
                metrics.record_webhook(self.adapter_type, accepted=False)
                return PlainTextResponse("Invalid signature", status_code=403)

            metrics.record_webhook(self.adapter_type, accepted=True)
            return PlainTextResponse(
                "OK",
                background=BackgroundTask(self._dispatch, body),
            )

        return app

    async def _dispatch(self, body: bytes) -> None:
        try:
            await self._handle(body)
        except Exception as e:
            logger.warning(f"{self.adapter_type} webhook processing error: {e}")

    async def start(self) -> None:
        """
        Bind the port and start serving.

        Raises:
            OSError: If the port cannot be bound
        """
        if self.running:
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        sock.set_inheritable(True)
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_level="warning",
            lifespan="off",
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[sock]),
            name=f"webhook-{self.adapter_type}-{self.port}",
        )

        while not self._server.started:
            if self._task.done():
                # Surface the startup failure
                self._task.result()
                raise OSError(f"webhook server on port {self.port} exited during startup")
            await asyncio.sleep(0.05)

        logger.info(f"{self.adapter_type} webhook listening on {self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                self._task.cancel()
                logger.warning(f"{self.adapter_type} webhook server did not stop in time")
            except asyncio.CancelledError:
                pass
        if self._socket is not None:
            self._socket.close()

        self._server = None
        self._task = None
        self._socket = None
        logger.info(f"{self.adapter_type} webhook server stopped")
