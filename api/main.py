import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import CORS_ORIGINS, DEV_CALLBACK_RECEIVER, LOG_LEVEL, WA_STATUS_POLL_SEC

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

from context import AppContext, build_context, get_context
from routers import admin_automations, admin_contacts, admin_messages, dev_callback_receiver, messages, webhooks
from security import limit_public, require_api_key

logger = logging.getLogger(__name__)


def _startup(ctx: AppContext) -> None:
    from database import init_db

    init_db(ctx.session_factory.kw.get("bind"))
    ctx.messages.hydrate()
    ctx.queue.recover_stalled()


def create_app(context: AppContext | None = None, start_background: bool = True) -> FastAPI:
    """
    Build the API. `context` is created from config when not given. With
    start_background=False the delivery worker and status poller are not started
    (tests drive them directly).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = app.state.ctx
        poller = None
        try:
            _startup(ctx)
            if start_background:
                ctx.worker.start()
                poller = asyncio.create_task(ctx.client.run_status_poller(WA_STATUS_POLL_SEC))
        except Exception as e:
            logger.error("Failed to initialize app: %s", e, exc_info=True)
            raise
        yield
        try:
            if poller is not None:
                poller.cancel()
                with suppress(asyncio.CancelledError):
                    await poller
            await ctx.worker.stop()
            await ctx.dispatcher.stop()
        except Exception as e:
            logger.error("Error during shutdown: %s", e, exc_info=True)

    app = FastAPI(title="WA Relay API", version="0.1.0", lifespan=lifespan)
    app.state.ctx = context or build_context()

    # CORS middleware - must be added FIRST, before routers
    # This ensures CORS headers are added to all responses, including errors
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
        max_age=3600,
    )

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content={"ok": False, **detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": f"{field}: {message}" if field else message},
        )

    app.include_router(messages.router)
    app.include_router(admin_messages.router)
    app.include_router(admin_automations.router)
    app.include_router(admin_contacts.router)
    app.include_router(webhooks.router)
    if DEV_CALLBACK_RECEIVER:
        app.include_router(dev_callback_receiver.router)

    @app.get("/")
    def root():
        return {"message": "WA Relay API", "docs": "/docs"}

    @app.get("/health", dependencies=[Depends(limit_public), Depends(require_api_key)])
    def health(ctx: AppContext = Depends(get_context)):
        return {
            "ok": True,
            "wa": {"status": ctx.client.status},
            "group_cache": {"updated_at": ctx.groups.updated_at, "count": len(ctx.groups)},
            "queue": ctx.queue.counts(),
            "worker": {"running": ctx.worker.running, "errors": ctx.worker.errors},
            "auto_reply": ctx.replier.settings(),
            "messages": {
                "store_file": str(ctx.messages.log.path),
                "max": ctx.messages.log.max_messages,
                "mem_limit": ctx.messages.recent.limit,
            },
            "forwarding": {"pending": ctx.dispatcher.pending, "dropped": ctx.dispatcher.dropped},
        }

    return app


app = create_app()
