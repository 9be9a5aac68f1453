"""FastAPI application entry point for the knowledge API."""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from server.api.routers.KnowledgeRouter import knowledge_router
from services.knowledge_sync.KnowledgeRuntime import KnowledgeRuntime
from shared.exceptions import (
    ConflictError,
    ExtractionError,
    KnowledgeError,
    PersistenceError,
    RemoteRequestError,
    TransientIOError,
    UnsupportedFormatError,
    ValidationError,
)
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging

logging = setup_logging()
app_version = os.getenv("APP_VERSION", "unknown")

# most specific first, the first matching class wins
ERROR_STATUS: list[tuple[type[KnowledgeError], int]] = [
    (ValidationError, 400),
    (UnsupportedFormatError, 400),
    (ExtractionError, 400),
    (ConflictError, 409),
    (TransientIOError, 503),
    (RemoteRequestError, 502),
    (PersistenceError, 500),
]


def status_for_error(error: KnowledgeError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown."""
    app.state.logging = setup_logging()
    app.state.config = HelperConfig(logger=app.state.logging)
    app.state.background_tasks = set()

    runtime = KnowledgeRuntime(
        helper_config=app.state.config,
        with_source=app.state.config.get_bool_val("KNOWLEDGE_SYNC_ENABLED", True),
    )
    service = await runtime.boot()
    app.state.runtime = runtime
    app.state.knowledge = service

    if service.sync is not None:
        service.start()

    app.state.logging.info("Knowledge API ready for agent %s.", service.agent_id)
    yield

    await shutdown_app(app)


async def shutdown_app(app: FastAPI) -> None:
    """Let triggered sync cycles run to completion, then stop the services and close the clients."""
    tasks = list(app.state.background_tasks)
    if tasks:
        app.state.logging.info("Waiting for %d triggered sync cycle(s) to finish.", len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)

    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.close()
    app.state.logging.info("Knowledge API shut down.")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Build the FastAPI app.

    Args:
        use_lifespan (bool): Boot the knowledge runtime on startup. Tests disable
            this and set ``app.state`` themselves.

    Returns:
        FastAPI: The configured application.
    """
    app = FastAPI(
        title="Knowledge Engine",
        description="Ingests, syncs and searches the knowledge base of an agent.",
        version=app_version,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(KnowledgeError)
    async def knowledge_error_handler(request: Request, exc: KnowledgeError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            request.app.state.logging.error("Request %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.get("/health", tags=["Health"])
    async def health(request: Request) -> dict:
        service = getattr(request.app.state, "knowledge", None)
        sync_state = service.sync_state if service is not None else None
        return {
            "status": "ok" if service is not None else "starting",
            "version": app_version,
            "sync": sync_state.value if sync_state is not None else None,
        }

    app.include_router(knowledge_router)
    return app


app = create_app()


# Server Start
if __name__ == "__main__":
    # start server
    import uvicorn
    port = int(os.getenv("APP_PORT", "8000"))
    logging.info(f"Starting Knowledge API Server v{app_version} from root dir: {os.getenv('ROOT_DIR', os.getcwd())} on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port)
