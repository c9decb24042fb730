"""FastAPI application entry point and composition root."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from doc2md import config
from doc2md.api.routes import router
from doc2md.config import CORS_ORIGINS, logger as config_logger
from doc2md.conversion.ai_client import AIConversionClient, OpenAICompatibleBackend
from doc2md.conversion.encoder import MediaEncoder
from doc2md.conversion.office import DriveOfficeConverter
from doc2md.conversion.pipeline import FilePreparer
from doc2md.db import init_db, record_task
from doc2md.scheduler import LoopScheduler, Scheduler
from doc2md.tasks import FinishedHook, TaskRunner, TaskStore
from doc2md.upload_cache import LocalObjectStore, UploadCache

logging.getLogger("uvicorn").setLevel(logging.INFO)


async def session_header_middleware(request, call_next):
    """Set X-Session-ID on response when the session was created by the dependency."""
    response = await call_next(request)
    if hasattr(request.state, "session_id"):
        response.headers["X-Session-ID"] = request.state.session_id
    return response


def create_app(
    *,
    scheduler: Optional[Scheduler] = None,
    upload_cache: Optional[UploadCache] = None,
    preparer: Optional[FilePreparer] = None,
    ai_client: Optional[AIConversionClient] = None,
    task_store: Optional[TaskStore] = None,
    on_task_finished: Optional[FinishedHook] = record_task,
    startup: Optional[Callable[[], None]] = init_db,
) -> FastAPI:
    """Build the app. Every collaborator can be injected; missing ones get production defaults."""
    scheduler = scheduler or LoopScheduler()
    upload_cache = upload_cache or UploadCache(LocalObjectStore(config.UPLOAD_DIR), scheduler)
    preparer = preparer or FilePreparer(DriveOfficeConverter(), MediaEncoder())
    ai_client = ai_client or AIConversionClient(OpenAICompatibleBackend())
    if task_store is None:
        runner = TaskRunner(upload_cache, preparer, ai_client)
        task_store = TaskStore(runner, scheduler, on_finished=on_task_finished)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(scheduler, LoopScheduler):
            scheduler.attach(asyncio.get_running_loop())
        if startup:
            startup()
        config_logger.info("Doc2MD API started")
        yield
        config_logger.info("Doc2MD API shutting down")
        await task_store.shutdown()
        upload_cache.clear()
        if isinstance(scheduler, LoopScheduler):
            scheduler.detach()

    app = FastAPI(
        title="Doc2MD API",
        description="Convert documents, images, audio and video to Markdown with an AI backend, with progress tracking.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.scheduler = scheduler
    app.state.upload_cache = upload_cache
    app.state.preparer = preparer
    app.state.ai_client = ai_client
    app.state.task_store = task_store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Session-ID"],
    )
    app.middleware("http")(session_header_middleware)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from doc2md.config import HOST, PORT
    uvicorn.run("doc2md.main:app", host=HOST, port=PORT, reload=True)
