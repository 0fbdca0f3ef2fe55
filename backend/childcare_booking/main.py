import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request, Response

from .config import get_settings
from .database import Database
from .infrastructure.notifications import LoggingNotifier
from .infrastructure.transactions import build_transaction_runner
from .jobs.closing import closing_sweep_loop
from .routers import bookings, internal, slots
from .usecases.closing import close_elapsed
from .utils.request_id import REQUEST_ID_HEADER, bind_request_id, set_request_id

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings = get_settings()
    database = Database(settings)
    await database.connect()
    await database.create_schema()

    runner = build_transaction_runner(database, settings)
    notifier = LoggingNotifier()
    app.state.database = database
    app.state.runner = runner
    app.state.notifier = notifier

    sweep_task = asyncio.create_task(
        closing_sweep_loop(
            lambda: close_elapsed(runner, notifier),
            interval_seconds=settings.close_interval_seconds,
            startup_delay_seconds=settings.close_startup_delay_seconds,
        ),
        name="closing-sweep",
    )
    try:
        yield
    finally:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
        await database.dispose()


app = FastAPI(title="Childcare Booking API", lifespan=lifespan)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    request_id = bind_request_id(request.headers.get(REQUEST_ID_HEADER))
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(slots.router)
app.include_router(slots.admin_router)
app.include_router(bookings.router)
app.include_router(internal.router)
