import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.admin import router as admin_router
from .api.exceptions import register_exception_handlers
from .api.pricing import router as pricing_router
from .api.routes import calls_router, payments_router, router as accounts_router
from .api.webhooks import router as webhooks_router
from .core.clients import init_clients
from .core.config import get_settings
from .core.db import init_db

settings = get_settings()
logging.basicConfig(level=settings.log_level)

@asynccontextmanager
async def lifespan(app: FastAPI):
    clients = init_clients(get_settings())
    init_db()
    app.state.clients = clients
    yield
    clients.close()

app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(accounts_router)
app.include_router(calls_router)
app.include_router(payments_router)
app.include_router(pricing_router)
app.include_router(webhooks_router)
app.include_router(admin_router)
register_exception_handlers(app)

@app.get("/health")
def read_health() -> dict[str, str]:
    return {"status": "ok"}
