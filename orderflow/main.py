import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orderflow.config import settings
from orderflow.database import init_database
from orderflow.routes import commissions, coupons, delivery, health, loyalty, orders, payments
from orderflow.services.container import get_services

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(title="Orderflow API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.resolved_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Health ─────────────────────────────────────────────────────────
app.include_router(health.router)

# ── Core API ───────────────────────────────────────────────────────
# Static paths (/orders/my, /payments/webhook/...) are declared before /{id} in each router.
app.include_router(orders.router,       prefix="/api")
app.include_router(coupons.router,      prefix="/api")
app.include_router(payments.router,     prefix="/api")
app.include_router(delivery.router,     prefix="/api")
app.include_router(loyalty.router,      prefix="/api")
app.include_router(commissions.router,  prefix="/api")


_background: list[asyncio.Task] = []


@app.on_event("startup")
async def startup():
    init_database()
    if settings.payment_sweep_interval > 0:
        reconciler = get_services().reconciler
        _background.append(asyncio.create_task(
            reconciler.run_sweeper(settings.payment_sweep_interval, settings.payment_sweep_min_age)
        ))
        logger.info("Payment sweeper started (every %ss)", settings.payment_sweep_interval)


@app.on_event("shutdown")
async def shutdown():
    for task in _background:
        task.cancel()
    await asyncio.gather(*_background, return_exceptions=True)
    _background.clear()
    services = get_services()
    await services.reconciler.shutdown()
    await services.sink.drain()


def run():
    import uvicorn

    uvicorn.run("orderflow.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
