import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from mfg_erp_core import config, errors
from mfg_erp_core.bom_api import router as bom_router
from mfg_erp_core.dashboard_api import router as dashboard_router
from mfg_erp_core.db import engine
from mfg_erp_core.manufacturing_orders_api import router as manufacturing_orders_router
from mfg_erp_core.materials_api import router as materials_router
from mfg_erp_core.models import Base
from mfg_erp_core.stock_ledger_api import router as stock_ledger_router
from mfg_erp_core.work_centers_api import router as work_centers_router
from mfg_erp_core.work_orders_api import router as work_orders_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("mfg_erp")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.AUTO_CREATE_SCHEMA:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("schema created (AUTO_CREATE_SCHEMA)")
    yield
    await engine.dispose()


app = FastAPI(title="Manufacturing ERP Core API", lifespan=lifespan)
app.add_exception_handler(errors.ManufacturingError, errors.manufacturing_error_handler)
app.add_exception_handler(RequestValidationError, errors.request_validation_handler)

app.include_router(materials_router)
app.include_router(work_centers_router)
app.include_router(bom_router)
app.include_router(manufacturing_orders_router)
app.include_router(work_orders_router)
app.include_router(stock_ledger_router)
app.include_router(dashboard_router)

@app.get("/health")
async def health():
    return {"ok": True}
