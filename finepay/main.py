from fastapi import FastAPI

from finepay.admin import router as admin_router
from finepay.config import devtools_enabled
from finepay.database import Base, engine
from finepay.logging import setup_logging
from finepay.routes import router

setup_logging()

app = FastAPI(title="Library Fine Payment Service")

app.include_router(router)
app.include_router(admin_router)

if devtools_enabled():
    from finepay.devtools import router as devtools_router

    app.include_router(devtools_router)

Base.metadata.create_all(bind=engine)
