import apps.api.app.models.user
import apps.api.app.models.recovery_token
import apps.api.app.models.audit_log

from fastapi import FastAPI

from apps.api.app.core.logging import setup_logging
from apps.api.app.db.session import engine, Base
from apps.api.app.routes.auth import router as auth_router

setup_logging()

app = FastAPI(title="panel account API")

Base.metadata.create_all(bind=engine)

app.include_router(auth_router)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}
