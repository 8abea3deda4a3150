from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse

from lifemaster.api.agent import router as agent_router
from lifemaster.api.auth import router as auth_router
from lifemaster.api.health import router as health_router
from lifemaster.api.withings import router as withings_router
from lifemaster.core.config import get_coach_profile
from lifemaster.core.errors import LifeMasterError
from lifemaster.db.session import create_tables

app = FastAPI(title="LifeMaster Health API")
OPENAPI_DOCUMENT = Path(__file__).resolve().parent / "static" / "openapi.yaml"


@app.on_event("startup")
def on_startup() -> None:
    create_tables()
    get_coach_profile()


@app.exception_handler(LifeMasterError)
def handle_lifemaster_error(request: Request, exc: LifeMasterError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_body()))


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/openapi.yaml", include_in_schema=False)
def openapi_document() -> FileResponse:
    return FileResponse(OPENAPI_DOCUMENT, media_type="text/yaml")


app.include_router(health_router)
app.include_router(auth_router)
app.include_router(withings_router)
app.include_router(agent_router)
