import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError

import settings
from accounts import accounts_router, router as admin_router
from attendance import router as attendance_router
from classes import details_router, router as classes_router
from database import Store, connect, ensure_indexes, get_store
from exams import router as exams_router
from marks import router as marks_router
from students import router as student_router
from subjects import router as subjects_router
from teachers import router as teacher_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = connect()
    if store is None:
        logger.warning("DATABASE_URL not set, database endpoints will answer 500")
    else:
        try:
            ensure_indexes(store.db)
            logger.info("Indexes ensured on %s", store.name)
        except PyMongoError as e:
            logger.error(f"Startup index error: {e}")
    yield
    logger.info("Shutting down...")


app = FastAPI(title="School Management System API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Error handlers -----------------------
def _field_errors(exc: RequestValidationError):
    return [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")} for e in exc.errors()]


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = _field_errors(exc)
    first = errors[0] if errors else {}
    field = ".".join(p for p in first.get("loc", []) if p != "body")
    message = first.get("msg", "Invalid request")
    detail = f"{field}: {message}" if field else message
    return JSONResponse(status_code=400, content={"detail": detail, "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_error(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Duplicate value"})


@app.exception_handler(PyMongoError)
async def database_error(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# ----------------------- Routers -----------------------
app.include_router(admin_router)
app.include_router(accounts_router)
app.include_router(classes_router)
app.include_router(details_router)
app.include_router(teacher_router)
app.include_router(student_router)
app.include_router(subjects_router)
app.include_router(exams_router)
app.include_router(marks_router)
app.include_router(attendance_router)


# ----------------------- Health -----------------------
@app.get("/")
def read_root():
    return {"message": "School Management System API running"}


@app.get("/health")
def health(store: Store = Depends(get_store)):
    response = {"ok": True, "time": datetime.now(timezone.utc).isoformat(), "database": store.name}
    try:
        response["collections"] = store.db.list_collection_names()[:10]
    except PyMongoError as e:
        response["ok"] = False
        response["database_error"] = str(e)[:50]
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
