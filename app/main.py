from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from app.routes.auth import router as auth_router
from app.routes.releases import router as releases_router
from app.routes.devices import router as devices_router
from app.routes.distributor_api import router as distributor_api_router
from app.routes.notifications import router as notifications_router
from app.logging_config import app_logger
from app.services.errors import ReleaseError
from app.version import __version__

app = FastAPI(title="Fleet Admin", version=__version__)

# Подключение маршрутов
app.include_router(auth_router)
app.include_router(releases_router)
app.include_router(devices_router)
app.include_router(distributor_api_router)
app.include_router(notifications_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(ReleaseError)
async def release_error_handler(request: Request, exc: ReleaseError):
    # ошибки сервисов: запись в БД при этом не изменена
    if exc.status_code >= 500:
        app_logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        app_logger.info(f"{request.method} {request.url.path} refused ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}
