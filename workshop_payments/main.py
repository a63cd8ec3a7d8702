import logging
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from .routers import payments
from .db import init_db
from .config import settings
from .services.exceptions import SumUpError
from .services.sumup import SumUpService
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

app = FastAPI(title="Workshop Payments Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)

@app.exception_handler(SumUpError)
async def sumup_error_handler(request: Request, exc: SumUpError):
    logger.error(f"SumUp call failed on {request.url.path}: {exc} (status={exc.status_code})")
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "processor_status": exc.status_code},
    )

@app.on_event("startup")
async def on_startup():
    await init_db()
    app.state.sumup = SumUpService.from_settings(settings)
    if app.state.sumup is None:
        logger.warning("SumUp credentials missing, payment links will not be generated")

@app.on_event("shutdown")
async def on_shutdown():
    sumup = getattr(app.state, "sumup", None)
    if sumup is not None:
        await sumup.aclose()

if __name__ == "__main__":
    uvicorn.run("workshop_payments.main:app", host=settings.app_host, port=settings.app_port, reload=(settings.env != "production"))
