from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from config.logging import get_logger, setup_logging
from config.settings import settings
from infrastructure.db.sqlite import init_db
from infrastructure.web.controllers.transaction_controller import ERROR_STATUS, router as transaction_router
from fastapi.middleware.cors import CORSMiddleware
from core.errors import ValidationError

logger = get_logger(__name__)

app = FastAPI(title="Transaction ledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# malformed bodies are ledger validation errors, not FastAPI's default 422
@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    logger.warning("Rejected malformed request to %s", request.url.path)
    return JSONResponse(
        status_code=ERROR_STATUS[ValidationError],
        content={"detail": jsonable_encoder(exc.errors())},
        headers={"X-Error-Kind": ValidationError.__name__},
    )

@app.on_event("startup")
def on_startup():
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    init_db(settings.DB_PATH, settings.DB_TIMEOUT_SECONDS)
    logger.info("Ledger database ready at %s", settings.DB_PATH)

app.include_router(transaction_router)
