import logging
import os
import sys
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from auction_house.routers import (
    auth,
    data,
    auctions,
    settlement,
    realtime,
)
from auction_house.services.auction_actions import AuctionValidationError, BidValidationError
from auction_house.services.data_client import DataAccessError, RowNotFound
from auction_house.services.policies import PolicyViolation
from auction_house.utils.logger import logger

# Global logging configuration
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="Auction House API", version="1.0.0")

from auction_house.config import settings

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
if settings.FRONTEND_URL not in origins:
    origins.append(settings.FRONTEND_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)

# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        # Add Request ID to response headers for easier debugging
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


# Service errors surface as the message the storefront shows in its toast.
@app.exception_handler(PolicyViolation)
async def policy_violation_handler(request: Request, exc: PolicyViolation):
    return JSONResponse({"error": "forbidden", "detail": str(exc), "table": exc.table}, status_code=403)


@app.exception_handler(BidValidationError)
async def bid_validation_handler(request: Request, exc: BidValidationError):
    return JSONResponse({"error": "invalid_bid", "title": exc.title, "detail": str(exc)}, status_code=400)


@app.exception_handler(AuctionValidationError)
async def auction_validation_handler(request: Request, exc: AuctionValidationError):
    return JSONResponse({"error": "invalid_auction", "detail": str(exc)}, status_code=400)


@app.exception_handler(RowNotFound)
async def not_found_handler(request: Request, exc: RowNotFound):
    return JSONResponse({"error": "not_found", "detail": str(exc)}, status_code=404)


@app.exception_handler(DataAccessError)
async def data_access_handler(request: Request, exc: DataAccessError):
    return JSONResponse({"error": "bad_request", "detail": str(exc)}, status_code=400)


app.include_router(auth.router)
app.include_router(data.router)
app.include_router(auctions.router)
app.include_router(settlement.router)
app.include_router(realtime.router)

@app.on_event("startup")
async def startup_event():
    logger.info("Auction House API starting up...")

    database_url = settings.DATABASE_URL

    if "postgresql" in database_url:
        import re
        masked_url = re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', database_url)
        logger.info(f"📊 Database URL: {masked_url}")
        logger.info("📊 Running database migrations...")

        try:
            from alembic.config import Config
            from alembic import command

            ini_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini")
            alembic_cfg = Config(ini_path)
            alembic_cfg.set_main_option("sqlalchemy.url", database_url)
            command.upgrade(alembic_cfg, "head")
            logger.info("✅ Database migrations completed successfully!")
        except Exception as e:
            logger.warning(f"⚠️  Alembic migration failed: {e}")
            logger.warning("⚠️  Continuing startup - tables may already exist or will be created manually")
    else:
        # Local/test databases: no policies or PL/pgSQL triggers to install,
        # the ORM-level triggers cover the lifecycle rules.
        from auction_house.models_sqlalchemy import Base, engine
        from auction_house.models_sqlalchemy import models  # noqa: F401
        Base.metadata.create_all(bind=engine)
        logger.info("Created tables on non-Postgres database")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}

@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    from fastapi import HTTPException, status
    try:
        from auction_house.models_sqlalchemy import engine
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            result.fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        error_detail = f"Database unavailable: {type(e).__name__}: {str(e)}"
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_detail
        )

@app.get("/")
async def root():
    return {
        "message": "Auction House API",
        "version": "1.0.0",
        "docs": "/docs"
    }
