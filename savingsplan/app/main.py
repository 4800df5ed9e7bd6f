from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from savingsplan.app.api.v1.router import api_router
from savingsplan.app.config import get_settings
from savingsplan.app.database import create_tables
from savingsplan.app.exceptions import PlanningError
from savingsplan.app.services.recalculation_service import get_recalculation_scheduler

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up application...")
    create_tables()
    yield
    # Run the last pending recalculation before going away
    get_recalculation_scheduler().flush()
    logger.info("Shutting down application...")

app = FastAPI(title="Savings Plan", lifespan=lifespan)

@app.exception_handler(PlanningError)
async def planning_error_handler(request: Request, exc: PlanningError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})

# Include all API routes
app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("savingsplan.app.main:app", host="0.0.0.0", port=8000, reload=True)
