from fastapi import APIRouter
from savingsplan.app.api.v1 import goals, assets, plans, executions

api_router = APIRouter()
api_router.include_router(goals.router, prefix="/goals", tags=["goals"])
api_router.include_router(assets.router, prefix="/assets", tags=["assets"])
api_router.include_router(plans.router, prefix="/plans", tags=["plans"])
api_router.include_router(executions.router, prefix="/executions", tags=["executions"])
