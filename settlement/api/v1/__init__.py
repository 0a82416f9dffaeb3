"""
Operator API v1.
"""
from fastapi import APIRouter
from .endpoints import queue, revenue, defense, alerts

api_router = APIRouter()

for _module, _prefix in (
    (queue, "queue"),
    (revenue, "revenue"),
    (defense, "defense"),
    (alerts, "alerts"),
):
    api_router.include_router(_module.router, prefix=f"/{_prefix}", tags=[_prefix])
