"""
SPARK — Main API Router

Aggregates all sub-routers under a single prefix so that ``spark.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from spark.api import jobs, matching, rooms

router = APIRouter()

router.include_router(matching.router, prefix="/matches", tags=["Matching"])
router.include_router(rooms.router, prefix="/rooms", tags=["Rooms"])
router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
